from datetime import timedelta

import pytest

from utils.gcs_utils import (
    GCSOutputStorage,
    StorageUploadError,
    download_text,
    get_storage_client,
    parse_gcs_url,
)


class _FakeBlob:
    def __init__(self, bucket_name, name, fail=False):
        self.bucket_name = bucket_name
        self.name = name
        self.fail = fail
        self.uploaded = None
        self.signed_kwargs = None

    @property
    def public_url(self):
        return f"https://storage.googleapis.com/{self.bucket_name}/{self.name}"

    def upload_from_filename(self, filename, content_type=None):
        if self.fail:
            raise RuntimeError("403 Forbidden")
        self.uploaded = (filename, content_type)

    def generate_signed_url(self, **kwargs):
        self.signed_kwargs = kwargs
        return f"https://signed.example.com/{self.name}?X-Goog-Signature=abc"

    def download_as_text(self):
        return '{"job_id": "job-1"}'


class _FakeBucket:
    def __init__(self, client, name):
        self.client = client
        self.name = name

    def blob(self, name):
        blob = _FakeBlob(self.name, name, fail=self.client.fail)
        self.client.blobs.append(blob)
        return blob


class _FakeClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.blobs = []

    def bucket(self, name):
        return _FakeBucket(self, name)


@pytest.mark.parametrize(
    "url, expected",
    [
        ("gs://bucket/renders/out.mp4", ("bucket", "renders/out.mp4")),
        ("gs://bucket", None),
        ("gs:///key", None),
        ("https://example.com/a.mp4", None),
        ("", None),
    ],
)
def test_parse_gcs_url(url, expected):
    assert parse_gcs_url(url) == expected


def test_download_text():
    assert download_text(_FakeClient(), "gs://manifests/job.json") == '{"job_id": "job-1"}'


def test_download_text_rejects_bad_path():
    with pytest.raises(ValueError):
        download_text(_FakeClient(), "gs://only-bucket")


def test_invalid_credentials_json(monkeypatch):
    monkeypatch.setenv("GCP_CREDENTIALS", "{not json")

    with pytest.raises(ValueError, match="Invalid GCP_CREDENTIALS JSON"):
        get_storage_client()


class TestGCSOutputStorage:
    def test_gs_reference(self, tmp_path):
        client = _FakeClient()
        storage = GCSOutputStorage(client, "renders-bucket")

        url = storage.upload(tmp_path / "output.mp4", "renders/job-1/output.mp4", "video/mp4")

        assert url == "gs://renders-bucket/renders/job-1/output.mp4"
        assert client.blobs[0].uploaded == (str(tmp_path / "output.mp4"), "video/mp4")

    def test_public_url(self, tmp_path):
        storage = GCSOutputStorage(_FakeClient(), "renders-bucket", url_style="public")

        url = storage.upload(tmp_path / "output.mp4", "k/output.mp4", "video/mp4")

        assert url == "https://storage.googleapis.com/renders-bucket/k/output.mp4"

    def test_signed_url(self, tmp_path):
        client = _FakeClient()
        storage = GCSOutputStorage(
            client, "renders-bucket", url_style="signed", signed_url_ttl_seconds=600
        )

        url = storage.upload(tmp_path / "output.mp4", "k/output.mp4", "video/mp4")

        assert url.startswith("https://signed.example.com/k/output.mp4")
        assert client.blobs[0].signed_kwargs == {
            "expiration": timedelta(seconds=600),
            "method": "GET",
            "version": "v4",
        }

    def test_upload_failure_wrapped(self, tmp_path):
        storage = GCSOutputStorage(_FakeClient(fail=True), "renders-bucket")

        with pytest.raises(StorageUploadError, match="403 Forbidden"):
            storage.upload(tmp_path / "output.mp4", "k/output.mp4", "video/mp4")
