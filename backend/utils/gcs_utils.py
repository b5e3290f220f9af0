from __future__ import annotations

import json
import logging
import os
from datetime import timedelta
from pathlib import Path

from google.cloud import storage
from google.oauth2 import service_account


logger = logging.getLogger(__name__)


class StorageUploadError(Exception):
    pass


def get_storage_client() -> storage.Client:
    credentials_raw: str = os.getenv("GCP_CREDENTIALS", "")
    if not credentials_raw:
        return storage.Client()
    try:
        credentials_info = json.loads(credentials_raw)
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid GCP_CREDENTIALS JSON") from exc
    credentials = service_account.Credentials.from_service_account_info(
        credentials_info
    )
    return storage.Client(
        credentials=credentials, project=credentials_info.get("project_id")
    )


def parse_gcs_url(url: str) -> tuple[str, str] | None:
    if not url:
        return None
    if url.startswith("gs://"):
        parts = url[5:].split("/", 1)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        return parts[0], parts[1]
    return None


def download_blob_to_file(
    client: storage.Client,
    url: str,
    destination: Path,
    timeout: float = 60.0,
) -> None:
    parsed = parse_gcs_url(url)
    if parsed is None:
        raise ValueError(f"Invalid GCS path: {url}")
    bucket_name, blob_name = parsed
    blob = client.bucket(bucket_name).blob(blob_name)
    destination.parent.mkdir(parents=True, exist_ok=True)
    blob.download_to_filename(str(destination), timeout=timeout)


def download_text(client: storage.Client, url: str) -> str:
    parsed = parse_gcs_url(url)
    if parsed is None:
        raise ValueError(f"Invalid GCS path: {url}")
    bucket_name, blob_name = parsed
    logger.info("Downloading gs://%s/%s", bucket_name, blob_name)
    return client.bucket(bucket_name).blob(blob_name).download_as_text()


def generate_signed_url(
    blob: storage.Blob,
    expiration: timedelta | None = None,
    method: str = "GET",
    content_type: str | None = None,
) -> str:
    if expiration is None:
        expiration = timedelta(hours=1)
    kwargs = {
        "expiration": expiration,
        "method": method,
        "version": "v4",
    }
    if content_type:
        kwargs["content_type"] = content_type
    return blob.generate_signed_url(**kwargs)


class GCSOutputStorage:
    """
    Uploads rendered artifacts to a bucket.

    ``url_style`` controls the returned reference: ``gs`` returns the
    ``gs://`` URI, ``public`` the public HTTPS URL (the bucket must already be
    publicly readable), ``signed`` a v4 signed GET URL.
    """

    def __init__(
        self,
        client: storage.Client,
        bucket_name: str,
        url_style: str = "gs",
        signed_url_ttl_seconds: int = 3600,
    ):
        self.client = client
        self.bucket_name = bucket_name
        self.url_style = url_style
        self.signed_url_ttl_seconds = signed_url_ttl_seconds

    def upload(self, local_path: Path, key: str, content_type: str) -> str:
        blob = self.client.bucket(self.bucket_name).blob(key)
        logger.info("Uploading render output to gs://%s/%s", self.bucket_name, key)
        try:
            blob.upload_from_filename(str(local_path), content_type=content_type)
            if self.url_style == "signed":
                return generate_signed_url(
                    blob,
                    expiration=timedelta(seconds=self.signed_url_ttl_seconds),
                )
        except Exception as exc:
            raise StorageUploadError(
                f"Failed to upload render output to gs://{self.bucket_name}/{key}: {exc}"
            ) from exc

        if self.url_style == "public":
            return blob.public_url
        return f"gs://{self.bucket_name}/{key}"
