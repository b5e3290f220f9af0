"""Shared fixtures: a scripted ffmpeg stand-in, a fake HTTP session and fake storage."""

import stat
import sys
import textwrap
from pathlib import Path

import pytest
import requests

from models.render_models import DeliveryMode
from operators.render_operator import RenderOrchestrator
from utils.ffmpeg_process import FFmpegSupervisor
from utils.output_delivery import OutputDeliverer
from utils.render_config import RenderSettings
from utils.resource_fetcher import ResourceFetcher
from utils.workspace import WorkspaceManager


# Behaviour is selected by markers embedded in the -filter_complex value.
FAKE_FFMPEG_SOURCE = """
import json
import sys
import time

args = sys.argv[1:]
graph = args[args.index("-filter_complex") + 1] if "-filter_complex" in args else ""
output = args[-1] if args else ""

for frame in (10, 20, 30):
    sys.stderr.write(f"frame= {frame} fps= 25 q=28.0 size=  10kB time=00:00:01.00\\n")
    sys.stderr.flush()

if "HANG" in graph:
    time.sleep(60)
if "FAIL_PARSE" in graph:
    sys.stderr.write("[AVFilterGraph @ 0x1] No such filter: 'FAIL_PARSE'\\n")
    sys.stderr.write("Unable to parse filter graph\\n")
    sys.exit(1)
if "NO_OUTPUT" in graph:
    sys.exit(0)

with open(output, "w", encoding="utf-8") as handle:
    json.dump(args, handle)
"""


@pytest.fixture
def fake_ffmpeg(tmp_path) -> str:
    script = tmp_path / "bin" / "ffmpeg"
    script.parent.mkdir(parents=True)
    script.write_text(
        f"#!{sys.executable}\n" + textwrap.dedent(FAKE_FFMPEG_SOURCE), encoding="utf-8"
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


class FakeResponse:
    def __init__(self, status_code: int = 200, chunks=(b"payload",)):
        self.status_code = status_code
        self.chunks = list(chunks)
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True
        return False

    def iter_content(self, chunk_size=None):
        yield from self.chunks

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class FakeSession:
    """Routes GET/POST by URL. Unknown GET URLs answer 404."""

    def __init__(self):
        self.routes = {}
        self.gets = []
        self.posts = []
        self.post_status = 200

    def add(self, url: str, body: bytes = b"payload", status: int = 200, chunks=None):
        self.routes[url] = (status, list(chunks) if chunks is not None else [body])

    def add_error(self, url: str, error: Exception):
        self.routes[url] = error

    def get(self, url, headers=None, stream=False, timeout=None):
        self.gets.append({"url": url, "headers": headers, "stream": stream, "timeout": timeout})
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404, chunks=[b"not found"])
        if isinstance(route, Exception):
            raise route
        status, chunks = route
        return FakeResponse(status, chunks=chunks)

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        return FakeResponse(self.post_status, chunks=[])

    def close(self):
        pass


class FakeStorage:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.uploads = {}

    def upload(self, local_path: Path, key: str, content_type: str) -> str:
        if self.fail:
            raise RuntimeError("bucket unavailable")
        self.uploads[key] = {
            "data": Path(local_path).read_bytes(),
            "content_type": content_type,
        }
        return f"gs://fake-bucket/{key}"


@pytest.fixture
def http_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def failing_storage() -> FakeStorage:
    return FakeStorage(fail=True)


@pytest.fixture
def settings(tmp_path, fake_ffmpeg) -> RenderSettings:
    return RenderSettings(
        ffmpeg_bin=fake_ffmpeg,
        global_options=[],
        workspace_root=tmp_path / "work",
        spool_dir=tmp_path / "spool",
        timeout_seconds=30.0,
        fetch_timeout_seconds=5.0,
        fetch_workers=2,
        default_delivery=DeliveryMode.STREAM,
    )


@pytest.fixture
def make_orchestrator(settings, http_session):
    def _make(storage=None, **overrides) -> RenderOrchestrator:
        effective = settings
        if overrides:
            effective = RenderSettings(**{**settings.__dict__, **overrides})
        return RenderOrchestrator(
            settings=effective,
            workspaces=WorkspaceManager(effective.workspace_root),
            fetcher=ResourceFetcher(
                http_session,
                timeout_seconds=effective.fetch_timeout_seconds,
                max_workers=effective.fetch_workers,
            ),
            supervisor=FFmpegSupervisor(
                tail_chars=effective.diagnostic_tail_chars,
                progress_window=effective.progress_window,
            ),
            deliverer=OutputDeliverer(
                effective.spool_dir,
                storage=storage,
                key_prefix=effective.output_prefix,
            ),
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> RenderOrchestrator:
    return make_orchestrator()
