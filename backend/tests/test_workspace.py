import logging

import pytest

from utils import workspace as workspace_module
from utils.workspace import WorkspaceManager


def test_acquire_creates_unique_directories(tmp_path):
    manager = WorkspaceManager(tmp_path / "render")

    first = manager.acquire()
    second = manager.acquire()

    assert first.path != second.path
    assert first.path.is_dir() and second.path.is_dir()
    assert first.path.parent == (tmp_path / "render").resolve()
    assert first.path.name.startswith("job-")


def test_workspace_layout(tmp_path):
    ws = WorkspaceManager(tmp_path).acquire()

    assert ws.resource_path("font.ttf") == ws.path / "resources" / "font.ttf"
    assert ws.input_path(2, ".mp4") == ws.path / "inputs" / "input-2.mp4"
    assert ws.output_path("output.mp4") == ws.path / "output.mp4"


def test_release_is_idempotent(tmp_path):
    manager = WorkspaceManager(tmp_path)
    ws = manager.acquire()
    ws.resource_path("font.ttf").parent.mkdir(parents=True)
    ws.resource_path("font.ttf").write_bytes(b"font")

    assert manager.release(ws) is True
    assert not ws.path.exists()
    assert manager.release(ws) is True
    assert not ws.path.exists()


def test_session_releases_on_error(tmp_path):
    manager = WorkspaceManager(tmp_path)

    with pytest.raises(RuntimeError):
        with manager.session() as ws:
            (ws.path / "partial.mp4").write_bytes(b"x")
            raise RuntimeError("boom")

    assert not ws.path.exists()


def test_release_failure_is_logged_not_raised(tmp_path, monkeypatch, caplog):
    manager = WorkspaceManager(tmp_path)
    ws = manager.acquire()

    def _fail(path):
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(workspace_module.shutil, "rmtree", _fail)

    with caplog.at_level(logging.WARNING, logger="utils.workspace"):
        assert manager.release(ws) is False

    assert "CleanupWarning" in caplog.text
    assert ws.path.exists()
