"""Per-job scratch directories."""
from __future__ import annotations

import logging
import secrets
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from models.render_errors import CleanupWarning

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Workspace:
    workspace_id: str
    path: Path

    @property
    def resources_dir(self) -> Path:
        return self.path / "resources"

    @property
    def inputs_dir(self) -> Path:
        return self.path / "inputs"

    def resource_path(self, name: str) -> Path:
        return self.resources_dir / name

    def input_path(self, index: int, suffix: str) -> Path:
        return self.inputs_dir / f"input-{index}{suffix}"

    def output_path(self, filename: str) -> Path:
        return self.path / filename


class WorkspaceManager:
    """
    Allocates one uniquely named directory per job under ``root``.

    Names come from ``secrets.token_hex`` so concurrent jobs never collide;
    no locking is involved.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def acquire(self) -> Workspace:
        self.root.mkdir(parents=True, exist_ok=True)
        workspace_id = secrets.token_hex(16)
        path = (self.root / f"job-{workspace_id}").resolve()
        path.mkdir(exist_ok=False)
        logger.debug("workspace_acquired path=%s", path)
        return Workspace(workspace_id=workspace_id, path=path)

    def release(self, workspace: Workspace) -> bool:
        """Remove the workspace. Idempotent; never raises."""
        path = workspace.path
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning(
                "%s: failed to remove workspace %s: %s",
                CleanupWarning.__name__,
                path,
                exc,
            )
            return not path.exists()
        logger.debug("workspace_released path=%s", path)
        return True

    @contextmanager
    def session(self) -> Iterator[Workspace]:
        workspace = self.acquire()
        try:
            yield workspace
        finally:
            self.release(workspace)
