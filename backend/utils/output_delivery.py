from __future__ import annotations

import logging
import mimetypes
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Protocol

from models.render_errors import DeliveryError, OutputMissingError
from models.render_models import DeliveryMode

logger = logging.getLogger(__name__)


class OutputStorage(Protocol):
    def upload(self, local_path: Path, key: str, content_type: str) -> str: ...


@dataclass
class DeliveryResult:
    job_id: str
    mode: DeliveryMode
    filename: str
    content_type: str
    size_bytes: int
    url: str | None = None
    storage_key: str | None = None
    file_path: Path | None = None

    def open(self) -> BinaryIO:
        if self.file_path is None:
            raise ValueError("Delivery result has no local file")
        return self.file_path.open("rb")

    def discard(self) -> None:
        if self.file_path is not None:
            self.file_path.unlink(missing_ok=True)


def guess_content_type(path: Path) -> str:
    content_type, _ = mimetypes.guess_type(path.name)
    return content_type or "application/octet-stream"


class OutputDeliverer:
    """
    Hands the finished artifact to the caller before the workspace goes away.

    Stream mode moves the file into ``spool_dir`` so it survives workspace
    cleanup; the caller must ``discard()`` the result when done with it.
    """

    def __init__(
        self,
        spool_dir: Path,
        storage: OutputStorage | None = None,
        key_prefix: str = "renders",
    ):
        self.spool_dir = Path(spool_dir)
        self.storage = storage
        self.key_prefix = key_prefix.strip("/")

    def sweep_spool(self, max_age_seconds: float, now: float | None = None) -> int:
        """Remove spooled outputs older than ``max_age_seconds``; returns the count."""
        if not self.spool_dir.is_dir():
            return 0
        cutoff = (time.time() if now is None else now) - max_age_seconds
        removed = 0
        for path in self.spool_dir.iterdir():
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.warning("Could not remove stale spool file %s: %s", path.name, exc)
        if removed:
            logger.info("render_spool_swept removed=%d dir=%s", removed, self.spool_dir)
        return removed

    def default_key(self, job_id: str, filename: str) -> str:
        if self.key_prefix:
            return f"{self.key_prefix}/{job_id}/{filename}"
        return f"{job_id}/{filename}"

    def deliver(
        self,
        output_path: Path,
        *,
        job_id: str,
        mode: DeliveryMode,
        storage_key: str | None = None,
    ) -> DeliveryResult:
        if not output_path.is_file():
            raise OutputMissingError(f"Engine produced no output file {output_path.name}")
        size = output_path.stat().st_size
        if size == 0:
            raise OutputMissingError(f"Engine produced an empty output file {output_path.name}")

        content_type = guess_content_type(output_path)
        if mode == DeliveryMode.STORAGE:
            return self._upload(output_path, job_id, size, content_type, storage_key)
        return self._spool(output_path, job_id, size, content_type)

    def _upload(
        self,
        output_path: Path,
        job_id: str,
        size: int,
        content_type: str,
        storage_key: str | None,
    ) -> DeliveryResult:
        if self.storage is None:
            raise DeliveryError("Storage delivery requested but no storage is configured")
        key = storage_key or self.default_key(job_id, output_path.name)
        try:
            url = self.storage.upload(output_path, key, content_type)
        except Exception as exc:
            raise DeliveryError(f"Storage upload failed for key {key}: {exc}") from exc
        logger.info("render_output_uploaded job_id=%s key=%s size=%d", job_id, key, size)
        return DeliveryResult(
            job_id=job_id,
            mode=DeliveryMode.STORAGE,
            filename=output_path.name,
            content_type=content_type,
            size_bytes=size,
            url=url,
            storage_key=key,
        )

    def _spool(
        self, output_path: Path, job_id: str, size: int, content_type: str
    ) -> DeliveryResult:
        spool_path: Path | None = None
        try:
            self.spool_dir.mkdir(parents=True, exist_ok=True)
            fd, spool_name = tempfile.mkstemp(
                prefix=f"{job_id}-", suffix=output_path.suffix, dir=self.spool_dir
            )
            os.close(fd)
            spool_path = Path(spool_name)
            shutil.move(str(output_path), spool_path)
        except OSError as exc:
            if spool_path is not None:
                spool_path.unlink(missing_ok=True)
            raise DeliveryError(f"Failed to hand off output for streaming: {exc}") from exc
        logger.info("render_output_spooled job_id=%s size=%d", job_id, size)
        return DeliveryResult(
            job_id=job_id,
            mode=DeliveryMode.STREAM,
            filename=output_path.name,
            content_type=content_type,
            size_bytes=size,
            file_path=spool_path,
        )
