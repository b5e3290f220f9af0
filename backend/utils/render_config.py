from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from models.render_models import DeliveryMode


logger = logging.getLogger(__name__)

DEFAULT_GLOBAL_OPTIONS = ("-hide_banner", "-nostdin", "-y")
OUTPUT_URL_STYLES = ("gs", "public", "signed")


def _env_int(name: str, default: int, minimum: int | None = None) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using %s", name, raw, default)
        return default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name: str, default: float, minimum: float | None = None) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r; using %s", name, raw, default)
        return default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass
class RenderSettings:
    ffmpeg_bin: str = "ffmpeg"
    global_options: list[str] = field(default_factory=lambda: list(DEFAULT_GLOBAL_OPTIONS))
    workspace_root: Path = Path("/tmp/render")
    spool_dir: Path = Path("/tmp/render-spool")
    timeout_seconds: float = 7200.0
    fetch_timeout_seconds: float = 30.0
    fetch_workers: int = 4
    max_download_bytes: int | None = None
    diagnostic_tail_chars: int = 1500
    progress_window: int = 10
    strict_placeholders: bool = True
    output_bucket: str = ""
    output_prefix: str = "renders"
    output_url_style: str = "gs"
    signed_url_ttl_seconds: int = 3600
    default_delivery: DeliveryMode = DeliveryMode.STREAM
    max_concurrent_jobs: int = 2
    spool_max_age_seconds: float = 3600.0

    @classmethod
    def from_env(cls) -> RenderSettings:
        workspace_root = Path(os.getenv("RENDER_TEMP_DIR", "/tmp/render"))
        spool_raw = os.getenv("RENDER_SPOOL_DIR", "").strip()
        spool_dir = Path(spool_raw) if spool_raw else workspace_root.parent / (
            workspace_root.name + "-spool"
        )

        global_raw = os.getenv("FFMPEG_GLOBAL_OPTIONS")
        global_options = (
            shlex.split(global_raw) if global_raw is not None else list(DEFAULT_GLOBAL_OPTIONS)
        )

        output_bucket = os.getenv("GCS_RENDER_BUCKET", "").strip()

        url_style = os.getenv("RENDER_OUTPUT_URL_STYLE", "gs").strip().lower()
        if url_style not in OUTPUT_URL_STYLES:
            logger.warning("Unknown RENDER_OUTPUT_URL_STYLE=%r; using 'gs'", url_style)
            url_style = "gs"

        delivery_raw = os.getenv("RENDER_DEFAULT_DELIVERY", "").strip().lower()
        try:
            default_delivery = DeliveryMode(delivery_raw)
        except ValueError:
            if delivery_raw:
                logger.warning("Unknown RENDER_DEFAULT_DELIVERY=%r", delivery_raw)
            default_delivery = DeliveryMode.STORAGE if output_bucket else DeliveryMode.STREAM

        max_bytes = _env_int("RESOURCE_MAX_BYTES", 0, minimum=0)

        return cls(
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            global_options=global_options,
            workspace_root=workspace_root,
            spool_dir=spool_dir,
            timeout_seconds=_env_float("FFMPEG_TIMEOUT_SECONDS", 7200.0, minimum=1.0),
            fetch_timeout_seconds=_env_float(
                "RESOURCE_FETCH_TIMEOUT_SECONDS", 30.0, minimum=1.0
            ),
            fetch_workers=_env_int("RESOURCE_FETCH_WORKERS", 4, minimum=1),
            max_download_bytes=max_bytes or None,
            diagnostic_tail_chars=_env_int("RENDER_DIAGNOSTIC_TAIL_CHARS", 1500, minimum=100),
            progress_window=_env_int("RENDER_PROGRESS_WINDOW", 10, minimum=2),
            strict_placeholders=_env_bool("RENDER_STRICT_PLACEHOLDERS", True),
            output_bucket=output_bucket,
            output_prefix=os.getenv("RENDER_OUTPUT_PREFIX", "renders").strip("/"),
            output_url_style=url_style,
            signed_url_ttl_seconds=_env_int("SIGNED_URL_TTL_SECONDS", 3600, minimum=60),
            default_delivery=default_delivery,
            max_concurrent_jobs=_env_int("RENDER_MAX_CONCURRENT_JOBS", 2, minimum=1),
            spool_max_age_seconds=_env_float(
                "RENDER_SPOOL_MAX_AGE_SECONDS", 3600.0, minimum=60.0
            ),
        )
