#!/usr/bin/env python3
"""Run a single render job from a manifest outside the HTTP server."""

import argparse
import json
import logging
import os
import shutil
import sys
from pathlib import Path

import requests
from dotenv import load_dotenv

from models.render_errors import JobError
from models.render_models import DeliveryMode, RenderJobStatus, RenderProgress
from operators.render_operator import create_orchestrator
from utils.ffmpeg_process import ProgressUpdate
from utils.gcs_utils import download_text, get_storage_client
from utils.render_config import RenderSettings

logger = logging.getLogger("render-job")

CALLBACK_TIMEOUT_SECONDS = 10
# Share of the reported progress taken by the engine run; the rest covers setup and delivery.
ENGINE_PROGRESS_START = 5
ENGINE_PROGRESS_SPAN = 90


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run one render job")
    parser.add_argument(
        "--manifest",
        required=True,
        help="GCS path or local path to a render job manifest (JSON)",
    )
    parser.add_argument(
        "--job-id",
        default=None,
        help="Job ID override for the manifest and status reporting",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Destination for the rendered file when delivering by stream",
    )
    return parser.parse_args(argv)


def load_manifest(manifest_path: str, storage_client=None) -> dict:
    if manifest_path.startswith("gs://"):
        logger.info("Downloading manifest from %s", manifest_path)
        client = storage_client or get_storage_client()
        manifest_text = download_text(client, manifest_path)
    else:
        path = Path(manifest_path)
        if not path.exists():
            raise ValueError(f"Manifest file not found: {manifest_path}")
        logger.info("Loading manifest from %s", manifest_path)
        manifest_text = path.read_text(encoding="utf-8")

    try:
        manifest = json.loads(manifest_text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Manifest is not valid JSON: {exc}") from exc
    if not isinstance(manifest, dict):
        raise ValueError("Manifest must be a JSON object")
    return manifest


def report_status(
    http: requests.Session,
    callback_url: str | None,
    update: RenderProgress,
) -> None:
    if not callback_url:
        logger.info("Status: %s, Progress: %d%%", update.status.value, update.progress)
        return

    try:
        response = http.post(
            callback_url,
            json=update.model_dump(mode="json"),
            timeout=CALLBACK_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Failed to report status: %s", exc)


def _scaled_progress(update: ProgressUpdate) -> int:
    if update.percent is None:
        return ENGINE_PROGRESS_START
    return ENGINE_PROGRESS_START + int(update.percent * ENGINE_PROGRESS_SPAN / 100)


def run(args, *, http: requests.Session, settings: RenderSettings, storage_client=None) -> int:
    callback_url = os.environ.get("CALLBACK_URL")
    job_id = args.job_id or "unknown"

    def _report(status: RenderJobStatus, progress: int, **fields) -> None:
        report_status(
            http,
            callback_url,
            RenderProgress(job_id=job_id, status=status, progress=progress, **fields),
        )

    try:
        manifest = load_manifest(args.manifest, storage_client)
    except ValueError as exc:
        logger.error("Invalid manifest: %s", exc)
        _report(RenderJobStatus.FAILED, 0, error={"kind": "validation_error", "detail": str(exc)})
        return 1

    if args.job_id:
        manifest["job_id"] = args.job_id
    elif isinstance(manifest.get("job_id"), str):
        job_id = manifest["job_id"]

    orchestrator = create_orchestrator(settings, http=http, storage_client=storage_client)
    last_reported = [-1]

    def _on_progress(update: ProgressUpdate) -> None:
        progress = _scaled_progress(update)
        if progress == last_reported[0]:
            return
        last_reported[0] = progress
        _report(
            RenderJobStatus.PROCESSING,
            progress,
            current_frame=update.frame,
            total_frames=update.total_frames,
            eta_seconds=update.eta_seconds,
        )

    _report(RenderJobStatus.PROCESSING, 0)
    try:
        result = orchestrator.execute(manifest, progress_callback=_on_progress)
    except JobError as exc:
        logger.error("Render failed: %s", exc)
        if exc.job_id:
            job_id = exc.job_id
        _report(RenderJobStatus.FAILED, 0, error=exc.to_payload())
        return 1

    job_id = result.job_id
    output_url = result.url
    if result.mode == DeliveryMode.STREAM and result.file_path is not None:
        destination = Path(args.output or result.filename).resolve()
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(result.file_path), destination)
        except OSError as exc:
            result.discard()
            logger.error("Failed to write output to %s: %s", destination, exc)
            _report(
                RenderJobStatus.FAILED,
                0,
                error={"kind": "delivery_error", "job_id": job_id, "detail": str(exc)},
            )
            return 1
        output_url = destination.as_uri()
        logger.info("Render complete: %s", destination)
    else:
        logger.info("Render uploaded: %s", output_url)

    _report(RenderJobStatus.COMPLETED, 100, output_url=output_url)
    return 0


def main(argv=None):
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = parse_args(argv)
    settings = RenderSettings.from_env()

    needs_storage = bool(settings.output_bucket) or args.manifest.startswith("gs://")
    storage_client = get_storage_client() if needs_storage else None

    with requests.Session() as http:
        try:
            exit_code = run(args, http=http, settings=settings, storage_client=storage_client)
        finally:
            if storage_client is not None:
                storage_client.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
