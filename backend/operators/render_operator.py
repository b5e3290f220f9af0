from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Mapping
from uuid import uuid4

import requests
from pydantic import ValidationError as PydanticValidationError

from models.render_errors import (
    JobError,
    JobPhase,
    JobValidationError,
    ProcessCancelled,
    ProcessFailure,
    ProcessTimeout,
)
from models.render_models import JOB_ID_PATTERN, DeliveryMode, RenderJob
from utils.ffmpeg_builder import (
    build_command,
    build_invocation,
    format_command,
    resolve_filter_graph,
    unresolved_placeholders,
)
from utils.ffmpeg_process import (
    FFmpegSupervisor,
    ProcessOutcome,
    ProcessResult,
    ProgressCallback,
)
from utils.gcs_utils import GCSOutputStorage
from utils.output_delivery import DeliveryResult, OutputDeliverer
from utils.render_config import RenderSettings
from utils.resource_fetcher import ResourceFetcher
from utils.workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass
class JobRun:
    job_id: str
    phase: JobPhase = JobPhase.VALIDATING
    started: float = field(default_factory=time.monotonic)

    def elapsed(self) -> float:
        return time.monotonic() - self.started


def _format_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid render job"


class RenderOrchestrator:
    """
    Runs one render job end to end.

    The instance holds only injected collaborators; all per-job state lives
    in a ``JobRun``, so one orchestrator can serve concurrent jobs.
    """

    def __init__(
        self,
        settings: RenderSettings,
        workspaces: WorkspaceManager,
        fetcher: ResourceFetcher,
        supervisor: FFmpegSupervisor,
        deliverer: OutputDeliverer,
    ):
        self.settings = settings
        self.workspaces = workspaces
        self.fetcher = fetcher
        self.supervisor = supervisor
        self.deliverer = deliverer

    def execute(
        self,
        job: RenderJob | Mapping[str, Any],
        *,
        cancel_event: threading.Event | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> DeliveryResult:
        if isinstance(job, RenderJob):
            job_id = job.job_id
        elif isinstance(job, Mapping):
            job = dict(job)
            if job.get("job_id") is None:
                job["job_id"] = uuid4().hex
            raw_id = job["job_id"]
            job_id = raw_id if isinstance(raw_id, str) and JOB_ID_PATTERN.match(raw_id) else uuid4().hex
        else:
            raise JobValidationError(
                "Render job must be a JSON object", phase=JobPhase.VALIDATING
            )
        run = JobRun(job_id=job_id)
        logger.info("render_job_start job_id=%s", run.job_id)

        workspace = None
        failure: JobError | None = None
        try:
            render_job = self._validate(job)

            self._enter(run, JobPhase.FETCHING_RESOURCES)
            workspace = self._acquire_workspace()
            resources = self.fetcher.fetch_resources(render_job.resources, workspace)
            local_inputs = self.fetcher.fetch_inputs(render_job.inputs, workspace)

            self._enter(run, JobPhase.RESOLVING_GRAPH)
            resolved_graph = resolve_filter_graph(
                render_job.filter_graph,
                {name: resource.local_path for name, resource in resources.items()},
            )

            self._enter(run, JobPhase.BUILDING_INVOCATION)
            output_path = workspace.output_path(render_job.output_filename())
            argv = build_invocation(render_job, resolved_graph, output_path, local_inputs)
            command = build_command(
                self.settings.ffmpeg_bin, self.settings.global_options, argv
            )
            logger.info("FFmpeg command: %s", format_command(command))

            self._enter(run, JobPhase.SUPERVISING)
            timeout_seconds = self._effective_timeout(render_job)
            result = self.supervisor.run(
                command,
                timeout_seconds=timeout_seconds,
                cancel_event=cancel_event,
                total_frames=render_job.total_frames,
                progress_callback=progress_callback,
            )
            self._raise_for_process(result, timeout_seconds)

            self._enter(run, JobPhase.DELIVERING)
            delivery = self.deliverer.deliver(
                output_path,
                job_id=render_job.job_id,
                mode=self._delivery_mode(render_job),
                storage_key=render_job.output_key,
            )
        except JobError as exc:
            failure = exc.bind(run.job_id, run.phase)
            raise
        except Exception as exc:
            logger.exception(
                "render_job_unexpected_error job_id=%s phase=%s", run.job_id, run.phase.value
            )
            failure = ProcessFailure(
                f"Unexpected {type(exc).__name__} while {run.phase.value.replace('_', ' ')}",
                job_id=run.job_id,
                phase=run.phase,
            )
            raise failure from exc
        finally:
            if workspace is not None:
                self._enter(run, JobPhase.CLEANING_UP)
                self.workspaces.release(workspace)
            if failure is not None:
                self._enter(run, JobPhase.FAILED)
                logger.warning(
                    "render_job_failed job_id=%s phase=%s kind=%s elapsed=%.2fs detail=%s",
                    run.job_id,
                    failure.phase.value if failure.phase else None,
                    failure.kind.value,
                    run.elapsed(),
                    failure.detail,
                )

        self._enter(run, JobPhase.COMPLETED)
        logger.info(
            "render_job_completed job_id=%s mode=%s size=%d elapsed=%.2fs",
            run.job_id,
            delivery.mode.value,
            delivery.size_bytes,
            run.elapsed(),
        )
        return delivery

    def _acquire_workspace(self) -> Workspace:
        try:
            return self.workspaces.acquire()
        except OSError as exc:
            reason = exc.strerror or type(exc).__name__
            raise ProcessFailure(f"Could not create job workspace: {reason}") from exc

    def _enter(self, run: JobRun, phase: JobPhase) -> None:
        run.phase = phase
        logger.debug("render_job_phase job_id=%s phase=%s", run.job_id, phase.value)

    def _validate(self, job: RenderJob | dict[str, Any]) -> RenderJob:
        if isinstance(job, RenderJob):
            render_job = job
        else:
            try:
                render_job = RenderJob.model_validate(job)
            except PydanticValidationError as exc:
                raise JobValidationError(_format_validation_error(exc)) from exc

        if self.settings.strict_placeholders:
            unknown = unresolved_placeholders(
                render_job.filter_graph, render_job.resource_names()
            )
            if unknown:
                raise JobValidationError(
                    f"Filter graph references undeclared resources: {', '.join(unknown)}"
                )

        if (
            self._delivery_mode(render_job) == DeliveryMode.STORAGE
            and self.deliverer.storage is None
        ):
            raise JobValidationError("Storage delivery requested but no storage is configured")
        return render_job

    def _delivery_mode(self, job: RenderJob) -> DeliveryMode:
        return job.delivery or self.settings.default_delivery

    def _effective_timeout(self, job: RenderJob) -> float:
        if job.timeout_seconds is None:
            return self.settings.timeout_seconds
        return min(job.timeout_seconds, self.settings.timeout_seconds)

    def _raise_for_process(self, result: ProcessResult, timeout_seconds: float) -> None:
        if result.succeeded:
            return
        details = {"exit_code": result.exit_code, "diagnostic_tail": result.diagnostic_tail}
        if result.outcome == ProcessOutcome.TIMED_OUT:
            raise ProcessTimeout(f"FFmpeg timed out after {timeout_seconds:g}s", **details)
        if result.outcome == ProcessOutcome.CANCELLED:
            raise ProcessCancelled("FFmpeg run was cancelled", **details)
        if result.exit_code is None:
            raise ProcessFailure("FFmpeg could not be started", **details)
        raise ProcessFailure(f"FFmpeg failed (code {result.exit_code})", **details)


def create_orchestrator(
    settings: RenderSettings,
    *,
    http: requests.Session,
    storage_client=None,
) -> RenderOrchestrator:
    """Wire the render components. The caller owns ``http`` and ``storage_client``."""
    storage = None
    if storage_client is not None and settings.output_bucket:
        storage = GCSOutputStorage(
            storage_client,
            settings.output_bucket,
            url_style=settings.output_url_style,
            signed_url_ttl_seconds=settings.signed_url_ttl_seconds,
        )

    return RenderOrchestrator(
        settings=settings,
        workspaces=WorkspaceManager(settings.workspace_root),
        fetcher=ResourceFetcher(
            http,
            timeout_seconds=settings.fetch_timeout_seconds,
            max_workers=settings.fetch_workers,
            max_bytes=settings.max_download_bytes,
            storage_client=storage_client,
        ),
        supervisor=FFmpegSupervisor(
            tail_chars=settings.diagnostic_tail_chars,
            progress_window=settings.progress_window,
        ),
        deliverer=OutputDeliverer(
            settings.spool_dir,
            storage=storage,
            key_prefix=settings.output_prefix,
        ),
    )
