"""
Error taxonomy for render jobs.

Every failure that reaches the caller of ``RenderOrchestrator.execute`` is a
``JobError`` subclass carrying a ``kind`` discriminator, the job id, the phase
it failed in, and a human readable detail string.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class JobErrorKind(str, Enum):
    """Discriminator returned to callers."""

    VALIDATION = "validation_error"
    RESOURCE_FETCH = "resource_fetch_error"
    GRAPH_RESOLUTION = "graph_resolution_error"
    PROCESS_FAILURE = "process_failure"
    PROCESS_TIMEOUT = "process_timeout"
    PROCESS_CANCELLED = "process_cancelled"
    OUTPUT_MISSING = "output_missing"
    DELIVERY = "delivery_error"


class JobPhase(str, Enum):
    """Orchestrator states, in execution order."""

    VALIDATING = "validating"
    FETCHING_RESOURCES = "fetching_resources"
    RESOLVING_GRAPH = "resolving_graph"
    BUILDING_INVOCATION = "building_invocation"
    SUPERVISING = "supervising"
    DELIVERING = "delivering"
    CLEANING_UP = "cleaning_up"
    COMPLETED = "completed"
    FAILED = "failed"


class JobError(Exception):
    kind: JobErrorKind = JobErrorKind.PROCESS_FAILURE

    def __init__(
        self,
        detail: str,
        *,
        job_id: str | None = None,
        phase: JobPhase | None = None,
    ):
        self.detail = detail
        self.job_id = job_id
        self.phase = phase
        super().__init__(detail)

    def bind(self, job_id: str, phase: JobPhase) -> JobError:
        # Components raise without job context; the orchestrator fills it in.
        if self.job_id is None:
            self.job_id = job_id
        if self.phase is None:
            self.phase = phase
        return self

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "job_id": self.job_id,
            "phase": self.phase.value if self.phase else None,
            "detail": self.detail,
        }

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}"


class JobValidationError(JobError):
    kind = JobErrorKind.VALIDATION


class ResourceFetchError(JobError):
    kind = JobErrorKind.RESOURCE_FETCH

    def __init__(self, name: str, cause: str, **kwargs: Any):
        self.name = name
        self.cause = cause
        super().__init__(f"Failed to fetch '{name}': {cause}", **kwargs)


class GraphResolutionError(JobError):
    """Reserved for a stricter resolution policy; resolution currently never fails."""

    kind = JobErrorKind.GRAPH_RESOLUTION


class ProcessFailure(JobError):
    kind = JobErrorKind.PROCESS_FAILURE

    def __init__(
        self,
        detail: str,
        *,
        exit_code: int | None = None,
        diagnostic_tail: str = "",
        **kwargs: Any,
    ):
        self.exit_code = exit_code
        self.diagnostic_tail = diagnostic_tail
        super().__init__(detail, **kwargs)

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["exit_code"] = self.exit_code
        payload["diagnostic_tail"] = self.diagnostic_tail
        return payload


class ProcessTimeout(ProcessFailure):
    kind = JobErrorKind.PROCESS_TIMEOUT


class ProcessCancelled(ProcessFailure):
    kind = JobErrorKind.PROCESS_CANCELLED


class OutputMissingError(JobError):
    kind = JobErrorKind.OUTPUT_MISSING


class DeliveryError(JobError):
    kind = JobErrorKind.DELIVERY


class CleanupWarning(UserWarning):
    """Workspace removal failed. Logged only, never raised to the caller."""
