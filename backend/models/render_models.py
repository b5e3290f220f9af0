"""
Pydantic models for render job orchestration.

This module defines schemas for:
- Render job descriptions (inputs, resources, filter graph, output options)
- Render responses and structured error envelopes
- Status updates reported by the job CLI
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


FETCHABLE_SCHEMES = frozenset({"http", "https", "gs"})
JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
OUTPUT_FORMAT_PATTERN = re.compile(r"^[A-Za-z0-9]{1,16}$")


# =============================================================================
# ENUMS
# =============================================================================


class DeliveryMode(str, Enum):
    """How the rendered artifact reaches the caller."""

    STORAGE = "storage"  # Upload to object storage, return a reference
    STREAM = "stream"  # Return the bytes to the requester


class RenderJobStatus(str, Enum):
    """Status values reported to a job callback URL."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _scheme(locator: str) -> str:
    return urlparse(locator).scheme.lower()


def _require_fetchable(locator: str, label: str) -> str:
    if _scheme(locator) not in FETCHABLE_SCHEMES:
        raise ValueError(
            f"{label} locator must use one of {', '.join(sorted(FETCHABLE_SCHEMES))}: {locator}"
        )
    return locator


# =============================================================================
# JOB MODELS
# =============================================================================


class InputSpec(BaseModel):
    """One engine input. Position in ``RenderJob.inputs`` is its engine index."""

    model_config = ConfigDict(frozen=True)

    locator: str = Field(min_length=1, description="URI or engine locator")
    engine_options: list[str] = Field(
        default_factory=list, description="Tokens emitted before -i"
    )
    materialize: bool = Field(
        default=False,
        description="Download into the workspace instead of passing the locator to the engine",
    )
    headers: dict[str, str] = Field(
        default_factory=dict, description="Extra request headers for retrieval"
    )

    @model_validator(mode="after")
    def _check_materialized_locator(self) -> InputSpec:
        if self.materialize:
            _require_fetchable(self.locator, "Materialized input")
        return self

    def local_suffix(self) -> str:
        suffix = PurePosixPath(urlparse(self.locator).path).suffix
        if not suffix or len(suffix) > 10 or not suffix[1:].isalnum():
            return ".bin"
        return suffix.lower()


class ResourceSpec(BaseModel):
    """Auxiliary file referenced by name inside the filter graph."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Symbolic token and local file name")
    locator: str = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not value or len(value) > 255:
            raise ValueError("Resource name must be 1-255 characters")
        if value in {".", ".."} or value.startswith("."):
            raise ValueError(f"Resource name must not start with '.': {value}")
        if any(ch in value for ch in ("/", "\\", "\x00")):
            raise ValueError(f"Resource name must be a plain file name: {value}")
        if "{" in value or "}" in value:
            raise ValueError(f"Resource name must not contain braces: {value}")
        return value

    @field_validator("locator")
    @classmethod
    def _check_locator(cls, value: str) -> str:
        return _require_fetchable(value, "Resource")


class RenderJob(BaseModel):
    """
    Declarative description of a single render.

    Immutable once validated. Input order is load-bearing: filter graph
    labels such as ``[1:a]`` bind to the second declared input.
    """

    model_config = ConfigDict(frozen=True)

    job_id: str = Field(default_factory=lambda: uuid4().hex)
    inputs: list[InputSpec] = Field(min_length=1)
    resources: list[ResourceSpec] = Field(default_factory=list)
    filter_graph: str = Field(min_length=1)
    output_options: list[str] = Field(default_factory=list)
    total_frames: int | None = Field(
        default=None, ge=1, description="Expected frame count, used for ETA only"
    )
    output_format: str = Field(default="mp4", description="Output container extension")
    delivery: DeliveryMode | None = Field(
        default=None, description="Delivery mode (None = service default)"
    )
    output_key: str | None = Field(
        default=None, description="Storage key (None = derived from job_id)"
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Wall-clock budget, capped by service config"
    )

    @field_validator("job_id")
    @classmethod
    def _check_job_id(cls, value: str) -> str:
        if not JOB_ID_PATTERN.match(value):
            raise ValueError("job_id must match [A-Za-z0-9_-]{1,64}")
        return value

    @field_validator("filter_graph")
    @classmethod
    def _check_filter_graph(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("filter_graph must not be blank")
        return value

    @field_validator("output_format")
    @classmethod
    def _check_output_format(cls, value: str) -> str:
        value = value.lstrip(".")
        if not OUTPUT_FORMAT_PATTERN.match(value):
            raise ValueError(f"Invalid output_format: {value}")
        return value.lower()

    @field_validator("output_key")
    @classmethod
    def _check_output_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not value.strip() or value.startswith("/"):
            raise ValueError("output_key must be a relative object key")
        if ".." in PurePosixPath(value).parts:
            raise ValueError("output_key must not contain '..'")
        return value

    @model_validator(mode="after")
    def _check_unique_resources(self) -> RenderJob:
        seen: set[str] = set()
        duplicates: list[str] = []
        for resource in self.resources:
            if resource.name in seen:
                duplicates.append(resource.name)
            seen.add(resource.name)
        if duplicates:
            raise ValueError(f"Duplicate resource names: {', '.join(duplicates)}")
        return self

    def resource_names(self) -> list[str]:
        return [resource.name for resource in self.resources]

    def output_filename(self) -> str:
        return f"output.{self.output_format}"


# =============================================================================
# RESPONSE MODELS
# =============================================================================


class RenderResponse(BaseModel):
    """Response after a job delivered to storage."""

    ok: bool = True
    job_id: str
    url: str
    storage_key: str | None = None
    size_bytes: int
    content_type: str


class RenderErrorDetail(BaseModel):
    kind: str
    job_id: str | None = None
    phase: str | None = None
    detail: str
    exit_code: int | None = None
    diagnostic_tail: str | None = None


class RenderErrorResponse(BaseModel):
    """Structured failure envelope; there is no partial success."""

    ok: bool = False
    error: RenderErrorDetail


class HealthResponse(BaseModel):
    ok: bool = True


# =============================================================================
# STATUS REPORTING (job CLI -> callback URL)
# =============================================================================


class RenderProgress(BaseModel):
    """Progress update POSTed by the job CLI."""

    job_id: str
    status: RenderJobStatus
    progress: int = Field(ge=0, le=100)
    current_frame: int | None = None
    total_frames: int | None = None
    eta_seconds: float | None = None
    output_url: str | None = None
    error: dict[str, Any] | None = None
