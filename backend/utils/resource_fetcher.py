from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Sequence

import requests

from models.render_errors import ResourceFetchError
from models.render_models import InputSpec, ResourceSpec
from utils.gcs_utils import download_blob_to_file
from utils.workspace import Workspace

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
CONNECT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class ResolvedResource:
    name: str
    local_path: Path


@dataclass(frozen=True)
class _FetchTask:
    name: str
    locator: str
    destination: Path
    headers: Mapping[str, str]


class ResourceFetcher:
    """
    Downloads resources and materialized inputs into a job workspace.

    ``http`` is a caller-owned ``requests.Session``; ``storage_client`` is
    optional and only needed for ``gs://`` locators.
    """

    def __init__(
        self,
        http: requests.Session,
        *,
        timeout_seconds: float = 30.0,
        max_workers: int = 4,
        max_bytes: int | None = None,
        storage_client=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.http = http
        self.timeout_seconds = timeout_seconds
        self.max_workers = max(1, max_workers)
        self.max_bytes = max_bytes
        self.storage_client = storage_client
        self._clock = clock

    def fetch_resources(
        self, resources: Sequence[ResourceSpec], workspace: Workspace
    ) -> dict[str, ResolvedResource]:
        tasks = [
            _FetchTask(
                name=resource.name,
                locator=resource.locator,
                destination=workspace.resource_path(resource.name),
                headers=resource.headers,
            )
            for resource in resources
        ]
        self._run(tasks)
        return {
            task.name: ResolvedResource(name=task.name, local_path=task.destination)
            for task in tasks
        }

    def fetch_inputs(
        self, inputs: Sequence[InputSpec], workspace: Workspace
    ) -> dict[int, Path]:
        tasks: dict[int, _FetchTask] = {}
        for index, spec in enumerate(inputs):
            if not spec.materialize:
                continue
            tasks[index] = _FetchTask(
                name=f"input-{index}",
                locator=spec.locator,
                destination=workspace.input_path(index, spec.local_suffix()),
                headers=spec.headers,
            )
        self._run(list(tasks.values()))
        return {index: task.destination for index, task in tasks.items()}

    def _run(self, tasks: list[_FetchTask]) -> None:
        if not tasks:
            return
        if self.max_workers == 1 or len(tasks) == 1:
            for task in tasks:
                self._fetch_one(task)
            return

        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(tasks)),
            thread_name_prefix="resource-fetch",
        ) as executor:
            futures: list[Future] = [executor.submit(self._fetch_one, task) for task in tasks]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            for future in pending:
                future.cancel()
            # Surface failures in declaration order so the reported name is stable.
            for future in futures:
                if future in done and future.exception() is not None:
                    raise future.exception()

    def _fetch_one(self, task: _FetchTask) -> None:
        logger.info("Fetching %s from %s", task.name, task.locator)
        try:
            task.destination.parent.mkdir(parents=True, exist_ok=True)
            if task.locator.startswith("gs://"):
                self._fetch_gcs(task)
            else:
                self._fetch_http(task)
            size = task.destination.stat().st_size if task.destination.exists() else 0
            if size == 0:
                raise ResourceFetchError(task.name, "empty payload")
        except ResourceFetchError:
            self._discard_partial(task)
            raise
        except OSError as exc:
            self._discard_partial(task)
            reason = exc.strerror or type(exc).__name__
            raise ResourceFetchError(task.name, f"could not write local file: {reason}") from exc
        logger.debug("Fetched %s (%d bytes) -> %s", task.name, size, task.destination)

    def _discard_partial(self, task: _FetchTask) -> None:
        try:
            task.destination.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove partial download %s: %s", task.destination, exc)

    def _fetch_http(self, task: _FetchTask) -> None:
        deadline = self._clock() + self.timeout_seconds
        read_timeout = self.timeout_seconds
        try:
            with self.http.get(
                task.locator,
                headers=dict(task.headers) or None,
                stream=True,
                timeout=(min(CONNECT_TIMEOUT_SECONDS, read_timeout), read_timeout),
            ) as response:
                if not 200 <= response.status_code < 300:
                    raise ResourceFetchError(task.name, f"HTTP {response.status_code}")
                written = 0
                with task.destination.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        written += len(chunk)
                        if self.max_bytes is not None and written > self.max_bytes:
                            raise ResourceFetchError(
                                task.name, f"payload exceeds {self.max_bytes} bytes"
                            )
                        handle.write(chunk)
                        if self._clock() > deadline:
                            raise ResourceFetchError(
                                task.name, f"timed out after {self.timeout_seconds:g}s"
                            )
        except requests.Timeout as exc:
            raise ResourceFetchError(
                task.name, f"timed out after {self.timeout_seconds:g}s"
            ) from exc
        except requests.RequestException as exc:
            raise ResourceFetchError(task.name, f"connection failed: {exc}") from exc

    def _fetch_gcs(self, task: _FetchTask) -> None:
        if self.storage_client is None:
            raise ResourceFetchError(task.name, "no storage client configured for gs:// locators")
        try:
            download_blob_to_file(
                self.storage_client,
                task.locator,
                task.destination,
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            raise ResourceFetchError(task.name, f"storage download failed: {exc}") from exc
