import asyncio
import logging
import threading
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import FileResponse, JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.types import Receive, Scope, Send

from dependencies.render import get_job_slots, get_orchestrator
from models.render_errors import JobError, JobErrorKind
from models.render_models import RenderErrorDetail, RenderErrorResponse, RenderResponse
from operators.render_operator import RenderOrchestrator
from utils.output_delivery import DeliveryResult


router = APIRouter(tags=["render"])
logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 1.0

ERROR_STATUS = {
    JobErrorKind.VALIDATION: 400,
    JobErrorKind.GRAPH_RESOLUTION: 400,
    JobErrorKind.RESOURCE_FETCH: 502,
    JobErrorKind.DELIVERY: 502,
    JobErrorKind.PROCESS_TIMEOUT: 504,
    JobErrorKind.PROCESS_CANCELLED: 499,
    JobErrorKind.PROCESS_FAILURE: 500,
    JobErrorKind.OUTPUT_MISSING: 500,
}


def _error_response(exc: JobError) -> JSONResponse:
    body = RenderErrorResponse(ok=False, error=RenderErrorDetail(**exc.to_payload()))
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.kind, 500),
        content=body.model_dump(mode="json"),
    )


class SpooledFileResponse(FileResponse):
    """Streams a spooled render and removes it however the send ends."""

    def __init__(self, result: DeliveryResult):
        super().__init__(
            result.file_path,
            media_type=result.content_type,
            filename=result.filename,
            headers={"X-Render-Job-Id": result.job_id},
        )
        self.result = result

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.result.discard()


async def _cancel_on_disconnect(request: Request, cancel_event: threading.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.warning("Client disconnected; cancelling render job")
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@router.post("/render")
async def create_render(
    request: Request,
    payload: Any = Body(...),
    orchestrator: RenderOrchestrator = Depends(get_orchestrator),
    job_slots: asyncio.Semaphore = Depends(get_job_slots),
):
    cancel_event = threading.Event()

    async with job_slots:
        watcher = asyncio.create_task(_cancel_on_disconnect(request, cancel_event))
        try:
            result = await run_in_threadpool(
                orchestrator.execute,
                payload,
                cancel_event=cancel_event,
            )
        except JobError as exc:
            return _error_response(exc)
        finally:
            watcher.cancel()

    if result.file_path is not None:
        return SpooledFileResponse(result)

    return RenderResponse(
        ok=True,
        job_id=result.job_id,
        url=result.url or "",
        storage_key=result.storage_key,
        size_bytes=result.size_bytes,
        content_type=result.content_type,
    )
