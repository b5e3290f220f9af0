import asyncio

from fastapi import HTTPException, Request

from operators.render_operator import RenderOrchestrator


def get_orchestrator(request: Request) -> RenderOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Render service not initialized")
    return orchestrator


def get_job_slots(request: Request) -> asyncio.Semaphore:
    slots = getattr(request.app.state, "job_slots", None)
    if slots is None:
        raise HTTPException(status_code=503, detail="Render service not initialized")
    return slots
