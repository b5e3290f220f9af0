from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from models.render_models import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(ok=True)


@router.get("/", response_class=PlainTextResponse)
async def root():
    return "Video Rendering Service Running"
