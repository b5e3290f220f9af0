import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import requests
from dotenv import load_dotenv

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from handlers.health_handler import router as health_router
from handlers.render_handler import router as render_router
from operators.render_operator import create_orchestrator
from utils.gcs_utils import get_storage_client
from utils.render_config import RenderSettings

ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(ROOT_DIR / ".env")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def _attach_file_handler(
    logger_name: str,
    log_file_path: Path,
    level_name: str | None = None,
) -> None:
    logger_level = (level_name or LOG_LEVEL).upper()
    logger_level_value = getattr(logging, logger_level, logging.INFO)

    log_file_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
    file_handler.setLevel(logger_level_value)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )

    target_logger = logging.getLogger(logger_name)
    if not any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == str(log_file_path)
        for handler in target_logger.handlers
    ):
        target_logger.addHandler(file_handler)
    target_logger.setLevel(logger_level_value)


RENDER_JOBS_LOG_FILE = os.getenv("RENDER_JOBS_LOG_FILE", "").strip()
RENDER_JOBS_LOG_LEVEL = os.getenv("RENDER_JOBS_LOG_LEVEL", "INFO").strip()
if RENDER_JOBS_LOG_FILE:
    render_log_path = Path(RENDER_JOBS_LOG_FILE)
    if not render_log_path.is_absolute():
        render_log_path = ROOT_DIR / render_log_path
    for name in (
        "handlers.render_handler",
        "operators.render_operator",
        "utils.ffmpeg_process",
        "utils.resource_fetcher",
        "utils.output_delivery",
    ):
        _attach_file_handler(name, render_log_path, level_name=RENDER_JOBS_LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = RenderSettings.from_env()
    http = requests.Session()
    storage_client = get_storage_client() if settings.output_bucket else None

    app.state.settings = settings
    orchestrator = create_orchestrator(settings, http=http, storage_client=storage_client)
    orchestrator.deliverer.sweep_spool(settings.spool_max_age_seconds)
    app.state.orchestrator = orchestrator
    app.state.job_slots = asyncio.Semaphore(settings.max_concurrent_jobs)
    logger.info(
        "render_service_start workspace_root=%s delivery=%s max_jobs=%d",
        settings.workspace_root,
        settings.default_delivery.value,
        settings.max_concurrent_jobs,
    )
    try:
        yield
    finally:
        http.close()
        if storage_client is not None:
            storage_client.close()


app = FastAPI(title="Render Job Orchestrator", lifespan=lifespan)

app.include_router(health_router)
app.include_router(render_router)

CORS_ALLOW_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Render-Job-Id"],
)

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
