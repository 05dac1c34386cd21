"""Main FastAPI application."""

import logging
import shutil
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from render_service.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Ensure logging output if Uvicorn hijacked the root logger but didn't set level/handlers as expected
if not logging.getLogger().handlers:
    console = logging.StreamHandler()
    console.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    logging.getLogger().addHandler(console)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting render service...")
    settings.ensure_directories()

    from render_service.services.job_queue import job_queue
    from render_service.services.websocket_manager import websocket_manager

    job_queue.set_websocket_manager(websocket_manager)
    await job_queue.start_worker()

    yield

    logger.info("Shutting down render service...")
    await job_queue.stop_worker()

    # Running jobs have released their files; anything left is an orphan
    temp_path = Path(settings.TEMP_DIR)
    if temp_path.exists():
        try:
            for item in temp_path.iterdir():
                if item.is_file():
                    item.unlink()
                elif item.is_dir():
                    shutil.rmtree(item)
                logger.info(f"Cleaned temp entry on shutdown: {item.name}")
        except Exception as e:
            logger.error(f"Error cleaning temp directory on shutdown: {e}")


app = FastAPI(
    title="Render Service",
    description="Queued video rendering from a source clip and narration audio",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from render_service.routes import jobs, render, websocket  # noqa: E402

app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])
app.include_router(render.router, prefix="/api", tags=["render"])
app.include_router(websocket.router, tags=["websocket"])


@app.get("/api/health")
async def health_check():
    """Health check with queue depth and in-flight count."""
    from render_service.services.job_queue import job_queue

    queue_status = job_queue.get_queue_status()

    return {
        "status": "healthy",
        "running": queue_status["running"],
        "max_running": queue_status["max_running"],
        "queue_size": queue_status["queue_size"],
        "indexed_jobs": queue_status["indexed_jobs"],
    }
