"""Photo Avatar Service - FastAPI application.

With ``QUEUE_BACKEND=local`` the worker pool runs inside this process. With
``QUEUE_BACKEND=redis`` the API only enqueues, and workers run separately
via ``python -m avatar_pipeline.worker_main``.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from avatar_pipeline.config import settings
from avatar_pipeline.logging_config import configure_logging
from avatar_pipeline.api.v1.router import v1_router
from avatar_pipeline.api.v1.health import router as health_root_router
from avatar_pipeline.api.v1 import jobs as jobs_api
from avatar_pipeline.api.v1 import upload as upload_api
from avatar_pipeline.db.supabase_client import build_avatar_store
from avatar_pipeline.jobs.factory import build_queue
from avatar_pipeline.jobs.runner import WorkerPool
from avatar_pipeline.notify.notifier import LoggingNotifier
from avatar_pipeline.pipeline.worker import PhotoAvatarWorker
from avatar_pipeline.provider.client import HttpProviderClient
from avatar_pipeline.storage.temp_files import temp_files

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    configure_logging()
    logger.info(f"Starting Photo Avatar Service on port {settings.api_port}")
    logger.info(f"Queue backend: {settings.queue_backend} ({settings.queue_name})")
    logger.info(f"Upload dir: {temp_files.base_dir}")

    queue = build_queue(settings)
    provider = None
    pool = None

    if settings.queue_backend == "local":
        provider = HttpProviderClient.from_settings(settings)
        worker = PhotoAvatarWorker.from_settings(
            settings,
            provider=provider,
            notifier=LoggingNotifier(),
            store=build_avatar_store(),
            temp_files=temp_files,
        )
        pool = WorkerPool(queue, worker, concurrency=settings.worker_concurrency)
        await pool.start()

    # Wire queue into API endpoints
    jobs_api.set_queue(queue)
    upload_api.set_queue(queue)

    yield

    logger.info("Shutting down Photo Avatar Service")
    if pool is not None:
        await pool.stop()
    if provider is not None:
        await provider.aclose()
    await queue.close()
    temp_files.cleanup_expired()


app = FastAPI(
    title="Photo Avatar Service",
    description="Queues photo uploads and trains custom avatars with the provider",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
