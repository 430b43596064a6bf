"""Standalone worker process for the Redis-backed queue.

    python -m avatar_pipeline.worker_main

Runs ``WORKER_CONCURRENCY`` slots until SIGINT/SIGTERM, then stops the pool,
closes the provider client and the queue connection.
"""

import asyncio
import logging
import signal

from avatar_pipeline.config import settings
from avatar_pipeline.db.supabase_client import build_avatar_store
from avatar_pipeline.jobs.factory import build_queue
from avatar_pipeline.jobs.runner import WorkerPool
from avatar_pipeline.logging_config import configure_logging
from avatar_pipeline.notify.notifier import LoggingNotifier
from avatar_pipeline.pipeline.worker import PhotoAvatarWorker
from avatar_pipeline.provider.client import HttpProviderClient
from avatar_pipeline.storage.temp_files import temp_files

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    if settings.queue_backend != "redis":
        raise RuntimeError("A separate worker process needs QUEUE_BACKEND=redis")

    queue = build_queue(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with HttpProviderClient.from_settings(settings) as provider:
        worker = PhotoAvatarWorker.from_settings(
            settings,
            provider=provider,
            notifier=LoggingNotifier(),
            store=build_avatar_store(),
            temp_files=temp_files,
        )
        pool = WorkerPool(queue, worker, concurrency=settings.worker_concurrency)
        await pool.start()
        try:
            await stop.wait()
        finally:
            await pool.stop()
            await queue.close()


def main() -> None:
    configure_logging()
    logger.info(f"Starting photo avatar worker on {settings.queue_name} ({settings.worker_concurrency} slot(s))")
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
