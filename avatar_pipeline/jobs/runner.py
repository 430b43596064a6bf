"""Worker pool: independent asyncio slots pulling jobs from a JobQueue."""

import asyncio
import logging
import time
from typing import List, Optional

from avatar_pipeline.jobs.dispatcher import JobQueue
from avatar_pipeline.jobs.models import Delivery
from avatar_pipeline.pipeline.worker import PhotoAvatarWorker

logger = logging.getLogger(__name__)


class WorkerPool:
    """Runs ``concurrency`` worker loops over one queue.

    A slot holds at most one job; while it waits on the provider or the
    training delay the other slots keep going.
    """

    def __init__(
        self,
        queue: JobQueue,
        worker: PhotoAvatarWorker,
        concurrency: int = 1,
        recover_interval: Optional[float] = 60.0,
    ):
        self._queue = queue
        self._worker = worker
        self._concurrency = max(1, concurrency)
        self._recover_interval = recover_interval
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for slot in range(self._concurrency):
            self._tasks.append(asyncio.create_task(self._worker_loop(slot)))
        if self._recover_interval and hasattr(self._queue, "recover_stale"):
            self._tasks.append(asyncio.create_task(self._recover_loop()))
        logger.info(f"Worker pool started on queue {self._queue.name} with {self._concurrency} slot(s)")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        await self._worker.drain_notifications()
        logger.info(f"Worker pool on queue {self._queue.name} stopped")

    async def _worker_loop(self, slot: int) -> None:
        """Process jobs one at a time from the queue."""
        while self._running:
            try:
                delivery = await self._queue.dequeue()
            except Exception as e:
                logger.error(f"Worker slot {slot} could not dequeue from {self._queue.name}: {e}")
                await asyncio.sleep(1.0)
                continue

            try:
                await self.handle(delivery)
            except Exception as e:
                # A Redis lease redelivers a job whose ack or fail was lost
                logger.exception(f"Worker slot {slot} could not settle job {delivery.job_id}: {e}")

    async def handle(self, delivery: Delivery) -> None:
        """Run one delivery through the worker and settle it with the queue."""
        start = time.monotonic()
        logger.info(f"Processing job {delivery.job_id} (attempt {delivery.attempt}) in queue {self._queue.name}")
        try:
            run = await self._worker.process(delivery.payload)
        except Exception as e:
            duration = time.monotonic() - start
            requeued = await self._queue.fail(delivery, f"{type(e).__name__}: {e}")
            logger.error(
                f"Job {delivery.job_id} failed after {duration:.1f}s"
                f"{' (requeued)' if requeued else ''}: {e}"
            )
            return

        await self._queue.ack(delivery, run.result())
        logger.info(f"Job {delivery.job_id} completed successfully in {time.monotonic() - start:.1f}s")

    async def _recover_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._recover_interval)
            try:
                recovered = await self._queue.recover_stale()
            except Exception as e:
                logger.error(f"Stale job recovery failed on queue {self._queue.name}: {e}")
                continue
            if recovered:
                logger.warning(f"Recovered {recovered} stale job(s) on queue {self._queue.name}")
