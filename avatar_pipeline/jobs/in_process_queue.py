"""In-process job queue using asyncio for local development and tests.

No external dependencies (Redis) needed, but nothing survives a process
restart: use the Redis queue when workers run in separate processes.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional, Set

from avatar_pipeline.jobs.dispatcher import InvalidJobError, JobQueue, check_staged_file
from avatar_pipeline.jobs.models import (
    Delivery,
    JobHandle,
    JobPayload,
    JobRecord,
    JobResult,
    JobStatus,
    QueueStats,
)

logger = logging.getLogger(__name__)


class InProcessQueue(JobQueue):
    """Local async job queue. Each job id is handed to one consumer at a time."""

    def __init__(self, name: str = "photo-avatar", max_attempts: int = 1):
        super().__init__(name, max_attempts)
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._jobs: Dict[str, JobRecord] = {}
        self._in_flight_paths: Set[str] = set()

    async def enqueue(self, job: JobPayload) -> JobHandle:
        if job.job_id in self._jobs:
            raise InvalidJobError(f"Job {job.job_id} was already enqueued")
        check_staged_file(job)
        if job.image_path in self._in_flight_paths:
            raise InvalidJobError(
                f"Staged image {job.image_path} is already referenced by another job"
            )

        record = JobRecord(id=job.job_id, payload=job)
        self._jobs[job.job_id] = record
        self._in_flight_paths.add(job.image_path)
        await self._queue.put(job.job_id)
        logger.info(f"Job {job.job_id} added to queue {self.name}. Queue size: {self._queue.qsize()}")
        return JobHandle(job_id=job.job_id, queued_at=record.created_at)

    async def dequeue(self) -> Delivery:
        while True:
            job_id = await self._queue.get()
            record = self._jobs.get(job_id)
            if record is None or record.status != JobStatus.PENDING:
                continue

            record.status = JobStatus.RUNNING
            record.attempts += 1
            record.started_at = datetime.utcnow()
            return Delivery(payload=record.payload, attempt=record.attempts)

    async def ack(self, delivery: Delivery, result: Optional[JobResult] = None) -> None:
        record = self._jobs[delivery.job_id]
        record.status = JobStatus.COMPLETED
        record.result = result
        record.error = None
        record.completed_at = datetime.utcnow()
        self._in_flight_paths.discard(record.payload.image_path)

    async def fail(self, delivery: Delivery, error: str) -> bool:
        record = self._jobs[delivery.job_id]
        record.error = error
        if record.attempts < self.max_attempts:
            record.status = JobStatus.PENDING
            await self._queue.put(record.id)
            logger.warning(
                f"Job {record.id} failed on attempt {record.attempts}/{self.max_attempts}, requeued"
            )
            return True

        record.status = JobStatus.FAILED
        record.completed_at = datetime.utcnow()
        self._in_flight_paths.discard(record.payload.image_path)
        return False

    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    async def stats(self) -> QueueStats:
        stats = QueueStats(queue_name=self.name)
        for record in self._jobs.values():
            field = record.status.value
            setattr(stats, field, getattr(stats, field) + 1)
        return stats
