"""Durable job queue on Redis.

Reliable-queue layout, all keys prefixed with the queue name:

  <name>:pending     list of job ids waiting for a worker
  <name>:processing  list of job ids claimed by a worker (atomic BLMOVE)
  <name>:jobs        hash job id -> JobRecord JSON
  <name>:leases      sorted set job id -> lease expiry (unix seconds)
  <name>:paths       set of staged image paths referenced by unfinished jobs

A worker that dies mid-job leaves its id in ``processing``; once the lease
expires ``recover_stale`` moves it back to ``pending`` (redelivery) or marks
it dead when no attempts are left. An id claimed by a worker that died
before writing its lease is given one on the next recovery pass, so it is
redelivered one lease period later.
"""

import logging
import time
from datetime import datetime
from typing import Optional

import redis.asyncio as redis

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


class RedisQueue(JobQueue):
    """At-least-once queue shared by API and worker processes."""

    def __init__(
        self,
        client: "redis.Redis",
        name: str = "photo-avatar",
        max_attempts: int = 1,
        lease_seconds: int = 900,
        poll_timeout: float = 1.0,
    ):
        super().__init__(name, max_attempts)
        self._redis = client
        self._lease_seconds = lease_seconds
        self._poll_timeout = poll_timeout
        self._pending_key = f"{name}:pending"
        self._processing_key = f"{name}:processing"
        self._jobs_key = f"{name}:jobs"
        self._leases_key = f"{name}:leases"
        self._paths_key = f"{name}:paths"

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisQueue":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    async def enqueue(self, job: JobPayload) -> JobHandle:
        check_staged_file(job)

        if not await self._redis.sadd(self._paths_key, job.image_path):
            raise InvalidJobError(
                f"Staged image {job.image_path} is already referenced by another job"
            )

        record = JobRecord(id=job.job_id, payload=job)
        if not await self._redis.hsetnx(self._jobs_key, job.job_id, record.model_dump_json()):
            await self._redis.srem(self._paths_key, job.image_path)
            raise InvalidJobError(f"Job {job.job_id} was already enqueued")

        await self._redis.lpush(self._pending_key, job.job_id)
        logger.info(f"Job {job.job_id} added to queue {self.name}")
        return JobHandle(job_id=job.job_id, queued_at=record.created_at)

    async def dequeue(self) -> Delivery:
        while True:
            job_id = await self._redis.blmove(
                self._pending_key,
                self._processing_key,
                self._poll_timeout,
                "RIGHT",
                "LEFT",
            )
            if job_id is None:
                continue

            record = await self._load(job_id)
            if record is None or record.status != JobStatus.PENDING:
                logger.warning(f"Dropping unknown or finished job id {job_id} from {self.name}")
                await self._redis.lrem(self._processing_key, 1, job_id)
                continue

            record.status = JobStatus.RUNNING
            record.attempts += 1
            record.started_at = datetime.utcnow()
            await self._redis.zadd(self._leases_key, {job_id: time.time() + self._lease_seconds})
            await self._save(record)
            return Delivery(payload=record.payload, attempt=record.attempts)

    async def ack(self, delivery: Delivery, result: Optional[JobResult] = None) -> None:
        record = await self._release(delivery)
        if record is None:
            return
        record.status = JobStatus.COMPLETED
        record.result = result
        record.error = None
        record.completed_at = datetime.utcnow()
        await self._save(record)
        await self._redis.srem(self._paths_key, record.payload.image_path)

    async def fail(self, delivery: Delivery, error: str) -> bool:
        record = await self._release(delivery)
        if record is None:
            return False
        record.error = error
        return await self._retry_or_finish(record, JobStatus.FAILED)

    async def recover_stale(self, now: Optional[float] = None) -> int:
        """Redeliver jobs whose worker lease expired. Returns the count handled."""
        now = time.time() if now is None else now
        await self._lease_unleased_claims(now)
        expired = await self._redis.zrangebyscore(self._leases_key, "-inf", now)
        handled = 0
        for job_id in expired:
            # LREM decides which recoverer owns the job when several race
            if not await self._redis.lrem(self._processing_key, 1, job_id):
                await self._redis.zrem(self._leases_key, job_id)
                continue
            await self._redis.zrem(self._leases_key, job_id)
            record = await self._load(job_id)
            if record is None:
                continue
            record.error = "Worker lease expired"
            logger.warning(f"Job {job_id} lease expired after attempt {record.attempts}")
            await self._retry_or_finish(record, JobStatus.DEAD)
            handled += 1
        return handled

    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        return await self._load(job_id)

    async def stats(self) -> QueueStats:
        stats = QueueStats(queue_name=self.name)
        for raw in await self._redis.hvals(self._jobs_key):
            field = JobRecord.model_validate_json(raw).status.value
            setattr(stats, field, getattr(stats, field) + 1)
        return stats

    async def close(self) -> None:
        await self._redis.aclose()

    async def _retry_or_finish(self, record: JobRecord, final_status: JobStatus) -> bool:
        if record.attempts < self.max_attempts:
            record.status = JobStatus.PENDING
            await self._save(record)
            await self._redis.lpush(self._pending_key, record.id)
            logger.warning(
                f"Job {record.id} failed on attempt {record.attempts}/{self.max_attempts}, requeued"
            )
            return True

        record.status = final_status
        record.completed_at = datetime.utcnow()
        await self._save(record)
        await self._redis.srem(self._paths_key, record.payload.image_path)
        return False

    async def _lease_unleased_claims(self, now: float) -> None:
        """Give claimed ids with no lease (worker died right after BLMOVE) a grace lease.

        ZADD NX never shortens a lease the claiming worker already wrote, and a
        worker that is merely slow overwrites the grace lease with its own.
        """
        claimed = await self._redis.lrange(self._processing_key, 0, -1)
        for job_id in claimed:
            if await self._redis.zscore(self._leases_key, job_id) is None:
                await self._redis.zadd(
                    self._leases_key, {job_id: now + self._lease_seconds}, nx=True
                )
                logger.warning(f"Job {job_id} was claimed without a lease, granting {self._lease_seconds}s")

    async def _release(self, delivery: Delivery) -> Optional[JobRecord]:
        record = await self._load(delivery.job_id)
        if (
            record is None
            or record.status != JobStatus.RUNNING
            or record.attempts != delivery.attempt
        ):
            # Lease expired and the job was recovered or handed to someone else
            logger.warning(f"Job {delivery.job_id} attempt {delivery.attempt} is no longer owned by this worker")
            return None
        await self._redis.lrem(self._processing_key, 1, delivery.job_id)
        await self._redis.zrem(self._leases_key, delivery.job_id)
        return record

    async def _load(self, job_id: str) -> Optional[JobRecord]:
        raw = await self._redis.hget(self._jobs_key, job_id)
        if raw is None:
            return None
        return JobRecord.model_validate_json(raw)

    async def _save(self, record: JobRecord) -> None:
        await self._redis.hset(self._jobs_key, record.id, record.model_dump_json())
