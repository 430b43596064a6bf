"""Build the job queue from settings."""

from avatar_pipeline.config import Settings
from avatar_pipeline.jobs.dispatcher import JobQueue
from avatar_pipeline.jobs.in_process_queue import InProcessQueue
from avatar_pipeline.jobs.redis_queue import RedisQueue


def build_queue(settings: Settings) -> JobQueue:
    if settings.queue_backend == "redis":
        return RedisQueue.from_url(
            settings.redis_url,
            name=settings.queue_name,
            max_attempts=settings.job_max_attempts,
            lease_seconds=settings.queue_lease_seconds,
        )
    if settings.queue_backend == "local":
        return InProcessQueue(name=settings.queue_name, max_attempts=settings.job_max_attempts)
    raise RuntimeError(f"Unknown queue backend: {settings.queue_backend}")
