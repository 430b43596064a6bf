"""Work queue interface shared by the in-process and Redis implementations."""

import os
from abc import ABC, abstractmethod
from typing import Optional

from avatar_pipeline.jobs.models import (
    Delivery,
    JobHandle,
    JobPayload,
    JobRecord,
    JobResult,
    QueueStats,
)


class InvalidJobError(ValueError):
    """Raised by enqueue when a payload violates the staging invariants."""


def check_staged_file(payload: JobPayload) -> None:
    """The staged image must exist and be non-empty at enqueue time."""
    if not os.path.isfile(payload.image_path):
        raise InvalidJobError(f"Staged image not found: {payload.image_path}")
    if os.path.getsize(payload.image_path) == 0:
        raise InvalidJobError(f"Staged image is empty: {payload.image_path}")


class JobQueue(ABC):
    """At-least-once work queue between API producers and pipeline workers.

    A delivered job belongs to a single worker until it calls ``ack`` or
    ``fail``. No ordering is guaranteed across jobs.
    """

    def __init__(self, name: str, max_attempts: int = 1):
        self.name = name
        self.max_attempts = max(1, max_attempts)

    @abstractmethod
    async def enqueue(self, job: JobPayload) -> JobHandle:
        """Durably accept a job and return without waiting for processing."""
        ...

    @abstractmethod
    async def dequeue(self) -> Delivery:
        """Suspend until a job is available and claim it exclusively."""
        ...

    @abstractmethod
    async def ack(self, delivery: Delivery, result: Optional[JobResult] = None) -> None:
        """Mark a delivered job as completed."""
        ...

    @abstractmethod
    async def fail(self, delivery: Delivery, error: str) -> bool:
        """Mark a delivered job as failed. Returns True if it was requeued."""
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def stats(self) -> QueueStats:
        ...

    async def close(self) -> None:
        """Release connections held by the queue."""
        return None
