"""Job payload and job record data models for the photo avatar queue."""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
import uuid


class AgeGroup(str, Enum):
    CHILD = "child"
    TEEN = "teen"
    ADULT = "adult"
    SENIOR = "senior"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


class JobPayload(BaseModel):
    """One photo-to-avatar request. Immutable once constructed.

    Accepts both snake_case and the camelCase names used by API producers
    (``imagePath``, ``userId``, ...).
    """
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    image_path: str
    age_group: AgeGroup
    name: str = Field(min_length=1)
    gender: Gender
    user_id: str = Field(min_length=1)
    ethnicity: Optional[str] = None
    mime_type: str = "image/jpeg"

    model_config = {
        "frozen": True,
        "alias_generator": to_camel,
        "populate_by_name": True,
    }


class JobHandle(BaseModel):
    """Returned to producers once the queue has accepted a job."""
    job_id: str
    queued_at: datetime = Field(default_factory=datetime.utcnow)


class JobResult(BaseModel):
    avatar_id: str
    group_id: str
    preview_image_url: Optional[str] = None


class JobRecord(BaseModel):
    """Tracks the lifecycle of a queued job."""
    id: str
    payload: JobPayload
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    result: Optional[JobResult] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Delivery(BaseModel):
    """A job handed to exactly one worker until it is acked or failed."""
    payload: JobPayload
    attempt: int

    @property
    def job_id(self) -> str:
        return self.payload.job_id


class QueueStats(BaseModel):
    queue_name: str
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    dead: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.failed + self.dead
