"""Avatar record model and the stores the pipeline persists into."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from avatar_pipeline.pipeline.errors import DuplicateAvatarError, PersistenceError

logger = logging.getLogger(__name__)


class AvatarRecord(BaseModel):
    """A user's custom photo avatar, created once training has been requested."""
    avatar_id: str
    user_id: str
    avatar_name: str
    avatar_group_id: Optional[str] = None
    gender: Optional[str] = None
    preview_image_url: Optional[str] = None
    preview_video_url: str = ""
    default: bool = False
    ethnicity: Optional[str] = None
    age_group: Optional[str] = None
    status: str = "pending"
    created_at: datetime = Field(default_factory=datetime.utcnow)


class AvatarRecordStore(ABC):
    @abstractmethod
    async def create(self, record: AvatarRecord) -> AvatarRecord:
        """Persist a new record. Unique on ``avatar_id``."""
        ...


class InMemoryAvatarStore(AvatarRecordStore):
    """Dict-backed store for local runs and tests."""

    def __init__(self):
        self._records: Dict[str, AvatarRecord] = {}

    async def create(self, record: AvatarRecord) -> AvatarRecord:
        if record.avatar_id in self._records:
            raise DuplicateAvatarError(f"Avatar {record.avatar_id} already exists")
        self._records[record.avatar_id] = record
        return record

    def get(self, avatar_id: str) -> Optional[AvatarRecord]:
        return self._records.get(avatar_id)

    def all(self) -> List[AvatarRecord]:
        return list(self._records.values())


class SupabaseAvatarStore(AvatarRecordStore):
    """Writes records to a Supabase table through the service-role client.

    The supabase client is synchronous, so inserts run in a thread to keep
    the event loop free for other jobs.
    """

    def __init__(self, client, table: str = "avatars"):
        self._client = client
        self._table = table

    async def create(self, record: AvatarRecord) -> AvatarRecord:
        row = record.model_dump(mode="json")
        try:
            await asyncio.to_thread(self._insert, row)
        except Exception as exc:
            # Postgres unique_violation
            if getattr(exc, "code", None) == "23505":
                raise DuplicateAvatarError(f"Avatar {record.avatar_id} already exists") from exc
            raise PersistenceError(f"Failed to save avatar {record.avatar_id}: {exc}") from exc
        logger.info(f"Avatar {record.avatar_id} saved to {self._table}")
        return record

    def _insert(self, row: dict) -> None:
        self._client.table(self._table).insert(row).execute()
