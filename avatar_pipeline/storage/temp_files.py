"""Staged upload files: creation by producers, single release by the worker."""

import logging
import os
import tempfile
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from avatar_pipeline.config import settings

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class TempFileLease:
    """Ownership of one staged file for the duration of a job."""

    def __init__(self, manager: "TempFileManager", path: PathLike):
        self._manager = manager
        self.path = Path(path)
        self.released = False

    def release(self) -> None:
        """Delete the file. Only the first call does anything."""
        if self.released:
            return
        self.released = True
        self._manager.delete_if_exists(self.path)


class TempFileManager:
    """Manages staged source images with TTL-based cleanup of orphans."""

    def __init__(self, base_dir: Optional[str] = None, ttl_hours: int = 2):
        if base_dir:
            self._base_dir = base_dir
        else:
            self._base_dir = os.path.join(tempfile.gettempdir(), "avatar_uploads")
        os.makedirs(self._base_dir, exist_ok=True)
        self._ttl_seconds = ttl_hours * 3600

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def stage(self, data: bytes, suffix: str = ".jpg") -> Path:
        """Write an uploaded image under a unique name and return its path."""
        if not suffix.startswith("."):
            suffix = f".{suffix}"
        path = Path(self._base_dir) / f"{uuid.uuid4().hex}{suffix.lower()}"
        path.write_bytes(data)
        return path

    def delete_if_exists(self, path: PathLike) -> bool:
        """Remove a staged file. Returns False if it was already gone."""
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        logger.debug(f"Deleted staged file {path}")
        return True

    @asynccontextmanager
    async def lease(self, path: PathLike) -> AsyncIterator[TempFileLease]:
        """Hold a staged file; it is deleted on exit unless released earlier."""
        held = TempFileLease(self, path)
        try:
            yield held
        finally:
            held.release()

    def cleanup_expired(self) -> int:
        """Remove staged files older than TTL. Returns count of removed files."""
        now = time.time()
        removed = 0
        if not os.path.exists(self._base_dir):
            return 0
        for entry in os.listdir(self._base_dir):
            path = os.path.join(self._base_dir, entry)
            if not os.path.isfile(path):
                continue
            if now - os.path.getmtime(path) > self._ttl_seconds:
                if self.delete_if_exists(path):
                    removed += 1
        if removed:
            logger.info(f"Removed {removed} expired staged file(s) from {self._base_dir}")
        return removed


# Global instance
temp_files = TempFileManager(base_dir=settings.upload_dir, ttl_hours=settings.temp_file_ttl_hours)
