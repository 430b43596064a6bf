"""
Pytest configuration and shared doubles for the photo avatar pipeline tests.
"""

import os
import tempfile

import pytest

# Keep the module-level staging dir out of the real temp root during tests
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="avatar_test_uploads_"))

from avatar_pipeline.db.avatar_store import InMemoryAvatarStore
from avatar_pipeline.jobs.models import JobPayload
from avatar_pipeline.pipeline.worker import PhotoAvatarWorker
from avatar_pipeline.provider.client import (
    AvatarGroup,
    ProviderClient,
    TrainingAck,
    UploadResult,
)
from avatar_pipeline.storage.temp_files import TempFileManager


class RecordingNotifier:
    """Collects every notification in order."""

    def __init__(self):
        self.events = []

    def notify(self, user_id, stage, status, payload):
        self.events.append((user_id, stage, status, payload))

    @property
    def pairs(self):
        return [(stage, status) for _, stage, status, _ in self.events]

    def payload_for(self, stage, status):
        for _, s, st, payload in self.events:
            if (s, st) == (stage, status):
                return payload
        raise KeyError((stage, status))


class StubProvider(ProviderClient):
    """Provider double. Set an ``*_error`` attribute to make a call raise."""

    def __init__(self):
        self.upload_result = UploadResult(image_key="k1")
        self.group_result = AvatarGroup(
            avatar_id="av1", group_id="g1", preview_image_url="https://x/p.jpg"
        )
        self.train_ack = TrainingAck(accepted=True, status_code=200)
        self.upload_error = None
        self.group_error = None
        self.train_error = None
        self.calls = []

    async def upload_asset(self, data, content_type, idempotency_key=None):
        self.calls.append(("upload", content_type, idempotency_key))
        if self.upload_error:
            raise self.upload_error
        return self.upload_result

    async def create_avatar_group(self, name, image_key, idempotency_key=None):
        self.calls.append(("group", name, image_key, idempotency_key))
        if self.group_error:
            raise self.group_error
        return self.group_result

    async def train(self, group_id):
        self.calls.append(("train", group_id))
        if self.train_error:
            raise self.train_error
        return self.train_ack

    @property
    def call_names(self):
        return [call[0] for call in self.calls]


@pytest.fixture
def temp_manager(tmp_path):
    return TempFileManager(base_dir=str(tmp_path / "uploads"))


@pytest.fixture
def staged_image(tmp_path):
    path = tmp_path / "a.jpg"
    path.write_bytes(b"\xff\xd8\xff\xe0fake-jpeg-bytes")
    return path


@pytest.fixture
def make_payload(staged_image):
    def _make(**overrides):
        fields = {
            "image_path": str(staged_image),
            "age_group": "adult",
            "name": "Jane",
            "gender": "female",
            "user_id": "u1",
            "mime_type": "image/jpeg",
        }
        fields.update(overrides)
        return JobPayload(**fields)

    return _make


@pytest.fixture
def provider():
    return StubProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store():
    return InMemoryAvatarStore()


@pytest.fixture
def make_worker(provider, notifier, store, temp_manager):
    def _make(**overrides):
        kwargs = {
            "provider": provider,
            "notifier": notifier,
            "store": store,
            "temp_files": temp_manager,
            "training_delay_seconds": 0,
        }
        kwargs.update(overrides)
        return PhotoAvatarWorker(**kwargs)

    return _make
