"""Tests for the photo avatar pipeline worker state machine."""

import asyncio

import pytest

from avatar_pipeline.pipeline.errors import (
    PersistenceError,
    PipelineFailed,
    ProviderApiError,
    UploadError,
)
from avatar_pipeline.db.avatar_store import InMemoryAvatarStore
from avatar_pipeline.pipeline.worker import PipelineStage
from avatar_pipeline.provider.client import TrainingAck, UploadResult

STAGE_ORDER = ["upload", "group-creation", "training", "saving", "complete"]

SUCCESS_SEQUENCE = [
    ("upload", "progress"),
    ("upload", "success"),
    ("group-creation", "progress"),
    ("group-creation", "success"),
    ("training", "progress"),
    ("training", "progress"),
    ("saving", "progress"),
    ("complete", "success"),
]


class FailingStore(InMemoryAvatarStore):
    def __init__(self, error=None):
        super().__init__()
        self.error = error or PersistenceError("database unavailable")

    async def create(self, record):
        raise self.error


def assert_stage_order(pairs):
    """Stages never go backwards; a final "error" may follow any stage."""
    stages = [stage for stage, _ in pairs]
    if stages and stages[-1] == "error":
        stages = stages[:-1]
    assert "error" not in stages
    indexes = [STAGE_ORDER.index(stage) for stage in stages]
    assert indexes == sorted(indexes)


@pytest.mark.asyncio
async def test_successful_run_notifies_persists_and_deletes(make_worker, make_payload, notifier, store, staged_image):
    run = await make_worker().process(make_payload())

    assert notifier.pairs == SUCCESS_SEQUENCE
    assert notifier.events[4][3]["message"].startswith("Preparing")
    assert notifier.events[5][3]["message"].startswith("Training")
    complete = notifier.payload_for("complete", "success")
    assert complete["avatarId"] == "av1"
    assert complete["previewImageUrl"] == "https://x/p.jpg"
    assert all(user_id == "u1" for user_id, _, _, _ in notifier.events)

    record = store.get("av1")
    assert record is not None
    assert record.status == "pending"
    assert record.user_id == "u1"
    assert record.avatar_name == "Jane"
    assert record.gender == "female"
    assert record.age_group == "adult"
    assert record.avatar_group_id == "g1"
    assert record.preview_video_url == ""
    assert record.default is False

    assert run.stage == PipelineStage.COMPLETED
    assert run.image_key == "k1"
    assert run.result().avatar_id == "av1"
    assert not staged_image.exists()


@pytest.mark.asyncio
async def test_provider_calls_follow_stage_order(make_worker, make_payload, provider):
    await make_worker().process(make_payload())

    assert provider.call_names == ["upload", "group", "train"]
    assert provider.calls[0][1] == "image/jpeg"
    assert provider.calls[1][1:3] == ("Jane", "k1")
    assert provider.calls[2] == ("train", "g1")


@pytest.mark.asyncio
async def test_upload_without_image_key_fails_once(make_worker, make_payload, provider, notifier, store, staged_image):
    provider.upload_result = UploadResult(image_key="")

    with pytest.raises(PipelineFailed) as exc_info:
        await make_worker().process(make_payload())

    assert exc_info.value.stage == "upload"
    assert isinstance(exc_info.value.cause, UploadError)
    assert notifier.pairs == [("upload", "progress"), ("upload", "error")]
    assert notifier.payload_for("upload", "error")["errorCode"] == "upload_failed"
    assert store.all() == []
    assert provider.call_names == ["upload"]
    assert not staged_image.exists()


@pytest.mark.asyncio
async def test_upload_http_error_maps_to_stage_message(make_worker, make_payload, provider, notifier, staged_image):
    provider.upload_error = ProviderApiError("too big", status_code=413)

    with pytest.raises(PipelineFailed):
        await make_worker().process(make_payload())

    info = notifier.payload_for("upload", "error")
    assert info["errorCode"] == "file_too_large"
    assert "too large" in info["message"]
    assert not staged_image.exists()


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 429, 500])
async def test_group_creation_failure_is_terminal(make_worker, make_payload, provider, notifier, store, staged_image, status_code):
    provider.group_error = ProviderApiError("rejected", status_code=status_code)

    with pytest.raises(PipelineFailed) as exc_info:
        await make_worker().process(make_payload())

    assert exc_info.value.stage == "group-creation"
    assert notifier.pairs == [
        ("upload", "progress"),
        ("upload", "success"),
        ("group-creation", "progress"),
        ("group-creation", "error"),
    ]
    assert "train" not in provider.call_names
    assert store.all() == []
    assert not staged_image.exists()


@pytest.mark.asyncio
async def test_group_creation_400_and_429_messages_differ(make_worker, make_payload, provider, notifier, staged_image):
    messages = {}
    for status_code in (400, 429):
        staged_image.write_bytes(b"jpeg")
        notifier.events.clear()
        provider.group_error = ProviderApiError("rejected", status_code=status_code)
        with pytest.raises(PipelineFailed):
            await make_worker().process(make_payload())
        info = notifier.payload_for("group-creation", "error")
        messages[status_code] = info["message"]
        assert info["statusCode"] == status_code

    assert messages[400] != messages[429]
    assert "format" in messages[400]
    assert "retry" in messages[429]


@pytest.mark.asyncio
async def test_group_creation_insufficient_credit(make_worker, make_payload, provider, notifier):
    provider.group_error = ProviderApiError(
        "rejected",
        status_code=400,
        body={"error": {"code": "insufficient_credit", "message": "no credits"}},
    )

    with pytest.raises(PipelineFailed):
        await make_worker().process(make_payload())

    assert notifier.payload_for("group-creation", "error")["errorCode"] == "insufficient_credits"


@pytest.mark.asyncio
async def test_unacknowledged_training_does_not_abort(make_worker, make_payload, provider, notifier, store, staged_image):
    provider.train_ack = TrainingAck(accepted=False, status_code=500, body={"error": "busy"})

    run = await make_worker().process(make_payload())

    assert run.stage == PipelineStage.COMPLETED
    assert notifier.pairs[-1] == ("complete", "success")
    assert store.get("av1") is not None
    assert not staged_image.exists()


@pytest.mark.asyncio
async def test_training_exception_does_not_abort(make_worker, make_payload, provider, notifier, store):
    provider.train_error = ProviderApiError("connection reset")

    run = await make_worker().process(make_payload())

    assert run.stage == PipelineStage.COMPLETED
    assert ("training", "error") not in notifier.pairs
    assert store.get("av1") is not None


@pytest.mark.asyncio
async def test_persistence_failure_notifies_and_cleans_up(make_worker, make_payload, notifier, staged_image):
    worker = make_worker(store=FailingStore())

    with pytest.raises(PersistenceError):
        await worker.process(make_payload())

    assert notifier.pairs[-2:] == [("saving", "progress"), ("error", "error")]
    assert ("complete", "success") not in notifier.pairs
    assert_stage_order(notifier.pairs)
    assert not staged_image.exists()


@pytest.mark.asyncio
async def test_unknown_store_error_is_classified_as_persistence(make_worker, make_payload, notifier):
    worker = make_worker(store=FailingStore(RuntimeError("socket closed")))

    with pytest.raises(PersistenceError):
        await worker.process(make_payload())

    assert notifier.payload_for("error", "error")["errorCode"] == "persistence_failed"


@pytest.mark.asyncio
async def test_unexpected_provider_exception_goes_to_outer_handler(make_worker, make_payload, provider, notifier, store, staged_image):
    provider.upload_error = RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await make_worker().process(make_payload())

    assert notifier.pairs == [("upload", "progress"), ("error", "error")]
    assert notifier.payload_for("error", "error")["errorCode"] == "processing_error"
    assert store.all() == []
    assert not staged_image.exists()


@pytest.mark.asyncio
async def test_missing_staged_file_reports_file_not_found(make_worker, make_payload, notifier, staged_image):
    payload = make_payload()
    staged_image.unlink()

    with pytest.raises(FileNotFoundError):
        await make_worker().process(payload)

    assert notifier.pairs == [("upload", "progress"), ("error", "error")]
    assert notifier.payload_for("error", "error")["errorCode"] == "file_not_found"


@pytest.mark.asyncio
async def test_notifier_failures_never_abort_the_pipeline(make_worker, make_payload, store, staged_image):
    class BrokenNotifier:
        def notify(self, user_id, stage, status, payload):
            raise ConnectionError("socket gone")

    run = await make_worker(notifier=BrokenNotifier()).process(make_payload())

    assert run.stage == PipelineStage.COMPLETED
    assert store.get("av1") is not None
    assert not staged_image.exists()


@pytest.mark.asyncio
async def test_slow_async_notifier_does_not_hold_up_the_job(make_worker, make_payload, store):
    seen = []

    class SlowNotifier:
        async def notify(self, user_id, stage, status, payload):
            await asyncio.sleep(0.2)
            seen.append((stage, status))

    worker = make_worker(notifier=SlowNotifier())
    loop = asyncio.get_running_loop()
    started = loop.time()

    run = await worker.process(make_payload())

    assert loop.time() - started < 0.2
    assert run.stage == PipelineStage.COMPLETED
    assert store.get("av1") is not None

    await worker.drain_notifications()
    assert seen == SUCCESS_SEQUENCE


@pytest.mark.asyncio
async def test_failing_async_notifier_is_logged_not_raised(make_worker, make_payload, caplog):
    class BrokenAsyncNotifier:
        async def notify(self, user_id, stage, status, payload):
            raise ConnectionError("socket gone")

    worker = make_worker(notifier=BrokenAsyncNotifier())

    run = await worker.process(make_payload())
    await worker.drain_notifications()

    assert run.stage == PipelineStage.COMPLETED
    assert "complete/success for user u1 not delivered" in caplog.text


@pytest.mark.asyncio
async def test_job_timeout_cleans_up_and_reports(make_worker, make_payload, notifier, store, staged_image):
    worker = make_worker(training_delay_seconds=5, job_timeout_seconds=0.05)

    with pytest.raises(asyncio.TimeoutError):
        await worker.process(make_payload())

    assert notifier.pairs[-1] == ("error", "error")
    assert notifier.payload_for("error", "error")["errorCode"] == "timeout"
    assert_stage_order(notifier.pairs)
    assert store.all() == []
    assert not staged_image.exists()


@pytest.mark.asyncio
async def test_timeout_during_upload_reports_once(make_worker, make_payload, provider, notifier, staged_image):
    async def hanging_upload(data, content_type, idempotency_key=None):
        await asyncio.sleep(5)

    provider.upload_asset = hanging_upload
    worker = make_worker(job_timeout_seconds=0.05)

    with pytest.raises(asyncio.TimeoutError):
        await worker.process(make_payload())

    assert notifier.pairs == [("upload", "progress"), ("error", "error")]
    assert not staged_image.exists()


@pytest.mark.asyncio
async def test_record_write_finishes_past_the_job_deadline(make_worker, make_payload, notifier, staged_image):
    class SlowStore(InMemoryAvatarStore):
        async def create(self, record):
            await asyncio.sleep(0.2)
            return await super().create(record)

    slow_store = SlowStore()
    worker = make_worker(store=slow_store, job_timeout_seconds=0.05)

    run = await worker.process(make_payload())

    assert run.stage == PipelineStage.COMPLETED
    assert slow_store.get("av1") is not None
    assert notifier.pairs == SUCCESS_SEQUENCE
    assert not staged_image.exists()


@pytest.mark.asyncio
async def test_training_delay_does_not_block_other_jobs(make_worker, make_payload, tmp_path, store):
    other_image = tmp_path / "b.jpg"
    other_image.write_bytes(b"jpeg")
    slow = make_worker(training_delay_seconds=30)
    fast = make_worker()

    slow_task = asyncio.create_task(slow.process(make_payload()))
    await asyncio.sleep(0.01)
    run = await fast.process(make_payload(image_path=str(other_image)))

    assert run.stage == PipelineStage.COMPLETED
    assert not slow_task.done()

    slow_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await slow_task
    # The cancelled job still released its staged image
    assert not (tmp_path / "a.jpg").exists()


@pytest.mark.asyncio
async def test_idempotency_keys_sent_when_enabled(make_worker, make_payload, provider):
    payload = make_payload()

    await make_worker(send_idempotency_key=True).process(payload)

    assert provider.calls[0][2] == f"{payload.job_id}-upload"
    assert provider.calls[1][3] == f"{payload.job_id}-group"


@pytest.mark.asyncio
async def test_idempotency_keys_omitted_by_default(make_worker, make_payload, provider):
    await make_worker().process(make_payload())

    assert provider.calls[0][2] is None
    assert provider.calls[1][3] is None
