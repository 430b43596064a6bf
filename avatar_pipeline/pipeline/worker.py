"""
Photo avatar pipeline worker.

Drives one staged photo through the provider workflow:

    upload asset -> create avatar group -> wait, then train -> save record

Every terminal branch releases the staged image exactly once, and the user
hears about progress only through the notifier. Upload and group-creation
failures are terminal and reported with a stage-specific message; a
training request that is not acknowledged is logged and the run continues.
Anything else is reported as a generic error and re-raised to the queue.

The per-job deadline covers the provider stages only. Once the avatar
exists at the provider the record write runs to completion, so a saved
record always ends in ``complete/success``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import NoReturn, Optional

from avatar_pipeline.db.avatar_store import AvatarRecord, AvatarRecordStore
from avatar_pipeline.jobs.models import JobPayload, JobResult
from avatar_pipeline.notify.notifier import Notifier, SafeNotifier
from avatar_pipeline.pipeline.errors import (
    PersistenceError,
    PipelineError,
    PipelineFailed,
    ProviderApiError,
    TrainingError,
    UnexpectedError,
    UploadError,
    describe_general_error,
    describe_group_creation_error,
    describe_upload_error,
)
from avatar_pipeline.provider.client import ProviderClient
from avatar_pipeline.storage.temp_files import TempFileLease, TempFileManager

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    UPLOADING = "uploading"
    GROUP_CREATING = "group_creating"
    TRAINING = "training"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PipelineRun:
    """Worker-local state of one job."""
    payload: JobPayload
    stage: PipelineStage = PipelineStage.UPLOADING
    image_key: Optional[str] = None
    avatar_id: Optional[str] = None
    group_id: Optional[str] = None
    preview_image_url: Optional[str] = None
    error: Optional[PipelineError] = None

    def result(self) -> Optional[JobResult]:
        if self.stage != PipelineStage.COMPLETED:
            return None
        return JobResult(
            avatar_id=self.avatar_id,
            group_id=self.group_id,
            preview_image_url=self.preview_image_url,
        )


class PhotoAvatarWorker:
    """Runs the four-stage photo avatar workflow for one job at a time.

    Collaborators are passed in rather than looked up, so several workers can
    share a provider client and store, and tests can swap in doubles.
    """

    def __init__(
        self,
        provider: ProviderClient,
        notifier: Notifier,
        store: AvatarRecordStore,
        temp_files: TempFileManager,
        training_delay_seconds: float = 20.0,
        job_timeout_seconds: Optional[float] = None,
        send_idempotency_key: bool = False,
    ):
        self._provider = provider
        self._notifier = notifier if isinstance(notifier, SafeNotifier) else SafeNotifier(notifier)
        self._store = store
        self._temp_files = temp_files
        self._training_delay = training_delay_seconds
        self._job_timeout = job_timeout_seconds
        self._send_idempotency_key = send_idempotency_key

    @classmethod
    def from_settings(cls, settings, provider, notifier, store, temp_files) -> "PhotoAvatarWorker":
        return cls(
            provider=provider,
            notifier=notifier,
            store=store,
            temp_files=temp_files,
            training_delay_seconds=settings.training_delay_seconds,
            job_timeout_seconds=settings.job_timeout_seconds,
            send_idempotency_key=settings.provider_send_idempotency_key,
        )

    async def process(self, payload: JobPayload) -> PipelineRun:
        """Run every stage for ``payload``.

        Returns the completed run. Raises ``PipelineFailed`` after a terminal
        stage failure, and re-raises anything unexpected (including the
        per-job timeout) after the generic error notification.
        """
        run = PipelineRun(payload=payload)
        logger.info(f"Job {payload.job_id}: starting photo avatar '{payload.name}' for user {payload.user_id}")

        async with self._temp_files.lease(payload.image_path) as held:
            try:
                await asyncio.wait_for(self._run_provider_stages(run, held), self._job_timeout)
                await self._persist(run, held)
            except PipelineFailed as exc:
                run.stage = PipelineStage.FAILED
                run.error = exc.cause
                logger.warning(f"Job {payload.job_id}: {exc}")
                raise
            except Exception as exc:
                failed_at = run.stage
                run.stage = PipelineStage.FAILED
                run.error = exc if isinstance(exc, PipelineError) else UnexpectedError(str(exc))
                logger.exception(f"Job {payload.job_id}: photo avatar worker error during {failed_at.value}")
                self._notify(run, "error", "error", describe_general_error(exc))
                held.release()
                raise

        logger.info(f"Job {payload.job_id}: photo avatar {run.avatar_id} submitted for training")
        return run

    async def drain_notifications(self) -> None:
        """Wait for notifications still queued for an async notifier."""
        await self._notifier.drain()

    async def _run_provider_stages(self, run: PipelineRun, held: TempFileLease) -> None:
        await self._upload(run, held)
        await self._create_group(run, held)
        await self._train(run)

    async def _upload(self, run: PipelineRun, held: TempFileLease) -> None:
        run.stage = PipelineStage.UPLOADING
        self._notify(run, "upload", "progress", {"message": "Uploading your photo..."})
        data = held.path.read_bytes()

        try:
            uploaded = await self._provider.upload_asset(
                data, run.payload.mime_type, idempotency_key=self._idempotency_key(run, "upload")
            )
            if not uploaded.image_key:
                raise UploadError("No image_key returned from provider")
        except (UploadError, ProviderApiError) as exc:
            self._fail_stage(run, held, "upload", exc, describe_upload_error(exc))

        run.image_key = uploaded.image_key
        self._notify(run, "upload", "success", {"message": "Image uploaded successfully!"})

    async def _create_group(self, run: PipelineRun, held: TempFileLease) -> None:
        run.stage = PipelineStage.GROUP_CREATING
        self._notify(run, "group-creation", "progress", {"message": "Creating avatar group..."})

        try:
            group = await self._provider.create_avatar_group(
                run.payload.name,
                run.image_key,
                idempotency_key=self._idempotency_key(run, "group"),
            )
        except ProviderApiError as exc:
            self._fail_stage(run, held, "group-creation", exc, describe_group_creation_error(exc))

        run.avatar_id = group.avatar_id
        run.group_id = group.group_id
        run.preview_image_url = group.preview_image_url
        self._notify(
            run, "group-creation", "success", {"message": "Avatar group created successfully!"}
        )

    async def _train(self, run: PipelineRun) -> None:
        run.stage = PipelineStage.TRAINING
        self._notify(
            run,
            "training",
            "progress",
            {"message": "Preparing to train your avatar (this may take a few minutes)..."},
        )

        # The provider needs time to index a new group before it can be trained
        await asyncio.sleep(self._training_delay)

        self._notify(run, "training", "progress", {"message": "Training your avatar..."})

        try:
            ack = await self._provider.train(run.group_id)
            if not ack.accepted:
                raise TrainingError(f"Training not acknowledged: {ack.status_code} {ack.body}")
        except Exception as exc:
            logger.warning(
                f"Job {run.payload.job_id}: training request for group {run.group_id} failed, "
                f"continuing: {exc}"
            )

    async def _persist(self, run: PipelineRun, held: TempFileLease) -> None:
        run.stage = PipelineStage.PERSISTING
        payload = run.payload
        self._notify(run, "saving", "progress", {"message": "Saving your avatar..."})

        record = AvatarRecord(
            avatar_id=run.avatar_id,
            user_id=payload.user_id,
            avatar_name=payload.name,
            avatar_group_id=run.group_id,
            gender=payload.gender.value,
            preview_image_url=run.preview_image_url,
            preview_video_url="",
            default=False,
            ethnicity=payload.ethnicity,
            age_group=payload.age_group.value,
            status="pending",
        )
        try:
            await self._store.create(record)
        except Exception as exc:
            logger.error(
                f"Job {payload.job_id}: record write failed, provider avatar {run.avatar_id} "
                f"(group {run.group_id}) is left without a record"
            )
            if isinstance(exc, PersistenceError):
                raise
            raise PersistenceError(f"Failed to save avatar {run.avatar_id}: {exc}") from exc

        held.release()
        run.stage = PipelineStage.COMPLETED
        self._notify(
            run,
            "complete",
            "success",
            {
                "message": "Your avatar has been submitted for training!",
                "avatarId": run.avatar_id,
                "previewImageUrl": run.preview_image_url,
            },
        )

    def _fail_stage(
        self,
        run: PipelineRun,
        held: TempFileLease,
        stage: str,
        exc: PipelineError,
        info: dict,
    ) -> NoReturn:
        logger.error(f"Job {run.payload.job_id}: {stage} failed: {exc}")
        self._notify(run, stage, "error", info)
        held.release()
        raise PipelineFailed(stage, exc) from exc

    def _notify(self, run: PipelineRun, stage: str, status: str, payload: dict) -> None:
        self._notifier.notify(run.payload.user_id, stage, status, payload)

    def _idempotency_key(self, run: PipelineRun, step: str) -> Optional[str]:
        if not self._send_idempotency_key:
            return None
        return f"{run.payload.job_id}-{step}"
