"""Photo avatar submission: stage the uploaded photo and enqueue a job.

The request returns as soon as the queue has accepted the job; progress
reaches the user through the notifier, not through this response.
"""

import os
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from pydantic import ValidationError

from avatar_pipeline.config import settings
from avatar_pipeline.jobs.dispatcher import InvalidJobError
from avatar_pipeline.jobs.models import JobPayload
from avatar_pipeline.storage.temp_files import temp_files

router = APIRouter()

# Wired in during lifespan (same pattern as jobs.py)
_queue = None


def set_queue(queue):
    global _queue
    _queue = queue


_ALLOWED_TYPES = {"image/jpeg", "image/png", "image/webp"}


@router.post("/avatars/photo", status_code=202)
async def create_photo_avatar(
    file: UploadFile = File(...),
    name: str = Form(...),
    age_group: str = Form(...),
    gender: str = Form(...),
    user_id: str = Form(...),
    ethnicity: Optional[str] = Form(None),
):
    """Accept a photo, stage it, and queue avatar creation.

    Returns:
        {job_id, status, message}
    """
    if _queue is None:
        raise HTTPException(status_code=503, detail="Job queue not ready")

    if file.content_type not in _ALLOWED_TYPES:
        raise HTTPException(status_code=400, detail="Image must be JPEG, PNG, or WebP")

    data = bytearray()
    while True:
        chunk = await file.read(1024 * 1024)  # 1 MB chunks
        if not chunk:
            break
        data.extend(chunk)
        if len(data) > settings.max_upload_bytes:
            raise HTTPException(status_code=413, detail="Image file is too large")
    if not data:
        raise HTTPException(status_code=400, detail="Image file is empty")

    ext = os.path.splitext(file.filename or "photo.jpg")[1] or ".jpg"
    staged = temp_files.stage(bytes(data), suffix=ext)

    try:
        payload = JobPayload(
            image_path=str(staged),
            age_group=age_group,
            name=name,
            gender=gender,
            user_id=user_id,
            ethnicity=ethnicity,
            mime_type=file.content_type,
        )
        handle = await _queue.enqueue(payload)
    except ValidationError as exc:
        temp_files.delete_if_exists(staged)
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False))
    except InvalidJobError as exc:
        temp_files.delete_if_exists(staged)
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception:
        temp_files.delete_if_exists(staged)
        raise

    return {
        "job_id": handle.job_id,
        "status": "pending",
        "message": "Photo received, your avatar is being created",
    }
