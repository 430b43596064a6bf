"""Job status and queue statistics."""

from fastapi import APIRouter, HTTPException

from avatar_pipeline.jobs.models import JobStatus

router = APIRouter()

# Set by main.py during lifespan
_queue = None


def set_queue(queue):
    global _queue
    _queue = queue


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str):
    """Get the current status of a photo avatar job."""
    if _queue is None:
        raise HTTPException(status_code=503, detail="Job queue not initialized")

    job = await _queue.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    response = {
        "job_id": job.id,
        "status": job.status.value,
        "attempts": job.attempts,
        "user_id": job.payload.user_id,
        "name": job.payload.name,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }

    if job.status == JobStatus.COMPLETED and job.result:
        response["result"] = job.result.model_dump()

    if job.status in (JobStatus.FAILED, JobStatus.DEAD):
        response["error"] = job.error

    return response


@router.get("/queue/stats")
async def get_queue_stats():
    if _queue is None:
        raise HTTPException(status_code=503, detail="Job queue not initialized")

    stats = await _queue.stats()
    return {**stats.model_dump(), "total": stats.total}
