"""
Scheduler API Routes

Inspect the review pipeline jobs and trigger one out of schedule.
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from .services.scheduler import REVIEW_JOBS, scheduler_service

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


class SchedulerStatus(BaseModel):
    running: bool
    available_jobs: list[str]
    jobs: list[dict]


@router.get("/status", response_model=SchedulerStatus)
async def scheduler_status():
    return SchedulerStatus(
        running=scheduler_service.is_running(),
        available_jobs=[job.id for job in REVIEW_JOBS],
        jobs=scheduler_service.get_jobs(),
    )


@router.post("/jobs/{job_id}/run", response_model=dict)
async def run_review_job(job_id: str):
    """Run a review job now. Skipped (ok=false) when another instance holds its lock."""
    if job_id not in {job.id for job in REVIEW_JOBS}:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    result = await scheduler_service.run_now(job_id)
    if "error" in result:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result["error"])
    return result
