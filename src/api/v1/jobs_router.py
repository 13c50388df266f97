from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from services.jobs import job_registry
from services.scheduler import scheduler

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("")
async def list_jobs(job: str | None = Query(default=None, description="Only runs of this job")):
    runs = await job_registry.list(job)
    return {
        "running": scheduler.running,
        "jobs": [entry.describe() for entry in scheduler.jobs],
        "runs": runs,
    }


@router.post("/{name}/run")
async def run_job(name: str):
    if scheduler.get(name) is None:
        raise HTTPException(status_code=404, detail=f"Unknown job '{name}'")
    return await scheduler.trigger(name)
