"""Admin job trigger endpoints for TrustLedger v1.

Called by external schedulers in production.  All endpoints require the
admin API key.

Endpoints
---------
- ``POST /api/v1/jobs/{job_name}`` -- Run one job now.
- ``GET  /api/v1/jobs/status``     -- Last run per job.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel

from src.middleware.auth import require_admin_api_key

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/jobs",
    tags=["admin", "jobs"],
    dependencies=[Depends(require_admin_api_key)],
)


class JobRunResponse(BaseModel):
    job: str
    status: str
    result: Any = None


class JobStatusResponse(BaseModel):
    running: bool
    jobs: list[str]
    last_runs: dict[str, str]


def _get_jobs(request: Request):
    """Retrieve the job runner from app state, or raise 503."""
    jobs = getattr(request.app.state, "jobs", None)
    if jobs is None:
        raise HTTPException(status_code=503, detail="Job runner not initialised.")
    return jobs


@router.get("/status", response_model=JobStatusResponse)
async def job_status(request: Request) -> JobStatusResponse:
    jobs = _get_jobs(request)
    return JobStatusResponse(
        running=jobs.is_running,
        jobs=jobs.job_names,
        last_runs={name: ts.isoformat() for name, ts in jobs.last_runs.items()},
    )


@router.post("/{job_name}", response_model=JobRunResponse)
async def run_job(job_name: str, request: Request) -> JobRunResponse:
    """Run *job_name* once.  A failed run answers ``status="failed"``."""
    jobs = _get_jobs(request)
    if job_name not in jobs.job_names:
        raise HTTPException(status_code=404, detail=f"Unknown job {job_name!r}.")

    result = await jobs.run_job(job_name)
    status = "completed" if result is not None else "failed"
    logger.info("api.jobs.run", job=job_name, status=status)
    return JobRunResponse(job=job_name, status=status, result=jsonable_encoder(result))
