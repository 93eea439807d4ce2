"""Analysis job endpoints: submit, inspect, retry, delete."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from ..core.services import Services
from ..schemas.job import (
    JobAccepted,
    JobCreate,
    JobResponse,
    JobSummary,
    ProgressResponse,
    RetryAccepted,
    RetryRequest,
    SandboxDeleteResponse,
)
from .dependencies import get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("", response_model=JobAccepted, status_code=202)
async def create_job(request: JobCreate, services: Services = Depends(get_services)):
    """Submit a repository for analysis.

    Returns as soon as the job is persisted; the pipeline runs in the
    background. Follow it on ``/api/jobs/{id}/stream``.
    """
    job = await services.orchestrator.submit_job(request.repo_url, request.content_style)
    logger.info("Accepted job %s for %s", job.id, job.repo_url)
    return JobAccepted(job_id=job.id, status=job.status)


@router.get("", response_model=List[JobSummary])
async def list_jobs(
    repo_url: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services),
):
    """Recent jobs, newest first, optionally for one repository."""
    jobs = await services.jobs.list_recent(limit, repo_url)
    return [JobSummary.model_validate(job.model_dump()) for job in jobs]


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, services: Services = Depends(get_services)):
    """Full job projection including per-stage history."""
    return JobResponse.from_record(await services.jobs.get(job_id))


@router.delete("/{job_id}", status_code=204)
async def delete_job(job_id: str, services: Services = Depends(get_services)):
    await services.jobs.delete(job_id)
    return Response(status_code=204)


@router.get("/{job_id}/progress", response_model=ProgressResponse)
async def get_progress(job_id: str, services: Services = Depends(get_services)):
    """Stage summary with the current stage and percent complete."""
    return ProgressResponse.from_record(await services.jobs.get(job_id))


@router.post("/{job_id}/retry", response_model=RetryAccepted, status_code=202)
async def retry_stage(job_id: str, request: RetryRequest, services: Services = Depends(get_services)):
    """Re-run one failed supplementary stage (diagram, ownership or export).

    The stage is claimed before this returns, so a second retry of the same
    stage gets 409 until the first one has finished.
    """
    stage = await services.orchestrator.request_retry(job_id, request.stage)
    return RetryAccepted(message=f"Retrying {stage.value}", stage=stage.value)


@router.delete("/{job_id}/sandbox", response_model=SandboxDeleteResponse)
async def delete_sandbox(job_id: str, services: Services = Depends(get_services)):
    """Destroy the job's sandbox. Only allowed while it is paused."""
    job = await services.jobs.delete_sandbox(job_id)
    return SandboxDeleteResponse(success=True, message=f"Sandbox {job.sandbox_name} deleted")
