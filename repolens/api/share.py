"""Public share links."""

from fastapi import APIRouter, Depends

from ..core.services import Services
from ..schemas.job import SharedJobResponse, ShareResponse
from .dependencies import get_services

router = APIRouter(prefix="/api/jobs", tags=["share"])
public_router = APIRouter(prefix="/api/share", tags=["share"])


@router.post("/{job_id}/share", response_model=ShareResponse)
async def share_job(job_id: str, services: Services = Depends(get_services)):
    """Publish a job under a random token. Re-sharing keeps the same token."""
    job = await services.jobs.share(job_id)
    return ShareResponse(job_id=job.id, is_public=job.is_public, share_token=job.share_token)


@router.delete("/{job_id}/share", response_model=ShareResponse)
async def unshare_job(job_id: str, services: Services = Depends(get_services)):
    job = await services.jobs.unshare(job_id)
    return ShareResponse(job_id=job.id, is_public=job.is_public, share_token=None)


@public_router.get("/{token}", response_model=SharedJobResponse)
async def get_shared_job(token: str, services: Services = Depends(get_services)):
    job = await services.jobs.get_shared(token)
    return SharedJobResponse.model_validate(job.model_dump())
