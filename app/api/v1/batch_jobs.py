"""Batch job endpoints: poll, list and cancel deferred generations."""

from fastapi import APIRouter, Depends, Query

from app.core.dependencies import get_current_user_id, get_services
from app.schemas.common import ErrorResponse
from app.schemas.generation import BatchJobListResponse, BatchJobOut, BatchJobResponse, CancelBatchJobResponse
from app.services.container import Services

router = APIRouter(prefix="/batch-jobs", tags=["batch-jobs"])


@router.get("", response_model=BatchJobListResponse)
async def list_batch_jobs(
    active: bool = Query(False, description="Only pending/submitted/processing jobs"),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Caller's jobs, newest first."""
    views = await services.generation_service.list_jobs(user_id, active_only=active, limit=limit)
    return BatchJobListResponse(jobs=[BatchJobOut.from_view(v) for v in views], total=len(views))


@router.get("/{job_id}", response_model=BatchJobResponse, responses={404: {"model": ErrorResponse}})
async def get_batch_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    view = await services.generation_service.get_job(job_id, user_id)
    return BatchJobResponse(job=BatchJobOut.from_view(view))


@router.post("/{job_id}/cancel", response_model=CancelBatchJobResponse, responses={404: {"model": ErrorResponse}})
async def cancel_batch_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Cancel a job that has not finished. ``cancelled`` is false for terminal jobs."""
    cancelled = await services.generation_service.cancel_job(job_id, user_id)
    return CancelBatchJobResponse(cancelled=cancelled)
