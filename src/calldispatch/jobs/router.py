"""
API router for call job submission and status.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from calldispatch.billing.usage import SqlUsageLedger
from calldispatch.jobs.schemas import JobCreate, JobResponse
from calldispatch.jobs.service import JobService
from calldispatch.shared.database import get_db_session
from calldispatch.shared.logging import get_logger
from calldispatch.templates.renderer import TemplateRenderer, get_template_renderer

logger = get_logger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def get_job_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    renderer: Annotated[TemplateRenderer, Depends(get_template_renderer)],
) -> JobService:
    """Dependency for job service."""
    return JobService(session=session, usage=SqlUsageLedger(session), renderer=renderer)


@router.post(
    "",
    response_model=JobResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Invalid schedule or template variables"},
        403: {"description": "Call limit exceeded"},
        404: {"description": "Template not found"},
    },
)
async def submit_job(
    data: JobCreate,
    service: Annotated[JobService, Depends(get_job_service)],
) -> JobResponse:
    """Submit a call job for dispatch."""
    job = await service.submit(data)
    logger.info(
        "Job submitted",
        extra={"job_id": job.id, "call_id": job.call_id, "owner_id": job.owner_id},
    )
    return JobResponse.model_validate(job)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: int,
    service: Annotated[JobService, Depends(get_job_service)],
) -> JobResponse:
    job = await service.get(job_id)
    return JobResponse.model_validate(job)


@router.post(
    "/{job_id}/cancel",
    response_model=JobResponse,
    responses={
        404: {"description": "Job not found"},
        409: {"description": "Job is no longer pending"},
    },
)
async def cancel_job(
    job_id: int,
    service: Annotated[JobService, Depends(get_job_service)],
) -> JobResponse:
    """Cancel a job that has not been dispatched yet."""
    job = await service.cancel(job_id)
    return JobResponse.model_validate(job)
