import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.core.database import get_db
from tokenledger.core.dependencies import require_admin
from tokenledger.models.job import Job
from tokenledger.schemas.common import JobResponse, JobTriggerResponse, PaginatedResponse

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_admin)])


def _job_response(job: Job) -> JobResponse:
    return JobResponse(
        id=str(job.id),
        job_type=job.job_type,
        status=job.status,
        started_at=job.started_at,
        completed_at=job.completed_at,
        parameters=job.parameters,
        result_summary=job.result_summary,
        error_message=job.error_message,
        celery_task_id=job.celery_task_id,
    )


@router.get("", response_model=PaginatedResponse[JobResponse])
async def list_jobs(
    db: Annotated[AsyncSession, Depends(get_db)],
    job_type: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
):
    count_query = select(func.count()).select_from(Job)
    query = select(Job).order_by(Job.created_at.desc())
    if job_type:
        count_query = count_query.where(Job.job_type == job_type)
        query = query.where(Job.job_type == job_type)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    jobs = result.scalars().all()

    pages = (total + page_size - 1) // page_size if page_size > 0 else 0
    return PaginatedResponse(
        items=[_job_response(j) for j in jobs],
        total=total,
        page=page,
        page_size=page_size,
        pages=pages,
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    job = await db.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)


@router.post(
    "/reservation-sweep",
    response_model=JobTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_reservation_sweep():
    """Queue an out-of-schedule sweep of stale reservations."""
    from tokenledger.workers.tasks.reservation_sweep import JOB_TYPE, reservation_sweep_task

    task = reservation_sweep_task.delay()
    return JobTriggerResponse(task_id=task.id, job_type=JOB_TYPE)
