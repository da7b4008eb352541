"""Durable run records for background jobs."""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.models.base import utcnow
from tokenledger.models.job import Job

logger = structlog.get_logger()

JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


async def start_job(
    db: AsyncSession,
    job_type: str,
    parameters: dict | None = None,
    celery_task_id: str | None = None,
) -> Job:
    job = Job(
        job_type=job_type,
        status=JOB_RUNNING,
        started_at=utcnow(),
        parameters=parameters or {},
        celery_task_id=celery_task_id,
    )
    db.add(job)
    await db.commit()
    logger.info("job.started", job_id=str(job.id), job_type=job_type)
    return job


async def complete_job(db: AsyncSession, job_id: uuid.UUID, result_summary: dict) -> Job:
    job = await db.get(Job, job_id, populate_existing=True)
    job.status = JOB_COMPLETED
    job.completed_at = utcnow()
    job.result_summary = result_summary
    await db.commit()
    logger.info("job.completed", job_id=str(job_id), job_type=job.job_type, **result_summary)
    return job


async def fail_job(db: AsyncSession, job_id: uuid.UUID, error: BaseException) -> Job:
    job = await db.get(Job, job_id, populate_existing=True)
    job.status = JOB_FAILED
    job.completed_at = utcnow()
    job.error_message = str(error)
    await db.commit()
    logger.error("job.failed", job_id=str(job_id), job_type=job.job_type, error=str(error))
    return job
