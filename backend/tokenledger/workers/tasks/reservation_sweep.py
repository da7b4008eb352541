"""Periodic Celery task: release reservations left open past their TTL.

A reservation whose operation crashed before finalize would otherwise
hold the shop's tokens forever. Each run is recorded as a ``Job`` row.
"""

import asyncio

from sqlalchemy.ext.asyncio import AsyncSession

from tokenledger.core.config import settings
from tokenledger.core.database import worker_async_session
from tokenledger.services import job_service, ledger_service
from tokenledger.workers.celery_app import celery_app

JOB_TYPE = "tasks.reservation_sweep"


@celery_app.task(bind=True, name=JOB_TYPE, queue="ledger")
def reservation_sweep_task(self, ttl_minutes: int | None = None):
    """Cancel stale reservations inside an async context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(_execute(self.request.id, ttl_minutes))
    finally:
        loop.close()


async def _execute(celery_task_id: str | None, ttl_minutes: int | None) -> dict:
    async with worker_async_session() as session:
        return await run_reservation_sweep(session, celery_task_id=celery_task_id, ttl_minutes=ttl_minutes)


async def run_reservation_sweep(
    db: AsyncSession,
    celery_task_id: str | None = None,
    ttl_minutes: int | None = None,
) -> dict:
    ttl = ttl_minutes if ttl_minutes is not None else settings.RESERVATION_TTL_MINUTES
    job = await job_service.start_job(
        db,
        JOB_TYPE,
        parameters={"ttl_minutes": ttl},
        celery_task_id=celery_task_id,
    )
    job_id = job.id

    try:
        summary = await ledger_service.expire_stale_reservations(db, ttl_minutes=ttl)
    except Exception as exc:
        await db.rollback()
        await job_service.fail_job(db, job_id, exc)
        raise

    await job_service.complete_job(db, job_id, summary)
    return {"job_id": str(job_id), **summary}
