"""Celery task for deferred (relaxed) generation jobs.

The API process marks a job submitted and enqueues it here when
``BATCH_BACKEND=celery``; the worker then runs the same background
processor the in-process runner uses.
"""

import asyncio
import logging

from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Run an async coroutine from sync Celery task context.

    Creates a fresh event loop each time to avoid conflicts with
    the module-level SQLAlchemy engine (which may be bound to a
    different loop created by uvicorn).
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _make_session_factory():
    """Create a fresh async engine + session factory for Celery worker context.

    The module-level engine from app.db.postgres is bound to uvicorn's event loop
    and cannot be reused in a new event loop created by _run_async().
    """
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from app.db.postgres import make_engine

    engine = make_engine(pool_size=2)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), engine


async def _process_batch_job_async(job_id: str) -> dict:
    from app.services.container import build_postgres_services

    session_factory, engine = _make_session_factory()
    try:
        services = build_postgres_services(session_factory)
        await services.batch_manager.process(job_id)
        job = await services.jobs.get(job_id)
        if job is None:
            return {"job_id": job_id, "status": "missing"}
        return {
            "job_id": job_id,
            "status": job.status.value,
            "succeeded": sum(1 for r in job.results if r.success),
            "total": len(job.requests),
        }
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    name="process_batch_job",
    max_retries=0,
)
def process_batch_job_task(self, job_id: str):
    """Celery task: drain one submitted batch job.

    Celery-level retries are disabled: the processor only runs jobs that are
    still ``submitted``, so a retry after a partial run would be a no-op.
    """
    logger.info("Starting batch job %s", job_id)
    try:
        result = _run_async(_process_batch_job_async(job_id))
        logger.info("Batch job %s finished: %s", job_id, result)
        return result
    except Exception as exc:
        logger.error("Batch job %s task failed: %s", job_id, exc)
        return {"error": str(exc), "job_id": job_id}
