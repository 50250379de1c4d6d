"""Batch runners: where submitted jobs are processed.

``InProcessBatchRunner`` keeps a supervised pool of asyncio tasks inside the
API process: every task is tracked, crashes are logged, and shutdown drains
the pool. ``CeleryBatchRunner`` enqueues the job on the Celery worker instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class InProcessBatchRunner:
    """Bounded pool of background asyncio tasks, one per job."""

    def __init__(self, process: Callable[[str], Awaitable[None]], max_concurrent: int = 4):
        self._process = process
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent))
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def dispatch(self, job_id: str) -> None:
        if self._closed:
            raise RuntimeError("Batch runner is shut down")
        task = asyncio.create_task(self._run(job_id), name=f"batch-job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("Dispatched batch job %s (%d active)", job_id, len(self._tasks))

    async def _run(self, job_id: str) -> None:
        async with self._semaphore:
            await self._process(job_id)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Batch task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Batch task %s crashed", task.get_name(), exc_info=exc)

    async def join(self) -> None:
        """Wait until every dispatched job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop accepting jobs, give running ones ``timeout`` seconds, cancel the rest."""
        self._closed = True
        if not self._tasks:
            return
        logger.info("Draining %d batch tasks", len(self._tasks))
        _, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class CeleryBatchRunner:
    """Hands jobs to the ``process_batch_job`` Celery task."""

    async def dispatch(self, job_id: str) -> None:
        from app.tasks.batch_tasks import process_batch_job_task

        result = process_batch_job_task.delay(job_id)
        logger.info("Queued batch job %s on Celery (task_id=%s)", job_id, result.id)
