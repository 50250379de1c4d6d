"""Batch job manager: deferred generation as a job state machine.

    pending -> submitted -> processing -> completed | failed
    {pending, submitted, processing} -> cancelled

``submit`` only records the hand-off and dispatches the job to a runner;
``process`` is the background processor. It drains the job's requests
strictly one at a time with a fixed delay between calls, using the same
adapters, timeout guard and error classification as the fast path.
Cancellation is cooperative: the processor re-reads the job status before
each request and stops once the job has left ``processing``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from app.core.logging import job_logger
from app.core.metrics import BATCH_JOB_TRANSITIONS, UPSTREAM_ERRORS
from app.generation.batch_types import (
    ACTIVE_STATUSES,
    BatchJob,
    BatchJobRequest,
    BatchJobResult,
    BatchJobStatusView,
    BatchStatus,
    InvalidTransitionError,
    check_transition,
)
from app.generation.errors import ErrorKind, GenerationError, ProviderNotFoundError, classify_exception, safe_message
from app.generation.orchestrator import AdapterFactory, resolve_references
from app.generation.ports import (
    BatchJobStore,
    BatchRunner,
    CredentialResolver,
    GenerationStore,
    ProviderConfigStore,
    ReferenceImageResolver,
)
from app.generation.timeout_guard import Deadline, guard
from app.generation.types import (
    DEFAULT_VENDOR_CONFIGS,
    DeliveryMode,
    GeneratedImage,
    GenerationRecord,
    ProviderConfig,
    ProviderFamily,
    VendorConfig,
    settings_snapshot,
)
from app.generation.vendor_adapters import BaseImageAdapter, get_adapter

logger = logging.getLogger(__name__)

DISPATCH_FAILED_MESSAGE = "Failed to queue batch job"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BatchJobManager:
    """Creates, submits, processes and cancels deferred generation jobs."""

    def __init__(
        self,
        *,
        jobs: BatchJobStore,
        provider_configs: ProviderConfigStore,
        credentials: CredentialResolver,
        references: ReferenceImageResolver,
        generations: GenerationStore,
        vendor_configs: dict[ProviderFamily, VendorConfig] | None = None,
        runner: BatchRunner | None = None,
        adapter_factory: AdapterFactory = get_adapter,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.jobs = jobs
        self.provider_configs = provider_configs
        self.credentials = credentials
        self.references = references
        self.generations = generations
        self.configs = vendor_configs or DEFAULT_VENDOR_CONFIGS
        self.runner = runner
        self._adapter_factory = adapter_factory
        self._sleep = sleep

    def vendor_config(self, family: ProviderFamily) -> VendorConfig:
        return self.configs.get(family, VendorConfig(family=family))

    def attach_runner(self, runner: BatchRunner) -> None:
        """Runners that call back into ``process`` are created after the manager."""
        self.runner = runner

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def create_job(
        self,
        requests: list[BatchJobRequest],
        provider_config_id: str,
        owner_id: str,
    ) -> BatchJob:
        if not requests:
            raise ValueError("A batch job needs at least one request")
        job = await self.jobs.create(owner_id, provider_config_id, list(requests))
        BATCH_JOB_TRANSITIONS.labels(status=BatchStatus.PENDING.value).inc()
        logger.info("Created batch job %s with %d requests", job.id, len(job.requests))
        return job

    async def submit(self, job: BatchJob, family: ProviderFamily = ProviderFamily.GOOGLE) -> str:
        """Mark the job submitted, dispatch it, and return the provider handle.

        Never waits for generation. If the runner cannot accept the job it is
        cancelled with an error message and a GenerationError is raised.
        """
        if self.runner is None:
            raise RuntimeError("BatchJobManager has no runner attached")

        vendor = self.vendor_config(family)
        current = await self.jobs.get(job.id)
        check_transition(job.id, current.status if current else job.status, BatchStatus.SUBMITTED)

        handle = f"batch-{job.id}"
        now = _now()
        submitted = await self.jobs.transition(
            job.id,
            BatchStatus.SUBMITTED,
            provider_job_id=handle,
            submitted_at=now,
            estimated_completion=now + timedelta(hours=vendor.batch_estimate_hours),
        )
        if submitted is None:
            # Lost a race with a concurrent transition
            latest = await self.jobs.get(job.id)
            raise InvalidTransitionError(job.id, latest.status if latest else job.status, BatchStatus.SUBMITTED)
        BATCH_JOB_TRANSITIONS.labels(status=BatchStatus.SUBMITTED.value).inc()

        job.status = submitted.status
        job.provider_job_id = submitted.provider_job_id
        job.submitted_at = submitted.submitted_at
        job.estimated_completion = submitted.estimated_completion

        try:
            await self.runner.dispatch(job.id)
        except Exception as e:
            logger.exception("Failed to dispatch batch job %s", job.id)
            await self.jobs.transition(
                job.id, BatchStatus.CANCELLED, error_message=DISPATCH_FAILED_MESSAGE, completed_at=_now()
            )
            raise GenerationError(DISPATCH_FAILED_MESSAGE, kind=ErrorKind.INTERNAL, user_safe=True) from e

        return handle

    async def cancel(self, job_id: str, owner_id: str) -> bool:
        """Cancel an active job. False for unknown, foreign or terminal jobs."""
        job = await self.jobs.get(job_id)
        if job is None or job.owner_id != owner_id or job.status not in ACTIVE_STATUSES:
            return False
        cancelled = await self.jobs.transition(job_id, BatchStatus.CANCELLED, completed_at=_now())
        if cancelled is None:
            return False
        BATCH_JOB_TRANSITIONS.labels(status=BatchStatus.CANCELLED.value).inc()
        job_logger(logger, job_id).info("Cancelled by owner")
        return True

    async def get_status(self, job_id: str, owner_id: str) -> BatchJobStatusView | None:
        job = await self.jobs.get(job_id)
        if job is None or job.owner_id != owner_id:
            return None
        return BatchJobStatusView.from_job(job)

    async def list_jobs(
        self, owner_id: str, *, active_only: bool = False, limit: int = 20
    ) -> list[BatchJobStatusView]:
        jobs = await self.jobs.list_for_owner(
            owner_id, statuses=ACTIVE_STATUSES if active_only else None, limit=limit
        )
        return [BatchJobStatusView.from_job(job) for job in jobs]

    # ------------------------------------------------------------------
    # Background processor
    # ------------------------------------------------------------------

    async def process(self, job_id: str) -> None:
        """Drain a submitted job. Safe to call more than once; only the first run proceeds."""
        log = job_logger(logger, job_id)

        job = await self.jobs.transition(job_id, BatchStatus.PROCESSING)
        if job is None:
            current = await self.jobs.get(job_id)
            log.info("Not processing, status=%s", current.status.value if current else "missing")
            return
        BATCH_JOB_TRANSITIONS.labels(status=BatchStatus.PROCESSING.value).inc()
        log.info("Processing %d requests", len(job.requests))

        try:
            await self._drain(job, log)
        except asyncio.CancelledError:
            log.warning("Processing interrupted")
            await self._fail(job_id, "Batch processing was interrupted", log)
            raise
        except Exception as e:
            log.exception("Processing failed")
            await self._fail(job_id, safe_message(e), log)

    async def _drain(self, job: BatchJob, log: logging.LoggerAdapter) -> None:
        config = await self.provider_configs.get(job.provider_config_id, job.owner_id)
        if config is None:
            raise ProviderNotFoundError()
        api_key = await self.credentials.resolve(config)
        adapter = self._adapter_factory(config.family, api_key)
        vendor = self.vendor_config(config.family)

        succeeded = 0
        for index, item in enumerate(job.requests):
            if index > 0 and vendor.batch_request_delay > 0:
                await self._sleep(vendor.batch_request_delay)

            current = await self.jobs.get(job.id)
            if current is None or current.status != BatchStatus.PROCESSING:
                log.info(
                    "Stopping before request %d, status=%s",
                    index,
                    current.status.value if current else "missing",
                )
                return

            result, image = await self._run_item(adapter, config, item, index, vendor, log)

            if not await self.jobs.append_result(job.id, result):
                log.info("Job left processing during request %d, result discarded", index)
                return

            if image is not None:
                succeeded += 1
                await self.generations.save(await self._record(job, config, item, image))

        completed = await self.jobs.transition(job.id, BatchStatus.COMPLETED, completed_at=_now())
        if completed is not None:
            BATCH_JOB_TRANSITIONS.labels(status=BatchStatus.COMPLETED.value).inc()
            log.info("Completed: %d/%d succeeded", succeeded, len(job.requests))

    async def _run_item(
        self,
        adapter: BaseImageAdapter,
        config: ProviderConfig,
        item: BatchJobRequest,
        index: int,
        vendor: VendorConfig,
        log: logging.LoggerAdapter,
    ) -> tuple[BatchJobResult, GeneratedImage | None]:
        request = item.to_generation_request(config.id)
        try:
            references = await resolve_references(
                self.references, adapter.reference_form, list(item.reference_image_paths)
            )
            deadline = Deadline(vendor.timeout_seconds)
            images = await guard(
                adapter.execute(config, request, references=references, deadline=deadline),
                deadline,
                label=f"{adapter.label} batch item {index}",
            )
            if not images:
                raise GenerationError(kind=ErrorKind.PROTOCOL)
        except Exception as e:
            error = classify_exception(e, adapter.label)
            UPSTREAM_ERRORS.labels(family=config.family.value, kind=error.kind.value).inc()
            log.warning("Request %d failed [%s]: %s", index, error.kind.value, error.message)
            return BatchJobResult(request_index=index, success=False, error=safe_message(error)), None

        image = images[0]
        result = BatchJobResult(
            request_index=index,
            success=True,
            image_url=image.url,
            image_base64=image.base64,
        )
        return result, image

    async def _record(
        self, job: BatchJob, config: ProviderConfig, item: BatchJobRequest, image: GeneratedImage
    ) -> GenerationRecord:
        request = item.to_generation_request(config.id)
        reference_urls = await self.references.as_public_urls(list(item.reference_image_paths))
        return GenerationRecord(
            owner_id=job.owner_id,
            provider_config_id=config.id,
            prompt=item.prompt,
            negative_prompt=item.negative_prompt,
            image_url=image.url,
            settings=settings_snapshot(
                request,
                speed=DeliveryMode.DEFERRED,
                model=config.model_id,
                reference_urls=reference_urls,
            )
            | {"batchJobId": job.id},
        )

    async def _fail(self, job_id: str, message: str, log: logging.LoggerAdapter) -> None:
        failed = await self.jobs.transition(
            job_id, BatchStatus.FAILED, error_message=message, completed_at=_now()
        )
        if failed is not None:
            BATCH_JOB_TRANSITIONS.labels(status=BatchStatus.FAILED.value).inc()
            log.info("Marked failed: %s", message)
