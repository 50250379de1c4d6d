"""Generation service: the inbound ``generate`` operation and batch job access.

Routers call only this service. It applies the generation policy switches,
validates the payload, resolves the provider config for the caller, and
routes to the fast path or the batch manager.
"""

import logging
import time
from typing import Any

from app.core.config import settings
from app.core.exceptions import NotFoundError, ServiceUnavailableError
from app.core.metrics import GENERATION_DURATION, GENERATION_REQUESTS
from app.generation.batch_manager import BatchJobManager
from app.generation.batch_types import BatchJobRequest, BatchJobStatusView
from app.generation.errors import GenerationError, ProviderNotFoundError, RequestValidationError
from app.generation.orchestrator import FastPathOrchestrator
from app.generation.ports import GenerationStore, ProviderConfigStore
from app.generation.types import (
    DeliveryMode,
    FastPathResult,
    GenerationRecord,
    GenerationRequest,
    ProviderConfig,
    ProviderFamily,
    VendorConfig,
    settings_snapshot,
)
from app.generation.validator import validate_generation_request

logger = logging.getLogger(__name__)


class GenerationService:
    def __init__(
        self,
        *,
        provider_configs: ProviderConfigStore,
        orchestrator: FastPathOrchestrator,
        batch_manager: BatchJobManager,
        generations: GenerationStore,
        vendor_configs: dict[ProviderFamily, VendorConfig],
    ):
        self.provider_configs = provider_configs
        self.orchestrator = orchestrator
        self.batch_manager = batch_manager
        self.generations = generations
        self.vendor_configs = vendor_configs

    def _vendor(self, family: ProviderFamily) -> VendorConfig:
        return self.vendor_configs.get(family, VendorConfig(family=family))

    async def generate(self, payload: Any, owner_id: str) -> dict:
        """Validate and execute one generation request for ``owner_id``."""
        if settings.maintenance_mode:
            raise ServiceUnavailableError(settings.maintenance_message)

        request = validate_generation_request(payload)

        if request.delivery_mode == DeliveryMode.IMMEDIATE and not settings.allow_fast_mode:
            raise RequestValidationError("Fast mode is currently disabled")
        if request.delivery_mode == DeliveryMode.DEFERRED and not settings.allow_relaxed_mode:
            raise RequestValidationError("Relaxed mode is currently disabled")

        config = await self.provider_configs.get(request.provider_id, owner_id)
        if config is None:
            raise ProviderNotFoundError()

        if request.delivery_mode == DeliveryMode.DEFERRED:
            if not self._vendor(config.family).supports_deferred:
                raise RequestValidationError("Relaxed mode is not available for this provider")
            return await self._defer(request, config, owner_id)

        return await self._immediate(request, config, owner_id)

    async def _immediate(self, request: GenerationRequest, config: ProviderConfig, owner_id: str) -> dict:
        family = config.family.value
        start = time.perf_counter()
        try:
            result = await self.orchestrator.execute(request, config)
        except GenerationError:
            GENERATION_REQUESTS.labels(family=family, mode="fast", outcome="failure").inc()
            raise
        GENERATION_DURATION.labels(family=family).observe(time.perf_counter() - start)
        GENERATION_REQUESTS.labels(
            family=family, mode="fast", outcome="partial" if result.partial else "success"
        ).inc()

        await self._record(request, config, owner_id, result)

        logger.info(
            "Generated %d/%d images with provider %s (%s)",
            len(result.images),
            result.requested,
            config.id,
            family,
        )
        return {
            "success": True,
            "images": [image.to_dict() for image in result.images],
            "mode": DeliveryMode.IMMEDIATE.value,
            "partial": result.partial,
            "requested": result.requested,
        }

    async def _record(
        self, request: GenerationRequest, config: ProviderConfig, owner_id: str, result: FastPathResult
    ) -> None:
        reference_urls = await self.orchestrator.references.as_public_urls(list(request.reference_image_paths))
        snapshot = settings_snapshot(
            request,
            speed=DeliveryMode.IMMEDIATE,
            model=config.model_id,
            reference_urls=reference_urls,
        )
        for image in result.images:
            try:
                await self.generations.save(
                    GenerationRecord(
                        owner_id=owner_id,
                        provider_config_id=config.id,
                        prompt=request.prompt,
                        negative_prompt=request.negative_prompt,
                        image_url=image.url,
                        settings=snapshot,
                    )
                )
            except Exception:
                # The caller still receives the images
                logger.exception("Failed to record generation for provider %s", config.id)

    async def _defer(self, request: GenerationRequest, config: ProviderConfig, owner_id: str) -> dict:
        item = BatchJobRequest.from_generation_request(request)
        job = await self.batch_manager.create_job([item] * request.output_count, config.id, owner_id)
        await self.batch_manager.submit(job, config.family)
        GENERATION_REQUESTS.labels(family=config.family.value, mode="relaxed", outcome="queued").inc()

        return {
            "success": True,
            "mode": "deferred",
            "jobId": job.id,
            "estimatedCompletion": job.estimated_completion.isoformat() if job.estimated_completion else None,
        }

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str, owner_id: str) -> BatchJobStatusView:
        view = await self.batch_manager.get_status(job_id, owner_id)
        if view is None:
            raise NotFoundError("Batch job not found")
        return view

    async def list_jobs(self, owner_id: str, *, active_only: bool = False, limit: int = 20) -> list[BatchJobStatusView]:
        return await self.batch_manager.list_jobs(owner_id, active_only=active_only, limit=limit)

    async def cancel_job(self, job_id: str, owner_id: str) -> bool:
        """False when the job already reached a terminal state."""
        await self.get_job(job_id, owner_id)
        return await self.batch_manager.cancel(job_id, owner_id)
