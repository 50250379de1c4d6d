"""Fast-path orchestrator: immediate generation with fan-out and partial success.

Flow for one validated request:
  1. Resolve the provider credential
  2. Pick the adapter for the provider family
  3. Resolve reference images in the form the adapter needs (inline / URL)
  4. Fan out ``output_count`` single-image calls for one-image-per-call
     adapters, otherwise issue one call for the whole request
  5. Aggregate: all failed -> raise the first issued call's error;
     some failed -> return the successes, log the shortfall

Every upstream call runs under its own Deadline via the timeout guard.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace

from app.core.metrics import UPSTREAM_ERRORS
from app.generation.errors import GenerationError, classify_exception
from app.generation.ports import CredentialResolver, ReferenceImageResolver
from app.generation.timeout_guard import Deadline, guard
from app.generation.types import (
    DEFAULT_VENDOR_CONFIGS,
    FastPathResult,
    GeneratedImage,
    GenerationRequest,
    ProviderConfig,
    ProviderFamily,
    ReferenceForm,
    VendorConfig,
)
from app.generation.vendor_adapters import BaseImageAdapter, get_adapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., BaseImageAdapter]


async def resolve_references(
    resolver: ReferenceImageResolver,
    form: ReferenceForm,
    paths: list[str],
) -> list[str]:
    """Fetch reference images in the representation an adapter consumes."""
    if not paths or form == ReferenceForm.NONE:
        return []
    if form == ReferenceForm.URL:
        return await resolver.as_public_urls(paths)
    return await resolver.as_inline(paths)


def raise_classified(exc: Exception, label: str) -> None:
    """Re-raise ``exc`` as a GenerationError, keeping the original as cause."""
    error = classify_exception(exc, label)
    if error is exc:
        raise exc
    raise error from exc


class FastPathOrchestrator:
    """Immediate-mode generation across all provider families."""

    def __init__(
        self,
        credentials: CredentialResolver,
        references: ReferenceImageResolver,
        vendor_configs: dict[ProviderFamily, VendorConfig] | None = None,
        adapter_factory: AdapterFactory = get_adapter,
    ):
        self.credentials = credentials
        self.references = references
        self.configs = vendor_configs or DEFAULT_VENDOR_CONFIGS
        self._adapter_factory = adapter_factory

    def vendor_config(self, family: ProviderFamily) -> VendorConfig:
        return self.configs.get(family, VendorConfig(family=family))

    async def execute(self, request: GenerationRequest, config: ProviderConfig) -> FastPathResult:
        vendor = self.vendor_config(config.family)
        api_key = await self.credentials.resolve(config)
        adapter = self._adapter_factory(config.family, api_key)

        references = await resolve_references(
            self.references, adapter.reference_form, list(request.reference_image_paths)
        )

        if adapter.fans_out and request.output_count > 1:
            return await self._fan_out(adapter, config, request, references, vendor)

        try:
            images = await self._call(adapter, config, request, references, vendor, label=f"{adapter.label}#1")
        except GenerationError as e:
            self._record_failure(adapter, config, e, index=1, total=1)
            raise
        except Exception as e:
            self._record_failure(adapter, config, classify_exception(e, adapter.label), index=1, total=1)
            raise_classified(e, adapter.label)

        if adapter.fans_out:
            images = images[:1]
        if 0 < len(images) < request.output_count:
            logger.info(
                "Partial success for provider %s: %d/%d images",
                config.id,
                len(images),
                request.output_count,
            )
        return FastPathResult(images=images, requested=request.output_count)

    async def _call(
        self,
        adapter: BaseImageAdapter,
        config: ProviderConfig,
        request: GenerationRequest,
        references: list[str],
        vendor: VendorConfig,
        *,
        label: str,
    ) -> list[GeneratedImage]:
        deadline = Deadline(vendor.timeout_seconds)
        return await guard(
            adapter.execute(config, request, references=references, deadline=deadline),
            deadline,
            label=label,
        )

    async def _fan_out(
        self,
        adapter: BaseImageAdapter,
        config: ProviderConfig,
        request: GenerationRequest,
        references: list[str],
        vendor: VendorConfig,
    ) -> FastPathResult:
        total = request.output_count
        single = replace(request, output_count=1)

        # Each call owns its deadline; failures are captured until all settle
        outcomes = await asyncio.gather(
            *(
                self._call(adapter, config, single, references, vendor, label=f"{adapter.label}#{i + 1}")
                for i in range(total)
            ),
            return_exceptions=True,
        )

        images: list[GeneratedImage] = []
        errors: list[GenerationError] = []
        for index, outcome in enumerate(outcomes, start=1):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    # CancelledError and friends belong to the caller
                    raise outcome
                error = classify_exception(outcome, adapter.label)
                self._record_failure(adapter, config, error, index=index, total=total)
                errors.append(error)
            else:
                images.extend(outcome[:1])

        if not images:
            # Issue order, not completion order
            raise errors[0]

        if errors:
            logger.info(
                "Partial success for provider %s: %d/%d images",
                config.id,
                len(images),
                total,
            )
        return FastPathResult(images=images, requested=total, errors=list(errors))

    @staticmethod
    def _record_failure(
        adapter: BaseImageAdapter,
        config: ProviderConfig,
        error: GenerationError,
        *,
        index: int,
        total: int,
    ) -> None:
        UPSTREAM_ERRORS.labels(family=config.family.value, kind=error.kind.value).inc()
        logger.warning(
            "%s call %d/%d failed for provider %s [%s]: %s",
            adapter.label,
            index,
            total,
            config.id,
            error.kind.value,
            error.message,
        )
