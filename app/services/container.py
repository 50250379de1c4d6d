"""Wiring of the generation collaborators for the configured backends."""

import logging
from dataclasses import dataclass

from app.core.config import settings
from app.generation.batch_manager import BatchJobManager
from app.generation.orchestrator import FastPathOrchestrator
from app.generation.ports import (
    BatchJobStore,
    CredentialResolver,
    GenerationStore,
    ProviderConfigStore,
    ReferenceImageResolver,
)
from app.generation.types import vendor_configs_from_settings
from app.generation.workers import CeleryBatchRunner, InProcessBatchRunner
from app.services.generation_service import GenerationService
from app.services.storage import HttpReferenceImageResolver

logger = logging.getLogger(__name__)


@dataclass
class Services:
    provider_configs: ProviderConfigStore
    credentials: CredentialResolver
    references: ReferenceImageResolver
    generations: GenerationStore
    jobs: BatchJobStore
    batch_manager: BatchJobManager
    generation_service: GenerationService
    runner: InProcessBatchRunner | CeleryBatchRunner

    async def shutdown(self) -> None:
        if isinstance(self.runner, InProcessBatchRunner):
            await self.runner.shutdown()


def build_services(
    *,
    provider_configs: ProviderConfigStore,
    credentials: CredentialResolver,
    references: ReferenceImageResolver,
    generations: GenerationStore,
    jobs: BatchJobStore,
    batch_backend: str | None = None,
) -> Services:
    """Assemble orchestrator, batch manager, runner and service around the given stores."""
    vendor_configs = vendor_configs_from_settings(
        settings.generation_timeout_seconds,
        settings.batch_request_delay_seconds,
        settings.batch_estimate_hours,
    )
    orchestrator = FastPathOrchestrator(credentials, references, vendor_configs)
    batch_manager = BatchJobManager(
        jobs=jobs,
        provider_configs=provider_configs,
        credentials=credentials,
        references=references,
        generations=generations,
        vendor_configs=vendor_configs,
    )

    backend = batch_backend or settings.batch_backend
    if backend == "celery":
        runner: InProcessBatchRunner | CeleryBatchRunner = CeleryBatchRunner()
    else:
        runner = InProcessBatchRunner(batch_manager.process, max_concurrent=settings.batch_max_concurrent_jobs)
    batch_manager.attach_runner(runner)

    service = GenerationService(
        provider_configs=provider_configs,
        orchestrator=orchestrator,
        batch_manager=batch_manager,
        generations=generations,
        vendor_configs=vendor_configs,
    )
    logger.info("Generation services ready (batch backend=%s)", backend)
    return Services(
        provider_configs=provider_configs,
        credentials=credentials,
        references=references,
        generations=generations,
        jobs=jobs,
        batch_manager=batch_manager,
        generation_service=service,
        runner=runner,
    )


def build_memory_services() -> Services:
    from app.services.memory_stores import (
        InMemoryBatchJobStore,
        InMemoryGenerationStore,
        InMemoryProviderConfigStore,
    )

    configs = InMemoryProviderConfigStore()
    return build_services(
        provider_configs=configs,
        credentials=configs,
        references=HttpReferenceImageResolver(),
        generations=InMemoryGenerationStore(),
        jobs=InMemoryBatchJobStore(),
        batch_backend="inprocess",
    )


def build_postgres_services(session_factory=None) -> Services:
    from app.services.credentials import FernetCredentialResolver
    from app.services.postgres_stores import (
        PostgresBatchJobStore,
        PostgresGenerationStore,
        PostgresProviderConfigStore,
    )

    if session_factory is None:
        from app.db.postgres import async_session_factory

        session_factory = async_session_factory

    return build_services(
        provider_configs=PostgresProviderConfigStore(session_factory),
        credentials=FernetCredentialResolver(session_factory),
        references=HttpReferenceImageResolver(),
        generations=PostgresGenerationStore(session_factory),
        jobs=PostgresBatchJobStore(session_factory),
    )


def build_default_services() -> Services:
    if settings.persistence_backend == "memory":
        return build_memory_services()
    return build_postgres_services()
