"""Collaborator interfaces consumed by the generation core.

The orchestrator and the batch manager depend only on these protocols;
``app.services`` provides the in-memory and Postgres implementations.
"""

from __future__ import annotations

from typing import Any, Protocol

from app.generation.batch_types import BatchJob, BatchJobRequest, BatchJobResult, BatchStatus
from app.generation.types import GenerationRecord, ProviderConfig


class ProviderConfigStore(Protocol):
    async def get(self, provider_id: str, owner_id: str) -> ProviderConfig | None:
        """Config visible to ``owner_id``; None when unknown or not accessible."""
        ...


class CredentialResolver(Protocol):
    async def resolve(self, config: ProviderConfig) -> str:
        """Decrypted secret for the provider. Raises CredentialUnavailableError."""
        ...


class ReferenceImageResolver(Protocol):
    async def as_inline(self, paths: list[str]) -> list[str]:
        """Base64 data URLs for the paths that could be downloaded."""
        ...

    async def as_public_urls(self, paths: list[str]) -> list[str]:
        ...


class GenerationStore(Protocol):
    async def save(self, record: GenerationRecord) -> str:
        """Persist one completed image; returns the record id."""
        ...


class BatchJobStore(Protocol):
    async def create(
        self, owner_id: str, provider_config_id: str, requests: list[BatchJobRequest]
    ) -> BatchJob: ...

    async def get(self, job_id: str) -> BatchJob | None: ...

    async def transition(self, job_id: str, target: BatchStatus, **changes: Any) -> BatchJob | None:
        """Move the job to ``target`` if its current status allows it.

        Compare-and-set: returns the updated job, or None when the job is
        missing or its status has no edge to ``target``.
        """
        ...

    async def append_result(self, job_id: str, result: BatchJobResult) -> bool:
        """Append a result only while the job is processing."""
        ...

    async def list_for_owner(
        self, owner_id: str, *, statuses: frozenset[BatchStatus] | None = None, limit: int = 20
    ) -> list[BatchJob]:
        """Newest first."""
        ...


class BatchRunner(Protocol):
    async def dispatch(self, job_id: str) -> None:
        """Hand a submitted job to a background worker and return immediately."""
        ...
