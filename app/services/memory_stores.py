"""In-memory collaborator implementations.

Used when ``PERSISTENCE_BACKEND=memory`` (local demos) and by the test
suite. Every read returns a copy so callers never mutate stored state.
"""

import base64
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.generation.batch_types import BatchJob, BatchJobRequest, BatchJobResult, BatchStatus, sources_for
from app.generation.errors import CredentialUnavailableError
from app.generation.types import GenerationRecord, ProviderConfig
from app.services.provider_access import is_visible_to

logger = logging.getLogger(__name__)


@dataclass
class _ConfigEntry:
    config: ProviderConfig
    api_key: str | None
    access_level: str = "authenticated"
    allowed_users: set[str] = field(default_factory=set)
    is_active: bool = True


class InMemoryProviderConfigStore:
    """Provider configs plus their plaintext keys. Also serves as the credential resolver."""

    def __init__(self):
        self._entries: dict[str, _ConfigEntry] = {}

    def add(
        self,
        config: ProviderConfig,
        api_key: str | None = "test-key",
        *,
        access_level: str = "authenticated",
        allowed_users: list[str] | None = None,
        is_active: bool = True,
    ) -> ProviderConfig:
        self._entries[config.id] = _ConfigEntry(
            config=config,
            api_key=api_key,
            access_level=access_level,
            allowed_users=set(allowed_users or ()),
            is_active=is_active,
        )
        return config

    async def get(self, provider_id: str, owner_id: str) -> ProviderConfig | None:
        entry = self._entries.get(provider_id)
        if entry is None:
            return None
        visible = is_visible_to(
            owner_id,
            owner_id=entry.config.owner_id,
            access_level=entry.access_level,
            allowed_users=entry.allowed_users,
            is_active=entry.is_active,
        )
        return entry.config if visible else None

    async def resolve(self, config: ProviderConfig) -> str:
        entry = self._entries.get(config.id)
        if entry is None or not entry.api_key:
            raise CredentialUnavailableError()
        return entry.api_key


class InMemoryReferenceStore:
    """Reference images held as raw bytes keyed by storage path."""

    def __init__(self, images: dict[str, bytes] | None = None, public_base_url: str = "https://storage.local"):
        self.images = dict(images or {})
        self.public_base_url = public_base_url.rstrip("/")

    async def as_inline(self, paths: list[str]) -> list[str]:
        result = []
        for path in paths:
            data = self.images.get(path)
            if data is None:
                logger.warning("Reference image %s not found", path)
                continue
            result.append("data:image/jpeg;base64," + base64.b64encode(data).decode("ascii"))
        return result

    async def as_public_urls(self, paths: list[str]) -> list[str]:
        return [f"{self.public_base_url}/{path}" for path in paths]


class InMemoryGenerationStore:
    def __init__(self):
        self.records: dict[str, GenerationRecord] = {}

    async def save(self, record: GenerationRecord) -> str:
        record_id = str(uuid.uuid4())
        self.records[record_id] = copy.deepcopy(record)
        return record_id

    def for_owner(self, owner_id: str) -> list[GenerationRecord]:
        return [r for r in self.records.values() if r.owner_id == owner_id]


class InMemoryBatchJobStore:
    """Job store with compare-and-set transitions.

    Methods never await between reading and writing a job, so each update is
    atomic with respect to other coroutines on the loop.
    """

    def __init__(self):
        self._jobs: dict[str, BatchJob] = {}

    async def create(
        self, owner_id: str, provider_config_id: str, requests: list[BatchJobRequest]
    ) -> BatchJob:
        job = BatchJob(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            provider_config_id=provider_config_id,
            requests=list(requests),
            created_at=datetime.now(timezone.utc),
        )
        self._jobs[job.id] = job
        return copy.deepcopy(job)

    async def get(self, job_id: str) -> BatchJob | None:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def transition(self, job_id: str, target: BatchStatus, **changes: Any) -> BatchJob | None:
        job = self._jobs.get(job_id)
        if job is None or job.status not in sources_for(target):
            return None
        job.status = target
        for name, value in changes.items():
            setattr(job, name, value)
        return copy.deepcopy(job)

    async def append_result(self, job_id: str, result: BatchJobResult) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != BatchStatus.PROCESSING:
            return False
        job.results.append(result)
        return True

    async def list_for_owner(
        self, owner_id: str, *, statuses: frozenset[BatchStatus] | None = None, limit: int = 20
    ) -> list[BatchJob]:
        jobs = [
            j
            for j in self._jobs.values()
            if j.owner_id == owner_id and (statuses is None or j.status in statuses)
        ]
        jobs.sort(key=lambda j: j.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return [copy.deepcopy(j) for j in jobs[:limit]]
