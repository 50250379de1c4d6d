"""Postgres implementations of the generation collaborators (SQLAlchemy async)."""

import logging
import uuid
from typing import Any

from sqlalchemy import literal, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.generation.batch_types import BatchJob, BatchJobRequest, BatchJobResult, BatchStatus, sources_for
from app.generation.types import GenerationRecord, ProviderConfig
from app.models.api_config import ApiConfig
from app.models.batch_job import StoredBatchJob
from app.models.generation import Generation
from app.services.provider_access import is_visible_to

logger = logging.getLogger(__name__)


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def to_provider_config(row: ApiConfig) -> ProviderConfig:
    return ProviderConfig.build(
        id=str(row.id),
        provider=row.provider,
        endpoint=row.endpoint,
        model_id=row.model_id,
        name=row.name,
        owner_id=row.owner_id,
        options=row.options,
    )


def to_batch_job(row: StoredBatchJob) -> BatchJob:
    return BatchJob(
        id=str(row.id),
        owner_id=row.owner_id,
        provider_config_id=str(row.provider_config_id),
        requests=[BatchJobRequest.from_dict(r) for r in row.requests or []],
        status=BatchStatus(row.status),
        results=[BatchJobResult.from_dict(r) for r in row.results or []],
        provider_job_id=row.provider_job_id,
        error_message=row.error_message,
        created_at=row.created_at,
        submitted_at=row.submitted_at,
        completed_at=row.completed_at,
        estimated_completion=row.estimated_completion,
    )


class PostgresProviderConfigStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, provider_id: str, owner_id: str) -> ProviderConfig | None:
        config_id = _parse_uuid(provider_id)
        if config_id is None:
            return None

        async with self._session_factory() as db:
            row = (await db.execute(select(ApiConfig).where(ApiConfig.id == config_id))).scalar_one_or_none()

        if row is None:
            return None
        visible = is_visible_to(
            owner_id,
            owner_id=row.owner_id,
            access_level=row.access_level,
            allowed_users=row.allowed_users,
            is_active=row.is_active,
        )
        return to_provider_config(row) if visible else None


class PostgresGenerationStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save(self, record: GenerationRecord) -> str:
        row = Generation(
            owner_id=record.owner_id,
            provider_config_id=_parse_uuid(record.provider_config_id) if record.provider_config_id else None,
            prompt=record.prompt,
            negative_prompt=record.negative_prompt,
            image_url=record.image_url,
            image_path=record.image_path,
            settings=record.settings,
        )
        async with self._session_factory() as db:
            db.add(row)
            await db.commit()
        return str(row.id)


class PostgresBatchJobStore:
    """Batch jobs in ``batch_jobs``; transitions are conditional UPDATEs."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(
        self, owner_id: str, provider_config_id: str, requests: list[BatchJobRequest]
    ) -> BatchJob:
        row = StoredBatchJob(
            owner_id=owner_id,
            provider_config_id=uuid.UUID(provider_config_id),
            requests=[r.to_dict() for r in requests],
            status=BatchStatus.PENDING.value,
            results=[],
        )
        async with self._session_factory() as db:
            db.add(row)
            await db.commit()
            await db.refresh(row)
        return to_batch_job(row)

    async def get(self, job_id: str) -> BatchJob | None:
        row_id = _parse_uuid(job_id)
        if row_id is None:
            return None
        async with self._session_factory() as db:
            row = await db.get(StoredBatchJob, row_id)
        return to_batch_job(row) if row else None

    async def transition(self, job_id: str, target: BatchStatus, **changes: Any) -> BatchJob | None:
        row_id = _parse_uuid(job_id)
        if row_id is None:
            return None
        allowed = [s.value for s in sources_for(target)]
        stmt = (
            update(StoredBatchJob)
            .where(StoredBatchJob.id == row_id, StoredBatchJob.status.in_(allowed))
            .values(status=target.value, **changes)
            .returning(StoredBatchJob)
        )
        async with self._session_factory() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            await db.commit()
        if row is None:
            logger.debug("Batch job %s: transition to %s rejected", job_id, target.value)
            return None
        return to_batch_job(row)

    async def append_result(self, job_id: str, result: BatchJobResult) -> bool:
        stmt = (
            update(StoredBatchJob)
            .where(
                StoredBatchJob.id == uuid.UUID(job_id),
                StoredBatchJob.status == BatchStatus.PROCESSING.value,
            )
            .values(results=StoredBatchJob.results.op("||")(literal([result.to_dict()], JSONB)))
            .returning(StoredBatchJob.id)
        )
        async with self._session_factory() as db:
            updated = (await db.execute(stmt)).scalar_one_or_none()
            await db.commit()
        return updated is not None

    async def list_for_owner(
        self, owner_id: str, *, statuses: frozenset[BatchStatus] | None = None, limit: int = 20
    ) -> list[BatchJob]:
        query = select(StoredBatchJob).where(StoredBatchJob.owner_id == owner_id)
        if statuses is not None:
            query = query.where(StoredBatchJob.status.in_([s.value for s in statuses]))
        query = query.order_by(StoredBatchJob.created_at.desc()).limit(limit)

        async with self._session_factory() as db:
            rows = (await db.execute(query)).scalars().all()
        return [to_batch_job(r) for r in rows]
