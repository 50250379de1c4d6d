"""Generation and batch job response schemas (camelCase on the wire)."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.generation.batch_types import BatchJobStatusView


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GeneratedImageOut(BaseModel):
    url: str
    base64: str | None = None


class GenerateResponse(_CamelModel):
    """Immediate (``images``) or deferred (``job_id``) generation outcome."""

    success: bool = True
    mode: str
    images: list[GeneratedImageOut] | None = None
    partial: bool | None = None
    requested: int | None = None
    job_id: str | None = None
    estimated_completion: datetime | None = None


class BatchJobResultOut(_CamelModel):
    request_index: int
    success: bool
    image_url: str | None = None
    image_base64: str | None = None
    error: str | None = None


class BatchJobOut(_CamelModel):
    id: str
    status: str
    request_count: int
    results: list[BatchJobResultOut]
    error: str | None = None
    created_at: datetime | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_completion: datetime | None = None

    @classmethod
    def from_view(cls, view: BatchJobStatusView) -> "BatchJobOut":
        return cls(
            id=view.id,
            status=view.status.value,
            request_count=view.request_count,
            results=[
                BatchJobResultOut(
                    request_index=r.request_index,
                    success=r.success,
                    image_url=r.image_url,
                    image_base64=r.image_base64,
                    error=r.error,
                )
                for r in view.results
            ],
            error=view.error,
            created_at=view.created_at,
            submitted_at=view.submitted_at,
            completed_at=view.completed_at,
            estimated_completion=view.estimated_completion,
        )


class BatchJobResponse(BaseModel):
    success: bool = True
    job: BatchJobOut


class BatchJobListResponse(BaseModel):
    success: bool = True
    jobs: list[BatchJobOut]
    total: int


class CancelBatchJobResponse(BaseModel):
    success: bool = True
    cancelled: bool
