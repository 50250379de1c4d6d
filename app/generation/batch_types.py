"""Batch job types and the job state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from app.generation.types import GenerationRequest


class BatchStatus(str, Enum):
    """Lifecycle of a deferred batch job."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({BatchStatus.PENDING, BatchStatus.SUBMITTED, BatchStatus.PROCESSING})

# Single forward path plus cancellation from any active state
ALLOWED_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.SUBMITTED, BatchStatus.CANCELLED}),
    BatchStatus.SUBMITTED: frozenset({BatchStatus.PROCESSING, BatchStatus.CANCELLED}),
    BatchStatus.PROCESSING: frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.FAILED: frozenset(),
    BatchStatus.CANCELLED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a job is asked to move along an edge the state machine lacks."""

    def __init__(self, job_id: str, current: BatchStatus, target: BatchStatus):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Batch job {job_id}: illegal transition {current.value} -> {target.value}")


def can_transition(current: BatchStatus, target: BatchStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(job_id: str, current: BatchStatus, target: BatchStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(job_id, current, target)


def sources_for(target: BatchStatus) -> frozenset[BatchStatus]:
    """Statuses from which ``target`` may be entered. Stores use this as the CAS guard."""
    return frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)


@dataclass(frozen=True)
class BatchJobRequest:
    """One queued generation. Reference images are storage paths, never bytes."""

    prompt: str = ""
    negative_prompt: str | None = None
    aspect_ratio: str | None = None
    image_size: str | None = None
    reference_image_paths: tuple[str, ...] = ()
    source: str | None = None

    @classmethod
    def from_generation_request(cls, request: GenerationRequest) -> BatchJobRequest:
        return cls(
            prompt=request.prompt,
            negative_prompt=request.negative_prompt,
            aspect_ratio=request.aspect_ratio,
            image_size=request.image_size,
            reference_image_paths=request.reference_image_paths,
            source=request.source,
        )

    def to_generation_request(self, provider_id: str) -> GenerationRequest:
        """Single-image request for one batch item."""
        return GenerationRequest(
            provider_id=provider_id,
            prompt=self.prompt,
            negative_prompt=self.negative_prompt,
            aspect_ratio=self.aspect_ratio,
            image_size=self.image_size,
            output_count=1,
            reference_image_paths=self.reference_image_paths,
            source=self.source,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"prompt": self.prompt}
        if self.negative_prompt:
            d["negativePrompt"] = self.negative_prompt
        if self.aspect_ratio:
            d["aspectRatio"] = self.aspect_ratio
        if self.image_size:
            d["imageSize"] = self.image_size
        if self.reference_image_paths:
            d["referenceImagePaths"] = list(self.reference_image_paths)
        if self.source:
            d["source"] = self.source
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BatchJobRequest:
        return cls(
            prompt=data.get("prompt") or "",
            negative_prompt=data.get("negativePrompt"),
            aspect_ratio=data.get("aspectRatio"),
            image_size=data.get("imageSize"),
            reference_image_paths=tuple(data.get("referenceImagePaths") or ()),
            source=data.get("source"),
        )


@dataclass(frozen=True)
class BatchJobResult:
    """Outcome of one request within a batch job, aligned by ``request_index``."""

    request_index: int
    success: bool
    image_url: str | None = None
    image_base64: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"requestIndex": self.request_index, "success": self.success}
        if self.image_url is not None:
            d["imageUrl"] = self.image_url
        if self.image_base64 is not None:
            d["imageBase64"] = self.image_base64
        if self.error is not None:
            d["error"] = self.error
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BatchJobResult:
        return cls(
            request_index=int(data["requestIndex"]),
            success=bool(data["success"]),
            image_url=data.get("imageUrl"),
            image_base64=data.get("imageBase64"),
            error=data.get("error"),
        )


@dataclass
class BatchJob:
    """A deferred generation job as held by the job store."""

    id: str
    owner_id: str
    provider_config_id: str
    requests: list[BatchJobRequest]
    status: BatchStatus = BatchStatus.PENDING
    results: list[BatchJobResult] = field(default_factory=list)
    provider_job_id: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_completion: datetime | None = None


@dataclass(frozen=True)
class BatchJobStatusView:
    """Read-only snapshot returned to pollers."""

    id: str
    status: BatchStatus
    results: tuple[BatchJobResult, ...]
    error: str | None
    created_at: datetime | None
    submitted_at: datetime | None
    completed_at: datetime | None
    estimated_completion: datetime | None
    request_count: int = 0

    @classmethod
    def from_job(cls, job: BatchJob) -> BatchJobStatusView:
        return cls(
            id=job.id,
            status=job.status,
            results=tuple(job.results),
            error=job.error_message,
            created_at=job.created_at,
            submitted_at=job.submitted_at,
            completed_at=job.completed_at,
            estimated_completion=job.estimated_completion,
            request_count=len(job.requests),
        )
