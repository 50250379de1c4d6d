"""Error taxonomy and upstream failure classification.

Every failure that can reach a caller is a ``GenerationError`` tagged with an
``ErrorKind``. The kind carries the canonical message, whether that message
may be shown to the caller, and the HTTP status used at the API boundary.
Anything not explicitly marked user-safe is replaced by
``GENERIC_FAILURE_MESSAGE`` before it leaves the service.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum

import httpx

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Generation failed. Please try again."

RATE_LIMIT_MESSAGE = "Rate limit reached. Please wait a moment before generating again."
CAPACITY_MESSAGE = "The model is currently experiencing high demand. Please try again later."
SAFETY_BLOCK_MESSAGE = "Content blocked by safety filters. Please modify your prompt and try again."
COPYRIGHT_BLOCK_MESSAGE = "Content blocked due to copyright concerns. Please modify your prompt and try again."
OVERSIZED_PAYLOAD_MESSAGE = "Request too large. Please use fewer or smaller reference images."
EMPTY_RESULT_MESSAGE = "No images were generated. Please try a different prompt."
MISSING_ENDPOINT_MESSAGE = "Custom provider requires an endpoint URL"
NOT_FOUND_MESSAGE = "API not found or access denied"
CREDENTIALS_MESSAGE = "Failed to retrieve API credentials"

_MAX_DETAIL_LENGTH = 200
_MAX_LOGGED_BODY = 500


@dataclass(frozen=True)
class _KindInfo:
    message: str
    user_safe: bool
    http_status: int


class ErrorKind(str, Enum):
    """Fixed failure taxonomy."""

    VALIDATION = "validation"
    NOT_FOUND_OR_DENIED = "not_found_or_denied"
    RATE_LIMITED = "rate_limited"
    CAPACITY = "capacity"
    SAFETY_BLOCK = "safety_block"
    TIMEOUT = "timeout"
    PROTOCOL = "protocol"
    INTERNAL = "internal"

    @property
    def info(self) -> _KindInfo:
        return _KIND_INFO[self]

    @property
    def default_message(self) -> str:
        return self.info.message

    @property
    def user_safe(self) -> bool:
        return self.info.user_safe

    @property
    def http_status(self) -> int:
        return self.info.http_status


_KIND_INFO: dict[ErrorKind, _KindInfo] = {
    ErrorKind.VALIDATION: _KindInfo("Invalid request", True, 400),
    ErrorKind.NOT_FOUND_OR_DENIED: _KindInfo(NOT_FOUND_MESSAGE, True, 404),
    ErrorKind.RATE_LIMITED: _KindInfo(RATE_LIMIT_MESSAGE, True, 500),
    ErrorKind.CAPACITY: _KindInfo(CAPACITY_MESSAGE, True, 500),
    ErrorKind.SAFETY_BLOCK: _KindInfo(SAFETY_BLOCK_MESSAGE, True, 500),
    ErrorKind.TIMEOUT: _KindInfo("Generation timed out. Please try again.", True, 500),
    ErrorKind.PROTOCOL: _KindInfo("Unexpected response from the image provider", False, 500),
    ErrorKind.INTERNAL: _KindInfo(GENERIC_FAILURE_MESSAGE, False, 500),
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class GenerationError(Exception):
    """A classified generation failure.

    ``user_safe`` defaults to the kind's flag; pass it explicitly to mark a
    vendor-specific message as safe (or to hide a normally safe one).
    """

    def __init__(
        self,
        message: str | None = None,
        *,
        kind: ErrorKind = ErrorKind.INTERNAL,
        user_safe: bool | None = None,
        upstream_status: int | None = None,
    ):
        self.message = message or kind.default_message
        self.kind = kind
        self.user_safe = kind.user_safe if user_safe is None else user_safe
        self.upstream_status = upstream_status
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return self.kind.http_status


class RequestValidationError(GenerationError):
    """Caller input rejected before any I/O."""

    def __init__(self, message: str):
        super().__init__(message, kind=ErrorKind.VALIDATION, user_safe=True)


class ProviderNotFoundError(GenerationError):
    """Provider id unknown or not accessible to the caller. Both cases look the same."""

    def __init__(self):
        super().__init__(NOT_FOUND_MESSAGE, kind=ErrorKind.NOT_FOUND_OR_DENIED, user_safe=True)


class CredentialUnavailableError(GenerationError):
    def __init__(self):
        super().__init__(CREDENTIALS_MESSAGE, kind=ErrorKind.INTERNAL, user_safe=True)


class UpstreamTimeout(GenerationError):
    """An upstream call exceeded its deadline."""

    def __init__(self, budget_seconds: float, label: str = ""):
        self.budget_seconds = budget_seconds
        self.label = label
        super().__init__(
            f"Generation timed out after {budget_seconds:g} seconds. Please try again.",
            kind=ErrorKind.TIMEOUT,
            user_safe=True,
        )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_CAPACITY_MARKERS = ("high demand", "overloaded", "unavailable", "capacity")
_SAFETY_MARKERS = (
    "safety filter",
    "safety system",
    "blocked by safety",
    "content_filtered",
    "content filter",
    "content_policy_violation",
    "content policy",
    "prohibited_content",
    "nsfw",
)
# Vendor error codes (error.status / error.code / error.type) that mean a content block
_SAFETY_CODES = frozenset(
    {"content_policy_violation", "content_filter", "content_filtered", "prohibited_content", "image_safety", "safety"}
)
_COPYRIGHT_MARKERS = ("copyright", "recitation")


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in markers)


def extract_error_detail(body: str) -> str:
    """Pull a human-readable message out of a vendor error body.

    Understands ``{"error": {"message": ...}}``, ``{"error": "..."}``,
    ``{"message": ...}`` and ``{"detail": ...}``; falls back to the raw text.
    """
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return body.strip()

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        for key in ("message", "detail"):
            value = data.get(key)
            if isinstance(value, str):
                return value
            if isinstance(value, list) and value:
                first = value[0]
                if isinstance(first, dict) and isinstance(first.get("msg"), str):
                    return first["msg"]
    return body.strip()


def extract_error_codes(body: str) -> set[str]:
    """Lower-cased ``status`` / ``code`` / ``type`` values of a JSON error body."""
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return set()
    if not isinstance(data, dict):
        return set()
    error = data.get("error")
    sources = [data, error] if isinstance(error, dict) else [data]
    return {
        source[key].lower()
        for source in sources
        for key in ("status", "code", "type")
        if isinstance(source.get(key), str)
    }


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _protocol_error(status: int, body: str, vendor: str) -> GenerationError:
    return GenerationError(
        f"{vendor or 'Upstream'} API error ({status}): {_truncate(body, _MAX_LOGGED_BODY)}",
        kind=ErrorKind.PROTOCOL,
        upstream_status=status,
    )


def classify_http_error(status: int, body: str, vendor: str = "") -> GenerationError:
    """Map an upstream HTTP failure to a classified GenerationError.

    Status-coded conditions win over body inspection; the raw body is kept
    only in the (unsafe) protocol fallback so it shows up in logs.
    """
    body = body or ""
    detail = extract_error_detail(body)

    if status == 429:
        return GenerationError(RATE_LIMIT_MESSAGE, kind=ErrorKind.RATE_LIMITED, upstream_status=status)
    if status == 503:
        return GenerationError(CAPACITY_MESSAGE, kind=ErrorKind.CAPACITY, upstream_status=status)
    if status == 413:
        return GenerationError(
            OVERSIZED_PAYLOAD_MESSAGE, kind=ErrorKind.VALIDATION, user_safe=True, upstream_status=status
        )

    if status in (401, 403):
        # Credential or permission problem, whatever the wording
        return _protocol_error(status, body, vendor)

    if _contains_any(detail, _COPYRIGHT_MARKERS):
        return GenerationError(COPYRIGHT_BLOCK_MESSAGE, kind=ErrorKind.SAFETY_BLOCK, upstream_status=status)
    if extract_error_codes(body) & _SAFETY_CODES or _contains_any(detail, _SAFETY_MARKERS):
        return GenerationError(SAFETY_BLOCK_MESSAGE, kind=ErrorKind.SAFETY_BLOCK, upstream_status=status)

    if status == 400:
        message = f"Invalid request: {_truncate(detail, _MAX_DETAIL_LENGTH)}" if detail else "Invalid request"
        return GenerationError(message, kind=ErrorKind.VALIDATION, user_safe=True, upstream_status=status)

    if _contains_any(detail, _CAPACITY_MARKERS):
        return GenerationError(CAPACITY_MESSAGE, kind=ErrorKind.CAPACITY, upstream_status=status)

    return _protocol_error(status, body, vendor)


def classify_exception(exc: BaseException, vendor: str = "") -> GenerationError:
    """Coerce any failure into a GenerationError for logging and aggregation."""
    if isinstance(exc, GenerationError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_http_error(exc.response.status_code, exc.response.text, vendor)
    if isinstance(exc, httpx.HTTPError):
        return GenerationError(f"{vendor or 'Upstream'} transport error: {exc!r}", kind=ErrorKind.PROTOCOL)
    return GenerationError(f"{type(exc).__name__}: {exc}", kind=ErrorKind.INTERNAL)


def safe_message(exc: BaseException) -> str:
    """The message that may be returned to a caller for this failure."""
    if isinstance(exc, GenerationError) and exc.user_safe:
        return exc.message
    return GENERIC_FAILURE_MESSAGE
