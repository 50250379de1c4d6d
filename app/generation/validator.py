"""Request validation for generation payloads.

Checks run in a fixed order and the first violation wins, so the error
message for a given payload is always the same. Nothing here touches the
network or storage.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from app.generation.errors import RequestValidationError
from app.generation.types import (
    ASPECT_RATIOS,
    IMAGE_SIZES,
    MAX_NEGATIVE_PROMPT_LENGTH,
    MAX_OUTPUT_COUNT,
    MAX_PROMPT_LENGTH,
    MAX_REFERENCE_IMAGES,
    MAX_SOURCE_LENGTH,
    MIN_OUTPUT_COUNT,
    DeliveryMode,
    GenerationRequest,
)

# Explicit delivery-mode spellings accepted alongside the "mode" field
_DELIVERY_MODE_ALIASES = {
    "immediate": DeliveryMode.IMMEDIATE,
    "deferred": DeliveryMode.DEFERRED,
}


def is_safe_storage_path(path: Any) -> bool:
    """A storage-relative path with no traversal and no absolute root."""
    return isinstance(path, str) and bool(path) and ".." not in path and not path.startswith("/")


def validate_generation_request(payload: Mapping[str, Any]) -> GenerationRequest:
    """Validate a raw request body and build a GenerationRequest.

    Accepts camelCase keys as sent by clients (``providerId``, with
    ``apiId`` as a legacy alias). Raises RequestValidationError.
    """
    if not isinstance(payload, Mapping):
        raise RequestValidationError("API ID is required")

    provider_id = payload.get("providerId", payload.get("apiId"))
    if not isinstance(provider_id, str) or not provider_id.strip():
        raise RequestValidationError("API ID is required")

    prompt = payload.get("prompt")
    if prompt is None:
        prompt = ""
    if not isinstance(prompt, str):
        raise RequestValidationError("Prompt must be a string")

    references = payload.get("referenceImagePaths", payload.get("referenceImages"))
    if references is None:
        references = []
    if not isinstance(references, list):
        raise RequestValidationError("Reference images must be a list")

    if not prompt.strip() and not references:
        raise RequestValidationError("Prompt or reference images required")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise RequestValidationError(f"Prompt must be under {MAX_PROMPT_LENGTH} characters")

    negative_prompt = payload.get("negativePrompt")
    if negative_prompt is not None and (
        not isinstance(negative_prompt, str) or len(negative_prompt) > MAX_NEGATIVE_PROMPT_LENGTH
    ):
        raise RequestValidationError(f"Negative prompt must be under {MAX_NEGATIVE_PROMPT_LENGTH} characters")

    aspect_ratio = payload.get("aspectRatio")
    if aspect_ratio is not None and aspect_ratio not in ASPECT_RATIOS:
        raise RequestValidationError("Invalid aspect ratio")

    image_size = payload.get("imageSize")
    if image_size is not None and image_size not in IMAGE_SIZES:
        raise RequestValidationError("Image size must be 1K, 2K, or 4K")

    output_count = payload.get("outputCount", MIN_OUTPUT_COUNT)
    if (
        isinstance(output_count, bool)
        or not isinstance(output_count, int)
        or not MIN_OUTPUT_COUNT <= output_count <= MAX_OUTPUT_COUNT
    ):
        raise RequestValidationError(
            f"Output count must be between {MIN_OUTPUT_COUNT} and {MAX_OUTPUT_COUNT}"
        )

    if len(references) > MAX_REFERENCE_IMAGES:
        raise RequestValidationError(f"Maximum {MAX_REFERENCE_IMAGES} reference images allowed")

    for path in references:
        if not is_safe_storage_path(path):
            raise RequestValidationError("Invalid reference image path")

    mode = payload.get("mode")
    if mode is None:
        delivery_mode = None
    elif mode in (DeliveryMode.IMMEDIATE.value, DeliveryMode.DEFERRED.value):
        delivery_mode = DeliveryMode(mode)
    else:
        raise RequestValidationError('Mode must be "fast" or "relaxed"')

    explicit = payload.get("deliveryMode")
    if explicit is not None:
        explicit_mode = _DELIVERY_MODE_ALIASES.get(explicit) if isinstance(explicit, str) else None
        if explicit_mode is None or (delivery_mode is not None and explicit_mode != delivery_mode):
            raise RequestValidationError("Conflicting delivery mode")
        delivery_mode = explicit_mode

    source = payload.get("source")
    if source is not None and (not isinstance(source, str) or len(source) > MAX_SOURCE_LENGTH):
        raise RequestValidationError(f"Source must be under {MAX_SOURCE_LENGTH} characters")

    return GenerationRequest(
        provider_id=provider_id.strip(),
        prompt=prompt,
        negative_prompt=negative_prompt or None,
        aspect_ratio=aspect_ratio,
        image_size=image_size,
        output_count=output_count,
        reference_image_paths=tuple(references),
        delivery_mode=delivery_mode or DeliveryMode.IMMEDIATE,
        source=source or None,
    )
