"""Vendor-specific image adapters: protocol-level handling for each provider family.

Each adapter translates a GenerationRequest into the vendor's HTTP protocol,
sends it, and returns a uniform list of GeneratedImage. Upstream failures are
raised as classified GenerationError instances; callers never see vendor
response shapes.

Vendor-specific behaviors:
  - Gemini: multi-part payload with inline references, one image per call
    (the orchestrator fans out), structured image hints only on models whose
    capabilities allow it, finishReason SAFETY / RECITATION -> safety block
  - Fal: single call with num_images, pixel dimensions and reference URLs
  - OpenAI: always n=1, aspect ratio mapped to the nearest fixed size
  - Stability: negative prompt as a weight -1 text prompt, CONTENT_FILTERED
    artifacts dropped
  - Custom: explicit endpoint required, loosely shaped responses
"""

from __future__ import annotations

import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx

from app.generation.errors import (
    COPYRIGHT_BLOCK_MESSAGE,
    EMPTY_RESULT_MESSAGE,
    MISSING_ENDPOINT_MESSAGE,
    SAFETY_BLOCK_MESSAGE,
    ErrorKind,
    GenerationError,
    classify_http_error,
)
from app.generation.response_parsers import match_images_field, parse_images
from app.generation.timeout_guard import Deadline
from app.generation.types import (
    GeneratedImage,
    GenerationRequest,
    ProviderConfig,
    ProviderFamily,
    ReferenceForm,
)

logger = logging.getLogger(__name__)

# Floor for the HTTP client timeout; the timeout guard enforces the real deadline
_MIN_CLIENT_TIMEOUT = 1.0

_BASE_SIZES = {"1K": 1024, "2K": 2048, "4K": 4096}

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_dimensions(image_size: str | None, aspect_ratio: str | None) -> tuple[int, int]:
    """Pixel (width, height) for a size tier and aspect ratio.

    Keeps the area of a square at the tier's base edge (1024/2048/4096) and
    rounds both sides to a multiple of 8.
    """
    base = _BASE_SIZES.get(image_size or "", 1024)
    w_ratio, h_ratio = (int(part) for part in (aspect_ratio or "1:1").split(":"))
    scale = math.sqrt((base * base) / (w_ratio * h_ratio))
    width = _round_half_up(w_ratio * scale)
    height = _round_half_up(h_ratio * scale)
    return _round_half_up(width / 8) * 8, _round_half_up(height / 8) * 8


def split_data_url(value: str, default_mime: str = "image/jpeg") -> tuple[str, str]:
    """Return (mime_type, base64_data) for a data URL or bare base64 string."""
    match = _DATA_URL_RE.match(value)
    if match:
        return match.group(1), value[match.end() :]
    return default_mime, value


class BaseImageAdapter(ABC):
    """Base class for all image adapters."""

    family: ProviderFamily
    label: str = "Upstream"
    reference_form: ReferenceForm = ReferenceForm.NONE
    # True when one upstream call yields at most one image
    fans_out: bool = False

    def __init__(self, api_key: str, **kwargs):
        self.api_key = api_key

    @abstractmethod
    async def execute(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        *,
        references: list[str] | None = None,
        deadline: Deadline,
    ) -> list[GeneratedImage]:
        """Generate images for ``request`` and return them."""
        ...

    async def _post_json(
        self,
        url: str,
        payload: dict,
        *,
        deadline: Deadline,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        """POST a JSON payload and return the decoded body, classifying failures."""
        async with httpx.AsyncClient(timeout=max(deadline.remaining(), _MIN_CLIENT_TIMEOUT)) as client:
            resp = await client.post(
                url,
                json=payload,
                params=params,
                headers={"Content-Type": "application/json", **(headers or {})},
            )

        if resp.status_code >= 400:
            error = classify_http_error(resp.status_code, resp.text, self.label)
            logger.warning(
                "%s API error: status=%d kind=%s",
                self.label,
                resp.status_code,
                error.kind.value,
            )
            raise error

        try:
            return resp.json()
        except ValueError as e:
            raise GenerationError(
                f"{self.label} returned a non-JSON response",
                kind=ErrorKind.PROTOCOL,
                upstream_status=resp.status_code,
            ) from e

    def _require_images(self, images: list[GeneratedImage]) -> list[GeneratedImage]:
        if not images:
            raise GenerationError(EMPTY_RESULT_MESSAGE, kind=ErrorKind.PROTOCOL, user_safe=True)
        return images


# ---------------------------------------------------------------------------
# Gemini Adapter (Google, multi-modal)
# ---------------------------------------------------------------------------

_GEMINI_SAFETY_REASONS = frozenset({"SAFETY", "IMAGE_SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"})
_GEMINI_COPYRIGHT_REASONS = frozenset({"RECITATION", "IMAGE_RECITATION"})


class GeminiImageAdapter(BaseImageAdapter):
    """Google Gemini image adapter. One image per generateContent call."""

    family = ProviderFamily.GOOGLE
    label = "Gemini"
    reference_form = ReferenceForm.INLINE
    fans_out = True
    default_model = "gemini-2.5-flash-image"
    api_url_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def build_payload(
        self, config: ProviderConfig, request: GenerationRequest, references: list[str] | None
    ) -> dict:
        capabilities = config.capabilities
        text = request.full_prompt

        # Hints the model cannot take as structured fields go into the prompt text
        hints = []
        image_config: dict[str, str] = {}
        if request.aspect_ratio:
            if capabilities.structured_aspect_ratio:
                image_config["aspectRatio"] = request.aspect_ratio
            else:
                hints.append(f"Aspect ratio: {request.aspect_ratio}.")
        if request.image_size:
            if capabilities.structured_image_size:
                image_config["imageSize"] = request.image_size
            else:
                hints.append(f"Resolution: {request.image_size}.")
        if hints:
            text = f"{text}\n\n{' '.join(hints)}" if text else " ".join(hints)

        parts: list[dict] = [{"text": text}]
        for reference in references or []:
            mime_type, data = split_data_url(reference)
            parts.append({"inlineData": {"mimeType": mime_type, "data": data}})

        generation_config: dict[str, Any] = {"responseModalities": ["TEXT", "IMAGE"]}
        if image_config:
            generation_config["imageConfig"] = image_config

        return {"contents": [{"role": "user", "parts": parts}], "generationConfig": generation_config}

    async def execute(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        *,
        references: list[str] | None = None,
        deadline: Deadline,
    ) -> list[GeneratedImage]:
        model = config.model_id or self.default_model
        url = config.endpoint or self.api_url_template.format(model=model)
        payload = self.build_payload(config, request, references)

        data = await self._post_json(url, payload, deadline=deadline, params={"key": self.api_key})
        return [self.parse_response(data)]

    @staticmethod
    def parse_response(data: dict) -> GeneratedImage:
        """Extract the first image, mapping block signals to safety errors."""
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason", "")
            if block_reason:
                logger.info("Gemini prompt blocked: %s", block_reason)
                raise GenerationError(SAFETY_BLOCK_MESSAGE, kind=ErrorKind.SAFETY_BLOCK)
            raise GenerationError(EMPTY_RESULT_MESSAGE, kind=ErrorKind.PROTOCOL, user_safe=True)

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason", "")
        if finish_reason in _GEMINI_SAFETY_REASONS:
            raise GenerationError(SAFETY_BLOCK_MESSAGE, kind=ErrorKind.SAFETY_BLOCK)
        if finish_reason in _GEMINI_COPYRIGHT_REASONS:
            raise GenerationError(COPYRIGHT_BLOCK_MESSAGE, kind=ErrorKind.SAFETY_BLOCK)

        for part in (candidate.get("content") or {}).get("parts", []):
            inline = part.get("inlineData")
            if inline and inline.get("data"):
                return GeneratedImage.from_base64(inline["data"], inline.get("mimeType", "image/png"))

        raise GenerationError(
            "Gemini did not return an image. Try rephrasing your prompt.",
            kind=ErrorKind.PROTOCOL,
            user_safe=True,
        )


# ---------------------------------------------------------------------------
# Fal Adapter (hosted inference, URL references)
# ---------------------------------------------------------------------------


class FalAdapter(BaseImageAdapter):
    """fal.ai adapter. Batch count is native, references must be public URLs."""

    family = ProviderFamily.FAL
    label = "Fal.ai"
    reference_form = ReferenceForm.URL
    default_model = "fal-ai/flux/dev"

    def build_payload(
        self, config: ProviderConfig, request: GenerationRequest, references: list[str] | None
    ) -> dict:
        width, height = compute_dimensions(request.image_size, request.aspect_ratio)
        payload: dict[str, Any] = {
            "prompt": request.prompt,
            "num_images": request.output_count,
            "max_images": request.output_count,
            "image_size": {"width": width, "height": height},
        }
        if request.negative_prompt:
            payload["negative_prompt"] = request.negative_prompt
        if references:
            payload["image_urls"] = list(references)
        if "enable_safety_checker" in config.options:
            payload["enable_safety_checker"] = bool(config.options["enable_safety_checker"])
        return payload

    async def execute(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        *,
        references: list[str] | None = None,
        deadline: Deadline,
    ) -> list[GeneratedImage]:
        url = config.endpoint or f"https://fal.run/{config.model_id or self.default_model}"
        data = await self._post_json(
            url,
            self.build_payload(config, request, references),
            deadline=deadline,
            headers={"Authorization": f"Key {self.api_key}"},
        )
        return self._require_images(match_images_field(data) or [])


# ---------------------------------------------------------------------------
# OpenAI Adapter (single-image API)
# ---------------------------------------------------------------------------

_OPENAI_SIZES = {
    "1024x1024": 1.0,
    "1792x1024": 1792 / 1024,
    "1024x1792": 1024 / 1792,
}


def nearest_openai_size(aspect_ratio: str | None) -> str:
    """Supported fixed resolution closest to the ratio (log distance)."""
    if not aspect_ratio:
        return "1024x1024"
    w, h = (int(part) for part in aspect_ratio.split(":"))
    target = math.log(w / h)
    return min(_OPENAI_SIZES, key=lambda size: abs(math.log(_OPENAI_SIZES[size]) - target))


class OpenAIImageAdapter(BaseImageAdapter):
    """OpenAI images API. Always requests exactly one image."""

    family = ProviderFamily.OPENAI
    label = "OpenAI"
    default_model = "dall-e-3"
    api_url = "https://api.openai.com/v1/images/generations"

    def build_payload(self, config: ProviderConfig, request: GenerationRequest) -> dict:
        return {
            "model": config.model_id or self.default_model,
            "prompt": request.full_prompt,
            "n": 1,
            "size": nearest_openai_size(request.aspect_ratio),
            "response_format": "url",
        }

    async def execute(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        *,
        references: list[str] | None = None,
        deadline: Deadline,
    ) -> list[GeneratedImage]:
        data = await self._post_json(
            config.endpoint or self.api_url,
            self.build_payload(config, request),
            deadline=deadline,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

        images = []
        for item in data.get("data") or []:
            if item.get("url"):
                images.append(GeneratedImage(url=item["url"]))
            elif item.get("b64_json"):
                images.append(GeneratedImage.from_base64(item["b64_json"]))
        return self._require_images(images)


# ---------------------------------------------------------------------------
# Stability Adapter (weighted prompts)
# ---------------------------------------------------------------------------


class StabilityAdapter(BaseImageAdapter):
    """Stability AI text-to-image with weighted prompt entries."""

    family = ProviderFamily.STABILITY
    label = "Stability"
    default_model = "stable-diffusion-xl-1024-v1-0"
    api_url_template = "https://api.stability.ai/v1/generation/{model}/text-to-image"

    def build_payload(self, request: GenerationRequest) -> dict:
        width, height = compute_dimensions(request.image_size, request.aspect_ratio)
        text_prompts = [{"text": request.prompt, "weight": 1}]
        if request.negative_prompt:
            text_prompts.append({"text": request.negative_prompt, "weight": -1})
        return {
            "text_prompts": text_prompts,
            "cfg_scale": 7,
            "width": width,
            "height": height,
            "samples": request.output_count,
        }

    async def execute(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        *,
        references: list[str] | None = None,
        deadline: Deadline,
    ) -> list[GeneratedImage]:
        url = config.endpoint or self.api_url_template.format(model=config.model_id or self.default_model)
        data = await self._post_json(
            url,
            self.build_payload(request),
            deadline=deadline,
            headers={"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"},
        )

        artifacts = data.get("artifacts") or []
        images = [
            GeneratedImage.from_base64(a["base64"])
            for a in artifacts
            if a.get("base64") and a.get("finishReason") != "CONTENT_FILTERED"
        ]
        if not images and any(a.get("finishReason") == "CONTENT_FILTERED" for a in artifacts):
            raise GenerationError(SAFETY_BLOCK_MESSAGE, kind=ErrorKind.SAFETY_BLOCK)
        return self._require_images(images)


# ---------------------------------------------------------------------------
# Custom Adapter (generic endpoint)
# ---------------------------------------------------------------------------


class CustomAdapter(BaseImageAdapter):
    """Generic provider behind an explicit endpoint."""

    family = ProviderFamily.CUSTOM
    label = "Custom provider"
    reference_form = ReferenceForm.INLINE

    def build_payload(
        self, config: ProviderConfig, request: GenerationRequest, references: list[str] | None
    ) -> dict:
        width, height = compute_dimensions(request.image_size, request.aspect_ratio)
        return {
            "model": config.model_id,
            "prompt": request.prompt,
            "negative_prompt": request.negative_prompt,
            "width": width,
            "height": height,
            "num_outputs": request.output_count,
            "reference_images": list(references or []),
        }

    async def execute(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        *,
        references: list[str] | None = None,
        deadline: Deadline,
    ) -> list[GeneratedImage]:
        if not config.endpoint:
            raise GenerationError(MISSING_ENDPOINT_MESSAGE, kind=ErrorKind.INTERNAL, user_safe=True)

        data = await self._post_json(
            config.endpoint,
            self.build_payload(config, request, references),
            deadline=deadline,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        return self._require_images(parse_images(data))


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[ProviderFamily, type[BaseImageAdapter]] = {
    ProviderFamily.GOOGLE: GeminiImageAdapter,
    ProviderFamily.FAL: FalAdapter,
    ProviderFamily.OPENAI: OpenAIImageAdapter,
    ProviderFamily.STABILITY: StabilityAdapter,
    ProviderFamily.CUSTOM: CustomAdapter,
}


def get_adapter(family: ProviderFamily, api_key: str, **kwargs) -> BaseImageAdapter:
    """Factory: get the appropriate adapter for a provider family."""
    cls = ADAPTER_REGISTRY.get(family)
    if cls is None:
        raise ValueError(f"No adapter registered for provider family: {family}")
    return cls(api_key=api_key, **kwargs)
