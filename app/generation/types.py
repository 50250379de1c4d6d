"""Core types and DTOs for the image generation layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Input limits
# ---------------------------------------------------------------------------

MAX_PROMPT_LENGTH = 10_000
MAX_NEGATIVE_PROMPT_LENGTH = 2_000
MAX_SOURCE_LENGTH = 100
MIN_OUTPUT_COUNT = 1
MAX_OUTPUT_COUNT = 10
MAX_REFERENCE_IMAGES = 5

ASPECT_RATIOS: tuple[str, ...] = (
    "1:1",
    "2:3",
    "3:2",
    "3:4",
    "4:3",
    "4:5",
    "5:4",
    "9:16",
    "16:9",
    "21:9",
    "9:21",
)

IMAGE_SIZES: tuple[str, ...] = ("1K", "2K", "4K")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderFamily(str, Enum):
    """Vendor families with a dedicated adapter. Anything else is CUSTOM."""

    GOOGLE = "google"  # Gemini image models (multi-modal, one image per call)
    FAL = "fal"  # fal.ai hosted inference, URL references
    OPENAI = "openai"  # DALL-E style single-image API
    STABILITY = "stability"  # weighted-prompt diffusion API
    CUSTOM = "custom"  # generic passthrough

    @classmethod
    def from_provider(cls, provider: str | None) -> ProviderFamily:
        try:
            return cls((provider or "").strip().lower())
        except ValueError:
            return cls.CUSTOM


class DeliveryMode(str, Enum):
    """How the caller wants results delivered. Values are the wire names."""

    IMMEDIATE = "fast"
    DEFERRED = "relaxed"


class ReferenceForm(str, Enum):
    """How an adapter needs reference images handed to it."""

    INLINE = "inline"  # base64 data URLs
    URL = "url"  # publicly resolvable URLs
    NONE = "none"  # adapter ignores references


# ---------------------------------------------------------------------------
# Generation Request: vendor-neutral input
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationRequest:
    """A validated, vendor-neutral generation request.

    Built only by ``validate_generation_request``; adapters receive copies
    made with ``dataclasses.replace`` (e.g. ``output_count=1`` for fan-out).
    """

    provider_id: str
    prompt: str = ""
    negative_prompt: str | None = None
    aspect_ratio: str | None = None
    image_size: str | None = None
    output_count: int = 1
    reference_image_paths: tuple[str, ...] = ()
    delivery_mode: DeliveryMode = DeliveryMode.IMMEDIATE
    source: str | None = None

    @property
    def full_prompt(self) -> str:
        """Prompt with the negative prompt folded in, for vendors without a negative field."""
        if self.negative_prompt:
            return f"{self.prompt}\n\nAvoid: {self.negative_prompt}"
        return self.prompt


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelCapabilities:
    """What a specific model accepts as structured parameters."""

    structured_aspect_ratio: bool = False
    structured_image_size: bool = False


# Per-model capability table, consulted once when a ProviderConfig is loaded.
# Models missing from the table get ModelCapabilities() (hints go into the prompt text).
MODEL_CAPABILITIES: dict[str, ModelCapabilities] = {
    "gemini-3-pro-image-preview": ModelCapabilities(structured_aspect_ratio=True, structured_image_size=True),
    "gemini-3-pro-image": ModelCapabilities(structured_aspect_ratio=True, structured_image_size=True),
    "gemini-2.5-flash-image": ModelCapabilities(structured_aspect_ratio=True),
    "gemini-2.5-flash-image-preview": ModelCapabilities(structured_aspect_ratio=True),
    "gemini-2.0-flash-exp-image-generation": ModelCapabilities(),
    "gemini-2.0-flash-preview-image-generation": ModelCapabilities(),
}


def resolve_capabilities(model_id: str | None) -> ModelCapabilities:
    if not model_id:
        return ModelCapabilities()
    # Config entries sometimes carry the full resource name ("models/...")
    key = model_id.rsplit("/", 1)[-1]
    return MODEL_CAPABILITIES.get(key, ModelCapabilities())


@dataclass(frozen=True)
class ProviderConfig:
    """A resolved provider configuration. Immutable for one request or job."""

    id: str
    family: ProviderFamily
    endpoint: str = ""
    model_id: str | None = None
    name: str = ""
    owner_id: str | None = None
    options: dict[str, Any] = field(default_factory=dict)
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)

    @classmethod
    def build(
        cls,
        *,
        id: str,
        provider: str,
        endpoint: str | None = None,
        model_id: str | None = None,
        name: str = "",
        owner_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> ProviderConfig:
        """Create a config from stored fields, resolving model capabilities."""
        return cls(
            id=str(id),
            family=ProviderFamily.from_provider(provider),
            endpoint=endpoint or "",
            model_id=model_id,
            name=name,
            owner_id=owner_id,
            options=dict(options or {}),
            capabilities=resolve_capabilities(model_id),
        )


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


@dataclass
class GeneratedImage:
    """One generated image. ``url`` may be an inline data URL."""

    url: str
    base64: str | None = None

    @classmethod
    def from_base64(cls, data: str, mime_type: str = "image/png") -> GeneratedImage:
        return cls(url=f"data:{mime_type};base64,{data}", base64=data)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"url": self.url}
        if self.base64 is not None:
            d["base64"] = self.base64
        return d


@dataclass
class FastPathResult:
    """Aggregate outcome of a fast-path execution."""

    images: list[GeneratedImage]
    requested: int
    errors: list[BaseException] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return 0 < len(self.images) < self.requested


@dataclass
class GenerationRecord:
    """A completed image as it is recorded in the owner's history."""

    owner_id: str
    provider_config_id: str | None
    prompt: str
    image_url: str
    negative_prompt: str | None = None
    image_path: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)


def settings_snapshot(
    request: GenerationRequest,
    *,
    speed: DeliveryMode,
    model: str | None = None,
    reference_urls: list[str] | None = None,
) -> dict[str, Any]:
    """Settings stored alongside a generation record."""
    snapshot: dict[str, Any] = {
        "aspectRatio": request.aspect_ratio,
        "imageSize": request.image_size,
        "outputCount": request.output_count,
        "generationSpeed": speed.value,
        "model": model,
        "source": request.source,
    }
    if reference_urls:
        snapshot["referenceImages"] = reference_urls
    return {k: v for k, v in snapshot.items() if v is not None}


# ---------------------------------------------------------------------------
# Vendor config
# ---------------------------------------------------------------------------


@dataclass
class VendorConfig:
    """Timeout and batch pacing configuration for a provider family."""

    family: ProviderFamily
    timeout_seconds: float = 90.0  # Per upstream call
    supports_deferred: bool = False  # Relaxed/batch delivery offered
    batch_request_delay: float = 2.0  # Pause between sequential batch items (seconds)
    batch_estimate_hours: float = 2.0  # Advertised completion estimate


DEFAULT_VENDOR_CONFIGS: dict[ProviderFamily, VendorConfig] = {
    ProviderFamily.GOOGLE: VendorConfig(family=ProviderFamily.GOOGLE, supports_deferred=True),
    ProviderFamily.FAL: VendorConfig(family=ProviderFamily.FAL),
    ProviderFamily.OPENAI: VendorConfig(family=ProviderFamily.OPENAI),
    ProviderFamily.STABILITY: VendorConfig(family=ProviderFamily.STABILITY),
    ProviderFamily.CUSTOM: VendorConfig(family=ProviderFamily.CUSTOM),
}


def vendor_configs_from_settings(
    timeout_seconds: float,
    batch_request_delay: float,
    batch_estimate_hours: float,
) -> dict[ProviderFamily, VendorConfig]:
    """Default vendor configs with the global settings applied."""
    return {
        family: VendorConfig(
            family=family,
            timeout_seconds=timeout_seconds,
            supports_deferred=config.supports_deferred,
            batch_request_delay=batch_request_delay,
            batch_estimate_hours=batch_estimate_hours,
        )
        for family, config in DEFAULT_VENDOR_CONFIGS.items()
    }
