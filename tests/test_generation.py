"""Tests for the image generation layer.

Covers:
  - Generation types and DTOs
  - Request validator
  - Error taxonomy and upstream classification
  - Timeout guard
  - Response shape matchers
  - Vendor adapters (mocked HTTP)
  - Fast-path orchestrator
"""

from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from app.generation.errors import (
    CAPACITY_MESSAGE,
    COPYRIGHT_BLOCK_MESSAGE,
    CREDENTIALS_MESSAGE,
    EMPTY_RESULT_MESSAGE,
    GENERIC_FAILURE_MESSAGE,
    MISSING_ENDPOINT_MESSAGE,
    OVERSIZED_PAYLOAD_MESSAGE,
    RATE_LIMIT_MESSAGE,
    SAFETY_BLOCK_MESSAGE,
    CredentialUnavailableError,
    ErrorKind,
    GenerationError,
    RequestValidationError,
    UpstreamTimeout,
    classify_exception,
    classify_http_error,
    extract_error_detail,
    safe_message,
)
from app.generation.orchestrator import FastPathOrchestrator
from app.generation.response_parsers import parse_images
from app.generation.timeout_guard import Deadline, guard
from app.generation.types import (
    ASPECT_RATIOS,
    DeliveryMode,
    FastPathResult,
    GeneratedImage,
    GenerationRequest,
    ProviderConfig,
    ProviderFamily,
    ReferenceForm,
    VendorConfig,
    resolve_capabilities,
    settings_snapshot,
    vendor_configs_from_settings,
)
from app.generation.validator import validate_generation_request
from app.generation.vendor_adapters import (
    ADAPTER_REGISTRY,
    BaseImageAdapter,
    CustomAdapter,
    FalAdapter,
    GeminiImageAdapter,
    OpenAIImageAdapter,
    StabilityAdapter,
    compute_dimensions,
    get_adapter,
    nearest_openai_size,
    split_data_url,
)
from app.services.memory_stores import InMemoryProviderConfigStore, InMemoryReferenceStore


def _make_httpx_response(status_code: int, json_data=None, text: str = "") -> httpx.Response:
    """Create a proper httpx.Response with request set (needed for raise_for_status)."""
    request = httpx.Request("POST", "https://example.com")
    if json_data is not None:
        return httpx.Response(status_code, json=json_data, request=request)
    return httpx.Response(status_code, text=text, request=request)


def _gemini_image(data: str = "aW1hZ2U=", finish_reason: str = "STOP") -> httpx.Response:
    return _make_httpx_response(
        200,
        json_data={
            "candidates": [
                {
                    "content": {"parts": [{"text": "ok"}, {"inlineData": {"mimeType": "image/png", "data": data}}]},
                    "finishReason": finish_reason,
                }
            ]
        },
    )


def _request(**overrides) -> GenerationRequest:
    fields = {"provider_id": "p1", "prompt": "a red fox in the snow"}
    fields.update(overrides)
    return GenerationRequest(**fields)


def _config(provider: str = "google", **overrides) -> ProviderConfig:
    fields = {"id": "p1", "provider": provider}
    fields.update(overrides)
    return ProviderConfig.build(**fields)


# ==========================================================================
# Test: Generation Types
# ==========================================================================


class TestGenerationTypes:
    def test_family_from_provider(self):
        assert ProviderFamily.from_provider("google") == ProviderFamily.GOOGLE
        assert ProviderFamily.from_provider(" FAL ") == ProviderFamily.FAL
        assert ProviderFamily.from_provider("replicate") == ProviderFamily.CUSTOM
        assert ProviderFamily.from_provider(None) == ProviderFamily.CUSTOM

    def test_eleven_aspect_ratios(self):
        assert len(ASPECT_RATIOS) == 11
        assert "21:9" in ASPECT_RATIOS

    def test_full_prompt_folds_negative(self):
        assert _request(negative_prompt="blur").full_prompt == "a red fox in the snow\n\nAvoid: blur"
        assert _request().full_prompt == "a red fox in the snow"

    def test_capabilities_resolved_from_model(self):
        assert resolve_capabilities("gemini-3-pro-image-preview").structured_image_size
        assert resolve_capabilities("models/gemini-2.5-flash-image").structured_aspect_ratio
        assert not resolve_capabilities("unknown-model").structured_aspect_ratio
        assert not resolve_capabilities(None).structured_image_size

    def test_provider_config_build(self):
        config = _config(model_id="gemini-2.5-flash-image", options={"x": 1})
        assert config.family == ProviderFamily.GOOGLE
        assert config.capabilities.structured_aspect_ratio
        assert config.endpoint == ""
        assert config.options == {"x": 1}

    def test_generated_image_from_base64(self):
        image = GeneratedImage.from_base64("QUJD", "image/webp")
        assert image.url == "data:image/webp;base64,QUJD"
        assert image.to_dict() == {"url": "data:image/webp;base64,QUJD", "base64": "QUJD"}
        assert GeneratedImage(url="https://x/1.png").to_dict() == {"url": "https://x/1.png"}

    def test_fast_path_result_partial(self):
        one = GeneratedImage(url="u")
        assert FastPathResult(images=[one, one], requested=3, errors=[ValueError()]).partial
        assert not FastPathResult(images=[one, one], requested=2).partial
        assert FastPathResult(images=[one], requested=3).partial
        assert not FastPathResult(images=[one, one, one], requested=2).partial

    def test_settings_snapshot_drops_empty_values(self):
        snapshot = settings_snapshot(
            _request(aspect_ratio="16:9", output_count=2),
            speed=DeliveryMode.DEFERRED,
            model="gemini-2.5-flash-image",
        )
        assert snapshot == {
            "aspectRatio": "16:9",
            "outputCount": 2,
            "generationSpeed": "relaxed",
            "model": "gemini-2.5-flash-image",
        }

    def test_vendor_configs_from_settings(self):
        configs = vendor_configs_from_settings(30.0, 0.5, 4.0)
        assert set(configs) == set(ProviderFamily)
        assert configs[ProviderFamily.GOOGLE].supports_deferred
        assert not configs[ProviderFamily.FAL].supports_deferred
        assert configs[ProviderFamily.OPENAI].timeout_seconds == 30.0
        assert configs[ProviderFamily.GOOGLE].batch_request_delay == 0.5
        assert configs[ProviderFamily.GOOGLE].batch_estimate_hours == 4.0


# ==========================================================================
# Test: Request Validator
# ==========================================================================


class TestValidator:
    """First violation wins; messages are exact."""

    def _error(self, payload) -> str:
        with pytest.raises(RequestValidationError) as exc_info:
            validate_generation_request(payload)
        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert exc_info.value.http_status == 400
        return exc_info.value.message

    def test_minimal_request(self):
        request = validate_generation_request({"providerId": "p1", "prompt": "a cat"})
        assert request.provider_id == "p1"
        assert request.output_count == 1
        assert request.delivery_mode == DeliveryMode.IMMEDIATE
        assert request.reference_image_paths == ()

    def test_full_request(self):
        request = validate_generation_request(
            {
                "apiId": "p1",
                "prompt": "a cat",
                "negativePrompt": "dogs",
                "aspectRatio": "9:16",
                "imageSize": "2K",
                "outputCount": 4,
                "referenceImagePaths": ["user-1/a.jpg", "user-1/b.jpg"],
                "mode": "relaxed",
                "source": "mobile",
            }
        )
        assert request.provider_id == "p1"
        assert request.negative_prompt == "dogs"
        assert request.aspect_ratio == "9:16"
        assert request.image_size == "2K"
        assert request.output_count == 4
        assert request.reference_image_paths == ("user-1/a.jpg", "user-1/b.jpg")
        assert request.delivery_mode == DeliveryMode.DEFERRED
        assert request.source == "mobile"

    def test_references_without_prompt(self):
        request = validate_generation_request({"providerId": "p1", "referenceImages": ["user-1/a.jpg"]})
        assert request.prompt == ""
        assert request.reference_image_paths == ("user-1/a.jpg",)

    def test_missing_provider(self):
        assert self._error({"prompt": "a cat"}) == "API ID is required"
        assert self._error({"providerId": "  ", "prompt": "a cat"}) == "API ID is required"
        assert self._error(["not", "an", "object"]) == "API ID is required"

    def test_prompt_type(self):
        assert self._error({"providerId": "p1", "prompt": 42}) == "Prompt must be a string"

    def test_references_type(self):
        payload = {"providerId": "p1", "prompt": "x", "referenceImagePaths": "user-1/a.jpg"}
        assert self._error(payload) == "Reference images must be a list"

    def test_empty_prompt_and_no_references(self):
        assert self._error({"providerId": "p1", "prompt": "   "}) == "Prompt or reference images required"

    def test_prompt_length_boundary(self):
        validate_generation_request({"providerId": "p1", "prompt": "x" * 10_000})
        assert self._error({"providerId": "p1", "prompt": "x" * 10_001}) == "Prompt must be under 10000 characters"

    def test_negative_prompt_length(self):
        payload = {"providerId": "p1", "prompt": "x", "negativePrompt": "n" * 2_001}
        assert self._error(payload) == "Negative prompt must be under 2000 characters"

    def test_aspect_ratio(self):
        assert self._error({"providerId": "p1", "prompt": "x", "aspectRatio": "7:3"}) == "Invalid aspect ratio"

    def test_image_size(self):
        assert self._error({"providerId": "p1", "prompt": "x", "imageSize": "8K"}) == "Image size must be 1K, 2K, or 4K"

    @pytest.mark.parametrize("count", [0, 11, -1, "2", 2.5, True])
    def test_output_count(self, count):
        payload = {"providerId": "p1", "prompt": "x", "outputCount": count}
        assert self._error(payload) == "Output count must be between 1 and 10"

    def test_reference_count(self):
        payload = {"providerId": "p1", "prompt": "x", "referenceImagePaths": [f"u/{i}.jpg" for i in range(6)]}
        assert self._error(payload) == "Maximum 5 reference images allowed"

    @pytest.mark.parametrize("path", ["../etc/passwd", "/abs/path.jpg", "", 7, "user/../x.jpg"])
    def test_reference_path(self, path):
        payload = {"providerId": "p1", "prompt": "x", "referenceImagePaths": [path]}
        assert self._error(payload) == "Invalid reference image path"

    def test_mode(self):
        assert self._error({"providerId": "p1", "prompt": "x", "mode": "slow"}) == 'Mode must be "fast" or "relaxed"'

    def test_delivery_mode_alias(self):
        request = validate_generation_request({"providerId": "p1", "prompt": "x", "deliveryMode": "deferred"})
        assert request.delivery_mode == DeliveryMode.DEFERRED

    def test_conflicting_delivery_mode(self):
        payload = {"providerId": "p1", "prompt": "x", "mode": "fast", "deliveryMode": "deferred"}
        assert self._error(payload) == "Conflicting delivery mode"
        payload = {"providerId": "p1", "prompt": "x", "deliveryMode": "eventually"}
        assert self._error(payload) == "Conflicting delivery mode"

    def test_source_length(self):
        payload = {"providerId": "p1", "prompt": "x", "source": "s" * 101}
        assert self._error(payload) == "Source must be under 100 characters"

    def test_first_violation_wins(self):
        payload = {
            "providerId": "p1",
            "prompt": "x" * 10_001,
            "aspectRatio": "7:3",
            "outputCount": 50,
        }
        assert self._error(payload) == "Prompt must be under 10000 characters"


# ==========================================================================
# Test: Error Classification
# ==========================================================================


class TestErrorClassification:
    def test_rate_limited(self):
        error = classify_http_error(429, '{"error": {"message": "Resource exhausted"}}', "Gemini")
        assert error.kind == ErrorKind.RATE_LIMITED
        assert error.message == RATE_LIMIT_MESSAGE
        assert error.user_safe
        assert error.http_status == 500
        assert error.upstream_status == 429

    def test_capacity(self):
        assert classify_http_error(503, "", "Gemini").message == CAPACITY_MESSAGE
        error = classify_http_error(500, '{"error": {"message": "The model is overloaded"}}', "Gemini")
        assert error.kind == ErrorKind.CAPACITY

    def test_oversized_payload(self):
        error = classify_http_error(413, "Payload Too Large", "Fal.ai")
        assert error.kind == ErrorKind.VALIDATION
        assert error.message == OVERSIZED_PAYLOAD_MESSAGE
        assert error.http_status == 400

    def test_safety_and_copyright(self):
        safety = classify_http_error(400, '{"error": {"message": "Request blocked by SAFETY settings"}}')
        assert safety.kind == ErrorKind.SAFETY_BLOCK
        assert safety.message == SAFETY_BLOCK_MESSAGE
        copyright_error = classify_http_error(400, '{"error": "RECITATION detected"}')
        assert copyright_error.kind == ErrorKind.SAFETY_BLOCK
        assert copyright_error.message == COPYRIGHT_BLOCK_MESSAGE

    def test_permission_denied_is_not_a_safety_block(self):
        body = (
            '{"error": {"code": 403, "message": "Requests to this API generativelanguage.googleapis.com '
            'method GenerateContent are blocked.", "status": "PERMISSION_DENIED"}}'
        )
        error = classify_http_error(403, body, "Gemini")
        assert error.kind == ErrorKind.PROTOCOL
        assert not error.user_safe
        assert safe_message(error) == GENERIC_FAILURE_MESSAGE
        assert classify_http_error(401, '{"error": {"message": "Safety filter key invalid"}}').kind == ErrorKind.PROTOCOL

    def test_safety_settings_field_error_is_validation(self):
        body = (
            '{"error": {"code": 400, "message": "Invalid JSON payload received. Unknown name \\"safetySettings\\": '
            'Cannot find field.", "status": "INVALID_ARGUMENT"}}'
        )
        error = classify_http_error(400, body, "Gemini")
        assert error.kind == ErrorKind.VALIDATION
        assert error.message == (
            'Invalid request: Invalid JSON payload received. Unknown name "safetySettings": Cannot find field.'
        )

    def test_safety_signalled_by_error_code(self):
        body = (
            '{"error": {"code": "content_policy_violation", "message": "Your request was rejected.", '
            '"type": "invalid_request_error"}}'
        )
        error = classify_http_error(400, body, "OpenAI")
        assert error.kind == ErrorKind.SAFETY_BLOCK
        assert error.message == SAFETY_BLOCK_MESSAGE
        assert classify_http_error(422, '{"detail": "NSFW content detected"}').kind == ErrorKind.SAFETY_BLOCK

    def test_bad_request_detail_is_truncated(self):
        error = classify_http_error(400, '{"error": {"message": "' + "w" * 300 + '"}}')
        assert error.kind == ErrorKind.VALIDATION
        assert error.message.startswith("Invalid request: www")
        assert len(error.message) == len("Invalid request: ") + 200

    def test_unknown_status_is_unsafe(self):
        error = classify_http_error(500, "stack trace with internals", "Fal.ai")
        assert error.kind == ErrorKind.PROTOCOL
        assert not error.user_safe
        assert error.message == "Fal.ai API error (500): stack trace with internals"
        assert safe_message(error) == GENERIC_FAILURE_MESSAGE

    def test_extract_error_detail_shapes(self):
        assert extract_error_detail('{"error": {"message": "a"}}') == "a"
        assert extract_error_detail('{"error": "b"}') == "b"
        assert extract_error_detail('{"message": "c"}') == "c"
        assert extract_error_detail('{"detail": [{"msg": "d"}]}') == "d"
        assert extract_error_detail("  plain text ") == "plain text"

    def test_classify_exception(self):
        original = GenerationError("x", kind=ErrorKind.CAPACITY)
        assert classify_exception(original) is original
        transport = classify_exception(httpx.ConnectError("refused"), "OpenAI")
        assert transport.kind == ErrorKind.PROTOCOL
        assert not transport.user_safe
        internal = classify_exception(KeyError("candidates"))
        assert internal.kind == ErrorKind.INTERNAL
        assert safe_message(internal) == GENERIC_FAILURE_MESSAGE

    def test_safe_message_for_plain_exception(self):
        assert safe_message(RuntimeError("db password=hunter2")) == GENERIC_FAILURE_MESSAGE

    def test_upstream_timeout_message(self):
        assert UpstreamTimeout(90).message == "Generation timed out after 90 seconds. Please try again."
        assert UpstreamTimeout(0.5).message == "Generation timed out after 0.5 seconds. Please try again."
        assert UpstreamTimeout(90).kind == ErrorKind.TIMEOUT

    def test_credential_error_is_safe(self):
        error = CredentialUnavailableError()
        assert safe_message(error) == CREDENTIALS_MESSAGE
        assert error.http_status == 500


# ==========================================================================
# Test: Timeout Guard
# ==========================================================================


class TestTimeoutGuard:
    def test_deadline_requires_positive_budget(self):
        with pytest.raises(ValueError):
            Deadline(0)

    def test_deadline_remaining(self):
        deadline = Deadline(60)
        assert 0 < deadline.remaining() <= 60
        assert not deadline.expired

    async def test_returns_result(self):
        async def work():
            return "done"

        assert await guard(work(), Deadline(1)) == "done"

    async def test_breach_raises_upstream_timeout(self):
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(UpstreamTimeout) as exc_info:
            await guard(slow(), Deadline(0.05), label="slow#1")
        assert exc_info.value.budget_seconds == 0.05
        assert exc_info.value.label == "slow#1"
        assert cancelled.is_set()

    async def test_transport_timeout_is_reported_as_timeout(self):
        async def read_timeout():
            raise httpx.ReadTimeout("read timed out")

        with pytest.raises(UpstreamTimeout):
            await guard(read_timeout(), Deadline(1))

    async def test_other_errors_propagate(self):
        async def broken():
            raise ValueError("bad body")

        with pytest.raises(ValueError, match="bad body"):
            await guard(broken(), Deadline(1))

    async def test_expired_deadline_skips_call(self):
        started = []

        async def work():
            started.append(True)
            return "late"

        deadline = Deadline(0.01)
        await asyncio.sleep(0.02)
        with pytest.raises(UpstreamTimeout):
            await guard(work(), deadline)
        assert started == []


# ==========================================================================
# Test: Response Shape Matchers
# ==========================================================================


class TestResponseParsers:
    def test_bare_array(self):
        images = parse_images(["https://a/1.png", {"url": "https://a/2.png", "base64": "QQ=="}, 3])
        assert [i.url for i in images] == ["https://a/1.png", "https://a/2.png"]
        assert images[1].base64 == "QQ=="

    def test_images_field(self):
        images = parse_images({"images": [{"url": "https://a/1.png"}]})
        assert [i.url for i in images] == ["https://a/1.png"]

    def test_output_field(self):
        assert [i.url for i in parse_images({"output": "https://r/1.png"})] == ["https://r/1.png"]
        assert len(parse_images({"output": ["https://r/1.png", "https://r/2.png"]})) == 2

    def test_unrecognised_shape(self):
        assert parse_images({"result": "nope"}) == []
        assert parse_images("text") == []


# ==========================================================================
# Test: Vendor Adapters (mocked HTTP)
# ==========================================================================


class TestAdapterHelpers:
    def test_compute_dimensions(self):
        assert compute_dimensions("1K", "16:9") == (1368, 768)
        assert compute_dimensions("1K", "1:1") == (1024, 1024)
        assert compute_dimensions("2K", "1:1") == (2048, 2048)
        assert compute_dimensions(None, None) == (1024, 1024)
        width, height = compute_dimensions("1K", "9:16")
        assert (width, height) == (768, 1368)
        assert width % 8 == 0 and height % 8 == 0

    def test_nearest_openai_size(self):
        assert nearest_openai_size(None) == "1024x1024"
        assert nearest_openai_size("1:1") == "1024x1024"
        assert nearest_openai_size("16:9") == "1792x1024"
        assert nearest_openai_size("9:16") == "1024x1792"
        assert nearest_openai_size("5:4") == "1024x1024"

    def test_split_data_url(self):
        assert split_data_url("data:image/png;base64,QUJD") == ("image/png", "QUJD")
        assert split_data_url("QUJD") == ("image/jpeg", "QUJD")

    def test_registry_covers_all_families(self):
        assert set(ADAPTER_REGISTRY) == set(ProviderFamily)
        assert isinstance(get_adapter(ProviderFamily.FAL, "k"), FalAdapter)
        assert get_adapter(ProviderFamily.GOOGLE, "k").fans_out
        assert get_adapter(ProviderFamily.FAL, "k").reference_form == ReferenceForm.URL

    def test_unknown_family_raises(self):
        with pytest.raises(ValueError):
            get_adapter("midjourney", "k")


class TestGeminiAdapter:
    def test_payload_structured_aspect_ratio_and_size_hint(self):
        adapter = GeminiImageAdapter(api_key="k")
        config = _config(model_id="gemini-2.5-flash-image")
        payload = adapter.build_payload(
            config,
            _request(aspect_ratio="16:9", image_size="2K"),
            ["data:image/jpeg;base64,UkVG"],
        )
        parts = payload["contents"][0]["parts"]
        assert parts[0]["text"] == "a red fox in the snow\n\nResolution: 2K."
        assert parts[1] == {"inlineData": {"mimeType": "image/jpeg", "data": "UkVG"}}
        assert payload["generationConfig"]["imageConfig"] == {"aspectRatio": "16:9"}
        assert payload["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]

    def test_payload_without_capabilities_uses_prompt_hints(self):
        adapter = GeminiImageAdapter(api_key="k")
        config = _config(model_id="gemini-2.0-flash-exp-image-generation")
        payload = adapter.build_payload(config, _request(aspect_ratio="1:1", negative_prompt="blur"), None)
        text = payload["contents"][0]["parts"][0]["text"]
        assert text == "a red fox in the snow\n\nAvoid: blur\n\nAspect ratio: 1:1."
        assert "imageConfig" not in payload["generationConfig"]

    def test_payload_fully_capable_model(self):
        adapter = GeminiImageAdapter(api_key="k")
        config = _config(model_id="gemini-3-pro-image-preview")
        payload = adapter.build_payload(config, _request(aspect_ratio="4:3", image_size="4K"), None)
        assert payload["generationConfig"]["imageConfig"] == {"aspectRatio": "4:3", "imageSize": "4K"}
        assert payload["contents"][0]["parts"][0]["text"] == "a red fox in the snow"

    async def test_execute(self, upstream):
        upstream.post.return_value = _gemini_image("QUJD")
        adapter = GeminiImageAdapter(api_key="secret")
        images = await adapter.execute(_config(model_id="gemini-2.5-flash-image"), _request(), deadline=Deadline(5))

        assert [i.url for i in images] == ["data:image/png;base64,QUJD"]
        args, kwargs = upstream.post.call_args
        assert args[0].endswith("/models/gemini-2.5-flash-image:generateContent")
        assert kwargs["params"] == {"key": "secret"}

    async def test_rate_limited(self, upstream):
        upstream.post.return_value = _make_httpx_response(429, json_data={"error": {"message": "quota"}})
        adapter = GeminiImageAdapter(api_key="k")
        with pytest.raises(GenerationError) as exc_info:
            await adapter.execute(_config(), _request(), deadline=Deadline(5))
        assert exc_info.value.kind == ErrorKind.RATE_LIMITED

    async def test_safety_finish_reason(self, upstream):
        upstream.post.return_value = _gemini_image(finish_reason="IMAGE_SAFETY")
        with pytest.raises(GenerationError) as exc_info:
            await GeminiImageAdapter(api_key="k").execute(_config(), _request(), deadline=Deadline(5))
        assert exc_info.value.message == SAFETY_BLOCK_MESSAGE

    def test_prompt_block_and_text_only_responses(self):
        with pytest.raises(GenerationError) as exc_info:
            GeminiImageAdapter.parse_response({"promptFeedback": {"blockReason": "PROHIBITED_CONTENT"}})
        assert exc_info.value.kind == ErrorKind.SAFETY_BLOCK

        with pytest.raises(GenerationError) as exc_info:
            GeminiImageAdapter.parse_response({"candidates": [{"content": {"parts": [{"text": "no"}]}}]})
        assert exc_info.value.kind == ErrorKind.PROTOCOL
        assert exc_info.value.user_safe

        with pytest.raises(GenerationError) as exc_info:
            GeminiImageAdapter.parse_response({"candidates": [{"finishReason": "RECITATION"}]})
        assert exc_info.value.message == COPYRIGHT_BLOCK_MESSAGE

    async def test_non_json_body(self, upstream):
        upstream.post.return_value = _make_httpx_response(200, text="<html>gateway</html>")
        with pytest.raises(GenerationError) as exc_info:
            await GeminiImageAdapter(api_key="k").execute(_config(), _request(), deadline=Deadline(5))
        assert exc_info.value.kind == ErrorKind.PROTOCOL
        assert not exc_info.value.user_safe


class TestFalAdapter:
    def test_payload(self):
        adapter = FalAdapter(api_key="k")
        config = _config("fal", options={"enable_safety_checker": False})
        payload = adapter.build_payload(
            config,
            _request(aspect_ratio="16:9", image_size="1K", output_count=3, negative_prompt="text"),
            ["https://cdn/ref.jpg"],
        )
        assert payload["num_images"] == 3
        assert payload["max_images"] == 3
        assert payload["image_size"] == {"width": 1368, "height": 768}
        assert payload["negative_prompt"] == "text"
        assert payload["image_urls"] == ["https://cdn/ref.jpg"]
        assert payload["enable_safety_checker"] is False

    async def test_execute(self, upstream):
        upstream.post.return_value = _make_httpx_response(
            200, json_data={"images": [{"url": "https://fal/1.png"}, {"url": "https://fal/2.png"}]}
        )
        images = await FalAdapter(api_key="fal-key").execute(
            _config("fal", model_id="fal-ai/flux/dev"), _request(output_count=2), deadline=Deadline(5)
        )
        assert [i.url for i in images] == ["https://fal/1.png", "https://fal/2.png"]
        args, kwargs = upstream.post.call_args
        assert args[0] == "https://fal.run/fal-ai/flux/dev"
        assert kwargs["headers"]["Authorization"] == "Key fal-key"

    async def test_empty_result(self, upstream):
        upstream.post.return_value = _make_httpx_response(200, json_data={"images": []})
        with pytest.raises(GenerationError) as exc_info:
            await FalAdapter(api_key="k").execute(_config("fal"), _request(), deadline=Deadline(5))
        assert safe_message(exc_info.value) == EMPTY_RESULT_MESSAGE


class TestOpenAIAdapter:
    def test_payload_always_single_image(self):
        payload = OpenAIImageAdapter(api_key="k").build_payload(
            _config("openai"), _request(output_count=4, aspect_ratio="9:16", negative_prompt="people")
        )
        assert payload["n"] == 1
        assert payload["size"] == "1024x1792"
        assert payload["model"] == "dall-e-3"
        assert payload["prompt"].endswith("Avoid: people")

    async def test_execute_b64_and_url(self, upstream):
        upstream.post.return_value = _make_httpx_response(
            200, json_data={"data": [{"b64_json": "QUJD"}, {"url": "https://oai/1.png"}]}
        )
        images = await OpenAIImageAdapter(api_key="k").execute(_config("openai"), _request(), deadline=Deadline(5))
        assert images[0].url == "data:image/png;base64,QUJD"
        assert images[1].url == "https://oai/1.png"


class TestStabilityAdapter:
    def test_payload_weights(self):
        payload = StabilityAdapter(api_key="k").build_payload(_request(negative_prompt="blur", output_count=2))
        assert payload["text_prompts"] == [
            {"text": "a red fox in the snow", "weight": 1},
            {"text": "blur", "weight": -1},
        ]
        assert payload["samples"] == 2
        assert payload["cfg_scale"] == 7

    async def test_filtered_artifacts_dropped(self, upstream):
        upstream.post.return_value = _make_httpx_response(
            200,
            json_data={
                "artifacts": [
                    {"base64": "QQ==", "finishReason": "SUCCESS"},
                    {"base64": "Qg==", "finishReason": "CONTENT_FILTERED"},
                ]
            },
        )
        images = await StabilityAdapter(api_key="k").execute(_config("stability"), _request(), deadline=Deadline(5))
        assert [i.base64 for i in images] == ["QQ=="]

    async def test_all_filtered_is_safety_block(self, upstream):
        upstream.post.return_value = _make_httpx_response(
            200, json_data={"artifacts": [{"base64": "Qg==", "finishReason": "CONTENT_FILTERED"}]}
        )
        with pytest.raises(GenerationError) as exc_info:
            await StabilityAdapter(api_key="k").execute(_config("stability"), _request(), deadline=Deadline(5))
        assert exc_info.value.kind == ErrorKind.SAFETY_BLOCK


class TestCustomAdapter:
    async def test_missing_endpoint(self, upstream):
        with pytest.raises(GenerationError) as exc_info:
            await CustomAdapter(api_key="k").execute(_config("acme"), _request(), deadline=Deadline(5))
        assert safe_message(exc_info.value) == MISSING_ENDPOINT_MESSAGE
        upstream.post.assert_not_called()

    async def test_loose_response_shape(self, upstream):
        upstream.post.return_value = _make_httpx_response(200, json_data={"output": ["https://acme/1.png"]})
        config = _config("acme", endpoint="https://acme.example/generate")
        images = await CustomAdapter(api_key="k").execute(
            config, _request(), references=["data:image/jpeg;base64,UkVG"], deadline=Deadline(5)
        )
        assert [i.url for i in images] == ["https://acme/1.png"]
        args, kwargs = upstream.post.call_args
        assert args[0] == "https://acme.example/generate"
        assert kwargs["json"]["reference_images"] == ["data:image/jpeg;base64,UkVG"]


# ==========================================================================
# Test: Fast-Path Orchestrator
# ==========================================================================


class ScriptedAdapter(BaseImageAdapter):
    """Adapter returning scripted outcomes per call index."""

    family = ProviderFamily.GOOGLE
    label = "Scripted"
    reference_form = ReferenceForm.INLINE
    fans_out = True

    def __init__(self, api_key, outcomes=None, delays=None, per_call=1):
        super().__init__(api_key)
        self.outcomes = list(outcomes or [])
        self.delays = delays or {}
        self.per_call = per_call
        self.calls = []

    async def execute(self, config, request, *, references=None, deadline):
        index = len(self.calls)
        self.calls.append({"request": request, "references": references, "deadline": deadline})
        if self.delays.get(index):
            await asyncio.sleep(self.delays[index])
        outcome = self.outcomes[index] if index < len(self.outcomes) else None
        if isinstance(outcome, BaseException):
            raise outcome
        return [GeneratedImage(url=f"https://img/{index}-{n}") for n in range(self.per_call)]


@pytest.fixture
def credentials():
    store = InMemoryProviderConfigStore()
    store.add(_config(), api_key="secret")
    store.add(_config(id="nokey"), api_key=None)
    return store


def _orchestrator(credentials, adapter, references=None, timeout=5.0):
    seen = {}

    def factory(family, api_key):
        seen["api_key"] = api_key
        return adapter

    orchestrator = FastPathOrchestrator(
        credentials,
        references or InMemoryReferenceStore(),
        {ProviderFamily.GOOGLE: VendorConfig(family=ProviderFamily.GOOGLE, timeout_seconds=timeout)},
        adapter_factory=factory,
    )
    return orchestrator, seen


class TestFastPathOrchestrator:
    async def test_fan_out_all_succeed(self, credentials):
        adapter = ScriptedAdapter("k")
        orchestrator, seen = _orchestrator(credentials, adapter)

        result = await orchestrator.execute(_request(output_count=3), _config())

        assert len(result.images) == 3
        assert result.requested == 3
        assert not result.partial
        assert seen["api_key"] == "secret"
        assert all(call["request"].output_count == 1 for call in adapter.calls)
        # Each call gets its own deadline
        assert len({id(call["deadline"]) for call in adapter.calls}) == 3

    async def test_partial_success_with_rate_limited_call(self, credentials, upstream, caplog):
        upstream.post.side_effect = [
            _gemini_image("MQ=="),
            _make_httpx_response(429, json_data={"error": {"message": "quota"}}),
            _gemini_image("Mw=="),
        ]
        orchestrator = FastPathOrchestrator(credentials, InMemoryReferenceStore())

        with caplog.at_level(logging.WARNING, logger="app.generation.orchestrator"):
            result = await orchestrator.execute(_request(output_count=3), _config(model_id="gemini-2.5-flash-image"))

        assert [i.base64 for i in result.images] == ["MQ==", "Mw=="]
        assert result.partial
        assert [e.kind for e in result.errors] == [ErrorKind.RATE_LIMITED]
        assert upstream.post.call_count == 3
        assert "Gemini call 2/3 failed for provider p1 [rate_limited]" in caplog.text

    async def test_timed_out_call_counts_as_failure(self, credentials):
        adapter = ScriptedAdapter("k", delays={1: 2.0})
        orchestrator, _ = _orchestrator(credentials, adapter, timeout=0.05)

        result = await orchestrator.execute(_request(output_count=3), _config())

        assert len(result.images) == 2
        assert result.partial
        assert isinstance(result.errors[0], UpstreamTimeout)

    async def test_all_fail_raises_first_issued_error(self, credentials):
        first = GenerationError("first", kind=ErrorKind.CAPACITY)
        second = GenerationError("second", kind=ErrorKind.RATE_LIMITED)
        # The first call finishes last
        adapter = ScriptedAdapter("k", outcomes=[first, second], delays={0: 0.05})
        orchestrator, _ = _orchestrator(credentials, adapter)

        with pytest.raises(GenerationError) as exc_info:
            await orchestrator.execute(_request(output_count=2), _config())
        assert exc_info.value is first

    async def test_unclassified_failure_is_wrapped(self, credentials):
        adapter = ScriptedAdapter("k", outcomes=[KeyError("candidates")])
        orchestrator, _ = _orchestrator(credentials, adapter)

        with pytest.raises(GenerationError) as exc_info:
            await orchestrator.execute(_request(), _config())
        assert exc_info.value.kind == ErrorKind.INTERNAL
        assert isinstance(exc_info.value.__cause__, KeyError)
        assert safe_message(exc_info.value) == GENERIC_FAILURE_MESSAGE

    async def test_single_image_fan_out_adapter_is_capped(self, credentials):
        adapter = ScriptedAdapter("k", per_call=2)
        orchestrator, _ = _orchestrator(credentials, adapter)

        result = await orchestrator.execute(_request(), _config())
        assert len(result.images) == 1
        assert len(adapter.calls) == 1

    async def test_native_batch_adapter_makes_one_call(self, credentials):
        adapter = ScriptedAdapter("k", per_call=4)
        adapter.fans_out = False
        orchestrator, _ = _orchestrator(credentials, adapter)

        result = await orchestrator.execute(_request(output_count=4), _config())
        assert len(adapter.calls) == 1
        assert len(result.images) == 4
        assert not result.partial

    async def test_capped_single_call_shortfall_is_partial(self, credentials, caplog):
        adapter = ScriptedAdapter("k", per_call=1)
        adapter.fans_out = False
        orchestrator, _ = _orchestrator(credentials, adapter)

        with caplog.at_level(logging.INFO, logger="app.generation.orchestrator"):
            result = await orchestrator.execute(_request(output_count=3), _config())

        assert len(adapter.calls) == 1
        assert len(result.images) == 1
        assert not result.errors
        assert result.partial
        assert "Partial success for provider p1: 1/3 images" in caplog.text

    async def test_inline_references_resolved(self, credentials):
        adapter = ScriptedAdapter("k")
        references = InMemoryReferenceStore({"user-1/a.jpg": b"ABC"})
        orchestrator, _ = _orchestrator(credentials, adapter, references=references)

        await orchestrator.execute(_request(reference_image_paths=("user-1/a.jpg",)), _config())
        assert adapter.calls[0]["references"] == ["data:image/jpeg;base64,QUJD"]

    async def test_url_references_resolved(self, credentials):
        adapter = ScriptedAdapter("k")
        adapter.reference_form = ReferenceForm.URL
        references = InMemoryReferenceStore(public_base_url="https://cdn.example.com")
        orchestrator, _ = _orchestrator(credentials, adapter, references=references)

        await orchestrator.execute(_request(reference_image_paths=("user-1/a.jpg",)), _config())
        assert adapter.calls[0]["references"] == ["https://cdn.example.com/user-1/a.jpg"]

    async def test_missing_credential_stops_before_adapter(self, credentials):
        adapter = ScriptedAdapter("k")
        orchestrator, seen = _orchestrator(credentials, adapter)

        with pytest.raises(CredentialUnavailableError):
            await orchestrator.execute(_request(), _config(id="nokey"))
        assert seen == {}
        assert adapter.calls == []
