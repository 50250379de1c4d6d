"""Response-shape matchers for providers with loosely documented contracts.

Each matcher is a pure function taking the decoded JSON body and returning
a list of images, or ``None`` when the body is not in its shape. The chain
is tried in order and the first matcher that recognises the body wins.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from app.generation.types import GeneratedImage

ShapeMatcher = Callable[[Any], "list[GeneratedImage] | None"]


def _image_from_item(item: Any) -> GeneratedImage | None:
    """A string URL or an object with a ``url`` (and optional ``base64``)."""
    if isinstance(item, str) and item:
        return GeneratedImage(url=item)
    if isinstance(item, dict):
        url = item.get("url")
        if isinstance(url, str) and url:
            b64 = item.get("base64")
            return GeneratedImage(url=url, base64=b64 if isinstance(b64, str) else None)
    return None


def _collect(items: list) -> list[GeneratedImage]:
    images = []
    for item in items:
        image = _image_from_item(item)
        if image is not None:
            images.append(image)
    return images


def match_bare_array(data: Any) -> list[GeneratedImage] | None:
    """``["https://...", {"url": ...}]``"""
    if not isinstance(data, list):
        return None
    return _collect(data)


def match_images_field(data: Any) -> list[GeneratedImage] | None:
    """``{"images": [...]}``"""
    if not isinstance(data, dict) or not isinstance(data.get("images"), list):
        return None
    return _collect(data["images"])


def match_output_field(data: Any) -> list[GeneratedImage] | None:
    """``{"output": "https://..."}`` or ``{"output": [...]}`` (Replicate style)."""
    if not isinstance(data, dict) or not data.get("output"):
        return None
    output = data["output"]
    if not isinstance(output, list):
        output = [output]
    return _collect(output)


DEFAULT_MATCHERS: tuple[ShapeMatcher, ...] = (
    match_bare_array,
    match_images_field,
    match_output_field,
)


def parse_images(data: Any, matchers: tuple[ShapeMatcher, ...] = DEFAULT_MATCHERS) -> list[GeneratedImage]:
    """Run the matcher chain. Unrecognised shapes yield an empty list."""
    for matcher in matchers:
        images = matcher(data)
        if images is not None:
            return images
    return []
