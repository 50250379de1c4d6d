"""Reference image access on the object storage service.

Paths are bucket-relative (already validated: no ``..``, no leading ``/``).
Inline form downloads each object and returns a JPEG data URL; URL form
returns the public object URL without any network call.
"""

import asyncio
import base64
import logging
from urllib.parse import quote

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

# Uploads are compressed to JPEG client-side
REFERENCE_MIME_TYPE = "image/jpeg"


class HttpReferenceImageResolver:
    """Reads reference images from a Supabase-compatible storage REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        bucket: str | None = None,
        service_key: str | None = None,
        public_base_url: str | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = (base_url or settings.storage_url).rstrip("/")
        self.public_base_url = (public_base_url or settings.storage_public_url or self.base_url).rstrip("/")
        self.bucket = bucket or settings.storage_bucket
        self.service_key = service_key if service_key is not None else settings.storage_service_key
        self.timeout = timeout

    def object_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(path)}"

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/storage/v1/object/public/{self.bucket}/{quote(path)}"

    def _headers(self) -> dict[str, str]:
        if not self.service_key:
            return {}
        return {"Authorization": f"Bearer {self.service_key}", "apikey": self.service_key}

    async def _download(self, client: httpx.AsyncClient, path: str) -> str | None:
        try:
            resp = await client.get(self.object_url(path), headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Reference image %s could not be downloaded: %s", path, e)
            return None
        encoded = base64.b64encode(resp.content).decode("ascii")
        return f"data:{REFERENCE_MIME_TYPE};base64,{encoded}"

    async def as_inline(self, paths: list[str]) -> list[str]:
        """Data URLs for the paths that downloaded; failures are logged and skipped."""
        if not paths:
            return []
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            results = await asyncio.gather(*(self._download(client, p) for p in paths))
        images = [r for r in results if r is not None]
        if len(images) < len(paths):
            logger.warning("Resolved %d of %d reference images", len(images), len(paths))
        return images

    async def as_public_urls(self, paths: list[str]) -> list[str]:
        return [self.public_url(p) for p in paths]
