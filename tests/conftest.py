from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.config import settings

# Override settings for tests
settings.jwt_secret_key = "test-secret-key-that-is-at-least-32-bytes-long"
settings.fernet_key = "KxJCocbnA3KD20pkgSN3uUZybasKP1X9lAJDX4oLxoQ="  # test-only Fernet key
settings.app_env = "development"
settings.persistence_backend = "memory"
settings.rate_limit_enabled = False
settings.batch_request_delay_seconds = 0.0

from app.core.dependencies import get_services  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.generation.types import ProviderConfig  # noqa: E402
from app.main import app  # noqa: E402
from app.services.container import build_services  # noqa: E402
from app.services.memory_stores import (  # noqa: E402
    InMemoryBatchJobStore,
    InMemoryGenerationStore,
    InMemoryProviderConfigStore,
    InMemoryReferenceStore,
)

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


@pytest.fixture
def upstream():
    """Patch the adapters' httpx.AsyncClient; configure ``upstream.post``."""
    with patch("app.generation.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=None)
        mock_client_cls.return_value = mock_client
        yield mock_client


@pytest.fixture
def config_store() -> InMemoryProviderConfigStore:
    store = InMemoryProviderConfigStore()
    store.add(ProviderConfig.build(id="gemini", provider="google", model_id="gemini-2.5-flash-image", name="Gemini"))
    store.add(ProviderConfig.build(id="fal", provider="fal", model_id="fal-ai/flux/dev", name="Flux"))
    store.add(ProviderConfig.build(id="openai", provider="openai", name="DALL-E"))
    store.add(
        ProviderConfig.build(id="private", provider="google", owner_id=OTHER_USER_ID, name="Someone else's"),
    )
    store.add(ProviderConfig.build(id="nokey", provider="openai", name="No key"), api_key=None)
    return store


@pytest.fixture
def references() -> InMemoryReferenceStore:
    return InMemoryReferenceStore({"user-1/ref.jpg": b"\xff\xd8\xff\xe0jpeg"})


@pytest.fixture
async def services(config_store, references):
    built = build_services(
        provider_configs=config_store,
        credentials=config_store,
        references=references,
        generations=InMemoryGenerationStore(),
        jobs=InMemoryBatchJobStore(),
        batch_backend="inprocess",
    )
    yield built
    await built.shutdown()


@pytest.fixture
async def client(services):
    app.dependency_overrides[get_services] = lambda: services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {create_access_token(USER_ID)}"}
