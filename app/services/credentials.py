"""Provider credential resolution from encrypted ``provider_configs.api_key``."""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.encryption import CredentialDecryptionError, decrypt_value
from app.generation.errors import CredentialUnavailableError
from app.generation.types import ProviderConfig
from app.models.api_config import ApiConfig

logger = logging.getLogger(__name__)


class FernetCredentialResolver:
    """Decrypts a provider key on demand. Plaintext keys are never cached or returned to callers."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def resolve(self, config: ProviderConfig) -> str:
        async with self._session_factory() as db:
            encrypted = (
                await db.execute(select(ApiConfig.api_key).where(ApiConfig.id == uuid.UUID(config.id)))
            ).scalar_one_or_none()

        try:
            return decrypt_value(encrypted)
        except CredentialDecryptionError as e:
            logger.error("Credentials unavailable for provider %s: %s", config.id, e)
            raise CredentialUnavailableError() from e
