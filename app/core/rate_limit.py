"""Rate limiting configuration using slowapi."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings

# Rate limiter instance, keyed by remote address
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


def generate_rate_limit() -> str:
    """Limit string for POST /generate, read lazily so tests can override it."""
    return settings.generate_rate_limit
