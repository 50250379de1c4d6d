"""Sentry error tracking integration.

Initializes Sentry SDK if SENTRY_DSN env variable is set.
Does nothing otherwise.
"""

import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


def init_sentry(*, worker: bool = False) -> bool:
    """Initialize Sentry if SENTRY_DSN is configured. Returns True when enabled.

    ``worker`` selects the Celery integration set instead of the web one.
    """
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.celery import CeleryIntegration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations = [SqlalchemyIntegration()]
    if worker:
        integrations.append(CeleryIntegration())
    else:
        integrations.append(FastApiIntegration(transaction_style="endpoint"))

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        # Prompts and provider keys must not leave the service
        send_default_pii=False,
        integrations=integrations,
    )
    logger.info("Sentry initialized (env=%s, worker=%s)", settings.app_env, worker)
    return True
