from celery import Celery
from celery.signals import worker_process_init

from app.core.config import settings

celery_app = Celery(
    "imagegen_gateway",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    # One job drains sequentially for a long time; don't hoard others
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

# Auto-discover tasks from tasks modules
celery_app.autodiscover_tasks(["app.tasks"])

# Explicit include as fallback for autodiscover (needed for CLI worker startup)
celery_app.conf.include = [
    "app.tasks.batch_tasks",
]


@worker_process_init.connect
def _init_worker(**kwargs):
    from app.core.logging import setup_logging
    from app.core.sentry import init_sentry

    setup_logging()
    init_sentry(worker=True)
