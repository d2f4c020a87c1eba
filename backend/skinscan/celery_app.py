"""
Celery application configuration.
Redis is the broker and result backend; queued inference jobs run here.
"""

import os
from urllib.parse import urlparse, urlunparse

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from dotenv import load_dotenv

from skinscan.core.config import get_settings
from skinscan.core.logging import setup_logging

load_dotenv()
settings = get_settings()

TASK_ALWAYS_EAGER = (
    os.getenv(
        "CELERY_TASK_ALWAYS_EAGER",
        "false" if settings.is_production else "true",
    ).lower()
    == "true"
)


def _build_redis_url(base_url: str, db: int) -> str:
    """Reuse host/auth/query from base_url but switch to DB index `db`."""
    parsed = urlparse(base_url)
    if parsed.scheme not in {"redis", "rediss"}:
        return base_url
    return urlunparse(parsed._replace(path=f"/{db}"))


CELERY_BROKER_URL = settings.CELERY_BROKER_URL or _build_redis_url(settings.REDIS_URL, db=1)
CELERY_RESULT_BACKEND = settings.CELERY_RESULT_BACKEND or _build_redis_url(settings.REDIS_URL, db=2)

celery_app = Celery(
    "skinscan",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    enable_utc=True,

    # Retry defaults
    task_default_retry_delay=30,
    task_max_retries=2,
    task_always_eager=TASK_ALWAYS_EAGER,
    task_eager_propagates=True,

    task_routes={
        "skinscan.workers.inference_tasks.*": {"queue": "inference"},
    },

    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    result_expires=3600,  # 1 hour

    imports=["skinscan.workers.inference_tasks"],
)


@celery_setup_logging.connect
def _configure_worker_logging(loglevel=None, **kwargs):
    # Connecting this signal stops Celery from installing its own handlers
    setup_logging(loglevel if isinstance(loglevel, str) else None)
