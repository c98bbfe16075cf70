import logging
import os

from celery import Celery

from clipai.core.env import load_env

load_env()

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")

logger.info(
    "Job storage config: STORAGE_ROOT=%s DATABASE_URL set=%s",
    os.environ.get("STORAGE_ROOT"),
    bool(os.environ.get("DATABASE_URL")),
)

celery = Celery(
    "clipai_worker",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["clipai.workers.tasks"],
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    broker_connection_retry_on_startup=True,
    # one job per worker process at a time; analysis calls are long
    worker_prefetch_multiplier=1,
    task_acks_late=False,
)
