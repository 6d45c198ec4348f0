"""Celery application for durable fork execution.

Forks go to the ``forks`` queue and are run by id in a worker process
(taskengine.tasks.fork_tasks). With no TASKENGINE_CELERY_BROKER_URL the app
still imports, but ForkManager picks the in-process LocalExecutionBackend.

Usage:
    celery -A taskengine.celery_app worker -Q forks --loglevel=info --concurrency=4
"""

from __future__ import annotations

import logging

from celery import Celery

from taskengine.config import settings

logger = logging.getLogger(__name__)

FORK_QUEUE = "forks"


def is_celery_enabled() -> bool:
    """True when a broker URL is configured."""
    return bool(settings.celery_broker_url)


def create_celery_app() -> Celery:
    app = Celery(
        "taskengine",
        broker=settings.celery_broker_url or "memory://",
        backend=settings.celery_result_backend or "rpc://",
    )

    time_limit = settings.celery_task_time_limit
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_track_started=True,
        task_time_limit=time_limit,
        task_soft_time_limit=max(time_limit - 60, 1),
        # A fork occupies its worker for minutes; no prefetching
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=settings.celery_worker_concurrency,
        task_default_queue="default",
        task_routes={"taskengine.tasks.fork_tasks.*": {"queue": FORK_QUEUE}},
    )
    app.autodiscover_tasks(["taskengine.tasks"], related_name="fork_tasks")

    if is_celery_enabled():
        logger.info("Celery enabled (broker=%s, queue=%s)", settings.celery_broker_url, FORK_QUEUE)
    return app


celery_app = create_celery_app()
