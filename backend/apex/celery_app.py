"""Celery application for scan and fix jobs.

Only used when CELERY_BROKER_URL is set; otherwise the API runs jobs as
asyncio tasks in its own process (see apex.api.v1.scans._dispatch).

    celery -A apex.celery_app worker --loglevel=info -Q scans
"""

from __future__ import annotations

from celery import Celery

from apex.config import settings


def is_celery_enabled() -> bool:
    return bool(settings.celery_broker_url)


def create_celery_app() -> Celery:
    app = Celery(
        "apex",
        broker=settings.celery_broker_url or "memory://",
        backend=settings.celery_result_backend or "rpc://",
        include=["apex.tasks.scan_tasks"],
    )
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        # each job holds a sandbox container for minutes; take one at a time
        worker_prefetch_multiplier=1,
        worker_concurrency=settings.celery_worker_concurrency,
        task_time_limit=settings.celery_task_time_limit,
        task_routes={"apex.tasks.scan_tasks.*": {"queue": "scans"}},
    )
    return app


celery_app = create_celery_app()
