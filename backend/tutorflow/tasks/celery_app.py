# backend/tutorflow/tasks/celery_app.py
"""
Celery application configuration for TutorFlow.

Redis is the broker and result backend. The beat schedule drives the
lifecycle sweeps and outbox dispatch.
"""

import os
from typing import Any

from celery import Celery
from celery.signals import setup_logging

from tutorflow.core.config import settings


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Celery: Configured Celery application instance
    """
    # Priority: CELERY_BROKER_URL -> settings.redis_url
    broker_url = os.getenv("CELERY_BROKER_URL") or settings.redis_url
    result_backend = os.getenv("CELERY_RESULT_BACKEND") or broker_url

    celery_app = Celery("tutorflow", broker=broker_url, backend=result_backend)

    celery_app.conf.update(
        {
            "task_serializer": "json",
            "accept_content": ["json"],
            "result_serializer": "json",
            "timezone": settings.schedule_timezone,
            "enable_utc": True,
            "worker_prefetch_multiplier": 4,
            "worker_max_tasks_per_child": 1000,
            "task_soft_time_limit": 300,
            "task_time_limit": 600,
            "task_acks_late": True,
            "task_reject_on_worker_lost": True,
            "worker_hijack_root_logger": False,
            "broker_transport_options": {"visibility_timeout": 3600},
        }
    )

    # Register task modules even when autodiscovery misses them.
    celery_app.conf.imports = (
        "tutorflow.tasks.lifecycle_tasks",
        "tutorflow.tasks.notification_tasks",
    )
    celery_app.conf.task_routes = {
        "lifecycle.*": {"queue": "lifecycle"},
        "outbox.*": {"queue": "notifications"},
    }

    from tutorflow.tasks.beat_schedule import get_beat_schedule

    celery_app.conf.beat_schedule = get_beat_schedule(settings.environment)
    return celery_app


@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Keep Celery from replacing the application's logging setup."""
    import logging

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


celery_app = create_celery_app()
