# backend/tutorflow/tasks/beat_schedule.py
"""
Celery Beat schedule for TutorFlow.

Every job triggers an idempotent batch, so overlapping runs from several
beat instances are harmless.
"""

from datetime import timedelta
from typing import Any, Dict

from celery.schedules import crontab

CELERYBEAT_SCHEDULE: Dict[str, Dict[str, Any]] = {
    "expire-class-requests": {
        "task": "lifecycle.expire_class_requests",
        "schedule": crontab(minute="*/15"),
        "options": {"queue": "lifecycle"},
    },
    "advance-class-statuses": {
        "task": "lifecycle.advance_class_statuses",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "lifecycle"},
    },
    "dispatch-outbox": {
        "task": "outbox.dispatch_pending",
        "schedule": timedelta(seconds=30),
        "options": {"queue": "notifications"},
    },
}

# Development runs the sweeps more often so state changes show up quickly.
DEVELOPMENT_OVERRIDES: Dict[str, Any] = {
    "expire-class-requests": crontab(minute="*/1"),
    "advance-class-statuses": crontab(minute="*/1"),
}


def get_beat_schedule(environment: str = "production") -> Dict[str, Dict[str, Any]]:
    """Return the beat schedule for ``environment``."""
    schedule = {name: dict(entry) for name, entry in CELERYBEAT_SCHEDULE.items()}
    if environment == "development":
        for name, cadence in DEVELOPMENT_OVERRIDES.items():
            schedule[name]["schedule"] = cadence
    return schedule
