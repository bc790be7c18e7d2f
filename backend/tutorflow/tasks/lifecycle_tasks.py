# backend/tutorflow/tasks/lifecycle_tasks.py
"""Periodic lifecycle sweeps: request expiry and time-driven class status."""

from __future__ import annotations

from typing import Dict

from celery.utils.log import get_task_logger

from tutorflow.database.sessions import get_db_session
from tutorflow.services.class_request_service import ClassRequestService
from tutorflow.services.class_status_service import ClassStatusService
from tutorflow.tasks.celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(name="lifecycle.expire_class_requests", max_retries=0, queue="lifecycle")
def expire_class_requests() -> Dict[str, int]:
    """Expire overdue pending class requests."""
    with get_db_session() as session:
        result = ClassRequestService(session).expire_class_requests()
    if result.failed:
        logger.warning("Expiry sweep finished with %s failures", result.failed)
    return {
        "examined": result.examined,
        "expired": result.expired,
        "skipped": result.skipped,
        "failed": result.failed,
    }


@celery_app.task(name="lifecycle.advance_class_statuses", max_retries=0, queue="lifecycle")
def advance_class_statuses() -> Dict[str, int]:
    """Complete past lessons and move classes along their lifecycle."""
    with get_db_session() as session:
        result = ClassStatusService(session).advance_class_statuses()
    if result.failed:
        logger.warning("Status sweep finished with %s failures: %s", result.failed, result.failed_ids)
    return {
        "lessons_completed": result.lessons_completed,
        "classes_started": result.classes_started,
        "classes_completed": result.classes_completed,
        "classes_cancelled_unpaid": result.classes_cancelled_unpaid,
        "classes_awaiting_deposit": result.classes_awaiting_deposit,
        "failed": result.failed,
    }
