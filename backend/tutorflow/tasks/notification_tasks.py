# backend/tutorflow/tasks/notification_tasks.py
"""
Celery task delivering outbox events.

``outbox.dispatch_pending`` runs on the beat schedule and hands every due
event to the notification sink. Retry timing lives on the outbox rows, so
the task itself never retries.
"""

from __future__ import annotations

from typing import Dict

from celery.utils.log import get_task_logger

from tutorflow.database.sessions import get_db_session
from tutorflow.services.notification_dispatcher import NotificationDispatcher
from tutorflow.tasks.celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(name="outbox.dispatch_pending", max_retries=0, queue="notifications")
def dispatch_pending(limit: int = 200) -> Dict[str, int]:
    with get_db_session() as session:
        result = NotificationDispatcher(session).dispatch_pending(limit=limit)
    if result.attempted:
        logger.info("Dispatched %s outbox events", result.attempted)
    return {"sent": result.sent, "retried": result.retried, "failed": result.failed}
