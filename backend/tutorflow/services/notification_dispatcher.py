# backend/tutorflow/services/notification_dispatcher.py
"""
Outbox delivery.

Pending outbox rows are handed to a NotificationSink after the state change
that produced them has committed. A failed delivery is rescheduled with
backoff; after ``outbox_max_attempts`` the row is marked FAILED for good.
Delivery failures never touch the originating state change.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.event_outbox import EventOutbox
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def send(self, *, event_type: str, payload: Dict[str, Any], idempotency_key: str) -> None:
        ...


class NotificationDeliveryError(RuntimeError):
    """Transient sink failure; the event is retried."""


class LoggingNotificationSink:
    """Default sink: records the event in the log."""

    def send(self, *, event_type: str, payload: Dict[str, Any], idempotency_key: str) -> None:
        logger.info("Notification %s (%s): %s", event_type, idempotency_key, payload)


def next_backoff(attempt_number: int, schedule: Optional[Sequence[int]] = None) -> int:
    """Backoff delay in seconds for the given 1-indexed attempt."""
    steps = list(schedule or settings.outbox_backoff_seconds)
    index = max(0, min(attempt_number - 1, len(steps) - 1))
    return steps[index]


@dataclass
class DispatchResult:
    sent: int = 0
    retried: int = 0
    failed: int = 0

    @property
    def attempted(self) -> int:
        return self.sent + self.retried + self.failed


class NotificationDispatcher(BaseService):
    def __init__(
        self,
        db: Session,
        sink: Optional[NotificationSink] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[Sequence[int]] = None,
    ):
        super().__init__(db)
        self.outbox_repository = RepositoryFactory.create_event_outbox_repository(db)
        self.sink = sink or LoggingNotificationSink()
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self.backoff_seconds = list(backoff_seconds or settings.outbox_backoff_seconds)

    def dispatch_pending(self, limit: int = 200, now: Optional[datetime] = None) -> DispatchResult:
        """Deliver every due pending event, committing after each one."""
        moment = now or self.now()
        result = DispatchResult()
        pending: List[EventOutbox] = self.outbox_repository.fetch_pending(limit=limit, now=moment)
        for event in pending:
            outcome = self.deliver(event, now=moment)
            if outcome == "sent":
                result.sent += 1
            elif outcome == "failed":
                result.failed += 1
            else:
                result.retried += 1
        if result.attempted:
            logger.info(
                "Outbox dispatch: %d sent, %d retrying, %d failed",
                result.sent,
                result.retried,
                result.failed,
            )
        return result

    def deliver(self, event: EventOutbox, now: Optional[datetime] = None) -> str:
        """Deliver one event; returns ``sent``, ``retry`` or ``failed``."""
        moment = now or self.now()
        attempt_number = (event.attempt_count or 0) + 1
        event_id, event_type = event.id, event.event_type
        prometheus_metrics.record_notification_attempt(event_type)

        try:
            self.sink.send(
                event_type=event_type,
                payload=dict(event.payload or {}),
                idempotency_key=event.idempotency_key,
            )
        except Exception as exc:
            terminal = attempt_number >= self.max_attempts
            backoff = next_backoff(attempt_number, self.backoff_seconds)
            with self.transaction():
                self.outbox_repository.mark_failed(
                    event_id,
                    attempt_count=attempt_number,
                    backoff_seconds=backoff,
                    error=str(exc),
                    terminal=terminal,
                    now=moment,
                )
            if terminal:
                prometheus_metrics.record_notification_outcome(event_type, "failed")
                logger.error("Outbox event %s failed after %d attempts: %s", event_id, attempt_number, exc)
                return "failed"
            prometheus_metrics.record_notification_outcome(event_type, "retry")
            logger.warning(
                "Retrying outbox event %s attempt=%d backoff=%ss: %s", event_id, attempt_number, backoff, exc
            )
            return "retry"

        with self.transaction():
            self.outbox_repository.mark_sent(event_id, attempt_number, now=moment)
        prometheus_metrics.record_notification_outcome(event_type, "sent")
        logger.debug("Delivered outbox event %s type=%s attempts=%d", event_id, event_type, attempt_number)
        return "sent"
