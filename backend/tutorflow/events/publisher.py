"""Event publisher - writes events to the transactional outbox."""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
import logging
from typing import Any, Dict, Protocol

from tutorflow.models.event_outbox import EventOutbox
from tutorflow.repositories.event_outbox_repository import EventOutboxRepository

logger = logging.getLogger(__name__)


class Event(Protocol):
    """Protocol for event types."""

    @property
    def aggregate_id(self) -> str:
        ...

    @property
    def idempotency_key(self) -> str:
        ...

    def to_dict(self) -> Dict[str, Any]:
        ...


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


class EventPublisher:
    """
    Queues domain events in the outbox within the caller's transaction.

    Nothing is delivered here; the dispatcher picks rows up after commit.
    """

    def __init__(self, outbox_repository: EventOutboxRepository):
        self.outbox_repo = outbox_repository

    def publish(self, event: Event) -> EventOutbox:
        event_type = type(event).__name__
        payload = {key: _jsonable(value) for key, value in event.to_dict().items()}
        row = self.outbox_repo.enqueue(
            event_type=event_type,
            aggregate_id=event.aggregate_id,
            payload=payload,
            idempotency_key=event.idempotency_key,
        )
        logger.debug("Queued %s for %s", event_type, event.aggregate_id)
        return row
