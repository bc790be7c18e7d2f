"""
Outbox delivery: events are handed to the sink after commit, failed
deliveries back off, and exhausted events are parked as FAILED.
"""

from datetime import timedelta

import pytest

from tutorflow.models.event_outbox import EventOutbox, EventOutboxStatus
from tutorflow.services.notification_dispatcher import (
    NotificationDeliveryError,
    NotificationDispatcher,
    next_backoff,
)

from tests.utils.builders import make_class


class RecordingSink:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.delivered = []

    def send(self, *, event_type, payload, idempotency_key):
        if self.failures:
            self.failures -= 1
            raise NotificationDeliveryError("smtp unavailable")
        self.delivered.append((event_type, idempotency_key, payload))


def _only_event(db) -> EventOutbox:
    db.expire_all()
    events = db.query(EventOutbox).all()
    assert len(events) == 1
    return events[0]


def test_pending_events_are_delivered_once(db, clock):
    created = make_class(db)
    sink = RecordingSink()
    dispatcher = NotificationDispatcher(db, sink=sink)

    result = dispatcher.dispatch_pending()
    repeat = dispatcher.dispatch_pending()

    assert (result.sent, result.retried, result.failed) == (1, 0, 0)
    assert repeat.attempted == 0
    event_type, key, payload = sink.delivered[0]
    assert event_type == "ClassCreated"
    assert key == f"class_created:{created.tutor_class.id}"
    assert payload["class_id"] == created.tutor_class.id
    assert _only_event(db).status == EventOutboxStatus.SENT.value


def test_failed_delivery_backs_off_before_retrying(db, clock):
    make_class(db)
    sink = RecordingSink(failures=1)
    dispatcher = NotificationDispatcher(db, sink=sink, backoff_seconds=[60, 300])

    first = dispatcher.dispatch_pending(now=clock())
    assert first.retried == 1
    event = _only_event(db)
    assert event.status == EventOutboxStatus.PENDING.value
    assert event.attempt_count == 1
    assert event.next_attempt_at == clock() + timedelta(seconds=60)
    assert event.last_error == "smtp unavailable"

    too_early = dispatcher.dispatch_pending(now=clock() + timedelta(seconds=59))
    assert too_early.attempted == 0

    on_time = dispatcher.dispatch_pending(now=clock() + timedelta(seconds=60))
    assert on_time.sent == 1
    assert _only_event(db).attempt_count == 2
    assert len(sink.delivered) == 1


def test_event_is_parked_after_max_attempts(db, clock):
    make_class(db)
    sink = RecordingSink(failures=10)
    dispatcher = NotificationDispatcher(db, sink=sink, max_attempts=3, backoff_seconds=[10])

    outcomes = []
    moment = clock()
    for _ in range(3):
        result = dispatcher.dispatch_pending(now=moment)
        outcomes.append((result.retried, result.failed))
        moment += timedelta(seconds=10)

    assert outcomes == [(1, 0), (1, 0), (0, 1)]
    event = _only_event(db)
    assert event.status == EventOutboxStatus.FAILED.value
    assert event.attempt_count == 3
    assert dispatcher.dispatch_pending(now=moment + timedelta(days=1)).attempted == 0


def test_delivery_failure_does_not_touch_the_source_change(db, clock):
    created = make_class(db)

    NotificationDispatcher(db, sink=RecordingSink(failures=1)).dispatch_pending(now=clock())

    db.expire_all()
    assert len(created.tutor_class.lessons) == 8


@pytest.mark.parametrize("attempt,expected", [(1, 30), (2, 120), (5, 7200), (9, 7200), (0, 30)])
def test_backoff_schedule_is_clamped(attempt, expected):
    assert next_backoff(attempt, [30, 120, 600, 1800, 7200]) == expected
