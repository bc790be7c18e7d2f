"""Recurring unavailability blocks on a tutor's calendar."""

from datetime import date, datetime, time, timezone

import pytest

from tutorflow.core.enums import ScheduleEntryType
from tutorflow.core.exceptions import (
    ForbiddenException,
    NotFoundException,
    ScheduleConflictException,
    ValidationException,
)
from tutorflow.models.schedule import AvailabilityBlock, ScheduleEntry
from tutorflow.services.availability_block_service import AvailabilityBlockService
from tutorflow.services.recurring_rule_expander import RecurringRule

from tests.utils.builders import OTHER_TUTOR_ID, START_DATE, TUTOR_ID, make_class

FRIDAY_EVENING = [RecurringRule(4, time(19, 0), time(21, 0))]


def test_block_occurrences_are_indexed_until_end_date(db):
    service = AvailabilityBlockService(db)

    result = service.create_block(TUTOR_ID, "Choir", FRIDAY_EVENING, START_DATE, date(2030, 2, 8))

    assert len(result.entry_ids) == 4
    entries = service.list_tutor_schedule(TUTOR_ID)
    assert all(entry.entry_type == ScheduleEntryType.BLOCK for entry in entries)
    assert entries[0].start_at == datetime(2030, 1, 18, 12, 0, tzinfo=timezone.utc)
    assert [block.id for block in service.list_blocks(TUTOR_ID)] == [result.block.id]


def test_block_prevents_lessons_in_its_slots(db):
    evening = [RecurringRule(0, time(18, 0), time(19, 30))]
    AvailabilityBlockService(db).create_block(TUTOR_ID, "Gym", evening, START_DATE, date(2030, 3, 1))

    with pytest.raises(ScheduleConflictException):
        make_class(db)

    assert len(make_class(db, tutor_id=OTHER_TUTOR_ID).lessons) == 8


def test_block_over_existing_lessons_is_refused_entirely(db):
    make_class(db)
    monday_and_friday = [
        RecurringRule(4, time(8, 0), time(9, 0)),
        RecurringRule(0, time(18, 30), time(20, 0)),
    ]

    with pytest.raises(ScheduleConflictException):
        AvailabilityBlockService(db).create_block(
            TUTOR_ID, "Travel", monday_and_friday, START_DATE, date(2030, 1, 31)
        )

    assert db.query(AvailabilityBlock).count() == 0
    assert db.query(ScheduleEntry).filter_by(entry_type=ScheduleEntryType.BLOCK).count() == 0


def test_deleting_a_block_frees_its_slots(db):
    evening = [RecurringRule(0, time(18, 0), time(19, 30))]
    service = AvailabilityBlockService(db)
    created = service.create_block(TUTOR_ID, "Gym", evening, START_DATE, date(2030, 3, 1))

    service.delete_block(created.block.id, TUTOR_ID)
    service.delete_block(created.block.id, TUTOR_ID)

    assert service.list_blocks(TUTOR_ID) == []
    assert service.list_tutor_schedule(TUTOR_ID) == []
    assert len(make_class(db).lessons) == 8


def test_only_the_owner_deletes_a_block(db):
    service = AvailabilityBlockService(db)
    created = service.create_block(TUTOR_ID, "Gym", FRIDAY_EVENING, START_DATE, date(2030, 2, 1))

    with pytest.raises(ForbiddenException):
        service.delete_block(created.block.id, OTHER_TUTOR_ID)


@pytest.mark.parametrize(
    "title,until",
    [("", date(2030, 2, 1)), ("Gym", date(2030, 1, 1)), ("Gym", date(2030, 1, 15))],
    ids=["blank-title", "ends-before-start", "no-friday-in-range"],
)
def test_invalid_blocks_are_rejected(db, title, until):
    with pytest.raises(ValidationException):
        AvailabilityBlockService(db).create_block(TUTOR_ID, title, FRIDAY_EVENING, START_DATE, until)


def test_renaming_a_block_keeps_its_entries(db):
    service = AvailabilityBlockService(db)
    created = service.create_block(TUTOR_ID, "Choir", FRIDAY_EVENING, START_DATE, date(2030, 2, 8))

    updated = service.update_block(created.block.id, TUTOR_ID, title="Choir rehearsal", notes="Bring sheet music")

    assert updated.block.title == "Choir rehearsal"
    assert updated.block.notes == "Bring sheet music"
    assert sorted(updated.entry_ids) == sorted(created.entry_ids)


def test_moving_a_block_rewrites_its_entries(db):
    service = AvailabilityBlockService(db)
    created = service.create_block(TUTOR_ID, "Choir", FRIDAY_EVENING, START_DATE, date(2030, 2, 8))
    saturday_morning = [RecurringRule(5, time(9, 0), time(11, 0))]

    updated = service.update_block(created.block.id, TUTOR_ID, rules=saturday_morning, until_date=date(2030, 1, 26))

    assert len(updated.entry_ids) == 2
    assert updated.block.rules == [rule.to_dict() for rule in saturday_morning]
    entries = service.list_tutor_schedule(TUTOR_ID)
    assert [entry.id for entry in entries] == updated.entry_ids
    assert entries[0].start_at == datetime(2030, 1, 19, 2, 0, tzinfo=timezone.utc)
    # The old Friday slot can be used again.
    friday = [RecurringRule(4, time(19, 0), time(20, 0))]
    assert len(make_class(db, rules=friday).lessons) == 4


def test_block_move_onto_a_lesson_is_refused_and_keeps_the_old_slots(db):
    make_class(db)
    service = AvailabilityBlockService(db)
    created = service.create_block(TUTOR_ID, "Choir", FRIDAY_EVENING, START_DATE, date(2030, 2, 8))
    monday_evening = [RecurringRule(0, time(18, 30), time(20, 0))]

    with pytest.raises(ScheduleConflictException):
        service.update_block(created.block.id, TUTOR_ID, rules=monday_evening)

    db.expire_all()
    block = db.get(AvailabilityBlock, created.block.id)
    assert block.rules == [rule.to_dict() for rule in FRIDAY_EVENING]
    live = [entry.id for entry in service.list_tutor_schedule(TUTOR_ID) if entry.block_id == block.id]
    assert sorted(live) == sorted(created.entry_ids)


def test_only_the_owner_edits_a_live_block(db):
    service = AvailabilityBlockService(db)
    created = service.create_block(TUTOR_ID, "Gym", FRIDAY_EVENING, START_DATE, date(2030, 2, 1))

    with pytest.raises(ForbiddenException):
        service.update_block(created.block.id, OTHER_TUTOR_ID, title="Mine")

    service.delete_block(created.block.id, TUTOR_ID)
    with pytest.raises(NotFoundException):
        service.update_block(created.block.id, TUTOR_ID, title="Gym again")


def test_block_dates_must_stay_ordered_on_update(db):
    service = AvailabilityBlockService(db)
    created = service.create_block(TUTOR_ID, "Gym", FRIDAY_EVENING, START_DATE, date(2030, 2, 1))

    with pytest.raises(ValidationException):
        service.update_block(created.block.id, TUTOR_ID, until_date=date(2030, 1, 1))
