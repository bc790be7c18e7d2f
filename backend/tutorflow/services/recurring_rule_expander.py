# backend/tutorflow/services/recurring_rule_expander.py
"""
Recurring rule expansion.

Turns weekly templates (weekday plus wall-clock window, no date) into dated
occurrences. Expansion is a pure function of its arguments: the same rules,
start date, horizon and timezone always give the same occurrences.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import pytz

from ..core.exceptions import ValidationException
from ..core.timezone_utils import get_schedule_timezone, local_to_utc

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass(frozen=True)
class RecurringRule:
    """Weekly template; ``day_of_week`` follows ``date.weekday()`` (Monday is 0)."""

    day_of_week: int
    start_time: time
    end_time: time

    @classmethod
    def from_model(cls, rule: Any) -> "RecurringRule":
        return cls(rule.day_of_week, rule.start_time, rule.end_time)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecurringRule":
        """Build from ``{"day_of_week", "start_time", "end_time"}``; times may be ISO strings."""

        def _time(value: Any) -> time:
            if isinstance(value, time):
                return value
            try:
                return time.fromisoformat(str(value))
            except ValueError as exc:
                raise ValidationException(f"Invalid time of day: {value!r}") from exc

        try:
            day = int(payload["day_of_week"])
            start_raw = payload["start_time"]
            end_raw = payload["end_time"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationException(f"Malformed schedule rule: {payload!r}") from exc
        return cls(day, _time(start_raw), _time(end_raw))

    def to_dict(self) -> dict[str, Any]:
        return {
            "day_of_week": self.day_of_week,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
        }


@dataclass(frozen=True)
class HorizonPolicy:
    """
    How far expansion reaches.

    Each rule yields at most ``occurrences_per_rule`` occurrences, none of them
    on or after ``start_date + window_days``. ``until_date`` (inclusive), when
    set, replaces the day window and lifts the per-rule cap.
    """

    occurrences_per_rule: Optional[int] = 4
    window_days: int = 50
    until_date: Optional[date] = None

    @classmethod
    def until(cls, until_date: date) -> "HorizonPolicy":
        return cls(occurrences_per_rule=None, until_date=until_date)

    def last_day(self, start_date: date) -> date:
        if self.until_date is not None:
            return self.until_date
        return start_date + timedelta(days=self.window_days - 1)


@dataclass(frozen=True)
class Occurrence:
    """One dated occurrence; ``start_at``/``end_at`` are aware UTC."""

    local_date: date
    start_at: datetime
    end_at: datetime
    rule_index: int

    def overlaps(self, other: "Occurrence") -> bool:
        return self.start_at < other.end_at and self.end_at > other.start_at


def validate_rules(rules: Sequence[RecurringRule]) -> None:
    """
    Reject malformed rule sets before anything is generated.

    Raises ValidationException for an empty set, a weekday outside 0-6,
    ``end_time <= start_time``, or two rules overlapping on the same weekday.
    """
    if not rules:
        raise ValidationException("At least one schedule rule is required")
    for index, rule in enumerate(rules):
        if not 0 <= rule.day_of_week <= 6:
            raise ValidationException(
                f"Rule {index}: day_of_week must be between 0 and 6",
                details={"rule_index": index, "day_of_week": rule.day_of_week},
            )
        if rule.end_time <= rule.start_time:
            raise ValidationException(
                f"Rule {index}: end time must be after start time",
                details={
                    "rule_index": index,
                    "start_time": rule.start_time.isoformat(),
                    "end_time": rule.end_time.isoformat(),
                },
            )
    for i, first in enumerate(rules):
        for j in range(i + 1, len(rules)):
            second = rules[j]
            if first.day_of_week != second.day_of_week:
                continue
            if first.start_time < second.end_time and first.end_time > second.start_time:
                raise ValidationException(
                    f"Rules {i} and {j} overlap on {WEEKDAY_NAMES[first.day_of_week]}",
                    details={"rule_indexes": [i, j]},
                )


def _first_on_or_after(start_date: date, weekday: int) -> date:
    return start_date + timedelta(days=(weekday - start_date.weekday()) % 7)


def expand_rules(
    rules: Iterable[RecurringRule],
    start_date: date,
    policy: Optional[HorizonPolicy] = None,
    tz: Optional[pytz.BaseTzInfo] = None,
) -> List[Occurrence]:
    """
    Expand weekly rules into occurrences ordered by start instant.

    A rule whose weekday falls before ``start_date`` in that week starts on
    the next matching weekday. Rule times are wall-clock times in ``tz``
    (the configured schedule timezone by default).
    """
    rule_list = list(rules)
    validate_rules(rule_list)
    policy = policy or HorizonPolicy()
    zone = tz or get_schedule_timezone()
    last_day = policy.last_day(start_date)
    if last_day < start_date:
        raise ValidationException(
            "Schedule horizon ends before the start date",
            details={"start_date": start_date.isoformat(), "last_day": last_day.isoformat()},
        )

    occurrences: List[Occurrence] = []
    for index, rule in enumerate(rule_list):
        day = _first_on_or_after(start_date, rule.day_of_week)
        produced = 0
        while day <= last_day:
            if policy.occurrences_per_rule is not None and produced >= policy.occurrences_per_rule:
                break
            occurrences.append(
                Occurrence(
                    local_date=day,
                    start_at=local_to_utc(day, rule.start_time, zone),
                    end_at=local_to_utc(day, rule.end_time, zone),
                    rule_index=index,
                )
            )
            produced += 1
            day += timedelta(days=7)

    occurrences.sort(key=lambda occ: (occ.start_at, occ.rule_index))
    return occurrences
