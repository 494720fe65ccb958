"""Occurrence calculation: next dose instant and dose events in a window."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from uuid import UUID

from .models import DoseTime, Therapy
from .recurrence import RecurrenceRule, combine, iter_allowed_doses, local_day, parse_rule

# Search horizon for next_occurrence (about ten years of days).
MAX_SEARCH_DAYS = 3660


@dataclass(frozen=True)
class DoseEvent:
    therapy_id: UUID
    medicine_id: UUID
    scheduled_at: datetime
    amount: float = 1.0


def next_occurrence(
    rule: RecurrenceRule,
    start_date: datetime,
    after: datetime,
    doses: Sequence[DoseTime],
    tz: tzinfo = UTC,
) -> datetime | None:
    """Earliest dose instant strictly later than ``after``, or None.

    None when there are no dose times or the rule is exhausted (UNTIL/COUNT).
    """
    if not doses:
        return None
    times = sorted({d.time.replace(tzinfo=None) for d in doses})
    from_day = local_day(after, tz)
    to_day = from_day + timedelta(days=MAX_SEARCH_DAYS)
    for day, allowed in iter_allowed_doses(rule, start_date, times, tz, from_day, to_day):
        for index in allowed:
            instant = combine(day, times[index], tz)
            if instant <= after:
                continue
            if rule.until is not None and instant > rule.until:
                return None
            return instant
    return None


def next_therapy_occurrence(therapy: Therapy, after: datetime, tz: tzinfo = UTC) -> datetime | None:
    return next_occurrence(
        parse_rule(therapy.rrule),
        therapy.start_date or after,
        after,
        therapy.doses,
        tz,
    )


def scheduled_times_on_day(therapy: Therapy, day: date, tz: tzinfo = UTC) -> list[datetime]:
    """Dose instants the therapy schedules on ``day``, earliest first."""
    if not therapy.doses:
        return []
    rule = parse_rule(therapy.rrule)
    start = therapy.start_date or combine(day, time.min, tz)
    sorted_doses = therapy.sorted_doses
    times = [d.time.replace(tzinfo=None) for d in sorted_doses]
    for _, allowed in iter_allowed_doses(rule, start, times, tz, day, day):
        return [combine(day, times[i], tz) for i in allowed]
    return []


def dose_events_between(
    therapies: Iterable[Therapy],
    start: datetime,
    end: datetime,
    tz: tzinfo = UTC,
) -> list[DoseEvent]:
    """All dose events of ``therapies`` with ``start <= scheduled_at <= end``."""
    events: list[DoseEvent] = []
    first_day, last_day = local_day(start, tz), local_day(end, tz)
    for therapy in therapies:
        if not therapy.doses:
            continue
        rule = parse_rule(therapy.rrule)
        therapy_start = therapy.start_date or combine(first_day, time.min, tz)
        sorted_doses = therapy.sorted_doses
        times = [d.time.replace(tzinfo=None) for d in sorted_doses]
        for day, allowed in iter_allowed_doses(rule, therapy_start, times, tz, first_day, last_day):
            for index in allowed:
                instant = combine(day, times[index], tz)
                if instant < start or instant > end:
                    continue
                events.append(DoseEvent(therapy.id, therapy.medicine_id, instant, sorted_doses[index].amount))
    events.sort(key=lambda e: e.scheduled_at)
    return events
