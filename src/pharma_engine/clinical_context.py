"""Monitoring and missed-dose todo items derived from therapy clinical rules."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta, tzinfo
from uuid import UUID

from .clinical_rules import DOSE_RELATION_LABELS, MonitoringSchedule, build_monitoring_todo_id
from .ledger import has_matching_intake_log
from .models import Medicine, Therapy, TodoItem
from .occurrence import combine, dose_events_between
from .recurrence import allowed_events_on_day, local_day, parse_rule

MISSED_DOSE_TOLERANCE = timedelta(hours=1)


@dataclass(frozen=True)
class ClinicalContext:
    monitoring: list[TodoItem]
    missed_doses: list[TodoItem]

    @property
    def all_todos(self) -> list[TodoItem]:
        return self.monitoring + self.missed_doses


def format_time(at: datetime, tz: tzinfo) -> str:
    return at.astimezone(tz).strftime("%H:%M")


def todo_timestamp(item_id: str) -> int | None:
    """Trailing epoch seconds of monitoring / missed-dose ids."""
    tail = item_id.rsplit("|", 1)[-1]
    try:
        return int(tail)
    except ValueError:
        return None


def _day_bounds(now: datetime, tz: tzinfo) -> tuple[datetime, datetime]:
    start = combine(local_day(now, tz), time.min, tz)
    return start, start + timedelta(days=1) - timedelta(seconds=1)


def _schedule_occurrences(
    schedule: MonitoringSchedule,
    start: datetime,
    end: datetime,
    tz: tzinfo,
) -> list[datetime]:
    if not schedule.rrule or not schedule.times:
        return []
    rule = parse_rule(schedule.rrule)
    day = local_day(start, tz)
    if allowed_events_on_day(day, rule, start, 1, tz) == 0:
        return []
    occurrences = []
    for at in schedule.times:
        if at.tzinfo is None:
            at = at.replace(tzinfo=UTC)
        instant = combine(day, at.astimezone(tz).time(), tz)
        if start <= instant <= end:
            occurrences.append(instant)
    return sorted(occurrences)


def _dose_monitoring(
    therapies: dict[UUID, tuple[Medicine, Therapy]],
    now: datetime,
    start: datetime,
    end: datetime,
    tz: tzinfo,
) -> list[TodoItem]:
    todos: list[TodoItem] = []
    all_therapies = [t for _, t in therapies.values()]
    for event in dose_events_between(all_therapies, start, end, tz):
        medicine, therapy = therapies[event.therapy_id]
        rules = therapy.clinical_rules
        if rules is None or not rules.monitoring:
            continue
        for action in rules.monitoring:
            if action.schedule is not None:
                continue
            relation = action.resolved_dose_relation
            offset = action.resolved_offset_minutes
            delta = timedelta(minutes=offset)
            trigger = event.scheduled_at - delta if relation == "beforeDose" else event.scheduled_at + delta
            if trigger < start or trigger > end or trigger < now:
                continue
            suffix = "prima" if relation == "beforeDose" else "dopo"
            todos.append(
                TodoItem(
                    id=build_monitoring_todo_id(
                        kind=action.kind,
                        relation=relation,
                        therapy_key=therapy.external_key,
                        dose_at=event.scheduled_at,
                        trigger_at=trigger,
                    ),
                    title=medicine.name,
                    detail=f"{DOSE_RELATION_LABELS[relation]} ({offset} min {suffix})",
                    category="monitoring",
                    medicine_id=medicine.id,
                )
            )

    for medicine, therapy in therapies.values():
        rules = therapy.clinical_rules
        if rules is None or not rules.monitoring:
            continue
        for action in rules.monitoring:
            if action.schedule is None:
                continue
            for at in _schedule_occurrences(action.schedule, start, end, tz):
                if at < now:
                    continue
                todos.append(
                    TodoItem(
                        id=(
                            f"monitoring|schedule|{action.kind}|{therapy.external_key}"
                            f"|{int(at.timestamp())}"
                        ),
                        title=medicine.name,
                        detail=f"Alle {format_time(at, tz)}",
                        category="monitoring",
                        medicine_id=medicine.id,
                    )
                )

    todos.sort(key=lambda item: (todo_timestamp(item.id) or 0, item.title.lower()))
    return todos


def _missed_doses(
    therapies: dict[UUID, tuple[Medicine, Therapy]],
    now: datetime,
    start: datetime,
    tz: tzinfo,
) -> list[TodoItem]:
    todos: list[TodoItem] = []
    candidates = [
        t for _, t in therapies.values()
        if t.clinical_rules is not None and t.clinical_rules.has_missed_dose_policy
    ]
    for event in dose_events_between(candidates, start, now, tz):
        if event.scheduled_at >= now:
            continue
        medicine, therapy = therapies[event.therapy_id]
        if has_matching_intake_log(medicine, therapy, event.scheduled_at, MISSED_DOSE_TOLERANCE):
            continue
        todos.append(
            TodoItem(
                id=f"missed|{therapy.external_key}|{int(event.scheduled_at.timestamp())}",
                title=medicine.name,
                detail=f"Dose delle {format_time(event.scheduled_at, tz)} non registrata",
                category="missedDose",
                medicine_id=medicine.id,
            )
        )
    return todos


def build_clinical_context(
    medicines: Sequence[Medicine],
    now: datetime,
    tz: tzinfo = UTC,
) -> ClinicalContext:
    """Monitoring reminders still ahead today and today's unregistered doses."""
    start, end = _day_bounds(now, tz)
    therapies = {t.id: (m, t) for m in medicines for t in m.therapies}
    return ClinicalContext(
        monitoring=_dose_monitoring(therapies, now, start, end, tz),
        missed_doses=_missed_doses(therapies, now, start, tz),
    )
