"""Today aggregator: the ordered, de-duplicated list of things to do now.

Pass order:
  1. classify medicines: needs purchase, dose today, nothing due;
  2. therapy, purchase and prescription items;
  3. depleted-stock purchase fallback (never a second purchase item);
  4. expired packages, monitoring and missed-dose items;
  5. sort, drop therapy items with nothing left to take, drop completed keys.
"""

from __future__ import annotations

import logging
import re
import time as _time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Literal
from uuid import UUID

from .clinical_context import build_clinical_context, format_time, todo_timestamp
from .forecast import StockForecast, forecast_medicine
from .ledger import effective_intake_logs_on, has_new_prescription_request
from .metrics import record_plan
from .models import Medicine, Option, StockLedgerEvent, Therapy, TodoItem
from .occurrence import combine, next_therapy_occurrence, scheduled_times_on_day
from .recurrence import local_day

logger = logging.getLogger(__name__)

CATEGORY_DISPLAY_ORDER: tuple[str, ...] = (
    "monitoring",
    "therapy",
    "missedDose",
    "purchase",
    "deadline",
    "prescription",
)
UPCOMING_WINDOW = timedelta(days=7)
MAX_PRESCRIPTION_ITEMS = 6
MAX_UPCOMING = 3

_TIME_RE = re.compile(r"([0-9]{1,2}):([0-9]{2})")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeLabel:
    kind: Literal["time", "category"]
    at: datetime | None = None
    category: str | None = None


@dataclass(frozen=True)
class MedicineStatus:
    needs_prescription: bool
    is_out_of_stock: bool
    is_depleted: bool
    purchase_stock_status: str | None
    person_name: str | None


@dataclass(frozen=True)
class BlockedTherapyStatus:
    medicine_id: UUID
    needs_prescription: bool
    is_out_of_stock: bool
    is_depleted: bool
    person_name: str | None


@dataclass(frozen=True)
class UpcomingDose:
    medicine_id: UUID
    title: str
    at: datetime


@dataclass(frozen=True)
class TodayState:
    computed_todos: list[TodoItem]
    pending_items: list[TodoItem]
    therapy_items: list[TodoItem]
    purchase_items: list[TodoItem]
    other_items: list[TodoItem]
    time_labels: dict[str, TimeLabel] = field(default_factory=dict)
    medicine_statuses: dict[UUID, MedicineStatus] = field(default_factory=dict)
    blocked_therapy_statuses: dict[str, BlockedTherapyStatus] = field(default_factory=dict)
    upcoming: list[UpcomingDose] = field(default_factory=list)
    sync_token: str = ""

    @property
    def show_pharmacy_card(self) -> bool:
        return bool(self.purchase_items)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def completion_key(item: TodoItem) -> str:
    """Key marking an item done: point-in-time items by id, others per medicine."""
    if item.category in ("monitoring", "missedDose"):
        return item.id
    if item.medicine_id is not None:
        return f"{item.category}|{item.medicine_id}"
    return item.id


def sync_token(items: Iterable[TodoItem]) -> str:
    return "||".join(
        f"{item.id}|{item.category}|{item.title}|{item.detail or ''}|{item.medicine_id or ''}"
        for item in items
    )


# ---------------------------------------------------------------------------
# Intake bookkeeping
# ---------------------------------------------------------------------------


def relevant_intake_logs_today(
    therapy: Therapy,
    medicine: Medicine,
    day: date,
    tz: tzinfo,
) -> list[StockLedgerEvent]:
    """Today's intakes for ``therapy``: assigned ones, else plausible unassigned ones."""
    logs_today = effective_intake_logs_on(medicine.events, day, tz)
    assigned = [log for log in logs_today if log.therapy_id == therapy.id]
    if assigned:
        return assigned
    unassigned = [log for log in logs_today if log.therapy_id is None]
    if len(medicine.therapies) == 1:
        return unassigned
    return [log for log in unassigned if log.package_id == therapy.package_id]


def completed_dose_count(scheduled: Sequence[datetime], log_times: Sequence[datetime]) -> int:
    """Greedy pairing, latest first, of intake logs with scheduled times at or before them."""
    schedule = sorted(scheduled)
    index = len(schedule) - 1
    completed = 0
    for logged_at in sorted(log_times, reverse=True):
        while index >= 0 and schedule[index] > logged_at:
            index -= 1
        if index < 0:
            break
        completed += 1
        index -= 1
    return completed


def pending_doses_today(
    therapy: Therapy,
    medicine: Medicine,
    now: datetime,
    tz: tzinfo,
) -> list[datetime]:
    day = local_day(now, tz)
    times = scheduled_times_on_day(therapy, day, tz)
    if not times:
        return []
    logs = relevant_intake_logs_today(therapy, medicine, day, tz)
    completed = completed_dose_count(times, [log.timestamp for log in logs])
    return times[completed:]


def has_pending_intake_today(medicine: Medicine, now: datetime, tz: tzinfo) -> bool:
    return any(pending_doses_today(t, medicine, now, tz) for t in medicine.therapies)


def next_dose_today(medicine: Medicine, now: datetime, tz: tzinfo) -> datetime | None:
    """Earliest dose still ahead today (ignores intakes)."""
    today = local_day(now, tz)
    upcoming = [
        at
        for t in medicine.therapies
        if (at := next_therapy_occurrence(t, now, tz)) is not None and local_day(at, tz) == today
    ]
    return min(upcoming, default=None)


def next_pending_dose_today(medicine: Medicine, now: datetime, tz: tzinfo) -> datetime | None:
    """Earliest dose of today that has no matching intake yet."""
    pending = [
        times[0] for t in medicine.therapies if (times := pending_doses_today(t, medicine, now, tz))
    ]
    return min(pending, default=None)


def _next_upcoming(medicine: Medicine, now: datetime, tz: tzinfo) -> datetime | None:
    dates = [at for t in medicine.therapies if (at := next_therapy_occurrence(t, now, tz)) is not None]
    return min(dates, default=None)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


@dataclass
class _MedicineView:
    medicine: Medicine
    forecast: StockForecast
    occurs_today: bool

    @property
    def is_out_of_stock(self) -> bool:
        if not self.medicine.is_visible_in_today:
            return False
        if self.forecast.status == "critical":
            return True
        return bool(self.medicine.therapies) and self.forecast.status == "low"

    @property
    def needs_prescription(self) -> bool:
        return self.medicine.is_visible_in_today and self.forecast.needs_prescription


def _purchase_highlight(view: _MedicineView, now: datetime, tz: tzinfo) -> str:
    medicine, forecast = view.medicine, view.forecast
    if medicine.therapies:
        if forecast.status == "critical":
            next_today = next_dose_today(medicine, now, tz)
            if next_today is not None:
                return f"scorte terminate · da prendere alle {format_time(next_today, tz)}"
            return "scorte terminate"
        days = forecast.autonomy_days
        if days is None:
            return "copertura non stimabile"
        if days <= 0:
            return "scorte terminate"
        return "copertura per 1 giorno" if days == 1 else f"copertura per {days} giorni"
    if forecast.status == "unknown":
        return "scorte non monitorate"
    remaining = forecast.leftover_units
    if remaining <= 0:
        return "nessuna unità residua"
    if remaining < 5:
        return f"solo {remaining} unità"
    return f"{remaining} unità disponibili"


def _purchase_stock_status_label(view: _MedicineView) -> str | None:
    if view.forecast.status == "critical":
        return "Scorte finite"
    if view.forecast.status == "low":
        return "Scorte in esaurimento"
    return None


def _detail_for_action(
    base: str | None,
    view: _MedicineView,
    urgent_ids: set[UUID],
    now: datetime,
    tz: tzinfo,
) -> str | None:
    parts = [base] if base else []
    if view.medicine.id not in urgent_ids:
        next_today = next_dose_today(view.medicine, now, tz)
        if next_today is not None:
            parts.append(f"Oggi: {format_time(next_today, tz)}")
    return "\n".join(parts) if parts else None


def _therapy_items(views: Sequence[_MedicineView], now: datetime, tz: tzinfo) -> list[TodoItem]:
    items = []
    for view in views:
        medicine = view.medicine
        if not medicine.is_visible_in_today or not has_pending_intake_today(medicine, now, tz):
            continue
        at = next_dose_today(medicine, now, tz) or next_pending_dose_today(medicine, now, tz)
        detail = f"alle {format_time(at, tz)}" if at is not None else None
        name = medicine.name.strip()
        items.append(
            TodoItem(
                id=f"therapy|{name.lower()}|{(detail or '').lower()}|{medicine.latest_event_salt}",
                title=name,
                detail=detail,
                category="therapy",
                medicine_id=medicine.id,
            )
        )
    return items


def _purchase_items(
    views: Sequence[_MedicineView],
    urgent_ids: set[UUID],
    now: datetime,
    tz: tzinfo,
) -> list[TodoItem]:
    items = []
    for view in views:
        medicine = view.medicine
        items.append(
            TodoItem(
                id=f"purchase|{medicine.external_key}|normal|{medicine.latest_event_salt}",
                title=medicine.name,
                detail=_detail_for_action(_purchase_highlight(view, now, tz), view, urgent_ids, now, tz),
                category="purchase",
                medicine_id=medicine.id,
            )
        )
    return items


def _prescription_items(
    views: Sequence[_MedicineView],
    urgent_ids: set[UUID],
    now: datetime,
    tz: tzinfo,
) -> list[TodoItem]:
    items = []
    for view in views:
        if not view.needs_prescription:
            continue
        medicine = view.medicine
        base = "Richiesta inviata" if has_new_prescription_request(medicine.events) else None
        items.append(
            TodoItem(
                id=f"prescription|{medicine.external_key}||{medicine.latest_event_salt}",
                title=medicine.name,
                detail=_detail_for_action(base, view, urgent_ids, now, tz),
                category="prescription",
                medicine_id=medicine.id,
            )
        )
        if len(items) >= MAX_PRESCRIPTION_ITEMS:
            break
    return items


def _has_purchase_for(items: Iterable[TodoItem], medicine: Medicine) -> bool:
    return any(item.category == "purchase" and item.medicine_id == medicine.id for item in items)


def _deadline_items(medicines: Sequence[Medicine], today: date) -> list[TodoItem]:
    expired = [
        m for m in medicines
        if (months := m.months_until_deadline(today)) is not None and months < 0
    ]
    expired.sort(key=lambda m: (m.deadline_month_start, m.name.lower()))
    return [
        TodoItem(
            id=f"deadline|{m.external_key}|{m.deadline_label}",
            title=m.name,
            detail=f"Scaduto {m.deadline_label}",
            category="deadline",
            medicine_id=m.id,
        )
        for m in expired
    ]


def _time_sort_value(item: TodoItem, tz: tzinfo) -> int | None:
    """Minutes since midnight, or None for items without a time of day."""
    if item.category in ("monitoring", "missedDose"):
        ts = todo_timestamp(item.id)
        if ts is not None:
            local = datetime.fromtimestamp(ts, tz=UTC).astimezone(tz)
            return local.hour * 60 + local.minute
    if item.category in ("deadline", "purchase") or not item.detail:
        return None
    match = _TIME_RE.search(item.detail)
    if match is None:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return hour * 60 + minute


def _category_rank(category: str) -> int:
    try:
        return CATEGORY_DISPLAY_ORDER.index(category)
    except ValueError:
        return len(CATEGORY_DISPLAY_ORDER)


def sort_todos(items: Iterable[TodoItem], medicines: Sequence[Medicine], tz: tzinfo = UTC) -> list[TodoItem]:
    by_id = {m.id: m for m in medicines}
    far = date.max

    def key(item: TodoItem) -> tuple:
        # Deadline dates only order deadline items among themselves.
        deadline = far
        if item.category == "deadline" and item.medicine_id in by_id:
            deadline = by_id[item.medicine_id].deadline_month_start or far
        minutes = _time_sort_value(item, tz)
        return (
            minutes if minutes is not None else 24 * 60,
            _category_rank(item.category),
            deadline,
            item.title.lower(),
        )

    return sorted(items, key=key)


def _time_label(
    item: TodoItem,
    by_id: dict[UUID, Medicine],
    now: datetime,
    tz: tzinfo,
) -> TimeLabel | None:
    if item.category in ("purchase", "deadline"):
        return TimeLabel(kind="category", category=item.category)
    if item.category in ("monitoring", "missedDose"):
        ts = todo_timestamp(item.id)
        if ts is not None:
            return TimeLabel(kind="time", at=datetime.fromtimestamp(ts, tz=UTC))
    medicine = by_id.get(item.medicine_id) if item.medicine_id is not None else None
    if medicine is not None:
        at = next_dose_today(medicine, now, tz)
        if at is not None:
            return TimeLabel(kind="time", at=at)
    minutes = _time_sort_value(item, tz)
    if minutes is None:
        return None
    at = combine(local_day(now, tz), time(minutes // 60, minutes % 60), tz)
    return TimeLabel(kind="time", at=at)


def _person_name(medicine: Medicine, now: datetime, tz: tzinfo) -> str | None:
    best: tuple[datetime, str | None] | None = None
    for therapy in medicine.therapies:
        pending = pending_doses_today(therapy, medicine, now, tz)
        if pending and (best is None or pending[0] < best[0]):
            best = (pending[0], therapy.person_name)
    if best is not None and best[1]:
        return best[1]
    return next((t.person_name for t in medicine.therapies if t.person_name), None)


def _medicine_status(view: _MedicineView, now: datetime, tz: tzinfo) -> MedicineStatus:
    return MedicineStatus(
        needs_prescription=view.needs_prescription,
        is_out_of_stock=view.is_out_of_stock,
        is_depleted=view.forecast.is_depleted,
        purchase_stock_status=_purchase_stock_status_label(view),
        person_name=_person_name(view.medicine, now, tz),
    )


def _build_view(medicine: Medicine, option: Option | None, now: datetime, tz: tzinfo) -> _MedicineView:
    today = local_day(now, tz)
    occurs_today = any(scheduled_times_on_day(t, today, tz) for t in medicine.therapies)
    return _MedicineView(medicine, forecast_medicine(medicine, option), occurs_today)


def build_today_state(
    medicines: Sequence[Medicine],
    now: datetime,
    *,
    option: Option | None = None,
    completed_keys: Iterable[str] = (),
    tz: tzinfo = UTC,
) -> TodayState:
    started = _time.perf_counter()
    completed = set(completed_keys)
    today = local_day(now, tz)

    views: list[_MedicineView] = []
    for medicine in medicines:
        try:
            views.append(_build_view(medicine, option, now, tz))
        except (ValueError, TypeError, ArithmeticError, OverflowError):
            logger.warning("Skipping medicine %s with unreadable data", medicine.id, exc_info=True)
    usable = [v.medicine for v in views]

    visible = [v for v in views if v.medicine.is_visible_in_today]
    purchase_section = [v for v in visible if v.forecast.needs_attention]
    ok_section = [v for v in visible if not v.forecast.needs_attention and not v.occurs_today]

    urgent_ids = {
        v.medicine.id
        for v in visible
        if v.is_out_of_stock
        and (nxt := _next_upcoming(v.medicine, now, tz)) is not None
        and nxt <= now + UPCOMING_WINDOW
    }

    items = _therapy_items(visible, now, tz)
    items += _purchase_items(purchase_section, urgent_ids, now, tz)
    items += _prescription_items(views, urgent_ids, now, tz)

    status_by_id = {v.medicine.id: v for v in views}
    blocked_ids = set()
    for item in items:
        view = status_by_id.get(item.medicine_id) if item.category == "therapy" else None
        if view is not None and (view.needs_prescription or view.is_out_of_stock):
            blocked_ids.add(item.medicine_id)
    purchase_ids = {item.medicine_id for item in items if item.category == "purchase"}
    resolved: list[TodoItem] = []
    for item in items:
        if item.category == "prescription":
            if item.medicine_id in blocked_ids or item.medicine_id in purchase_ids:
                continue
            view = status_by_id.get(item.medicine_id)
            if view is not None and view.needs_prescription:
                item = TodoItem(
                    id=f"purchase|rx|{item.id}",
                    title=item.title,
                    detail=item.detail,
                    category="purchase",
                    medicine_id=item.medicine_id,
                )
        resolved.append(item)

    for view in views:
        if not view.is_out_of_stock or _has_purchase_for(resolved, view.medicine):
            continue
        resolved.append(
            TodoItem(
                id=f"purchase|depleted|{view.medicine.external_key}",
                title=view.medicine.name,
                detail=_purchase_stock_status_label(view),
                category="purchase",
                medicine_id=view.medicine.id,
            )
        )

    resolved += _deadline_items(usable, today)
    resolved += build_clinical_context(usable, now, tz).all_todos
    computed = resolved

    ordered = sort_todos(computed, usable, tz)
    by_id = {m.id: m for m in usable}
    due = [
        item for item in ordered
        if item.category != "therapy"
        or item.medicine_id not in by_id
        or has_pending_intake_today(by_id[item.medicine_id], now, tz)
    ]
    pending = [i for i in due if i.category == "therapy" or completion_key(i) not in completed]

    medicine_statuses = {v.medicine.id: _medicine_status(v, now, tz) for v in views}
    blocked_statuses = {}
    for item in pending:
        status = medicine_statuses.get(item.medicine_id) if item.medicine_id else None
        if item.category != "therapy" or status is None:
            continue
        if status.needs_prescription or status.is_out_of_stock:
            blocked_statuses[item.id] = BlockedTherapyStatus(
                medicine_id=item.medicine_id,
                needs_prescription=status.needs_prescription,
                is_out_of_stock=status.is_out_of_stock,
                is_depleted=status.is_depleted,
                person_name=status.person_name,
            )

    time_labels = {
        item.id: label
        for item in pending
        if (label := _time_label(item, by_id, now, tz)) is not None
    }

    upcoming = []
    for view in ok_section:
        nxt = _next_upcoming(view.medicine, now, tz)
        if nxt is not None:
            upcoming.append(UpcomingDose(view.medicine.id, view.medicine.name, nxt))
        if len(upcoming) >= MAX_UPCOMING:
            break

    state = TodayState(
        computed_todos=computed,
        pending_items=pending,
        therapy_items=[i for i in pending if i.category == "therapy"],
        purchase_items=[i for i in pending if i.category == "purchase"],
        other_items=[i for i in pending if i.category not in ("therapy", "purchase")],
        time_labels=time_labels,
        medicine_statuses=medicine_statuses,
        blocked_therapy_statuses=blocked_statuses,
        upcoming=upcoming,
        sync_token=sync_token(computed),
    )
    record_plan("today", (_time.perf_counter() - started) * 1000, len(pending))
    return state
