"""Local reminder planning: therapy doses and stock alerts.

The planner turns medicines into plan items, ``render_requests`` expands plan
items into concrete requests (one per dose, or a seven-request alarm series),
and ``NotificationScheduler`` diffs the rendered list against whatever is
pending in a notification center.
"""

from __future__ import annotations

import logging
import math
import time as time_module
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, time, timedelta, tzinfo
from typing import Literal, Protocol
from uuid import UUID, uuid4

from .config import Config
from .forecast import StockForecast, forecast_medicine
from .ledger import has_matching_intake_log
from .logging import pharma_extra
from .metrics import record_plan
from .models import Medicine, Option, Therapy, TherapyNotificationLevel
from .occurrence import combine, dose_events_between
from .operations import minute_bucket
from .recurrence import local_day

logger = logging.getLogger(__name__)

PlanKind = Literal["therapy", "stockLow", "stockOut"]
PlanOrigin = Literal["immediate", "scheduled"]
StockAlertLevel = Literal["none", "low", "empty"]

ALARM_CATEGORY = "therapy_alarm"
ALARM_STOP_ACTION = "THERAPY_STOP"
ALARM_SNOOZE_ACTION = "THERAPY_SNOOZE"
ALARM_SERIES_KEY = "alarmSeriesId"
ALARM_ID_PREFIX = "therapy-alarm"
ALARM_REPEAT_COUNT = 6
ALARM_REPEAT_INTERVAL = timedelta(minutes=1)

DEFAULT_SNOOZE_MINUTES = 10
ALLOWED_SNOOZE_MINUTES = frozenset({5, 10, 15})

MANAGED_PREFIXES = ("therapy-", "stock-")
BACKUP_MIN_DELAY = timedelta(seconds=5)


class NotificationCenterError(Exception):
    """Raised by a notification center that refuses a request."""


@dataclass(frozen=True)
class NotificationScheduleConfig:
    therapy_horizon_days: int = 1
    max_therapy_notifications: int = 48
    max_stock_notifications: int = 12
    queue_cap: int = 60
    stock_notification_at: time = time(9, 0)
    stock_alert_cooldown: timedelta = timedelta(hours=48)
    stock_forecast_horizon_days: int = 90
    therapy_grace_window: timedelta = timedelta(seconds=90)
    intake_tolerance: timedelta = timedelta(hours=1)

    @classmethod
    def from_config(cls, config: Config) -> NotificationScheduleConfig:
        return cls(
            therapy_horizon_days=config.therapy_horizon_days,
            queue_cap=config.notification_queue_cap,
            stock_alert_cooldown=timedelta(hours=config.stock_alert_cooldown_hours),
            intake_tolerance=timedelta(minutes=config.intake_tolerance_minutes),
        )


def normalized_snooze_minutes(value: int | None) -> int:
    if value in ALLOWED_SNOOZE_MINUTES:
        return value
    return DEFAULT_SNOOZE_MINUTES


def normalized_level(value: str | None) -> TherapyNotificationLevel:
    return "alarm" if value == "alarm" else "normal"


# ---------------------------------------------------------------------------
# Plan items
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlanItem:
    id: str
    fire_at: datetime
    title: str
    body: str
    kind: PlanKind
    origin: PlanOrigin
    user_info: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationPlan:
    therapy: list[PlanItem]
    stock: list[PlanItem]

    @property
    def items(self) -> list[PlanItem]:
        return self.therapy + self.stock


@dataclass(frozen=True)
class StockAlertState:
    level: StockAlertLevel
    last_notified_at: datetime


class StockAlertStateStore(Protocol):
    def state(self, medicine_id: UUID) -> StockAlertState | None: ...

    def set_state(self, medicine_id: UUID, state: StockAlertState) -> None: ...

    def clear_state(self, medicine_id: UUID) -> None: ...


class InMemoryStockAlertStateStore:
    def __init__(self) -> None:
        self._states: dict[UUID, StockAlertState] = {}

    def state(self, medicine_id: UUID) -> StockAlertState | None:
        return self._states.get(medicine_id)

    def set_state(self, medicine_id: UUID, state: StockAlertState) -> None:
        self._states[medicine_id] = state

    def clear_state(self, medicine_id: UUID) -> None:
        self._states.pop(medicine_id, None)


def stock_alert_level(forecast: StockForecast) -> StockAlertLevel:
    if forecast.status == "critical":
        return "empty"
    if forecast.status == "low":
        return "low"
    return "none"


class NotificationPlanner:
    """Plans therapy reminders and stock alerts from an in-memory snapshot."""

    def __init__(
        self,
        config: NotificationScheduleConfig | None = None,
        *,
        stock_alerts: StockAlertStateStore | None = None,
        tz: tzinfo = UTC,
    ) -> None:
        self.config = config or NotificationScheduleConfig()
        self.stock_alerts = stock_alerts if stock_alerts is not None else InMemoryStockAlertStateStore()
        self.tz = tz

    def plan(
        self,
        medicines: Sequence[Medicine],
        now: datetime,
        option: Option | None = None,
    ) -> NotificationPlan:
        return NotificationPlan(
            therapy=self.plan_therapy(medicines, now),
            stock=self.plan_stock(medicines, now, option),
        )

    def plan_therapy(self, medicines: Sequence[Medicine], now: datetime) -> list[PlanItem]:
        cfg = self.config
        lookup: dict[UUID, tuple[Medicine, Therapy]] = {
            t.id: (m, t) for m in medicines for t in m.therapies
        }
        if not lookup:
            return []
        end = now + timedelta(days=cfg.therapy_horizon_days)
        start = now - cfg.therapy_grace_window
        therapies = [t for _, t in lookup.values()]

        items: list[PlanItem] = []
        for event in dose_events_between(therapies, start, end, self.tz):
            medicine, therapy = lookup[event.therapy_id]
            if has_matching_intake_log(medicine, therapy, event.scheduled_at, cfg.intake_tolerance):
                continue
            overdue = event.scheduled_at <= now
            person = (therapy.person_name or "").strip()
            body = f"Assumi {medicine.name} per {person}" if person else f"Assumi {medicine.name}"
            items.append(
                PlanItem(
                    id=f"therapy-{therapy.id}-{minute_bucket(event.scheduled_at)}",
                    fire_at=now if overdue else event.scheduled_at,
                    title="È ora della terapia",
                    body=body,
                    kind="therapy",
                    origin="immediate" if overdue else "scheduled",
                    user_info={
                        "type": "therapy",
                        "therapyId": str(therapy.id),
                        "medicineId": str(medicine.id),
                    },
                )
            )
        items.sort(key=lambda i: i.fire_at)
        return items[: cfg.max_therapy_notifications]

    def plan_stock(
        self,
        medicines: Sequence[Medicine],
        now: datetime,
        option: Option | None = None,
    ) -> list[PlanItem]:
        cfg = self.config
        items: list[PlanItem] = []
        for medicine in medicines:
            try:
                forecast = forecast_medicine(medicine, option)
            except (ValueError, TypeError, ArithmeticError) as exc:
                logger.warning(
                    "Skipping stock alerts for medicine %s: %s",
                    medicine.id,
                    exc,
                    extra=pharma_extra(medicine_id=medicine.id),
                )
                continue
            level = stock_alert_level(forecast)
            if level == "none":
                self.stock_alerts.clear_state(medicine.id)
            elif self._should_notify_now(medicine.id, level, now):
                items.append(self._immediate_stock_item(medicine, level, now))
                self.stock_alerts.set_state(medicine.id, StockAlertState(level, now))

            coverage = forecast.coverage_days
            if coverage is None or coverage <= 0 or coverage > cfg.stock_forecast_horizon_days:
                continue

            if level == "none":
                low_at = self._forecast_date(coverage - forecast.threshold_days, now)
                if low_at is not None:
                    items.append(
                        PlanItem(
                            id=f"stock-low-{medicine.id}",
                            fire_at=low_at,
                            title="Scorte basse",
                            body=f"Le scorte di {medicine.name} stanno per finire",
                            kind="stockLow",
                            origin="scheduled",
                            user_info={"type": "stockLow", "medicineId": str(medicine.id)},
                        )
                    )
            if level != "empty":
                out_at = self._forecast_date(coverage, now)
                if out_at is not None:
                    items.append(
                        PlanItem(
                            id=f"stock-out-{medicine.id}",
                            fire_at=out_at,
                            title="Scorte finite",
                            body=f"Le scorte di {medicine.name} stanno terminando",
                            kind="stockOut",
                            origin="scheduled",
                            user_info={"type": "stockOut", "medicineId": str(medicine.id)},
                        )
                    )
        items.sort(key=lambda i: i.fire_at)
        return items[: cfg.max_stock_notifications]

    @staticmethod
    def _immediate_stock_item(medicine: Medicine, level: StockAlertLevel, now: datetime) -> PlanItem:
        empty = level == "empty"
        kind: PlanKind = "stockOut" if empty else "stockLow"
        return PlanItem(
            id=f"stock-{level}-now-{medicine.id}",
            fire_at=now + timedelta(seconds=1),
            title="Scorte finite" if empty else "Scorte basse",
            body=(
                f"Scorte terminate per {medicine.name}"
                if empty
                else f"Le scorte di {medicine.name} stanno finendo"
            ),
            kind=kind,
            origin="immediate",
            user_info={"type": kind, "medicineId": str(medicine.id)},
        )

    def _should_notify_now(self, medicine_id: UUID, level: StockAlertLevel, now: datetime) -> bool:
        state = self.stock_alerts.state(medicine_id)
        if state is None or state.level != level:
            return True
        return now - state.last_notified_at >= self.config.stock_alert_cooldown

    def _forecast_date(self, days: float, now: datetime) -> datetime | None:
        """``stock_notification_at`` on the day ``days`` from today, never in the past."""
        if days <= 0:
            return None
        day = local_day(now, self.tz) + timedelta(days=math.ceil(days))
        at = combine(day, self.config.stock_notification_at, self.tz)
        if at <= now:
            at += timedelta(days=1)
        return at


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NotificationRequest:
    id: str
    fire_at: datetime
    title: str
    body: str
    category: str
    origin: PlanOrigin = "scheduled"
    user_info: dict[str, str] = field(default_factory=dict)
    actions: tuple[str, ...] = ()
    time_sensitive: bool = False

    @property
    def thread_id(self) -> str:
        return self.user_info.get("type", self.category)

    @property
    def series_id(self) -> str | None:
        return self.user_info.get(ALARM_SERIES_KEY)


def alarm_request_id(series_id: str, index: int) -> str:
    return f"{ALARM_ID_PREFIX}-{series_id}-{index}"


def alarm_request_ids(series_id: str) -> list[str]:
    return [alarm_request_id(series_id, i) for i in range(ALARM_REPEAT_COUNT + 1)]


def alarm_series(
    *,
    series_id: str,
    base: datetime,
    title: str,
    body: str,
    user_info: dict[str, str],
) -> list[NotificationRequest]:
    """Seven requests one minute apart, sharing ``series_id``."""
    info = {**user_info, ALARM_SERIES_KEY: series_id}
    return [
        NotificationRequest(
            id=alarm_request_id(series_id, index),
            fire_at=base + index * ALARM_REPEAT_INTERVAL,
            title=title,
            body=body,
            category=ALARM_CATEGORY,
            user_info=info,
            actions=(ALARM_STOP_ACTION, ALARM_SNOOZE_ACTION),
            time_sensitive=True,
        )
        for index in range(ALARM_REPEAT_COUNT + 1)
    ]


def render_requests(
    items: Iterable[PlanItem],
    level: TherapyNotificationLevel = "normal",
) -> list[NotificationRequest]:
    requests: list[NotificationRequest] = []
    for item in items:
        if item.kind == "therapy" and level == "alarm":
            series_id = item.id.removeprefix("therapy-")
            requests.extend(
                replace(r, origin=item.origin)
                for r in alarm_series(
                    series_id=series_id,
                    base=item.fire_at,
                    title=item.title,
                    body=item.body,
                    user_info=item.user_info,
                )
            )
            continue
        requests.append(
            NotificationRequest(
                id=item.id,
                fire_at=item.fire_at,
                title=item.title,
                body=item.body,
                category=item.kind,
                origin=item.origin,
                user_info=dict(item.user_info),
                time_sensitive=item.kind == "therapy",
            )
        )
    return requests


def _is_immediate_stock(request: NotificationRequest) -> bool:
    return request.origin == "immediate" and request.category != "therapy" and not request.series_id


def _is_therapy(request: NotificationRequest) -> bool:
    return request.category in ("therapy", ALARM_CATEGORY)


def cap_requests(requests: Sequence[NotificationRequest], cap: int) -> list[NotificationRequest]:
    """Immediate stock alerts first, then everything else by fire time."""
    immediate = sorted((r for r in requests if _is_immediate_stock(r)), key=lambda r: r.fire_at)
    rest = sorted((r for r in requests if not _is_immediate_stock(r)), key=lambda r: r.fire_at)
    return (immediate + rest)[: max(0, cap)]


def therapy_backup_request(
    therapy_items: Sequence[PlanItem],
    now: datetime,
) -> NotificationRequest | None:
    """A single therapy reminder used when the cap left no therapy request pending."""
    if not therapy_items:
        return None
    ordered = sorted(therapy_items, key=lambda i: i.fire_at)
    item = next((i for i in ordered if i.fire_at > now), ordered[0])
    return NotificationRequest(
        id=f"therapy-backup-{item.id.removeprefix('therapy-')}",
        fire_at=max(item.fire_at, now + BACKUP_MIN_DELAY),
        title=item.title,
        body=item.body,
        category="therapy",
        user_info=dict(item.user_info),
        time_sensitive=True,
    )


def build_requests(
    plan: NotificationPlan,
    now: datetime,
    *,
    level: TherapyNotificationLevel = "normal",
    cap: int = 60,
) -> list[NotificationRequest]:
    requests = cap_requests(render_requests(plan.items, level), cap)
    if plan.therapy and not any(_is_therapy(r) for r in requests):
        backup = therapy_backup_request(plan.therapy, now)
        if backup is not None:
            if len(requests) >= cap and requests:
                requests = requests[:-1]
            requests.append(backup)
    return requests


# ---------------------------------------------------------------------------
# Notification center port
# ---------------------------------------------------------------------------


class NotificationCenter(Protocol):
    async def pending_requests(self) -> list[NotificationRequest]: ...

    async def add(self, request: NotificationRequest) -> None: ...

    async def remove_pending(self, ids: Sequence[str]) -> None: ...

    async def remove_delivered(self, ids: Sequence[str]) -> None: ...


class InMemoryNotificationCenter:
    def __init__(self) -> None:
        self.pending: dict[str, NotificationRequest] = {}
        self.delivered: dict[str, NotificationRequest] = {}

    async def pending_requests(self) -> list[NotificationRequest]:
        return sorted(self.pending.values(), key=lambda r: r.fire_at)

    async def add(self, request: NotificationRequest) -> None:
        self.pending[request.id] = request

    async def remove_pending(self, ids: Sequence[str]) -> None:
        for request_id in ids:
            self.pending.pop(request_id, None)

    async def remove_delivered(self, ids: Sequence[str]) -> None:
        for request_id in ids:
            self.delivered.pop(request_id, None)

    def deliver_due(self, now: datetime) -> list[NotificationRequest]:
        due = [r for r in self.pending.values() if r.fire_at <= now]
        for request in due:
            del self.pending[request.id]
            self.delivered[request.id] = request
        return due


@dataclass(frozen=True)
class ScheduleResult:
    added: list[str]
    removed: list[str]
    kept: list[str]


def _is_managed(request_id: str) -> bool:
    return request_id.startswith(MANAGED_PREFIXES)


class NotificationScheduler:
    """Recomputes the plan and applies the difference to a notification center.

    A call that arrives while a pass is running is folded into one extra pass
    run right after the current one.
    """

    def __init__(
        self,
        center: NotificationCenter,
        planner: NotificationPlanner | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.center = center
        self.planner = planner or NotificationPlanner()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._running = False
        self._rerun = False

    async def reschedule(
        self,
        medicines: Sequence[Medicine],
        option: Option | None = None,
        *,
        now: datetime | None = None,
    ) -> ScheduleResult | None:
        if self._running:
            self._rerun = True
            return None
        self._running = True
        try:
            result = await self._reschedule_once(medicines, option, now or self._clock())
            while self._rerun:
                self._rerun = False
                result = await self._reschedule_once(medicines, option, self._clock())
            return result
        finally:
            self._running = False

    async def _reschedule_once(
        self,
        medicines: Sequence[Medicine],
        option: Option | None,
        now: datetime,
    ) -> ScheduleResult:
        t0 = time_module.monotonic()
        level = normalized_level(option.therapy_notification_level if option else None)
        plan = self.planner.plan(medicines, now, option)
        wanted = build_requests(plan, now, level=level, cap=self.planner.config.queue_cap)
        wanted_by_id = {r.id: r for r in wanted}

        pending = {r.id: r for r in await self.center.pending_requests() if _is_managed(r.id)}
        stale = sorted(i for i, r in pending.items() if wanted_by_id.get(i) != r)
        if stale:
            await self.center.remove_pending(stale)
            await self.center.remove_delivered(stale)

        added: list[str] = []
        kept: list[str] = []
        for request in wanted:
            if request.id in pending and request.id not in stale:
                kept.append(request.id)
                continue
            try:
                await self.center.add(request)
            except NotificationCenterError as exc:
                logger.warning("Notification %s not scheduled: %s", request.id, exc)
                continue
            added.append(request.id)

        duration_ms = (time_module.monotonic() - t0) * 1000
        record_plan("notifications", duration_ms, len(wanted))
        logger.info(
            "Notifications rescheduled: %d added, %d removed, %d kept",
            len(added),
            len(stale),
            len(kept),
        )
        return ScheduleResult(added=added, removed=stale, kept=kept)


# ---------------------------------------------------------------------------
# Alarm actions
# ---------------------------------------------------------------------------


def resolve_series_id(request: NotificationRequest) -> str | None:
    if request.series_id:
        return request.series_id
    prefix = f"{ALARM_ID_PREFIX}-"
    if not request.id.startswith(prefix):
        return None
    series_id, sep, _ = request.id[len(prefix):].rpartition("-")
    return series_id if sep and series_id else None


async def handle_alarm_action(
    center: NotificationCenter,
    action: str,
    request: NotificationRequest,
    now: datetime,
    *,
    snooze_minutes: int | None = None,
    new_series_id: str | None = None,
) -> list[NotificationRequest]:
    """Stop or snooze an alarm series. Returns the requests of the new series, if any."""
    if request.category != ALARM_CATEGORY:
        return []
    if action not in (ALARM_STOP_ACTION, ALARM_SNOOZE_ACTION):
        return []
    series_id = resolve_series_id(request)
    if series_id is None:
        return []

    ids = sorted(set(alarm_request_ids(series_id)) | {request.id})
    await center.remove_pending(ids)
    await center.remove_delivered(ids)
    if action == ALARM_STOP_ACTION:
        logger.info("Alarm series %s stopped", series_id)
        return []

    base = now + timedelta(minutes=normalized_snooze_minutes(snooze_minutes))
    info = {k: v for k, v in request.user_info.items() if k != ALARM_SERIES_KEY}
    series = alarm_series(
        series_id=new_series_id or str(uuid4()),
        base=base,
        title=request.title,
        body=request.body,
        user_info=info,
    )
    for snoozed in series:
        try:
            await center.add(snoozed)
        except NotificationCenterError as exc:
            logger.warning("Snoozed alarm %s not scheduled: %s", snoozed.id, exc)
    logger.info("Alarm series %s snoozed until %s", series_id, base.isoformat())
    return series
