"""Critical-dose live surface: the single most urgent dose and its actions."""

from __future__ import annotations

import logging
import time as time_module
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from uuid import UUID

from .actions import LedgerActions, LedgerError
from .config import Config
from .ledger import has_matching_intake_log
from .logging import pharma_extra
from .metrics import record_plan
from .models import Medicine, Option, Package, Therapy
from .notifications import ALARM_CATEGORY, NotificationCenter, NotificationCenterError, NotificationRequest
from .occurrence import dose_events_between, next_therapy_occurrence
from .operations import AUTO_INTAKE_TTL_SECONDS, OperationIdProvider, OperationKey, minute_bucket

logger = logging.getLogger(__name__)

# Candidates closer than this to their dose trigger a refresh checkpoint.
APPROACH_CHECKPOINT = timedelta(minutes=30)


@dataclass(frozen=True)
class CriticalDoseConfig:
    lead_time: timedelta = timedelta(minutes=10)
    overdue_tolerance: timedelta = timedelta(minutes=30)
    snooze: timedelta = timedelta(minutes=10)

    @classmethod
    def from_config(cls, config: Config) -> CriticalDoseConfig:
        return cls(
            lead_time=timedelta(minutes=config.live_lead_minutes),
            overdue_tolerance=timedelta(minutes=config.live_overdue_tolerance_minutes),
            snooze=timedelta(minutes=config.live_snooze_minutes),
        )


@dataclass(frozen=True)
class CriticalDoseCandidate:
    therapy_id: UUID
    medicine_id: UUID
    medicine_name: str
    dose_text: str
    scheduled_at: datetime


@dataclass(frozen=True)
class CriticalDoseAggregate:
    primary: CriticalDoseCandidate
    additional_count: int
    subtitle_display: str
    expiry_at: datetime


@dataclass(frozen=True)
class CriticalDosePlan:
    aggregate: CriticalDoseAggregate | None
    next_refresh_at: datetime | None

    @property
    def is_empty(self) -> bool:
        return self.aggregate is None


# ---------------------------------------------------------------------------
# Snoozes
# ---------------------------------------------------------------------------


def snooze_key(therapy_id: UUID, scheduled_at: datetime) -> str:
    return f"{therapy_id}|{minute_bucket(scheduled_at)}"


class SnoozeStore:
    """Snooze expiries keyed by therapy and dose minute; expired entries drop lazily."""

    def __init__(self) -> None:
        self._expiries: dict[str, datetime] = {}

    def is_snoozed(self, therapy_id: UUID, scheduled_at: datetime, now: datetime) -> bool:
        key = snooze_key(therapy_id, scheduled_at)
        expiry = self._expiries.get(key)
        if expiry is None:
            return False
        if expiry <= now:
            del self._expiries[key]
            return False
        return True

    def snooze(
        self,
        therapy_id: UUID,
        scheduled_at: datetime,
        now: datetime,
        duration: timedelta,
    ) -> datetime:
        self._cleanup(now)
        expiry = now + max(duration, timedelta(seconds=1))
        self._expiries[snooze_key(therapy_id, scheduled_at)] = expiry
        return expiry

    def clear(self, therapy_id: UUID, scheduled_at: datetime) -> None:
        self._expiries.pop(snooze_key(therapy_id, scheduled_at), None)

    def next_expiry(self, now: datetime) -> datetime | None:
        self._cleanup(now)
        return min(self._expiries.values(), default=None)

    def _cleanup(self, now: datetime) -> None:
        expired = [k for k, v in self._expiries.items() if v <= now]
        for key in expired:
            del self._expiries[key]

    def __len__(self) -> int:
        return len(self._expiries)


# ---------------------------------------------------------------------------
# Dose text
# ---------------------------------------------------------------------------


def format_amount(amount: float) -> str:
    value = amount if amount > 0 else 1.0
    if abs(round(value) - value) < 0.0001:
        return str(int(round(value)))
    return f"{value:.1f}".replace(".", ",")


def dose_unit(package: Package | None, amount: float) -> str:
    one = abs(amount - 1) < 0.0001
    kind = (package.kind if package else "").strip().lower()
    if "capsul" in kind:
        return "capsula" if one else "capsule"
    if "compress" in kind:
        return "compressa" if one else "compresse"
    unit = (package.unit if package else "").strip().lower()
    return unit or "unità"


def dose_text(medicine: Medicine, therapy: Therapy, scheduled_at: datetime, tz: tzinfo = UTC) -> str:
    """Amount and unit of the doses due at ``scheduled_at``, e.g. ``1 compressa``."""
    if not therapy.doses:
        return "1 unità"
    local = scheduled_at.astimezone(tz)
    matching = [
        d for d in therapy.doses if (d.time.hour, d.time.minute) == (local.hour, local.minute)
    ]
    amount = sum(d.amount for d in (matching or therapy.doses))
    amount = amount if amount > 0 else 1.0
    return f"{format_amount(amount)} {dose_unit(medicine.package(therapy.package_id), amount)}"


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class CriticalDosePlanner:
    def __init__(
        self,
        config: CriticalDoseConfig | None = None,
        *,
        snoozes: SnoozeStore | None = None,
        tz: tzinfo = UTC,
    ) -> None:
        self.config = config or CriticalDoseConfig()
        self.snoozes = snoozes if snoozes is not None else SnoozeStore()
        self.tz = tz

    def eligible_therapies(
        self,
        medicines: Sequence[Medicine],
        option: Option | None = None,
    ) -> dict[UUID, tuple[Medicine, Therapy]]:
        return {
            t.id: (m, t)
            for m in medicines
            for t in m.therapies
            if t.rrule and t.doses and not t.requires_manual_confirmation(option)
        }

    def make_plan(
        self,
        medicines: Sequence[Medicine],
        now: datetime,
        option: Option | None = None,
    ) -> CriticalDosePlan:
        t0 = time_module.monotonic()
        cfg = self.config
        lookup = self.eligible_therapies(medicines, option)
        if not lookup:
            return CriticalDosePlan(aggregate=None, next_refresh_at=None)

        taken_tolerance = max(cfg.lead_time, cfg.overdue_tolerance)
        therapies = [t for _, t in lookup.values()]
        candidates: list[CriticalDoseCandidate] = []
        for event in dose_events_between(
            therapies, now - cfg.overdue_tolerance, now + cfg.lead_time, self.tz
        ):
            medicine, therapy = lookup[event.therapy_id]
            if has_matching_intake_log(medicine, therapy, event.scheduled_at, taken_tolerance):
                continue
            if self.snoozes.is_snoozed(therapy.id, event.scheduled_at, now):
                continue
            candidates.append(
                CriticalDoseCandidate(
                    therapy_id=therapy.id,
                    medicine_id=medicine.id,
                    medicine_name=medicine.name,
                    dose_text=dose_text(medicine, therapy, event.scheduled_at, self.tz),
                    scheduled_at=event.scheduled_at,
                )
            )
        candidates.sort(key=lambda c: (c.scheduled_at, c.medicine_name.casefold()))

        aggregate = None
        if candidates:
            primary = candidates[0]
            additional = len(candidates) - 1
            subtitle = f"{primary.medicine_name} · {primary.dose_text}"
            if additional > 0:
                subtitle += f" +{additional}"
            aggregate = CriticalDoseAggregate(
                primary=primary,
                additional_count=additional,
                subtitle_display=subtitle,
                expiry_at=primary.scheduled_at + cfg.overdue_tolerance,
            )

        plan = CriticalDosePlan(
            aggregate=aggregate,
            next_refresh_at=self._next_refresh_at(now, therapies, candidates),
        )
        record_plan("live_activity", (time_module.monotonic() - t0) * 1000, len(candidates))
        return plan

    def _next_refresh_at(
        self,
        now: datetime,
        therapies: Sequence[Therapy],
        candidates: Sequence[CriticalDoseCandidate],
    ) -> datetime | None:
        cfg = self.config
        checkpoints: list[datetime] = []
        for candidate in candidates:
            checkpoints.append(candidate.scheduled_at - APPROACH_CHECKPOINT)
            checkpoints.append(candidate.scheduled_at + cfg.overdue_tolerance)

        snooze_expiry = self.snoozes.next_expiry(now)
        if snooze_expiry is not None:
            checkpoints.append(snooze_expiry)

        search_after = now + cfg.lead_time
        for therapy in therapies:
            occurrence = next_therapy_occurrence(therapy, search_after, self.tz)
            if occurrence is not None:
                checkpoints.append(occurrence - cfg.lead_time)

        return min((c for c in checkpoints if c > now), default=None)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def reminder_request_id(therapy_id: UUID, scheduled_at: datetime) -> str:
    return f"critical-dose-reminder-{therapy_id}-{minute_bucket(scheduled_at)}"


class CriticalDoseReminderScheduler:
    """One follow-up reminder per dose; scheduling again replaces the earlier one."""

    def __init__(self, center: NotificationCenter) -> None:
        self.center = center

    async def schedule_reminder(
        self,
        candidate: CriticalDoseCandidate,
        remind_at: datetime,
        now: datetime,
    ) -> NotificationRequest | None:
        request = NotificationRequest(
            id=reminder_request_id(candidate.therapy_id, candidate.scheduled_at),
            fire_at=max(remind_at, now + timedelta(seconds=1)),
            title="È quasi ora",
            body=f"{candidate.medicine_name} · {candidate.dose_text}. Quando sei pronto.",
            category=ALARM_CATEGORY,
            user_info={
                "type": "therapy",
                "therapyId": str(candidate.therapy_id),
                "medicineId": str(candidate.medicine_id),
            },
            time_sensitive=True,
        )
        await self.center.remove_pending([request.id])
        try:
            await self.center.add(request)
        except NotificationCenterError as exc:
            logger.warning("Critical dose reminder %s not scheduled: %s", request.id, exc)
            return None
        return request


class CriticalDoseActionService:
    def __init__(
        self,
        actions: LedgerActions,
        *,
        snoozes: SnoozeStore,
        reminders: CriticalDoseReminderScheduler,
        operation_ids: OperationIdProvider,
        config: CriticalDoseConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.actions = actions
        self.snoozes = snoozes
        self.reminders = reminders
        self.operation_ids = operation_ids
        self.config = config or CriticalDoseConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def mark_taken(self, candidate: CriticalDoseCandidate, therapy: Therapy) -> bool:
        """Record the intake for the primary dose.

        Repeated calls for the same dose reuse one operation id, so the ledger
        keeps a single event.
        """
        key = OperationKey.live_activity_intake(therapy.id, candidate.scheduled_at)
        operation_id = self.operation_ids.operation_id(key, ttl_seconds=AUTO_INTAKE_TTL_SECONDS)
        try:
            result = await self.actions.record_intake(
                operation_id=operation_id,
                medicine_id=therapy.medicine_id,
                package_id=therapy.package_id,
                therapy_id=therapy.id,
                at=self._clock(),
            )
        except LedgerError as exc:
            self.operation_ids.clear(key)
            logger.warning(
                "Live surface intake failed: %s",
                exc,
                extra=pharma_extra(therapy_id=therapy.id, error_code=exc.code),
            )
            return False
        self.snoozes.clear(therapy.id, candidate.scheduled_at)
        logger.info(
            "Live surface intake %s",
            result.status,
            extra=pharma_extra(operation_id=operation_id, therapy_id=therapy.id),
        )
        return True

    async def remind_later(
        self,
        candidate: CriticalDoseCandidate,
        now: datetime | None = None,
    ) -> datetime:
        at = now or self._clock()
        remind_at = self.snoozes.snooze(candidate.therapy_id, candidate.scheduled_at, at, self.config.snooze)
        await self.reminders.schedule_reminder(candidate, remind_at, at)
        return remind_at
