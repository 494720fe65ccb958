"""Value types for medicines, therapies, packages and the stock ledger.

Entities reference each other by id. Nothing here touches the database; the
ledger store and the snapshot loader build these from rows / JSON documents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Literal
from uuid import UUID

from .clinical_rules import ClinicalRules

LedgerEventKind = Literal[
    "purchase",
    "purchase_undo",
    "intake",
    "intake_undo",
    "stock_adjustment",
    "prescription_request",
    "prescription_request_undo",
    "prescription_received",
    "prescription_received_undo",
]

LEDGER_EVENT_KINDS: tuple[str, ...] = (
    "purchase",
    "purchase_undo",
    "intake",
    "intake_undo",
    "stock_adjustment",
    "prescription_request",
    "prescription_request_undo",
    "prescription_received",
    "prescription_received_undo",
)

# Kinds that can be voided, mapped to the kind of their reversal event.
UNDO_KIND: dict[str, str] = {
    "purchase": "purchase_undo",
    "intake": "intake_undo",
    "prescription_request": "prescription_request_undo",
    "prescription_received": "prescription_received_undo",
}

TherapyNotificationLevel = Literal["normal", "alarm"]

DEFAULT_STOCK_THRESHOLD_DAYS = 7
_DEADLINE_YEARS = range(2000, 2101)


@dataclass(frozen=True)
class DoseTime:
    """A wall-clock time-of-day and the amount taken at it."""

    time: time
    amount: float = 1.0


@dataclass(frozen=True)
class Package:
    id: UUID
    medicine_id: UUID
    units_per_pack: int
    kind: str = ""
    unit: str = ""


@dataclass(frozen=True)
class StockLedgerEvent:
    id: UUID
    operation_id: UUID
    kind: str
    timestamp: datetime
    medicine_id: UUID
    package_id: UUID | None = None
    therapy_id: UUID | None = None
    quantity: int = 1
    stock_delta: int = 0
    reversal_of_operation_id: UUID | None = None
    synced_at: datetime | None = None

    @property
    def is_reversal(self) -> bool:
        return self.reversal_of_operation_id is not None


@dataclass(frozen=True)
class Therapy:
    id: UUID
    medicine_id: UUID
    package_id: UUID | None
    rrule: str
    doses: tuple[DoseTime, ...] = ()
    start_date: datetime | None = None
    manual_intake_registration: bool = False
    person_name: str | None = None
    clinical_rules: ClinicalRules | None = None

    @property
    def external_key(self) -> str:
        return str(self.id)

    @property
    def sorted_doses(self) -> list[DoseTime]:
        return sorted(self.doses, key=lambda d: d.time)

    def requires_manual_confirmation(self, option: Option | None = None) -> bool:
        if self.manual_intake_registration:
            return True
        return bool(option is not None and option.manual_intake_registration)


@dataclass(frozen=True)
class Option:
    """Global user preferences."""

    stock_threshold_days: int = DEFAULT_STOCK_THRESHOLD_DAYS
    manual_intake_registration: bool | None = None
    therapy_notification_level: TherapyNotificationLevel = "normal"
    therapy_snooze_minutes: int = 10


@dataclass(frozen=True)
class Medicine:
    id: UUID
    name: str
    requires_prescription: bool = False
    stock_threshold_days: int | None = None
    deadline_month: int | None = None
    deadline_year: int | None = None
    in_cabinet: bool = True
    packages: tuple[Package, ...] = ()
    therapies: tuple[Therapy, ...] = ()
    events: tuple[StockLedgerEvent, ...] = field(default=(), repr=False)

    @property
    def external_key(self) -> str:
        return str(self.id)

    def package(self, package_id: UUID | None) -> Package | None:
        if package_id is None:
            return None
        for package in self.packages:
            if package.id == package_id:
                return package
        return None

    def stock_threshold(self, option: Option | None = None) -> int:
        """Per-medicine threshold, else the global option, else 7 days."""
        if self.stock_threshold_days and self.stock_threshold_days > 0:
            return self.stock_threshold_days
        if option is not None and option.stock_threshold_days > 0:
            return option.stock_threshold_days
        return DEFAULT_STOCK_THRESHOLD_DAYS

    @property
    def is_visible_in_today(self) -> bool:
        return self.in_cabinet or bool(self.therapies) or bool(self.packages)

    @property
    def deadline_month_start(self) -> date | None:
        if self.deadline_month is None or not 1 <= self.deadline_month <= 12:
            return None
        if self.deadline_year is None or self.deadline_year not in _DEADLINE_YEARS:
            return None
        return date(self.deadline_year, self.deadline_month, 1)

    @property
    def deadline_label(self) -> str | None:
        start = self.deadline_month_start
        if start is None:
            return None
        return f"{start.month:02d}/{start.year:04d}"

    def months_until_deadline(self, today: date) -> int | None:
        start = self.deadline_month_start
        if start is None:
            return None
        return (start.year - today.year) * 12 + (start.month - today.month)

    @property
    def latest_event_salt(self) -> str:
        if not self.events:
            return "0"
        return str(int(max(e.timestamp for e in self.events).timestamp()))


TodoCategory = Literal["therapy", "purchase", "prescription", "monitoring", "deadline", "missedDose"]


@dataclass(frozen=True)
class TodoItem:
    """One derived obligation shown in the Today list."""

    id: str
    title: str
    category: TodoCategory
    detail: str | None = None
    medicine_id: UUID | None = None
