"""JSON input document: medicines with packages, therapies and ledger events.

Keys are camelCase, e.g.::

    {
      "option": {"stockThresholdDays": 7, "therapyNotificationLevel": "alarm"},
      "medicines": [{
        "id": "...", "name": "Tachipirina",
        "packages": [{"id": "...", "unitsPerPack": 20, "kind": "compresse"}],
        "therapies": [{"id": "...", "packageId": "...", "rrule": "RRULE:FREQ=DAILY",
                       "doses": [{"time": "08:00", "amount": 1}]}],
        "events": [{"operationId": "...", "kind": "purchase",
                    "timestamp": "2026-01-01T09:00:00Z", "packageId": "..."}]
      }]
    }

``load_snapshot`` raises ``pydantic.ValidationError`` on malformed documents.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, time
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .clinical_rules import ClinicalRules
from .ledger import stock_delta_for
from .models import (
    UNDO_KIND,
    DoseTime,
    LedgerEventKind,
    Medicine,
    Option,
    Package,
    StockLedgerEvent,
    Therapy,
    TherapyNotificationLevel,
)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class OptionDoc(_Document):
    stock_threshold_days: int | None = None
    manual_intake_registration: bool | None = None
    therapy_notification_level: TherapyNotificationLevel = "normal"
    therapy_snooze_minutes: int = 10

    def to_option(self, defaults: Option | None = None) -> Option:
        """Fields left out of the document come from ``defaults``."""
        return replace(defaults or Option(), **self.model_dump(exclude_unset=True, exclude_none=True))


class DoseDoc(_Document):
    at: time = Field(alias="time")
    amount: float = Field(default=1.0, gt=0)


class PackageDoc(_Document):
    id: UUID
    units_per_pack: int = Field(ge=0)
    kind: str = ""
    unit: str = ""


class TherapyDoc(_Document):
    id: UUID
    package_id: UUID | None = None
    rrule: str = ""
    doses: list[DoseDoc] = Field(default_factory=list)
    start_date: datetime | None = None
    manual_intake_registration: bool = False
    person_name: str | None = None
    clinical_rules: ClinicalRules | None = None

    @field_validator("start_date")
    @classmethod
    def start_date_aware(cls, v: datetime | None) -> datetime | None:
        return _aware(v)


class EventDoc(_Document):
    id: UUID = Field(default_factory=uuid4)
    operation_id: UUID
    kind: LedgerEventKind
    timestamp: datetime
    package_id: UUID | None = None
    therapy_id: UUID | None = None
    quantity: int = Field(default=1, gt=0)
    stock_delta: int | None = None
    reversal_of_operation_id: UUID | None = None
    synced_at: datetime | None = None

    @field_validator("timestamp", "synced_at")
    @classmethod
    def timestamps_aware(cls, v: datetime | None) -> datetime | None:
        return _aware(v)


class MedicineDoc(_Document):
    id: UUID
    name: str = Field(min_length=1)
    requires_prescription: bool = False
    stock_threshold_days: int | None = None
    deadline_month: int | None = None
    deadline_year: int | None = None
    in_cabinet: bool = True
    packages: list[PackageDoc] = Field(default_factory=list)
    therapies: list[TherapyDoc] = Field(default_factory=list)
    events: list[EventDoc] = Field(default_factory=list)

    def to_medicine(self) -> Medicine:
        packages = tuple(
            Package(
                id=p.id,
                medicine_id=self.id,
                units_per_pack=p.units_per_pack,
                kind=p.kind,
                unit=p.unit,
            )
            for p in self.packages
        )
        pack_sizes = {p.id: p.units_per_pack for p in packages}
        therapies = tuple(
            Therapy(
                id=t.id,
                medicine_id=self.id,
                package_id=t.package_id,
                rrule=t.rrule,
                doses=tuple(DoseTime(time=d.at, amount=d.amount) for d in t.doses),
                start_date=t.start_date,
                manual_intake_registration=t.manual_intake_registration,
                person_name=t.person_name,
                clinical_rules=t.clinical_rules,
            )
            for t in self.therapies
        )
        return Medicine(
            id=self.id,
            name=self.name,
            requires_prescription=self.requires_prescription,
            stock_threshold_days=self.stock_threshold_days,
            deadline_month=self.deadline_month,
            deadline_year=self.deadline_year,
            in_cabinet=self.in_cabinet,
            packages=packages,
            therapies=therapies,
            events=_events(self.id, self.events, pack_sizes),
        )


def _events(
    medicine_id: UUID,
    docs: list[EventDoc],
    pack_sizes: dict[UUID, int],
) -> tuple[StockLedgerEvent, ...]:
    applied: dict[UUID, int] = {}
    events: list[StockLedgerEvent] = []
    for doc in sorted(docs, key=lambda d: d.timestamp):
        delta = doc.stock_delta
        if delta is None:
            if doc.reversal_of_operation_id is not None and doc.kind in UNDO_KIND.values():
                delta = -applied.get(doc.reversal_of_operation_id, 0)
            else:
                size = pack_sizes.get(doc.package_id) if doc.package_id else None
                delta = stock_delta_for(doc.kind, doc.quantity, size)
        applied[doc.operation_id] = delta
        events.append(
            StockLedgerEvent(
                id=doc.id,
                operation_id=doc.operation_id,
                kind=doc.kind,
                timestamp=doc.timestamp,
                medicine_id=medicine_id,
                package_id=doc.package_id,
                therapy_id=doc.therapy_id,
                quantity=doc.quantity,
                stock_delta=delta,
                reversal_of_operation_id=doc.reversal_of_operation_id,
                synced_at=doc.synced_at,
            )
        )
    return tuple(events)


class SnapshotDoc(_Document):
    option: OptionDoc = Field(default_factory=OptionDoc)
    medicines: list[MedicineDoc] = Field(default_factory=list)


class Snapshot:
    def __init__(self, medicines: list[Medicine], option: Option) -> None:
        self.medicines = medicines
        self.option = option

    def medicine(self, medicine_id: UUID) -> Medicine | None:
        return next((m for m in self.medicines if m.id == medicine_id), None)

    def therapy(self, therapy_id: UUID) -> Therapy | None:
        return next(
            (t for m in self.medicines for t in m.therapies if t.id == therapy_id),
            None,
        )


def parse_snapshot(data: dict[str, Any], *, defaults: Option | None = None) -> Snapshot:
    doc = SnapshotDoc.model_validate(data)
    return Snapshot([m.to_medicine() for m in doc.medicines], doc.option.to_option(defaults))


def load_snapshot(raw: str | bytes, *, defaults: Option | None = None) -> Snapshot:
    doc = SnapshotDoc.model_validate_json(raw)
    return Snapshot([m.to_medicine() for m in doc.medicines], doc.option.to_option(defaults))
