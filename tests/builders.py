"""Small factories for medicines, therapies and ledger events, plus an in-memory ledger port."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, time
from uuid import UUID, uuid4

from pharma_engine.clinical_rules import ClinicalRules
from pharma_engine.ledger import stock_delta_for
from pharma_engine.models import (
    UNDO_KIND,
    DoseTime,
    Medicine,
    Package,
    StockLedgerEvent,
    Therapy,
)

# Tuesday.
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
START = datetime(2026, 3, 1, 0, 0, tzinfo=UTC)


def at(hour: int, minute: int = 0, *, day: int = 10) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=UTC)


def dose(clock: str, amount: float = 1.0) -> DoseTime:
    return DoseTime(time=time.fromisoformat(clock), amount=amount)


def build_medicine(
    name: str = "Tachipirina",
    *,
    times: tuple[str, ...] = ("08:00",),
    rrule: str = "RRULE:FREQ=DAILY",
    units_per_pack: int = 20,
    package_kind: str = "compresse",
    with_therapy: bool = True,
    start: datetime = START,
    manual: bool = False,
    person_name: str | None = None,
    clinical_rules: ClinicalRules | None = None,
    **medicine_fields,
) -> Medicine:
    medicine_id = uuid4()
    package = Package(
        id=uuid4(),
        medicine_id=medicine_id,
        units_per_pack=units_per_pack,
        kind=package_kind,
    )
    therapies: tuple[Therapy, ...] = ()
    if with_therapy:
        therapies = (
            Therapy(
                id=uuid4(),
                medicine_id=medicine_id,
                package_id=package.id,
                rrule=rrule,
                doses=tuple(dose(t) for t in times),
                start_date=start,
                manual_intake_registration=manual,
                person_name=person_name,
                clinical_rules=clinical_rules,
            ),
        )
    return Medicine(
        id=medicine_id,
        name=name,
        packages=(package,),
        therapies=therapies,
        **medicine_fields,
    )


def make_event(
    medicine: Medicine,
    kind: str,
    timestamp: datetime,
    *,
    quantity: int = 1,
    therapy_id: UUID | None = None,
    reversal_of: StockLedgerEvent | None = None,
    operation_id: UUID | None = None,
) -> StockLedgerEvent:
    package = medicine.packages[0] if medicine.packages else None
    if reversal_of is not None:
        delta = -reversal_of.stock_delta
    else:
        delta = stock_delta_for(kind, quantity, package.units_per_pack if package else None)
    return StockLedgerEvent(
        id=uuid4(),
        operation_id=operation_id or uuid4(),
        kind=kind,
        timestamp=timestamp,
        medicine_id=medicine.id,
        package_id=package.id if package else None,
        therapy_id=therapy_id,
        quantity=quantity,
        stock_delta=delta,
        reversal_of_operation_id=reversal_of.operation_id if reversal_of else None,
    )


def undo_of(medicine: Medicine, event: StockLedgerEvent, timestamp: datetime) -> StockLedgerEvent:
    return make_event(medicine, UNDO_KIND[event.kind], timestamp, quantity=event.quantity, reversal_of=event)


def with_events(medicine: Medicine, *events: StockLedgerEvent) -> Medicine:
    return replace(medicine, events=medicine.events + events)


def stocked(medicine: Medicine, packs: int = 1, *, when: datetime = START) -> Medicine:
    return with_events(medicine, *(make_event(medicine, "purchase", when) for _ in range(packs)))


class MemoryLedger:
    """Ledger port keeping events and per-package stock in dicts.

    ``fail_with`` makes the next appends raise; ``lose_race_to`` stores that
    event instead of the appended one, as a concurrent writer would.
    """

    def __init__(self):
        self.events: dict[UUID, StockLedgerEvent] = {}
        self.stock: dict[tuple[UUID, UUID | None], int] = {}
        self.fail_with: Exception | None = None
        self.lose_race_to: StockLedgerEvent | None = None

    async def exists(self, operation_id):
        return operation_id in self.events

    async def fetch(self, operation_id):
        return self.events.get(operation_id)

    async def has_reversal(self, operation_id):
        return any(e.reversal_of_operation_id == operation_id for e in self.events.values())

    async def append(self, event):
        if self.fail_with is not None:
            raise self.fail_with
        if self.lose_race_to is not None:
            self.events[self.lose_race_to.operation_id] = self.lose_race_to
            self.lose_race_to = None
            return False
        if event.operation_id in self.events:
            return False
        if event.reversal_of_operation_id is not None and await self.has_reversal(
            event.reversal_of_operation_id
        ):
            return False
        self.events[event.operation_id] = event
        key = (event.medicine_id, event.package_id)
        self.stock[key] = self.stock.get(key, 0) + event.stock_delta
        return True
