"""Ledger use cases: record intake / purchase / prescription, adjust stock, undo.

Every use case is keyed by a caller-supplied operation id. A second call with
the same id returns the event stored by the first call (``created=False``)
and writes nothing.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol
from uuid import UUID, uuid4

import psycopg

from .ledger import stock_delta_for
from .logging import pharma_extra
from .metrics import record_duplicate_collapsed, record_event_appended, record_save_failure
from .models import UNDO_KIND, StockLedgerEvent

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    def __init__(self, *, code: str, message: str, operation_id: UUID | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.operation_id = operation_id


class LedgerPort(Protocol):
    async def exists(self, operation_id: UUID) -> bool: ...

    async def fetch(self, operation_id: UUID) -> StockLedgerEvent | None: ...

    async def has_reversal(self, operation_id: UUID) -> bool: ...

    async def append(self, event: StockLedgerEvent) -> bool: ...


@dataclass(frozen=True)
class ActionResult:
    event: StockLedgerEvent
    created: bool

    @property
    def status(self) -> str:
        return "created" if self.created else "duplicate"


class LedgerActions:
    def __init__(
        self,
        store: LedgerPort,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_intake(
        self,
        *,
        operation_id: UUID,
        medicine_id: UUID,
        package_id: UUID | None,
        therapy_id: UUID | None = None,
        quantity: int = 1,
        at: datetime | None = None,
    ) -> ActionResult:
        return await self._record(
            kind="intake",
            operation_id=operation_id,
            medicine_id=medicine_id,
            package_id=package_id,
            therapy_id=therapy_id,
            quantity=quantity,
            at=at,
        )

    async def record_purchase(
        self,
        *,
        operation_id: UUID,
        medicine_id: UUID,
        package_id: UUID,
        units_per_pack: int,
        quantity: int = 1,
        at: datetime | None = None,
    ) -> ActionResult:
        if units_per_pack <= 0:
            raise LedgerError(
                code="invalid_input",
                message="units_per_pack must be positive",
                operation_id=operation_id,
            )
        return await self._record(
            kind="purchase",
            operation_id=operation_id,
            medicine_id=medicine_id,
            package_id=package_id,
            quantity=quantity,
            units_per_pack=units_per_pack,
            at=at,
        )

    async def request_prescription(
        self,
        *,
        operation_id: UUID,
        medicine_id: UUID,
        package_id: UUID | None = None,
        at: datetime | None = None,
    ) -> ActionResult:
        return await self._record(
            kind="prescription_request",
            operation_id=operation_id,
            medicine_id=medicine_id,
            package_id=package_id,
            at=at,
        )

    async def record_prescription_received(
        self,
        *,
        operation_id: UUID,
        medicine_id: UUID,
        package_id: UUID | None = None,
        at: datetime | None = None,
    ) -> ActionResult:
        return await self._record(
            kind="prescription_received",
            operation_id=operation_id,
            medicine_id=medicine_id,
            package_id=package_id,
            at=at,
        )

    async def record_stock_adjustment(
        self,
        *,
        operation_id: UUID,
        medicine_id: UUID,
        package_id: UUID,
        quantity: int,
        at: datetime | None = None,
    ) -> ActionResult:
        """Remove ``quantity`` units (lost, broken, expired) from a package."""
        return await self._record(
            kind="stock_adjustment",
            operation_id=operation_id,
            medicine_id=medicine_id,
            package_id=package_id,
            quantity=quantity,
            at=at,
        )

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    async def undo(
        self,
        original_operation_id: UUID,
        *,
        undo_operation_id: UUID,
        at: datetime | None = None,
    ) -> ActionResult | None:
        """Append a reversal of ``original_operation_id``.

        Returns None when the original does not exist or was already
        reversed. Raises ``LedgerError(invalid_input)`` for kinds that cannot
        be undone (stock adjustments, reversal events).
        """
        prior = await self._store.fetch(undo_operation_id)
        if prior is not None:
            return self._duplicate(prior)

        original = await self._store.fetch(original_operation_id)
        if original is None:
            logger.info(
                "Undo of unknown operation",
                extra=pharma_extra(operation_id=original_operation_id),
            )
            return None
        undo_kind = UNDO_KIND.get(original.kind)
        if undo_kind is None or original.is_reversal:
            raise LedgerError(
                code="invalid_input",
                message=f"Events of kind {original.kind!r} cannot be undone",
                operation_id=original_operation_id,
            )
        if await self._store.has_reversal(original_operation_id):
            logger.info(
                "Operation already reversed",
                extra=pharma_extra(operation_id=original_operation_id),
            )
            return None

        reversal = StockLedgerEvent(
            id=uuid4(),
            operation_id=undo_operation_id,
            kind=undo_kind,
            timestamp=at or self._clock(),
            medicine_id=original.medicine_id,
            package_id=original.package_id,
            therapy_id=original.therapy_id,
            quantity=original.quantity,
            stock_delta=-original.stock_delta,
            reversal_of_operation_id=original_operation_id,
        )
        result = await self._append(reversal)
        if result is None:
            # Lost a race: either the same undo id or a different reversal won.
            stored = await self._store.fetch(undo_operation_id)
            return self._duplicate(stored) if stored is not None else None
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _record(
        self,
        *,
        kind: str,
        operation_id: UUID,
        medicine_id: UUID,
        package_id: UUID | None,
        therapy_id: UUID | None = None,
        quantity: int = 1,
        units_per_pack: int | None = None,
        at: datetime | None = None,
    ) -> ActionResult:
        if quantity <= 0:
            raise LedgerError(
                code="invalid_input",
                message="quantity must be positive",
                operation_id=operation_id,
            )

        prior = await self._store.fetch(operation_id)
        if prior is not None:
            return self._duplicate(prior)

        event = StockLedgerEvent(
            id=uuid4(),
            operation_id=operation_id,
            kind=kind,
            timestamp=at or self._clock(),
            medicine_id=medicine_id,
            package_id=package_id,
            therapy_id=therapy_id,
            quantity=quantity,
            stock_delta=stock_delta_for(kind, quantity, units_per_pack),
        )
        result = await self._append(event)
        if result is not None:
            return result

        stored = await self._store.fetch(operation_id)
        if stored is None:
            raise LedgerError(
                code="duplicate_operation",
                message="Operation id conflicts with an event that could not be read back",
                operation_id=operation_id,
            )
        return self._duplicate(stored)

    async def _append(self, event: StockLedgerEvent) -> ActionResult | None:
        try:
            appended = await self._store.append(event)
        except psycopg.errors.UniqueViolation:
            appended = False
        except psycopg.Error as exc:
            record_save_failure()
            logger.exception(
                "Ledger append failed",
                extra=pharma_extra(operation_id=event.operation_id, kind=event.kind),
            )
            raise LedgerError(
                code="save_failed",
                message=f"Could not store {event.kind} event: {exc}",
                operation_id=event.operation_id,
            ) from exc

        if not appended:
            return None
        record_event_appended(event.kind)
        logger.info(
            "Ledger event appended",
            extra=pharma_extra(
                operation_id=event.operation_id,
                kind=event.kind,
                medicine_id=event.medicine_id,
                stock_delta=event.stock_delta,
            ),
        )
        return ActionResult(event=event, created=True)

    @staticmethod
    def _duplicate(event: StockLedgerEvent) -> ActionResult:
        record_duplicate_collapsed()
        logger.debug(
            "Duplicate operation collapsed",
            extra=pharma_extra(operation_id=event.operation_id, kind=event.kind),
        )
        return ActionResult(event=event, created=False)
