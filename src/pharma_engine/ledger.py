"""Stock ledger: effective (non-reversed) views and the PostgreSQL event store.

Events are append-only. An undo appends a reversal event whose
``reversal_of_operation_id`` points at the voided event; nothing is deleted.
Every view below filters reversed events out the same way, so callers never
have to.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import date, datetime, timedelta, tzinfo
from typing import Any
from uuid import UUID

import psycopg
from psycopg.rows import dict_row

from .models import Medicine, Package, StockLedgerEvent, Therapy
from .recurrence import local_day

logger = logging.getLogger(__name__)

# stock_levels needs a non-null key for events without a package.
NO_PACKAGE = UUID(int=0)


# ---------------------------------------------------------------------------
# Pure views
# ---------------------------------------------------------------------------


def reversed_operation_ids(events: Iterable[StockLedgerEvent]) -> set[UUID]:
    """Operation ids voided by a reversal event."""
    return {e.reversal_of_operation_id for e in events if e.reversal_of_operation_id is not None}


def effective_events(
    events: Sequence[StockLedgerEvent],
    kind: str | None = None,
) -> list[StockLedgerEvent]:
    """Non-reversal events of ``kind`` (all kinds if None) that were not undone."""
    reversed_ids = reversed_operation_ids(events)
    return [
        e
        for e in events
        if not e.is_reversal
        and e.operation_id not in reversed_ids
        and (kind is None or e.kind == kind)
    ]


def effective_intake_logs(
    events: Sequence[StockLedgerEvent],
    *,
    therapy_id: UUID | None = None,
) -> list[StockLedgerEvent]:
    logs = effective_events(events, "intake")
    if therapy_id is not None:
        logs = [e for e in logs if e.therapy_id == therapy_id]
    return sorted(logs, key=lambda e: e.timestamp)


def effective_intake_logs_on(
    events: Sequence[StockLedgerEvent],
    day: date,
    tz: tzinfo,
) -> list[StockLedgerEvent]:
    return [e for e in effective_intake_logs(events) if local_day(e.timestamp, tz) == day]


def intake_logs_for_therapy(medicine: Medicine, therapy: Therapy) -> list[StockLedgerEvent]:
    """Effective intakes attributable to ``therapy``.

    Logs assigned to another therapy never count. Unassigned logs count for
    the only therapy of a medicine, otherwise only when the package matches.
    """
    single = len(medicine.therapies) <= 1
    logs = []
    for log in effective_intake_logs(medicine.events):
        if log.therapy_id is not None:
            if log.therapy_id != therapy.id:
                continue
        elif not single and log.package_id != therapy.package_id:
            continue
        logs.append(log)
    return logs


def has_matching_intake_log(
    medicine: Medicine,
    therapy: Therapy,
    scheduled_at: datetime,
    tolerance: timedelta,
) -> bool:
    return any(
        abs(log.timestamp - scheduled_at) <= tolerance
        for log in intake_logs_for_therapy(medicine, therapy)
    )


def _latest(events: Sequence[StockLedgerEvent]) -> StockLedgerEvent | None:
    return max(events, key=lambda e: e.timestamp, default=None)


def has_new_prescription_request(events: Sequence[StockLedgerEvent]) -> bool:
    """A prescription request is pending until a purchase follows it."""
    request = _latest(effective_events(events, "prescription_request"))
    if request is None:
        return False
    purchase = _latest(effective_events(events, "purchase"))
    return purchase is None or purchase.timestamp < request.timestamp


def has_effective_prescription_received(events: Sequence[StockLedgerEvent]) -> bool:
    """A prescription arrived after the last purchase and has not been used yet."""
    received = _latest(effective_events(events, "prescription_received"))
    if received is None:
        return False
    purchase = _latest(effective_events(events, "purchase"))
    return purchase is None or purchase.timestamp < received.timestamp


def stock_delta_for(kind: str, quantity: int, units_per_pack: int | None = None) -> int:
    """Signed stock change applied by a non-reversal event."""
    if kind == "purchase":
        return max(0, units_per_pack or 0) * quantity
    if kind in ("intake", "stock_adjustment"):
        return -quantity
    return 0


def package_leftover(events: Sequence[StockLedgerEvent], package: Package) -> int:
    """Raw units left in ``package`` (may be negative; clamp for display)."""
    total = 0
    for event in effective_events(events):
        if event.package_id != package.id:
            continue
        total += stock_delta_for(event.kind, event.quantity, package.units_per_pack)
    return total


# ---------------------------------------------------------------------------
# PostgreSQL store
# ---------------------------------------------------------------------------

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS stock_ledger_events (
        id UUID PRIMARY KEY,
        operation_id UUID NOT NULL UNIQUE,
        kind TEXT NOT NULL,
        timestamp TIMESTAMPTZ NOT NULL,
        medicine_id UUID NOT NULL,
        package_id UUID,
        therapy_id UUID,
        quantity INT NOT NULL DEFAULT 1,
        stock_delta INT NOT NULL DEFAULT 0,
        reversal_of_operation_id UUID,
        synced_at TIMESTAMPTZ
    )
    """,
    # A given operation can be reversed at most once, even under concurrency.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS stock_ledger_events_reversal_once
        ON stock_ledger_events (reversal_of_operation_id)
        WHERE reversal_of_operation_id IS NOT NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS stock_ledger_events_medicine
        ON stock_ledger_events (medicine_id, timestamp)
    """,
    """
    CREATE TABLE IF NOT EXISTS stock_levels (
        medicine_id UUID NOT NULL,
        package_id UUID NOT NULL,
        units INT NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (medicine_id, package_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS todo_snapshots (
        source_id TEXT PRIMARY KEY,
        category TEXT NOT NULL,
        title TEXT NOT NULL,
        detail TEXT,
        medicine_id UUID,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
)

SCHEMA_SQL = ";\n".join(s.strip() for s in SCHEMA_STATEMENTS) + ";"

_EVENT_COLUMNS = (
    "id, operation_id, kind, timestamp, medicine_id, package_id, therapy_id, "
    "quantity, stock_delta, reversal_of_operation_id, synced_at"
)


async def ensure_schema(conn: psycopg.AsyncConnection[Any]) -> None:
    async with conn.transaction():
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)


def _row_to_event(row: dict[str, Any]) -> StockLedgerEvent:
    return StockLedgerEvent(
        id=row["id"],
        operation_id=row["operation_id"],
        kind=row["kind"],
        timestamp=row["timestamp"],
        medicine_id=row["medicine_id"],
        package_id=row.get("package_id"),
        therapy_id=row.get("therapy_id"),
        quantity=row.get("quantity") or 1,
        stock_delta=row.get("stock_delta") or 0,
        reversal_of_operation_id=row.get("reversal_of_operation_id"),
        synced_at=row.get("synced_at"),
    )


class LedgerStore:
    """Event store bound to one connection (one persistence context)."""

    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self._conn = conn

    async def _fetch_one(self, where: str, params: tuple[Any, ...]) -> StockLedgerEvent | None:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                f"SELECT {_EVENT_COLUMNS} FROM stock_ledger_events WHERE {where} LIMIT 1",
                params,
            )
            row = await cur.fetchone()
        return _row_to_event(row) if row is not None else None

    async def exists(self, operation_id: UUID) -> bool:
        async with self._conn.cursor() as cur:
            await cur.execute(
                "SELECT 1 FROM stock_ledger_events WHERE operation_id = %s",
                (operation_id,),
            )
            return await cur.fetchone() is not None

    async def fetch(self, operation_id: UUID) -> StockLedgerEvent | None:
        return await self._fetch_one("operation_id = %s", (operation_id,))

    async def has_reversal(self, operation_id: UUID) -> bool:
        async with self._conn.cursor() as cur:
            await cur.execute(
                "SELECT 1 FROM stock_ledger_events WHERE reversal_of_operation_id = %s",
                (operation_id,),
            )
            return await cur.fetchone() is not None

    async def append(self, event: StockLedgerEvent) -> bool:
        """Insert ``event`` and apply its stock delta in one transaction.

        Returns False when another writer already stored the same operation id
        (or already reversed the same operation); nothing is written then.
        """
        async with self._conn.transaction():
            async with self._conn.cursor() as cur:
                await cur.execute(
                    f"""
                    INSERT INTO stock_ledger_events ({_EVENT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT DO NOTHING
                    RETURNING id
                    """,
                    (
                        event.id,
                        event.operation_id,
                        event.kind,
                        event.timestamp,
                        event.medicine_id,
                        event.package_id,
                        event.therapy_id,
                        event.quantity,
                        event.stock_delta,
                        event.reversal_of_operation_id,
                        event.synced_at,
                    ),
                )
                if await cur.fetchone() is None:
                    logger.debug("Insert skipped, operation %s already stored", event.operation_id)
                    return False

                if event.stock_delta:
                    await cur.execute(
                        """
                        INSERT INTO stock_levels (medicine_id, package_id, units, updated_at)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (medicine_id, package_id) DO UPDATE SET
                            units = stock_levels.units + EXCLUDED.units,
                            updated_at = EXCLUDED.updated_at
                        """,
                        (
                            event.medicine_id,
                            event.package_id or NO_PACKAGE,
                            event.stock_delta,
                            event.timestamp,
                        ),
                    )
        return True

    async def fetch_unsynced(self, limit: int = 100) -> list[StockLedgerEvent]:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                f"""
                SELECT {_EVENT_COLUMNS} FROM stock_ledger_events
                WHERE synced_at IS NULL
                ORDER BY timestamp, id
                LIMIT %s
                """,
                (limit,),
            )
            rows = await cur.fetchall()
        return [_row_to_event(r) for r in rows]

    async def mark_synced(self, operation_ids: Sequence[UUID], at: datetime) -> int:
        if not operation_ids:
            return 0
        async with self._conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE stock_ledger_events SET synced_at = %s
                WHERE operation_id = ANY(%s) AND synced_at IS NULL
                """,
                (at, list(operation_ids)),
            )
            return cur.rowcount

    async def events_for_medicine(self, medicine_id: UUID) -> list[StockLedgerEvent]:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                f"""
                SELECT {_EVENT_COLUMNS} FROM stock_ledger_events
                WHERE medicine_id = %s
                ORDER BY timestamp, id
                """,
                (medicine_id,),
            )
            rows = await cur.fetchall()
        return [_row_to_event(r) for r in rows]

    async def stock_units(self, medicine_id: UUID, package_id: UUID | None = None) -> int:
        """Current raw stock for a medicine, or for one of its packages."""
        async with self._conn.cursor() as cur:
            if package_id is None:
                await cur.execute(
                    "SELECT COALESCE(SUM(units), 0) FROM stock_levels WHERE medicine_id = %s",
                    (medicine_id,),
                )
            else:
                await cur.execute(
                    """
                    SELECT COALESCE(SUM(units), 0) FROM stock_levels
                    WHERE medicine_id = %s AND package_id = %s
                    """,
                    (medicine_id, package_id),
                )
            row = await cur.fetchone()
        return int(row[0]) if row is not None else 0
