"""Persisted mirror of the Today list, diffed by source id."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import psycopg
from psycopg.rows import dict_row

from .models import TodoItem
from .today import completion_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotRow:
    source_id: str
    category: str
    title: str
    detail: str | None
    medicine_id: UUID | None = None

    @classmethod
    def from_item(cls, item: TodoItem) -> SnapshotRow:
        return cls(
            source_id=completion_key(item),
            category=item.category,
            title=item.title,
            detail=item.detail,
            medicine_id=item.medicine_id,
        )


@dataclass
class SnapshotDiff:
    inserts: list[SnapshotRow] = field(default_factory=list)
    updates: list[SnapshotRow] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deletes)


def diff_snapshot(existing: Mapping[str, SnapshotRow], items: Iterable[TodoItem]) -> SnapshotDiff:
    """Update rows whose source id was seen, insert the unseen, delete the rest.

    Rows that are already identical are left out of ``updates``. When two items
    share a source id the first one wins.
    """
    diff = SnapshotDiff()
    seen: set[str] = set()
    for item in items:
        row = SnapshotRow.from_item(item)
        if row.source_id in seen:
            continue
        seen.add(row.source_id)
        current = existing.get(row.source_id)
        if current is None:
            diff.inserts.append(row)
        elif current != row:
            diff.updates.append(row)
    diff.deletes = sorted(source_id for source_id in existing if source_id not in seen)
    return diff


class TodoSnapshotStore:
    """Writes the Today list to ``todo_snapshots``; unchanged sync tokens are skipped."""

    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self._conn = conn
        self._last_token: str | None = None

    async def load(self) -> dict[str, SnapshotRow]:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                "SELECT source_id, category, title, detail, medicine_id FROM todo_snapshots"
            )
            rows = await cur.fetchall()
        return {r["source_id"]: SnapshotRow(**r) for r in rows}

    async def sync(
        self,
        items: list[TodoItem],
        token: str,
        *,
        now: datetime | None = None,
    ) -> SnapshotDiff | None:
        """Apply the diff in one transaction. Returns None when ``token`` is unchanged."""
        if token == self._last_token:
            return None
        at = now or datetime.now(UTC)

        async with self._conn.transaction():
            diff = diff_snapshot(await self.load(), items)
            async with self._conn.cursor() as cur:
                for row in diff.inserts + diff.updates:
                    await cur.execute(
                        """
                        INSERT INTO todo_snapshots
                            (source_id, category, title, detail, medicine_id, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        ON CONFLICT (source_id) DO UPDATE SET
                            category = EXCLUDED.category,
                            title = EXCLUDED.title,
                            detail = EXCLUDED.detail,
                            medicine_id = EXCLUDED.medicine_id,
                            updated_at = EXCLUDED.updated_at
                        """,
                        (row.source_id, row.category, row.title, row.detail, row.medicine_id, at),
                    )
                if diff.deletes:
                    await cur.execute(
                        "DELETE FROM todo_snapshots WHERE source_id = ANY(%s)",
                        (diff.deletes,),
                    )

        self._last_token = token
        logger.info(
            "Todo snapshot synced: %d inserted, %d updated, %d deleted",
            len(diff.inserts),
            len(diff.updates),
            len(diff.deletes),
        )
        return diff
