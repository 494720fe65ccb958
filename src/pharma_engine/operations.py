"""Operation keys and TTL-bound operation id reuse.

The same user gesture can reach the ledger through several entry points
(list row, notification action, live surface, shortcut). Each entry point
derives the same logical key, asks the provider for an id, and the provider
hands back the id it minted for that key a moment ago. The ledger then
collapses the duplicate submissions into one event.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from .config import Config

DEFAULT_TTL_SECONDS = 60
AUTO_INTAKE_TTL_SECONDS = 24 * 60 * 60


def minute_bucket(at: datetime) -> int:
    """Minutes since the epoch; identifies a scheduled dose to the minute."""
    return int(at.timestamp() // 60)


@dataclass(frozen=True)
class OperationKey:
    raw: str

    @classmethod
    def medicine_action(
        cls,
        action: str,
        medicine_id: UUID | str,
        package_id: UUID | str | None,
        source: str,
    ) -> OperationKey:
        parts = [action, "med", str(medicine_id)]
        if package_id is not None:
            parts += ["pkg", str(package_id)]
        parts.append(source)
        return cls("|".join(parts))

    @classmethod
    def intake_completion(cls, completion_key: str, source: str) -> OperationKey:
        return cls(f"intake|completion|{completion_key}|{source}")

    @classmethod
    def undo(cls, original_operation_id: UUID | str, source: str) -> OperationKey:
        return cls(f"undo|op|{original_operation_id}|{source}")

    @classmethod
    def auto_intake(cls, therapy_id: UUID | str, scheduled_at: datetime) -> OperationKey:
        return cls(f"autoIntake|therapy|{therapy_id}|t|{minute_bucket(scheduled_at)}")

    @classmethod
    def live_activity_intake(cls, therapy_id: UUID | str, scheduled_at: datetime) -> OperationKey:
        return cls(f"liveActivity|intake|therapy|{therapy_id}|t|{minute_bucket(scheduled_at)}")


@dataclass
class _Entry:
    operation_id: UUID
    created_at: datetime
    ttl: timedelta


class OperationIdProvider:
    """Mints operation ids, reusing the same id for a key within its TTL."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._ttl = timedelta(seconds=max(1, ttl_seconds))
        self._clock = clock or (lambda: datetime.now(UTC))
        self._storage: dict[str, _Entry] = {}

    @classmethod
    def from_config(cls, config: Config, **kwargs) -> OperationIdProvider:
        return cls(config.operation_id_ttl_seconds, **kwargs)

    @staticmethod
    def new_operation_id() -> UUID:
        return uuid4()

    def operation_id(self, key: OperationKey, ttl_seconds: int | None = None) -> UUID:
        now = self._clock()
        entry = self._storage.get(key.raw)
        if entry is not None and now - entry.created_at <= entry.ttl:
            return entry.operation_id

        ttl = self._ttl if ttl_seconds is None else timedelta(seconds=max(1, ttl_seconds))
        entry = _Entry(self.new_operation_id(), now, ttl)
        self._storage[key.raw] = entry
        return entry.operation_id

    def clear(self, key: OperationKey) -> None:
        self._storage.pop(key.raw, None)

    def clear_expired(self) -> int:
        now = self._clock()
        expired = [raw for raw, e in self._storage.items() if now - e.created_at > e.ttl]
        for raw in expired:
            del self._storage[raw]
        return len(expired)

    def __len__(self) -> int:
        return len(self._storage)
