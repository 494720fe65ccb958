"""Automatic intake logging for therapies that do not need manual confirmation."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from uuid import UUID

from .actions import LedgerActions, LedgerError
from .config import Config
from .ledger import has_matching_intake_log
from .logging import pharma_extra
from .models import Medicine, Option, Therapy
from .occurrence import dose_events_between, next_therapy_occurrence
from .operations import AUTO_INTAKE_TTL_SECONDS, OperationIdProvider, OperationKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutoIntakeConfig:
    backfill: timedelta = timedelta(hours=24)
    log_tolerance: timedelta = timedelta(hours=1)
    max_events_per_run: int = 120

    @classmethod
    def from_config(cls, config: Config) -> AutoIntakeConfig:
        return cls(log_tolerance=timedelta(minutes=config.intake_tolerance_minutes))


@dataclass(frozen=True)
class AutoIntakeReport:
    created: int
    duplicates: int
    processed: int
    failed: int = 0


def _auto_therapies(
    medicines: Sequence[Medicine],
    option: Option | None,
) -> dict[UUID, tuple[Medicine, Therapy]]:
    return {
        t.id: (m, t)
        for m in medicines
        for t in m.therapies
        if t.rrule and t.doses and not t.requires_manual_confirmation(option)
    }


class AutoIntakeProcessor:
    def __init__(
        self,
        actions: LedgerActions,
        operation_ids: OperationIdProvider,
        config: AutoIntakeConfig | None = None,
        *,
        tz: tzinfo = UTC,
    ) -> None:
        self.actions = actions
        self.operation_ids = operation_ids
        self.config = config or AutoIntakeConfig()
        self.tz = tz

    async def process_due_intakes(
        self,
        medicines: Sequence[Medicine],
        now: datetime,
        option: Option | None = None,
    ) -> AutoIntakeReport:
        """Log every past dose of the backfill window that has no matching intake yet.

        Each dose maps to one operation key, so running twice over the same
        window (or racing another entry point) stores one event per dose.
        """
        cfg = self.config
        lookup = _auto_therapies(medicines, option)
        if not lookup:
            return AutoIntakeReport(created=0, duplicates=0, processed=0)

        created = duplicates = processed = failed = 0
        therapies = [t for _, t in lookup.values()]
        for event in dose_events_between(therapies, now - cfg.backfill, now, self.tz):
            medicine, therapy = lookup[event.therapy_id]
            if has_matching_intake_log(medicine, therapy, event.scheduled_at, cfg.log_tolerance):
                continue
            key = OperationKey.auto_intake(therapy.id, event.scheduled_at)
            operation_id = self.operation_ids.operation_id(key, ttl_seconds=AUTO_INTAKE_TTL_SECONDS)
            try:
                result = await self.actions.record_intake(
                    operation_id=operation_id,
                    medicine_id=medicine.id,
                    package_id=therapy.package_id,
                    therapy_id=therapy.id,
                    at=event.scheduled_at,
                )
            except LedgerError as exc:
                failed += 1
                logger.warning(
                    "Auto intake failed: %s",
                    exc,
                    extra=pharma_extra(therapy_id=therapy.id, error_code=exc.code),
                )
            else:
                if result.created:
                    created += 1
                else:
                    duplicates += 1
            processed += 1
            if processed >= cfg.max_events_per_run:
                break

        if processed:
            logger.info(
                "Auto intake run: %d created, %d duplicates, %d failed",
                created,
                duplicates,
                failed,
            )
        return AutoIntakeReport(created=created, duplicates=duplicates, processed=processed, failed=failed)

    def next_auto_intake_at(
        self,
        medicines: Sequence[Medicine],
        now: datetime,
        option: Option | None = None,
    ) -> datetime | None:
        upcoming = (
            next_therapy_occurrence(t, now, self.tz)
            for _, t in _auto_therapies(medicines, option).values()
        )
        return min((at for at in upcoming if at is not None), default=None)
