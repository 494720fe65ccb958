"""Consumption and stock forecast per therapy and per medicine.

Figures:
- daily usage: units consumed per day, averaged over the rule's period and
  scaled by the duty cycle (on / (on + off));
- leftover units: purchases x pack size minus intakes and adjustments;
- coverage: leftover / daily usage, in days (autonomy is its floor);
- status: critical when leftover/coverage <= 0, low below the threshold.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Literal
from uuid import UUID

from .ledger import (
    has_effective_prescription_received,
    has_new_prescription_request,
    package_leftover,
)
from .models import Medicine, Option, Therapy
from .recurrence import parse_rule

logger = logging.getLogger(__name__)

StockStatus = Literal["critical", "low", "ok", "unknown"]

_DAYS_PER_YEAR = 365.25


def _events_per_day(therapy: Therapy) -> float:
    rule = parse_rule(therapy.rrule)
    interval = rule.normalized_interval
    if rule.freq == "WEEKLY":
        return len(rule.by_day or range(7)) / (7 * interval)
    if rule.freq == "MONTHLY":
        return len(rule.by_month_day or (1,)) * 12 / _DAYS_PER_YEAR / interval
    if rule.freq == "YEARLY":
        return 1 / _DAYS_PER_YEAR / interval
    if rule.by_day:
        return len(rule.by_day) / 7 / interval
    return 1 / interval


def daily_usage(therapy: Therapy) -> float:
    """Units per day; 0 for a therapy without dose times."""
    if not therapy.doses:
        return 0.0
    per_day_amount = sum(d.amount for d in therapy.doses)
    return per_day_amount * _events_per_day(therapy) * parse_rule(therapy.rrule).duty_cycle_factor


def leftover_units(therapy: Therapy, medicine: Medicine) -> int | None:
    """Units left in the therapy's package (never negative), None without package data."""
    package = medicine.package(therapy.package_id)
    if package is None:
        return None
    return max(0, package_leftover(medicine.events, package))


def remaining_units_without_therapy(medicine: Medicine) -> int | None:
    if not medicine.packages:
        return None
    return sum(package_leftover(medicine.events, p) for p in medicine.packages)


@dataclass(frozen=True)
class StockForecast:
    medicine_id: UUID
    leftover_units: int
    daily_usage: float
    coverage_days: float | None
    threshold_days: int
    status: StockStatus
    needs_prescription: bool

    @property
    def autonomy_days(self) -> int | None:
        """Whole days of stock; None when usage is 0 (not estimable)."""
        if self.coverage_days is None:
            return None
        return max(0, math.floor(self.coverage_days))

    @property
    def is_depleted(self) -> bool:
        return self.status == "critical"

    @property
    def needs_attention(self) -> bool:
        return self.status in ("critical", "low")


def _therapy_totals(medicine: Medicine) -> tuple[int | None, float]:
    """Leftover summed over the distinct packages used, and summed usage."""
    leftover: int | None = None
    seen: set[object] = set()
    usage = 0.0
    for therapy in medicine.therapies:
        usage += daily_usage(therapy)
        if therapy.package_id in seen:
            continue
        seen.add(therapy.package_id)
        package = medicine.package(therapy.package_id)
        if package is None:
            logger.warning(
                "Therapy %s references unknown package %s", therapy.id, therapy.package_id
            )
            continue
        units = package_leftover(medicine.events, package)
        leftover = units if leftover is None else leftover + units
    return leftover, usage


def needs_prescription(
    medicine: Medicine,
    *,
    status: StockStatus,
    coverage_days: float | None,
    remaining: int | None,
    threshold: int,
) -> bool:
    """True when a prescription has to be requested before buying more."""
    if not medicine.requires_prescription:
        return False
    if has_new_prescription_request(medicine.events):
        return False
    if has_effective_prescription_received(medicine.events):
        return False
    if status == "critical":
        return True
    if medicine.therapies:
        return coverage_days is not None and coverage_days < threshold
    return remaining is not None and remaining <= threshold


def forecast_medicine(medicine: Medicine, option: Option | None = None) -> StockForecast:
    threshold = medicine.stock_threshold(option)
    coverage: float | None = None
    usage = 0.0

    if medicine.therapies:
        raw, usage = _therapy_totals(medicine)
        remaining = raw
        if raw is None:
            status: StockStatus = "unknown"
        elif usage <= 0:
            status = "ok" if raw > 0 else "critical"
        else:
            coverage = raw / usage
            if coverage <= 0:
                status = "critical"
            elif coverage < threshold:
                status = "low"
            else:
                status = "ok"
    else:
        remaining = remaining_units_without_therapy(medicine)
        if remaining is None:
            status = "unknown"
        elif remaining <= 0:
            status = "critical"
        elif remaining < threshold:
            status = "low"
        else:
            status = "ok"

    return StockForecast(
        medicine_id=medicine.id,
        leftover_units=max(0, remaining or 0),
        daily_usage=usage,
        coverage_days=max(0.0, coverage) if coverage is not None else None,
        threshold_days=threshold,
        status=status,
        needs_prescription=needs_prescription(
            medicine,
            status=status,
            coverage_days=coverage,
            remaining=remaining,
            threshold=threshold,
        ),
    )
