"""Recurrence rules: model, text codec and per-day event allowance.

Grammar (one rule per therapy, newline separated):

    RRULE:FREQ=DAILY;INTERVAL=2;UNTIL=20250131T000000Z;COUNT=10;BYDAY=MO,WE;
          BYMONTH=1,2;BYMONTHDAY=1,15;WKST=MO;X-APP-ON=7;X-APP-OFF=21
    EXDATE:20250110T080000Z
    RDATE:20250112T080000Z

Parsing never raises. Anything unreadable is skipped, leaving the DAILY
defaults in place. ``X-APP-ON``/``X-APP-OFF`` express a duty cycle: ``on``
active days followed by ``off`` inactive days, repeating from the start day.
"""

from __future__ import annotations

import calendar as _calendar
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime, time, timedelta, tzinfo

FREQUENCIES: tuple[str, ...] = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")
WEEKDAY_CODES: tuple[str, ...] = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")

_UTC_FORMAT = "%Y%m%dT%H%M%SZ"
_CYCLE_KEYS = {
    "X-APP-ON": "cycle_on_days",
    "X-APP-OFF": "cycle_off_days",
    # Written by older app versions.
    "X-PHARMAPP-ON": "cycle_on_days",
    "X-PHARMAPP-OFF": "cycle_off_days",
}

_IT_WEEKDAYS = {
    "MO": "lunedì",
    "TU": "martedì",
    "WE": "mercoledì",
    "TH": "giovedì",
    "FR": "venerdì",
    "SA": "sabato",
    "SU": "domenica",
}
_IT_MONTHS = (
    "gennaio", "febbraio", "marzo", "aprile", "maggio", "giugno",
    "luglio", "agosto", "settembre", "ottobre", "novembre", "dicembre",
)


@dataclass(frozen=True)
class RecurrenceRule:
    freq: str = "DAILY"
    interval: int = 1
    until: datetime | None = None
    count: int | None = None
    by_day: tuple[str, ...] = ()
    by_month: tuple[int, ...] = ()
    by_month_day: tuple[int, ...] = ()
    wkst: str | None = None
    exdates: tuple[datetime, ...] = ()
    rdates: tuple[datetime, ...] = ()
    cycle_on_days: int | None = None
    cycle_off_days: int | None = None

    @property
    def normalized_interval(self) -> int:
        return max(1, self.interval)

    @property
    def cycle(self) -> tuple[int, int] | None:
        """(on, off) when both halves of the duty cycle are positive."""
        on, off = self.cycle_on_days, self.cycle_off_days
        if on is None or off is None or on <= 0 or off <= 0:
            return None
        return on, off

    @property
    def duty_cycle_factor(self) -> float:
        cycle = self.cycle
        if cycle is None:
            return 1.0
        on, off = cycle
        return on / (on + off)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


def _format_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_UTC_FORMAT)


def _parse_utc(raw: str) -> datetime | None:
    try:
        return datetime.strptime(raw.strip(), _UTC_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


def _parse_int(raw: str) -> int | None:
    try:
        return int(raw.strip())
    except ValueError:
        return None


def _parse_int_list(raw: str) -> tuple[int, ...]:
    values = (_parse_int(part) for part in raw.split(","))
    return tuple(v for v in values if v is not None)


def parse_rule(text: str | None) -> RecurrenceRule:
    """Parse stored recurrence text. Unknown or garbled input yields DAILY defaults."""
    rule = RecurrenceRule()
    if not text:
        return rule

    for line in text.splitlines():
        line = line.strip()
        if line.startswith("RRULE:"):
            for component in line[len("RRULE:"):].split(";"):
                key, sep, value = component.partition("=")
                if not sep or not value or "=" in value:
                    continue
                key = key.strip().upper()
                value = value.strip()
                if key == "FREQ":
                    freq = value.upper()
                    if freq in FREQUENCIES:
                        rule = replace(rule, freq=freq)
                elif key == "INTERVAL":
                    rule = replace(rule, interval=_parse_int(value) or 1)
                elif key == "UNTIL":
                    until = _parse_utc(value)
                    if until is not None:
                        rule = replace(rule, until=until)
                elif key == "COUNT":
                    rule = replace(rule, count=_parse_int(value))
                elif key == "BYDAY":
                    codes = tuple(
                        code for code in (c.strip().upper() for c in value.split(","))
                        if code in WEEKDAY_CODES
                    )
                    rule = replace(rule, by_day=codes)
                elif key == "BYMONTH":
                    rule = replace(rule, by_month=_parse_int_list(value))
                elif key == "BYMONTHDAY":
                    rule = replace(rule, by_month_day=_parse_int_list(value))
                elif key == "WKST":
                    if value.upper() in WEEKDAY_CODES:
                        rule = replace(rule, wkst=value.upper())
                elif key in _CYCLE_KEYS:
                    rule = replace(rule, **{_CYCLE_KEYS[key]: _parse_int(value)})
        elif line.startswith("EXDATE:"):
            exdate = _parse_utc(line[len("EXDATE:"):])
            if exdate is not None:
                rule = replace(rule, exdates=rule.exdates + (exdate,))
        elif line.startswith("RDATE:"):
            rdate = _parse_utc(line[len("RDATE:"):])
            if rdate is not None:
                rule = replace(rule, rdates=rule.rdates + (rdate,))

    return rule


def encode_rule(rule: RecurrenceRule) -> str:
    """Serialize a rule. Fields at their default value are omitted."""
    components = [f"FREQ={rule.freq}"]
    if rule.interval != 1:
        components.append(f"INTERVAL={rule.interval}")
    if rule.until is not None:
        components.append(f"UNTIL={_format_utc(rule.until)}")
    if rule.count is not None:
        components.append(f"COUNT={rule.count}")
    if rule.by_day:
        components.append("BYDAY=" + ",".join(rule.by_day))
    if rule.by_month:
        components.append("BYMONTH=" + ",".join(str(m) for m in rule.by_month))
    if rule.by_month_day:
        components.append("BYMONTHDAY=" + ",".join(str(d) for d in rule.by_month_day))
    if rule.wkst is not None:
        components.append(f"WKST={rule.wkst}")
    cycle = rule.cycle
    if cycle is not None:
        components.append(f"X-APP-ON={cycle[0]}")
        components.append(f"X-APP-OFF={cycle[1]}")

    lines = ["RRULE:" + ";".join(components)]
    lines.extend(f"EXDATE:{_format_utc(d)}" for d in rule.exdates)
    lines.extend(f"RDATE:{_format_utc(d)}" for d in rule.rdates)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Day matching
# ---------------------------------------------------------------------------


def local_day(value: datetime, tz: tzinfo = UTC) -> date:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(tz).date()


def _week_start(day: date, wkst: str | None) -> date:
    anchor = WEEKDAY_CODES.index(wkst) if wkst in WEEKDAY_CODES else 0
    return day - timedelta(days=(day.weekday() - anchor) % 7)


def _month_days(day: date, by_month_day: tuple[int, ...], default_day: int) -> set[int]:
    last = _calendar.monthrange(day.year, day.month)[1]
    wanted = by_month_day or (default_day,)
    resolved = set()
    for value in wanted:
        if value < 0:
            value = last + value + 1
        if 1 <= value <= last:
            resolved.add(value)
    return resolved


def in_cycle(day: date, rule: RecurrenceRule, start_day: date) -> bool:
    """True when ``day`` falls in the duty cycle's "on" window (or there is no cycle)."""
    cycle = rule.cycle
    if cycle is None:
        return True
    on, off = cycle
    offset = (day - start_day).days
    if offset < 0:
        return False
    return offset % (on + off) < on


def matches_pattern(day: date, rule: RecurrenceRule, start_day: date) -> bool:
    """FREQ/INTERVAL/BY* match, ignoring cycle, bounds and explicit dates."""
    if day < start_day:
        return False
    interval = rule.normalized_interval
    if rule.by_month and day.month not in rule.by_month:
        return False

    if rule.freq == "WEEKLY":
        codes = rule.by_day or WEEKDAY_CODES
        if WEEKDAY_CODES[day.weekday()] not in codes:
            return False
        weeks = (_week_start(day, rule.wkst) - _week_start(start_day, rule.wkst)).days // 7
        return weeks % interval == 0

    if rule.freq == "MONTHLY":
        months = (day.year - start_day.year) * 12 + (day.month - start_day.month)
        if months % interval != 0:
            return False
        if rule.by_day and WEEKDAY_CODES[day.weekday()] not in rule.by_day:
            return False
        if rule.by_day and not rule.by_month_day:
            return True
        return day.day in _month_days(day, rule.by_month_day, start_day.day)

    if rule.freq == "YEARLY":
        if (day.year - start_day.year) % interval != 0:
            return False
        if not rule.by_month and day.month != start_day.month:
            return False
        return day.day in _month_days(day, rule.by_month_day, start_day.day)

    # DAILY
    if rule.by_day and WEEKDAY_CODES[day.weekday()] not in rule.by_day:
        return False
    return (day - start_day).days % interval == 0


def is_active_day(day: date, rule: RecurrenceRule, start_day: date) -> bool:
    return matches_pattern(day, rule, start_day) and in_cycle(day, rule, start_day)


def _day_set(values: tuple[datetime, ...], tz: tzinfo) -> set[date]:
    return {local_day(v, tz) for v in values}


def combine(day: date, at: time, tz: tzinfo = UTC) -> datetime:
    return datetime.combine(day, at.replace(tzinfo=None), tzinfo=tz)


def iter_allowed_doses(
    rule: RecurrenceRule,
    start_date: datetime,
    dose_times: Sequence[time],
    tz: tzinfo,
    from_day: date,
    to_day: date,
) -> Iterator[tuple[date, range]]:
    """Yield ``(day, indices into dose_times)`` the rule permits, day by day.

    ``dose_times`` must be sorted. COUNT is spent one dose instant at a time
    and only instants at or after ``start_date`` count. With COUNT the walk
    starts at the start day, so what a day gets never depends on ``from_day``.
    An RDATE grants the first eligible dose time on a day the pattern skips;
    it does not spend COUNT.
    """
    if rule.count is not None and rule.count <= 0:
        return
    start_day = local_day(start_date, tz)
    until_day = local_day(rule.until, tz) if rule.until is not None else None
    excluded = _day_set(rule.exdates, tz)
    extra = _day_set(rule.rdates, tz)
    last_extra = max(extra, default=None)
    remaining = rule.count

    day = start_day if rule.count is not None else max(start_day, from_day)
    while day <= to_day:
        if until_day is not None and day > until_day:
            return
        if remaining is not None and remaining <= 0 and (last_extra is None or day > last_extra):
            return
        first = 0
        if day == start_day:
            # Dose times earlier than the start instant are skipped.
            while first < len(dose_times) and combine(day, dose_times[first], tz) < start_date:
                first += 1
        if day not in excluded:
            if is_active_day(day, rule, start_day):
                last = len(dose_times)
                if remaining is not None:
                    last = min(last, first + remaining)
                    remaining -= last - first
                if day >= from_day and last > first:
                    yield day, range(first, last)
            elif day in extra and day >= from_day and first < len(dose_times):
                yield day, range(first, first + 1)
        day += timedelta(days=1)


def allowed_events_on_day(
    day: date,
    rule: RecurrenceRule,
    start_date: datetime,
    doses_per_day: int,
    tz: tzinfo = UTC,
    *,
    dose_times: Sequence[time] | None = None,
) -> int:
    """How many dose events the rule permits on ``day`` (local to ``tz``).

    0 outside ``[start, until]``, on an EXDATE, or on an inactive/off-cycle
    day; otherwise ``doses_per_day`` (capped by what COUNT leaves). An RDATE
    grants one event on a day the pattern would skip.

    Without ``dose_times`` every dose of the start day counts; with them,
    doses before the start instant are not permitted and do not spend COUNT.
    """
    if day < local_day(start_date, tz):
        return 0
    if dose_times is None:
        dose_times = [time.min] * max(1, doses_per_day)
        start_date = combine(local_day(start_date, tz), time.min, tz)
    else:
        dose_times = sorted(t.replace(tzinfo=None) for t in dose_times)
    for _, allowed in iter_allowed_doses(rule, start_date, dose_times, tz, day, day):
        return len(allowed)
    return 0


# ---------------------------------------------------------------------------
# Description
# ---------------------------------------------------------------------------


def _long_date(value: datetime) -> str:
    d = local_day(value)
    return f"{d.day} {_IT_MONTHS[d.month - 1]} {d.year}"


def describe_rule(rule: RecurrenceRule) -> str:
    """Human readable (Italian) summary, e.g. ``ogni settimana il lunedì, giovedì``."""
    cycle = rule.cycle
    if cycle is not None:
        text = f"{cycle[0]} giorni di terapia, {cycle[1]} giorni di pausa"
    else:
        text = {
            "DAILY": "ogni giorno",
            "WEEKLY": "ogni settimana",
            "MONTHLY": "ogni mese",
            "YEARLY": "ogni anno",
        }.get(rule.freq, "con frequenza non specificata")
        if rule.interval > 1:
            unit = {"DAILY": "giorni", "WEEKLY": "settimane", "MONTHLY": "mesi", "YEARLY": "anni"}
            text = f"ogni {rule.interval} {unit.get(rule.freq, 'volte')}"

    if rule.until is not None:
        text += f" fino al {_long_date(rule.until)}"
    elif rule.count is not None:
        text += f" per {rule.count} volte"
    if rule.by_day:
        text += " il " + ", ".join(_IT_WEEKDAYS[c] for c in rule.by_day)
    if rule.by_month:
        text += " nei mesi " + ", ".join(str(m) for m in rule.by_month)
    if rule.by_month_day:
        text += " il giorno " + ", ".join(str(d) for d in rule.by_month_day) + " del mese"
    if rule.exdates:
        text += ". Escludendo le date: " + ", ".join(_long_date(d) for d in rule.exdates)
    if rule.rdates:
        text += ". Includendo date extra: " + ", ".join(_long_date(d) for d in rule.rdates)
    return text
