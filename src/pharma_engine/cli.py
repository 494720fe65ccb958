"""Command line interface for pharma-engine."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import sys
from datetime import UTC, date, datetime, time
from pathlib import Path
from typing import Any
from uuid import UUID

import click
import psycopg
from pydantic import ValidationError

from .actions import ActionResult, LedgerActions, LedgerError
from .config import Config
from .ledger import LedgerStore, ensure_schema
from .live_activity import CriticalDoseConfig, CriticalDosePlanner
from .logging import setup_logging
from .models import DoseTime
from .notifications import (
    NotificationPlanner,
    NotificationScheduleConfig,
    build_requests,
    normalized_level,
)
from .occurrence import next_occurrence
from .operations import OperationIdProvider, OperationKey
from .recurrence import RecurrenceRule, describe_rule, encode_rule, parse_rule
from .snapshot import Snapshot, load_snapshot
from .today import build_today_state


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def _echo_json(value: Any) -> None:
    click.echo(json.dumps(_jsonable(value), indent=2, ensure_ascii=False))


def _parse_instant(ctx: click.Context, param: click.Parameter, value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise click.BadParameter(f"not an ISO 8601 timestamp: {value!r}")
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_dose(raw: str) -> DoseTime:
    clock, _, amount = raw.partition("=")
    try:
        return DoseTime(time=time.fromisoformat(clock), amount=float(amount) if amount else 1.0)
    except ValueError:
        raise click.BadParameter(f"expected HH:MM[=amount], got {raw!r}")


def _load(ctx: click.Context, path: Path) -> Snapshot:
    try:
        return load_snapshot(path.read_bytes(), defaults=_config(ctx).default_option())
    except ValidationError as exc:
        click.echo(f"Error: invalid snapshot {path}:\n{exc}", err=True)
        sys.exit(1)


def _config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


def _operation_id(ctx: click.Context, key: OperationKey) -> UUID:
    return ctx.obj["operation_ids"].operation_id(key)


def _now(value: datetime | None) -> datetime:
    return value or datetime.now(UTC)


@click.group()
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default=None,
    help="Log format (defaults to PHARMA_LOG_FORMAT or json).",
)
@click.pass_context
def main(ctx: click.Context, log_format: str | None) -> None:
    """Medication schedule, stock and reminder engine."""
    config = Config.from_env()
    setup_logging(log_format or config.log_format)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["operation_ids"] = OperationIdProvider.from_config(config)


# ---------------------------------------------------------------------------
# Recurrence rules
# ---------------------------------------------------------------------------


@main.group()
def rule() -> None:
    """Parse, encode and describe recurrence rules."""


@rule.command("parse")
@click.argument("text")
def rule_parse(text: str) -> None:
    """Print the fields of a stored rule as JSON."""
    _echo_json(parse_rule(text.replace("\\n", "\n")))


@rule.command("encode")
@click.option("--freq", type=click.Choice(["DAILY", "WEEKLY", "MONTHLY", "YEARLY"]), default="DAILY", show_default=True)
@click.option("--interval", type=int, default=1, show_default=True)
@click.option("--count", type=int, default=None)
@click.option("--until", callback=_parse_instant, default=None, help="ISO 8601 end instant.")
@click.option("--by-day", "by_day", multiple=True, help="MO, TU, ... (repeatable).")
@click.option("--by-month-day", "by_month_day", type=int, multiple=True)
@click.option("--cycle-on", type=int, default=None)
@click.option("--cycle-off", type=int, default=None)
def rule_encode(
    freq: str,
    interval: int,
    count: int | None,
    until: datetime | None,
    by_day: tuple[str, ...],
    by_month_day: tuple[int, ...],
    cycle_on: int | None,
    cycle_off: int | None,
) -> None:
    """Print the stored text form of a rule."""
    click.echo(
        encode_rule(
            RecurrenceRule(
                freq=freq,
                interval=interval,
                until=until,
                count=count,
                by_day=tuple(d.upper() for d in by_day),
                by_month_day=by_month_day,
                cycle_on_days=cycle_on,
                cycle_off_days=cycle_off,
            )
        )
    )


@rule.command("describe")
@click.argument("text")
def rule_describe(text: str) -> None:
    click.echo(describe_rule(parse_rule(text.replace("\\n", "\n"))))


@main.command("next-occurrence")
@click.option("--rule", "rule_text", required=True, help="Stored rule text.")
@click.option("--start", callback=_parse_instant, required=True)
@click.option("--after", callback=_parse_instant, required=True)
@click.option("--dose", "doses", multiple=True, help="HH:MM[=amount] (repeatable).")
@click.pass_context
def next_occurrence_cmd(
    ctx: click.Context,
    rule_text: str,
    start: datetime,
    after: datetime,
    doses: tuple[str, ...],
) -> None:
    """Print the next dose instant strictly after --after, or null."""
    at = next_occurrence(
        parse_rule(rule_text.replace("\\n", "\n")),
        start,
        after,
        [_parse_dose(d) for d in doses],
        _config(ctx).tz(),
    )
    _echo_json({"next_occurrence": at})


# ---------------------------------------------------------------------------
# Planners
# ---------------------------------------------------------------------------


@main.command()
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--now", callback=_parse_instant, default=None)
@click.option("--completed", multiple=True, help="Completion keys already done today.")
@click.pass_context
def today(ctx: click.Context, snapshot: Path, now: datetime | None, completed: tuple[str, ...]) -> None:
    """Print the Today list for a snapshot document."""
    snap = _load(ctx, snapshot)
    state = build_today_state(
        snap.medicines,
        _now(now),
        option=snap.option,
        completed_keys=completed,
        tz=_config(ctx).tz(),
    )
    _echo_json(state)


@main.command()
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--now", callback=_parse_instant, default=None)
@click.option("--level", type=click.Choice(["normal", "alarm"]), default=None)
@click.pass_context
def notifications(ctx: click.Context, snapshot: Path, now: datetime | None, level: str | None) -> None:
    """Print the reminder requests that would be scheduled."""
    config = _config(ctx)
    snap = _load(ctx, snapshot)
    at = _now(now)
    planner = NotificationPlanner(NotificationScheduleConfig.from_config(config), tz=config.tz())
    plan = planner.plan(snap.medicines, at, snap.option)
    requests = build_requests(
        plan,
        at,
        level=normalized_level(level or snap.option.therapy_notification_level),
        cap=planner.config.queue_cap,
    )
    _echo_json(requests)


@main.command("live-plan")
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--now", callback=_parse_instant, default=None)
@click.pass_context
def live_plan(ctx: click.Context, snapshot: Path, now: datetime | None) -> None:
    """Print the critical-dose plan."""
    config = _config(ctx)
    snap = _load(ctx, snapshot)
    planner = CriticalDosePlanner(CriticalDoseConfig.from_config(config), tz=config.tz())
    _echo_json(planner.make_plan(snap.medicines, _now(now), snap.option))


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


async def _with_actions(config: Config, fn) -> Any:
    async with await psycopg.AsyncConnection.connect(config.require_database_url()) as conn:
        return await fn(LedgerActions(LedgerStore(conn)))


def _run_ledger(ctx: click.Context, fn) -> None:
    try:
        result: ActionResult | None = asyncio.run(_with_actions(_config(ctx), fn))
    except LedgerError as exc:
        _echo_json({"status": "error", "code": exc.code, "message": str(exc)})
        sys.exit(1)
    except (RuntimeError, psycopg.OperationalError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    if result is None:
        _echo_json({"status": "noop"})
        sys.exit(1)
    _echo_json({"status": result.status, "event": result.event})


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the ledger, stock and todo snapshot tables."""

    async def _init() -> None:
        async with await psycopg.AsyncConnection.connect(_config(ctx).require_database_url()) as conn:
            await ensure_schema(conn)

    asyncio.run(_init())
    click.echo("Schema ready.")


@main.command("record-intake")
@click.option("--operation-id", type=click.UUID, default=None, help="Reuse to make retries idempotent.")
@click.option("--medicine-id", type=click.UUID, required=True)
@click.option("--package-id", type=click.UUID, default=None)
@click.option("--therapy-id", type=click.UUID, default=None)
@click.option("--quantity", type=int, default=1, show_default=True)
@click.option("--at", callback=_parse_instant, default=None)
@click.pass_context
def record_intake(
    ctx: click.Context,
    operation_id: UUID | None,
    medicine_id: UUID,
    package_id: UUID | None,
    therapy_id: UUID | None,
    quantity: int,
    at: datetime | None,
) -> None:
    op_id = operation_id or _operation_id(
        ctx, OperationKey.medicine_action("intake", medicine_id, package_id, "cli")
    )
    _run_ledger(
        ctx,
        lambda actions: actions.record_intake(
            operation_id=op_id,
            medicine_id=medicine_id,
            package_id=package_id,
            therapy_id=therapy_id,
            quantity=quantity,
            at=at,
        ),
    )


@main.command("record-purchase")
@click.option("--operation-id", type=click.UUID, default=None, help="Reuse to make retries idempotent.")
@click.option("--medicine-id", type=click.UUID, required=True)
@click.option("--package-id", type=click.UUID, required=True)
@click.option("--units-per-pack", type=int, required=True)
@click.option("--quantity", type=int, default=1, show_default=True)
@click.option("--at", callback=_parse_instant, default=None)
@click.pass_context
def record_purchase(
    ctx: click.Context,
    operation_id: UUID | None,
    medicine_id: UUID,
    package_id: UUID,
    units_per_pack: int,
    quantity: int,
    at: datetime | None,
) -> None:
    op_id = operation_id or _operation_id(
        ctx, OperationKey.medicine_action("purchase", medicine_id, package_id, "cli")
    )
    _run_ledger(
        ctx,
        lambda actions: actions.record_purchase(
            operation_id=op_id,
            medicine_id=medicine_id,
            package_id=package_id,
            units_per_pack=units_per_pack,
            quantity=quantity,
            at=at,
        ),
    )


@main.command()
@click.argument("original_operation_id", type=click.UUID)
@click.option("--undo-operation-id", type=click.UUID, default=None)
@click.pass_context
def undo(ctx: click.Context, original_operation_id: UUID, undo_operation_id: UUID | None) -> None:
    """Reverse a recorded operation."""
    op_id = undo_operation_id or _operation_id(ctx, OperationKey.undo(original_operation_id, "cli"))
    _run_ledger(
        ctx,
        lambda actions: actions.undo(original_operation_id, undo_operation_id=op_id),
    )


if __name__ == "__main__":
    main()
