"""In-memory ledger and planner counters.

Counters live in module-level dicts; callers run on a single event loop.
"""

import time

_start_time = time.monotonic()

_metrics: dict = {
    "events_appended": 0,
    "duplicates_collapsed": 0,
    "reversals_appended": 0,
    "save_failures": 0,
    "plans": {},
}


def record_event_appended(kind: str) -> None:
    _metrics["events_appended"] += 1
    if kind.endswith("_undo"):
        _metrics["reversals_appended"] += 1


def record_duplicate_collapsed() -> None:
    _metrics["duplicates_collapsed"] += 1


def record_save_failure() -> None:
    _metrics["save_failures"] += 1


def record_plan(planner_name: str, duration_ms: float, item_count: int) -> None:
    """Record a single planner pass with timing."""
    p = _metrics["plans"].setdefault(planner_name, {
        "runs": 0,
        "items": 0,
        "total_duration_ms": 0.0,
    })
    p["runs"] += 1
    p["items"] += item_count
    p["total_duration_ms"] += duration_ms


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "events_appended": _metrics["events_appended"],
        "duplicates_collapsed": _metrics["duplicates_collapsed"],
        "reversals_appended": _metrics["reversals_appended"],
        "save_failures": _metrics["save_failures"],
        "plans": {
            name: dict(stats)
            for name, stats in _metrics["plans"].items()
        },
    }


def reset_metrics() -> None:
    _metrics["events_appended"] = 0
    _metrics["duplicates_collapsed"] = 0
    _metrics["reversals_appended"] = 0
    _metrics["save_failures"] = 0
    _metrics["plans"] = {}
