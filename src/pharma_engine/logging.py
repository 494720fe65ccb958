"""JSON structured logging for pharma-engine.

Controlled via PHARMA_LOG_FORMAT env var: "json" (default) or "text".
"""

import json
import logging
import traceback
from datetime import datetime, timezone


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }

        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # pharma_* extras (operation_id, medicine_id, kind, ...)
        for key, value in record.__dict__.items():
            if key.startswith("pharma_"):
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    """Configure root logger with either JSON or plaintext format."""
    import sys

    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root.addHandler(handler)


def pharma_extra(**fields: object) -> dict[str, object]:
    """Build a logging ``extra`` dict whose keys survive JSONFormatter.

    ``pharma_extra(operation_id=op_id)`` -> ``{"pharma_operation_id": "..."}``.
    UUIDs and datetimes are rendered as strings; None values are dropped.
    """
    extra: dict[str, object] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, datetime):
            value = value.isoformat()
        elif not isinstance(value, (str, int, float, bool)):
            value = str(value)
        extra[f"pharma_{key}"] = value
    return extra
