import logging
import os
from dataclasses import dataclass
from datetime import tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import Option

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return max(1, int(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class Config:
    database_url: str | None = None
    log_format: str = "json"
    timezone: str = "UTC"
    operation_id_ttl_seconds: int = 60
    stock_threshold_days: int = 7
    notification_queue_cap: int = 60
    therapy_horizon_days: int = 1
    stock_alert_cooldown_hours: int = 48
    intake_tolerance_minutes: int = 60
    live_lead_minutes: int = 10
    live_overdue_tolerance_minutes: int = 30
    live_snooze_minutes: int = 10

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            database_url=os.environ.get("DATABASE_URL") or None,
            log_format=os.environ.get("PHARMA_LOG_FORMAT", "json"),
            timezone=os.environ.get("PHARMA_TIMEZONE", "UTC"),
            operation_id_ttl_seconds=_env_int("PHARMA_OPERATION_ID_TTL", 60),
            stock_threshold_days=_env_int("PHARMA_STOCK_THRESHOLD_DAYS", 7),
            notification_queue_cap=_env_int("PHARMA_NOTIFICATION_QUEUE_CAP", 60),
            therapy_horizon_days=_env_int("PHARMA_THERAPY_HORIZON_DAYS", 1),
            stock_alert_cooldown_hours=_env_int("PHARMA_STOCK_ALERT_COOLDOWN_HOURS", 48),
            intake_tolerance_minutes=_env_int("PHARMA_INTAKE_TOLERANCE_MINUTES", 60),
            live_lead_minutes=_env_int("PHARMA_LIVE_LEAD_MINUTES", 10),
            live_overdue_tolerance_minutes=_env_int("PHARMA_LIVE_OVERDUE_MINUTES", 30),
            live_snooze_minutes=_env_int("PHARMA_LIVE_SNOOZE_MINUTES", 10),
        )

    def require_database_url(self) -> str:
        if not self.database_url:
            raise RuntimeError("DATABASE_URL must be set")
        return self.database_url

    def default_option(self) -> Option:
        """Preferences a snapshot falls back to when it leaves them out."""
        return Option(stock_threshold_days=self.stock_threshold_days)

    def tz(self) -> tzinfo:
        """Resolve the configured IANA timezone, falling back to UTC."""
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, using UTC", self.timezone)
            return ZoneInfo("UTC")
