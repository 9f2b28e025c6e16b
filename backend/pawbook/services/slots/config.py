# backend/pawbook/services/slots/config.py
"""
Engine configuration for slot resolution.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


@dataclass(frozen=True)
class EngineConfig:
    """
    Configuration for the availability engine.

    Attributes:
        timezone: IANA zone all naive rule times and booking timestamps live in
        exclude_same_day: Drop slots that start today or earlier from listings
        lock_timeout_seconds: How long a booking waits for a resource lock
    """
    timezone: str = "Europe/London"
    exclude_same_day: bool = True
    lock_timeout_seconds: float = 10.0

    def __post_init__(self):
        """Validate configuration."""
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {self.timezone!r}") from None
        if self.lock_timeout_seconds <= 0:
            raise ValueError(
                f"lock_timeout_seconds must be > 0, got {self.lock_timeout_seconds}"
            )

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def localize(self, naive: datetime) -> datetime:
        """Attach the configured zone to a naive local datetime."""
        return naive.replace(tzinfo=self.zone)

    def today(self, now: datetime | None = None) -> date:
        """Current calendar date in the configured zone."""
        if now is None:
            return datetime.now(self.zone).date()
        if now.tzinfo is None:
            return now.date()
        return now.astimezone(self.zone).date()

    def to_local_naive(self, value: datetime) -> datetime:
        """Normalize an incoming timestamp to naive local time."""
        if value.tzinfo is None:
            return value
        return value.astimezone(self.zone).replace(tzinfo=None)


def time_str_to_time(value: str) -> time:
    """Parse "HH:MM" or "HH:MM:SS"."""
    return time.fromisoformat(value)


@lru_cache
def get_engine_config() -> EngineConfig:
    """
    Get engine configuration (singleton).

    Values come from application settings so deployments can change the zone.
    """
    from ...config import settings

    return EngineConfig(
        timezone=settings.timezone,
        exclude_same_day=settings.exclude_same_day,
        lock_timeout_seconds=settings.lock_timeout_seconds,
    )
