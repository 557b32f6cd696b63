"""
Period Resolver - Calendar month boundaries in a reference timezone.

The free allowance refills on the first day of each calendar month. "First day"
is evaluated in a configured IANA timezone (Europe/Dublin by default) so the
boundary does not drift with server locale; every value returned is an aware
UTC datetime.
"""

from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from metering.config import settings


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a stored timestamp to aware UTC (naive values are UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class PeriodResolver:
    """Computes calendar-month period boundaries."""

    def __init__(self, timezone_name: str | None = None) -> None:
        self.timezone_name = timezone_name or settings.period_timezone
        self.zone = ZoneInfo(self.timezone_name)

    def _local(self, now: datetime | None) -> datetime:
        moment = as_utc(now) or utc_now()
        return moment.astimezone(self.zone)

    def current_period_start(self, now: datetime | None = None) -> datetime:
        """First instant of the current month in the reference timezone, as UTC."""
        local = self._local(now)
        start = datetime(local.year, local.month, 1, tzinfo=self.zone)
        return start.astimezone(UTC)

    def current_day_start(self, now: datetime | None = None) -> datetime:
        """Local midnight of the current day in the reference timezone, as UTC."""
        local = self._local(now)
        return datetime(local.year, local.month, local.day, tzinfo=self.zone).astimezone(UTC)

    def next_period_start(self, now: datetime | None = None) -> datetime:
        """First instant of the following month in the reference timezone, as UTC."""
        local = self._local(now)
        if local.month == 12:
            start = datetime(local.year + 1, 1, 1, tzinfo=self.zone)
        else:
            start = datetime(local.year, local.month + 1, 1, tzinfo=self.zone)
        return start.astimezone(UTC)

    def needs_reset(self, last_reset: datetime | None, now: datetime | None = None) -> bool:
        """True when the allowance was never reset or was last reset before this period."""
        if last_reset is None:
            return True
        boundary = self.current_period_start(now)
        return as_utc(last_reset) < boundary  # type: ignore[operator]
