"""Reference-zone clock used for all schedule arithmetic."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Callable
from zoneinfo import ZoneInfo

from .config_loader import DEFAULT_TIMEZONE, get_timezone

_DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def iso(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def day_of_week(dt: datetime) -> int:
    """Return 0=Sunday .. 6=Saturday."""
    return (dt.weekday() + 1) % 7


def day_name(dow: int) -> str:
    return _DAY_NAMES[dow % 7]


def minute_of_day(dt: datetime) -> int:
    return dt.hour * 60 + dt.minute


class ReferenceClock:
    """Wall clock pinned to the configured reference zone."""

    def __init__(self, timezone_name: str | None = None, *, now_fn: Callable[[], datetime] | None = None) -> None:
        name = timezone_name or get_timezone()
        try:
            self._zone = ZoneInfo(name)
        except Exception:
            self._zone = ZoneInfo(DEFAULT_TIMEZONE)
        self._now_fn = now_fn or _utc_now

    @property
    def zone(self) -> ZoneInfo:
        return self._zone

    def now(self) -> datetime:
        return self.localize(self._now_fn())

    def localize(self, dt: datetime) -> datetime:
        if dt.tzinfo is None:
            return dt.replace(tzinfo=self._zone)
        return dt.astimezone(self._zone)

    def now_iso(self) -> str:
        return iso(self.now())
