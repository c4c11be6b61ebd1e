"""Persisted schedule collection plus next-run and due-window arithmetic."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from .errors import ScheduleValidationError
from .reference_clock import ReferenceClock, day_name, day_of_week, iso, minute_of_day, parse_iso
from .state_store import SCHEDULES_KEY, StateStore

logger = logging.getLogger(__name__)

FREQUENCIES = {"weekly", "biweekly"}
WEEK_PATTERNS = {"odd", "even"}
DUE_WINDOW_BEFORE_MIN = 5
DUE_WINDOW_AFTER_MIN = 10
COOLDOWN = timedelta(hours=23)
TEST_COOLDOWN = timedelta(minutes=15)
BIWEEKLY_SCAN_DAYS = 62
MAX_TEST_PAGES = 1000

_DAY_ALIASES = {
    "sunday": 0, "sun": 0,
    "monday": 1, "mon": 1,
    "tuesday": 2, "tue": 2, "tues": 2,
    "wednesday": 3, "wed": 3,
    "thursday": 4, "thu": 4, "thurs": 4,
    "friday": 5, "fri": 5,
    "saturday": 6, "sat": 6,
}
_TIME_24H = re.compile(r"^([0-1]?\d|2[0-3]):([0-5]\d)$")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def week_of_month_parity(dt: datetime) -> str:
    """Bucket the day of month into weeks 1-5; odd buckets (1, 3, 5) are `odd`."""
    bucket = (dt.day - 1) // 7 + 1
    return "odd" if bucket % 2 == 1 else "even"


def validate_schedule(data: dict[str, Any]) -> str | None:
    """Return the first validation error message, or None when valid."""
    source = data.get("source_name")
    if not isinstance(source, str) or not source.strip():
        return "Source name is required"
    dow = _as_int(data.get("day_of_week"))
    if dow is None or not 0 <= dow <= 6:
        return "Day of week must be 0-6 (Sunday-Saturday)"
    hour = _as_int(data.get("hour"))
    if hour is None or not 0 <= hour <= 23:
        return "Hour must be 0-23"
    minute = _as_int(data.get("minute"))
    if minute is None or not 0 <= minute <= 59:
        return "Minute must be 0-59"
    frequency = data.get("frequency") or "weekly"
    if frequency not in FREQUENCIES:
        return "Frequency must be weekly or biweekly"
    if frequency == "biweekly" and data.get("week_pattern") not in WEEK_PATTERNS:
        return "Biweekly schedules require week_pattern odd or even"
    max_pages = data.get("test_max_pages")
    if max_pages is not None:
        pages = _as_int(max_pages)
        if pages is None or not 1 <= pages <= MAX_TEST_PAGES:
            return f"Test max pages must be 1-{MAX_TEST_PAGES}"
    ref = data.get("test_search_ref")
    if ref is not None and not isinstance(ref, str):
        return "Test search ref must be a string"
    for key, label in (("enabled", "Enabled"), ("test_enabled", "Test enabled")):
        if data.get(key) is not None and not isinstance(data[key], bool):
            return f"{label} must be true or false"
    return None


def parse_frequency_label(label: str | None) -> tuple[str, str | None]:
    """Map workbook labels like `1st & 3rd` to `(frequency, week_pattern)`."""
    text = str(label or "").strip().lower()
    if "1st" in text and "3rd" in text:
        return "biweekly", "odd"
    if "2nd" in text and "4th" in text:
        return "biweekly", "even"
    if "biweekly" in text and "odd" in text:
        return "biweekly", "odd"
    if "biweekly" in text and "even" in text:
        return "biweekly", "even"
    return "weekly", None


def parse_day_label(label: Any) -> int | None:
    text = str(label if label is not None else "").strip().lower()
    if text in _DAY_ALIASES:
        return _DAY_ALIASES[text]
    value = _as_int(text)
    return value if value is not None and 0 <= value <= 6 else None


def parse_time_label(label: Any) -> tuple[int, int] | None:
    match = _TIME_24H.match(str(label or "").strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def describe_schedule(schedule: dict[str, Any]) -> str:
    """Human label, e.g. `Monday at 2:30 AM (1st & 3rd week of month)`."""
    hour = int(schedule.get("hour") or 0)
    minute = int(schedule.get("minute") or 0)
    suffix = "PM" if hour >= 12 else "AM"
    text = f"{day_name(int(schedule.get('day_of_week') or 0))} at {hour % 12 or 12}:{minute:02d} {suffix}"
    if schedule.get("frequency") == "biweekly":
        if schedule.get("week_pattern") == "odd":
            text += " (1st & 3rd week of month)"
        elif schedule.get("week_pattern") == "even":
            text += " (2nd & 4th week of month)"
    return text


class ScheduleStore:
    """CRUD over the persisted `schedules` collection."""

    def __init__(self, state: StateStore, clock: ReferenceClock) -> None:
        self._state = state
        self._clock = clock

    def list_schedules(self) -> list[dict[str, Any]]:
        items = self._state.get(SCHEDULES_KEY, [])
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    def get(self, schedule_id: str) -> dict[str, Any] | None:
        for item in self.list_schedules():
            if item.get("id") == schedule_id:
                return item
        return None

    def get_by_source(self, source_name: str) -> dict[str, Any] | None:
        for item in self.list_schedules():
            if item.get("source_name") == source_name:
                return item
        return None

    def _weekly_next_run(self, schedule: dict[str, Any], now: datetime) -> datetime:
        scheduled_minutes = int(schedule["hour"]) * 60 + int(schedule["minute"])
        days_until = int(schedule["day_of_week"]) - day_of_week(now)
        if days_until == 0 and minute_of_day(now) >= scheduled_minutes:
            days_until = 7
        elif days_until < 0:
            days_until += 7
        return self._at(now, days_until, schedule)

    def _at(self, now: datetime, days_ahead: int, schedule: dict[str, Any]) -> datetime:
        target = now.date() + timedelta(days=days_ahead)
        return datetime(
            target.year,
            target.month,
            target.day,
            int(schedule["hour"]),
            int(schedule["minute"]),
            tzinfo=self._clock.zone,
        )

    def compute_next_run(self, schedule: dict[str, Any], now: datetime | None = None) -> datetime:
        """Next fire time in the reference zone; never None."""
        current = self._clock.localize(now) if now is not None else self._clock.now()
        if schedule.get("frequency") != "biweekly":
            return self._weekly_next_run(schedule, current)

        pattern = schedule.get("week_pattern")
        if pattern not in WEEK_PATTERNS:
            logger.warning("Biweekly schedule %s has invalid week_pattern %r; using weekly", schedule.get("id"), pattern)
            return self._weekly_next_run(schedule, current)

        scheduled_minutes = int(schedule["hour"]) * 60 + int(schedule["minute"])
        start = 0 if minute_of_day(current) < scheduled_minutes else 1
        dow = int(schedule["day_of_week"])
        for offset in range(start, start + BIWEEKLY_SCAN_DAYS):
            candidate = self._at(current, offset, schedule)
            if day_of_week(candidate) == dow and week_of_month_parity(candidate) == pattern:
                return candidate

        logger.warning("No %s-week match within %d days for schedule %s; using weekly", pattern, BIWEEKLY_SCAN_DAYS, schedule.get("id"))
        return self._weekly_next_run(schedule, current)

    def _normalize(self, merged: dict[str, Any], *, existing: dict[str, Any] | None) -> dict[str, Any]:
        now_iso = self._clock.now_iso()
        frequency = merged.get("frequency") or "weekly"
        test_max_pages = merged.get("test_max_pages")
        record = {
            "id": merged.get("id") or f"sched_{uuid4().hex[:12]}",
            "source_name": str(merged["source_name"]).strip(),
            "day_of_week": _as_int(merged["day_of_week"]),
            "hour": _as_int(merged["hour"]),
            "minute": _as_int(merged["minute"]),
            "frequency": frequency,
            "week_pattern": merged.get("week_pattern") if frequency == "biweekly" else None,
            "enabled": bool(merged.get("enabled", True)),
            "last_run": merged.get("last_run"),
            "next_run": None,
            "last_execution_id": merged.get("last_execution_id"),
            "test_enabled": bool(merged.get("test_enabled", False)),
            "test_search_ref": merged.get("test_search_ref"),
            "test_search_title": merged.get("test_search_title"),
            "test_max_pages": _as_int(test_max_pages) if test_max_pages is not None else None,
            "managed_by": merged.get("managed_by"),
            "created_at": (existing or {}).get("created_at") or now_iso,
            "updated_at": now_iso,
        }
        record["next_run"] = iso(self.compute_next_run(record))
        return record

    def upsert(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate, merge over an existing record by id, and persist the collection."""
        schedules = self.list_schedules()
        schedule_id = data.get("id")
        index = next((i for i, item in enumerate(schedules) if schedule_id and item.get("id") == schedule_id), None)
        existing = schedules[index] if index is not None else None
        merged = {**(existing or {}), **data}

        error = validate_schedule(merged)
        if error:
            raise ScheduleValidationError(error)

        record = self._normalize(merged, existing=existing)
        if index is None:
            schedules.append(record)
        else:
            schedules[index] = record
        self._state.set(SCHEDULES_KEY, schedules)
        logger.info("Saved schedule %s for %s (%s)", record["id"], record["source_name"], describe_schedule(record))
        return record

    def delete(self, schedule_id: str) -> bool:
        schedules = self.list_schedules()
        kept = [item for item in schedules if item.get("id") != schedule_id]
        if len(kept) == len(schedules):
            return False
        self._state.set(SCHEDULES_KEY, kept)
        return True

    def is_due(self, schedule: dict[str, Any], now: datetime) -> bool:
        if not schedule.get("enabled", True):
            return False
        if day_of_week(now) != int(schedule.get("day_of_week", -1)):
            return False
        if schedule.get("frequency") == "biweekly":
            pattern = schedule.get("week_pattern")
            if pattern not in WEEK_PATTERNS:
                logger.warning("Skipping biweekly schedule %s with invalid week_pattern %r", schedule.get("id"), pattern)
                return False
            if week_of_month_parity(now) != pattern:
                return False

        diff = minute_of_day(now) - (int(schedule["hour"]) * 60 + int(schedule["minute"]))
        if diff < -DUE_WINDOW_BEFORE_MIN or diff > DUE_WINDOW_AFTER_MIN:
            return False

        last_run = parse_iso(schedule.get("last_run"))
        if last_run is not None:
            cooldown = TEST_COOLDOWN if schedule.get("test_enabled") else COOLDOWN
            if now - last_run < cooldown:
                return False
        return True

    def due_schedules(self, now: datetime | None = None, *, exclude_source: str | None = None) -> list[dict[str, Any]]:
        current = self._clock.localize(now) if now is not None else self._clock.now()
        return [
            item
            for item in self.list_schedules()
            if not (exclude_source and item.get("source_name") == exclude_source) and self.is_due(item, current)
        ]

    def mark_run(self, schedule_id: str, execution_id: str | None = None) -> dict[str, Any] | None:
        schedules = self.list_schedules()
        for item in schedules:
            if item.get("id") != schedule_id:
                continue
            now = self._clock.now()
            item["last_run"] = iso(now)
            item["next_run"] = iso(self.compute_next_run(item, now))
            item["last_execution_id"] = execution_id
            item["updated_at"] = iso(now)
            self._state.set(SCHEDULES_KEY, schedules)
            return item
        logger.warning("mark_run: schedule %s not found", schedule_id)
        return None

    def scheduled_sources(self) -> list[str]:
        return sorted({str(item["source_name"]) for item in self.list_schedules() if item.get("enabled", True)})

    def next_scheduled_run(self) -> dict[str, Any] | None:
        """Earliest upcoming enabled schedule, with its description."""
        upcoming: list[tuple[datetime, dict[str, Any]]] = []
        now = self._clock.now()
        for item in self.list_schedules():
            if not item.get("enabled", True):
                continue
            upcoming.append((self.compute_next_run(item, now), item))
        if not upcoming:
            return None
        when, item = min(upcoming, key=lambda pair: pair[0])
        return {
            "schedule_id": item.get("id"),
            "source_name": item.get("source_name"),
            "next_run": iso(when),
            "description": describe_schedule(item),
        }

    def reconcile(self, desired: list[dict[str, Any]], *, managed_by: str) -> dict[str, Any]:
        """Upsert config-driven schedules and drop orphans carrying the same tag.

        Entries take `source_name`, `day` (name or 0-6), `time` (`HH:MM`) and a
        free-text `frequency` label such as `Weekly` or `2nd & 4th`.
        """
        upserted: list[str] = []
        skipped: list[str] = []
        wanted_sources: set[str] = set()
        for entry in desired:
            source = str(entry.get("source_name") or "").strip()
            dow = parse_day_label(entry.get("day"))
            time_of_day = parse_time_label(entry.get("time"))
            if not source or dow is None or time_of_day is None:
                skipped.append(source or "<unnamed>")
                continue
            frequency, pattern = parse_frequency_label(entry.get("frequency"))
            slug = re.sub(r"[^a-zA-Z0-9]", "_", source).lower()
            record = self.upsert(
                {
                    "id": f"ws_{slug}",
                    "source_name": source,
                    "day_of_week": dow,
                    "hour": time_of_day[0],
                    "minute": time_of_day[1],
                    "frequency": frequency,
                    "week_pattern": pattern,
                    "enabled": True,
                    "managed_by": managed_by,
                }
            )
            wanted_sources.add(source)
            upserted.append(record["id"])

        removed: list[str] = []
        for item in self.list_schedules():
            if item.get("managed_by") == managed_by and item.get("source_name") not in wanted_sources:
                if self.delete(str(item.get("id"))):
                    removed.append(str(item.get("id")))
        if removed:
            logger.info("Removed %d orphaned %s schedules", len(removed), managed_by)
        return {"ok": True, "upserted": upserted, "removed": removed, "skipped": skipped}
