"""Persisted FIFO of schedules deferred while another run held the slot."""

from __future__ import annotations

import logging
from typing import Any

from .reference_clock import ReferenceClock, parse_iso
from .state_store import PENDING_SCHEDULES_KEY, StateStore

logger = logging.getLogger(__name__)


def is_stale(entry: dict[str, Any], live: dict[str, Any] | None) -> bool:
    """An entry is stale once its schedule is gone, disabled, or has run since queueing."""
    if live is None or not live.get("enabled", True):
        return True
    last_run = parse_iso(live.get("last_run"))
    queued_at = parse_iso(entry.get("queued_at"))
    return last_run is not None and queued_at is not None and last_run > queued_at


class PendingQueue:
    """At most one entry per schedule id, oldest first."""

    def __init__(self, state: StateStore, clock: ReferenceClock) -> None:
        self._state = state
        self._clock = clock

    def list_entries(self) -> list[dict[str, Any]]:
        items = self._state.get(PENDING_SCHEDULES_KEY, [])
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    def __len__(self) -> int:
        return len(self.list_entries())

    def enqueue(self, schedule: dict[str, Any]) -> bool:
        schedule_id = schedule.get("id")
        added = False

        def _append(items: Any) -> list[dict[str, Any]]:
            nonlocal added
            entries = [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []
            if any(item.get("id") == schedule_id for item in entries):
                return entries
            entries.append({**schedule, "queued_at": self._clock.now_iso()})
            added = True
            return entries

        self._state.mutate(PENDING_SCHEDULES_KEY, _append, [])
        if added:
            logger.info("Queued schedule %s (%s) until the active run finishes", schedule_id, schedule.get("source_name"))
        return added

    def peek_oldest(self) -> dict[str, Any] | None:
        entries = self.list_entries()
        if not entries:
            return None
        return min(entries, key=lambda item: parse_iso(item.get("queued_at")) or self._clock.now())

    def remove(self, schedule_id: str) -> bool:
        removed = False

        def _drop(items: Any) -> list[dict[str, Any]]:
            nonlocal removed
            entries = [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []
            kept = [item for item in entries if item.get("id") != schedule_id]
            removed = len(kept) != len(entries)
            return kept

        self._state.mutate(PENDING_SCHEDULES_KEY, _drop, [])
        return removed

    def clear(self) -> int:
        count = len(self.list_entries())
        self._state.set(PENDING_SCHEDULES_KEY, [])
        return count
