"""Capped, newest-first history of run attempts."""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from .reference_clock import ReferenceClock
from .state_store import EXECUTION_HISTORY_KEY, StateStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 100
STATUSES = {"running", "completed", "failed"}


class ExecutionLedger:
    def __init__(self, state: StateStore, clock: ReferenceClock, *, max_records: int = DEFAULT_MAX_RECORDS) -> None:
        self._state = state
        self._clock = clock
        self._max_records = max(1, int(max_records))

    def _records(self, items: Any) -> list[dict[str, Any]]:
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    def append(self, partial: dict[str, Any]) -> dict[str, Any]:
        record = {
            "schedule_id": None,
            "source_name": None,
            "completed_at": None,
            "searches_completed": 0,
            "total_searches": 0,
            "profiles_scraped": 0,
            "error": None,
            "workbook_id": None,
            "tab_name": None,
            **partial,
            "id": partial.get("id") or f"exec_{uuid4().hex[:16]}",
            "started_at": self._clock.now_iso(),
            "status": "running",
        }

        def _prepend(items: Any) -> list[dict[str, Any]]:
            return [record, *self._records(items)][: self._max_records]

        self._state.mutate(EXECUTION_HISTORY_KEY, _prepend, [])
        return record

    def update(self, execution_id: str | None, patch: dict[str, Any]) -> dict[str, Any] | None:
        """Merge `patch`; a terminal status stamps `completed_at` once."""
        if not execution_id:
            return None
        updated: dict[str, Any] | None = None

        def _merge(items: Any) -> list[dict[str, Any]]:
            nonlocal updated
            records = self._records(items)
            for record in records:
                if record.get("id") != execution_id:
                    continue
                record.update(patch)
                if record.get("status") != "running" and not record.get("completed_at"):
                    record["completed_at"] = self._clock.now_iso()
                updated = dict(record)
                break
            return records

        self._state.mutate(EXECUTION_HISTORY_KEY, _merge, [])
        if updated is None:
            logger.warning("Execution record %s not found; update skipped", execution_id)
        return updated

    def get(self, execution_id: str) -> dict[str, Any] | None:
        for record in self.list_records(limit=self._max_records):
            if record.get("id") == execution_id:
                return record
        return None

    def list_records(self, *, limit: int = 50) -> list[dict[str, Any]]:
        safe_limit = max(1, min(self._max_records, int(limit)))
        records = self._records(self._state.get(EXECUTION_HISTORY_KEY, []))
        records.sort(key=lambda item: str(item.get("started_at") or ""), reverse=True)
        return records[:safe_limit]
