"""Collaborator seams used by the coordinator plus the scrape completion channel."""

from __future__ import annotations

from threading import Event, Lock
from typing import Any, Protocol

from .reference_clock import _utc_now, iso

NOTIFY_EVENT_TYPES = {"run_started", "run_completed", "run_failed", "unit_failed", "auth_expired", "test"}


class Scraper(Protocol):
    def start_unit(self, *, unit: dict[str, Any], source_name: str, max_pages: int | None) -> None: ...

    def stop_unit(self, *, reason: str) -> None: ...

    def visit(self, url: str, *, duration_sec: float) -> None: ...


class SheetsClient(Protocol):
    def ensure_destination_tab(self, workbook_id: str) -> dict[str, Any]: ...

    def sheet_url(self, workbook_id: str, tab_name: str | None = None) -> str | None: ...


class SearchCatalog(Protocol):
    def list_units(self, source_name: str) -> list[dict[str, Any]]: ...


class AuthProvider(Protocol):
    def get_access_token(self, *, interactive: bool = False) -> str: ...


class Notifier(Protocol):
    def notify(self, event_type: str, payload: dict[str, Any]) -> bool: ...


class ScrapeCompletionChannel:
    """One-shot waiter for the scraper's completion report.

    `reset()` arms the channel before a unit starts; `complete()` or `abort()`
    wakes the waiter. A report that arrives while nobody is armed is dropped.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._event = Event()
        self._armed = False
        self._result: dict[str, Any] | None = None

    def reset(self) -> None:
        with self._lock:
            self._event.clear()
            self._result = None
            self._armed = True

    def complete(self, total_profiles: int = 0, **extra: Any) -> bool:
        return self._resolve({**extra, "total_profiles": max(0, int(total_profiles or 0))})

    def abort(self, reason: str = "aborted") -> bool:
        return self._resolve({"aborted": True, "reason": reason, "total_profiles": 0})

    def session_lost(self, status: str, message: str = "") -> bool:
        """Report LinkedIn as `signed_out` or `checkpoint`; the waiting run fails."""
        return self._resolve({"session_status": status, "reason": message or status, "total_profiles": 0})

    def _resolve(self, result: dict[str, Any]) -> bool:
        with self._lock:
            if not self._armed:
                return False
            self._armed = False
            self._result = result
            self._event.set()
        return True

    def wait(self, timeout_sec: float) -> dict[str, Any]:
        if not self._event.wait(timeout=max(0.0, float(timeout_sec))):
            with self._lock:
                self._armed = False
            return {"timeout": True, "total_profiles": 0}
        with self._lock:
            return dict(self._result or {"total_profiles": 0})


class ScraperBridge:
    """Scraper that hands commands to an out-of-process browser agent.

    The agent polls `drain_commands()` through the command surface and reports
    back through the completion channel.
    """

    def __init__(self, channel: ScrapeCompletionChannel) -> None:
        self._channel = channel
        self._lock = Lock()
        self._commands: list[dict[str, Any]] = []

    @property
    def channel(self) -> ScrapeCompletionChannel:
        return self._channel

    def _push(self, command: dict[str, Any]) -> None:
        with self._lock:
            self._commands.append({**command, "issued_at": iso(_utc_now())})

    def start_unit(self, *, unit: dict[str, Any], source_name: str, max_pages: int | None) -> None:
        self._push({"type": "start_unit", "unit": dict(unit), "source_name": source_name, "max_pages": max_pages})

    def stop_unit(self, *, reason: str) -> None:
        self._push({"type": "stop_unit", "reason": reason})

    def visit(self, url: str, *, duration_sec: float) -> None:
        self._push({"type": "visit", "url": url, "duration_sec": duration_sec})

    def drain_commands(self) -> list[dict[str, Any]]:
        with self._lock:
            out = self._commands
            self._commands = []
        return out
