"""Shared runtime ownership facade for daemon/app entrypoints."""

from __future__ import annotations

import logging
import time
from threading import Event, RLock, Thread
from typing import Any, Callable

from src.savvy_pirate.core.collaborators import ScrapeCompletionChannel, ScraperBridge
from src.savvy_pirate.core.config_loader import get_scheduler_config
from src.savvy_pirate.core.coordinator import ExecutionCoordinator
from src.savvy_pirate.core.crash_recovery import CrashRecovery
from src.savvy_pirate.core.errors import ScheduleValidationError
from src.savvy_pirate.core.reference_clock import ReferenceClock
from src.savvy_pirate.core.schedule_store import describe_schedule
from src.savvy_pirate.core.state_store import StateStore
from src.savvy_pirate.tools.kernel.google_auth import GoogleOAuthProvider
from src.savvy_pirate.tools.kernel.google_sheets import GoogleSheetsClient, InputSheetSearchCatalog
from src.savvy_pirate.tools.kernel.webhook_notifier import WebhookNotifier

logger = logging.getLogger(__name__)

MANAGED_BY_CONFIG = "config"


def build_default_components() -> dict[str, Any]:
    state = StateStore()
    clock = ReferenceClock()
    channel = ScrapeCompletionChannel()
    bridge = ScraperBridge(channel)
    auth = GoogleOAuthProvider()
    sheets = GoogleSheetsClient(auth=auth, clock=clock)
    notifier = WebhookNotifier(state)
    coordinator = ExecutionCoordinator(
        state=state,
        clock=clock,
        scraper=bridge,
        channel=channel,
        sheets=sheets,
        catalog=InputSheetSearchCatalog(sheets),
        auth=auth,
        notifier=notifier,
    )
    return {"coordinator": coordinator, "bridge": bridge, "notifier": notifier, "sheets": sheets}


class RuntimeService:
    """Single authority for runtime lifecycle + app-facing operations."""

    def __init__(
        self,
        *,
        coordinator: ExecutionCoordinator | None = None,
        bridge: ScraperBridge | None = None,
        notifier: WebhookNotifier | None = None,
        sheets: GoogleSheetsClient | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        if coordinator is None:
            parts = build_default_components()
            coordinator = parts["coordinator"]
            bridge = bridge or parts["bridge"]
            notifier = notifier or parts["notifier"]
            sheets = sheets or parts["sheets"]
        self._coordinator = coordinator
        self._bridge = bridge
        self._notifier = notifier
        self._sheets = sheets
        self._lock = RLock()
        self._stop_event = Event()
        self._loop_thread: Thread | None = None
        self._recovery_thread: Thread | None = None
        self._monotonic = monotonic or time.monotonic
        self._last_token_refresh: float | None = None
        self._last_auth_check: dict[str, Any] | None = None
        self._recovered = False
        self._last_recovery: dict[str, Any] | None = None
        self._last_tick: dict[str, Any] | None = None
        self._last_start_source: str | None = None
        self._last_stop_source: str | None = None

    @property
    def coordinator(self) -> ExecutionCoordinator:
        return self._coordinator

    # -- lifecycle ----------------------------------------------------------

    def _reconcile_managed_schedules(self) -> dict[str, Any] | None:
        desired = get_scheduler_config().get("managed_schedules")
        if not isinstance(desired, list):
            return None
        entries = [item for item in desired if isinstance(item, dict)]
        return self._coordinator.schedules.reconcile(entries, managed_by=MANAGED_BY_CONFIG)

    def recover(self) -> dict[str, Any]:
        with self._lock:
            if self._recovered:
                return {"ok": True, "already_recovered": True, "result": self._last_recovery}
            self._recovered = True
        result = CrashRecovery(self._coordinator).run()
        with self._lock:
            self._last_recovery = result
        return {"ok": True, "already_recovered": False, "result": result}

    def start(self, *, source: str = "runtime") -> dict[str, Any]:
        with self._lock:
            self._last_start_source = source
            if self._loop_thread is not None and self._loop_thread.is_alive():
                return {"ok": True, "running": True, "already_running": True, "start_source": source}

        reconcile = self._reconcile_managed_schedules()

        with self._lock:
            self._stop_event.clear()
            self._loop_thread = Thread(target=self._run_loop, daemon=True, name="savvy-pirate-scheduler")
            self._loop_thread.start()
            if not self._recovered and self._recovery_thread is None:
                self._recovery_thread = Thread(target=self._startup, daemon=True, name="savvy-pirate-recovery")
                self._recovery_thread.start()
        logger.info("Scheduler loop started (source=%s)", source)
        return {
            "ok": True,
            "running": True,
            "already_running": False,
            "start_source": source,
            "reconcile": reconcile,
        }

    def stop(self, *, source: str = "runtime") -> dict[str, Any]:
        with self._lock:
            thread = self._loop_thread
            self._stop_event.set()
            self._last_stop_source = source
        if thread is not None and thread.is_alive():
            thread.join(timeout=2.0)
        with self._lock:
            self._loop_thread = None
        logger.info("Scheduler loop stopped (source=%s)", source)
        return {"ok": True, "running": False, "stop_source": source}

    def is_running(self) -> bool:
        with self._lock:
            return self._loop_thread is not None and self._loop_thread.is_alive()

    def _startup(self) -> None:
        """Auth check then crash recovery, off the tick thread so due schedules keep queueing."""
        try:
            self.check_auth()
            self.recover()
        except Exception:
            logger.exception("Crash recovery failed")

    def check_auth(self) -> dict[str, Any]:
        out = self._coordinator.check_auth(context="startup")
        with self._lock:
            self._last_auth_check = out
            self._last_token_refresh = self._monotonic()
        return out

    def refresh_token_if_due(self) -> dict[str, Any] | None:
        interval = self._coordinator.settings.token_refresh_interval_sec
        now = self._monotonic()
        with self._lock:
            if self._last_token_refresh is not None and now - self._last_token_refresh < interval:
                return None
            self._last_token_refresh = now
        return self._coordinator.refresh_auth()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            if self._recovered:
                self.refresh_token_if_due()
            wait_for = max(1, self._coordinator.settings.tick_interval_sec)
            self._stop_event.wait(timeout=wait_for)

    def tick(self) -> dict[str, Any]:
        out = self._coordinator.tick()
        with self._lock:
            self._last_tick = out
        return out

    def health(self) -> dict[str, Any]:
        with self._lock:
            last_tick = self._last_tick
            last_auth_check = self._last_auth_check
        return {
            "ok": True,
            "source": "runtime_service",
            "running": self.is_running(),
            "recovered": self._recovered,
            "last_tick": last_tick,
            "last_auth_check": last_auth_check,
            "last_start_source": self._last_start_source,
            "last_stop_source": self._last_stop_source,
        }

    def status(self) -> dict[str, Any]:
        out = self._coordinator.status()
        out["service"] = {"running": self.is_running(), "recovered": self._recovered}
        return out

    # -- schedules ----------------------------------------------------------

    def list_schedules(self) -> dict[str, Any]:
        schedules = [
            {**item, "description": describe_schedule(item)} for item in self._coordinator.schedules.list_schedules()
        ]
        return {"ok": True, "schedules": schedules, "next_scheduled_run": self._coordinator.schedules.next_scheduled_run()}

    def upsert_schedule(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            schedule = self._coordinator.schedules.upsert(payload)
        except ScheduleValidationError as exc:
            return {"ok": False, "error": str(exc)}
        return {"ok": True, "schedule": schedule, "description": describe_schedule(schedule)}

    def delete_schedule(self, *, schedule_id: str) -> dict[str, Any]:
        deleted = self._coordinator.schedules.delete(schedule_id)
        return {"ok": deleted, "schedule_id": schedule_id, "deleted": deleted}

    def trigger_schedule(self, *, schedule_id: str) -> dict[str, Any]:
        return self._coordinator.trigger_schedule(schedule_id)

    def scheduled_sources(self) -> dict[str, Any]:
        return {"ok": True, "sources": self._coordinator.schedules.scheduled_sources()}

    # -- runs -----------------------------------------------------------------

    def start_manual_run(
        self,
        *,
        source_name: str,
        units: list[dict[str, Any]] | None = None,
        max_pages: int | None = None,
    ) -> dict[str, Any]:
        return self._coordinator.start_manual_run(source_name, units, max_pages=max_pages)

    def stop_manual_run(self) -> dict[str, Any]:
        return self._coordinator.stop_manual_run()

    def start_auto_run(self, *, sources: list[str], max_pages: int | None = None) -> dict[str, Any]:
        return self._coordinator.start_auto_run(sources, max_pages=max_pages)

    def stop_auto_run(self) -> dict[str, Any]:
        return self._coordinator.stop_auto_run()

    def execution_history(self, *, limit: int = 50) -> dict[str, Any]:
        return {"ok": True, "history": self._coordinator.execution_history(limit=limit)}

    # -- source mapping / notifications ----------------------------------------

    def get_source_mapping(self) -> dict[str, Any]:
        return {"ok": True, "mapping": self._coordinator.get_source_mapping()}

    def set_source_mapping(self, *, mapping: dict[str, Any]) -> dict[str, Any]:
        return {"ok": True, "mapping": self._coordinator.set_source_mapping(mapping)}

    def set_webhook_url(self, *, url: str | None) -> dict[str, Any]:
        if self._notifier is None:
            return {"ok": False, "error": "Notifications are not configured."}
        return self._notifier.set_webhook_url(url)

    def test_webhook(self) -> dict[str, Any]:
        if self._notifier is None:
            return {"ok": False, "error": "Notifications are not configured."}
        return self._notifier.send_test()

    # -- scraper bridge -------------------------------------------------------

    def scraper_commands(self) -> dict[str, Any]:
        if self._bridge is None:
            return {"ok": False, "error": "Scraper bridge is not configured."}
        return {"ok": True, "commands": self._bridge.drain_commands()}

    def report_unit_complete(self, *, total_profiles: int) -> dict[str, Any]:
        accepted = self._coordinator.channel.complete(total_profiles)
        return {"ok": True, "accepted": accepted}

    def report_unit_aborted(self, *, reason: str) -> dict[str, Any]:
        accepted = self._coordinator.channel.abort(reason)
        return {"ok": True, "accepted": accepted}

    def report_session_lost(self, *, status: str, message: str) -> dict[str, Any]:
        accepted = self._coordinator.channel.session_lost(status, message)
        return {"ok": True, "accepted": accepted}

    def append_profiles(self, *, source_name: str, rows: list[list[Any]]) -> dict[str, Any]:
        workbook_id = self._coordinator.get_source_mapping().get(source_name)
        if not workbook_id:
            return {"ok": False, "error": f"No workbook mapped for source: {source_name}"}
        if self._sheets is None:
            return {"ok": False, "error": "Sheets client is not configured."}
        tab = self._sheets.ensure_destination_tab(workbook_id)
        return self._sheets.append_rows(workbook_id, str(tab["tab_name"]), rows)


_RUNTIME_SERVICE: RuntimeService | None = None


def get_runtime_service() -> RuntimeService:
    global _RUNTIME_SERVICE
    if _RUNTIME_SERVICE is None:
        _RUNTIME_SERVICE = RuntimeService()
    return _RUNTIME_SERVICE
