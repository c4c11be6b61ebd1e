"""Single-flight execution coordinator for scheduled, manual, and automatic runs."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from threading import Event, RLock, Thread
from typing import Any, Callable, NoReturn

from .collaborators import AuthProvider, Notifier, Scraper, ScrapeCompletionChannel, SearchCatalog, SheetsClient
from .config_loader import get_scheduler_config, get_source_mapping_config
from .errors import AuthenticationRequiredError, ConfigurationError, LinkedInSessionError
from .execution_ledger import DEFAULT_MAX_RECORDS, ExecutionLedger
from .pending_queue import PendingQueue, is_stale
from .reference_clock import ReferenceClock
from .run_state import RunConfig, RunKind, RunProgress, RunState, RunStateRepository
from .schedule_store import ScheduleStore, describe_schedule
from .state_store import SOURCE_MAPPING_KEY, StateStore

logger = logging.getLogger(__name__)

DEFAULT_NOISE_URLS = [
    "https://www.linkedin.com/feed/",
    "https://www.linkedin.com/mynetwork/",
    "https://www.linkedin.com/notifications/",
    "https://www.linkedin.com/jobs/",
]
MANUAL_ABORT_ERROR = "Manually aborted"
SESSION_EVENTS = {"signed_out": "linkedin_signed_out", "checkpoint": "linkedin_checkpoint"}


@dataclass(slots=True)
class SchedulerSettings:
    tick_interval_sec: int = 60
    token_refresh_interval_sec: int = 2700
    unit_timeout_sec: int = 1800
    between_units_min_sec: float = 60.0
    between_units_max_sec: float = 120.0
    noise_chance: float = 0.4
    noise_min_sec: float = 25.0
    noise_max_sec: float = 75.0
    noise_urls: list[str] = field(default_factory=lambda: list(DEFAULT_NOISE_URLS))
    history_max_records: int = DEFAULT_MAX_RECORDS
    default_max_pages: int | None = None


def _positive_number(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value) if value >= 0 else default


def load_scheduler_settings(config: dict[str, Any] | None = None) -> SchedulerSettings:
    block = get_scheduler_config(config)
    if not block:
        return SchedulerSettings()

    tick = block.get("tick_interval_sec", 60)
    refresh = block.get("token_refresh_interval_sec", 2700)
    timeout = block.get("unit_timeout_sec", 1800)
    history = block.get("history_max_records", DEFAULT_MAX_RECORDS)
    max_pages = block.get("default_max_pages")
    delay_min = _positive_number(block.get("between_units_min_sec"), 60.0)
    delay_max = _positive_number(block.get("between_units_max_sec"), 120.0)
    noise_min = _positive_number(block.get("noise_min_sec"), 25.0)
    noise_max = _positive_number(block.get("noise_max_sec"), 75.0)
    chance = _positive_number(block.get("noise_chance"), 0.4)
    urls = block.get("noise_urls")

    return SchedulerSettings(
        tick_interval_sec=int(tick) if isinstance(tick, int) and tick > 0 else 60,
        token_refresh_interval_sec=int(refresh) if isinstance(refresh, int) and refresh > 0 else 2700,
        unit_timeout_sec=int(timeout) if isinstance(timeout, int) and timeout > 0 else 1800,
        between_units_min_sec=min(delay_min, delay_max),
        between_units_max_sec=max(delay_min, delay_max),
        noise_chance=min(1.0, chance),
        noise_min_sec=min(noise_min, noise_max),
        noise_max_sec=max(noise_min, noise_max),
        noise_urls=[u for u in urls if isinstance(u, str) and u.strip()] if isinstance(urls, list) else list(DEFAULT_NOISE_URLS),
        history_max_records=int(history) if isinstance(history, int) and history > 0 else DEFAULT_MAX_RECORDS,
        default_max_pages=int(max_pages) if isinstance(max_pages, int) and 1 <= max_pages <= 1000 else None,
    )


def _thread_spawn(target: Callable[[], Any]) -> None:
    Thread(target=target, daemon=True, name="savvy-pirate-run").start()


class ExecutionCoordinator:
    """Owns both run slots, the pending queue, and every ledger status transition.

    Single-flight is a lock-guarded check-then-act over an in-memory slot
    reservation plus both persisted RunStates. The reservation is taken
    before a run is spawned and released only after its RunState is cleared.
    """

    def __init__(
        self,
        *,
        state: StateStore,
        clock: ReferenceClock,
        scraper: Scraper,
        channel: ScrapeCompletionChannel,
        sheets: SheetsClient,
        catalog: SearchCatalog,
        auth: AuthProvider,
        notifier: Notifier | None = None,
        settings: SchedulerSettings | None = None,
        spawn: Callable[[Callable[[], Any]], None] | None = None,
        sleep: Callable[[float], Any] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings or load_scheduler_settings()
        self._state = state
        self._clock = clock
        self._scraper = scraper
        self._channel = channel
        self._sheets = sheets
        self._catalog = catalog
        self._auth = auth
        self._notifier = notifier
        self._schedules = ScheduleStore(state, clock)
        self._pending = PendingQueue(state, clock)
        self._ledger = ExecutionLedger(state, clock, max_records=self._settings.history_max_records)
        self._runs = RunStateRepository(state)
        self._spawn = spawn or _thread_spawn
        self._interrupt = Event()
        self._sleep = sleep or (lambda seconds: self._interrupt.wait(timeout=seconds))
        self._rng = rng or random.Random()
        self._lock = RLock()
        self._reservation: dict[str, Any] | None = None
        self._draining = False

    @property
    def settings(self) -> SchedulerSettings:
        return self._settings

    @property
    def schedules(self) -> ScheduleStore:
        return self._schedules

    @property
    def pending(self) -> PendingQueue:
        return self._pending

    @property
    def ledger(self) -> ExecutionLedger:
        return self._ledger

    @property
    def run_states(self) -> RunStateRepository:
        return self._runs

    @property
    def channel(self) -> ScrapeCompletionChannel:
        return self._channel

    # -- single-flight slot ---------------------------------------------

    def reserve_slot(self, kind: RunKind, source_name: str | None, *, resuming: str | None = None) -> bool:
        """Take the slot; `resuming` lets a restart reclaim the persisted run with that execution id."""
        with self._lock:
            if self._reservation is not None:
                return False
            for state in (self._runs.load("auto"), self._runs.load("manual")):
                if state.is_running and not (resuming is not None and state.execution_id == resuming):
                    return False
            self._reservation = {"kind": kind, "source_name": source_name}
            return True

    def release_slot(self) -> None:
        with self._lock:
            self._reservation = None

    def is_run_active(self) -> bool:
        with self._lock:
            return self._reservation is not None or self._runs.any_running()

    def active_source(self) -> str | None:
        with self._lock:
            if self._reservation is not None and self._reservation.get("source_name"):
                return str(self._reservation["source_name"])
        for kind in ("auto", "manual"):
            current = self._runs.load(kind)
            if current.is_running:
                if current.progress.current_source:
                    return current.progress.current_source
                return current.config.sources[0] if current.config.sources else None
        return None

    # -- collaborators ----------------------------------------------------

    def notify(self, event_type: str, payload: dict[str, Any]) -> bool:
        if self._notifier is None:
            return False
        try:
            return bool(self._notifier.notify(event_type, payload))
        except Exception:
            logger.warning("Notifier failed for %s", event_type, exc_info=True)
            return False

    def check_auth(self, *, context: str = "startup") -> dict[str, Any]:
        """Non-interactive token check; a failure notifies `auth_expired` and is reported, not raised."""
        try:
            self._auth.get_access_token(interactive=False)
        except AuthenticationRequiredError as exc:
            message = f"Google auth unavailable on {context}: {exc}"
            logger.warning("Google auth unavailable on %s: %s", context, exc)
            self.notify("auth_expired", {"message": message, "source_name": "Savvy Pirate", "details": str(exc)})
            return {"ok": False, "context": context, "error": str(exc)}
        return {"ok": True, "context": context, "error": None}

    def refresh_auth(self) -> dict[str, Any]:
        """Keep the cached token warm between runs; failures only log."""
        try:
            self._auth.get_access_token(interactive=False)
        except Exception as exc:
            logger.warning("Token refresh check failed: %s", exc)
            return {"ok": False, "error": str(exc)}
        return {"ok": True, "error": None}

    def get_source_mapping(self) -> dict[str, str]:
        stored = self._state.get(SOURCE_MAPPING_KEY)
        if isinstance(stored, dict):
            return {str(k): str(v) for k, v in stored.items() if isinstance(v, str) and v.strip()}
        return get_source_mapping_config()

    def set_source_mapping(self, mapping: dict[str, Any]) -> dict[str, str]:
        clean = {
            str(source).strip(): str(workbook).strip()
            for source, workbook in mapping.items()
            if isinstance(source, str) and source.strip() and isinstance(workbook, str) and workbook.strip()
        }
        self._state.set(SOURCE_MAPPING_KEY, clean)
        return clean

    # -- tick / drain -------------------------------------------------------

    def tick(self, now: datetime | None = None) -> dict[str, Any]:
        current = self._clock.localize(now) if now is not None else self._clock.now()

        if self.is_run_active():
            due = self._schedules.due_schedules(current, exclude_source=self.active_source())
            queued = [item["id"] for item in due if self._pending.enqueue(item)]
            return {"ok": True, "action": "queued", "due": [item["id"] for item in due], "queued": queued, "started": []}

        if len(self._pending) > 0:
            self._spawn(self.drain_pending)
            return {"ok": True, "action": "drain", "due": [], "queued": [], "started": []}

        due = self._schedules.due_schedules(current)
        started: list[str] = []
        queued: list[str] = []
        for item in due:
            if self._launch_scheduled(item):
                started.append(item["id"])
            elif self._pending.enqueue(item):
                queued.append(item["id"])
        action = "started" if started else "idle"
        return {"ok": True, "action": action, "due": [item["id"] for item in due], "queued": queued, "started": started}

    def _launch_scheduled(self, schedule: dict[str, Any]) -> bool:
        if not self.reserve_slot("auto", schedule.get("source_name")):
            return False
        self._spawn(lambda: self._run_reserved_schedule(schedule))
        return True

    def _run_reserved_schedule(self, schedule: dict[str, Any]) -> None:
        try:
            self.execute_scheduled_run(schedule, reserved=True)
        except AuthenticationRequiredError:
            logger.error("Scheduled run for %s skipped: authentication required", schedule.get("source_name"))

    def drain_pending(self) -> dict[str, Any]:
        """Run deferred schedules one at a time until the queue empties or a run holds the slot."""
        with self._lock:
            if self._draining:
                return {"ok": True, "skipped": "already_draining", "executed": [], "dropped": []}
            self._draining = True

        executed: list[str] = []
        dropped: list[str] = []
        try:
            while True:
                if self.is_run_active():
                    break
                entry = self._pending.peek_oldest()
                if entry is None:
                    break
                schedule_id = str(entry.get("id"))
                live = self._schedules.get(schedule_id)
                if is_stale(entry, live):
                    self._pending.remove(schedule_id)
                    dropped.append(schedule_id)
                    logger.info("Dropped stale pending schedule %s", schedule_id)
                    continue
                if live is None:
                    continue
                if not self.reserve_slot("auto", live.get("source_name")):
                    break
                self._pending.remove(schedule_id)
                try:
                    self.execute_scheduled_run(live, reserved=True)
                except Exception:
                    logger.exception("Pending schedule %s failed; draining stops until next tick", schedule_id)
                    break
                executed.append(schedule_id)
        finally:
            with self._lock:
                self._draining = False
        return {"ok": True, "executed": executed, "dropped": dropped}

    # -- scheduled runs -----------------------------------------------------

    def _resolve_units(self, schedule: dict[str, Any]) -> tuple[list[dict[str, Any]], int | None]:
        source = str(schedule["source_name"])
        if not schedule.get("test_enabled"):
            return self._catalog.list_units(source), self._settings.default_max_pages

        ref = schedule.get("test_search_ref")
        if isinstance(ref, str) and ref.strip():
            unit = {"source": source, "title": schedule.get("test_search_title") or "Test search", "url": ref.strip()}
            units = [unit]
        else:
            units = self._catalog.list_units(source)[:1]
        return units, schedule.get("test_max_pages") or self._settings.default_max_pages

    def _prepare_destinations(self, sources: list[str]) -> dict[str, dict[str, Any]]:
        mapping = self.get_source_mapping()
        out: dict[str, dict[str, Any]] = {}
        for source in sources:
            workbook_id = mapping.get(source)
            if not workbook_id:
                continue
            tab = self._sheets.ensure_destination_tab(workbook_id)
            out[source] = {"workbook_id": workbook_id, "tab_name": tab.get("tab_name")}
        return out

    def execute_scheduled_run(self, schedule: dict[str, Any], *, reserved: bool = False) -> dict[str, Any]:
        source = str(schedule.get("source_name") or "")
        if not reserved and not self.reserve_slot("auto", source):
            queued = self._pending.enqueue(schedule)
            return {"ok": False, "error": "Another run is already active.", "queued": queued}

        execution_id: str | None = None
        drain_after = True
        try:
            try:
                self._auth.get_access_token(interactive=False)
            except Exception as exc:
                drain_after = False
                message = f"Authentication failed: {exc}"
                record = self._ledger.append({"schedule_id": schedule.get("id"), "source_name": source})
                self._ledger.update(record["id"], {"status": "failed", "error": message})
                self.notify("auth_expired", {"message": message, "source_name": source, "schedule_id": schedule.get("id")})
                raise AuthenticationRequiredError(message) from exc

            record = self._ledger.append({"schedule_id": schedule.get("id"), "source_name": source, "total_searches": 0})
            execution_id = record["id"]
            self._schedules.mark_run(str(schedule.get("id")), execution_id)
            self.notify(
                "run_started",
                {
                    "message": f"Scheduled run started for {source}",
                    "source_name": source,
                    "execution_id": execution_id,
                    "schedule": describe_schedule(schedule),
                    "test_mode": bool(schedule.get("test_enabled")),
                },
            )
            logger.info("Scheduled run %s started for %s", execution_id, source)

            try:
                units, max_pages = self._resolve_units(schedule)
                if not units:
                    raise ConfigurationError(f"No searches found for source: {source}")
                if source not in self.get_source_mapping():
                    raise ConfigurationError(f"No workbook mapped for source: {source}")
                destinations = self._prepare_destinations([source])
                self._ledger.update(execution_id, {"total_searches": len(units), **destinations.get(source, {})})

                self._runs.save(
                    RunState(
                        kind="auto",
                        is_running=True,
                        execution_id=execution_id,
                        started_at=record["started_at"],
                        config=RunConfig(
                            sources=[source],
                            grouped_units={source: units},
                            max_pages=max_pages,
                            schedule_id=schedule.get("id"),
                        ),
                        progress=RunProgress(current_source=source, total_units=len(units)),
                    )
                )
                outcome = self.run_unit_loop("auto")
                return self._finalize(execution_id, outcome, source=source)
            except Exception as exc:
                logger.exception("Scheduled run %s for %s failed", execution_id, source)
                self._ledger.update(execution_id, {"status": "failed", "error": str(exc)})
                self.notify(
                    "run_failed",
                    {"message": f"Scheduled run failed for {source}: {exc}", "source_name": source, "execution_id": execution_id},
                )
                return {"ok": False, "execution_id": execution_id, "status": "failed", "error": str(exc)}
        finally:
            if execution_id is not None:
                self._runs.clear_if_owned("auto", execution_id)
            self.release_slot()
            if drain_after:
                self.drain_pending()

    def _finalize(self, execution_id: str, outcome: str, *, source: str, kind: RunKind = "auto") -> dict[str, Any]:
        progress = self._runs.load(kind).progress
        counts = {"searches_completed": progress.completed_units, "profiles_scraped": progress.total_profiles}
        if outcome == "aborted":
            self._ledger.update(execution_id, {**counts, "status": "failed", "error": MANUAL_ABORT_ERROR})
            logger.info("Run %s for %s aborted", execution_id, source)
            return {"ok": True, "execution_id": execution_id, "status": "failed", "error": MANUAL_ABORT_ERROR}

        self._ledger.update(execution_id, {**counts, "status": "completed"})
        self.notify(
            "run_completed",
            {
                "message": f"Run completed for {source}",
                "source_name": source,
                "execution_id": execution_id,
                "searches_completed": progress.completed_units,
                "profiles_scraped": progress.total_profiles,
            },
        )
        logger.info("Run %s for %s completed: %d profiles", execution_id, source, progress.total_profiles)
        return {"ok": True, "execution_id": execution_id, "status": "completed", **counts}

    def trigger_schedule(self, schedule_id: str) -> dict[str, Any]:
        live = self._schedules.get(schedule_id)
        if live is None:
            return {"ok": False, "error": f"Schedule not found: {schedule_id}"}
        if self._launch_scheduled(live):
            return {"ok": True, "schedule_id": schedule_id, "started": True, "queued": False}
        queued = self._pending.enqueue(live)
        return {"ok": True, "schedule_id": schedule_id, "started": False, "queued": queued}

    # -- unit-of-work loop --------------------------------------------------

    @staticmethod
    def _has_more_units(config: RunConfig, source_index: int, unit_index: int) -> bool:
        if unit_index + 1 < len(config.grouped_units.get(config.sources[source_index], [])):
            return True
        return any(config.grouped_units.get(source) for source in config.sources[source_index + 1 :])

    def _pause_between_units(self) -> None:
        s = self._settings
        self._sleep(self._rng.uniform(s.between_units_min_sec, s.between_units_max_sec))
        if s.noise_urls and self._rng.random() < s.noise_chance:
            url = self._rng.choice(s.noise_urls)
            duration = self._rng.uniform(s.noise_min_sec, s.noise_max_sec)
            try:
                self._scraper.visit(url, duration_sec=duration)
            except Exception:
                logger.warning("Noise visit to %s failed", url, exc_info=True)
                return
            self._sleep(duration)

    def _run_one_unit(self, *, unit: dict[str, Any], source: str, max_pages: int | None, execution_id: str | None) -> dict[str, Any]:
        self._channel.reset()
        try:
            self._scraper.start_unit(unit=unit, source_name=source, max_pages=max_pages)
        except Exception as exc:
            logger.warning("Unit %s for %s failed to start: %s", unit.get("title"), source, exc)
            self.notify(
                "unit_failed",
                {"message": f"Search failed: {unit.get('title')}", "source_name": source, "execution_id": execution_id, "error": str(exc)},
            )
            return {"failed": True, "total_profiles": 0}

        result = self._channel.wait(self._settings.unit_timeout_sec)
        if result.get("timeout"):
            logger.warning("Unit %s for %s timed out after %ss; moving on", unit.get("title"), source, self._settings.unit_timeout_sec)
        return result

    def _session_lost(self, status: str, reason: str, source: str, execution_id: str | None) -> NoReturn:
        logger.error("LinkedIn session lost (%s) during run %s for %s: %s", status, execution_id, source, reason)
        self.notify(
            SESSION_EVENTS.get(status, "linkedin_signed_out"),
            {"message": f"LinkedIn {status.replace('_', ' ')} for {source}", "source_name": source, "details": reason},
        )
        raise LinkedInSessionError(status, reason)

    def run_unit_loop(self, kind: RunKind) -> str:
        """Process units from the persisted cursor; returns `completed` or `aborted`.

        Raises `LinkedInSessionError` when the scraper reports a lost session.
        """
        initial = self._runs.load(kind)
        execution_id = initial.execution_id
        config = initial.config
        source_index = initial.progress.current_source_index
        unit_index = initial.progress.current_unit_index
        mapping = self.get_source_mapping()
        self._interrupt.clear()

        def _owned(current: RunState) -> bool:
            return current.execution_id == execution_id and current.is_running and not current.is_aborted

        while source_index < len(config.sources):
            source = config.sources[source_index]
            units = config.grouped_units.get(source, [])
            if source not in mapping:
                logger.error("Skipping source %s: no workbook mapped", source)
                units = []

            while unit_index < len(units):
                if not _owned(self._runs.load(kind)):
                    return "aborted"

                def _advance_cursor(current: RunState) -> None:
                    current.progress.current_source = source
                    current.progress.current_source_index = source_index
                    current.progress.current_unit_index = unit_index

                self._runs.update(kind, _advance_cursor)
                result = self._run_one_unit(
                    unit=units[unit_index], source=source, max_pages=config.max_pages, execution_id=execution_id
                )
                if result.get("aborted"):
                    return "aborted"
                if result.get("session_status"):
                    self._session_lost(str(result["session_status"]), str(result.get("reason") or ""), source, execution_id)

                profiles = int(result.get("total_profiles") or 0)

                def _record_unit(current: RunState) -> None:
                    if current.execution_id != execution_id:
                        return
                    current.progress.total_profiles += profiles
                    current.progress.completed_units += 1
                    current.progress.current_unit_index = unit_index + 1

                after = self._runs.update(kind, _record_unit)
                if after.execution_id != execution_id:
                    return "aborted"
                self._ledger.update(
                    execution_id,
                    {"profiles_scraped": after.progress.total_profiles, "searches_completed": after.progress.completed_units},
                )
                if not _owned(after):
                    return "aborted"
                if self._has_more_units(config, source_index, unit_index):
                    self._pause_between_units()
                unit_index += 1

            source_index += 1
            unit_index = 0

            def _next_source(current: RunState) -> None:
                if current.execution_id == execution_id:
                    current.progress.current_source_index = source_index
                    current.progress.current_unit_index = 0

            self._runs.update(kind, _next_source)
        return "completed"

    # -- manual and ad hoc automatic runs ---------------------------------

    def _start_ad_hoc_run(
        self,
        kind: RunKind,
        sources: list[str],
        grouped_units: dict[str, list[dict[str, Any]]] | None,
        max_pages: int | None,
    ) -> dict[str, Any]:
        clean_sources = [str(s).strip() for s in sources if isinstance(s, str) and s.strip()]
        if not clean_sources:
            return {"ok": False, "error": "At least one source is required."}
        if not self.reserve_slot(kind, clean_sources[0]):
            return {"ok": False, "error": "Another run is already active."}

        try:
            mapping = self.get_source_mapping()
            unmapped = [s for s in clean_sources if s not in mapping]
            if kind == "manual" and unmapped:
                raise ConfigurationError(f"No workbook mapped for source: {unmapped[0]}")
            grouped = {
                source: list((grouped_units or {}).get(source) or self._catalog.list_units(source))
                for source in clean_sources
            }
            total = sum(len(grouped[s]) for s in clean_sources if s in mapping)
            if total == 0:
                raise ConfigurationError("No searches found for the selected sources.")

            label = ", ".join(clean_sources)
            record = self._ledger.append({"schedule_id": None, "source_name": label, "total_searches": total})
            destinations = self._prepare_destinations(clean_sources)
            if len(clean_sources) == 1 and clean_sources[0] in destinations:
                self._ledger.update(record["id"], destinations[clean_sources[0]])
            self._runs.save(
                RunState(
                    kind=kind,
                    is_running=True,
                    execution_id=record["id"],
                    started_at=record["started_at"],
                    config=RunConfig(sources=clean_sources, grouped_units=grouped, max_pages=max_pages),
                    progress=RunProgress(current_source=clean_sources[0], total_units=total),
                )
            )
        except Exception as exc:
            self.release_slot()
            if isinstance(exc, ConfigurationError):
                return {"ok": False, "error": str(exc)}
            raise

        if unmapped:
            logger.warning("Sources without a workbook will be skipped: %s", ", ".join(unmapped))
        self.notify("run_started", {"message": f"{kind.title()} run started for {label}", "source_name": label, "execution_id": record["id"]})
        self._spawn(lambda: self._run_reserved_ad_hoc(kind, record["id"], label))
        return {"ok": True, "execution_id": record["id"], "sources": clean_sources, "total_searches": total}

    def _run_reserved_ad_hoc(self, kind: RunKind, execution_id: str, label: str) -> None:
        try:
            outcome = self.run_unit_loop(kind)
            self._finalize(execution_id, outcome, source=label, kind=kind)
        except Exception as exc:
            logger.exception("%s run %s failed", kind.title(), execution_id)
            self._ledger.update(execution_id, {"status": "failed", "error": str(exc)})
            self.notify("run_failed", {"message": f"Run failed for {label}: {exc}", "source_name": label, "execution_id": execution_id})
        finally:
            self._runs.clear_if_owned(kind, execution_id)
            self.release_slot()
            self.drain_pending()

    def start_manual_run(
        self,
        source_name: str,
        units: list[dict[str, Any]] | None = None,
        *,
        max_pages: int | None = None,
    ) -> dict[str, Any]:
        grouped = {source_name: units} if units else None
        return self._start_ad_hoc_run("manual", [source_name], grouped, max_pages)

    def start_auto_run(
        self,
        sources: list[str],
        grouped_units: dict[str, list[dict[str, Any]]] | None = None,
        *,
        max_pages: int | None = None,
    ) -> dict[str, Any]:
        return self._start_ad_hoc_run("auto", sources, grouped_units, max_pages)

    def _stop(self, kind: RunKind, reason: str) -> dict[str, Any]:
        was_running: list[bool] = []

        def _abort(current: RunState) -> None:
            was_running.append(current.is_running)
            if current.is_running:
                current.is_aborted = True
                current.is_running = False
                current.error = reason

        after = self._runs.update(kind, _abort)
        if not was_running[0]:
            return {"ok": False, "error": f"No {kind} run is in progress."}

        self._interrupt.set()
        self._channel.abort(reason)
        try:
            self._scraper.stop_unit(reason=reason)
        except Exception:
            logger.warning("Scraper stop request failed", exc_info=True)
        logger.info("Stop requested for %s run %s", kind, after.execution_id)
        # no-op while the stopped run still holds its reservation; its own exit drains
        self.drain_pending()
        return {"ok": True, "execution_id": after.execution_id, "stopped": True}

    def stop_manual_run(self) -> dict[str, Any]:
        return self._stop("manual", MANUAL_ABORT_ERROR)

    def stop_auto_run(self) -> dict[str, Any]:
        return self._stop("auto", MANUAL_ABORT_ERROR)

    # -- read models --------------------------------------------------------

    def execution_history(self, *, limit: int = 50) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for record in self._ledger.list_records(limit=limit):
            item = dict(record)
            item["sheet_url"] = None
            workbook_id = record.get("workbook_id")
            if workbook_id:
                try:
                    item["sheet_url"] = self._sheets.sheet_url(workbook_id, record.get("tab_name"))
                except Exception:
                    logger.warning("Could not resolve sheet URL for %s", record.get("id"), exc_info=True)
            out.append(item)
        return out

    def status(self) -> dict[str, Any]:
        return {
            "ok": True,
            "active": self.is_run_active(),
            "active_source": self.active_source(),
            "auto_run_state": self._runs.load("auto").to_dict(),
            "manual_scrape_state": self._runs.load("manual").to_dict(),
            "pending_count": len(self._pending),
            "next_scheduled_run": self._schedules.next_scheduled_run(),
        }
