"""Startup reconciliation of run state left behind by an unplanned restart."""

from __future__ import annotations

import logging
from typing import Any

from .coordinator import ExecutionCoordinator
from .run_state import RunState

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Interrupted by restart"


class CrashRecovery:
    """Finalize or discard leftover running flags, then drain the pending queue.

    An automatic run that was still running resumes from its persisted cursor
    and is always finalized afterwards, even when the resumed loop fails. A
    manual run never survives a restart: an interrupted abort is reset, and a
    run that was still going is recorded as failed.
    """

    def __init__(self, coordinator: ExecutionCoordinator) -> None:
        self._coordinator = coordinator

    def run(self) -> dict[str, Any]:
        actions: list[str] = []
        runs = self._coordinator.run_states
        ledger = self._coordinator.ledger

        manual = runs.load("manual")
        if manual.is_running and manual.is_aborted:
            runs.clear("manual")
            actions.append("manual_reset")
            logger.info("Reset manual run state left mid-abort")
        elif manual.is_running:
            ledger.update(
                manual.execution_id,
                {
                    "status": "failed",
                    "error": INTERRUPTED_ERROR,
                    "searches_completed": manual.progress.completed_units,
                    "profiles_scraped": manual.progress.total_profiles,
                },
            )
            runs.clear("manual")
            actions.append("manual_interrupted")
            logger.warning("Manual run %s was interrupted by a restart", manual.execution_id)

        auto = runs.load("auto")
        if auto.is_running and not auto.is_aborted:
            actions.append(self._resume_auto(auto.execution_id))
        elif auto.is_running or auto.is_aborted:
            runs.clear("auto")
            actions.append("auto_reset")

        drain = self._coordinator.drain_pending()
        return {"ok": True, "actions": actions, "drain": drain}

    def _resume_auto(self, execution_id: str | None) -> str:
        coordinator = self._coordinator
        runs = coordinator.run_states
        leftover = runs.load("auto")
        label = ", ".join(leftover.config.sources) or "unknown source"
        if not coordinator.reserve_slot("auto", leftover.progress.current_source or label, resuming=execution_id):
            logger.warning("Could not reclaim the run slot for automatic run %s; leaving it for the next start", execution_id)
            return "auto_resume_skipped"
        logger.info("Resuming automatic run %s for %s", execution_id, label)

        def _stop_running(current: RunState) -> None:
            if current.execution_id == execution_id:
                current.is_running = False

        try:
            try:
                coordinator.run_unit_loop("auto")
            except Exception:
                logger.exception("Resumed run %s failed; finalizing with accumulated progress", execution_id)
            final = runs.update("auto", _stop_running)
            if final.execution_id == execution_id:
                counts = {"searches_completed": final.progress.completed_units, "profiles_scraped": final.progress.total_profiles}
            else:
                record = coordinator.ledger.get(execution_id) or {}
                counts = {key: int(record.get(key) or 0) for key in ("searches_completed", "profiles_scraped")}
            coordinator.ledger.update(execution_id, {"status": "completed", **counts})
            coordinator.notify(
                "run_completed",
                {
                    "message": f"Run completed for {label} after restart",
                    "source_name": label,
                    "execution_id": execution_id,
                    "resumed": True,
                    **counts,
                },
            )
        finally:
            runs.clear_if_owned("auto", execution_id)
            coordinator.release_slot()
        return "auto_resumed"
