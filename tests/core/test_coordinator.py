from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from src.savvy_pirate.core.coordinator import MANUAL_ABORT_ERROR, load_scheduler_settings
from src.savvy_pirate.core.run_state import RunState
from src.savvy_pirate.core.errors import AuthenticationRequiredError

NY = ZoneInfo("America/New_York")


def _ny(day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(2026, 10, day, hour, minute, tzinfo=NY)


def _schedule(h, source: str, **overrides) -> dict:
    return h.coordinator.schedules.upsert({"source_name": source, "day_of_week": 3, "hour": 9, "minute": 0, **overrides})


def _wire(h, source: str, units: int = 2) -> None:
    h.catalog.units[source] = h.units_for(source, units)
    mapping = h.coordinator.get_source_mapping()
    mapping[source] = f"wb_{source.lower()}"
    h.coordinator.set_source_mapping(mapping)


def test_tick_starts_first_due_and_queues_the_rest(harness):
    h = harness(now=_ny(21, 9, 2))
    _wire(h, "Acme")
    _wire(h, "Beta")
    acme = _schedule(h, "Acme")
    beta = _schedule(h, "Beta")

    out = h.coordinator.tick()
    assert out["action"] == "started"
    assert out["started"] == [acme["id"]]
    assert out["queued"] == [beta["id"]]
    assert len(h.spawned) == 1
    assert h.coordinator.is_run_active() is True

    # a second tick while Acme holds the slot does not double-queue Beta
    again = h.coordinator.tick()
    assert again["action"] == "queued"
    assert again["queued"] == []
    assert len(h.coordinator.pending) == 1

    h.spawned.pop()()

    history = h.coordinator.ledger.list_records()
    assert sorted(item["source_name"] for item in history) == ["Acme", "Beta"]
    assert {item["status"] for item in history} == {"completed"}
    assert len(h.coordinator.pending) == 0
    assert h.coordinator.is_run_active() is False
    assert h.spawned == []


def test_completed_scheduled_run_updates_ledger_schedule_and_state(harness):
    h = harness(now=_ny(21, 9, 2), inline=True)
    _wire(h, "Acme", units=2)
    acme = _schedule(h, "Acme")

    out = h.coordinator.tick()
    assert out["started"] == [acme["id"]]

    record = h.coordinator.ledger.list_records()[0]
    assert record["status"] == "completed"
    assert record["searches_completed"] == 2
    assert record["total_searches"] == 2
    assert record["profiles_scraped"] == 10
    assert record["workbook_id"] == "wb_acme"
    assert record["tab_name"] == "10_21_26"
    assert record["completed_at"] is not None

    live = h.coordinator.schedules.get(acme["id"])
    assert live["last_execution_id"] == record["id"]
    assert live["last_run"] is not None
    assert h.coordinator.run_states.load("auto").is_idle
    assert h.notifier.types() == ["run_started", "run_completed"]
    assert [item["unit"]["title"] for item in h.scraper.started] == ["Search 1", "Search 2"]

    # inside the due window but under cooldown
    assert h.coordinator.tick()["action"] == "idle"


def test_drain_drops_stale_entries(harness):
    h = harness()
    _wire(h, "Acme")
    acme = _schedule(h, "Acme")
    gone = _schedule(h, "Gone")
    h.coordinator.pending.enqueue(gone)
    h.coordinator.schedules.delete(gone["id"])
    h.coordinator.pending.enqueue(acme)

    out = h.coordinator.drain_pending()
    assert out["dropped"] == [gone["id"]]
    assert out["executed"] == [acme["id"]]
    assert len(h.coordinator.pending) == 0


def test_tick_with_pending_entries_spawns_drain(harness):
    h = harness()
    acme = _schedule(h, "Acme")
    h.coordinator.pending.enqueue(acme)

    out = h.coordinator.tick()
    assert out["action"] == "drain"
    assert h.spawned == [h.coordinator.drain_pending]


def test_auth_failure_records_failed_run_and_does_not_drain(harness):
    h = harness()
    _wire(h, "Acme")
    acme = _schedule(h, "Acme")
    beta = _schedule(h, "Beta")
    h.coordinator.pending.enqueue(beta)
    h.auth.fail = True

    with pytest.raises(AuthenticationRequiredError):
        h.coordinator.execute_scheduled_run(acme)

    record = h.coordinator.ledger.list_records()[0]
    assert record["status"] == "failed"
    assert record["error"].startswith("Authentication failed")
    assert h.notifier.types() == ["auth_expired"]
    assert h.scraper.started == []
    assert len(h.coordinator.pending) == 1
    assert h.coordinator.is_run_active() is False


def test_missing_units_or_mapping_fails_the_run(harness):
    h = harness()
    acme = _schedule(h, "Acme")

    no_units = h.coordinator.execute_scheduled_run(acme)
    assert no_units["status"] == "failed"
    assert no_units["error"] == "No searches found for source: Acme"

    h.catalog.units["Acme"] = h.units_for("Acme", 1)
    no_mapping = h.coordinator.execute_scheduled_run(acme)
    assert no_mapping["error"] == "No workbook mapped for source: Acme"

    assert [item["status"] for item in h.coordinator.ledger.list_records()] == ["failed", "failed"]
    assert h.notifier.types().count("run_failed") == 2
    assert h.coordinator.run_states.load("auto").is_idle
    assert h.coordinator.is_run_active() is False


def test_test_mode_runs_single_reference_unit(harness):
    h = harness()
    _wire(h, "Acme", units=3)
    acme = _schedule(
        h,
        "Acme",
        test_enabled=True,
        test_search_ref="https://www.linkedin.com/search/results/people/?q=test",
        test_search_title="Smoke",
        test_max_pages=2,
    )

    out = h.coordinator.execute_scheduled_run(acme)
    assert out["status"] == "completed"
    assert len(h.scraper.started) == 1
    assert h.scraper.started[0]["unit"]["title"] == "Smoke"
    assert h.scraper.started[0]["max_pages"] == 2


def test_execute_while_active_enqueues(harness):
    h = harness()
    acme = _schedule(h, "Acme")
    assert h.coordinator.reserve_slot("manual", "Other") is True

    out = h.coordinator.execute_scheduled_run(acme)
    assert out["ok"] is False
    assert out["queued"] is True
    assert h.coordinator.ledger.list_records() == []


def test_unit_timeout_moves_to_next_unit(harness):
    h = harness(unit_timeout_sec=0)
    _wire(h, "Acme", units=2)
    h.scraper.silent = True
    acme = _schedule(h, "Acme")

    out = h.coordinator.execute_scheduled_run(acme)
    assert out["status"] == "completed"
    assert out["searches_completed"] == 2
    assert out["profiles_scraped"] == 0
    assert len(h.scraper.started) == 2


def test_unit_start_failure_notifies_and_continues(harness):
    h = harness()
    _wire(h, "Acme", units=2)
    h.scraper.fail_titles = {"Search 1"}
    acme = _schedule(h, "Acme")

    out = h.coordinator.execute_scheduled_run(acme)
    assert out["status"] == "completed"
    assert out["profiles_scraped"] == 5
    assert "unit_failed" in h.notifier.types()


def test_notifier_errors_never_fail_the_run(harness):
    h = harness()
    _wire(h, "Acme", units=1)
    h.notifier.raise_error = True
    acme = _schedule(h, "Acme")

    out = h.coordinator.execute_scheduled_run(acme)
    assert out["status"] == "completed"


def test_noise_visits_between_units(harness):
    h = harness(noise_chance=1.0)
    _wire(h, "Acme", units=3)
    acme = _schedule(h, "Acme")

    h.coordinator.execute_scheduled_run(acme)
    # no pause after the last unit
    assert len(h.scraper.visits) == 2
    assert all(url.startswith("https://www.linkedin.com/") for url in h.scraper.visits)


def test_manual_run_stop_marks_failed(harness):
    h = harness(inline=True)
    _wire(h, "Acme", units=3)

    def _stop_during_first_unit(_unit):
        assert h.coordinator.stop_manual_run()["ok"] is True

    h.scraper.on_start = _stop_during_first_unit

    out = h.coordinator.start_manual_run("Acme")
    assert out["ok"] is True
    record = h.coordinator.ledger.get(out["execution_id"])
    assert record["status"] == "failed"
    assert record["error"] == MANUAL_ABORT_ERROR
    assert len(h.scraper.started) == 1
    assert h.scraper.stops == [MANUAL_ABORT_ERROR]
    assert h.coordinator.run_states.load("manual").is_idle
    assert h.coordinator.is_run_active() is False


def test_manual_run_requires_mapping_and_free_slot(harness):
    h = harness()
    h.catalog.units["Acme"] = h.units_for("Acme", 1)

    unmapped = h.coordinator.start_manual_run("Acme")
    assert unmapped == {"ok": False, "error": "No workbook mapped for source: Acme"}
    assert h.coordinator.is_run_active() is False

    _wire(h, "Acme", units=1)
    h.coordinator.reserve_slot("auto", "Beta")
    busy = h.coordinator.start_manual_run("Acme")
    assert busy == {"ok": False, "error": "Another run is already active."}


def test_manual_run_with_explicit_units(harness):
    h = harness(inline=True)
    _wire(h, "Acme", units=0)
    units = [{"source": "Acme", "title": "Custom", "url": "https://www.linkedin.com/search/results/people/?q=c"}]

    out = h.coordinator.start_manual_run("Acme", units, max_pages=3)
    assert out["total_searches"] == 1
    assert h.scraper.started[0]["max_pages"] == 3
    assert h.coordinator.ledger.get(out["execution_id"])["status"] == "completed"


def test_auto_run_skips_unmapped_sources(harness):
    h = harness(inline=True)
    _wire(h, "Acme", units=1)
    h.catalog.units["Nomap"] = h.units_for("Nomap", 2)

    out = h.coordinator.start_auto_run(["Nomap", "Acme"])
    assert out["ok"] is True
    assert out["total_searches"] == 1
    assert [item["source_name"] for item in h.scraper.started] == ["Acme"]
    assert h.coordinator.ledger.get(out["execution_id"])["source_name"] == "Nomap, Acme"


def test_stop_without_active_run(harness):
    h = harness()
    assert h.coordinator.stop_manual_run()["ok"] is False
    assert h.coordinator.stop_auto_run()["ok"] is False


def test_trigger_schedule(harness):
    h = harness()
    acme = _schedule(h, "Acme")

    assert h.coordinator.trigger_schedule("missing")["ok"] is False
    started = h.coordinator.trigger_schedule(acme["id"])
    assert started["started"] is True
    queued = h.coordinator.trigger_schedule(acme["id"])
    assert queued["started"] is False
    assert queued["queued"] is True


def test_execution_history_includes_sheet_url(harness):
    h = harness()
    _wire(h, "Acme", units=1)
    h.coordinator.execute_scheduled_run(_schedule(h, "Acme"))

    history = h.coordinator.execution_history()
    assert history[0]["sheet_url"] == "https://docs.google.com/spreadsheets/d/wb_acme/edit#10_21_26"


def test_status_reports_slot_and_next_run(harness):
    h = harness(now=_ny(19, 10))
    _schedule(h, "Acme")
    out = h.coordinator.status()
    assert out["active"] is False
    assert out["pending_count"] == 0
    assert out["next_scheduled_run"]["source_name"] == "Acme"


def test_load_scheduler_settings_defaults_and_overrides():
    defaults = load_scheduler_settings({})
    assert defaults.unit_timeout_sec == 1800
    assert defaults.between_units_min_sec == 60.0
    assert defaults.noise_chance == 0.4

    custom = load_scheduler_settings(
        {"scheduler": {"unit_timeout_sec": 90, "between_units_min_sec": 5, "between_units_max_sec": 2, "noise_chance": 3}}
    )
    assert custom.unit_timeout_sec == 90
    assert custom.between_units_min_sec == 2.0
    assert custom.between_units_max_sec == 5.0
    assert custom.noise_chance == 1.0
    assert defaults.token_refresh_interval_sec == 2700


def test_signed_out_session_fails_scheduled_run(harness):
    h = harness(now=_ny(21, 9, 2))
    _wire(h, "Acme", units=3)
    h.scraper.on_start = lambda _unit: h.channel.session_lost("signed_out", "Redirected to /authwall")

    out = h.coordinator.execute_scheduled_run(_schedule(h, "Acme"))
    assert out["status"] == "failed"
    assert out["error"] == "LinkedIn auth failure (signed_out): Redirected to /authwall"
    assert len(h.scraper.started) == 1

    record = h.coordinator.ledger.get(out["execution_id"])
    assert record["status"] == "failed"
    assert record["error"].startswith("LinkedIn auth failure")
    assert h.notifier.types() == ["run_started", "linkedin_signed_out", "run_failed"]
    assert h.coordinator.run_states.load("auto").is_idle
    assert h.coordinator.is_run_active() is False


def test_checkpoint_fails_manual_run(harness):
    h = harness(inline=True)
    _wire(h, "Acme", units=2)
    h.scraper.on_start = lambda _unit: h.channel.session_lost("checkpoint", "captcha")

    out = h.coordinator.start_manual_run("Acme")
    record = h.coordinator.ledger.get(out["execution_id"])
    assert record["status"] == "failed"
    assert record["error"] == "LinkedIn auth failure (checkpoint): captcha"
    event_type, payload = h.notifier.events[1]
    assert event_type == "linkedin_checkpoint"
    assert payload["details"] == "captcha"
    assert h.coordinator.run_states.load("manual").is_idle


def test_check_auth_notifies_when_token_unavailable(harness):
    h = harness()
    assert h.coordinator.check_auth()["ok"] is True
    assert h.notifier.events == []

    h.auth.fail = True
    out = h.coordinator.check_auth(context="startup")
    assert out == {"ok": False, "context": "startup", "error": "token revoked"}
    assert h.notifier.types() == ["auth_expired"]


def test_refresh_auth_only_logs_failures(harness):
    h = harness()
    assert h.coordinator.refresh_auth() == {"ok": True, "error": None}
    h.auth.fail = True
    assert h.coordinator.refresh_auth()["ok"] is False
    assert h.notifier.events == []


def test_reserve_slot_can_reclaim_only_its_own_persisted_run(harness):
    h = harness()
    h.coordinator.run_states.save(RunState(kind="auto", is_running=True, execution_id="exec_a"))

    assert h.coordinator.reserve_slot("auto", "Acme") is False
    assert h.coordinator.reserve_slot("auto", "Acme", resuming="exec_b") is False
    assert h.coordinator.reserve_slot("auto", "Acme", resuming="exec_a") is True
    assert h.coordinator.reserve_slot("auto", "Acme", resuming="exec_a") is False
