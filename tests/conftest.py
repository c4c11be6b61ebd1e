from __future__ import annotations

from datetime import datetime
from types import SimpleNamespace
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from src.savvy_pirate.core.collaborators import ScrapeCompletionChannel
from src.savvy_pirate.core.config_loader import clear_config_cache
from src.savvy_pirate.core.coordinator import ExecutionCoordinator, SchedulerSettings
from src.savvy_pirate.core.errors import AuthenticationRequiredError
from src.savvy_pirate.core.reference_clock import ReferenceClock
from src.savvy_pirate.core.state_store import StateStore

NY = ZoneInfo("America/New_York")


def ny(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=NY)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.setenv("SAVVY_PIRATE_CONFIG_PATH", str(tmp_path / "missing-config.json"))
    clear_config_cache()
    yield
    clear_config_cache()


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeScraper:
    def __init__(self, channel: ScrapeCompletionChannel, *, profiles_per_unit: int = 5) -> None:
        self.channel = channel
        self.profiles_per_unit = profiles_per_unit
        self.silent = False
        self.fail_titles: set[str] = set()
        self.on_start = None
        self.started: list[dict[str, Any]] = []
        self.stops: list[str] = []
        self.visits: list[str] = []

    def start_unit(self, *, unit, source_name, max_pages):
        self.started.append({"unit": unit, "source_name": source_name, "max_pages": max_pages})
        if unit.get("title") in self.fail_titles:
            raise RuntimeError("tab crashed")
        if self.on_start is not None:
            self.on_start(unit)
            return
        if not self.silent:
            self.channel.complete(self.profiles_per_unit)

    def stop_unit(self, *, reason):
        self.stops.append(reason)

    def visit(self, url, *, duration_sec):
        self.visits.append(url)


class FakeSheets:
    def __init__(self) -> None:
        self.ensured: list[str] = []

    def ensure_destination_tab(self, workbook_id):
        self.ensured.append(workbook_id)
        return {"tab_name": "10_21_26", "is_new": True, "sheet_id": 7}

    def sheet_url(self, workbook_id, tab_name=None):
        return f"https://docs.google.com/spreadsheets/d/{workbook_id}/edit#{tab_name}"

    def append_rows(self, workbook_id, tab_name, rows):
        return {"ok": True, "appended": len(rows), "tab_name": tab_name}


class FakeCatalog:
    def __init__(self, units: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.units = units or {}

    def list_units(self, source_name):
        return [dict(unit) for unit in self.units.get(source_name, [])]


class FakeAuth:
    def __init__(self) -> None:
        self.fail = False

    def get_access_token(self, *, interactive=False):
        if self.fail:
            raise AuthenticationRequiredError("token revoked")
        return "token-abc"


class FakeNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.raise_error = False

    def notify(self, event_type, payload):
        if self.raise_error:
            raise RuntimeError("webhook down")
        self.events.append((event_type, payload))
        return True

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


def units_for(source: str, count: int) -> list[dict[str, Any]]:
    return [
        {"source": source, "title": f"Search {index}", "url": f"https://www.linkedin.com/search/results/people/?q={index}"}
        for index in range(1, count + 1)
    ]


@pytest.fixture()
def harness(tmp_path):
    """Coordinator wired to fakes; spawned runs are collected, not started."""

    def _build(*, now: datetime | None = None, inline: bool = False, db_name: str = "state.db", **settings: Any):
        state = StateStore(db_path=tmp_path / db_name)
        clock_fn = FakeClock(now or ny(2026, 10, 21, 9, 2))
        clock = ReferenceClock("America/New_York", now_fn=clock_fn)
        channel = ScrapeCompletionChannel()
        scraper = FakeScraper(channel)
        sheets = FakeSheets()
        catalog = FakeCatalog()
        auth = FakeAuth()
        notifier = FakeNotifier()
        spawned: list[Any] = []
        settings.setdefault("unit_timeout_sec", 1)
        coordinator = ExecutionCoordinator(
            state=state,
            clock=clock,
            scraper=scraper,
            channel=channel,
            sheets=sheets,
            catalog=catalog,
            auth=auth,
            notifier=notifier,
            settings=SchedulerSettings(**settings),
            spawn=(lambda fn: fn()) if inline else spawned.append,
            sleep=lambda _seconds: None,
        )
        return SimpleNamespace(
            state=state,
            clock=clock,
            clock_fn=clock_fn,
            channel=channel,
            scraper=scraper,
            sheets=sheets,
            catalog=catalog,
            auth=auth,
            notifier=notifier,
            spawned=spawned,
            coordinator=coordinator,
            units_for=units_for,
        )

    return _build
