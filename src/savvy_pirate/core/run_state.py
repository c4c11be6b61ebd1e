"""Persisted progress records for automatic and manual runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from .state_store import AUTO_RUN_STATE_KEY, MANUAL_SCRAPE_STATE_KEY, StateStore

RunKind = Literal["auto", "manual"]

_KEYS: dict[str, str] = {
    "auto": AUTO_RUN_STATE_KEY,
    "manual": MANUAL_SCRAPE_STATE_KEY,
}


def _int(value: Any, default: int = 0) -> int:
    return int(value) if isinstance(value, int) and not isinstance(value, bool) else default


@dataclass(slots=True)
class RunConfig:
    sources: list[str] = field(default_factory=list)
    grouped_units: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    max_pages: int | None = None
    schedule_id: str | None = None

    @property
    def total_units(self) -> int:
        return sum(len(self.grouped_units.get(source, [])) for source in self.sources)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sources": list(self.sources),
            "grouped_units": {source: list(units) for source, units in self.grouped_units.items()},
            "max_pages": self.max_pages,
            "schedule_id": self.schedule_id,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "RunConfig":
        if not isinstance(payload, dict):
            return cls()
        grouped = payload.get("grouped_units")
        return cls(
            sources=[str(item) for item in payload.get("sources") or [] if isinstance(item, str)],
            grouped_units={
                str(source): [unit for unit in units if isinstance(unit, dict)]
                for source, units in (grouped.items() if isinstance(grouped, dict) else [])
                if isinstance(units, list)
            },
            max_pages=payload.get("max_pages") if isinstance(payload.get("max_pages"), int) else None,
            schedule_id=payload.get("schedule_id") if isinstance(payload.get("schedule_id"), str) else None,
        )


@dataclass(slots=True)
class RunProgress:
    current_source: str | None = None
    current_source_index: int = 0
    current_unit_index: int = 0
    completed_units: int = 0
    total_units: int = 0
    total_profiles: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_source": self.current_source,
            "current_source_index": self.current_source_index,
            "current_unit_index": self.current_unit_index,
            "completed_units": self.completed_units,
            "total_units": self.total_units,
            "total_profiles": self.total_profiles,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "RunProgress":
        if not isinstance(payload, dict):
            return cls()
        source = payload.get("current_source")
        return cls(
            current_source=source if isinstance(source, str) else None,
            current_source_index=_int(payload.get("current_source_index")),
            current_unit_index=_int(payload.get("current_unit_index")),
            completed_units=_int(payload.get("completed_units")),
            total_units=_int(payload.get("total_units")),
            total_profiles=_int(payload.get("total_profiles")),
        )


@dataclass(slots=True)
class RunState:
    """One of the two single-flight run slots, as persisted."""

    kind: RunKind
    is_running: bool = False
    is_aborted: bool = False
    execution_id: str | None = None
    error: str | None = None
    started_at: str | None = None
    config: RunConfig = field(default_factory=RunConfig)
    progress: RunProgress = field(default_factory=RunProgress)

    def __post_init__(self) -> None:
        if self.kind not in _KEYS:
            raise ValueError("RunState.kind must be one of: auto, manual.")

    @property
    def is_idle(self) -> bool:
        return not self.is_running and not self.is_aborted and self.execution_id is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "is_running": self.is_running,
            "is_aborted": self.is_aborted,
            "execution_id": self.execution_id,
            "error": self.error,
            "started_at": self.started_at,
            "config": self.config.to_dict(),
            "progress": self.progress.to_dict(),
        }

    @classmethod
    def from_dict(cls, kind: RunKind, payload: Any) -> "RunState":
        if not isinstance(payload, dict):
            return cls(kind=kind)
        execution_id = payload.get("execution_id")
        error = payload.get("error")
        started_at = payload.get("started_at")
        return cls(
            kind=kind,
            is_running=bool(payload.get("is_running", False)),
            is_aborted=bool(payload.get("is_aborted", False)),
            execution_id=execution_id if isinstance(execution_id, str) else None,
            error=error if isinstance(error, str) else None,
            started_at=started_at if isinstance(started_at, str) else None,
            config=RunConfig.from_dict(payload.get("config")),
            progress=RunProgress.from_dict(payload.get("progress")),
        )


class RunStateRepository:
    """Load/save the `auto_run_state` and `manual_scrape_state` keys."""

    def __init__(self, state: StateStore) -> None:
        self._state = state

    def load(self, kind: RunKind) -> RunState:
        return RunState.from_dict(kind, self._state.get(_KEYS[kind]))

    def save(self, run_state: RunState) -> None:
        self._state.set(_KEYS[run_state.kind], run_state.to_dict())

    def clear(self, kind: RunKind) -> None:
        self.save(RunState(kind=kind))

    def clear_if_owned(self, kind: RunKind, execution_id: str | None) -> bool:
        """Reset the slot only when it still belongs to `execution_id`."""
        current = self.load(kind)
        if current.execution_id not in {None, execution_id}:
            return False
        self.clear(kind)
        return True

    def update(self, kind: RunKind, fn: Callable[[RunState], None]) -> RunState:
        """Apply `fn` to the persisted state under the store lock and return the result."""
        result: list[RunState] = []

        def _apply(payload: Any) -> dict[str, Any]:
            current = RunState.from_dict(kind, payload)
            fn(current)
            result.append(current)
            return current.to_dict()

        self._state.mutate(_KEYS[kind], _apply)
        return result[0]

    def any_running(self) -> bool:
        return self.load("auto").is_running or self.load("manual").is_running
