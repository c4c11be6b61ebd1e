"""JSON config for the scheduler daemon.

The file is located via an explicit path, `SAVVY_PIRATE_CONFIG_PATH`, or
`config/config.json` under the repo root. Readers use the section getters,
which fall back to empty sections when the file is missing or broken.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SAVVY_PIRATE_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path("config/config.json")
DEFAULT_TIMEZONE = "America/New_York"

# resolved path -> (st_mtime_ns, parsed payload)
_CONFIG_CACHE: dict[Path, tuple[int, dict[str, Any]]] = {}


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def resolve_config_path(config_path: str | Path | None = None) -> Path:
    candidate = Path(config_path or os.getenv(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
    if not candidate.is_absolute():
        candidate = _repo_root() / candidate
    return candidate.resolve()


def _parse(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in config file: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Config root must be a JSON object: {path}")
    return payload


def load_config(config_path: str | Path | None = None, *, use_cache: bool = True) -> dict[str, Any]:
    """Parse the config file, reusing the cached payload while its mtime is unchanged."""
    path = resolve_config_path(config_path)
    try:
        mtime_ns = path.stat().st_mtime_ns
    except FileNotFoundError:
        raise FileNotFoundError(f"Config file not found: {path}") from None

    cached = _CONFIG_CACHE.get(path) if use_cache else None
    if cached is not None and cached[0] == mtime_ns:
        return cached[1]

    payload = _parse(path)
    _CONFIG_CACHE[path] = (mtime_ns, payload)
    return payload


def clear_config_cache() -> None:
    _CONFIG_CACHE.clear()


def _root(config: dict[str, Any] | None) -> dict[str, Any]:
    if config is not None:
        return config
    try:
        return load_config()
    except FileNotFoundError:
        return {}
    except ValueError as exc:
        logger.warning("Ignoring unusable config: %s", exc)
        return {}


def _section(name: str, config: dict[str, Any] | None) -> dict[str, Any]:
    block = _root(config).get(name)
    return block if isinstance(block, dict) else {}


def get_timezone(config: dict[str, Any] | None = None) -> str:
    return _text(_root(config).get("timezone")) or DEFAULT_TIMEZONE


def get_state_db_path(config: dict[str, Any] | None = None) -> str | None:
    return _text(_root(config).get("state_db_path"))


def get_scheduler_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    return _section("scheduler", config)


def get_google_oauth_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    return _section("google_oauth", config)


def get_google_sheets_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    return _section("google_sheets", config)


def get_notifications_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    return _section("notifications", config)


def get_source_mapping_config(config: dict[str, Any] | None = None) -> dict[str, str]:
    """Seed `source_name -> workbook_id` pairs; blank or non-string entries are skipped."""
    return {
        source: workbook
        for source, workbook in _section("source_mapping", config).items()
        if _text(source) and _text(workbook)
    }
