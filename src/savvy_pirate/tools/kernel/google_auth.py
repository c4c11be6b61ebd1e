"""Google OAuth access tokens for the Sheets collaborator.

A long-lived refresh token (from config or the token file) is exchanged for a
short-lived access token, which is cached in the token file until shortly
before it expires.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from src.savvy_pirate.core.config_loader import get_google_oauth_config
from src.savvy_pirate.core.errors import AuthenticationRequiredError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
DEFAULT_TIMEOUT_SEC = 15
EXPIRY_MARGIN_SEC = 60
REAUTH_MESSAGE = "Refresh token is invalid or expired. Re-authentication is required."


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[4]


def _clean(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


@dataclass(slots=True)
class OAuthSettings:
    client_id: str | None = None
    client_secret: str | None = None
    refresh_token: str | None = None
    token_path: Path | None = None
    token_uri: str = DEFAULT_TOKEN_URI
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    timeout_sec: int = DEFAULT_TIMEOUT_SEC

    @property
    def missing(self) -> list[str]:
        required = {"token_path": self.token_path, "client_id": self.client_id, "client_secret": self.client_secret}
        return [f"google_oauth.{name}" for name, value in required.items() if not value]


def load_oauth_settings(config: dict[str, Any] | None = None) -> OAuthSettings:
    block = get_google_oauth_config(config)
    raw_path = _clean(block.get("token_path"))
    token_path = None
    if raw_path:
        token_path = Path(raw_path)
        if not token_path.is_absolute():
            token_path = _repo_root() / token_path
        token_path = token_path.resolve()
    scopes = block.get("scopes")
    timeout = block.get("timeout_sec")
    return OAuthSettings(
        client_id=_clean(block.get("client_id")),
        client_secret=_clean(block.get("client_secret")),
        refresh_token=_clean(block.get("refresh_token")),
        token_path=token_path,
        token_uri=_clean(block.get("token_uri")) or DEFAULT_TOKEN_URI,
        scopes=[s for s in scopes if _clean(s)] if isinstance(scopes, list) else list(DEFAULT_SCOPES),
        timeout_sec=timeout if isinstance(timeout, int) and timeout > 0 else DEFAULT_TIMEOUT_SEC,
    )


def load_token_state(token_path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(token_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError):
        logger.warning("Ignoring unreadable token file %s", token_path)
        return {}
    return payload if isinstance(payload, dict) else {}


def save_token_state(token_path: Path, state: dict[str, Any]) -> None:
    """Write through a sibling temp file so readers never see a partial token."""
    token_path.parent.mkdir(parents=True, exist_ok=True)
    staging = token_path.with_name(token_path.name + ".tmp")
    staging.write_text(json.dumps(state, indent=2), encoding="utf-8")
    staging.replace(token_path)


def token_is_fresh(state: dict[str, Any], *, now: float | None = None) -> bool:
    expires_at = state.get("expires_at_epoch")
    if not _clean(state.get("access_token")) or not isinstance(expires_at, int):
        return False
    current = time.time() if now is None else now
    return expires_at - EXPIRY_MARGIN_SEC > current


def _http_error_details(exc: HTTPError) -> tuple[str, str]:
    try:
        body = json.loads(exc.read().decode("utf-8") or "{}")
    except (OSError, ValueError):
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = _clean(body.get("error")) or f"http_{exc.code}"
    if "invalid_grant" in code.lower():
        return code, REAUTH_MESSAGE
    return code, _clean(body.get("error_description")) or f"Token endpoint returned HTTP {exc.code}."


def request_token_refresh(settings: OAuthSettings, refresh_token: str) -> dict[str, Any]:
    """POST the refresh grant; returns `{ok, access_token, expires_in, ...}` or `{ok: False, error, error_code}`."""
    form = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": settings.client_id or "",
        "client_secret": settings.client_secret or "",
    }
    if settings.scopes:
        form["scope"] = " ".join(settings.scopes)
    request = Request(
        settings.token_uri,
        data=urlencode(form).encode("utf-8"),
        headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
        method="POST",
    )
    try:
        with urlopen(request, timeout=settings.timeout_sec) as response:
            payload = json.loads(response.read().decode("utf-8"))
    except HTTPError as exc:
        code, message = _http_error_details(exc)
        return {"ok": False, "error": message, "error_code": code}
    except URLError as exc:
        return {"ok": False, "error": f"Token endpoint unreachable: {exc.reason}", "error_code": "network_error"}
    except ValueError:
        return {"ok": False, "error": "Token endpoint returned invalid JSON.", "error_code": "invalid_response"}

    if not isinstance(payload, dict) or not _clean(payload.get("access_token")):
        return {"ok": False, "error": "Token response has no access_token.", "error_code": "invalid_response"}
    expires_in = payload.get("expires_in")
    if not isinstance(expires_in, int) or expires_in <= 0:
        return {"ok": False, "error": "Token response has no usable expires_in.", "error_code": "invalid_response"}
    return {
        "ok": True,
        "access_token": payload["access_token"],
        "expires_in": expires_in,
        "refresh_token": _clean(payload.get("refresh_token")),
        "token_type": payload.get("token_type") or "Bearer",
        "scope": payload.get("scope"),
    }


def _iso_epoch(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, tz=UTC).isoformat()


def _failure(message: str, code: str | None) -> dict[str, Any]:
    return {"ok": False, "source": "oauth_error", "access_token": None, "error": message, "error_code": code}


def get_google_access_token(*, force_refresh: bool = False, settings: OAuthSettings | None = None) -> dict[str, Any]:
    """Return `{ok, source, access_token, expires_at, error, error_code}`."""
    resolved = settings or load_oauth_settings()
    if resolved.missing:
        return _failure("Missing Google OAuth config fields: " + ", ".join(resolved.missing), "config_missing")

    assert resolved.token_path is not None
    state = load_token_state(resolved.token_path)
    if not force_refresh and token_is_fresh(state):
        return {
            "ok": True,
            "source": "token_cache",
            "access_token": state["access_token"],
            "expires_at": state.get("expires_at"),
            "error": None,
            "error_code": None,
        }

    refresh_token = _clean(state.get("refresh_token")) or resolved.refresh_token
    if not refresh_token:
        return _failure("No refresh token available. Configure google_oauth.refresh_token.", "refresh_token_missing")

    refreshed = request_token_refresh(resolved, refresh_token)
    if not refreshed.get("ok"):
        return _failure(str(refreshed.get("error") or "Token refresh failed."), refreshed.get("error_code"))

    now = int(time.time())
    expires_at_epoch = now + int(refreshed["expires_in"])
    new_state = {
        "access_token": refreshed["access_token"],
        "refresh_token": refreshed.get("refresh_token") or refresh_token,
        "token_type": refreshed.get("token_type") or "Bearer",
        "scope": refreshed.get("scope"),
        "expires_at": _iso_epoch(expires_at_epoch),
        "expires_at_epoch": expires_at_epoch,
        "updated_at": _iso_epoch(now),
    }
    try:
        save_token_state(resolved.token_path, new_state)
    except OSError as exc:
        return _failure(f"Could not write token file: {exc}", "token_persist_failed")
    logger.info("Refreshed Google access token (expires %s)", new_state["expires_at"])
    return {
        "ok": True,
        "source": "token_refresh",
        "access_token": new_state["access_token"],
        "expires_at": new_state["expires_at"],
        "error": None,
        "error_code": None,
    }


class GoogleOAuthProvider:
    """Auth collaborator; raises `AuthenticationRequiredError` instead of returning a failure dict."""

    def __init__(self, settings_loader: Callable[[], OAuthSettings] | None = None) -> None:
        self._settings_loader = settings_loader or load_oauth_settings

    def get_access_token(self, *, interactive: bool = False) -> str:
        out = get_google_access_token(force_refresh=interactive, settings=self._settings_loader())
        if not out["ok"]:
            logger.warning("Google OAuth unavailable (%s): %s", out.get("error_code"), out.get("error"))
            raise AuthenticationRequiredError(str(out["error"]))
        return str(out["access_token"])
