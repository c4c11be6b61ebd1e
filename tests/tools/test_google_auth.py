import io
import json
import time
from pathlib import Path
from urllib.error import HTTPError

import pytest

from src.savvy_pirate.core.errors import AuthenticationRequiredError
from src.savvy_pirate.tools.kernel import google_auth
from src.savvy_pirate.tools.kernel.google_auth import (
    GoogleOAuthProvider,
    OAuthSettings,
    get_google_access_token,
    load_oauth_settings,
    token_is_fresh,
)


@pytest.fixture()
def settings(tmp_path: Path) -> OAuthSettings:
    return OAuthSettings(
        client_id="client-abc",
        client_secret="secret-abc",
        refresh_token="refresh-from-config",
        token_path=tmp_path / "tokens" / "google.json",
    )


def _seed_token(path: Path, **fields) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(fields), encoding="utf-8")


class _Body:
    def __init__(self, payload) -> None:
        self._raw = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_load_oauth_settings_resolves_relative_path_and_defaults():
    out = load_oauth_settings({"google_oauth": {"token_path": "memory/t.json", "client_id": " id ", "scopes": "bad"}})
    assert out.token_path is not None and out.token_path.is_absolute()
    assert out.token_path.name == "t.json"
    assert out.client_id == "id"
    assert out.scopes == google_auth.DEFAULT_SCOPES
    assert out.timeout_sec == google_auth.DEFAULT_TIMEOUT_SEC
    assert out.missing == ["google_oauth.client_secret"]


def test_missing_settings_short_circuit():
    out = get_google_access_token(settings=OAuthSettings())
    assert out["ok"] is False
    assert out["error_code"] == "config_missing"
    assert "google_oauth.token_path" in out["error"]


def test_fresh_cached_token_skips_refresh(settings: OAuthSettings, monkeypatch: pytest.MonkeyPatch):
    _seed_token(settings.token_path, access_token="cached", expires_at_epoch=int(time.time()) + 900)
    monkeypatch.setattr(google_auth, "request_token_refresh", lambda *_: pytest.fail("refresh not expected"))

    out = get_google_access_token(settings=settings)
    assert out["source"] == "token_cache"
    assert out["access_token"] == "cached"


def test_token_inside_expiry_margin_is_stale():
    now = 1_000_000.0
    assert token_is_fresh({"access_token": "a", "expires_at_epoch": int(now) + 61}, now=now)
    assert not token_is_fresh({"access_token": "a", "expires_at_epoch": int(now) + 30}, now=now)
    assert not token_is_fresh({"expires_at_epoch": int(now) + 900}, now=now)


def test_expired_token_refreshes_with_file_refresh_token(settings: OAuthSettings, monkeypatch: pytest.MonkeyPatch):
    _seed_token(settings.token_path, access_token="old", refresh_token="refresh-from-file", expires_at_epoch=1)
    seen: list[str] = []

    def fake_refresh(_settings, refresh_token):
        seen.append(refresh_token)
        return {"ok": True, "access_token": "fresh", "expires_in": 3600}

    monkeypatch.setattr(google_auth, "request_token_refresh", fake_refresh)
    out = get_google_access_token(settings=settings)

    assert out["source"] == "token_refresh"
    assert seen == ["refresh-from-file"]
    stored = json.loads(settings.token_path.read_text(encoding="utf-8"))
    assert stored["access_token"] == "fresh"
    assert stored["refresh_token"] == "refresh-from-file"
    assert stored["expires_at_epoch"] > int(time.time())
    assert not settings.token_path.with_name("google.json.tmp").exists()


def test_config_refresh_token_used_when_file_absent(settings: OAuthSettings, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        google_auth,
        "request_token_refresh",
        lambda _s, token: {"ok": True, "access_token": token.upper(), "expires_in": 60},
    )
    assert get_google_access_token(settings=settings)["access_token"] == "REFRESH-FROM-CONFIG"


def test_no_refresh_token_anywhere(settings: OAuthSettings):
    settings.refresh_token = None
    out = get_google_access_token(settings=settings)
    assert out["error_code"] == "refresh_token_missing"


def test_invalid_grant_http_error_maps_to_reauth(settings: OAuthSettings, monkeypatch: pytest.MonkeyPatch):
    def raise_http(_req, timeout=None):
        body = io.BytesIO(json.dumps({"error": "invalid_grant"}).encode("utf-8"))
        raise HTTPError(settings.token_uri, 400, "Bad Request", {}, body)

    monkeypatch.setattr(google_auth, "urlopen", raise_http)
    out = google_auth.request_token_refresh(settings, "revoked")
    assert out == {"ok": False, "error": google_auth.REAUTH_MESSAGE, "error_code": "invalid_grant"}


def test_refresh_rejects_payload_without_access_token(settings: OAuthSettings, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(google_auth, "urlopen", lambda _req, timeout=None: _Body({"expires_in": 1200}))
    out = google_auth.request_token_refresh(settings, "refresh")
    assert out["ok"] is False
    assert out["error_code"] == "invalid_response"


def test_refresh_sends_form_grant(settings: OAuthSettings, monkeypatch: pytest.MonkeyPatch):
    captured = {}

    def fake_urlopen(req, timeout=None):
        captured["body"] = req.data.decode("utf-8")
        captured["timeout"] = timeout
        return _Body({"access_token": "tok", "expires_in": 100, "refresh_token": "rotated"})

    monkeypatch.setattr(google_auth, "urlopen", fake_urlopen)
    out = google_auth.request_token_refresh(settings, "refresh-xyz")

    assert out["ok"] is True
    assert out["refresh_token"] == "rotated"
    assert "grant_type=refresh_token" in captured["body"]
    assert "refresh_token=refresh-xyz" in captured["body"]
    assert captured["timeout"] == settings.timeout_sec


def test_provider_raises_when_refresh_fails(settings: OAuthSettings, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        google_auth,
        "request_token_refresh",
        lambda *_: {"ok": False, "error": "revoked", "error_code": "invalid_grant"},
    )
    with pytest.raises(AuthenticationRequiredError, match="revoked"):
        GoogleOAuthProvider(lambda: settings).get_access_token()


def test_provider_interactive_forces_refresh(settings: OAuthSettings, monkeypatch: pytest.MonkeyPatch):
    _seed_token(settings.token_path, access_token="cached", expires_at_epoch=int(time.time()) + 900)
    monkeypatch.setattr(
        google_auth,
        "request_token_refresh",
        lambda *_: {"ok": True, "access_token": "forced", "expires_in": 600},
    )
    provider = GoogleOAuthProvider(lambda: settings)
    assert provider.get_access_token() == "cached"
    assert provider.get_access_token(interactive=True) == "forced"
