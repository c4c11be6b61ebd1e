"""Webhook notifier for run lifecycle and auth events."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from src.savvy_pirate.core.config_loader import get_notifications_config
from src.savvy_pirate.core.reference_clock import _utc_now, iso, parse_iso
from src.savvy_pirate.core.state_store import NOTIFICATION_SETTINGS_KEY, StateStore

logger = logging.getLogger(__name__)

PAYLOAD_SOURCE = "Savvy Pirate v2.0"
DEFAULT_TIMEOUT_SEC = 25
DEFAULT_AUTH_COOLDOWN_SEC = 30 * 60
ERROR_TYPES = {"run_failed", "unit_failed", "auth_expired", "linkedin_signed_out", "linkedin_checkpoint"}
STATUS_TYPES = {"run_started", "run_completed"}
RATE_LIMITED_TYPES = {"auth_expired", "linkedin_signed_out", "linkedin_checkpoint"}


def event_category(event_type: str) -> str:
    if event_type in ERROR_TYPES:
        return "error"
    if event_type in STATUS_TYPES:
        return "status"
    return "other"


def default_message(event_type: str, data: dict[str, Any]) -> str:
    source = data.get("source_name") or "unknown source"
    messages = {
        "run_started": f"Scrape started for {source}",
        "run_completed": f"Scrape completed for {source}: {data.get('profiles_scraped') or 0} profiles scraped",
        "run_failed": f"Scrape FAILED for {source}: {data.get('error') or 'Unknown error'}",
        "unit_failed": f"Search failed for {source}: {data.get('error') or 'Unknown error'}",
        "auth_expired": f"GOOGLE AUTH REQUIRED - Re-authentication required. {data.get('details') or ''}".strip(),
        "linkedin_signed_out": f"LINKEDIN SIGNED OUT - Manual login required. {data.get('details') or ''}".strip(),
        "linkedin_checkpoint": f"LINKEDIN SECURITY CHALLENGE - Manual intervention required. {data.get('details') or ''}".strip(),
        "test": "Test notification from Savvy Pirate - webhook is working!",
    }
    return messages.get(event_type, f"Notification: {event_type}")


def validate_payload(payload: dict[str, Any]) -> list[str]:
    """Return structural problems; the payload is still sent when any are found."""
    errors: list[str] = []
    for key in ("type", "timestamp", "source"):
        if not isinstance(payload.get(key), str) or not payload.get(key):
            errors.append(f"Missing or invalid `{key}` field")
    data = payload.get("data")
    if not isinstance(data, dict):
        errors.append("Missing or invalid `data` field")
    elif not isinstance(data.get("message"), str) or not data.get("message"):
        errors.append("Missing or invalid `data.message` field")
    elif payload.get("type") in ERROR_TYPES | STATUS_TYPES and not isinstance(data.get("source_name"), str):
        errors.append(f"{payload.get('type')}: missing `data.source_name`")
    return errors


class WebhookNotifier:
    """POST JSON event payloads to a catch-hook URL.

    The URL saved at runtime wins over `notifications.webhook_url` from config.
    Auth events are rate-limited; the last-sent times persist across restarts.
    """

    def __init__(self, state: StateStore, *, timeout_sec: int | None = None, auth_cooldown_sec: int | None = None) -> None:
        config = get_notifications_config()
        timeout = config.get("timeout_sec", DEFAULT_TIMEOUT_SEC)
        cooldown = config.get("auth_cooldown_sec", DEFAULT_AUTH_COOLDOWN_SEC)
        self._state = state
        self._config_url = config.get("webhook_url") if isinstance(config.get("webhook_url"), str) else None
        self._timeout_sec = timeout_sec or (int(timeout) if isinstance(timeout, int) and timeout > 0 else DEFAULT_TIMEOUT_SEC)
        self._auth_cooldown = timedelta(
            seconds=auth_cooldown_sec if auth_cooldown_sec is not None else (int(cooldown) if isinstance(cooldown, int) and cooldown >= 0 else DEFAULT_AUTH_COOLDOWN_SEC)
        )

    def _settings(self) -> dict[str, Any]:
        value = self._state.get(NOTIFICATION_SETTINGS_KEY, {})
        return value if isinstance(value, dict) else {}

    def webhook_url(self) -> str | None:
        stored = self._settings().get("webhook_url")
        url = stored if isinstance(stored, str) and stored.strip() else self._config_url
        return url.strip() if isinstance(url, str) and url.strip() else None

    def set_webhook_url(self, url: str | None) -> dict[str, Any]:
        clean = url.strip() if isinstance(url, str) and url.strip() else None

        def _apply(settings: Any) -> dict[str, Any]:
            out = dict(settings) if isinstance(settings, dict) else {}
            out["webhook_url"] = clean
            return out

        self._state.mutate(NOTIFICATION_SETTINGS_KEY, _apply, {})
        logger.info("Webhook URL %s", "saved" if clean else "cleared")
        return {"ok": True, "webhook_url": clean}

    def _cooldown_active(self, event_type: str) -> bool:
        if event_type not in RATE_LIMITED_TYPES:
            return False
        last_sent = self._settings().get("auth_last_sent")
        last = parse_iso(last_sent.get(event_type)) if isinstance(last_sent, dict) else None
        return last is not None and _utc_now() - last < self._auth_cooldown

    def _mark_sent(self, event_type: str) -> None:
        def _apply(settings: Any) -> dict[str, Any]:
            out = dict(settings) if isinstance(settings, dict) else {}
            last_sent = dict(out.get("auth_last_sent") or {})
            last_sent[event_type] = iso(_utc_now())
            out["auth_last_sent"] = last_sent
            return out

        self._state.mutate(NOTIFICATION_SETTINGS_KEY, _apply, {})

    def build_payload(self, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
        body = dict(data)
        body.setdefault("message", default_message(event_type, data))
        return {
            "type": event_type,
            "category": event_category(event_type),
            "timestamp": iso(_utc_now()),
            "source": PAYLOAD_SOURCE,
            "data": body,
        }

    def notify(self, event_type: str, payload: dict[str, Any]) -> bool:
        url = self.webhook_url()
        if not url:
            logger.debug("No webhook URL configured; skipping %s", event_type)
            return False
        if self._cooldown_active(event_type):
            logger.info("Skipping %s notification (cooldown active)", event_type)
            return False

        body = self.build_payload(event_type, payload)
        problems = validate_payload(body)
        if problems:
            logger.warning("Payload validation failed for %s: %s", event_type, "; ".join(problems))

        request = Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_sec) as response:
                status = getattr(response, "status", 200)
        except HTTPError as exc:
            logger.error("Webhook returned %s for %s", exc.code, event_type)
            return False
        except (URLError, TimeoutError, OSError) as exc:
            logger.error("Webhook error for %s: %s", event_type, exc)
            return False

        if not 200 <= int(status) < 300:
            logger.error("Webhook returned %s for %s", status, event_type)
            return False
        if event_type in RATE_LIMITED_TYPES:
            self._mark_sent(event_type)
        logger.info("Notification sent: %s", event_type)
        return True

    def send_test(self) -> dict[str, Any]:
        if not self.webhook_url():
            return {"ok": False, "error": "No webhook URL configured"}
        sent = self.notify("test", {"message": default_message("test", {}), "source_name": "Savvy Pirate"})
        return {"ok": sent, "error": None if sent else "Webhook request failed"}
