"""Google Sheets helpers: weekly destination tabs, row appends, and the input search catalog."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from src.savvy_pirate.core.collaborators import AuthProvider
from src.savvy_pirate.core.config_loader import get_google_sheets_config
from src.savvy_pirate.core.reference_clock import ReferenceClock

from .google_auth import GoogleOAuthProvider

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 15
SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
SEARCHES_TAB_NAME = "Searches"
SEARCHES_RANGE = "A:C"
FALLBACK_TAB_NAME = "Sheet1"
HEADERS_ROW = [
    "Date",
    "Name",
    "Title",
    "Location",
    "Connection Source",
    "LinkedIn URL",
    "Accreditation 1",
    "Accreditation 2",
    "Accreditation 3",
    "Accreditation 4",
    "Accreditation 5",
    "Accreditation 6",
]


def _column_letters(one_based_index: int) -> str:
    if one_based_index <= 0:
        raise ValueError("one_based_index must be >= 1")
    out: list[str] = []
    value = one_based_index
    while value > 0:
        value, remainder = divmod(value - 1, 26)
        out.append(chr(ord("A") + remainder))
    return "".join(reversed(out))


def _quoted_range(tab_name: str, cells: str) -> str:
    escaped = tab_name.replace("'", "''")
    return f"'{escaped}'!{cells}"


def _encode_sheet(spreadsheet_id: str) -> str:
    return quote(spreadsheet_id, safe="")


def _encode_range(range_name: str) -> str:
    return quote(range_name, safe="!:$")


def _build_values_get_url(spreadsheet_id: str, range_name: str) -> str:
    return f"{SHEETS_API_BASE}/{_encode_sheet(spreadsheet_id)}/values/{_encode_range(range_name)}"


def _build_values_append_url(spreadsheet_id: str, range_name: str) -> str:
    return (
        f"{SHEETS_API_BASE}/{_encode_sheet(spreadsheet_id)}/values/{_encode_range(range_name)}:append"
        "?valueInputOption=USER_ENTERED&insertDataOption=INSERT_ROWS"
    )


def _build_values_update_url(spreadsheet_id: str, range_name: str) -> str:
    return f"{SHEETS_API_BASE}/{_encode_sheet(spreadsheet_id)}/values/{_encode_range(range_name)}?valueInputOption=USER_ENTERED"


def _build_batch_update_url(spreadsheet_id: str) -> str:
    return f"{SHEETS_API_BASE}/{_encode_sheet(spreadsheet_id)}:batchUpdate"


def _build_sheet_metadata_url(spreadsheet_id: str) -> str:
    return f"{SHEETS_API_BASE}/{_encode_sheet(spreadsheet_id)}?fields=sheets(properties(sheetId,title))"


def _request_json(url: str, *, headers: dict[str, str], timeout_sec: int, method: str = "GET", payload: dict[str, Any] | None = None) -> dict[str, Any]:
    request_headers = dict(headers)
    data = None
    if payload is not None:
        request_headers["Content-Type"] = "application/json"
        data = json.dumps(payload).encode("utf-8")
    request = Request(url, data=data, headers=request_headers, method=method)
    with urlopen(request, timeout=timeout_sec) as response:
        body = response.read().decode("utf-8")
    parsed = json.loads(body) if body.strip() else {}
    if not isinstance(parsed, dict):
        raise ValueError("Google Sheets response must be a JSON object.")
    return parsed


def weekly_tab_name(now: datetime) -> str:
    """Destination tab for the current run day, `MM_DD_YY` in the reference zone."""
    return now.strftime("%m_%d_%y")


class GoogleSheetsClient:
    """Sheets collaborator over the v4 REST API."""

    def __init__(
        self,
        *,
        auth: AuthProvider | None = None,
        clock: ReferenceClock | None = None,
        timeout_sec: int | None = None,
    ) -> None:
        config = get_google_sheets_config()
        configured_timeout = config.get("timeout_sec", DEFAULT_TIMEOUT_SEC)
        self._auth = auth or GoogleOAuthProvider()
        self._clock = clock or ReferenceClock()
        self._timeout_sec = timeout_sec or (int(configured_timeout) if isinstance(configured_timeout, int) and configured_timeout > 0 else DEFAULT_TIMEOUT_SEC)

    def _headers(self) -> dict[str, str]:
        token = self._auth.get_access_token(interactive=False)
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    def list_tabs(self, spreadsheet_id: str) -> list[dict[str, Any]]:
        payload = _request_json(_build_sheet_metadata_url(spreadsheet_id), headers=self._headers(), timeout_sec=self._timeout_sec)
        tabs: list[dict[str, Any]] = []
        for sheet in payload.get("sheets") or []:
            props = sheet.get("properties") if isinstance(sheet, dict) else None
            if isinstance(props, dict) and isinstance(props.get("title"), str):
                tabs.append({"sheet_id": props.get("sheetId"), "title": props["title"]})
        return tabs

    def read_values(self, spreadsheet_id: str, range_name: str) -> list[list[str]]:
        payload = _request_json(_build_values_get_url(spreadsheet_id, range_name), headers=self._headers(), timeout_sec=self._timeout_sec)
        values = payload.get("values")
        if not isinstance(values, list):
            return []
        return [[str(cell) for cell in row] for row in values if isinstance(row, list)]

    def append_rows(self, spreadsheet_id: str, tab_name: str, rows: list[list[Any]]) -> dict[str, Any]:
        if not rows:
            return {"ok": True, "appended": 0}
        end_col = _column_letters(len(HEADERS_ROW))
        range_name = _quoted_range(tab_name, f"A:{end_col}")
        payload = _request_json(
            _build_values_append_url(spreadsheet_id, range_name),
            headers=self._headers(),
            timeout_sec=self._timeout_sec,
            method="POST",
            payload={"values": rows},
        )
        updates = payload.get("updates") if isinstance(payload.get("updates"), dict) else {}
        return {"ok": True, "appended": int(updates.get("updatedRows") or len(rows)), "tab_name": tab_name}

    def ensure_destination_tab(self, spreadsheet_id: str) -> dict[str, Any]:
        """Create today's weekly tab with a header row when it does not exist yet."""
        tab_name = weekly_tab_name(self._clock.now())
        for tab in self.list_tabs(spreadsheet_id):
            if tab["title"] == tab_name:
                return {"tab_name": tab_name, "is_new": False, "sheet_id": tab.get("sheet_id")}

        reply = _request_json(
            _build_batch_update_url(spreadsheet_id),
            headers=self._headers(),
            timeout_sec=self._timeout_sec,
            method="POST",
            payload={"requests": [{"addSheet": {"properties": {"title": tab_name}}}]},
        )
        sheet_id = None
        replies = reply.get("replies")
        if isinstance(replies, list) and replies and isinstance(replies[0], dict):
            sheet_id = ((replies[0].get("addSheet") or {}).get("properties") or {}).get("sheetId")

        end_col = _column_letters(len(HEADERS_ROW))
        _request_json(
            _build_values_update_url(spreadsheet_id, _quoted_range(tab_name, f"A1:{end_col}1")),
            headers=self._headers(),
            timeout_sec=self._timeout_sec,
            method="PUT",
            payload={"values": [HEADERS_ROW]},
        )
        logger.info("Created weekly tab %s in %s", tab_name, spreadsheet_id)
        return {"tab_name": tab_name, "is_new": True, "sheet_id": sheet_id}

    def sheet_url(self, spreadsheet_id: str, tab_name: str | None = None) -> str | None:
        if not spreadsheet_id:
            return None
        base = f"https://docs.google.com/spreadsheets/d/{_encode_sheet(spreadsheet_id)}"
        if tab_name:
            try:
                tabs = self.list_tabs(spreadsheet_id)
            except (HTTPError, URLError, ValueError) as exc:
                logger.warning("Could not load tabs for %s: %s", spreadsheet_id, exc)
                tabs = []
            for tab in tabs:
                if tab["title"] == tab_name and tab.get("sheet_id") is not None:
                    gid = tab["sheet_id"]
                    return f"{base}/edit?gid={gid}#gid={gid}"
        return f"{base}/edit"


class InputSheetSearchCatalog:
    """Search units read from the input workbook's `Searches` tab.

    Rows are `(source, title, url)` with a header row; `Sheet1` is used when the
    `Searches` tab is empty or missing.
    """

    def __init__(self, sheets: GoogleSheetsClient, input_sheet_id: str | None = None) -> None:
        self._sheets = sheets
        configured = get_google_sheets_config().get("input_sheet_id")
        self._input_sheet_id = input_sheet_id or (configured if isinstance(configured, str) and configured.strip() else None)

    def _rows(self) -> list[list[str]]:
        if not self._input_sheet_id:
            logger.error("No input sheet configured; set google_sheets.input_sheet_id")
            return []
        try:
            rows = self._sheets.read_values(self._input_sheet_id, _quoted_range(SEARCHES_TAB_NAME, SEARCHES_RANGE))
        except HTTPError as exc:
            if exc.code != 400:
                raise
            rows = []
        if len(rows) < 2:
            logger.info("No data in %s tab, trying %s", SEARCHES_TAB_NAME, FALLBACK_TAB_NAME)
            rows = self._sheets.read_values(self._input_sheet_id, f"{FALLBACK_TAB_NAME}!{SEARCHES_RANGE}")
        return rows[1:]

    def list_units(self, source_name: str) -> list[dict[str, Any]]:
        wanted = source_name.strip().lower()
        units: list[dict[str, Any]] = []
        for row in self._rows():
            source = row[0].strip() if len(row) > 0 else ""
            title = row[1].strip() if len(row) > 1 else ""
            url = row[2].strip() if len(row) > 2 else ""
            if not source or not url or source.lower() != wanted:
                continue
            units.append({"source": source, "title": title or url, "url": url})
        return units

    def list_sources(self) -> list[str]:
        seen: dict[str, None] = {}
        for row in self._rows():
            if row and row[0].strip() and len(row) > 2 and row[2].strip():
                seen.setdefault(row[0].strip(), None)
        return list(seen)
