"""Paced, retried access to Google Sheets for the report ledger.

Google limits the number of requests a free account may issue per minute,
and the API occasionally answers with transient errors.  Every remote call
made by this module therefore goes through :meth:`SheetSession._execute`,
which

* keeps at least :data:`REQUEST_DURATION` seconds between the start of one
  call and the start of the next call on the same session, sleeping only
  the part of the interval the call itself did not use, and
* retries a failed call exactly once after :data:`SLEEP_ON_ERROR` seconds.

A call that fails twice is logged and answered with ``None``; callers treat
``None`` as "no data".  Sessions are cached per spreadsheet for the process
lifetime, as are the worksheet ids needed for structural updates.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from googleapiclient.discovery import build

from greport.google_credentials import CredentialError, load_credentials

logger = logging.getLogger(__name__)


REQUEST_DURATION = 1.2
SLEEP_ON_ERROR = 10.0
MAX_ATTEMPTS = 2
VALUE_INPUT_OPTION = "USER_ENTERED"


class SheetsClientError(RuntimeError):
    """Base error raised for Sheets access failures."""


class SessionError(SheetsClientError):
    """Raised when a session for a spreadsheet cannot be established."""


class TransientRemoteError(SheetsClientError):
    """A remote call failed; recovered by a single retry."""


class ResolutionError(SheetsClientError):
    """A worksheet title could not be mapped to its numeric sheet id."""


def parse_spreadsheet_id(value: str) -> str:
    """Normalise a spreadsheet identifier from raw input or URL."""

    if not value:
        return ""
    value = value.strip()
    if "/spreadsheets/d/" in value:
        value = value.split("/spreadsheets/d/", 1)[1]
        value = value.split("/", 1)[0]
    if "?" in value:
        value = value.split("?", 1)[0]
    if "#" in value:
        value = value.split("#", 1)[0]
    return value


def column_letter(index: int) -> str:
    """Return the spreadsheet column letter for a 1-indexed column index."""

    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: List[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def quote_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if not safe:
        raise ValueError("Worksheet title must not be empty")
    safe = safe.replace("'", "''")
    return f"'{safe}'"


def a1_range(sheet_name: str, start_col: str, start_row: int, end_col: str, end_row: int) -> str:
    """Return ``'Sheet'!C5:C14`` for the given cell range address."""

    return f"{quote_title(sheet_name)}!{start_col}{start_row}:{end_col}{end_row}"


def _build_service(credentials):
    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


# ---------------------------------------------------------------------------
# Worksheet id cache
# ---------------------------------------------------------------------------
_SHEET_IDS: Dict[Tuple[str, str], int] = {}
_SHEET_IDS_LOCK = threading.Lock()


def _remember_sheet_ids(document_id: str, metadata: Any) -> int:
    sheets = metadata.get("sheets", []) if isinstance(metadata, dict) else []
    found = 0
    with _SHEET_IDS_LOCK:
        for sheet in sheets:
            properties = sheet.get("properties", {})
            title = properties.get("title")
            sheet_id = properties.get("sheetId")
            if isinstance(title, str) and isinstance(sheet_id, int):
                _SHEET_IDS[(document_id, title)] = sheet_id
                found += 1
    return found


class SheetSession:
    """Authenticated Sheets service bound to one spreadsheet."""

    def __init__(
        self,
        document_id: str,
        service,
        *,
        request_duration: Optional[float] = None,
        sleep_on_error: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self._document_id = document_id
        self._service = service
        self._request_duration = REQUEST_DURATION if request_duration is None else request_duration
        self._sleep_on_error = SLEEP_ON_ERROR if sleep_on_error is None else sleep_on_error
        self._clock = clock
        self._sleeper = sleeper
        self._lock = threading.Lock()

    @property
    def document_id(self) -> str:
        return self._document_id

    @property
    def service(self):
        return self._service

    # ------------------------------------------------------------------
    # Pacing and retry
    # ------------------------------------------------------------------
    def _pace(self, started: float) -> None:
        remaining = self._request_duration - (self._clock() - started)
        if remaining > 0:
            self._sleeper(remaining)

    def _execute(self, operation: Callable[[], Any], description: str) -> Any:
        with self._lock:
            for attempt in range(1, MAX_ATTEMPTS + 1):
                started = self._clock()
                try:
                    return operation()
                except Exception as exc:  # every remote failure is treated as transient
                    error = TransientRemoteError(f"Sheets API {description} error: {exc}")
                    if attempt < MAX_ATTEMPTS:
                        logger.warning(
                            "%s. Retrying in %ss (%d/%d)",
                            error,
                            self._sleep_on_error,
                            attempt,
                            MAX_ATTEMPTS,
                        )
                        self._sleeper(self._sleep_on_error)
                    else:
                        logger.error("%s. Giving up after %d attempts", error, MAX_ATTEMPTS)
                finally:
                    self._pace(started)
        return None

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------
    def read_range(
        self,
        sheet_name: str,
        start_col: str,
        start_row: int,
        end_col: str,
        end_row: int,
        *,
        value_render_option: str = "FORMATTED_VALUE",
    ) -> Optional[List[List[Any]]]:
        """Return the rows of the range, or ``None`` if the read failed."""

        range_spec = a1_range(sheet_name, start_col, start_row, end_col, end_row)
        request = (
            self._service.spreadsheets()
            .values()
            .get(
                spreadsheetId=self._document_id,
                range=range_spec,
                valueRenderOption=value_render_option,
            )
        )
        result = self._execute(request.execute, f"values.get {range_spec}")
        if result is None:
            return None
        values = result.get("values", []) if isinstance(result, dict) else []
        return [list(row) for row in values]

    def write_value(self, value: Any, range_spec: str) -> Optional[Dict[str, Any]]:
        return self.write_values([[value]], range_spec)

    def write_values(self, matrix: Sequence[Sequence[Any]], range_spec: str) -> Optional[Dict[str, Any]]:
        request = (
            self._service.spreadsheets()
            .values()
            .update(
                spreadsheetId=self._document_id,
                range=range_spec,
                valueInputOption=VALUE_INPUT_OPTION,
                body={"values": [list(row) for row in matrix]},
            )
        )
        return self._execute(request.execute, f"values.update {range_spec}")

    def sheet_id(self, sheet_name: str) -> Optional[int]:
        """Return the numeric id of ``sheet_name``, listing metadata on a miss."""

        key = (self._document_id, sheet_name)
        cached = _SHEET_IDS.get(key)
        if cached is not None:
            return cached

        request = self._service.spreadsheets().get(
            spreadsheetId=self._document_id,
            includeGridData=False,
            fields="sheets.properties(sheetId,title)",
        )
        metadata = self._execute(request.execute, "spreadsheets.get")
        if metadata is None:
            return None
        found = _remember_sheet_ids(self._document_id, metadata)
        logger.debug("Cached %d sheet ids for %s", found, self._document_id)
        return _SHEET_IDS.get(key)

    def insert_column(self, column_index: int, sheet_name: str) -> Optional[Dict[str, Any]]:
        """Insert one empty column at 0-based ``column_index`` of ``sheet_name``."""

        sheet_id = self.sheet_id(sheet_name)
        if sheet_id is None:
            error = ResolutionError(f"Worksheet {sheet_name!r} not found in {self._document_id}")
            logger.warning("Column insert skipped: %s", error)
            return None

        body = {
            "requests": [
                {
                    "insertDimension": {
                        "range": {
                            "sheetId": sheet_id,
                            "dimension": "COLUMNS",
                            "startIndex": column_index,
                            "endIndex": column_index + 1,
                        },
                        "inheritFromBefore": False,
                    }
                }
            ]
        }
        request = self._service.spreadsheets().batchUpdate(spreadsheetId=self._document_id, body=body)
        return self._execute(request.execute, "spreadsheets.batchUpdate")


# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------
_SESSIONS: Dict[str, SheetSession] = {}
_SESSIONS_LOCK = threading.Lock()
_SESSION_KEY_LOCKS: Dict[str, threading.Lock] = {}


def _create_session(document_id: str) -> SheetSession:
    try:
        credentials = load_credentials()
    except CredentialError as exc:
        raise SessionError(str(exc)) from exc
    except Exception as exc:  # pragma: no cover - google auth / oauthlib guard
        raise SessionError(f"Could not obtain credentials: {exc}") from exc

    try:
        service = _build_service(credentials)
    except Exception as exc:  # pragma: no cover - discovery / HTTP error guard
        raise SessionError(f"Could not build Sheets service: {exc}") from exc

    logger.info("Sheets session created for %s", document_id)
    return SheetSession(document_id, service)


def get_session(document_id: str) -> SheetSession:
    """Return the cached session for ``document_id``, creating it if needed.

    Raises :class:`SessionError` when credentials cannot be obtained; nothing
    is cached in that case so the next call starts over.
    """

    key = parse_spreadsheet_id(document_id)
    if not key:
        raise SessionError("Spreadsheet identifier must not be empty")

    session = _SESSIONS.get(key)
    if session is not None:
        return session

    with _SESSIONS_LOCK:
        key_lock = _SESSION_KEY_LOCKS.setdefault(key, threading.Lock())
    with key_lock:
        session = _SESSIONS.get(key)
        if session is None:
            session = _create_session(key)
            with _SESSIONS_LOCK:
                _SESSIONS[key] = session
    return session


def _session_or_none(document_id: str) -> Optional[SheetSession]:
    try:
        return get_session(document_id)
    except SessionError as exc:
        logger.error("No Sheets session for %r: %s", document_id, exc)
        return None


def read_range(
    sheet_name: str,
    start_col: str,
    start_row: int,
    end_col: str,
    end_row: int,
    document_id: str,
    *,
    value_render_option: str = "FORMATTED_VALUE",
) -> Optional[List[List[Any]]]:
    """Read a range; ``None`` means the read failed and carries no data."""

    session = _session_or_none(document_id)
    if session is None:
        return None
    return session.read_range(
        sheet_name,
        start_col,
        start_row,
        end_col,
        end_row,
        value_render_option=value_render_option,
    )


def write_value(value: Any, range_spec: str, document_id: str) -> Optional[Dict[str, Any]]:
    """Write a single value as if typed by a user, e.g. into ``'Run1'!E10:E10``."""

    session = _session_or_none(document_id)
    if session is None:
        return None
    return session.write_value(value, range_spec)


def write_values(
    matrix: Sequence[Sequence[Any]], range_spec: str, document_id: str
) -> Optional[Dict[str, Any]]:
    """Write a matrix of values as if typed by a user."""

    session = _session_or_none(document_id)
    if session is None:
        return None
    return session.write_values(matrix, range_spec)


def insert_column(column_index: int, sheet_name: str, document_id: str) -> Optional[Dict[str, Any]]:
    """Insert an empty column at 0-based ``column_index``; ``None`` on failure."""

    session = _session_or_none(document_id)
    if session is None:
        return None
    return session.insert_column(column_index, sheet_name)


def clear_caches() -> None:
    """Forget every cached session and worksheet id."""

    with _SESSIONS_LOCK:
        _SESSIONS.clear()
        _SESSION_KEY_LOCKS.clear()
    with _SHEET_IDS_LOCK:
        _SHEET_IDS.clear()


__all__ = [
    "MAX_ATTEMPTS",
    "REQUEST_DURATION",
    "SLEEP_ON_ERROR",
    "VALUE_INPUT_OPTION",
    "ResolutionError",
    "SessionError",
    "SheetSession",
    "SheetsClientError",
    "TransientRemoteError",
    "a1_range",
    "clear_caches",
    "column_letter",
    "get_session",
    "insert_column",
    "parse_spreadsheet_id",
    "quote_title",
    "read_range",
    "write_value",
    "write_values",
]
