from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import httplib2
import pytest
from googleapiclient.errors import HttpError

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from greport import report, sheets_client


_CELL_RE = re.compile(r"([A-Z]+)(\d+):([A-Z]+)(\d+)")


def _column_index(letters: str) -> int:
    index = 0
    for char in letters:
        index = index * 26 + (ord(char) - 64)
    return index - 1


class FakeClock:
    """Monotonic clock that only moves when something sleeps or works."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class _FakeRequest:
    def __init__(self, service: "FakeSheetsService", method: str, callback: Callable[[], Any]) -> None:
        self._service = service
        self._method = method
        self._callback = callback

    def execute(self):
        return self._service._run(self._method, self._callback)


class _FakeValues:
    def __init__(self, service: "FakeSheetsService") -> None:
        self._service = service

    def get(self, spreadsheetId: str, range: str, valueRenderOption: str = "FORMATTED_VALUE"):  # noqa: N803
        self._service.calls.append(("values.get", range, valueRenderOption))
        return _FakeRequest(self._service, "values.get", lambda: self._service._handle_get(range))

    def update(self, spreadsheetId: str, range: str, valueInputOption: str, body: Dict[str, Any]):  # noqa: N803
        self._service.calls.append(("values.update", range, valueInputOption))
        return _FakeRequest(
            self._service, "values.update", lambda: self._service._handle_update(range, body["values"])
        )


class _FakeSpreadsheets:
    def __init__(self, service: "FakeSheetsService") -> None:
        self._service = service

    def values(self) -> _FakeValues:
        return _FakeValues(self._service)

    def get(self, spreadsheetId: str, includeGridData: bool = False, fields: str = ""):  # noqa: N803
        self._service.calls.append(("spreadsheets.get", spreadsheetId, fields))
        return _FakeRequest(self._service, "spreadsheets.get", self._service._handle_metadata)

    def batchUpdate(self, spreadsheetId: str, body: Dict[str, Any]):  # noqa: N802,N803
        self._service.calls.append(("spreadsheets.batchUpdate", spreadsheetId, body))
        return _FakeRequest(
            self._service, "spreadsheets.batchUpdate", lambda: self._service._handle_batch_update(body)
        )


class FakeSheetsService:
    """In-memory stand-in for the googleapiclient Sheets v4 resource."""

    def __init__(
        self,
        sheets: Optional[Mapping[str, Iterable[Iterable[Any]]]] = None,
        *,
        clock: Optional[FakeClock] = None,
        latency: float = 0.0,
    ) -> None:
        self.grids: Dict[str, List[List[Any]]] = {}
        self.sheet_ids: Dict[str, int] = {}
        for title, rows in (sheets or {}).items():
            self.add_sheet(title, rows)
        self.calls: List[Tuple[Any, ...]] = []
        self.failures: Dict[str, int] = {}
        self.clock = clock
        self.latency = latency
        self.started: List[float] = []

    def spreadsheets(self) -> _FakeSpreadsheets:
        return _FakeSpreadsheets(self)

    # Test helpers -----------------------------------------------------
    def add_sheet(self, title: str, rows: Iterable[Iterable[Any]] = ()) -> None:
        self.grids[title] = [list(row) for row in rows]
        self.sheet_ids[title] = 1000 + len(self.sheet_ids)

    def fail(self, method: str, times: int = 1) -> None:
        self.failures[method] = self.failures.get(method, 0) + times

    def set_column(self, title: str, column: str, start_row: int, values: Iterable[Any]) -> None:
        col = _column_index(column)
        for offset, value in enumerate(values):
            self._set_cell(title, start_row - 1 + offset, col, value)

    def cell(self, title: str, column: str, row: int) -> Any:
        rows = self.grids[title]
        col = _column_index(column)
        if row - 1 >= len(rows) or col >= len(rows[row - 1]):
            return ""
        return rows[row - 1][col]

    def column(self, title: str, column: str) -> List[Any]:
        return [self.cell(title, column, row) for row in range(1, len(self.grids[title]) + 1)]

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    # Internal helpers -------------------------------------------------
    def _run(self, method: str, callback: Callable[[], Any]) -> Any:
        if self.clock is not None:
            self.started.append(self.clock.now)
            self.clock.now += self.latency
        if self.failures.get(method):
            self.failures[method] -= 1
            raise HttpError(httplib2.Response({"status": 503, "reason": "Unavailable"}), b"backend error")
        return callback()

    def _set_cell(self, title: str, row: int, col: int, value: Any) -> None:
        rows = self.grids[title]
        while len(rows) <= row:
            rows.append([])
        target = rows[row]
        while len(target) <= col:
            target.append("")
        target[col] = value

    @staticmethod
    def _split_range(range_spec: str) -> Tuple[str, int, int, int, int]:
        sheet, cell_range = range_spec.split("!", 1)
        if sheet.startswith("'") and sheet.endswith("'"):
            sheet = sheet[1:-1].replace("''", "'")
        match = _CELL_RE.fullmatch(cell_range)
        assert match, cell_range
        return (
            sheet,
            int(match.group(2)) - 1,
            _column_index(match.group(1)),
            int(match.group(4)) - 1,
            _column_index(match.group(3)),
        )

    def _handle_get(self, range_spec: str) -> Dict[str, Any]:
        sheet, first_row, first_col, last_row, last_col = self._split_range(range_spec)
        rows = self.grids[sheet]
        values: List[List[Any]] = []
        for row_index in range(first_row, min(last_row, len(rows) - 1) + 1):
            row = rows[row_index][first_col : last_col + 1]
            while row and row[-1] in ("", None):
                row.pop()
            values.append(row)
        while values and not values[-1]:
            values.pop()
        payload: Dict[str, Any] = {"range": range_spec, "majorDimension": "ROWS"}
        if values:
            payload["values"] = values
        return payload

    def _handle_update(self, range_spec: str, values: List[List[Any]]) -> Dict[str, Any]:
        sheet, first_row, first_col, _last_row, _last_col = self._split_range(range_spec)
        for row_offset, row in enumerate(values):
            for col_offset, value in enumerate(row):
                self._set_cell(sheet, first_row + row_offset, first_col + col_offset, value)
        return {"updatedRange": range_spec, "updatedCells": sum(len(row) for row in values)}

    def _handle_metadata(self) -> Dict[str, Any]:
        return {
            "sheets": [
                {"properties": {"title": title, "sheetId": sheet_id}}
                for title, sheet_id in self.sheet_ids.items()
            ]
        }

    def _handle_batch_update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        titles = {sheet_id: title for title, sheet_id in self.sheet_ids.items()}
        for request in body["requests"]:
            insert = request["insertDimension"]
            assert insert["range"]["dimension"] == "COLUMNS"
            start = insert["range"]["startIndex"]
            width = insert["range"]["endIndex"] - start
            for row in self.grids[titles[insert["range"]["sheetId"]]]:
                if len(row) > start:
                    row[start:start] = [""] * width
        return {"replies": [{}]}


@pytest.fixture
def fake_service(monkeypatch) -> FakeSheetsService:
    """Route every session through one in-memory spreadsheet service."""

    service = FakeSheetsService()
    monkeypatch.setattr(sheets_client, "REQUEST_DURATION", 0.0)
    monkeypatch.setattr(sheets_client, "SLEEP_ON_ERROR", 0.0)
    monkeypatch.setattr(sheets_client, "load_credentials", lambda: object())
    monkeypatch.setattr(sheets_client, "_build_service", lambda credentials: service)
    sheets_client.clear_caches()
    report.clear_reports()
    yield service
    sheets_client.clear_caches()
    report.clear_reports()
