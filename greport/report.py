"""Test-result ledger kept in a Google Sheets worksheet.

Each worksheet holds one test per row: the test name in column ``C`` and the
latest result in column ``E``, starting at row 5.  Rows above the data hold
header formulas (summaries, pass rates) and the row directly above the data
holds the timestamp of the current result column.  A new test run may shift
the results one column to the right by inserting a fresh, dated result
column at ``E``.

Public entry points:

``find_test_by_name``
    Scan the name column page by page and return the first matching row.

``update_test_result_by_name``
    Update the matching row or append a new one below the last test.

``create_new_result_col``
    Insert a dated result column, carrying header formulas forward.
"""

from __future__ import annotations

import logging
import threading
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from greport import sheets_client

logger = logging.getLogger(__name__)


NOT_FOUND = -1
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


@dataclass(frozen=True)
class ReportLayout:
    """Fixed placement of the ledger columns inside a worksheet."""

    name_column: str = "C"
    result_column_index: int = 4
    start_row: int = 5
    max_blank_rows: int = 5
    page_size: int = 10
    max_pages: int = 1000

    @property
    def result_column(self) -> str:
        return sheets_client.column_letter(self.result_column_index + 1)

    @property
    def header_row(self) -> int:
        return self.start_row - 1


DEFAULT_LAYOUT = ReportLayout()


def _comparison_key(name: Any) -> str:
    """Fold case and accents so names compare at base letter level.

    Surrounding whitespace is kept, matching :func:`_is_blank`.
    """

    decomposed = unicodedata.normalize("NFKD", str(name))
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return stripped.casefold()


def _cell(row: List[Any], index: int = 0) -> Any:
    if index < len(row):
        return row[index]
    return None


def _is_blank(value: Any) -> bool:
    # Whitespace is content: a " " cell occupies its row and never matches a name.
    return value is None or value == ""


def _timestamp() -> str:
    return datetime.now().strftime(TIMESTAMP_FORMAT)


@dataclass
class ReportLedger:
    """Scan and upsert logic for the reports of one spreadsheet."""

    document_id: str
    layout: ReportLayout = DEFAULT_LAYOUT
    max_row_index: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        self.max_row_index = self.layout.header_row

    # ------------------------------------------------------------------
    # Range helpers
    # ------------------------------------------------------------------
    def _cell_range(self, sheet_name: str, column: str, row: int) -> str:
        return sheets_client.a1_range(sheet_name, column, row, column, row)

    def _result_is_empty(self, sheet_name: str, row: int) -> bool:
        column = self.layout.result_column
        rows = sheets_client.read_range(sheet_name, column, row, column, row, self.document_id)
        if not rows:
            return True
        return _is_blank(_cell(rows[0]))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def find_test_by_name(self, test_name: str, sheet_name: str, allow_existing_result: bool) -> int:
        """Return the row of ``test_name`` in ``sheet_name`` or :data:`NOT_FOUND`.

        With ``allow_existing_result`` the first row carrying the name wins.
        Without it, rows that already hold a result are skipped so a re-run
        of the same test lands on the first row still waiting for a result.
        The scan stops after more than ``max_blank_rows`` consecutive empty
        name cells, counted across page boundaries, or at the first page that
        returns no rows.  :attr:`max_row_index` is left at the last non-empty
        name row seen.
        """

        layout = self.layout
        self.max_row_index = layout.header_row
        if not test_name or not sheet_name:
            return NOT_FOUND

        target = _comparison_key(test_name)
        blank_count = 0
        for page in range(layout.max_pages):
            first_row = layout.start_row + page * layout.page_size
            last_row = first_row + layout.page_size - 1
            rows = sheets_client.read_range(
                sheet_name,
                layout.name_column,
                first_row,
                layout.name_column,
                last_row,
                self.document_id,
            )
            if not rows:
                break

            for offset in range(layout.page_size):
                row_index = first_row + offset
                name = _cell(rows[offset]) if offset < len(rows) else None
                if _is_blank(name):
                    blank_count += 1
                    if blank_count > layout.max_blank_rows:
                        return NOT_FOUND
                    continue

                blank_count = 0
                self.max_row_index = row_index
                if _comparison_key(name) != target:
                    continue
                if allow_existing_result or self._result_is_empty(sheet_name, row_index):
                    return row_index
                logger.debug("Row %d of %s already has a result for %r", row_index, sheet_name, test_name)
        return NOT_FOUND

    def update_test_result_by_name(
        self,
        test_name: str,
        test_result: Any,
        sheet_name: str,
        overwrite: bool,
    ) -> int:
        """Write ``test_result`` for ``test_name``, appending a row if needed.

        Returns the row written to, or :data:`NOT_FOUND` when nothing was
        written.
        """

        if not test_name or not sheet_name:
            logger.warning("Result not recorded: test name and sheet name are required")
            return NOT_FOUND

        layout = self.layout
        row = self.find_test_by_name(test_name, sheet_name, overwrite)
        if row > 0:
            written = sheets_client.write_value(
                test_result, self._cell_range(sheet_name, layout.result_column, row), self.document_id
            )
            if written is None:
                logger.error("Lost result for %r in %s row %d", test_name, sheet_name, row)
                return NOT_FOUND
            return row

        row = self.max_row_index + 1
        name_written = sheets_client.write_value(
            test_name, self._cell_range(sheet_name, layout.name_column, row), self.document_id
        )
        result_written = sheets_client.write_value(
            test_result, self._cell_range(sheet_name, layout.result_column, row), self.document_id
        )
        if name_written is None or result_written is None:
            logger.error("Lost appended row for %r in %s row %d", test_name, sheet_name, row)
            return NOT_FOUND
        logger.info("Appended %r to %s at row %d", test_name, sheet_name, row)
        return row

    def create_new_result_col(self, sheet_name: str, *, keep_formulas: bool = True) -> Optional[str]:
        """Insert a dated result column and carry the header formulas forward.

        Calling this twice inserts two columns; call it once per test run.
        Returns the timestamp written to the header, or ``None`` if the
        column could not be inserted.
        """

        layout = self.layout
        column = layout.result_column
        formula_rows = layout.header_row - 1

        formulas: List[List[Any]] = []
        if keep_formulas and formula_rows > 0:
            captured = sheets_client.read_range(
                sheet_name,
                column,
                1,
                column,
                formula_rows,
                self.document_id,
                value_render_option="FORMULA",
            )
            formulas = captured or []

        inserted = sheets_client.insert_column(layout.result_column_index, sheet_name, self.document_id)
        if inserted is None:
            logger.error("Could not insert a result column into %s", sheet_name)
            return None

        stamp = _timestamp()
        sheets_client.write_value(stamp, self._cell_range(sheet_name, column, layout.header_row), self.document_id)

        if any(not _is_blank(_cell(row)) for row in formulas):
            matrix = []
            for offset in range(formula_rows):
                value = _cell(formulas[offset]) if offset < len(formulas) else None
                matrix.append(["" if value is None else value])
            sheets_client.write_values(
                matrix,
                sheets_client.a1_range(sheet_name, column, 1, column, formula_rows),
                self.document_id,
            )
        logger.info("New result column %s created in %s", stamp, sheet_name)
        return stamp


# ---------------------------------------------------------------------------
# Ledger registry
# ---------------------------------------------------------------------------
_REPORTS: Dict[str, ReportLedger] = {}
_REPORTS_LOCK = threading.Lock()


def get_report(document_id: str) -> ReportLedger:
    """Return the ledger for ``document_id``, creating it on first use."""

    key = sheets_client.parse_spreadsheet_id(document_id)
    with _REPORTS_LOCK:
        report = _REPORTS.get(key)
        if report is None:
            report = ReportLedger(key)
            _REPORTS[key] = report
    return report


def clear_reports() -> None:
    with _REPORTS_LOCK:
        _REPORTS.clear()


def find_test_by_name(test_name: str, sheet_name: str, allow_existing_result: bool, document_id: str) -> int:
    return get_report(document_id).find_test_by_name(test_name, sheet_name, allow_existing_result)


def update_test_result_by_name(
    test_name: str,
    test_result: Any,
    sheet_name: str,
    overwrite: bool,
    document_id: str,
) -> int:
    return get_report(document_id).update_test_result_by_name(test_name, test_result, sheet_name, overwrite)


def create_new_result_col(sheet_name: str, document_id: str, *, keep_formulas: bool = True) -> Optional[str]:
    return get_report(document_id).create_new_result_col(sheet_name, keep_formulas=keep_formulas)


__all__ = [
    "DEFAULT_LAYOUT",
    "NOT_FOUND",
    "TIMESTAMP_FORMAT",
    "ReportLayout",
    "ReportLedger",
    "clear_reports",
    "create_new_result_col",
    "find_test_by_name",
    "get_report",
    "update_test_result_by_name",
]
