"""Row/column access to the billing workbook.

This module wraps an ``openpyxl`` workbook behind the small range API the
repositories rely on: whole-sheet reads, positional writes, appends and row
deletion. Rows and columns are 1-based like the spreadsheet itself; row 1 of
every sheet holds the header schema. When the store is bound to a file,
each mutation is saved back immediately, since the workbook is the system
of record and other editors may open it at any time.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from pathlib import Path  # Filesystem path management
from typing import Any, Iterable, List, Optional, Sequence

from openpyxl import Workbook, load_workbook  # Excel file loader/creator
from openpyxl.worksheet.worksheet import Worksheet

from billing_sheets.config import SheetNames
from billing_sheets.errors import ErrorCode, StoreError

logger = logging.getLogger(__name__)

Row = List[Any]


def _is_blank(row: Sequence[Any]) -> bool:
    return all(value is None or value == "" for value in row)


# Cell coercion helpers. Cells may have been typed by hand, so numbers can
# arrive as floats or strings and dates as ISO strings.
def cell_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)  # Normalise numerics (e.g., 30.0 -> "30")
    text = str(value).strip()
    return text or None


def cell_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def cell_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def cell_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError:
        return None


def pad(row: Sequence[Any], width: int) -> Row:
    """Return ``row`` as a list of exactly ``width`` cells."""
    values = list(row[:width])
    values.extend([None] * (width - len(values)))
    return values


class WorkbookStore:
    """Tabular store backed by an Excel workbook."""

    def __init__(self, workbook: Workbook, path: Optional[Path] = None) -> None:
        self._workbook = workbook
        self._path = Path(path) if path is not None else None

    @classmethod
    def in_memory(cls) -> "WorkbookStore":
        """Return a store over a fresh workbook that is never written to disk."""
        workbook = Workbook()
        workbook.remove(workbook.active)  # Drop the default "Sheet"
        return cls(workbook)

    @classmethod
    def open(cls, path: Path | str, create: bool = True) -> "WorkbookStore":
        """Open the workbook at ``path``, creating an empty one if allowed."""

        path = Path(path)  # Ensure we have a Path instance
        if path.exists():
            return cls(load_workbook(filename=path), path)
        if not create:
            raise FileNotFoundError(f"Workbook not found: {path}")

        # Nothing is written until the first sheet exists; openpyxl cannot
        # save a workbook without sheets.
        workbook = Workbook()
        workbook.remove(workbook.active)
        logger.info("Starting new workbook %s", path)
        return cls(workbook, path)

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def sheet_names(self) -> List[str]:
        return list(self._workbook.sheetnames)

    # ------------------------------------------------------------------
    # Range API
    # ------------------------------------------------------------------
    def read_range(self, sheet_name: str) -> List[Row]:
        """Return every row of the sheet, header included, as lists.

        Trailing blank rows (left behind by manual edits) are dropped.
        """
        sheet = self._sheet(sheet_name)
        rows = [list(row) for row in sheet.iter_rows(values_only=True)]
        while rows and _is_blank(rows[-1]):
            rows.pop()
        return rows

    def write_range(
        self, sheet_name: str, row: int, column: int, values: Sequence[Sequence[Any]]
    ) -> None:
        """Overwrite the block whose top-left cell is (``row``, ``column``)."""
        sheet = self._sheet(sheet_name)
        for row_offset, row_values in enumerate(values):
            for col_offset, value in enumerate(row_values):
                sheet.cell(row=row + row_offset, column=column + col_offset, value=value)
        self._save()

    def append_row(self, sheet_name: str, values: Sequence[Any]) -> int:
        """Write ``values`` below the last non-blank row; return its row number."""
        target = self.last_row(sheet_name) + 1
        self.write_range(sheet_name, target, 1, [values])
        return target

    def delete_row(self, sheet_name: str, row_index: int) -> None:
        if row_index < 2:
            raise StoreError(
                ErrorCode.STORE_ACCESS_ERROR,
                f"Refusing to delete header row of sheet '{sheet_name}'",
                "WorkbookStore.delete_row",
                {"sheet": sheet_name, "row": row_index},
                False,
            )
        self._sheet(sheet_name).delete_rows(row_index, 1)
        self._save()

    def last_row(self, sheet_name: str) -> int:
        return len(self.read_range(sheet_name))

    # ------------------------------------------------------------------
    # Sheet setup
    # ------------------------------------------------------------------
    def ensure_sheet(self, sheet_name: str, headers: Iterable[str]) -> bool:
        """Create ``sheet_name`` with a header row if missing.

        Returns True when the sheet was created. An existing sheet whose
        first row is blank gets the header row written into it.
        """
        headers = list(headers)
        if sheet_name in self._workbook.sheetnames:
            sheet = self._workbook[sheet_name]
            first = next(sheet.iter_rows(min_row=1, max_row=1, values_only=True), ())
            if _is_blank(first):
                self.write_range(sheet_name, 1, 1, [headers])
            return False

        sheet = self._workbook.create_sheet(sheet_name)
        sheet.append(headers)
        sheet.freeze_panes = "A2"  # Keep the header visible for human editors
        self._save()
        logger.info("Created sheet '%s'", sheet_name)
        return True

    def initialize(self, sheets: SheetNames) -> List[str]:
        """Make sure every billing sheet exists; return the ones created."""
        return [
            name
            for name, headers in sheets.headers().items()
            if self.ensure_sheet(name, headers)
        ]

    # ------------------------------------------------------------------
    def _sheet(self, sheet_name: str) -> Worksheet:
        try:
            return self._workbook[sheet_name]  # Access the required worksheet by name
        except KeyError as exc:
            raise StoreError(
                ErrorCode.STORE_SHEET_NOT_FOUND,
                f"Worksheet '{sheet_name}' not found in workbook",
                "WorkbookStore",
                {"sheet": sheet_name},
                False,
            ) from exc

    def _save(self) -> None:
        """Write the workbook to disk.

        On failure the in-memory workbook is reloaded from the last saved
        file before the error propagates, so a retried operation starts
        from what is actually on disk.
        """
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._workbook.save(self._path)
        except Exception:
            logger.warning("Saving %s failed; reloading last saved copy", self._path)
            self._reload()
            raise

    def _reload(self) -> None:
        if self._path is not None and self._path.exists():
            self._workbook = load_workbook(filename=self._path)
        else:
            # Nothing saved yet
            workbook = Workbook()
            workbook.remove(workbook.active)
            self._workbook = workbook


__all__ = [
    "Row",
    "WorkbookStore",
    "cell_datetime",
    "cell_float",
    "cell_int",
    "cell_text",
    "pad",
]
