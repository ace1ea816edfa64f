from datetime import date, datetime
from unittest.mock import patch

import pytest
from openpyxl import Workbook, load_workbook

from billing_sheets.config import CUSTOMER_HEADERS, SheetNames
from billing_sheets.errors import ErrorCode, StoreError
from billing_sheets.workbook_store import (
    WorkbookStore,
    cell_datetime,
    cell_int,
    cell_text,
    pad,
)


# --------------------------------------------------------------------
# CELL HELPERS
# --------------------------------------------------------------------
def test_cell_text_normalises_numbers_and_blanks():
    assert cell_text(30.0) == "30"
    assert cell_text("  Acme  ") == "Acme"
    assert cell_text("") is None
    assert cell_text(None) is None


def test_cell_int_tolerates_hand_typed_values():
    assert cell_int("1200") == 1200
    assert cell_int(1200.0) == 1200
    assert cell_int("abc", default=7) == 7
    assert cell_int(None) == 0


def test_cell_datetime_accepts_dates_and_iso_strings():
    assert cell_datetime(date(2025, 3, 1)) == datetime(2025, 3, 1)
    assert cell_datetime("2025-03-01T09:00:00") == datetime(2025, 3, 1, 9, 0)
    assert cell_datetime("not a date") is None


def test_pad_truncates_and_extends():
    assert pad([1, 2, 3], 2) == [1, 2]
    assert pad([1], 3) == [1, None, None]


# --------------------------------------------------------------------
# STORE
# --------------------------------------------------------------------
def test_initialize_creates_sheets_with_headers():
    store = WorkbookStore.in_memory()
    created = store.initialize(SheetNames())
    assert created == ["customers", "invoices", "invoice_items"]
    assert store.read_range("customers") == [list(CUSTOMER_HEADERS)]

    # Second run is a no-op
    assert store.initialize(SheetNames()) == []


def test_append_and_read_range():
    store = WorkbookStore.in_memory()
    store.ensure_sheet("data", ["A", "B"])
    assert store.append_row("data", ["x", 1]) == 2
    assert store.append_row("data", ["y", 2]) == 3
    assert store.read_range("data") == [["A", "B"], ["x", 1], ["y", 2]]
    assert store.last_row("data") == 3


def test_write_range_overwrites_block():
    store = WorkbookStore.in_memory()
    store.ensure_sheet("data", ["A", "B"])
    store.append_row("data", ["x", 1])
    store.write_range("data", 2, 2, [[99]])
    assert store.read_range("data")[1] == ["x", 99]


def test_delete_row_shifts_rows_up():
    store = WorkbookStore.in_memory()
    store.ensure_sheet("data", ["A"])
    for value in ("one", "two", "three"):
        store.append_row("data", [value])

    store.delete_row("data", 3)
    assert store.read_range("data") == [["A"], ["one"], ["three"]]

    # Appending after a delete reuses the freed row
    assert store.append_row("data", ["four"]) == 4


def test_delete_row_refuses_header():
    store = WorkbookStore.in_memory()
    store.ensure_sheet("data", ["A"])
    with pytest.raises(StoreError) as info:
        store.delete_row("data", 1)
    assert not info.value.is_retryable


def test_missing_sheet_raises_sheet_not_found():
    store = WorkbookStore.in_memory()
    with pytest.raises(StoreError) as info:
        store.read_range("nope")
    assert info.value.code is ErrorCode.STORE_SHEET_NOT_FOUND
    assert not info.value.is_retryable


def test_file_backed_store_saves_every_mutation(tmp_path):
    path = tmp_path / "nested" / "billing.xlsx"
    store = WorkbookStore.open(path)
    assert not path.exists()  # Nothing to save before the first sheet

    store.initialize(SheetNames())
    store.append_row("customers", ["C00001", "Acme"])
    assert path.exists()

    reopened = WorkbookStore.open(path)
    assert reopened.read_range("customers")[1][:2] == ["C00001", "Acme"]


def test_open_existing_workbook_keeps_foreign_sheets(tmp_path):
    path = tmp_path / "existing.xlsx"
    wb = Workbook()
    wb.active.title = "notes"
    wb.save(path)

    store = WorkbookStore.open(path)
    store.initialize(SheetNames())
    assert set(load_workbook(path).sheetnames) == {
        "notes",
        "customers",
        "invoices",
        "invoice_items",
    }


def test_open_without_create_requires_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        WorkbookStore.open(tmp_path / "missing.xlsx", create=False)


def test_failed_save_restores_last_saved_state(tmp_path):
    path = tmp_path / "billing.xlsx"
    store = WorkbookStore.open(path)
    store.ensure_sheet("data", ["A"])
    store.append_row("data", ["kept"])

    with patch.object(store._workbook, "save", side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            store.append_row("data", ["lost"])

    assert store.read_range("data") == [["A"], ["kept"]]
    assert store.append_row("data", ["next"]) == 3
    assert WorkbookStore.open(path).read_range("data") == [["A"], ["kept"], ["next"]]
