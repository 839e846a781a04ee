from datetime import date, datetime

import pytest
from openpyxl import Workbook

import sheetquery.connectors.excel_source as excel_source
from sheetquery.connectors import ExcelFileSource, InMemoryFileSource, describe_workbook
from sheetquery.connectors.base import SheetNotFoundError, SourceAuthError, SourceUnavailableError
from sheetquery.utils.search_types import CellRange


def _write_workbook(path):
    wb = Workbook()
    ws = wb.active
    ws.title = "Payments"
    ws.append(["Vendor", "Amount", "Total"])
    ws.append(["Acme", 100, None])
    ws.append(["Beta", 200, None])
    ws["C4"] = "=SUM(B2:B3)"
    ws["A5"] = "Notes"
    ws.merge_cells("A5:B5")
    vendors = wb.create_sheet("Vendors")
    vendors.append(["Name", "Since"])
    vendors.append(["Acme", datetime(2024, 1, 5)])
    wb.save(path)


def test_xlsx_sheets_carry_formulas_merges_and_dates(tmp_path):
    _write_workbook(tmp_path / "book.xlsx")
    source = ExcelFileSource(str(tmp_path))

    grid = source.load(None, "book")
    assert grid.sheet_name == "Payments"
    assert grid.rows[1] == ("Acme", 100, None)
    assert grid.rows[3][2] == "=SUM(B2:B3)"
    assert (3, 2) in grid.formula_cells
    assert CellRange(4, 4, 0, 1) in grid.merged_regions

    vendors = source.load(None, "book.xlsx", sheet_name="vendors")
    assert vendors.sheet_name == "Vendors"
    assert vendors.rows[1] == ("Acme", date(2024, 1, 5))

    assert [g.sheet_name for g in source.load_all(None, "book")] == ["Payments", "Vendors"]


def test_csv_is_a_single_sheet(tmp_path):
    (tmp_path / "data.csv").write_text("Vendor,Amount\nAcme,100\n,\n", encoding="utf-8")
    source = ExcelFileSource(str(tmp_path))
    grid = source.load(None, "data", sheet_name="data")
    assert grid.rows == (("Vendor", "Amount"), ("Acme", "100"))
    with pytest.raises(SheetNotFoundError):
        source.load(None, "data", sheet_index=1)
    assert len(source.load_all(None, "data")) == 1


def test_missing_corrupt_and_unauthorized_files(tmp_path):
    (tmp_path / "bad.xlsx").write_bytes(b"not a workbook")
    source = ExcelFileSource(str(tmp_path))
    with pytest.raises(SheetNotFoundError):
        source.load(None, "absent")
    with pytest.raises(SourceUnavailableError, match="Could not read 'bad'"):
        source.load(None, "bad")

    guarded = ExcelFileSource(str(tmp_path), token_validator=lambda token: token == "valid")
    with pytest.raises(SourceAuthError):
        guarded.load("expired", "bad")


def test_in_memory_source_records_calls_and_checks_tokens():
    source = InMemoryFileSource({"f1": {"Sheet1": [["A"], [1]]}}, token_validator=lambda token: bool(token))
    with pytest.raises(SourceAuthError):
        source.load(None, "f1")
    grid = source.load("tok", "f1", sheet_index=0)
    assert grid.rows == (("A",), (1,))
    assert source.load_calls == [("f1", None, None), ("f1", None, 0)]


def test_describe_workbook_builds_candidate_metadata():
    source = InMemoryFileSource(
        {"f1": {"Payments": [["Vendor", "Amount"], ["Acme", 100], ["Beta", 200]], "Empty": [[None]]}}
    )
    candidate = describe_workbook("f1", "Payments.xlsx", source.load_all(None, "f1"), summary="2024 ledger")
    assert candidate.file_id == "f1"
    assert candidate.summary == "2024 ledger"
    payments, empty = candidate.sheets
    assert (payments.name, payments.index, payments.total_rows) == ("Payments", 0, 2)
    assert payments.column_names == ["Vendor", "Amount"]
    assert payments.columns[1]["dataType"] == "number"
    assert (empty.name, empty.index) == ("Empty", 1)


def test_load_all_reads_the_workbook_once(tmp_path, monkeypatch):
    _write_workbook(tmp_path / "book.xlsx")
    opened = []
    real_load_workbook = excel_source.load_workbook

    def counting_load_workbook(path, **kwargs):
        opened.append(kwargs.get("data_only"))
        return real_load_workbook(path, **kwargs)

    monkeypatch.setattr(excel_source, "load_workbook", counting_load_workbook)
    grids = ExcelFileSource(str(tmp_path)).load_all(None, "book")
    assert [g.sheet_name for g in grids] == ["Payments", "Vendors"]
    assert sorted(opened) == [False, True]
    assert (3, 2) in grids[0].formula_cells
    assert grids[1].rows[1] == ("Acme", date(2024, 1, 5))


def test_load_all_maps_corrupt_workbooks(tmp_path):
    (tmp_path / "bad.xlsx").write_bytes(b"not a workbook")
    with pytest.raises(SourceUnavailableError, match="Could not read 'bad'"):
        ExcelFileSource(str(tmp_path)).load_all(None, "bad")
