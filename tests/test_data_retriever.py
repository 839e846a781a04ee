import pytest

from sheetquery.connectors.base import SheetNotFoundError
from sheetquery.connectors.data_retriever import (
    SheetDataCache,
    SpreadsheetDataRetriever,
    evaluate_filter,
    split_header_rows,
)
from sheetquery.connectors.excel_source import InMemoryFileSource
from sheetquery.utils.search_types import ColumnMatchResult, SearchFilter, SheetGrid

LEDGER = [
    [None, None, None],
    ["Vendor", "Amount", "Status"],
    ["Acme", "$1,200", "paid"],
    [None, None, None],
    ["Beta", "50", "open"],
    ["Gamma", "", ""],
]


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _source():
    return InMemoryFileSource({"f1": {"Ledger": LEDGER, "Summary": [["Total", 1250]]}, "f2": {"Only": [["A"], [1]]}})


def test_cache_hits_until_ttl_expires():
    clock = FakeClock()
    source = _source()
    retriever = SpreadsheetDataRetriever(source, cache=SheetDataCache(ttl_s=10, clock=clock))

    grid, hit = retriever.load_grid("token", "f1")
    assert (grid.sheet_name, hit) == ("Ledger", False)
    assert len(source.load_calls) == 3

    grid, hit = retriever.load_grid("token", "f1", sheet_name="summary")
    assert (grid.sheet_name, hit) == ("Summary", True)
    assert len(source.load_calls) == 3

    clock.now = 9.9
    assert retriever.load_grid("token", "f1", sheet_index=1)[1] is True
    clock.now = 10.0
    assert retriever.load_grid("token", "f1")[1] is False
    assert len(source.load_calls) == 6


def test_force_refresh_reloads_and_recaches():
    source = _source()
    retriever = SpreadsheetDataRetriever(source)
    retriever.load_grid(None, "f2")
    assert retriever.load_grid(None, "f2", force_refresh=True)[1] is False
    assert retriever.load_grid(None, "f2")[1] is True
    assert len(source.load_calls) == 4


def test_missing_files_and_sheets_raise():
    retriever = SpreadsheetDataRetriever(_source())
    with pytest.raises(SheetNotFoundError):
        retriever.load_grid(None, "nope")
    with pytest.raises(SheetNotFoundError):
        retriever.load_grid(None, "f1", sheet_name="Missing")
    with pytest.raises(SheetNotFoundError):
        retriever.load_grid(None, "f1", sheet_index=5)
    assert len(retriever.cache) == 1


def test_cache_evicts_oldest_and_purges_expired():
    clock = FakeClock()
    cache = SheetDataCache(ttl_s=100, max_entries=2, clock=clock)
    grid = SheetGrid.from_rows("S", [["a"]])
    cache.put("a", [grid])
    cache.put("b", [grid])
    cache.put("c", [grid])
    assert cache.get("a") is None
    assert [e["fileId"] for e in cache.stats()["entries"]] == ["b", "c"]

    clock.now = 150
    cache.put("d", [grid])
    assert len(cache) == 1
    assert cache.get("d") == [grid]

    cache.invalidate("d")
    assert cache.get("d") is None


def test_retrieve_filters_rows_below_first_non_empty_row():
    retriever = SpreadsheetDataRetriever(_source())
    data = retriever.retrieve_sheet_data(None, "f1", "Ledger", filters=[SearchFilter("amount", "greater", 100)])
    assert data["headers"] == ["Vendor", "Amount", "Status"]
    assert data["rows"] == [["Acme", "$1,200", "paid"]]
    assert data["totalRows"] == 1
    assert data["truncated"] is False
    assert data["cacheHit"] is False

    ignored = retriever.retrieve_sheet_data(None, "f1", "Ledger", filters=[{"column": "region", "operator": "equals", "value": "x"}])
    assert ignored["totalRows"] == 3
    assert ignored["cacheHit"] is True


def test_retrieve_key_columns_cap_and_empty_rows():
    retriever = SpreadsheetDataRetriever(_source())
    amount = ColumnMatchResult("amount", "Amount", 1, 1.0, "exact")
    keyed = retriever.retrieve_sheet_data(None, "f1", "Ledger", key_columns=[amount])
    assert [row[0] for row in keyed["rows"]] == ["Acme", "Beta"]

    capped = retriever.retrieve_sheet_data(None, "f1", "Ledger", max_rows=1)
    assert capped["totalRows"] == 3
    assert len(capped["rows"]) == 1
    assert capped["truncated"] is True

    everything = retriever.retrieve_sheet_data(None, "f1", "Ledger", include_empty_rows=True)
    assert everything["totalRows"] == 4


def test_split_header_rows_pads_and_names_blank_headers():
    grid = SheetGrid.from_rows("S", [[], ["Vendor", None, "Amount"], ["Acme"]])
    headers, rows = split_header_rows(grid)
    assert headers == ["Vendor", "Column 2", "Amount"]
    assert rows == [["Acme", None, None]]
    assert split_header_rows(SheetGrid.from_rows("S", [[None, None]])) == (["Column 1", "Column 2"], [])


def test_evaluate_filter_operators():
    assert evaluate_filter("Acme Corp", "contains", "acme")
    assert evaluate_filter(" PAID ", "equals", "paid")
    assert evaluate_filter("1.500,00 €", "between", [1000, 2000])
    assert not evaluate_filter("abc", "greater", 1)
    assert not evaluate_filter("", "equals", "")
    assert evaluate_filter("anything", "unknown", None)


def test_injected_empty_cache_is_kept():
    cache = SheetDataCache(ttl_s=10, max_entries=2)
    assert len(cache) == 0
    retriever = SpreadsheetDataRetriever(_source(), cache=cache)
    assert retriever.cache is cache
    retriever.load_grid(None, "f2")
    assert len(cache) == 1
