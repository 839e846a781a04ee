import pytest

from sheetquery.utils.extraction_dsl import (
    MAX_STEPS,
    ProcedureExecutionError,
    ProcedureValidationError,
    describe_column_refs,
    interpret_procedure,
    is_row_empty,
    normalize_string,
    validate_procedure,
)


def test_group_by_vendor_with_totals():
    procedure = {"steps": [{"op": "group", "key": "Vendor", "values": "Amount", "metrics": ["count", "total"]}]}
    result = interpret_procedure(procedure, [["Acme", 100], ["Beta", 200]], ["Vendor", "Amount"])
    assert result == {"Acme": {"count": 1, "total": 100}, "Beta": {"count": 1, "total": 200}}


def test_group_skips_blank_keys_and_parses_currency():
    rows = [["Acme", "$1,200.50"], ["acme", "n/a"], ["", 5], ["Acme", "(200)"], ["Beta", None]]
    procedure = {"steps": [{"op": "group", "key": 0, "values": 1, "metrics": ["count", "total", "average", "max"]}]}
    result = interpret_procedure(procedure, rows, ["Vendor", "Amount"])
    assert result["Acme"] == {"count": 2, "total": 1000.5, "average": 500.25, "max": 1200.5}
    assert result["acme"] == {"count": 1, "total": 0, "average": None, "max": None}
    assert result["Beta"]["count"] == 1
    assert "" not in result


def test_filter_then_project():
    headers = ["Vendor", "Amount", "Notes"]
    rows = [["Acme", "$1,200", "late"], ["Beta", "50", ""], ["Gamma", "", "none"]]
    procedure = {
        "steps": [
            {"op": "filter", "column": "amount", "operator": "greater", "value": 100},
            {"op": "project", "columns": ["Vendor", "Amount"]},
        ]
    }
    assert interpret_procedure(procedure, rows, headers) == [{"Vendor": "Acme", "Amount": "$1,200"}]


def test_filter_operators():
    headers = ["Vendor", "Amount"]
    rows = [["Acme Corp", 10], ["Beta", 20], ["Gamma", 30], ["", None]]

    def names(step):
        result = interpret_procedure({"steps": [step, {"op": "distinct", "column": 0}]}, rows, headers)
        return result

    assert names({"op": "filter", "column": "Vendor", "operator": "contains", "value": "acme"}) == ["Acme Corp"]
    assert names({"op": "filter", "column": "Amount", "operator": "equals", "value": "20"}) == ["Beta"]
    assert names({"op": "filter", "column": "Amount", "operator": "between", "value": [25, 5]}) == ["Acme Corp", "Beta"]
    assert names({"op": "filter", "column": "Amount", "operator": "less", "value": 15}) == ["Acme Corp"]
    assert names({"op": "filter", "column": 1, "operator": "not_empty"}) == ["Acme Corp", "Beta", "Gamma"]


def test_aggregate_across_keyword_columns():
    headers = ["Vendor", "Amount", "Tax total"]
    rows = [["A", 10, 1], ["B", "20", "2"], ["C", "", ""]]
    sum_step = {"op": "aggregate", "column": {"keywords": ["amount", "total"], "all": True}, "function": "sum"}
    assert interpret_procedure({"steps": [sum_step]}, rows, headers) == 33
    count_step = {"op": "aggregate", "column": "Amount", "function": "count"}
    assert interpret_procedure({"steps": [count_step]}, rows, headers) == 2
    min_step = {"op": "aggregate", "column": {"keywords": ["tax"]}, "function": "min"}
    assert interpret_procedure({"steps": [min_step]}, rows, headers) == 1
    average_step = {"op": "aggregate", "column": "Vendor", "function": "average"}
    assert interpret_procedure({"steps": [average_step]}, rows, headers) is None


def test_sort_descending_keeps_blanks_last():
    headers = ["Name", "Score"]
    rows = [["a", "5"], ["b", None], ["c", "12"], ["d", "7"]]
    procedure = {"steps": [{"op": "sort", "column": "Score", "descending": True}, {"op": "project", "columns": "Name"}]}
    assert interpret_procedure(procedure, rows, headers) == [{"Name": "c"}, {"Name": "d"}, {"Name": "a"}, {"Name": "b"}]


def test_sort_descending_keeps_ties_in_input_order():
    headers = ["Name", "Score"]
    rows = [["a", 1], ["b", 1], [None, None], ["c", 2], ["d", 1]]
    procedure = {"steps": [{"op": "sort", "column": "Score", "descending": True}, {"op": "project", "columns": "Name"}]}
    names = [r["Name"] for r in interpret_procedure(procedure, rows, headers)]
    assert names == ["c", "a", "b", "d", None]


def test_row_window_and_distinct():
    headers = ["Vendor"]
    rows = [["Acme"], ["acme "], [None], ["Beta"], ["Gamma"]]
    assert interpret_procedure({"steps": [{"op": "distinct", "column": 0}]}, rows, headers) == ["Acme", "Beta", "Gamma"]
    windowed = {"steps": [{"op": "skip_blank_rows"}, {"op": "skip", "count": 1}, {"op": "limit", "count": 2}]}
    assert interpret_procedure(windowed, rows, headers) == [{"Vendor": "acme "}, {"Vendor": "Beta"}]


def test_default_result_is_records_with_stable_keys():
    result = interpret_procedure({"steps": []}, [["A", "x", "B"], ["C"]], ["Vendor", "", "Vendor"])
    assert result == [
        {"Vendor": "A", "Column 2": "x", "Vendor (C)": "B"},
        {"Vendor": "C", "Column 2": None, "Vendor (C)": None},
    ]


def test_project_drops_empty_cells_and_limits():
    rows = [["A", ""], ["", None], ["B", 2], ["C", 3]]
    procedure = {"steps": [{"op": "project", "drop_empty": True, "limit": 2}]}
    assert interpret_procedure(procedure, rows, ["Vendor", "Amount"]) == [{"Vendor": "A"}, {"Vendor": "B", "Amount": 2}]


def test_coerce_numbers_and_dates():
    rows = [["1.234,50", "2024-03-05"], ["12%", "not a date"]]
    procedure = {"steps": [{"op": "coerce", "column": 0, "to": "number"}, {"op": "coerce", "column": 1, "to": "date"}]}
    result = interpret_procedure(procedure, rows, ["Amount", "Date"])
    assert result[0] == {"Amount": 1234.5, "Date": "2024-03-05T00:00:00"}
    assert result[1] == {"Amount": 12.0, "Date": None}


@pytest.mark.parametrize(
    "procedure, message",
    [
        ([], "must be an object"),
        ({"steps": [], "code": "x"}, "unknown field"),
        ({"steps": [{"op": "eval", "source": "1"}]}, "unknown operation"),
        ({"steps": [{"op": "group", "key": 0}, {"op": "limit", "count": 1}]}, "terminal operation"),
        ({"steps": [{"op": "filter", "column": 0, "operator": "between", "value": 3}]}, "between needs"),
        ({"steps": [{"op": "filter", "column": 0, "operator": "greater"}]}, "needs a value"),
        ({"steps": [{"op": "group", "key": 0, "metrics": ["total"]}]}, "need 'values'"),
        ({"steps": [{"op": "sort", "column": "*"}]}, "multi-column"),
        ({"steps": [{"op": "skip", "count": -1}]}, "non-negative"),
        ({"steps": [{"op": "project", "columns": {"keywords": []}}]}, "keywords"),
        ({"steps": [{"op": "limit", "count": 1, "extra": True}]}, "unknown field"),
        ({"steps": [{"op": "skip_blank_rows"}] * (MAX_STEPS + 1)}, "at most"),
    ],
)
def test_validation_rejects_malformed_procedures(procedure, message):
    with pytest.raises(ProcedureValidationError, match=message):
        validate_procedure(procedure)


def test_unresolved_columns_list_available_headers():
    procedure = {"steps": [{"op": "aggregate", "column": "Revenue", "function": "sum"}]}
    with pytest.raises(ProcedureExecutionError, match="available columns: A=Vendor, B=Amount"):
        interpret_procedure(procedure, [["Acme", 1]], ["Vendor", "Amount"])


def test_runtime_errors():
    bad_bound = {"steps": [{"op": "filter", "column": 1, "operator": "greater", "value": "lots"}]}
    with pytest.raises(ProcedureExecutionError, match="numeric value"):
        interpret_procedure(bad_bound, [["Acme", 1]], ["Vendor", "Amount"])
    with pytest.raises(ProcedureExecutionError, match="rows must be a list"):
        interpret_procedure({"steps": []}, "rows", ["Vendor"])


def test_helpers_and_descriptions():
    assert normalize_string("  Acme   Corp ") == "acme corp"
    assert normalize_string(None) == ""
    assert is_row_empty(["", None, "  "])
    assert not is_row_empty(["", 0])
    procedure = {
        "steps": [
            {"op": "filter", "column": "Status", "operator": "equals", "value": "paid"},
            {"op": "group", "key": "Vendor", "values": {"keywords": ["amount", "total"], "all": True}},
        ]
    }
    assert describe_column_refs(procedure) == ["Status", "Vendor", "amount, total"]
