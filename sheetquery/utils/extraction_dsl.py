"""
Restricted extraction procedures.

A procedure is a JSON document ``{"steps": [...]}`` evaluated over two inputs,
``rows`` (data rows, lists of cell values) and ``headers`` (one name per
column). Steps transform the working row set; the last step may be one of the
terminal operations (group, aggregate, distinct, project) that turns it into
the result. Without a terminal step every remaining row is returned as a
record.

Column references accepted wherever a step names a column:

- ``2``                                   column index
- ``"Amount"``                            header (normalized equality, then containment)
- ``{"keywords": ["amount", "total"]}``   first header containing any keyword
- ``{"keywords": [...], "all": true}``    every header containing any keyword (multi-column)

Procedures carry no code. Cells are read through ``parse_number``,
``normalize_string`` and ``is_row_empty``, exported here for planners and tests.
"""

import math
from typing import Any, Dict, List, Optional, Sequence

from sheetquery.utils.column_mapping import column_letter, find_header_index, find_keyword_indices, normalize_colname
from sheetquery.utils.json_sanitize import to_jsonable
from sheetquery.utils.number_parsing import parse_number
from sheetquery.utils.type_inference import coerce_cell, is_blank

MAX_STEPS = 25
FILTER_OPERATORS = ("equals", "contains", "greater", "less", "between", "not_empty")
GROUP_METRICS = ("count", "total", "average", "min", "max")
AGGREGATE_FUNCTIONS = ("sum", "count", "average", "min", "max")
COERCE_TARGETS = ("number", "string", "date")
TERMINAL_OPS = ("group", "aggregate", "distinct", "project")

# op -> (required fields, optional fields)
STEP_FIELDS: Dict[str, tuple] = {
    "skip_blank_rows": ((), ()),
    "skip": (("count",), ()),
    "limit": (("count",), ()),
    "filter": (("column", "operator"), ("value",)),
    "coerce": (("column", "to"), ()),
    "sort": (("column",), ("descending",)),
    "group": (("key",), ("values", "metrics")),
    "aggregate": (("column", "function"), ()),
    "distinct": (("column",), ("limit",)),
    "project": ((), ("columns", "drop_empty", "limit")),
}


class ProcedureValidationError(ValueError):
    """The procedure document is malformed or uses unknown operations."""


class ProcedureExecutionError(RuntimeError):
    """A valid procedure failed while running against concrete rows."""


def normalize_string(value: Any) -> str:
    if is_blank(value):
        return ""
    return " ".join(str(value).split()).casefold()


def is_row_empty(row: Any) -> bool:
    if not isinstance(row, (list, tuple)):
        return True
    return all(is_blank(cell) for cell in row)


# ---------------------------------------------------------------------------
# validation
# ---------------------------------------------------------------------------


def _check_column_ref(ref: Any, where: str, *, allow_multi: bool) -> None:
    if isinstance(ref, bool):
        raise ProcedureValidationError(f"{where}: column reference must not be a boolean")
    if isinstance(ref, int):
        if ref < 0:
            raise ProcedureValidationError(f"{where}: column index must be >= 0")
        return
    if isinstance(ref, str):
        if not ref.strip():
            raise ProcedureValidationError(f"{where}: empty column name")
        if ref.strip() == "*" and not allow_multi:
            raise ProcedureValidationError(f"{where}: '*' needs a multi-column step")
        return
    if isinstance(ref, dict):
        unknown = set(ref) - {"keywords", "all"}
        if unknown:
            raise ProcedureValidationError(f"{where}: unknown field(s) {sorted(unknown)} in column reference")
        keywords = ref.get("keywords")
        if not isinstance(keywords, list) or not keywords or not all(isinstance(k, str) and k.strip() for k in keywords):
            raise ProcedureValidationError(f"{where}: keywords must be a non-empty list of strings")
        if ref.get("all") and not allow_multi:
            raise ProcedureValidationError(f"{where}: multi-column reference not allowed here")
        return
    if isinstance(ref, list) and allow_multi:
        if not ref:
            raise ProcedureValidationError(f"{where}: empty column list")
        for item in ref:
            _check_column_ref(item, where, allow_multi=False)
        return
    raise ProcedureValidationError(f"{where}: unsupported column reference {ref!r}")


def _check_count(value: Any, where: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ProcedureValidationError(f"{where}: count must be a non-negative integer")


def validate_procedure(procedure: Any) -> List[Dict[str, Any]]:
    """Returns the step list, or raises ProcedureValidationError."""
    if not isinstance(procedure, dict):
        raise ProcedureValidationError("procedure must be an object with a 'steps' list")
    unknown_top = set(procedure) - {"steps"}
    if unknown_top:
        raise ProcedureValidationError(f"unknown field(s) {sorted(unknown_top)} in procedure")
    steps = procedure.get("steps")
    if not isinstance(steps, list):
        raise ProcedureValidationError("procedure must be an object with a 'steps' list")
    if len(steps) > MAX_STEPS:
        raise ProcedureValidationError(f"procedure has {len(steps)} steps; at most {MAX_STEPS} are allowed")

    for position, step in enumerate(steps):
        where = f"step {position + 1}"
        if not isinstance(step, dict):
            raise ProcedureValidationError(f"{where}: each step must be an object")
        op = step.get("op")
        if op not in STEP_FIELDS:
            raise ProcedureValidationError(f"{where}: unknown operation {op!r}")
        where = f"{where} ({op})"
        required, optional = STEP_FIELDS[op]
        unknown = set(step) - {"op"} - set(required) - set(optional)
        if unknown:
            raise ProcedureValidationError(f"{where}: unknown field(s) {sorted(unknown)}")
        missing = [name for name in required if name not in step]
        if missing:
            raise ProcedureValidationError(f"{where}: missing field(s) {missing}")
        if op in TERMINAL_OPS and position != len(steps) - 1:
            raise ProcedureValidationError(f"{where}: terminal operation must be the last step")

        if op in ("skip", "limit"):
            _check_count(step["count"], where)
        elif op == "filter":
            _check_column_ref(step["column"], where, allow_multi=True)
            operator = step["operator"]
            if operator not in FILTER_OPERATORS:
                raise ProcedureValidationError(f"{where}: unknown operator {operator!r}")
            if operator != "not_empty" and "value" not in step:
                raise ProcedureValidationError(f"{where}: operator {operator!r} needs a value")
            if operator == "between":
                value = step["value"]
                if not isinstance(value, list) or len(value) != 2:
                    raise ProcedureValidationError(f"{where}: between needs a [low, high] value")
        elif op == "coerce":
            _check_column_ref(step["column"], where, allow_multi=True)
            if step["to"] not in COERCE_TARGETS:
                raise ProcedureValidationError(f"{where}: unknown coercion target {step['to']!r}")
        elif op == "sort":
            _check_column_ref(step["column"], where, allow_multi=False)
            if not isinstance(step.get("descending", False), bool):
                raise ProcedureValidationError(f"{where}: descending must be a boolean")
        elif op == "group":
            _check_column_ref(step["key"], where, allow_multi=False)
            if "values" in step:
                _check_column_ref(step["values"], where, allow_multi=True)
            metrics = step.get("metrics", ["count", "total"] if "values" in step else ["count"])
            if not isinstance(metrics, list) or not metrics or any(m not in GROUP_METRICS for m in metrics):
                raise ProcedureValidationError(f"{where}: metrics must be a list drawn from {list(GROUP_METRICS)}")
            if "values" not in step and any(m != "count" for m in metrics):
                raise ProcedureValidationError(f"{where}: metrics other than count need 'values'")
        elif op == "aggregate":
            _check_column_ref(step["column"], where, allow_multi=True)
            if step["function"] not in AGGREGATE_FUNCTIONS:
                raise ProcedureValidationError(f"{where}: unknown function {step['function']!r}")
        elif op == "distinct":
            _check_column_ref(step["column"], where, allow_multi=False)
            if "limit" in step:
                _check_count(step["limit"], where)
        elif op == "project":
            columns = step.get("columns", "*")
            if columns != "*":
                _check_column_ref(columns, where, allow_multi=True)
            if not isinstance(step.get("drop_empty", False), bool):
                raise ProcedureValidationError(f"{where}: drop_empty must be a boolean")
            if "limit" in step:
                _check_count(step["limit"], where)
    return steps


# ---------------------------------------------------------------------------
# column resolution
# ---------------------------------------------------------------------------


def _describe_headers(headers: Sequence[Any]) -> str:
    return ", ".join(f"{column_letter(i)}={h}" for i, h in enumerate(headers)) or "(none)"


def _unresolved(ref: Any, headers: Sequence[Any]) -> ProcedureExecutionError:
    return ProcedureExecutionError(
        f"could not resolve column {ref!r}; available columns: {_describe_headers(headers)}"
    )


def resolve_column(ref: Any, headers: Sequence[Any]) -> int:
    if isinstance(ref, int) and not isinstance(ref, bool):
        if ref >= len(headers):
            raise _unresolved(ref, headers)
        return ref
    if isinstance(ref, str):
        idx = find_header_index(headers, ref)
        if idx is None:
            raise _unresolved(ref, headers)
        return idx
    if isinstance(ref, dict):
        hits = find_keyword_indices(headers, ref.get("keywords") or [])
        if not hits:
            raise _unresolved(ref, headers)
        return hits[0]
    raise _unresolved(ref, headers)


def resolve_columns(ref: Any, headers: Sequence[Any]) -> List[int]:
    if ref == "*":
        return list(range(len(headers)))
    if isinstance(ref, dict) and ref.get("all"):
        hits = find_keyword_indices(headers, ref.get("keywords") or [])
        if not hits:
            raise _unresolved(ref, headers)
        return hits
    if isinstance(ref, list):
        indices: List[int] = []
        for item in ref:
            idx = resolve_column(item, headers)
            if idx not in indices:
                indices.append(idx)
        return indices
    return [resolve_column(ref, headers)]


# ---------------------------------------------------------------------------
# evaluation
# ---------------------------------------------------------------------------


def _cell(row: Sequence[Any], idx: int) -> Any:
    return row[idx] if idx < len(row) else None


def _clean_number(value: Optional[float]) -> Any:
    if value is None or (isinstance(value, float) and (math.isnan(value) or math.isinf(value))):
        return None
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e15:
        return int(value)
    return round(value, 10) if isinstance(value, float) else value


def _key_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value).strip()


def _row_number(row: Sequence[Any], indices: Sequence[int]) -> Optional[float]:
    """Sum of the parsable numbers across ``indices``; None when none parse."""
    total = None
    for idx in indices:
        number = parse_number(_cell(row, idx))
        if number is not None:
            total = number if total is None else total + number
    return total


def _compare(cell: Any, operator: str, value: Any) -> bool:
    if operator == "not_empty":
        return not is_blank(cell)
    if is_blank(cell):
        return False
    if operator == "contains":
        return normalize_string(value) in normalize_string(cell)
    if operator == "equals":
        left, right = parse_number(cell), parse_number(value)
        if left is not None and right is not None:
            return left == right
        return normalize_string(cell) == normalize_string(value)
    number = parse_number(cell)
    if number is None:
        return False
    if operator == "between":
        low, high = parse_number(value[0]), parse_number(value[1])
        if low is None or high is None:
            raise ProcedureExecutionError(f"between bounds must be numeric, got {value!r}")
        return min(low, high) <= number <= max(low, high)
    bound = parse_number(value)
    if bound is None:
        raise ProcedureExecutionError(f"{operator} needs a numeric value, got {value!r}")
    return number > bound if operator == "greater" else number < bound


def _record_keys(headers: Sequence[Any], indices: Sequence[int]) -> List[str]:
    keys: List[str] = []
    for idx in indices:
        name = str(headers[idx]).strip() if not is_blank(headers[idx]) else f"Column {idx + 1}"
        if name in keys:
            name = f"{name} ({column_letter(idx)})"
        keys.append(name)
    return keys


def _project(rows: List[List[Any]], headers: Sequence[Any], step: Dict[str, Any]) -> List[Dict[str, Any]]:
    indices = resolve_columns(step.get("columns", "*"), headers)
    keys = _record_keys(headers, indices)
    drop_empty = bool(step.get("drop_empty", False))
    limit = step.get("limit")
    records: List[Dict[str, Any]] = []
    for row in rows:
        record: Dict[str, Any] = {}
        for key, idx in zip(keys, indices):
            value = _cell(row, idx)
            if drop_empty and is_blank(value):
                continue
            record[key] = to_jsonable(value)
        if drop_empty and not record:
            continue
        records.append(record)
        if limit is not None and len(records) >= limit:
            break
    return records


def _group(rows: List[List[Any]], headers: Sequence[Any], step: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    key_idx = resolve_column(step["key"], headers)
    value_indices = resolve_columns(step["values"], headers) if "values" in step else []
    value_indices = [idx for idx in value_indices if idx != key_idx]
    metrics = step.get("metrics") or (["count", "total"] if "values" in step else ["count"])

    groups: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        key = _cell(row, key_idx)
        if is_blank(key):
            continue
        bucket = groups.setdefault(_key_text(key), {"count": 0, "values": []})
        bucket["count"] += 1
        number = _row_number(row, value_indices)
        if number is not None:
            bucket["values"].append(number)

    result: Dict[str, Dict[str, Any]] = {}
    for key, bucket in groups.items():
        values = bucket["values"]
        entry: Dict[str, Any] = {}
        for metric in metrics:
            if metric == "count":
                entry["count"] = bucket["count"]
            elif metric == "total":
                entry["total"] = _clean_number(float(sum(values)))
            elif metric == "average":
                entry["average"] = _clean_number(sum(values) / len(values)) if values else None
            elif metric == "min":
                entry["min"] = _clean_number(min(values)) if values else None
            elif metric == "max":
                entry["max"] = _clean_number(max(values)) if values else None
        result[key] = entry
    return result


def _aggregate(rows: List[List[Any]], headers: Sequence[Any], step: Dict[str, Any]) -> Any:
    indices = resolve_columns(step["column"], headers)
    function = step["function"]
    if function == "count":
        return sum(1 for row in rows if any(not is_blank(_cell(row, idx)) for idx in indices))
    values = [v for v in (_row_number(row, indices) for row in rows) if v is not None]
    if function == "sum":
        return _clean_number(float(sum(values)))
    if not values:
        return None
    if function == "average":
        return _clean_number(sum(values) / len(values))
    return _clean_number(min(values) if function == "min" else max(values))


def _distinct(rows: List[List[Any]], headers: Sequence[Any], step: Dict[str, Any]) -> List[Any]:
    idx = resolve_column(step["column"], headers)
    limit = step.get("limit")
    seen = set()
    found: List[Any] = []
    for row in rows:
        value = _cell(row, idx)
        if is_blank(value):
            continue
        marker = normalize_string(value)
        if marker in seen:
            continue
        seen.add(marker)
        found.append(to_jsonable(value))
        if limit is not None and len(found) >= limit:
            break
    return found


def _sort_key(value: Any, numeric: bool):
    if is_blank(value):
        return (1, 0)
    if numeric:
        return (0, parse_number(value))
    return (0, normalize_string(value))


def interpret_procedure(procedure: Dict[str, Any], rows: Any, headers: Any) -> Any:
    """
    Evaluates ``procedure`` against ``rows``/``headers`` and returns a
    JSON-ready value. Raises ProcedureValidationError for malformed procedures
    and ProcedureExecutionError for runtime failures.
    """
    steps = validate_procedure(procedure)
    if not isinstance(rows, list):
        raise ProcedureExecutionError(f"rows must be a list, got {type(rows).__name__}")
    if not isinstance(headers, list):
        raise ProcedureExecutionError(f"headers must be a list, got {type(headers).__name__}")

    working: List[List[Any]] = [list(row) for row in rows if isinstance(row, (list, tuple))]
    for step in steps:
        op = step["op"]
        if op == "skip_blank_rows":
            working = [row for row in working if not is_row_empty(row)]
        elif op == "skip":
            working = working[step["count"]:]
        elif op == "limit":
            working = working[: step["count"]]
        elif op == "filter":
            indices = resolve_columns(step["column"], headers)
            operator, value = step["operator"], step.get("value")
            working = [row for row in working if any(_compare(_cell(row, idx), operator, value) for idx in indices)]
        elif op == "coerce":
            indices = resolve_columns(step["column"], headers)
            for row in working:
                for idx in indices:
                    if idx < len(row):
                        row[idx] = coerce_cell(row[idx], step["to"])
        elif op == "sort":
            idx = resolve_column(step["column"], headers)
            present = [_cell(row, idx) for row in working if not is_blank(_cell(row, idx))]
            numeric = bool(present) and all(parse_number(v) is not None for v in present)
            def key(row, idx=idx, numeric=numeric):
                return _sort_key(_cell(row, idx), numeric)

            if step.get("descending"):
                # blanks stay last; equal keys keep their input order
                filled = [row for row in working if not is_blank(_cell(row, idx))]
                blanks = [row for row in working if is_blank(_cell(row, idx))]
                working = sorted(filled, key=key, reverse=True) + blanks
            else:
                working = sorted(working, key=key)
        elif op == "group":
            return _group(working, headers, step)
        elif op == "aggregate":
            return _aggregate(working, headers, step)
        elif op == "distinct":
            return _distinct(working, headers, step)
        elif op == "project":
            return _project(working, headers, step)
    return _project(working, headers, {"columns": "*"})


def describe_column_refs(procedure: Dict[str, Any]) -> List[str]:
    """Human-readable column references used by a procedure (for plan descriptions)."""
    refs: List[str] = []
    for step in procedure.get("steps", []) if isinstance(procedure, dict) else []:
        for field_name in ("column", "key", "values", "columns"):
            ref = step.get(field_name) if isinstance(step, dict) else None
            if ref is None or ref == "*":
                continue
            text = ", ".join(ref["keywords"]) if isinstance(ref, dict) else str(ref)
            if normalize_colname(text) and text not in refs:
                refs.append(text)
    return refs
