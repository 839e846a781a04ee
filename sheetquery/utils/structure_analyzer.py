"""
Structural inference over raw sheet grids.

Detects table regions separated by runs of empty rows, decides whether each
region carries a header row, and profiles every column of the primary region.
The analysis is a pure function of the grid and never raises on odd input.
"""

import logging
from typing import Any, List, Optional, Sequence, Tuple

from sheetquery.utils.column_mapping import column_letter, normalize_text
from sheetquery.utils.number_parsing import parse_number
from sheetquery.utils.search_types import (
    CellRange,
    ColumnProfile,
    DataPatterns,
    DataType,
    SheetGrid,
    SheetStructure,
    TableRegion,
)
from sheetquery.utils.type_inference import infer_column_type, is_blank
from sheetquery.utils.value_patterns import detect_profile_patterns

logger = logging.getLogger(__name__)

EMPTY_ROW_GAP = 3
HEADER_TEXT_SHARE = 0.8
MAJORITY_SHARE = 0.7
UNIQUE_SCAN_LIMIT = 1000
SPARSE_DENSITY = 0.3


def _cell(row: Sequence[Any], col: int) -> Any:
    return row[col] if col < len(row) else None


def _row_is_empty(row: Sequence[Any]) -> bool:
    return all(is_blank(v) for v in row)


def looks_like_header(row: Sequence[Any]) -> bool:
    """True when more than 80% of the non-empty cells fail numeric parsing."""
    values = [v for v in row if not is_blank(v)]
    if not values:
        return False
    textual = sum(1 for v in values if isinstance(v, str) and parse_number(v) is None)
    return textual / len(values) > HEADER_TEXT_SHARE


def detect_regions(rows: Sequence[Sequence[Any]]) -> List[Tuple[int, int]]:
    """Row spans (inclusive) of non-empty runs; a run ends after 3+ empty rows."""
    spans: List[Tuple[int, int]] = []
    start: Optional[int] = None
    last_filled: Optional[int] = None
    gap = 0
    for idx, row in enumerate(rows):
        if _row_is_empty(row):
            gap += 1
            if start is not None and gap >= EMPTY_ROW_GAP:
                spans.append((start, last_filled))
                start = None
            continue
        gap = 0
        if start is None:
            start = idx
        last_filled = idx
    if start is not None:
        spans.append((start, last_filled))
    return spans


def _column_bounds(rows: Sequence[Sequence[Any]], start: int, end: int) -> Tuple[int, int]:
    cols = [
        col
        for row in rows[start : end + 1]
        for col, value in enumerate(row)
        if not is_blank(value)
    ]
    if not cols:
        return 0, 0
    return min(cols), max(cols)


def _build_tables(grid: SheetGrid) -> List[TableRegion]:
    tables: List[TableRegion] = []
    for number, (start, end) in enumerate(detect_regions(grid.rows), start=1):
        first_col, last_col = _column_bounds(grid.rows, start, end)
        has_headers = looks_like_header(grid.rows[start])
        tables.append(
            TableRegion(
                id=f"table_{number}",
                bounds=CellRange(start, end, first_col, last_col),
                has_headers=has_headers,
                header_row_count=1 if has_headers else 0,
            )
        )
    if not tables:
        tables.append(
            TableRegion(
                id="table_1",
                bounds=CellRange(0, max(len(grid.rows) - 1, 0), 0, max(grid.width - 1, 0)),
                has_headers=False,
                header_row_count=0,
            )
        )
    return tables


def _primary_index(tables: Sequence[TableRegion]) -> int:
    best, best_area = 0, -1
    for idx, table in enumerate(tables):
        b = table.bounds
        area = (b.end_row - b.start_row + 1) * (b.end_col - b.start_col + 1)
        if area > best_area:
            best, best_area = idx, area
    return best


def _header_name(grid: SheetGrid, table: TableRegion, col: int) -> str:
    if table.has_headers:
        value = _cell(grid.rows[table.bounds.start_row], col)
        if not is_blank(value):
            return str(value).strip()
    return f"Column {col + 1}"


def _unique_count(values: Sequence[Any]) -> int:
    seen = set()
    for value in values[:UNIQUE_SCAN_LIMIT]:
        if is_blank(value):
            continue
        seen.add(normalize_text(value) if isinstance(value, str) else repr(value))
    return len(seen)


def table_frame(grid: SheetGrid, structure: SheetStructure) -> Tuple[List[str], List[List[Any]]]:
    """
    Headers and data rows of the primary table, padded to the grid width so
    header positions equal column profile indices.
    """
    width = structure.cols
    table = structure.primary_table
    headers = [_header_name(grid, table, col) for col in range(width)]
    first = table.data_start_row
    last = table.bounds.end_row
    rows = [
        [_cell(row, col) for col in range(width)]
        for row in grid.rows[first : last + 1]
    ]
    return headers, rows


def analyze_structure(grid: SheetGrid, sheet_name: Optional[str] = None) -> SheetStructure:
    name = sheet_name or grid.sheet_name
    width = grid.width
    tables = _build_tables(grid)
    primary_idx = _primary_index(tables)
    primary = tables[primary_idx]

    data_rows = grid.rows[primary.data_start_row : primary.bounds.end_row + 1] if grid.rows else ()
    examined = len(data_rows)
    formula_cols = sorted({col for _, col in grid.formula_cells if col < width})

    columns: List[ColumnProfile] = []
    empty_cols: List[int] = []
    sparse_cols: List[Tuple[int, float]] = []
    for col in range(width):
        values = [_cell(row, col) for row in data_rows]
        non_empty = sum(1 for v in values if not is_blank(v))
        density = round(non_empty / examined, 2) if examined else 0.0
        data_type = infer_column_type(values, majority_threshold=MAJORITY_SHARE)
        if data_type == DataType.EMPTY:
            empty_cols.append(col)
        elif density < SPARSE_DENSITY:
            sparse_cols.append((col, density))
        columns.append(
            ColumnProfile(
                index=col,
                inferred_name=_header_name(grid, primary, col),
                letter_label=column_letter(col),
                data_type=data_type,
                density=density,
                unique_value_count=_unique_count(values),
                sample_patterns=tuple(detect_profile_patterns(values)),
                has_formula=col in formula_cols,
            )
        )

    structure = SheetStructure(
        sheet_name=name,
        rows=len(grid.rows),
        cols=width,
        tables=tuple(tables),
        columns=tuple(columns),
        patterns=DataPatterns(
            empty_columns=tuple(empty_cols),
            sparse_columns=tuple(sparse_cols),
            formula_columns=tuple(formula_cols),
            merged_regions=tuple(grid.merged_regions),
        ),
        primary_table_index=primary_idx,
    )
    logger.debug(
        "STRUCTURE_ANALYZED sheet=%s rows=%s cols=%s tables=%s data_start=%s",
        name,
        structure.rows,
        structure.cols,
        len(tables),
        structure.data_start_row,
    )
    return structure
