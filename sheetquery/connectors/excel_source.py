"""File sources backed by local workbooks (.xlsx / .xls / .csv) or in-memory grids."""

from __future__ import annotations

import logging
import os
import zipfile
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from sheetquery.connectors.base import FileSource, SheetNotFoundError, SourceAuthError, SourceUnavailableError
from sheetquery.utils.search_types import CellRange, FileCandidate, SheetGrid, SheetSchema
from sheetquery.utils.structure_analyzer import analyze_structure
from sheetquery.utils.type_inference import is_blank

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".xlsx", ".xlsm", ".xls", ".csv")

TokenValidator = Callable[[Optional[str]], bool]


def _check_token(validator: Optional[TokenValidator], access_token: Optional[str]) -> None:
    if validator is not None and not validator(access_token):
        raise SourceAuthError("Access token is invalid or expired")


def _trim_trailing_empty(rows: List[List[Any]]) -> List[List[Any]]:
    while rows and all(is_blank(v) for v in rows[-1]):
        rows.pop()
    return rows


class InMemoryFileSource(FileSource):
    """
    Serves grids held in memory: ``{file_id: {sheet_name: rows | SheetGrid}}``.
    Every call is recorded in ``load_calls``.
    """

    def __init__(self, workbooks: Dict[str, Dict[str, Any]], token_validator: Optional[TokenValidator] = None):
        self.workbooks = workbooks
        self.token_validator = token_validator
        self.load_calls: List[tuple] = []

    def load(self, access_token, file_id, sheet_name=None, sheet_index=None) -> SheetGrid:
        self.load_calls.append((file_id, sheet_name, sheet_index))
        _check_token(self.token_validator, access_token)
        sheets = self.workbooks.get(file_id)
        if sheets is None:
            raise SheetNotFoundError(f"File {file_id!r} not found")
        names = list(sheets)
        name = names[self.pick_sheet(names, file_id, sheet_name, sheet_index)]
        raw = sheets[name]
        if isinstance(raw, SheetGrid):
            return raw
        return SheetGrid.from_rows(name, raw)


class ExcelFileSource(FileSource):
    """Reads ``<root_dir>/<file_id>`` (with or without extension)."""

    def __init__(self, root_dir: str, token_validator: Optional[TokenValidator] = None):
        self.root_dir = root_dir
        self.token_validator = token_validator

    def _resolve_path(self, file_id: str) -> str:
        base = os.path.join(self.root_dir, file_id)
        if os.path.splitext(file_id)[1].lower() in SUPPORTED_EXTENSIONS and os.path.isfile(base):
            return base
        for ext in SUPPORTED_EXTENSIONS:
            if os.path.isfile(base + ext):
                return base + ext
        raise SheetNotFoundError(f"File {file_id!r} not found under {self.root_dir}")

    def load(self, access_token, file_id, sheet_name=None, sheet_index=None) -> SheetGrid:
        _check_token(self.token_validator, access_token)
        path = self._resolve_path(file_id)
        ext = os.path.splitext(path)[1].lower()
        with _source_errors(file_id):
            if ext in (".xlsx", ".xlsm"):
                values_wb, formulas_wb = _open_xlsx(path)
                try:
                    names = list(values_wb.sheetnames)
                    name = names[self.pick_sheet(names, file_id, sheet_name, sheet_index)]
                    return _xlsx_grid(values_wb[name], formulas_wb[name], name)
                finally:
                    values_wb.close()
                    formulas_wb.close()
            if ext == ".xls":
                grids = _legacy_grids(path)
                names = [g.sheet_name for g in grids]
                return grids[self.pick_sheet(names, file_id, sheet_name, sheet_index)]
            grid = _csv_grid(path)
            self.pick_sheet([grid.sheet_name], file_id, sheet_name, sheet_index)
            return grid

    def load_all(self, access_token, file_id) -> List[SheetGrid]:
        """Every sheet of the workbook from a single read of the file."""
        _check_token(self.token_validator, access_token)
        path = self._resolve_path(file_id)
        ext = os.path.splitext(path)[1].lower()
        with _source_errors(file_id):
            if ext in (".xlsx", ".xlsm"):
                values_wb, formulas_wb = _open_xlsx(path)
                try:
                    grids = [_xlsx_grid(values_wb[n], formulas_wb[n], n) for n in values_wb.sheetnames]
                finally:
                    values_wb.close()
                    formulas_wb.close()
            elif ext == ".xls":
                grids = _legacy_grids(path)
            else:
                grids = [_csv_grid(path)]
        if not grids:
            raise SheetNotFoundError(f"File {file_id!r} has no sheets")
        return grids


@contextmanager
def _source_errors(file_id: str) -> Iterator[None]:
    try:
        yield
    except SourceUnavailableError:
        raise
    except (OSError, ValueError, InvalidFileException, zipfile.BadZipFile) as exc:
        raise SourceUnavailableError(f"Could not read {file_id!r}: {exc}") from exc


def _open_xlsx(path: str) -> Tuple[Any, Any]:
    # Cached values and formulas live in separate openpyxl views of the file.
    return load_workbook(path, data_only=True), load_workbook(path, data_only=False)


def _xlsx_grid(ws_values: Any, ws_formulas: Any, name: str) -> SheetGrid:
    rows: List[List[Any]] = []
    formula_cells = []
    for r, (value_row, formula_row) in enumerate(zip(ws_values.iter_rows(), ws_formulas.iter_rows())):
        out: List[Any] = []
        for c, (cell, fcell) in enumerate(zip(value_row, formula_row)):
            value = cell.value
            if getattr(fcell, "data_type", None) == "f":
                formula_cells.append((r, c))
                # Workbooks saved without a calculation pass carry no cached value.
                if value is None:
                    value = fcell.value
            if isinstance(value, datetime) and value.hour == 0 and value.minute == 0 and value.second == 0:
                value = value.date()
            out.append(value)
        rows.append(out)
    rows = _trim_trailing_empty(rows)

    merged = [
        CellRange(int(cr.min_row) - 1, int(cr.max_row) - 1, int(cr.min_col) - 1, int(cr.max_col) - 1)
        for cr in ws_formulas.merged_cells.ranges
    ]
    return SheetGrid.from_rows(name, rows, merged_regions=merged, formula_cells=formula_cells)


def _legacy_grids(path: str) -> List[SheetGrid]:
    frames = pd.read_excel(path, sheet_name=None, header=None, dtype=object)
    return [SheetGrid.from_rows(str(name), _frame_rows(frame)) for name, frame in frames.items()]


def _csv_grid(path: str) -> SheetGrid:
    name = os.path.splitext(os.path.basename(path))[0]
    frame = pd.read_csv(path, header=None, dtype=object, keep_default_na=False, skip_blank_lines=False)
    return SheetGrid.from_rows(name, _frame_rows(frame))


def _frame_rows(frame: pd.DataFrame) -> List[List[Any]]:
    rows = []
    for record in frame.itertuples(index=False, name=None):
        rows.append([None if is_blank(v) else v for v in record])
    return _trim_trailing_empty(rows)


def describe_workbook(
    file_id: str,
    name: str,
    grids: Sequence[SheetGrid],
    *,
    summary: str = "",
    mime_type: str = "",
) -> FileCandidate:
    """
    Builds the indexed description of a workbook (sheet names, column names and
    types, row counts) the search engine expects as candidate metadata.
    """
    sheets = []
    for index, grid in enumerate(grids):
        structure = analyze_structure(grid, grid.sheet_name)
        columns = tuple(
            {"name": col.inferred_name, "dataType": col.data_type.value}
            for col in structure.columns
        )
        table = structure.primary_table
        total_rows = max(table.bounds.end_row - table.data_start_row + 1, 0)
        sheets.append(SheetSchema(name=grid.sheet_name, index=index, columns=columns, total_rows=total_rows))
    logger.debug("WORKBOOK_DESCRIBED file_id=%s sheets=%s", file_id, len(sheets))
    return FileCandidate(file_id=file_id, name=name, sheets=tuple(sheets), summary=summary, mime_type=mime_type)
