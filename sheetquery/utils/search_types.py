"""
Shared records for the spreadsheet query pipeline.

Every record exposes ``to_dict()`` returning a JSON-ready dict with camelCase
keys, which is the shape handed back to callers of the search engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class DataType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    CURRENCY = "currency"
    PERCENTAGE = "percentage"
    MIXED = "mixed"
    EMPTY = "empty"


INTENT_TYPES = ("lookup", "filter", "aggregate", "list")
FILTER_OPERATORS = ("equals", "contains", "greater", "less", "between")
AGGREGATION_KINDS = ("sum", "count", "average", "min", "max")
MATCH_METHODS = ("exact", "fuzzy", "synonym", "embedding", "semantic", "pattern")


@dataclass(frozen=True)
class CellRange:
    """Inclusive, 0-based rectangle of cells."""

    start_row: int
    end_row: int
    start_col: int
    end_col: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "startRow": self.start_row,
            "endRow": self.end_row,
            "startCol": self.start_col,
            "endCol": self.end_col,
        }


@dataclass(frozen=True)
class SheetGrid:
    sheet_name: str
    rows: Tuple[Tuple[Any, ...], ...]
    merged_regions: Tuple[CellRange, ...] = ()
    formula_cells: Tuple[Tuple[int, int], ...] = ()

    @classmethod
    def from_rows(
        cls,
        sheet_name: str,
        rows: Any,
        *,
        merged_regions: Any = (),
        formula_cells: Any = (),
    ) -> "SheetGrid":
        frozen_rows = tuple(tuple(row) if isinstance(row, (list, tuple)) else () for row in (rows or []))
        return cls(
            sheet_name=str(sheet_name),
            rows=frozen_rows,
            merged_regions=tuple(merged_regions or ()),
            formula_cells=tuple((int(r), int(c)) for r, c in (formula_cells or ())),
        )

    @property
    def width(self) -> int:
        return max((len(row) for row in self.rows), default=0)


@dataclass(frozen=True)
class TableRegion:
    id: str
    bounds: CellRange
    has_headers: bool
    header_row_count: int

    @property
    def data_start_row(self) -> int:
        return self.bounds.start_row + self.header_row_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bounds": self.bounds.to_dict(),
            "hasHeaders": self.has_headers,
            "headerRows": self.header_row_count,
        }


@dataclass(frozen=True)
class ColumnProfile:
    index: int
    inferred_name: str
    letter_label: str
    data_type: DataType
    density: float
    unique_value_count: int
    sample_patterns: Tuple[str, ...] = ()
    has_formula: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.inferred_name,
            "letter": self.letter_label,
            "dataType": self.data_type.value,
            "density": self.density,
            "uniqueValueCount": self.unique_value_count,
            "samplePatterns": list(self.sample_patterns),
            "hasFormula": self.has_formula,
        }


@dataclass(frozen=True)
class DataPatterns:
    empty_columns: Tuple[int, ...] = ()
    sparse_columns: Tuple[Tuple[int, float], ...] = ()
    formula_columns: Tuple[int, ...] = ()
    merged_regions: Tuple[CellRange, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "emptyColumns": list(self.empty_columns),
            "sparseColumns": [{"index": idx, "density": density} for idx, density in self.sparse_columns],
            "formulaColumns": list(self.formula_columns),
            "mergedCellRegions": [region.to_dict() for region in self.merged_regions],
        }


@dataclass(frozen=True)
class SheetStructure:
    sheet_name: str
    rows: int
    cols: int
    tables: Tuple[TableRegion, ...]
    columns: Tuple[ColumnProfile, ...]
    patterns: DataPatterns
    primary_table_index: int = 0

    @property
    def primary_table(self) -> TableRegion:
        return self.tables[self.primary_table_index]

    @property
    def data_start_row(self) -> int:
        return self.primary_table.data_start_row

    @property
    def has_formulas(self) -> bool:
        return bool(self.patterns.formula_columns)

    @property
    def has_merged_cells(self) -> bool:
        return bool(self.patterns.merged_regions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sheetName": self.sheet_name,
            "dimensions": {"rows": self.rows, "cols": self.cols},
            "tables": [table.to_dict() for table in self.tables],
            "columns": [column.to_dict() for column in self.columns],
            "patterns": self.patterns.to_dict(),
            "metadata": {
                "hasFormulas": self.has_formulas,
                "hasMergedCells": self.has_merged_cells,
                "dataStartRow": self.data_start_row,
                "primaryTable": self.primary_table.id,
            },
        }


@dataclass(frozen=True)
class SearchFilter:
    concept: str
    operator: str
    value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"column": self.concept, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class SearchIntent:
    type: str
    target_concepts: Tuple[str, ...]
    key_concept: Optional[str] = None
    filters: Tuple[SearchFilter, ...] = ()
    aggregations: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        # keyConcept always travels inside targetConcepts.
        if self.key_concept:
            lowered = [c.casefold() for c in self.target_concepts]
            if self.key_concept.casefold() not in lowered:
                object.__setattr__(self, "target_concepts", (self.key_concept,) + tuple(self.target_concepts))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "targetColumns": list(self.target_concepts),
            "filters": [f.to_dict() for f in self.filters],
            "aggregations": list(self.aggregations),
        }
        if self.key_concept:
            payload["keyColumn"] = self.key_concept
        return payload


@dataclass(frozen=True)
class SheetSchema:
    """Indexed description of one sheet, as handed in by the caller."""

    name: str
    index: int
    columns: Tuple[Dict[str, Any], ...] = ()
    total_rows: int = 0

    @property
    def column_names(self) -> List[str]:
        return [str(col.get("name") or "") for col in self.columns if isinstance(col, dict)]


@dataclass(frozen=True)
class FileCandidate:
    file_id: str
    name: str
    sheets: Tuple[SheetSchema, ...] = ()
    summary: str = ""
    mime_type: str = ""

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "FileCandidate":
        sheets = []
        for position, raw in enumerate(payload.get("sheets") or []):
            if not isinstance(raw, dict):
                continue
            columns = tuple(col for col in (raw.get("columns") or []) if isinstance(col, dict))
            sheets.append(
                SheetSchema(
                    name=str(raw.get("name") or f"Sheet{position + 1}"),
                    index=int(raw.get("index", position)),
                    columns=columns,
                    total_rows=int(raw.get("totalRows") or 0),
                )
            )
        return cls(
            file_id=str(payload.get("fileId") or payload.get("file_id") or ""),
            name=str(payload.get("name") or ""),
            sheets=tuple(sheets),
            summary=str(payload.get("summary") or ""),
            mime_type=str(payload.get("mimeType") or payload.get("mime_type") or ""),
        )


@dataclass(frozen=True)
class SheetMatch:
    file_id: str
    file_name: str
    sheet_name: str
    sheet_index: int
    relevance_score: float
    reasons: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileId": self.file_id,
            "fileName": self.file_name,
            "sheetName": self.sheet_name,
            "sheetIndex": self.sheet_index,
            "relevanceScore": self.relevance_score,
            "matchReasons": list(self.reasons),
        }


@dataclass(frozen=True)
class ColumnMatchResult:
    concept: str
    column_name: str
    column_index: int
    confidence: float
    method: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concept": self.concept,
            "column": self.column_name,
            "index": self.column_index,
            "confidence": round(self.confidence, 4),
            "method": self.method,
        }


@dataclass(frozen=True)
class ExtractionPlan:
    procedure: Dict[str, Any]
    description: str
    expected_output_format: str
    confidence: float
    warnings: Tuple[str, ...] = ()
    source: str = "fallback"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "procedure": self.procedure,
            "description": self.description,
            "expectedOutputFormat": self.expected_output_format,
            "confidence": self.confidence,
            "warnings": list(self.warnings),
            "source": self.source,
        }


@dataclass
class ExtractionOutcome:
    success: bool
    result: Any = None
    error: Optional[str] = None
    elapsed_time: float = 0.0
    rows_processed: int = 0
    attempts: int = 0
    state: str = "pending"
    plan: Optional[ExtractionPlan] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "elapsedTime": self.elapsed_time,
            "rowsProcessed": self.rows_processed,
            "attempts": self.attempts,
            "state": self.state,
        }
        if self.success:
            payload["result"] = self.result
        else:
            payload["error"] = self.error
        return payload
