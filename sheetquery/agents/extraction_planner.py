import logging
from typing import Any, Dict, List, Optional, Sequence

from sheetquery.utils.column_mapping import best_fuzzy_header, find_keyword_indices, is_generic_header
from sheetquery.utils.concept_lexicon import VALUE_KEYWORDS, concept_variants, synonyms_for
from sheetquery.utils.extraction_dsl import MAX_STEPS, ProcedureValidationError, describe_column_refs, validate_procedure
from sheetquery.utils.number_parsing import parse_number
from sheetquery.utils.prompting import render_prompt, truncate_text
from sheetquery.utils.resolve import resolve_with_fallback
from sheetquery.utils.response_schemas import EXTRACTION_PLAN_RESPONSE_SCHEMA
from sheetquery.utils.search_types import ColumnMatchResult, ExtractionPlan, SearchFilter, SearchIntent, SheetStructure
from sheetquery.utils.settings import EngineSettings

FALLBACK_CONFIDENCE = 0.3
DEFAULT_PLAN_CONFIDENCE = 0.5
FILTER_ROW_CAP = 1000
LIST_ROW_CAP = 100

PLANNER_SYSTEM_PROMPT = (
    "You write extraction procedures for spreadsheet rows in a small JSON step language. "
    "You never see cell values, only the sheet structure. Reply with JSON only."
)

PLANNER_PROMPT_TEMPLATE = """
Write a procedure that answers the query from one sheet.

QUERY: "$query"
INTENT: $intent

SHEET "$sheet_name": $row_count data rows. Columns (index, letter, header, type, density, patterns):
$columns

RESOLVED COLUMNS (concept -> index):
$matches

PROCEDURE LANGUAGE
The procedure is {"steps": [...]} (at most $max_steps steps) run over `rows` (lists of cell
values, header rows already removed) and `headers`. Column references: an index (0-based),
a header string, {"keywords": ["amount", "total"]} for the first header containing a keyword,
or {"keywords": [...], "all": true} / a list of references where several columns are allowed.
Steps:
- {"op": "skip_blank_rows"}
- {"op": "skip", "count": N} / {"op": "limit", "count": N}
- {"op": "filter", "column": REF, "operator": "equals|contains|greater|less|between|not_empty", "value": V}
- {"op": "coerce", "column": REF, "to": "number|string|date"}
- {"op": "sort", "column": REF, "descending": true}
- {"op": "group", "key": REF, "values": REF, "metrics": ["count", "total", "average", "min", "max"]}
- {"op": "aggregate", "column": REF, "function": "sum|count|average|min|max"}
- {"op": "distinct", "column": REF, "limit": N}
- {"op": "project", "columns": "*" or REF list, "drop_empty": true, "limit": N}
group, aggregate, distinct and project end the procedure and must be the last step.
Numbers are parsed currency-aware ("$$1,200.50", "1.200,50 €", "(45)"); blank keys are skipped.
Prefer a skip_blank_rows first step. Group results look like {"<key>": {"count": <n>, "total": <sum>}}.
$error_context
Return procedure, description, expectedOutputFormat, confidence (0..1) and warnings.
"""


def _describe_columns(structure: SheetStructure, headers: Sequence[str]) -> str:
    lines = []
    for col in structure.columns:
        name = headers[col.index] if col.index < len(headers) else col.inferred_name
        patterns = ",".join(col.sample_patterns) or "-"
        flag = " formula" if col.has_formula else ""
        lines.append(
            f"{col.index} {col.letter_label} \"{name}\" {col.data_type.value} density={col.density} "
            f"patterns={patterns}{flag}"
        )
    return "\n".join(lines) or "(no columns)"


def _describe_matches(matches: Sequence[ColumnMatchResult]) -> str:
    if not matches:
        return "(none resolved)"
    return "\n".join(
        f"{m.concept} -> {m.column_index} \"{m.column_name}\" ({m.method}, {m.confidence:.2f})" for m in matches
    )


def _filter_steps(filters: Sequence[SearchFilter], headers: Sequence[str], warnings: List[str]) -> List[Dict[str, Any]]:
    steps = []
    for item in filters:
        idx = best_fuzzy_header(headers, concept_variants(item.concept) + synonyms_for(item.concept))
        if idx is None:
            warnings.append(f"Filter on '{item.concept}' skipped: no matching column")
            continue
        if item.operator == "between":
            bounds = item.value if isinstance(item.value, (list, tuple)) and len(item.value) == 2 else None
            if bounds is None or any(parse_number(b) is None for b in bounds):
                warnings.append(f"Filter on '{item.concept}' skipped: between needs two numeric bounds")
                continue
        elif item.operator in ("greater", "less") and parse_number(item.value) is None:
            warnings.append(f"Filter on '{item.concept}' skipped: {item.operator} needs a numeric value")
            continue
        elif item.operator in ("equals", "contains") and (item.value is None or str(item.value).strip() == ""):
            warnings.append(f"Filter on '{item.concept}' skipped: {item.operator} needs a value")
            continue
        value = list(item.value) if isinstance(item.value, tuple) else item.value
        steps.append({"op": "filter", "column": idx, "operator": item.operator, "value": value})
    return steps


class ExtractionPlannerAgent:
    """
    Produces an ExtractionPlan for one sheet: a restricted procedure over
    ``rows``/``headers``. The collaborator writes the procedure from the sheet
    structure (never the cell values); the templated fallback covers
    aggregate, filter and list queries deterministically.
    """

    def __init__(self, completion: Any = None, settings: Optional[EngineSettings] = None):
        self.completion = completion
        self.settings = settings or EngineSettings()
        self.logger = logging.getLogger(__name__)

    def plan(
        self,
        structure: SheetStructure,
        intent: SearchIntent,
        headers: Sequence[str],
        query: str,
        error_context: Optional[str] = None,
        column_matches: Sequence[ColumnMatchResult] = (),
    ) -> ExtractionPlan:
        headers = list(headers)
        primary = None
        if self.completion is not None:
            primary = lambda: self._plan_with_collaborator(
                structure, intent, headers, query, error_context, column_matches
            )
        return resolve_with_fallback(
            primary,
            lambda: self.fallback_plan(structure, intent, headers, column_matches),
            timeout_s=self.settings.collaborator_timeout_s,
            logger=self.logger,
            context_tag="extraction_plan",
        )

    # ------------------------------------------------------------------
    # collaborator path
    # ------------------------------------------------------------------

    def _plan_with_collaborator(
        self,
        structure: SheetStructure,
        intent: SearchIntent,
        headers: List[str],
        query: str,
        error_context: Optional[str],
        column_matches: Sequence[ColumnMatchResult],
    ) -> ExtractionPlan:
        table = structure.primary_table
        prompt = render_prompt(
            PLANNER_PROMPT_TEMPLATE,
            query=query,
            intent=intent.to_dict(),
            sheet_name=structure.sheet_name,
            row_count=max(table.bounds.end_row - table.data_start_row + 1, 0),
            columns=_describe_columns(structure, headers),
            matches=_describe_matches(column_matches),
            max_steps=MAX_STEPS,
            error_context=f"\nPREVIOUS FAILURE\n{truncate_text(error_context, 3000)}\n" if error_context else "",
        )
        payload = self.completion.complete(
            prompt,
            EXTRACTION_PLAN_RESPONSE_SCHEMA,
            system=PLANNER_SYSTEM_PROMPT,
            context_tag="extraction_plan",
        )
        if not isinstance(payload, dict):
            raise ValueError("extraction plan response is not an object")

        try:
            validate_procedure(payload.get("procedure"))
        except ProcedureValidationError as exc:
            self.logger.warning("PLAN_PROCEDURE_INVALID sheet=%s error=%s", structure.sheet_name, str(exc)[:300])
            return self.fallback_plan(
                structure,
                intent,
                headers,
                column_matches,
                extra_warnings=[f"Generated procedure was rejected ({exc}); using the template plan"],
            )

        raw_confidence = payload.get("confidence")
        confidence = DEFAULT_PLAN_CONFIDENCE
        if isinstance(raw_confidence, (int, float)) and not isinstance(raw_confidence, bool):
            confidence = min(max(float(raw_confidence), 0.0), 1.0)
        warnings = payload.get("warnings") or []
        if isinstance(warnings, str):
            warnings = [warnings]
        procedure = payload["procedure"]
        description = str(payload.get("description") or "").strip()
        if not description:
            description = "Generated procedure over " + (", ".join(describe_column_refs(procedure)) or "all columns")
        return ExtractionPlan(
            procedure={"steps": list(procedure["steps"])},
            description=description,
            expected_output_format=str(payload.get("expectedOutputFormat") or "JSON value"),
            confidence=confidence,
            warnings=tuple(str(w) for w in warnings if w),
            source="collaborator",
        )

    # ------------------------------------------------------------------
    # deterministic templates
    # ------------------------------------------------------------------

    def fallback_plan(
        self,
        structure: SheetStructure,
        intent: SearchIntent,
        headers: Sequence[str],
        column_matches: Sequence[ColumnMatchResult] = (),
        extra_warnings: Sequence[str] = (),
    ) -> ExtractionPlan:
        headers = list(headers)
        warnings: List[str] = list(extra_warnings)
        if intent.type == "aggregate" and intent.key_concept:
            plan = self._aggregate_plan(intent, headers, column_matches, warnings)
            if plan is not None:
                return plan
            return self._filter_plan(intent, headers, column_matches, warnings)
        if intent.type == "filter":
            return self._filter_plan(intent, headers, column_matches, warnings)
        return self._list_plan(structure, warnings)

    def _key_index(
        self, key: str, headers: Sequence[str], column_matches: Sequence[ColumnMatchResult]
    ) -> Optional[int]:
        references = [key] + [v for v in concept_variants(key) if v != key] + synonyms_for(key)
        idx = best_fuzzy_header(headers, references, min_ratio=self.settings.fuzzy_min_ratio)
        if idx is not None:
            return idx
        lowered = {r.strip().lower() for r in references}
        for match in column_matches:
            if match.concept.strip().lower() in lowered:
                return match.column_index
        return None

    def _aggregate_plan(
        self,
        intent: SearchIntent,
        headers: List[str],
        column_matches: Sequence[ColumnMatchResult],
        warnings: List[str],
    ) -> Optional[ExtractionPlan]:
        key_idx = self._key_index(intent.key_concept, headers, column_matches)
        if key_idx is None:
            warnings.append(f"No column matches the grouping concept '{intent.key_concept}'; returning matching rows")
            self.logger.info("PLAN_KEY_UNRESOLVED key=%s", intent.key_concept)
            return None

        steps: List[Dict[str, Any]] = [{"op": "skip_blank_rows"}]
        steps.extend(_filter_steps(intent.filters, headers, warnings))
        value_indices = find_keyword_indices(headers, VALUE_KEYWORDS, exclude=[key_idx], whole_words=True)
        key_name = headers[key_idx]
        if value_indices:
            steps.append({"op": "group", "key": key_idx, "values": value_indices, "metrics": ["count", "total"]})
            value_names = ", ".join(headers[i] for i in value_indices)
            description = f"Group rows by {key_name} and sum {value_names} per group"
            output = "object keyed by group: {count, total}"
        else:
            steps.append({"op": "group", "key": key_idx, "metrics": ["count"]})
            warnings.append("No amount-like column found; counting rows per group only")
            description = f"Count rows per {key_name}"
            output = "object keyed by group: {count}"
        return ExtractionPlan(
            procedure={"steps": steps},
            description=description,
            expected_output_format=output,
            confidence=FALLBACK_CONFIDENCE,
            warnings=tuple(warnings),
        )

    def _filter_plan(
        self,
        intent: SearchIntent,
        headers: List[str],
        column_matches: Sequence[ColumnMatchResult],
        warnings: List[str],
    ) -> ExtractionPlan:
        indices: List[int] = []
        for match in column_matches:
            if 0 <= match.column_index < len(headers) and match.column_index not in indices:
                indices.append(match.column_index)
        for concept in intent.target_concepts:
            idx = best_fuzzy_header(headers, [concept], min_ratio=self.settings.fuzzy_min_ratio)
            if idx is not None and idx not in indices:
                indices.append(idx)
        if not indices:
            indices = [i for i, h in enumerate(headers) if not is_generic_header(h)]
        indices.sort()

        steps: List[Dict[str, Any]] = [{"op": "skip_blank_rows"}]
        steps.extend(_filter_steps(intent.filters, headers, warnings))
        steps.append(
            {"op": "project", "columns": indices if indices else "*", "drop_empty": True, "limit": FILTER_ROW_CAP}
        )
        names = ", ".join(headers[i] for i in indices) if indices else "all columns"
        return ExtractionPlan(
            procedure={"steps": steps},
            description=f"Return {names} for matching non-empty rows (up to {FILTER_ROW_CAP})",
            expected_output_format="list of records",
            confidence=FALLBACK_CONFIDENCE,
            warnings=tuple(warnings),
        )

    def _list_plan(self, structure: SheetStructure, warnings: List[str]) -> ExtractionPlan:
        return ExtractionPlan(
            procedure={
                "steps": [
                    {"op": "skip_blank_rows"},
                    {"op": "project", "columns": "*", "drop_empty": True, "limit": LIST_ROW_CAP},
                ]
            },
            description=(
                f"Return every column of the non-empty rows from row {structure.data_start_row + 1} "
                f"(up to {LIST_ROW_CAP})"
            ),
            expected_output_format="list of records",
            confidence=FALLBACK_CONFIDENCE,
            warnings=tuple(warnings),
        )
