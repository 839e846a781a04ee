from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from sheetquery.agents.column_matcher import ColumnMatcherAgent
from sheetquery.agents.extraction_planner import ExtractionPlannerAgent
from sheetquery.connectors.base import SourceUnavailableError
from sheetquery.connectors.data_retriever import SpreadsheetDataRetriever
from sheetquery.graph.steps.retry_policy import build_regeneration_context, is_retryable_execution_error
from sheetquery.utils.extraction_dsl import is_row_empty
from sheetquery.utils.json_sanitize import to_jsonable
from sheetquery.utils.sandbox_executor import SandboxedExecutor
from sheetquery.utils.search_types import ExtractionPlan, SearchIntent, SheetMatch
from sheetquery.utils.structure_analyzer import analyze_structure, table_frame

logger = logging.getLogger(__name__)


def plan_summary(plan: Optional[ExtractionPlan]) -> Optional[Dict[str, Any]]:
    if plan is None:
        return None
    return {"description": plan.description, "confidence": plan.confidence, "warnings": list(plan.warnings)}


def failure_entry(match: SheetMatch, error: str, plan: Optional[ExtractionPlan] = None) -> Dict[str, Any]:
    return {
        "fileId": match.file_id,
        "fileName": match.file_name,
        "sheetName": match.sheet_name,
        "error": error,
        "plan": plan_summary(plan),
    }


def process_sheet(
    match: SheetMatch,
    intent: SearchIntent,
    query: str,
    access_token: Optional[str],
    *,
    retriever: SpreadsheetDataRetriever,
    column_matcher: ColumnMatcherAgent,
    planner: ExtractionPlannerAgent,
    executor: SandboxedExecutor,
    include_empty_rows: bool = False,
    cancel_event: Optional[threading.Event] = None,
) -> Tuple[bool, Dict[str, Any]]:
    """
    Runs one matched sheet through structure analysis, column matching,
    planning and sandboxed execution with regeneration. Returns
    (True, result entry) or (False, failure entry); never raises for source
    or execution problems.
    """
    try:
        grid, cache_hit = retriever.load_grid(access_token, match.file_id, match.sheet_name, match.sheet_index)
    except SourceUnavailableError as exc:
        logger.warning(
            "SHEET_SOURCE_FAILED file_id=%s sheet=%s error=%s message=%s",
            match.file_id,
            match.sheet_name,
            type(exc).__name__,
            str(exc)[:200],
        )
        return False, failure_entry(match, f"Could not load sheet: {exc}")

    structure = analyze_structure(grid, grid.sheet_name)
    headers, rows = table_frame(grid, structure)
    if not include_empty_rows:
        rows = [row for row in rows if not is_row_empty(row)]

    column_matches = column_matcher.match_concepts(intent.target_concepts, structure.columns, rows)
    plan = planner.plan(structure, intent, headers, query, column_matches=column_matches)

    failures: List[Dict[str, Any]] = []

    def regenerate(attempt: int, error: str) -> Optional[ExtractionPlan]:
        failures.append({"attempt": attempt, "error": error})
        if (cancel_event is not None and cancel_event.is_set()) or not is_retryable_execution_error(error):
            return None
        context = build_regeneration_context(attempt, error, failures)
        logger.info("PLAN_REGENERATING sheet=%s attempt=%s", match.sheet_name, attempt)
        return planner.plan(structure, intent, headers, query, error_context=context, column_matches=column_matches)

    outcome = executor.execute(plan, rows, headers, on_retry=regenerate, cancel_event=cancel_event)
    final_plan = outcome.plan or plan

    if not outcome.success:
        logger.warning(
            "SHEET_EXECUTION_FAILED file_id=%s sheet=%s attempts=%s error=%s",
            match.file_id,
            match.sheet_name,
            outcome.attempts,
            str(outcome.error)[:300],
        )
        entry = failure_entry(match, outcome.error or "Execution failed", final_plan)
        entry["attempts"] = outcome.attempts
        return False, entry

    return True, {
        "fileId": match.file_id,
        "fileName": match.file_name,
        "sheetName": match.sheet_name,
        "sheetIndex": match.sheet_index,
        "relevanceScore": match.relevance_score,
        "structure": structure.to_dict(),
        "plan": final_plan.to_dict(),
        "columnMatches": [m.to_dict() for m in column_matches],
        "resultValue": to_jsonable(outcome.result),
        "elapsedTime": outcome.elapsed_time,
        "rowsProcessed": outcome.rows_processed,
        "attempts": outcome.attempts,
        "cacheHit": cache_hit,
    }
