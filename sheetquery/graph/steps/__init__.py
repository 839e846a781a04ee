"""
Per-sheet steps of the search pipeline.

The request-level flow (intent, sheet ranking, fan-out, timeouts) lives in
sheetquery.graph.search; the work done for one matched sheet is delegated here.
"""

from sheetquery.graph.steps.retry_policy import (
    build_regeneration_context,
    is_retryable_execution_error,
)
from sheetquery.graph.steps.sheet_processing import (
    failure_entry,
    plan_summary,
    process_sheet,
)

__all__ = [
    "build_regeneration_context",
    "is_retryable_execution_error",
    "failure_entry",
    "plan_summary",
    "process_sheet",
]
