from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from sheetquery.utils.error_hints import append_repair_hints
from sheetquery.utils.prompting import truncate_text

_MAX_HISTORY = 3


def _safe_int(value: Any) -> int | None:
    try:
        if value is None:
            return None
        return int(value)
    except (TypeError, ValueError):
        return None


def is_retryable_execution_error(error: Any) -> bool:
    """Cancellation is final; every other attempt failure may be regenerated."""
    text = str(error or "").strip().lower()
    if not text:
        return False
    return not re.search(r"\bcancell?ed\b", text)


def build_regeneration_context(
    attempt: Any,
    error: Any,
    history: Optional[List[Dict[str, Any]]] = None,
) -> str:
    """
    Error context handed back to the planner after a failed attempt: the
    latest failure, earlier failures (most recent last) and repair hints
    derived from the error text.
    """
    number = _safe_int(attempt) or 1
    message = truncate_text(str(error or "unknown error"), 1500)
    lines: List[str] = []
    earlier = [h for h in (history or []) if h.get("error") and _safe_int(h.get("attempt")) != number]
    for item in earlier[-_MAX_HISTORY:]:
        lines.append(f"Attempt {item.get('attempt')} failed with: {truncate_text(str(item['error']), 300)}")
    lines.append(f"Previous attempt {number} failed with: {message}")
    lines.append("Write a corrected procedure that avoids this failure.")
    context, _ = append_repair_hints("\n".join(lines), message)
    return context
