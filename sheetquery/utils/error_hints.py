import re
from typing import List, Pattern, Tuple

MAX_HINTS = 2

EMPTY_ROWS_HINT = (
    "Check that rows and headers are non-empty lists before using them, skip rows shorter than the "
    "referenced column, and add a skip_blank_rows step before grouping or projecting."
)

# (pattern over the error text, hint); earlier rules win when more than MAX_HINTS match
HINT_RULES: List[Tuple[Pattern[str], str]] = [
    (
        re.compile(
            r"nonetype'? (?:object )?(?:has no len|is not (?:subscriptable|iterable))|(?:list|tuple) index out of range",
            re.IGNORECASE,
        ),
        EMPTY_ROWS_HINT,
    ),
    (
        re.compile(r"could not resolve column|column .* not found|no column matches", re.IGNORECASE),
        "Reference columns by index or with {\"keywords\": [...]} built from the listed headers; do not invent header names.",
    ),
    (
        re.compile(r"unknown (?:operation|step|field)|invalid procedure|procedure must", re.IGNORECASE),
        "Use only the documented step operations and fields; the procedure is {\"steps\": [...]} with at most 25 steps.",
    ),
    (
        re.compile(r"timed out|timeout|time limit", re.IGNORECASE),
        "Reduce work per row: filter before sorting or grouping and cap the output with a limit step.",
    ),
    (
        re.compile(r"not json serializable|out of range float values|byte limit", re.IGNORECASE),
        "Return only numbers, strings, booleans, null, lists and objects; coerce dates to text.",
    ),
]


def derive_repair_hints(error_text: str) -> List[str]:
    """Planner hints for an execution failure, at most MAX_HINTS and in rule order."""
    text = str(error_text or "")[:4000]
    hints = [hint for pattern, hint in HINT_RULES if pattern.search(text)]
    return hints[:MAX_HINTS]


def append_repair_hints(feedback: str, error_text: str) -> Tuple[str, List[str]]:
    """Appends a REPAIR_HINTS block with the hints ``feedback`` does not already carry."""
    feedback = str(feedback or "").rstrip()
    hints = derive_repair_hints(error_text)
    fresh = [hint for hint in hints if hint not in feedback]
    if not fresh:
        return feedback, hints
    block = "REPAIR_HINTS:\n" + "\n".join("- " + hint for hint in fresh)
    return (feedback + "\n\n" + block if feedback else block), hints
