import re
from collections import Counter
from datetime import date, datetime, time
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from sheetquery.utils.number_parsing import has_currency_marker, is_percentage, parse_localized_number
from sheetquery.utils.search_types import DataType

BOOLEAN_WORDS = {"yes", "no", "true", "false", "y", "n", "ใช่", "ไม่ใช่", "sí", "si", "oui", "non", "ja", "nein", "sim", "não"}

_DATE_PATTERNS = [
    re.compile(r"^\d{4}[-/.]\d{1,2}[-/.]\d{1,2}(?:[ T]\d{1,2}:\d{2}(?::\d{2})?)?$"),
    re.compile(r"^\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4}$"),
    re.compile(r"^\d{1,2}[ -](?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*[ -,]+\d{2,4}$", re.IGNORECASE),
    re.compile(r"^(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]* \d{1,2},? \d{4}$", re.IGNORECASE),
]


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, float):
        return pd.isna(value)
    return value is pd.NaT


def looks_like_date(value: Any) -> bool:
    if isinstance(value, (datetime, date, pd.Timestamp)):
        return True
    if not isinstance(value, str):
        return False
    text = value.strip()
    return any(pattern.match(text) for pattern in _DATE_PATTERNS)


def classify_value(value: Any) -> DataType:
    """Classifies one non-empty cell."""
    if is_blank(value):
        return DataType.EMPTY
    if isinstance(value, bool):
        return DataType.BOOLEAN
    if isinstance(value, (int, float)):
        return DataType.NUMBER
    if isinstance(value, (datetime, date, time, pd.Timestamp)):
        return DataType.DATE

    text = str(value).strip()
    if text.lower() in BOOLEAN_WORDS:
        return DataType.BOOLEAN
    if is_percentage(text):
        return DataType.PERCENTAGE
    if has_currency_marker(text) and parse_localized_number(text) is not None:
        return DataType.CURRENCY
    if looks_like_date(text):
        return DataType.DATE
    if parse_localized_number(text) is not None:
        return DataType.NUMBER
    return DataType.STRING


def infer_column_type(
    values: Iterable[Any],
    *,
    majority_threshold: float = 0.7,
    sample_size: int = 200,
) -> DataType:
    """
    Majority vote over up to ``sample_size`` non-empty values.

    A type wins only with a share strictly above ``majority_threshold``; otherwise
    the column is 'mixed'. No non-empty values means 'empty'.
    """
    votes: Counter = Counter()
    seen = 0
    for value in values:
        if is_blank(value):
            continue
        votes[classify_value(value)] += 1
        seen += 1
        if seen >= sample_size:
            break
    if not seen:
        return DataType.EMPTY
    winner, count = votes.most_common(1)[0]
    if count / seen > majority_threshold:
        return winner
    return DataType.MIXED


def type_distribution(values: Iterable[Any], sample_size: int = 200) -> Dict[str, float]:
    sample: List[Any] = [v for v in values if not is_blank(v)][:sample_size]
    if not sample:
        return {}
    counts = pd.Series([classify_value(v).value for v in sample]).value_counts(normalize=True)
    return {str(k): round(float(v), 3) for k, v in counts.items()}


def coerce_cell(value: Any, target: str) -> Optional[Any]:
    """Converts a cell to 'number', 'string' or 'date' (ISO text); None when it cannot."""
    if is_blank(value):
        return None
    if target == "number":
        if is_percentage(value):
            return parse_localized_number(str(value).replace("%", ""))
        return parse_localized_number(value)
    if target == "date":
        if isinstance(value, (datetime, date, pd.Timestamp)):
            return value.isoformat()
        if not looks_like_date(value):
            return None
        parsed = pd.to_datetime(str(value), errors="coerce")
        return None if pd.isna(parsed) else parsed.isoformat()
    if isinstance(value, (datetime, date, pd.Timestamp)):
        return value.isoformat()
    return str(value).strip()
