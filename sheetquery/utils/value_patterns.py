import re
from typing import Any, Callable, Dict, Iterable, List

from sheetquery.utils.number_parsing import parse_number
from sheetquery.utils.type_inference import is_blank, looks_like_date

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RES = [
    re.compile(r"^\+?\d{9,15}$"),
    re.compile(r"^\(\d{3}\)\s?\d{3}-?\d{4}$"),
    re.compile(r"^\+?\d{1,3}[\s.-]?\d{2,4}[\s.-]\d{3,4}[\s.-]?\d{3,4}$"),
    re.compile(r"^0\d{1,2}[\s-]?\d{3}[\s-]?\d{4}$"),
]
URL_RE = re.compile(r"^(?:https?://|www\.)\S+$", re.IGNORECASE)
ID_RE = re.compile(r"^(?=.*\d)[A-Z]{0,5}[-_#/]?\d[\dA-Z_/-]{2,}$", re.IGNORECASE)
VENDOR_RE = re.compile(r"^[^\W\d_][\w\s\-&.,'()/]{1,99}$", re.UNICODE)


def is_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_RE.match(value.strip()))


def is_phone(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return False
    text = str(value).strip()
    return any(pattern.match(text) for pattern in PHONE_RES)


def is_url(value: Any) -> bool:
    return isinstance(value, str) and bool(URL_RE.match(value.strip()))


def is_identifier(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    text = value.strip()
    return bool(ID_RE.match(text)) and not is_phone(text)


def is_amount(value: Any) -> bool:
    return parse_number(value) is not None


def is_date_value(value: Any) -> bool:
    return looks_like_date(value)


def is_vendor_name(value: Any) -> bool:
    """Business-name shape: 2-100 chars starting with a letter, no @ or URL."""
    if not isinstance(value, str):
        return False
    text = value.strip()
    if is_email(text) or is_url(text):
        return False
    return bool(VENDOR_RE.match(text))


# Shapes reported on column profiles.
PROFILE_PATTERNS: Dict[str, Callable[[Any], bool]] = {
    "email": is_email,
    "phone": is_phone,
    "id": is_identifier,
    "url": is_url,
}

# Shapes the column matcher can validate a concept against.
CONCEPT_PATTERNS: Dict[str, Callable[[Any], bool]] = {
    "email": is_email,
    "phone": is_phone,
    "date": is_date_value,
    "amount": is_amount,
    "vendor": is_vendor_name,
}


def sample_non_empty(values: Iterable[Any], limit: int = 20) -> List[Any]:
    sample: List[Any] = []
    for value in values:
        if is_blank(value):
            continue
        sample.append(value)
        if len(sample) >= limit:
            break
    return sample


def detect_profile_patterns(values: Iterable[Any], *, sample_size: int = 20, min_share: float = 0.5) -> List[str]:
    """Shapes matched by at least ``min_share`` of the first non-empty values."""
    sample = sample_non_empty(values, sample_size)
    if not sample:
        return []
    found = []
    for name, predicate in PROFILE_PATTERNS.items():
        hits = sum(1 for value in sample if predicate(value))
        if hits / len(sample) >= min_share:
            found.append(name)
    return found
