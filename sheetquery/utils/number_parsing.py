import re
from typing import Any, Optional

CURRENCY_SYMBOLS = "$€£¥฿₹₩₽₫₱"
CURRENCY_CODES = ("USD", "EUR", "GBP", "JPY", "THB", "CNY", "INR", "AUD", "CAD", "CHF", "BRL", "MXN", "SGD")
CURRENCY_WORDS = ("บาท", "baht", "dollars", "euros", "pesos", "reais")

_CURRENCY_CODE_RE = re.compile(r"\b(?:%s)\b" % "|".join(CURRENCY_CODES), re.IGNORECASE)
_CURRENCY_SYMBOL_RE = re.compile("[%s]" % re.escape(CURRENCY_SYMBOLS))
_PERCENT_RE = re.compile(r"^\s*[-+]?\d[\d,.\s]*\s*%\s*$")


def _strip_noise(val: str) -> str:
    # Remove currency symbols, NBSP, spaces, and leading non-numeric noise
    cleaned = val.replace(" ", " ").strip()
    cleaned = re.sub(r"[^\d,.\-\+]", "", cleaned)
    cleaned = re.sub(r"^[^\d\-\+]+", "", cleaned)
    return cleaned


def _to_float(candidate: str) -> Optional[float]:
    try:
        return float(candidate)
    except ValueError:
        return None


def parse_localized_number(
    s: Any,
    *,
    decimal_hint: Optional[str] = None,
    thousands_hint: Optional[str] = None,
) -> Optional[float]:
    """
    Parses localized numeric strings (EU/US thousands & decimals). Returns None if not confident.

    Text that carries letters beyond currency markers is rejected, so '12 apples'
    and 'Q3' stay textual.
    """
    if s is None:
        return None
    if isinstance(s, bool):
        return None
    if isinstance(s, (int, float)):
        return float(s)

    val = str(s).strip()
    if not val:
        return None

    without_markers = _CURRENCY_CODE_RE.sub("", val)
    for word in CURRENCY_WORDS:
        without_markers = without_markers.replace(word, "")
    if re.search(r"[^\d,.\-\+\s%s()']" % re.escape(CURRENCY_SYMBOLS), without_markers):
        return None

    negative = without_markers.strip().startswith("(") and without_markers.strip().endswith(")")
    val = _strip_noise(without_markers)
    if not val or not re.search(r"\d", val):
        return None

    dec_hint = decimal_hint or "."
    thou_hint = thousands_hint
    result: Optional[float] = None

    # Strong EU pattern: 1.234.567,89 (a lone '1.234' stays a decimal)
    if re.fullmatch(r"[-+]?\d{1,3}(?:\.\d{3}){2,}(?:,\d+)?|[-+]?\d{1,3}(?:\.\d{3})+,\d+", val):
        result = _to_float(val.replace(".", "").replace(",", "."))
    # Strong US pattern: 1,234,567.89
    elif re.fullmatch(r"[-+]?\d{1,3}(?:,\d{3})+(?:\.\d+)?", val):
        result = _to_float(val.replace(",", ""))
    # Multiple dots, no comma -> treat dots as thousands
    elif val.count(".") > 1 and val.count(",") == 0:
        result = _to_float(val.replace(".", ""))
    # Single comma with 1-2 digit suffix => decimal comma
    elif val.count(",") == 1 and val.count(".") == 0 and re.fullmatch(r"[-+]?\d+,\d{1,2}", val):
        result = _to_float(val.replace(",", "."))
    else:
        candidate = val
        if thou_hint:
            candidate = candidate.replace(thou_hint, "")
        if dec_hint and dec_hint in candidate and dec_hint != ".":
            candidate = candidate.replace(dec_hint, ".")
        # Remove remaining thousands-like separators opposite to decimal
        other_sep = "," if dec_hint == "." else "."
        if candidate.count(".") <= 1 and candidate.count(other_sep) >= 1:
            candidate = candidate.replace(other_sep, "")
        result = _to_float(candidate)

    if result is None:
        return None
    return -abs(result) if negative else result


def has_currency_marker(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    if _CURRENCY_SYMBOL_RE.search(value) or _CURRENCY_CODE_RE.search(value):
        return True
    lowered = value.lower()
    return any(word in lowered for word in CURRENCY_WORDS)


def is_percentage(value: Any) -> bool:
    return isinstance(value, str) and bool(_PERCENT_RE.match(value))


def parse_number(value: Any) -> Optional[float]:
    """
    Currency-aware numeric parsing used by the extraction helpers.

    Numbers pass through, '$1,200.50' -> 1200.5, '12%' -> 12.0, '(300)' -> -300.0,
    booleans, blanks and free text -> None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return None if number != number else number
    text = str(value).strip()
    if not text:
        return None
    if is_percentage(text):
        return parse_localized_number(text.replace("%", ""))
    return parse_localized_number(text)
