import re
import unicodedata
from typing import Any, Iterable, List, Optional, Sequence

from rapidfuzz.distance import Levenshtein

GENERIC_HEADER_RE = re.compile(r"^(?:column|col|field|unnamed)[\s_:.-]*\d+$|^[a-z]$|^\d+$", re.IGNORECASE)

_SCRIPT_PREFIXES = {
    "LATIN": "latin",
    "THAI": "thai",
    "CJK": "cjk",
    "HIRAGANA": "cjk",
    "KATAKANA": "cjk",
    "HANGUL": "hangul",
    "CYRILLIC": "cyrillic",
    "GREEK": "greek",
    "ARABIC": "arabic",
    "HEBREW": "hebrew",
    "DEVANAGARI": "devanagari",
}

# Scripts whose words are not separated by spaces.
UNDELIMITED_SCRIPTS = {"thai", "cjk"}


def normalize_colname(name: Any) -> str:
    """
    Normalizes a column name for matching:
    - NFKC + casefold
    - Remove separators, punctuation and symbols (spaces, '_', '-', '.', '$'...)
    - Keeps letters and digits of every script

    Example: 'Customer ID' -> 'customerid', 'ชื่อ ผู้ขาย' -> 'ชื่อผู้ขาย'
    """
    if name is None:
        return ""
    s = unicodedata.normalize("NFKC", str(name)).casefold()
    # Thai vowel and tone marks are category M and must survive.
    return "".join(ch for ch in s if unicodedata.category(ch)[0] in ("L", "N", "M"))


def normalize_text(text: Any) -> str:
    """Casefolded text with runs of whitespace collapsed; punctuation kept."""
    if text is None:
        return ""
    s = unicodedata.normalize("NFKC", str(text)).casefold()
    return re.sub(r"\s+", " ", s).strip()


def char_script(ch: str) -> Optional[str]:
    if not ch.isalpha():
        return None
    try:
        uname = unicodedata.name(ch)
    except ValueError:
        return None
    for prefix, script in _SCRIPT_PREFIXES.items():
        if uname.startswith(prefix):
            return script
    return "other"


def dominant_script(text: Any) -> Optional[str]:
    counts = {}
    for ch in str(text or ""):
        script = char_script(ch)
        if script:
            counts[script] = counts.get(script, 0) + 1
    if not counts:
        return None
    return max(sorted(counts), key=lambda key: counts[key])


def scripts_compatible(left: Any, right: Any) -> bool:
    """False only when both texts carry letters and their dominant scripts differ."""
    left_script = dominant_script(left)
    right_script = dominant_script(right)
    if left_script is None or right_script is None:
        return True
    return left_script == right_script


def fuzzy_ratio(left: Any, right: Any) -> float:
    """Normalized Levenshtein similarity of the normalized names, in [0, 1]."""
    a = normalize_colname(left)
    b = normalize_colname(right)
    if not a or not b:
        return 0.0
    return float(Levenshtein.normalized_similarity(a, b))


def is_generic_header(name: Any) -> bool:
    """Empty, 'Column 3', 'Unnamed: 2', 'Field 7', 'B' style headers."""
    if name is None:
        return True
    text = str(name).strip()
    if not text:
        return True
    return bool(GENERIC_HEADER_RE.match(text))


def column_letter(index: int) -> str:
    """0 -> 'A', 25 -> 'Z', 26 -> 'AA'."""
    label = ""
    n = index + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        label = chr(65 + rem) + label
    return label


def tokenize(text: Any) -> List[str]:
    """
    Script-aware tokens: Latin-like words are split on non-word characters and
    undelimited runs (Thai, CJK) are kept whole for substring comparison.
    """
    s = normalize_text(text)
    tokens: List[str] = []
    for raw in re.split(r"[\s_\-/.,;:()\[\]{}|+&]+", s):
        if not raw:
            continue
        tokens.append(raw)
    return tokens


def term_in_tokens(term: str, tokens: Sequence[str], min_length: int = 3) -> bool:
    """
    Matches one term against a token list.

    Terms written in undelimited scripts match by substring of any token; other
    terms must equal a token, tolerating a plural 's' on either side.
    """
    term = normalize_text(term)
    if not term:
        return False
    script = dominant_script(term)
    if script in UNDELIMITED_SCRIPTS:
        compact = term.replace(" ", "")
        return any(compact in token for token in tokens)
    words = [w for w in re.split(r"\s+", term) if w]
    if not words or (len(words) == 1 and len(words[0]) < min_length):
        return False
    token_set = set(tokens)
    for word in words:
        variants = {word, word + "s", word[:-1] if word.endswith("s") and len(word) > min_length else word}
        if not variants & token_set:
            return False
    return True


def find_header_index(
    headers: Sequence[Any],
    reference: Any,
    *,
    exclude: Iterable[int] = (),
) -> Optional[int]:
    """
    Resolves a header reference: exact normalized equality first, then
    containment either way. Ties go to the leftmost column.
    """
    target = normalize_colname(reference)
    if not target:
        return None
    skipped = set(exclude)
    normalized = [normalize_colname(h) for h in headers]
    for idx, name in enumerate(normalized):
        if idx not in skipped and name and name == target:
            return idx
    for idx, name in enumerate(normalized):
        if idx in skipped or not name:
            continue
        if (len(target) >= 3 and target in name) or (len(name) >= 3 and name in target):
            return idx
    return None


def find_keyword_indices(
    headers: Sequence[Any],
    keywords: Iterable[Any],
    *,
    exclude: Iterable[int] = (),
    whole_words: bool = False,
) -> List[int]:
    """
    Every column whose normalized header contains one of the keywords. With
    ``whole_words`` a keyword must be a word of the header ('sum' does not hit
    'Consumer ID'); undelimited scripts still match by substring.
    """
    skipped = set(exclude)
    keywords = [k for k in keywords if normalize_colname(k)]
    needles = [normalize_colname(k) for k in keywords]
    hits: List[int] = []
    for idx, header in enumerate(headers):
        if idx in skipped:
            continue
        if whole_words:
            tokens = tokenize(header)
            if tokens and any(term_in_tokens(k, tokens) for k in keywords):
                hits.append(idx)
            continue
        name = normalize_colname(header)
        if name and any(needle in name for needle in needles):
            hits.append(idx)
    return hits


def best_fuzzy_header(
    headers: Sequence[Any],
    references: Iterable[Any],
    *,
    min_ratio: float = 0.7,
    exclude: Iterable[int] = (),
) -> Optional[int]:
    """
    Fuzzy-resolves the first reference that lands on a header, trying
    equality/containment before edit distance.
    """
    skipped = set(exclude)
    refs = [r for r in references if normalize_colname(r)]
    for ref in refs:
        idx = find_header_index(headers, ref, exclude=skipped)
        if idx is not None:
            return idx
    best_idx: Optional[int] = None
    best_score = min_ratio
    for ref in refs:
        for idx, header in enumerate(headers):
            if idx in skipped or not scripts_compatible(ref, header):
                continue
            score = fuzzy_ratio(ref, header)
            if score > best_score:
                best_idx, best_score = idx, score
    return best_idx
