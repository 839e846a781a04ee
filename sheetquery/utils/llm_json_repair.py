"""
Turns collaborator replies into the JSON object a response schema asks for.

Replies are tried as-is first, then through progressively heavier clean-ups
(markdown fences, surrounding prose, smart quotes, trailing commas, Python
literals). A parsed value is then fitted to the schema: a bare array is
wrapped into the schema's single required array field, and a lone wrapper
object ({"result": {...}}) is unwrapped when it hides the required fields.
"""

import json
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})
_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_PY_LITERALS = (("True", "true"), ("False", "false"), ("None", "null"))

MAX_TRACE_ATTEMPTS = 6


class JsonObjectParseError(ValueError):
    def __init__(self, message: str, trace: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.trace = trace or {}


def _balanced_block(text: str, opener: str, closer: str) -> Optional[str]:
    start = text.find(opener)
    if start < 0:
        return None
    depth = 0
    in_str = escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = False
        elif ch == '"':
            in_str = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def extract_json_object(text: str) -> Optional[str]:
    """First balanced {...} block of ``text``, honouring string literals."""
    return _balanced_block(text or "", "{", "}")


def strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", str(text or "")).strip()


def repair_common_json_damage(text: str) -> str:
    """Fixes fences, smart quotes, trailing commas and Python literals."""
    repaired = strip_fences(text).translate(_SMART_QUOTES)
    repaired = extract_json_object(repaired) or _balanced_block(repaired, "[", "]") or repaired
    repaired = _TRAILING_COMMA_RE.sub(r"\1", repaired)
    for python_word, json_word in _PY_LITERALS:
        repaired = re.sub(r"(?<=[:\[,\s])" + python_word + r"(?=\s*[,}\]])", json_word, repaired)
    return repaired


# (step name, transform), lightest first; only "repaired" counts as a repair
_STEPS: List[Tuple[str, Callable[[str], Optional[str]]]] = [
    ("raw", lambda text: text),
    ("unfenced", strip_fences),
    ("extracted", lambda text: extract_json_object(strip_fences(text))),
    ("repaired", repair_common_json_damage),
]


def _required_fields(schema: Optional[Dict[str, Any]]) -> List[str]:
    if not isinstance(schema, dict):
        return []
    return [f for f in schema.get("required") or [] if isinstance(f, str)]


def fit_to_schema(value: Any, schema: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """The parsed value as the object ``schema`` describes, or None when it cannot be made one."""
    required = _required_fields(schema)
    properties = (schema or {}).get("properties") or {}
    if isinstance(value, list):
        array_fields = [f for f in required if (properties.get(f) or {}).get("type") == "array"]
        if len(required) == 1 and array_fields:
            return {array_fields[0]: value}
        return None
    if not isinstance(value, dict):
        return None
    if required and not all(f in value for f in required) and len(value) == 1:
        inner = next(iter(value.values()))
        if isinstance(inner, dict) and all(f in inner for f in required):
            return inner
    return value


def parse_json_object_with_repair(
    text: str,
    *,
    actor: str = "llm",
    schema: Optional[Dict[str, Any]] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Parses a collaborator reply into a dict. Returns (payload, trace); raises
    JsonObjectParseError carrying the trace when no step yields an object.
    """
    raw = str(text or "")
    tried = set()
    attempts: List[Dict[str, Any]] = []
    last_error = f"Empty {actor} JSON payload"

    for step, transform in _STEPS:
        blob = (transform(raw) or "").strip()
        if not blob or blob in tried:
            continue
        tried.add(blob)
        try:
            parsed = json.loads(blob)
        except ValueError as err:
            last_error = str(err)
            attempts.append({"step": step, "chars": len(blob), "ok": False, "error": last_error[:220]})
            continue
        fitted = fit_to_schema(parsed, schema)
        if fitted is None:
            last_error = f"{actor} JSON payload is not an object"
            attempts.append({"step": step, "chars": len(blob), "ok": False, "error": "not_object"})
            continue
        attempts.append({"step": step, "chars": len(blob), "ok": True, "reshaped": fitted is not parsed})
        trace = {
            "actor": actor,
            "used_repair": step == "repaired",
            "chosen_step": step,
            "attempts": attempts[-MAX_TRACE_ATTEMPTS:],
        }
        return fitted, trace

    raise JsonObjectParseError(
        last_error,
        {"actor": actor, "used_repair": False, "chosen_step": None, "attempts": attempts[-MAX_TRACE_ATTEMPTS:]},
    )
