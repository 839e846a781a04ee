import logging
import re
import threading
from typing import Any, Dict, List, Optional

from sheetquery.utils.concept_lexicon import (
    FILTER_TRIGGERS,
    LOOKUP_TRIGGERS,
    canonical_concept,
    concept_variants,
    concepts_in_text,
    contains_any,
    detect_aggregations,
    extract_key_concept,
)
from sheetquery.utils.number_parsing import parse_number
from sheetquery.utils.prompting import render_prompt
from sheetquery.utils.resolve import resolve_with_fallback
from sheetquery.utils.response_schemas import EXPANSION_RESPONSE_SCHEMA, INTENT_RESPONSE_SCHEMA
from sheetquery.utils.search_types import AGGREGATION_KINDS, FILTER_OPERATORS, INTENT_TYPES, SearchFilter, SearchIntent
from sheetquery.utils.settings import EngineSettings

_NUMBER = r"[$€£฿]?\s*(\d[\d,.]*)"

_BETWEEN_RE = re.compile(
    r"(?:(?<!\w)(?:between|entre|zwischen)|ระหว่าง)\s*" + _NUMBER + r"\s*(?:and|to|y|et|und|e|ถึง|และ|-)\s*" + _NUMBER,
    re.IGNORECASE,
)
_GREATER_RE = re.compile(
    r"(?:(?<!\w)(?:over|above|greater than|more than|exceeding|mayor que|más de|plus de|supérieur à|über|"
    r"mehr als|acima de|maior que)|>|มากกว่า|เกิน)\s*" + _NUMBER,
    re.IGNORECASE,
)
_LESS_RE = re.compile(
    r"(?:(?<!\w)(?:under|below|less than|menor que|menos de|moins de|inférieur à|unter|weniger als|abaixo de|"
    r"menor do que)|<|น้อยกว่า|ต่ำกว่า)\s*" + _NUMBER,
    re.IGNORECASE,
)

INTENT_PROMPT_TEMPLATE = """
Analyse this spreadsheet search query and describe what the user wants.

QUERY: "$query"

Rules:
- type is one of: lookup (find specific records), filter (rows matching conditions),
  aggregate (totals, counts, averages, grouped results), list (show everything).
- targetColumns lists the column concepts the answer needs. Include translations and
  common synonyms when the spreadsheet may be written in another language
  (for example "vendor", "supplier", "ผู้ขาย").
- keyColumn is the grouping concept for "X by Y" style queries, otherwise null.
- filters use operators: $operators.
- aggregations use: $aggregations.

Examples:
- "total sales last month" -> aggregate, targetColumns ["sales", "amount", "date"]
- "all invoices over $$1000" -> filter, targetColumns ["invoice", "amount"],
  filters [{"column": "amount", "operator": "greater", "value": 1000}]
- "payments by vendor" -> aggregate, keyColumn "vendor", targetColumns ["vendor", "payment", "amount"]
"""

EXPANSION_PROMPT_TEMPLATE = """
List alternative column headers a spreadsheet might use for the concept "$concept":
synonyms, abbreviations and translations (Thai, Spanish, French, German, Portuguese).
Return at most $limit short variants in "variants".
"""


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for item in items:
        text = str(item or "").strip()
        if not text or text.casefold() in seen:
            continue
        seen.add(text.casefold())
        out.append(text)
    return out


def _clean_number_text(raw: str) -> Optional[float]:
    return parse_number(raw.rstrip(".,"))


class IntentAnalyzerAgent:
    """
    Turns a query into a SearchIntent: one structured collaborator call
    (broadened with per-concept expansion calls when it names fewer than three
    concepts), or a multilingual keyword analysis when the collaborator is
    missing, fails, times out or answers empty.
    """

    # Process-wide memo of concept expansions, keyed by lowercased concept.
    _expansion_cache: Dict[str, List[str]] = {}
    _expansion_lock = threading.Lock()

    def __init__(self, completion: Any = None, settings: Optional[EngineSettings] = None):
        self.completion = completion
        self.settings = settings or EngineSettings()
        self.logger = logging.getLogger(__name__)

    def analyze(self, query: str) -> SearchIntent:
        primary = (lambda: self._analyze_with_collaborator(query)) if self.completion is not None else None
        return resolve_with_fallback(
            primary,
            lambda: self.fallback_intent(query),
            timeout_s=self.settings.collaborator_timeout_s,
            logger=self.logger,
            context_tag="intent",
        )

    # ------------------------------------------------------------------
    # collaborator path
    # ------------------------------------------------------------------

    def _analyze_with_collaborator(self, query: str) -> Optional[SearchIntent]:
        prompt = render_prompt(
            INTENT_PROMPT_TEMPLATE,
            query=query,
            operators=", ".join(FILTER_OPERATORS),
            aggregations=", ".join(AGGREGATION_KINDS),
        )
        payload = self.completion.complete(prompt, INTENT_RESPONSE_SCHEMA, context_tag="intent")
        intent = self._normalize_payload(payload, query)
        if intent is None:
            return None
        if len(intent.target_concepts) < 3:
            intent = self._expand(intent)
        return intent

    def _normalize_payload(self, payload: Any, query: str) -> Optional[SearchIntent]:
        if not isinstance(payload, dict):
            return None
        targets = payload.get("targetColumns") or payload.get("targetConcepts") or []
        if not isinstance(targets, list):
            return None
        targets = _dedupe([t for t in targets if isinstance(t, str)])
        if not targets:
            return None

        intent_type = payload.get("type")
        if intent_type not in INTENT_TYPES:
            intent_type = self._fallback_type(query)

        key = payload.get("keyColumn") or payload.get("keyConcept")
        key = key.strip() if isinstance(key, str) and key.strip() else None

        filters = []
        for item in payload.get("filters") or []:
            if not isinstance(item, dict):
                continue
            column, operator = item.get("column"), item.get("operator")
            if not isinstance(column, str) or not column.strip() or operator not in FILTER_OPERATORS:
                continue
            filters.append(SearchFilter(concept=column.strip(), operator=operator, value=item.get("value")))

        aggregations = [a for a in (payload.get("aggregations") or []) if a in AGGREGATION_KINDS]
        return SearchIntent(
            type=intent_type,
            target_concepts=tuple(targets),
            key_concept=key,
            filters=tuple(filters),
            aggregations=tuple(_dedupe(aggregations)),
        )

    def _expand(self, intent: SearchIntent) -> SearchIntent:
        concepts = list(intent.target_concepts)
        for concept in list(concepts)[: self.settings.expansion_max_concepts]:
            concepts.extend(self.expand_concept(concept))
        return SearchIntent(
            type=intent.type,
            target_concepts=tuple(_dedupe(concepts)),
            key_concept=intent.key_concept,
            filters=intent.filters,
            aggregations=intent.aggregations,
        )

    def expand_concept(self, concept: str) -> List[str]:
        """Variants of one concept from the collaborator, memoized per process."""
        key = concept.strip().lower()
        with self._expansion_lock:
            cached = self._expansion_cache.get(key)
        if cached is not None:
            return list(cached)
        if self.completion is None:
            return []
        limit = self.settings.expansion_max_variants
        try:
            payload = self.completion.complete(
                render_prompt(EXPANSION_PROMPT_TEMPLATE, concept=concept, limit=limit),
                EXPANSION_RESPONSE_SCHEMA,
                context_tag="intent_expansion",
            )
        except Exception as exc:
            self.logger.warning(
                "INTENT_EXPANSION_FAILED concept=%s error=%s message=%s", concept, type(exc).__name__, str(exc)[:200]
            )
            return []
        raw = payload.get("variants") if isinstance(payload, dict) else None
        variants = _dedupe([v for v in (raw or []) if isinstance(v, str)])[:limit]
        with self._expansion_lock:
            self._expansion_cache[key] = variants
        return list(variants)

    @classmethod
    def clear_expansion_cache(cls) -> None:
        with cls._expansion_lock:
            cls._expansion_cache.clear()

    # ------------------------------------------------------------------
    # deterministic fallback
    # ------------------------------------------------------------------

    def _fallback_type(self, query: str) -> str:
        if detect_aggregations(query):
            return "aggregate"
        if contains_any(query, FILTER_TRIGGERS) or extract_numeric_filters(query):
            return "filter"
        if contains_any(query, LOOKUP_TRIGGERS):
            return "lookup"
        return "list"

    def fallback_intent(self, query: str) -> SearchIntent:
        intent_type = self._fallback_type(query)
        key = extract_key_concept(query)

        targets: List[str] = []
        if key:
            targets.extend(concept_variants(key) if canonical_concept(key) else [key])
        for concept in concepts_in_text(query):
            targets.extend(concept_variants(concept))

        aggregations = detect_aggregations(query) if intent_type == "aggregate" else []
        if intent_type == "aggregate" and not aggregations:
            aggregations = ["sum"]

        intent = SearchIntent(
            type=intent_type,
            target_concepts=tuple(_dedupe(targets)),
            key_concept=key,
            filters=tuple(extract_numeric_filters(query)),
            aggregations=tuple(aggregations),
        )
        self.logger.info(
            "INTENT_FALLBACK type=%s key=%s concepts=%s", intent.type, intent.key_concept, len(intent.target_concepts)
        )
        return intent


def extract_numeric_filters(query: str) -> List[SearchFilter]:
    """'over 1000', 'under $50', 'between 10 and 20' (and localized forms) against the amount concept."""
    filters: List[SearchFilter] = []
    text = query or ""
    between = _BETWEEN_RE.search(text)
    if between:
        low, high = _clean_number_text(between.group(1)), _clean_number_text(between.group(2))
        if low is not None and high is not None:
            filters.append(SearchFilter("amount", "between", [min(low, high), max(low, high)]))
            return filters
    greater = _GREATER_RE.search(text)
    if greater:
        value = _clean_number_text(greater.group(1))
        if value is not None:
            filters.append(SearchFilter("amount", "greater", value))
    less = _LESS_RE.search(text)
    if less:
        value = _clean_number_text(less.group(1))
        if value is not None:
            filters.append(SearchFilter("amount", "less", value))
    return filters
