import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from sheetquery.utils.column_mapping import fuzzy_ratio, is_generic_header, normalize_colname, scripts_compatible
from sheetquery.utils.concept_lexicon import canonical_concept, concept_variants, synonyms_for
from sheetquery.utils.prompting import render_prompt
from sheetquery.utils.resolve import resolve_with_fallback
from sheetquery.utils.response_schemas import SEMANTIC_MATCH_RESPONSE_SCHEMA
from sheetquery.utils.search_types import ColumnMatchResult, ColumnProfile
from sheetquery.utils.settings import EngineSettings
from sheetquery.utils.value_patterns import CONCEPT_PATTERNS, sample_non_empty

# Concept -> value shape validated by the pattern stage.
PATTERN_KIND_BY_CONCEPT = {
    "email": "email",
    "phone": "phone",
    "date": "date",
    "amount": "amount",
    "total": "amount",
    "price": "amount",
    "payment": "amount",
    "sales": "amount",
    "vendor": "vendor",
    "customer": "vendor",
}

# Cascade gates: a stage runs only while the best confidence is below its gate.
FUZZY_GATE = 0.9
SYNONYM_GATE = 0.8
EMBEDDING_GATE = 0.8
SEMANTIC_GATE = 0.7
PATTERN_GATE = 0.6

SEMANTIC_PROMPT_TEMPLATE = """
Pick the spreadsheet column that holds the concept "$concept".
Match across languages and synonyms: a Thai header "ผู้ขาย" holds "vendor", an English
header "Customer" holds "ลูกค้า", "Supplier" holds "vendor".

COLUMNS (index: name [type]):
$columns

Return columnIndex (null when no column fits) and a confidence between 0 and 1.
"""

Column = Tuple[int, str, str]


def _as_columns(columns: Sequence[Any]) -> List[Column]:
    """(index, name, data type) for ColumnProfile entries or plain header strings."""
    out: List[Column] = []
    for position, col in enumerate(columns):
        if isinstance(col, ColumnProfile):
            out.append((col.index, col.inferred_name, col.data_type.value))
        else:
            out.append((position, "" if col is None else str(col), ""))
    return out


def _cosine(left: Sequence[float], right: Sequence[float]) -> float:
    a = np.asarray(left, dtype=float)
    b = np.asarray(right, dtype=float)
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0 or a.shape != b.shape:
        return 0.0
    return float(np.dot(a, b) / denom)


class ColumnMatcherAgent:
    """
    Resolves a concept to one column with the cascade
    exact -> fuzzy -> synonym -> embedding -> semantic -> pattern.

    Each later stage only runs while the best confidence so far sits below
    that stage's gate; a candidate replaces the best only when strictly
    better. Results at or below the acceptance floor are dropped.
    """

    # Process-wide memo of embedding vectors, keyed by lowercased text.
    _embedding_cache: Dict[str, List[float]] = {}
    _embedding_lock = threading.Lock()

    def __init__(self, completion: Any = None, embedder: Any = None, settings: Optional[EngineSettings] = None):
        self.completion = completion
        self.embedder = embedder
        self.settings = settings or EngineSettings()
        self.logger = logging.getLogger(__name__)

    def match_column(
        self,
        concept: str,
        columns: Sequence[Any],
        rows: Optional[Sequence[Sequence[Any]]] = None,
    ) -> Optional[ColumnMatchResult]:
        cols = _as_columns(columns)
        if not cols or not str(concept or "").strip():
            return None

        best: Optional[ColumnMatchResult] = None

        def consider(candidate: Optional[ColumnMatchResult]) -> None:
            nonlocal best
            if candidate is not None and (best is None or candidate.confidence > best.confidence):
                best = candidate

        def confidence() -> float:
            return best.confidence if best is not None else 0.0

        consider(self._exact(concept, cols))
        if confidence() < FUZZY_GATE:
            consider(self._fuzzy(concept, cols))
        if confidence() < SYNONYM_GATE:
            consider(self._synonym(concept, cols))
        if confidence() < EMBEDDING_GATE and self.embedder is not None:
            consider(self._embedding(concept, cols))
        if confidence() < SEMANTIC_GATE and self.completion is not None:
            consider(self._semantic(concept, cols))
        if confidence() < PATTERN_GATE and rows:
            consider(self._pattern(concept, cols, rows))

        valid_indices = {idx for idx, _, _ in cols}
        if best is None or best.confidence <= self.settings.match_floor or best.column_index not in valid_indices:
            self.logger.debug("COLUMN_UNRESOLVED concept=%s best=%s", concept, best.to_dict() if best else None)
            return None
        return best

    def match_concepts(
        self,
        concepts: Sequence[str],
        columns: Sequence[Any],
        rows: Optional[Sequence[Sequence[Any]]] = None,
    ) -> List[ColumnMatchResult]:
        """One match per column (the most confident concept wins), ordered by column."""
        by_column: Dict[int, ColumnMatchResult] = {}
        for concept in concepts:
            result = self.match_column(concept, columns, rows)
            if result is None:
                continue
            current = by_column.get(result.column_index)
            if current is None or result.confidence > current.confidence:
                by_column[result.column_index] = result
        return [by_column[idx] for idx in sorted(by_column)]

    # ------------------------------------------------------------------
    # stages
    # ------------------------------------------------------------------

    def _exact(self, concept: str, cols: List[Column], *, method: str = "exact", weight: float = 1.0):
        target = normalize_colname(concept)
        if not target:
            return None
        for idx, name, _ in cols:
            if normalize_colname(name) == target:
                return ColumnMatchResult(concept, name, idx, weight, method)
        return None

    def _fuzzy(self, concept: str, cols: List[Column]) -> Optional[ColumnMatchResult]:
        best_idx, best_name, best_ratio = None, "", self.settings.fuzzy_min_ratio
        for idx, name, _ in cols:
            if not name or not scripts_compatible(concept, name):
                continue
            ratio = fuzzy_ratio(concept, name)
            if ratio > best_ratio:
                best_idx, best_name, best_ratio = idx, name, ratio
        if best_idx is None:
            return None
        return ColumnMatchResult(concept, best_name, best_idx, best_ratio * self.settings.fuzzy_weight, "fuzzy")

    def _synonym(self, concept: str, cols: List[Column]) -> Optional[ColumnMatchResult]:
        alternatives = synonyms_for(concept)
        if canonical_concept(concept):
            alternatives += [v for v in concept_variants(concept) if v not in alternatives]
        for alternative in alternatives:
            if normalize_colname(alternative) == normalize_colname(concept):
                continue
            hit = self._exact(alternative, cols)
            if hit is not None:
                return ColumnMatchResult(
                    concept, hit.column_name, hit.column_index, hit.confidence * self.settings.synonym_weight, "synonym"
                )
        return None

    def _vector(self, text: str) -> List[float]:
        key = text.strip().lower()
        with self._embedding_lock:
            cached = self._embedding_cache.get(key)
        if cached is not None:
            return cached
        vector = list(self.embedder.embed(text))
        with self._embedding_lock:
            self._embedding_cache[key] = vector
        return vector

    def _embedding(self, concept: str, cols: List[Column]) -> Optional[ColumnMatchResult]:
        try:
            target = self._vector(concept)
            best: Optional[ColumnMatchResult] = None
            for idx, name, _ in cols:
                if is_generic_header(name):
                    continue
                similarity = _cosine(target, self._vector(name))
                if similarity > self.settings.embedding_min_similarity and (best is None or similarity > best.confidence):
                    best = ColumnMatchResult(concept, name, idx, min(similarity, 1.0), "embedding")
            return best
        except Exception as exc:
            self.logger.warning(
                "EMBEDDING_STAGE_FAILED concept=%s error=%s message=%s", concept, type(exc).__name__, str(exc)[:200]
            )
            return None

    def _semantic(self, concept: str, cols: List[Column]) -> Optional[ColumnMatchResult]:
        listing = "\n".join(f"{idx}: {name or '(no header)'} [{dtype or 'unknown'}]" for idx, name, dtype in cols)
        prompt = render_prompt(SEMANTIC_PROMPT_TEMPLATE, concept=concept, columns=listing)
        names = {idx: name for idx, name, _ in cols}

        def _ask() -> Optional[ColumnMatchResult]:
            payload = self.completion.complete(prompt, SEMANTIC_MATCH_RESPONSE_SCHEMA, context_tag="column_semantic")
            if not isinstance(payload, dict):
                return None
            idx = payload.get("columnIndex")
            if isinstance(idx, bool) or not isinstance(idx, int) or idx not in names:
                return None
            raw = payload.get("confidence")
            conf = self.settings.semantic_default_confidence
            if isinstance(raw, (int, float)) and not isinstance(raw, bool):
                conf = min(max(float(raw), 0.0), 1.0)
            return ColumnMatchResult(concept, names[idx], idx, conf, "semantic")

        return resolve_with_fallback(
            _ask,
            lambda: None,
            timeout_s=self.settings.collaborator_timeout_s,
            logger=self.logger,
            context_tag="column_semantic",
        )

    def _pattern(self, concept: str, cols: List[Column], rows: Sequence[Sequence[Any]]) -> Optional[ColumnMatchResult]:
        kind = PATTERN_KIND_BY_CONCEPT.get(canonical_concept(concept) or normalize_colname(concept))
        if kind is None:
            return None
        predicate = CONCEPT_PATTERNS[kind]
        required_ratio = self.settings.pattern_ratios.get(kind, 0.8)
        best: Optional[ColumnMatchResult] = None
        for idx, name, _ in cols:
            if not is_generic_header(name):
                continue
            sample = sample_non_empty(
                (row[idx] if idx < len(row) else None for row in rows),
                self.settings.pattern_sample_size,
            )
            if len(sample) < self.settings.pattern_min_matches:
                continue
            hits = sum(1 for value in sample if predicate(value))
            ratio = hits / len(sample)
            if hits >= self.settings.pattern_min_matches and ratio >= required_ratio:
                if best is None or ratio > best.confidence:
                    best = ColumnMatchResult(concept, name, idx, ratio, "pattern")
        return best
