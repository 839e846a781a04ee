import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sheetquery.utils.column_mapping import (
    UNDELIMITED_SCRIPTS,
    dominant_script,
    normalize_colname,
    normalize_text,
    term_in_tokens,
    tokenize,
)
from sheetquery.utils.concept_lexicon import STOPWORDS, canonical_concept
from sheetquery.utils.prompting import render_prompt, truncate_text
from sheetquery.utils.resolve import resolve_with_fallback
from sheetquery.utils.response_schemas import SHEET_MATCH_RESPONSE_SCHEMA
from sheetquery.utils.search_types import FileCandidate, SearchIntent, SheetMatch, SheetSchema
from sheetquery.utils.settings import EngineSettings

SHEET_NAME_WEIGHT = 0.3
CONCEPT_WEIGHT = 0.4
EXTRA_CONCEPT_WEIGHT = 0.1
FILE_NAME_WEIGHT = 0.2
SUMMARY_WEIGHT = 0.1

SHEET_MATCH_PROMPT_TEMPLATE = """
Rate how relevant each spreadsheet sheet is to the query. You only see the sheet
schemas (names, column names and types), never the cell values.

QUERY: "$query"
INTENT: $intent

SHEETS:
$sheets

Return "matches": one entry per relevant sheet with fileId, sheetIndex,
relevanceScore between 0 and 1 and short matchReasons. Column names may be in any
language (Thai, Spanish, ...); judge them by meaning. Omit irrelevant sheets.
"""


@dataclass(frozen=True)
class _Slot:
    """One candidate sheet with its position in the flattened candidate list."""

    ordinal: int
    file: FileCandidate
    sheet: SheetSchema

    @property
    def key(self) -> Tuple[str, int]:
        return self.file.file_id, self.sheet.index


def _flatten(candidates: Sequence[FileCandidate]) -> List[_Slot]:
    slots: List[_Slot] = []
    for candidate in candidates:
        for sheet in candidate.sheets:
            slots.append(_Slot(len(slots), candidate, sheet))
    return slots


def _query_terms(query: str) -> List[str]:
    terms = []
    for token in tokenize(query):
        if token in STOPWORDS:
            continue
        if dominant_script(token) not in UNDELIMITED_SCRIPTS and len(token) < 3:
            continue
        if token not in terms:
            terms.append(token)
    return terms


def _term_hits(term: str, tokens: Sequence[str]) -> bool:
    """Token match, plus the reverse substring test for Thai/CJK runs that swallow the target word."""
    if term_in_tokens(term, tokens):
        return True
    if dominant_script(term) in UNDELIMITED_SCRIPTS:
        compact = normalize_colname(term)
        return any(
            len(token) >= 2 and dominant_script(token) in UNDELIMITED_SCRIPTS and token.replace(" ", "") in compact
            for token in tokens
        )
    return False


def _overlap(terms: Sequence[str], text: str) -> List[str]:
    tokens = tokenize(text)
    if not tokens:
        return []
    return [term for term in terms if _term_hits(term, tokens)]


def _concept_groups(intent: SearchIntent) -> List[Tuple[str, List[str]]]:
    """Target concepts grouped by their canonical idea, so variants of one idea count once."""
    groups: Dict[str, List[str]] = {}
    for concept in intent.target_concepts:
        key = canonical_concept(concept) or normalize_colname(concept)
        if not key:
            continue
        groups.setdefault(key, []).append(concept)
    return list(groups.items())


class SheetMatcherAgent:
    """
    Ranks candidate sheets for a query. The collaborator scores batches of
    sheet schemas; a batch whose call fails (or returns malformed data) is
    scored by the token-overlap heuristic instead.
    """

    def __init__(self, completion: Any = None, settings: Optional[EngineSettings] = None):
        self.completion = completion
        self.settings = settings or EngineSettings()
        self.logger = logging.getLogger(__name__)

    def match_sheets(
        self, query: str, intent: SearchIntent, candidates: Sequence[FileCandidate]
    ) -> List[SheetMatch]:
        slots = _flatten(candidates)
        scored: List[Tuple[int, SheetMatch]] = []
        batch_size = max(int(self.settings.sheet_batch_size), 1)
        for start in range(0, len(slots), batch_size):
            batch = slots[start : start + batch_size]
            primary = None
            if self.completion is not None:
                primary = lambda batch=batch: self._score_with_collaborator(query, intent, batch)
            scored.extend(
                resolve_with_fallback(
                    primary,
                    lambda batch=batch: self._score_heuristic(query, intent, batch),
                    timeout_s=self.settings.collaborator_timeout_s,
                    logger=self.logger,
                    context_tag="sheet_match",
                )
            )
        scored.sort(key=lambda item: (-item[1].relevance_score, item[0]))
        matches = [match for _, match in scored]
        self.logger.info("SHEETS_MATCHED candidates=%s matched=%s", len(slots), len(matches))
        return matches

    # ------------------------------------------------------------------
    # collaborator path
    # ------------------------------------------------------------------

    def _describe_batch(self, batch: Sequence[_Slot]) -> str:
        lines = []
        for slot in batch:
            columns = ", ".join(
                f"{col.get('name') or '?'} ({col.get('dataType') or 'unknown'})"
                for col in slot.sheet.columns
                if isinstance(col, dict)
            )
            lines.append(
                f"- fileId={slot.file.file_id} sheetIndex={slot.sheet.index} file=\"{slot.file.name}\" "
                f"sheet=\"{slot.sheet.name}\" rows={slot.sheet.total_rows} columns=[{truncate_text(columns, 600)}]"
            )
        return "\n".join(lines)

    def _score_with_collaborator(
        self, query: str, intent: SearchIntent, batch: Sequence[_Slot]
    ) -> List[Tuple[int, SheetMatch]]:
        prompt = render_prompt(
            SHEET_MATCH_PROMPT_TEMPLATE,
            query=query,
            intent=intent.to_dict(),
            sheets=self._describe_batch(batch),
        )
        payload = self.completion.complete(prompt, SHEET_MATCH_RESPONSE_SCHEMA, context_tag="sheet_match")
        if not isinstance(payload, dict) or not isinstance(payload.get("matches"), list):
            raise ValueError("sheet match response has no 'matches' list")

        by_key = {slot.key: slot for slot in batch}
        best: Dict[Tuple[str, int], Tuple[int, SheetMatch]] = {}
        for item in payload["matches"]:
            if not isinstance(item, dict):
                continue
            try:
                key = (str(item.get("fileId")), int(item.get("sheetIndex")))
                score = float(item.get("relevanceScore"))
            except (TypeError, ValueError):
                continue
            slot = by_key.get(key)
            if slot is None:
                self.logger.debug("SHEET_MATCH_UNKNOWN_ID file_id=%s sheet_index=%s", key[0], key[1])
                continue
            score = min(max(score, 0.0), 1.0)
            if score <= self.settings.sheet_llm_min_score:
                continue
            reasons = item.get("matchReasons") or []
            if isinstance(reasons, str):
                reasons = [reasons]
            match = SheetMatch(
                file_id=slot.file.file_id,
                file_name=slot.file.name,
                sheet_name=slot.sheet.name,
                sheet_index=slot.sheet.index,
                relevance_score=round(score, 4),
                reasons=tuple(str(r) for r in reasons if r),
            )
            if key not in best or score > best[key][1].relevance_score:
                best[key] = (slot.ordinal, match)
        return list(best.values())

    # ------------------------------------------------------------------
    # heuristic fallback
    # ------------------------------------------------------------------

    def score_sheet(self, query: str, intent: SearchIntent, file: FileCandidate, sheet: SheetSchema) -> Tuple[float, List[str]]:
        terms = _query_terms(query)
        name_terms = terms + [c for c in (normalize_text(t) for t in intent.target_concepts) if c and c not in terms]
        score = 0.0
        reasons: List[str] = []

        hits = _overlap(name_terms, sheet.name)
        if hits:
            score += SHEET_NAME_WEIGHT
            reasons.append(f"sheet name matches {', '.join(hits[:3])}")

        column_tokens = tokenize(" | ".join(sheet.column_names))
        found = []
        for canonical, variants in _concept_groups(intent):
            if any(_term_hits(v, column_tokens) for v in variants):
                found.append(canonical)
        if found:
            score += CONCEPT_WEIGHT + EXTRA_CONCEPT_WEIGHT * (len(found) - 1)
            reasons.append(f"columns cover {', '.join(found[:5])}")

        hits = _overlap(name_terms, file.name)
        if hits:
            score += FILE_NAME_WEIGHT
            reasons.append(f"file name matches {', '.join(hits[:3])}")

        if file.summary and _overlap(terms, file.summary):
            score += SUMMARY_WEIGHT
            reasons.append("summary mentions the query")

        return round(min(score, 1.0), 4), reasons

    def _score_heuristic(
        self, query: str, intent: SearchIntent, batch: Sequence[_Slot]
    ) -> List[Tuple[int, SheetMatch]]:
        out = []
        for slot in batch:
            score, reasons = self.score_sheet(query, intent, slot.file, slot.sheet)
            if score <= self.settings.sheet_fallback_min_score:
                continue
            out.append(
                (
                    slot.ordinal,
                    SheetMatch(
                        file_id=slot.file.file_id,
                        file_name=slot.file.name,
                        sheet_name=slot.sheet.name,
                        sheet_index=slot.sheet.index,
                        relevance_score=score,
                        reasons=tuple(reasons),
                    ),
                )
            )
        return out
