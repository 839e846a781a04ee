"""
Spreadsheet search orchestration.

``search`` runs the full pipeline: intent analysis, sheet ranking, then per
matched sheet (concurrently) structure analysis, column matching, plan
synthesis and sandboxed execution with regeneration. ``search_filtered``
is the simpler path that resolves columns and returns filtered rows without
synthesizing a procedure.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sheetquery.agents.column_matcher import ColumnMatcherAgent
from sheetquery.agents.extraction_planner import ExtractionPlannerAgent
from sheetquery.agents.intent_analyzer import IntentAnalyzerAgent
from sheetquery.agents.sheet_matcher import SheetMatcherAgent
from sheetquery.connectors.base import FileSource, SourceUnavailableError
from sheetquery.connectors.data_retriever import SpreadsheetDataRetriever, split_header_rows
from sheetquery.graph.steps.sheet_processing import failure_entry, process_sheet
from sheetquery.utils.column_mapping import column_letter
from sheetquery.utils.json_sanitize import to_jsonable
from sheetquery.utils.llm_client import build_default_collaborators
from sheetquery.utils.sandbox_executor import SandboxedExecutor
from sheetquery.utils.search_types import FileCandidate, SearchIntent, SheetMatch
from sheetquery.utils.settings import EngineSettings

logger = logging.getLogger(__name__)

_WAIT_SLICE_S = 0.1


class SearchRequestError(ValueError):
    """The request itself is unusable (empty query, no candidates, bad options)."""


class SearchCancelled(RuntimeError):
    """The caller cancelled the request before it finished."""


@dataclass
class SearchOptions:
    match_threshold: float = 0.7
    max_sheets: int = 10
    include_empty_rows: bool = False
    request_timeout_s: Optional[float] = None
    cancel_event: Optional[threading.Event] = None


def _as_candidate(item: Any) -> FileCandidate:
    if isinstance(item, FileCandidate):
        return item
    if isinstance(item, dict):
        return FileCandidate.from_dict(item)
    raise SearchRequestError(f"Unsupported candidate file description: {type(item).__name__}")


class SpreadsheetSearchEngine:
    def __init__(
        self,
        file_source: FileSource,
        completion: Any = None,
        embedder: Any = None,
        settings: Optional[EngineSettings] = None,
        retriever: Optional[SpreadsheetDataRetriever] = None,
        executor: Optional[SandboxedExecutor] = None,
    ):
        self.settings = settings or EngineSettings()
        self.retriever = retriever or SpreadsheetDataRetriever(file_source, settings=self.settings)
        self.intent_analyzer = IntentAnalyzerAgent(completion, self.settings)
        self.sheet_matcher = SheetMatcherAgent(completion, self.settings)
        self.column_matcher = ColumnMatcherAgent(completion, embedder, self.settings)
        self.planner = ExtractionPlannerAgent(completion, self.settings)
        self.executor = executor or SandboxedExecutor(
            timeout_s=self.settings.execution_timeout_s,
            max_attempts=self.settings.max_attempts,
        )

    @classmethod
    def from_env(cls, file_source: FileSource) -> "SpreadsheetSearchEngine":
        """Settings and OpenAI collaborators from the environment (fallback-only without a key)."""
        settings = EngineSettings.from_env()
        completion, embedder = build_default_collaborators(settings)
        return cls(file_source, completion=completion, embedder=embedder, settings=settings)

    # ------------------------------------------------------------------
    # request handling
    # ------------------------------------------------------------------

    def _prepare(
        self, query: str, candidate_files: Sequence[Any], options: SearchOptions
    ) -> Tuple[str, List[FileCandidate], float]:
        if not isinstance(query, str) or not query.strip():
            raise SearchRequestError("Query cannot be empty")
        if not candidate_files:
            raise SearchRequestError("No candidate files to search")
        if not 0.0 <= float(options.match_threshold) <= 1.0:
            raise SearchRequestError("match_threshold must be between 0 and 1")
        if int(options.max_sheets) < 1:
            raise SearchRequestError("max_sheets must be at least 1")
        timeout_s = options.request_timeout_s if options.request_timeout_s is not None else self.settings.request_timeout_s
        if timeout_s <= self.executor.timeout_s:
            raise SearchRequestError(
                f"request timeout ({timeout_s}s) must exceed the execution timeout ({self.executor.timeout_s}s)"
            )
        candidates = [_as_candidate(item) for item in candidate_files]
        return query.strip(), candidates, float(timeout_s)

    def _check_cancelled(self, options: SearchOptions) -> None:
        if options.cancel_event is not None and options.cancel_event.is_set():
            raise SearchCancelled("Search cancelled by caller")

    def _rank(
        self, query: str, candidates: List[FileCandidate], options: SearchOptions
    ) -> Tuple[SearchIntent, List[SheetMatch]]:
        intent = self.intent_analyzer.analyze(query)
        self._check_cancelled(options)
        ranked = self.sheet_matcher.match_sheets(query, intent, candidates)
        selected = [m for m in ranked if m.relevance_score >= options.match_threshold][: int(options.max_sheets)]
        logger.info(
            "SEARCH_SHEETS_SELECTED intent=%s ranked=%s selected=%s threshold=%s",
            intent.type,
            len(ranked),
            len(selected),
            options.match_threshold,
        )
        return intent, selected

    def search(
        self,
        query: str,
        candidate_files: Sequence[Any],
        access_token: Optional[str],
        options: Optional[SearchOptions] = None,
    ) -> Dict[str, Any]:
        options = options or SearchOptions()
        started = time.monotonic()
        query, candidates, timeout_s = self._prepare(query, candidate_files, options)
        self._check_cancelled(options)

        intent, selected = self._rank(query, candidates, options)
        results, failures = self._process_sheets(
            selected,
            lambda match, stop: self._run_sheet(match, intent, query, access_token, options, stop),
            options,
            deadline=started + timeout_s,
        )

        duration = round(time.monotonic() - started, 3)
        logger.info(
            "SEARCH_COMPLETE query_len=%s results=%s failures=%s duration=%.3fs",
            len(query),
            len(results),
            len(failures),
            duration,
        )
        return {
            "results": results,
            "failures": failures,
            "intent": intent.to_dict(),
            "query": query,
            "duration": duration,
        }

    def _process_sheets(
        self,
        selected: List[SheetMatch],
        work: Callable[[SheetMatch, threading.Event], Tuple[bool, Dict[str, Any]]],
        options: SearchOptions,
        *,
        deadline: float,
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Runs ``work`` for every selected sheet on a bounded pool. Sheets still
        running at ``deadline`` become failures; cancellation raises.
        """
        if not selected:
            return [], []

        stop = threading.Event()
        pool = ThreadPoolExecutor(max_workers=min(len(selected), int(options.max_sheets)), thread_name_prefix="sheetquery-sheet")
        futures: Dict[Future, int] = {}
        outcomes: Dict[int, Tuple[bool, Dict[str, Any]]] = {}
        cancelled = False
        try:
            for position, match in enumerate(selected):
                future = pool.submit(work, match, stop)
                futures[future] = position
            pending = set(futures)
            while pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                if options.cancel_event is not None and options.cancel_event.is_set():
                    cancelled = True
                    break
                done, pending = wait(pending, timeout=min(_WAIT_SLICE_S, remaining), return_when=FIRST_COMPLETED)
                for future in done:
                    outcomes[futures[future]] = future.result()
        finally:
            if len(outcomes) < len(selected):
                stop.set()
            pool.shutdown(wait=False, cancel_futures=True)

        if cancelled:
            logger.info("SEARCH_CANCELLED finished=%s pending=%s", len(outcomes), len(selected) - len(outcomes))
            raise SearchCancelled("Search cancelled by caller")

        results: List[Dict[str, Any]] = []
        failures: List[Dict[str, Any]] = []
        for position, match in enumerate(selected):
            if position not in outcomes:
                logger.warning("SHEET_TIMED_OUT file_id=%s sheet=%s", match.file_id, match.sheet_name)
                failures.append(failure_entry(match, "Request timed out before this sheet finished"))
                continue
            ok, entry = outcomes[position]
            (results if ok else failures).append(entry)
        return results, failures

    def _run_sheet(
        self,
        match: SheetMatch,
        intent: SearchIntent,
        query: str,
        access_token: Optional[str],
        options: SearchOptions,
        stop: threading.Event,
    ) -> Tuple[bool, Dict[str, Any]]:
        try:
            return process_sheet(
                match,
                intent,
                query,
                access_token,
                retriever=self.retriever,
                column_matcher=self.column_matcher,
                planner=self.planner,
                executor=self.executor,
                include_empty_rows=options.include_empty_rows,
                cancel_event=stop,
            )
        except Exception as exc:
            logger.exception("SHEET_PROCESSING_ERROR file_id=%s sheet=%s", match.file_id, match.sheet_name)
            return False, failure_entry(match, f"Sheet processing failed: {type(exc).__name__}: {exc}")

    # ------------------------------------------------------------------
    # filtered retrieval path
    # ------------------------------------------------------------------

    def search_filtered(
        self,
        query: str,
        candidate_files: Sequence[Any],
        access_token: Optional[str],
        options: Optional[SearchOptions] = None,
    ) -> Dict[str, Any]:
        """
        Intent -> sheet match -> column match -> filtered rows. Matched columns
        carry their letters; rows are filtered by the intent filters and must
        hold a value in at least one matched column. Sheets unfinished at the
        request deadline are reported as failures.
        """
        options = options or SearchOptions()
        started = time.monotonic()
        query, candidates, timeout_s = self._prepare(query, candidate_files, options)
        self._check_cancelled(options)
        intent, selected = self._rank(query, candidates, options)
        by_id = {c.file_id: c for c in candidates}

        results, failures = self._process_sheets(
            selected,
            lambda match, stop: self._filtered_sheet(match, by_id[match.file_id], intent, access_token, options),
            options,
            deadline=started + timeout_s,
        )
        return {
            "results": results,
            "failures": failures,
            "intent": intent.to_dict(),
            "query": query,
            "duration": round(time.monotonic() - started, 3),
        }

    def _filtered_sheet(
        self,
        match: SheetMatch,
        candidate: Any,
        intent: SearchIntent,
        access_token: Optional[str],
        options: SearchOptions,
    ) -> Tuple[bool, Dict[str, Any]]:
        sheet_started = time.monotonic()
        try:
            grid, cache_hit = self.retriever.load_grid(access_token, match.file_id, match.sheet_name, match.sheet_index)
            headers, _ = split_header_rows(grid)
            matched = self.column_matcher.match_concepts(intent.target_concepts, headers)
            data = self.retriever.retrieve_sheet_data(
                access_token,
                match.file_id,
                match.sheet_name,
                match.sheet_index,
                filters=intent.filters,
                key_columns=matched,
                include_empty_rows=options.include_empty_rows,
                max_rows=self.settings.retriever_row_cap,
            )
        except SourceUnavailableError as exc:
            logger.warning("SHEET_SOURCE_FAILED file_id=%s sheet=%s message=%s", match.file_id, match.sheet_name, str(exc)[:200])
            return False, failure_entry(match, f"Could not load sheet: {exc}")
        except Exception as exc:
            logger.exception("SHEET_PROCESSING_ERROR file_id=%s sheet=%s", match.file_id, match.sheet_name)
            return False, failure_entry(match, f"Sheet processing failed: {type(exc).__name__}: {exc}")

        schema = next((s for s in candidate.sheets if s.index == match.sheet_index), None)
        return True, {
            "fileId": match.file_id,
            "fileName": match.file_name,
            "sheetName": match.sheet_name,
            "sheetIndex": match.sheet_index,
            "relevanceScore": match.relevance_score,
            "matchedColumns": [
                {
                    "columnName": m.column_name,
                    "columnLetter": column_letter(m.column_index),
                    "columnIndex": m.column_index,
                    "matchConfidence": round(m.confidence, 4),
                    "matchReason": m.method,
                }
                for m in matched
            ],
            "data": {
                "headers": data["headers"],
                "rows": to_jsonable(data["rows"]),
                "totalRowsFound": data["totalRows"],
                "truncated": data["truncated"],
            },
            "metadata": {
                "totalRows": schema.total_rows if schema is not None else data["totalRows"],
                "searchDuration": round(time.monotonic() - sheet_started, 3),
                "cacheHit": cache_hit,
            },
        }
