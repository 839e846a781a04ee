"""
Grid loading with a per-file TTL cache, plus the filtered row retrieval used by
the simple (no procedure) search path.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sheetquery.connectors.base import FileSource
from sheetquery.utils.column_mapping import best_fuzzy_header
from sheetquery.utils.extraction_dsl import normalize_string
from sheetquery.utils.number_parsing import parse_number
from sheetquery.utils.search_types import ColumnMatchResult, SearchFilter, SheetGrid
from sheetquery.utils.settings import EngineSettings
from sheetquery.utils.type_inference import is_blank

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    grids: List[SheetGrid]
    cached_at: float


class SheetDataCache:
    """
    Grids of whole files keyed by file id. One TTL for every entry; on each
    insert expired entries are purged, then the oldest inserts are evicted
    while the cache holds more than ``max_entries`` files.
    """

    def __init__(self, ttl_s: float = 1800.0, max_entries: int = 50, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self.max_entries = max_entries
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.cached_at >= self.ttl_s

    def get(self, file_id: str) -> Optional[List[SheetGrid]]:
        with self._lock:
            entry = self._entries.get(file_id)
            if entry is None:
                return None
            if self._expired(entry, self.clock()):
                del self._entries[file_id]
                return None
            return entry.grids

    def put(self, file_id: str, grids: Sequence[SheetGrid]) -> None:
        with self._lock:
            now = self.clock()
            self._entries.pop(file_id, None)
            self._entries[file_id] = CacheEntry(grids=list(grids), cached_at=now)
            for key in [k for k, e in self._entries.items() if self._expired(e, now)]:
                del self._entries[key]
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("CACHE_EVICTED file_id=%s", evicted)

    def invalidate(self, file_id: Optional[str] = None) -> None:
        with self._lock:
            if file_id is None:
                self._entries.clear()
            else:
                self._entries.pop(file_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            now = self.clock()
            return {
                "size": len(self._entries),
                "maxEntries": self.max_entries,
                "ttlSeconds": self.ttl_s,
                "entries": [
                    {
                        "fileId": file_id,
                        "sheets": len(entry.grids),
                        "cachedAt": entry.cached_at,
                        "ageSeconds": round(now - entry.cached_at, 3),
                    }
                    for file_id, entry in self._entries.items()
                ],
            }


def _filter_fields(item: Any) -> Tuple[str, str, Any]:
    if isinstance(item, SearchFilter):
        return item.concept, item.operator, item.value
    return str(item.get("column") or item.get("concept") or ""), str(item.get("operator") or ""), item.get("value")


def evaluate_filter(value: Any, operator: str, expected: Any) -> bool:
    """Row predicate used by the retriever; unknown operators pass."""
    if is_blank(value):
        return False
    if operator == "equals":
        return normalize_string(value) == normalize_string(expected)
    if operator == "contains":
        return normalize_string(expected) in normalize_string(value)
    if operator in ("greater", "less"):
        number, bound = parse_number(value), parse_number(expected)
        if number is None or bound is None:
            return False
        return number > bound if operator == "greater" else number < bound
    if operator == "between":
        if not isinstance(expected, (list, tuple)) or len(expected) != 2:
            return False
        number = parse_number(value)
        low, high = parse_number(expected[0]), parse_number(expected[1])
        if number is None or low is None or high is None:
            return False
        return low <= number <= high
    return True


class SpreadsheetDataRetriever:
    def __init__(
        self,
        file_source: FileSource,
        cache: Optional[SheetDataCache] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.settings = settings or EngineSettings()
        self.file_source = file_source
        if cache is None:
            cache = SheetDataCache(ttl_s=self.settings.cache_ttl_s, max_entries=self.settings.cache_max_entries)
        self.cache = cache

    def load_grid(
        self,
        access_token: Optional[str],
        file_id: str,
        sheet_name: Optional[str] = None,
        sheet_index: Optional[int] = None,
        *,
        force_refresh: bool = False,
    ) -> Tuple[SheetGrid, bool]:
        """
        Returns (grid, cache_hit). A miss loads every sheet of the file from
        the source and caches them together. Source errors propagate.
        """
        grids = None if force_refresh else self.cache.get(file_id)
        cache_hit = grids is not None
        if grids is None:
            started = time.monotonic()
            grids = self.file_source.load_all(access_token, file_id)
            self.cache.put(file_id, grids)
            logger.info(
                "SHEET_SOURCE_LOADED file_id=%s sheets=%s elapsed=%.3fs force_refresh=%s",
                file_id,
                len(grids),
                time.monotonic() - started,
                force_refresh,
            )
        names = [g.sheet_name for g in grids]
        position = FileSource.pick_sheet(names, file_id, sheet_name, sheet_index)
        return grids[position], cache_hit

    def retrieve_sheet_data(
        self,
        access_token: Optional[str],
        file_id: str,
        sheet_name: Optional[str] = None,
        sheet_index: Optional[int] = None,
        *,
        filters: Optional[Iterable[Any]] = None,
        key_columns: Optional[Iterable[Any]] = None,
        include_empty_rows: bool = False,
        max_rows: Optional[int] = None,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """
        Headers are the first non-empty row; the rows below it are filtered:
        empty rows dropped (unless requested), every filter applied to its
        fuzzy-resolved column (unresolved filters are ignored), and, with key
        columns, at least one of them non-empty. The row cap applies last.
        """
        grid, cache_hit = self.load_grid(access_token, file_id, sheet_name, sheet_index, force_refresh=force_refresh)
        headers, rows = split_header_rows(grid)

        if not include_empty_rows:
            rows = [row for row in rows if any(not is_blank(v) for v in row)]

        for item in filters or []:
            column, operator, expected = _filter_fields(item)
            idx = best_fuzzy_header(headers, [column])
            if idx is None:
                logger.debug("FILTER_COLUMN_UNRESOLVED file_id=%s column=%s", file_id, column)
                continue
            rows = [row for row in rows if evaluate_filter(row[idx], operator, expected)]

        key_indices = []
        for key in key_columns or []:
            idx = key.column_index if isinstance(key, ColumnMatchResult) else int(key)
            if 0 <= idx < len(headers):
                key_indices.append(idx)
        if key_indices:
            rows = [row for row in rows if any(not is_blank(row[idx]) for idx in key_indices)]

        cap = max_rows if max_rows is not None else self.settings.retriever_row_cap
        return {
            "sheetName": grid.sheet_name,
            "headers": headers,
            "rows": rows[:cap],
            "totalRows": len(rows),
            "truncated": len(rows) > cap,
            "cacheHit": cache_hit,
        }

    def clear_cache(self, file_id: Optional[str] = None) -> None:
        self.cache.invalidate(file_id)

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()


def split_header_rows(grid: SheetGrid) -> Tuple[List[str], List[List[Any]]]:
    """First non-empty row as headers ('Column N' for blanks); following rows padded to the grid width."""
    width = grid.width
    start = next((i for i, row in enumerate(grid.rows) if any(not is_blank(v) for v in row)), None)
    if start is None:
        return [f"Column {i + 1}" for i in range(width)], []
    header_row = list(grid.rows[start]) + [None] * (width - len(grid.rows[start]))
    headers = [str(h).strip() if not is_blank(h) else f"Column {i + 1}" for i, h in enumerate(header_row)]
    rows = [list(row) + [None] * (width - len(row)) for row in grid.rows[start + 1 :]]
    return headers, rows
