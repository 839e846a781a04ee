from sheetquery.graph.search import SearchCancelled, SearchOptions, SearchRequestError, SpreadsheetSearchEngine

__all__ = [
    "SpreadsheetSearchEngine",
    "SearchOptions",
    "SearchRequestError",
    "SearchCancelled",
]
