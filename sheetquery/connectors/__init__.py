from sheetquery.connectors.base import FileSource, SheetNotFoundError, SourceAuthError, SourceUnavailableError
from sheetquery.connectors.data_retriever import SheetDataCache, SpreadsheetDataRetriever
from sheetquery.connectors.excel_source import ExcelFileSource, InMemoryFileSource, describe_workbook

__all__ = [
    "FileSource",
    "SourceUnavailableError",
    "SourceAuthError",
    "SheetNotFoundError",
    "SheetDataCache",
    "SpreadsheetDataRetriever",
    "ExcelFileSource",
    "InMemoryFileSource",
    "describe_workbook",
]
