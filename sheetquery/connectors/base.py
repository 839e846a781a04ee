"""Abstract base class for spreadsheet file sources."""

from abc import ABC, abstractmethod
from typing import List, Optional

from sheetquery.utils.search_types import SheetGrid


class SourceUnavailableError(Exception):
    """Raised when a file cannot be loaded from its source."""


class SourceAuthError(SourceUnavailableError):
    """Raised when the access token is missing, invalid or expired."""


class SheetNotFoundError(SourceUnavailableError):
    """Raised when the requested file or sheet does not exist."""


class FileSource(ABC):
    """Interface that every spreadsheet source must implement."""

    @abstractmethod
    def load(
        self,
        access_token: Optional[str],
        file_id: str,
        sheet_name: Optional[str] = None,
        sheet_index: Optional[int] = None,
    ) -> SheetGrid:
        """Load one sheet of *file_id* as a SheetGrid.

        The sheet is picked by *sheet_name* first, then *sheet_index*, else the
        first sheet. Raises SourceAuthError or SheetNotFoundError.
        """

    def load_all(self, access_token: Optional[str], file_id: str) -> List[SheetGrid]:
        """Load every sheet of *file_id*, in workbook order."""
        grids: List[SheetGrid] = []
        index = 0
        while True:
            try:
                grids.append(self.load(access_token, file_id, sheet_index=index))
            except SheetNotFoundError:
                if index == 0:
                    raise
                return grids
            index += 1

    @staticmethod
    def pick_sheet(names: List[str], file_id: str, sheet_name: Optional[str], sheet_index: Optional[int]) -> int:
        """Position of the requested sheet among *names*."""
        if not names:
            raise SheetNotFoundError(f"File {file_id!r} has no sheets")
        if sheet_name is not None:
            if sheet_name in names:
                return names.index(sheet_name)
            lowered = [n.strip().lower() for n in names]
            if sheet_name.strip().lower() in lowered:
                return lowered.index(sheet_name.strip().lower())
            raise SheetNotFoundError(f"Sheet {sheet_name!r} not found in file {file_id!r}")
        if sheet_index is not None:
            if 0 <= sheet_index < len(names):
                return sheet_index
            raise SheetNotFoundError(f"Sheet index {sheet_index} out of range for file {file_id!r}")
        return 0
