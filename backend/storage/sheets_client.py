# storage/sheets_client.py
# ============================================================================
# APPRAISAL FULFILLMENT - SPREADSHEET ADAPTER
# ============================================================================
# Thin async wrapper over the Google Sheets v4 values API plus an in-memory
# stand-in with the same surface. Rows are addressed by sheet + 1-based row
# number, columns by letter.
# ============================================================================

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, NamedTuple, Optional

logger = logging.getLogger("Appraisily.Sheets")

SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


class SheetRef(NamedTuple):
    spreadsheet_id: str
    sheet_name: str

    def a1(self, cells: str) -> str:
        return f"'{self.sheet_name}'!{cells}"


def column_index(letter: str) -> int:
    """Zero-based index of a column letter ("A" -> 0, "Q" -> 16, "AA" -> 26)."""
    index = 0
    for char in letter.upper():
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


# =============================================================================
# INTERFACE
# =============================================================================

class ISpreadsheet(ABC):
    """Minimal spreadsheet surface used by the ledger and error reporter."""

    @abstractmethod
    async def read_column(self, sheet: SheetRef, column: str) -> list[str]:
        """Return every value in a column, row 1 first. Blank cells are ''."""
        pass

    @abstractmethod
    async def append_row(self, sheet: SheetRef, values: list[Any]) -> None:
        pass

    @abstractmethod
    async def update_cells(self, sheet: SheetRef, row: int, values: dict[str, Any]) -> None:
        """Overwrite individual cells of one row, keyed by column letter."""
        pass


# =============================================================================
# GOOGLE SHEETS
# =============================================================================

class GoogleSheetsClient(ISpreadsheet):
    """
    Google Sheets backed spreadsheet.

    The discovery client is synchronous, so every call runs in the default
    executor to keep the event loop free.
    """

    def __init__(self, credentials_path: str, service: Any = None):
        self.credentials_path = credentials_path
        self._service = service

    def _get_service(self):
        if self._service is None:
            if not os.path.exists(self.credentials_path):
                raise FileNotFoundError(
                    f"Google credentials not found at {self.credentials_path}"
                )

            from google.oauth2 import service_account
            from googleapiclient.discovery import build

            credentials = service_account.Credentials.from_service_account_file(
                self.credentials_path, scopes=SHEETS_SCOPES
            )
            self._service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
            logger.info("Google Sheets client initialized")
        return self._service

    async def _run(self, fn):
        return await asyncio.get_running_loop().run_in_executor(None, fn)

    async def read_column(self, sheet: SheetRef, column: str) -> list[str]:
        def read():
            return self._get_service().spreadsheets().values().get(
                spreadsheetId=sheet.spreadsheet_id,
                range=sheet.a1(f"{column}:{column}"),
            ).execute()

        result = await self._run(read)
        return [row[0] if row else "" for row in result.get("values", [])]

    async def append_row(self, sheet: SheetRef, values: list[Any]) -> None:
        def append():
            return self._get_service().spreadsheets().values().append(
                spreadsheetId=sheet.spreadsheet_id,
                range=sheet.a1("A:A"),
                valueInputOption="USER_ENTERED",
                insertDataOption="INSERT_ROWS",
                body={"values": [values]},
            ).execute()

        await self._run(append)

    async def update_cells(self, sheet: SheetRef, row: int, values: dict[str, Any]) -> None:
        data = [
            {"range": sheet.a1(f"{column}{row}"), "values": [[value]]}
            for column, value in values.items()
        ]

        def batch_update():
            return self._get_service().spreadsheets().values().batchUpdate(
                spreadsheetId=sheet.spreadsheet_id,
                body={"valueInputOption": "USER_ENTERED", "data": data},
            ).execute()

        await self._run(batch_update)


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemorySpreadsheet(ISpreadsheet):
    """Dict-of-rows spreadsheet for tests and local runs."""

    def __init__(self):
        self.sheets: dict[SheetRef, list[list[Any]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def rows(self, sheet: SheetRef) -> list[list[Any]]:
        return self.sheets[sheet]

    async def read_column(self, sheet: SheetRef, column: str) -> list[str]:
        index = column_index(column)
        async with self._lock:
            return [
                str(row[index]) if index < len(row) and row[index] is not None else ""
                for row in self.sheets[sheet]
            ]

    async def append_row(self, sheet: SheetRef, values: list[Any]) -> None:
        async with self._lock:
            self.sheets[sheet].append(list(values))

    async def update_cells(self, sheet: SheetRef, row: int, values: dict[str, Any]) -> None:
        async with self._lock:
            rows = self.sheets[sheet]
            while len(rows) < row:
                rows.append([])
            target = rows[row - 1]
            for column, value in values.items():
                index = column_index(column)
                if len(target) <= index:
                    target.extend([""] * (index + 1 - len(target)))
                target[index] = value


def find_row(values: list[str], key: str) -> Optional[int]:
    """1-based row number of the first cell equal to key."""
    for position, value in enumerate(values, start=1):
        if value == key:
            return position
    return None
