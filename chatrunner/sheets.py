"""Google Sheets capability used by spreadsheet-writing actions."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import httpx
from google.auth.transport.requests import Request
from google.oauth2 import service_account

LOGGER = logging.getLogger(__name__)

_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
_SHEETS_BASE_URL = "https://sheets.googleapis.com/v4/spreadsheets"


class SheetsManager(ABC):
    """Cell-level spreadsheet access."""

    @abstractmethod
    async def write(self, sheet: str, column: str, row: int, spreadsheet_id: str, value: Any) -> None:
        """Write one cell."""

    @abstractmethod
    async def get_last_row(self, sheet: str, column: str, spreadsheet_id: str) -> int:
        """Return the number of the last non-empty row in ``column`` (1 when empty)."""


class GoogleSheetsManager(SheetsManager):
    """Sheets REST client authenticated with a service account key file.

    The spreadsheet must be shared with the service account's email.
    """

    def __init__(self, credentials_path: Path, timeout_seconds: float = 30.0) -> None:
        self._credentials = service_account.Credentials.from_service_account_file(
            str(credentials_path), scopes=_SCOPES
        )
        self._timeout = httpx.Timeout(timeout_seconds)

    async def _access_token(self) -> str:
        if not self._credentials.valid:
            await asyncio.to_thread(self._credentials.refresh, Request())
        return str(self._credentials.token)

    async def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self._access_token()}"}

    async def write(self, sheet: str, column: str, row: int, spreadsheet_id: str, value: Any) -> None:
        cell = f"{sheet}!{column}{row}"
        async with httpx.AsyncClient(base_url=_SHEETS_BASE_URL, timeout=self._timeout) as client:
            response = await client.put(
                f"/{spreadsheet_id}/values/{cell}",
                params={"valueInputOption": "RAW"},
                headers=await self._headers(),
                json={"range": cell, "values": [[value]]},
            )
            response.raise_for_status()
        LOGGER.info("Wrote %s in spreadsheet %s", cell, spreadsheet_id)

    async def read_range(self, sheet: str, cell_range: str, spreadsheet_id: str) -> list[list[Any]]:
        async with httpx.AsyncClient(base_url=_SHEETS_BASE_URL, timeout=self._timeout) as client:
            response = await client.get(
                f"/{spreadsheet_id}/values/{sheet}!{cell_range}",
                headers=await self._headers(),
            )
            response.raise_for_status()
            return response.json().get("values", [])

    async def get_last_row(self, sheet: str, column: str, spreadsheet_id: str) -> int:
        values = await self.read_range(sheet, f"{column}:{column}", spreadsheet_id)
        return len(values) or 1
