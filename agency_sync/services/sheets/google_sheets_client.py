"""
Google Sheets API client (v4): create spreadsheets, clear and write ranges.
"""

from typing import Any
from urllib.parse import quote

from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.services.infrastructure.provider_http import (
    ProviderApiError,
    ProviderHttpClient,
)

logger = get_logger(__name__)

SHEETS_API_BASE_URL = "https://sheets.googleapis.com/v4/spreadsheets"


class GoogleSheetsError(ProviderApiError):
    """Custom exception for Google Sheets API errors."""


def spreadsheet_url(spreadsheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}/edit"


class GoogleSheetsService(ProviderHttpClient):
    service_name = "Sheets"
    error_class = GoogleSheetsError

    def _values_url(self, spreadsheet_id: str, range_name: str, suffix: str = "") -> str:
        return f"{SHEETS_API_BASE_URL}/{quote(spreadsheet_id, safe='')}/values/{quote(range_name, safe='!:')}{suffix}"

    async def create_spreadsheet(self, access_token: str, title: str, tabs: list[str]) -> dict[str, Any]:
        body = {
            "properties": {"title": title},
            "sheets": [{"properties": {"title": tab}} for tab in tabs],
        }
        response = await self._request_with_retry(
            "POST", SHEETS_API_BASE_URL, headers=self._bearer_headers(access_token), json=body
        )
        data = self._handle_api_response(response, "create_spreadsheet")
        if not data.get("spreadsheetId"):
            raise GoogleSheetsError("Spreadsheet created without an id", status_code=response.status_code)
        logger.info("Spreadsheet created", spreadsheet_id=data["spreadsheetId"], tabs=tabs)
        return data

    async def clear_range(self, access_token: str, spreadsheet_id: str, range_name: str) -> None:
        # values:clear is a POST, so it is sent once
        response = await self._request_with_retry(
            "POST",
            self._values_url(spreadsheet_id, range_name, ":clear"),
            headers=self._bearer_headers(access_token),
            json={},
        )
        self._handle_api_response(response, "clear_range")

    async def update_values(
        self, access_token: str, spreadsheet_id: str, range_name: str, values: list[list[Any]]
    ) -> dict[str, Any]:
        response = await self._request_with_retry(
            "PUT",
            self._values_url(spreadsheet_id, range_name),
            headers=self._bearer_headers(access_token),
            params={"valueInputOption": "RAW"},
            json={"range": range_name, "majorDimension": "ROWS", "values": values},
        )
        return self._handle_api_response(response, "update_values")
