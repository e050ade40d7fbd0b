"""
Google Calendar API client.
Low-level wrapper over Calendar v3: event list/insert/patch, push channels,
secondary calendars and ACLs. Returns raw JSON dicts; mapping to the
agency's events lives in the sync services.
"""

from typing import Any
from urllib.parse import quote

import httpx

from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.services.infrastructure.provider_http import (
    ProviderApiError,
    ProviderHttpClient,
)

logger = get_logger(__name__)

CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"

# Page size used when walking a list only to obtain its nextSyncToken
SYNC_TOKEN_PAGE_SIZE = 250


class GoogleCalendarError(ProviderApiError):
    """Custom exception for Google Calendar API errors."""

    @property
    def stale_sync_token(self) -> bool:
        return self.status_code == 410


def _calendar_url(calendar_id: str, *parts: str) -> str:
    path = "/".join(quote(part, safe="") for part in (calendar_id, *parts))
    return f"{CALENDAR_API_BASE_URL}/calendars/{path}"


class GoogleCalendarService(ProviderHttpClient):
    """
    Service for Google Calendar API operations.

    Idempotent calls (list, patch) are retried on 429/5xx; inserts and
    watch registrations are sent once.
    """

    service_name = "Calendar"
    error_class = GoogleCalendarError

    def _map_calendar_error(self, status_code: int | None) -> str | None:
        error_mappings = {
            401: "Calendar authorization expired",
            403: "Calendar access denied",
            404: "Calendar or event not found",
            410: "Calendar sync token expired",
        }
        return error_mappings.get(status_code)

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        try:
            return super()._handle_api_response(response, operation)
        except GoogleCalendarError as e:
            hint = self._map_calendar_error(e.status_code)
            if hint and hint not in str(e):
                e.args = (f"{hint}: {e}",)
            raise

    async def list_events_page(
        self,
        access_token: str,
        calendar_id: str = CALENDAR_PRIMARY,
        sync_token: str | None = None,
        page_token: str | None = None,
        max_results: int | None = None,
    ) -> dict[str, Any]:
        """
        Fetch one page of events (deleted included, recurring expanded).

        Raises:
            GoogleCalendarError: status_code 410 when sync_token is no longer valid
        """
        params: dict[str, Any] = {"singleEvents": "true", "showDeleted": "true"}
        if sync_token:
            params["syncToken"] = sync_token
        if page_token:
            params["pageToken"] = page_token
        if max_results:
            params["maxResults"] = max_results

        response = await self._request_with_retry(
            "GET",
            _calendar_url(calendar_id, "events"),
            headers=self._bearer_headers(access_token),
            params=params,
        )
        return self._handle_api_response(response, "list_events")

    async def fetch_sync_token(self, access_token: str, calendar_id: str = CALENDAR_PRIMARY) -> str | None:
        """
        Obtain a fresh incremental-sync cursor for the calendar.

        Google only returns nextSyncToken on the last page, so pages are
        followed until it appears.
        """
        page_token = None
        pages = 0
        while True:
            data = await self.list_events_page(
                access_token,
                calendar_id,
                page_token=page_token,
                max_results=SYNC_TOKEN_PAGE_SIZE,
            )
            pages += 1
            if data.get("nextSyncToken"):
                logger.debug("Fetched calendar sync token", calendar_id=calendar_id, pages=pages)
                return data["nextSyncToken"]
            page_token = data.get("nextPageToken")
            if not page_token:
                logger.warning("Calendar list returned no sync token", calendar_id=calendar_id)
                return None

    async def insert_event(
        self,
        access_token: str,
        calendar_id: str,
        body: dict[str, Any],
        send_updates: str = "none",
    ) -> dict[str, Any]:
        response = await self._request_with_retry(
            "POST",
            _calendar_url(calendar_id, "events"),
            headers=self._bearer_headers(access_token),
            params={"sendUpdates": send_updates},
            json=body,
        )
        data = self._handle_api_response(response, "insert_event")
        logger.info("Calendar event created", calendar_id=calendar_id, external_event_id=data.get("id"))
        return data

    async def patch_event(
        self,
        access_token: str,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        send_updates: str = "none",
    ) -> dict[str, Any]:
        response = await self._request_with_retry(
            "PATCH",
            _calendar_url(calendar_id, "events", event_id),
            headers=self._bearer_headers(access_token),
            params={"sendUpdates": send_updates},
            json=body,
        )
        data = self._handle_api_response(response, "patch_event")
        logger.info("Calendar event updated", calendar_id=calendar_id, external_event_id=event_id)
        return data

    async def watch_events(
        self,
        access_token: str,
        calendar_id: str,
        *,
        channel_id: str,
        channel_token: str,
        address: str,
        ttl_seconds: int,
    ) -> dict[str, Any]:
        """Register a web_hook push channel on the calendar's events collection."""
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "token": channel_token,
            "params": {"ttl": str(ttl_seconds)},
        }
        response = await self._request_with_retry(
            "POST",
            _calendar_url(calendar_id, "events", "watch"),
            headers=self._bearer_headers(access_token),
            json=body,
        )
        data = self._handle_api_response(response, "watch_events")
        logger.info(
            "Calendar watch registered",
            calendar_id=calendar_id,
            channel_id=channel_id,
            resource_id=data.get("resourceId"),
            expiration=data.get("expiration"),
        )
        return data

    async def stop_channel(self, access_token: str, channel_id: str, resource_id: str | None) -> None:
        body: dict[str, Any] = {"id": channel_id}
        if resource_id:
            body["resourceId"] = resource_id
        response = await self._request_with_retry(
            "POST",
            f"{CALENDAR_API_BASE_URL}/channels/stop",
            headers=self._bearer_headers(access_token),
            json=body,
        )
        self._handle_api_response(response, "stop_channel")
        logger.info("Calendar watch stopped", channel_id=channel_id)

    async def create_calendar(self, access_token: str, summary: str, description: str = "") -> dict[str, Any]:
        response = await self._request_with_retry(
            "POST",
            f"{CALENDAR_API_BASE_URL}/calendars",
            headers=self._bearer_headers(access_token),
            json={"summary": summary, "description": description},
        )
        return self._handle_api_response(response, "create_calendar")

    async def insert_acl(
        self, access_token: str, calendar_id: str, email: str, role: str = "writer"
    ) -> dict[str, Any]:
        response = await self._request_with_retry(
            "POST",
            _calendar_url(calendar_id, "acl"),
            headers=self._bearer_headers(access_token),
            json={"role": role, "scope": {"type": "user", "value": email}},
        )
        return self._handle_api_response(response, "insert_acl")
