import json
import re
from unittest.mock import AsyncMock

import httpx
import pytest

from agency_sync.services.calendar.google_client import GoogleCalendarError, GoogleCalendarService
from agency_sync.services.google_oauth_service import GOOGLE_TOKEN_URL, GoogleOAuthError, GoogleOAuthService
from agency_sync.services.infrastructure import provider_http
from agency_sync.services.invoicing.greeninvoice_client import GreenInvoiceClient, GreenInvoiceError
from agency_sync.services.sheets.google_sheets_client import GoogleSheetsService

EVENTS_URL = re.compile(r"https://www\.googleapis\.com/calendar/v3/calendars/primary/events(\?.*)?$")


@pytest.mark.asyncio
async def test_list_events_page_sends_sync_token(httpx_mock):
    httpx_mock.add_response(url=EVENTS_URL, json={"items": [{"id": "e1"}], "nextSyncToken": "next"})
    service = GoogleCalendarService(max_retries=1)

    data = await service.list_events_page("tok", "primary", sync_token="cursor")

    request = httpx_mock.get_request()
    assert request.url.params["syncToken"] == "cursor"
    assert request.url.params["showDeleted"] == "true"
    assert request.headers["Authorization"] == "Bearer tok"
    assert data["nextSyncToken"] == "next"
    await service.close()


@pytest.mark.asyncio
async def test_stale_sync_token_is_flagged(httpx_mock):
    httpx_mock.add_response(
        url=EVENTS_URL,
        status_code=410,
        json={"error": {"code": 410, "message": "Sync token is no longer valid"}},
    )
    service = GoogleCalendarService(max_retries=1)

    with pytest.raises(GoogleCalendarError) as exc_info:
        await service.list_events_page("tok", "primary", sync_token="old")

    assert exc_info.value.stale_sync_token is True
    assert "Calendar sync token expired" in str(exc_info.value)
    await service.close()


@pytest.mark.asyncio
async def test_fetch_sync_token_follows_pages(httpx_mock):
    httpx_mock.add_response(url=EVENTS_URL, json={"items": [], "nextPageToken": "p2"})
    httpx_mock.add_response(url=EVENTS_URL, json={"items": [], "nextSyncToken": "cursor-final"})
    service = GoogleCalendarService(max_retries=1)

    token = await service.fetch_sync_token("tok", "primary")

    assert token == "cursor-final"
    second = httpx_mock.get_requests()[1]
    assert second.url.params["pageToken"] == "p2"
    assert second.url.params["maxResults"] == "250"
    await service.close()


@pytest.mark.asyncio
async def test_insert_is_never_retried(httpx_mock):
    httpx_mock.add_response(url=EVENTS_URL, method="POST", status_code=503, json={"error": {"code": 503}})
    service = GoogleCalendarService()

    with pytest.raises(GoogleCalendarError) as exc_info:
        await service.insert_event("tok", "primary", {"summary": "x"}, "all")

    assert exc_info.value.status_code == 503
    assert len(httpx_mock.get_requests()) == 1
    assert httpx_mock.get_request().url.params["sendUpdates"] == "all"
    await service.close()


@pytest.mark.asyncio
async def test_patch_is_retried_on_server_error(httpx_mock, monkeypatch):
    monkeypatch.setattr(provider_http.asyncio, "sleep", AsyncMock())
    url = re.compile(r".*/calendars/primary/events/evt-1(\?.*)?$")
    httpx_mock.add_response(url=url, method="PATCH", status_code=502)
    httpx_mock.add_response(url=url, method="PATCH", json={"id": "evt-1"})
    service = GoogleCalendarService(max_retries=3)

    data = await service.patch_event("tok", "primary", "evt-1", {"summary": "y"})

    assert data["id"] == "evt-1"
    assert len(httpx_mock.get_requests()) == 2
    await service.close()


@pytest.mark.asyncio
async def test_watch_registers_web_hook_channel(httpx_mock):
    httpx_mock.add_response(
        url="https://www.googleapis.com/calendar/v3/calendars/primary/events/watch",
        method="POST",
        json={"id": "chan-1", "resourceId": "res-1", "expiration": "1767830400000"},
    )
    service = GoogleCalendarService(max_retries=1)

    data = await service.watch_events(
        "tok", "primary", channel_id="chan-1", channel_token="secret", address="https://hook", ttl_seconds=3600
    )

    body = json.loads(httpx_mock.get_request().content)
    assert body == {
        "id": "chan-1",
        "type": "web_hook",
        "address": "https://hook",
        "token": "secret",
        "params": {"ttl": "3600"},
    }
    assert data["resourceId"] == "res-1"
    await service.close()


@pytest.mark.asyncio
async def test_sheets_clear_then_update(httpx_mock):
    httpx_mock.add_response(
        url="https://sheets.googleapis.com/v4/spreadsheets/sheet-1/values/Events:clear",
        method="POST",
        json={},
    )
    httpx_mock.add_response(
        url=re.compile(r"https://sheets\.googleapis\.com/v4/spreadsheets/sheet-1/values/Events!A1\?.*"),
        method="PUT",
        json={"updatedRows": 2},
    )
    service = GoogleSheetsService(max_retries=1)

    await service.clear_range("tok", "sheet-1", "Events")
    result = await service.update_values("tok", "sheet-1", "Events!A1", [["id"], ["event-1"]])

    update = httpx_mock.get_requests()[1]
    assert update.url.params["valueInputOption"] == "RAW"
    assert json.loads(update.content)["values"] == [["id"], ["event-1"]]
    assert result["updatedRows"] == 2
    await service.close()


@pytest.mark.asyncio
async def test_greeninvoice_token_and_error_shape(httpx_mock):
    httpx_mock.add_response(
        url="https://api.greeninvoice.co.il/api/v1/account/token", method="POST", json={"token": "gi"}
    )
    httpx_mock.add_response(
        url="https://api.greeninvoice.co.il/api/v1/documents",
        method="POST",
        status_code=400,
        json={"errorCode": 1003, "errorMessage": "Missing client name"},
    )
    client = GreenInvoiceClient(max_retries=1)

    token = await client.get_token("id", "secret")
    with pytest.raises(GreenInvoiceError) as exc_info:
        await client.create_document(token, {"type": 320})

    assert token == "gi"
    assert exc_info.value.error_code == "1003"
    assert "Missing client name" in str(exc_info.value)
    assert httpx_mock.get_requests()[1].headers["Authorization"] == "Bearer gi"
    await client.close()


@pytest.mark.asyncio
async def test_greeninvoice_token_missing(httpx_mock):
    httpx_mock.add_response(url=re.compile(r".*/account/token$"), method="POST", json={})
    client = GreenInvoiceClient(max_retries=1)

    with pytest.raises(GreenInvoiceError):
        await client.get_token("id", "secret", base_url="https://sandbox.example/api/v1/")
    assert httpx_mock.get_request().url.host == "sandbox.example"
    await client.close()


@pytest.mark.asyncio
async def test_greeninvoice_get_document(httpx_mock):
    httpx_mock.add_response(
        url="https://api.greeninvoice.co.il/api/v1/documents/doc-9",
        method="GET",
        json={"id": "doc-9", "status": 2},
    )
    client = GreenInvoiceClient(max_retries=1)

    document = await client.get_document("gi", "doc-9")

    assert document["status"] == 2
    assert httpx_mock.get_request().headers["Authorization"] == "Bearer gi"
    await client.close()


@pytest.mark.asyncio
async def test_oauth_refresh(httpx_mock):
    httpx_mock.add_response(
        url=GOOGLE_TOKEN_URL, method="POST", json={"access_token": "new", "expires_in": 3599}
    )
    service = GoogleOAuthService(client_id="cid", client_secret="csecret", max_retries=1)

    token = await service.refresh_access_token("refresh")

    assert token.access_token == "new"
    assert token.expires_in == 3599
    sent = httpx_mock.get_request().content.decode()
    assert "grant_type=refresh_token" in sent
    assert "refresh_token=refresh" in sent
    await service.close()


@pytest.mark.asyncio
async def test_oauth_revoked_grant(httpx_mock):
    httpx_mock.add_response(
        url=GOOGLE_TOKEN_URL,
        method="POST",
        status_code=400,
        json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
    )
    service = GoogleOAuthService(client_id="cid", client_secret="csecret", max_retries=1)

    with pytest.raises(GoogleOAuthError) as exc_info:
        await service.refresh_access_token("refresh")

    assert exc_info.value.grant_revoked is True
    await service.close()


@pytest.mark.asyncio
async def test_oauth_network_error_propagates(httpx_mock):
    httpx_mock.add_exception(httpx.ConnectError("refused"), url=GOOGLE_TOKEN_URL)
    service = GoogleOAuthService(client_id="cid", client_secret="csecret", max_retries=1)

    with pytest.raises(httpx.RequestError):
        await service.refresh_access_token("refresh")
    await service.close()


@pytest.mark.asyncio
async def test_oauth_refresh_is_retried_on_server_error(httpx_mock, monkeypatch):
    monkeypatch.setattr(provider_http.asyncio, "sleep", AsyncMock())
    httpx_mock.add_response(url=GOOGLE_TOKEN_URL, method="POST", status_code=503)
    httpx_mock.add_response(url=GOOGLE_TOKEN_URL, method="POST", json={"access_token": "new"})
    service = GoogleOAuthService(client_id="cid", client_secret="csecret", max_retries=2)

    token = await service.refresh_access_token("refresh")

    assert token.access_token == "new"
    assert token.expires_in == 3600
    assert len(httpx_mock.get_requests()) == 2
    await service.close()


@pytest.mark.asyncio
async def test_oauth_unconfigured_client_makes_no_request():
    service = GoogleOAuthService(client_id="", client_secret="", max_retries=1)

    with pytest.raises(GoogleOAuthError) as exc_info:
        await service.refresh_access_token("refresh")

    assert exc_info.value.error_code == "not_configured"
    assert exc_info.value.grant_revoked is False
    await service.close()
