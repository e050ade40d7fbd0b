import uuid
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from agency_sync.models.domain.entity_domain import (
    ARTIST_WRITABLE_FIELDS,
    EVENT_WRITABLE_FIELDS,
    EXPENSE_WRITABLE_FIELDS,
    ArtistRecord,
    ClientRecord,
    EventRecord,
    ExpenseRecord,
)
from agency_sync.models.domain.sync_domain import (
    ApiSecret,
    ChannelScope,
    ConnectionStatus,
    Credential,
    CredentialProvider,
    IntegrationConnection,
    JobProvider,
    JobStatus,
    SyncJob,
    WebhookChannel,
    can_transition,
)
from agency_sync.services.calendar.google_client import GoogleCalendarError
from agency_sync.services.google_oauth_service import TokenResponse
from agency_sync.services.invoicing.greeninvoice_client import GreenInvoiceError
from agency_sync.services.sync.factory import SyncDependencies
from agency_sync.services.sync.token_manager import OAuthTokenManager

AGENCY_ID = "agency-1"


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class FakeJobStore:
    def __init__(self):
        self.jobs: dict[str, SyncJob] = {}
        self.history: dict[str, list[JobStatus]] = {}
        self._clock = datetime(2026, 1, 1, tzinfo=UTC)

    def add(self, provider: JobProvider, kind: str, payload: dict | None = None, agency_id: str = AGENCY_ID) -> SyncJob:
        self._clock += timedelta(seconds=1)
        job = SyncJob(
            id=_new_id(),
            agency_id=agency_id,
            provider=provider,
            kind=kind,
            payload=payload or {},
            created_at=self._clock,
        )
        self.jobs[job.id] = job
        self.history[job.id] = [JobStatus.PENDING]
        return job

    def _move(self, job_id: str, target: JobStatus) -> SyncJob:
        job = self.jobs[job_id]
        assert can_transition(job.status, target), f"{job.status} -> {target}"
        job.status = target
        self.history[job_id].append(target)
        return job

    async def fetch_pending(self, limit: int) -> list[SyncJob]:
        pending = [j for j in self.jobs.values() if j.status == JobStatus.PENDING]
        pending.sort(key=lambda j: j.created_at)
        return [j.model_copy() for j in pending[:limit]]

    async def claim(self, job_id: str) -> SyncJob | None:
        job = self.jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return None
        job = self._move(job_id, JobStatus.RUNNING)
        job.started_at = datetime.now(UTC)
        return job.model_copy()

    async def mark_succeeded(self, job_id: str, result: dict[str, Any]) -> bool:
        if self.jobs[job_id].status != JobStatus.RUNNING:
            return False
        job = self._move(job_id, JobStatus.SUCCEEDED)
        job.result = result
        job.last_error = None
        return True

    async def mark_failed(self, job_id: str, error: str) -> bool:
        if self.jobs[job_id].status != JobStatus.RUNNING:
            return False
        job = self._move(job_id, JobStatus.FAILED)
        job.last_error = error
        return True

    async def enqueue(self, agency_id: str, provider: JobProvider, kind: str, payload: dict | None = None) -> SyncJob:
        return self.add(provider, kind, payload, agency_id=agency_id)

    async def get(self, job_id: str) -> SyncJob | None:
        return self.jobs.get(job_id)


class FakeCredentialStore:
    def __init__(self):
        self.credentials: dict[tuple[str, str], Credential] = {}
        self.secrets: dict[tuple[str, str], ApiSecret] = {}
        self.writes = 0
        self.reads = 0

    def put(self, credential: Credential) -> None:
        self.credentials[(credential.agency_id, str(credential.provider))] = credential

    async def get_credential(self, agency_id: str, provider=CredentialProvider.GOOGLE) -> Credential | None:
        self.reads += 1
        credential = self.credentials.get((agency_id, str(provider)))
        return credential.model_copy() if credential else None

    async def update_refreshed_token(
        self,
        agency_id: str,
        provider,
        *,
        expected_expiry,
        access_token: str,
        expiry_timestamp,
        scope=None,
        token_type=None,
    ) -> bool:
        current = self.credentials[(agency_id, str(provider))]
        if current.expiry_timestamp != expected_expiry:
            return False
        self.writes += 1
        self.credentials[(agency_id, str(provider))] = current.model_copy(
            update={"access_token": access_token, "expiry_timestamp": expiry_timestamp}
        )
        return True

    async def get_api_secret(self, agency_id: str, provider=CredentialProvider.INVOICING) -> ApiSecret | None:
        return self.secrets.get((agency_id, str(provider)))


class FakeEntityStore:
    def __init__(self):
        self.events: dict[str, EventRecord] = {}
        self.clients: dict[str, ClientRecord] = {}
        self.artists: dict[str, ArtistRecord] = {}
        self.expenses: dict[str, ExpenseRecord] = {}
        self.event_updates: list[tuple[str, dict]] = []

    async def get_event(self, agency_id: str, event_id: str) -> EventRecord | None:
        event = self.events.get(event_id)
        return event.model_copy() if event and event.agency_id == agency_id else None

    async def get_client(self, agency_id: str, client_id: str) -> ClientRecord | None:
        return self.clients.get(client_id)

    async def get_artist(self, agency_id: str, artist_id: str) -> ArtistRecord | None:
        artist = self.artists.get(artist_id)
        return artist.model_copy() if artist else None

    async def list_events(self, agency_id: str) -> list[EventRecord]:
        events = [e for e in self.events.values() if e.agency_id == agency_id]
        return sorted(events, key=lambda e: e.event_date, reverse=True)

    async def list_clients(self, agency_id: str) -> list[ClientRecord]:
        return [c for c in self.clients.values() if c.agency_id == agency_id]

    async def list_artists(self, agency_id: str) -> list[ArtistRecord]:
        return [a for a in self.artists.values() if a.agency_id == agency_id]

    async def list_expenses(self, agency_id: str, statuses: tuple[str, ...] | None = None) -> list[ExpenseRecord]:
        expenses = [e for e in self.expenses.values() if e.agency_id == agency_id]
        if statuses:
            expenses = [e for e in expenses if e.invoice_status in statuses]
        return expenses

    async def update_event(self, agency_id: str, event_id: str, fields: dict[str, Any]) -> bool:
        assert set(fields) <= EVENT_WRITABLE_FIELDS, set(fields) - EVENT_WRITABLE_FIELDS
        self.event_updates.append((event_id, fields))
        event = self.events.get(event_id)
        if event is None or event.agency_id != agency_id:
            return False
        self.events[event_id] = event.model_copy(update=fields)
        return True

    async def update_expense(self, agency_id: str, expense_id: str, fields: dict[str, Any]) -> bool:
        assert set(fields) <= EXPENSE_WRITABLE_FIELDS
        self.expenses[expense_id] = self.expenses[expense_id].model_copy(update=fields)
        return True

    async def update_artist(self, agency_id: str, artist_id: str, fields: dict[str, Any]) -> bool:
        assert set(fields) <= ARTIST_WRITABLE_FIELDS
        self.artists[artist_id] = self.artists[artist_id].model_copy(update=fields)
        return True


class FakeChannelStore:
    def __init__(self):
        self.rows: dict[str, WebhookChannel] = {}

    def add(self, **fields) -> WebhookChannel:
        fields.setdefault("id", _new_id())
        fields.setdefault("agency_id", AGENCY_ID)
        channel = WebhookChannel(**fields)
        self.rows[channel.id] = channel
        return channel

    async def get(self, row_id: str) -> WebhookChannel | None:
        return self.rows.get(row_id)

    async def get_by_channel_id(self, channel_id: str) -> WebhookChannel | None:
        return next((c for c in self.rows.values() if c.channel_id == channel_id), None)

    async def find(self, agency_id, scope, calendar_id, target_id=None) -> WebhookChannel | None:
        for channel in self.rows.values():
            if (channel.agency_id, channel.scope, channel.calendar_id, channel.target_id) == (
                agency_id,
                scope,
                calendar_id,
                target_id,
            ):
                return channel
        return None

    async def find_company_channel(self, agency_id: str) -> WebhookChannel | None:
        return next(
            (c for c in self.rows.values() if c.agency_id == agency_id and c.scope == ChannelScope.COMPANY),
            None,
        )

    async def list_for_agency(self, agency_id: str) -> list[WebhookChannel]:
        return [c for c in self.rows.values() if c.agency_id == agency_id]

    async def list_agency_channel_ids(self, limit: int = 5000) -> dict[str, list[str]]:
        by_agency: dict[str, list[str]] = {}
        for channel in list(self.rows.values())[:limit]:
            by_agency.setdefault(channel.agency_id, []).append(channel.id)
        return by_agency

    async def insert(self, channel: WebhookChannel) -> WebhookChannel:
        return self.add(**channel.model_dump(exclude={"id"}))

    async def replace_subscription(self, row_id, *, channel_id, channel_token, resource_id, expiration, sync_token) -> bool:
        if row_id not in self.rows:
            return False
        self.rows[row_id] = self.rows[row_id].model_copy(
            update={
                "channel_id": channel_id,
                "channel_token": channel_token,
                "resource_id": resource_id,
                "expiration": expiration,
                "sync_token": sync_token,
            }
        )
        return True

    async def store_sync_token(self, row_id: str, sync_token: str, pulled_at: datetime) -> bool:
        self.rows[row_id] = self.rows[row_id].model_copy(
            update={"sync_token": sync_token, "last_pulled_at": pulled_at}
        )
        return True


class FakeConnectionStore:
    def __init__(self):
        self.connections: dict[tuple[str, str], IntegrationConnection] = {}

    async def get(self, agency_id: str, provider: str) -> IntegrationConnection | None:
        return self.connections.get((agency_id, provider))

    async def merge_config(self, agency_id, provider, values, status=ConnectionStatus.CONNECTED):
        current = self.connections.get((agency_id, provider))
        config = {**(current.config if current else {}), **values}
        connection = IntegrationConnection(
            agency_id=agency_id, provider=provider, status=status, config=config
        )
        self.connections[(agency_id, provider)] = connection
        return connection

    async def set_config_value_if_absent(self, agency_id, provider, key, value):
        current = self.connections.get((agency_id, provider))
        if current and key in current.config:
            return current.config[key]
        await self.merge_config(agency_id, provider, {key: value})
        return value


# ---------------------------------------------------------------------------
# Provider fakes
# ---------------------------------------------------------------------------


class FakeOAuthService:
    def __init__(self, expires_in: int = 3600):
        self.configured = True
        self.expires_in = expires_in
        self.calls = 0
        self.error: Exception | None = None
        self.before_return = None

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        self.calls += 1
        if self.before_return is not None:
            await self.before_return()
        if self.error is not None:
            raise self.error
        return TokenResponse.from_payload(
            {"access_token": f"refreshed-{self.calls}", "expires_in": self.expires_in, "scope": "calendar"}
        )

    async def close(self) -> None:
        pass


class FakeCalendar:
    """In-memory Calendar API keyed by calendar id."""

    def __init__(self):
        self.events: dict[str, dict[str, dict]] = {}
        self.pages: dict[str, list[dict]] = {}
        self.stale_tokens: set[str] = set()
        self.fail_watch_for: set[str] = set()
        self.watch_expiration_ms: int | None = None
        self.stopped: list[str] = []
        self.watches: list[dict] = []
        self.calls: list[tuple[str, str]] = []
        self.acls: list[tuple[str, str, str]] = []
        self.sync_token_counter = 0
        self.access_tokens: list[str] = []
        self.reject_tokens: set[str] = set()
        self.gone_calendars: set[str] = set()
        self.forbidden_calendars: set[str] = set()

    def _check(self, access_token: str) -> None:
        self.access_tokens.append(access_token)
        if access_token in self.reject_tokens:
            raise GoogleCalendarError("Calendar authorization expired", status_code=401)

    def _check_writable(self, calendar_id: str) -> None:
        if calendar_id in self.forbidden_calendars:
            raise GoogleCalendarError("Forbidden", status_code=403)

    async def list_events_page(self, access_token, calendar_id="primary", sync_token=None, page_token=None, max_results=None):
        self._check(access_token)
        self.calls.append(("list", calendar_id))
        if calendar_id in self.gone_calendars:
            raise GoogleCalendarError("Resource has been deleted", status_code=410)
        if sync_token and sync_token in self.stale_tokens:
            raise GoogleCalendarError("Sync token is no longer valid", status_code=410)
        pages = self.pages.get(calendar_id)
        if sync_token and pages:
            index = int(page_token or 0)
            page = dict(pages[index])
            if index + 1 < len(pages):
                page["nextPageToken"] = str(index + 1)
            return page
        self.sync_token_counter += 1
        return {"items": [], "nextSyncToken": f"fresh-{self.sync_token_counter}"}

    async def fetch_sync_token(self, access_token, calendar_id="primary"):
        data = await self.list_events_page(access_token, calendar_id, max_results=250)
        return data.get("nextSyncToken")

    async def insert_event(self, access_token, calendar_id, body, send_updates="none"):
        self._check(access_token)
        self.calls.append(("insert", calendar_id))
        self._check_writable(calendar_id)
        event_id = f"gcal-{len(self.events.get(calendar_id, {})) + 1}"
        stored = {**body, "id": event_id, "htmlLink": f"https://calendar/{calendar_id}/{event_id}", "sendUpdates": send_updates}
        self.events.setdefault(calendar_id, {})[event_id] = stored
        return stored

    async def patch_event(self, access_token, calendar_id, event_id, body, send_updates="none"):
        self._check(access_token)
        self.calls.append(("patch", calendar_id))
        self._check_writable(calendar_id)
        existing = self.events.get(calendar_id, {}).get(event_id)
        if existing is None:
            raise GoogleCalendarError("Calendar or event not found", status_code=404)
        existing.update(body)
        existing["sendUpdates"] = send_updates
        return existing

    async def watch_events(self, access_token, calendar_id, *, channel_id, channel_token, address, ttl_seconds):
        self._check(access_token)
        if calendar_id in self.fail_watch_for:
            raise GoogleCalendarError("Calendar access denied", status_code=403)
        self.watches.append({"calendar_id": calendar_id, "channel_id": channel_id, "token": channel_token, "address": address, "ttl": ttl_seconds})
        response = {"id": channel_id, "resourceId": f"res-{channel_id[:8]}"}
        if self.watch_expiration_ms is not None:
            response["expiration"] = str(self.watch_expiration_ms)
        return response

    async def stop_channel(self, access_token, channel_id, resource_id):
        self.stopped.append(channel_id)
        if channel_id.startswith("gone"):
            raise GoogleCalendarError("Channel not found", status_code=404)

    async def create_calendar(self, access_token, summary, description=""):
        calendar_id = f"cal-{len(self.events) + 1}@group.calendar.google.com"
        self.events.setdefault(calendar_id, {})
        return {"id": calendar_id, "summary": summary}

    async def insert_acl(self, access_token, calendar_id, email, role="writer"):
        self.acls.append((calendar_id, email, role))
        return {"role": role}

    async def close(self):
        pass


class FakeSheets:
    def __init__(self):
        self.created = 0
        self.cleared: list[tuple[str, str]] = []
        self.values: dict[tuple[str, str], list[list]] = {}

    async def create_spreadsheet(self, access_token, title, tabs):
        self.created += 1
        return {"spreadsheetId": f"sheet-{self.created}", "sheets": tabs}

    async def clear_range(self, access_token, spreadsheet_id, range_name):
        self.cleared.append((spreadsheet_id, range_name))
        self.values.pop((spreadsheet_id, range_name.split("!")[0]), None)

    async def update_values(self, access_token, spreadsheet_id, range_name, values):
        self.values[(spreadsheet_id, range_name.split("!")[0])] = values
        return {"updatedRows": len(values)}

    async def close(self):
        pass


class FakeInvoicing:
    def __init__(self):
        self.documents: list[dict] = []
        self.fail_documents = False
        self.tokens_issued = 0
        self.token_error: GreenInvoiceError | None = None
        self.remote: dict[str, dict] = {}
        self.fetched: list[str] = []

    async def get_token(self, client_id, client_secret, base_url=None):
        if self.token_error is not None:
            raise self.token_error
        self.tokens_issued += 1
        return "gi-token"

    async def get_document(self, token, document_id, base_url=None):
        self.fetched.append(document_id)
        if document_id not in self.remote:
            raise GreenInvoiceError("GreenInvoice get_document failed (HTTP 404)", status_code=404)
        return self.remote[document_id]

    async def create_document(self, token, document, base_url=None):
        if self.fail_documents:
            raise GreenInvoiceError("GreenInvoice create_document failed (HTTP 503)", status_code=503)
        self.documents.append(document)
        number = 1000 + len(self.documents)
        return {"id": f"doc-{number}", "number": number, "url": {"origin": f"https://docs/{number}"}}

    async def close(self):
        pass


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def job_store():
    return FakeJobStore()


@pytest.fixture
def credential_store():
    store = FakeCredentialStore()
    store.put(
        Credential(
            agency_id=AGENCY_ID,
            provider=CredentialProvider.GOOGLE,
            access_token="valid-token",
            refresh_token="refresh-token",
            expiry_timestamp=datetime.now(UTC) + timedelta(hours=1),
        )
    )
    store.secrets[(AGENCY_ID, "invoicing")] = ApiSecret(
        agency_id=AGENCY_ID, client_id="gi-id", client_secret="gi-secret"
    )
    return store


@pytest.fixture
def entity_store():
    store = FakeEntityStore()
    store.artists["artist-1"] = ArtistRecord(
        id="artist-1", agency_id=AGENCY_ID, name="DJ Noa", email="noa@example.com", calendar_email=""
    )
    store.clients["client-1"] = ClientRecord(
        id="client-1", agency_id=AGENCY_ID, business_name="Club Haifa", email="  ", phone="050-1234567"
    )
    store.events["event-1"] = EventRecord(
        id="event-1",
        agency_id=AGENCY_ID,
        business_name="Club Haifa",
        event_date=date(2026, 3, 14),
        amount=Decimal("2500.00"),
        status="confirmed",
        doc_type="payment_request",
        artist_id="artist-1",
        client_id="client-1",
    )
    return store


@pytest.fixture
def channel_store():
    return FakeChannelStore()


@pytest.fixture
def connection_store():
    return FakeConnectionStore()


@pytest.fixture
def oauth_service():
    return FakeOAuthService()


@pytest.fixture
def fake_calendar():
    return FakeCalendar()


@pytest.fixture
def fake_sheets():
    return FakeSheets()


@pytest.fixture
def fake_invoicing():
    return FakeInvoicing()


@pytest.fixture
def token_manager(credential_store, oauth_service):
    return OAuthTokenManager(credential_store, oauth_service, skew_seconds=120)


@pytest.fixture
def sync_deps(
    job_store,
    credential_store,
    entity_store,
    channel_store,
    connection_store,
    fake_calendar,
    fake_sheets,
    fake_invoicing,
    token_manager,
):
    return SyncDependencies(
        jobs=job_store,
        credentials=credential_store,
        entities=entity_store,
        channels=channel_store,
        connections=connection_store,
        calendar=fake_calendar,
        sheets=fake_sheets,
        invoicing=fake_invoicing,
        token_manager=token_manager,
    )


@pytest.fixture
def webhook_url(monkeypatch):
    url = "https://sync.example.com/webhooks/google-calendar"
    monkeypatch.setattr("agency_sync.config.settings.GOOGLE_CALENDAR_WEBHOOK_URL", url)
    return url
