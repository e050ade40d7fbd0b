"""
Wiring for the sync engine: builds the handler registry and the dispatcher.

Collaborators default to the module-level repositories; tests pass fakes.
"""

from dataclasses import dataclass, field

from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.domain import job_payloads as p
from agency_sync.models.domain.entity_domain import EntitySyncStatus
from agency_sync.models.domain.sync_domain import JobProvider
from agency_sync.repositories.credential_repository import (
    CredentialRepository,
    credential_repository,
)
from agency_sync.repositories.entity_repository import EntityRepository, entity_repository
from agency_sync.repositories.integration_connection_repository import (
    IntegrationConnectionRepository,
    integration_connection_repository,
)
from agency_sync.repositories.sync_job_repository import SyncJobRepository, sync_job_repository
from agency_sync.repositories.webhook_channel_repository import (
    WebhookChannelRepository,
    webhook_channel_repository,
)
from agency_sync.services.calendar.artist_calendar_service import ArtistCalendarService
from agency_sync.services.calendar.event_sync_service import CalendarEventSyncService
from agency_sync.services.calendar.google_client import GoogleCalendarService
from agency_sync.services.calendar.watch_service import WebhookChannelManager
from agency_sync.services.invoicing.greeninvoice_client import GreenInvoiceClient
from agency_sync.services.invoicing.invoicing_service import InvoicingService
from agency_sync.services.sheets.google_sheets_client import GoogleSheetsService
from agency_sync.services.sheets.sheets_sync_service import SpreadsheetSyncService
from agency_sync.services.sync.dispatcher import JobDispatcher, JobHandler
from agency_sync.services.sync.reconciliation import (
    KIND_CALENDAR_PULL,
    KIND_WATCH_RENEW_ALL,
    ReconciliationScheduler,
)
from agency_sync.services.sync.token_manager import OAuthTokenManager

logger = get_logger(__name__)

ENTITY_ERROR_MAX_LENGTH = 500


@dataclass
class SyncDependencies:
    jobs: SyncJobRepository = field(default_factory=lambda: sync_job_repository)
    credentials: CredentialRepository = field(default_factory=lambda: credential_repository)
    entities: EntityRepository = field(default_factory=lambda: entity_repository)
    channels: WebhookChannelRepository = field(default_factory=lambda: webhook_channel_repository)
    connections: IntegrationConnectionRepository = field(
        default_factory=lambda: integration_connection_repository
    )
    calendar: GoogleCalendarService | None = None
    sheets: GoogleSheetsService | None = None
    invoicing: GreenInvoiceClient | None = None
    token_manager: OAuthTokenManager | None = None

    def __post_init__(self):
        self.calendar = self.calendar or GoogleCalendarService()
        self.sheets = self.sheets or GoogleSheetsService()
        self.invoicing = self.invoicing or GreenInvoiceClient()
        self.token_manager = self.token_manager or OAuthTokenManager(self.credentials)

    async def close(self) -> None:
        for client in (self.calendar, self.sheets, self.invoicing, self.token_manager.oauth_service):
            await client.close()


def build_handlers(deps: SyncDependencies) -> dict[tuple[JobProvider, str], JobHandler]:
    """Registry of every supported (provider, kind) operation."""
    calendar_sync = CalendarEventSyncService(
        deps.calendar, deps.entities, deps.connections, deps.channels
    )
    watches = WebhookChannelManager(deps.calendar, deps.channels, deps.connections)
    artist_calendars = ArtistCalendarService(deps.calendar, deps.entities, watches)
    invoicing = InvoicingService(deps.invoicing, deps.entities, deps.credentials)
    spreadsheet = SpreadsheetSyncService(deps.sheets, deps.entities, deps.connections)

    async def mark_calendar_error(agency_id: str, payload: p.CalendarEventUpsertPayload, error: str):
        await deps.entities.update_event(
            agency_id,
            payload.event_id,
            {
                "calendar_sync_status": str(EntitySyncStatus.ERROR),
                "calendar_last_error": error[:ENTITY_ERROR_MAX_LENGTH],
            },
        )

    async def mark_invoice_error(agency_id: str, payload: p.DocumentCreatePayload, error: str):
        await deps.entities.update_event(
            agency_id,
            payload.event_id,
            {
                "invoice_sync_status": str(EntitySyncStatus.ERROR),
                "invoice_last_error": error[:ENTITY_ERROR_MAX_LENGTH],
            },
        )

    async def mark_invoice_status_error(agency_id: str, payload: p.DocumentStatusPayload, error: str):
        # A failed status check leaves the document's sync status alone
        await deps.entities.update_event(
            agency_id, payload.event_id, {"invoice_last_error": error[:ENTITY_ERROR_MAX_LENGTH]}
        )

    return {
        (JobProvider.CALENDAR, "event-upsert"): JobHandler(
            p.CalendarEventUpsertPayload,
            lambda agency_id, token, payload: calendar_sync.upsert_event(agency_id, token, payload),
            needs_oauth_token=True,
            on_failure=mark_calendar_error,
        ),
        (JobProvider.CALENDAR, KIND_CALENDAR_PULL): JobHandler(
            p.CalendarPullPayload,
            lambda agency_id, token, payload: calendar_sync.pull_changes(agency_id, token, payload),
            needs_oauth_token=True,
        ),
        (JobProvider.CALENDAR, "watch-create"): JobHandler(
            p.WatchCreatePayload,
            lambda agency_id, token, payload: watches.create_watch(agency_id, token, payload),
            needs_oauth_token=True,
        ),
        (JobProvider.CALENDAR, KIND_WATCH_RENEW_ALL): JobHandler(
            p.WatchRenewAllPayload,
            lambda agency_id, token, payload: watches.renew_all(agency_id, token),
            needs_oauth_token=True,
        ),
        (JobProvider.CALENDAR, "artist-calendar-create"): JobHandler(
            p.ArtistCalendarCreatePayload,
            lambda agency_id, token, payload: artist_calendars.create_artist_calendar(
                agency_id, token, payload
            ),
            needs_oauth_token=True,
        ),
        (JobProvider.INVOICING, "document-create"): JobHandler(
            p.DocumentCreatePayload,
            lambda agency_id, token, payload: invoicing.create_document(agency_id, payload),
            on_failure=mark_invoice_error,
        ),
        (JobProvider.INVOICING, "document-status"): JobHandler(
            p.DocumentStatusPayload,
            lambda agency_id, token, payload: invoicing.refresh_document_status(agency_id, payload),
            on_failure=mark_invoice_status_error,
        ),
        (JobProvider.INVOICING, "expenses-sync"): JobHandler(
            p.ExpensesSyncPayload,
            lambda agency_id, token, payload: invoicing.sync_expenses(agency_id, payload),
        ),
        (JobProvider.SPREADSHEET, "full-resync"): JobHandler(
            p.SpreadsheetFullResyncPayload,
            lambda agency_id, token, payload: spreadsheet.full_resync(agency_id, token, payload),
            needs_oauth_token=True,
        ),
        (JobProvider.SPREADSHEET, "entity-upsert"): JobHandler(
            p.SpreadsheetEntityUpsertPayload,
            lambda agency_id, token, payload: spreadsheet.upsert_entity(agency_id, token, payload),
            needs_oauth_token=True,
        ),
    }


def build_dispatcher(deps: SyncDependencies | None = None) -> JobDispatcher:
    deps = deps or SyncDependencies()
    return JobDispatcher(deps.jobs, deps.token_manager, build_handlers(deps))


def build_reconciliation(deps: SyncDependencies | None = None) -> ReconciliationScheduler:
    if deps is None:
        return ReconciliationScheduler(sync_job_repository, webhook_channel_repository)
    return ReconciliationScheduler(deps.jobs, deps.channels)
