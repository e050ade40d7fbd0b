# models/domain/job_payloads.py
"""
Typed payloads and results for every (provider, kind) job operation.

Payloads accept snake_case or camelCase keys since jobs are enqueued by
both the Python services and the web client.
"""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from agency_sync.models.domain.sync_domain import ChannelScope


class JobPayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class JobResult(BaseModel):
    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


class CalendarEventUpsertPayload(JobPayload):
    event_id: str
    send_invites: bool = True


class CalendarEventUpsertResult(JobResult):
    calendar_id: str
    external_event_id: str
    html_link: str | None = None
    created: bool
    artist_calendar_id: str | None = None
    artist_external_event_id: str | None = None
    artist_html_link: str | None = None
    attendees: list[str] = []
    send_updates: str


class CalendarPullPayload(JobPayload):
    # Channel row id (or provider channel id); older producers send watch_id
    channel_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("channel_id", "channelId", "watch_id", "watchId"),
    )


class CalendarPullResult(JobResult):
    outcome: str  # pulled | not_initialized | reset
    calendar_id: str
    channel_id: str | None = None
    updated: int = 0
    cancelled: int = 0
    skipped: int = 0
    pages: int = 0
    sync_token_stored: bool = False


class WatchCreatePayload(JobPayload):
    calendar_id: str = "primary"
    scope: ChannelScope = ChannelScope.COMPANY
    owner_entity_id: str | None = None

    @model_validator(mode="after")
    def _owner_required_for_entity_scope(self):
        if self.scope == ChannelScope.PER_ENTITY and not self.owner_entity_id:
            raise ValueError("owner_entity_id is required for per_entity channels")
        return self


class WatchCreateResult(JobResult):
    channel_row_id: str
    calendar_id: str
    channel_id: str
    resource_id: str | None = None
    expiration: datetime
    sync_token_stored: bool
    replaced_channel_id: str | None = None


class WatchRenewAllPayload(JobPayload):
    pass


class WatchRenewAllResult(JobResult):
    total: int
    renewed: int
    skipped: int
    failed: int
    errors: list[dict[str, str]] = []


class ArtistCalendarCreatePayload(JobPayload):
    artist_id: str


class ArtistCalendarCreateResult(JobResult):
    artist_id: str
    calendar_id: str
    already: bool = False
    shared_with: str | None = None
    watch: WatchCreateResult | None = None
    watch_error: str | None = None


# ---------------------------------------------------------------------------
# Invoicing
# ---------------------------------------------------------------------------


class DocumentCreatePayload(JobPayload):
    event_id: str


class DocumentCreateResult(JobResult):
    document_id: str | None = None
    document_number: str | None = None
    document_url: str | None = None
    document_type: int


class DocumentStatusPayload(JobPayload):
    event_id: str


class DocumentStatusResult(JobResult):
    event_id: str
    document_id: str | None = None
    document_status: str | None = None  # paid | provider status code | open
    paid: bool = False
    event_status: str | None = None


class ExpensesSyncPayload(JobPayload):
    pass


class ExpensesSyncResult(JobResult):
    synced: int
    errored: int
    total: int


# ---------------------------------------------------------------------------
# Spreadsheet
# ---------------------------------------------------------------------------


class SpreadsheetFullResyncPayload(JobPayload):
    pass


class SpreadsheetEntityUpsertPayload(JobPayload):
    entity_id: str | None = None
    event_id: str | None = None


class SpreadsheetResyncResult(JobResult):
    spreadsheet_id: str
    spreadsheet_url: str
    created: bool = False
    counts: dict[str, int]
    upserted_entity_id: str | None = None
