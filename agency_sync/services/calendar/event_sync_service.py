"""
Calendar sync between agency events and Google Calendar.

Push: one agency event maps to at most one external event per calendar,
located through the stored external id (and the private extended
properties on the external side), so repeated upserts PATCH instead of
creating duplicates.

Pull: incremental sync from a channel's stored sync token. Only events this
engine created (tagged with the private event-id property) are applied back;
cancellations never hard-delete locally.
"""

from datetime import UTC, date, datetime, timedelta
from typing import Any

from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.domain.entity_domain import (
    ArtistRecord,
    ClientRecord,
    EntitySyncStatus,
    EventRecord,
)
from agency_sync.models.domain.job_payloads import (
    CalendarEventUpsertPayload,
    CalendarEventUpsertResult,
    CalendarPullPayload,
    CalendarPullResult,
)
from agency_sync.models.domain.sync_domain import ChannelScope, WebhookChannel
from agency_sync.repositories.entity_repository import EntityRepository
from agency_sync.repositories.integration_connection_repository import (
    IntegrationConnectionRepository,
)
from agency_sync.repositories.webhook_channel_repository import WebhookChannelRepository
from agency_sync.services.calendar.google_client import (
    CALENDAR_PRIMARY,
    GoogleCalendarError,
    GoogleCalendarService,
)
from agency_sync.services.sync.errors import ConfigurationError, StaleCursorError, ValidationError

logger = get_logger(__name__)

GOOGLE_CONNECTION = "google"
PRIVATE_AGENCY_KEY = "agency_sync_agency_id"
PRIVATE_EVENT_KEY = "agency_sync_event_id"
DEFAULT_SUMMARY = "Event"


def build_event_body(
    event: EventRecord,
    artist: ArtistRecord | None,
    client: ClientRecord | None,
) -> tuple[dict[str, Any], list[str]]:
    """Render the external event body and the attendee list for an agency event."""
    summary_parts = [event.business_name or event.invoice_name or DEFAULT_SUMMARY]
    if artist and artist.name:
        summary_parts.append(artist.name)

    attendees: list[str] = []
    for email in (artist.invite_email() if artist else "", (client.email or "").strip() if client else ""):
        if email and email not in attendees:
            attendees.append(email)

    description = "\n".join(
        [
            f"Event ID: {event.id}",
            f"Business: {event.business_name or ''}",
            f"Invoice name: {event.invoice_name or ''}",
            f"Amount: {event.amount if event.amount is not None else 0}",
            f"Status: {event.status or ''}",
            f"Notes: {event.notes or ''}",
        ]
    )

    body: dict[str, Any] = {
        "summary": " · ".join(summary_parts),
        "description": description,
        "start": {"date": event.event_date.isoformat()},
        "end": {"date": (event.event_date + timedelta(days=1)).isoformat()},
        "guestsCanModify": True,
        "extendedProperties": {
            "private": {PRIVATE_AGENCY_KEY: event.agency_id, PRIVATE_EVENT_KEY: event.id}
        },
    }
    if attendees:
        body["attendees"] = [{"email": email} for email in attendees]
    return body, attendees


def item_start_date(item: dict[str, Any]) -> date | None:
    """Whole-day events carry start.date; timed ones start.dateTime."""
    start = item.get("start") or {}
    raw = start.get("date") or (start.get("dateTime") or "")[:10]
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


class CalendarEventSyncService:
    """Push and pull of agency events against Google Calendar."""

    def __init__(
        self,
        calendar: GoogleCalendarService,
        entities: EntityRepository,
        connections: IntegrationConnectionRepository,
        channels: WebhookChannelRepository,
    ):
        self.calendar = calendar
        self.entities = entities
        self.connections = connections
        self.channels = channels

    async def company_calendar_id(self, agency_id: str) -> str:
        connection = await self.connections.get(agency_id, GOOGLE_CONNECTION)
        if connection and connection.config.get("company_calendar_id"):
            return str(connection.config["company_calendar_id"])
        return CALENDAR_PRIMARY

    async def _write_event(
        self,
        access_token: str,
        calendar_id: str,
        existing_id: str | None,
        body: dict[str, Any],
        send_updates: str,
    ) -> tuple[dict[str, Any], bool]:
        if existing_id:
            try:
                data = await self.calendar.patch_event(
                    access_token, calendar_id, existing_id, body, send_updates
                )
                return data, False
            except GoogleCalendarError as e:
                # Deleted on the provider side; recreate rather than fail forever
                if e.status_code not in (404, 410):
                    raise
                logger.warning(
                    "Stored external event is gone, recreating",
                    calendar_id=calendar_id,
                    external_event_id=existing_id,
                )
        data = await self.calendar.insert_event(access_token, calendar_id, body, send_updates)
        return data, True

    async def upsert_event(
        self, agency_id: str, access_token: str, payload: CalendarEventUpsertPayload
    ) -> CalendarEventUpsertResult:
        event = await self.entities.get_event(agency_id, payload.event_id)
        if event is None:
            raise ValidationError(f"Event {payload.event_id} not found", agency_id=agency_id)

        artist = await self.entities.get_artist(agency_id, event.artist_id) if event.artist_id else None
        client = await self.entities.get_client(agency_id, event.client_id) if event.client_id else None

        calendar_id = await self.company_calendar_id(agency_id)
        body, attendees = build_event_body(event, artist, client)
        send_updates = "all" if payload.send_invites else "none"

        data, created = await self._write_event(
            access_token, calendar_id, event.calendar_event_id, body, send_updates
        )
        if not data.get("id"):
            raise GoogleCalendarError("Calendar answered without an event id")

        # Company event id is persisted before the mirror write is attempted
        await self.entities.update_event(
            agency_id,
            event.id,
            {
                "calendar_event_id": data["id"],
                "calendar_event_link": data.get("htmlLink"),
                "calendar_sync_status": str(EntitySyncStatus.SYNCED),
                "calendar_synced_at": datetime.now(UTC),
                "calendar_last_error": None,
            },
        )

        artist_calendar_id = (artist.calendar_id or "").strip() if artist else ""
        artist_data: dict[str, Any] = {}
        if artist_calendar_id:
            artist_data, _ = await self._write_event(
                access_token,
                artist_calendar_id,
                event.calendar_artist_event_id,
                body,
                send_updates,
            )
            await self.entities.update_event(
                agency_id,
                event.id,
                {
                    "calendar_artist_event_id": artist_data.get("id"),
                    "calendar_artist_event_link": artist_data.get("htmlLink"),
                },
            )

        logger.info(
            "Event pushed to calendar",
            agency_id=agency_id,
            event_id=event.id,
            calendar_id=calendar_id,
            created=created,
            mirrored=bool(artist_calendar_id),
        )
        return CalendarEventUpsertResult(
            calendar_id=calendar_id,
            external_event_id=data["id"],
            html_link=data.get("htmlLink"),
            created=created,
            artist_calendar_id=artist_calendar_id or None,
            artist_external_event_id=artist_data.get("id"),
            artist_html_link=artist_data.get("htmlLink"),
            attendees=attendees,
            send_updates=send_updates,
        )

    async def _resolve_channel(self, agency_id: str, channel_ref: str | None) -> WebhookChannel | None:
        if not channel_ref:
            return await self.channels.find_company_channel(agency_id)
        channel = await self.channels.get(channel_ref)
        if channel is None:
            channel = await self.channels.get_by_channel_id(channel_ref)
        if channel is not None and channel.agency_id != agency_id:
            raise ValidationError(
                f"Channel {channel_ref} belongs to another agency", agency_id=agency_id
            )
        return channel

    async def pull_changes(
        self, agency_id: str, access_token: str, payload: CalendarPullPayload
    ) -> CalendarPullResult:
        """
        Apply provider-side changes since the channel's sync token.

        A channel without a token reports not_initialized instead of doing a
        full list; a 410 from the provider swaps in a fresh token and reports
        reset.
        """
        channel = await self._resolve_channel(agency_id, payload.channel_id)
        if channel is None:
            if payload.channel_id:
                raise ValidationError(f"Channel {payload.channel_id} not found", agency_id=agency_id)
            raise ConfigurationError("No calendar watch configured", agency_id=agency_id)

        if not channel.sync_token:
            logger.info("Calendar pull skipped, channel has no sync token", channel_row_id=channel.id)
            return CalendarPullResult(
                outcome="not_initialized", calendar_id=channel.calendar_id, channel_id=channel.id
            )

        event_id_field = "calendar_event_id"
        link_field = "calendar_event_link"
        if channel.scope == ChannelScope.PER_ENTITY:
            event_id_field = "calendar_artist_event_id"
            link_field = "calendar_artist_event_link"

        result = CalendarPullResult(
            outcome="pulled", calendar_id=channel.calendar_id, channel_id=channel.id
        )
        page_token = None
        next_sync_token = None

        while True:
            try:
                data = await self.calendar.list_events_page(
                    access_token,
                    channel.calendar_id,
                    sync_token=channel.sync_token,
                    page_token=page_token,
                )
            except GoogleCalendarError as e:
                if not e.stale_sync_token:
                    raise
                return await self._reset_cursor(access_token, channel, result)

            result.pages += 1
            for item in data.get("items", []):
                await self._apply_item(agency_id, item, event_id_field, link_field, result)

            next_sync_token = data.get("nextSyncToken") or next_sync_token
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        if next_sync_token:
            await self.channels.store_sync_token(channel.id, next_sync_token, datetime.now(UTC))
            result.sync_token_stored = True

        logger.info(
            "Calendar pull completed",
            agency_id=agency_id,
            channel_row_id=channel.id,
            updated=result.updated,
            cancelled=result.cancelled,
            skipped=result.skipped,
            pages=result.pages,
        )
        return result

    async def _apply_item(
        self,
        agency_id: str,
        item: dict[str, Any],
        event_id_field: str,
        link_field: str,
        result: CalendarPullResult,
    ) -> None:
        private = (item.get("extendedProperties") or {}).get("private") or {}
        event_id = private.get(PRIVATE_EVENT_KEY)
        if not event_id:
            result.skipped += 1
            return

        now = datetime.now(UTC)
        if item.get("deleted") or item.get("status") == "cancelled":
            await self.entities.update_event(
                agency_id,
                event_id,
                {
                    "status": "cancelled",
                    "calendar_sync_status": str(EntitySyncStatus.SYNCED),
                    "calendar_synced_at": now,
                },
            )
            result.cancelled += 1
            return

        fields: dict[str, Any] = {
            event_id_field: item.get("id"),
            link_field: item.get("htmlLink"),
            "calendar_sync_status": str(EntitySyncStatus.SYNCED),
            "calendar_synced_at": now,
        }
        start = item_start_date(item)
        if start:
            fields["event_date"] = start
        await self.entities.update_event(agency_id, event_id, fields)
        result.updated += 1

    async def _reset_cursor(
        self, access_token: str, channel: WebhookChannel, result: CalendarPullResult
    ) -> CalendarPullResult:
        logger.warning(
            "Calendar sync token rejected, re-establishing",
            channel_row_id=channel.id,
            calendar_id=channel.calendar_id,
        )
        try:
            fresh_token = await self.calendar.fetch_sync_token(access_token, channel.calendar_id)
        except GoogleCalendarError as e:
            if not e.stale_sync_token:
                raise
            raise StaleCursorError(
                f"Calendar {channel.calendar_id} rejected a full re-list", agency_id=channel.agency_id
            ) from e
        if fresh_token:
            await self.channels.store_sync_token(channel.id, fresh_token, datetime.now(UTC))
        result.outcome = "reset"
        result.sync_token_stored = bool(fresh_token)
        return result
