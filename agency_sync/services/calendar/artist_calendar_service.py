"""
Provision a shared secondary calendar per artist and watch it.
"""

from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.domain.job_payloads import (
    ArtistCalendarCreatePayload,
    ArtistCalendarCreateResult,
    WatchCreatePayload,
)
from agency_sync.models.domain.sync_domain import ChannelScope
from agency_sync.repositories.entity_repository import EntityRepository
from agency_sync.services.calendar.google_client import GoogleCalendarError, GoogleCalendarService
from agency_sync.services.calendar.watch_service import WebhookChannelManager
from agency_sync.services.sync.errors import ValidationError, truncate_message

logger = get_logger(__name__)


class ArtistCalendarService:
    def __init__(
        self,
        calendar: GoogleCalendarService,
        entities: EntityRepository,
        watches: WebhookChannelManager,
    ):
        self.calendar = calendar
        self.entities = entities
        self.watches = watches

    async def create_artist_calendar(
        self, agency_id: str, access_token: str, payload: ArtistCalendarCreatePayload
    ) -> ArtistCalendarCreateResult:
        artist = await self.entities.get_artist(agency_id, payload.artist_id)
        if artist is None:
            raise ValidationError(f"Artist {payload.artist_id} not found", agency_id=agency_id)

        existing = (artist.calendar_id or "").strip()
        if existing:
            return ArtistCalendarCreateResult(artist_id=artist.id, calendar_id=existing, already=True)

        created = await self.calendar.create_calendar(
            access_token,
            summary=f"{artist.name or 'Artist'} (Shared)",
            description=f"Shared calendar for artist {artist.id}",
        )
        calendar_id = str(created.get("id") or "").strip()
        if not calendar_id:
            raise GoogleCalendarError("Calendar created without an id")

        share_with = artist.invite_email() or None
        if share_with:
            await self.calendar.insert_acl(access_token, calendar_id, share_with, role="writer")

        # Persist before watching so a watch failure never orphans the calendar
        await self.entities.update_artist(agency_id, artist.id, {"calendar_id": calendar_id})

        result = ArtistCalendarCreateResult(
            artist_id=artist.id, calendar_id=calendar_id, shared_with=share_with
        )
        try:
            result.watch = await self.watches.create_watch(
                agency_id,
                access_token,
                WatchCreatePayload(
                    calendar_id=calendar_id,
                    scope=ChannelScope.PER_ENTITY,
                    owner_entity_id=artist.id,
                ),
            )
        except Exception as e:
            result.watch_error = truncate_message(str(e), 500)
            logger.warning(
                "Artist calendar created but watch failed",
                agency_id=agency_id,
                artist_id=artist.id,
                calendar_id=calendar_id,
                error=str(e),
            )

        logger.info(
            "Artist calendar provisioned",
            agency_id=agency_id,
            artist_id=artist.id,
            calendar_id=calendar_id,
            shared=bool(share_with),
        )
        return result
