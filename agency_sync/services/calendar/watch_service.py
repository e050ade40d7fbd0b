"""
Push-channel lifecycle for watched calendars.

Google channels expire (TTL capped by the provider), so every channel is
renewed by a recurring job before expiry. The old channel is stopped before
its replacement is registered, keeping at most one live channel per
(agency, scope, calendar, target).
"""

import secrets
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from agency_sync.config import settings
from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.domain.job_payloads import (
    WatchCreatePayload,
    WatchCreateResult,
    WatchRenewAllResult,
)
from agency_sync.models.domain.sync_domain import ChannelScope, WebhookChannel
from agency_sync.repositories.integration_connection_repository import (
    IntegrationConnectionRepository,
)
from agency_sync.repositories.webhook_channel_repository import WebhookChannelRepository
from agency_sync.services.calendar.event_sync_service import GOOGLE_CONNECTION
from agency_sync.services.calendar.google_client import GoogleCalendarService
from agency_sync.services.sync.errors import ConfigurationError, SyncError, truncate_message

logger = get_logger(__name__)


def parse_expiration(raw: Any, fallback_ttl_seconds: int, now: datetime | None = None) -> datetime:
    """Channel expiration arrives as epoch milliseconds (string); absent means now + TTL."""
    now = now or datetime.now(UTC)
    if raw in (None, ""):
        return now + timedelta(seconds=fallback_ttl_seconds)
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Unparseable channel expiration, using TTL", raw_expiration=str(raw))
        return now + timedelta(seconds=fallback_ttl_seconds)


class WebhookChannelManager:
    """Creates and renews Calendar push channels."""

    def __init__(
        self,
        calendar: GoogleCalendarService,
        channels: WebhookChannelRepository,
        connections: IntegrationConnectionRepository,
        webhook_url: str | None = None,
        ttl_seconds: int | None = None,
        renewal_threshold: timedelta | None = None,
    ):
        self.calendar = calendar
        self.channels = channels
        self.connections = connections
        self.webhook_url = webhook_url if webhook_url is not None else settings.GOOGLE_CALENDAR_WEBHOOK_URL
        self.ttl_seconds = ttl_seconds or settings.WATCH_TTL_SECONDS
        self.renewal_threshold = renewal_threshold or timedelta(
            hours=settings.WATCH_RENEWAL_THRESHOLD_HOURS
        )

    def _require_webhook_url(self, agency_id: str) -> str:
        if not self.webhook_url:
            raise ConfigurationError(
                "GOOGLE_CALENDAR_WEBHOOK_URL is not configured", agency_id=agency_id
            )
        return self.webhook_url

    async def _stop_quietly(self, access_token: str, channel: WebhookChannel) -> None:
        if not channel.channel_id:
            return
        try:
            await self.calendar.stop_channel(access_token, channel.channel_id, channel.resource_id)
        except Exception as e:
            # The channel may already have expired or been stopped
            logger.info(
                "Stopping old channel failed, continuing",
                channel_id=channel.channel_id,
                error=str(e),
            )

    async def _register(self, agency_id: str, access_token: str, calendar_id: str) -> dict[str, Any]:
        address = self._require_webhook_url(agency_id)
        channel_id = str(uuid.uuid4())
        channel_token = secrets.token_urlsafe(24)
        response = await self.calendar.watch_events(
            access_token,
            calendar_id,
            channel_id=channel_id,
            channel_token=channel_token,
            address=address,
            ttl_seconds=self.ttl_seconds,
        )
        now = datetime.now(UTC)
        expiration = parse_expiration(response.get("expiration"), self.ttl_seconds, now)
        if expiration - now <= self.renewal_threshold:
            logger.warning(
                "Provider granted a channel shorter than the renewal threshold",
                calendar_id=calendar_id,
                channel_id=channel_id,
                expiration=expiration.isoformat(),
            )
        return {
            "channel_id": channel_id,
            "channel_token": channel_token,
            "resource_id": response.get("resourceId"),
            "expiration": expiration,
        }

    async def create_watch(
        self, agency_id: str, access_token: str, payload: WatchCreatePayload
    ) -> WatchCreateResult:
        """
        Register a push channel for a calendar and store it with a fresh sync token.

        An existing channel for the same (agency, scope, calendar, target) is
        stopped and its row overwritten instead of inserting a second one.
        """
        self._require_webhook_url(agency_id)
        calendar_id = payload.calendar_id
        target_id = payload.owner_entity_id if payload.scope == ChannelScope.PER_ENTITY else None

        existing = await self.channels.find(agency_id, payload.scope, calendar_id, target_id)
        if existing:
            await self._stop_quietly(access_token, existing)

        sync_token = await self.calendar.fetch_sync_token(access_token, calendar_id)
        subscription = await self._register(agency_id, access_token, calendar_id)

        if existing:
            await self.channels.replace_subscription(existing.id, sync_token=sync_token, **subscription)
            row_id = existing.id
        else:
            row = await self.channels.insert(
                WebhookChannel(
                    id="",
                    agency_id=agency_id,
                    scope=payload.scope,
                    target_id=target_id,
                    calendar_id=calendar_id,
                    sync_token=sync_token,
                    **subscription,
                )
            )
            row_id = row.id

        if payload.scope == ChannelScope.COMPANY:
            await self.connections.merge_config(
                agency_id, GOOGLE_CONNECTION, {"company_calendar_id": calendar_id}
            )

        logger.info(
            "Calendar watch created",
            agency_id=agency_id,
            scope=str(payload.scope),
            calendar_id=calendar_id,
            channel_row_id=row_id,
            replaced=bool(existing),
        )
        return WatchCreateResult(
            channel_row_id=row_id,
            calendar_id=calendar_id,
            channel_id=subscription["channel_id"],
            resource_id=subscription["resource_id"],
            expiration=subscription["expiration"],
            sync_token_stored=bool(sync_token),
            replaced_channel_id=existing.channel_id if existing else None,
        )

    async def renew_all(self, agency_id: str, access_token: str) -> WatchRenewAllResult:
        """Renew every channel of the agency that is due; one failure never stops the rest."""
        channels = await self.channels.list_for_agency(agency_id)
        now = datetime.now(UTC)
        renewed = skipped = failed = 0
        errors: list[dict[str, str]] = []

        for channel in channels:
            if not channel.renewal_due(self.renewal_threshold, now):
                skipped += 1
                continue
            try:
                await self._renew(agency_id, access_token, channel)
                renewed += 1
            except Exception as e:
                failed += 1
                errors.append(
                    {"channel_row_id": channel.id, "error": truncate_message(str(e), 300)}
                )
                logger.warning(
                    "Calendar watch renewal failed",
                    agency_id=agency_id,
                    channel_row_id=channel.id,
                    calendar_id=channel.calendar_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        logger.info(
            "Calendar watch renewal finished",
            agency_id=agency_id,
            total=len(channels),
            renewed=renewed,
            skipped=skipped,
            failed=failed,
        )
        return WatchRenewAllResult(
            total=len(channels), renewed=renewed, skipped=skipped, failed=failed, errors=errors
        )

    async def _renew(self, agency_id: str, access_token: str, channel: WebhookChannel) -> None:
        self._require_webhook_url(agency_id)
        await self._stop_quietly(access_token, channel)

        sync_token = channel.sync_token
        if not sync_token:
            sync_token = await self.calendar.fetch_sync_token(access_token, channel.calendar_id)

        subscription = await self._register(agency_id, access_token, channel.calendar_id)
        updated = await self.channels.replace_subscription(
            channel.id, sync_token=sync_token, **subscription
        )
        if not updated:
            raise SyncError(f"Channel row {channel.id} disappeared during renewal")
        if subscription["expiration"] - datetime.now(UTC) <= self.renewal_threshold:
            # Stored so the live channel stays tracked; the next tick renews it again
            raise SyncError(
                f"Renewed channel for {channel.calendar_id} expires at "
                f"{subscription['expiration'].isoformat()}, inside the renewal threshold"
            )

        logger.info(
            "Calendar watch renewed",
            channel_row_id=channel.id,
            old_channel_id=channel.channel_id,
            new_channel_id=subscription["channel_id"],
            expiration=subscription["expiration"].isoformat(),
        )
