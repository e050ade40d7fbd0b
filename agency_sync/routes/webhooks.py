"""
Inbound Google Calendar push notifications.

Pushes carry no payload; they only signal that the watched calendar
changed. A valid push is turned into a calendar-pull job. The endpoint
always answers 200 so Google does not retry or disable the channel.
"""

import hmac
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header

from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.api.sync_response import WebhookAckResponse
from agency_sync.models.domain.sync_domain import JobProvider
from agency_sync.repositories.sync_job_repository import SyncJobRepository
from agency_sync.repositories.webhook_channel_repository import WebhookChannelRepository
from agency_sync.routes.dependencies import get_channel_repository, get_job_repository
from agency_sync.services.sync.reconciliation import KIND_CALENDAR_PULL

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# First notification after watch creation; nothing changed yet
HANDSHAKE_STATE = "sync"


@router.post("/google-calendar", response_model=WebhookAckResponse)
async def google_calendar_push(
    x_goog_channel_id: str | None = Header(default=None),
    x_goog_channel_token: str | None = Header(default=None),
    x_goog_resource_state: str | None = Header(default=None),
    x_goog_message_number: str | None = Header(default=None),
    channels: WebhookChannelRepository = Depends(get_channel_repository),
    jobs: SyncJobRepository = Depends(get_job_repository),
):
    if not x_goog_channel_id:
        return WebhookAckResponse(reason="missing_channel_id")

    try:
        channel = await channels.get_by_channel_id(x_goog_channel_id)
        if channel is None:
            logger.info("Push for unknown channel", channel_id=x_goog_channel_id)
            return WebhookAckResponse(reason="unknown_channel")

        expected = channel.channel_token or ""
        if not hmac.compare_digest((x_goog_channel_token or "").encode(), expected.encode()):
            logger.warning("Push with mismatched channel token", channel_id=x_goog_channel_id)
            return WebhookAckResponse(reason="token_mismatch")

        if x_goog_resource_state == HANDSHAKE_STATE:
            return WebhookAckResponse(reason="sync_handshake")

        await jobs.enqueue(
            channel.agency_id,
            JobProvider.CALENDAR,
            KIND_CALENDAR_PULL,
            {
                "channel_id": channel.id,
                "source": "webhook",
                "resource_state": x_goog_resource_state,
                "message_number": x_goog_message_number,
                "received_at": datetime.now(UTC).isoformat(),
            },
        )
    except Exception as e:
        logger.error(
            "Failed to queue pull for push notification",
            channel_id=x_goog_channel_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return WebhookAckResponse(reason="enqueue_failed")

    return WebhookAckResponse(queued=True)
