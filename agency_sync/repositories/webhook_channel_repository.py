"""
Postgres repository for google_calendar_watches (push channels).
"""

from datetime import datetime
from typing import Any

from agency_sync.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from agency_sync.models.domain.sync_domain import ChannelScope, WebhookChannel

CHANNEL_COLUMNS = """
    id::text AS id, agency_id::text AS agency_id, scope, target_id::text AS target_id,
    calendar_id, channel_id, channel_token, resource_id, expiration,
    sync_token, last_pulled_at
"""


def _to_channel(row: dict[str, Any] | None) -> WebhookChannel | None:
    return WebhookChannel.model_validate(row) if row else None


class WebhookChannelRepository:
    """Persistence helpers for calendar push channels."""

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(self, row_id: str) -> WebhookChannel | None:
        query = f"SELECT {CHANNEL_COLUMNS} FROM google_calendar_watches WHERE id = %s"
        return _to_channel(await fetch_one(query, (row_id,)))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_by_channel_id(self, channel_id: str) -> WebhookChannel | None:
        query = f"SELECT {CHANNEL_COLUMNS} FROM google_calendar_watches WHERE channel_id = %s"
        return _to_channel(await fetch_one(query, (channel_id,)))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def find(
        self,
        agency_id: str,
        scope: ChannelScope,
        calendar_id: str,
        target_id: str | None = None,
    ) -> WebhookChannel | None:
        query = f"""
            SELECT {CHANNEL_COLUMNS}
            FROM google_calendar_watches
            WHERE agency_id = %s AND scope = %s AND calendar_id = %s
              AND target_id IS NOT DISTINCT FROM %s
            LIMIT 1
        """
        return _to_channel(
            await fetch_one(query, (agency_id, str(scope), calendar_id, target_id))
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def find_company_channel(self, agency_id: str) -> WebhookChannel | None:
        query = f"""
            SELECT {CHANNEL_COLUMNS}
            FROM google_calendar_watches
            WHERE agency_id = %s AND scope = 'company'
            ORDER BY created_at DESC
            LIMIT 1
        """
        return _to_channel(await fetch_one(query, (agency_id,)))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_for_agency(self, agency_id: str) -> list[WebhookChannel]:
        query = f"""
            SELECT {CHANNEL_COLUMNS}
            FROM google_calendar_watches
            WHERE agency_id = %s
            ORDER BY created_at ASC
        """
        return [_to_channel(row) for row in await fetch_all(query, (agency_id,))]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_agency_channel_ids(self, limit: int = 5000) -> dict[str, list[str]]:
        """Map agency_id -> channel row ids, for the reconciliation tick."""
        query = """
            SELECT agency_id::text AS agency_id, id::text AS id
            FROM google_calendar_watches
            ORDER BY agency_id, created_at
            LIMIT %s
        """
        by_agency: dict[str, list[str]] = {}
        for row in await fetch_all(query, (limit,)):
            by_agency.setdefault(row["agency_id"], []).append(row["id"])
        return by_agency

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def insert(self, channel: WebhookChannel) -> WebhookChannel:
        query = f"""
            INSERT INTO google_calendar_watches (
                agency_id, scope, target_id, calendar_id, channel_id, channel_token,
                resource_id, expiration, sync_token
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {CHANNEL_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                channel.agency_id,
                str(channel.scope),
                channel.target_id,
                channel.calendar_id,
                channel.channel_id,
                channel.channel_token,
                channel.resource_id,
                channel.expiration,
                channel.sync_token or None,
            ),
        )
        return _to_channel(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def replace_subscription(
        self,
        row_id: str,
        *,
        channel_id: str,
        channel_token: str,
        resource_id: str | None,
        expiration: datetime,
        sync_token: str | None,
    ) -> bool:
        """Overwrite every subscription field of a row in one statement."""
        query = """
            UPDATE google_calendar_watches
            SET channel_id = %s,
                channel_token = %s,
                resource_id = %s,
                expiration = %s,
                sync_token = %s,
                updated_at = NOW()
            WHERE id = %s
        """
        affected = await execute_query(
            query,
            (channel_id, channel_token, resource_id, expiration, sync_token or None, row_id),
        )
        return affected > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def store_sync_token(self, row_id: str, sync_token: str, pulled_at: datetime) -> bool:
        query = """
            UPDATE google_calendar_watches
            SET sync_token = %s, last_pulled_at = %s, updated_at = NOW()
            WHERE id = %s
        """
        return await execute_query(query, (sync_token, pulled_at, row_id)) > 0


webhook_channel_repository = WebhookChannelRepository()
