"""
Postgres repository for integrations (per-agency provider connection config).
"""

from typing import Any

from agency_sync.db.helpers import as_json, fetch_one, with_db_retry
from agency_sync.models.domain.sync_domain import ConnectionStatus, IntegrationConnection

CONNECTION_COLUMNS = "agency_id::text AS agency_id, provider, status, config, connected_at"


def _to_connection(row: dict[str, Any] | None) -> IntegrationConnection | None:
    if not row:
        return None
    row = dict(row)
    row["config"] = row.get("config") or {}
    return IntegrationConnection.model_validate(row)


class IntegrationConnectionRepository:
    """Persistence helpers for integration connections."""

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(self, agency_id: str, provider: str) -> IntegrationConnection | None:
        query = f"""
            SELECT {CONNECTION_COLUMNS}
            FROM integrations
            WHERE agency_id = %s AND provider = %s
        """
        return _to_connection(await fetch_one(query, (agency_id, provider)))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def merge_config(
        self,
        agency_id: str,
        provider: str,
        values: dict[str, Any],
        status: ConnectionStatus = ConnectionStatus.CONNECTED,
    ) -> IntegrationConnection:
        """Upsert the connection, shallow-merging values into its config."""
        query = f"""
            INSERT INTO integrations (agency_id, provider, status, config, connected_at)
            VALUES (%s, %s, %s, %s, NOW())
            ON CONFLICT (agency_id, provider)
            DO UPDATE SET
                status = EXCLUDED.status,
                config = COALESCE(integrations.config, '{{}}'::jsonb) || EXCLUDED.config,
                connected_at = COALESCE(integrations.connected_at, EXCLUDED.connected_at)
            RETURNING {CONNECTION_COLUMNS}
        """
        row = await fetch_one(query, (agency_id, provider, str(status), as_json(values)))
        return _to_connection(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def set_config_value_if_absent(
        self, agency_id: str, provider: str, key: str, value: Any
    ) -> Any:
        """
        Store config[key] = value unless a value is already stored.

        Returns:
            The stored value after the call, which is the earlier writer's value
            when two callers race.
        """
        query = f"""
            INSERT INTO integrations (agency_id, provider, status, config, connected_at)
            VALUES (%s, %s, 'connected', %s, NOW())
            ON CONFLICT (agency_id, provider)
            DO UPDATE SET
                status = 'connected',
                config = COALESCE(integrations.config, '{{}}'::jsonb) || EXCLUDED.config,
                connected_at = COALESCE(integrations.connected_at, EXCLUDED.connected_at)
            WHERE NOT (COALESCE(integrations.config, '{{}}'::jsonb) ? %s)
            RETURNING {CONNECTION_COLUMNS}
        """
        row = await fetch_one(query, (agency_id, provider, as_json({key: value}), key))
        if row:
            return value

        # Conflict row already had the key; the earlier writer wins
        existing = await self.get(agency_id, provider)
        return existing.config.get(key) if existing else value


integration_connection_repository = IntegrationConnectionRepository()
