"""
Narrow access to the business tables (events, clients, artists, expenses).

Reads are scoped by agency_id. Writes are limited to the sync-status and
external-id columns; the CRUD application owns every other column.
"""

from typing import Any

from agency_sync.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.domain.entity_domain import (
    ARTIST_WRITABLE_FIELDS,
    EVENT_WRITABLE_FIELDS,
    EXPENSE_WRITABLE_FIELDS,
    ArtistRecord,
    ClientRecord,
    EventRecord,
    ExpenseRecord,
)

logger = get_logger(__name__)


def _update_statement(table: str, fields: dict[str, Any], allowed: frozenset[str]) -> str:
    illegal = set(fields) - allowed
    if illegal:
        raise ValueError(f"Refusing to write {sorted(illegal)} on {table}")

    # Column names come from the allow-list above, never from callers
    assignments = ", ".join(f"{name} = %s" for name in fields)
    return f"UPDATE {table} SET {assignments}, updated_at = NOW() WHERE agency_id = %s AND id = %s"


class EntityRepository:
    """Persistence helpers for the entities the adapters sync."""

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_event(self, agency_id: str, event_id: str) -> EventRecord | None:
        row = await fetch_one(
            "SELECT * FROM events WHERE agency_id = %s AND id = %s", (agency_id, event_id)
        )
        return EventRecord.model_validate(_stringify_ids(row)) if row else None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_client(self, agency_id: str, client_id: str) -> ClientRecord | None:
        row = await fetch_one(
            "SELECT * FROM clients WHERE agency_id = %s AND id = %s", (agency_id, client_id)
        )
        return ClientRecord.model_validate(_stringify_ids(row)) if row else None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_artist(self, agency_id: str, artist_id: str) -> ArtistRecord | None:
        row = await fetch_one(
            "SELECT * FROM artists WHERE agency_id = %s AND id = %s", (agency_id, artist_id)
        )
        return ArtistRecord.model_validate(_stringify_ids(row)) if row else None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_events(self, agency_id: str) -> list[EventRecord]:
        rows = await fetch_all(
            "SELECT * FROM events WHERE agency_id = %s ORDER BY event_date DESC, id",
            (agency_id,),
        )
        return [EventRecord.model_validate(_stringify_ids(row)) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_clients(self, agency_id: str) -> list[ClientRecord]:
        rows = await fetch_all(
            "SELECT * FROM clients WHERE agency_id = %s ORDER BY business_name, id", (agency_id,)
        )
        return [ClientRecord.model_validate(_stringify_ids(row)) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_artists(self, agency_id: str) -> list[ArtistRecord]:
        rows = await fetch_all(
            "SELECT * FROM artists WHERE agency_id = %s ORDER BY name, id", (agency_id,)
        )
        return [ArtistRecord.model_validate(_stringify_ids(row)) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_expenses(
        self, agency_id: str, statuses: tuple[str, ...] | None = None
    ) -> list[ExpenseRecord]:
        if statuses:
            rows = await fetch_all(
                """
                SELECT * FROM finance_expenses
                WHERE agency_id = %s AND invoice_status = ANY(%s)
                ORDER BY expense_date NULLS LAST, id
                """,
                (agency_id, list(statuses)),
            )
        else:
            rows = await fetch_all(
                "SELECT * FROM finance_expenses WHERE agency_id = %s ORDER BY expense_date DESC NULLS LAST, id",
                (agency_id,),
            )
        return [ExpenseRecord.model_validate(_stringify_ids(row)) for row in rows]

    async def update_event(self, agency_id: str, event_id: str, fields: dict[str, Any]) -> bool:
        return await self._update("events", EVENT_WRITABLE_FIELDS, agency_id, event_id, fields)

    async def update_expense(self, agency_id: str, expense_id: str, fields: dict[str, Any]) -> bool:
        return await self._update(
            "finance_expenses", EXPENSE_WRITABLE_FIELDS, agency_id, expense_id, fields
        )

    async def update_artist(self, agency_id: str, artist_id: str, fields: dict[str, Any]) -> bool:
        return await self._update("artists", ARTIST_WRITABLE_FIELDS, agency_id, artist_id, fields)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def _update(
        self,
        table: str,
        allowed: frozenset[str],
        agency_id: str,
        entity_id: str,
        fields: dict[str, Any],
    ) -> bool:
        if not fields:
            return False
        statement = _update_statement(table, fields, allowed)
        affected = await execute_query(statement, (*fields.values(), agency_id, entity_id))
        if affected == 0:
            logger.warning("Entity write-back matched no row", table=table, entity_id=entity_id)
        return affected > 0


def _stringify_ids(row: dict[str, Any]) -> dict[str, Any]:
    """UUID columns come back as uuid.UUID; the domain models use str ids."""
    row = dict(row)
    for key, value in row.items():
        if (key == "id" or key.endswith("_id")) and value is not None and not isinstance(value, str):
            row[key] = str(value)
    return row


entity_repository = EntityRepository()
