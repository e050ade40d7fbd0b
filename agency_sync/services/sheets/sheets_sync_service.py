"""
Spreadsheet adapter: mirrors agency data into a per-agency Google spreadsheet.

Every resync rewrites each tab from scratch (clear, then header + rows), so
the sheet always reflects the current database state and never keeps rows
for deleted entities.
"""

from collections.abc import Callable, Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.domain.job_payloads import (
    SpreadsheetEntityUpsertPayload,
    SpreadsheetFullResyncPayload,
    SpreadsheetResyncResult,
)
from agency_sync.repositories.entity_repository import EntityRepository
from agency_sync.repositories.integration_connection_repository import (
    IntegrationConnectionRepository,
)
from agency_sync.services.sheets.google_sheets_client import GoogleSheetsService, spreadsheet_url

logger = get_logger(__name__)

SHEETS_CONNECTION = "sheets"
SPREADSHEET_ID_KEY = "spreadsheet_id"

# Stable column order per tab; readers of the sheet rely on it
EVENT_COLUMNS = [
    "id", "event_date", "business_name", "invoice_name", "amount", "payment_date",
    "artist_id", "artist_fee_amount", "status", "updated_at",
]
CLIENT_COLUMNS = ["id", "business_name", "contact_name", "email", "phone", "address", "vat_id"]
ARTIST_COLUMNS = ["id", "name", "email", "calendar_email", "phone", "calendar_id"]
EXPENSE_COLUMNS = [
    "id", "expense_date", "supplier_name", "vendor", "amount", "vat", "filename", "invoice_status",
]

TABS: dict[str, list[str]] = {
    "Events": EVENT_COLUMNS,
    "Clients": CLIENT_COLUMNS,
    "Artists": ARTIST_COLUMNS,
    "Expenses": EXPENSE_COLUMNS,
}


def cell(value: Any) -> str:
    """Render a value as a RAW sheet cell."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def to_rows(records: Sequence[Any], columns: list[str]) -> list[list[str]]:
    return [[cell(getattr(record, column, None)) for column in columns] for record in records]


class SpreadsheetSyncService:
    def __init__(
        self,
        sheets: GoogleSheetsService,
        entities: EntityRepository,
        connections: IntegrationConnectionRepository,
    ):
        self.sheets = sheets
        self.entities = entities
        self.connections = connections

    async def ensure_spreadsheet(self, agency_id: str, access_token: str) -> tuple[str, bool]:
        """
        Return (spreadsheet_id, created).

        The new id is stored insert-if-absent, so concurrent first runs all
        end up writing to whichever spreadsheet was recorded first.
        """
        connection = await self.connections.get(agency_id, SHEETS_CONNECTION)
        if connection and connection.config.get(SPREADSHEET_ID_KEY):
            return str(connection.config[SPREADSHEET_ID_KEY]), False

        created = await self.sheets.create_spreadsheet(
            access_token, f"Agency Backup ({agency_id})", list(TABS)
        )
        new_id = created["spreadsheetId"]
        stored_id = await self.connections.set_config_value_if_absent(
            agency_id, SHEETS_CONNECTION, SPREADSHEET_ID_KEY, new_id
        )
        if stored_id != new_id:
            logger.warning(
                "Concurrent spreadsheet creation, using the stored one",
                agency_id=agency_id,
                stored_spreadsheet_id=stored_id,
                discarded_spreadsheet_id=new_id,
            )
            return str(stored_id), False
        return new_id, True

    async def _load_tabs(self, agency_id: str) -> dict[str, list[list[str]]]:
        loaders: dict[str, Callable] = {
            "Events": self.entities.list_events,
            "Clients": self.entities.list_clients,
            "Artists": self.entities.list_artists,
            "Expenses": self.entities.list_expenses,
        }
        rows: dict[str, list[list[str]]] = {}
        for tab, columns in TABS.items():
            records = await loaders[tab](agency_id)
            rows[tab] = to_rows(records, columns)
        return rows

    async def full_resync(
        self,
        agency_id: str,
        access_token: str,
        payload: SpreadsheetFullResyncPayload | None = None,
    ) -> SpreadsheetResyncResult:
        spreadsheet_id, created = await self.ensure_spreadsheet(agency_id, access_token)
        tab_rows = await self._load_tabs(agency_id)

        counts: dict[str, int] = {}
        for tab, columns in TABS.items():
            rows = tab_rows[tab]
            await self.sheets.clear_range(access_token, spreadsheet_id, tab)
            await self.sheets.update_values(access_token, spreadsheet_id, f"{tab}!A1", [columns, *rows])
            counts[tab] = len(rows)

        logger.info(
            "Spreadsheet resynced",
            agency_id=agency_id,
            spreadsheet_id=spreadsheet_id,
            created=created,
            counts=counts,
        )
        return SpreadsheetResyncResult(
            spreadsheet_id=spreadsheet_id,
            spreadsheet_url=spreadsheet_url(spreadsheet_id),
            created=created,
            counts=counts,
        )

    async def upsert_entity(
        self, agency_id: str, access_token: str, payload: SpreadsheetEntityUpsertPayload
    ) -> SpreadsheetResyncResult:
        # Delegates to a full rewrite of every tab
        result = await self.full_resync(agency_id, access_token)
        result.upserted_entity_id = payload.entity_id or payload.event_id
        return result
