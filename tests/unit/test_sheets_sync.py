import pytest

from agency_sync.models.domain.job_payloads import SpreadsheetEntityUpsertPayload
from agency_sync.services.sheets.sheets_sync_service import (
    EVENT_COLUMNS,
    SpreadsheetSyncService,
    TABS,
)


@pytest.fixture
def spreadsheet(fake_sheets, entity_store, connection_store):
    return SpreadsheetSyncService(fake_sheets, entity_store, connection_store)


@pytest.mark.asyncio
async def test_first_resync_creates_spreadsheet_and_writes_tabs(spreadsheet, fake_sheets, connection_store):
    result = await spreadsheet.full_resync("agency-1", "tok")

    assert result.created is True
    assert result.spreadsheet_id == "sheet-1"
    assert result.spreadsheet_url == "https://docs.google.com/spreadsheets/d/sheet-1/edit"
    assert result.counts == {"Events": 1, "Clients": 1, "Artists": 1, "Expenses": 0}

    events = fake_sheets.values[("sheet-1", "Events")]
    assert events[0] == EVENT_COLUMNS
    assert events[1][:3] == ["event-1", "2026-03-14", "Club Haifa"]
    assert events[1][EVENT_COLUMNS.index("amount")] == "2500.00"
    assert fake_sheets.cleared == [("sheet-1", tab) for tab in TABS]

    connection = await connection_store.get("agency-1", "sheets")
    assert connection.config["spreadsheet_id"] == "sheet-1"


@pytest.mark.asyncio
async def test_resync_reuses_spreadsheet_and_drops_deleted_rows(spreadsheet, fake_sheets, entity_store):
    await spreadsheet.full_resync("agency-1", "tok")
    del entity_store.clients["client-1"]

    result = await spreadsheet.full_resync("agency-1", "tok")

    assert result.created is False
    assert fake_sheets.created == 1
    assert fake_sheets.values[("sheet-1", "Clients")] == [TABS["Clients"]]


@pytest.mark.asyncio
async def test_concurrent_creation_converges_on_stored_id(spreadsheet, fake_sheets, connection_store):
    original = connection_store.set_config_value_if_absent

    async def someone_else_won(agency_id, provider, key, value):
        await original(agency_id, provider, key, "sheet-winner")
        return await original(agency_id, provider, key, value)

    connection_store.set_config_value_if_absent = someone_else_won

    spreadsheet_id, created = await spreadsheet.ensure_spreadsheet("agency-1", "tok")

    assert (spreadsheet_id, created) == ("sheet-winner", False)


@pytest.mark.asyncio
async def test_entity_upsert_rewrites_everything(spreadsheet, fake_sheets):
    result = await spreadsheet.upsert_entity(
        "agency-1", "tok", SpreadsheetEntityUpsertPayload(event_id="event-1")
    )

    assert result.upserted_entity_id == "event-1"
    assert len(fake_sheets.cleared) == len(TABS)
