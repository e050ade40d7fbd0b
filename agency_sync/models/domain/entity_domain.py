# models/domain/entity_domain.py
"""
Read projections of the business tables the engine synchronizes.

Only the fields the adapters read are modelled; the write-back columns are
listed in EVENT_WRITABLE_FIELDS / EXPENSE_WRITABLE_FIELDS.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel


class EntitySyncStatus(StrEnum):
    NOT_SYNCED = "not_synced"
    SYNCED = "synced"
    ERROR = "error"


class EventRecord(BaseModel):
    id: str
    agency_id: str
    business_name: str | None = None
    invoice_name: str | None = None
    event_date: date
    payment_date: date | None = None
    amount: Decimal | None = None
    artist_fee_amount: Decimal | None = None
    status: str | None = None
    notes: str | None = None
    doc_type: str | None = None
    artist_id: str | None = None
    client_id: str | None = None
    updated_at: datetime | None = None

    calendar_event_id: str | None = None
    calendar_event_link: str | None = None
    calendar_artist_event_id: str | None = None
    calendar_artist_event_link: str | None = None
    calendar_sync_status: str | None = None
    calendar_synced_at: datetime | None = None
    calendar_last_error: str | None = None

    invoice_sync_status: str | None = None
    invoice_document_id: str | None = None
    invoice_document_number: str | None = None
    invoice_document_url: str | None = None
    invoice_document_status: str | None = None
    invoice_last_error: str | None = None


class ClientRecord(BaseModel):
    id: str
    agency_id: str
    business_name: str | None = None
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    vat_id: str | None = None


class ArtistRecord(BaseModel):
    id: str
    agency_id: str
    name: str | None = None
    email: str | None = None
    calendar_email: str | None = None
    phone: str | None = None
    calendar_id: str | None = None

    def invite_email(self) -> str:
        """Calendar address wins over the contact address."""
        return (self.calendar_email or self.email or "").strip()


class ExpenseRecord(BaseModel):
    id: str
    agency_id: str
    filename: str | None = None
    vendor: str | None = None
    supplier_name: str | None = None
    amount: float | None = None
    vat: float | None = None
    expense_date: date | None = None
    invoice_status: str | None = None
    invoice_synced_at: datetime | None = None


# Columns the engine may write on events; anything else belongs to the CRUD app
EVENT_WRITABLE_FIELDS = frozenset(
    {
        "status",
        "event_date",
        "calendar_event_id",
        "calendar_event_link",
        "calendar_artist_event_id",
        "calendar_artist_event_link",
        "calendar_sync_status",
        "calendar_synced_at",
        "calendar_last_error",
        "invoice_sync_status",
        "invoice_document_id",
        "invoice_document_number",
        "invoice_document_url",
        "invoice_document_status",
        "invoice_last_error",
    }
)

EXPENSE_WRITABLE_FIELDS = frozenset({"invoice_status", "invoice_synced_at"})

ARTIST_WRITABLE_FIELDS = frozenset({"calendar_id"})
