"""
Invoicing adapter: issues provider documents for events and expenses.

The provider authenticates with a per-agency id/secret pair (stored in
integration_secrets) exchanged for a short-lived bearer token per job.
"""

import math
from datetime import UTC, date, datetime
from typing import Any

from agency_sync.config import settings
from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.domain.entity_domain import EntitySyncStatus, ExpenseRecord
from agency_sync.models.domain.job_payloads import (
    DocumentCreatePayload,
    DocumentCreateResult,
    DocumentStatusPayload,
    DocumentStatusResult,
    ExpensesSyncPayload,
    ExpensesSyncResult,
)
from agency_sync.models.domain.sync_domain import ApiSecret, CredentialProvider
from agency_sync.repositories.credential_repository import CredentialRepository
from agency_sync.repositories.entity_repository import EntityRepository
from agency_sync.services.invoicing.greeninvoice_client import (
    DOCUMENT_TYPE_RECEIPT,
    GreenInvoiceClient,
    GreenInvoiceError,
    document_status_label,
    document_type_for,
)
from agency_sync.services.sync.errors import (
    CredentialsInvalidError,
    CredentialsMissingError,
    ValidationError,
)

logger = get_logger(__name__)

DEFAULT_CLIENT_NAME = "Client"
DEFAULT_SUPPLIER_NAME = "Supplier"
LINE_DESCRIPTION_MAX = 200


def _valid_amount(value: Any) -> float | None:
    """Positive finite amount, or None."""
    if value is None:
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(amount) or amount <= 0:
        return None
    return amount


class InvoicingService:
    def __init__(
        self,
        client: GreenInvoiceClient,
        entities: EntityRepository,
        credentials: CredentialRepository,
        currency: str | None = None,
        language: str | None = None,
    ):
        self.client = client
        self.entities = entities
        self.credentials = credentials
        self.currency = currency or settings.INVOICING_CURRENCY
        self.language = language or settings.INVOICING_LANGUAGE

    async def _authenticate(self, agency_id: str) -> tuple[ApiSecret, str]:
        secret = await self.credentials.get_api_secret(agency_id, CredentialProvider.INVOICING)
        if secret is None or not secret.is_complete():
            raise CredentialsMissingError(
                "Invoicing credentials missing (connect the invoicing account first)",
                agency_id=agency_id,
                provider=str(CredentialProvider.INVOICING),
            )
        try:
            token = await self.client.get_token(
                secret.client_id, secret.client_secret, secret.base_url
            )
        except GreenInvoiceError as e:
            if e.status_code is None or e.status_code == 429 or not 400 <= e.status_code < 500:
                raise
            raise CredentialsInvalidError(
                f"Invoicing provider rejected the stored id/secret: {e}",
                agency_id=agency_id,
                provider=str(CredentialProvider.INVOICING),
            ) from e
        return secret, token

    async def create_document(
        self, agency_id: str, payload: DocumentCreatePayload
    ) -> DocumentCreateResult:
        event = await self.entities.get_event(agency_id, payload.event_id)
        if event is None:
            raise ValidationError(f"Event {payload.event_id} not found", agency_id=agency_id)

        amount = _valid_amount(event.amount)
        if amount is None:
            raise ValidationError(
                f"Event {event.id} has no positive amount to invoice", agency_id=agency_id
            )

        secret, token = await self._authenticate(agency_id)

        client = await self.entities.get_client(agency_id, event.client_id) if event.client_id else None
        artist = await self.entities.get_artist(agency_id, event.artist_id) if event.artist_id else None

        event_date = event.event_date.isoformat()
        document_type = document_type_for(event.doc_type)

        line_description = f"Event {event_date} · {event.business_name or ''}"
        if artist and artist.name:
            line_description += f" · {artist.name}"

        client_block: dict[str, Any] = {
            "name": (client.business_name if client else None)
            or event.invoice_name
            or event.business_name
            or DEFAULT_CLIENT_NAME,
            "emails": [client.email] if client and client.email else [],
        }
        if client and client.phone:
            client_block["phone"] = client.phone
        if client and client.address:
            client_block["address"] = client.address

        document: dict[str, Any] = {
            "type": document_type,
            "description": f"Event {event_date} · {event.business_name or ''}",
            "lang": self.language,
            "currency": self.currency,
            "client": client_block,
            "income": [
                {
                    "description": line_description[:LINE_DESCRIPTION_MAX],
                    "quantity": 1,
                    "price": amount,
                    "currency": self.currency,
                }
            ],
        }
        if document_type == DOCUMENT_TYPE_RECEIPT:
            payment_date = (event.payment_date or event.event_date).isoformat()
            document["payment"] = [
                {"price": amount, "currency": self.currency, "date": payment_date, "type": "credit"}
            ]

        created = await self.client.create_document(token, document, secret.base_url)

        result = DocumentCreateResult(
            document_id=str(created["id"]) if created.get("id") else None,
            document_number=str(created["number"]) if created.get("number") else None,
            document_url=(created.get("url") or {}).get("origin"),
            document_type=document_type,
        )
        await self.entities.update_event(
            agency_id,
            event.id,
            {
                "invoice_sync_status": str(EntitySyncStatus.SYNCED),
                "invoice_document_id": result.document_id,
                "invoice_document_number": result.document_number,
                "invoice_document_url": result.document_url,
                "invoice_last_error": None,
            },
        )
        return result

    async def refresh_document_status(
        self, agency_id: str, payload: DocumentStatusPayload
    ) -> DocumentStatusResult:
        """Pull the provider-side state of an event's document; paid documents mark the event paid."""
        event = await self.entities.get_event(agency_id, payload.event_id)
        if event is None:
            raise ValidationError(f"Event {payload.event_id} not found", agency_id=agency_id)

        if not event.invoice_document_id:
            logger.info("Event has no invoicing document yet", agency_id=agency_id, event_id=event.id)
            return DocumentStatusResult(event_id=event.id, event_status=event.status)

        secret, token = await self._authenticate(agency_id)
        document = await self.client.get_document(token, event.invoice_document_id, secret.base_url)
        label, paid = document_status_label(document)

        fields: dict[str, Any] = {"invoice_document_status": label, "invoice_last_error": None}
        if paid:
            fields["status"] = "paid"
        await self.entities.update_event(agency_id, event.id, fields)

        logger.info(
            "Invoicing document status refreshed",
            agency_id=agency_id,
            event_id=event.id,
            document_status=label,
        )
        return DocumentStatusResult(
            event_id=event.id,
            document_id=event.invoice_document_id,
            document_status=label,
            paid=paid,
            event_status="paid" if paid else event.status,
        )

    def _expense_document(self, expense: ExpenseRecord, amount: float) -> dict[str, Any]:
        supplier = (expense.supplier_name or expense.vendor or "").strip() or DEFAULT_SUPPLIER_NAME
        expense_date = (expense.expense_date or date.today()).isoformat()
        description = f"Expense: {supplier} · {expense.filename or expense_date}"
        return {
            "type": DOCUMENT_TYPE_RECEIPT,
            "description": description,
            "date": expense_date,
            "lang": self.language,
            "currency": self.currency,
            "client": {"name": supplier},
            "income": [
                {
                    "description": description[:LINE_DESCRIPTION_MAX],
                    "quantity": 1,
                    "price": amount,
                    "currency": self.currency,
                }
            ],
        }

    async def sync_expenses(self, agency_id: str, payload: ExpensesSyncPayload) -> ExpensesSyncResult:
        """
        Push every not-yet-synced (or previously failed) expense.

        Each expense is independent: an invalid amount or a provider error
        marks that expense as error and the batch continues.
        """
        secret, token = await self._authenticate(agency_id)
        expenses = await self.entities.list_expenses(
            agency_id, statuses=(str(EntitySyncStatus.NOT_SYNCED), str(EntitySyncStatus.ERROR))
        )

        synced = errored = 0
        for expense in expenses:
            amount = _valid_amount(expense.amount)
            if amount is None:
                logger.warning(
                    "Expense skipped, invalid amount",
                    agency_id=agency_id,
                    expense_id=expense.id,
                    amount=str(expense.amount),
                )
                await self.entities.update_expense(
                    agency_id, expense.id, {"invoice_status": str(EntitySyncStatus.ERROR)}
                )
                errored += 1
                continue

            try:
                await self.client.create_document(
                    token, self._expense_document(expense, amount), secret.base_url
                )
            except Exception as e:
                logger.warning(
                    "Expense document failed",
                    agency_id=agency_id,
                    expense_id=expense.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self.entities.update_expense(
                    agency_id, expense.id, {"invoice_status": str(EntitySyncStatus.ERROR)}
                )
                errored += 1
                continue

            await self.entities.update_expense(
                agency_id,
                expense.id,
                {
                    "invoice_status": str(EntitySyncStatus.SYNCED),
                    "invoice_synced_at": datetime.now(UTC),
                },
            )
            synced += 1

        logger.info(
            "Expenses synced",
            agency_id=agency_id,
            synced=synced,
            errored=errored,
            total=len(expenses),
        )
        return ExpensesSyncResult(synced=synced, errored=errored, total=len(expenses))
