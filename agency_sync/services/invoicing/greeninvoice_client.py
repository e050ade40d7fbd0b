"""
GreenInvoice (Morning) REST client: short-lived bearer tokens and documents.
"""

from typing import Any
from urllib.parse import quote

from agency_sync.config import settings
from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.services.infrastructure.provider_http import (
    ProviderApiError,
    ProviderHttpClient,
)

logger = get_logger(__name__)

# Numeric document type codes used by the provider
DOCUMENT_TYPE_RECEIPT = 400
DOCUMENT_TYPE_PAYMENT_REQUEST = 320
DOCUMENT_TYPES = {
    "receipt": DOCUMENT_TYPE_RECEIPT,
    "payment_request": DOCUMENT_TYPE_PAYMENT_REQUEST,
}

# Provider document statuses that mean the document has been paid
PAID_DOCUMENT_STATUSES = {2, 400}


def document_type_for(doc_type: str | None) -> int:
    """Map an event's doc_type to the provider code; unknown kinds are payment requests."""
    return DOCUMENT_TYPES.get((doc_type or "").strip(), DOCUMENT_TYPE_PAYMENT_REQUEST)


class GreenInvoiceError(ProviderApiError):
    """Custom exception for GreenInvoice API errors."""


class GreenInvoiceClient(ProviderHttpClient):
    service_name = "GreenInvoice"
    error_class = GreenInvoiceError

    def _extract_error(self, error_data: dict) -> tuple[str, str]:
        return str(error_data.get("errorCode", "unknown")), str(error_data.get("errorMessage", ""))

    @staticmethod
    def _url(base_url: str | None, path: str) -> str:
        return f"{(base_url or settings.INVOICING_BASE_URL).rstrip('/')}{path}"

    async def get_token(self, client_id: str, client_secret: str, base_url: str | None = None) -> str:
        """
        Exchange the API id/secret for a bearer token.

        Raises:
            GreenInvoiceError: Credentials rejected or token missing from the answer
        """
        response = await self._request_with_retry(
            "POST",
            self._url(base_url, "/account/token"),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            json={"id": client_id, "secret": client_secret},
        )
        data = self._handle_api_response(response, "get_token")
        token = str(data.get("token") or "")
        if not token:
            raise GreenInvoiceError(
                "Token missing from invoicing provider response (bad id/secret?)",
                status_code=response.status_code,
            )
        return token

    async def create_document(
        self, token: str, document: dict[str, Any], base_url: str | None = None
    ) -> dict[str, Any]:
        response = await self._request_with_retry(
            "POST",
            self._url(base_url, "/documents"),
            headers=self._bearer_headers(token),
            json=document,
        )
        data = self._handle_api_response(response, "create_document")
        logger.info(
            "Invoicing document created",
            document_id=data.get("id"),
            document_number=data.get("number"),
            document_type=document.get("type"),
        )
        return data

    async def get_document(
        self, token: str, document_id: str, base_url: str | None = None
    ) -> dict[str, Any]:
        response = await self._request_with_retry(
            "GET",
            self._url(base_url, f"/documents/{quote(document_id, safe='')}"),
            headers=self._bearer_headers(token),
        )
        return self._handle_api_response(response, "get_document")


def document_status_label(document: dict[str, Any]) -> tuple[str, bool]:
    """
    Reduce a provider document to (label, paid).

    A document counts as paid when it carries payment lines or its status
    code is one of PAID_DOCUMENT_STATUSES; otherwise the label is the raw
    status code, or "open" when the provider sent none.
    """
    status = document.get("status")
    paid = bool(document.get("payment")) or status in PAID_DOCUMENT_STATUSES
    if paid:
        return "paid", True
    return (str(status) if status is not None else "open"), False
