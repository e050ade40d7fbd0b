"""
Shared HTTP plumbing for provider REST clients (Calendar, Sheets, invoicing).

Retries with backoff only for idempotent methods by default; a POST that timed out may
already have created something upstream, so it is never replayed.
"""

import asyncio

import httpx

from agency_sync.config import settings
from agency_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
IDEMPOTENT_METHODS = {"GET", "HEAD", "PUT", "PATCH", "DELETE"}


class ProviderApiError(Exception):
    """Non-2xx answer (or unparseable body) from a provider API."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}


class ProviderHttpClient:
    """Base class wrapping an httpx.AsyncClient with retry and error decoding."""

    service_name = "provider"
    error_class: type[ProviderApiError] = ProviderApiError

    def __init__(self, client: httpx.AsyncClient | None = None, max_retries: int = MAX_RETRIES):
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.PROVIDER_REQUEST_TIMEOUT),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )
        self.max_retries = max(1, max_retries)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request_with_retry(
        self, method: str, url: str, *, retry: bool | None = None, **kwargs
    ) -> httpx.Response:
        """
        Execute an HTTP request, retrying on 429/5xx and network errors.

        Args:
            retry: Override the default, which retries idempotent methods only
        """
        if retry is None:
            retry = method.upper() in IDEMPOTENT_METHODS
        attempts = self.max_retries if retry else 1

        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < attempts:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        f"{self.service_name} API retrying request",
                        method=method,
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= attempts:
                    raise
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    f"{self.service_name} API request error, retrying",
                    method=method,
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError(f"{self.service_name} API retry loop exhausted")

    def _extract_error(self, error_data: dict) -> tuple[str, str]:
        """Pull (code, message) out of an error body; Google's shape by default."""
        error_info = error_data.get("error", {})
        if isinstance(error_info, dict):
            return str(error_info.get("code", "unknown")), error_info.get("message", "")
        return str(error_info), str(error_data.get("error_description", ""))

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Decode a provider response.

        Returns:
            dict: Parsed JSON body ({} for empty bodies)

        Raises:
            ProviderApiError (or the subclass's error_class) on any non-2xx status
        """
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error(f"Failed to parse {self.service_name} {operation} response", error=str(e))
                raise self.error_class(
                    f"Invalid response format: {e}", status_code=response.status_code
                ) from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            logger.error(
                f"{self.service_name} {operation} failed with non-JSON response",
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise self.error_class(
                f"{self.service_name} error (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from None

        error_code, error_message = self._extract_error(error_data)
        logger.error(
            f"{self.service_name} {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )
        raise self.error_class(
            f"{self.service_name} {operation} failed (HTTP {response.status_code}): "
            f"{error_message or error_code}",
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )

    def _bearer_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
