"""
Refresh-token grant against Google's token endpoint.

The consent flow that first stores the tokens lives in the web app; the
engine only trades stored refresh tokens for new access tokens.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from agency_sync.config import settings
from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.services.infrastructure.provider_http import (
    MAX_RETRIES,
    ProviderApiError,
    ProviderHttpClient,
)

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
TOKEN_REQUEST_TIMEOUT = 10.0

# Google omits expires_in on some responses; an hour is its standard lifetime
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

# OAuth error codes meaning the grant itself is dead
FATAL_GRANT_ERRORS = {"invalid_grant", "invalid_client", "unauthorized_client"}


class GoogleOAuthError(ProviderApiError):
    """Token endpoint refused the grant or answered with an error."""

    @property
    def grant_revoked(self) -> bool:
        """True when retrying cannot help (revoked/expired refresh token, bad client)."""
        if self.error_code in FATAL_GRANT_ERRORS:
            return True
        return self.status_code in (400, 401)


@dataclass(slots=True)
class TokenResponse:
    access_token: str
    expires_in: int
    expires_at: datetime
    scope: str | None = None
    token_type: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any], issued_at: datetime | None = None) -> "TokenResponse":
        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        issued_at = issued_at or datetime.now(UTC)
        return cls(
            access_token=data.get("access_token") or "",
            expires_in=expires_in,
            expires_at=issued_at + timedelta(seconds=expires_in),
            scope=data.get("scope") or None,
            token_type=data.get("token_type") or None,
        )


class GoogleOAuthService(ProviderHttpClient):
    """
    Exchanges refresh tokens for access tokens.

    The refresh grant has no side effects beyond issuing a token, so unlike
    other POSTs it is retried on 429/5xx and network errors.
    """

    service_name = "Google OAuth"
    error_class = GoogleOAuthError

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        client: httpx.AsyncClient | None = None,
        max_retries: int = MAX_RETRIES,
    ):
        super().__init__(client or httpx.AsyncClient(timeout=TOKEN_REQUEST_TIMEOUT), max_retries)
        self.client_id = client_id if client_id is not None else settings.GOOGLE_CLIENT_ID
        self.client_secret = (
            client_secret if client_secret is not None else settings.GOOGLE_CLIENT_SECRET
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """
        Raises:
            GoogleOAuthError: Google rejected the grant or answered with an error
            httpx.RequestError: Token endpoint unreachable after retries
        """
        if not self.configured:
            raise GoogleOAuthError("Google OAuth client not configured", error_code="not_configured")

        response = await self._request_with_retry(
            "POST",
            GOOGLE_TOKEN_URL,
            retry=True,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        token = TokenResponse.from_payload(self._handle_api_response(response, "refresh_token"))
        if not token.access_token:
            raise GoogleOAuthError(
                "Token refresh response missing access_token", status_code=response.status_code
            )

        logger.info(
            "Google access token refreshed",
            expires_in=token.expires_in,
            scope_count=len(token.scope.split()) if token.scope else 0,
        )
        return token
