"""
OAuth token manager: hands adapters a currently-valid access token.

Refreshes happen at most once per (agency, provider) at a time inside this
process (asyncio lock + re-check), and across processes the store write is a
compare-and-swap on the expiry that was read. The loser of a cross-process
race re-reads and returns the winner's token instead of overwriting it.
"""

import asyncio
from datetime import UTC, datetime

import httpx

from agency_sync.config import settings
from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.domain.sync_domain import Credential, CredentialProvider
from agency_sync.repositories.credential_repository import (
    CredentialRepository,
    credential_repository,
)
from agency_sync.services.google_oauth_service import GoogleOAuthError, GoogleOAuthService
from agency_sync.services.sync.errors import (
    ConfigurationError,
    CredentialsInvalidError,
    CredentialsMissingError,
    TransientProviderError,
)

logger = get_logger(__name__)


class OAuthTokenManager:
    """Returns valid access tokens, refreshing them shortly before expiry."""

    def __init__(
        self,
        repository: CredentialRepository | None = None,
        oauth_service: GoogleOAuthService | None = None,
        skew_seconds: int | None = None,
    ):
        self.repository = repository or credential_repository
        self.oauth_service = oauth_service or GoogleOAuthService()
        self.skew_seconds = (
            skew_seconds if skew_seconds is not None else settings.TOKEN_REFRESH_SKEW_SECONDS
        )
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, agency_id: str, provider: CredentialProvider) -> asyncio.Lock:
        key = (agency_id, str(provider))
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _load(self, agency_id: str, provider: CredentialProvider) -> Credential:
        credential = await self.repository.get_credential(agency_id, provider)
        if credential is None or not (credential.access_token or credential.refresh_token):
            raise CredentialsMissingError(
                f"No {provider} credential connected", agency_id=agency_id, provider=str(provider)
            )
        return credential

    def _is_usable(
        self, credential: Credential, now: datetime, rejected_token: str | None = None
    ) -> bool:
        if not credential.access_token or credential.access_token == rejected_token:
            return False
        return not credential.needs_refresh(self.skew_seconds, now)

    async def get_valid_access_token(
        self,
        agency_id: str,
        provider: CredentialProvider = CredentialProvider.GOOGLE,
        rejected_token: str | None = None,
    ) -> str:
        """
        Return an access token valid for at least the refresh skew.

        Args:
            rejected_token: A token the provider just answered 401 to; it is
                refreshed even if its stored expiry still looks fine.

        Raises:
            CredentialsMissingError: No credential stored for the agency/provider
            CredentialsInvalidError: The provider rejected the refresh token
            ConfigurationError: The OAuth client itself is not configured
            TransientProviderError: Token endpoint unreachable or answering 5xx
        """
        credential = await self._load(agency_id, provider)
        if self._is_usable(credential, datetime.now(UTC), rejected_token):
            return credential.access_token

        async with self._lock_for(agency_id, provider):
            # Another task may have refreshed while we waited for the lock
            credential = await self._load(agency_id, provider)
            if self._is_usable(credential, datetime.now(UTC), rejected_token):
                return credential.access_token

            return await self._refresh(credential, rejected_token)

    async def _refresh(self, credential: Credential, rejected_token: str | None = None) -> str:
        agency_id = credential.agency_id
        provider = credential.provider

        refreshable = bool(credential.refresh_token) and self.oauth_service.configured
        if not refreshable and credential.access_token and credential.access_token != rejected_token:
            # Nothing to refresh with; the stored token is all there is
            logger.warning(
                "Access token near expiry but cannot be refreshed",
                agency_id=agency_id,
                provider=str(provider),
                has_refresh_token=bool(credential.refresh_token),
                seconds_until_expiry=credential.seconds_until_expiry(),
            )
            return credential.access_token

        if not credential.refresh_token:
            raise CredentialsMissingError(
                "Access token expired and no refresh token stored",
                agency_id=agency_id,
                provider=str(provider),
            )
        if not self.oauth_service.configured:
            raise ConfigurationError(
                "OAuth client credentials are not configured",
                agency_id=agency_id,
                provider=str(provider),
            )

        logger.info(
            "Refreshing access token",
            agency_id=agency_id,
            provider=str(provider),
            seconds_until_expiry=credential.seconds_until_expiry(),
        )

        try:
            token_response = await self.oauth_service.refresh_access_token(
                credential.refresh_token
            )
        except GoogleOAuthError as e:
            if e.grant_revoked:
                logger.warning(
                    "Refresh token rejected by provider",
                    agency_id=agency_id,
                    provider=str(provider),
                    error_code=e.error_code,
                )
                raise CredentialsInvalidError(
                    f"Refresh token rejected ({e.error_code}); reconnect required",
                    agency_id=agency_id,
                    provider=str(provider),
                ) from e
            raise TransientProviderError(
                f"Token refresh failed: {e}", agency_id=agency_id, provider=str(provider)
            ) from e
        except httpx.RequestError as e:
            raise TransientProviderError(
                f"Token endpoint unreachable: {e}", agency_id=agency_id, provider=str(provider)
            ) from e

        stored = await self.repository.update_refreshed_token(
            agency_id,
            provider,
            expected_expiry=credential.expiry_timestamp,
            access_token=token_response.access_token,
            expiry_timestamp=token_response.expires_at,
            scope=token_response.scope,
            token_type=token_response.token_type,
        )
        if stored:
            return token_response.access_token

        # Lost the compare-and-swap; the stored token is at least as fresh as ours
        winner = await self._load(agency_id, provider)
        if winner.access_token:
            return winner.access_token
        return token_response.access_token
