"""
Postgres repository for integration_tokens and integration_secrets.

Token columns are Fernet-encrypted BYTEA. The refresh write is a
compare-and-swap on the expiry that was read, so two dispatchers refreshing
the same credential cannot overwrite each other's result.
"""

from datetime import datetime

from agency_sync.db.helpers import execute_query, fetch_one, with_db_retry
from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.domain.sync_domain import ApiSecret, Credential, CredentialProvider
from agency_sync.services.infrastructure.encryption_service import (
    decrypt_oauth_tokens,
    encrypt_token,
)

logger = get_logger(__name__)


class CredentialRepository:
    """Persistence helpers for per-agency provider credentials."""

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_credential(
        self, agency_id: str, provider: CredentialProvider = CredentialProvider.GOOGLE
    ) -> Credential | None:
        query = """
            SELECT access_token, refresh_token, scope, token_type, expiry_date
            FROM integration_tokens
            WHERE agency_id = %s AND provider = %s
        """
        row = await fetch_one(query, (agency_id, str(provider)))
        if not row:
            return None

        access_token, refresh_token = decrypt_oauth_tokens(
            row["access_token"], row["refresh_token"]
        )
        return Credential(
            agency_id=agency_id,
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            scope=row["scope"],
            token_type=row["token_type"],
            expiry_timestamp=row["expiry_date"],
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def update_refreshed_token(
        self,
        agency_id: str,
        provider: CredentialProvider,
        *,
        expected_expiry: datetime | None,
        access_token: str,
        expiry_timestamp: datetime,
        scope: str | None = None,
        token_type: str | None = None,
    ) -> bool:
        """
        Store a refreshed access token only if nobody refreshed since we read.

        Returns:
            bool: False when the row's expiry no longer matches expected_expiry
        """
        query = """
            UPDATE integration_tokens
            SET access_token = %s,
                expiry_date = %s,
                scope = COALESCE(%s, scope),
                token_type = COALESCE(%s, token_type),
                updated_at = NOW()
            WHERE agency_id = %s
              AND provider = %s
              AND expiry_date IS NOT DISTINCT FROM %s
        """
        affected = await execute_query(
            query,
            (
                encrypt_token(access_token),
                expiry_timestamp,
                scope or None,
                token_type or None,
                agency_id,
                str(provider),
                expected_expiry,
            ),
        )
        if affected == 0:
            logger.info(
                "Refreshed token not stored, credential changed concurrently",
                agency_id=agency_id,
                provider=str(provider),
            )
        return affected > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_api_secret(
        self, agency_id: str, provider: CredentialProvider = CredentialProvider.INVOICING
    ) -> ApiSecret | None:
        query = """
            SELECT secret
            FROM integration_secrets
            WHERE agency_id = %s AND provider = %s
        """
        row = await fetch_one(query, (agency_id, str(provider)))
        if not row:
            return None

        secret = row["secret"] or {}
        return ApiSecret(
            agency_id=agency_id,
            provider=provider,
            client_id=str(secret.get("id") or ""),
            client_secret=str(secret.get("secret") or ""),
            base_url=secret.get("base_url"),
        )


credential_repository = CredentialRepository()
