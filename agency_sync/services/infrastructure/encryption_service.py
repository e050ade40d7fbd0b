"""
Fernet encryption for provider credentials at rest.

ENCRYPTION_KEY holds one key or a comma-separated list. The first key
encrypts; every listed key is tried on decrypt, so a new key can be put in
front while rows written under the old one stay readable.
"""

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from agency_sync.config import settings
from agency_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

PROBE_VALUE = "agency_sync_probe"


class EncryptionError(Exception):
    """Credential could not be encrypted or decrypted."""


def _configured_keys() -> list[str]:
    raw = settings.ENCRYPTION_KEY or ""
    return [key.strip() for key in raw.split(",") if key.strip()]


def _get_cipher() -> MultiFernet:
    """
    Raises:
        EncryptionError: No key configured or a key is malformed
    """
    keys = _configured_keys()
    if not keys:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return MultiFernet([Fernet(key.encode("utf-8")) for key in keys])
    except ValueError as e:
        logger.error("Invalid encryption key", key_count=len(keys), error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str) -> bytes:
    """Encrypt with the primary key; the result goes into a BYTEA column."""
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")
    return _get_cipher().encrypt(token.encode("utf-8"))


def decrypt_token(encrypted_token: bytes | memoryview) -> str:
    """
    Decrypt a stored credential. psycopg hands BYTEA back as memoryview.

    Raises:
        EncryptionError: Empty input, or no configured key opens the token
    """
    if isinstance(encrypted_token, memoryview):
        encrypted_token = encrypted_token.tobytes()
    if not encrypted_token or not isinstance(encrypted_token, bytes):
        raise EncryptionError("Encrypted token must be non-empty bytes")

    try:
        return _get_cipher().decrypt(encrypted_token).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed", key_count=len(_configured_keys()))
        raise EncryptionError("Invalid or corrupted token") from e


def validate_encryption_config() -> bool:
    try:
        return decrypt_token(encrypt_token(PROBE_VALUE)) == PROBE_VALUE
    except EncryptionError as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False


def decrypt_oauth_tokens(
    encrypted_access: bytes | None, encrypted_refresh: bytes | None = None
) -> tuple[str | None, str | None]:
    """Decrypt an access/refresh pair; NULL columns stay None."""
    access_token = decrypt_token(encrypted_access) if encrypted_access else None
    refresh_token = decrypt_token(encrypted_refresh) if encrypted_refresh else None
    return access_token, refresh_token
