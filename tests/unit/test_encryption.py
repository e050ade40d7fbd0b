"""
Test encryption service functionality.
"""

import pytest
from cryptography.fernet import Fernet

from agency_sync.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_oauth_tokens,
    decrypt_token,
    encrypt_token,
    validate_encryption_config,
)


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    monkeypatch.setattr("agency_sync.config.settings.ENCRYPTION_KEY", Fernet.generate_key().decode())


def test_basic_encryption_decryption():
    """Test that encryption and decryption work correctly."""
    encrypted = encrypt_token("fake_oauth_token_12345")

    assert isinstance(encrypted, bytes)
    assert b"fake_oauth_token" not in encrypted
    assert decrypt_token(encrypted) == "fake_oauth_token_12345"


def test_bytea_columns_arrive_as_memoryview():
    encrypted = encrypt_token("ya29.token")

    assert decrypt_token(memoryview(encrypted)) == "ya29.token"


def test_encryption_config_validation():
    assert validate_encryption_config() is True


def test_missing_key_fails_validation(monkeypatch):
    monkeypatch.setattr("agency_sync.config.settings.ENCRYPTION_KEY", None)

    assert validate_encryption_config() is False
    with pytest.raises(EncryptionError):
        encrypt_token("x")


def test_token_from_other_key_is_rejected(monkeypatch):
    encrypted = encrypt_token("secret")
    monkeypatch.setattr("agency_sync.config.settings.ENCRYPTION_KEY", Fernet.generate_key().decode())

    with pytest.raises(EncryptionError):
        decrypt_token(encrypted)


def test_empty_token_rejected():
    with pytest.raises(EncryptionError):
        encrypt_token("")


def test_decrypt_oauth_tokens_keeps_missing_columns_none():
    access, refresh = decrypt_oauth_tokens(encrypt_token("access"), None)

    assert access == "access"
    assert refresh is None


def test_old_key_still_decrypts_after_rotation(monkeypatch):
    old_key = Fernet.generate_key().decode()
    monkeypatch.setattr("agency_sync.config.settings.ENCRYPTION_KEY", old_key)
    written_before_rotation = encrypt_token("refresh-token")

    new_key = Fernet.generate_key().decode()
    monkeypatch.setattr("agency_sync.config.settings.ENCRYPTION_KEY", f"{new_key}, {old_key}")

    assert decrypt_token(written_before_rotation) == "refresh-token"
    written_after_rotation = encrypt_token("refresh-token")
    assert Fernet(new_key.encode()).decrypt(written_after_rotation) == b"refresh-token"


def test_malformed_key_is_reported(monkeypatch):
    monkeypatch.setattr("agency_sync.config.settings.ENCRYPTION_KEY", "not-a-fernet-key")

    assert validate_encryption_config() is False
