"""Tests for access token encryption and key rotation."""

import pytest
from cryptography.fernet import Fernet, InvalidToken

from finsync.core.encryption import decrypt_token, encrypt_token, get_cipher


@pytest.fixture(autouse=True)
def fresh_cipher():
    get_cipher.cache_clear()
    yield
    get_cipher.cache_clear()


class TestEncryption:
    def test_token_is_not_stored_in_plaintext(self):
        encrypted = encrypt_token("access-123")

        assert "access-123" not in encrypted
        assert decrypt_token(encrypted) == "access-123"

    def test_previous_key_still_decrypts(self, monkeypatch):
        old_key = Fernet.generate_key().decode()
        stored = Fernet(old_key.encode()).encrypt(b"old-token").decode()
        monkeypatch.setenv("ENCRYPTION_KEY_PREVIOUS", f"{Fernet.generate_key().decode()}, {old_key}")

        assert decrypt_token(stored) == "old-token"

    def test_unknown_key_is_rejected(self):
        stored = Fernet(Fernet.generate_key()).encrypt(b"foreign").decode()

        with pytest.raises(InvalidToken):
            decrypt_token(stored)

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("ENCRYPTION_KEY")

        with pytest.raises(ValueError):
            encrypt_token("access-123")
