"""
At-rest encryption for gateway access tokens.

New tokens are encrypted with ENCRYPTION_KEY. Keys listed in
ENCRYPTION_KEY_PREVIOUS (comma separated) still decrypt tokens stored
before a key rotation.
"""

import os
from functools import lru_cache

from cryptography.fernet import Fernet, MultiFernet
from dotenv import load_dotenv

load_dotenv()


def _load_keys() -> list[str]:
    primary = os.getenv("ENCRYPTION_KEY")
    if not primary:
        raise ValueError(
            "ENCRYPTION_KEY environment variable is required. "
            "Generate one with cryptography.fernet.Fernet.generate_key()"
        )
    previous = os.getenv("ENCRYPTION_KEY_PREVIOUS", "")
    return [primary] + [key.strip() for key in previous.split(",") if key.strip()]


@lru_cache
def get_cipher() -> MultiFernet:
    return MultiFernet([Fernet(key.encode()) for key in _load_keys()])


def encrypt_token(plaintext: str) -> str:
    return get_cipher().encrypt(plaintext.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """
    Decrypt a stored access token.

    Raises:
        cryptography.fernet.InvalidToken: no configured key matches
    """
    return get_cipher().decrypt(encrypted_token.encode()).decode()
