"""Fernet encryption for provider tokens carried inside the session cookie."""

import base64
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings


class TokenDecryptionError(ValueError):
    """Raised when a stored token cannot be decrypted with the configured key."""


def _get_fernet() -> Fernet:
    """Fernet for the configured ``ENCRYPTION_KEY``."""
    return _fernet_for_key(settings.ENCRYPTION_KEY)


@lru_cache(maxsize=4)
def _fernet_for_key(key: str) -> Fernet:
    # Keys that are not exactly 32 bytes are stretched with PBKDF2.
    if len(key) != 32:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"adinsights_connections_salt",
            iterations=100000,
        )
        derived = base64.urlsafe_b64encode(kdf.derive(key.encode()))
    else:
        derived = base64.urlsafe_b64encode(key.encode())

    return Fernet(derived)


def encrypt_token(token: str) -> str:
    """Encrypt a provider access/refresh token for storage in the session cookie.

    Empty tokens stay empty so absent refresh tokens round-trip unchanged.
    """
    if not token:
        return ""
    return _get_fernet().encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """Reverse ``encrypt_token``; raises ``TokenDecryptionError`` on a foreign or tampered value."""
    if not encrypted_token:
        return ""
    try:
        return _get_fernet().decrypt(encrypted_token.encode()).decode()
    except InvalidToken as exc:
        raise TokenDecryptionError("Stored token could not be decrypted.") from exc
