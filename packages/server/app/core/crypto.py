"""
Encryption of stored credential material.

Every stored value carries an explicit encoding tag:

- ``enc:v1:<fernet token>``  Fernet ciphertext under ``Settings.crypto_key``
- ``plain:<value>``          plaintext, only written when no key is configured

Reading never infers the encoding from a decryption failure.
"""

from __future__ import annotations

import structlog
from cryptography.fernet import Fernet, InvalidToken

from app.core.errors import StorageError

log = structlog.get_logger()

ENCRYPTED_TAG = "enc:v1:"
PLAINTEXT_TAG = "plain:"


class CredentialCipher:
    """Seal and open tagged credential values."""

    def __init__(self, key: str):
        self._fernet = Fernet(key.encode()) if key else None
        if self._fernet is None:
            log.warning("crypto.no_key_configured", tag=PLAINTEXT_TAG)

    def seal(self, value: str) -> str:
        if self._fernet is None:
            return f"{PLAINTEXT_TAG}{value}"
        token = self._fernet.encrypt(value.encode()).decode()
        return f"{ENCRYPTED_TAG}{token}"

    def open(self, stored: str) -> str:
        if stored.startswith(ENCRYPTED_TAG):
            if self._fernet is None:
                raise StorageError("Encrypted credential present but no key is configured")
            try:
                return self._fernet.decrypt(stored[len(ENCRYPTED_TAG):].encode()).decode()
            except InvalidToken:
                raise StorageError("Stored credential could not be decrypted")
        if stored.startswith(PLAINTEXT_TAG):
            return stored[len(PLAINTEXT_TAG):]
        raise StorageError("Stored credential has no encoding tag")

    @staticmethod
    def is_sealed(stored: str | None) -> bool:
        return bool(stored) and stored.startswith((ENCRYPTED_TAG, PLAINTEXT_TAG))


def mask_secret(value: str) -> str:
    """Keep the last 8 characters visible, or the last 4 when the value is 8 characters or fewer."""
    visible = 8 if len(value) > 8 else 4
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]
