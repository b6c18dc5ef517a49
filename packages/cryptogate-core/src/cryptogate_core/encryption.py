"""Encryption at rest for wallet seeds and derived private keys."""
from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken

from .exceptions import GatewayConfigurationError

logger = logging.getLogger(__name__)


class SeedCipher:
    """Fernet wrapper used for every secret the ledger stores.

    The key comes from ``GatewaySettings.resolved_encryption_key()``; a
    ciphertext produced under one key cannot be read under another.
    """

    def __init__(self, key: bytes | str) -> None:
        if isinstance(key, str):
            key = key.encode()
        try:
            self._fernet = Fernet(key)
        except ValueError as e:
            raise GatewayConfigurationError(
                "Encryption key must be 32 url-safe base64-encoded bytes"
            ) from e

    @classmethod
    def from_settings(cls, settings) -> "SeedCipher":
        return cls(settings.resolved_encryption_key())

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: bytes | str) -> str:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode()
        return self._fernet.encrypt(plaintext).decode()

    def decrypt(self, token: str) -> bytes:
        try:
            return self._fernet.decrypt(token.encode())
        except InvalidToken as e:
            logger.error("Stored secret could not be decrypted with the configured key")
            raise GatewayConfigurationError(
                "Unable to decrypt stored secret: wrong encryption key or corrupted data"
            ) from e

    def encrypt_hex(self, data: bytes) -> str:
        """Encrypt raw key material, stored as hex inside the token."""
        return self.encrypt(data.hex())

    def decrypt_hex(self, token: str) -> bytes:
        return bytes.fromhex(self.decrypt(token).decode())


__all__ = ["SeedCipher"]
