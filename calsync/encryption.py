"""Encryption utilities for OAuth tokens at rest."""

import os
import secrets
from typing import Optional, Union

from cryptography.hazmat.primitives.ciphers.aead import AESGCM


class EncryptionManager:
    """Handles encryption and decryption of sensitive data using AES-256-GCM."""

    def __init__(self, key: bytes):
        """Initialize with a 32-byte encryption key."""
        if len(key) < 32:
            raise ValueError("Encryption key must be at least 32 bytes")
        self._key = key[:32]
        self._aesgcm = AESGCM(self._key)

    def encrypt(self, plaintext: Union[str, bytes]) -> bytes:
        """
        Encrypt plaintext data.

        Returns:
            Encrypted data as bytes (nonce + ciphertext)
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        nonce = os.urandom(12)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext, None)
        return nonce + ciphertext

    def decrypt(self, encrypted_data: bytes) -> str:
        """Decrypt nonce + ciphertext back to a string."""
        if len(encrypted_data) < 12:
            raise ValueError("Invalid encrypted data: too short")

        nonce = encrypted_data[:12]
        ciphertext = encrypted_data[12:]
        plaintext = self._aesgcm.decrypt(nonce, ciphertext, None)

        return plaintext.decode("utf-8")


def generate_encryption_key() -> bytes:
    """Generate a new 32-byte encryption key."""
    return secrets.token_bytes(32)


# Global encryption manager instance (initialized after key is loaded)
_encryption_manager: EncryptionManager | None = None


def get_encryption_manager() -> EncryptionManager:
    """Get the global encryption manager instance."""
    global _encryption_manager
    if _encryption_manager is None:
        from calsync.config import get_encryption_key
        key = get_encryption_key()
        _encryption_manager = EncryptionManager(key)
    return _encryption_manager


def init_encryption_manager(key: bytes) -> EncryptionManager:
    """Initialize the global encryption manager with a specific key."""
    global _encryption_manager
    _encryption_manager = EncryptionManager(key)
    return _encryption_manager


def encrypt_value(value: str) -> bytes:
    """Convenience function to encrypt a value."""
    return get_encryption_manager().encrypt(value)


def decrypt_value(encrypted: bytes) -> str:
    """Convenience function to decrypt a value."""
    return get_encryption_manager().decrypt(encrypted)


def encrypt_optional(value: Optional[str]) -> Optional[bytes]:
    """Encrypt a value that may be absent (e.g. a missing refresh token)."""
    if value is None:
        return None
    return encrypt_value(value)


def decrypt_optional(encrypted: Optional[bytes]) -> Optional[str]:
    """Decrypt a value that may be absent."""
    if encrypted is None:
        return None
    return decrypt_value(encrypted)
