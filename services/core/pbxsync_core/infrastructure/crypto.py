"""Encryption of tenant credentials at rest.

SSH and PBX database passwords are stored Fernet-encrypted on the
``tenants`` row and decrypted only when a tunnel is about to be opened.

Usage:
    key = CredentialCipher.generate_key()  # Store this in ENCRYPTION_KEY
    cipher = CredentialCipher(key)

    tenant.ssh_password_encrypted = cipher.encrypt("s3cret")
    password = cipher.decrypt(tenant.ssh_password_encrypted)
"""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from pbxsync_core.config import Settings, get_settings


class InvalidKeyError(Exception):
    """Raised when an invalid encryption key is provided."""

    pass


class DecryptionError(Exception):
    """Raised when a stored credential cannot be decrypted."""

    pass


class CredentialCipher:
    """Fernet wrapper for tenant secrets."""

    def __init__(self, key: str):
        """Initialize with a Fernet key.

        Args:
            key: A valid Fernet key (base64-encoded 32-byte key).

        Raises:
            InvalidKeyError: If the key is empty or malformed.
        """
        if not key:
            raise InvalidKeyError("Encryption key cannot be empty")

        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise InvalidKeyError(f"Invalid encryption key: {e}")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CredentialCipher":
        settings = settings or get_settings()
        return cls(settings.encryption_key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        token = self._fernet.encrypt(plaintext.encode("utf-8"))
        return token.decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored credential.

        Raises:
            DecryptionError: If the token was produced with another key or
                has been tampered with.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError(f"Failed to decrypt credential: {e}")

    def decrypt_optional(self, ciphertext: Optional[str]) -> Optional[str]:
        """Decrypt a nullable column, passing ``None`` through."""
        if ciphertext is None:
            return None
        return self.decrypt(ciphertext)
