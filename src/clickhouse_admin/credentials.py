"""Encryption of stored connection passwords.

Passwords are kept at rest as Fernet tokens (AES-128-CBC + HMAC). Plaintext
only exists in memory for the lifetime of the engine client built from it.
"""
import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import settings
from .errors import ConfigurationError


class CredentialVault:
    """Encrypts and decrypts connection secrets with a single Fernet key."""

    def __init__(self, key: Optional[str] = None, fallback_secret: Optional[str] = None):
        """Initialize the vault.

        Args:
            key: Fernet key (urlsafe base64, 32 bytes). Defaults to settings.
            fallback_secret: Secret to derive a key from when no key is set.
                Defaults to the JWT secret, so dev setups work out of the box.
        """
        raw = key if key is not None else settings.encryption_key
        if not raw:
            secret = fallback_secret if fallback_secret is not None else settings.jwt_secret
            raw = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest()).decode()
        try:
            self._fernet = Fernet(raw.encode() if isinstance(raw, str) else raw)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                "RBAC_ENCRYPTION_KEY is not a valid Fernet key",
                details={"variable": "RBAC_ENCRYPTION_KEY"}
            ) from e

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a stored password.

        Raises:
            ConfigurationError: If the token was produced with another key or is corrupt
        """
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise ConfigurationError(
                "Stored connection password cannot be decrypted with the configured key"
            ) from e
