"""Credential secret encryption.

Provider API keys (user-provided secrets and the official keys of
OFFICIAL_* providers) are stored Fernet-encrypted. A fallback key can be
configured during rotation: new values are encrypted with the primary key,
old values still decrypt with either.
"""

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from .config import Settings, get_settings_instance
from .exceptions import SecretEncryptionError
from .logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX_LENGTH = 8


def key_prefix(secret: str) -> str:
    """Short, non-reversible display prefix for a secret ("sk-abc12...")."""
    return secret[:KEY_PREFIX_LENGTH] + "..." if len(secret) > KEY_PREFIX_LENGTH else secret[:2] + "..."


class SecretEncryptionService:
    """Service for encrypting and decrypting credential secrets."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings_instance()

        if not settings.secret_encryption_key:
            raise SecretEncryptionError(
                "encryption key not configured; set AGENTU_SECRET_ENCRYPTION_KEY"
            )

        keys = [settings.secret_encryption_key]
        if settings.secret_encryption_key_fallback:
            keys.append(settings.secret_encryption_key_fallback)
        try:
            self.fernet = MultiFernet([Fernet(key.encode()) for key in keys])
        except ValueError as e:
            raise SecretEncryptionError(f"invalid encryption key: {e}") from e

    def encrypt(self, secret: str) -> str:
        """Encrypt a plaintext secret for storage.

        Raises:
            SecretEncryptionError: If the secret is empty.
        """
        if not secret:
            raise SecretEncryptionError("cannot encrypt an empty secret")
        return self.fernet.encrypt(secret.encode()).decode()

    def decrypt(self, encrypted_secret: str) -> str:
        """Decrypt a stored secret.

        Raises:
            SecretEncryptionError: If the value is empty or was not produced
                with one of the configured keys.
        """
        if not encrypted_secret:
            raise SecretEncryptionError("cannot decrypt an empty secret")
        try:
            return self.fernet.decrypt(encrypted_secret.encode()).decode()
        except InvalidToken as e:
            logger.error("Failed to decrypt credential secret: invalid token or key")
            raise SecretEncryptionError("decryption failed: invalid token or key") from e

    def rotate(self, encrypted_secret: str) -> str:
        """Re-encrypt a stored secret under the primary key."""
        try:
            return self.fernet.rotate(encrypted_secret.encode()).decode()
        except InvalidToken as e:
            raise SecretEncryptionError("rotation failed: invalid token or key") from e


# Global encryption service instance
_secret_encryption_service: SecretEncryptionService | None = None


def get_secret_encryption_service() -> SecretEncryptionService:
    """Get the global secret encryption service instance.

    Raises:
        SecretEncryptionError: If the service cannot be initialized
    """
    global _secret_encryption_service  # noqa: PLW0603

    if _secret_encryption_service is None:
        _secret_encryption_service = SecretEncryptionService()

    return _secret_encryption_service
