"""Encryption at rest for RouterOS API secrets and PPP passwords.

Device API passwords and customer PPP secrets are stored Fernet-encrypted
(AES-128-CBC with HMAC authentication); plaintext only exists in memory while
dialing a device or pushing a ``/ppp/secret`` to it.

Lab environments may run without a configured key: a fixed key is derived from
the lab sentinel so rows written in one run remain readable in the next.
Staging and production refuse the sentinel.
"""

import base64
import hashlib
import logging
from typing import Final

from cryptography.fernet import Fernet, InvalidToken

from mikrops.domain.exceptions import ConfigError, ErrorKind

logger = logging.getLogger(__name__)

INSECURE_LAB_KEY: Final[str] = "INSECURE_LAB_KEY_DO_NOT_USE_IN_PRODUCTION"


class EncryptionError(ConfigError):
    """Base exception for encryption/decryption errors."""


class InvalidEncryptionKeyError(EncryptionError):
    """Raised when the configured key is malformed or not allowed here."""


class DecryptionError(EncryptionError):
    """Raised when a stored secret cannot be decrypted (wrong key, tampered row)."""

    kind = ErrorKind.INTERNAL


def _lab_key() -> bytes:
    digest = hashlib.sha256(INSECURE_LAB_KEY.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class CredentialEncryption:
    """Encrypt and decrypt stored credentials.

    Example:
        crypto = CredentialEncryption(settings.encryption_key, settings.environment)

        device.encrypted_secret = crypto.encrypt(request.password)
        endpoint_password = crypto.decrypt(device.encrypted_secret)
    """

    def __init__(self, encryption_key: str, environment: str = "lab") -> None:
        """Initialize credential encryption.

        Raises:
            InvalidEncryptionKeyError: Key malformed, or the lab sentinel outside lab
        """
        self.environment = environment
        self._fernet = Fernet(self._resolve_key(encryption_key))

    def _resolve_key(self, encryption_key: str) -> bytes:
        if encryption_key == INSECURE_LAB_KEY:
            if self.environment != "lab":
                raise InvalidEncryptionKeyError(
                    f"Insecure lab encryption key not allowed in {self.environment}. "
                    "Set MIKROPS_ENCRYPTION_KEY."
                )
            logger.warning("Using insecure lab encryption key; stored secrets are not protected")
            return _lab_key()

        key = encryption_key.encode("utf-8")
        if not validate_encryption_key(encryption_key):
            raise InvalidEncryptionKeyError(
                "Invalid encryption key format. Must be a base64-encoded 32-byte Fernet key "
                "(see generate_encryption_key())"
            )
        return key

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored secret.

        Raises:
            DecryptionError: Wrong key or tampered data
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            # Never log the ciphertext or key
            logger.error("Credential decryption failed", exc_info=False)
            raise DecryptionError(
                "Failed to decrypt stored credential (wrong encryption key or tampered data)"
            ) from e


def generate_encryption_key() -> str:
    """Generate a new Fernet key suitable for ``MIKROPS_ENCRYPTION_KEY``."""
    return Fernet.generate_key().decode("utf-8")


def validate_encryption_key(key: str) -> bool:
    try:
        Fernet(key.encode("utf-8"))
    except (ValueError, TypeError):
        return False
    return True
