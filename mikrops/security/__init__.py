"""Security module for the MikrOps service.

- crypto: Fernet encryption of device secrets and PPP passwords
- auth: JWT bearer-token validation and tenant resolution
"""

from mikrops.security.auth import (
    TenantContext,
    TokenValidator,
    extract_bearer_token,
)
from mikrops.security.crypto import (
    CredentialEncryption,
    DecryptionError,
    EncryptionError,
    InvalidEncryptionKeyError,
    generate_encryption_key,
    validate_encryption_key,
)

__all__ = [
    # Authentication
    "TenantContext",
    "TokenValidator",
    "extract_bearer_token",
    # Cryptography
    "CredentialEncryption",
    "EncryptionError",
    "DecryptionError",
    "InvalidEncryptionKeyError",
    "generate_encryption_key",
    "validate_encryption_key",
]
