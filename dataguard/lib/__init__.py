"""
Lib package for DataGuard.

Contains shared utilities:
- encryption.py: CryptoVault (AES-256-GCM with AES key wrap envelope)
- errors.py: Centralized error response builder with i18n
- exceptions.py: Exception hierarchy
- logging.py: structlog configuration
"""

from dataguard.lib.encryption import (
    Classification,
    CryptoVault,
    SealedPayload,
    VaultConfig,
    generate_master_key,
    key_id_from_key_bytes,
    load_master_key,
)
from dataguard.lib.errors import (
    DECRYPTION_FAILED,
    DLP_BLOCKED,
    DUPLICATE_CONTENT,
    ENCRYPTION_FAILED,
    FORBIDDEN,
    INTERNAL_ERROR,
    NOT_FOUND,
    STORE_UNAVAILABLE,
    VALIDATION_ERROR,
    build_error_response,
    error_response_for,
)
from dataguard.lib.exceptions import (
    AuthorizationError,
    ConfigurationError,
    DataGuardException,
    DecryptionError,
    DLPBlockedError,
    DuplicateContentError,
    EncryptionError,
    NotFoundError,
    StateError,
    StoreUnavailable,
    ValidationError,
)

__all__ = [
    # Encryption
    "Classification",
    "CryptoVault",
    "SealedPayload",
    "VaultConfig",
    "generate_master_key",
    "key_id_from_key_bytes",
    "load_master_key",
    # Errors
    "DECRYPTION_FAILED",
    "DLP_BLOCKED",
    "DUPLICATE_CONTENT",
    "ENCRYPTION_FAILED",
    "FORBIDDEN",
    "INTERNAL_ERROR",
    "NOT_FOUND",
    "STORE_UNAVAILABLE",
    "VALIDATION_ERROR",
    "build_error_response",
    "error_response_for",
    # Exceptions
    "AuthorizationError",
    "ConfigurationError",
    "DataGuardException",
    "DecryptionError",
    "DLPBlockedError",
    "DuplicateContentError",
    "EncryptionError",
    "NotFoundError",
    "StateError",
    "StoreUnavailable",
    "ValidationError",
]
