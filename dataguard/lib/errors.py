"""
Centralized Error Response Builder for DataGuard.

Provides consistent error codes, messages, and i18n-ready error responses
for the thin service layer that wraps the engine.

Error codes are constants that map to translatable message strings.
`error_response_for` turns any DataGuardException into the structured
dict the service layer returns, including whether the caller may retry.
"""

from __future__ import annotations

from typing import Any

from dataguard.lib.exceptions import (
    AuthorizationError,
    ConfigurationError,
    DataGuardException,
    DecryptionError,
    DLPBlockedError,
    DuplicateContentError,
    EncryptionError,
    NotFoundError,
    StoreUnavailable,
    ValidationError,
)

# =============================================================================
# Error Code Constants
# =============================================================================

VALIDATION_ERROR = "VALIDATION_ERROR"
FORBIDDEN = "FORBIDDEN"
NOT_FOUND = "NOT_FOUND"
DLP_BLOCKED = "DLP_BLOCKED"
DUPLICATE_CONTENT = "DUPLICATE_CONTENT"
ENCRYPTION_FAILED = "ENCRYPTION_FAILED"
DECRYPTION_FAILED = "DECRYPTION_FAILED"
STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
INTERNAL_ERROR = "INTERNAL_ERROR"

# =============================================================================
# i18n Message Registry
#
# Maps (error_code, language) -> translated message string.
# Falls back to "en" if a translation is missing for the requested language.
# =============================================================================

_ERROR_MESSAGES: dict[str, dict[str, str]] = {
    VALIDATION_ERROR: {
        "en": "Invalid input. Please check your request.",
        "de": "Ungueltige Eingabe. Bitte ueberpruefen Sie Ihre Anfrage.",
    },
    FORBIDDEN: {
        "en": "You do not have permission to perform this action.",
        "de": "Sie haben keine Berechtigung fuer diese Aktion.",
    },
    NOT_FOUND: {
        "en": "The requested resource was not found.",
        "de": "Die angeforderte Ressource wurde nicht gefunden.",
    },
    DLP_BLOCKED: {
        "en": "The content was blocked by a data loss prevention rule.",
        "de": "Der Inhalt wurde durch eine DLP-Regel blockiert.",
    },
    DUPLICATE_CONTENT: {
        "en": "Data with identical content already exists.",
        "de": "Daten mit identischem Inhalt existieren bereits.",
    },
    ENCRYPTION_FAILED: {
        "en": "The data could not be encrypted.",
        "de": "Die Daten konnten nicht verschluesselt werden.",
    },
    DECRYPTION_FAILED: {
        "en": "The stored data failed integrity verification.",
        "de": "Die gespeicherten Daten haben die Integritaetspruefung nicht bestanden.",
    },
    STORE_UNAVAILABLE: {
        "en": "The data store is temporarily unavailable. Please try again.",
        "de": "Der Datenspeicher ist voruebergehend nicht verfuegbar. Bitte erneut versuchen.",
    },
    INTERNAL_ERROR: {
        "en": "An internal error occurred. Please try again.",
        "de": "Ein interner Fehler ist aufgetreten. Bitte erneut versuchen.",
    },
}

_DEFAULT_LANG = "en"

# Most specific classes first: DecryptionError subclasses EncryptionError.
_EXCEPTION_CODES: tuple[tuple[type[DataGuardException], str], ...] = (
    (ValidationError, VALIDATION_ERROR),
    (AuthorizationError, FORBIDDEN),
    (NotFoundError, NOT_FOUND),
    (DLPBlockedError, DLP_BLOCKED),
    (DuplicateContentError, DUPLICATE_CONTENT),
    (DecryptionError, DECRYPTION_FAILED),
    (EncryptionError, ENCRYPTION_FAILED),
    (StoreUnavailable, STORE_UNAVAILABLE),
    (ConfigurationError, INTERNAL_ERROR),
)


# =============================================================================
# Error Response Builder
# =============================================================================


def get_error_message(code: str, lang: str = "en") -> str:
    """
    Get a translated error message for a given error code.

    Falls back to English if the requested language is not available.
    Falls back to a generic message if the error code is unknown.
    """
    messages = _ERROR_MESSAGES.get(code, {})
    return messages.get(lang, messages.get(_DEFAULT_LANG, "An error occurred."))


def build_error_response(
    code: str,
    message: str | None = None,
    details: dict[str, Any] | None = None,
    lang: str = "en",
) -> dict[str, Any]:
    """
    Build a structured error response dict.

    If no message is provided, the i18n-translated message for the error code
    and language is used automatically.

    Args:
        code: Error code constant (e.g. FORBIDDEN, DLP_BLOCKED)
        message: Optional override message (bypasses i18n lookup)
        details: Optional additional error details
        lang: ISO 639-1 language code for i18n message lookup

    Returns:
        Structured error dict: {"code": str, "message": str, "details": dict | None}
    """
    resolved_message = message if message is not None else get_error_message(code, lang)
    error: dict[str, Any] = {
        "code": code,
        "message": resolved_message,
    }
    if details is not None:
        error["details"] = details
    return error


def error_code_for(exc: BaseException) -> str:
    """Map an exception instance to its error code constant."""
    for exc_class, code in _EXCEPTION_CODES:
        if isinstance(exc, exc_class):
            return code
    return INTERNAL_ERROR


def error_response_for(exc: BaseException, lang: str = "en") -> dict[str, Any]:
    """
    Build the error response for an exception raised by the engine.

    Security-relevant failures never echo internal detail: decryption and
    authorization errors use the registry message only.
    """
    code = error_code_for(exc)
    details: dict[str, Any] = {"retryable": bool(getattr(exc, "retryable", False))}

    if isinstance(exc, DLPBlockedError):
        details["rule_id"] = exc.rule_id
        details["action"] = exc.action
    elif isinstance(exc, DuplicateContentError):
        details["existing_record_id"] = exc.existing_record_id
    elif isinstance(exc, NotFoundError):
        details["resource"] = exc.resource
    elif isinstance(exc, ValidationError):
        return build_error_response(code, message=str(exc), details=details, lang=lang)

    return build_error_response(code, details=details, lang=lang)


__all__ = [
    # Error code constants
    "VALIDATION_ERROR",
    "FORBIDDEN",
    "NOT_FOUND",
    "DLP_BLOCKED",
    "DUPLICATE_CONTENT",
    "ENCRYPTION_FAILED",
    "DECRYPTION_FAILED",
    "STORE_UNAVAILABLE",
    "INTERNAL_ERROR",
    # Functions
    "get_error_message",
    "build_error_response",
    "error_code_for",
    "error_response_for",
]
