"""
Custom exceptions for mailseal.

This module defines all custom exceptions used throughout the application.
Every error carries a stable machine-readable ``code`` and a ``category`` so
that the presentation layer can render a single structured error.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Broad classes of failures."""

    VALIDATION = "validation"
    TRUST_CONFLICT = "trust_conflict"
    NO_KEY = "no_key"
    USER_CANCELED = "user_canceled"
    BUILD_FAILURE = "build_failure"
    IMPORT_ERROR = "import_error"
    LOOKUP_FAILURE = "lookup_failure"
    CRYPTO = "crypto"
    CONFIG = "config"
    GENERAL = "general"


class MailSealError(Exception):
    """Base exception for all mailseal errors."""

    code: str = "ERROR"
    category: ErrorCategory = ErrorCategory.GENERAL

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        code: Optional[str] = None,
    ) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error details.
            code: Optional override of the class-level error code.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for the view layer."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# Configuration Exceptions
class ConfigurationError(MailSealError):
    """Base exception for configuration-related errors."""

    code = "CONFIG_ERROR"
    category = ErrorCategory.CONFIG


class MissingConfigError(ConfigurationError):
    """Raised when a required configuration value is missing."""

    def __init__(
        self, config_key: str, details: Optional[dict[str, Any]] = None
    ) -> None:
        super().__init__(
            f"Missing required configuration: '{config_key}'", details)
        self.config_key = config_key


class InvalidConfigError(ConfigurationError):
    """Raised when a configuration value is invalid."""

    def __init__(
        self,
        config_key: str,
        value: Any,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize invalid config error.

        Args:
            config_key: The configuration key with invalid value.
            value: The invalid value.
            reason: Optional reason why the value is invalid.
            details: Optional dictionary with additional error details.
        """
        message = f"Invalid configuration value for '{config_key}': {value}"
        if reason:
            message += f" - {reason}"
        super().__init__(message, details)
        self.config_key = config_key
        self.value = value
        self.reason = reason


# Validation Exceptions
class KeyValidationError(MailSealError):
    """Raised when key material is malformed or invalid."""

    code = "KEY_INVALID"
    category = ErrorCategory.VALIDATION


class InvalidMessageError(MailSealError):
    """Raised when a message is malformed or fails integrity checks."""

    code = "INVALID_MESSAGE"
    category = ErrorCategory.VALIDATION


# Key Exceptions
class TrustConflictError(MailSealError):
    """Raised when a key change needs confirmation that cannot be obtained."""

    code = "TRUST_CONFLICT"
    category = ErrorCategory.TRUST_CONFLICT


class KeyImportError(MailSealError):
    """Raised when a key cannot be imported into the keyring."""

    code = "IMPORT_ERROR"
    category = ErrorCategory.IMPORT_ERROR


class KeyLookupError(MailSealError):
    """Raised when a remote key directory lookup fails."""

    code = "LOOKUP_FAILURE"
    category = ErrorCategory.LOOKUP_FAILURE


class NoKeyError(MailSealError):
    """Raised when no usable key is available for an operation."""

    code = "NO_KEY"
    category = ErrorCategory.NO_KEY


class NoKeyForRecipientError(NoKeyError):
    """Raised when one or more recipients have no valid encryption key."""

    code = "NO_KEY_FOR_RECIPIENT"

    def __init__(
        self,
        addresses: list[str],
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = dict(details or {})
        details.setdefault("addresses", list(addresses))
        super().__init__(
            "No valid encryption key for recipient address", details)
        self.addresses = list(addresses)


class NoDefaultKeyError(NoKeyError):
    """Raised when signing is requested but no signing key is configured."""

    code = "NO_DEFAULT_KEY_FOUND"

    def __init__(self, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__("No private key found to sign this message.", details)


# Cancellation
class UserCanceledError(MailSealError):
    """Raised when the user dismisses an interactive surface."""

    code = "USER_CANCELED"
    category = ErrorCategory.USER_CANCELED


class PasswordDialogCanceled(UserCanceledError):
    """Raised when the passphrase prompt is dismissed."""

    code = "PWD_DIALOG_CANCEL"

    def __init__(self, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__("Password dialog canceled.", details)


class EditorDialogCanceled(UserCanceledError):
    """Raised when the compose surface is closed."""

    code = "EDITOR_DIALOG_CANCEL"

    def __init__(self, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__("Editor dialog canceled.", details)


# Payload Exceptions
class MessageBuildError(MailSealError):
    """Raised when the message payload cannot be assembled."""

    code = "MIME_BUILD_FAILED"
    category = ErrorCategory.BUILD_FAILURE


# Cryptography Exceptions
class CryptoError(MailSealError):
    """Base exception for cryptography-related errors."""

    code = "CRYPTO_ERROR"
    category = ErrorCategory.CRYPTO


class EncryptionError(CryptoError):
    """Raised when encryption fails."""

    code = "ENCRYPT_ERROR"


class DecryptionError(CryptoError):
    """Raised when decryption fails."""

    code = "DECRYPT_ERROR"


class SignatureError(CryptoError):
    """Raised when signing or signature verification fails."""

    code = "SIGN_ERROR"


class UnlockError(CryptoError):
    """Raised when a private key cannot be unlocked."""

    code = "WRONG_PASSWORD"


class AttachmentEncryptionError(EncryptionError):
    """Raised after all attachments settled and at least one failed."""

    code = "ATTACHMENT_ENCRYPT_ERROR"

    def __init__(
        self,
        failures: dict[str, str],
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = dict(details or {})
        details.setdefault("failures", dict(failures))
        super().__init__(
            f"Encryption failed for {len(failures)} attachment(s)", details)
        self.failures = dict(failures)


# Programming errors
class PopupBusyError(RuntimeError):
    """Raised when a second popup is opened while one is still alive."""


def map_error(error: BaseException) -> dict[str, Any]:
    """
    Convert any exception into the structured form sent to the view.

    Args:
        error: The exception to convert.

    Returns:
        Dictionary with ``code`` and ``message`` keys.
    """
    if isinstance(error, MailSealError):
        return error.to_dict()
    return {"code": "INTERNAL_ERROR", "message": str(error), "details": {}}
