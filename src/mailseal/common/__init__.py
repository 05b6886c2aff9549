"""Shared configuration and error types for mailseal."""

from .config import Settings, get_settings, reload_settings
from .exceptions import ErrorCategory, MailSealError, map_error

__all__ = [
    "ErrorCategory",
    "MailSealError",
    "Settings",
    "get_settings",
    "map_error",
    "reload_settings",
]
