"""
Status events sent from the core to the presentation layer.
"""

import logging
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ViewEvent(str, Enum):
    """Events understood by the presentation layer."""

    SET_INIT_DATA = "set-init-data"
    DECRYPT_IN_PROGRESS = "decrypt-in-progress"
    DECRYPT_END = "decrypt-end"
    DECRYPT_FAILED = "decrypt-failed"
    ENCRYPT_IN_PROGRESS = "encrypt-in-progress"
    ENCRYPT_END = "encrypt-end"
    ENCRYPT_FAILED = "encrypt-failed"
    ERROR_MESSAGE = "error-message"
    SET_TEXT = "set-text"
    SET_ATTACHMENT = "set-attachment"
    KEY_UPDATE = "key-update"
    SHOW_PWD_DIALOG = "show-pwd-dialog"
    HIDE_PWD_DIALOG = "hide-pwd-dialog"


class LoggingView:
    """View port that writes events to the log. Used by the CLI."""

    def __init__(self, name: str = "mailseal.view") -> None:
        self._logger = logging.getLogger(name)

    def emit(self, event: str, payload: Optional[dict[str, Any]] = None) -> None:
        payload = payload or {}
        if event == ViewEvent.ERROR_MESSAGE.value:
            error = payload.get("error", {})
            self._logger.error("%s: %s", error.get("code"), error.get("message"))
        else:
            # keep message bodies out of the log
            self._logger.debug("%s %s", event, sorted(payload))
