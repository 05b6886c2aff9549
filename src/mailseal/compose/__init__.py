"""Compose sessions: payload assembly and the encryption flow."""

from .mime import ParsedMessage, build_mail, parse_message
from .models import (
    AttachmentData,
    ComposeAction,
    ComposeRequest,
    ComposeResult,
    ComposeSession,
    EditorOptions,
    EncryptedFile,
    SessionState,
)
from .orchestrator import ComposeOrchestrator

__all__ = [
    "AttachmentData",
    "ComposeAction",
    "ComposeOrchestrator",
    "ComposeRequest",
    "ComposeResult",
    "ComposeSession",
    "EditorOptions",
    "EncryptedFile",
    "ParsedMessage",
    "SessionState",
    "build_mail",
    "parse_message",
]
