"""
Pydantic models and result types for compose sessions.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..common.exceptions import MailSealError
from ..keys.resolver import RecipientKeyMap


class ComposeAction(str, Enum):
    """What the compose session produces."""

    ENCRYPT = "encrypt"
    SIGN = "sign"


class SessionState(str, Enum):
    """States of a compose session."""

    IDLE = "idle"
    RESOLVING_RECIPIENTS = "resolving-recipients"
    CONFIRMING_KEY_TRUST = "confirming-key-trust"
    UNLOCKING_SIGNING_KEY = "unlocking-signing-key"
    BUILDING_PAYLOAD = "building-payload"
    ENCRYPTING = "encrypting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.SUCCEEDED, SessionState.FAILED, SessionState.CANCELED)


class AttachmentData(BaseModel):
    """A file attached to a message."""

    model_config = ConfigDict(frozen=True)

    filename: str = Field(..., min_length=1)
    content: bytes = b""
    mime_type: str = "application/octet-stream"

    @property
    def extension(self) -> str:
        _, dot, ext = self.filename.rpartition(".")
        return ext.lower() if dot else ""


class ComposeRequest(BaseModel):
    """Plaintext and options submitted for encryption or signing."""

    action: ComposeAction = ComposeAction.ENCRYPT
    message: str = ""
    subject: str = ""
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    attachments: list[AttachmentData] = Field(default_factory=list)
    sign_msg: bool = False
    sign_key_fpr: Optional[str] = None
    no_cache: bool = False
    pgp_mime: bool = False
    draft: bool = False

    @field_validator("to", "cc", mode="before")
    @classmethod
    def parse_addresses(cls, v: Any) -> list[str]:
        """Accept a comma-separated string or a list of addresses."""
        if isinstance(v, str):
            return [address.strip() for address in v.split(",") if address.strip()]
        return v

    @property
    def recipients(self) -> list[str]:
        return [*self.to, *self.cc]


class EditorOptions(BaseModel):
    """Initial content and behaviour of a compose session."""

    subject: str = ""
    sign_msg: Optional[bool] = None
    predefined_text: Optional[str] = None
    quoted_mail: Optional[str] = None
    quoted_mail_indent: bool = False
    quoted_mail_header: Optional[str] = None
    armored_draft: Optional[str] = None
    attachments: list[AttachmentData] = Field(default_factory=list)
    keep_attachments: bool = False


@dataclass
class EncryptedFile:
    """An attachment after encryption."""

    name: str
    content: bytes
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class ComposeResult:
    """Terminal result of a compose session."""

    state: SessionState
    armored: Optional[str] = None
    encrypted_files: list[EncryptedFile] = field(default_factory=list)
    subject: str = ""
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    error: Optional[MailSealError] = None

    @property
    def succeeded(self) -> bool:
        return self.state == SessionState.SUCCEEDED


@dataclass
class ComposeSession:
    """Live state of one compose operation."""

    keyring_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    options: EditorOptions = field(default_factory=EditorOptions)
    fingerprint_buffer: Optional[list[str]] = None
    recipient_map: Optional[RecipientKeyMap] = None
    state: SessionState = SessionState.IDLE
    result: Optional[ComposeResult] = None
    error: Optional[MailSealError] = None
    pending_failure: Optional[MailSealError] = None
    reason: Optional[str] = None

    @property
    def outcome(self) -> Optional[SessionState]:
        return self.state if self.state.terminal else None
