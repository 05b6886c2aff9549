"""
Key data model shared by the reconciler, resolver and crypto adapters.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class KeyValidity(str, Enum):
    """Validity of a primary key."""

    VALID = "valid"
    INVALID = "invalid"
    UNKNOWN = "unknown"


class KeyKind(str, Enum):
    """Whether key material contains secret parts."""

    PUBLIC = "public"
    PRIVATE = "private"


class ReconciliationDecision(str, Enum):
    """How a candidate key affects the local keyring."""

    FRESH_IMPORT = "FRESH_IMPORT"
    SILENT_UPDATE = "SILENT_UPDATE"
    CONFIRM_REQUIRED = "CONFIRM_REQUIRED"
    REJECTED = "REJECTED"
    UPDATED = "UPDATED"


class ImportOutcome(str, Enum):
    """Terminal outcome of an import flow."""

    IMPORTED = "IMPORTED"
    UPDATED = "UPDATED"
    REJECTED = "REJECTED"
    INVALIDATED = "INVALIDATED"


@dataclass(frozen=True)
class UserId:
    """A user identity bound to a key."""

    address: str
    name: str = ""

    @classmethod
    def parse(cls, uid: str) -> "UserId":
        """Split ``Name <address>`` into its parts."""
        uid = uid.strip()
        if "<" in uid and uid.endswith(">"):
            name, _, address = uid[:-1].rpartition("<")
            return cls(address=address.strip().lower(), name=name.strip().strip('"'))
        return cls(address=uid.lower())

    def __str__(self) -> str:
        if self.name:
            return f"{self.name} <{self.address}>"
        return self.address


@dataclass
class KeyInfo:
    """Identity and status attributes common to all key records."""

    fingerprint: str
    key_id: str = ""
    users: list[UserId] = field(default_factory=list)
    validity: KeyValidity = KeyValidity.UNKNOWN
    kind: KeyKind = KeyKind.PUBLIC
    created: Optional[datetime] = None
    last_modified: Optional[datetime] = None

    @property
    def addresses(self) -> list[str]:
        return [user.address for user in self.users]

    def has_address(self, address: str) -> bool:
        return address.strip().lower() in self.addresses

    def to_dict(self) -> dict[str, Any]:
        """Key details as sent to the presentation layer."""
        return {
            "fingerprint": self.fingerprint,
            "key_id": self.key_id,
            "users": [{"email": u.address, "name": u.name} for u in self.users],
            "validity": self.validity.value,
            "type": self.kind.value,
            "created": self.created.isoformat() if self.created else None,
            "last_modified": (
                self.last_modified.isoformat() if self.last_modified else None
            ),
        }


@dataclass
class CandidateKey(KeyInfo):
    """An unverified key obtained from import, rotation or remote lookup."""

    armored: str = ""


@dataclass
class StoredKeyRecord(KeyInfo):
    """A key held in the trusted local keyring."""

    can_encrypt: bool = True
    can_sign: bool = False

    @property
    def usable_for_encryption(self) -> bool:
        return self.validity == KeyValidity.VALID and self.can_encrypt


@dataclass
class ImportStatus:
    """Result reported by the keyring for an import or merge."""

    status: str
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in ("imported", "updated")


@dataclass
class Signature:
    """A signature found on decrypted or verified content."""

    valid: bool
    fingerprint: Optional[str] = None
    key_id: Optional[str] = None
    username: Optional[str] = None


@dataclass
class DecryptedContent:
    """Plaintext plus any signatures that were checked."""

    data: str
    signatures: list[Signature] = field(default_factory=list)


@dataclass
class UnlockedKey:
    """A private key whose passphrase has been confirmed."""

    fingerprint: str
    passphrase: str
