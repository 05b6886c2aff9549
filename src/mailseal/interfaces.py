"""
Collaborator interfaces required by the mailseal core.

The core only talks to the outside world through these protocols. The
production implementations live in ``mailseal.crypto``, ``mailseal.keyserver``
and ``mailseal.view``; tests provide in-memory fakes.
"""

from typing import Any, Awaitable, Callable, Optional, Protocol

from .keys.models import (
    CandidateKey,
    DecryptedContent,
    ImportStatus,
    StoredKeyRecord,
    UnlockedKey,
)

# Called by the engine with the fingerprint of the private key it needs.
UnlockCallback = Callable[[str], Awaitable[UnlockedKey]]

MessageCallback = Callable[[str, dict[str, Any]], None]
CloseCallback = Callable[[], None]


class CryptoEngine(Protocol):
    """Cryptographic primitives."""

    async def parse_key(self, armored: str) -> list[CandidateKey]:
        """Parse armored key text; raises ``KeyValidationError``."""
        ...

    async def preview_merge(
        self, stored: StoredKeyRecord, candidate: CandidateKey
    ) -> StoredKeyRecord:
        """Return ``stored`` as it would look after merging ``candidate``."""
        ...

    async def encrypt(
        self,
        data: str,
        fingerprints: list[str],
        signing_key: Optional[UnlockedKey] = None,
    ) -> str: ...

    async def encrypt_file(
        self,
        content: bytes,
        fingerprints: list[str],
        signing_key: Optional[UnlockedKey] = None,
        armor: bool = False,
    ) -> bytes: ...

    async def decrypt(
        self, ciphertext: str, unlock: UnlockCallback
    ) -> DecryptedContent: ...

    async def decrypt_file(self, content: bytes, unlock: UnlockCallback) -> bytes: ...

    async def sign(self, data: str, key: UnlockedKey) -> str: ...

    async def verify(self, signed_text: str) -> DecryptedContent: ...

    async def check_passphrase(self, fingerprint: str, passphrase: str) -> bool: ...


class KeyStore(Protocol):
    """The trusted local keyring."""

    async def get_by_fingerprint(
        self, fingerprint: str
    ) -> Optional[StoredKeyRecord]: ...

    async def get_by_address(self, address: str) -> list[StoredKeyRecord]: ...

    async def import_or_merge(self, candidate: CandidateKey) -> ImportStatus: ...

    async def get_default_signing_fingerprint(self) -> Optional[str]: ...

    async def list_keys(self) -> list[StoredKeyRecord]: ...


class KeyLookup(Protocol):
    """Remote key directory. Single shot, no internal retry."""

    async def lookup(
        self, address: str, keyring_id: str
    ) -> Optional[CandidateKey]: ...


class PassphraseCache(Protocol):
    def get(self, fingerprint: str) -> Optional[str]: ...

    def put(self, fingerprint: str, secret: str, ttl: float) -> None: ...


class KeyringSync(Protocol):
    """Keeps remote copies of the keyring consistent after an unlock."""

    async def trigger(
        self, keyring_id: str, fingerprint: str, passphrase: str
    ) -> None: ...


class SurfaceHandle(Protocol):
    """An open modal surface."""

    def close(self) -> None: ...

    def on_close(self, callback: CloseCallback) -> None: ...

    def on_message(self, callback: MessageCallback) -> None: ...

    def post(self, name: str, data: Optional[dict[str, Any]] = None) -> None: ...


class SurfaceHost(Protocol):
    """Opens modal surfaces (dialogs, popups, prompts)."""

    async def open(self, kind: str, payload: dict[str, Any]) -> SurfaceHandle: ...


class ViewPort(Protocol):
    """One-way status channel to the presentation layer."""

    def emit(self, event: str, payload: Optional[dict[str, Any]] = None) -> None: ...


