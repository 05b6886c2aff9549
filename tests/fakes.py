"""
In-memory stand-ins for the collaborators of the mailseal core.
"""

import asyncio
from dataclasses import replace
from typing import Any, Callable, Optional

from mailseal.common.exceptions import EncryptionError, KeyLookupError, KeyValidationError
from mailseal.keys.models import (
    CandidateKey,
    DecryptedContent,
    ImportStatus,
    KeyValidity,
    Signature,
    StoredKeyRecord,
    UnlockedKey,
    UserId,
)

ALICE_FPR = "A" * 40
BOB_FPR = "B" * 40
CAROL_FPR = "C" * 40
OWN_FPR = "0" * 40


def stored_key(fingerprint: str, address: str, **kwargs: Any) -> StoredKeyRecord:
    kwargs.setdefault("validity", KeyValidity.VALID)
    return StoredKeyRecord(
        fingerprint=fingerprint,
        key_id=fingerprint[-16:],
        users=[UserId(address)],
        **kwargs,
    )


def candidate_key(fingerprint: str, address: str, **kwargs: Any) -> CandidateKey:
    kwargs.setdefault("validity", KeyValidity.VALID)
    kwargs.setdefault("armored", f"-----BEGIN PGP PUBLIC KEY BLOCK-----\n{fingerprint}")
    return CandidateKey(
        fingerprint=fingerprint,
        key_id=fingerprint[-16:],
        users=[UserId(address)],
        **kwargs,
    )


class FakeEngine:
    """Crypto engine that produces readable fake ciphertext."""

    def __init__(self) -> None:
        self.parsed: dict[str, list[CandidateKey]] = {}
        self.passphrases: dict[str, str] = {}
        self.encrypt_calls: list[tuple[str, list[str], Optional[UnlockedKey]]] = []
        self.file_calls: list[tuple[bytes, bool]] = []
        self.sign_calls: list[tuple[str, UnlockedKey]] = []
        self.failing_files: set[bytes] = set()
        self.decrypt_key = OWN_FPR
        self.plaintext = ""
        self.signatures: list[Signature] = []
        self.active_files = 0
        self.max_active_files = 0
        self.merge: Optional[Callable[[StoredKeyRecord, CandidateKey], StoredKeyRecord]] = None

    async def parse_key(self, armored: str) -> list[CandidateKey]:
        if armored not in self.parsed:
            raise KeyValidationError("No valid key found in the provided data")
        return self.parsed[armored]

    async def preview_merge(
        self, stored: StoredKeyRecord, candidate: CandidateKey
    ) -> StoredKeyRecord:
        if self.merge is not None:
            return self.merge(stored, candidate)
        return replace(
            stored,
            validity=candidate.validity,
            last_modified=candidate.last_modified or stored.last_modified,
        )

    async def encrypt(
        self,
        data: str,
        fingerprints: list[str],
        signing_key: Optional[UnlockedKey] = None,
    ) -> str:
        self.encrypt_calls.append((data, list(fingerprints), signing_key))
        return f"-----BEGIN PGP MESSAGE-----\n{data}\n-----END PGP MESSAGE-----"

    async def encrypt_file(
        self,
        content: bytes,
        fingerprints: list[str],
        signing_key: Optional[UnlockedKey] = None,
        armor: bool = False,
    ) -> bytes:
        self.active_files += 1
        self.max_active_files = max(self.max_active_files, self.active_files)
        try:
            await asyncio.sleep(0)
            self.file_calls.append((content, armor))
            if content in self.failing_files:
                raise EncryptionError("file encryption failed")
            return b"ENC:" + content
        finally:
            self.active_files -= 1

    async def decrypt(self, ciphertext: str, unlock: Any) -> DecryptedContent:
        await unlock(self.decrypt_key)
        return DecryptedContent(data=self.plaintext, signatures=list(self.signatures))

    async def decrypt_file(self, content: bytes, unlock: Any) -> bytes:
        await unlock(self.decrypt_key)
        return content.removeprefix(b"ENC:")

    async def sign(self, data: str, key: UnlockedKey) -> str:
        self.sign_calls.append((data, key))
        return f"-----BEGIN PGP SIGNED MESSAGE-----\n{data}"

    async def verify(self, signed_text: str) -> DecryptedContent:
        return DecryptedContent(data=self.plaintext, signatures=list(self.signatures))

    async def check_passphrase(self, fingerprint: str, passphrase: str) -> bool:
        return self.passphrases.get(fingerprint, "secret") == passphrase


class FakeKeyStore:
    """Keyring held in a dictionary."""

    def __init__(self, *keys: StoredKeyRecord, default: Optional[str] = None) -> None:
        self.keys: dict[str, StoredKeyRecord] = {key.fingerprint: key for key in keys}
        self.default = default
        self.imports: list[CandidateKey] = []
        self.fail_import: Optional[str] = None

    async def get_by_fingerprint(self, fingerprint: str) -> Optional[StoredKeyRecord]:
        return self.keys.get(fingerprint.upper())

    async def get_by_address(self, address: str) -> list[StoredKeyRecord]:
        return [key for key in self.keys.values() if key.has_address(address)]

    async def import_or_merge(self, candidate: CandidateKey) -> ImportStatus:
        self.imports.append(candidate)
        if self.fail_import:
            return ImportStatus("error", self.fail_import)
        status = "updated" if candidate.fingerprint in self.keys else "imported"
        self.keys[candidate.fingerprint] = StoredKeyRecord(
            fingerprint=candidate.fingerprint,
            key_id=candidate.key_id,
            users=list(candidate.users),
            validity=candidate.validity,
            last_modified=candidate.last_modified,
        )
        return ImportStatus(status)

    async def get_default_signing_fingerprint(self) -> Optional[str]:
        return self.default

    async def list_keys(self) -> list[StoredKeyRecord]:
        return list(self.keys.values())


class FakeLookup:
    """Key directory answering from a dictionary."""

    def __init__(self) -> None:
        self.keys: dict[str, CandidateKey] = {}
        self.calls: list[str] = []
        self.fail = False

    def add(self, address: str, key: CandidateKey) -> None:
        self.keys[address] = key

    async def lookup(self, address: str, keyring_id: str) -> Optional[CandidateKey]:
        self.calls.append(address)
        if self.fail:
            raise KeyLookupError("directory unreachable")
        return self.keys.get(address)


class FakeSurface:
    """An open surface driven by the test."""

    def __init__(self, kind: str, payload: dict[str, Any]) -> None:
        self.kind = kind
        self.payload = payload
        self.closed = False
        self.posts: list[tuple[str, dict[str, Any]]] = []
        self._on_message: Optional[Callable[[str, dict[str, Any]], None]] = None
        self._on_close: Optional[Callable[[], None]] = None

    def close(self) -> None:
        self.closed = True

    def on_close(self, callback: Callable[[], None]) -> None:
        self._on_close = callback

    def on_message(self, callback: Callable[[str, dict[str, Any]], None]) -> None:
        self._on_message = callback

    def post(self, name: str, data: Optional[dict[str, Any]] = None) -> None:
        self.posts.append((name, data or {}))

    def emit(self, name: str, data: Optional[dict[str, Any]] = None) -> None:
        """Send a user message to the core."""
        assert self._on_message is not None
        self._on_message(name, data or {})

    def user_close(self) -> None:
        """Close the surface from the user side."""
        self.closed = True
        if self._on_close is not None:
            self._on_close()


class FakeSurfaceHost:
    """
    Surface host with scripted answers.

    ``script`` maps a surface kind to a list of answers used in order. An
    answer is a ``(message, data)`` tuple or ``"close"``. Surfaces without
    a scripted answer stay open until the test drives them.
    """

    def __init__(self, **script: list[Any]) -> None:
        self.script: dict[str, list[Any]] = {k.replace("_", "-"): list(v) for k, v in script.items()}
        self.opened: list[FakeSurface] = []
        self.fail_open = False

    async def open(self, kind: str, payload: dict[str, Any]) -> FakeSurface:
        if self.fail_open:
            raise OSError("cannot open surface")
        surface = FakeSurface(kind, payload)
        self.opened.append(surface)
        answers = self.script.get(kind)
        if answers:
            answer = answers.pop(0)
            asyncio.get_running_loop().call_soon(self._answer, surface, answer)
        return surface

    @staticmethod
    def _answer(surface: FakeSurface, answer: Any) -> None:
        if surface.closed:
            return
        if answer == "close":
            surface.user_close()
        else:
            surface.emit(*answer)

    def kinds(self) -> list[str]:
        return [surface.kind for surface in self.opened]

    async def wait_for(self, kind: str, count: int = 1) -> FakeSurface:
        """Wait until ``count`` surfaces of ``kind`` were opened; return the last."""
        for _ in range(1000):
            matching = [s for s in self.opened if s.kind == kind]
            if len(matching) >= count:
                return matching[count - 1]
            await asyncio.sleep(0)
        raise AssertionError(f"no {kind} surface opened")


class RecordingView:
    """View port that records every event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event: str, payload: Optional[dict[str, Any]] = None) -> None:
        self.events.append((event, payload or {}))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def count(self, name: str) -> int:
        return self.names().count(name)

    def payloads(self, name: str) -> list[dict[str, Any]]:
        return [payload for event, payload in self.events if event == name]


class FakeSync:
    """Keyring sync hook that records triggers."""

    def __init__(self, fail: bool = False) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail = fail

    async def trigger(self, keyring_id: str, fingerprint: str, passphrase: str) -> None:
        self.calls.append((keyring_id, fingerprint))
        if self.fail:
            raise RuntimeError("sync failed")
