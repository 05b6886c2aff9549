"""
GnuPG backed crypto engine and keyring for mailseal.

This module provides the production implementations of the ``CryptoEngine``
and ``KeyStore`` interfaces using the python-gnupg library. All calls into
GnuPG block, so they are run in a worker thread.
"""

import asyncio
import logging
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Optional

import gnupg

from ..common.config import CryptoSettings
from ..common.exceptions import (
    CryptoError,
    DecryptionError,
    EncryptionError,
    KeyValidationError,
    NoKeyError,
    SignatureError,
)
from ..interfaces import UnlockCallback
from ..keys.models import (
    CandidateKey,
    DecryptedContent,
    ImportStatus,
    KeyInfo,
    KeyKind,
    KeyValidity,
    Signature,
    StoredKeyRecord,
    UnlockedKey,
    UserId,
)

logger = logging.getLogger(__name__)

# gpg --with-colons validity letters that make a key unusable
INVALID_TRUST = frozenset({"r", "e", "i", "d", "n"})

# import "ok" reasons: new user ids, new signatures, new subkeys
IMPORT_CHANGED_FLAGS = 2 | 4 | 8


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (ValueError, TypeError):
        return None


def _validity(key_data: dict) -> KeyValidity:
    if key_data.get("trust", "") in INVALID_TRUST:
        return KeyValidity.INVALID
    expires = _timestamp(key_data.get("expires"))
    if expires is not None and expires <= datetime.now(timezone.utc):
        return KeyValidity.INVALID
    return KeyValidity.VALID


def _last_modified(key_data: dict) -> Optional[datetime]:
    """Newest creation date among the primary key and its subkeys."""
    dates = [_timestamp(key_data.get("date"))]
    for info in (key_data.get("subkey_info") or {}).values():
        dates.append(_timestamp(info.get("date")))
    dates = [d for d in dates if d is not None]
    return max(dates) if dates else None


def _parse_key_data(key_data: dict, cls: type = StoredKeyRecord, **extra: Any) -> KeyInfo:
    """Parse key data from GnuPG into a key record."""
    caps = key_data.get("cap", "")
    kwargs: dict[str, Any] = dict(
        fingerprint=key_data.get("fingerprint", "").upper(),
        key_id=key_data.get("keyid", ""),
        users=[UserId.parse(uid) for uid in key_data.get("uids", [])],
        validity=_validity(key_data),
        kind=KeyKind.PRIVATE if key_data.get("type") == "sec" else KeyKind.PUBLIC,
        created=_timestamp(key_data.get("date")),
        last_modified=_last_modified(key_data),
    )
    if cls is StoredKeyRecord:
        kwargs["can_encrypt"] = "E" in caps or "e" in caps
        kwargs["can_sign"] = "S" in caps or "s" in caps
    kwargs.update(extra)
    return cls(**kwargs)


def _signatures(result: Any) -> list[Signature]:
    if not (result.fingerprint or result.key_id):
        return []
    return [
        Signature(
            valid=bool(result.valid),
            fingerprint=result.fingerprint,
            key_id=result.key_id,
            username=result.username,
        )
    ]


def create_gpg(settings: Optional[CryptoSettings] = None) -> gnupg.GPG:
    """
    Create a GnuPG handle from settings.

    Raises:
        CryptoError: If GnuPG cannot be initialized.
    """
    settings = settings or CryptoSettings()

    if settings.gnupg_home:
        gnupg_home = settings.gnupg_home
        os.makedirs(gnupg_home, exist_ok=True)
    else:
        gnupg_home = os.path.expanduser("~/.gnupg")

    options = []
    if not settings.use_agent:
        options.append("--no-use-agent")

    try:
        gpg = gnupg.GPG(
            gnupghome=gnupg_home,
            gpgbinary=settings.gpg_binary,
            options=options,
        )
        gpg.encoding = "utf-8"
    except (OSError, ValueError, RuntimeError) as e:
        raise CryptoError(f"Failed to initialize GnuPG: {e}") from e

    logger.info("Initialized GnuPG with home=%s", gnupg_home)
    return gpg


class GnuPGKeyStore:
    """The trusted keyring, kept in a GnuPG home directory."""

    def __init__(self, gpg: gnupg.GPG, default_key: Optional[str] = None) -> None:
        self._gpg = gpg
        self.default_key = default_key.upper() if default_key else None

    def _list(self, secret: bool = False, keys: Optional[list[str]] = None) -> list[StoredKeyRecord]:
        return [
            _parse_key_data(key_data)
            for key_data in self._gpg.list_keys(secret=secret, keys=keys)
        ]

    async def list_keys(self) -> list[StoredKeyRecord]:
        return await asyncio.to_thread(self._list)

    async def get_by_fingerprint(self, fingerprint: str) -> Optional[StoredKeyRecord]:
        keys = await asyncio.to_thread(self._list, False, [fingerprint])
        for key in keys:
            if key.fingerprint == fingerprint.upper():
                return key
        return None

    async def get_by_address(self, address: str) -> list[StoredKeyRecord]:
        keys = await self.list_keys()
        return [key for key in keys if key.has_address(address)]

    async def get_default_signing_fingerprint(self) -> Optional[str]:
        if self.default_key:
            return self.default_key
        secret = await asyncio.to_thread(self._list, True)
        for key in secret:
            if key.can_sign and key.validity == KeyValidity.VALID:
                return key.fingerprint
        return None

    async def import_or_merge(self, candidate: CandidateKey) -> ImportStatus:
        """
        Import or merge a public key.

        Returns:
            ImportStatus with ``imported`` for new keys, ``updated`` for
            merges and ``error`` when GnuPG refused the key.
        """
        try:
            result = await asyncio.to_thread(self._gpg.import_keys, candidate.armored)
        except (OSError, ValueError) as e:
            logger.error("Failed to import key %s: %s", candidate.fingerprint, e)
            return ImportStatus("error", str(e))

        if not result.fingerprints:
            message = result.results[0].get("text") if result.results else None
            logger.warning("Import of key %s failed: %s", candidate.fingerprint, message)
            return ImportStatus("error", message or "No keys imported")

        status = "imported" if result.imported else "updated"
        logger.info("Key %s %s", candidate.fingerprint, status)
        return ImportStatus(status)


class GnuPGEngine:
    """
    Crypto engine using GnuPG.

    Keys in the keyring were confirmed by the user before import, so
    encryption does not consult GnuPG's owner trust.
    """

    def __init__(self, gpg: gnupg.GPG) -> None:
        self._gpg = gpg

    async def parse_key(self, armored: str) -> list[CandidateKey]:
        """
        Parse armored key text without importing it.

        Raises:
            KeyValidationError: If the text holds no readable key.
        """
        try:
            scanned = await asyncio.to_thread(self._gpg.scan_keys_mem, armored)
        except (OSError, ValueError) as e:
            raise KeyValidationError(f"Could not read key: {e}") from e

        keys = [
            _parse_key_data(key_data, CandidateKey, armored=armored)
            for key_data in scanned
        ]
        if not keys:
            raise KeyValidationError("No valid key found in the provided data")
        return keys

    async def preview_merge(
        self, stored: StoredKeyRecord, candidate: CandidateKey
    ) -> StoredKeyRecord:
        """Merge both keys in a scratch keyring and return the result."""
        return await asyncio.to_thread(self._preview_merge, stored, candidate)

    def _preview_merge(
        self, stored: StoredKeyRecord, candidate: CandidateKey
    ) -> StoredKeyRecord:
        exported = self._gpg.export_keys(stored.fingerprint)
        if not exported:
            raise CryptoError(
                "Stored key could not be exported", {"fingerprint": stored.fingerprint}
            )

        with tempfile.TemporaryDirectory(prefix="mailseal-") as home:
            scratch = gnupg.GPG(gnupghome=home, gpgbinary=self._gpg.gpgbinary)
            scratch.import_keys(exported)
            result = scratch.import_keys(candidate.armored)
            if not result.fingerprints:
                raise KeyValidationError(
                    "Key could not be merged", {"fingerprint": candidate.fingerprint}
                )
            merged = scratch.list_keys(keys=[stored.fingerprint])

        if not merged:
            raise KeyValidationError(
                "Merged key not found", {"fingerprint": stored.fingerprint}
            )

        record = _parse_key_data(merged[0])
        changed = any(
            int(entry.get("ok") or 0) & IMPORT_CHANGED_FLAGS
            for entry in result.results
        )
        record.last_modified = (
            datetime.now(timezone.utc) if changed else stored.last_modified
        )
        return record

    async def _secret_fingerprint(self, data: Any) -> str:
        """Find the private key needed to decrypt ``data``."""
        key_ids = await asyncio.to_thread(self._gpg.get_recipients, data)
        secret = await asyncio.to_thread(self._gpg.list_keys, True)
        for key_id in key_ids:
            key_id = key_id.upper()
            for key_data in secret:
                ids = [key_data.get("keyid", "")]
                ids.extend(sub[0] for sub in key_data.get("subkeys", []))
                if any(i.upper().endswith(key_id) for i in ids if i):
                    return key_data["fingerprint"].upper()
        raise NoKeyError(
            "No private key found to decrypt this message.",
            {"key_ids": list(key_ids)},
            code="NO_PRIVATE_KEY_FOUND",
        )

    async def encrypt(
        self,
        data: str,
        fingerprints: list[str],
        signing_key: Optional[UnlockedKey] = None,
    ) -> str:
        result = await self._encrypt(data.encode("utf-8"), fingerprints, signing_key, True)
        logger.debug("Encrypted message for %d recipient(s)", len(fingerprints))
        return str(result)

    async def encrypt_file(
        self,
        content: bytes,
        fingerprints: list[str],
        signing_key: Optional[UnlockedKey] = None,
        armor: bool = False,
    ) -> bytes:
        result = await self._encrypt(content, fingerprints, signing_key, armor)
        return result.data

    async def _encrypt(
        self,
        data: bytes,
        fingerprints: list[str],
        signing_key: Optional[UnlockedKey],
        armor: bool,
    ) -> Any:
        try:
            result = await asyncio.to_thread(
                self._gpg.encrypt,
                data,
                fingerprints,
                sign=signing_key.fingerprint if signing_key else None,
                passphrase=signing_key.passphrase if signing_key else None,
                armor=armor,
                always_trust=True,
            )
        except (OSError, ValueError) as e:
            raise EncryptionError(f"Encryption failed: {e}") from e

        if not result.ok:
            raise EncryptionError(
                f"Encryption failed: {result.status}", {"status": result.status}
            )
        return result

    async def decrypt(self, ciphertext: str, unlock: UnlockCallback) -> DecryptedContent:
        data = ciphertext.encode("utf-8")
        result = await self._decrypt(data, unlock)
        return DecryptedContent(data=str(result), signatures=_signatures(result))

    async def decrypt_file(self, content: bytes, unlock: UnlockCallback) -> bytes:
        result = await self._decrypt(content, unlock)
        return result.data

    async def _decrypt(self, data: bytes, unlock: UnlockCallback) -> Any:
        fingerprint = await self._secret_fingerprint(data)
        key = await unlock(fingerprint)
        try:
            result = await asyncio.to_thread(
                self._gpg.decrypt, data, passphrase=key.passphrase, always_trust=True
            )
        except (OSError, ValueError) as e:
            raise DecryptionError(f"Decryption failed: {e}") from e

        if not result.ok:
            raise DecryptionError(
                f"Decryption failed: {result.status}", {"status": result.status}
            )
        logger.debug("Decrypted data with key %s", fingerprint)
        return result

    async def sign(self, data: str, key: UnlockedKey) -> str:
        try:
            result = await asyncio.to_thread(
                self._gpg.sign,
                data.encode("utf-8"),
                keyid=key.fingerprint,
                passphrase=key.passphrase,
                clearsign=True,
            )
        except (OSError, ValueError) as e:
            raise SignatureError(f"Signing failed: {e}") from e

        if not result.data:
            raise SignatureError(f"Signing failed: {result.status}")
        logger.debug("Signed data with key %s", key.fingerprint)
        return str(result)

    async def verify(self, signed_text: str) -> DecryptedContent:
        """Verify a cleartext signed message and return its text."""
        try:
            # gpg --decrypt on a cleartext signature outputs the text and
            # reports the signature
            result = await asyncio.to_thread(self._gpg.decrypt, signed_text.encode("utf-8"))
        except (OSError, ValueError) as e:
            raise SignatureError(f"Verification failed: {e}") from e

        if not result.data:
            raise SignatureError(f"Verification failed: {result.status}")
        signatures = _signatures(result)
        if signatures and not signatures[0].valid:
            logger.warning("Signature verification failed: %s", result.status)
        return DecryptedContent(data=str(result), signatures=signatures)

    async def check_passphrase(self, fingerprint: str, passphrase: str) -> bool:
        """Check a passphrase by producing a throwaway signature."""
        try:
            result = await asyncio.to_thread(
                self._gpg.sign,
                b"mailseal",
                keyid=fingerprint,
                passphrase=passphrase,
                detach=True,
            )
        except (OSError, ValueError) as e:
            logger.error("Passphrase check for %s failed: %s", fingerprint, e)
            return False
        return bool(result.data)
