"""
Recipient resolution.

Maps recipient addresses to usable encryption keys. The local keyring is
consulted first; addresses without a usable key get exactly one remote
directory lookup per resolution pass.
"""

import logging
from typing import Callable, Iterable, Iterator, Optional

from ..common.exceptions import MailSealError
from ..interfaces import KeyLookup, KeyStore
from .models import StoredKeyRecord
from .reconciler import KeyReconciler

logger = logging.getLogger(__name__)


def sort_and_dedup(fingerprints: Iterable[str]) -> list[str]:
    """Return the fingerprints upper-cased, deduplicated and sorted."""
    return sorted({fpr.upper() for fpr in fingerprints if fpr})


class RecipientKeyMap:
    """
    Recipient address to key fingerprints.

    Holds exactly one entry per distinct address. Addresses are compared
    case-insensitively; the first spelling is kept as the key.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, ...]] = {}
        self._canonical: dict[str, str] = {}

    def set(self, address: str, fingerprints: Iterable[str]) -> None:
        canonical = self._canonical.setdefault(address.strip().lower(), address.strip())
        self._entries[canonical] = tuple(sort_and_dedup(fingerprints))

    def __getitem__(self, address: str) -> tuple[str, ...]:
        return self._entries[self._canonical[address.strip().lower()]]

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and address.strip().lower() in self._canonical

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RecipientKeyMap):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"RecipientKeyMap({self._entries!r})"

    def items(self) -> list[tuple[str, tuple[str, ...]]]:
        return list(self._entries.items())

    def missing(self) -> list[str]:
        """Addresses that resolved to no key."""
        return [address for address, fprs in self._entries.items() if not fprs]

    def fingerprints(self, addresses: Optional[Iterable[str]] = None) -> list[str]:
        """Flattened, deduplicated and sorted fingerprints."""
        if addresses is None:
            selected = self._entries.values()
        else:
            selected = [self[address] for address in addresses]
        return sort_and_dedup(fpr for fprs in selected for fpr in fprs)


def dedup_addresses(addresses: Iterable[str]) -> list[str]:
    """Deduplicate addresses case-insensitively, keeping input order."""
    seen: set[str] = set()
    result = []
    for address in addresses:
        address = address.strip()
        if not address or address.lower() in seen:
            continue
        seen.add(address.lower())
        result.append(address)
    return result


class RecipientResolver:
    """Resolves recipient addresses to key fingerprints."""

    def __init__(
        self,
        store: KeyStore,
        reconciler: KeyReconciler,
        lookup: Optional[KeyLookup] = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.lookup = lookup

    async def usable_keys(self, address: str) -> list[StoredKeyRecord]:
        records = await self.store.get_by_address(address)
        return [record for record in records if record.usable_for_encryption]

    async def resolve(
        self,
        addresses: Iterable[str],
        keyring_id: str,
        on_import: Optional[Callable[[str], None]] = None,
    ) -> RecipientKeyMap:
        """
        Resolve every address to its usable key fingerprints.

        An address that cannot be resolved maps to an empty entry; deciding
        whether that blocks the operation is left to the caller.

        Args:
            addresses: Recipient addresses.
            keyring_id: Keyring to resolve against.
            on_import: Called with the address before a looked-up key is
                reconciled into the keyring.

        Returns:
            RecipientKeyMap with one entry per distinct address.
        """
        key_map = RecipientKeyMap()
        for address in dedup_addresses(addresses):
            keys = await self.usable_keys(address)
            if not keys:
                keys = await self._lookup_and_import(address, keyring_id, on_import)
            key_map.set(address, (key.fingerprint for key in keys))

        logger.debug(
            "Resolved %d recipient(s), %d without key",
            len(key_map),
            len(key_map.missing()),
        )
        return key_map

    async def lookup_key(
        self, address: str, keyring_id: str
    ) -> list[StoredKeyRecord]:
        """
        Look up ``address`` remotely and import what is found.

        Returns:
            The usable keys for ``address`` after the lookup.
        """
        await self._lookup_and_import(address, keyring_id)
        return await self.usable_keys(address)

    async def _lookup_and_import(
        self,
        address: str,
        keyring_id: str,
        on_import: Optional[Callable[[str], None]] = None,
    ) -> list[StoredKeyRecord]:
        if self.lookup is None:
            return []

        try:
            candidate = await self.lookup.lookup(address, keyring_id)
        except Exception as e:
            logger.warning("Key lookup for %s failed: %s", address, e)
            return []

        if candidate is None:
            logger.debug("No key found for %s in key directory", address)
            return []

        # an existing (unusable) record makes this a possible rotation
        rotation = bool(await self.store.get_by_address(address))
        if on_import is not None:
            on_import(address)
        try:
            await self.reconciler.import_candidate(candidate, rotation=rotation)
        except MailSealError as e:
            logger.warning("Key import after auto locate failed for %s: %s", address, e)
            return []

        return await self.usable_keys(address)
