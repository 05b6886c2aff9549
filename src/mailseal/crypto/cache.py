"""
In-memory passphrase cache.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class _CacheEntry:
    secret: str
    expires_at: float


class MemoryPassphraseCache:
    """
    Caches unlocked passphrases for a limited time.

    Entries expire on a monotonic clock and are never written to disk.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}

    def get(self, fingerprint: str) -> Optional[str]:
        entry = self._entries.get(fingerprint.upper())
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            logger.debug("Cached passphrase for %s expired", fingerprint)
            del self._entries[fingerprint.upper()]
            return None
        return entry.secret

    def put(self, fingerprint: str, secret: str, ttl: float) -> None:
        """
        Store a passphrase.

        Args:
            fingerprint: Fingerprint of the unlocked key.
            secret: The passphrase.
            ttl: Time to live in seconds.
        """
        self._entries[fingerprint.upper()] = _CacheEntry(
            secret=secret, expires_at=self._clock() + ttl
        )

    def delete(self, fingerprint: str) -> None:
        self._entries.pop(fingerprint.upper(), None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
