"""Crypto engine adapters and the passphrase cache."""

from .cache import MemoryPassphraseCache

__all__ = ["MemoryPassphraseCache"]
