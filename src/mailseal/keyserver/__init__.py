"""Remote key directories."""

from .hkp import HKPKeyLookup

__all__ = ["HKPKeyLookup"]
