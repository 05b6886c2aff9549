"""Version information for mailseal."""

__version__ = "0.1.0"
__version_info__ = tuple(int(x) for x in __version__.split("."))

# Release information
__title__ = "mailseal"
__description__ = "Trust reconciliation and secure compose for PGP mail"
__license__ = "MIT"


def get_version() -> str:
    """Return the current version string."""
    return __version__
