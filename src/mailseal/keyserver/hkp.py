"""
HKP key directory client.

Looks up public keys by mail address on an HKP key server using the
``op=get`` machine readable interface.
"""

import asyncio
import logging
from typing import Optional

import requests

from ..common.config import KeyServerSettings
from ..common.exceptions import KeyLookupError, KeyValidationError
from ..interfaces import CryptoEngine
from ..keys.models import CandidateKey

logger = logging.getLogger(__name__)

LOOKUP_PATH = "/pks/lookup"


class HKPKeyLookup:
    """
    Remote key lookup against a single HKP server.

    Every call issues at most one request. A missing key is reported as
    ``None``; transport failures raise ``KeyLookupError``.
    """

    def __init__(
        self,
        engine: CryptoEngine,
        settings: Optional[KeyServerSettings] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        """
        Initialize the lookup.

        Args:
            engine: Engine used to parse returned key material.
            settings: Key server settings.
            session: HTTP session to reuse.
        """
        self.engine = engine
        self.settings = settings or KeyServerSettings()
        self.session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self.settings.hkp_base_url

    def _fetch(self, address: str) -> Optional[str]:
        url = f"{self.base_url}{LOOKUP_PATH}"
        params = {"op": "get", "options": "mr", "search": address}
        try:
            response = self.session.get(url, params=params, timeout=self.settings.timeout)
        except requests.RequestException as e:
            raise KeyLookupError(
                f"Key server request failed: {e}", {"url": url}
            ) from e

        if response.status_code == 404:
            return None
        if not response.ok:
            raise KeyLookupError(
                f"Key server returned {response.status_code}",
                {"url": url, "status": response.status_code},
            )
        return response.text

    async def lookup(self, address: str, keyring_id: str) -> Optional[CandidateKey]:
        """
        Look up the public key for ``address``.

        Returns:
            The first returned key bound to the address, or None.

        Raises:
            KeyLookupError: If the server cannot be queried.
        """
        if not self.settings.hkp_lookup:
            return None

        armored = await asyncio.to_thread(self._fetch, address)
        if not armored or "BEGIN PGP PUBLIC KEY BLOCK" not in armored:
            logger.debug("No key found for %s on %s", address, self.base_url)
            return None

        try:
            keys = await self.engine.parse_key(armored)
        except KeyValidationError as e:
            logger.warning("Key server returned unreadable key for %s: %s", address, e)
            return None

        for key in keys:
            if key.has_address(address):
                logger.info(
                    "Found key %s for %s on %s", key.fingerprint, address, self.base_url
                )
                return key
        logger.debug("Key server returned no key bound to %s", address)
        return None

    def test_server(self, url: Optional[str] = None) -> None:
        """
        Check that a key server is reachable.

        Raises:
            KeyLookupError: If the server does not answer successfully.
        """
        url = (url or self.base_url).rstrip("/")
        try:
            response = self.session.get(url, timeout=self.settings.timeout)
        except requests.RequestException as e:
            raise KeyLookupError("Server not reachable", {"url": url}) from e
        if not response.ok:
            raise KeyLookupError(
                "Server not reachable", {"url": url, "status": response.status_code}
            )
