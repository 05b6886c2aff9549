"""
Unlock broker.

Provides a usable private key for signing or decryption. The passphrase
comes from the cache when allowed, otherwise the user is prompted through
a password surface.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional

from ..common.config import SecuritySettings
from ..common.exceptions import PasswordDialogCanceled, UnlockError
from ..interfaces import CryptoEngine, KeyringSync, PassphraseCache, SurfaceHost
from ..popup import PopupKind, PopupSlot
from .models import UnlockedKey

logger = logging.getLogger(__name__)


class UnlockReason(str, Enum):
    """Why a key is being unlocked, shown by the password prompt."""

    DECRYPT = "PWD_DIALOG_REASON_DECRYPT"
    SIGN = "PWD_DIALOG_REASON_SIGN"
    CREATE_DRAFT = "PWD_DIALOG_REASON_CREATE_DRAFT"


class UnlockBroker:
    """Obtains unlocked private keys on behalf of one keyring."""

    def __init__(
        self,
        engine: CryptoEngine,
        cache: PassphraseCache,
        host: Optional[SurfaceHost],
        keyring_id: str,
        sync: Optional[KeyringSync] = None,
        settings: Optional[SecuritySettings] = None,
    ) -> None:
        """
        Initialize the broker.

        Args:
            engine: Engine used to check passphrases.
            cache: Passphrase cache.
            host: Surface host for password prompts.
            keyring_id: Keyring the unlocked keys belong to.
            sync: Optional keyring synchronization hook.
            settings: Passphrase cache settings.
        """
        self.engine = engine
        self.cache = cache
        self.keyring_id = keyring_id
        self.sync = sync
        self.settings = settings or SecuritySettings()
        self._slot = PopupSlot(host)
        self._lock = asyncio.Lock()
        self._sync_tasks: set[asyncio.Task] = set()

    @property
    def prompt_open(self) -> bool:
        return self._slot.active is not None

    async def unlock(
        self,
        fingerprint: str,
        reason: UnlockReason = UnlockReason.DECRYPT,
        cache_allowed: bool = True,
        sync: bool = True,
        embedded: bool = False,
        before_password_request: Optional[Callable[[str], None]] = None,
    ) -> UnlockedKey:
        """
        Unlock the private key ``fingerprint``.

        Args:
            fingerprint: Fingerprint of the private key.
            reason: Context shown in the password prompt.
            cache_allowed: Whether a cached passphrase may be used.
            sync: Trigger keyring synchronization after unlocking.
            embedded: Whether the prompt is shown inside an open editor.
            before_password_request: Called with the fingerprint right
                before the user is prompted.

        Returns:
            The unlocked key.

        Raises:
            PasswordDialogCanceled: If the prompt is dismissed.
            UnlockError: If the passphrase is wrong.
        """
        # one prompt at a time; later callers usually hit the cache
        async with self._lock:
            return await self._unlock(
                fingerprint, reason, cache_allowed, sync, embedded,
                before_password_request,
            )

    async def _unlock(
        self,
        fingerprint: str,
        reason: UnlockReason,
        cache_allowed: bool,
        sync: bool,
        embedded: bool,
        before_password_request: Optional[Callable[[str], None]],
    ) -> UnlockedKey:
        if cache_allowed and self.settings.password_cache:
            cached = self.cache.get(fingerprint)
            if cached is not None and await self.engine.check_passphrase(
                fingerprint, cached
            ):
                logger.debug("Unlocked key %s from cache", fingerprint)
                return self._unlocked(fingerprint, cached, sync)

        if before_password_request is not None:
            before_password_request(fingerprint)

        passphrase, remember = await self._prompt(fingerprint, reason, embedded)

        if not await self.engine.check_passphrase(fingerprint, passphrase):
            logger.warning("Wrong passphrase for key %s", fingerprint)
            raise UnlockError("Wrong password", {"fingerprint": fingerprint})

        if cache_allowed and remember and self.settings.password_cache:
            self.cache.put(
                fingerprint, passphrase, self.settings.password_timeout * 60
            )

        logger.info("Unlocked key %s (%s)", fingerprint, reason.value)
        return self._unlocked(fingerprint, passphrase, sync)

    async def _prompt(
        self, fingerprint: str, reason: UnlockReason, embedded: bool
    ) -> tuple[str, bool]:
        if not self._slot.available:
            raise PasswordDialogCanceled({"reason": "no password prompt available"})

        def cancel() -> Any:
            raise PasswordDialogCanceled()

        def submitted(data: dict[str, Any]) -> tuple[str, bool]:
            return str(data.get("password", "")), bool(data.get("cache", True))

        popup = await self._slot.open(
            PopupKind.PASSWORD,
            {"fingerprint": fingerprint, "reason": reason.value, "embedded": embedded},
            on_dismiss=cancel,
            responses={
                "pwd-dialog-ok": submitted,
                "pwd-dialog-cancel": lambda _: cancel(),
            },
        )
        try:
            return await popup.wait()
        finally:
            popup.close()

    def _unlocked(self, fingerprint: str, passphrase: str, sync: bool) -> UnlockedKey:
        key = UnlockedKey(fingerprint=fingerprint, passphrase=passphrase)
        if sync and self.sync is not None:
            task = asyncio.create_task(self._run_sync(key))
            self._sync_tasks.add(task)
            task.add_done_callback(self._sync_tasks.discard)
        return key

    async def _run_sync(self, key: UnlockedKey) -> None:
        try:
            await self.sync.trigger(self.keyring_id, key.fingerprint, key.passphrase)
        except Exception as e:
            logger.error(
                "Keyring sync after unlocking %s failed: %s", key.fingerprint, e
            )

    async def drain(self) -> None:
        """Wait for outstanding sync tasks."""
        if self._sync_tasks:
            await asyncio.gather(*self._sync_tasks, return_exceptions=True)
