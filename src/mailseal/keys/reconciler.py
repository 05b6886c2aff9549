"""
Key reconciliation.

Decides how a newly obtained public key affects the trusted keyring and
performs the merge. Changes to the validity of a stored key need explicit
user confirmation; other changes are merged silently.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from ..common.exceptions import (
    KeyImportError,
    MailSealError,
    TrustConflictError,
)
from ..interfaces import CryptoEngine, KeyStore, SurfaceHost
from ..popup import PopupKind, PopupSlot
from .models import (
    CandidateKey,
    ImportOutcome,
    KeyKind,
    KeyValidity,
    ReconciliationDecision,
    StoredKeyRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class Reconciliation:
    """A reconciliation decision together with the data it was based on."""

    decision: ReconciliationDecision
    candidate: CandidateKey
    stored: Optional[StoredKeyRecord] = None
    merged: Optional[StoredKeyRecord] = None
    invalidated: bool = False
    rotation: bool = False
    reason: str = ""

    @property
    def trust_changed(self) -> bool:
        return self.decision == ReconciliationDecision.CONFIRM_REQUIRED

    @property
    def needs_confirmation(self) -> bool:
        return self.decision in (
            ReconciliationDecision.FRESH_IMPORT,
            ReconciliationDecision.CONFIRM_REQUIRED,
        )


@dataclass
class ApplyResult:
    """Outcome of applying a reconciliation."""

    outcome: ImportOutcome
    trust_changed: bool = False


class KeyReconciler:
    """
    Reconciles candidate keys with the trusted keyring.

    This is the only component that writes to the keyring. Work on the
    same fingerprint is serialized so a concurrent import and rotation of
    one identity cannot interleave.
    """

    def __init__(
        self,
        engine: CryptoEngine,
        store: KeyStore,
        host: Optional[SurfaceHost] = None,
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            engine: Crypto engine used to parse keys and preview merges.
            store: The trusted keyring.
            host: Surface host for confirmation prompts. Without one,
                changes that need confirmation raise ``TrustConflictError``.
        """
        self.engine = engine
        self.store = store
        self.host = host
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, fingerprint: str) -> AsyncIterator[None]:
        """Hold the lock for ``fingerprint``; drop it once nobody uses it."""
        key = fingerprint.upper()
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def reconcile(
        self,
        candidate: CandidateKey,
        stored: Optional[StoredKeyRecord],
        rotation: bool = False,
    ) -> Reconciliation:
        """
        Decide how ``candidate`` affects the keyring without mutating it.

        Args:
            candidate: The incoming key.
            stored: The keyring's record for the same fingerprint, if any.
            rotation: Whether the key was found for an address that already
                has a key in the keyring.

        Returns:
            Reconciliation describing the decision.
        """
        if candidate.kind == KeyKind.PRIVATE:
            return Reconciliation(
                ReconciliationDecision.REJECTED,
                candidate,
                stored,
                rotation=rotation,
                reason="Import of private keys not allowed.",
            )
        if candidate.validity == KeyValidity.INVALID and stored is None:
            return Reconciliation(
                ReconciliationDecision.REJECTED,
                candidate,
                stored,
                rotation=rotation,
                reason="Key is invalid.",
            )

        if stored is None:
            return Reconciliation(
                ReconciliationDecision.FRESH_IMPORT, candidate, rotation=rotation
            )

        merged = await self.engine.preview_merge(stored, candidate)

        if merged.validity != stored.validity:
            return Reconciliation(
                ReconciliationDecision.CONFIRM_REQUIRED,
                candidate,
                stored,
                merged,
                invalidated=merged.validity != KeyValidity.VALID,
                rotation=rotation,
            )

        if merged.last_modified != stored.last_modified:
            decision = ReconciliationDecision.SILENT_UPDATE
        else:
            decision = ReconciliationDecision.UPDATED

        return Reconciliation(decision, candidate, stored, merged, rotation=rotation)

    async def apply(self, reconciliation: Reconciliation) -> ApplyResult:
        """
        Carry out a reconciliation decision.

        Args:
            reconciliation: Result of :meth:`reconcile`.

        Returns:
            ApplyResult with the terminal outcome.

        Raises:
            KeyImportError: If the key is rejected or the keyring refuses it.
            TrustConflictError: If confirmation is needed but no surface
                host is available.
        """
        decision = reconciliation.decision
        fingerprint = reconciliation.candidate.fingerprint

        if decision == ReconciliationDecision.REJECTED:
            raise KeyImportError(
                reconciliation.reason or "Key rejected",
                {"fingerprint": fingerprint},
            )

        if decision == ReconciliationDecision.UPDATED:
            logger.debug("Key %s unchanged, nothing to merge", fingerprint)
            return ApplyResult(ImportOutcome.UPDATED)

        if decision == ReconciliationDecision.SILENT_UPDATE:
            await self._commit(reconciliation.candidate)
            logger.info("Merged non-critical update for key %s", fingerprint)
            return ApplyResult(ImportOutcome.UPDATED)

        return await self._confirm(reconciliation)

    async def import_key(self, armored: str, rotation: bool = False) -> ApplyResult:
        """
        Parse armored key text and reconcile it with the keyring.

        Only the first key is considered when the text holds several.

        Raises:
            KeyImportError: On any parse, validation or import failure.
        """
        try:
            keys = await self.engine.parse_key(armored)
        except MailSealError as e:
            raise KeyImportError(e.message, e.details) from e
        if not keys:
            raise KeyImportError("No key found in the provided data")
        if len(keys) > 1:
            logger.info(
                "Multiple keys detected during key import, only first key is imported."
            )
        return await self.import_candidate(keys[0], rotation=rotation)

    async def import_candidate(
        self, candidate: CandidateKey, rotation: bool = False
    ) -> ApplyResult:
        """Reconcile and apply ``candidate`` under its fingerprint lock."""
        async with self._locked(candidate.fingerprint):
            try:
                stored = await self.store.get_by_fingerprint(candidate.fingerprint)
                reconciliation = await self.reconcile(candidate, stored, rotation)
                logger.debug(
                    "Reconciled key %s: %s",
                    candidate.fingerprint,
                    reconciliation.decision.value,
                )
                return await self.apply(reconciliation)
            except (KeyImportError, TrustConflictError):
                raise
            except MailSealError as e:
                raise KeyImportError(e.message, e.details) from e

    async def _commit(self, candidate: CandidateKey) -> None:
        result = await self.store.import_or_merge(candidate)
        if not result.ok:
            raise KeyImportError(
                result.message or "An error occured during key import",
                {"fingerprint": candidate.fingerprint},
            )

    async def _confirm(self, reconciliation: Reconciliation) -> ApplyResult:
        """Ask the user to confirm an import or a trust change."""
        if self.host is None:
            raise TrustConflictError(
                "Key import requires user confirmation",
                {
                    "fingerprint": reconciliation.candidate.fingerprint,
                    "decision": reconciliation.decision.value,
                    "invalidated": reconciliation.invalidated,
                },
            )

        invalidated = reconciliation.invalidated
        trust_changed = reconciliation.trust_changed

        def dismissed() -> ImportOutcome:
            if invalidated:
                return ImportOutcome.INVALIDATED
            return ImportOutcome.REJECTED

        slot = PopupSlot(self.host)
        popup = await slot.open(
            PopupKind.IMPORT_KEY,
            self._dialog_payload(reconciliation),
            on_dismiss=dismissed,
            responses={
                # acknowledging a downgrade still keeps the stored key
                "key-import-dialog-ok": lambda _: (
                    ImportOutcome.INVALIDATED if invalidated else ImportOutcome.IMPORTED
                ),
                "key-import-dialog-cancel": lambda _: dismissed(),
            },
        )

        try:
            outcome = await popup.wait()
            if outcome == ImportOutcome.IMPORTED:
                try:
                    await self._commit(reconciliation.candidate)
                except KeyImportError as e:
                    popup.post("import-error", {"message": e.message})
                    raise
        finally:
            popup.close()

        logger.info(
            "Key %s import confirmation finished: %s",
            reconciliation.candidate.fingerprint,
            outcome.value,
        )
        return ApplyResult(outcome, trust_changed=trust_changed)

    @staticmethod
    def _dialog_payload(reconciliation: Reconciliation) -> dict[str, Any]:
        return {
            "key": reconciliation.candidate.to_dict(),
            "invalidated": reconciliation.invalidated,
            "rotation": reconciliation.rotation,
            "decision": reconciliation.decision.value,
        }
