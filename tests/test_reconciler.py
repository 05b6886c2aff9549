"""
Tests for key reconciliation and the import confirmation flow.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from mailseal.common.exceptions import KeyImportError, TrustConflictError
from mailseal.keys.models import (
    ImportOutcome,
    KeyKind,
    KeyValidity,
    ReconciliationDecision,
)
from mailseal.keys.reconciler import KeyReconciler

from fakes import (
    ALICE_FPR,
    BOB_FPR,
    FakeKeyStore,
    FakeSurfaceHost,
    candidate_key,
    stored_key,
)

EARLIER = datetime(2024, 1, 1, tzinfo=timezone.utc)
LATER = datetime(2024, 6, 1, tzinfo=timezone.utc)

OK = ("key-import-dialog-ok", {})
CANCEL = ("key-import-dialog-cancel", {})


class TestReconcile:
    """Decisions made without touching the keyring."""

    @pytest.mark.asyncio
    async def test_fresh_key(self, engine, store):
        reconciler = KeyReconciler(engine, store)
        result = await reconciler.reconcile(candidate_key(ALICE_FPR, "alice@example.org"), None)
        assert result.decision == ReconciliationDecision.FRESH_IMPORT
        assert result.needs_confirmation

    @pytest.mark.asyncio
    async def test_private_key_is_rejected(self, engine, store):
        reconciler = KeyReconciler(engine, store)
        candidate = candidate_key(ALICE_FPR, "alice@example.org", kind=KeyKind.PRIVATE)
        result = await reconciler.reconcile(candidate, None)
        assert result.decision == ReconciliationDecision.REJECTED

    @pytest.mark.asyncio
    async def test_invalid_unknown_key_is_rejected(self, engine, store):
        reconciler = KeyReconciler(engine, store)
        candidate = candidate_key(
            ALICE_FPR, "alice@example.org", validity=KeyValidity.INVALID
        )
        result = await reconciler.reconcile(candidate, None)
        assert result.decision == ReconciliationDecision.REJECTED

    @pytest.mark.asyncio
    async def test_validity_change_requires_confirmation(self, engine, store):
        reconciler = KeyReconciler(engine, store)
        stored = stored_key(ALICE_FPR, "alice@example.org")
        candidate = candidate_key(
            ALICE_FPR, "alice@example.org", validity=KeyValidity.INVALID
        )
        result = await reconciler.reconcile(candidate, stored)
        assert result.decision == ReconciliationDecision.CONFIRM_REQUIRED
        assert result.invalidated
        assert result.trust_changed

    @pytest.mark.asyncio
    async def test_revalidation_is_not_invalidated(self, engine, store):
        reconciler = KeyReconciler(engine, store)
        stored = stored_key(ALICE_FPR, "alice@example.org", validity=KeyValidity.INVALID)
        candidate = candidate_key(ALICE_FPR, "alice@example.org")
        result = await reconciler.reconcile(candidate, stored)
        assert result.decision == ReconciliationDecision.CONFIRM_REQUIRED
        assert not result.invalidated

    @pytest.mark.asyncio
    async def test_modified_key_is_silent_update(self, engine, store):
        reconciler = KeyReconciler(engine, store)
        stored = stored_key(ALICE_FPR, "alice@example.org", last_modified=EARLIER)
        candidate = candidate_key(ALICE_FPR, "alice@example.org", last_modified=LATER)
        result = await reconciler.reconcile(candidate, stored)
        assert result.decision == ReconciliationDecision.SILENT_UPDATE
        assert not result.needs_confirmation

    @pytest.mark.asyncio
    async def test_identical_key_is_updated(self, engine, store):
        reconciler = KeyReconciler(engine, store)
        stored = stored_key(ALICE_FPR, "alice@example.org", last_modified=EARLIER)
        candidate = candidate_key(ALICE_FPR, "alice@example.org", last_modified=EARLIER)
        result = await reconciler.reconcile(candidate, stored)
        assert result.decision == ReconciliationDecision.UPDATED

    @pytest.mark.asyncio
    async def test_reconcile_does_not_write(self, engine, store):
        reconciler = KeyReconciler(engine, store)
        await reconciler.reconcile(candidate_key(ALICE_FPR, "alice@example.org"), None)
        assert store.imports == []


class TestImportCandidate:
    """Applying decisions, with and without the confirmation dialog."""

    @pytest.mark.asyncio
    async def test_confirmed_fresh_import(self, engine, store):
        host = FakeSurfaceHost(import_key=[OK])
        reconciler = KeyReconciler(engine, store, host)

        result = await reconciler.import_candidate(candidate_key(ALICE_FPR, "alice@example.org"))

        assert result.outcome == ImportOutcome.IMPORTED
        assert ALICE_FPR in store.keys
        assert host.kinds() == ["import-key"]
        assert host.opened[0].closed

    @pytest.mark.asyncio
    async def test_declined_fresh_import(self, engine, store):
        host = FakeSurfaceHost(import_key=[CANCEL])
        reconciler = KeyReconciler(engine, store, host)

        result = await reconciler.import_candidate(candidate_key(ALICE_FPR, "alice@example.org"))

        assert result.outcome == ImportOutcome.REJECTED
        assert store.imports == []

    @pytest.mark.asyncio
    async def test_dialog_closed_rejects(self, engine, store):
        host = FakeSurfaceHost(import_key=["close"])
        reconciler = KeyReconciler(engine, store, host)

        result = await reconciler.import_candidate(candidate_key(ALICE_FPR, "alice@example.org"))

        assert result.outcome == ImportOutcome.REJECTED
        assert store.imports == []

    @pytest.mark.asyncio
    async def test_invalidating_update_keeps_stored_key(self, engine):
        stored = stored_key(ALICE_FPR, "alice@example.org")
        store = FakeKeyStore(stored)
        host = FakeSurfaceHost(import_key=[OK])
        reconciler = KeyReconciler(engine, store, host)
        candidate = candidate_key(
            ALICE_FPR, "alice@example.org", validity=KeyValidity.INVALID
        )

        result = await reconciler.import_candidate(candidate)

        assert result.outcome == ImportOutcome.INVALIDATED
        assert result.trust_changed
        assert store.imports == []
        assert store.keys[ALICE_FPR].validity == KeyValidity.VALID
        assert host.opened[0].payload["invalidated"] is True

    @pytest.mark.asyncio
    async def test_invalidating_update_dismissed(self, engine):
        store = FakeKeyStore(stored_key(ALICE_FPR, "alice@example.org"))
        host = FakeSurfaceHost(import_key=["close"])
        reconciler = KeyReconciler(engine, store, host)
        candidate = candidate_key(
            ALICE_FPR, "alice@example.org", validity=KeyValidity.INVALID
        )

        result = await reconciler.import_candidate(candidate)

        assert result.outcome == ImportOutcome.INVALIDATED

    @pytest.mark.asyncio
    async def test_silent_update_needs_no_dialog(self, engine, host):
        store = FakeKeyStore(
            stored_key(ALICE_FPR, "alice@example.org", last_modified=EARLIER)
        )
        reconciler = KeyReconciler(engine, store, host)
        candidate = candidate_key(ALICE_FPR, "alice@example.org", last_modified=LATER)

        result = await reconciler.import_candidate(candidate)

        assert result.outcome == ImportOutcome.UPDATED
        assert host.opened == []
        assert store.keys[ALICE_FPR].last_modified == LATER

    @pytest.mark.asyncio
    async def test_unchanged_key_is_not_written(self, engine, host):
        store = FakeKeyStore(
            stored_key(ALICE_FPR, "alice@example.org", last_modified=EARLIER)
        )
        reconciler = KeyReconciler(engine, store, host)

        result = await reconciler.import_candidate(
            candidate_key(ALICE_FPR, "alice@example.org", last_modified=EARLIER)
        )

        assert result.outcome == ImportOutcome.UPDATED
        assert store.imports == []

    @pytest.mark.asyncio
    async def test_confirmation_without_host_is_trust_conflict(self, engine, store):
        reconciler = KeyReconciler(engine, store)
        with pytest.raises(TrustConflictError):
            await reconciler.import_candidate(candidate_key(ALICE_FPR, "alice@example.org"))
        assert store.imports == []

    @pytest.mark.asyncio
    async def test_private_key_raises_import_error(self, engine, store, host):
        reconciler = KeyReconciler(engine, store, host)
        candidate = candidate_key(ALICE_FPR, "alice@example.org", kind=KeyKind.PRIVATE)
        with pytest.raises(KeyImportError) as exc_info:
            await reconciler.import_candidate(candidate)
        assert exc_info.value.code == "IMPORT_ERROR"
        assert host.opened == []

    @pytest.mark.asyncio
    async def test_store_failure_after_confirmation(self, engine, store):
        store.fail_import = "keyring is read-only"
        host = FakeSurfaceHost(import_key=[OK])
        reconciler = KeyReconciler(engine, store, host)

        with pytest.raises(KeyImportError):
            await reconciler.import_candidate(candidate_key(ALICE_FPR, "alice@example.org"))

        surface = host.opened[0]
        assert surface.posts == [("import-error", {"message": "keyring is read-only"})]
        assert surface.closed

    @pytest.mark.asyncio
    async def test_same_fingerprint_is_serialized(self, engine, store):
        host = FakeSurfaceHost(import_key=[OK, OK])
        reconciler = KeyReconciler(engine, store, host)
        candidate = candidate_key(ALICE_FPR, "alice@example.org")

        first, second = await asyncio.gather(
            reconciler.import_candidate(candidate),
            reconciler.import_candidate(candidate),
        )

        # the second run sees the key imported by the first
        assert first.outcome == ImportOutcome.IMPORTED
        assert second.outcome == ImportOutcome.UPDATED
        assert host.kinds() == ["import-key"]

    @pytest.mark.asyncio
    async def test_locks_are_released(self, engine, store):
        host = FakeSurfaceHost(import_key=[OK, OK, OK])
        reconciler = KeyReconciler(engine, store, host)

        await asyncio.gather(
            reconciler.import_candidate(candidate_key(ALICE_FPR, "alice@example.org")),
            reconciler.import_candidate(candidate_key(BOB_FPR, "bob@example.org")),
        )
        store.fail_import = "keyring is read-only"
        with pytest.raises(KeyImportError):
            await reconciler.import_candidate(candidate_key("D" * 40, "dave@example.org"))

        assert reconciler._locks == {}
        assert reconciler._lock_users == {}


class TestImportKey:
    """Parsing armored text before reconciliation."""

    @pytest.mark.asyncio
    async def test_unparseable_key(self, engine, store, host):
        reconciler = KeyReconciler(engine, store, host)
        with pytest.raises(KeyImportError):
            await reconciler.import_key("garbage")

    @pytest.mark.asyncio
    async def test_only_first_key_is_imported(self, engine, store):
        alice = candidate_key(ALICE_FPR, "alice@example.org")
        bob = candidate_key(BOB_FPR, "bob@example.org")
        engine.parsed["two keys"] = [alice, bob]
        host = FakeSurfaceHost(import_key=[OK])
        reconciler = KeyReconciler(engine, store, host)

        result = await reconciler.import_key("two keys")

        assert result.outcome == ImportOutcome.IMPORTED
        assert list(store.keys) == [ALICE_FPR]

    @pytest.mark.asyncio
    async def test_rotation_flag_reaches_dialog(self, engine, store):
        engine.parsed["alice"] = [candidate_key(ALICE_FPR, "alice@example.org")]
        host = FakeSurfaceHost(import_key=[OK])
        reconciler = KeyReconciler(engine, store, host)

        await reconciler.import_key("alice", rotation=True)

        assert host.opened[0].payload["rotation"] is True
