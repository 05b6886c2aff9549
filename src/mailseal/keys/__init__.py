"""Key model, reconciliation, recipient resolution and key unlocking."""

from .models import (
    CandidateKey,
    ImportOutcome,
    KeyKind,
    KeyValidity,
    ReconciliationDecision,
    StoredKeyRecord,
    UnlockedKey,
    UserId,
)

__all__ = [
    "CandidateKey",
    "ImportOutcome",
    "KeyKind",
    "KeyValidity",
    "ReconciliationDecision",
    "StoredKeyRecord",
    "UnlockedKey",
    "UserId",
]
