"""
Per-asset lifecycle.

    UNVERIFIED ──fail──▶ REJECTED
        │                  │  ▲
       pass              pass fail
        ▼                  ▼  │
        └────────────▶ VERIFIED
                           │
                          mint
                           ▼
                       TOKENIZED ──revoke──▶ REVOKED ──pass/fail──▶ VERIFIED / REJECTED

A re-verification of a TOKENIZED asset is recorded in the audit trail but
leaves the state unchanged; only a revoke releases the asset for a new mint.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Tuple

from assetgate.errors import InvalidTransition


class AssetState(Enum):
    UNVERIFIED = "unverified"
    REJECTED = "rejected"
    VERIFIED = "verified"
    TOKENIZED = "tokenized"
    REVOKED = "revoked"


class AssetEvent(Enum):
    VERIFY_PASS = "verify_pass"
    VERIFY_FAIL = "verify_fail"
    MINT = "mint"
    REVOKE = "revoke"


# Valid transitions
TRANSITIONS: Dict[Tuple[AssetState, AssetEvent], AssetState] = {
    (AssetState.UNVERIFIED, AssetEvent.VERIFY_PASS): AssetState.VERIFIED,
    (AssetState.UNVERIFIED, AssetEvent.VERIFY_FAIL): AssetState.REJECTED,
    (AssetState.REJECTED, AssetEvent.VERIFY_PASS): AssetState.VERIFIED,
    (AssetState.REJECTED, AssetEvent.VERIFY_FAIL): AssetState.REJECTED,
    (AssetState.VERIFIED, AssetEvent.VERIFY_PASS): AssetState.VERIFIED,
    (AssetState.VERIFIED, AssetEvent.VERIFY_FAIL): AssetState.REJECTED,
    (AssetState.VERIFIED, AssetEvent.MINT): AssetState.TOKENIZED,
    (AssetState.TOKENIZED, AssetEvent.VERIFY_PASS): AssetState.TOKENIZED,
    (AssetState.TOKENIZED, AssetEvent.VERIFY_FAIL): AssetState.TOKENIZED,
    (AssetState.TOKENIZED, AssetEvent.REVOKE): AssetState.REVOKED,
    (AssetState.REVOKED, AssetEvent.VERIFY_PASS): AssetState.VERIFIED,
    (AssetState.REVOKED, AssetEvent.VERIFY_FAIL): AssetState.REJECTED,
}

# States a mint may start from when verification gating is switched off.
UNGATED_MINT_SOURCES: FrozenSet[AssetState] = frozenset({
    AssetState.UNVERIFIED,
    AssetState.REJECTED,
    AssetState.VERIFIED,
    AssetState.REVOKED,
})


def can_transition(state: AssetState, event: AssetEvent, gated: bool = True) -> bool:
    if event is AssetEvent.MINT and not gated:
        return state in UNGATED_MINT_SOURCES
    return (state, event) in TRANSITIONS


def next_state(asset_id: str, state: AssetState, event: AssetEvent, gated: bool = True) -> AssetState:
    """Resolve the state after ``event``.

    Raises:
        InvalidTransition: ``event`` is not allowed from ``state``.
    """
    if event is AssetEvent.MINT and not gated:
        if state in UNGATED_MINT_SOURCES:
            return AssetState.TOKENIZED
        raise InvalidTransition(asset_id, state.value, event.value)
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(asset_id, state.value, event.value) from None


def is_verified_state(state: AssetState) -> bool:
    """Value of the collaborator-visible ``verified`` flag for a state."""
    return state in (AssetState.VERIFIED, AssetState.TOKENIZED)
