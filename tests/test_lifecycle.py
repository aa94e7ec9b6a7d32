"""
Asset lifecycle state machine tests.
"""

import pytest

from assetgate.errors import InvalidTransition
from assetgate.lifecycle import (
    TRANSITIONS,
    AssetEvent,
    AssetState,
    can_transition,
    is_verified_state,
    next_state,
)


class TestTransitions:
    """The happy path and the re-verification loops."""

    def test_full_path(self):
        state = AssetState.UNVERIFIED
        for event, expected in [
            (AssetEvent.VERIFY_FAIL, AssetState.REJECTED),
            (AssetEvent.VERIFY_PASS, AssetState.VERIFIED),
            (AssetEvent.MINT, AssetState.TOKENIZED),
            (AssetEvent.REVOKE, AssetState.REVOKED),
            (AssetEvent.VERIFY_PASS, AssetState.VERIFIED),
        ]:
            state = next_state("GOLD-001", state, event)
            assert state is expected

    def test_reverify_while_tokenized_keeps_state(self):
        assert next_state("A", AssetState.TOKENIZED, AssetEvent.VERIFY_FAIL) is AssetState.TOKENIZED
        assert next_state("A", AssetState.TOKENIZED, AssetEvent.VERIFY_PASS) is AssetState.TOKENIZED

    def test_verified_can_be_rejected(self):
        assert next_state("A", AssetState.VERIFIED, AssetEvent.VERIFY_FAIL) is AssetState.REJECTED

    @pytest.mark.parametrize("state", [
        AssetState.UNVERIFIED, AssetState.REJECTED, AssetState.TOKENIZED, AssetState.REVOKED,
    ])
    def test_gated_mint_needs_verified(self, state):
        assert not can_transition(state, AssetEvent.MINT)
        with pytest.raises(InvalidTransition) as exc:
            next_state("A", state, AssetEvent.MINT)
        assert exc.value.asset_id == "A"
        assert exc.value.event == "mint"

    @pytest.mark.parametrize("state", [
        AssetState.UNVERIFIED, AssetState.VERIFIED, AssetState.TOKENIZED, AssetState.REVOKED, AssetState.REJECTED,
    ])
    def test_revoke_only_from_tokenized(self, state):
        assert can_transition(state, AssetEvent.REVOKE) is (state is AssetState.TOKENIZED)


class TestUngatedMint:
    def test_any_untokenized_state(self):
        for state in (AssetState.UNVERIFIED, AssetState.REJECTED, AssetState.VERIFIED, AssetState.REVOKED):
            assert next_state("A", state, AssetEvent.MINT, gated=False) is AssetState.TOKENIZED

    def test_never_double_mint(self):
        assert not can_transition(AssetState.TOKENIZED, AssetEvent.MINT, gated=False)
        with pytest.raises(InvalidTransition):
            next_state("A", AssetState.TOKENIZED, AssetEvent.MINT, gated=False)


class TestVerifiedFlag:
    def test_flag_values(self):
        assert is_verified_state(AssetState.VERIFIED)
        assert is_verified_state(AssetState.TOKENIZED)
        assert not is_verified_state(AssetState.REVOKED)
        assert not is_verified_state(AssetState.REJECTED)
        assert not is_verified_state(AssetState.UNVERIFIED)

    def test_every_target_is_a_state(self):
        assert all(isinstance(target, AssetState) for target in TRANSITIONS.values())
