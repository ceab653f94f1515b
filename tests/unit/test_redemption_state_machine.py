"""Unit tests for the redemption state machine."""

from __future__ import annotations

import pytest

from tutorxp.errors import InvalidStateTransition
from tutorxp.redemptions.redemption_service import VALID_TRANSITIONS, validate_transition


class TestRedemptionStateMachine:
    """pending -> approved -> fulfilled, pending|approved -> cancelled."""

    def test_states(self):
        assert set(VALID_TRANSITIONS) == {"pending", "approved", "fulfilled", "cancelled"}

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "approved"),
            ("pending", "cancelled"),
            ("approved", "fulfilled"),
            ("approved", "cancelled"),
        ],
    )
    def test_valid_transitions(self, current, target):
        validate_transition(current, target)  # Should not raise

    def test_terminal_states(self):
        assert VALID_TRANSITIONS["fulfilled"] == []
        assert VALID_TRANSITIONS["cancelled"] == []

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "fulfilled"),
            ("fulfilled", "cancelled"),
            ("cancelled", "approved"),
            ("approved", "pending"),
        ],
    )
    def test_invalid_transition_rejected(self, current, target):
        with pytest.raises(InvalidStateTransition, match="Invalid transition"):
            validate_transition(current, target)

    def test_invalid_transition_is_value_error(self):
        with pytest.raises(ValueError):
            validate_transition("fulfilled", "approved")
