"""Unit tests for the per-message state machine."""

import pytest

from onebest.worker.state_machine import (
    MessageState,
    MessageStateMachine,
    MessageStateTransitionError,
)


class TestMessageStateMachine:
    """Tests for MessageStateMachine."""

    @pytest.mark.unit
    def test_initial_state(self) -> None:
        """Test that a delivery starts RECEIVED."""
        machine = MessageStateMachine("m1")

        assert machine.state == MessageState.RECEIVED
        assert not machine.is_terminal

    @pytest.mark.unit
    def test_applied_path(self) -> None:
        """Test RECEIVED -> VALIDATING -> APPLYING -> ACKED."""
        machine = MessageStateMachine("m1")
        machine.to_validating()
        machine.to_applying()
        machine.to_acked()

        assert machine.state == MessageState.ACKED
        assert machine.is_terminal

    @pytest.mark.unit
    def test_duplicate_skips_applying(self) -> None:
        """Test an already-applied key is acknowledged from VALIDATING."""
        machine = MessageStateMachine("m1")
        machine.to_validating()
        machine.to_acked()

        assert machine.state == MessageState.ACKED

    @pytest.mark.unit
    @pytest.mark.parametrize("target", [MessageState.REJECTED, MessageState.FAILED])
    def test_failure_from_applying(self, target: MessageState) -> None:
        """Test a mutation can be rejected or left for retry."""
        machine = MessageStateMachine("m1")
        machine.to_validating()
        machine.to_applying()
        machine.transition_to(target)

        assert machine.state == target
        assert machine.is_terminal

    @pytest.mark.unit
    def test_cannot_apply_without_validating(self) -> None:
        """Test RECEIVED -> APPLYING is illegal."""
        machine = MessageStateMachine("m1")

        with pytest.raises(MessageStateTransitionError) as exc_info:
            machine.to_applying()

        assert exc_info.value.from_state == MessageState.RECEIVED
        assert exc_info.value.to_state == MessageState.APPLYING
        assert machine.state == MessageState.RECEIVED

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "terminal", [MessageState.ACKED, MessageState.REJECTED, MessageState.FAILED]
    )
    def test_terminal_states_are_final(self, terminal: MessageState) -> None:
        """Test no transition leaves a terminal state."""
        machine = MessageStateMachine("m1", initial_state=terminal)

        for target in MessageState:
            assert not machine.can_transition_to(target)
