"""State machine for processing a single queue message."""

from enum import Enum

import structlog


logger = structlog.get_logger()


class MessageState(str, Enum):
    """State of a message inside a worker.

    States represent the lifecycle of one delivery:
    - RECEIVED: Delivered by the queue
    - VALIDATING: Envelope schema and idempotency key being checked
    - APPLYING: Mutation running inside a store transaction
    - ACKED: Applied (or already applied) and removed from the queue
    - REJECTED: Permanently failed and routed to the dead-letter queue
    - FAILED: Transient failure; left for queue redelivery
    """

    RECEIVED = "RECEIVED"
    VALIDATING = "VALIDATING"
    APPLYING = "APPLYING"
    ACKED = "ACKED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


# Valid state transitions
_VALID_TRANSITIONS: dict[MessageState, set[MessageState]] = {
    MessageState.RECEIVED: {MessageState.VALIDATING},
    MessageState.VALIDATING: {
        MessageState.APPLYING,
        MessageState.ACKED,  # idempotent replay
        MessageState.REJECTED,
        MessageState.FAILED,
    },
    MessageState.APPLYING: {
        MessageState.ACKED,
        MessageState.REJECTED,
        MessageState.FAILED,
    },
    MessageState.ACKED: set(),  # Terminal state
    MessageState.REJECTED: set(),  # Terminal state
    MessageState.FAILED: set(),  # Terminal state
}

_TERMINAL_STATES = frozenset(
    {MessageState.ACKED, MessageState.REJECTED, MessageState.FAILED}
)


class MessageStateTransitionError(Exception):
    """Raised when an illegal state transition is attempted."""

    def __init__(
        self,
        message_id: str,
        from_state: MessageState,
        to_state: MessageState,
    ) -> None:
        """Initialize the transition error.

        Args:
            message_id: Identifier of the message.
            from_state: Current state.
            to_state: Attempted target state.
        """
        self.message_id = message_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal message state transition for '{message_id}': "
            f"{from_state.value} -> {to_state.value}"
        )


class MessageStateMachine:
    """Manages state transitions for one message delivery.

    Enforces valid transitions and logs all state changes.
    """

    def __init__(
        self,
        message_id: str,
        initial_state: MessageState = MessageState.RECEIVED,
    ) -> None:
        """Initialize the state machine.

        Args:
            message_id: Identifier of the message.
            initial_state: Starting state.
        """
        self._message_id = message_id
        self._state = initial_state
        self._log = logger.bind(component="worker", message_id=message_id)

    @property
    def message_id(self) -> str:
        """Get the message identifier."""
        return self._message_id

    @property
    def state(self) -> MessageState:
        """Get the current state."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal."""
        return self._state in _TERMINAL_STATES

    def can_transition_to(self, target: MessageState) -> bool:
        """Check if a transition to the target state is valid.

        Args:
            target: The target state.

        Returns:
            True if the transition is valid.
        """
        return target in _VALID_TRANSITIONS.get(self._state, set())

    def transition_to(self, target: MessageState) -> None:
        """Transition to a new state.

        Args:
            target: The target state.

        Raises:
            MessageStateTransitionError: If the transition is invalid.
        """
        if not self.can_transition_to(target):
            self._log.error(
                "invariant_violation",
                invariant="message_state_transition",
                from_state=self._state.value,
                to_state=target.value,
            )
            raise MessageStateTransitionError(
                message_id=self._message_id,
                from_state=self._state,
                to_state=target,
            )

        old_state = self._state
        self._state = target

        self._log.debug(
            "message_state_transition",
            from_state=old_state.value,
            to_state=target.value,
        )

    def to_validating(self) -> None:
        """Transition to VALIDATING state."""
        self.transition_to(MessageState.VALIDATING)

    def to_applying(self) -> None:
        """Transition to APPLYING state."""
        self.transition_to(MessageState.APPLYING)

    def to_acked(self) -> None:
        """Transition to ACKED state."""
        self.transition_to(MessageState.ACKED)

    def to_rejected(self) -> None:
        """Transition to REJECTED state."""
        self.transition_to(MessageState.REJECTED)

    def to_failed(self) -> None:
        """Transition to FAILED state."""
        self.transition_to(MessageState.FAILED)
