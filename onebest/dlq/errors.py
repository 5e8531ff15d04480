"""Error types for the dead-letter reprocessor."""


class DlqError(Exception):
    """Base exception for dead-letter administration errors."""


class DeadLetterNotFoundError(DlqError):
    """Raised when a dead letter does not exist."""

    def __init__(self, message_id: str) -> None:
        """Initialize the error.

        Args:
            message_id: The missing dead letter.
        """
        self.message_id = message_id
        super().__init__(f"Dead letter '{message_id}' not found")


class ReplayRejectedError(DlqError):
    """Raised when a dead letter cannot be replayed as stored.

    A malformed body would only be rejected again, so it needs a
    corrected envelope.
    """

    def __init__(self, message_id: str, reason: str) -> None:
        """Initialize the error.

        Args:
            message_id: The dead letter.
            reason: Why it cannot be replayed.
        """
        self.message_id = message_id
        self.reason = reason
        super().__init__(f"Cannot replay '{message_id}': {reason}")
