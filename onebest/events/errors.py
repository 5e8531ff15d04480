"""Error types for event envelopes and the event bus."""

from typing import Any


class EventError(Exception):
    """Base exception for event envelope and bus errors."""


class MalformedEnvelopeError(EventError):
    """Raised when a serialized envelope fails schema validation.

    Redelivery cannot fix a malformed envelope, so workers route these
    straight to the dead-letter queue.
    """

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        """Initialize the error.

        Args:
            message: Human-readable error message.
            errors: Structured validation error details.
        """
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {"message": self.message, "errors": self.errors}


class UndeliverableEventError(EventError):
    """Raised when no queue is subscribed to an event's type."""

    def __init__(self, event_id: str, event_type: str) -> None:
        """Initialize the error.

        Args:
            event_id: Envelope that could not be routed.
            event_type: Its event type.
        """
        self.event_id = event_id
        self.event_type = event_type
        super().__init__(f"No subscriber for {event_type} (event {event_id})")
