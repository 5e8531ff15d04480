"""Data models for the durable queue and its dead-letter queue."""

from datetime import datetime
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field


class DeadLetterReason(str, Enum):
    """Why a message was routed to the dead-letter queue.

    - MAX_RETRIES_EXCEEDED: redelivered more than the retry limit
    - MALFORMED_ENVELOPE: failed envelope schema validation
    - VALIDATION_FAILED: mutation rejected by the ranking service
    - UNEXPECTED_ERROR: unhandled exception while applying
    """

    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    MALFORMED_ENVELOPE = "MALFORMED_ENVELOPE"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class QueueMessage(BaseModel):
    """A delivery of an envelope, as handed to a consumer.

    ``receipt_handle`` identifies this particular delivery; it changes on
    every receive, so only the latest consumer can acknowledge.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    message_id: Annotated[str, Field(min_length=1)]
    queue_name: Annotated[str, Field(min_length=1)]
    event_id: str | None = None
    body: str
    delivery_count: Annotated[int, Field(ge=0)] = 0
    receipt_handle: str | None = None
    visible_at: datetime
    enqueued_at: datetime

    @property
    def retry_count(self) -> int:
        """Deliveries before this one."""
        return max(0, self.delivery_count - 1)


class DeadLetter(BaseModel):
    """A message parked in the dead-letter queue."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    message_id: Annotated[str, Field(min_length=1)]
    queue_name: Annotated[str, Field(min_length=1)]
    event_id: str | None = None
    body: str
    event_type: str | None = None
    source: str | None = None
    user_id: str | None = None
    retry_count: Annotated[int, Field(ge=0)] = 0
    reason: DeadLetterReason
    error_class: str | None = None
    error_message: str | None = None
    dead_lettered_at: datetime


class DlqFilter(BaseModel):
    """Filter for listing dead letters. Unset fields match everything."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: str | None = None
    event_type: str | None = None
    reason: DeadLetterReason | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: Annotated[int, Field(ge=1, le=1000)] = 100


class TrackingState(str, Enum):
    """Pipeline state of a published event.

    - PENDING: queued, waiting for a worker
    - IN_FLIGHT: received by a worker, not yet acknowledged
    - COMPLETED: applied (its idempotency key is recorded)
    - DEAD_LETTERED: parked in the dead-letter queue
    - UNKNOWN: not found anywhere
    """

    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    COMPLETED = "COMPLETED"
    DEAD_LETTERED = "DEAD_LETTERED"
    UNKNOWN = "UNKNOWN"


class TrackingStatus(BaseModel):
    """Where an event currently is in the pipeline."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: str
    state: TrackingState
    delivery_count: int = 0
    reason: DeadLetterReason | None = None
    error_message: str | None = None


class QueueDepth(BaseModel):
    """Message counts of a queue."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    visible: int = 0
    in_flight: int = 0
    dead_letters: int = 0
