"""Event envelope and typed payload models.

Payloads form a tagged union keyed by the envelope's ``eventType``. The
wire form uses camelCase field names; Python code uses snake_case.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from onebest.events.errors import MalformedEnvelopeError
from onebest.store.models import TasteStatus


class EventType(str, Enum):
    """Ranking mutation event types."""

    RANKING_CREATE = "RANKING_CREATE"
    RANKING_UPDATE = "RANKING_UPDATE"
    TASTE_STATUS_UPDATE = "TASTE_STATUS_UPDATE"
    SCOPE_CLEAR = "SCOPE_CLEAR"


class EventStatus(str, Enum):
    """Lifecycle status stamped on an envelope.

    - PENDING: published, not yet terminally processed
    - COMPLETED: applied (or recognized as a duplicate)
    - DEAD_LETTERED: routed to the dead-letter queue
    """

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    DEAD_LETTERED = "DEAD_LETTERED"


class WireModel(BaseModel):
    """Base for models exchanged as camelCase JSON."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class CreateRankingPayload(WireModel):
    """Payload of ``RANKING_CREATE``."""

    event_type: ClassVar[EventType] = EventType.RANKING_CREATE

    dish_id: Annotated[str, Field(min_length=1)]
    dish_type: Annotated[str, Field(min_length=1)]
    restaurant_id: Annotated[str, Field(min_length=1)]
    rank: Annotated[int, Field(ge=1)] | None = None
    taste_status: TasteStatus | None = None
    notes: str = ""
    photo_refs: tuple[str, ...] = ()

    def key_parts(self) -> tuple[str, str]:
        """Scope parts of the idempotency key: ``(dish_type, dish_id)``."""
        return (self.dish_type, self.dish_id)


class UpdateRankPayload(WireModel):
    """Payload of ``RANKING_UPDATE``. ``new_rank=None`` unranks the dish."""

    event_type: ClassVar[EventType] = EventType.RANKING_UPDATE

    ranking_id: Annotated[str, Field(min_length=1)]
    new_rank: Annotated[int, Field(ge=1)] | None
    dish_type: str | None = None
    dish_id: str | None = None

    def key_parts(self) -> tuple[str, str]:
        """Scope parts of the idempotency key."""
        return (self.dish_type or "", self.dish_id or self.ranking_id)


class TasteStatusUpdatePayload(WireModel):
    """Payload of ``TASTE_STATUS_UPDATE``."""

    event_type: ClassVar[EventType] = EventType.TASTE_STATUS_UPDATE

    ranking_id: Annotated[str, Field(min_length=1)]
    taste_status: TasteStatus
    dish_type: str | None = None
    dish_id: str | None = None

    def key_parts(self) -> tuple[str, str]:
        """Scope parts of the idempotency key."""
        return (self.dish_type or "", self.dish_id or self.ranking_id)


class ScopeClearPayload(WireModel):
    """Payload of ``SCOPE_CLEAR``. At least one filter is required."""

    event_type: ClassVar[EventType] = EventType.SCOPE_CLEAR

    dish_type: str | None = None
    restaurant_id: str | None = None

    @model_validator(mode="after")
    def _require_filter(self) -> "ScopeClearPayload":
        if not self.dish_type and not self.restaurant_id:
            msg = "dishType or restaurantId is required"
            raise ValueError(msg)
        return self

    def key_parts(self) -> tuple[str, str]:
        """Scope parts of the idempotency key."""
        return (self.dish_type or "", self.restaurant_id or "")


RankingPayload = (
    CreateRankingPayload
    | UpdateRankPayload
    | TasteStatusUpdatePayload
    | ScopeClearPayload
)

PAYLOAD_MODELS: dict[EventType, type[WireModel]] = {
    EventType.RANKING_CREATE: CreateRankingPayload,
    EventType.RANKING_UPDATE: UpdateRankPayload,
    EventType.TASTE_STATUS_UPDATE: TasteStatusUpdatePayload,
    EventType.SCOPE_CLEAR: ScopeClearPayload,
}


class EventMetadata(WireModel):
    """Transport metadata carried with an envelope."""

    retry_count: Annotated[int, Field(ge=0)] = 0


class EventEnvelope(WireModel):
    """Versioned, traceable wrapper around a ranking mutation."""

    event_id: Annotated[str, Field(min_length=1)]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    event_type: EventType
    source: Annotated[str, Field(min_length=1)]
    version: Annotated[str, Field(min_length=1)]
    trace_id: Annotated[str, Field(min_length=1)]
    user_id: Annotated[str, Field(min_length=1)]
    idempotency_key: Annotated[str, Field(min_length=1)]
    status: EventStatus = EventStatus.PENDING
    payload: RankingPayload
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @model_validator(mode="before")
    @classmethod
    def _parse_payload_by_type(cls, data: Any) -> Any:
        """Validate a raw payload against the model selected by ``eventType``."""
        if not isinstance(data, dict):
            return data

        raw_type = data.get("eventType", data.get("event_type"))
        payload = data.get("payload")
        try:
            event_type = EventType(raw_type)
        except ValueError:
            return data

        if isinstance(payload, dict):
            model = PAYLOAD_MODELS[event_type]
            try:
                parsed = model.model_validate(payload)
            except ValidationError as e:
                problems = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
                    for err in e.errors()
                )
                msg = f"invalid {event_type.value} payload: {problems}"
                raise ValueError(msg) from e
            return {**data, "payload": parsed}
        return data

    @model_validator(mode="after")
    def _check_payload_type(self) -> "EventEnvelope":
        expected = PAYLOAD_MODELS[self.event_type]
        if not isinstance(self.payload, expected):
            msg = f"payload does not match eventType {self.event_type.value}"
            raise ValueError(msg)
        return self

    @property
    def retry_count(self) -> int:
        """Number of earlier deliveries that did not complete."""
        return self.metadata.retry_count

    def to_json(self) -> str:
        """Serialize to the camelCase wire form."""
        return self.model_dump_json(by_alias=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to a camelCase JSON-compatible dict."""
        return self.model_dump(mode="json", by_alias=True)

    def with_retry_count(self, retry_count: int) -> "EventEnvelope":
        """Copy with ``metadata.retryCount`` replaced."""
        return self.model_copy(update={"metadata": EventMetadata(retry_count=retry_count)})

    def with_status(self, status: EventStatus) -> "EventEnvelope":
        """Copy with ``status`` replaced."""
        return self.model_copy(update={"status": status})


def parse_envelope(raw: str | bytes) -> EventEnvelope:
    """Parse and validate a serialized envelope.

    Args:
        raw: JSON text of an envelope.

    Returns:
        The validated envelope.

    Raises:
        MalformedEnvelopeError: If the JSON is invalid or fails validation.
    """
    try:
        return EventEnvelope.model_validate_json(raw)
    except ValidationError as e:
        errors = [
            {
                "loc": ".".join(str(part) for part in err["loc"]),
                "msg": err["msg"],
                "type": err["type"],
            }
            for err in e.errors()
        ]
        msg = f"Envelope failed validation with {len(errors)} error(s)"
        raise MalformedEnvelopeError(msg, errors) from e
