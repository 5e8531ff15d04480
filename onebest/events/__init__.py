"""Event envelopes, the producer, and the in-process event bus."""

from onebest.events.bus import EventBus, EventSink
from onebest.events.errors import (
    EventError,
    MalformedEnvelopeError,
    UndeliverableEventError,
)
from onebest.events.idempotency import compute_idempotency_key
from onebest.events.models import (
    PAYLOAD_MODELS,
    CreateRankingPayload,
    EventEnvelope,
    EventMetadata,
    EventStatus,
    EventType,
    RankingPayload,
    ScopeClearPayload,
    TasteStatusUpdatePayload,
    UpdateRankPayload,
    parse_envelope,
)
from onebest.events.producer import EventProducer


__all__ = [
    "PAYLOAD_MODELS",
    "CreateRankingPayload",
    "EventBus",
    "EventEnvelope",
    "EventError",
    "EventMetadata",
    "EventProducer",
    "EventSink",
    "EventStatus",
    "EventType",
    "MalformedEnvelopeError",
    "RankingPayload",
    "ScopeClearPayload",
    "TasteStatusUpdatePayload",
    "UndeliverableEventError",
    "UpdateRankPayload",
    "compute_idempotency_key",
    "parse_envelope",
]
