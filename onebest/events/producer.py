"""Event producer: wraps ranking mutations in envelopes and publishes them."""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from onebest.events.bus import EventBus
from onebest.events.idempotency import compute_idempotency_key
from onebest.events.models import (
    PAYLOAD_MODELS,
    EventEnvelope,
    EventStatus,
    RankingPayload,
)


logger = structlog.get_logger()


class EventProducer:
    """Single point where envelopes are built and idempotency keys minted.

    Example:
        >>> producer = EventProducer(bus, source="onebest.api", version="1.0")
        >>> envelope = producer.publish("u1", payload, request_nonce="req-1")
    """

    def __init__(
        self,
        bus: EventBus,
        source: str,
        version: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the producer.

        Args:
            bus: Bus to publish to.
            source: Value stamped into ``source``.
            version: Envelope schema version.
            clock: Source of envelope timestamps.
        """
        self._bus = bus
        self._source = source
        self._version = version
        self._clock = clock or (lambda: datetime.now(UTC))
        self._log = logger.bind(component="producer", source=source)

    def build_envelope(
        self,
        user_id: str,
        payload: RankingPayload,
        request_nonce: str | None = None,
        event_id: str | None = None,
        trace_id: str | None = None,
    ) -> EventEnvelope:
        """Wrap a payload in a PENDING envelope.

        Args:
            user_id: Subject user.
            payload: Typed mutation payload; its class selects the event type.
            request_nonce: Client request nonce. Retries of one logical
                request must reuse it to get the same idempotency key. A
                fresh nonce is generated when omitted.
            event_id: Event ID to reuse (generated when omitted).
            trace_id: Trace ID to propagate (generated when omitted).

        Returns:
            The envelope.
        """
        event_type = type(payload).event_type
        if PAYLOAD_MODELS[event_type] is not type(payload):
            msg = f"Unsupported payload type: {type(payload).__name__}"
            raise TypeError(msg)

        dish_type, dish_id = payload.key_parts()
        key = compute_idempotency_key(
            user_id=user_id,
            dish_type=dish_type,
            dish_id=dish_id,
            mutation_type=event_type.value,
            request_nonce=request_nonce or str(uuid.uuid4()),
        )
        return EventEnvelope(
            event_id=event_id or str(uuid.uuid4()),
            timestamp=self._clock(),
            event_type=event_type,
            source=self._source,
            version=self._version,
            trace_id=trace_id or str(uuid.uuid4()),
            user_id=user_id,
            idempotency_key=key,
            status=EventStatus.PENDING,
            payload=payload,
        )

    def publish(
        self,
        user_id: str,
        payload: RankingPayload,
        request_nonce: str | None = None,
        event_id: str | None = None,
        trace_id: str | None = None,
    ) -> EventEnvelope:
        """Build an envelope and publish it to the bus.

        Returns:
            The published envelope.

        Raises:
            UndeliverableEventError: If no queue is subscribed to the type.
        """
        envelope = self.build_envelope(
            user_id,
            payload,
            request_nonce=request_nonce,
            event_id=event_id,
            trace_id=trace_id,
        )
        self._bus.publish(envelope)
        self._log.debug(
            "envelope_produced",
            event_id=envelope.event_id,
            event_type=envelope.event_type.value,
            idempotency_key=envelope.idempotency_key,
        )
        return envelope
