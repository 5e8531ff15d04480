"""In-process event bus fanning envelopes out to subscribed queues."""

from collections.abc import Iterable
from typing import Protocol

import structlog

from onebest.events.errors import UndeliverableEventError
from onebest.events.models import EventEnvelope, EventType


logger = structlog.get_logger()


class EventSink(Protocol):
    """Anything that accepts envelopes, typically a durable queue."""

    @property
    def name(self) -> str:
        """Sink name for logging."""
        ...

    def send(self, envelope: EventEnvelope) -> str:
        """Accept an envelope and return the sink's message ID."""
        ...


class EventBus:
    """Routes each envelope to every sink subscribed to its event type.

    A sink subscribed with ``event_types=None`` receives every type.
    """

    def __init__(self) -> None:
        """Initialize an empty bus."""
        self._subscriptions: list[tuple[EventSink, frozenset[EventType] | None]] = []
        self._log = logger.bind(component="bus")

    def subscribe(
        self,
        sink: EventSink,
        event_types: Iterable[EventType] | None = None,
    ) -> None:
        """Subscribe a sink.

        Args:
            sink: Destination for matching envelopes.
            event_types: Types to route to the sink (None for all).
        """
        types = frozenset(event_types) if event_types is not None else None
        self._subscriptions.append((sink, types))
        self._log.debug(
            "sink_subscribed",
            sink=sink.name,
            event_types=sorted(t.value for t in types) if types else "*",
        )

    def sinks_for(self, event_type: EventType) -> list[EventSink]:
        """Get the sinks an event type is routed to."""
        return [
            sink
            for sink, types in self._subscriptions
            if types is None or event_type in types
        ]

    def publish(self, envelope: EventEnvelope) -> list[str]:
        """Deliver an envelope to every matching sink.

        Args:
            envelope: Envelope to deliver.

        Returns:
            Message IDs assigned by each sink.

        Raises:
            UndeliverableEventError: If no sink matches the event type.
        """
        sinks = self.sinks_for(envelope.event_type)
        if not sinks:
            self._log.error(
                "event_undeliverable",
                event_id=envelope.event_id,
                event_type=envelope.event_type.value,
            )
            raise UndeliverableEventError(envelope.event_id, envelope.event_type.value)

        message_ids = [sink.send(envelope) for sink in sinks]
        self._log.info(
            "event_published",
            event_id=envelope.event_id,
            event_type=envelope.event_type.value,
            trace_id=envelope.trace_id,
            sinks=len(sinks),
        )
        return message_ids
