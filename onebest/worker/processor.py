"""Event processor: applies queue messages to the rank store one at a time.

Each message in a batch is handled independently. A message ends in one
of three ways:

- acknowledged, after its mutation committed or its idempotency key was
  found already applied;
- dead-lettered, when redelivery cannot help (malformed envelope, invalid
  mutation, unexpected error);
- left in the queue, after a transient store failure, so the visibility
  timeout redelivers it.
"""

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

import structlog

from onebest.events.errors import MalformedEnvelopeError
from onebest.events.models import EventEnvelope, parse_envelope
from onebest.observability.logging import bind_message_context, clear_message_context
from onebest.queue.models import DeadLetterReason, QueueMessage
from onebest.queue.queue import DurableQueue
from onebest.ranking.errors import RankingValidationError
from onebest.ranking.service import RankingService
from onebest.store.errors import TransientStoreError
from onebest.store.repository import RankRepository
from onebest.worker.metrics import PipelineMetrics
from onebest.worker.state_machine import MessageState, MessageStateMachine


logger = structlog.get_logger()


class MessageOutcome(str, Enum):
    """Outcome reported for one message.

    - APPLIED: mutation committed and message acknowledged
    - DUPLICATE: idempotency key already applied; acknowledged
    - REJECTED: routed to the dead-letter queue
    - RETRY: left in the queue for redelivery
    """

    APPLIED = "APPLIED"
    DUPLICATE = "DUPLICATE"
    REJECTED = "REJECTED"
    RETRY = "RETRY"


@dataclass
class MessageResult:
    """Result of processing a single message."""

    message_id: str
    outcome: MessageOutcome
    final_state: MessageState
    event_id: str | None = None
    error_class: str | None = None
    error_message: str | None = None
    duration_ms: float = 0.0


@dataclass
class BatchResult:
    """Result of processing a batch of messages."""

    results: list[MessageResult] = field(default_factory=list)

    @property
    def batch_item_failures(self) -> list[str]:
        """Message IDs left in the queue for redelivery."""
        return [r.message_id for r in self.results if r.outcome == MessageOutcome.RETRY]

    def count(self, outcome: MessageOutcome) -> int:
        """Number of messages with the given outcome."""
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def applied(self) -> int:
        """Messages whose mutation committed."""
        return self.count(MessageOutcome.APPLIED)

    @property
    def duplicates(self) -> int:
        """Messages acknowledged as idempotent replays."""
        return self.count(MessageOutcome.DUPLICATE)

    @property
    def rejected(self) -> int:
        """Messages routed to the dead-letter queue."""
        return self.count(MessageOutcome.REJECTED)


class EventProcessor:
    """Drives each message through validation, application, and acknowledgement."""

    def __init__(
        self,
        service: RankingService,
        store: RankRepository,
        queue: DurableQueue,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        """Initialize the processor.

        Args:
            service: Ranking service that applies envelopes.
            store: Rank repository, for idempotency lookups.
            queue: Queue the messages came from.
            metrics: Optional metrics instance.
        """
        self._service = service
        self._store = store
        self._queue = queue
        self._metrics = metrics or PipelineMetrics.get_instance()
        self._log = logger.bind(component="worker", queue=queue.name)

    def process_batch(self, messages: Sequence[QueueMessage]) -> BatchResult:
        """Process every message of a batch independently.

        Returns:
            Per-message results; ``batch_item_failures`` names the
            messages left for redelivery.
        """
        batch = BatchResult()
        self._metrics.record_received(len(messages))

        for message in messages:
            try:
                result = self.process_message(message)
            except Exception as e:  # noqa: BLE001
                # Failure isolation: the message stays in the queue and
                # the rest of the batch carries on.
                self._log.error(
                    "message_processing_error",
                    message_id=message.message_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._metrics.record_retried()
                result = MessageResult(
                    message_id=message.message_id,
                    outcome=MessageOutcome.RETRY,
                    final_state=MessageState.FAILED,
                    event_id=message.event_id,
                    error_class=type(e).__name__,
                    error_message=str(e),
                )
            batch.results.append(result)

        self._metrics.record_batch()
        self._log.info(
            "batch_processed",
            size=len(messages),
            applied=batch.applied,
            duplicates=batch.duplicates,
            rejected=batch.rejected,
            retry=len(batch.batch_item_failures),
        )
        return batch

    def process_message(self, message: QueueMessage) -> MessageResult:
        """Process a single message.

        Returns:
            The message's result.
        """
        start_ns = time.perf_counter_ns()
        machine = MessageStateMachine(message.message_id)
        machine.to_validating()

        try:
            envelope = parse_envelope(message.body)
        except MalformedEnvelopeError as e:
            self._log.warning(
                "envelope_rejected",
                message_id=message.message_id,
                errors=e.errors,
            )
            return self._reject(
                machine, message, None, DeadLetterReason.MALFORMED_ENVELOPE, e
            )

        bind_message_context(envelope.event_id, envelope.trace_id, envelope.user_id)
        try:
            return self._validate_and_apply(machine, message, envelope, start_ns)
        finally:
            clear_message_context()

    def _validate_and_apply(
        self,
        machine: MessageStateMachine,
        message: QueueMessage,
        envelope: EventEnvelope,
        start_ns: int,
    ) -> MessageResult:
        try:
            already_applied = self._store.is_processed(envelope.idempotency_key)
        except TransientStoreError as e:
            return self._leave_for_retry(machine, message, envelope, e)

        if already_applied:
            return self._acknowledge(machine, message, envelope, start_ns, duplicate=True)

        machine.to_applying()
        try:
            result = self._service.apply_event(envelope)
        except TransientStoreError as e:
            return self._leave_for_retry(machine, message, envelope, e)
        except RankingValidationError as e:
            self._log.warning(
                "mutation_rejected",
                message_id=message.message_id,
                **e.to_dict(),
            )
            return self._reject(
                machine, message, envelope, DeadLetterReason.VALIDATION_FAILED, e
            )
        except Exception as e:  # noqa: BLE001
            self._log.exception(
                "mutation_failed_unexpectedly",
                message_id=message.message_id,
                event_type=envelope.event_type.value,
            )
            return self._reject(
                machine, message, envelope, DeadLetterReason.UNEXPECTED_ERROR, e
            )

        return self._acknowledge(
            machine, message, envelope, start_ns, duplicate=result.duplicate
        )

    def _acknowledge(
        self,
        machine: MessageStateMachine,
        message: QueueMessage,
        envelope: EventEnvelope,
        start_ns: int,
        duplicate: bool,
    ) -> MessageResult:
        machine.to_acked()
        duration_ms = (time.perf_counter_ns() - start_ns) / 1_000_000

        if message.receipt_handle is not None:
            try:
                self._queue.ack(message.receipt_handle)
            except TransientStoreError as e:
                # The mutation is committed; a redelivery is a duplicate.
                self._log.warning(
                    "ack_failed",
                    message_id=message.message_id,
                    error=str(e),
                )

        self._metrics.record_acked(duration_ms, duplicate=duplicate)
        self._log.info(
            "message_acked",
            message_id=message.message_id,
            event_type=envelope.event_type.value,
            duplicate=duplicate,
            delivery_count=message.delivery_count,
            duration_ms=round(duration_ms, 2),
        )
        return MessageResult(
            message_id=message.message_id,
            outcome=MessageOutcome.DUPLICATE if duplicate else MessageOutcome.APPLIED,
            final_state=machine.state,
            event_id=envelope.event_id,
            duration_ms=duration_ms,
        )

    def _reject(
        self,
        machine: MessageStateMachine,
        message: QueueMessage,
        envelope: EventEnvelope | None,
        reason: DeadLetterReason,
        error: Exception,
    ) -> MessageResult:
        machine.to_rejected()
        event_id = envelope.event_id if envelope else message.event_id

        try:
            self._queue.dead_letter(
                message,
                reason,
                error_class=type(error).__name__,
                error_message=str(error),
            )
        except TransientStoreError as e:
            self._log.warning(
                "dead_letter_failed",
                message_id=message.message_id,
                error=str(e),
            )
            self._metrics.record_retried()
            return MessageResult(
                message_id=message.message_id,
                outcome=MessageOutcome.RETRY,
                final_state=machine.state,
                event_id=event_id,
                error_class=type(error).__name__,
                error_message=str(error),
            )

        self._metrics.record_rejected(reason.value)
        self._log.error(
            "message_rejected",
            message_id=message.message_id,
            reason=reason.value,
            error_class=type(error).__name__,
            error=str(error),
            user_id=envelope.user_id if envelope else None,
        )
        return MessageResult(
            message_id=message.message_id,
            outcome=MessageOutcome.REJECTED,
            final_state=machine.state,
            event_id=event_id,
            error_class=type(error).__name__,
            error_message=str(error),
        )

    def _leave_for_retry(
        self,
        machine: MessageStateMachine,
        message: QueueMessage,
        envelope: EventEnvelope,
        error: TransientStoreError,
    ) -> MessageResult:
        machine.to_failed()
        self._metrics.record_retried()
        self._log.warning(
            "transient_failure",
            message_id=message.message_id,
            delivery_count=message.delivery_count,
            max_retries=self._queue.max_retries,
            error=str(error),
        )
        return MessageResult(
            message_id=message.message_id,
            outcome=MessageOutcome.RETRY,
            final_state=machine.state,
            event_id=envelope.event_id,
            error_class=type(error).__name__,
            error_message=str(error),
        )
