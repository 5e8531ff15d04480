"""Administrative inspection and replay of dead-lettered messages."""

import structlog

from onebest.dlq.errors import DeadLetterNotFoundError, ReplayRejectedError
from onebest.events.errors import MalformedEnvelopeError
from onebest.events.models import EventEnvelope, EventStatus, parse_envelope
from onebest.queue.models import DeadLetter, DlqFilter
from onebest.queue.queue import DurableQueue


logger = structlog.get_logger()


class DlqReprocessor:
    """Lists, replays, and discards dead letters of one queue.

    Replays go back onto the main queue with a fresh delivery count.
    The idempotency key always stays the original one, so a replay of an
    already-applied mutation is acknowledged as a duplicate.
    """

    def __init__(self, queue: DurableQueue) -> None:
        """Initialize the reprocessor.

        Args:
            queue: Queue whose dead letters are administered.
        """
        self._queue = queue
        self._log = logger.bind(component="dlq", queue=queue.name)

    def list_messages(self, dlq_filter: DlqFilter | None = None) -> list[DeadLetter]:
        """List dead letters, newest first.

        Args:
            dlq_filter: Source, event type, reason, and time range filters.
        """
        return self._queue.list_dead_letters(dlq_filter)

    def get_message(self, message_id: str) -> DeadLetter:
        """Get one dead letter.

        Raises:
            DeadLetterNotFoundError: If it does not exist.
        """
        dead = self._queue.get_dead_letter(message_id)
        if dead is None:
            raise DeadLetterNotFoundError(message_id)
        return dead

    def replay(
        self,
        message_id: str,
        corrected_envelope: EventEnvelope | None = None,
    ) -> str:
        """Re-inject a dead letter into the main queue.

        Args:
            message_id: Dead letter to replay.
            corrected_envelope: Replacement envelope after manual
                correction. Its idempotency key is replaced by the
                original one when the original body is readable.

        Returns:
            The new queue message ID.

        Raises:
            DeadLetterNotFoundError: If the dead letter does not exist.
            ReplayRejectedError: If the stored body is malformed and no
                corrected envelope is given.
        """
        dead = self.get_message(message_id)

        try:
            original = parse_envelope(dead.body)
        except MalformedEnvelopeError:
            original = None

        if corrected_envelope is not None:
            envelope = corrected_envelope
            if original is not None and envelope.idempotency_key != original.idempotency_key:
                self._log.warning(
                    "idempotency_key_preserved",
                    message_id=message_id,
                    event_id=envelope.event_id,
                )
                envelope = envelope.model_copy(
                    update={"idempotency_key": original.idempotency_key}
                )
        elif original is not None:
            envelope = original
        else:
            raise ReplayRejectedError(
                message_id, "stored body is malformed; supply a corrected envelope"
            )

        body = envelope.with_retry_count(0).with_status(EventStatus.PENDING).to_json()
        new_message_id = self._queue.requeue_dead_letter(message_id, body)
        if new_message_id is None:
            # Replayed or discarded concurrently.
            raise DeadLetterNotFoundError(message_id)

        self._log.info(
            "dead_letter_replayed",
            message_id=message_id,
            new_message_id=new_message_id,
            event_id=envelope.event_id,
            event_type=envelope.event_type.value,
            corrected=corrected_envelope is not None,
        )
        return new_message_id

    def discard(self, message_id: str) -> None:
        """Delete a dead letter without replaying it.

        Raises:
            DeadLetterNotFoundError: If it does not exist.
        """
        if not self._queue.delete_dead_letter(message_id):
            raise DeadLetterNotFoundError(message_id)
        self._log.warning("dead_letter_discarded", message_id=message_id)

    def purge_expired(self) -> int:
        """Delete dead letters past the retention period.

        Returns:
            Number of dead letters deleted.
        """
        return self._queue.purge_expired_dead_letters()
