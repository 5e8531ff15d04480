"""Integration tests for the durable queue and its dead-letter queue."""

import json
import tempfile
from collections.abc import Generator
from datetime import timedelta
from pathlib import Path

import pytest

from onebest.events.models import (
    CreateRankingPayload,
    EventEnvelope,
    EventStatus,
    parse_envelope,
)
from onebest.queue.models import DeadLetterReason, DlqFilter, TrackingState
from onebest.queue.queue import DurableQueue
from onebest.store.metrics import StoreMetrics
from onebest.store.store import RankStore
from tests.helpers.time import FIXED_NOW, MutableClock


@pytest.fixture
def temp_db_path() -> Generator[Path]:
    """Create a temporary database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "onebest.sqlite"


@pytest.fixture
def clock() -> MutableClock:
    """A controllable clock."""
    return MutableClock()


@pytest.fixture
def queue(temp_db_path: Path, clock: MutableClock) -> Generator[DurableQueue]:
    """Connected queue with a 30 second visibility window and 3 retries."""
    StoreMetrics.reset()
    queue = DurableQueue(
        temp_db_path,
        visibility_timeout_seconds=30,
        max_retries=3,
        dlq_retention_days=14,
        clock=clock,
        sleep=lambda _: None,
    )
    queue.connect()
    yield queue
    queue.close()


def _envelope(event_id: str = "evt-1", dish_id: str = "d1") -> EventEnvelope:
    return EventEnvelope(
        event_id=event_id,
        timestamp=FIXED_NOW,
        event_type=CreateRankingPayload.event_type,
        source="onebest.api",
        version="1.0",
        trace_id="trace-1",
        user_id="u1",
        idempotency_key=f"key-{event_id}",
        payload=CreateRankingPayload(
            dish_id=dish_id, dish_type="ramen", restaurant_id="r1", rank=1
        ),
    )


def _expire(clock: MutableClock) -> None:
    clock.advance(seconds=31)


class TestSendReceive:
    """Tests for send, receive, and acknowledgement."""

    @pytest.mark.integration
    def test_receive_returns_sent_envelope(self, queue: DurableQueue) -> None:
        """Test a sent envelope comes back with a receipt handle."""
        message_id = queue.send(_envelope())

        batch = queue.receive_batch(max_messages=10, wait_seconds=0)

        assert [m.message_id for m in batch] == [message_id]
        message = batch[0]
        assert message.event_id == "evt-1"
        assert message.delivery_count == 1
        assert message.retry_count == 0
        assert message.receipt_handle is not None
        assert parse_envelope(message.body).event_id == "evt-1"

    @pytest.mark.integration
    def test_batch_size_limit(self, queue: DurableQueue, clock: MutableClock) -> None:
        """Test at most max_messages are returned, oldest first."""
        sent = []
        for i in range(12):
            sent.append(queue.send(_envelope(f"evt-{i}", f"d{i}")))
            clock.advance(seconds=1)

        first = queue.receive_batch(max_messages=10, wait_seconds=0)
        second = queue.receive_batch(max_messages=10, wait_seconds=0)

        assert [m.message_id for m in first] == sent[:10]
        assert [m.message_id for m in second] == sent[10:]

    @pytest.mark.integration
    def test_received_message_is_invisible(self, queue: DurableQueue) -> None:
        """Test a received message is hidden until the window passes."""
        queue.send(_envelope())
        queue.receive_batch(wait_seconds=0)

        assert queue.receive_batch(wait_seconds=0) == []
        depth = queue.depth()
        assert (depth.visible, depth.in_flight) == (0, 1)

    @pytest.mark.integration
    def test_redelivery_after_visibility_timeout(
        self, queue: DurableQueue, clock: MutableClock
    ) -> None:
        """Test an unacknowledged message comes back with retryCount stamped."""
        queue.send(_envelope())
        first = queue.receive_batch(wait_seconds=0)[0]

        _expire(clock)
        second = queue.receive_batch(wait_seconds=0)[0]

        assert second.message_id == first.message_id
        assert second.delivery_count == 2
        assert second.receipt_handle != first.receipt_handle
        assert parse_envelope(second.body).retry_count == 1

    @pytest.mark.integration
    def test_ack_removes_message(self, queue: DurableQueue, clock: MutableClock) -> None:
        """Test an acknowledged message is never redelivered."""
        queue.send(_envelope())
        message = queue.receive_batch(wait_seconds=0)[0]

        assert queue.ack(message.receipt_handle)  # type: ignore[arg-type]

        _expire(clock)
        assert queue.receive_batch(wait_seconds=0) == []
        assert queue.depth().in_flight == 0

    @pytest.mark.integration
    def test_stale_receipt_handle(self, queue: DurableQueue, clock: MutableClock) -> None:
        """Test the handle of an earlier delivery no longer acknowledges."""
        queue.send(_envelope())
        stale = queue.receive_batch(wait_seconds=0)[0]
        _expire(clock)
        current = queue.receive_batch(wait_seconds=0)[0]

        assert not queue.ack(stale.receipt_handle)  # type: ignore[arg-type]
        assert queue.ack(current.receipt_handle)  # type: ignore[arg-type]

    @pytest.mark.integration
    def test_delayed_send(self, queue: DurableQueue, clock: MutableClock) -> None:
        """Test a delayed message is invisible until its delay passes."""
        queue.send_raw(_envelope().to_json(), event_id="evt-1", delay_seconds=10)

        assert queue.receive_batch(wait_seconds=0) == []
        clock.advance(seconds=10)
        assert len(queue.receive_batch(wait_seconds=0)) == 1

    @pytest.mark.integration
    def test_invalid_batch_size(self, queue: DurableQueue) -> None:
        """Test a batch size below one is refused."""
        with pytest.raises(ValueError):
            queue.receive_batch(max_messages=0, wait_seconds=0)

    @pytest.mark.integration
    def test_should_stop_cuts_wait_short(self, queue: DurableQueue) -> None:
        """Test a stop request returns without waiting for a full batch."""
        queue.send(_envelope())

        batch = queue.receive_batch(
            max_messages=10, wait_seconds=3600, should_stop=lambda: True
        )

        assert len(batch) == 1


class TestDeadLetterQueue:
    """Tests for dead-letter routing and management."""

    @pytest.mark.integration
    def test_max_retries_exceeded(self, queue: DurableQueue, clock: MutableClock) -> None:
        """Test a message moves to the DLQ after max_retries redeliveries."""
        queue.send(_envelope())
        for _ in range(4):
            assert len(queue.receive_batch(wait_seconds=0)) == 1
            _expire(clock)

        assert queue.receive_batch(wait_seconds=0) == []

        dead = queue.list_dead_letters()
        assert len(dead) == 1
        assert dead[0].reason == DeadLetterReason.MAX_RETRIES_EXCEEDED
        assert dead[0].retry_count == 3
        envelope = parse_envelope(dead[0].body)
        assert envelope.retry_count == 3
        assert envelope.status == EventStatus.DEAD_LETTERED
        assert dead[0].event_type == "RANKING_CREATE"
        assert dead[0].user_id == "u1"

    @pytest.mark.integration
    def test_explicit_dead_letter(self, queue: DurableQueue) -> None:
        """Test a worker can reject a received message."""
        queue.send(_envelope())
        message = queue.receive_batch(wait_seconds=0)[0]

        dead = queue.dead_letter(
            message,
            DeadLetterReason.VALIDATION_FAILED,
            error_class="InvalidRankError",
            error_message="Rank 9 is outside 1..5",
        )

        assert dead is not None
        assert dead.retry_count == 0
        assert queue.depth().dead_letters == 1
        assert queue.get_dead_letter(message.message_id) == dead

    @pytest.mark.integration
    def test_dead_letter_with_stale_handle(
        self, queue: DurableQueue, clock: MutableClock
    ) -> None:
        """Test a stale delivery cannot dead-letter a redelivered message."""
        queue.send(_envelope())
        stale = queue.receive_batch(wait_seconds=0)[0]
        _expire(clock)
        queue.receive_batch(wait_seconds=0)

        assert queue.dead_letter(stale, DeadLetterReason.UNEXPECTED_ERROR) is None
        assert queue.depth().dead_letters == 0

    @pytest.mark.integration
    def test_malformed_body_kept_verbatim(self, queue: DurableQueue) -> None:
        """Test an unparseable body is dead-lettered unchanged."""
        queue.send_raw("{not json", event_id="evt-bad")
        message = queue.receive_batch(wait_seconds=0)[0]

        dead = queue.dead_letter(message, DeadLetterReason.MALFORMED_ENVELOPE)

        assert dead is not None
        assert dead.body == "{not json"
        assert dead.event_id == "evt-bad"

    @pytest.mark.integration
    def test_filters(self, queue: DurableQueue, clock: MutableClock) -> None:
        """Test filtering dead letters by reason and time."""
        queue.send(_envelope("evt-1", "d1"))
        clock.advance(seconds=1)
        queue.send_raw(json.dumps({"eventId": "evt-2", "source": "batch"}))
        for message in queue.receive_batch(wait_seconds=0):
            reason = (
                DeadLetterReason.VALIDATION_FAILED
                if message.event_id == "evt-1"
                else DeadLetterReason.MALFORMED_ENVELOPE
            )
            queue.dead_letter(message, reason)
            clock.advance(seconds=60)

        by_reason = queue.list_dead_letters(
            DlqFilter(reason=DeadLetterReason.MALFORMED_ENVELOPE)
        )
        by_source = queue.list_dead_letters(DlqFilter(source="onebest.api"))
        recent = queue.list_dead_letters(
            DlqFilter(since=FIXED_NOW + timedelta(seconds=30))
        )

        assert [d.event_id for d in by_reason] == ["evt-2"]
        assert [d.event_id for d in by_source] == ["evt-1"]
        assert [d.event_id for d in recent] == ["evt-2"]
        assert [d.event_id for d in queue.list_dead_letters()] == ["evt-2", "evt-1"]

    @pytest.mark.integration
    def test_requeue_resets_delivery_count(self, queue: DurableQueue) -> None:
        """Test a requeued dead letter starts a fresh delivery count."""
        queue.send(_envelope())
        message = queue.receive_batch(wait_seconds=0)[0]
        dead = queue.dead_letter(message, DeadLetterReason.UNEXPECTED_ERROR)
        assert dead is not None

        new_id = queue.requeue_dead_letter(dead.message_id, _envelope().to_json())

        assert new_id is not None
        assert queue.get_dead_letter(dead.message_id) is None
        redelivered = queue.receive_batch(wait_seconds=0)[0]
        assert redelivered.message_id == new_id
        assert redelivered.delivery_count == 1
        assert queue.requeue_dead_letter(dead.message_id, "{}") is None

    @pytest.mark.integration
    def test_purge_expired(self, queue: DurableQueue, clock: MutableClock) -> None:
        """Test dead letters older than the retention period are purged."""
        queue.send(_envelope("evt-old", "d1"))
        old = queue.receive_batch(wait_seconds=0)[0]
        queue.dead_letter(old, DeadLetterReason.UNEXPECTED_ERROR)

        clock.advance(days=10)
        queue.send(_envelope("evt-new", "d2"))
        new = queue.receive_batch(wait_seconds=0)[0]
        queue.dead_letter(new, DeadLetterReason.UNEXPECTED_ERROR)

        clock.advance(days=5)
        assert queue.purge_expired_dead_letters() == 1
        assert [d.event_id for d in queue.list_dead_letters()] == ["evt-new"]

    @pytest.mark.integration
    def test_delete_dead_letter(self, queue: DurableQueue) -> None:
        """Test a dead letter can be discarded."""
        queue.send(_envelope())
        message = queue.receive_batch(wait_seconds=0)[0]
        queue.dead_letter(message, DeadLetterReason.UNEXPECTED_ERROR)

        assert queue.delete_dead_letter(message.message_id)
        assert not queue.delete_dead_letter(message.message_id)


class TestTrackingStatus:
    """Tests for tracking lookups."""

    @pytest.mark.integration
    def test_lifecycle(
        self, queue: DurableQueue, temp_db_path: Path, clock: MutableClock
    ) -> None:
        """Test an event moves from PENDING through IN_FLIGHT to COMPLETED."""
        assert queue.tracking_status("evt-1").state == TrackingState.UNKNOWN

        queue.send(_envelope())
        assert queue.tracking_status("evt-1").state == TrackingState.PENDING

        message = queue.receive_batch(wait_seconds=0)[0]
        status = queue.tracking_status("evt-1")
        assert status.state == TrackingState.IN_FLIGHT
        assert status.delivery_count == 1

        with RankStore(temp_db_path, clock=clock) as store:
            with store.transaction("test"):
                store.record_processed("key-evt-1", "evt-1", "RANKING_CREATE")
            queue.ack(message.receipt_handle)  # type: ignore[arg-type]

        assert queue.tracking_status("evt-1").state == TrackingState.COMPLETED

    @pytest.mark.integration
    def test_dead_lettered(self, queue: DurableQueue) -> None:
        """Test a dead-lettered event reports its reason."""
        queue.send(_envelope())
        message = queue.receive_batch(wait_seconds=0)[0]
        queue.dead_letter(
            message,
            DeadLetterReason.VALIDATION_FAILED,
            error_class="DuplicateDishError",
            error_message="already ranked",
        )

        status = queue.tracking_status("evt-1")

        assert status.state == TrackingState.DEAD_LETTERED
        assert status.reason == DeadLetterReason.VALIDATION_FAILED
        assert status.error_message == "already ranked"
