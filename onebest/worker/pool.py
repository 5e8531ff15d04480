"""Worker pool polling the ranking queue from several threads."""

import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from onebest.queue.queue import DurableQueue
from onebest.ranking.service import RankingService
from onebest.settings.app import AppSettings
from onebest.store.errors import TransientStoreError
from onebest.store.store import RankStore
from onebest.worker.metrics import PipelineMetrics
from onebest.worker.processor import BatchResult, EventProcessor


logger = structlog.get_logger()


@dataclass
class PoolResult:
    """Aggregated result of a pool run."""

    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    batches: int = 0
    messages: int = 0
    applied: int = 0
    duplicates: int = 0
    rejected: int = 0
    retried: int = 0
    worker_errors: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_batch(self, batch: BatchResult) -> None:
        """Fold a batch result into the totals."""
        with self._lock:
            self.batches += 1
            self.messages += len(batch.results)
            self.applied += batch.applied
            self.duplicates += batch.duplicates
            self.rejected += batch.rejected
            self.retried += len(batch.batch_item_failures)

    def add_worker_error(self) -> None:
        """Count a failed poll or crashed worker loop."""
        with self._lock:
            self.worker_errors += 1

    @property
    def duration_ms(self) -> float:
        """Get total duration in milliseconds."""
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds() * 1000


class WorkerPool:
    """Runs N independent polling workers against one queue.

    There is no coordinator: each thread opens its own store and queue
    connections, and the store's write lock serializes mutations of the
    same scope. Stopping is cooperative; in-flight batches finish and
    unacknowledged messages reappear after their visibility timeout.
    """

    def __init__(
        self,
        settings: AppSettings,
        clock: Callable[[], datetime] | None = None,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        """Initialize the pool.

        Args:
            settings: Application settings.
            clock: Source of "now" passed to stores and queues.
            metrics: Optional metrics instance.
        """
        self._settings = settings
        self._clock = clock
        self._metrics = metrics or PipelineMetrics.get_instance()
        self._stop = threading.Event()
        self._log = logger.bind(component="pool", queue=settings.queue_name)

    @property
    def stopping(self) -> bool:
        """Whether a stop has been requested."""
        return self._stop.is_set()

    def stop(self) -> None:
        """Ask every worker to exit after its current batch."""
        if not self._stop.is_set():
            self._log.info("pool_stop_requested")
        self._stop.set()

    def run(self) -> PoolResult:
        """Poll until :meth:`stop` is called.

        Returns:
            Totals over the whole run.
        """
        return self._run(drain=False)

    def drain(self) -> PoolResult:
        """Process until no visible messages remain, then return.

        Messages left for redelivery stay invisible until their
        visibility timeout expires, so they are not waited for.

        Returns:
            Totals over the drain.
        """
        return self._run(drain=True)

    def _run(self, drain: bool) -> PoolResult:
        self._stop.clear()
        result = PoolResult(run_id=str(uuid.uuid4())[:8], started_at=datetime.now(UTC))
        worker_count = self._settings.worker_count

        self._log.info(
            "pool_started",
            run_id=result.run_id,
            worker_count=worker_count,
            drain=drain,
        )

        if worker_count <= 1:
            try:
                self._worker_loop(0, drain, result)
            except Exception as e:  # noqa: BLE001
                self._worker_crashed(0, e, result)
        else:
            with ThreadPoolExecutor(
                max_workers=worker_count, thread_name_prefix="onebest-worker"
            ) as executor:
                futures = {
                    executor.submit(self._worker_loop, index, drain, result): index
                    for index in range(worker_count)
                }
                for future in as_completed(futures):
                    try:
                        future.result()
                    except Exception as e:  # noqa: BLE001
                        self._worker_crashed(futures[future], e, result)

        result.finished_at = datetime.now(UTC)
        self._log.info(
            "pool_finished",
            run_id=result.run_id,
            batches=result.batches,
            messages=result.messages,
            applied=result.applied,
            duplicates=result.duplicates,
            rejected=result.rejected,
            retried=result.retried,
            duration_ms=round(result.duration_ms, 2),
        )
        return result

    def _worker_crashed(self, index: int, error: Exception, result: PoolResult) -> None:
        result.add_worker_error()
        self._log.error(
            "worker_crashed",
            worker=index,
            error=str(error),
            error_type=type(error).__name__,
        )

    def _worker_loop(self, index: int, drain: bool, result: PoolResult) -> None:
        settings = self._settings
        log = self._log.bind(worker=index)
        wait_seconds = 0.0 if drain else settings.max_batch_wait_seconds

        store = RankStore(settings.db_path, clock=self._clock)
        queue = DurableQueue(
            settings.db_path,
            queue_name=settings.queue_name,
            visibility_timeout_seconds=settings.visibility_timeout_seconds,
            max_retries=settings.max_retries,
            dlq_retention_days=settings.dlq_retention_days,
            poll_interval_seconds=settings.poll_interval_seconds,
            clock=self._clock,
        )

        with store, queue:
            service = RankingService(
                store,
                max_list_length=settings.max_list_length,
                lock_retry_attempts=settings.lock_retry_attempts,
            )
            processor = EventProcessor(service, store, queue, self._metrics)
            log.debug("worker_started")

            while not self._stop.is_set():
                try:
                    batch = queue.receive_batch(
                        max_messages=settings.batch_size,
                        wait_seconds=wait_seconds,
                        should_stop=self._stop.is_set,
                    )
                except TransientStoreError as e:
                    result.add_worker_error()
                    log.warning("receive_failed", error=str(e))
                    time.sleep(settings.poll_interval_seconds)
                    continue

                if not batch:
                    if drain:
                        break
                    time.sleep(settings.poll_interval_seconds)
                    continue

                result.add_batch(processor.process_batch(batch))

        log.debug("worker_stopped")
