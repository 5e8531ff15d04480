"""Worker pool and per-message event processing."""

from onebest.worker.metrics import PipelineMetrics
from onebest.worker.pool import PoolResult, WorkerPool
from onebest.worker.processor import (
    BatchResult,
    EventProcessor,
    MessageOutcome,
    MessageResult,
)
from onebest.worker.state_machine import (
    MessageState,
    MessageStateMachine,
    MessageStateTransitionError,
)


__all__ = [
    "BatchResult",
    "EventProcessor",
    "MessageOutcome",
    "MessageResult",
    "MessageState",
    "MessageStateMachine",
    "MessageStateTransitionError",
    "PipelineMetrics",
    "PoolResult",
    "WorkerPool",
]
