"""Dead-letter queue inspection and replay."""

from onebest.dlq.errors import DeadLetterNotFoundError, DlqError, ReplayRejectedError
from onebest.dlq.reprocessor import DlqReprocessor


__all__ = [
    "DeadLetterNotFoundError",
    "DlqError",
    "DlqReprocessor",
    "ReplayRejectedError",
]
