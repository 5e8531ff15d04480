"""Observability module for logging."""

from onebest.observability.logging import (
    bind_message_context,
    clear_message_context,
    configure_logging,
    get_logger,
)


__all__ = [
    "bind_message_context",
    "clear_message_context",
    "configure_logging",
    "get_logger",
]
