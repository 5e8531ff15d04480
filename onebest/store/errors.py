"""Domain exceptions for the rank store.

This module defines a hierarchy of exceptions for the store layer,
separating transient infrastructure errors (which the pipeline retries
through queue redelivery) from permanent ones.
"""


class StoreError(Exception):
    """Base exception for all rank store errors.

    All exceptions raised by the store should inherit from this class
    to enable consistent error handling at the application level.
    """


class ConnectionError(StoreError):
    """Raised when the database connection is not established."""

    def __init__(self, message: str = "Database not connected") -> None:
        """Initialize the connection error.

        Args:
            message: Human-readable error message.
        """
        super().__init__(message)


class TransientStoreError(StoreError):
    """Raised for failures that may succeed if the operation is retried.

    Workers leave the message unacknowledged when they see this error so
    the queue redelivers it after the visibility window.
    """

    def __init__(self, operation: str, message: str) -> None:
        """Initialize the transient error.

        Args:
            operation: Store operation that failed.
            message: Human-readable error message.
        """
        self.operation = operation
        super().__init__(f"{operation}: {message}")


class StoreBusyError(TransientStoreError):
    """Raised when the write lock could not be acquired in time."""


class StoreUnavailableError(TransientStoreError):
    """Raised when the database cannot be reached or read."""


class MigrationError(StoreError):
    """Raised when a schema migration fails."""

    def __init__(self, version: int, message: str) -> None:
        """Initialize the migration error.

        Args:
            version: The migration version that failed.
            message: Human-readable error message.
        """
        self.version = version
        super().__init__(f"Migration {version} failed: {message}")
