"""Error types for the ranking domain service.

Validation errors are permanent: redelivering the event cannot fix them,
so the pipeline routes them to the dead-letter queue instead of retrying.
"""

from typing import Any


class RankingError(Exception):
    """Base exception for ranking domain errors."""

    def __init__(self, message: str, **details: Any) -> None:
        """Initialize the ranking error.

        Args:
            message: Human-readable error message.
            **details: Additional structured error details.
        """
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "error_class": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class RankingValidationError(RankingError):
    """Base class for invalid mutation requests."""


class DuplicateDishError(RankingValidationError):
    """Raised when a user already ranks the dish within the dish type."""

    def __init__(self, user_id: str, dish_type: str, dish_id: str) -> None:
        """Initialize the error.

        Args:
            user_id: Owner of the scope.
            dish_type: Dish type of the scope.
            dish_id: Dish that is already ranked.
        """
        super().__init__(
            f"Dish '{dish_id}' is already ranked in '{dish_type}'",
            user_id=user_id,
            dish_type=dish_type,
            dish_id=dish_id,
        )


class NotFoundError(RankingValidationError):
    """Raised when a ranking does not exist for the requesting user."""

    def __init__(self, ranking_id: str) -> None:
        """Initialize the error.

        Args:
            ranking_id: The ranking that was not found.
        """
        super().__init__(f"Ranking '{ranking_id}' not found", ranking_id=ranking_id)
        self.ranking_id = ranking_id


class InvalidRankError(RankingValidationError):
    """Raised when a requested rank is outside ``1..max_list_length``."""

    def __init__(self, rank: int, max_list_length: int) -> None:
        """Initialize the error.

        Args:
            rank: The requested rank.
            max_list_length: Longest allowed list.
        """
        super().__init__(
            f"Rank {rank} is outside 1..{max_list_length}",
            rank=rank,
            max_list_length=max_list_length,
        )
        self.rank = rank


class InvalidScopeError(RankingValidationError):
    """Raised when a scope or scope filter is missing required parts."""


class RankingInvariantError(RankingError):
    """Raised when a computed ordering would break rank uniqueness or density."""

    def __init__(self, user_id: str, dish_type: str, violations: list[str]) -> None:
        """Initialize the error.

        Args:
            user_id: Owner of the scope.
            dish_type: Dish type of the scope.
            violations: Descriptions of each broken rule.
        """
        super().__init__(
            f"Ordering invariant violated in ({user_id}, {dish_type}): "
            + "; ".join(violations),
            user_id=user_id,
            dish_type=dish_type,
            violations=violations,
        )
        self.violations = violations
