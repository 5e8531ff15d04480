"""Ranking domain service and pure ordering computations."""

from onebest.ranking.errors import (
    DuplicateDishError,
    InvalidRankError,
    InvalidScopeError,
    NotFoundError,
    RankingError,
    RankingInvariantError,
    RankingValidationError,
)
from onebest.ranking.ordering import (
    RankAssignment,
    compute_rank_changes,
    find_invariant_violations,
    place,
    ranked_order,
)
from onebest.ranking.service import ApplyResult, RankingService


__all__ = [
    "ApplyResult",
    "DuplicateDishError",
    "InvalidRankError",
    "InvalidScopeError",
    "NotFoundError",
    "RankAssignment",
    "RankingError",
    "RankingInvariantError",
    "RankingService",
    "RankingValidationError",
    "compute_rank_changes",
    "find_invariant_violations",
    "place",
    "ranked_order",
]
