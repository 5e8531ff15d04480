"""Read-only query service over the rank store."""

from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from onebest.query.models import (
    DishStatsView,
    RankHistoryView,
    RankingsView,
    TopRankedView,
)
from onebest.store.store import RankStore


logger = structlog.get_logger()

MAX_TOP_LIMIT = 100


class QueryService:
    """Serves rankings, history, and cross-user views. Never mutates state."""

    def __init__(
        self,
        store: RankStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the query service.

        Args:
            store: Connected rank store.
            clock: Source of ``as_of`` timestamps.
        """
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._log = logger.bind(component="query")

    def get_rankings(self, user_id: str, dish_type: str) -> RankingsView:
        """Get a scope ordered by rank, unranked last, newest first on ties."""
        rankings = self._store.list_scope(user_id, dish_type)
        self._log.debug(
            "rankings_read",
            user_id=user_id,
            dish_type=dish_type,
            count=len(rankings),
        )
        return RankingsView(
            as_of=self._clock(),
            user_id=user_id,
            dish_type=dish_type,
            rankings=rankings,
        )

    def get_rank_history(self, ranking_id: str) -> RankHistoryView:
        """Get a ranking's history entries, oldest first."""
        return RankHistoryView(
            as_of=self._clock(),
            ranking_id=ranking_id,
            entries=self._store.get_history(ranking_id),
        )

    def get_top_ranked_across_users(self, dish_id: str, limit: int = 10) -> TopRankedView:
        """Get a dish's best placements across all users.

        Ordered by rank ascending, then most recently updated first.
        Unranked entries are excluded.

        Raises:
            ValueError: If ``limit`` is outside ``1..100``.
        """
        if not 1 <= limit <= MAX_TOP_LIMIT:
            msg = f"limit must be between 1 and {MAX_TOP_LIMIT}, got {limit}"
            raise ValueError(msg)
        return TopRankedView(
            as_of=self._clock(),
            dish_id=dish_id,
            rankings=self._store.top_ranked_for_dish(dish_id, limit),
        )

    def get_dish_stats(self, dish_id: str) -> DishStatsView:
        """Get ranking counts, average rank, and taste status counts of a dish."""
        return DishStatsView(as_of=self._clock(), stats=self._store.dish_stats(dish_id))
