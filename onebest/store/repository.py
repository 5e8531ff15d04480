"""Repository interface the ranking service runs against."""

from collections.abc import Mapping
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol

from onebest.store.metrics import TransactionContext
from onebest.store.models import (
    DishRanking,
    ProcessedKey,
    RankHistoryEntry,
    TasteStatus,
)


class RankRepository(Protocol):
    """Transactional view of persisted rank state.

    :class:`onebest.store.store.RankStore` is the production
    implementation. Test doubles must honour the same contract: writes
    made inside ``transaction()`` become visible together on exit, or not
    at all if the block raises.
    """

    def now(self) -> datetime:
        """Current time for timestamps."""
        ...

    def transaction(self, operation: str) -> AbstractContextManager[TransactionContext]:
        """Open a write transaction serialized against other writers."""
        ...

    def get_ranking(self, ranking_id: str) -> DishRanking | None:
        """Get a ranking by ID."""
        ...

    def find_ranking_by_dish(
        self, user_id: str, dish_type: str, dish_id: str
    ) -> DishRanking | None:
        """Find a user's ranking for a dish."""
        ...

    def list_scope(self, user_id: str, dish_type: str) -> list[DishRanking]:
        """Get every ranking in a scope."""
        ...

    def insert_ranking(self, ranking: DishRanking) -> None:
        """Insert a new ranking."""
        ...

    def write_ranks(self, ranks: Mapping[str, int | None], now: datetime) -> int:
        """Rewrite ranks of several rankings."""
        ...

    def set_taste_status(
        self, ranking_id: str, taste_status: TasteStatus | None, now: datetime
    ) -> None:
        """Set a ranking's taste status."""
        ...

    def find_rankings(
        self,
        user_id: str,
        dish_type: str | None = None,
        restaurant_id: str | None = None,
    ) -> list[DishRanking]:
        """Get a user's rankings matching the filters."""
        ...

    def delete_scope(
        self,
        user_id: str,
        dish_type: str | None = None,
        restaurant_id: str | None = None,
    ) -> int:
        """Delete a user's rankings matching the filters."""
        ...

    def append_history(  # noqa: PLR0913
        self,
        ranking_id: str,
        previous_rank: int | None,
        new_rank: int | None,
        changed_at: datetime,
        note: str = "",
        previous_taste_status: TasteStatus | None = None,
        new_taste_status: TasteStatus | None = None,
    ) -> RankHistoryEntry:
        """Append a history entry."""
        ...

    def get_history(self, ranking_id: str) -> list[RankHistoryEntry]:
        """Get a ranking's history."""
        ...

    def is_processed(self, idempotency_key: str) -> bool:
        """Check whether a key has been applied."""
        ...

    def record_processed(
        self, idempotency_key: str, event_id: str, event_type: str
    ) -> ProcessedKey:
        """Record a key as applied."""
        ...
