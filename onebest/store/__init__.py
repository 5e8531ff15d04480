"""SQLite rank store for dish rankings, history, and idempotency keys.

This module provides persistent storage for:
- Dish rankings with a unique rank per ``(user_id, dish_type)`` scope
- Append-only rank history
- Idempotency keys of applied pipeline events
"""

from onebest.store.errors import (
    ConnectionError,
    MigrationError,
    StoreBusyError,
    StoreError,
    StoreUnavailableError,
    TransientStoreError,
)
from onebest.store.metrics import StoreMetrics, TransactionContext
from onebest.store.models import (
    DishRanking,
    DishStats,
    ProcessedKey,
    RankHistoryEntry,
    TasteStatus,
)
from onebest.store.repository import RankRepository
from onebest.store.store import RankStore, new_ranking_id


__all__ = [
    # Errors
    "ConnectionError",
    "MigrationError",
    "StoreBusyError",
    "StoreError",
    "StoreUnavailableError",
    "TransientStoreError",
    # Metrics
    "StoreMetrics",
    "TransactionContext",
    # Models
    "DishRanking",
    "DishStats",
    "ProcessedKey",
    "RankHistoryEntry",
    "TasteStatus",
    # Store
    "RankRepository",
    "RankStore",
    "new_ranking_id",
]
