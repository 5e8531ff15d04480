"""Read path over the rank store."""

from onebest.query.models import (
    DishStatsView,
    RankHistoryView,
    RankingsView,
    ReadModel,
    TopRankedView,
)
from onebest.query.service import QueryService


__all__ = [
    "DishStatsView",
    "QueryService",
    "RankHistoryView",
    "RankingsView",
    "ReadModel",
    "TopRankedView",
]
