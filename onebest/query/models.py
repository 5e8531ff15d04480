"""Read models returned by the query service."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict

from onebest.store.models import DishRanking, DishStats, RankHistoryEntry


class ReadModel(BaseModel):
    """Base for query responses.

    Reads come straight from the rank store, so they reflect every
    mutation a worker has committed but not events still in the queue.
    ``consistency`` documents that lag to callers.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    as_of: datetime
    consistency: Literal["eventual"] = "eventual"


class RankingsView(ReadModel):
    """A user's ordered list for one dish type."""

    user_id: str
    dish_type: str
    rankings: list[DishRanking]


class RankHistoryView(ReadModel):
    """A ranking's history, oldest first."""

    ranking_id: str
    entries: list[RankHistoryEntry]


class TopRankedView(ReadModel):
    """Best placements of a dish across users."""

    dish_id: str
    rankings: list[DishRanking]


class DishStatsView(ReadModel):
    """Aggregate statistics of a dish across users."""

    stats: DishStats
