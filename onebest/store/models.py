"""Data models for the rank store."""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field


class TasteStatus(str, Enum):
    """Coarse satisfaction label, independent of rank ordering.

    - ACCEPTABLE: would return
    - SECOND_CHANCE: undecided
    - DISSATISFIED: would not return
    """

    ACCEPTABLE = "ACCEPTABLE"
    SECOND_CHANCE = "SECOND_CHANCE"
    DISSATISFIED = "DISSATISFIED"


class DishRanking(BaseModel):
    """One user's ranking of one dish within a dish type.

    The scope ``(user_id, dish_type)`` holds at most one ranking per
    positive rank. A ``None`` rank means reviewed but not ranked.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    ranking_id: Annotated[str, Field(min_length=1)]
    user_id: Annotated[str, Field(min_length=1)]
    dish_id: Annotated[str, Field(min_length=1)]
    dish_type: Annotated[str, Field(min_length=1)]
    restaurant_id: Annotated[str, Field(min_length=1)]
    rank: Annotated[int, Field(ge=1)] | None = None
    taste_status: TasteStatus | None = None
    notes: str = ""
    photo_refs: tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def scope(self) -> tuple[str, str]:
        """The ``(user_id, dish_type)`` ordering scope."""
        return (self.user_id, self.dish_type)


class RankHistoryEntry(BaseModel):
    """Append-only record of a rank or taste status change."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    ranking_id: Annotated[str, Field(min_length=1)]
    sequence: Annotated[int, Field(ge=1)]
    previous_rank: int | None = None
    new_rank: int | None = None
    previous_taste_status: TasteStatus | None = None
    new_taste_status: TasteStatus | None = None
    changed_at: datetime
    note: str = ""


class ProcessedKey(BaseModel):
    """Idempotency key recorded when an event was applied."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    idempotency_key: Annotated[str, Field(min_length=1)]
    event_id: Annotated[str, Field(min_length=1)]
    event_type: Annotated[str, Field(min_length=1)]
    processed_at: datetime


class DishStats(BaseModel):
    """Aggregate ranking statistics for a dish across all users."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    dish_id: str
    total_rankings: int = 0
    average_rank: float | None = None
    rank_counts: dict[int, int] = Field(default_factory=dict)
    taste_status_counts: dict[TasteStatus, int] = Field(default_factory=dict)
