"""Request and response models for the gateway."""

from dataclasses import dataclass, field
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from onebest.store.models import TasteStatus


class RequestModel(BaseModel):
    """Base for camelCase request bodies."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    request_nonce: str | None = Field(
        default=None,
        description="Client nonce; retries of one request reuse it",
    )


class CreateRankingRequest(RequestModel):
    """Body of ``POST /rankings``."""

    dish_id: Annotated[str, Field(min_length=1)]
    dish_type: Annotated[str, Field(min_length=1)]
    restaurant_id: Annotated[str, Field(min_length=1)]
    rank: Annotated[int, Field(ge=1)] | None = None
    taste_status: TasteStatus | None = None
    notes: str = ""
    photo_refs: list[str] = Field(default_factory=list)


class UpdateRankingRequest(RequestModel):
    """Body of ``PUT /rankings/{id}``.

    ``rank`` selects a rank update (an explicit null unranks);
    ``tasteStatus`` selects a taste status update.
    """

    rank: Annotated[int, Field(ge=1)] | None = None
    taste_status: TasteStatus | None = None

    @model_validator(mode="after")
    def _exactly_one_change(self) -> "UpdateRankingRequest":
        has_rank = "rank" in self.model_fields_set
        has_status = self.taste_status is not None
        if has_rank == has_status:
            msg = "exactly one of rank or tasteStatus is required"
            raise ValueError(msg)
        return self

    @property
    def is_rank_update(self) -> bool:
        """Whether the body asks for a rank change."""
        return "rank" in self.model_fields_set


class DeleteScopeRequest(RequestModel):
    """Body of ``DELETE /rankings/scope``."""

    dish_type: str | None = None
    restaurant_id: str | None = None

    @model_validator(mode="after")
    def _require_filter(self) -> "DeleteScopeRequest":
        if not self.dish_type and not self.restaurant_id:
            msg = "dishType or restaurantId is required"
            raise ValueError(msg)
        return self


@dataclass(frozen=True)
class GatewayResponse:
    """Status code and JSON body of a handled request."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)
