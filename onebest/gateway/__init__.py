"""Request handlers adapting the ranking API onto the event pipeline."""

from onebest.gateway.handlers import RankingGateway
from onebest.gateway.models import (
    CreateRankingRequest,
    DeleteScopeRequest,
    GatewayResponse,
    UpdateRankingRequest,
)


__all__ = [
    "CreateRankingRequest",
    "DeleteScopeRequest",
    "GatewayResponse",
    "RankingGateway",
    "UpdateRankingRequest",
]
