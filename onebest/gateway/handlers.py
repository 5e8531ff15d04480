"""Framework-free request handlers for the ranking API.

Mutations are asynchronous: a valid request is wrapped in an event,
published, and answered with ``202 Accepted`` and a tracking ID (the
event ID). Checks that can be made against current state without
mutating it (rank bounds, an already-ranked dish, an unknown ranking)
are answered synchronously instead of being left to the pipeline.
A retry carrying the nonce of an already-applied request is answered
``202`` with the original tracking ID and nothing is republished.
"""

from http import HTTPStatus
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from onebest.events.errors import UndeliverableEventError
from onebest.events.models import (
    CreateRankingPayload,
    EventEnvelope,
    RankingPayload,
    ScopeClearPayload,
    TasteStatusUpdatePayload,
    UpdateRankPayload,
)
from onebest.events.producer import EventProducer
from onebest.gateway.models import (
    CreateRankingRequest,
    DeleteScopeRequest,
    GatewayResponse,
    UpdateRankingRequest,
)
from onebest.query.service import QueryService
from onebest.queue.models import TrackingState
from onebest.queue.queue import DurableQueue
from onebest.store.errors import TransientStoreError
from onebest.store.models import ProcessedKey
from onebest.store.store import RankStore


logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


class RankingGateway:
    """Handles ``/rankings`` requests for an authenticated user."""

    def __init__(
        self,
        producer: EventProducer,
        store: RankStore,
        queue: DurableQueue,
        query: QueryService,
        max_list_length: int = 5,
    ) -> None:
        """Initialize the gateway.

        Args:
            producer: Publishes mutation events.
            store: Rank store, for synchronous pre-checks.
            queue: Ranking queue, for tracking lookups.
            query: Read path for GET requests.
            max_list_length: Highest accepted rank.
        """
        self._producer = producer
        self._store = store
        self._queue = queue
        self._query = query
        self._max_list_length = max_list_length
        self._log = logger.bind(component="gateway")

    def post_rankings(self, user_id: str, body: dict[str, Any]) -> GatewayResponse:
        """``POST /rankings``: enqueue a ``RANKING_CREATE`` event."""
        request = _parse(CreateRankingRequest, body)
        if isinstance(request, GatewayResponse):
            return request

        if request.rank is not None and request.rank > self._max_list_length:
            return self._rank_out_of_bounds(request.rank)

        payload = CreateRankingPayload(
            dish_id=request.dish_id,
            dish_type=request.dish_type,
            restaurant_id=request.restaurant_id,
            rank=request.rank,
            taste_status=request.taste_status,
            notes=request.notes,
            photo_refs=tuple(request.photo_refs),
        )

        # A retry of an applied request succeeds before the dish looks taken.
        try:
            applied = self._find_applied(user_id, payload, request.request_nonce)
            if applied is not None:
                return self._accepted(applied.event_id)
            existing = self._store.find_ranking_by_dish(
                user_id, request.dish_type, request.dish_id
            )
        except TransientStoreError as e:
            return self._unavailable(e)
        if existing is not None:
            return _error(
                HTTPStatus.CONFLICT,
                "DuplicateDishError",
                f"Dish '{request.dish_id}' is already ranked in '{request.dish_type}'",
                rankingId=existing.ranking_id,
            )

        return self._send(user_id, payload, request.request_nonce)

    def put_ranking(
        self, user_id: str, ranking_id: str, body: dict[str, Any]
    ) -> GatewayResponse:
        """``PUT /rankings/{id}``: enqueue a rank or taste status update."""
        request = _parse(UpdateRankingRequest, body)
        if isinstance(request, GatewayResponse):
            return request

        if request.rank is not None and request.rank > self._max_list_length:
            return self._rank_out_of_bounds(request.rank)

        try:
            ranking = self._store.get_ranking(ranking_id)
        except TransientStoreError as e:
            return self._unavailable(e)
        if ranking is None or ranking.user_id != user_id:
            return _error(
                HTTPStatus.NOT_FOUND,
                "NotFoundError",
                f"Ranking '{ranking_id}' not found",
            )

        payload: RankingPayload
        if request.is_rank_update:
            payload = UpdateRankPayload(
                ranking_id=ranking_id,
                new_rank=request.rank,
                dish_type=ranking.dish_type,
                dish_id=ranking.dish_id,
            )
        else:
            payload = TasteStatusUpdatePayload(
                ranking_id=ranking_id,
                taste_status=request.taste_status,
                dish_type=ranking.dish_type,
                dish_id=ranking.dish_id,
            )
        return self._publish(user_id, payload, request.request_nonce)

    def get_rankings(self, user_id: str, dish_type: str | None) -> GatewayResponse:
        """``GET /rankings?userId=&dishType=``: synchronous read."""
        if not user_id or not dish_type:
            return _error(
                HTTPStatus.BAD_REQUEST,
                "ValidationError",
                "userId and dishType are required",
            )
        try:
            view = self._query.get_rankings(user_id, dish_type)
        except TransientStoreError as e:
            return self._unavailable(e)
        return GatewayResponse(
            status_code=HTTPStatus.OK,
            body=view.model_dump(mode="json"),
        )

    def delete_scope(self, user_id: str, body: dict[str, Any]) -> GatewayResponse:
        """``DELETE /rankings/scope``: enqueue a ``SCOPE_CLEAR`` event."""
        request = _parse(DeleteScopeRequest, body)
        if isinstance(request, GatewayResponse):
            return request

        payload = ScopeClearPayload(
            dish_type=request.dish_type,
            restaurant_id=request.restaurant_id,
        )
        return self._publish(user_id, payload, request.request_nonce)

    def get_tracking(self, tracking_id: str) -> GatewayResponse:
        """``GET /rankings/tracking/{id}``: report an event's pipeline state."""
        try:
            status = self._queue.tracking_status(tracking_id)
        except TransientStoreError as e:
            return self._unavailable(e)

        if status.state == TrackingState.UNKNOWN:
            return _error(
                HTTPStatus.NOT_FOUND,
                "NotFoundError",
                f"Tracking ID '{tracking_id}' not found",
            )
        body: dict[str, Any] = {
            "trackingId": tracking_id,
            "status": status.state.value,
            "deliveryCount": status.delivery_count,
        }
        if status.reason is not None:
            body["reason"] = status.reason.value
            body["error"] = status.error_message
        return GatewayResponse(status_code=HTTPStatus.OK, body=body)

    def _find_applied(
        self,
        user_id: str,
        payload: RankingPayload,
        request_nonce: str | None,
    ) -> ProcessedKey | None:
        """Look up an earlier, already-applied request with the same nonce."""
        if request_nonce is None:
            return None
        key = self._producer.build_envelope(
            user_id, payload, request_nonce=request_nonce
        ).idempotency_key
        return self._store.get_processed(key)

    def _publish(
        self,
        user_id: str,
        payload: RankingPayload,
        request_nonce: str | None,
    ) -> GatewayResponse:
        try:
            applied = self._find_applied(user_id, payload, request_nonce)
        except TransientStoreError as e:
            return self._unavailable(e)
        if applied is not None:
            return self._accepted(applied.event_id)
        return self._send(user_id, payload, request_nonce)

    def _send(
        self,
        user_id: str,
        payload: RankingPayload,
        request_nonce: str | None,
    ) -> GatewayResponse:
        try:
            envelope: EventEnvelope = self._producer.publish(
                user_id, payload, request_nonce=request_nonce
            )
        except (UndeliverableEventError, TransientStoreError) as e:
            return self._unavailable(e)

        self._log.info(
            "mutation_accepted",
            event_id=envelope.event_id,
            event_type=envelope.event_type.value,
            user_id=user_id,
        )
        return self._accepted(envelope.event_id)

    def _accepted(self, tracking_id: str) -> GatewayResponse:
        return GatewayResponse(
            status_code=HTTPStatus.ACCEPTED,
            body={"status": "PROCESSING", "trackingId": tracking_id},
        )

    def _rank_out_of_bounds(self, rank: int) -> GatewayResponse:
        return _error(
            HTTPStatus.BAD_REQUEST,
            "InvalidRankError",
            f"Rank {rank} is outside 1..{self._max_list_length}",
        )

    def _unavailable(self, error: Exception) -> GatewayResponse:
        self._log.error(
            "request_failed",
            error=str(error),
            error_type=type(error).__name__,
        )
        return _error(
            HTTPStatus.SERVICE_UNAVAILABLE,
            type(error).__name__,
            "Ranking service temporarily unavailable",
        )


def _parse(model: type[M], body: dict[str, Any]) -> M | GatewayResponse:
    """Validate a request body, or build the 400 response."""
    try:
        return model.model_validate(body)
    except ValidationError as e:
        details = [
            {
                "loc": ".".join(str(part) for part in err["loc"]),
                "msg": err["msg"],
            }
            for err in e.errors()
        ]
        return _error(
            HTTPStatus.BAD_REQUEST,
            "ValidationError",
            "Request body failed validation",
            details=details,
        )


def _error(
    status: HTTPStatus, error: str, message: str, **extra: Any
) -> GatewayResponse:
    return GatewayResponse(
        status_code=status,
        body={"error": error, "message": message, **extra},
    )
