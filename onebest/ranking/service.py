"""Ranking domain service.

Every mutation runs inside one store transaction that reads the scope's
current ordering, recomputes it in memory, writes the rows whose rank
changed, and appends one history entry per changed ranking. The store
takes its write lock when the transaction opens, so concurrent workers
mutating the same scope are serialized.
"""

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

import structlog

from onebest.events.models import (
    CreateRankingPayload,
    EventEnvelope,
    EventType,
    ScopeClearPayload,
    TasteStatusUpdatePayload,
    UpdateRankPayload,
)
from onebest.ranking.errors import (
    DuplicateDishError,
    InvalidRankError,
    InvalidScopeError,
    NotFoundError,
    RankingInvariantError,
)
from onebest.ranking.ordering import (
    RankAssignment,
    apply_assignments,
    compact_ranks,
    compute_rank_changes,
    find_invariant_violations,
)
from onebest.store.errors import StoreBusyError
from onebest.store.models import DishRanking, TasteStatus
from onebest.store.repository import RankRepository
from onebest.store.store import new_ranking_id


logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_MAX_LIST_LENGTH = 5
DEFAULT_LOCK_RETRY_ATTEMPTS = 3
DEFAULT_LOCK_RETRY_DELAY_SECONDS = 0.05


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of applying a pipeline event.

    Attributes:
        event_id: The applied envelope.
        event_type: Its event type.
        duplicate: True if the idempotency key had already been applied
            and nothing was changed.
        ranking: The ranking after the mutation, for single-ranking events.
        deleted: Rankings removed, for scope clears.
    """

    event_id: str
    event_type: EventType
    duplicate: bool = False
    ranking: DishRanking | None = None
    deleted: int | None = None


class RankingService:
    """Creates, reorders, and clears dish rankings.

    Example:
        >>> service = RankingService(store, max_list_length=5)
        >>> ranking = service.create_ranking("u1", "ramen", "d1", "r1", rank=1)
    """

    def __init__(
        self,
        store: RankRepository,
        max_list_length: int = DEFAULT_MAX_LIST_LENGTH,
        lock_retry_attempts: int = DEFAULT_LOCK_RETRY_ATTEMPTS,
        lock_retry_delay_seconds: float = DEFAULT_LOCK_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the service.

        Args:
            store: Transactional rank repository.
            max_list_length: Ranks beyond this drop to None.
            lock_retry_attempts: Attempts to take a busy write lock before
                surfacing the transient failure.
            lock_retry_delay_seconds: Base delay between lock attempts.
            sleep: Sleep function (injectable for tests).
        """
        if max_list_length < 1:
            msg = f"max_list_length must be >= 1, got {max_list_length}"
            raise ValueError(msg)

        self._store = store
        self._max_list_length = max_list_length
        self._lock_retry_attempts = max(1, lock_retry_attempts)
        self._lock_retry_delay_seconds = lock_retry_delay_seconds
        self._sleep = sleep
        self._log = logger.bind(component="ranking")

    @property
    def max_list_length(self) -> int:
        """Longest ranked list per scope."""
        return self._max_list_length

    # ===== Public operations =====

    def create_ranking(  # noqa: PLR0913
        self,
        user_id: str,
        dish_type: str,
        dish_id: str,
        restaurant_id: str,
        rank: int | None = None,
        taste_status: TasteStatus | None = None,
        notes: str = "",
        photo_refs: Sequence[str] = (),
    ) -> DishRanking:
        """Rank a dish for the first time.

        Inserting at an occupied rank pushes that ranking and everything
        below it down by one.

        Raises:
            DuplicateDishError: If the user already ranks this dish in the type.
            InvalidRankError: If ``rank`` is outside ``1..max_list_length``.
            InvalidScopeError: If the scope is incomplete.
        """
        return self._run(
            "create_ranking",
            lambda: self._create(
                user_id,
                dish_type,
                dish_id,
                restaurant_id,
                rank,
                taste_status,
                notes,
                tuple(photo_refs),
            ),
        )

    def update_rank(
        self,
        ranking_id: str,
        new_rank: int | None,
        user_id: str | None = None,
    ) -> DishRanking:
        """Move a ranking to a new rank, or unrank it with ``None``.

        Args:
            ranking_id: The ranking to move.
            new_rank: Target rank, or None to unrank.
            user_id: When given, the ranking must belong to this user.

        Raises:
            NotFoundError: If the ranking does not exist for the user.
            InvalidRankError: If ``new_rank`` is outside ``1..max_list_length``.
        """
        return self._run(
            "update_rank",
            lambda: self._update_rank(ranking_id, new_rank, user_id),
        )

    def update_taste_status(
        self,
        ranking_id: str,
        taste_status: TasteStatus,
        user_id: str | None = None,
    ) -> DishRanking:
        """Change a ranking's taste status without touching the ordering.

        Raises:
            NotFoundError: If the ranking does not exist for the user.
        """
        return self._run(
            "update_taste_status",
            lambda: self._update_taste_status(ranking_id, taste_status, user_id),
        )

    def clear_scope(
        self,
        user_id: str,
        dish_type: str | None = None,
        restaurant_id: str | None = None,
    ) -> int:
        """Delete every ranking of a user matching the filters.

        Irreversible; for administrative resets. History is kept, with a
        ``cleared`` entry per deleted ranking, and rankings left in a
        partly cleared scope are renumbered from 1.

        Returns:
            Number of rankings deleted.

        Raises:
            InvalidScopeError: If neither filter is given.
        """
        return self._run(
            "clear_scope",
            lambda: self._clear(user_id, dish_type, restaurant_id),
        )

    def list_rankings(self, user_id: str, dish_type: str) -> list[DishRanking]:
        """List a scope by rank ascending, unranked last, newest first on ties."""
        self._check_scope(user_id, dish_type)
        return self._store.list_scope(user_id, dish_type)

    def apply_event(self, envelope: EventEnvelope) -> ApplyResult:
        """Apply a pipeline event at most once.

        The idempotency key is checked and recorded in the same
        transaction as the mutation, so a crash can never leave a
        mutation applied without its key or the reverse.

        Returns:
            The outcome, with ``duplicate=True`` for an already-applied key.

        Raises:
            RankingValidationError: If the mutation is invalid.
            TransientStoreError: If the store stayed busy or unavailable.
        """
        return self._run(
            f"apply_{envelope.event_type.value.lower()}",
            lambda: self._apply(envelope),
        )

    # ===== Transaction plumbing =====

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` in a write transaction, retrying a busy write lock."""
        attempt = 1
        while True:
            try:
                with self._store.transaction(operation):
                    return fn()
            except StoreBusyError:
                if attempt >= self._lock_retry_attempts:
                    self._log.warning(
                        "write_lock_retries_exhausted",
                        op=operation,
                        attempts=attempt,
                    )
                    raise
                self._log.info("write_lock_busy_retrying", op=operation, attempt=attempt)
                self._sleep(self._lock_retry_delay_seconds * attempt)
                attempt += 1

    def _apply(self, envelope: EventEnvelope) -> ApplyResult:
        if self._store.is_processed(envelope.idempotency_key):
            self._log.info(
                "event_already_applied",
                event_id=envelope.event_id,
                idempotency_key=envelope.idempotency_key,
            )
            return ApplyResult(
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                duplicate=True,
            )

        payload = envelope.payload
        user_id = envelope.user_id
        ranking: DishRanking | None = None
        deleted: int | None = None

        if isinstance(payload, CreateRankingPayload):
            ranking = self._create(
                user_id,
                payload.dish_type,
                payload.dish_id,
                payload.restaurant_id,
                payload.rank,
                payload.taste_status,
                payload.notes,
                payload.photo_refs,
            )
        elif isinstance(payload, UpdateRankPayload):
            ranking = self._update_rank(payload.ranking_id, payload.new_rank, user_id)
        elif isinstance(payload, TasteStatusUpdatePayload):
            ranking = self._update_taste_status(
                payload.ranking_id, payload.taste_status, user_id
            )
        elif isinstance(payload, ScopeClearPayload):
            deleted = self._clear(user_id, payload.dish_type, payload.restaurant_id)
        else:
            msg = f"Unsupported payload: {type(payload).__name__}"
            raise TypeError(msg)

        self._store.record_processed(
            envelope.idempotency_key,
            envelope.event_id,
            envelope.event_type.value,
        )
        return ApplyResult(
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            ranking=ranking,
            deleted=deleted,
        )

    # ===== Mutations (inside a transaction) =====

    def _create(  # noqa: PLR0913
        self,
        user_id: str,
        dish_type: str,
        dish_id: str,
        restaurant_id: str,
        rank: int | None,
        taste_status: TasteStatus | None,
        notes: str,
        photo_refs: tuple[str, ...],
    ) -> DishRanking:
        self._check_scope(user_id, dish_type)
        self._check_rank(rank)
        if not dish_id or not restaurant_id:
            msg = "dish_id and restaurant_id are required"
            raise InvalidScopeError(msg, dish_id=dish_id, restaurant_id=restaurant_id)

        if self._store.find_ranking_by_dish(user_id, dish_type, dish_id) is not None:
            raise DuplicateDishError(user_id, dish_type, dish_id)

        now = self._store.now()
        scope = self._store.list_scope(user_id, dish_type)
        ranking = DishRanking(
            ranking_id=new_ranking_id(),
            user_id=user_id,
            dish_id=dish_id,
            dish_type=dish_type,
            restaurant_id=restaurant_id,
            rank=None,
            taste_status=taste_status,
            notes=notes,
            photo_refs=photo_refs,
            created_at=now,
            updated_at=now,
        )
        self._store.insert_ranking(ranking)

        changes = compute_rank_changes(
            scope, ranking.ranking_id, rank, self._max_list_length
        )
        self._write_changes(scope, changes, ranking, note="created")

        if taste_status is not None and not any(
            c.ranking_id == ranking.ranking_id for c in changes
        ):
            self._store.append_history(
                ranking.ranking_id,
                previous_rank=None,
                new_rank=None,
                changed_at=now,
                note="created",
                new_taste_status=taste_status,
            )

        self._log.info(
            "ranking_created",
            ranking_id=ranking.ranking_id,
            user_id=user_id,
            dish_type=dish_type,
            dish_id=dish_id,
            rank=rank,
            shifted=len(changes),
        )
        return self._reload(ranking.ranking_id)

    def _update_rank(
        self,
        ranking_id: str,
        new_rank: int | None,
        user_id: str | None,
    ) -> DishRanking:
        self._check_rank(new_rank)
        ranking = self._load_owned(ranking_id, user_id)

        scope = self._store.list_scope(ranking.user_id, ranking.dish_type)
        changes = compute_rank_changes(
            scope, ranking_id, new_rank, self._max_list_length
        )
        note = "unranked" if new_rank is None else "moved"
        self._write_changes(scope, changes, ranking, note=note)

        self._log.info(
            "rank_updated",
            ranking_id=ranking_id,
            previous_rank=ranking.rank,
            new_rank=new_rank,
            shifted=len(changes),
        )
        return self._reload(ranking_id)

    def _update_taste_status(
        self,
        ranking_id: str,
        taste_status: TasteStatus,
        user_id: str | None,
    ) -> DishRanking:
        ranking = self._load_owned(ranking_id, user_id)
        if ranking.taste_status == taste_status:
            return ranking

        now = self._store.now()
        self._store.set_taste_status(ranking_id, taste_status, now)
        self._store.append_history(
            ranking_id,
            previous_rank=ranking.rank,
            new_rank=ranking.rank,
            changed_at=now,
            note="taste_status",
            previous_taste_status=ranking.taste_status,
            new_taste_status=taste_status,
        )
        self._log.info(
            "taste_status_updated",
            ranking_id=ranking_id,
            previous=ranking.taste_status.value if ranking.taste_status else None,
            new=taste_status.value,
        )
        return self._reload(ranking_id)

    def _clear(
        self,
        user_id: str,
        dish_type: str | None,
        restaurant_id: str | None,
    ) -> int:
        if not user_id:
            msg = "user_id is required"
            raise InvalidScopeError(msg)
        if not dish_type and not restaurant_id:
            msg = "dish_type or restaurant_id is required to clear a scope"
            raise InvalidScopeError(msg, user_id=user_id)

        doomed = self._store.find_rankings(
            user_id,
            dish_type=dish_type or None,
            restaurant_id=restaurant_id or None,
        )
        deleted = self._store.delete_scope(
            user_id,
            dish_type=dish_type or None,
            restaurant_id=restaurant_id or None,
        )

        now = self._store.now()
        for ranking in doomed:
            self._store.append_history(
                ranking.ranking_id,
                previous_rank=ranking.rank,
                new_rank=None,
                changed_at=now,
                note="cleared",
                previous_taste_status=ranking.taste_status,
                new_taste_status=ranking.taste_status,
            )

        # Rankings left behind in a partly cleared scope close ranks.
        for affected in sorted({r.dish_type for r in doomed}):
            scope = self._store.list_scope(user_id, affected)
            changes = compact_ranks(scope, self._max_list_length)
            self._write_changes(scope, changes, None, note="")

        self._log.warning(
            "scope_cleared",
            user_id=user_id,
            dish_type=dish_type,
            restaurant_id=restaurant_id,
            deleted=deleted,
        )
        return deleted

    # ===== Helpers =====

    def _write_changes(
        self,
        scope: Sequence[DishRanking],
        changes: list[RankAssignment],
        target: DishRanking | None,
        note: str,
    ) -> None:
        """Validate and persist rank assignments, one history entry each.

        Args:
            scope: Scope rankings as read at the start of the transaction.
            changes: Assignments computed for the mutation.
            target: The ranking the mutation addressed, or None when the
                whole scope is renumbered.
            note: History note for the target; shifted rankings get a
                note describing their own move.
        """
        if not changes:
            return

        projected = apply_assignments(scope, changes)
        violations = find_invariant_violations(projected, self._max_list_length)
        if violations:
            owner = target or scope[0]
            self._log.error(
                "invariant_violation",
                user_id=owner.user_id,
                dish_type=owner.dish_type,
                violations=violations,
            )
            raise RankingInvariantError(owner.user_id, owner.dish_type, violations)

        now = self._store.now()
        self._store.write_ranks({c.ranking_id: c.new_rank for c in changes}, now)

        by_id = {r.ranking_id: r for r in scope}
        for change in changes:
            existing = by_id.get(change.ranking_id) or target
            is_new = change.ranking_id not in by_id
            taste_status = existing.taste_status if existing else None
            is_target = target is not None and change.ranking_id == target.ranking_id
            self._store.append_history(
                change.ranking_id,
                previous_rank=change.previous_rank,
                new_rank=change.new_rank,
                changed_at=now,
                note=note if is_target else _shift_note(change),
                previous_taste_status=None if is_new else taste_status,
                new_taste_status=taste_status,
            )

    def _load_owned(self, ranking_id: str, user_id: str | None) -> DishRanking:
        ranking = self._store.get_ranking(ranking_id)
        if ranking is None or (user_id is not None and ranking.user_id != user_id):
            raise NotFoundError(ranking_id)
        return ranking

    def _reload(self, ranking_id: str) -> DishRanking:
        ranking = self._store.get_ranking(ranking_id)
        if ranking is None:
            raise NotFoundError(ranking_id)
        return ranking

    def _check_rank(self, rank: int | None) -> None:
        if rank is not None and not 1 <= rank <= self._max_list_length:
            raise InvalidRankError(rank, self._max_list_length)

    def _check_scope(self, user_id: str, dish_type: str) -> None:
        if not user_id or not dish_type:
            msg = "user_id and dish_type are required"
            raise InvalidScopeError(msg, user_id=user_id, dish_type=dish_type)


def _shift_note(change: RankAssignment) -> str:
    if change.new_rank is None:
        return "dropped"
    if change.previous_rank is None:
        return "moved"
    return "promoted" if change.new_rank < change.previous_rank else "demoted"
