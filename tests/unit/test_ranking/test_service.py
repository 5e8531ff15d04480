"""Unit tests for the ranking service against the in-memory repository."""

import pytest

from onebest.events.models import (
    CreateRankingPayload,
    EventEnvelope,
    EventType,
    RankingPayload,
    ScopeClearPayload,
    TasteStatusUpdatePayload,
    UpdateRankPayload,
)
from onebest.ranking.errors import (
    DuplicateDishError,
    InvalidRankError,
    InvalidScopeError,
    NotFoundError,
)
from onebest.ranking.ordering import find_invariant_violations
from onebest.ranking.service import RankingService
from onebest.store.errors import StoreBusyError
from onebest.store.models import TasteStatus
from tests.helpers.memory_store import InMemoryRankRepository
from tests.helpers.time import FIXED_NOW, MutableClock


@pytest.fixture
def clock() -> MutableClock:
    """A controllable clock."""
    return MutableClock()


@pytest.fixture
def repo(clock: MutableClock) -> InMemoryRankRepository:
    """An empty in-memory repository."""
    return InMemoryRankRepository(clock)


@pytest.fixture
def service(repo: InMemoryRankRepository) -> RankingService:
    """A ranking service that never sleeps."""
    return RankingService(repo, max_list_length=5, sleep=lambda _: None)


def _ranks(service: RankingService, user_id: str = "u1", dish_type: str = "ramen") -> dict:
    return {r.dish_id: r.rank for r in service.list_rankings(user_id, dish_type)}


def _seed(service: RankingService, dishes: str) -> dict[str, str]:
    """Create dishes at ranks 1..n and return dish ID to ranking ID."""
    return {
        dish: service.create_ranking("u1", "ramen", dish, "r1", rank=i).ranking_id
        for i, dish in enumerate(dishes, start=1)
    }


def _envelope(
    payload: RankingPayload, key: str = "key-1", event_id: str = "evt-1"
) -> EventEnvelope:
    return EventEnvelope(
        event_id=event_id,
        timestamp=FIXED_NOW,
        event_type=type(payload).event_type,
        source="test",
        version="1.0",
        trace_id="trace-1",
        user_id="u1",
        idempotency_key=key,
        payload=payload,
    )


class TestCreateRanking:
    """Tests for create_ranking."""

    @pytest.mark.unit
    def test_create_first_ranking(self, service: RankingService) -> None:
        """Test creating a ranking stores all attributes."""
        ranking = service.create_ranking(
            "u1",
            "ramen",
            "tonkotsu",
            "r1",
            rank=1,
            taste_status=TasteStatus.ACCEPTABLE,
            notes="rich broth",
            photo_refs=["p1", "p2"],
        )

        assert ranking.rank == 1
        assert ranking.taste_status == TasteStatus.ACCEPTABLE
        assert ranking.notes == "rich broth"
        assert ranking.photo_refs == ("p1", "p2")
        assert ranking.created_at == FIXED_NOW

    @pytest.mark.unit
    def test_insert_at_occupied_rank_demotes_chain(self, service: RankingService) -> None:
        """Test inserting at rank 1 pushes every ranking down by one."""
        _seed(service, "abc")

        service.create_ranking("u1", "ramen", "d", "r1", rank=1)

        assert _ranks(service) == {"d": 1, "a": 2, "b": 3, "c": 4}

    @pytest.mark.unit
    def test_overflow_beyond_max_becomes_unranked(self, service: RankingService) -> None:
        """Test the ranking pushed past the maximum length is unranked."""
        _seed(service, "abcde")

        service.create_ranking("u1", "ramen", "f", "r1", rank=3)

        assert _ranks(service) == {"a": 1, "b": 2, "f": 3, "c": 4, "d": 5, "e": None}

    @pytest.mark.unit
    def test_unranked_create(self, service: RankingService) -> None:
        """Test a ranking without rank is reviewed but unranked."""
        _seed(service, "ab")

        ranking = service.create_ranking("u1", "ramen", "x", "r1")

        assert ranking.rank is None
        assert _ranks(service) == {"a": 1, "b": 2, "x": None}

    @pytest.mark.unit
    def test_rank_past_end_is_clamped(self, service: RankingService) -> None:
        """Test a rank beyond the list end keeps ranks dense."""
        _seed(service, "a")

        ranking = service.create_ranking("u1", "ramen", "b", "r1", rank=4)

        assert ranking.rank == 2

    @pytest.mark.unit
    def test_duplicate_dish_rejected(self, service: RankingService) -> None:
        """Test the same dish cannot be ranked twice within a type."""
        service.create_ranking("u1", "ramen", "a", "r1", rank=1)

        with pytest.raises(DuplicateDishError):
            service.create_ranking("u1", "ramen", "a", "r2", rank=2)

    @pytest.mark.unit
    def test_same_dish_in_other_type_allowed(self, service: RankingService) -> None:
        """Test scopes are per dish type."""
        service.create_ranking("u1", "ramen", "a", "r1", rank=1)
        ranking = service.create_ranking("u1", "udon", "a", "r1", rank=1)

        assert ranking.rank == 1

    @pytest.mark.unit
    @pytest.mark.parametrize("rank", [0, -1, 6])
    def test_invalid_rank(self, service: RankingService, rank: int) -> None:
        """Test ranks outside 1..max are rejected."""
        with pytest.raises(InvalidRankError):
            service.create_ranking("u1", "ramen", "a", "r1", rank=rank)

    @pytest.mark.unit
    def test_missing_scope(self, service: RankingService) -> None:
        """Test an empty dish type is rejected."""
        with pytest.raises(InvalidScopeError):
            service.create_ranking("u1", "", "a", "r1", rank=1)

    @pytest.mark.unit
    def test_history_recorded_for_each_shifted_ranking(
        self, service: RankingService, repo: InMemoryRankRepository
    ) -> None:
        """Test one history entry per ranking whose rank changed."""
        ids = _seed(service, "ab")

        created = service.create_ranking("u1", "ramen", "c", "r1", rank=1)

        assert [e.new_rank for e in repo.get_history(created.ranking_id)] == [1]
        a_history = repo.get_history(ids["a"])
        assert [(e.previous_rank, e.new_rank) for e in a_history] == [(None, 1), (1, 2)]
        assert a_history[-1].note == "demoted"

    @pytest.mark.unit
    def test_history_for_unranked_create_with_taste_status(
        self, service: RankingService, repo: InMemoryRankRepository
    ) -> None:
        """Test an unranked create records its initial taste status."""
        ranking = service.create_ranking(
            "u1", "ramen", "x", "r1", taste_status=TasteStatus.SECOND_CHANCE
        )

        history = repo.get_history(ranking.ranking_id)
        assert len(history) == 1
        assert history[0].new_taste_status == TasteStatus.SECOND_CHANCE


class TestUpdateRank:
    """Tests for update_rank."""

    @pytest.mark.unit
    def test_insert_unranked_at_occupied_rank(self, service: RankingService) -> None:
        """Test A1 B2 C3 with unranked D moved to 2 gives A1 D2 B3 C4."""
        _seed(service, "abc")
        d = service.create_ranking("u1", "ramen", "d", "r1")

        service.update_rank(d.ranking_id, 2)

        assert _ranks(service) == {"a": 1, "d": 2, "b": 3, "c": 4}

    @pytest.mark.unit
    def test_remove_and_close_gap(self, service: RankingService) -> None:
        """Test A1 B2 C3 with A moved to 3 gives B1 C2 A3."""
        ids = _seed(service, "abc")

        service.update_rank(ids["a"], 3)

        assert _ranks(service) == {"b": 1, "c": 2, "a": 3}

    @pytest.mark.unit
    def test_unrank(self, service: RankingService) -> None:
        """Test a None rank unranks and closes the gap."""
        ids = _seed(service, "abc")

        ranking = service.update_rank(ids["b"], None)

        assert ranking.rank is None
        assert _ranks(service) == {"a": 1, "c": 2, "b": None}

    @pytest.mark.unit
    def test_not_found(self, service: RankingService) -> None:
        """Test updating an unknown ranking fails."""
        with pytest.raises(NotFoundError):
            service.update_rank("missing", 1)

    @pytest.mark.unit
    def test_other_users_ranking_not_found(self, service: RankingService) -> None:
        """Test a user cannot move another user's ranking."""
        ids = _seed(service, "a")

        with pytest.raises(NotFoundError):
            service.update_rank(ids["a"], 1, user_id="intruder")

    @pytest.mark.unit
    def test_invalid_rank(self, service: RankingService) -> None:
        """Test rank 0 is rejected."""
        ids = _seed(service, "a")

        with pytest.raises(InvalidRankError):
            service.update_rank(ids["a"], 0)

    @pytest.mark.unit
    def test_noop_move_keeps_history(
        self, service: RankingService, repo: InMemoryRankRepository
    ) -> None:
        """Test moving onto the current rank appends nothing."""
        ids = _seed(service, "ab")
        before = len(repo.get_history(ids["b"]))

        service.update_rank(ids["b"], 2)

        assert len(repo.get_history(ids["b"])) == before

    @pytest.mark.unit
    def test_history_is_append_only(
        self, service: RankingService, repo: InMemoryRankRepository, clock: MutableClock
    ) -> None:
        """Test history length never decreases across mutations."""
        ids = _seed(service, "abc")
        lengths = [len(repo.get_history(ids["a"]))]

        for rank in (3, 1, 2, 2, 1):
            clock.advance(seconds=1)
            service.update_rank(ids["a"], rank)
            lengths.append(len(repo.get_history(ids["a"])))

        assert lengths == sorted(lengths)
        sequences = [e.sequence for e in repo.get_history(ids["a"])]
        assert sequences == list(range(1, len(sequences) + 1))


class TestUpdateTasteStatus:
    """Tests for update_taste_status."""

    @pytest.mark.unit
    def test_updates_status_without_touching_rank(
        self, service: RankingService, repo: InMemoryRankRepository
    ) -> None:
        """Test taste status changes leave the ordering alone."""
        ids = _seed(service, "ab")

        ranking = service.update_taste_status(ids["b"], TasteStatus.DISSATISFIED)

        assert ranking.taste_status == TasteStatus.DISSATISFIED
        assert _ranks(service) == {"a": 1, "b": 2}
        last = repo.get_history(ids["b"])[-1]
        assert last.previous_taste_status is None
        assert last.new_taste_status == TasteStatus.DISSATISFIED
        assert last.previous_rank == last.new_rank == 2

    @pytest.mark.unit
    def test_not_found(self, service: RankingService) -> None:
        """Test updating an unknown ranking fails."""
        with pytest.raises(NotFoundError):
            service.update_taste_status("missing", TasteStatus.ACCEPTABLE)


class TestClearScope:
    """Tests for clear_scope."""

    @pytest.mark.unit
    def test_clear_by_dish_type(self, service: RankingService) -> None:
        """Test clearing a dish type leaves other types intact."""
        _seed(service, "abc")
        service.create_ranking("u1", "udon", "z", "r1", rank=1)

        deleted = service.clear_scope("u1", dish_type="ramen")

        assert deleted == 3
        assert service.list_rankings("u1", "ramen") == []
        assert len(service.list_rankings("u1", "udon")) == 1

    @pytest.mark.unit
    def test_clear_by_restaurant(self, service: RankingService) -> None:
        """Test clearing by restaurant across dish types."""
        service.create_ranking("u1", "ramen", "a", "r1", rank=1)
        service.create_ranking("u1", "udon", "b", "r1", rank=1)
        service.create_ranking("u1", "udon", "c", "r2", rank=2)

        assert service.clear_scope("u1", restaurant_id="r1") == 2

    @pytest.mark.unit
    def test_clear_by_restaurant_closes_gaps(
        self, service: RankingService, repo: InMemoryRankRepository
    ) -> None:
        """Test rankings left behind in a partly cleared scope renumber from 1."""
        service.create_ranking("u1", "ramen", "a", "r1", rank=1)
        b = service.create_ranking("u1", "ramen", "b", "r2", rank=2)
        service.create_ranking("u1", "ramen", "c", "r1", rank=3)
        service.create_ranking("u1", "ramen", "d", "r2", rank=4)

        assert service.clear_scope("u1", restaurant_id="r1") == 2

        ranks = _ranks(service)
        assert ranks == {"b": 1, "d": 2}
        assert find_invariant_violations(ranks, 5) == []
        last = repo.get_history(b.ranking_id)[-1]
        assert (last.previous_rank, last.new_rank, last.note) == (2, 1, "promoted")

    @pytest.mark.unit
    def test_clear_keeps_history(
        self, service: RankingService, repo: InMemoryRankRepository
    ) -> None:
        """Test a cleared ranking's history grows by a final entry."""
        ids = _seed(service, "ab")
        before = len(repo.get_history(ids["a"]))

        service.clear_scope("u1", dish_type="ramen")

        history = repo.get_history(ids["a"])
        assert len(history) == before + 1
        assert (history[-1].previous_rank, history[-1].new_rank) == (1, None)
        assert history[-1].note == "cleared"

    @pytest.mark.unit
    def test_requires_a_filter(self, service: RankingService) -> None:
        """Test clearing without a filter is rejected."""
        with pytest.raises(InvalidScopeError):
            service.clear_scope("u1")


class TestListRankings:
    """Tests for list_rankings ordering."""

    @pytest.mark.unit
    def test_unranked_last_most_recent_first(
        self, service: RankingService, clock: MutableClock
    ) -> None:
        """Test nulls go last, ties broken by most recent update."""
        service.create_ranking("u1", "ramen", "old", "r1")
        clock.advance(seconds=10)
        service.create_ranking("u1", "ramen", "new", "r1")
        service.create_ranking("u1", "ramen", "top", "r1", rank=1)

        dishes = [r.dish_id for r in service.list_rankings("u1", "ramen")]

        assert dishes == ["top", "new", "old"]


class TestApplyEvent:
    """Tests for apply_event."""

    @pytest.mark.unit
    def test_applies_create_and_records_key(
        self, service: RankingService, repo: InMemoryRankRepository
    ) -> None:
        """Test the mutation and its idempotency key commit together."""
        payload = CreateRankingPayload(
            dish_id="a", dish_type="ramen", restaurant_id="r1", rank=1
        )

        result = service.apply_event(_envelope(payload))

        assert not result.duplicate
        assert result.event_type == EventType.RANKING_CREATE
        assert result.ranking is not None
        assert result.ranking.rank == 1
        assert repo.is_processed("key-1")

    @pytest.mark.unit
    def test_replay_is_noop(
        self, service: RankingService, repo: InMemoryRankRepository
    ) -> None:
        """Test applying the same key twice changes state once."""
        payload = CreateRankingPayload(
            dish_id="a", dish_type="ramen", restaurant_id="r1", rank=1
        )
        service.apply_event(_envelope(payload))

        result = service.apply_event(_envelope(payload, event_id="evt-2"))

        assert result.duplicate
        assert len(repo.rankings) == 1

    @pytest.mark.unit
    def test_failed_mutation_does_not_record_key(
        self, service: RankingService, repo: InMemoryRankRepository
    ) -> None:
        """Test a rejected mutation leaves no idempotency key behind."""
        payload = UpdateRankPayload(ranking_id="missing", new_rank=1)

        with pytest.raises(NotFoundError):
            service.apply_event(_envelope(payload))

        assert not repo.is_processed("key-1")

    @pytest.mark.unit
    def test_dispatches_every_event_type(self, service: RankingService) -> None:
        """Test update, taste status and scope clear events are applied."""
        ids = _seed(service, "ab")

        moved = service.apply_event(
            _envelope(UpdateRankPayload(ranking_id=ids["b"], new_rank=1), key="k-move")
        )
        tasted = service.apply_event(
            _envelope(
                TasteStatusUpdatePayload(
                    ranking_id=ids["a"], taste_status=TasteStatus.ACCEPTABLE
                ),
                key="k-taste",
            )
        )
        cleared = service.apply_event(
            _envelope(ScopeClearPayload(dish_type="ramen"), key="k-clear")
        )

        assert moved.ranking is not None and moved.ranking.rank == 1
        assert tasted.ranking is not None
        assert tasted.ranking.taste_status == TasteStatus.ACCEPTABLE
        assert cleared.deleted == 2


class TestLockRetry:
    """Tests for busy write lock retries."""

    @pytest.mark.unit
    def test_retries_busy_lock(
        self, service: RankingService, repo: InMemoryRankRepository
    ) -> None:
        """Test a busy lock is retried within the attempt budget."""
        repo.busy_failures = 2

        ranking = service.create_ranking("u1", "ramen", "a", "r1", rank=1)

        assert ranking.rank == 1

    @pytest.mark.unit
    def test_surfaces_busy_after_attempts(
        self, service: RankingService, repo: InMemoryRankRepository
    ) -> None:
        """Test the transient error surfaces after three attempts."""
        repo.busy_failures = 3

        with pytest.raises(StoreBusyError):
            service.create_ranking("u1", "ramen", "a", "r1", rank=1)

        assert repo.rankings == {}
