"""Integration tests for the read-only query service."""

import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from onebest.query.service import QueryService
from onebest.ranking.service import RankingService
from onebest.store.metrics import StoreMetrics
from onebest.store.models import TasteStatus
from onebest.store.store import RankStore
from tests.helpers.time import FIXED_NOW, MutableClock


@pytest.fixture
def clock() -> MutableClock:
    """A controllable clock."""
    return MutableClock()


@pytest.fixture
def store(clock: MutableClock) -> Generator[RankStore]:
    """Connected rank store in a temporary directory."""
    StoreMetrics.reset()
    with tempfile.TemporaryDirectory() as tmpdir:
        with RankStore(Path(tmpdir) / "onebest.sqlite", clock=clock) as store:
            yield store


@pytest.fixture
def service(store: RankStore) -> RankingService:
    """Ranking service for seeding data."""
    return RankingService(store, sleep=lambda _: None)


@pytest.fixture
def query(store: RankStore, clock: MutableClock) -> QueryService:
    """Query service sharing the store's clock."""
    return QueryService(store, clock)


class TestQueryService:
    """Tests for QueryService."""

    @pytest.mark.integration
    def test_get_rankings(self, service: RankingService, query: QueryService) -> None:
        """Test a scope is returned in rank order with read metadata."""
        service.create_ranking("u1", "ramen", "a", "r1")
        service.create_ranking("u1", "ramen", "b", "r1", rank=1)

        view = query.get_rankings("u1", "ramen")

        assert [r.dish_id for r in view.rankings] == ["b", "a"]
        assert view.as_of == FIXED_NOW
        assert view.consistency == "eventual"

    @pytest.mark.integration
    def test_get_rank_history(
        self, service: RankingService, query: QueryService
    ) -> None:
        """Test history entries are returned oldest first."""
        ranking = service.create_ranking("u1", "ramen", "a", "r1", rank=1)
        service.update_rank(ranking.ranking_id, None)

        view = query.get_rank_history(ranking.ranking_id)

        assert [(e.previous_rank, e.new_rank) for e in view.entries] == [
            (None, 1),
            (1, None),
        ]

    @pytest.mark.integration
    def test_top_ranked_across_users(
        self, service: RankingService, query: QueryService, clock: MutableClock
    ) -> None:
        """Test best placements are ordered by rank, then recency."""
        service.create_ranking("u1", "ramen", "tonkotsu", "r1", rank=1)
        clock.advance(seconds=1)
        service.create_ranking("u2", "ramen", "tonkotsu", "r1", rank=1)
        service.create_ranking("u3", "ramen", "tonkotsu", "r1")

        view = query.get_top_ranked_across_users("tonkotsu")

        assert [r.user_id for r in view.rankings] == ["u2", "u1"]
        assert len(query.get_top_ranked_across_users("tonkotsu", limit=1).rankings) == 1

    @pytest.mark.integration
    @pytest.mark.parametrize("limit", [0, 101])
    def test_top_ranked_limit_bounds(self, query: QueryService, limit: int) -> None:
        """Test limits outside 1..100 are rejected."""
        with pytest.raises(ValueError, match="limit"):
            query.get_top_ranked_across_users("tonkotsu", limit=limit)

    @pytest.mark.integration
    def test_dish_stats(self, service: RankingService, query: QueryService) -> None:
        """Test aggregate statistics of a dish."""
        service.create_ranking(
            "u1", "ramen", "a", "r1", rank=1, taste_status=TasteStatus.ACCEPTABLE
        )
        service.create_ranking("u2", "ramen", "b", "r1", rank=1)
        service.create_ranking(
            "u2", "ramen", "a", "r1", rank=2, taste_status=TasteStatus.ACCEPTABLE
        )

        stats = query.get_dish_stats("a").stats

        assert stats.total_rankings == 2
        assert stats.average_rank == 1.5
        assert stats.taste_status_counts == {TasteStatus.ACCEPTABLE: 2}

    @pytest.mark.integration
    def test_unknown_dish_stats(self, query: QueryService) -> None:
        """Test a dish nobody ranked has empty statistics."""
        stats = query.get_dish_stats("nothing").stats

        assert stats.total_rankings == 0
        assert stats.average_rank is None
        assert stats.rank_counts == {}
