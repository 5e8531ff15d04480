"""Pure rank ordering computations for a single scope.

A scope's ordering is the list of its ranked rankings sorted by rank.
Every mutation removes the moving ranking from that list, closing the
gap, and re-inserts it at the requested position, pushing everything
at or below it down by one. The result is renumbered from 1, so ranks
stay unique and dense; positions past the maximum list length drop to
``None`` (reviewed but unranked).
"""

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from onebest.store.models import DishRanking


@dataclass(frozen=True)
class RankAssignment:
    """A ranking whose rank changes as the result of a mutation.

    Attributes:
        ranking_id: The ranking.
        previous_rank: Rank before the mutation.
        new_rank: Rank after the mutation.
    """

    ranking_id: str
    previous_rank: int | None
    new_rank: int | None


def ranked_order(rankings: Iterable[DishRanking]) -> list[str]:
    """Ranking IDs of the ranked entries in rank order.

    Args:
        rankings: Rankings of one scope.

    Returns:
        IDs sorted by rank; unranked entries are excluded.
    """
    ranked = [r for r in rankings if r.rank is not None]
    ranked.sort(key=lambda r: (r.rank, r.ranking_id))
    return [r.ranking_id for r in ranked]


def place(
    order: Sequence[str],
    ranking_id: str,
    new_rank: int | None,
) -> list[str]:
    """Move a ranking to a new position in an ordering.

    Args:
        order: Current ranked IDs in rank order.
        ranking_id: Ranking to move (need not be present).
        new_rank: Target 1-based position, or None to unrank.

    Returns:
        The new ordering. A position beyond the end is clamped to the end.
    """
    remaining = [rid for rid in order if rid != ranking_id]
    if new_rank is None:
        return remaining

    index = min(new_rank, len(remaining) + 1) - 1
    remaining.insert(index, ranking_id)
    return remaining


def compute_rank_changes(
    rankings: Sequence[DishRanking],
    ranking_id: str,
    new_rank: int | None,
    max_list_length: int,
) -> list[RankAssignment]:
    """Compute every rank change caused by moving one ranking.

    Args:
        rankings: Current rankings of the scope. ``ranking_id`` may be
            absent, for a ranking being created.
        ranking_id: Ranking to move.
        new_rank: Target rank, or None to unrank.
        max_list_length: Ranks beyond this become None.

    Returns:
        Assignments for rankings whose rank differs from the current one,
        in new rank order. The moved ranking is always included when it
        is new to the scope and ends up ranked.
    """
    current = {r.ranking_id: r.rank for r in rankings}
    order = place(ranked_order(rankings), ranking_id, new_rank)

    target: dict[str, int | None] = {
        rid: (pos if pos <= max_list_length else None)
        for pos, rid in enumerate(order, start=1)
    }
    # Anything no longer in the ordering is unranked.
    for rid, rank in current.items():
        if rank is not None and rid not in target:
            target[rid] = None
    if ranking_id not in target:
        target[ranking_id] = None

    changes = [
        RankAssignment(ranking_id=rid, previous_rank=current.get(rid), new_rank=rank)
        for rid, rank in target.items()
        if current.get(rid) != rank
    ]
    changes.sort(key=lambda c: (c.new_rank is None, c.new_rank or 0, c.ranking_id))
    return changes


def compact_ranks(
    rankings: Sequence[DishRanking],
    max_list_length: int,
) -> list[RankAssignment]:
    """Renumber a scope's ranked entries from 1, keeping their order.

    Used after rankings are removed from the middle of a scope.

    Returns:
        Assignments for rankings whose rank changes, in new rank order.
    """
    current = {r.ranking_id: r.rank for r in rankings}
    changes: list[RankAssignment] = []
    for pos, rid in enumerate(ranked_order(rankings), start=1):
        rank = pos if pos <= max_list_length else None
        if current[rid] != rank:
            changes.append(RankAssignment(rid, current[rid], rank))
    return changes


def apply_assignments(
    rankings: Sequence[DishRanking],
    changes: Iterable[RankAssignment],
) -> dict[str, int | None]:
    """Project the ranks of a scope after applying assignments."""
    ranks: dict[str, int | None] = {r.ranking_id: r.rank for r in rankings}
    for change in changes:
        ranks[change.ranking_id] = change.new_rank
    return ranks


def find_invariant_violations(
    ranks: dict[str, int | None],
    max_list_length: int,
) -> list[str]:
    """Check a scope's ranks for uniqueness, density, and bounds.

    Args:
        ranks: Mapping of ranking ID to rank.
        max_list_length: Longest allowed list.

    Returns:
        Human-readable violations; empty when the ordering is valid.
    """
    violations: list[str] = []
    values = [rank for rank in ranks.values() if rank is not None]

    duplicates = sorted(rank for rank, n in Counter(values).items() if n > 1)
    if duplicates:
        violations.append(f"duplicate ranks {duplicates}")

    out_of_bounds = sorted(r for r in values if r < 1 or r > max_list_length)
    if out_of_bounds:
        violations.append(f"ranks out of 1..{max_list_length}: {out_of_bounds}")

    distinct = sorted(set(values))
    if distinct != list(range(1, len(distinct) + 1)):
        violations.append(f"ranks are not contiguous from 1: {distinct}")

    return violations
