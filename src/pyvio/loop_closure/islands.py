"""Grouping of place-recognition candidates into temporal islands.

A single high-scoring candidate is weaker evidence than a run of
consecutive frames that all resemble the query. Candidates are sorted by
frame id and chained into islands while neighbouring ids are closer than
``max_intraisland_gap``; each island is scored from its members and the
best member is remembered as the loop candidate.
"""

from __future__ import annotations

from typing import Iterable

from ..config import IslandScoring
from .definitions import MatchIsland
from .place_recognition import QueryResult


def _island_score(scores: list[float], scoring: IslandScoring) -> float:
    if scoring == IslandScoring.SUM:
        return float(sum(scores))
    if scoring == IslandScoring.MEAN:
        return float(sum(scores) / len(scores))
    if scoring == IslandScoring.MAX:
        return float(max(scores))
    raise ValueError(f"Unknown island scoring policy: {scoring!r}")


def _make_island(members: list[QueryResult], scoring: IslandScoring) -> MatchIsland:
    best = max(members, key=lambda m: m.score)
    return MatchIsland(
        start_id=members[0].frame_id,
        end_id=members[-1].frame_id,
        island_score=_island_score([m.score for m in members], scoring),
        best_id=best.frame_id,
        best_score=best.score,
    )


def compute_islands(
    candidates: Iterable[QueryResult],
    max_intraisland_gap: int,
    min_matches_per_island: int = 1,
    scoring: IslandScoring = IslandScoring.SUM,
) -> list[MatchIsland]:
    """Group candidates into non-overlapping islands ordered by start id.

    Args:
        candidates: Place index results (any order)
        max_intraisland_gap: A candidate joins the current island when
            its id minus the island's last id is below this gap
        min_matches_per_island: Islands with ``size()`` below this are dropped
        scoring: Aggregation of member scores

    Returns:
        Islands sorted by ``start_id``
    """
    ordered = sorted(candidates, key=lambda c: c.frame_id)
    if not ordered:
        return []

    groups: list[list[QueryResult]] = [[ordered[0]]]
    for candidate in ordered[1:]:
        if candidate.frame_id - groups[-1][-1].frame_id < max_intraisland_gap:
            groups[-1].append(candidate)
        else:
            groups.append([candidate])

    islands = [_make_island(members, scoring) for members in groups]
    return [island for island in islands if island.size() >= min_matches_per_island]


def select_best_island(islands: list[MatchIsland]) -> MatchIsland | None:
    """Return the highest-scoring island (first one on ties)."""
    best: MatchIsland | None = None
    for island in islands:
        if best is None or island > best:
            best = island
    return best
