"""Tests for temporal island grouping."""

import pytest

from pyvio import IslandScoring
from pyvio.loop_closure import MatchIsland, QueryResult, compute_islands, select_best_island


@pytest.fixture
def candidates() -> list[QueryResult]:
    """Two runs of candidates, given out of order."""
    return [
        QueryResult(31, 0.45),
        QueryResult(10, 0.4),
        QueryResult(30, 0.5),
        QueryResult(11, 0.4),
    ]


class TestMatchIsland:
    """Test suite for MatchIsland."""

    def test_size_is_inclusive(self):
        assert MatchIsland(start_id=4, end_id=4).size() == 1
        assert MatchIsland(start_id=4, end_id=9).size() == 6

    def test_rejects_end_before_start(self):
        with pytest.raises(ValueError, match="before start"):
            MatchIsland(start_id=5, end_id=4)

    def test_ordered_by_score(self):
        """Test that islands compare by score only."""
        low = MatchIsland(start_id=0, end_id=10, island_score=0.2)
        high = MatchIsland(start_id=50, end_id=50, island_score=0.9)

        assert low < high
        assert high > low

    def test_clear(self):
        island = MatchIsland(start_id=3, end_id=5, island_score=1.0, best_id=4, best_score=0.5)
        island.clear()
        assert island == MatchIsland(start_id=0, end_id=0)


class TestComputeIslands:
    """Test suite for compute_islands."""

    def test_groups_by_gap(self, candidates: list[QueryResult]):
        """Test grouping into sorted, non-overlapping islands."""
        islands = compute_islands(candidates, max_intraisland_gap=3)

        assert [(i.start_id, i.end_id) for i in islands] == [(10, 11), (30, 31)]
        assert islands[0].island_score == pytest.approx(0.8)
        assert islands[1].island_score == pytest.approx(0.95)
        assert islands[1].best_id == 30
        assert islands[1].best_score == pytest.approx(0.5)
        for earlier, later in zip(islands, islands[1:]):
            assert earlier.end_id < later.start_id

    def test_gap_is_exclusive(self):
        """Test that a gap equal to max_intraisland_gap splits the island."""
        islands = compute_islands([QueryResult(0, 0.5), QueryResult(3, 0.5)], max_intraisland_gap=3)
        assert len(islands) == 2

        islands = compute_islands([QueryResult(0, 0.5), QueryResult(2, 0.5)], max_intraisland_gap=3)
        assert len(islands) == 1
        assert islands[0].size() == 3

    def test_drops_short_islands(self, candidates: list[QueryResult]):
        """Test the minimum island length."""
        islands = compute_islands(
            candidates + [QueryResult(70, 0.99)], max_intraisland_gap=3, min_matches_per_island=2
        )
        assert [i.start_id for i in islands] == [10, 30]

    def test_scoring_policies(self, candidates: list[QueryResult]):
        mean = compute_islands(candidates, 3, scoring=IslandScoring.MEAN)
        maximum = compute_islands(candidates, 3, scoring=IslandScoring.MAX)

        assert mean[1].island_score == pytest.approx(0.475)
        assert maximum[0].island_score == pytest.approx(0.4)

    def test_no_candidates(self):
        assert compute_islands([], max_intraisland_gap=3) == []


class TestSelectBestIsland:
    """Test suite for select_best_island."""

    def test_picks_highest_score(self, candidates: list[QueryResult]):
        best = select_best_island(compute_islands(candidates, max_intraisland_gap=3))

        assert best is not None
        assert (best.start_id, best.end_id) == (30, 31)

    def test_first_wins_ties(self):
        islands = [
            MatchIsland(start_id=1, end_id=1, island_score=0.5),
            MatchIsland(start_id=9, end_id=9, island_score=0.5),
        ]
        assert select_best_island(islands) is islands[0]

    def test_empty(self):
        assert select_best_island([]) is None
