"""Tests for rank computation and the ranks table."""

import threading

import numpy as np
import pandas as pd
import pytest

from ifs_sbc.core.ranks import (
    RANK_COLUMNS,
    RankRecord,
    RanksTable,
    compute_rank,
    compute_replication_ranks,
    failed_replication_records,
)


# =====================================================================
# compute_rank
# =====================================================================

class TestComputeRank:
    """Test the rank of a true value among posterior draws."""

    def test_basic_rank(self):
        assert compute_rank(0.25, np.array([0.1, 0.2, 0.3])) == 2

    def test_truncated_at_lower_bound(self):
        assert compute_rank(0.25, np.array([0.1, 0.2, 0.3]), lb=0.5, truncate=True) is None

    def test_clipping_without_truncation_saturates(self):
        # All values clip to 0.5, so nothing is strictly below the truth
        assert compute_rank(0.25, np.array([0.1, 0.2, 0.3]), lb=0.5) == 0

    def test_extremes(self):
        draws = np.linspace(0, 1, 11)
        assert compute_rank(-1.0, draws) == 0
        assert compute_rank(2.0, draws) == 11

    def test_rank_range(self):
        rng = np.random.default_rng(0)
        for _ in range(100):
            draws = rng.normal(size=50)
            r = compute_rank(rng.normal(), draws, rng=rng)
            assert 0 <= r <= 50

    def test_truncate_on_upper_bound(self):
        assert compute_rank(0.5, np.array([0.1, 2.0]), ub=1.0, truncate=True) is None

    def test_truncate_inside_bounds(self):
        assert compute_rank(0.5, np.array([0.1, 0.9]), lb=0.0, ub=1.0, truncate=True) == 1

    def test_nan_is_na(self):
        assert compute_rank(float("nan"), np.array([0.1, 0.2])) is None
        assert compute_rank(0.1, np.array([np.nan, 0.2])) is None

    def test_ties_without_rng(self):
        assert compute_rank(1.0, np.ones(5)) == 0

    def test_ties_broken_uniformly(self):
        rng = np.random.default_rng(1)
        ranks = [compute_rank(1.0, np.ones(4), rng=rng) for _ in range(2000)]
        counts = np.bincount(ranks, minlength=5)
        assert len(counts) == 5
        assert counts.min() > 300

    def test_tie_break_reproducible(self):
        r1 = compute_rank(1.0, np.ones(10), rng=np.random.default_rng(5))
        r2 = compute_rank(1.0, np.ones(10), rng=np.random.default_rng(5))
        assert r1 == r2


# =====================================================================
# compute_replication_ranks
# =====================================================================

class TestComputeReplicationRanks:
    """Test per-replication rank records."""

    def test_one_record_per_variable(self):
        draws = pd.DataFrame({"a": [0.1, 0.2, 0.3], "b": [1.0, 2.0, 3.0]})
        records = compute_replication_ranks(4, {"a": 0.25, "b": 0.0}, draws, ["a", "b"])
        assert [r.variable for r in records] == ["a", "b"]
        assert [r.rank for r in records] == [2, 0]
        assert all(r.replication_index == 4 and r.num_draws == 3 for r in records)

    def test_missing_variable_is_na(self):
        draws = pd.DataFrame({"a": [0.1, 0.2]})
        records = compute_replication_ranks(0, {"a": 0.15}, draws, ["a", "b"])
        assert records[1].is_na
        assert records[1].num_draws == 2

    def test_bounds_only_for_bounded_variables(self):
        draws = pd.DataFrame({"a": [0.1, 0.2, 0.3], "loglik": [0.1, 0.2, 0.3]})
        records = compute_replication_ranks(
            0, {"a": 0.25, "loglik": 0.25}, draws, ["a", "loglik"],
            bounded_variables=["a"], lb=0.5, truncate=True,
        )
        assert records[0].is_na
        assert records[1].rank == 2

    def test_failed_replication_records(self):
        records = failed_replication_records(7, ["a", "b", "loglik"])
        assert [r.variable for r in records] == ["a", "b", "loglik"]
        assert all(r.is_na and r.replication_index == 7 and r.num_draws == 0 for r in records)


# =====================================================================
# RanksTable
# =====================================================================

class TestRanksTable:
    """Test the append-only ranks table."""

    def test_deterministic_order(self):
        table = RanksTable(variable_order=["b", "a"])
        table.extend([RankRecord(1, "a", 1, 5), RankRecord(1, "b", 2, 5)])
        table.extend([RankRecord(0, "b", 3, 5), RankRecord(0, "a", 4, 5)])
        keys = [(r.replication_index, r.variable) for r in table.records]
        assert keys == [(0, "b"), (0, "a"), (1, "b"), (1, "a")]
        assert table.variables == ["b", "a"]

    def test_frozen_rejects_appends(self):
        table = RanksTable().freeze()
        with pytest.raises(RuntimeError, match="frozen"):
            table.extend([RankRecord(0, "a", 1, 5)])

    def test_to_frame_nullable_rank(self):
        table = RanksTable()
        table.extend([RankRecord(0, "a", None, 5), RankRecord(0, "b", 2, 5)])
        frame = table.to_frame()
        assert list(frame.columns) == RANK_COLUMNS
        assert str(frame["rank"].dtype) == "Int64"
        assert frame["rank"].isna().tolist() == [True, False]

    def test_from_frame(self):
        frame = pd.DataFrame({
            "replication_index": [0, 0],
            "variable": ["a", "b"],
            "rank": pd.array([1, None], dtype="Int64"),
            "num_draws": [5, 5],
        })
        table = RanksTable.from_frame(frame)
        assert table.frozen
        assert table.records[1].is_na
        assert table.for_variable("a")[0].rank == 1

    def test_from_frame_missing_columns(self):
        with pytest.raises(ValueError, match="missing columns"):
            RanksTable.from_frame(pd.DataFrame({"variable": ["a"]}))

    def test_concurrent_appends_are_atomic(self):
        table = RanksTable(variable_order=["a", "b"])

        def worker(start):
            for i in range(start, start + 100):
                table.extend([RankRecord(i, "a", 0, 1), RankRecord(i, "b", 1, 1)])

        threads = [threading.Thread(target=worker, args=(k * 100,)) for k in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        frame = table.to_frame()
        assert len(frame) == 800
        assert frame.groupby("replication_index").size().eq(2).all()
