import threading

import numpy as np
import pytest

from abundance_corridors.aggregation import CorridorAggregator
from abundance_corridors.corridors import Path


def straight_path(n_cells, sample_index, hub_a="A", hub_b="B", row=0):
    cols = np.arange(n_cells)
    rows = np.full(n_cells, row)
    return Path(hub_a, hub_b, rows, cols, cols.astype(float), rows.astype(float),
                cost=float(n_cells - 1), sample_index=sample_index)


@pytest.fixture
def aggregator():
    agg = CorridorAggregator((1, 12))
    # Lengths 10, 5 and 8
    for n, sample in [(11, 0), (6, 1), (9, 2)]:
        agg.accumulate(straight_path(n, sample))
    return agg


def test_ranking_by_length(aggregator):
    ranked = aggregator.rank_paths("A", "B")
    assert [r.length for r in ranked] == [5.0, 8.0, 10.0]
    assert [r.sample_index for r in ranked] == [1, 2, 0]


def test_pixel_frequency(aggregator):
    summary = aggregator.summarize()
    freq = summary.pixel_frequency
    assert freq[0, 0] == 3
    assert freq[0, 5] == 3
    assert freq[0, 6] == 2
    assert freq[0, 9] == 1
    assert freq[0, 11] == 0
    assert summary.n_paths == 3
    np.testing.assert_array_equal(summary.pair_frequency[("A", "B")], freq)


def test_cell_counted_once_per_path():
    agg = CorridorAggregator((2, 2))
    # A route that revisits a cell still counts one crossing for it
    rows, cols = np.array([0, 0, 0]), np.array([0, 1, 0])
    agg.accumulate(Path("A", "B", rows, cols, cols.astype(float), rows.astype(float), 2.0, 0))
    assert agg.summarize().pixel_frequency[0, 0] == 1


def test_summary_ranking_table(aggregator):
    summary = aggregator.summarize()
    ranking = summary.ranking
    assert ranking["rank"].tolist() == [1, 2, 3]
    assert ranking["length"].tolist() == [5.0, 8.0, 10.0]
    assert ranking["is_best"].tolist() == [True, False, False]
    best = summary.best_paths()
    assert len(best) == 1
    assert best.sample_index.iloc[0] == 1
    assert summary.best_path("A", "B").sample_index == 1
    assert summary.best_path("A", "C") is None


def test_ties_keep_accumulation_order():
    agg = CorridorAggregator((1, 5))
    for sample in (4, 2, 9):
        agg.accumulate(straight_path(5, sample))
    assert [r.sample_index for r in agg.rank_paths("A", "B")] == [4, 2, 9]


def test_relative_frequency(aggregator):
    summary = aggregator.summarize()
    rel = summary.relative_frequency()
    assert rel[0, 0] == pytest.approx(1.0)
    assert rel[0, 9] == pytest.approx(1 / 3)
    np.testing.assert_allclose(summary.relative_frequency(("A", "B")), rel)


def test_pairs_are_kept_apart():
    agg = CorridorAggregator((2, 6))
    agg.accumulate(straight_path(6, 0, "A", "B", row=0))
    agg.accumulate(straight_path(3, 0, "A", "C", row=1))
    summary = agg.summarize()
    assert summary.pair_frequency[("A", "C")][0].sum() == 0
    assert summary.pair_frequency[("A", "C")][1].sum() == 3
    assert summary.ranking.groupby(["hub_a", "hub_b"]).size().to_dict() == {("A", "B"): 1, ("A", "C"): 1}


def test_skips_are_counted(aggregator):
    aggregator.record_skip("A", "B", 5, "disconnected cells")
    summary = aggregator.summarize()
    assert summary.n_skipped == 1
    assert summary.skipped[0]["sample_index"] == 5


def test_empty_summary():
    summary = CorridorAggregator((3, 3)).summarize()
    assert summary.n_paths == 0
    assert summary.ranking.empty
    assert summary.best_paths().empty
    assert summary.pixel_frequency.sum() == 0


def test_concurrent_accumulation():
    agg = CorridorAggregator((1, 4), keep_paths=False)

    def feed():
        for i in range(50):
            agg.accumulate(straight_path(4, i))

    threads = [threading.Thread(target=feed) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    summary = agg.summarize()
    assert summary.n_paths == 200
    assert (summary.pixel_frequency == 200).all()
    assert summary.paths == {}
