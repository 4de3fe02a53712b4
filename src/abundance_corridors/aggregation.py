"""
Module: aggregation.py
Project: Abundance Corridors - Wildlife Abundance & Corridor Uncertainty

Description:
    Fan-in point of the corridor ensemble.

    Every least-cost path (one per posterior sample and hub pair) is folded
    into a 'traffic' raster: each visited cell gains one crossing. Cells that
    most samples route through mark the high-confidence corridor alignment.
    Per hub pair, the sample-level paths are also ranked by geometric length
    to identify the best alignment and its ordered alternatives.

    `accumulate` is guarded by a lock, so the aggregator can be fed from
    worker threads as well as from the parent process of a process pool.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

from .config import get_logger

log = get_logger(__name__)

RANKING_COLUMNS = ["hub_a", "hub_b", "rank", "sample_index", "length", "cost", "n_cells", "is_best"]


@dataclass(frozen=True)
class PathRecord:
    """Lightweight ranking entry for one accumulated path."""

    hub_a: str
    hub_b: str
    sample_index: Optional[int]
    length: float
    cost: float
    n_cells: int
    order: int


@dataclass(frozen=True, eq=False)
class CorridorSummary:
    """
    Aggregated corridor ensemble.

    Attributes:
        pixel_frequency (np.ndarray): Number of paths crossing each cell.
        pair_frequency (dict): Same, per (hub_a, hub_b) pair.
        ranking (pd.DataFrame): Per pair, paths ordered by ascending length.
        n_paths (int): Paths accumulated.
        n_skipped (int): (sample, pair) tasks without a path.
        skipped (list): Details of the skipped tasks.
        paths (dict): Accumulated Path objects per pair (empty unless kept).
    """

    pixel_frequency: np.ndarray
    pair_frequency: dict
    ranking: pd.DataFrame
    n_paths: int
    n_skipped: int
    skipped: list = field(default_factory=list)
    paths: dict = field(default_factory=dict)

    def relative_frequency(self, pair=None):
        """
        Share of paths crossing each cell (0..1).

        Args:
            pair (tuple, optional): Restrict to one (hub_a, hub_b) pair.
        """
        if pair is None:
            counts, total = self.pixel_frequency, self.n_paths
        else:
            counts = self.pair_frequency[pair]
            total = int(((self.ranking.hub_a == pair[0]) & (self.ranking.hub_b == pair[1])).sum())
        return counts / max(total, 1)

    def best_paths(self):
        """Rank-1 ranking row per hub pair."""
        return self.ranking[self.ranking.is_best.astype(bool)].reset_index(drop=True)

    def best_path(self, hub_a, hub_b):
        """The shortest kept Path between two hubs (None if paths were not kept)."""
        rows = self.ranking[(self.ranking.hub_a == hub_a) & (self.ranking.hub_b == hub_b) & self.ranking.is_best.astype(bool)]
        kept = self.paths.get((hub_a, hub_b), [])
        if rows.empty or not kept:
            return None
        return kept[int(rows.iloc[0]["order"])]


class CorridorAggregator:
    """
    Accumulates least-cost paths into a pixel frequency map and a ranking.

    Attributes:
        shape (tuple): Raster shape of the paths' grid.
        keep_paths (bool): Retain the Path objects (needed for geometry export).
    """

    def __init__(self, shape, keep_paths=True):
        self.shape = tuple(shape)
        self.keep_paths = keep_paths
        self._frequency = np.zeros(self.shape, dtype=np.int64)
        self._pair_frequency = {}
        self._records = {}
        self._paths = {}
        self._skipped = []
        self._lock = threading.Lock()

    def accumulate(self, path):
        """
        Adds one path: each visited cell gains one crossing.

        Args:
            path (Path): Result of `shortest_path`.
        """
        with self._lock:
            # Fancy-index increment counts a cell once per path
            self._frequency[path.rows, path.cols] += 1

            pair = path.pair
            if pair not in self._pair_frequency:
                self._pair_frequency[pair] = np.zeros(self.shape, dtype=np.int64)
                self._records[pair] = []
                self._paths[pair] = []
            self._pair_frequency[pair][path.rows, path.cols] += 1

            records = self._records[pair]
            records.append(PathRecord(
                hub_a=path.hub_a,
                hub_b=path.hub_b,
                sample_index=path.sample_index,
                length=path.length,
                cost=path.cost,
                n_cells=len(path),
                order=len(records),
            ))
            if self.keep_paths:
                self._paths[pair].append(path)

    def record_skip(self, hub_a, hub_b, sample_index=None, reason=""):
        with self._lock:
            self._skipped.append({
                "hub_a": hub_a,
                "hub_b": hub_b,
                "sample_index": sample_index,
                "reason": reason,
            })

    @property
    def n_paths(self):
        return sum(len(r) for r in self._records.values())

    @property
    def n_skipped(self):
        return len(self._skipped)

    def rank_paths(self, hub_a, hub_b):
        """
        Paths between one hub pair ordered by ascending length.

        Equal lengths keep the order in which the paths were accumulated.

        Returns:
            list: PathRecord objects, shortest first.
        """
        with self._lock:
            records = list(self._records.get((hub_a, hub_b), []))
        return sorted(records, key=lambda r: r.length)

    def summarize(self):
        """
        Freezes the current state into a CorridorSummary.

        Returns:
            CorridorSummary
        """
        with self._lock:
            pairs = list(self._records)
            frequency = self._frequency.copy()
            pair_frequency = {p: f.copy() for p, f in self._pair_frequency.items()}
            paths = {p: list(v) for p, v in self._paths.items()} if self.keep_paths else {}
            skipped = list(self._skipped)

        rows = []
        for pair in pairs:
            for rank, record in enumerate(self.rank_paths(*pair), start=1):
                rows.append({
                    "hub_a": record.hub_a,
                    "hub_b": record.hub_b,
                    "rank": rank,
                    "sample_index": record.sample_index,
                    "length": record.length,
                    "cost": record.cost,
                    "n_cells": record.n_cells,
                    "is_best": rank == 1,
                    "order": record.order,
                })
        ranking = pd.DataFrame(rows, columns=RANKING_COLUMNS + ["order"])

        n_paths = len(ranking)
        if skipped:
            log.warning(f"{len(skipped)} sample/pair task(s) had no path and were skipped.")
        log.info(f"Corridor summary: {n_paths} paths over {len(pairs)} hub pair(s), "
                 f"max crossings per cell {int(frequency.max()) if frequency.size else 0}.")
        return CorridorSummary(
            pixel_frequency=frequency,
            pair_frequency=pair_frequency,
            ranking=ranking,
            n_paths=n_paths,
            n_skipped=len(skipped),
            skipped=skipped,
            paths=paths,
        )
