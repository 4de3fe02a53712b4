"""
Module: clustering.py
Project: Abundance Corridors - Wildlife Abundance & Corridor Uncertainty

Description:
    Reduces the mean abundance surface to a handful of hub locations.

    Key Steps:
    1. Thresholding: keep cells whose mean abundance exceeds a user cutoff.
    2. Diagnostic: gap statistic over k = 1..k_max to suggest a cluster count.
       It only informs the choice of linkage distance; it is never applied
       automatically.
    3. Clustering: complete-linkage hierarchical clustering on planar
       Euclidean distance, cut at the caller's linkage distance.
    4. Hubs: arithmetic mean coordinate of each cluster, labelled A, B, C, ...
       in order of first appearance along the grid cell order.

Dependencies:
    - numpy, pandas
    - scipy.cluster.hierarchy
"""

from __future__ import annotations

import string
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import fcluster, linkage

from .config import get_logger
from .errors import EmptyHotspotSet

log = get_logger(__name__)


@dataclass(frozen=True)
class Hub:
    """Centroid of one hotspot cluster."""

    label: str
    x: float
    y: float
    n_cells: int = 1

    @property
    def location(self):
        return (self.x, self.y)


@dataclass(frozen=True)
class GapStatistic:
    """Gap statistic table (one row per k) and the suggested cluster count."""

    table: pd.DataFrame
    k: int


def ordinal_label(i):
    """0 -> 'A', 25 -> 'Z', 26 -> 'AA', ..."""
    letters = string.ascii_uppercase
    label = ""
    i += 1
    while i > 0:
        i, rem = divmod(i - 1, 26)
        label = letters[rem] + label
    return label


# --- SELECTION ---------------------------------------------------------------

def select_hotspots(mean_raster, abundance_threshold):
    """
    Selects grid cells whose mean abundance exceeds the threshold.

    Args:
        mean_raster (AbundanceRaster): Ensemble mean surface.
        abundance_threshold (float): Cutoff (strictly greater than).

    Returns:
        tuple: (cell_indices, coords)
            - cell_indices (np.ndarray): Positions in the grid cell order.
            - coords (np.ndarray): (n, 2) x/y of the selected cells.

    Raises:
        EmptyHotspotSet: If no cell exceeds the threshold.
    """
    values = np.asarray(mean_raster.values, dtype=float)
    with np.errstate(invalid="ignore"):
        selected = np.flatnonzero(values > abundance_threshold)
    if selected.size == 0:
        max_value = float(np.nanmax(values)) if np.isfinite(values).any() else None
        raise EmptyHotspotSet(abundance_threshold, max_value)

    grid = mean_raster.grid
    coords = np.column_stack([grid.xs[selected], grid.ys[selected]])
    log.info(f"{selected.size} of {values.size} cells exceed abundance {abundance_threshold}.")
    return selected, coords


# --- CLUSTERING HELPERS ------------------------------------------------------

def _within_dispersion(coords, labels):
    """Pooled within-cluster sum of squared distances to the cluster means."""
    total = 0.0
    for lab in np.unique(labels):
        members = coords[labels == lab]
        total += float(((members - members.mean(axis=0)) ** 2).sum())
    return total


def _log_dispersions(coords, k_max):
    """log W_k for k = 1..k_max, all cut from one complete-linkage tree."""
    tree = linkage(coords, method="complete") if len(coords) >= 2 else None
    out = np.empty(k_max)
    for k in range(1, k_max + 1):
        if k == 1 or tree is None:
            labels = np.ones(len(coords), dtype=int)
        else:
            labels = fcluster(tree, t=k, criterion="maxclust")
        out[k - 1] = np.log(max(_within_dispersion(coords, labels), np.finfo(float).tiny))
    return out


def gap_statistic(coords, k_max=8, n_bootstrap=20, rng=None):
    """
    Tibshirani gap statistic for complete-linkage clustering.

    Reference data sets are drawn uniformly over the bounding box of `coords`.

    Args:
        coords (np.ndarray): (n, 2) coordinates of the hotspot cells.
        k_max (int): Largest cluster count to evaluate (capped at n - 1).
        n_bootstrap (int): Reference data sets per k (at least 1).
        rng (np.random.Generator | int | None): Random source or seed.

    Returns:
        GapStatistic: table with columns k, log_w, expected_log_w, gap, s_k
            and the smallest k with gap(k) >= gap(k+1) - s(k+1).
    """
    coords = np.asarray(coords, dtype=float)
    if n_bootstrap < 1:
        raise ValueError("n_bootstrap must be >= 1")
    rng = np.random.default_rng(rng)
    k_max = max(1, min(k_max, len(coords) - 1))

    lo, hi = coords.min(axis=0), coords.max(axis=0)
    references = [rng.uniform(lo, hi, size=coords.shape) for _ in range(n_bootstrap)]

    log_w = _log_dispersions(coords, k_max)
    ref_log_w = np.array([_log_dispersions(ref, k_max) for ref in references])

    rows = []
    for k in range(1, k_max + 1):
        ref_k = ref_log_w[:, k - 1]
        rows.append({
            "k": k,
            "log_w": log_w[k - 1],
            "expected_log_w": ref_k.mean(),
            "gap": ref_k.mean() - log_w[k - 1],
            "s_k": ref_k.std() * np.sqrt(1.0 + 1.0 / n_bootstrap),
        })
    table = pd.DataFrame(rows)

    best = k_max
    for i in range(len(table) - 1):
        if table.gap[i] >= table.gap[i + 1] - table.s_k[i + 1]:
            best = int(table.k[i])
            break
    log.info(f"Gap statistic suggests k={best} (evaluated k=1..{k_max}).")
    return GapStatistic(table=table, k=best)


def suggest_linkage_distance(coords, k):
    """
    Returns a cut height that splits the complete-linkage tree into k clusters.

    The height is the midpoint between the merges that leave k and k-1
    clusters. Tied merge heights can make an exact k unreachable; a warning is
    logged in that case.

    Args:
        coords (np.ndarray): (n, 2) coordinates.
        k (int): Target number of clusters (1..n).

    Returns:
        float: Linkage distance for `cluster_hotspots`.
    """
    coords = np.asarray(coords, dtype=float)
    n = len(coords)
    if not 1 <= k <= n:
        raise ValueError(f"k must be in [1, {n}], got {k}")
    if n < 2:
        return 0.0
    heights = linkage(coords, method="complete")[:, 2]
    if k == 1:
        return float(heights[-1])
    if k == n:
        return float(heights[0] / 2.0)
    lower, upper = heights[n - k - 1], heights[n - k]
    if lower == upper:
        log.warning(f"Tied merge heights at {lower:.4g}: exactly {k} clusters is not reachable.")
    return float((lower + upper) / 2.0)


# --- HUBS --------------------------------------------------------------------

def cluster_labels(coords, linkage_distance):
    """
    Complete-linkage cluster ids (0-based) cut at `linkage_distance`.

    Ids follow the order in which clusters first appear in `coords`.
    """
    if linkage_distance < 0:
        raise ValueError("linkage_distance must be >= 0")
    coords = np.asarray(coords, dtype=float)
    if len(coords) < 2:
        return np.zeros(len(coords), dtype=int)

    raw = fcluster(linkage(coords, method="complete"), t=linkage_distance, criterion="distance")
    order = {}
    for lab in raw:
        order.setdefault(lab, len(order))
    return np.array([order[lab] for lab in raw], dtype=int)


def cluster_hotspots(mean_raster, abundance_threshold, linkage_distance):
    """
    Selects high-abundance cells and groups them into hubs.

    Args:
        mean_raster (AbundanceRaster): Ensemble mean surface.
        abundance_threshold (float): Selection cutoff.
        linkage_distance (float): Cut height of the complete-linkage tree,
            in grid coordinate units.

    Returns:
        list: Hub objects labelled A, B, C, ... in cluster-id order.

    Raises:
        EmptyHotspotSet: If the threshold selects no cells.
    """
    _, coords = select_hotspots(mean_raster, abundance_threshold)
    labels = cluster_labels(coords, linkage_distance)

    hubs = []
    for cid in range(labels.max() + 1):
        members = coords[labels == cid]
        cx, cy = members.mean(axis=0)
        hubs.append(Hub(ordinal_label(cid), float(cx), float(cy), int(len(members))))

    log.info(f"{len(hubs)} hub(s) at linkage distance {linkage_distance}: "
             + ", ".join(f"{h.label}=({h.x:.1f}, {h.y:.1f})" for h in hubs))
    return hubs


class HotspotClusterer:
    """
    Bundles the hotspot settings and the random source of the gap bootstrap.

    Example:
        clusterer = HotspotClusterer(abundance_threshold=12.0, rng=7)
        gap = clusterer.diagnose(mean_raster)
        distance = clusterer.suggest_linkage_distance(mean_raster, gap.k)
        hubs = clusterer.cluster(mean_raster, distance)
    """

    def __init__(self, abundance_threshold, k_max=8, n_bootstrap=20, rng=None):
        self.abundance_threshold = abundance_threshold
        self.k_max = k_max
        self.n_bootstrap = n_bootstrap
        self.rng = np.random.default_rng(rng)

    def diagnose(self, mean_raster):
        _, coords = select_hotspots(mean_raster, self.abundance_threshold)
        return gap_statistic(coords, self.k_max, self.n_bootstrap, self.rng)

    def suggest_linkage_distance(self, mean_raster, k):
        _, coords = select_hotspots(mean_raster, self.abundance_threshold)
        return suggest_linkage_distance(coords, k)

    def cluster(self, mean_raster, linkage_distance):
        return cluster_hotspots(mean_raster, self.abundance_threshold, linkage_distance)
