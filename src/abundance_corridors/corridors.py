"""
Module: corridors.py
Project: Abundance Corridors - Wildlife Abundance & Corridor Uncertainty

Description:
    Cost surfaces and least-cost paths between hubs.

    Key Processes:
    1. Cost Surface: every finite raster cell becomes a node; each node links to
       its 8 neighbours with a directed edge whose weight is the resistance
       function of (origin value, destination value) times the step length
       (1 for cardinal moves, sqrt(2) for diagonal ones).
    2. Least-Cost Path: Dijkstra search from the cell nearest to hub A to the
       cell nearest to hub B. Neighbours are always visited in the same offset
       order, so equal-cost alternatives resolve to the first one discovered.

    A surface is a pure function of one raster, and a path a pure function of
    one surface and one hub pair, so both can be computed in any worker.

Dependencies:
    - numpy, networkx
    - rasterio (Affine transforms for cell-centre coordinates)
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Optional

import networkx as nx
import numpy as np
import rasterio
from rasterio.transform import Affine

from .config import get_logger
from .errors import CostSurfaceError, UnreachableHub

log = get_logger(__name__)

SQRT2 = float(np.sqrt(2.0))

# Row-major neighbour order; fixes the adjacency order of every node
NEIGHBOUR_OFFSETS = tuple(
    (dr, dc) for dr in (-1, 0, 1) for dc in (-1, 0, 1) if (dr, dc) != (0, 0)
)


def directional_resistance(origin, dest):
    """
    Default edge resistance: max(origin, dest) - origin + dest.

    Moving into a higher cell costs 2 * dest - origin, moving into a lower one
    costs dest, so the same pair of cells is cheaper in one direction.

    Args:
        origin (np.ndarray): Values of the cells an edge leaves.
        dest (np.ndarray): Values of the cells an edge enters.

    Returns:
        np.ndarray: Resistance per edge before the step-length correction.
    """
    return np.maximum(origin, dest) - origin + dest


# --- DATA STRUCTURES ---------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Path:
    """
    Least-cost route between two hubs on one raster.

    Attributes:
        hub_a, hub_b (str): Hub labels (start, end).
        rows, cols (np.ndarray): Raster indices of the visited cells, in order.
        xs, ys (np.ndarray): Cell-centre coordinates of the visited cells.
        cost (float): Accumulated edge weight.
        sample_index (int, optional): Posterior sample behind the raster.
    """

    hub_a: str
    hub_b: str
    rows: np.ndarray
    cols: np.ndarray
    xs: np.ndarray
    ys: np.ndarray
    cost: float
    sample_index: Optional[int] = None

    @property
    def pair(self):
        return (self.hub_a, self.hub_b)

    @property
    def length(self):
        """Geometric length: sum of distances between consecutive cell centres."""
        if len(self.xs) < 2:
            return 0.0
        return float(np.hypot(np.diff(self.xs), np.diff(self.ys)).sum())

    @property
    def cells(self):
        return list(zip(self.rows.tolist(), self.cols.tolist()))

    def __len__(self):
        return len(self.rows)


class CostSurface:
    """
    Directed, weighted 8-neighbour graph over the valid cells of one raster.

    Node ids are flat raster indices (row * n_cols + col).
    """

    def __init__(self, graph, shape, transform=None):
        self.graph = graph
        self.shape = tuple(shape)
        self.transform = transform if transform is not None else Affine.identity()
        self._nodes = np.array(sorted(graph.nodes), dtype=np.int64)
        self._centers = None

    def node(self, row, col):
        return int(row) * self.shape[1] + int(col)

    def cell(self, node):
        return divmod(int(node), self.shape[1])

    def centers(self, rows, cols):
        """Cell-centre coordinates for raster indices."""
        xs, ys = rasterio.transform.xy(self.transform, np.asarray(rows), np.asarray(cols), offset="center")
        return np.atleast_1d(np.asarray(xs, dtype=float)), np.atleast_1d(np.asarray(ys, dtype=float))

    def nearest_node(self, x, y):
        """
        Valid node closest to (x, y); ties go to the lowest node id.

        Returns:
            int or None: None if the surface has no valid cell.
        """
        if self._nodes.size == 0:
            return None
        if self._centers is None:
            rows, cols = np.divmod(self._nodes, self.shape[1])
            self._centers = self.centers(rows, cols)
        xs, ys = self._centers
        return int(self._nodes[np.argmin((xs - x) ** 2 + (ys - y) ** 2)])

    def nearest_cell(self, x, y):
        node = self.nearest_node(x, y)
        return None if node is None else self.cell(node)

    def edge_weight(self, origin_cell, dest_cell):
        return self.graph[self.node(*origin_cell)][self.node(*dest_cell)]["weight"]

    def route_cost(self, cells):
        """
        Total weight of an explicit route given as (row, col) cells.

        Raises:
            nx.NetworkXNoPath: If two consecutive cells are not connected.
        """
        nodes = [self.node(r, c) for r, c in cells]
        if len(nodes) < 2:
            return 0.0
        if not nx.is_path(self.graph, nodes):
            raise nx.NetworkXNoPath(f"Cells {cells} do not form a connected route")
        return float(nx.path_weight(self.graph, nodes, weight="weight"))


# --- CORE FUNCTIONS ----------------------------------------------------------

def build_cost_surface(raster, resistance_fn=directional_resistance, transform=None):
    """
    Builds the directed 8-neighbour cost graph of a raster.

    Non-finite cells (NaN, inf) are left out of the graph entirely. Edge
    weights are `resistance_fn(origin, dest)` multiplied by 1 (cardinal) or
    sqrt(2) (diagonal); no other scaling is applied.

    Args:
        raster (np.ndarray): 2-D scalar surface (abundance, elevation, ...).
        resistance_fn (callable): Vectorised f(origin, dest) -> resistance.
        transform (Affine, optional): Raster-to-map transform for cell centres.

    Returns:
        CostSurface

    Raises:
        CostSurfaceError: If any edge weight is NaN, infinite or negative.
    """
    values = np.asarray(raster, dtype=float)
    if values.ndim != 2:
        raise ValueError(f"Expected a 2-D raster, got shape {values.shape}")

    n_rows, n_cols = values.shape
    valid = np.isfinite(values)
    flat = np.arange(values.size, dtype=np.int64).reshape(values.shape)

    graph = nx.DiGraph()
    graph.add_nodes_from(flat[valid].tolist())

    for dr, dc in NEIGHBOUR_OFFSETS:
        # Origin block and the destination block shifted by (dr, dc)
        r0, r1 = max(0, -dr), n_rows - max(0, dr)
        c0, c1 = max(0, -dc), n_cols - max(0, dc)
        if r1 <= r0 or c1 <= c0:
            continue
        src = (slice(r0, r1), slice(c0, c1))
        dst = (slice(r0 + dr, r1 + dr), slice(c0 + dc, c1 + dc))

        linked = valid[src] & valid[dst]
        if not linked.any():
            continue

        step = SQRT2 if dr and dc else 1.0
        with np.errstate(invalid="ignore", over="ignore"):
            weights = np.asarray(resistance_fn(values[src][linked], values[dst][linked]), dtype=float) * step

        bad = ~np.isfinite(weights) | (weights < 0)
        if bad.any():
            raise CostSurfaceError(
                f"{int(bad.sum())} edge(s) in direction {(dr, dc)} have NaN, infinite or negative "
                f"cost (e.g. {weights[bad][0]!r}); check the raster values and resistance function."
            )
        graph.add_weighted_edges_from(zip(flat[src][linked].tolist(), flat[dst][linked].tolist(), weights.tolist()))

    log.debug(f"Cost surface: {graph.number_of_nodes()} nodes, {graph.number_of_edges()} edges.")
    return CostSurface(graph, values.shape, transform)


def shortest_path(surface, hub_a, hub_b, sample_index=None):
    """
    Least-cost path between two hubs.

    Both hubs snap to their nearest valid cell. Identical endpoints yield a
    single-cell path of zero cost and length.

    Args:
        surface (CostSurface): Graph built by `build_cost_surface`.
        hub_a, hub_b (Hub): Start and end hubs.
        sample_index (int, optional): Posterior sample the surface came from.

    Returns:
        Path

    Raises:
        UnreachableHub: If the surface is empty or B is not reachable from A.
    """
    source = surface.nearest_node(hub_a.x, hub_a.y)
    target = surface.nearest_node(hub_b.x, hub_b.y)
    if source is None or target is None:
        raise UnreachableHub(hub_a.label, hub_b.label, sample_index, reason="no valid cells")

    if source == target:
        cost, nodes = 0.0, [source]
    else:
        try:
            cost, nodes = nx.single_source_dijkstra(surface.graph, source, target, weight="weight")
        except nx.NetworkXNoPath as e:
            raise UnreachableHub(hub_a.label, hub_b.label, sample_index, reason="disconnected cells") from e

    rows, cols = np.divmod(np.asarray(nodes, dtype=np.int64), surface.shape[1])
    xs, ys = surface.centers(rows, cols)
    return Path(hub_a.label, hub_b.label, rows, cols, xs, ys, float(cost), sample_index)


def hub_pairs(hubs, both_directions=False):
    """
    Hub pairs to connect.

    Args:
        hubs (list): Hub objects.
        both_directions (bool): Also route B -> A. Costs are asymmetric, so the
            two directions can differ.

    Returns:
        list: (hub_a, hub_b) tuples in a stable order.
    """
    if both_directions:
        return list(itertools.permutations(hubs, 2))
    return list(itertools.combinations(hubs, 2))
