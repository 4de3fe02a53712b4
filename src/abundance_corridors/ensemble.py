"""
Module: ensemble.py
Project: Abundance Corridors - Wildlife Abundance & Corridor Uncertainty

Description:
    Runs the corridor analysis once per posterior sample and chains the stages
    of a full run.

    Key Processes:
    1. Task List: one CorridorTask per selected posterior sample (its index and
       coefficient row). Tasks are independent of each other.
    2. Workers: each task builds its abundance raster, one cost surface and
       the least-cost paths for every hub pair. The raster and the surface are
       dropped as soon as the task returns. With n_workers > 1 the tasks run on
       a process pool; the grid design matrix and the hubs are handed to every
       worker once through the pool initializer.
    3. Fan-in: results are folded into a single CorridorAggregator in the
       parent process, in task order. Unreachable hub pairs are logged and
       counted as skipped; they never abort the run.
    4. Stages: the ensemble, hub, baseline and bottleneck stages used by
       run_pipeline() and by the run_pipeline.py driver.

    The resistance function is sent to the workers by reference, so it must be
    a module-level function (not a lambda).

Dependencies:
    - numpy, tqdm
    - concurrent.futures (process pool)
"""

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd
from tqdm import tqdm

from .aggregation import CorridorAggregator, CorridorSummary
from .bottlenecks import extract_bottlenecks
from .clustering import GapStatistic, HotspotClusterer
from .config import PipelineParams, get_logger
from .corridors import build_cost_surface, directional_resistance, hub_pairs, shortest_path
from .errors import UnreachableHub
from .model import AbundanceModel, PosteriorSamples
from .prediction import AbundanceRaster, PosteriorEnsemble, expected_abundance, predict

log = get_logger(__name__)


@dataclass(frozen=True, eq=False)
class CorridorTask:
    """One unit of work: the posterior sample behind one abundance raster."""

    sample_index: int
    coefficients: np.ndarray


def corridor_tasks(ensemble):
    """Task list for a PosteriorEnsemble, in ensemble order."""
    return [CorridorTask(int(i), coefs) for i, coefs in zip(ensemble.indices, ensemble.coefficients)]


# --- WORKER SIDE -------------------------------------------------------------

# Filled once per worker process by the pool initializer
_WORKER_STATE = {}


def _worker_state(design, grid, pairs, resistance_fn):
    return {
        "design": design,
        "rows": grid.rows,
        "cols": grid.cols,
        "shape": grid.shape,
        "transform": grid.transform,
        "pairs": pairs,
        "resistance_fn": resistance_fn,
    }


def _init_worker(state):
    _WORKER_STATE.clear()
    _WORKER_STATE.update(state)


def _solve(task, state):
    """
    Raster -> cost surface -> one path per hub pair.

    Returns:
        tuple: (paths, skipped) where skipped holds (hub_a, hub_b, sample, reason).
    """
    values = expected_abundance(state["design"], task.coefficients)
    raster = np.full(state["shape"], np.nan)
    raster[state["rows"], state["cols"]] = values
    surface = build_cost_surface(raster, state["resistance_fn"], state["transform"])

    paths, skipped = [], []
    for hub_a, hub_b in state["pairs"]:
        try:
            paths.append(shortest_path(surface, hub_a, hub_b, task.sample_index))
        except UnreachableHub as e:
            skipped.append((hub_a.label, hub_b.label, task.sample_index, str(e)))
    return paths, skipped


def _solve_task(task):
    return _solve(task, _WORKER_STATE)


# --- PARENT SIDE -------------------------------------------------------------

def _fold(aggregator, result):
    paths, skipped = result
    for path in paths:
        aggregator.accumulate(path)
    for hub_a, hub_b, sample_index, reason in skipped:
        log.warning(f"Skipped: {reason}")
        aggregator.record_skip(hub_a, hub_b, sample_index, reason)


def run_corridor_ensemble(ensemble, hubs, resistance_fn=directional_resistance, n_workers=1,
                          both_directions=False, keep_paths=True, progress=True):
    """
    Least-cost paths between every hub pair on every raster of the ensemble.

    Args:
        ensemble (PosteriorEnsemble): Posterior abundance ensemble.
        hubs (list): Hub objects.
        resistance_fn (callable): Module-level f(origin, dest) -> resistance.
        n_workers (int): Worker processes; 1 runs in the calling process.
        both_directions (bool): Route each pair in both directions.
        keep_paths (bool): Keep the Path objects in the summary.
        progress (bool): Show a tqdm progress bar.

    Returns:
        CorridorSummary

    Raises:
        CostSurfaceError: If a raster yields invalid edge weights.
    """
    if n_workers < 1:
        raise ValueError("n_workers must be >= 1")

    grid = ensemble.grid
    aggregator = CorridorAggregator(grid.shape, keep_paths=keep_paths)
    pairs = hub_pairs(hubs, both_directions)
    if not pairs:
        log.warning(f"{len(hubs)} hub(s): nothing to connect.")
        return aggregator.summarize()

    tasks = corridor_tasks(ensemble)
    state = _worker_state(ensemble.design, grid, pairs, resistance_fn)
    log.info(f"Corridor ensemble: {len(tasks)} samples x {len(pairs)} hub pair(s) "
             f"on {n_workers} worker(s).")

    bar = dict(total=len(tasks), desc="Corridor ensemble", disable=not progress)
    if n_workers == 1:
        for task in tqdm(tasks, **bar):
            _fold(aggregator, _solve(task, state))
    else:
        chunksize = max(1, len(tasks) // (n_workers * 4))
        with ProcessPoolExecutor(max_workers=n_workers, initializer=_init_worker, initargs=(state,)) as executor:
            # map() yields in task order, so ranking ties do not depend on scheduling
            for result in tqdm(executor.map(_solve_task, tasks, chunksize=chunksize), **bar):
                _fold(aggregator, result)

    return aggregator.summarize()


def baseline_corridors(raster, hubs, transform=None, resistance_fn=directional_resistance,
                       both_directions=False, name="baseline"):
    """
    Single-surface corridors (e.g. ensemble mean or elevation only).

    Args:
        raster (np.ndarray): 2-D surface.
        hubs (list): Hub objects.
        transform (Affine, optional): Raster-to-map transform.
        resistance_fn (callable): f(origin, dest) -> resistance.
        both_directions (bool): Route each pair in both directions.
        name (str): Used in log messages.

    Returns:
        dict: (hub_a, hub_b) -> Path, without the unreachable pairs.
    """
    surface = build_cost_surface(raster, resistance_fn, transform)
    paths = {}
    for hub_a, hub_b in hub_pairs(hubs, both_directions):
        try:
            path = shortest_path(surface, hub_a, hub_b)
        except UnreachableHub as e:
            log.warning(f"{name}: {e}")
            continue
        paths[path.pair] = path
    log.info(f"{name}: {len(paths)} corridor(s).")
    return paths


# --- STAGES ------------------------------------------------------------------
# Shared by run_pipeline() and the run_pipeline.py driver.

def stage_rngs(seed):
    """
    Independent generators for the posterior sample draw and the gap bootstrap.

    Separate streams keep the hub stage reproducible when the draw is reused
    from a cache instead of being repeated.
    """
    draw_seq, bootstrap_seq = np.random.SeedSequence(seed).spawn(2)
    return np.random.default_rng(draw_seq), np.random.default_rng(bootstrap_seq)


def abundance_ensemble(posterior, grid, sample_count, rng=None, indices=None):
    """
    Posterior abundance ensemble and its streamed mean raster.

    Args:
        posterior (PosteriorSamples): Fitted posterior.
        grid (StudyAreaGrid): Prediction grid.
        sample_count (int): Number of posterior samples to draw.
        rng (np.random.Generator | int | None): Random source of the draw.
        indices (array-like, optional): Previously drawn rows; skips the draw.

    Returns:
        tuple: (PosteriorEnsemble, AbundanceRaster)
    """
    if indices is None:
        ensemble = predict(posterior, grid, sample_count, rng)
    else:
        ensemble = PosteriorEnsemble(posterior, grid, indices)
        log.info(f"Ensemble rebuilt from {len(ensemble)} cached sample indices.")
    return ensemble, ensemble.mean_raster()


def identify_hubs(mean_raster, clusters, rng=None):
    """
    Gap statistic diagnostic and hubs cut at the configured linkage distance.

    Returns:
        tuple: (GapStatistic, list of Hub)

    Raises:
        EmptyHotspotSet: If no cell exceeds the abundance threshold.
    """
    clusterer = HotspotClusterer(clusters.abundance_threshold, clusters.k_max, clusters.n_bootstrap, rng)
    gap = clusterer.diagnose(mean_raster)
    hubs = clusterer.cluster(mean_raster, clusters.linkage_distance)
    return gap, hubs


def corridor_baselines(mean_raster, hubs, corridors, resistance_fn=directional_resistance):
    """
    Mean-abundance corridors, plus the covariate-only baseline when the grid has it.

    Returns:
        dict: baseline name -> {(hub_a, hub_b): Path}
    """
    grid = mean_raster.grid
    baselines = {"mean": baseline_corridors(mean_raster.to_array(), hubs, grid.transform, resistance_fn,
                                            corridors.both_directions, name="Mean-abundance baseline")}
    covariate = corridors.baseline_covariate
    if covariate in grid.covariates:
        baselines[covariate] = baseline_corridors(
            grid.covariate_raster(covariate), hubs, grid.transform, resistance_fn,
            corridors.both_directions, name=f"{covariate.capitalize()} baseline",
        )
    else:
        log.warning(f"Baseline covariate '{covariate}' not in grid; skipped.")
    return baselines


def ensemble_bottlenecks(summary, mean_raster, corridors):
    """Bottlenecks of the corridor frequency map on the mean-abundance surface."""
    return extract_bottlenecks(
        summary.pixel_frequency, mean_raster.to_array(),
        percentile=corridors.bottleneck_percentile,
        min_resistance=corridors.min_barrier_resistance,
        gap_tolerance=corridors.cluster_gap_tolerance,
        transform=mean_raster.grid.transform,
    )


# --- FULL RUN ----------------------------------------------------------------

@dataclass
class PipelineResult:
    """Everything a full run produces."""

    posterior: PosteriorSamples
    ensemble: PosteriorEnsemble
    mean_raster: AbundanceRaster
    gap: Optional[GapStatistic]
    hubs: list
    summary: CorridorSummary
    baselines: dict = field(default_factory=dict)
    bottlenecks: Optional[pd.DataFrame] = None


def run_pipeline(dataset, grid, params=None, resistance_fn=directional_resistance, progress=True):
    """
    Survey -> posterior -> abundance ensemble -> hubs -> corridor ensemble.

    `params.seed` seeds the posterior sample draw and the gap statistic
    bootstrap (see `stage_rngs`), so a run is reproducible end to end
    (given a fixed MCMC seed).

    Args:
        dataset (SurveyDataset): Validated survey.
        grid (StudyAreaGrid): Prediction grid.
        params (PipelineParams, optional): Settings per stage.
        resistance_fn (callable): Module-level f(origin, dest) -> resistance.
        progress (bool): Show progress bars.

    Returns:
        PipelineResult

    Raises:
        DataValidationError, EmptyHotspotSet, CostSurfaceError,
        ConvergenceError (strict mode only).
    """
    params = params or PipelineParams()
    draw_rng, bootstrap_rng = stage_rngs(params.seed)
    corridors = params.corridors

    model = AbundanceModel(params.covariates, standardize=params.standardize)
    posterior = model.fit(dataset, params.priors, params.mcmc)

    ensemble, mean_raster = abundance_ensemble(posterior, grid, corridors.sample_count, draw_rng)
    gap, hubs = identify_hubs(mean_raster, params.clusters, bootstrap_rng)

    summary = run_corridor_ensemble(
        ensemble, hubs,
        resistance_fn=resistance_fn,
        n_workers=corridors.n_workers,
        both_directions=corridors.both_directions,
        progress=progress,
    )

    return PipelineResult(
        posterior=posterior,
        ensemble=ensemble,
        mean_raster=mean_raster,
        gap=gap,
        hubs=hubs,
        summary=summary,
        baselines=corridor_baselines(mean_raster, hubs, corridors, resistance_fn),
        bottlenecks=ensemble_bottlenecks(summary, mean_raster, corridors),
    )
