"""
Abundance Corridors: Bayesian N-mixture abundance estimation and an ensemble of
least-cost wildlife corridors that carries the posterior uncertainty through to
a probabilistic corridor map.
"""

__version__ = "0.1.0"

from .aggregation import CorridorAggregator, CorridorSummary
from .bottlenecks import extract_bottlenecks
from .clustering import HotspotClusterer, Hub, cluster_hotspots, gap_statistic, select_hotspots
from .config import MCMCConfig, PipelineParams, PriorBounds
from .corridors import CostSurface, Path, build_cost_surface, directional_resistance, shortest_path
from .ensemble import (
    PipelineResult,
    abundance_ensemble,
    baseline_corridors,
    corridor_baselines,
    ensemble_bottlenecks,
    identify_hubs,
    run_corridor_ensemble,
    run_pipeline,
    stage_rngs,
)
from .errors import (
    ConvergenceError,
    ConvergenceWarning,
    CorridorError,
    CostSurfaceError,
    DataValidationError,
    EmptyHotspotSet,
    UnreachableHub,
)
from .model import AbundanceModel, PosteriorSamples
from .prediction import AbundanceRaster, PosteriorEnsemble, PosteriorPredictor, predict
from .survey import StudyAreaGrid, SurveyDataset
