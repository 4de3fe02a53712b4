import numpy as np
import pandas as pd
import pytest

from abundance_corridors.clustering import Hub
from abundance_corridors.config import ClusterParams, CorridorParams, PipelineParams
from abundance_corridors.ensemble import (
    abundance_ensemble,
    baseline_corridors,
    corridor_baselines,
    corridor_tasks,
    ensemble_bottlenecks,
    identify_hubs,
    run_corridor_ensemble,
    run_pipeline,
    stage_rngs,
)
from abundance_corridors.model import AbundanceModel
from abundance_corridors.prediction import predict
from abundance_corridors.survey import StudyAreaGrid, SurveyDataset

from conftest import COVS, fake_posterior, grid_frame


@pytest.fixture
def corner_hubs():
    # Centres of the top-left and bottom-right cells of the 6x6, 10 m grid
    return [Hub("A", 0.0, 50.0), Hub("B", 50.0, 0.0)]


def test_tasks_follow_ensemble_order(posterior, grid):
    ensemble = predict(posterior, grid, sample_count=4, rng=2)
    tasks = corridor_tasks(ensemble)
    assert [t.sample_index for t in tasks] == ensemble.indices.tolist()
    np.testing.assert_array_equal(tasks[0].coefficients, ensemble.coefficients[0])


def test_sequential_ensemble(posterior, grid, corner_hubs):
    ensemble = predict(posterior, grid, sample_count=5, rng=2)
    summary = run_corridor_ensemble(ensemble, corner_hubs, progress=False)

    assert summary.n_paths == 5
    assert summary.n_skipped == 0
    assert summary.pixel_frequency.shape == grid.shape
    assert summary.pixel_frequency[0, 0] == 5
    assert summary.pixel_frequency[5, 5] == 5
    assert sorted(summary.ranking.sample_index.tolist()) == sorted(ensemble.indices.tolist())
    lengths = summary.ranking.length.tolist()
    assert lengths == sorted(lengths)


def test_both_directions_doubles_paths(posterior, grid, corner_hubs):
    ensemble = predict(posterior, grid, sample_count=3, rng=2)
    summary = run_corridor_ensemble(ensemble, corner_hubs, both_directions=True, progress=False)
    assert summary.n_paths == 6
    assert set(summary.pair_frequency) == {("A", "B"), ("B", "A")}


def test_unreachable_pairs_are_skipped(posterior, corner_hubs):
    frame = grid_frame()
    # Missing covariates on one full column make an impassable wall
    frame.loc[frame.x == 30.0, "forest"] = np.nan
    grid = StudyAreaGrid.from_frame(frame, COVS)
    ensemble = predict(posterior, grid, sample_count=4, rng=2)

    summary = run_corridor_ensemble(ensemble, corner_hubs, progress=False)
    assert summary.n_paths == 0
    assert summary.n_skipped == 4
    assert {s["sample_index"] for s in summary.skipped} == set(ensemble.indices.tolist())


def test_single_hub_has_nothing_to_connect(posterior, grid):
    ensemble = predict(posterior, grid, sample_count=2, rng=2)
    summary = run_corridor_ensemble(ensemble, [Hub("A", 0.0, 0.0)], progress=False)
    assert summary.n_paths == 0


def test_process_pool_matches_sequential(posterior, grid, corner_hubs):
    ensemble = predict(posterior, grid, sample_count=6, rng=4)
    sequential = run_corridor_ensemble(ensemble, corner_hubs, n_workers=1, progress=False)
    pooled = run_corridor_ensemble(ensemble, corner_hubs, n_workers=2, progress=False)
    np.testing.assert_array_equal(sequential.pixel_frequency, pooled.pixel_frequency)
    pd.testing.assert_frame_equal(sequential.ranking, pooled.ranking)


def test_baseline_corridors(grid, corner_hubs):
    paths = baseline_corridors(grid.covariate_raster("elevation"), corner_hubs, grid.transform)
    path = paths[("A", "B")]
    assert path.sample_index is None
    assert path.cells[0] == (0, 0)
    assert path.cells[-1] == (5, 5)


def test_baseline_skips_unreachable(corner_hubs):
    raster = np.ones((6, 6))
    raster[:, 3] = np.nan
    assert baseline_corridors(raster, corner_hubs) == {}


def test_run_pipeline_with_stub_fit(monkeypatch, survey_frame, grid):
    monkeypatch.setattr(AbundanceModel, "fit", lambda self, *args, **kwargs: fake_posterior())
    dataset = SurveyDataset.from_frame(survey_frame, COVS)
    params = PipelineParams(
        clusters=ClusterParams(abundance_threshold=10.0, linkage_distance=15.0, k_max=3, n_bootstrap=3),
        corridors=CorridorParams(sample_count=8),
    )
    result = run_pipeline(dataset, grid, params, progress=False)

    assert len(result.ensemble) == 8
    assert len(result.hubs) >= 1
    n_pairs = len(result.hubs) * (len(result.hubs) - 1) // 2
    assert result.summary.n_paths + result.summary.n_skipped == 8 * n_pairs
    assert set(result.baselines) == {"mean", "elevation"}
    assert list(result.bottlenecks.columns)[:3] == ["Rank", "Easting", "Northing"]


def test_run_pipeline_is_reproducible(monkeypatch, survey_frame, grid):
    monkeypatch.setattr(AbundanceModel, "fit", lambda self, *args, **kwargs: fake_posterior())
    dataset = SurveyDataset.from_frame(survey_frame, COVS)
    params = PipelineParams(
        seed=3,
        clusters=ClusterParams(abundance_threshold=10.0, linkage_distance=15.0, k_max=3, n_bootstrap=3),
        corridors=CorridorParams(sample_count=5),
    )
    a = run_pipeline(dataset, grid, params, progress=False)
    b = run_pipeline(dataset, grid, params, progress=False)
    np.testing.assert_array_equal(a.ensemble.indices, b.ensemble.indices)
    np.testing.assert_array_equal(a.summary.pixel_frequency, b.summary.pixel_frequency)


def test_stage_rngs_are_reproducible_and_separate():
    draw_a, boot_a = stage_rngs(5)
    draw_b, boot_b = stage_rngs(5)
    first = draw_a.integers(0, 1_000_000, 4)
    np.testing.assert_array_equal(first, draw_b.integers(0, 1_000_000, 4))
    np.testing.assert_array_equal(boot_a.integers(0, 1_000_000, 4), boot_b.integers(0, 1_000_000, 4))
    assert not np.array_equal(first, stage_rngs(5)[1].integers(0, 1_000_000, 4))


def test_abundance_ensemble_reuses_cached_indices(posterior, grid):
    ensemble, mean = abundance_ensemble(posterior, grid, 6, rng=4)
    again, again_mean = abundance_ensemble(posterior, grid, 6, indices=ensemble.indices)
    np.testing.assert_array_equal(again.indices, ensemble.indices)
    np.testing.assert_allclose(again_mean.values, mean.values)


def test_run_pipeline_matches_individual_stages(monkeypatch, survey_frame, grid):
    monkeypatch.setattr(AbundanceModel, "fit", lambda self, *args, **kwargs: fake_posterior())
    dataset = SurveyDataset.from_frame(survey_frame, COVS)
    params = PipelineParams(
        seed=11,
        clusters=ClusterParams(abundance_threshold=10.0, linkage_distance=15.0, k_max=3, n_bootstrap=3),
        corridors=CorridorParams(sample_count=4),
    )
    result = run_pipeline(dataset, grid, params, progress=False)

    draw_rng, bootstrap_rng = stage_rngs(params.seed)
    ensemble, mean_raster = abundance_ensemble(fake_posterior(), grid, 4, draw_rng)
    gap, hubs = identify_hubs(mean_raster, params.clusters, bootstrap_rng)
    summary = run_corridor_ensemble(ensemble, hubs, progress=False)

    np.testing.assert_array_equal(result.ensemble.indices, ensemble.indices)
    assert result.gap.k == gap.k
    assert [h.label for h in result.hubs] == [h.label for h in hubs]
    np.testing.assert_array_equal(result.summary.pixel_frequency, summary.pixel_frequency)
    baselines = corridor_baselines(mean_raster, hubs, params.corridors)
    assert set(baselines) == set(result.baselines)
    pd.testing.assert_frame_equal(result.bottlenecks, ensemble_bottlenecks(summary, mean_raster, params.corridors))
