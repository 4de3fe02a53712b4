import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio.transform import from_origin

from abundance_corridors import io
from abundance_corridors.clustering import Hub
from abundance_corridors.corridors import Path
from abundance_corridors.errors import DataValidationError
from abundance_corridors.prediction import PosteriorEnsemble, predict
from abundance_corridors.survey import CovariateScaler

from conftest import COVS, fake_posterior, grid_frame


def test_read_survey_and_grid_csv(tmp_path, survey_frame):
    survey_frame.to_csv(tmp_path / "survey.csv", index=False)
    grid_frame().to_csv(tmp_path / "grid.csv", index=False)

    ds = io.read_survey_csv(tmp_path / "survey.csv", COVS, id_col="site")
    grid = io.read_grid_csv(tmp_path / "grid.csv", COVS)
    assert len(ds) == 5
    assert np.isnan(ds.counts[1, 1])
    assert grid.shape == (6, 6)


def test_missing_and_empty_inputs(tmp_path):
    with pytest.raises(FileNotFoundError):
        io.read_survey_csv(tmp_path / "nope.csv")
    (tmp_path / "empty.csv").write_text("")
    with pytest.raises(DataValidationError):
        io.read_grid_csv(tmp_path / "empty.csv")


def test_posterior_cache(tmp_path, survey_frame):
    post = fake_posterior(n=20)
    scaler = CovariateScaler.fit(survey_frame, COVS)
    post = type(post)(draws=post.draws, rhat=post.rhat, covariates=post.covariates,
                      scaler=scaler, ess=post.rhat * 100, converged=False)

    io.save_posterior(post, tmp_path / "posterior")
    loaded = io.load_posterior(tmp_path / "posterior")

    pd.testing.assert_frame_equal(loaded.draws, post.draws)
    pd.testing.assert_series_equal(loaded.rhat, post.rhat, check_names=False, check_index_type=False)
    assert loaded.covariates == COVS
    assert loaded.scaler.to_dict() == scaler.to_dict()
    assert loaded.converged is False
    assert loaded.ess["b0"] == 100


def test_incomplete_posterior_cache(tmp_path):
    (tmp_path / "posterior").mkdir()
    with pytest.raises(FileNotFoundError, match="incomplete"):
        io.load_posterior(tmp_path / "posterior")


def test_ensemble_cache_keeps_only_indices(tmp_path, posterior, grid, monkeypatch):
    ensemble = predict(posterior, grid, sample_count=4, rng=1)
    monkeypatch.setattr(type(ensemble), "to_array", lambda self: pytest.fail("ensemble materialised"))
    io.save_ensemble(ensemble, tmp_path / "ensemble.npz")

    with np.load(tmp_path / "ensemble.npz") as data:
        assert data.files == ["indices"]
    indices = io.load_ensemble_indices(tmp_path / "ensemble.npz")
    np.testing.assert_array_equal(indices, ensemble.indices)

    rebuilt = PosteriorEnsemble(posterior, grid, indices)
    for a, b in zip(rebuilt, ensemble):
        np.testing.assert_array_equal(a.values, b.values)


def test_missing_ensemble_cache(tmp_path):
    with pytest.raises(FileNotFoundError):
        io.load_ensemble_indices(tmp_path / "nope.npz")


def test_write_and_read_raster(tmp_path):
    transform = from_origin(0.0, 30.0, 10.0, 10.0)
    values = np.arange(9, dtype=float).reshape(3, 3)
    values[1, 1] = np.nan
    path = io.write_raster(values, transform, tmp_path / "mean.tif", crs="EPSG:32632")

    data, read_transform = io.read_raster(path)
    assert read_transform == transform
    assert np.isnan(data[1, 1])
    assert data[2, 2] == 8.0
    with rasterio.open(path) as src:
        assert src.crs.to_epsg() == 32632


def test_integer_raster_keeps_zeros(tmp_path):
    counts = np.array([[0, 3], [1, 0]], dtype=np.int64)
    path = io.write_raster(counts, from_origin(0, 2, 1, 1), tmp_path / "freq.tif")
    with rasterio.open(path) as src:
        assert src.dtypes[0] == "int32"
        assert src.nodata is None
        np.testing.assert_array_equal(src.read(1), counts)


def test_write_hubs_and_paths(tmp_path):
    hubs = [Hub("A", 5.0, 45.0, 4), Hub("B", 45.0, 5.0, 3)]
    rows, cols = np.array([0, 1, 2]), np.array([0, 1, 2])
    path = Path("A", "B", rows, cols, np.array([0.0, 1.0, 2.0]), np.array([2.0, 1.0, 0.0]), 3.0, None)
    single = Path("A", "A", rows[:1], cols[:1], np.array([0.0]), np.array([2.0]), 0.0, 7)

    gpkg = tmp_path / "out.gpkg"
    io.write_hubs(hubs, gpkg)
    io.write_paths([path, single], gpkg, layer="best_paths")

    hubs_gdf = gpd.read_file(gpkg, layer="hubs")
    assert hubs_gdf.label.tolist() == ["A", "B"]
    assert hubs_gdf.geometry.iloc[0].x == 5.0

    paths_gdf = gpd.read_file(gpkg, layer="best_paths")
    assert len(paths_gdf) == 2
    assert paths_gdf.geometry.iloc[0].length == pytest.approx(2 * np.sqrt(2))
    assert np.isnan(paths_gdf.sample_index.iloc[0])
    assert paths_gdf.sample_index.iloc[1] == 7
    assert paths_gdf.geometry.iloc[1].length == 0.0


def test_write_table(tmp_path):
    df = pd.DataFrame({"a": [1, 2]})
    io.write_table(df, tmp_path / "sub" / "t.csv")
    assert pd.read_csv(tmp_path / "sub" / "t.csv").a.tolist() == [1, 2]
