import warnings

import numpy as np
import pandas as pd
import pytest

from abundance_corridors.config import MCMCConfig
from abundance_corridors.errors import ConvergenceError, ConvergenceWarning, DataValidationError
from abundance_corridors.model import AbundanceModel, _log_binomial_table, assess_convergence
from abundance_corridors.survey import SurveyDataset

from conftest import COVS, fake_posterior


# --- convergence -------------------------------------------------------------

def test_convergence_passes_below_threshold():
    rhat = pd.Series({"b0": 1.001, "p": 1.05})
    assert assess_convergence(rhat, threshold=1.1) is True


def test_convergence_warns_by_default():
    rhat = pd.Series({"b0": 1.001, "b_forest": 1.4})
    with pytest.warns(ConvergenceWarning, match="b_forest"):
        assert assess_convergence(rhat, threshold=1.1) is False


def test_convergence_strict_raises_with_values():
    rhat = pd.Series({"b0": 1.3, "p": 1.0})
    with pytest.raises(ConvergenceError) as excinfo:
        assess_convergence(rhat, threshold=1.1, strict=True)
    assert excinfo.value.rhat["b0"] == 1.3


def test_undefined_rhat_is_flagged():
    rhat = pd.Series({"b0": np.nan, "p": 1.0})
    with pytest.warns(ConvergenceWarning):
        assert assess_convergence(rhat) is False


def test_convergence_tolerance():
    rhat = pd.Series({"b0": 1.0, "b_forest": 1.0, "b_forest2": 1.0, "p": 1.2})
    assert assess_convergence(rhat, threshold=1.1, tolerance=0.25) is True


# --- configuration -----------------------------------------------------------

def test_mcmc_config_defaults():
    cfg = MCMCConfig(chains=2, iterations=2000)
    assert cfg.burn_in == 1000
    assert cfg.tune == 1000
    assert cfg.draws == 1000
    assert cfg.kept_per_chain == 1000
    assert MCMCConfig(chains=2, iterations=2000, adapt=500, thin=3).kept_per_chain == 334


def test_mcmc_config_needs_two_chains():
    with pytest.raises(ValueError, match="2 chains"):
        MCMCConfig(chains=1)


# --- likelihood pieces -------------------------------------------------------

def test_log_binomial_table():
    counts = np.array([[2.0, np.nan]])
    table = _log_binomial_table(counts, np.arange(4, dtype=float))
    assert np.isneginf(table[0, 0]) and np.isneginf(table[0, 1])
    np.testing.assert_allclose(table[0, 2:], [0.0, np.log(3.0)])


def test_build_model_has_finite_logp(survey_frame):
    ds = SurveyDataset.from_frame(survey_frame, COVS)
    model = AbundanceModel(COVS, n_max=40).build(ds)
    names = {v.name for v in model.free_RVs}
    assert names == {"b0", "b_forest", "b_forest2", "b_elevation", "b_elevation2", "p"}
    logp = model.compile_logp()(model.initial_point())
    assert np.isfinite(logp)


def test_n_max_below_largest_count(survey_frame):
    ds = SurveyDataset.from_frame(survey_frame, COVS)
    with pytest.raises(ValueError, match="n_max"):
        AbundanceModel(COVS, n_max=5).build(ds)


def test_fit_rejects_covariate_mismatch(survey_frame):
    ds = SurveyDataset.from_frame(survey_frame, COVS)
    with pytest.raises(DataValidationError):
        AbundanceModel(("forest",)).fit(ds)


# --- posterior container -----------------------------------------------------

def test_posterior_accessors():
    post = fake_posterior(n=10)
    assert len(post) == 10
    assert post.parameter_names[-1] == "p"
    assert post.coefficients().shape == (10, 5)
    params = post.parameters(3)
    assert params.intercept == post.draws["b0"].iloc[3]
    np.testing.assert_allclose(params.vector(COVS), post.coefficients()[3])


def test_posterior_summary():
    post = fake_posterior(n=100)
    table = post.summary(ci=0.9)
    assert list(table.index) == post.parameter_names
    assert (table["lower"] <= table["mean"]).all()
    assert (table["mean"] <= table["upper"]).all()
    assert (table["rhat"] == 1.0).all()


# --- end to end --------------------------------------------------------------

@pytest.mark.slow
def test_fit_small_survey(survey_frame):
    ds = SurveyDataset.from_frame(survey_frame.fillna({"count_2": 5}), COVS)
    assert ds.n_occasions.tolist() == [3, 3, 3, 3, 3]
    cfg = MCMCConfig(chains=2, iterations=2000, seed=11)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        post = AbundanceModel(COVS).fit(ds, mcmc_config=cfg)

    assert len(post) == 2000
    assert set(post.rhat.index) == set(post.parameter_names)
    assert post.rhat.notna().all()
    assert post.draws["p"].between(0, 1).all()
    assert post.scaler is not None
