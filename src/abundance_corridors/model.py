"""
Module: model.py
Project: Abundance Corridors - Wildlife Abundance & Corridor Uncertainty

Description:
    Hierarchical (N-mixture) abundance model fitted by MCMC.

    For each site i:
        N_i  ~ Poisson(lambda_i)
        log(lambda_i) = b0 + sum_k (b_k * x_ik + b_k2 * x_ik^2)
        C_ij ~ Binomial(N_i, p)        for every observed occasion j

    The latent abundance N_i is summed out over 0..n_max, so the sampler
    (PyMC NUTS) only explores the continuous coefficients and p. Missed
    occasions simply drop out of the binomial term.

    Convergence is judged with the potential scale reduction factor (R-hat,
    via ArviZ) across chains. Exceedance is reported as a ConvergenceWarning
    unless the caller asks for strict mode.

Dependencies:
    - pymc, arviz
    - numpy, pandas, scipy.special
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Mapping, Optional

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
from scipy.special import gammaln

from .config import COVARIATES, RHAT_THRESHOLD, MCMCConfig, PriorBounds, get_logger
from .errors import ConvergenceError, ConvergenceWarning, DataValidationError
from .survey import CovariateScaler, coefficient_names

log = get_logger(__name__)

DETECTION = "p"
N_MAX_MARGIN = 100


# --- POSTERIOR CONTAINERS ----------------------------------------------------

@dataclass(frozen=True)
class AbundanceParameters:
    """One concrete draw of the model parameters."""

    intercept: float
    coefficients: Mapping[str, float]
    detection_probability: float

    def vector(self, covariates):
        """Coefficients in design-matrix order (intercept first)."""
        names = coefficient_names(covariates)[1:]
        return np.array([self.intercept] + [self.coefficients[n] for n in names], dtype=float)


@dataclass(frozen=True)
class PosteriorSamples:
    """
    Thinned post-burn-in draws from every chain.

    Attributes:
        draws (pd.DataFrame): Columns chain, draw and one per parameter.
        rhat (pd.Series): Potential scale reduction per parameter.
        covariates (tuple): Covariate names the model was fitted on.
        scaler (CovariateScaler, optional): Standardisation applied to covariates.
        ess (pd.Series, optional): Bulk effective sample size per parameter.
        converged (bool): False if the R-hat check flagged the fit.
    """

    draws: pd.DataFrame
    rhat: pd.Series
    covariates: tuple = COVARIATES
    scaler: Optional[CovariateScaler] = None
    ess: Optional[pd.Series] = None
    converged: bool = True

    def __len__(self):
        return len(self.draws)

    @property
    def coefficient_names(self):
        return coefficient_names(self.covariates)

    @property
    def parameter_names(self):
        return self.coefficient_names + [DETECTION]

    def coefficients(self):
        """(n_samples, n_coefficients) matrix in design-matrix order."""
        return self.draws[self.coefficient_names].to_numpy(dtype=float)

    def parameters(self, index):
        row = self.draws.iloc[index]
        names = self.coefficient_names
        return AbundanceParameters(
            intercept=float(row[names[0]]),
            coefficients={n: float(row[n]) for n in names[1:]},
            detection_probability=float(row[DETECTION]),
        )

    def summary(self, ci=0.95):
        """
        Posterior means, standard deviations, equal-tailed credible intervals
        and convergence diagnostics per parameter.

        Args:
            ci (float): Credible interval mass.

        Returns:
            pd.DataFrame: Indexed by parameter name.
        """
        alpha = (1.0 - ci) / 2.0
        values = self.draws[self.parameter_names]
        table = pd.DataFrame({
            "mean": values.mean(),
            "sd": values.std(ddof=1),
            "lower": values.quantile(alpha),
            "upper": values.quantile(1.0 - alpha),
            "rhat": self.rhat.reindex(self.parameter_names),
        })
        if self.ess is not None:
            table["ess_bulk"] = self.ess.reindex(self.parameter_names)
        table.index.name = "parameter"
        return table


# --- CONVERGENCE -------------------------------------------------------------

def assess_convergence(rhat, threshold=RHAT_THRESHOLD, tolerance=0.0, strict=False):
    """
    Checks the share of parameters whose R-hat exceeds `threshold`.

    A parameter with an undefined R-hat counts as flagged.

    Args:
        rhat (pd.Series): R-hat per parameter.
        threshold (float): Largest acceptable R-hat.
        tolerance (float): Largest acceptable fraction of flagged parameters.
        strict (bool): Raise instead of warn.

    Returns:
        bool: True if the fit passes.

    Raises:
        ConvergenceError: If the check fails and `strict` is set.
    """
    flagged = rhat[(rhat > threshold) | rhat.isna()]
    fraction = len(flagged) / len(rhat) if len(rhat) else 0.0
    if fraction <= tolerance:
        log.info(f"Convergence OK: max R-hat {rhat.max():.3f} (threshold {threshold}).")
        return True

    details = ", ".join(f"{name}={value:.3f}" for name, value in flagged.items())
    message = (f"{len(flagged)}/{len(rhat)} parameters exceed R-hat {threshold} "
               f"(tolerance {tolerance:.0%}): {details}")
    if strict:
        raise ConvergenceError(message, rhat=rhat)
    log.warning(message)
    warnings.warn(message, ConvergenceWarning, stacklevel=2)
    return False


# --- MODEL -------------------------------------------------------------------

def _log_binomial_table(counts, n_values):
    """
    Sum over observed occasions of log C(N, C_ij) for every candidate N.

    Entries with N below a site's largest count are -inf (impossible).

    Returns:
        np.ndarray: (n_sites, len(n_values)).
    """
    observed = ~np.isnan(counts)
    filled = np.where(observed, counts, 0.0)
    n = n_values[None, :, None]
    c = filled[:, None, :]
    with np.errstate(invalid="ignore"):
        terms = gammaln(n + 1) - gammaln(c + 1) - gammaln(np.maximum(n - c, 0) + 1)
    terms = np.where(n >= c, terms, -np.inf)
    terms = np.where(observed[:, None, :], terms, 0.0)
    return terms.sum(axis=2)


class AbundanceModel:
    """
    Binomial N-mixture model with quadratic covariate effects on abundance.

    Attributes:
        covariates (tuple): Covariates used in the abundance linear predictor.
        standardize (bool): Z-score covariates before fitting (stored with the
            posterior so prediction applies the same transform).
        n_max (int, optional): Upper bound of the latent abundance sum.
    """

    def __init__(self, covariates=COVARIATES, standardize=True, n_max=None):
        self.covariates = tuple(covariates)
        self.standardize = standardize
        self.n_max = n_max

    def build(self, dataset, prior_bounds=None, scaler=None):
        """
        Builds the PyMC model with the latent abundance summed out.

        Args:
            dataset (SurveyDataset): Validated survey.
            prior_bounds (PriorBounds, optional): Uniform prior ranges.
            scaler (CovariateScaler, optional): Covariate standardisation.

        Returns:
            pm.Model
        """
        prior_bounds = prior_bounds or PriorBounds()
        counts = dataset.counts
        X = dataset.design_matrix(scaler)

        max_count = np.nanmax(counts) if np.isfinite(counts).any() else 0
        n_max = self.n_max if self.n_max is not None else int(max_count) + N_MAX_MARGIN
        if n_max < max_count:
            raise ValueError(f"n_max={n_max} is below the largest observed count {max_count:.0f}")

        n_values = np.arange(n_max + 1, dtype=float)
        observed = ~np.isnan(counts)
        sum_counts = np.where(observed, counts, 0.0).sum(axis=1)
        n_occ = observed.sum(axis=1).astype(float)
        log_choose = _log_binomial_table(counts, n_values)
        log_n_factorial = gammaln(n_values + 1)

        with pm.Model() as model:
            coefs = []
            for j, name in enumerate(coefficient_names(self.covariates)):
                lower, upper = prior_bounds.intercept if j == 0 else prior_bounds.slope
                coefs.append(pm.Uniform(name, lower=lower, upper=upper))
            p = pm.Uniform(DETECTION, lower=0.0, upper=1.0)

            log_lam = sum(coef * X[:, j] for j, coef in enumerate(coefs))
            lam = pm.math.exp(log_lam)

            # (site, N) joint log-probability of abundance and the observed counts
            n_failures = n_occ[:, None] * n_values[None, :] - sum_counts[:, None]
            log_joint = (
                log_lam[:, None] * n_values[None, :]
                - lam[:, None]
                - log_n_factorial[None, :]
                + log_choose
                + pm.math.log(p) * sum_counts[:, None]
                + pm.math.log(1.0 - p) * n_failures
            )
            pm.Potential("n_mixture", pm.math.logsumexp(log_joint, axis=1).sum())
        return model

    def fit(self, dataset, prior_bounds=None, mcmc_config=None):
        """
        Fits the model and returns the post-burn-in posterior draws.

        Args:
            dataset (SurveyDataset): Validated survey.
            prior_bounds (PriorBounds, optional): Uniform prior ranges.
            mcmc_config (MCMCConfig, optional): Chains, iterations, burn-in,
                adaptation, thinning, parallelism and R-hat policy.

        Returns:
            PosteriorSamples: chains * kept_per_chain draws with R-hat attached.

        Raises:
            DataValidationError: If the dataset covariates differ from the model's.
            ConvergenceError: If the R-hat check fails in strict mode.
        """
        if tuple(dataset.covariates) != self.covariates:
            raise DataValidationError(
                f"Dataset covariates {dataset.covariates} do not match model covariates {self.covariates}"
            )
        cfg = mcmc_config or MCMCConfig()
        scaler = CovariateScaler.fit(dataset.covariate_frame, self.covariates) if self.standardize else None
        model = self.build(dataset, prior_bounds, scaler)

        log.info(f"Sampling {cfg.chains} chains x {cfg.iterations} iterations "
                 f"(burn-in {cfg.burn_in}, adapt {cfg.adapt}, thin {cfg.thin}, "
                 f"{'parallel' if cfg.parallel else 'sequential'}).")
        with model:
            idata = pm.sample(
                draws=cfg.draws,
                tune=cfg.tune,
                chains=cfg.chains,
                cores=cfg.chains if cfg.parallel else 1,
                random_seed=cfg.seed,
                target_accept=cfg.target_accept,
                progressbar=False,
                compute_convergence_checks=False,
                return_inferencedata=True,
            )

        names = coefficient_names(self.covariates) + [DETECTION]
        posterior = idata.posterior[names].isel(draw=slice(None, None, cfg.thin))

        rhat_ds = az.rhat(posterior)
        ess_ds = az.ess(posterior, method="bulk")
        rhat = pd.Series({n: float(rhat_ds[n]) for n in names}, name="rhat")
        ess = pd.Series({n: float(ess_ds[n]) for n in names}, name="ess_bulk")

        draws = posterior.to_dataframe().reset_index()
        draws = draws[["chain", "draw", *names]].sort_values(["chain", "draw"]).reset_index(drop=True)

        converged = assess_convergence(rhat, cfg.rhat_threshold, cfg.rhat_tolerance, cfg.strict)
        log.info(f"Posterior ready: {len(draws)} samples ({cfg.chains} chains x {cfg.kept_per_chain}).")
        return PosteriorSamples(
            draws=draws,
            rhat=rhat,
            covariates=self.covariates,
            scaler=scaler,
            ess=ess,
            converged=converged,
        )
