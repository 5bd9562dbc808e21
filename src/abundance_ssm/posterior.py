# ---------------------------------------------------------------------------
# abundance_ssm.posterior — Fitted-model container and posterior summaries
# ---------------------------------------------------------------------------
"""Pool draws across chains, summarise latent states by quantile, and
compute the pointwise predictive log-likelihood used for model comparison.

Summaries read from the InferenceData but never modify the draws."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import arviz as az
import numpy as np
import polars as pl
from scipy import stats as sp_stats

from .config import QUANTILES
from .errors import NonConvergenceWarning
from .model import StateSpaceModel

logger = logging.getLogger(__name__)


@dataclass
class FitResult:
    """One variant fitted to one series.

    Attributes
    ----------
    model : StateSpaceModel
        The model that was sampled.
    idata : az.InferenceData
        Groups ``posterior`` (``x`` plus hyperparameters),
        ``sample_stats``, ``observed_data`` and ``log_likelihood``
        (variable ``y``, H−1 scored years).
    backend : str
        ``'gibbs'`` or ``'nuts'``.
    warnings : list[Warning]
        Non-fatal diagnostics, e.g. :class:`NonConvergenceWarning`.
    failed_chains : dict[int, str]
        Chains dropped after a :class:`NumericalError`, with the message.
    """

    model: StateSpaceModel
    idata: az.InferenceData
    backend: str = "gibbs"
    warnings: list[Warning] = field(default_factory=list)
    failed_chains: dict[int, str] = field(default_factory=dict)

    @property
    def variant(self) -> str:
        return self.model.variant

    @property
    def converged(self) -> bool:
        return not any(isinstance(w, NonConvergenceWarning) for w in self.warnings)

    @property
    def n_chains(self) -> int:
        return int(self.idata.posterior.sizes["chain"])

    @property
    def n_draws(self) -> int:
        return int(self.idata.posterior.sizes["draw"])


# =========================================================================
# Pooling
# =========================================================================


def pooled_draws(idata: az.InferenceData, var_name: str) -> np.ndarray:
    """Posterior draws of ``var_name`` with chains stacked: ``(chain·draw, ...)``."""
    vals = idata.posterior[var_name].values
    return vals.reshape(-1, *vals.shape[2:])


# =========================================================================
# Pointwise predictive log-likelihood
# =========================================================================


def pointwise_log_likelihood(
    model: StateSpaceModel,
    states: np.ndarray,
    sigma_obs: np.ndarray,
) -> np.ndarray:
    """Log N(y_t | x_t, σ_obs²) for the observed years 2..H.

    The first year is excluded because the initial-state prior ties x_1 to
    y_1.  Forecast years never appear.

    Parameters
    ----------
    model : StateSpaceModel
    states : np.ndarray
        Latent paths, shape ``(..., T)``.
    sigma_obs : np.ndarray
        Observation sd per draw, shape ``(...)``.

    Returns
    -------
    np.ndarray
        Shape ``(..., H - 1)``.
    """
    H = model.series.n_observed
    y = np.asarray(model.series.values[1:H])
    x = np.asarray(states)[..., 1:H]
    scale = np.asarray(sigma_obs, dtype=float)[..., None]
    return sp_stats.norm.logpdf(y, loc=x, scale=scale)


def attach_log_likelihood(idata: az.InferenceData, model: StateSpaceModel) -> az.InferenceData:
    """Add (or replace) the ``log_likelihood`` group with variable ``y``."""
    post = idata.posterior
    ll = pointwise_log_likelihood(model, post["x"].values, post["sigma_obs"].values)

    if "log_likelihood" in idata.groups():
        del idata.log_likelihood
    idata.add_groups(
        {"log_likelihood": {"y": ll}},
        coords={"obs_time": model.series.observed_years[1:].tolist()},
        dims={"y": ["obs_time"]},
    )
    return idata


def log_likelihood_matrix(fit: FitResult) -> np.ndarray:
    """Pooled ``[draws × (H−1)]`` log-likelihood matrix."""
    ll = fit.idata.log_likelihood["y"].values
    return ll.reshape(-1, ll.shape[-1])


# =========================================================================
# Summaries
# =========================================================================


def quantile_label(q: float) -> str:
    return f"q{q * 100:g}"


def summarize_states(
    fit: FitResult,
    quantiles: tuple[float, ...] = QUANTILES,
) -> pl.DataFrame:
    """Per-year quantiles of the pooled latent-state draws.

    Returns
    -------
    pl.DataFrame
        Columns ``year``, ``observed``, ``y`` (null for forecast years), and
        one column per quantile (``q2.5``, ``q5``, ..., ``q97.5``).
    """
    quantiles = tuple(sorted(quantiles))
    x = pooled_draws(fit.idata, "x")  # (n, T)
    qs = np.quantile(x, quantiles, axis=0)  # (n_q, T)

    series = fit.model.series
    frame = series.to_frame().rename({"log_abundance": "y"}).select("year", "observed", "y")
    return frame.with_columns(
        [pl.Series(quantile_label(q), qs[i]) for i, q in enumerate(quantiles)]
    )


def hyperparameter_draws(fit: FitResult) -> pl.DataFrame:
    """One row per draw: ``chain``, ``draw`` and each hyperparameter."""
    post = fit.idata.posterior
    n_chains, n_draws = fit.n_chains, fit.n_draws
    cols: dict[str, np.ndarray] = {
        "chain": np.repeat(np.arange(n_chains), n_draws),
        "draw": np.tile(np.arange(n_draws), n_chains),
    }
    for name in fit.model.param_names:
        cols[name] = post[name].values.reshape(-1)
    return pl.DataFrame(cols)


def draws_frame(
    states: np.ndarray,
    params: Mapping[str, np.ndarray],
    years: np.ndarray,
    chain: np.ndarray | int = 0,
) -> pl.DataFrame:
    """Wide frame of raw draws: chain, draw, parameters, ``x_<year>`` per step."""
    n = states.shape[0]
    cols: dict[str, np.ndarray] = {
        "chain": np.broadcast_to(np.asarray(chain), (n,)).astype(np.int64),
        "draw": np.arange(n),
    }
    for name, vals in params.items():
        cols[name] = np.asarray(vals, dtype=float).reshape(-1)
    for t, year in enumerate(years):
        cols[f"x_{int(year)}"] = states[:, t]
    return pl.DataFrame(cols)


def save_draws(fit: FitResult, path: str | Path) -> Path:
    """Write pooled draws to parquet and return the path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    post = fit.idata.posterior
    n_chains, n_draws = fit.n_chains, fit.n_draws
    frame = draws_frame(
        pooled_draws(fit.idata, "x"),
        {name: post[name].values for name in fit.model.param_names},
        fit.model.series.years,
        chain=np.repeat(np.arange(n_chains), n_draws),
    ).with_columns(pl.Series("draw", np.tile(np.arange(n_draws), n_chains)))
    frame.write_parquet(str(path))
    logger.info(f"Saved {frame.height} {fit.variant} draws to {path}")
    return path
