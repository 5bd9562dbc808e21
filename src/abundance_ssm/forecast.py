# ---------------------------------------------------------------------------
# abundance_ssm.forecast — Forecast draws and threshold-risk evaluation
# ---------------------------------------------------------------------------
"""Risk of falling below natural-scale abundance thresholds at the end of
the forecast horizon, plus forward simulation beyond it."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import polars as pl

from .config import RISK_THRESHOLDS
from .errors import ConfigurationError
from .posterior import FitResult, pooled_draws


@dataclass
class RiskAssessment:
    """Exceedance table for one fitted model.

    ``table`` has columns ``threshold``, ``log_threshold`` and
    ``probability``; ``draws`` are the pooled log-scale draws of the
    assessed state.
    """

    model: str
    year: int
    table: pl.DataFrame
    draws: np.ndarray


def final_state_draws(fit: FitResult, index: int = -1) -> np.ndarray:
    """Pooled posterior draws of the latent state at ``index`` (default: T)."""
    return pooled_draws(fit.idata, "x")[:, index]


def exceedance_probabilities(
    draws: np.ndarray,
    thresholds=RISK_THRESHOLDS,
) -> pl.DataFrame:
    """Fraction of log-scale draws below ``log(threshold)`` per threshold.

    Parameters
    ----------
    draws : np.ndarray
        Posterior draws of a log-abundance state.
    thresholds : sequence of float
        Natural-scale thresholds; sorted ascending in the output.

    Raises
    ------
    ConfigurationError
        Empty or non-finite draws, or a non-positive threshold.
    """
    draws = np.asarray(draws, dtype=float).reshape(-1)
    thresholds = np.sort(np.asarray(thresholds, dtype=float))

    if draws.size == 0:
        raise ConfigurationError("No draws to evaluate")
    if not np.all(np.isfinite(draws)):
        raise ConfigurationError("Draws contain non-finite values")
    if thresholds.size == 0 or np.any(thresholds <= 0):
        raise ConfigurationError("Thresholds must be positive")

    log_thr = np.log(thresholds)
    probs = (draws[None, :] < log_thr[:, None]).sum(axis=1) / draws.size
    return pl.DataFrame(
        {"threshold": thresholds, "log_threshold": log_thr, "probability": probs}
    )


def assess_risk(
    fit: FitResult,
    thresholds=RISK_THRESHOLDS,
) -> RiskAssessment:
    """Probability that abundance in the final forecast year is below each threshold."""
    draws = final_state_draws(fit)
    return RiskAssessment(
        model=fit.variant,
        year=int(fit.model.series.years[-1]),
        table=exceedance_probabilities(draws, thresholds),
        draws=draws,
    )


def simulate_forward(
    fit: FitResult,
    n_ahead: int,
    random_seed: int | None = None,
) -> np.ndarray:
    """Extend every posterior path ``n_ahead`` years past the last step.

    Each draw propagates through its own transition parameters and
    process noise.

    Returns
    -------
    np.ndarray
        Shape ``(chain, draw, n_ahead)`` of log-abundance.
    """
    if n_ahead < 1:
        raise ConfigurationError(f"n_ahead must be >= 1, got {n_ahead}")

    post = fit.idata.posterior
    params = {name: post[name].values for name in fit.model.param_names}
    x_last = post["x"].values[:, :, -1]
    n_chains, n_draws = x_last.shape

    rng = np.random.default_rng(random_seed)
    fwd = np.empty((n_chains, n_draws, n_ahead))
    x_prev = x_last
    for h in range(n_ahead):
        eps = rng.standard_normal((n_chains, n_draws))
        fwd[:, :, h] = (
            fit.model.transition.mean(x_prev, params) + params["sigma_proc"] * eps
        )
        x_prev = fwd[:, :, h]
    return fwd


def print_risk(risk: RiskAssessment) -> None:
    """Print the threshold-risk table."""
    print("=" * 72)
    print(f"RISK: P(abundance < threshold) in {risk.year} — {risk.model}")
    print("=" * 72)
    med = float(np.exp(np.median(risk.draws)))
    print(f"Posterior median abundance: {med:,.0f}")
    for r in risk.table.iter_rows(named=True):
        print(f"  {r['threshold']:>14,.0f}  {r['probability']:.3f}")
