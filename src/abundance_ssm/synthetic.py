# ---------------------------------------------------------------------------
# abundance_ssm.synthetic — Simulated abundance series
# ---------------------------------------------------------------------------
"""Generate series from a known variant and parameter set, for recovery
checks and prior-predictive sanity checks."""

from __future__ import annotations

from typing import Mapping

import numpy as np

from .config import FORECAST_HORIZON, N_OBSERVED
from .data import TimeSeries
from .errors import ConfigurationError
from .model import TRANSITIONS


def simulate_states(
    variant: str,
    params: Mapping[str, float],
    x1: float,
    n_steps: int,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Propagate ``x1`` through the variant's transition for ``n_steps``.

    With ``params['sigma_proc'] == 0`` the path is deterministic.
    """
    if variant not in TRANSITIONS:
        raise ConfigurationError(f"Unknown model variant {variant!r}")
    rng = np.random.default_rng() if rng is None else rng
    transition = TRANSITIONS[variant]

    x = np.empty(n_steps)
    x[0] = x1
    eps = rng.standard_normal(n_steps - 1)
    for t in range(1, n_steps):
        x[t] = transition.mean(x[t - 1], params) + params["sigma_proc"] * eps[t - 1]
    return x


def simulate_series(
    variant: str,
    params: Mapping[str, float],
    x1: float,
    n_observed: int = N_OBSERVED,
    horizon: int = FORECAST_HORIZON,
    start_year: int = 1990,
    random_seed: int | None = None,
) -> tuple[TimeSeries, np.ndarray]:
    """Simulate latent states and noisy observations for one variant.

    Parameters
    ----------
    variant : str
        ``'level'``, ``'drift'`` or ``'gompertz'``.
    params : mapping
        ``sigma_obs``, ``sigma_proc`` and the variant's coefficients.
        Zero noise terms give an exactly deterministic series.
    x1 : float
        Initial log-abundance.
    n_observed, horizon : int
        Observed years and trailing forecast years.
    start_year : int
        Calendar year of the first step.
    random_seed : int, optional
        Seed for the innovations and observation noise.

    Returns
    -------
    tuple[TimeSeries, np.ndarray]
        The series (forecast years absent) and the full latent path.
    """
    rng = np.random.default_rng(random_seed)
    n_steps = n_observed + horizon

    states = simulate_states(variant, params, x1, n_steps, rng=rng)
    y = states + params["sigma_obs"] * rng.standard_normal(n_steps)
    y[n_observed:] = np.nan

    years = np.arange(start_year, start_year + n_steps)
    series = TimeSeries(years, y, n_observed=n_observed, n_steps=n_steps)
    return series, states
