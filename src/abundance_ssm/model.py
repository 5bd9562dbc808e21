# ---------------------------------------------------------------------------
# abundance_ssm.model — State-space model definitions
# ---------------------------------------------------------------------------
"""Three population-dynamics variants sharing one Gaussian observation layer.

Every transition is linear-Gaussian in the previous state,

    x_t | x_{t-1} ~ Normal(offset + slope · x_{t-1}, σ_proc²)

with

    Level     offset = 0,   slope = 1
    Drift     offset = b0,  slope = 1
    Gompertz  offset = b0,  slope = 1 + b1

so the same transition objects drive the numpy log-density, the Gibbs
updates, and the PyMC graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping

import numpy as np
import pymc as pm
import pytensor
import pytensor.tensor as pt
from scipy import stats as sp_stats

from .config import COEF_PRIOR_VAR, OBS_PRIOR_SD, SIGMA_OBS_PRIOR_MEAN, SIGMA_PROC_UPPER
from .data import TimeSeries
from .errors import ConfigurationError

ModelVariant = Literal["level", "drift", "gompertz"]


# =========================================================================
# Transitions
# =========================================================================


class Transition:
    """Linear-Gaussian state transition.

    Subclasses set ``name`` and ``coef_names`` and implement
    :meth:`linear_form` and :meth:`design`.
    """

    name: str = ""
    coef_names: tuple[str, ...] = ()

    def linear_form(self, params: Mapping):
        """Return ``(offset, slope)`` of the conditional mean."""
        raise NotImplementedError

    def design(self, x_prev: np.ndarray) -> np.ndarray:
        """Regression design mapping coefficients to ``x_t - x_{t-1}``."""
        raise NotImplementedError

    def mean(self, x_prev, params: Mapping):
        offset, slope = self.linear_form(params)
        return offset + slope * x_prev

    def log_density(self, x, x_prev, params: Mapping):
        """Log-density of ``x`` given ``x_prev``; works elementwise."""
        return sp_stats.norm.logpdf(
            x, loc=self.mean(x_prev, params), scale=params["sigma_proc"]
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class LevelTransition(Transition):
    """Random walk: no systematic change."""

    name = "level"
    coef_names = ()

    def linear_form(self, params):
        return 0.0, 1.0

    def design(self, x_prev):
        return np.empty((len(x_prev), 0))


class DriftTransition(Transition):
    """Random walk with constant drift ``b0``."""

    name = "drift"
    coef_names = ("b0",)

    def linear_form(self, params):
        return params["b0"], 1.0

    def design(self, x_prev):
        return np.ones((len(x_prev), 1))


class GompertzTransition(Transition):
    """Density-dependent growth: the change shrinks with ``b1 · x_{t-1}``."""

    name = "gompertz"
    coef_names = ("b0", "b1")

    def linear_form(self, params):
        return params["b0"], 1.0 + params["b1"]

    def design(self, x_prev):
        x_prev = np.asarray(x_prev, dtype=float)
        return np.column_stack([np.ones_like(x_prev), x_prev])


TRANSITIONS: dict[str, Transition] = {
    "level": LevelTransition(),
    "drift": DriftTransition(),
    "gompertz": GompertzTransition(),
}

VARIANTS: tuple[str, ...] = tuple(TRANSITIONS)


# =========================================================================
# Priors
# =========================================================================


@dataclass(frozen=True)
class Priors:
    """Prior hyperparameters.

    Parameters
    ----------
    init_sd : float
        sd ``k`` of the initial state around the first observation.
    sigma_obs_mu, sigma_obs_sd : float
        Informative Normal prior on ``sigma_obs``, truncated at zero.
    sigma_proc_upper : float
        Upper bound of the Uniform(0, upper) prior on ``sigma_proc``.
    coef_var : float
        Variance of the vague Normal(0, var) priors on ``b0`` and ``b1``.
    """

    init_sd: float = OBS_PRIOR_SD
    sigma_obs_mu: float = SIGMA_OBS_PRIOR_MEAN
    sigma_obs_sd: float = OBS_PRIOR_SD
    sigma_proc_upper: float = SIGMA_PROC_UPPER
    coef_var: float = COEF_PRIOR_VAR

    def __post_init__(self) -> None:
        for name in ("init_sd", "sigma_obs_sd", "sigma_proc_upper", "coef_var"):
            if not getattr(self, name) > 0:
                raise ConfigurationError(f"Prior {name} must be positive")


# =========================================================================
# Model
# =========================================================================


@dataclass
class StateSpaceModel:
    """One variant bound to a series: an unnormalized log-posterior.

    ``states`` is a length-T vector; ``params`` maps parameter names
    (``sigma_obs``, ``sigma_proc`` and the variant's coefficients) to floats.
    """

    series: TimeSeries
    transition: Transition
    priors: Priors = field(default_factory=Priors)

    @property
    def variant(self) -> str:
        return self.transition.name

    @property
    def param_names(self) -> tuple[str, ...]:
        return ("sigma_obs", "sigma_proc") + self.transition.coef_names

    def log_prior(self, params: Mapping[str, float]) -> float:
        pri = self.priors
        sigma_obs = params["sigma_obs"]
        sigma_proc = params["sigma_proc"]
        if not sigma_obs > 0 or not 0 < sigma_proc < pri.sigma_proc_upper:
            return -np.inf

        lp = sp_stats.norm.logpdf(sigma_obs, pri.sigma_obs_mu, pri.sigma_obs_sd)
        lp -= np.log(pri.sigma_proc_upper)
        for name in self.transition.coef_names:
            lp += sp_stats.norm.logpdf(params[name], 0.0, np.sqrt(pri.coef_var))
        return float(lp)

    def log_transition(self, states: np.ndarray, params: Mapping[str, float]) -> float:
        """Initial-state prior plus the transition chain over all T steps."""
        y1 = self.series.values[0]
        lp = sp_stats.norm.logpdf(states[0], y1, self.priors.init_sd)
        lp += np.sum(self.transition.log_density(states[1:], states[:-1], params))
        return float(lp)

    def log_likelihood(self, states: np.ndarray, params: Mapping[str, float]) -> float:
        """Observation terms; absent years contribute nothing."""
        obs = self.series.observed
        return float(
            np.sum(
                sp_stats.norm.logpdf(
                    self.series.values[obs], states[obs], params["sigma_obs"]
                )
            )
        )

    def log_posterior(self, states: np.ndarray, params: Mapping[str, float]) -> float:
        lp = self.log_prior(params)
        if not np.isfinite(lp):
            return lp
        return lp + self.log_transition(states, params) + self.log_likelihood(states, params)


def build_model(
    series: TimeSeries,
    variant: str,
    priors: Priors | None = None,
) -> StateSpaceModel:
    """Bind a variant (``'level'``, ``'drift'`` or ``'gompertz'``) to a series."""
    try:
        transition = TRANSITIONS[variant]
    except KeyError:
        raise ConfigurationError(
            f"Unknown model variant {variant!r}; expected one of {list(VARIANTS)}"
        ) from None
    return StateSpaceModel(series=series, transition=transition, priors=priors or Priors())


# =========================================================================
# PyMC graph (gradient-based backend)
# =========================================================================


def build_pymc_model(model: StateSpaceModel) -> pm.Model:
    """Express a :class:`StateSpaceModel` as a PyMC model.

    The latent path is non-centred: ``x_1`` plus standard-normal
    innovations propagated through the transition with ``pytensor.scan``.
    The first observation is a separate likelihood term so that ``y``
    holds exactly the H−1 scored observations.
    """
    series = model.series
    pri = model.priors
    y = series.y_observed

    coords = {
        "time": series.years.tolist(),
        "step": series.years[1:].tolist(),
        "obs_time": series.observed_years[1:].tolist(),
    }

    with pm.Model(coords=coords) as pm_model:
        sigma_obs = pm.TruncatedNormal(
            "sigma_obs", mu=pri.sigma_obs_mu, sigma=pri.sigma_obs_sd, lower=0.0
        )
        sigma_proc = pm.Uniform("sigma_proc", lower=0.0, upper=pri.sigma_proc_upper)

        params = {"sigma_proc": sigma_proc}
        for name in model.transition.coef_names:
            params[name] = pm.Normal(name, mu=0.0, sigma=np.sqrt(pri.coef_var))
        offset, slope = model.transition.linear_form(params)

        x1 = pm.Normal("x1", mu=y[0], sigma=pri.init_sd)
        eps = pm.Normal("eps", 0, 1, dims="step")

        def transition_step(e_t, x_prev, _offset, _slope, _sig):
            return _offset + _slope * x_prev + _sig * e_t

        x_rest, _ = pytensor.scan(
            fn=transition_step,
            sequences=[eps],
            outputs_info=[x1],
            non_sequences=[
                pt.as_tensor_variable(offset),
                pt.as_tensor_variable(slope),
                sigma_proc,
            ],
            strict=True,
        )
        x = pt.concatenate([x1.reshape((1,)), x_rest])
        pm.Deterministic("x", x, dims="time")

        pm.Normal("y_first", mu=x[0], sigma=sigma_obs, observed=y[0])
        pm.Normal(
            "y",
            mu=x[1 : series.n_observed],
            sigma=sigma_obs,
            observed=y[1:],
            dims="obs_time",
        )

    return pm_model
