# ---------------------------------------------------------------------------
# abundance_ssm.config — Model constants and sampler configuration
# ---------------------------------------------------------------------------
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from .errors import ConfigurationError

# ---------------------------------------------------------------------------
# Series layout
# ---------------------------------------------------------------------------

N_OBSERVED = 29  # H: years with an abundance index
FORECAST_HORIZON = 20  # trailing years left absent
N_STEPS = N_OBSERVED + FORECAST_HORIZON  # T

# ---------------------------------------------------------------------------
# Priors (second argument of every Normal is a variance)
# ---------------------------------------------------------------------------

# Literature-reported uncertainty of the survey index on the log scale.
# Used as the sd of both the initial-state prior and the sigma_obs prior.
OBS_PRIOR_SD = 0.1
SIGMA_OBS_PRIOR_MEAN = 0.44
SIGMA_PROC_UPPER = 100.0
COEF_PRIOR_VAR = 1000.0

# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

QUANTILES: tuple[float, ...] = (0.025, 0.05, 0.20, 0.50, 0.80, 0.95, 0.975)

# Natural-scale abundance thresholds for the risk table
RISK_THRESHOLDS: tuple[float, ...] = (
    200_000.0,
    1_000_000.0,
    3_000_000.0,
    5_000_000.0,
    12_800_000.0,
)

# ---------------------------------------------------------------------------
# Diagnostic limits
# ---------------------------------------------------------------------------

R_HAT_MAX = 1.01
ESS_BULK_MIN = 400.0
PARETO_K_MAX = 0.7

# Target acceptance for the sigma_obs random-walk step
TARGET_ACCEPT = 0.44
ADAPT_INTERVAL = 50


# ---------------------------------------------------------------------------
# Gibbs sampler configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SamplerConfig:
    """Iteration budget and update scheme for :func:`abundance_ssm.gibbs.sample_gibbs`.

    Parameters
    ----------
    chains : int
        Number of independent chains (at least 2).
    iterations : int
        Total iterations per chain, burn-in included.
    burn_in : int
        Leading iterations discarded.
    thin : int
        Keep every ``thin``-th post-burn-in iteration.
    tune : int, optional
        Iterations (within burn-in) during which the sigma_obs step size
        adapts.  Defaults to half the burn-in.
    max_retries : int
        Redraws allowed when a conditional draw is non-finite.
    n_jobs : int
        Worker processes for chains; 1 runs them in-process.
    state_update : ``'ffbs'`` | ``'single_site'``
        Block forward-filtering backward-sampling or one state at a time.
    """

    chains: int = 4
    iterations: int = 20_000
    burn_in: int = 10_000
    thin: int = 10
    tune: int | None = None
    max_retries: int = 20
    n_jobs: int = 1
    state_update: Literal["ffbs", "single_site"] = "ffbs"

    def __post_init__(self) -> None:
        if self.chains < 2:
            raise ConfigurationError(f"Need at least 2 chains, got {self.chains}")
        if self.thin < 1:
            raise ConfigurationError(f"thin must be >= 1, got {self.thin}")
        if not 0 <= self.burn_in < self.iterations:
            raise ConfigurationError(
                f"burn_in must lie in [0, iterations), got burn_in={self.burn_in}, "
                f"iterations={self.iterations}"
            )
        if (self.iterations - self.burn_in) % self.thin != 0:
            raise ConfigurationError(
                f"iterations - burn_in ({self.iterations - self.burn_in}) "
                f"is not divisible by thin ({self.thin})"
            )
        if self.tune is not None and not 0 <= self.tune <= self.burn_in:
            raise ConfigurationError(
                f"tune must lie in [0, burn_in], got tune={self.tune}, burn_in={self.burn_in}"
            )
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be >= 1, got {self.n_jobs}")
        if self.state_update not in ("ffbs", "single_site"):
            raise ConfigurationError(f"Unknown state_update: {self.state_update!r}")

    @property
    def n_keep(self) -> int:
        """Draws retained per chain, ``(iterations - burn_in) / thin``."""
        return (self.iterations - self.burn_in) // self.thin

    @property
    def n_tune(self) -> int:
        return self.burn_in // 2 if self.tune is None else self.tune


# Full production run
DEFAULT_SAMPLER_CONFIG = SamplerConfig()

# Backtest-style loops and quick looks (~seconds per variant)
LIGHT_SAMPLER_CONFIG = SamplerConfig(chains=2, iterations=3000, burn_in=1000, thin=2)

# Sensitivity sweeps
MEDIUM_SAMPLER_CONFIG = SamplerConfig(chains=4, iterations=8000, burn_in=4000, thin=4)
