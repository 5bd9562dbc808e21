# ---------------------------------------------------------------------------
# abundance_ssm — Bayesian state-space models for annual abundance indices
# ---------------------------------------------------------------------------
"""Level, Drift and Gompertz state-space models fitted by MCMC, ranked by
PSIS-LOO, with threshold-risk evaluation of the forecast."""

from .analysis import AnalysisResult, fit_variant, fit_variants, run_analysis
from .comparison import ComparisonResult, compare_models
from .config import (
    DEFAULT_SAMPLER_CONFIG,
    LIGHT_SAMPLER_CONFIG,
    MEDIUM_SAMPLER_CONFIG,
    QUANTILES,
    RISK_THRESHOLDS,
    SamplerConfig,
)
from .data import TimeSeries, build_series, load_series, merge_regional_series, series_from_frame
from .errors import (
    ComparisonReliabilityWarning,
    ConfigurationError,
    NonConvergenceWarning,
    NumericalError,
)
from .forecast import RiskAssessment, assess_risk, exceedance_probabilities, simulate_forward
from .gibbs import sample_gibbs
from .model import VARIANTS, Priors, StateSpaceModel, build_model, build_pymc_model
from .posterior import FitResult, hyperparameter_draws, save_draws, summarize_states
from .sampling import sample_nuts

__all__ = [
    "AnalysisResult",
    "fit_variant",
    "fit_variants",
    "run_analysis",
    "ComparisonResult",
    "compare_models",
    "DEFAULT_SAMPLER_CONFIG",
    "LIGHT_SAMPLER_CONFIG",
    "MEDIUM_SAMPLER_CONFIG",
    "QUANTILES",
    "RISK_THRESHOLDS",
    "SamplerConfig",
    "TimeSeries",
    "build_series",
    "load_series",
    "merge_regional_series",
    "series_from_frame",
    "ComparisonReliabilityWarning",
    "ConfigurationError",
    "NonConvergenceWarning",
    "NumericalError",
    "RiskAssessment",
    "assess_risk",
    "exceedance_probabilities",
    "simulate_forward",
    "sample_gibbs",
    "VARIANTS",
    "Priors",
    "StateSpaceModel",
    "build_model",
    "build_pymc_model",
    "FitResult",
    "hyperparameter_draws",
    "save_draws",
    "summarize_states",
    "sample_nuts",
]
