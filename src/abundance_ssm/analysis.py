# ---------------------------------------------------------------------------
# abundance_ssm.analysis — Fit all variants, compare, assess risk
# ---------------------------------------------------------------------------
"""Library-level pipeline: series → three independent fits → comparison
across fits → threshold risk on the top-ranked model."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Sequence

import numpy as np

from .comparison import ComparisonResult, compare_models
from .config import LIGHT_SAMPLER_CONFIG, RISK_THRESHOLDS, SamplerConfig
from .data import TimeSeries
from .diagnostics import convergence_warnings
from .errors import ConfigurationError, NumericalError
from .forecast import RiskAssessment, assess_risk
from .gibbs import sample_gibbs
from .model import VARIANTS, Priors, build_model
from .posterior import FitResult
from .sampling import sample_nuts

logger = logging.getLogger(__name__)

Backend = Literal["gibbs", "nuts"]


@dataclass
class AnalysisResult:
    fits: dict[str, FitResult]
    comparison: ComparisonResult | None
    risk: RiskAssessment | None
    failures: dict[str, str] = field(default_factory=dict)


def fit_variant(
    series: TimeSeries,
    variant: str,
    sampler_config: SamplerConfig | None = None,
    priors: Priors | None = None,
    random_seed: int | np.random.SeedSequence | None = None,
    backend: Backend = "gibbs",
    nuts_kwargs: dict | None = None,
    draws_dir: str | Path | None = None,
) -> FitResult:
    """Build and sample one variant, then attach convergence diagnostics.

    Parameters
    ----------
    series : TimeSeries
        Shared, read-only input series.
    variant : str
        ``'level'``, ``'drift'`` or ``'gompertz'``.
    sampler_config : SamplerConfig, optional
        Gibbs budget; defaults to ``LIGHT_SAMPLER_CONFIG``.
    priors : Priors, optional
    random_seed : int or SeedSequence, optional
    backend : ``'gibbs'`` | ``'nuts'``
        Native Gibbs engine or PyMC NUTS.
    nuts_kwargs : dict, optional
        ``pm.sample`` keyword arguments for the NUTS backend.
    draws_dir : path, optional
        Directory for per-chain parquet draws (Gibbs backend).

    Raises
    ------
    NumericalError
        If every chain failed.
    """
    model = build_model(series, variant, priors=priors)

    if backend == "gibbs":
        run = sample_gibbs(
            model,
            config=sampler_config or LIGHT_SAMPLER_CONFIG,
            random_seed=random_seed,
            draws_dir=draws_dir,
        )
        fit = FitResult(model=model, idata=run.idata, backend="gibbs", failed_chains=run.failed_chains)
    elif backend == "nuts":
        idata = sample_nuts(model, sampler_kwargs=nuts_kwargs, random_seed=random_seed)
        fit = FitResult(model=model, idata=idata, backend="nuts")
    else:
        raise ConfigurationError(f"Unknown backend {backend!r}")

    fit.warnings.extend(convergence_warnings(fit.idata, var_names=["x", *model.param_names]))
    if not fit.converged:
        logger.warning(
            f"{variant}: {len(fit.warnings)} parameters outside convergence limits; "
            f"results may be unreliable"
        )
    return fit


def fit_variants(
    series: TimeSeries,
    variants: Sequence[str] = VARIANTS,
    sampler_config: SamplerConfig | None = None,
    priors: Priors | None = None,
    random_seed: int | None = None,
    backend: Backend = "gibbs",
    concurrent: bool = False,
    **kwargs,
) -> tuple[dict[str, FitResult], dict[str, str]]:
    """Fit several variants independently.

    Each variant gets its own child seed, so results do not depend on
    whether fits run sequentially or in a thread pool.  A variant whose
    sampling raises :class:`NumericalError` is logged and skipped.

    Returns
    -------
    tuple[dict, dict]
        Fits by variant, and error messages of variants that failed.
    """
    seeds = dict(zip(variants, np.random.SeedSequence(random_seed).spawn(len(variants))))

    def _fit(variant: str) -> FitResult:
        return fit_variant(
            series,
            variant,
            sampler_config=sampler_config,
            priors=priors,
            random_seed=seeds[variant],
            backend=backend,
            **kwargs,
        )

    fits: dict[str, FitResult] = {}
    failures: dict[str, str] = {}

    if concurrent:
        with ThreadPoolExecutor(max_workers=len(variants)) as pool:
            futures = {v: pool.submit(_fit, v) for v in variants}
        outcomes = {v: futures[v].exception() for v in variants}
        for v in variants:
            err = outcomes[v]
            if err is None:
                fits[v] = futures[v].result()
            elif isinstance(err, NumericalError):
                failures[v] = str(err)
            else:
                raise err
    else:
        for v in variants:
            try:
                fits[v] = _fit(v)
            except NumericalError as e:
                failures[v] = str(e)

    for v, msg in failures.items():
        logger.error(f"{v}: sampling failed: {msg}")
    return fits, failures


def run_analysis(
    series: TimeSeries,
    thresholds: Sequence[float] = RISK_THRESHOLDS,
    variants: Sequence[str] = VARIANTS,
    sampler_config: SamplerConfig | None = None,
    random_seed: int | None = None,
    **kwargs,
) -> AnalysisResult:
    """Fit, compare and evaluate threshold risk on the best model.

    Comparison needs at least two successful fits; otherwise it is skipped
    and risk is evaluated on the single surviving fit (if any).
    """
    fits, failures = fit_variants(
        series,
        variants=variants,
        sampler_config=sampler_config,
        random_seed=random_seed,
        **kwargs,
    )

    comparison = None
    if len(fits) >= 2:
        comparison = compare_models(fits, seed=random_seed)
        top = comparison.best
    elif fits:
        logger.warning("Fewer than two successful fits; skipping model comparison")
        top = next(iter(fits))
    else:
        return AnalysisResult(fits=fits, comparison=None, risk=None, failures=failures)

    risk = assess_risk(fits[top], thresholds=thresholds)
    return AnalysisResult(fits=fits, comparison=comparison, risk=risk, failures=failures)
