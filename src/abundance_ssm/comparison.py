# ---------------------------------------------------------------------------
# abundance_ssm.comparison — PSIS-LOO comparison and model weights
# ---------------------------------------------------------------------------
"""Rank fitted variants by approximate leave-one-year-out predictive accuracy.

* LOOIC = −2 · elpd_loo from Pareto-smoothed importance sampling over the
  H−1 scored years (lower is better).
* Stacking weights maximise the held-out log score of the mixture.
* Pseudo-BMA+ weights apply a Bayesian bootstrap to the pointwise elpd so
  that estimation uncertainty shrinks the weights toward each other."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Mapping

import arviz as az
import numpy as np
import polars as pl

from .config import PARETO_K_MAX
from .errors import ComparisonReliabilityWarning, ConfigurationError
from .posterior import FitResult

logger = logging.getLogger(__name__)


@dataclass
class ComparisonResult:
    """Ranked comparison table and reliability diagnostics.

    ``table`` has one row per model, ascending by ``looic``, with columns
    ``rank``, ``model``, ``looic``, ``se``, ``p_loo``, ``stacking_weight``,
    ``pseudo_bma_weight``, ``n_bad_k`` and ``reliable``.
    """

    table: pl.DataFrame
    loo: dict[str, az.ELPDData]
    warnings: list[ComparisonReliabilityWarning] = field(default_factory=list)

    @property
    def best(self) -> str:
        return str(self.table["model"][0])

    @property
    def ranking(self) -> list[str]:
        return self.table["model"].to_list()


def loo_for_fit(fit: FitResult) -> az.ELPDData:
    """PSIS-LOO over the ``y`` log-likelihood, keeping pointwise k-hat.

    ArviZ's own k-hat warning is suppressed here; reliability is reported
    through :class:`ComparisonReliabilityWarning` instead.
    """
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", message=".*Pareto.*", category=UserWarning)
        return az.loo(fit.idata, var_name="y", pointwise=True)


def _reliability(
    name: str,
    loo: az.ELPDData,
    years: list[int],
    k_max: float,
) -> ComparisonReliabilityWarning | None:
    khat = np.asarray(loo.pareto_k)
    bad = np.where(khat > k_max)[0]
    if len(bad) == 0:
        return None
    return ComparisonReliabilityWarning(name, [years[i] for i in bad], float(khat.max()))


def compare_models(
    fits: Mapping[str, FitResult],
    k_max: float = PARETO_K_MAX,
    seed: int | None = None,
) -> ComparisonResult:
    """Compute LOOIC, stacking and pseudo-BMA+ weights for fitted models.

    Parameters
    ----------
    fits : mapping of name -> FitResult
        At least two fitted models on the same series.
    k_max : float
        Pareto k-hat above which a time point is considered unreliable.
    seed : int, optional
        Seed for the Bayesian bootstrap of the pseudo-BMA+ weights.

    Returns
    -------
    ComparisonResult

    Raises
    ------
    ConfigurationError
        Fewer than two models, or models scored on different years.
    """
    if len(fits) < 2:
        raise ConfigurationError(f"Need at least 2 models to compare, got {len(fits)}")

    names = list(fits)
    years = fits[names[0]].model.series.observed_years[1:].tolist()
    for name in names[1:]:
        if fits[name].model.series.observed_years[1:].tolist() != years:
            raise ConfigurationError(f"Model {name!r} was fitted to a different series")

    loos: dict[str, az.ELPDData] = {}
    flags: list[ComparisonReliabilityWarning] = []
    for name in names:
        loos[name] = loo_for_fit(fits[name])
        flag = _reliability(name, loos[name], years, k_max)
        if flag is not None:
            logger.warning(str(flag))
            flags.append(flag)

    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=UserWarning)
        stacking = az.compare(loos, ic="loo", method="stacking")
        pseudo_bma = az.compare(loos, ic="loo", method="BB-pseudo-BMA", seed=seed)

    flagged = {f.model: f for f in flags}
    rows = []
    for name in names:
        loo = loos[name]
        khat = np.asarray(loo.pareto_k)
        rows.append(
            {
                "model": name,
                "looic": -2.0 * float(loo.elpd_loo),
                "se": 2.0 * float(loo.se),
                "p_loo": float(loo.p_loo),
                "stacking_weight": float(stacking.loc[name, "weight"]),
                "pseudo_bma_weight": float(pseudo_bma.loc[name, "weight"]),
                "n_bad_k": int(np.sum(khat > k_max)),
                "reliable": name not in flagged,
            }
        )

    table = (
        pl.DataFrame(rows)
        .sort("looic")
        .with_row_index("rank", offset=1)
        .with_columns(pl.col("rank").cast(pl.Int64))
    )
    logger.info(
        "LOOIC ranking: "
        + ", ".join(f"{m} ({v:.2f})" for m, v in zip(table["model"], table["looic"]))
    )
    return ComparisonResult(table=table, loo=loos, warnings=flags)


def print_comparison(result: ComparisonResult) -> None:
    """Print the ranked comparison table."""
    print("=" * 72)
    print("MODEL COMPARISON (PSIS-LOO)")
    print("=" * 72)
    print(
        f"{'Rank':>4}  {'Model':<10} {'LOOIC':>9} {'SE':>7} {'p_loo':>6} "
        f"{'Stacking':>9} {'pBMA+':>7}  Reliable"
    )
    print("-" * 72)
    for r in result.table.iter_rows(named=True):
        print(
            f"{r['rank']:>4}  {r['model']:<10} {r['looic']:>9.2f} {r['se']:>7.2f} "
            f"{r['p_loo']:>6.2f} {r['stacking_weight']:>9.3f} "
            f"{r['pseudo_bma_weight']:>7.3f}  {'yes' if r['reliable'] else 'NO'}"
        )
    for w in result.warnings:
        print(f"  ** {w}")
