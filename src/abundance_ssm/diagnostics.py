# ---------------------------------------------------------------------------
# abundance_ssm.diagnostics — Convergence checks and parameter summary
# ---------------------------------------------------------------------------
from __future__ import annotations

import arviz as az
import numpy as np

from .config import ESS_BULK_MIN, R_HAT_MAX
from .errors import NonConvergenceWarning
from .posterior import FitResult


# =========================================================================
# Convergence
# =========================================================================


def convergence_warnings(
    idata: az.InferenceData,
    var_names: list[str] | None = None,
    r_hat_max: float = R_HAT_MAX,
    ess_bulk_min: float = ESS_BULK_MIN,
) -> list[NonConvergenceWarning]:
    """Flag parameters whose R-hat or bulk ESS breaches the limits.

    R-hat and ESS are computed per chain group by ArviZ, so the within-chain
    autocorrelation is accounted for.  NaN R-hat (constant draws) is not
    flagged.
    """
    summary = az.summary(idata, var_names=var_names, kind="diagnostics")

    flagged: list[NonConvergenceWarning] = []
    for pname, row in summary.iterrows():
        r_hat = float(row["r_hat"])
        ess = float(row["ess_bulk"])
        if (np.isfinite(r_hat) and r_hat > r_hat_max) or (np.isfinite(ess) and ess < ess_bulk_min):
            flagged.append(NonConvergenceWarning(str(pname), r_hat, ess))
    return flagged


# =========================================================================
# Console summary
# =========================================================================


def print_diagnostics(fit: FitResult) -> None:
    """Print sampling diagnostics and the hyperparameter summary."""
    idata = fit.idata
    var_names = list(fit.model.param_names)

    print("=" * 72)
    print(f"SAMPLING DIAGNOSTICS — {fit.variant} ({fit.backend})")
    print("=" * 72)
    print(f"Chains: {fit.n_chains}  Draws/chain: {fit.n_draws}")
    if fit.failed_chains:
        for chain, msg in fit.failed_chains.items():
            print(f"  chain {chain} FAILED: {msg}")

    stats = idata.sample_stats
    if "accepted" in stats:
        rate = float(stats["accepted"].mean().values)
        print(f"sigma_obs acceptance: {rate:.2f}")
    if "retries" in stats:
        print(f"Non-finite redraws: {int(stats['retries'].max().values)}")
    if "diverging" in stats:
        print(f"Divergences: {int(stats['diverging'].sum().values)}")

    print("\n" + "=" * 72)
    print("PARAMETER SUMMARY")
    print("=" * 72)
    summary = az.summary(idata, var_names=var_names, hdi_prob=0.80)
    print(summary.to_string())

    flagged = [w for w in fit.warnings if isinstance(w, NonConvergenceWarning)]
    if flagged:
        print(f"\n** WARNING: {len(flagged)} parameters outside convergence limits:")
        for w in flagged:
            print(f"    {w}")
    else:
        print(
            f"\nAll parameters converged (R-hat <= {R_HAT_MAX}, "
            f"ESS_bulk >= {ESS_BULK_MIN:.0f})"
        )
