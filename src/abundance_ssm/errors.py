# ---------------------------------------------------------------------------
# abundance_ssm.errors — Exceptions and warning records
# ---------------------------------------------------------------------------
"""Fatal errors are raised; non-fatal diagnostics are ``Warning`` subclasses
that get attached to fit and comparison results rather than raised."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Malformed series or sampler settings, detected before sampling."""


class NumericalError(ArithmeticError):
    """A conditional draw stayed non-finite after every retry.

    Fatal for the chain that raised it only.
    """

    def __init__(self, message: str, chain: int | None = None) -> None:
        super().__init__(message)
        self.chain = chain


class NonConvergenceWarning(UserWarning):
    """A parameter exceeded the R-hat or bulk-ESS limit."""

    def __init__(self, parameter: str, r_hat: float, ess_bulk: float) -> None:
        self.parameter = parameter
        self.r_hat = r_hat
        self.ess_bulk = ess_bulk
        super().__init__(
            f"{parameter}: R-hat = {r_hat:.4f}, ESS_bulk = {ess_bulk:.0f}"
        )


class ComparisonReliabilityWarning(UserWarning):
    """Pareto k-hat above the reliability limit at one or more time points."""

    def __init__(self, model: str, years: list[int], max_k: float) -> None:
        self.model = model
        self.years = years
        self.max_k = max_k
        super().__init__(
            f"{model}: PSIS k-hat unreliable at {len(years)} time point(s) "
            f"{years} (max k-hat = {max_k:.2f})"
        )
