# ---------------------------------------------------------------------------
# abundance_ssm.data — Abundance series construction and validation
# ---------------------------------------------------------------------------
"""Build the log-abundance series consumed by the models: H observed years
followed by a trailing block of absent forecast years.  Also carries the
two-region harmonization that produces the merged index."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import polars as pl

from .config import FORECAST_HORIZON, N_OBSERVED, N_STEPS
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


# =========================================================================
# TimeSeries
# =========================================================================


@dataclass(frozen=True, eq=False)
class TimeSeries:
    """Annual log-abundance values with absent (NaN) forecast years.

    Parameters
    ----------
    years : array-like of int
        Strictly increasing calendar years, one per time step.
    values : array-like of float
        Log-abundance; NaN marks an absent value.
    n_observed : int
        Number of leading years that must carry a value (H).
    n_steps : int
        Total number of time steps (T).

    Raises
    ------
    ConfigurationError
        If the layout is not ``n_observed`` finite values followed by
        ``n_steps - n_observed`` absent values on strictly increasing years.
    """

    years: np.ndarray
    values: np.ndarray
    n_observed: int = N_OBSERVED
    n_steps: int = N_STEPS

    def __post_init__(self) -> None:
        years = np.asarray(self.years)
        values = np.asarray(self.values, dtype=float)

        if years.ndim != 1 or values.ndim != 1:
            raise ConfigurationError("years and values must be one-dimensional")
        if len(years) != len(values):
            raise ConfigurationError(
                f"years ({len(years)}) and values ({len(values)}) differ in length"
            )
        if len(values) != self.n_steps:
            raise ConfigurationError(
                f"Series must have {self.n_steps} time steps, got {len(values)}"
            )
        if not np.issubdtype(years.dtype, np.integer):
            if not np.all(np.mod(years, 1) == 0):
                raise ConfigurationError("years must be integers")
            years = years.astype(int)
        if np.any(np.diff(years) <= 0):
            raise ConfigurationError("years must be strictly increasing")
        if np.any(np.isinf(values)):
            raise ConfigurationError("Series contains infinite values")

        present = np.isfinite(values)
        n_present = int(present.sum())
        if n_present != self.n_observed:
            raise ConfigurationError(
                f"Expected {self.n_observed} observed values, got {n_present}"
            )
        if not present[: self.n_observed].all():
            first_gap = int(np.argmin(present))
            raise ConfigurationError(
                f"Absent value at year {years[first_gap]} inside the observed "
                f"window; the forecast horizon must be trailing"
            )

        years = years.copy()
        values = values.copy()
        years.setflags(write=False)
        values.setflags(write=False)
        object.__setattr__(self, "years", years)
        object.__setattr__(self, "values", values)

    # -----------------------------------------------------------------
    # Views
    # -----------------------------------------------------------------

    @property
    def observed(self) -> np.ndarray:
        """Boolean mask of time steps that carry a value."""
        return np.isfinite(self.values)

    @property
    def y_observed(self) -> np.ndarray:
        return self.values[: self.n_observed]

    @property
    def observed_years(self) -> np.ndarray:
        return self.years[: self.n_observed]

    @property
    def forecast_years(self) -> np.ndarray:
        return self.years[self.n_observed :]

    @property
    def horizon(self) -> int:
        return self.n_steps - self.n_observed

    def to_frame(self) -> pl.DataFrame:
        """``{year, log_abundance, observed}`` with nulls for absent years."""
        return pl.DataFrame(
            {
                "year": self.years.tolist(),
                "log_abundance": [float(v) if np.isfinite(v) else None for v in self.values],
                "observed": self.observed.tolist(),
            }
        )


# =========================================================================
# Construction helpers
# =========================================================================


def build_series(
    years,
    counts,
    horizon: int = FORECAST_HORIZON,
) -> TimeSeries:
    """Log-transform natural-scale counts and append the absent forecast years.

    Parameters
    ----------
    years : array-like of int
        Exactly ``N_OBSERVED`` years, strictly increasing and consecutive.
    counts : array-like of float
        Abundance index on the natural scale; all values must be positive.
    horizon : int
        Forecast years appended as absent values; must equal
        ``FORECAST_HORIZON``.
    """
    years = np.asarray(years)
    counts = np.asarray(counts, dtype=float)

    if len(years) != len(counts):
        raise ConfigurationError(
            f"years ({len(years)}) and counts ({len(counts)}) differ in length"
        )
    if len(years) != N_OBSERVED:
        raise ConfigurationError(
            f"Expected {N_OBSERVED} observed years, got {len(years)}"
        )
    if horizon != FORECAST_HORIZON:
        raise ConfigurationError(
            f"Forecast horizon must be {FORECAST_HORIZON} years, got {horizon}"
        )
    if not np.all(np.isfinite(counts)) or np.any(counts <= 0):
        raise ConfigurationError("Abundance counts must be finite and positive")
    if np.any(np.diff(years) != 1):
        raise ConfigurationError("Observed years must be consecutive and increasing")

    future = np.arange(int(years[-1]) + 1, int(years[-1]) + 1 + FORECAST_HORIZON)
    all_years = np.concatenate([years.astype(int), future])
    values = np.concatenate([np.log(counts), np.full(FORECAST_HORIZON, np.nan)])

    return TimeSeries(all_years, values)


def series_from_frame(
    frame: pl.DataFrame,
    year_col: str = "year",
    value_col: str = "total",
    horizon: int = FORECAST_HORIZON,
) -> TimeSeries:
    """Build a series from the non-null rows of a polars frame."""
    missing = {year_col, value_col} - set(frame.columns)
    if missing:
        raise ConfigurationError(f"Missing required columns: {sorted(missing)}")

    obs = frame.select([year_col, value_col]).drop_nulls().sort(year_col)
    return build_series(
        obs[year_col].to_numpy(),
        obs[value_col].to_numpy().astype(float),
        horizon=horizon,
    )


def load_series(
    path: str | Path,
    year_col: str = "year",
    value_col: str = "total",
    horizon: int = FORECAST_HORIZON,
) -> TimeSeries:
    """Read a CSV of natural-scale abundance and build the series."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Series file not found: {path}")
    frame = pl.read_csv(str(path))
    series = series_from_frame(frame, year_col=year_col, value_col=value_col, horizon=horizon)
    logger.info(
        f"Loaded {series.n_observed} observed years "
        f"({series.years[0]}–{series.observed_years[-1]}) from {path}"
    )
    return series


# =========================================================================
# Regional harmonization
# =========================================================================


def merge_regional_series(
    frame: pl.DataFrame,
    region_a: str,
    region_b: str,
    year_col: str = "year",
) -> tuple[pl.DataFrame, float]:
    """Merge two regional counts into one index.

    Years where both regions report are summed.  Years where only the
    larger region reports are scaled by ``1 + mean(smaller / larger)``,
    the mean taken over the years where both report.

    Parameters
    ----------
    frame : pl.DataFrame
        One row per year with a column per region (nulls where a region
        did not report).
    region_a, region_b : str
        Column names of the two regional series.
    year_col : str
        Name of the year column.

    Returns
    -------
    tuple[pl.DataFrame, float]
        Frame ``{year, total, corrected}`` sorted by year, and the
        correction factor.

    Raises
    ------
    ConfigurationError
        Missing columns, non-positive counts, no overlapping years, or a
        year covered by the smaller region alone.
    """
    missing = {year_col, region_a, region_b} - set(frame.columns)
    if missing:
        raise ConfigurationError(f"Missing required columns: {sorted(missing)}")

    df = frame.select(
        pl.col(year_col).cast(pl.Int64).alias("year"),
        pl.col(region_a).cast(pl.Float64).alias("a"),
        pl.col(region_b).cast(pl.Float64).alias("b"),
    ).sort("year")

    n_bad = df.filter((pl.col("a") <= 0) | (pl.col("b") <= 0)).height
    if n_bad > 0:
        raise ConfigurationError(f"{n_bad} non-positive regional counts found")

    both = df.filter(pl.col("a").is_not_null() & pl.col("b").is_not_null())
    if both.height == 0:
        raise ConfigurationError("No year with both regions reporting")

    a_is_larger = both["a"].mean() >= both["b"].mean()
    larger, smaller = ("a", "b") if a_is_larger else ("b", "a")

    ratio = (both[smaller] / both[larger]).mean()
    factor = 1.0 + float(ratio)

    orphan = df.filter(pl.col(smaller).is_not_null() & pl.col(larger).is_null())
    if orphan.height > 0:
        raise ConfigurationError(
            f"Years {orphan['year'].to_list()} report only the smaller region; "
            f"no correction is defined for them"
        )

    merged = df.with_columns(
        pl.when(pl.col(smaller).is_not_null())
        .then(pl.col("a") + pl.col("b"))
        .otherwise(pl.col(larger) * factor)
        .alias("total"),
        (pl.col(smaller).is_null() & pl.col(larger).is_not_null()).alias("corrected"),
    ).select("year", "total", "corrected")

    n_corr = int(merged["corrected"].sum())
    logger.info(
        f"Merged regions {region_a!r} + {region_b!r}: factor = {factor:.4f} "
        f"from {both.height} overlapping years, {n_corr} years corrected"
    )
    return merged, factor
