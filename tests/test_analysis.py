"""End-to-end tests for abundance_ssm.analysis on a simulated 29-year series."""

import numpy as np
import pytest

from abundance_ssm import model as model_module
from abundance_ssm.analysis import fit_variant, fit_variants, run_analysis
from abundance_ssm.config import RISK_THRESHOLDS, SamplerConfig
from abundance_ssm.errors import ConfigurationError, NonConvergenceWarning
from abundance_ssm.model import Transition
from abundance_ssm.synthetic import simulate_series

CONFIG = SamplerConfig(chains=2, iterations=800, burn_in=300, thin=2)


def _make_series(seed: int = 21):
    """Gompertz dynamics around exp(14) ~ 1.2M, with a noisy survey index."""
    params = {"sigma_obs": 0.5, "sigma_proc": 0.15, "b0": 2.8, "b1": -0.2}
    series, _ = simulate_series("gompertz", params, x1=14.5, start_year=1995, random_seed=seed)
    return series


class _NanTransition(Transition):
    name = "drift"
    coef_names = ("b0",)

    def linear_form(self, params):
        return np.nan, 1.0

    def design(self, x_prev):
        return np.ones((len(x_prev), 1))


@pytest.fixture(scope="module")
def result():
    return run_analysis(_make_series(), sampler_config=CONFIG, random_seed=2024)


class TestRunAnalysis:
    """Full pipeline: three fits, comparison, risk on the top model."""

    def test_all_variants_fitted(self, result):
        assert set(result.fits) == {"level", "drift", "gompertz"}
        assert result.failures == {}

    def test_ranking_ascending(self, result):
        table = result.comparison.table
        assert table.height == 3
        looic = table["looic"].to_list()
        assert looic == sorted(looic)
        assert sorted(table["model"].to_list()) == ["drift", "gompertz", "level"]

    def test_gompertz_looic_finite_positive(self, result):
        table = result.comparison.table
        looic = table.filter(table["model"] == "gompertz")["looic"][0]
        assert np.isfinite(looic)
        assert looic > 0

    def test_weights(self, result):
        for col in ("stacking_weight", "pseudo_bma_weight"):
            w = result.comparison.table[col].to_numpy()
            assert np.all(w >= 0)
            assert w.sum() == pytest.approx(1.0, abs=1e-6)

    def test_risk_on_top_model(self, result):
        assert result.risk.model == result.comparison.best
        assert result.risk.year == 2023 + 20
        p = result.risk.table["probability"].to_numpy()
        assert result.risk.table.height == len(RISK_THRESHOLDS)
        assert np.all(np.diff(p) >= 0)

    def test_log_likelihood_per_fit(self, result):
        for fit in result.fits.values():
            assert fit.idata.log_likelihood["y"].shape == (2, 250, 28)

    def test_warnings_are_records(self, result):
        for fit in result.fits.values():
            assert all(isinstance(w, NonConvergenceWarning) for w in fit.warnings)


class TestFitVariants:
    """Tests for variant isolation and seeding."""

    def test_failing_variant_is_skipped(self, monkeypatch):
        """A NumericalError in one variant does not stop the others."""
        monkeypatch.setitem(model_module.TRANSITIONS, "drift", _NanTransition())
        cfg = SamplerConfig(chains=2, iterations=100, burn_in=50, thin=1)
        fits, failures = fit_variants(
            _make_series(), variants=("level", "drift"), sampler_config=cfg, random_seed=0
        )
        assert list(fits) == ["level"]
        assert list(failures) == ["drift"]

    def test_concurrent_matches_sequential(self):
        cfg = SamplerConfig(chains=2, iterations=100, burn_in=50, thin=1)
        series = _make_series()
        seq, _ = fit_variants(series, ("level", "drift"), sampler_config=cfg, random_seed=3)
        par, _ = fit_variants(
            series, ("level", "drift"), sampler_config=cfg, random_seed=3, concurrent=True
        )
        for v in ("level", "drift"):
            np.testing.assert_array_equal(
                seq[v].idata.posterior["x"].values, par[v].idata.posterior["x"].values
            )

    def test_single_fit_skips_comparison(self):
        cfg = SamplerConfig(chains=2, iterations=100, burn_in=50, thin=1)
        res = run_analysis(_make_series(), variants=("level",), sampler_config=cfg, random_seed=0)
        assert res.comparison is None
        assert res.risk.model == "level"

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="backend"):
            fit_variant(_make_series(), "level", backend="hmc")

    def test_unknown_variant(self):
        with pytest.raises(ConfigurationError, match="Unknown model variant"):
            fit_variant(_make_series(), "logistic")
