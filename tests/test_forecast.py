"""Tests for abundance_ssm.forecast — threshold risk and forward simulation."""

import arviz as az
import numpy as np
import pytest

from abundance_ssm.config import RISK_THRESHOLDS
from abundance_ssm.errors import ConfigurationError
from abundance_ssm.forecast import (
    assess_risk,
    exceedance_probabilities,
    final_state_draws,
    print_risk,
    simulate_forward,
)
from abundance_ssm.model import build_model
from abundance_ssm.posterior import FitResult, attach_log_likelihood
from abundance_ssm.synthetic import simulate_series


def _make_fit(variant="gompertz", n_chains=2, n_draws=200, seed=0) -> FitResult:
    params = {"sigma_obs": 0.2, "sigma_proc": 0.1, "b0": 1.4, "b1": -0.1}
    series, truth = simulate_series(variant, params, x1=14.0, random_seed=seed)
    rng = np.random.default_rng(seed)
    shape = (n_chains, n_draws)
    posterior = {
        "x": truth + 0.3 * rng.standard_normal(shape + (len(truth),)),
        "sigma_obs": np.full(shape, 0.2),
        "sigma_proc": np.full(shape, 0.1),
    }
    if variant != "level":
        posterior["b0"] = np.full(shape, 1.4)
    if variant == "gompertz":
        posterior["b1"] = np.full(shape, -0.1)
    idata = az.from_dict(
        posterior=posterior,
        coords={"time": series.years.tolist()},
        dims={"x": ["time"]},
    )
    model = build_model(series, variant)
    return FitResult(model=model, idata=attach_log_likelihood(idata, model))


class TestExceedanceProbabilities:
    """Tests for P(x < log threshold)."""

    def test_exact_fractions(self):
        draws = np.log(np.array([1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0]))
        table = exceedance_probabilities(draws, thresholds=[5.5, 0.5, 20.0])
        assert table["threshold"].to_list() == [0.5, 5.5, 20.0]
        assert table["probability"].to_list() == pytest.approx([0.0, 0.5, 1.0])

    def test_strictly_below(self):
        """A draw exactly at log(threshold) does not count."""
        draws = np.log(np.array([2.0, 2.0, 3.0, 4.0]))
        table = exceedance_probabilities(draws, thresholds=[2.0])
        assert table["probability"][0] == 0.0

    def test_monotone_in_threshold(self):
        rng = np.random.default_rng(0)
        draws = rng.normal(np.log(2e6), 1.0, size=5000)
        table = exceedance_probabilities(draws, RISK_THRESHOLDS)
        p = table["probability"].to_numpy()
        assert np.all(np.diff(p) >= 0)
        assert np.all((p >= 0) & (p <= 1))

    def test_log_threshold_column(self):
        table = exceedance_probabilities(np.zeros(3), thresholds=[np.e])
        assert table["log_threshold"][0] == pytest.approx(1.0)

    def test_accepts_chain_draw_array(self):
        draws = np.log(np.full((2, 3), 10.0))
        table = exceedance_probabilities(draws, thresholds=[100.0])
        assert table["probability"][0] == 1.0

    @pytest.mark.parametrize("thresholds", [[0.0], [-5.0, 10.0], []])
    def test_invalid_thresholds(self, thresholds):
        with pytest.raises(ConfigurationError, match="positive"):
            exceedance_probabilities(np.zeros(10), thresholds)

    def test_empty_draws(self):
        with pytest.raises(ConfigurationError, match="No draws"):
            exceedance_probabilities(np.array([]), [1.0])

    def test_non_finite_draws(self):
        with pytest.raises(ConfigurationError, match="non-finite"):
            exceedance_probabilities(np.array([1.0, np.nan]), [1.0])


class TestAssessRisk:
    """Tests for risk evaluated on a fitted model."""

    def test_final_year(self):
        fit = _make_fit()
        risk = assess_risk(fit)
        assert risk.model == "gompertz"
        assert risk.year == 2038
        assert risk.table.height == len(RISK_THRESHOLDS)
        assert len(risk.draws) == 400

    def test_uses_final_state(self):
        fit = _make_fit()
        draws = final_state_draws(fit)
        np.testing.assert_array_equal(
            draws, fit.idata.posterior["x"].values[:, :, -1].reshape(-1)
        )

    def test_matches_direct_count(self):
        fit = _make_fit()
        risk = assess_risk(fit, thresholds=[1e6])
        draws = fit.idata.posterior["x"].values[:, :, -1].reshape(-1)
        assert risk.table["probability"][0] == pytest.approx(np.mean(draws < np.log(1e6)))

    def test_print(self, capsys):
        print_risk(assess_risk(_make_fit()))
        out = capsys.readouterr().out
        assert "RISK" in out
        assert "2038" in out


class TestSimulateForward:
    """Tests for forward simulation past the horizon."""

    def test_shape(self):
        fwd = simulate_forward(_make_fit(), n_ahead=5, random_seed=0)
        assert fwd.shape == (2, 200, 5)

    def test_reproducible(self):
        fit = _make_fit()
        a = simulate_forward(fit, n_ahead=3, random_seed=1)
        b = simulate_forward(fit, n_ahead=3, random_seed=1)
        np.testing.assert_array_equal(a, b)

    def test_level_mean_stays_put(self):
        fit = _make_fit(variant="level")
        fwd = simulate_forward(fit, n_ahead=10, random_seed=0)
        last = fit.idata.posterior["x"].values[:, :, -1]
        assert np.mean(fwd[:, :, -1] - last) == pytest.approx(0.0, abs=0.05)

    def test_gompertz_reverts_to_equilibrium(self):
        """Deterministic part pulls towards -b0 / b1 = 14."""
        fit = _make_fit()
        fwd = simulate_forward(fit, n_ahead=60, random_seed=0)
        assert np.mean(fwd[:, :, -1]) == pytest.approx(14.0, abs=0.1)

    def test_n_ahead_positive(self):
        with pytest.raises(ConfigurationError):
            simulate_forward(_make_fit(), n_ahead=0)
