"""Tests for abundance_ssm.comparison — LOOIC ranking and model weights."""

import arviz as az
import numpy as np
import pytest

from abundance_ssm.comparison import compare_models, loo_for_fit, print_comparison
from abundance_ssm.errors import ComparisonReliabilityWarning, ConfigurationError
from abundance_ssm.model import build_model
from abundance_ssm.posterior import FitResult, attach_log_likelihood
from abundance_ssm.synthetic import simulate_series

N_CHAINS, N_DRAWS = 2, 500


def _make_series(seed: int = 0, start_year: int = 1990):
    params = {"sigma_obs": 0.3, "sigma_proc": 0.1}
    return simulate_series("level", params, x1=13.0, start_year=start_year, random_seed=seed)


def _make_fit(series, truth, shift=0.0, sigma=0.3, seed=0, x=None) -> FitResult:
    """FitResult whose state draws sit at ``truth + shift`` with small jitter."""
    if x is None:
        rng = np.random.default_rng(seed)
        x = truth + shift + 0.05 * rng.standard_normal((N_CHAINS, N_DRAWS, len(truth)))
    idata = az.from_dict(
        posterior={
            "x": x,
            "sigma_obs": np.full((N_CHAINS, N_DRAWS), sigma),
            "sigma_proc": np.full((N_CHAINS, N_DRAWS), 0.1),
        },
        coords={"time": series.years.tolist()},
        dims={"x": ["time"]},
    )
    model = build_model(series, "level")
    return FitResult(model=model, idata=attach_log_likelihood(idata, model))


def _make_unstable_fit(series, truth, seed=0) -> FitResult:
    """A fit where 10% of draws put one year far from its observation."""
    rng = np.random.default_rng(seed)
    x = truth + 0.05 * rng.standard_normal((N_CHAINS, N_DRAWS, len(truth)))
    n_bad = N_DRAWS // 10
    x[:, :n_bad, 10] = series.values[10] + rng.uniform(2.0, 5.0, size=(N_CHAINS, n_bad))
    return _make_fit(series, truth, x=x)


@pytest.fixture(scope="module")
def fits():
    series, truth = _make_series()
    return {
        "good": _make_fit(series, truth, seed=1),
        "biased": _make_fit(series, truth, shift=0.4, seed=2),
        "noisy": _make_fit(series, truth, sigma=1.0, seed=3),
    }


class TestCompareModels:
    """Tests for the comparison table."""

    def test_ranking_ascending_looic(self, fits):
        result = compare_models(fits, seed=0)
        looic = result.table["looic"].to_list()
        assert looic == sorted(looic)
        assert result.table["rank"].to_list() == [1, 2, 3]
        assert result.best == "good"
        assert result.ranking[0] == "good"

    def test_looic_is_minus_two_elpd(self, fits):
        result = compare_models(fits, seed=0)
        for name, loo in result.loo.items():
            row = result.table.filter(result.table["model"] == name)
            assert row["looic"][0] == pytest.approx(-2.0 * float(loo.elpd_loo))

    def test_weights_sum_to_one(self, fits):
        result = compare_models(fits, seed=0)
        for col in ("stacking_weight", "pseudo_bma_weight"):
            w = result.table[col].to_numpy()
            assert np.all(w >= 0)
            assert w.sum() == pytest.approx(1.0, abs=1e-6)

    def test_best_model_gets_most_weight(self, fits):
        result = compare_models(fits, seed=0)
        top = result.table.row(0, named=True)
        assert top["stacking_weight"] == result.table["stacking_weight"].max()
        assert top["pseudo_bma_weight"] == result.table["pseudo_bma_weight"].max()

    def test_pseudo_bma_seeded(self, fits):
        a = compare_models(fits, seed=5).table["pseudo_bma_weight"].to_list()
        b = compare_models(fits, seed=5).table["pseudo_bma_weight"].to_list()
        assert a == b

    def test_two_models(self, fits):
        result = compare_models({"good": fits["good"], "biased": fits["biased"]}, seed=0)
        assert result.table.height == 2
        assert result.ranking == ["good", "biased"]

    def test_reliable_when_k_small(self, fits):
        result = compare_models(fits, seed=0)
        assert result.table["reliable"].all()
        assert result.warnings == []

    def test_print(self, fits, capsys):
        print_comparison(compare_models(fits, seed=0))
        out = capsys.readouterr().out
        assert "MODEL COMPARISON" in out
        assert "good" in out


class TestReliability:
    """Tests for the Pareto k-hat flag."""

    def test_high_k_flags_model(self):
        series, truth = _make_series()
        fits = {
            "good": _make_fit(series, truth, seed=1),
            "unstable": _make_unstable_fit(series, truth, seed=2),
        }
        result = compare_models(fits, seed=0)

        row = result.table.filter(result.table["model"] == "unstable").row(0, named=True)
        assert not row["reliable"]
        assert row["n_bad_k"] >= 1

        assert len(result.warnings) == 1
        flag = result.warnings[0]
        assert isinstance(flag, ComparisonReliabilityWarning)
        assert flag.model == "unstable"
        assert 2000 in flag.years
        assert flag.max_k > 0.7

    def test_pointwise_k_available(self, fits):
        loo = loo_for_fit(fits["good"])
        assert len(loo.pareto_k) == 28


class TestCompareErrors:
    """Invalid inputs to compare_models."""

    def test_single_model_rejected(self, fits):
        with pytest.raises(ConfigurationError, match="at least 2"):
            compare_models({"good": fits["good"]})

    def test_different_series_rejected(self, fits):
        series, truth = _make_series(start_year=1980)
        other = _make_fit(series, truth)
        with pytest.raises(ConfigurationError, match="different series"):
            compare_models({"good": fits["good"], "other": other})
