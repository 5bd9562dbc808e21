"""Tests for abundance_ssm.diagnostics — convergence flags and console summary."""

import arviz as az
import numpy as np

from abundance_ssm.diagnostics import convergence_warnings, print_diagnostics
from abundance_ssm.errors import NonConvergenceWarning
from abundance_ssm.model import build_model
from abundance_ssm.posterior import FitResult, attach_log_likelihood
from abundance_ssm.synthetic import simulate_series


def _make_fit(chain_offset: float = 0.0, n_draws: int = 1000) -> FitResult:
    """Two chains of iid draws; ``chain_offset`` separates their sigma_obs."""
    series, truth = simulate_series(
        "level", {"sigma_obs": 0.3, "sigma_proc": 0.1}, x1=12.0, random_seed=0
    )
    rng = np.random.default_rng(0)
    sigma_obs = 0.3 + 0.01 * rng.standard_normal((2, n_draws))
    sigma_obs[1] += chain_offset
    idata = az.from_dict(
        posterior={
            "x": truth + 0.05 * rng.standard_normal((2, n_draws, len(truth))),
            "sigma_obs": sigma_obs,
            "sigma_proc": 0.1 + 0.01 * rng.standard_normal((2, n_draws)),
        },
        sample_stats={"accepted": rng.random((2, n_draws)) < 0.4},
        coords={"time": series.years.tolist()},
        dims={"x": ["time"]},
    )
    model = build_model(series, "level")
    return FitResult(model=model, idata=attach_log_likelihood(idata, model))


class TestConvergenceWarnings:
    """Tests for R-hat / ESS flagging."""

    def test_well_mixed_chains_pass(self):
        fit = _make_fit()
        assert convergence_warnings(fit.idata, var_names=["sigma_obs", "sigma_proc"]) == []

    def test_disagreeing_chains_flagged(self):
        fit = _make_fit(chain_offset=0.5)
        flagged = convergence_warnings(fit.idata, var_names=["sigma_obs", "sigma_proc"])
        assert [w.parameter for w in flagged] == ["sigma_obs"]
        assert isinstance(flagged[0], NonConvergenceWarning)
        assert flagged[0].r_hat > 1.01

    def test_low_ess_flagged(self):
        fit = _make_fit(n_draws=100)
        flagged = convergence_warnings(fit.idata, var_names=["sigma_proc"])
        assert len(flagged) == 1
        assert flagged[0].ess_bulk < 400

    def test_state_vector_labels(self):
        """Each latent state is checked separately."""
        fit = _make_fit(n_draws=100)
        flagged = convergence_warnings(fit.idata, var_names=["x"])
        assert len(flagged) == 49


class TestPrintDiagnostics:
    """Tests for the console summary."""

    def test_converged(self, capsys):
        print_diagnostics(_make_fit())
        out = capsys.readouterr().out
        assert "SAMPLING DIAGNOSTICS" in out
        assert "sigma_obs acceptance" in out
        assert "All parameters converged" in out

    def test_flagged(self, capsys):
        fit = _make_fit(chain_offset=0.5)
        fit.warnings.extend(convergence_warnings(fit.idata, var_names=["sigma_obs"]))
        print_diagnostics(fit)
        out = capsys.readouterr().out
        assert "WARNING: 1 parameters outside convergence limits" in out
        assert not fit.converged
