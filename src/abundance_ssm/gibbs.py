# ---------------------------------------------------------------------------
# abundance_ssm.gibbs — Multi-chain Metropolis-within-Gibbs sampler
# ---------------------------------------------------------------------------
"""Draw the joint posterior of the latent path and hyperparameters.

One iteration cycles through four conditional updates:

1. latent path | σ_obs, σ_proc, b: forward-filtering backward-sampling
   (a single block draw of all T states) or single-site Gaussian updates;
2. σ_proc | path, b: inverse-gamma on σ², truncated at the prior bound;
3. b | path, σ_proc: Gaussian regression of x_t − x_{t−1};
4. σ_obs | path: random-walk Metropolis, step tuned during burn-in.

Chains are independent worker tasks with their own random streams.  Each
returns an owned array of draws; the merge happens once all have finished."""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import arviz as az
import numpy as np
from scipy import linalg as sp_linalg
from scipy import stats as sp_stats

from .config import ADAPT_INTERVAL, DEFAULT_SAMPLER_CONFIG, TARGET_ACCEPT, SamplerConfig
from .errors import NumericalError
from .model import StateSpaceModel
from .posterior import attach_log_likelihood, draws_frame

logger = logging.getLogger(__name__)


@dataclass
class ChainResult:
    """Kept draws of one chain (after burn-in and thinning)."""

    chain: int
    states: np.ndarray  # (n_keep, T)
    params: dict[str, np.ndarray]  # name -> (n_keep,)
    lp: np.ndarray
    accepted: np.ndarray  # sigma_obs proposal accepted at the kept iteration
    retries: np.ndarray  # cumulative non-finite redraws
    step_size: float


@dataclass
class GibbsRun:
    idata: az.InferenceData
    failed_chains: dict[int, str] = field(default_factory=dict)


# =========================================================================
# Single chain
# =========================================================================


class GibbsChain:
    """Sequential sampler for one chain.

    Parameters
    ----------
    model : StateSpaceModel
        Model to sample; the chain keeps its own copy of all mutable state.
    config : SamplerConfig
        Iteration budget and update scheme.
    seed : np.random.SeedSequence | int | None
        Seed of this chain's random stream.
    chain : int
        Chain id, used in messages.
    """

    def __init__(
        self,
        model: StateSpaceModel,
        config: SamplerConfig,
        seed: np.random.SeedSequence | int | None = None,
        chain: int = 0,
    ) -> None:
        self.model = model
        self.config = config
        self.chain = chain
        self.rng = np.random.default_rng(seed)
        self.n_retries = 0

        series = model.series
        self.y = np.asarray(series.values, dtype=float)
        self.obs = series.observed
        self.n_obs = int(self.obs.sum())
        self.T = series.n_steps

        self.states, self.params = self._initial_values()
        self.step_size = 0.5 * model.priors.sigma_obs_sd

    # -----------------------------------------------------------------
    # Initialisation
    # -----------------------------------------------------------------

    def _initial_values(self) -> tuple[np.ndarray, dict[str, float]]:
        pri = self.model.priors
        H = self.model.series.n_observed
        y_obs = self.y[:H]

        states = self.y.copy()
        states[H:] = y_obs[-1]

        jitter = np.exp(0.1 * self.rng.standard_normal(2))
        diff_sd = float(np.std(np.diff(y_obs))) if H > 2 else 0.1
        params: dict[str, float] = {
            "sigma_obs": max(pri.sigma_obs_mu * jitter[0], 1e-3),
            "sigma_proc": float(np.clip(diff_sd * jitter[1], 1e-3, 0.5 * pri.sigma_proc_upper)),
        }
        for name in self.model.transition.coef_names:
            params[name] = 0.01 * float(self.rng.standard_normal())
        return states, params

    # -----------------------------------------------------------------
    # Retry guard
    # -----------------------------------------------------------------

    def _retry(
        self,
        draw: Callable[[], object],
        label: str,
        check: Callable[[object], bool] | None = None,
    ):
        """Call ``draw`` until ``check`` passes; non-finite by default fails."""
        if check is None:
            check = lambda v: bool(np.all(np.isfinite(v)))  # noqa: E731
        for _ in range(self.config.max_retries + 1):
            value = draw()
            if check(value):
                return value
            self.n_retries += 1
        raise NumericalError(
            f"chain {self.chain}: {label} draw still invalid after "
            f"{self.config.max_retries + 1} attempts",
            chain=self.chain,
        )

    # -----------------------------------------------------------------
    # Conditional updates
    # -----------------------------------------------------------------

    def update_states(self) -> None:
        offset, slope = self.model.transition.linear_form(self.params)
        q = self.params["sigma_proc"] ** 2
        r = self.params["sigma_obs"] ** 2

        if self.config.state_update == "ffbs":
            draw = lambda: self._ffbs(offset, slope, q, r)  # noqa: E731
            self.states = self._retry(draw, "latent path")
        else:
            self._single_site(offset, slope, q, r)

    def _ffbs(self, offset: float, slope: float, q: float, r: float) -> np.ndarray:
        """Forward Kalman filter, then sample x_T, x_{T-1}, ..., x_1 backwards."""
        T, y, obs = self.T, self.y, self.obs
        pri = self.model.priors
        m = np.empty(T)
        P = np.empty(T)

        # Forward pass: x_1 starts from the informative prior around y_1
        mean, var = y[0], pri.init_sd**2
        for t in range(T):
            if t > 0:
                mean = offset + slope * m[t - 1]
                var = slope**2 * P[t - 1] + q
            if obs[t]:
                gain = var / (var + r)
                mean = mean + gain * (y[t] - mean)
                var = var * r / (var + r)
            m[t], P[t] = mean, var

        # Backward pass: x_T has no downstream pull
        z = self.rng.standard_normal(T)
        x = np.empty(T)
        x[-1] = m[-1] + np.sqrt(P[-1]) * z[-1]
        for t in range(T - 2, -1, -1):
            denom = slope**2 * P[t] + q
            gain = P[t] * slope / denom
            x[t] = m[t] + gain * (x[t + 1] - offset - slope * m[t])
            x[t] += np.sqrt(P[t] * q / denom) * z[t]
        return x

    def _single_site(self, offset: float, slope: float, q: float, r: float) -> None:
        """Update each state from its full conditional, in time order."""
        x, y, obs, T = self.states, self.y, self.obs, self.T
        init_var = self.model.priors.init_sd**2

        for t in range(T):
            if t == 0:
                prec, num = 1.0 / init_var, y[0] / init_var
            else:
                prec = 1.0 / q
                num = (offset + slope * x[t - 1]) / q
            if t < T - 1:
                prec += slope**2 / q
                num += slope * (x[t + 1] - offset) / q
            if obs[t]:
                prec += 1.0 / r
                num += y[t] / r

            def draw(prec=prec, num=num):
                return num / prec + self.rng.standard_normal() / np.sqrt(prec)

            x[t] = self._retry(draw, f"state {t + 1}")

    def update_sigma_proc(self) -> None:
        offset, slope = self.model.transition.linear_form(self.params)
        x = self.states
        resid = x[1:] - offset - slope * x[:-1]
        ss = float(resid @ resid)
        shape = 0.5 * (len(resid) - 1)
        scale = 0.5 * ss
        upper = self.model.priors.sigma_proc_upper

        # Uniform prior on σ => σ² | · ~ InvGamma((n-1)/2, SS/2) on (0, upper²).
        # Equivalently g = scale / σ² ~ Gamma(shape) truncated to g > scale / upper²,
        # drawn exactly by inverting the gamma survival function over that tail.
        tail = sp_stats.gamma.sf(scale / upper**2, shape)

        def draw():
            g = sp_stats.gamma.isf(self.rng.random() * tail, shape)
            return np.sqrt(scale / g)

        # Zero tail mass or SS = 0 gives σ = 0, a non-finite log density
        self.params["sigma_proc"] = float(
            self._retry(draw, "sigma_proc", check=lambda s: bool(np.isfinite(s) and 0 < s < upper))
        )

    def update_coefs(self) -> None:
        names = self.model.transition.coef_names
        if not names:
            return
        x = self.states
        X = self.model.transition.design(x[:-1])
        dx = x[1:] - x[:-1]
        q = self.params["sigma_proc"] ** 2

        prec = X.T @ X / q + np.eye(len(names)) / self.model.priors.coef_var
        try:
            chol = sp_linalg.cholesky(prec, lower=True)
        except np.linalg.LinAlgError as e:
            raise NumericalError(
                f"chain {self.chain}: coefficient precision not positive definite ({e})",
                chain=self.chain,
            ) from e
        mean = sp_linalg.cho_solve((chol, True), X.T @ dx / q)

        def draw():
            z = self.rng.standard_normal(len(names))
            return mean + sp_linalg.solve_triangular(chol.T, z, lower=False)

        coefs = self._retry(draw, "/".join(names))
        for name, value in zip(names, coefs):
            self.params[name] = float(value)

    def _sigma_obs_log_target(self, s: float, ss: float) -> float:
        if not s > 0:
            return -np.inf
        pri = self.model.priors
        return float(
            sp_stats.norm.logpdf(s, pri.sigma_obs_mu, pri.sigma_obs_sd)
            - self.n_obs * np.log(s)
            - 0.5 * ss / s**2
        )

    def update_sigma_obs(self) -> bool:
        """One random-walk Metropolis step; returns whether it was accepted."""
        resid = self.y[self.obs] - self.states[self.obs]
        ss = float(resid @ resid)
        current = self.params["sigma_obs"]
        lt_current = self._sigma_obs_log_target(current, ss)

        def propose():
            s = current + self.step_size * self.rng.standard_normal()
            return s, self._sigma_obs_log_target(s, ss)

        # -inf (proposal outside the support) is a valid rejection, NaN is not
        proposal, lt_prop = self._retry(
            propose,
            "sigma_obs",
            check=lambda v: bool(np.isfinite(v[0]) and not np.isnan(v[1]) and v[1] < np.inf),
        )
        if np.log(self.rng.random()) < lt_prop - lt_current:
            self.params["sigma_obs"] = float(proposal)
            return True
        return False

    # -----------------------------------------------------------------
    # Main loop
    # -----------------------------------------------------------------

    def run(self) -> ChainResult:
        cfg = self.config
        n_keep = cfg.n_keep
        n_tune = cfg.n_tune

        states = np.empty((n_keep, self.T))
        params = {name: np.empty(n_keep) for name in self.model.param_names}
        lp = np.empty(n_keep)
        accepted = np.zeros(n_keep, dtype=bool)
        retries = np.zeros(n_keep, dtype=np.int64)

        n_accept_window = 0
        k = 0
        for i in range(cfg.iterations):
            self.update_states()
            self.update_sigma_proc()
            self.update_coefs()
            acc = self.update_sigma_obs()

            if i < n_tune:
                n_accept_window += acc
                if (i + 1) % ADAPT_INTERVAL == 0:
                    rate = n_accept_window / ADAPT_INTERVAL
                    self.step_size *= np.exp(2.0 * (rate - TARGET_ACCEPT))
                    n_accept_window = 0

            if i >= cfg.burn_in and (i - cfg.burn_in + 1) % cfg.thin == 0:
                states[k] = self.states
                for name in params:
                    params[name][k] = self.params[name]
                lp[k] = self.model.log_posterior(self.states, self.params)
                accepted[k] = acc
                retries[k] = self.n_retries
                k += 1

        if not np.all(np.isfinite(lp)):
            raise NumericalError(
                f"chain {self.chain}: non-finite log posterior among kept draws",
                chain=self.chain,
            )

        return ChainResult(
            chain=self.chain,
            states=states,
            params=params,
            lp=lp,
            accepted=accepted,
            retries=retries,
            step_size=float(self.step_size),
        )


def _run_chain(
    model: StateSpaceModel,
    config: SamplerConfig,
    seed: np.random.SeedSequence,
    chain: int,
) -> ChainResult:
    return GibbsChain(model, config, seed=seed, chain=chain).run()


# =========================================================================
# Multi-chain driver
# =========================================================================


def sample_gibbs(
    model: StateSpaceModel,
    config: SamplerConfig | None = None,
    random_seed: int | np.random.SeedSequence | None = None,
    draws_dir: str | Path | None = None,
) -> GibbsRun:
    """Run independent chains and merge them into one InferenceData.

    Parameters
    ----------
    model : StateSpaceModel
        Output of :func:`abundance_ssm.model.build_model`.
    config : SamplerConfig, optional
        Defaults to ``DEFAULT_SAMPLER_CONFIG``.  Use
        ``LIGHT_SAMPLER_CONFIG`` for quick looks.
    random_seed : int or SeedSequence, optional
        Root seed; one child stream is spawned per chain.
    draws_dir : path, optional
        If set, each completed chain's draws are written to
        ``<draws_dir>/<variant>_chain<k>.parquet``.

    Returns
    -------
    GibbsRun
        InferenceData over the surviving chains plus the failed-chain log.

    Raises
    ------
    NumericalError
        If every chain failed.
    """
    if config is None:
        config = DEFAULT_SAMPLER_CONFIG
    if isinstance(random_seed, np.random.SeedSequence):
        root = random_seed
    else:
        root = np.random.SeedSequence(random_seed)
    seeds = root.spawn(config.chains)

    results: dict[int, ChainResult] = {}
    failed: dict[int, str] = {}

    def _collect(chain: int, get_result: Callable[[], ChainResult]) -> None:
        try:
            res = get_result()
        except NumericalError as e:
            failed[chain] = str(e)
            logger.warning(f"{model.variant}: chain {chain} failed: {e}")
            return
        results[chain] = res
        if draws_dir is not None:
            _write_chain(model, res, Path(draws_dir))

    if config.n_jobs == 1:
        for c in range(config.chains):
            _collect(c, lambda c=c: _run_chain(model, config, seeds[c], c))
    else:
        n_workers = min(config.n_jobs, config.chains)
        with ProcessPoolExecutor(max_workers=n_workers) as pool:
            futures = {
                pool.submit(_run_chain, model, config, seeds[c], c): c
                for c in range(config.chains)
            }
            for fut in as_completed(futures):
                _collect(futures[fut], fut.result)

    if not results:
        raise NumericalError(
            f"{model.variant}: all {config.chains} chains failed: "
            + "; ".join(failed.values())
        )

    chain_results = [results[c] for c in sorted(results)]
    total_retries = sum(int(r.retries[-1]) for r in chain_results)
    logger.info(
        f"{model.variant}: {len(chain_results)} chains × {config.n_keep} draws "
        f"({total_retries} non-finite redraws, {len(failed)} failed chains)"
    )

    idata = _to_inference_data(model, chain_results, config)
    return GibbsRun(idata=idata, failed_chains=failed)


def _to_inference_data(
    model: StateSpaceModel,
    chain_results: list[ChainResult],
    config: SamplerConfig,
) -> az.InferenceData:
    series = model.series
    H = series.n_observed

    posterior = {"x": np.stack([r.states for r in chain_results])}
    for name in model.param_names:
        posterior[name] = np.stack([r.params[name] for r in chain_results])

    sample_stats = {
        "lp": np.stack([r.lp for r in chain_results]),
        "accepted": np.stack([r.accepted for r in chain_results]),
        "retries": np.stack([r.retries for r in chain_results]),
    }

    idata = az.from_dict(
        posterior=posterior,
        sample_stats=sample_stats,
        observed_data={"y": np.asarray(series.values[1:H])},
        coords={
            "time": series.years.tolist(),
            "obs_time": series.observed_years[1:].tolist(),
        },
        dims={"x": ["time"], "y": ["obs_time"]},
    )
    idata.posterior.attrs.update(
        {
            "variant": model.variant,
            "backend": "gibbs",
            "chain_ids": ",".join(str(r.chain) for r in chain_results),
            "iterations": config.iterations,
            "burn_in": config.burn_in,
            "thin": config.thin,
            "state_update": config.state_update,
        }
    )
    return attach_log_likelihood(idata, model)


def _write_chain(model: StateSpaceModel, res: ChainResult, draws_dir: Path) -> None:
    draws_dir.mkdir(parents=True, exist_ok=True)
    path = draws_dir / f"{model.variant}_chain{res.chain}.parquet"
    draws_frame(res.states, res.params, model.series.years, chain=res.chain).write_parquet(
        str(path)
    )
    logger.debug(f"Wrote {len(res.lp)} draws to {path}")
