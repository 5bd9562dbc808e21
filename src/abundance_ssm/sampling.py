# ---------------------------------------------------------------------------
# abundance_ssm.sampling — Gradient-based (NUTS) sampling backend
# ---------------------------------------------------------------------------
from __future__ import annotations

import logging

import arviz as az
import numpy as np
import pymc as pm

from .model import StateSpaceModel, build_pymc_model
from .posterior import attach_log_likelihood

logger = logging.getLogger(__name__)

# Default sampling configuration (full production run)
DEFAULT_SAMPLER_KWARGS: dict = dict(
    draws=4000,
    tune=4000,
    chains=4,
    target_accept=0.95,
    return_inferencedata=True,
)

# Lighter configuration for quick looks and tests
LIGHT_SAMPLER_KWARGS: dict = dict(
    draws=500,
    tune=500,
    chains=2,
    target_accept=0.9,
    return_inferencedata=True,
)


def sample_model(
    model: pm.Model,
    sampler_kwargs: dict | None = None,
) -> az.InferenceData:
    """Sample a PyMC model using nutpie (preferred) or PyMC NUTS.

    Parameters
    ----------
    model : pm.Model
        Compiled PyMC model.
    sampler_kwargs : dict, optional
        Override the default sampling configuration.  Use
        ``LIGHT_SAMPLER_KWARGS`` for quick looks.
    """
    if sampler_kwargs is None:
        sampler_kwargs = DEFAULT_SAMPLER_KWARGS

    with model:
        try:
            idata = pm.sample(nuts_sampler="nutpie", **sampler_kwargs)
            sampler_used = "nutpie"
        except Exception as e:
            logger.info(f"nutpie unavailable ({e}), falling back to PyMC NUTS")
            idata = pm.sample(**sampler_kwargs)
            sampler_used = "pymc"

    logger.info(f"Sampling complete ({sampler_used})")
    return idata


def sample_nuts(
    model: StateSpaceModel,
    sampler_kwargs: dict | None = None,
    random_seed: int | np.random.SeedSequence | None = None,
) -> az.InferenceData:
    """Sample a :class:`StateSpaceModel` with NUTS.

    The result uses the same variable names as the Gibbs backend (``x``,
    ``sigma_obs``, ``sigma_proc``, coefficients) and carries the same
    ``log_likelihood`` group.
    """
    kwargs = dict(LIGHT_SAMPLER_KWARGS if sampler_kwargs is None else sampler_kwargs)
    if random_seed is not None and "random_seed" not in kwargs:
        if isinstance(random_seed, np.random.SeedSequence):
            random_seed = int(random_seed.generate_state(1)[0])
        kwargs["random_seed"] = random_seed

    idata = sample_model(build_pymc_model(model), sampler_kwargs=kwargs)
    idata.posterior.attrs.update({"variant": model.variant, "backend": "nuts"})

    n_div = int(idata.sample_stats["diverging"].sum().values)
    if n_div > 0:
        logger.warning(f"{model.variant}: {n_div} divergent transitions")
    return attach_log_likelihood(idata, model)
