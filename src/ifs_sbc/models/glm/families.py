"""
Synthetic GLM Data Generator

This module provides the family-specific pieces of the calibration harness:
- Link functions and their inverses
- Response samplers and log-densities for the five supported families
- Prior draws of the latent parameters (truths)
- Pseudo-dataset simulation from a parameter draw

All families are mean-parameterized:

    family      mean mu          auxiliary     sampler
    gamma       inv_link(eta)    shape         Gamma(shape, mu / shape)
    weibull     inv_link(eta)    shape         scale = mu / Gamma(1 + 1/shape)
    lognormal   eta (meanlog)    sigma         LogNormal(eta, sigma)
    beta        expit(eta)       phi           Beta(mu * phi, (1 - mu) * phi)
    frechet     inv_link(eta)    nu (> 1)      scale = mu / Gamma(1 - 1/nu)

Every function here is a pure function of its arguments and the supplied
random generator.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import numpy as np
from scipy import special, stats

from ifs_sbc.core.errors import ConfigurationError
from ifs_sbc.core.infrastructure import PriorConfig, SimulationSpec
from ifs_sbc.core.utils import sample_half_normal, sample_t_or_normal


_TINY = np.finfo(float).tiny
_HUGE = np.finfo(float).max
_UNIT_EPS = 1e-12


# =============================================================================
# LINK FUNCTIONS
# =============================================================================

INVERSE_LINKS: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "identity": lambda eta: eta,
    "log": np.exp,
    "logit": special.expit,
    "inverse": lambda eta: 1.0 / eta,
}


def inverse_link(link: str, eta: np.ndarray) -> np.ndarray:
    """Apply the inverse of ``link`` to the linear predictor."""
    with np.errstate(over="ignore", divide="ignore"):
        return INVERSE_LINKS[link](np.asarray(eta, dtype=float))


# =============================================================================
# FAMILY DEFINITIONS
# =============================================================================

def _weibull_scale(mu, shape):
    return mu / special.gamma(1.0 + 1.0 / shape)


def _frechet_scale(mu, nu):
    return mu / special.gamma(1.0 - 1.0 / nu)


def _sample_gamma(mu, aux, rng):
    return rng.gamma(shape=aux, scale=mu / aux)


def _sample_weibull(mu, aux, rng):
    return _weibull_scale(mu, aux) * rng.weibull(aux, size=mu.shape)


def _sample_lognormal(mu, aux, rng):
    return rng.lognormal(mean=mu, sigma=aux)


def _sample_beta(mu, aux, rng):
    return rng.beta(mu * aux, (1.0 - mu) * aux)


def _sample_frechet(mu, aux, rng):
    u = rng.uniform(size=mu.shape)
    return _frechet_scale(mu, aux) * (-np.log(u)) ** (-1.0 / aux)


def _logpdf_gamma(y, mu, aux):
    return stats.gamma.logpdf(y, a=aux, scale=mu / aux)


def _logpdf_weibull(y, mu, aux):
    return stats.weibull_min.logpdf(y, c=aux, scale=_weibull_scale(mu, aux))


def _logpdf_lognormal(y, mu, aux):
    return stats.lognorm.logpdf(y, s=aux, scale=np.exp(mu))


def _logpdf_beta(y, mu, aux):
    return stats.beta.logpdf(y, mu * aux, (1.0 - mu) * aux)


def _logpdf_frechet(y, mu, aux):
    return stats.invweibull.logpdf(y, c=aux, scale=_frechet_scale(mu, aux))


@dataclass(frozen=True)
class Family:
    """Sampler, log-density and support of one response family."""
    name: str
    sample: Callable
    logpdf: Callable
    support: Tuple[float, float]
    # Offset added to the Gamma prior draw of the auxiliary parameter.
    aux_offset: float = 0.0

    def mean(self, spec: SimulationSpec, eta: np.ndarray) -> np.ndarray:
        """Distribution mean (meanlog for lognormal) from the linear predictor."""
        mu = inverse_link(spec.link, eta)
        if self.name == "lognormal":
            return mu
        lo, hi = self.support
        return np.clip(np.nan_to_num(mu, nan=lo, posinf=hi), lo, hi)

    def clip(self, y: np.ndarray) -> np.ndarray:
        lo, hi = self.support
        return np.clip(np.nan_to_num(y, nan=lo, posinf=hi, neginf=lo), lo, hi)


FAMILIES: Dict[str, Family] = {
    "gamma": Family("gamma", _sample_gamma, _logpdf_gamma, (_TINY, _HUGE)),
    "weibull": Family("weibull", _sample_weibull, _logpdf_weibull, (_TINY, _HUGE)),
    "lognormal": Family("lognormal", _sample_lognormal, _logpdf_lognormal, (_TINY, _HUGE)),
    "beta": Family("beta", _sample_beta, _logpdf_beta, (_UNIT_EPS, 1.0 - _UNIT_EPS)),
    "frechet": Family("frechet", _sample_frechet, _logpdf_frechet, (_TINY, _HUGE), aux_offset=1.0),
}


def get_family(spec: SimulationSpec) -> Family:
    return FAMILIES[spec.family]


# =============================================================================
# VALIDATION
# =============================================================================

def validate_simulation(spec: SimulationSpec, covariates: Optional[np.ndarray] = None) -> None:
    """
    Check that ``spec`` can be simulated, optionally from a real covariate pool.

    Raises
    ------
    ConfigurationError
        If the covariate pool is malformed or has fewer columns than
        ``spec.covariate_count``.
    """
    if covariates is None:
        return
    covariates = np.asarray(covariates, dtype=float)
    if covariates.ndim != 2 or covariates.shape[0] == 0:
        raise ConfigurationError(
            f"covariates must be a non-empty 2D array, got shape {covariates.shape}."
        )
    if spec.covariate_count > covariates.shape[1]:
        raise ConfigurationError(
            f"Requested {spec.covariate_count} covariates but only "
            f"{covariates.shape[1]} real covariates are available."
        )
    if not np.all(np.isfinite(covariates[:, :spec.covariate_count])):
        raise ConfigurationError("covariates contain non-finite values.")


# =============================================================================
# PRIOR AND LIKELIHOOD
# =============================================================================

def draw_prior(spec: SimulationSpec, prior: PriorConfig, rng: np.random.Generator) -> Dict[str, float]:
    """
    Draw latent parameters from the declared prior.

    Notes
    -----
    - b_Intercept ~ Normal(0, prior.intercept_scale)
    - b_xk ~ t(prior.coef_df, 0, prior.coef_scale), or Normal
    - aux ~ aux_offset + Gamma(prior.aux_shape, 1 / prior.aux_rate),
      unless ``prior.aux_fixed`` is set
    - sd_group ~ HalfNormal(prior.group_sd_scale)
    - r_group[g] ~ Normal(0, sd_group)
    """
    family = get_family(spec)
    params = {"b_Intercept": float(rng.normal(0, prior.intercept_scale))}
    for name in spec.coefficient_names()[1:]:
        params[name] = float(sample_t_or_normal(prior.coef_df, prior.coef_scale, rng=rng))

    if prior.aux_fixed is None:
        params[spec.aux_name] = float(
            family.aux_offset + rng.gamma(prior.aux_shape, 1.0 / prior.aux_rate)
        )

    if spec.group_count is not None:
        sd_group = float(sample_half_normal(prior.group_sd_scale, rng=rng))
        params["sd_group"] = sd_group
        for g in range(1, spec.group_count + 1):
            params[f"r_group[{g}]"] = float(rng.normal(0, sd_group))

    return params


def _aux_value(spec: SimulationSpec, params: Dict[str, float], prior: Optional[PriorConfig]) -> float:
    if spec.aux_name in params:
        return float(params[spec.aux_name])
    if prior is not None and prior.aux_fixed is not None:
        return float(prior.aux_fixed)
    raise ConfigurationError(
        f"Parameter '{spec.aux_name}' is neither drawn nor fixed for family '{spec.family}'."
    )


def linear_predictor(spec: SimulationSpec, params: Dict[str, float], data: Dict[str, np.ndarray]) -> np.ndarray:
    """Linear predictor ``b_Intercept + X b + r_group[group]``."""
    coefs = np.array([params[name] for name in spec.coefficient_names()[1:]], dtype=float)
    X = np.asarray(data["X"], dtype=float)
    eta = params["b_Intercept"] + (X @ coefs if coefs.size else 0.0)
    eta = np.broadcast_to(eta, (X.shape[0],)).astype(float)
    if spec.group_count is not None:
        r = np.array(
            [params[f"r_group[{g}]"] for g in range(1, spec.group_count + 1)], dtype=float
        )
        eta = eta + r[np.asarray(data["group"], dtype=int)]
    return eta


def log_likelihood(
    spec: SimulationSpec,
    data: Dict[str, np.ndarray],
    params: Dict[str, float],
    prior: Optional[PriorConfig] = None,
) -> float:
    """
    Summed log density of ``data["y"]`` under ``params``.

    Parameters
    ----------
    spec : SimulationSpec
        Generator configuration.
    data : dict
        Dataset with ``y``, ``X`` and (if grouped) ``group``.
    params : dict
        Parameter values.
    prior : PriorConfig, optional
        Supplies the auxiliary parameter when it is fixed.

    Returns
    -------
    float
    """
    family = get_family(spec)
    eta = linear_predictor(spec, params, data)
    mu = family.mean(spec, eta)
    aux = _aux_value(spec, params, prior)
    with np.errstate(all="ignore"):
        return float(np.sum(family.logpdf(np.asarray(data["y"], dtype=float), mu, aux)))


# =============================================================================
# SIMULATION
# =============================================================================

def simulate_response(
    spec: SimulationSpec,
    params: Dict[str, float],
    rng: np.random.Generator,
    covariates: Optional[np.ndarray] = None,
    prior: Optional[PriorConfig] = None,
) -> Dict[str, np.ndarray]:
    """
    Simulate one pseudo-dataset from a parameter draw.

    Parameters
    ----------
    spec : SimulationSpec
        Generator configuration.
    params : dict
        Latent parameters (from ``draw_prior`` or a preconditioned posterior).
    rng : np.random.Generator
        Random number generator for reproducibility.
    covariates : np.ndarray, optional
        Real covariate pool of shape (n_rows, n_cols). Rows are resampled
        with replacement and the first ``covariate_count`` columns used.
        If None, covariates are i.i.d. standard normal.
    prior : PriorConfig, optional
        Supplies the auxiliary parameter when it is fixed.

    Returns
    -------
    dict with y (N,), X (N, K) and, for grouped specs, group (N,) in 0..G-1
    """
    validate_simulation(spec, covariates)
    family = get_family(spec)
    n = int(spec.sample_size)
    k = int(spec.covariate_count)

    if covariates is None:
        X = rng.standard_normal((n, k))
    else:
        pool = np.asarray(covariates, dtype=float)[:, :k]
        X = pool[rng.integers(0, pool.shape[0], size=n)]

    data = {"X": X}
    if spec.group_count is not None:
        data["group"] = rng.integers(0, spec.group_count, size=n)

    eta = linear_predictor(spec, params, data)
    mu = family.mean(spec, eta)
    aux = _aux_value(spec, params, prior)
    with np.errstate(all="ignore"):
        y = family.sample(mu, aux, rng)
    data["y"] = family.clip(np.asarray(y, dtype=float))
    return data


def simulate_dataset(
    spec: SimulationSpec,
    prior: PriorConfig,
    rng: np.random.Generator,
    params: Optional[Dict[str, float]] = None,
    covariates: Optional[np.ndarray] = None,
) -> Tuple[Dict[str, float], Dict[str, np.ndarray]]:
    """
    Draw a truth (unless given) and simulate a pseudo-dataset from it.

    Returns
    -------
    tuple of (truth, data)
    """
    if params is None:
        params = draw_prior(spec, prior, rng)
    data = simulate_response(spec, params, rng, covariates=covariates, prior=prior)
    return dict(params), data
