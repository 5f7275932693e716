"""
Inference Oracle Contract and Preconditioned Priors.

The inference engine is an external collaborator. The harness only relies
on four operations, each returning new objects and never mutating inputs:

    fit(data, prior_config, seed)       -> PosteriorHandle
    update(handle, new_data, seed)      -> PosteriorHandle
    posterior_draws(handle, variables)  -> array of shape (S, len(variables))
    pointwise_loglik(handle, data)      -> array of shape (S,)

Non-convergence is reported on the returned handle (``converged=False``)
rather than raised.

Usage:
------
from ifs_sbc.core.oracle import PreconditionedPrior

precon = PreconditionedPrior.fit(oracle, precon_sample, prior, seed=1)
truth = precon.draw_truth(names, rng)
handle = precon.update(pseudo_data, seed=2)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ifs_sbc.core.errors import ConfigurationError, InferenceFailure


# =============================================================================
# POSTERIOR HANDLE
# =============================================================================

def _readonly(value):
    if isinstance(value, np.ndarray):
        value = value.copy()
        value.setflags(write=False)
    return value


def freeze_dataset(data: Dict[str, Any]) -> Dict[str, Any]:
    """Copy a dataset dict with all arrays marked read-only."""
    return {key: _readonly(np.asarray(val)) if isinstance(val, (np.ndarray, list)) else val
            for key, val in data.items()}


@dataclass(frozen=True)
class PosteriorHandle:
    """
    Immutable result of a fit or update.

    Attributes
    ----------
    draws : np.ndarray
        Posterior draws of shape (S, len(variables)). Read-only.
    variables : tuple of str
        Column names of ``draws``.
    state : Any
        Oracle-specific posterior state (e.g. sufficient statistics). A dict
        state is copied with its arrays marked read-only.
    data : dict, optional
        Data the posterior is conditioned on.
    converged : bool
        False when the oracle reports a non-convergence.
    message : str
        Diagnostic message accompanying a non-converged fit.
    """
    draws: np.ndarray
    variables: Tuple[str, ...]
    state: Any = None
    data: Optional[Dict[str, Any]] = None
    converged: bool = True
    message: str = ""

    def __post_init__(self):
        draws = np.asarray(self.draws, dtype=float)
        if draws.ndim != 2 or draws.shape[1] != len(self.variables):
            raise ValueError(
                f"draws must have shape (S, {len(self.variables)}), got {draws.shape}."
            )
        object.__setattr__(self, "draws", _readonly(draws))
        object.__setattr__(self, "variables", tuple(self.variables))
        if isinstance(self.state, dict):
            object.__setattr__(self, "state", freeze_dataset(self.state))
        if self.data is not None:
            object.__setattr__(self, "data", freeze_dataset(self.data))

    @property
    def num_draws(self) -> int:
        return int(self.draws.shape[0])


# =============================================================================
# ORACLE CONTRACT
# =============================================================================

class InferenceOracle(ABC):
    """Abstract inference engine driven by the calibration harness."""

    @abstractmethod
    def fit(self, data: Dict[str, Any], prior_config: Any, seed: Optional[int] = None) -> PosteriorHandle:
        """Fit from the declared prior."""

    @abstractmethod
    def update(self, handle: PosteriorHandle, new_data: Dict[str, Any], seed: Optional[int] = None) -> PosteriorHandle:
        """Condition an existing posterior on new data. Must not mutate ``handle``."""

    def posterior_draws(self, handle: PosteriorHandle, variables: Sequence[str]) -> np.ndarray:
        """Posterior draws for ``variables``, shape (S, len(variables))."""
        missing = [v for v in variables if v not in handle.variables]
        if missing:
            raise KeyError(f"Variables not available in posterior: {missing}")
        cols = [handle.variables.index(v) for v in variables]
        return np.array(handle.draws[:, cols])

    def draw_parameters(self, handle: PosteriorHandle, variables: Sequence[str], rng: np.random.Generator) -> Dict[str, float]:
        """
        One parameter vector from the posterior.

        The default picks one of the stored draws uniformly at random.
        Oracles with a closed-form posterior can override this to sample it
        exactly.
        """
        draws = self.posterior_draws(handle, list(variables))
        row = int(rng.integers(0, draws.shape[0]))
        return {name: float(draws[row, j]) for j, name in enumerate(variables)}

    @abstractmethod
    def pointwise_loglik(self, handle: PosteriorHandle, data: Dict[str, Any]) -> np.ndarray:
        """Log-likelihood of ``data`` at each posterior draw, shape (S,)."""


# =============================================================================
# PRECONDITIONED PRIOR
# =============================================================================

class PreconditionedPrior:
    """
    Posterior fit on a fixed sample, reused as the prior of every replication.

    The held handle and sample are read-only for the lifetime of the object;
    ``update`` returns new handles.

    Parameters
    ----------
    oracle : InferenceOracle
        Oracle that produced ``handle``.
    handle : PosteriorHandle
        Posterior conditioned on ``sample``.
    sample : dict
        The preconditioning sample.
    """

    def __init__(self, oracle: InferenceOracle, handle: PosteriorHandle, sample: Dict[str, Any]):
        self.oracle = oracle
        self.handle = handle
        self.sample = freeze_dataset(sample)

    @classmethod
    def fit(
        cls,
        oracle: InferenceOracle,
        sample: Dict[str, Any],
        prior_config: Any,
        seed: Optional[int] = None,
    ) -> "PreconditionedPrior":
        """
        Invoke the oracle once on ``sample`` and wrap the result.

        Raises
        ------
        ConfigurationError
            If the sample is malformed or the preconditioning fit does not
            converge. Either makes the whole invocation meaningless.
        """
        if "y" not in sample or len(np.asarray(sample["y"])) == 0:
            raise ConfigurationError("Preconditioning sample must contain a non-empty 'y'.")
        try:
            handle = oracle.fit(sample, prior_config, seed=seed)
        except InferenceFailure as exc:
            raise ConfigurationError(f"Preconditioning fit failed: {exc}") from exc
        if not handle.converged:
            raise ConfigurationError(f"Preconditioning fit did not converge: {handle.message}")
        return cls(oracle, handle, sample)

    @property
    def sample_size(self) -> int:
        return int(len(self.sample["y"]))

    def draw_truth(self, names: Sequence[str], rng: np.random.Generator) -> Dict[str, float]:
        """
        Draw one parameter vector from the preconditioned posterior.

        Sampling is delegated to ``oracle.draw_parameters``.
        """
        return self.oracle.draw_parameters(self.handle, names, rng)

    def update(self, new_data: Dict[str, Any], seed: Optional[int] = None) -> PosteriorHandle:
        """Condition the preconditioned posterior on ``new_data``."""
        return self.oracle.update(self.handle, new_data, seed=seed)


# =============================================================================
# AMORTIZED APPROXIMATOR ADAPTER
# =============================================================================

class ApproximatorOracle(InferenceOracle):
    """
    Oracle backed by an amortized posterior approximator.

    Wraps any object exposing ``sample(conditions=..., num_samples=...)``
    returning a dict of arrays of shape (1, S, 1) per parameter, as BayesFlow
    approximators do. An update conditions the approximator on the pooled
    data of the handle and the new data.

    Parameters
    ----------
    approximator : object
        Trained approximator with a ``sample`` method.
    variables : list of str
        Parameter keys to extract from the approximator's samples.
    loglik_fn : callable
        ``loglik_fn(params, data) -> float`` evaluating the data
        log-likelihood at one parameter dict.
    n_draws : int
        Number of posterior draws S.
    data_keys : list of str, optional
        Keys of per-observation arrays passed as conditions.
        Default: ["y", "X"]
    context_keys : dict of {str: type}, optional
        Context variables with their type converters.
        Default: {"N": int}
    """

    def __init__(
        self,
        approximator,
        variables: List[str],
        loglik_fn: Callable[[Dict[str, float], Dict[str, Any]], float],
        n_draws: int = 1000,
        data_keys: Optional[List[str]] = None,
        context_keys: Optional[Dict[str, type]] = None,
    ):
        if n_draws < 1:
            raise ConfigurationError(f"n_draws must be >= 1, got {n_draws}.")
        self.approximator = approximator
        self.variables = list(variables)
        self.loglik_fn = loglik_fn
        self.n_draws = int(n_draws)
        self.data_keys = data_keys if data_keys is not None else ["y", "X"]
        self.context_keys = context_keys if context_keys is not None else {"N": int}

    def _conditions(self, data: Dict[str, Any]) -> Dict[str, Any]:
        conditions = {}
        for key in self.data_keys:
            if key in data:
                conditions[key] = np.asarray(data[key])[None, ...]
        n_obs = len(np.asarray(data["y"]))
        for key, type_fn in self.context_keys.items():
            if key == "N":
                conditions[key] = type_fn(n_obs)
            elif key in data:
                conditions[key] = type_fn(data[key])
        return conditions

    def _sample(self, data: Dict[str, Any]) -> PosteriorHandle:
        post = self.approximator.sample(conditions=self._conditions(data), num_samples=self.n_draws)
        columns = []
        for name in self.variables:
            arr = np.asarray(post[name], dtype=float).reshape(-1)
            if arr.size != self.n_draws:
                raise InferenceFailure(
                    f"Approximator returned {arr.size} draws for '{name}', expected {self.n_draws}."
                )
            columns.append(arr)
        draws = np.column_stack(columns)
        if not np.all(np.isfinite(draws)):
            return PosteriorHandle(draws, self.variables, data=data, converged=False,
                                   message="non-finite posterior draws")
        return PosteriorHandle(draws, self.variables, data=data)

    def fit(self, data, prior_config=None, seed=None):
        return self._sample(data)

    def update(self, handle, new_data, seed=None):
        if handle.data is None:
            return self._sample(new_data)
        pooled = {}
        for key in set(handle.data) | set(new_data):
            if key in handle.data and key in new_data:
                pooled[key] = np.concatenate([np.asarray(handle.data[key]), np.asarray(new_data[key])])
            else:
                pooled[key] = new_data.get(key, handle.data.get(key))
        return self._sample(pooled)

    def pointwise_loglik(self, handle, data):
        return np.array([
            self.loglik_fn(dict(zip(handle.variables, row)), data)
            for row in handle.draws
        ], dtype=float)
