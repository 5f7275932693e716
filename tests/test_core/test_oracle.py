"""Tests for the oracle contract, preconditioned priors and the approximator adapter."""

import numpy as np
import pytest

from ifs_sbc.core.errors import ConfigurationError, InferenceFailure
from ifs_sbc.core.oracle import (
    ApproximatorOracle,
    InferenceOracle,
    PosteriorHandle,
    PreconditionedPrior,
    freeze_dataset,
)


class MeanOracle(InferenceOracle):
    """Toy oracle whose single variable 'mu' is centred on the mean of y."""

    def __init__(self, n_draws=50, fail=False, converged=True):
        self.n_draws = n_draws
        self.fail = fail
        self.converged = converged

    def _handle(self, y, seed):
        if self.fail:
            raise InferenceFailure("boom")
        rng = np.random.default_rng(seed)
        draws = np.mean(y) + rng.normal(size=(self.n_draws, 1)) / np.sqrt(len(y))
        return PosteriorHandle(draws, ["mu"], state={"y": np.asarray(y)},
                               converged=self.converged, message="stuck")

    def fit(self, data, prior_config, seed=None):
        return self._handle(data["y"], seed)

    def update(self, handle, new_data, seed=None):
        y = np.concatenate([handle.state["y"], new_data["y"]])
        return self._handle(y, seed)

    def pointwise_loglik(self, handle, data):
        y = np.asarray(data["y"])
        return np.array([-0.5 * np.sum((y - mu) ** 2) for mu in handle.draws[:, 0]])


# =====================================================================
# PosteriorHandle
# =====================================================================

class TestPosteriorHandle:
    """Test the immutable posterior handle."""

    def test_draws_read_only(self):
        handle = PosteriorHandle(np.zeros((5, 2)), ["a", "b"])
        with pytest.raises(ValueError):
            handle.draws[0, 0] = 1.0

    def test_does_not_alias_input(self):
        draws = np.zeros((5, 1))
        handle = PosteriorHandle(draws, ["a"])
        draws[0, 0] = 9.0
        assert handle.draws[0, 0] == 0.0

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="shape"):
            PosteriorHandle(np.zeros((5, 2)), ["a"])

    def test_num_draws(self):
        assert PosteriorHandle(np.zeros((7, 1)), ["a"]).num_draws == 7

    def test_state_arrays_read_only(self):
        mean = np.zeros(2)
        handle = PosteriorHandle(np.zeros((5, 2)), ["a", "b"], state={"mean": mean, "sigma": 0.5})
        mean[0] = 9.0
        assert handle.state["mean"][0] == 0.0
        assert handle.state["sigma"] == 0.5
        with pytest.raises(ValueError):
            handle.state["mean"][1] = 1.0

    def test_non_dict_state_kept(self):
        state = object()
        assert PosteriorHandle(np.zeros((5, 1)), ["a"], state=state).state is state

    def test_freeze_dataset(self):
        data = freeze_dataset({"y": np.arange(3.0), "N": 3})
        assert data["N"] == 3
        with pytest.raises(ValueError):
            data["y"][0] = 1.0


# =====================================================================
# InferenceOracle defaults
# =====================================================================

class TestPosteriorDraws:
    """Test the default posterior_draws accessor."""

    def test_selects_columns(self):
        handle = PosteriorHandle(np.array([[1.0, 2.0], [3.0, 4.0]]), ["a", "b"])
        out = MeanOracle().posterior_draws(handle, ["b"])
        assert out.tolist() == [[2.0], [4.0]]

    def test_missing_variable(self):
        handle = PosteriorHandle(np.zeros((2, 1)), ["a"])
        with pytest.raises(KeyError):
            MeanOracle().posterior_draws(handle, ["z"])


# =====================================================================
# PreconditionedPrior
# =====================================================================

class TestPreconditionedPrior:
    """Test fitting and reusing a preconditioned prior."""

    def test_fit_and_update(self):
        sample = {"y": np.full(20, 3.0)}
        precon = PreconditionedPrior.fit(MeanOracle(), sample, None, seed=1)
        assert precon.sample_size == 20
        handle = precon.update({"y": np.full(20, 5.0)}, seed=2)
        assert abs(np.mean(handle.draws) - 4.0) < 0.2
        # The preconditioned posterior itself is unchanged
        assert abs(np.mean(precon.handle.draws) - 3.0) < 0.2

    def test_draw_truth_is_posterior_row(self):
        precon = PreconditionedPrior.fit(MeanOracle(), {"y": np.ones(10)}, None, seed=1)
        truth = precon.draw_truth(["mu"], np.random.default_rng(0))
        assert truth["mu"] in precon.handle.draws[:, 0]

    def test_draw_truth_reproducible(self):
        precon = PreconditionedPrior.fit(MeanOracle(), {"y": np.ones(10)}, None, seed=1)
        t1 = precon.draw_truth(["mu"], np.random.default_rng(3))
        t2 = precon.draw_truth(["mu"], np.random.default_rng(3))
        assert t1 == t2

    def test_sample_is_read_only(self):
        precon = PreconditionedPrior.fit(MeanOracle(), {"y": np.ones(10)}, None, seed=1)
        with pytest.raises(ValueError):
            precon.sample["y"][0] = 2.0

    def test_empty_sample(self):
        with pytest.raises(ConfigurationError):
            PreconditionedPrior.fit(MeanOracle(), {"y": np.array([])}, None)

    def test_failed_fit_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="Preconditioning fit failed"):
            PreconditionedPrior.fit(MeanOracle(fail=True), {"y": np.ones(5)}, None)

    def test_non_converged_fit_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="did not converge"):
            PreconditionedPrior.fit(MeanOracle(converged=False), {"y": np.ones(5)}, None)


# =====================================================================
# ApproximatorOracle
# =====================================================================

class FakeApproximator:
    """Mimics an amortized approximator: posterior centred on mean(y)."""

    def __init__(self, nan=False):
        self.nan = nan
        self.calls = []

    def sample(self, conditions, num_samples):
        self.calls.append(conditions)
        center = float(np.mean(conditions["y"]))
        values = np.full((1, num_samples, 1), np.nan if self.nan else center)
        return {"mu": values}


class TestApproximatorOracle:
    """Test the amortized approximator adapter."""

    def _loglik(self, params, data):
        return float(-np.sum((np.asarray(data["y"]) - params["mu"]) ** 2))

    def test_fit(self):
        approx = FakeApproximator()
        oracle = ApproximatorOracle(approx, ["mu"], self._loglik, n_draws=10)
        handle = oracle.fit({"y": np.array([1.0, 3.0]), "X": np.zeros((2, 1))})
        assert handle.draws.shape == (10, 1)
        assert np.allclose(handle.draws, 2.0)
        assert approx.calls[0]["N"] == 2
        assert approx.calls[0]["y"].shape == (1, 2)

    def test_update_pools_data(self):
        oracle = ApproximatorOracle(FakeApproximator(), ["mu"], self._loglik, n_draws=5)
        handle = oracle.fit({"y": np.array([0.0, 0.0])})
        updated = oracle.update(handle, {"y": np.array([3.0, 3.0])})
        assert np.allclose(updated.draws, 1.5)
        assert len(handle.data["y"]) == 2

    def test_non_finite_draws_not_converged(self):
        oracle = ApproximatorOracle(FakeApproximator(nan=True), ["mu"], self._loglik, n_draws=5)
        assert not oracle.fit({"y": np.ones(3)}).converged

    def test_pointwise_loglik(self):
        oracle = ApproximatorOracle(FakeApproximator(), ["mu"], self._loglik, n_draws=4)
        handle = oracle.fit({"y": np.array([1.0, 1.0])})
        ll = oracle.pointwise_loglik(handle, {"y": np.array([1.0, 1.0])})
        assert ll.shape == (4,)
        assert np.allclose(ll, 0.0)

    def test_invalid_n_draws(self):
        with pytest.raises(ConfigurationError):
            ApproximatorOracle(FakeApproximator(), ["mu"], self._loglik, n_draws=0)
