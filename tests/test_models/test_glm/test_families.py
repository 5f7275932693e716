"""Tests for the synthetic GLM data generator."""

import numpy as np
import pytest

from ifs_sbc.core.errors import ConfigurationError
from ifs_sbc.core.infrastructure import PriorConfig, SimulationSpec
from ifs_sbc.models.glm.families import (
    FAMILIES,
    draw_prior,
    get_family,
    inverse_link,
    linear_predictor,
    log_likelihood,
    simulate_dataset,
    simulate_response,
    validate_simulation,
)


ALL_FAMILIES = ["gamma", "weibull", "lognormal", "beta", "frechet"]


# =====================================================================
# Links and families
# =====================================================================

class TestLinks:
    """Test inverse link functions."""

    def test_log(self):
        assert np.allclose(inverse_link("log", np.array([0.0, 1.0])), [1.0, np.e])

    def test_logit(self):
        assert np.allclose(inverse_link("logit", np.array([0.0])), [0.5])

    def test_inverse(self):
        assert np.allclose(inverse_link("inverse", np.array([2.0])), [0.5])

    def test_identity(self):
        assert np.allclose(inverse_link("identity", np.array([-3.0])), [-3.0])


class TestFamily:
    """Test family registry behaviour."""

    def test_registry_complete(self):
        assert sorted(FAMILIES) == sorted(ALL_FAMILIES)

    def test_beta_clip_inside_unit_interval(self):
        y = get_family(SimulationSpec("beta", 5)).clip(np.array([0.0, 1.0, np.nan]))
        assert np.all((y > 0) & (y < 1))

    def test_mean_clipped_to_support(self):
        spec = SimulationSpec("gamma", 5, link="identity")
        mu = get_family(spec).mean(spec, np.array([-5.0, 2.0]))
        assert mu[0] > 0
        assert mu[1] == 2.0


# =====================================================================
# draw_prior
# =====================================================================

class TestDrawPrior:
    """Test prior draws of latent parameters."""

    def test_parameter_names(self):
        spec = SimulationSpec("gamma", 10, covariate_count=3, group_count=2)
        params = draw_prior(spec, PriorConfig(), np.random.default_rng(0))
        assert list(params) == PriorConfig().parameter_names(spec)

    def test_aux_positive(self):
        rng = np.random.default_rng(1)
        for family in ALL_FAMILIES:
            spec = SimulationSpec(family, 10)
            params = draw_prior(spec, PriorConfig(), rng)
            assert params[spec.aux_name] > 0

    def test_frechet_nu_above_one(self):
        rng = np.random.default_rng(2)
        spec = SimulationSpec("frechet", 10)
        assert all(draw_prior(spec, PriorConfig(), rng)["nu"] > 1 for _ in range(200))

    def test_fixed_aux_not_drawn(self):
        spec = SimulationSpec("lognormal", 10)
        params = draw_prior(spec, PriorConfig(aux_fixed=0.3), np.random.default_rng(0))
        assert "sigma" not in params

    def test_reproducible(self):
        spec = SimulationSpec("weibull", 10, covariate_count=4)
        p1 = draw_prior(spec, PriorConfig(), np.random.default_rng(5))
        p2 = draw_prior(spec, PriorConfig(), np.random.default_rng(5))
        assert p1 == p2

    def test_prior_scale(self):
        rng = np.random.default_rng(3)
        spec = SimulationSpec("gamma", 10)
        draws = [draw_prior(spec, PriorConfig(intercept_scale=2.0), rng)["b_Intercept"] for _ in range(4000)]
        assert abs(np.std(draws) - 2.0) < 0.15


# =====================================================================
# Simulation
# =====================================================================

class TestSimulateDataset:
    """Test pseudo-dataset simulation."""

    @pytest.mark.parametrize("family", ALL_FAMILIES)
    def test_shapes_and_support(self, family):
        spec = SimulationSpec(family, 40, covariate_count=3)
        truth, data = simulate_dataset(spec, PriorConfig(), np.random.default_rng(0))
        assert data["y"].shape == (40,)
        assert data["X"].shape == (40, 3)
        lo, hi = get_family(spec).support
        assert np.all((data["y"] >= lo) & (data["y"] <= hi))
        assert np.all(np.isfinite(data["y"]))

    def test_grouped(self):
        spec = SimulationSpec("gamma", 60, group_count=4)
        truth, data = simulate_dataset(spec, PriorConfig(), np.random.default_rng(0))
        assert data["group"].min() >= 0 and data["group"].max() <= 3
        assert "r_group[4]" in truth

    def test_no_covariates(self):
        spec = SimulationSpec("gamma", 10)
        _, data = simulate_dataset(spec, PriorConfig(), np.random.default_rng(0))
        assert data["X"].shape == (10, 0)

    def test_deterministic(self):
        spec = SimulationSpec("frechet", 25, covariate_count=2)
        t1, d1 = simulate_dataset(spec, PriorConfig(), np.random.default_rng(11))
        t2, d2 = simulate_dataset(spec, PriorConfig(), np.random.default_rng(11))
        assert t1 == t2
        assert np.array_equal(d1["y"], d2["y"])

    def test_given_params(self):
        spec = SimulationSpec("gamma", 2000)
        params = {"b_Intercept": np.log(3.0), "shape": 5.0}
        truth, data = simulate_dataset(spec, PriorConfig(), np.random.default_rng(0), params=params)
        assert truth == params
        assert abs(np.mean(data["y"]) - 3.0) < 0.15

    def test_real_covariates_resampled(self):
        pool = np.arange(20.0).reshape(10, 2)
        spec = SimulationSpec("gamma", 30, covariate_count=2)
        _, data = simulate_dataset(spec, PriorConfig(coef_scale=0.01), np.random.default_rng(0), covariates=pool)
        rows = {tuple(r) for r in pool}
        assert all(tuple(r) in rows for r in data["X"])

    def test_extreme_parameters_stay_finite(self):
        spec = SimulationSpec("gamma", 20, covariate_count=1)
        params = {"b_Intercept": 800.0, "b_x1": 0.0, "shape": 2.0}
        data = simulate_response(spec, params, np.random.default_rng(0))
        assert np.all(np.isfinite(data["y"]))


class TestValidateSimulation:
    """Test generator configuration checks."""

    def test_too_many_covariates(self):
        spec = SimulationSpec("gamma", 10, covariate_count=5)
        with pytest.raises(ConfigurationError, match="only 3 real covariates"):
            validate_simulation(spec, np.zeros((10, 3)))

    def test_malformed_pool(self):
        with pytest.raises(ConfigurationError):
            validate_simulation(SimulationSpec("gamma", 10), np.zeros(5))

    def test_no_pool_ok(self):
        validate_simulation(SimulationSpec("gamma", 10, covariate_count=50))


# =====================================================================
# Likelihood
# =====================================================================

class TestLogLikelihood:
    """Test the summed data log-likelihood."""

    def test_matches_scipy_gamma(self):
        from scipy import stats

        spec = SimulationSpec("gamma", 5)
        data = {"y": np.array([1.0, 2.0, 3.0, 4.0, 5.0]), "X": np.zeros((5, 0))}
        params = {"b_Intercept": np.log(2.0), "shape": 3.0}
        expected = stats.gamma.logpdf(data["y"], a=3.0, scale=2.0 / 3.0).sum()
        assert np.isclose(log_likelihood(spec, data, params), expected)

    def test_true_params_beat_wrong(self):
        spec = SimulationSpec("weibull", 500, covariate_count=1)
        params = {"b_Intercept": 0.5, "b_x1": 0.3, "shape": 2.0}
        _, data = simulate_dataset(spec, PriorConfig(), np.random.default_rng(0), params=params)
        wrong = dict(params, b_Intercept=2.0)
        assert log_likelihood(spec, data, params) > log_likelihood(spec, data, wrong)

    def test_fixed_aux_from_prior(self):
        spec = SimulationSpec("lognormal", 3)
        data = {"y": np.ones(3), "X": np.zeros((3, 0))}
        ll = log_likelihood(spec, data, {"b_Intercept": 0.0}, prior=PriorConfig(aux_fixed=1.0))
        assert np.isclose(ll, 3 * -0.5 * np.log(2 * np.pi))

    def test_missing_aux(self):
        spec = SimulationSpec("lognormal", 3)
        data = {"y": np.ones(3), "X": np.zeros((3, 0))}
        with pytest.raises(ConfigurationError):
            log_likelihood(spec, data, {"b_Intercept": 0.0})

    def test_linear_predictor_grouped(self):
        spec = SimulationSpec("gamma", 3, group_count=2)
        params = {"b_Intercept": 1.0, "r_group[1]": 0.5, "r_group[2]": -0.5}
        data = {"X": np.zeros((3, 0)), "group": np.array([0, 1, 0])}
        assert np.allclose(linear_predictor(spec, params, data), [1.5, 0.5, 1.5])
