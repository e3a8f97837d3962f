"""Tests for binding specifications to data and for posterior-mode search.

Verifies the dimension checks made when a model is bound, the log density of
partially observed data (masked entries contribute exactly nothing, so the
value equals the log density of the dataset restricted to observed entries),
constraint handling in unconstrained space, and the optimizer against the
closed-form least-squares solution of an AR(1) model.

Run: pytest tests/test_model.py -v
"""

import warnings

import numpy as np
import pytest
import torch

from simfitpy.config import OptimizeConfig
from simfitpy.data import Dataset, ParameterSet
from simfitpy.exceptions import ConvergenceWarning, DimensionMismatchError
from simfitpy.model import (
    Field,
    Likelihood,
    Model,
    ModelSpec,
    MultivariateNormal,
    Normal,
    OptimizationResult,
    Parameter,
)
from simfitpy.models.autoregressive import ar_model
from simfitpy.models.factorization import (
    FactorizationSimulator,
    factorization_model,
    random_templates,
)
from simfitpy.models.hierarchical import hierarchical_model
from simfitpy.models.spatial import GaussianProcessSimulator, gaussian_process_model
from simfitpy.models.state_space import StateSpaceSimulator, state_space_model


def ols_ar1(y: np.ndarray) -> tuple[float, float]:
    """Least-squares intercept and slope of y[t] on y[t-1]."""
    design = np.column_stack([np.ones(len(y) - 1), y[:-1]])
    coef, *_ = np.linalg.lstsq(design, y[1:], rcond=None)
    return float(coef[0]), float(coef[1])


def correlated_pair_model() -> ModelSpec:
    """Bivariate normal rows whose correlation is the only parameter."""

    def covariance(params, data):
        one = torch.ones((), dtype=torch.float64)
        rho = params["rho"]
        return torch.stack([torch.stack([one, rho]), torch.stack([rho, one])])

    return ModelSpec(
        "correlated_pair",
        parameters=[Parameter("rho", prior=Normal(0.0, 1.0))],
        likelihood=[
            Likelihood(
                "y", MultivariateNormal(loc=[0.0, 0.0], covariance_matrix=covariance)
            )
        ],
        data=[Field("y", ("n", 2))],
    )


# ── Binding ──────────────────────────────────────────────────────────────────


class TestBinding:
    """Data must match the declared fields before anything is computed."""

    def test_dims_resolved(self, hierarchical_data):
        model = Model(hierarchical_model(8), hierarchical_data)
        assert model.dims == {"n": 48, "J": 8}
        assert model.parameter_shapes["theta_raw"] == (8,)
        assert model.parameter_shapes["sigma"] == ()

    def test_missing_field(self, ar_data):
        with pytest.raises(DimensionMismatchError, match="group"):
            Model(hierarchical_model(8), ar_data)

    def test_wrong_rank(self):
        data = Dataset({"y": np.zeros((10, 2))})
        with pytest.raises(DimensionMismatchError, match="dimensions"):
            Model(ar_model(1), data)

    def test_wrong_fixed_size(self):
        data = Dataset({"y": np.zeros(10)}, predictors={"coords": np.zeros((10, 3))})
        with pytest.raises(DimensionMismatchError, match="coords"):
            Model(gaussian_process_model(), data)

    def test_dimension_bound_by_data(self):
        data = Dataset({"counts": np.zeros((10, 5)), "depth": np.ones(10)})
        spec = factorization_model(3)
        model = Model(spec, data)
        assert model.dims["F"] == 5
        assert model.parameter_shapes["templates"] == (3, 5)

    def test_missing_entries_not_allowed(self, ar_data):
        mask = np.ones(ar_data.n_obs, dtype=bool)
        mask[10] = False
        with pytest.raises(DimensionMismatchError, match="fully observed"):
            Model(ar_model(1), ar_data.with_missing("y", mask))

    def test_missing_entries_filled(self, hierarchical_data):
        mask = np.ones(hierarchical_data.n_obs, dtype=bool)
        mask[:3] = False
        model = Model(hierarchical_model(8), hierarchical_data.with_missing("y", mask))
        assert torch.all(model.data_tensors["y"][:3] == 0)
        assert model.masks["y"].sum() == hierarchical_data.n_obs - 3
        assert "group" not in model.masks


# ── Unconstrained space ──────────────────────────────────────────────────────


class TestUnconstrainedSpace:
    """Compiled modules map unconstrained vectors onto the constrained space."""

    def test_dimension_counts_simplex_coordinates(self):
        data = FactorizationSimulator().simulate(
            {"templates": random_templates(3, 6, seed=0)}, 10, seed=0
        )
        model = Model(factorization_model(3), data)
        assert model.to_pytorch(bijective=True, seed=0).dim == 10 * 2 + 3 * 5
        assert model.to_pytorch(bijective=False, seed=0).dim == 10 * 3 + 3 * 6

    def test_constrained_draws_respect_constraints(self, hierarchical_data):
        module = Model(hierarchical_model(8), hierarchical_data).to_pytorch(seed=0)
        z = torch.randn(5, module.dim, dtype=torch.float64)
        draws = module.constrain_draws(z)
        assert draws["sigma"].shape == (5,)
        assert (draws["sigma"] > 0).all() and (draws["tau"] > 0).all()
        np.testing.assert_allclose(
            draws["theta"],
            draws["mu"][:, None] + draws["tau"][:, None] * draws["theta_raw"],
        )

    def test_init_is_respected(self, ar_data):
        init = ParameterSet(intercept=4.0, slope=[0.3], sigma=0.7)
        module = Model(ar_model(1), ar_data).to_pytorch(init=init)
        params = module.export_params()
        np.testing.assert_allclose(params["sigma"], 0.7)
        np.testing.assert_allclose(params["slope"], [0.3])

    def test_seeded_initialization(self, ar_data):
        model = Model(ar_model(1), ar_data)
        first = model.to_pytorch(seed=5).flatten()
        second = model.to_pytorch(seed=5).flatten()
        assert torch.equal(first, second)
        assert first.abs().max() <= 2.0

    def test_unflatten_scalar_parameters(self, ar_data):
        module = Model(ar_model(1), ar_data).to_pytorch(seed=0)
        parts = module.unflatten(module.flatten())
        assert parts["sigma"].shape == ()
        assert parts["slope"].shape == (1,)
        batch = module.unflatten(torch.zeros(4, module.dim, dtype=torch.float64))
        assert batch["sigma"].shape == (4,)
        assert batch["slope"].shape == (4, 1)

    def test_set_position(self, ar_data):
        module = Model(ar_model(1), ar_data).to_pytorch(seed=0)
        z = torch.tensor([1.0, 0.5, 0.0], dtype=torch.float64)
        module.set_position(z)
        assert torch.equal(module.flatten(), z)
        np.testing.assert_allclose(module.export_params()["sigma"], 1.0)

    def test_jacobian_of_log_transform(self, ar_data):
        module = Model(ar_model(1), ar_data).to_pytorch(seed=0)
        z = module.flatten()
        difference = module.log_density(z, jacobian=True) - module.log_density(z)
        # Only sigma is transformed (sigma = exp(z_sigma))
        assert torch.isclose(difference, z[-1])


# ── Missing data ─────────────────────────────────────────────────────────────


class TestMissingData:
    """Masked entries contribute nothing to the log density."""

    def test_univariate_equals_restricted(self, hierarchical_data):
        mask = np.ones(hierarchical_data.n_obs, dtype=bool)
        mask[[1, 7, 20, 33]] = False
        spec = hierarchical_model(8)
        masked = Model(spec, hierarchical_data.with_missing("y", mask)).to_pytorch(seed=0)
        restricted = Model(spec, hierarchical_data.subset(mask)).to_pytorch(seed=0)
        z = masked.flatten()
        assert torch.isclose(
            masked.log_density(z, jacobian=True),
            restricted.log_density(z, jacobian=True),
            rtol=1e-12,
        )

    def test_missing_values_do_not_matter(self, hierarchical_data):
        mask = np.ones(hierarchical_data.n_obs, dtype=bool)
        mask[:5] = False
        spec = hierarchical_model(8)
        module = Model(spec, hierarchical_data.with_missing("y", mask)).to_pytorch(seed=0)
        z = module.flatten()
        before = module.log_density(z)
        module.model.data_tensors["y"][:5] = 1e6
        assert torch.equal(before, module.log_density(z))

    def test_multivariate_normal_marginalized(self):
        truth = {"mean": 1.0, "amplitude": 1.0, "length_scale": 0.3, "noise": 0.2}
        data = GaussianProcessSimulator().simulate(truth, 25, seed=2)
        mask = np.ones(25, dtype=bool)
        mask[[0, 4, 11]] = False
        spec = gaussian_process_model()
        masked = Model(spec, data.with_missing("y", mask)).to_pytorch(seed=0)
        restricted = Model(spec, data.subset(mask)).to_pytorch(seed=0)
        z = masked.flatten()
        assert torch.isclose(masked.log_density(z), restricted.log_density(z), rtol=1e-10)

    def test_state_space_masked_rows(self):
        truth = {"intercept": 1.0, "slope": 0.7, "process_sigma": 0.5, "obs_sigma": 0.3}
        data = StateSpaceSimulator().simulate(truth, 20, seed=0, n_series=2)
        mask = np.ones((20, 2), dtype=bool)
        mask[3, 0] = mask[8, :] = False
        module = Model(state_space_model(2), data.with_missing("y", mask)).to_pytorch(
            seed=0
        )

        # Recompute by hand from the observed entries only
        z = module.flatten()
        params, _ = module.constrain(module.unflatten(z))
        state, obs_sigma = params["state"], params["obs_sigma"]
        y = torch.from_numpy(np.nan_to_num(data["y"]))
        observed = torch.from_numpy(mask)
        expected = torch.distributions.Normal(state[:, None], obs_sigma).log_prob(y)[
            observed
        ].sum()
        initial = torch.distributions.Normal(
            torch.tensor(0.0, dtype=torch.float64), torch.tensor(10.0, dtype=torch.float64)
        )
        expected = expected + initial.log_prob(state[0])
        expected = expected + torch.distributions.Normal(
            params["intercept"] + params["slope"] * state[:-1], params["process_sigma"]
        ).log_prob(state[1:]).sum()
        expected = expected + sum(
            param.prior.build(params, {}).log_prob(params[param.name]).sum()
            for param in module.model.spec.parameters
            if param.prior is not None
        )
        assert torch.isclose(module.log_density(z), expected, rtol=1e-12)


# ── Optimization ─────────────────────────────────────────────────────────────


class TestOptimize:
    """Posterior-mode search with L-BFGS and Adam."""

    def test_ar1_matches_least_squares(self, ar_data, quiet_optimize_config):
        result = Model(ar_model(1), ar_data).optimize(quiet_optimize_config)
        intercept, slope = ols_ar1(ar_data["y"])
        assert isinstance(result, OptimizationResult)
        assert result.converged
        assert result.error is None
        assert abs(float(result.estimate["slope"][0]) - slope) < 0.02
        assert abs(float(result.estimate["intercept"]) - intercept) < 0.1
        assert result.mode == "optimize"

    def test_search_leaves_the_starting_point(self, ar_data, quiet_optimize_config):
        model = Model(ar_model(1), ar_data)
        start = model.to_pytorch(bijective=False, seed=quiet_optimize_config.seed)
        result = model.optimize(quiet_optimize_config)
        losses = result.losses["-log density"]
        assert result.n_iter > 1
        assert losses.iloc[-1] < losses.iloc[0] - 1.0
        assert float(result.estimate["intercept"]) != pytest.approx(
            float(start.export_params()["intercept"])
        )

    def test_losses_recorded(self, ar_data, quiet_optimize_config):
        result = Model(ar_model(1), ar_data).optimize(quiet_optimize_config)
        assert list(result.losses.columns) == ["-log density", "iteration"]
        assert len(result.losses) == result.n_iter + 1
        assert result.objective == pytest.approx(-result.losses["-log density"].iloc[-1])

    def test_unconverged_is_reported_not_raised(self, ar_data):
        config = OptimizeConfig(max_iter=1, seed=0)
        with pytest.warns(ConvergenceWarning, match="did not converge"):
            result = Model(ar_model(1), ar_data).optimize(config)
        assert not result.converged
        assert result.error is not None
        assert result.error.n_iter == 1
        assert result.notes

    def test_covariance_invalid_at_start(self):
        data = Dataset({"y": np.random.default_rng(0).normal(size=(50, 2))})
        model = Model(correlated_pair_model(), data)
        with pytest.warns(ConvergenceWarning, match="could not be evaluated"):
            result = model.optimize(OptimizeConfig(seed=0), init=ParameterSet(rho=2.0))
        assert not result.converged
        assert result.n_iter == 0
        assert result.error is not None
        assert result.draws() is None
        assert any("objective is not finite" in note for note in result.notes)

    def test_covariance_failure_during_search_is_reported(self):
        rng = np.random.default_rng(1)
        x = rng.normal(size=200)
        data = Dataset({"y": np.column_stack([x, x + rng.normal(0, 1e-4, 200)])})
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            result = Model(correlated_pair_model(), data).optimize(
                OptimizeConfig(seed=0), init=ParameterSet(rho=0.0)
            )
        assert isinstance(result, OptimizationResult)
        assert abs(float(result.estimate["rho"])) < 1
        assert np.isfinite(result.objective)
        assert len(result.losses) == result.n_iter + 1

    def test_adam(self, ar_data):
        config = OptimizeConfig(optimizer="adam", lr=0.05, max_iter=3000, early_stop=50, seed=0)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            result = Model(ar_model(1), ar_data).optimize(config)
        losses = result.losses["-log density"]
        assert result.n_iter > 0
        assert losses.iloc[-1] < losses.iloc[0]
        assert float(result.estimate["sigma"]) > 0

    def test_laplace_intervals(self, ar_data, quiet_optimize_config):
        result = Model(ar_model(1), ar_data).optimize(quiet_optimize_config)
        draws = result.draws()
        assert draws["slope"].shape == (quiet_optimize_config.laplace_draws, 1)
        lower, upper = result.credible_intervals(0.9)["slope"]
        assert lower[0] < result.estimate["slope"][0] < upper[0]
        assert (draws["sigma"] > 0).all()

    def test_laplace_skipped_for_large_models(self, ar_data):
        config = OptimizeConfig(seed=0, max_laplace_dim=2)
        result = Model(ar_model(1), ar_data).optimize(config)
        assert result.draws() is None
        assert result.credible_intervals(0.5) is None
        assert any("Laplace approximation skipped" in note for note in result.notes)

    def test_inference_object(self, ar_data, quiet_optimize_config, tmp_path):
        result = Model(ar_model(1), ar_data).optimize(quiet_optimize_config)
        inference_obj = result.get_inference_obj()
        assert {"posterior", "observed_data", "optimization_stats"} <= set(
            inference_obj.groups()
        )
        result.save_netcdf(str(tmp_path / "ar1.nc"))
        assert (tmp_path / "ar1.nc").exists()
