"""Tests for component matching and the diagnostic reporter.

The reporter only talks to fits through the shared fit-result interface, so
most tests here use small fits with fixed draws. They verify the layout of the
summary, accuracy and coverage against a known truth, alignment of
exchangeable components, and that convergence problems are reported and warned
about without being raised.

Run: pytest tests/test_diagnostics.py -v
"""

import warnings

import numpy as np
import pandas as pd
import pytest
import xarray as xr

from simfitpy.config import ReportConfig
from simfitpy.data import ParameterSet
from simfitpy.diagnostics import (
    SUMMARY_COLUMNS,
    invert_permutation,
    match_components,
    matched_correlations,
    summarize,
)
from simfitpy.exceptions import ConvergenceWarning
from simfitpy.model.results.hmc import ChainResult, SampleResults
from simfitpy.model.results.mle import FitResult
from simfitpy.models.factorization import random_templates


class FixedDrawsFit(FitResult):
    """A sampled fit whose draws are given up front."""

    MODE = "sample"

    def __init__(
        self,
        draws,
        parameter_dims=None,
        exchangeable_dims=(),
        r_hat=None,
        ess_bulk=None,
        complete=True,
    ):
        super().__init__(
            "fixed",
            parameter_dims or {name: () for name in draws},
            exchangeable_dims,
        )
        self._draws = {name: np.asarray(values, dtype=float) for name, values in draws.items()}
        self._r_hat = r_hat
        self._ess_bulk = ess_bulk
        self._complete = complete

    @property
    def is_complete(self):
        return self._complete

    def point_estimates(self):
        return ParameterSet(
            {name: np.median(values, axis=0) for name, values in self._draws.items()}
        )

    def posterior_means(self):
        return ParameterSet(
            {name: values.mean(axis=0) for name, values in self._draws.items()}
        )

    def draws(self):
        return self._draws

    def convergence(self):
        if self._r_hat is None:
            return None
        return {
            "r_hat": xr.Dataset({name: value for name, value in self._r_hat.items()}),
            "ess_bulk": xr.Dataset(
                {name: value for name, value in self._ess_bulk.items()}
            ),
        }


class ModeOnlyFit(FixedDrawsFit):
    """An optimized fit without draws."""

    MODE = "optimize"

    def __init__(self, estimate):
        super().__init__({name: [value] for name, value in estimate.items()})

    def draws(self):
        return None


@pytest.fixture
def normal_draws():
    """4000 standard normal draws of 'mu' and a vector 'beta'."""
    rng = np.random.default_rng(0)
    return {"mu": rng.normal(size=4000), "beta": rng.normal(size=(4000, 2)) + [1.0, -1.0]}


# ── Component matching ───────────────────────────────────────────────────────


class TestMatchComponents:
    """Assignment of inferred components to true components."""

    def test_identity(self):
        truth = random_templates(4, 30, seed=0)
        np.testing.assert_array_equal(match_components(truth, truth), [0, 1, 2, 3])

    def test_permuted(self):
        truth = random_templates(3, 30, seed=1)
        order = np.array([2, 0, 1])
        perm = match_components(truth[order], truth)
        np.testing.assert_array_equal(truth[order][perm], truth)
        np.testing.assert_array_equal(perm, invert_permutation(order))

    def test_noisy_components(self):
        truth = random_templates(3, 50, seed=2)
        noisy = truth[[1, 2, 0]] + np.random.default_rng(0).normal(0, 1e-3, (3, 50))
        np.testing.assert_array_equal(match_components(noisy, truth), [2, 0, 1])

    def test_constant_component_still_a_bijection(self):
        truth = random_templates(3, 10, seed=3)
        inferred = truth.copy()
        inferred[1] = 0.1
        perm = match_components(inferred, truth)
        assert sorted(perm) == [0, 1, 2]

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="equal shape"):
            match_components(np.zeros((3, 4)), np.zeros((2, 4)))

    def test_needs_two_dimensions(self):
        with pytest.raises(ValueError):
            match_components(np.zeros(3), np.zeros(3))

    def test_invert_permutation(self):
        perm = np.array([3, 0, 2, 1])
        np.testing.assert_array_equal(perm[invert_permutation(perm)], np.arange(4))

    def test_matched_correlations_along_columns(self):
        rng = np.random.default_rng(4)
        proportions = rng.dirichlet(np.ones(3), size=200)
        noisy = proportions[:, [2, 0, 1]] + rng.normal(0, 0.01, (200, 3))
        correlations = matched_correlations(noisy, proportions, axis=-1)
        assert correlations.shape == (3,)
        assert correlations.min() > 0.95


# ── Summary layout ───────────────────────────────────────────────────────────


class TestSummary:
    """One row per scalar with the documented columns."""

    def test_columns_and_index(self, normal_draws):
        diagnostic = summarize(FixedDrawsFit(normal_draws))
        assert tuple(diagnostic.summary.columns) == SUMMARY_COLUMNS
        assert list(diagnostic.summary.index) == ["mu", "beta[0]", "beta[1]"]
        assert list(diagnostic.parameter("beta").index) == ["beta[0]", "beta[1]"]
        assert diagnostic.mode == "sample"
        assert diagnostic.interval == 0.5

    def test_interval_bounds(self, normal_draws):
        diagnostic = summarize(FixedDrawsFit(normal_draws), config=ReportConfig(interval=0.5))
        row = diagnostic.summary.loc["mu"]
        assert row["lower"] == pytest.approx(-0.674, abs=0.06)
        assert row["upper"] == pytest.approx(0.674, abs=0.06)
        assert row["lower"] < row["median"] < row["upper"]

    def test_interval_bounds_of_scalars_are_arrays(self, normal_draws):
        lower, upper = FixedDrawsFit(normal_draws).credible_intervals(0.5)["mu"]
        assert isinstance(lower, np.ndarray) and lower.shape == ()
        assert isinstance(upper, np.ndarray) and upper.shape == ()

    def test_without_truth(self, normal_draws):
        diagnostic = summarize(FixedDrawsFit(normal_draws))
        assert diagnostic.summary["truth"].isna().all()
        assert diagnostic.summary["covered"].isna().all()
        assert np.isnan(diagnostic.mean_absolute_error)
        assert np.isnan(diagnostic.coverage_rate)

    def test_without_convergence_statistics(self, normal_draws):
        diagnostic = summarize(FixedDrawsFit(normal_draws))
        assert diagnostic.summary["r_hat"].isna().all()
        assert diagnostic.unconverged == ()
        assert diagnostic.converged

    def test_mode_only_fit(self):
        fit = ModeOnlyFit({"mu": 0.3, "sigma": 1.2})
        diagnostic = summarize(fit, {"mu": 0.0, "sigma": 1.0})
        assert diagnostic.mode == "optimize"
        assert diagnostic.summary["lower"].isna().all()
        assert diagnostic.summary["covered"].isna().all()
        assert diagnostic.summary.loc["mu", "abs_error"] == pytest.approx(0.3)
        assert diagnostic.mean_absolute_error == pytest.approx(0.25)


# ── Accuracy and coverage ────────────────────────────────────────────────────


class TestAgainstTruth:
    """Absolute error and interval coverage given a ground truth."""

    def test_coverage(self, normal_draws):
        truth = {"mu": 0.0, "beta": [1.0, 5.0]}
        diagnostic = summarize(FixedDrawsFit(normal_draws), truth)
        summary = diagnostic.summary
        assert summary.loc["mu", "covered"]
        assert summary.loc["beta[0]", "covered"]
        assert not summary.loc["beta[1]", "covered"]
        assert diagnostic.coverage_rate == pytest.approx(2 / 3)

    def test_absolute_error(self, normal_draws):
        diagnostic = summarize(FixedDrawsFit(normal_draws), {"mu": 2.0})
        summary = diagnostic.summary
        assert summary.loc["mu", "truth"] == 2.0
        assert summary.loc["mu", "abs_error"] == pytest.approx(
            abs(np.median(normal_draws["mu"]) - 2.0)
        )
        assert pd.isna(summary.loc["beta[0]", "abs_error"])

    def test_extra_truth_is_ignored(self, normal_draws):
        diagnostic = summarize(FixedDrawsFit(normal_draws), {"mu": 0.0, "initial": [3.0]})
        assert "initial" not in diagnostic.summary["parameter"].values

    def test_truth_of_wrong_shape(self, normal_draws):
        diagnostic = summarize(FixedDrawsFit(normal_draws), {"beta": [1.0, 2.0, 3.0]})
        assert diagnostic.summary["truth"].isna().all()
        assert any("shape" in message for message in diagnostic.warnings)

    def test_exchangeable_components_aligned(self):
        rng = np.random.default_rng(5)
        templates = random_templates(3, 6, seed=0)
        proportions = rng.dirichlet(np.ones(3), size=5)
        order = [2, 0, 1]

        # Draws of relabelled components with a little jitter
        draws = {
            "templates": templates[order] + rng.normal(0, 1e-6, (50, 3, 6)),
            "proportions": proportions[:, order] + rng.normal(0, 1e-6, (50, 5, 3)),
        }
        fit = FixedDrawsFit(
            draws,
            parameter_dims={"templates": ("K", "F"), "proportions": ("n", "K")},
            exchangeable_dims=("K",),
        )
        diagnostic = summarize(fit, {"templates": templates, "proportions": proportions})
        np.testing.assert_array_equal(diagnostic.permutations["K"], [1, 2, 0])
        assert diagnostic.summary["abs_error"].max() < 1e-4
        assert diagnostic.coverage_rate > 0.0

    def test_no_alignment_without_truth(self):
        draws = {"templates": np.tile(random_templates(2, 4, seed=0), (10, 1, 1))}
        fit = FixedDrawsFit(
            draws, parameter_dims={"templates": ("K", "F")}, exchangeable_dims=("K",)
        )
        assert summarize(fit).permutations == {}


# ── Convergence ──────────────────────────────────────────────────────────────


class TestConvergence:
    """Convergence problems are reported and warned about, never raised."""

    def make_fit(self, normal_draws, r_hat_mu, ess_mu=1000.0, **kwargs):
        return FixedDrawsFit(
            normal_draws,
            r_hat={"mu": r_hat_mu, "beta": ("beta_dim_0", [1.0, 1.0])},
            ess_bulk={"mu": ess_mu, "beta": ("beta_dim_0", [1000.0, 1000.0])},
            **kwargs,
        )

    def test_converged(self, normal_draws):
        with warnings.catch_warnings():
            warnings.simplefilter("error", ConvergenceWarning)
            diagnostic = summarize(self.make_fit(normal_draws, 1.001))
        assert diagnostic.converged
        assert diagnostic.summary.loc["mu", "r_hat"] == pytest.approx(1.001)
        assert diagnostic.summary.loc["beta[1]", "ess_bulk"] == 1000.0

    def test_high_r_hat_warns(self, normal_draws):
        with pytest.warns(ConvergenceWarning, match="R-hat"):
            diagnostic = summarize(self.make_fit(normal_draws, 1.5))
        assert diagnostic.unconverged == ("mu",)
        assert not diagnostic.converged
        assert any("R-hat" in message for message in diagnostic.warnings)

    def test_low_ess_warns(self, normal_draws):
        with pytest.warns(ConvergenceWarning, match="ESS"):
            diagnostic = summarize(self.make_fit(normal_draws, 1.0, ess_mu=20.0))
        assert diagnostic.converged

    def test_warnings_can_be_silenced(self, normal_draws):
        with warnings.catch_warnings():
            warnings.simplefilter("error", ConvergenceWarning)
            diagnostic = summarize(
                self.make_fit(normal_draws, 1.5), config=ReportConfig(warn=False)
            )
        assert diagnostic.unconverged == ("mu",)

    def test_incomplete_fit(self, normal_draws):
        fit = self.make_fit(normal_draws, 1.0, complete=False)
        fit.notes.append("Chain 1 stopped early (cancelled).")
        diagnostic = summarize(fit)
        assert not diagnostic.complete
        assert not diagnostic.converged
        assert "Chain 1 stopped early (cancelled)." in diagnostic.warnings


# ── Chain alignment ──────────────────────────────────────────────────────────


def chain_result(chain, draws):
    n_draws = len(next(iter(draws.values())))
    return ChainResult(
        chain=chain,
        status="complete",
        step_size=0.1,
        n_divergent=0,
        elapsed=1.0,
        n_draws=n_draws,
        n_warmup=0,
        draws=draws,
        stats={"lp": np.zeros(n_draws), "diverging": np.zeros(n_draws, dtype=bool)},
    )


class TestChainAlignment:
    """Chains of a sampled fit may settle on different component labels."""

    def make_results(self, orders):
        rng = np.random.default_rng(6)
        templates = random_templates(3, 6, seed=0)
        chains = [
            chain_result(
                i, {"templates": templates[order] + rng.normal(0, 1e-3, (200, 3, 6))}
            )
            for i, order in enumerate(orders)
        ]
        results = SampleResults.from_chains(
            chains,
            model_name="templates",
            parameter_dims={"templates": ("K", "F")},
            exchangeable_dims=("K",),
        )
        return results, templates

    def test_disagreeing_chains_aligned_before_pooling(self):
        results, templates = self.make_results([[0, 1, 2], [2, 0, 1]])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            diagnostic = summarize(results, {"templates": templates})
        assert diagnostic.summary["abs_error"].max() < 0.01
        assert diagnostic.summary["r_hat"].max() < 1.1
        assert diagnostic.converged
        assert any("disagree on the labels of 'K'" in m for m in diagnostic.warnings)
        np.testing.assert_array_equal(diagnostic.permutations["K"], [0, 1, 2])

    def test_agreeing_chains_pooled_directly(self):
        results, templates = self.make_results([[2, 0, 1], [2, 0, 1]])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            diagnostic = summarize(results, {"templates": templates})
        assert not any("disagree" in m for m in diagnostic.warnings)
        np.testing.assert_array_equal(diagnostic.permutations["K"], [1, 2, 0])
        assert diagnostic.summary["abs_error"].max() < 0.01

    def test_relabel_chains(self):
        results, templates = self.make_results([[0, 1, 2], [2, 0, 1]])
        relabelled = results.relabel_chains(
            {"K": [np.arange(3), invert_permutation([2, 0, 1])]}
        )
        medians = relabelled.chain_point_estimates()
        np.testing.assert_allclose(medians[1]["templates"], templates, atol=1e-3)
        assert relabelled.chains == results.chains

    def test_relabel_needs_one_permutation_per_chain(self):
        results, _ = self.make_results([[0, 1, 2], [0, 1, 2]])
        with pytest.raises(ValueError, match="permutations"):
            results.relabel_chains({"K": [np.arange(3)]})

    def test_fits_without_chains_cannot_be_relabelled(self):
        with pytest.raises(NotImplementedError):
            ModeOnlyFit({"mu": 0.0}).relabel_chains({})
