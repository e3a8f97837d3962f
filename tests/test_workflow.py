"""Tests for the fit entry point, single trials, and calibration studies.

Fast tests run in optimize mode. The ``slow`` scenarios check that Laplace
intervals of an AR(1) model are close to calibrated over many trials, and that
a large non-negative factorization recovers its mixing proportions up to
relabelling of the templates.

Run: pytest tests/test_workflow.py -v
"""

import warnings

import numpy as np
import pandas as pd
import pytest

from simfitpy.config import OptimizeConfig, ReportConfig, SampleConfig
from simfitpy.data import Dataset
from simfitpy.diagnostics import matched_correlations
from simfitpy.exceptions import ConvergenceWarning, DimensionMismatchError
from simfitpy.model import OptimizationResult
from simfitpy.models.autoregressive import AutoregressiveSimulator, ar_model
from simfitpy.models.factorization import (
    FactorizationSimulator,
    factorization_model,
    random_templates,
)
from simfitpy.models.hierarchical import hierarchical_model
from simfitpy.workflow import calibrate, fit, run_trial

# ── fit ──────────────────────────────────────────────────────────────────────


class TestFit:
    """Single entry point to both fitting modes."""

    def test_optimize(self, ar_data, quiet_optimize_config):
        result = fit(ar_data, ar_model(1), "optimize", quiet_optimize_config)
        assert isinstance(result, OptimizationResult)
        assert result.mode == "optimize"

    def test_unknown_mode(self, ar_data):
        with pytest.raises(ValueError, match="Unknown fitting mode"):
            fit(ar_data, ar_model(1), "variational")

    def test_config_must_match_mode(self, ar_data):
        with pytest.raises(TypeError, match="OptimizeConfig"):
            fit(ar_data, ar_model(1), "optimize", SampleConfig())

    def test_data_checked_before_fitting(self):
        data = Dataset({"y": np.zeros((20, 2))})
        with pytest.raises(DimensionMismatchError):
            fit(data, ar_model(1), "optimize")


# ── Single trials ────────────────────────────────────────────────────────────


class TestRunTrial:
    """Simulate, fit, and compare with the truth."""

    def test_ar1_trial(self, ar_truth):
        trial = run_trial(
            AutoregressiveSimulator(), ar_model(1), ar_truth, 200, mode="optimize", seed=1
        )
        summary = trial.diagnostic.summary
        assert list(summary.index) == ["intercept", "slope[0]", "sigma"]
        assert summary.loc["slope[0]", "truth"] == pytest.approx(0.2)
        assert summary.loc["sigma", "abs_error"] < 0.1
        assert not summary["lower"].isna().any()
        assert trial.dataset.n_obs == 200
        assert trial.diagnostic.mode == "optimize"

    def test_latent_values_join_the_truth(self, ar_truth):
        trial = run_trial("autoregressive", ar_model(1), ar_truth, 50, mode="optimize", seed=2)
        assert "initial" in trial.truth
        np.testing.assert_array_equal(trial.truth["initial"], trial.dataset.latent["initial"])

    def test_reproducible_from_seed(self, ar_truth):
        first = run_trial("autoregressive", ar_model(1), ar_truth, 80, mode="optimize", seed=3)
        second = run_trial("autoregressive", ar_model(1), ar_truth, 80, mode="optimize", seed=3)
        np.testing.assert_array_equal(first.dataset["y"], second.dataset["y"])
        pd.testing.assert_frame_equal(first.diagnostic.summary, second.diagnostic.summary)

    def test_fit_config_seed_is_replaced(self, ar_truth):
        trial = run_trial(
            "autoregressive",
            ar_model(1),
            ar_truth,
            50,
            mode="optimize",
            seed=4,
            fit_config=OptimizeConfig(seed=123, max_iter=500),
        )
        assert trial.fit.config.seed != 123
        assert trial.fit.config.max_iter == 500

    def test_hierarchical_group_means_compared(self, hierarchical_truth):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            trial = run_trial(
                "hierarchical",
                hierarchical_model(6),
                hierarchical_truth,
                60,
                mode="optimize",
                seed=5,
                simulate_options={"n_groups": 6},
            )
        theta = trial.diagnostic.parameter("theta")
        assert len(theta) == 6
        np.testing.assert_array_equal(theta["truth"], trial.dataset.latent["theta"])

    def test_unknown_mode(self, ar_truth):
        with pytest.raises(ValueError, match="Unknown fitting mode"):
            run_trial("autoregressive", ar_model(1), ar_truth, 50, mode="grid")


# ── Calibration ──────────────────────────────────────────────────────────────


class TestCalibrate:
    """Repeated trials aggregated into per-scalar coverage."""

    def test_small_study(self, ar_truth):
        result = calibrate(
            "autoregressive",
            ar_model(1),
            ar_truth,
            60,
            n_trials=3,
            mode="optimize",
            seed=6,
            progress_bar=False,
        )
        assert len(result.trials) == 3
        assert len(result.diagnostics) == 3
        assert result.interval == 0.5
        assert list(result.coverage.columns) == ["coverage", "n_trials", "mean_abs_error"]
        assert list(result.coverage.index) == ["intercept", "slope[0]", "sigma"]
        assert (result.coverage["n_trials"] == 3).all()
        assert 0.0 <= result.coverage_rate <= 1.0

    def test_trials_are_independent(self, ar_truth):
        result = calibrate(
            "autoregressive",
            ar_model(1),
            ar_truth,
            60,
            n_trials=2,
            mode="optimize",
            seed=7,
            progress_bar=False,
        )
        first, second = result.trials
        assert not np.array_equal(first.dataset["y"], second.dataset["y"])

    def test_needs_a_trial(self, ar_truth):
        with pytest.raises(ValueError, match="n_trials"):
            calibrate("autoregressive", ar_model(1), ar_truth, 60, n_trials=0)

    @pytest.mark.slow
    def test_laplace_intervals_close_to_nominal(self, ar_truth):
        result = calibrate(
            "autoregressive",
            ar_model(1),
            ar_truth,
            100,
            n_trials=200,
            mode="optimize",
            seed=8,
            report_config=ReportConfig(interval=0.9, warn=False),
            progress_bar=False,
        )
        assert result.interval == 0.9
        assert result.coverage.loc["slope[0]", "coverage"] >= 0.85
        assert result.coverage.loc["slope[0]", "n_trials"] == 200


# ── Factorization ────────────────────────────────────────────────────────────


@pytest.mark.slow
def test_factorization_recovers_proportions():
    """1000 units by 1000 features, three templates, up to relabelling."""
    truth = {"templates": random_templates(3, 1000, seed=0)}
    data = FactorizationSimulator().simulate(truth, 1000, seed=1)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        result = fit(data, factorization_model(3), "optimize", OptimizeConfig(seed=0))

    # Too many coordinates for a Laplace approximation
    assert result.draws() is None
    correlations = matched_correlations(
        result.estimate["proportions"], data.latent["proportions"], axis=-1
    )
    assert correlations.min() > 0.9
