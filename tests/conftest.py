"""Shared fixtures for SimFitPy tests.

Provides ground truths and simulated datasets for the library models, and
small sampler and optimizer configurations that keep the fast tests fast.

Scenarios that run full sampling or many trials are marked ``slow``; skip them
with ``-m "not slow"``.
"""

import pytest

from simfitpy.config import OptimizeConfig, SampleConfig
from simfitpy.data import ParameterSet
from simfitpy.models.autoregressive import AutoregressiveSimulator
from simfitpy.models.hierarchical import HierarchicalSimulator


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: full sampling or calibration scenarios")


# ── Ground truths ────────────────────────────────────────────────────────────


@pytest.fixture
def ar_truth() -> ParameterSet:
    """AR(1) with intercept 5, slope 0.2, and noise 0.5."""
    return ParameterSet(intercept=5.0, slope=[0.2], sigma=0.5)


@pytest.fixture
def hierarchical_truth() -> ParameterSet:
    return ParameterSet(mu=2.0, tau=1.0, sigma=0.5)


# ── Datasets ─────────────────────────────────────────────────────────────────


@pytest.fixture
def ar_data(ar_truth):
    """100 observations of the AR(1) truth."""
    return AutoregressiveSimulator().simulate(ar_truth, 100, seed=11)


@pytest.fixture
def hierarchical_data(hierarchical_truth):
    """48 observations over 8 groups."""
    return HierarchicalSimulator().simulate(hierarchical_truth, 48, seed=5, n_groups=8)


# ── Configurations ───────────────────────────────────────────────────────────


@pytest.fixture
def quick_sample_config() -> SampleConfig:
    """Two short chains run one after the other."""
    return SampleConfig(n_chains=2, n_warmup=150, n_draws=150, seed=7, parallel=False)


@pytest.fixture
def quiet_optimize_config() -> OptimizeConfig:
    return OptimizeConfig(seed=3)
