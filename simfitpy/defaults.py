# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Default configuration values for SimFitPy package components.

This module centralizes default values used across the simulator, the two
fitting modes, and the diagnostic reporter. The frozen configuration classes in
:py:mod:`simfitpy.config` draw their defaults from here.

The module is organized into logical groups covering:
    - Sampling (HMC) defaults
    - Optimization defaults
    - Diagnostic thresholds and interval widths

Default values cannot be programmatically altered. This documentation serves as a
reference for users and developers to understand the standard configuration used
by SimFitPy.
"""

# Sampling defaults
DEFAULT_N_CHAINS: int = 4
"""Default number of independent HMC chains.

:type: int
"""

DEFAULT_N_WARMUP: int = 500
"""Default number of warmup (burn-in) iterations discarded by every chain.

:type: int
"""

DEFAULT_N_DRAWS: int = 500
"""Default number of post-warmup draws retained by every chain.

:type: int
"""

DEFAULT_TARGET_ACCEPT: float = 0.8
"""Default target acceptance statistic for step-size adaptation.

:type: float
"""

DEFAULT_METRIC: str = "dense"
"""Default metric (mass matrix) adapted during warmup. Either "diag" or "dense".

:type: str
"""

DEFAULT_PATH_LENGTH: float = 2.0
"""Default mean integration time of one HMC trajectory, in metric units.

:type: float
"""

DEFAULT_MAX_LEAPFROG: int = 128
"""Default cap on the number of leapfrog steps in a single trajectory.

:type: int
"""

DEFAULT_DIVERGENCE_THRESH: float = 1000.0
"""Energy error above which a trajectory is flagged as divergent.

:type: float
"""

DEFAULT_INIT_RADIUS: float = 2.0
"""Chains start uniformly in [-radius, radius] on the unconstrained scale.

:type: float
"""

# Optimization defaults
DEFAULT_MAX_ITER: int = 1000
"""Default iteration budget for the posterior-mode search.

:type: int
"""

DEFAULT_TOLERANCE: float = 1e-9
"""Default relative tolerance on the change of the objective between iterations.

:type: float
"""

DEFAULT_GRAD_TOLERANCE: float = 1e-6
"""Default tolerance on the max-abs gradient of the objective.

:type: float
"""

DEFAULT_LR: float = 1.0
"""Default learning rate. L-BFGS uses it as its initial step; Adam users will
typically want something far smaller.

:type: float
"""

DEFAULT_MAX_LINE_SEARCH: int = 25
"""Default number of objective evaluations allowed in one L-BFGS line search.

:type: int
"""

DEFAULT_EARLY_STOP: int = 10
"""Default number of iterations without improvement before Adam stops early.

:type: int
"""

DEFAULT_MAX_LAPLACE_DIM: int = 500
"""Largest unconstrained dimension for which a Laplace approximation is built.

The Hessian costs one backward pass per dimension, so larger models report
point estimates without intervals.

:type: int
"""

DEFAULT_LAPLACE_DRAWS: int = 1000
"""Default number of draws taken from the Laplace approximation.

:type: int
"""

# Diagnostic defaults
DEFAULT_RHAT_THRESH: float = 1.1
"""Default threshold for the between/within-chain variance ratio (R-hat).

Parameters above this threshold are reported as not yet converged.

:type: float
"""

DEFAULT_ESS_THRESH: int = 100
"""Default minimum bulk effective sample size, summed over chains.

:type: int
"""

DEFAULT_INTERVAL: float = 0.5
"""Default probability mass of the equal-tailed credible interval (25th-75th
percentile).

:type: float
"""

DEFAULT_SIMPLEX_ATOL: float = 1e-8
"""Absolute tolerance used when checking that proportion vectors sum to one.

:type: float
"""
