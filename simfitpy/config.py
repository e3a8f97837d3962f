# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Run configuration for simulation, fitting, and reporting.

Each stage of the workflow takes one frozen dataclass. All fields default to the
values documented in :py:mod:`simfitpy.defaults`; callers override only what
they vary. Because the classes are frozen, a configuration can be shared across
parallel chains or repeated trials without being altered along the way, and it
can be dumped with :py:func:`dataclasses.asdict` for the record.
"""

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from simfitpy.defaults import (
    DEFAULT_DIVERGENCE_THRESH,
    DEFAULT_EARLY_STOP,
    DEFAULT_ESS_THRESH,
    DEFAULT_GRAD_TOLERANCE,
    DEFAULT_INIT_RADIUS,
    DEFAULT_INTERVAL,
    DEFAULT_LAPLACE_DRAWS,
    DEFAULT_LR,
    DEFAULT_MAX_ITER,
    DEFAULT_MAX_LAPLACE_DIM,
    DEFAULT_MAX_LEAPFROG,
    DEFAULT_METRIC,
    DEFAULT_N_CHAINS,
    DEFAULT_N_DRAWS,
    DEFAULT_N_WARMUP,
    DEFAULT_PATH_LENGTH,
    DEFAULT_RHAT_THRESH,
    DEFAULT_TARGET_ACCEPT,
    DEFAULT_TOLERANCE,
)


@dataclass(frozen=True)
class SimulationConfig:
    """Which registered simulator to run, with what seed and options.

    ``options`` are passed as keyword arguments to the simulator's ``simulate``
    method (e.g. ``{"n_series": 3, "missing_fraction": 0.2}``).
    """

    model: str
    seed: Optional[int] = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SampleConfig:
    """Settings for ``sample`` mode (Hamiltonian Monte Carlo)."""

    n_chains: int = DEFAULT_N_CHAINS
    n_warmup: int = DEFAULT_N_WARMUP
    n_draws: int = DEFAULT_N_DRAWS
    seed: Optional[int] = None
    metric: Literal["diag", "dense"] = DEFAULT_METRIC
    target_accept: float = DEFAULT_TARGET_ACCEPT
    path_length: float = DEFAULT_PATH_LENGTH
    max_leapfrog: int = DEFAULT_MAX_LEAPFROG
    init_radius: float = DEFAULT_INIT_RADIUS
    divergence_threshold: float = DEFAULT_DIVERGENCE_THRESH
    max_seconds: Optional[float] = None
    parallel: bool = True
    progress_bar: bool = False

    def __post_init__(self):
        if self.n_chains < 1:
            raise ValueError("n_chains must be a positive integer.")
        if self.n_warmup < 0 or self.n_draws < 1:
            raise ValueError("n_warmup must be >= 0 and n_draws must be >= 1.")
        if not 0.0 < self.target_accept < 1.0:
            raise ValueError("target_accept must lie strictly between 0 and 1.")
        if self.metric not in ("diag", "dense"):
            raise ValueError(f"Unknown metric: {self.metric!r}.")


@dataclass(frozen=True)
class OptimizeConfig:
    """Settings for ``optimize`` mode (posterior-mode search)."""

    optimizer: Literal["lbfgs", "adam"] = "lbfgs"
    max_iter: int = DEFAULT_MAX_ITER
    tolerance: float = DEFAULT_TOLERANCE
    grad_tolerance: float = DEFAULT_GRAD_TOLERANCE
    lr: float = DEFAULT_LR
    early_stop: int = DEFAULT_EARLY_STOP
    seed: Optional[int] = None
    init_radius: float = DEFAULT_INIT_RADIUS
    max_laplace_dim: int = DEFAULT_MAX_LAPLACE_DIM
    laplace_draws: int = DEFAULT_LAPLACE_DRAWS
    progress_bar: bool = False

    def __post_init__(self):
        if self.optimizer not in ("lbfgs", "adam"):
            raise ValueError(f"Unknown optimizer: {self.optimizer!r}.")
        if self.max_iter < 1:
            raise ValueError("max_iter must be a positive integer.")


@dataclass(frozen=True)
class ReportConfig:
    """Settings for the diagnostic reporter."""

    interval: float = DEFAULT_INTERVAL
    rhat_threshold: float = DEFAULT_RHAT_THRESH
    ess_threshold: float = DEFAULT_ESS_THRESH
    warn: bool = True

    def __post_init__(self):
        if not 0.0 < self.interval < 1.0:
            raise ValueError("interval must lie strictly between 0 and 1.")
