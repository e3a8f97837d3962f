# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Hamiltonian Monte Carlo over the unconstrained space of a model.

Each chain runs static-length HMC with a jittered number of leapfrog steps:

    - During warmup, the step size is tuned by dual averaging toward the target
      acceptance statistic, and the metric (diagonal or dense) is estimated over
      a series of doubling windows, with the step size re-initialized after
      every metric update.
    - After warmup, the step size and metric are frozen and every transition is
      retained.

A transition is marked divergent when the energy error along the trajectory
exceeds ``divergence_threshold``; the trajectory is then abandoned and the
chain stays where it was.

Every chain owns its random streams (one NumPy and one PyTorch generator), so
chains are independent of one another and of the order in which threads run
them. A shared :py:class:`threading.Event` and a wall-clock limit allow chains
to be stopped early; such chains return their partial results marked with the
reason they stopped.
"""

from __future__ import annotations

import math
import threading
import time

from typing import Optional, TYPE_CHECKING

import numpy as np
import torch

from tqdm import tqdm

from simfitpy.model.results.hmc import ChainResult

if TYPE_CHECKING:
    from simfitpy.config import SampleConfig
    from simfitpy.data import ParameterSet
    from simfitpy.model.nn_module import PyTorchModel

# Stan's dual-averaging constants
GAMMA = 0.05
T0 = 10.0
KAPPA = 0.75

# Warmup layout (fractions of warmup, and the first slow window length)
INIT_BUFFER = 0.15
TERM_BUFFER = 0.1
BASE_WINDOW = 25


def adaptation_windows(n_warmup: int) -> list[tuple[int, int]]:
    """Metric adaptation windows as (start, end) warmup iterations.

    Warmup opens with a fast interval tuning only the step size, then runs slow
    windows of doubling length over which the metric is estimated, and closes
    with a second fast interval. The last slow window is stretched to fill the
    space before the closing interval. Short warmups (under 20 iterations)
    adapt the step size only.

    Example:
        >>> adaptation_windows(500)
        [(75, 100), (100, 150), (150, 250), (250, 450)]
    """
    if n_warmup < 20:
        return []
    start = int(INIT_BUFFER * n_warmup)
    slow_end = n_warmup - int(TERM_BUFFER * n_warmup)
    size = min(BASE_WINDOW, slow_end - start)
    windows = []
    while start < slow_end:
        end = start + size
        if end + 2 * size > slow_end:
            end = slow_end
        windows.append((start, end))
        start = end
        size *= 2
    return windows


def estimate_metric(positions: np.ndarray, dense: bool) -> np.ndarray:
    """Regularized estimate of the inverse metric from warmup positions.

    The sample (co)variance is shrunk toward a small multiple of the identity,
    with weight decreasing in the number of positions.
    """
    n = positions.shape[0]
    weight = n / (n + 5.0)
    jitter = 1e-3 * 5.0 / (n + 5.0)
    if dense:
        covariance = np.atleast_2d(np.cov(positions, rowvar=False))
        return weight * covariance + jitter * np.eye(positions.shape[1])
    return weight * positions.var(axis=0, ddof=1) + jitter


class DualAveraging:
    """Dual-averaging step-size adaptation (Hoffman & Gelman, 2014).

    :param step_size: Initial step size; the scheme shrinks toward ten times it
    :type step_size: float
    :param target_accept: Target mean acceptance statistic
    :type target_accept: float
    """

    def __init__(self, step_size: float, target_accept: float):
        self.mu = math.log(10 * step_size)
        self.target = target_accept
        self.counter = 0
        self.h_bar = 0.0
        self.log_step = math.log(step_size)
        self.log_step_bar = 0.0

    def update(self, accept_stat: float) -> float:
        """Record one acceptance statistic and return the next step size."""
        self.counter += 1
        eta = 1.0 / (self.counter + T0)
        self.h_bar = (1 - eta) * self.h_bar + eta * (self.target - accept_stat)
        self.log_step = self.mu - math.sqrt(self.counter) / GAMMA * self.h_bar
        weight = self.counter ** (-KAPPA)
        self.log_step_bar = weight * self.log_step + (1 - weight) * self.log_step_bar
        return math.exp(self.log_step)

    @property
    def final_step_size(self) -> float:
        """Averaged step size used once adaptation ends."""
        return math.exp(self.log_step_bar)


class HMCChain:
    """One HMC chain over the unconstrained space of a compiled model.

    :param module: Compiled model. Only its :py:meth:`log_density` is used, so
        one module may be shared by several chains.
    :type module: PyTorchModel
    :param config: Sampler settings
    :type config: SampleConfig
    :param chain: Index of the chain
    :type chain: int
    :param rng: NumPy generator owned by this chain (jitter and acceptance)
    :type rng: np.random.Generator
    :param generator: PyTorch generator owned by this chain (initialization and
        momenta)
    :type generator: torch.Generator
    :param cancel: Event which, once set, stops the chain at the next iteration.
        Defaults to None.
    :type cancel: Optional[threading.Event]
    :param init: Initial values for some or all parameters. Defaults to None.
    :type init: Optional[ParameterSet]
    """

    def __init__(
        self,
        module: "PyTorchModel",
        config: "SampleConfig",
        chain: int,
        rng: np.random.Generator,
        generator: torch.Generator,
        cancel: Optional[threading.Event] = None,
        init: Optional["ParameterSet"] = None,
    ):
        self.module = module
        self.config = config
        self.chain = chain
        self.rng = rng
        self.generator = generator
        self.cancel = cancel
        self.init = init
        self.dim = module.dim
        self.dense = config.metric == "dense"

        # Identity metric until warmup estimates one
        self._set_metric(np.eye(self.dim) if self.dense else np.ones(self.dim))

    def _set_metric(self, inv_metric: np.ndarray) -> None:
        self.inv_metric = torch.as_tensor(inv_metric, dtype=torch.float64)
        if self.dense:
            self.inv_metric_tril = torch.linalg.cholesky(self.inv_metric)
        else:
            self.inv_metric_sqrt = self.inv_metric.sqrt()

    def potential(self, z: torch.Tensor) -> tuple[float, torch.Tensor]:
        """Log density (with Jacobian) and its gradient at `z`."""
        z = z.detach().requires_grad_(True)
        try:
            log_density = self.module.log_density(z, jacobian=True)
        except torch.linalg.LinAlgError:
            # A covariance built from the parameters lost positive-definiteness
            return -math.inf, torch.zeros_like(z)
        (grad,) = torch.autograd.grad(log_density, z)
        return log_density.item(), grad

    def _momentum(self) -> torch.Tensor:
        noise = torch.randn(self.dim, generator=self.generator, dtype=torch.float64)
        if self.dense:
            # p ~ N(0, M) with M the inverse of inv_metric = L L^T
            return torch.linalg.solve_triangular(
                self.inv_metric_tril.T, noise[:, None], upper=True
            )[:, 0]
        return noise / self.inv_metric_sqrt

    def _velocity(self, p: torch.Tensor) -> torch.Tensor:
        if self.dense:
            return self.inv_metric @ p
        return self.inv_metric * p

    def _kinetic(self, p: torch.Tensor) -> float:
        return 0.5 * float(p @ self._velocity(p))

    def _leapfrog(
        self,
        z: torch.Tensor,
        p: torch.Tensor,
        grad: torch.Tensor,
        step_size: float,
        n_steps: int,
        energy0: float,
    ) -> tuple[torch.Tensor, torch.Tensor, float, torch.Tensor, int, bool]:
        """Integrate a trajectory, stopping early if it diverges."""
        log_density = float("nan")
        for step in range(1, n_steps + 1):
            p = p + 0.5 * step_size * grad
            z = z + step_size * self._velocity(p)
            log_density, grad = self.potential(z)
            p = p + 0.5 * step_size * grad

            # Divergence check
            energy = -log_density + self._kinetic(p)
            if not math.isfinite(energy) or energy - energy0 > self.config.divergence_threshold:
                return z, p, log_density, grad, step, True
        return z, p, log_density, grad, n_steps, False

    def _find_step_size(
        self, z: torch.Tensor, log_density: float, grad: torch.Tensor, step_size: float
    ) -> float:
        """Heuristic for a reasonable step size (Hoffman & Gelman, 2014, Alg. 4)."""
        p = self._momentum()
        energy0 = -log_density + self._kinetic(p)

        def log_accept(eps: float) -> float:
            _, p_new, lp_new, _, _, diverged = self._leapfrog(
                z, p, grad, eps, 1, energy0
            )
            if diverged:
                return -math.inf
            return energy0 - (-lp_new + self._kinetic(p_new))

        direction = 1 if log_accept(step_size) > math.log(0.5) else -1
        for _ in range(50):
            new_step = step_size * (2.0**direction)
            accept = log_accept(new_step)
            if (direction == 1 and not accept > math.log(0.5)) or (
                direction == -1 and not accept < math.log(0.5)
            ):
                break
            step_size = new_step
        return step_size

    def _initialize(self) -> tuple[torch.Tensor, float, torch.Tensor]:
        """Draw a starting point with a finite log density and gradient."""
        if self.init is not None:
            z = self.module.flatten()
            log_density, grad = self.potential(z)
            if math.isfinite(log_density) and torch.isfinite(grad).all():
                return z, log_density, grad
        for _ in range(100):
            z = (
                torch.rand(self.dim, generator=self.generator, dtype=torch.float64) * 2
                - 1
            ) * self.config.init_radius
            log_density, grad = self.potential(z)
            if math.isfinite(log_density) and torch.isfinite(grad).all():
                return z, log_density, grad
        raise RuntimeError(
            f"Chain {self.chain} could not find a starting point with a finite log "
            "density after 100 attempts."
        )

    def run(self) -> ChainResult:
        """Run warmup and sampling, returning the retained draws.

        :returns: Draws, sampler statistics, and the chain's final status
        :rtype: ChainResult
        """
        start_time = time.monotonic()
        config = self.config
        n_warmup, n_draws = config.n_warmup, config.n_draws

        z, log_density, grad = self._initialize()
        step_size = self._find_step_size(z, log_density, grad, 1.0)
        adapter = DualAveraging(step_size, config.target_accept)
        windows = adaptation_windows(n_warmup)
        window_ends = {end for _, end in windows}
        window_positions: list[np.ndarray] = []

        # Retained draws and statistics
        positions = []
        stats = {
            name: []
            for name in (
                "lp",
                "acceptance_rate",
                "step_size",
                "n_steps",
                "diverging",
                "energy",
            )
        }
        status = "complete"
        warmup_done = 0

        with tqdm(
            total=n_warmup + n_draws,
            desc=f"Chain {self.chain}",
            position=self.chain,
            leave=False,
            disable=not config.progress_bar,
        ) as pbar:
            for iteration in range(n_warmup + n_draws):

                # Stop early if requested or out of time
                if self.cancel is not None and self.cancel.is_set():
                    status = "cancelled"
                    break
                if (
                    config.max_seconds is not None
                    and time.monotonic() - start_time > config.max_seconds
                ):
                    status = "timeout"
                    break

                warmup = iteration < n_warmup

                # One transition
                jitter = self.rng.uniform(0.5, 1.5)
                n_steps = int(
                    min(
                        config.max_leapfrog,
                        max(1, round(config.path_length * jitter / step_size)),
                    )
                )
                p0 = self._momentum()
                energy0 = -log_density + self._kinetic(p0)
                z_new, p_new, lp_new, grad_new, n_taken, diverged = self._leapfrog(
                    z, p0, grad, step_size, n_steps, energy0
                )
                if diverged:
                    accept_stat = 0.0
                    energy = energy0
                else:
                    energy_new = -lp_new + self._kinetic(p_new)
                    log_ratio = energy0 - energy_new
                    accept_stat = min(1.0, math.exp(min(log_ratio, 0.0)))
                    energy = energy0
                    if math.log1p(-self.rng.uniform()) < log_ratio:
                        z, log_density, grad = z_new, lp_new, grad_new
                        energy = energy_new

                # Adaptation
                if warmup:
                    step_size = adapter.update(accept_stat)
                    if windows and windows[0][0] <= iteration < windows[-1][1]:
                        window_positions.append(z.numpy().copy())
                    if iteration + 1 in window_ends:
                        self._set_metric(
                            estimate_metric(np.stack(window_positions), self.dense)
                        )
                        window_positions = []
                        step_size = self._find_step_size(z, log_density, grad, step_size)
                        adapter = DualAveraging(step_size, config.target_accept)
                    if iteration == n_warmup - 1:
                        step_size = adapter.final_step_size
                    warmup_done = iteration + 1
                else:
                    positions.append(z.clone())
                    stats["lp"].append(log_density)
                    stats["acceptance_rate"].append(accept_stat)
                    stats["step_size"].append(step_size)
                    stats["n_steps"].append(n_taken)
                    stats["diverging"].append(diverged)
                    stats["energy"].append(energy)

                pbar.update(1)

        # Map retained positions to constrained draws
        if positions:
            draws = self.module.constrain_draws(torch.stack(positions))
        else:
            draws = {
                name: np.empty((0, *value.shape))
                for name, value in self.module.export_params().items()
            }
        stats = {
            name: np.asarray(values, dtype=bool if name == "diverging" else None)
            for name, values in stats.items()
        }

        return ChainResult(
            chain=self.chain,
            status=status,
            step_size=float(step_size),
            n_divergent=int(stats["diverging"].sum()),
            elapsed=time.monotonic() - start_time,
            n_draws=len(positions),
            n_warmup=warmup_done,
            draws=draws,
            stats=stats,
        )
