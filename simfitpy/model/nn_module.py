# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""PyTorch integration for SimFitPy models.

This module compiles a bound :py:class:`simfitpy.model.Model` into a
:py:class:`torch.nn.Module` whose learnable parameters are the model's
parameters in unconstrained space. The module evaluates the log posterior
density (up to a constant) in float64 and is used in two ways:

    - As an objective for posterior-mode search with :py:mod:`torch.optim`
      (:py:meth:`PyTorchModel.fit`), in which case the log density is evaluated
      without the Jacobian adjustment so that the optimum is the mode in the
      constrained space.
    - As a stateless potential for Hamiltonian Monte Carlo
      (:py:meth:`PyTorchModel.log_density` with an explicit position vector and
      ``jacobian=True``), in which case the module's own parameters are not
      touched and it can be shared by chains running in parallel threads.
"""

from __future__ import annotations

import math

from typing import NamedTuple, Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt
import torch
import torch.nn as nn

from tqdm import tqdm

from simfitpy import utils
from simfitpy.defaults import (
    DEFAULT_EARLY_STOP,
    DEFAULT_GRAD_TOLERANCE,
    DEFAULT_INIT_RADIUS,
    DEFAULT_LR,
    DEFAULT_MAX_ITER,
    DEFAULT_MAX_LINE_SEARCH,
    DEFAULT_TOLERANCE,
)

if TYPE_CHECKING:
    from simfitpy import custom_types
    from simfitpy.data import ParameterSet
    from simfitpy.model.model import Model


class FitTrace(NamedTuple):
    """Outcome of :py:meth:`PyTorchModel.fit`."""

    losses: torch.Tensor
    converged: bool
    n_iter: int
    message: str


class PyTorchModel(nn.Module):
    """PyTorch-trainable version of a bound SimFitPy model.

    :param model: Bound model to compile
    :type model: Model
    :param bijective: If True, parameters are mapped from unconstrained space
        with :py:func:`torch.distributions.biject_to` (as needed for sampling and
        Laplace approximations). Otherwise
        :py:func:`torch.distributions.transform_to` is used, which is better
        conditioned for optimization. Defaults to True.
    :type bijective: bool
    :param seed: Seed for the random initialization. Defaults to None.
    :type seed: Optional[custom_types.Integer]
    :param init: Initial values in constrained space for some or all
        parameters. Parameters not given are drawn uniformly from
        ``(-init_radius, init_radius)`` in unconstrained space. Defaults to None.
    :type init: Optional[ParameterSet]
    :param init_radius: Radius of the random initialization. Defaults to 2.0.
    :type init_radius: custom_types.Float

    :ivar model: The bound model
    :ivar unconstrained: Learnable parameters in unconstrained space

    Note:
        This class should not usually be instantiated directly. Instead, use the
        `to_pytorch()` method on a :py:class:`~simfitpy.model.Model` instance.

    Example:
        >>> pytorch_model = model.to_pytorch(seed=42)
        >>> loss = -pytorch_model()
        >>> loss.backward()
    """

    def __init__(
        self,
        model: "Model",
        *,
        bijective: bool = True,
        seed: Optional["custom_types.Integer"] = None,
        init: Optional["ParameterSet"] = None,
        init_radius: "custom_types.Float" = DEFAULT_INIT_RADIUS,
    ):
        super().__init__()

        # Record the model
        self.model = model
        self.bijective = bijective

        # Build the map from unconstrained space for every parameter
        self.transforms = {
            param.name: param.bijection() if bijective else param.transform()
            for param in model.spec.parameters
        }
        self.shapes = dict(model.parameter_shapes)
        self.unconstrained_shapes = {
            name: tuple(transform.inverse_shape(torch.Size(self.shapes[name])))
            for name, transform in self.transforms.items()
        }
        self.sizes = {
            name: math.prod(shape) for name, shape in self.unconstrained_shapes.items()
        }

        # Initialize all parameters for pytorch optimization
        gen = torch.Generator()
        if seed is None:
            gen.seed()
        else:
            gen.manual_seed(int(seed))
        learnable_params = {}
        for name, transform in self.transforms.items():
            if init is not None and name in init:
                value = transform.inv(utils.to_tensor(init[name]))
            else:
                value = (
                    torch.rand(
                        self.unconstrained_shapes[name],
                        generator=gen,
                        dtype=torch.float64,
                    )
                    * 2
                    - 1
                ) * init_radius
            learnable_params[name] = nn.Parameter(value.detach().clone())

        # Record learnable parameters such that they can be recognized by PyTorch
        self.unconstrained = nn.ParameterDict(learnable_params)

    @property
    def dim(self) -> int:
        """Total number of unconstrained coordinates."""
        return sum(self.sizes.values())

    def flatten(self) -> torch.Tensor:
        """Current unconstrained position as one detached vector."""
        return torch.cat(
            [self.unconstrained[name].detach().reshape(-1) for name in self.transforms]
        ).clone()

    def unflatten(self, z: torch.Tensor) -> dict[str, torch.Tensor]:
        """Split a position vector (or a batch of them) into named parameters."""
        batch = z.shape[:-1]
        chunks = torch.split(z, list(self.sizes.values()), dim=-1)
        return {
            name: chunk.reshape(tuple(batch) + tuple(self.unconstrained_shapes[name]))
            for name, chunk in zip(self.transforms, chunks)
        }

    def set_position(self, z: torch.Tensor) -> None:
        """Overwrite the module's parameters with an unconstrained position."""
        with torch.no_grad():
            for name, value in self.unflatten(z).items():
                self.unconstrained[name].copy_(value)

    def constrain(
        self, unconstrained: dict[str, torch.Tensor], jacobian: bool = False
    ) -> tuple[dict[str, torch.Tensor], torch.Tensor]:
        """Map unconstrained parameters to constrained space.

        :param unconstrained: Unconstrained values keyed by parameter name
        :type unconstrained: dict[str, torch.Tensor]
        :param jacobian: Whether to compute the log absolute determinant of the
            Jacobian of the map. Defaults to False.
        :type jacobian: bool

        :returns: Constrained values and the summed log-determinant (zero if
            `jacobian` is False)
        :rtype: tuple[dict[str, torch.Tensor], torch.Tensor]
        """
        params = {}
        log_det = torch.zeros((), dtype=torch.float64)
        for name, transform in self.transforms.items():
            params[name] = transform(unconstrained[name])
            if jacobian:
                log_det = (
                    log_det
                    + transform.log_abs_det_jacobian(
                        unconstrained[name], params[name]
                    ).sum()
                )
        return params, log_det

    def add_transformed(self, params: dict[str, torch.Tensor]) -> dict[str, torch.Tensor]:
        """Return `params` extended with all transformed parameters."""
        params = dict(params)
        for trans in self.model.spec.transformed:
            params[trans.name] = trans.fn(params, self.model.data_tensors)
        return params

    def log_density(
        self, z: Optional[torch.Tensor] = None, *, jacobian: bool = False
    ) -> torch.Tensor:
        """Log posterior density, up to a constant.

        :param z: Unconstrained position vector. Defaults to None, meaning the
            module's own parameters.
        :type z: Optional[torch.Tensor]
        :param jacobian: Whether to include the log-determinant of the Jacobian
            of the constraining map, as required for a density over unconstrained
            space. Defaults to False.
        :type jacobian: bool

        :returns: Scalar log density
        :rtype: torch.Tensor
        """
        unconstrained = (
            dict(self.unconstrained.items()) if z is None else self.unflatten(z)
        )
        params, log_prob = self.constrain(unconstrained, jacobian=jacobian)
        params = self.add_transformed(params)
        data = self.model.data_tensors

        # Priors
        for param in self.model.spec.parameters:
            if param.prior is not None:
                log_prob = (
                    log_prob
                    + param.prior.build(params, data).log_prob(params[param.name]).sum()
                )

        # Likelihood terms
        for term in self.model.spec.likelihood:
            log_prob = log_prob + term.log_prob(params, data, self.model.masks)

        return log_prob

    def forward(self) -> torch.Tensor:
        """Log posterior density at the current parameters, without the Jacobian.

        Note:
            This returns log probability, *not* log loss (negative log probability).
            For optimization, negate the result to get the loss function.
        """
        return self.log_density()

    def _evaluate(self) -> tuple[float, float]:
        """Loss and max-abs gradient at the current parameters (leaves gradients set)."""
        self.zero_grad()
        log_loss = -1 * self()
        log_loss.backward()
        grad_max = max(
            (p.grad.abs().max().item() for p in self.parameters() if p.grad is not None),
            default=0.0,
        )
        return log_loss.item(), grad_max

    def fit(
        self,
        *,
        optimizer: str = "lbfgs",
        max_iter: "custom_types.Integer" = DEFAULT_MAX_ITER,
        tolerance: "custom_types.Float" = DEFAULT_TOLERANCE,
        grad_tolerance: "custom_types.Float" = DEFAULT_GRAD_TOLERANCE,
        lr: "custom_types.Float" = DEFAULT_LR,
        early_stop: "custom_types.Integer" = DEFAULT_EARLY_STOP,
        progress_bar: bool = True,
    ) -> FitTrace:
        """Search for the posterior mode.

        With ``optimizer="lbfgs"`` each iteration is one L-BFGS step with a
        strong-Wolfe line search. The search has converged once the relative
        change in the loss is at most `tolerance` or the largest absolute
        gradient is at most `grad_tolerance`.

        If the log density cannot be evaluated (a covariance built from the
        parameters is not positive-definite), the search stops at the last point
        where it could be, without converging.

        With ``optimizer="adam"`` each iteration is one Adam step, and the search
        has converged once the loss has not improved for `early_stop`
        consecutive iterations or the gradient criterion is met.

        :param optimizer: Either "lbfgs" or "adam". Defaults to "lbfgs".
        :type optimizer: str
        :param max_iter: Maximum number of iterations. Defaults to 1000.
        :type max_iter: custom_types.Integer
        :param tolerance: Relative change in the loss signalling convergence.
            Defaults to 1e-9.
        :type tolerance: custom_types.Float
        :param grad_tolerance: Max-abs gradient signalling convergence. Defaults
            to 1e-6.
        :type grad_tolerance: custom_types.Float
        :param lr: Learning rate (initial step length for L-BFGS). Defaults to 1.0.
        :type lr: custom_types.Float
        :param early_stop: Iterations without improvement before Adam stops.
            Defaults to 10.
        :type early_stop: custom_types.Integer
        :param progress_bar: Whether to display a progress bar. Defaults to True.
        :type progress_bar: bool

        :returns: Loss trajectory, whether the search converged, the number of
            iterations run, and a description of how the search ended
        :rtype: FitTrace
        """
        # Train mode. This should be a null-op.
        self.train()

        # Build the optimizer
        if optimizer == "lbfgs":
            optim = torch.optim.LBFGS(
                self.parameters(),
                lr=lr,
                max_iter=1,
                max_eval=DEFAULT_MAX_LINE_SEARCH,
                line_search_fn="strong_wolfe",
                tolerance_grad=0.0,
                tolerance_change=0.0,
            )
        elif optimizer == "adam":
            optim = torch.optim.Adam(self.parameters(), lr=lr)
        else:
            raise ValueError(f"Unknown optimizer: {optimizer!r}")

        def closure():
            optim.zero_grad()
            log_loss = -1 * self()
            log_loss.backward()
            return log_loss

        # Set up for optimization
        try:
            log_loss, grad_max = self._evaluate()
        except torch.linalg.LinAlgError as error:
            self.eval()
            self.zero_grad()
            return FitTrace(
                losses=torch.tensor([math.inf], dtype=torch.float64),
                converged=False,
                n_iter=0,
                message=f"The objective could not be evaluated at the start ({error}).",
            )
        loss_trajectory = [log_loss]  # Records all losses
        best_loss = log_loss  # Records the best loss
        n_without_improvement = 0  # Iterations without improvement
        converged = False
        message = f"Maximum number of iterations ({max_iter}) reached."
        n_iter = 0

        # Run optimization
        with tqdm(
            total=max_iter,
            desc="Iterations",
            postfix={"-log density": "N/A"},
            disable=not progress_bar,
        ) as pbar:
            for n_iter in range(1, max_iter + 1):

                # Check the gradient at the current point
                if grad_max <= grad_tolerance:
                    converged = True
                    message = "Gradient below tolerance."
                    n_iter -= 1
                    break

                # Step the optimizer. Gradients at the current point are already
                # populated for Adam; L-BFGS evaluates its own closure.
                position = self.flatten()
                try:
                    if optimizer == "lbfgs":
                        optim.step(closure)
                    else:
                        optim.step()
                    previous = log_loss
                    log_loss, grad_max = self._evaluate()

                # A covariance built from the parameters lost positive-definiteness.
                # Keep the last point where the objective could be evaluated.
                except torch.linalg.LinAlgError as error:
                    self.set_position(position)
                    message = f"The objective could not be evaluated ({error})."
                    n_iter -= 1
                    break

                # Record loss
                loss_trajectory.append(log_loss)

                # Update progress bar
                pbar.update(1)
                pbar.set_postfix({"-log density": f"{log_loss:.4f}"})

                # A non-finite objective ends the search
                if not math.isfinite(log_loss):
                    message = "The objective became non-finite."
                    break

                # Check for convergence
                if optimizer == "lbfgs":
                    if abs(previous - log_loss) <= tolerance * max(1.0, abs(log_loss)):
                        converged = True
                        message = "Relative change in objective below tolerance."
                        break
                else:
                    if log_loss < best_loss:
                        n_without_improvement = 0
                        best_loss = log_loss
                    else:
                        n_without_improvement += 1
                    if early_stop > 0 and n_without_improvement >= early_stop:
                        converged = True
                        message = "Early stopping triggered."
                        break

            # Note that the search did not converge if the loop completes
            else:
                if optimizer == "adam" and early_stop > 0:
                    message = "Early stopping not triggered."

        # Back to eval mode
        self.eval()
        self.zero_grad()

        return FitTrace(
            losses=torch.tensor(loss_trajectory, dtype=torch.float64),
            converged=converged,
            n_iter=n_iter,
            message=message,
        )

    def export_params(self) -> dict[str, npt.NDArray[np.float64]]:
        """Export current parameter and transformed parameter values.

        :returns: Constrained values keyed by name
        :rtype: dict[str, npt.NDArray[np.float64]]

        Example:
            >>> fitted_params = pytorch_model.export_params()
            >>> sigma_estimate = fitted_params['sigma']
        """
        with torch.no_grad():
            params, _ = self.constrain(dict(self.unconstrained.items()))
            params = self.add_transformed(params)
        return {name: value.detach().numpy().copy() for name, value in params.items()}

    def constrain_draws(self, z: torch.Tensor) -> dict[str, npt.NDArray[np.float64]]:
        """Map a batch of unconstrained positions to constrained draws.

        :param z: Positions with shape (n_draws, dim)
        :type z: torch.Tensor

        :returns: Arrays of shape (n_draws, *shape) for every parameter and
            transformed parameter
        :rtype: dict[str, npt.NDArray[np.float64]]
        """
        with torch.no_grad():
            params, _ = self.constrain(self.unflatten(z))
            draws = {name: value.numpy().copy() for name, value in params.items()}

            # Transformed parameters are evaluated draw by draw, as their
            # functions need not support a batch dimension
            if self.model.spec.transformed:
                per_draw = [
                    self.add_transformed({name: value[i] for name, value in params.items()})
                    for i in range(z.shape[0])
                ]
                for trans in self.model.spec.transformed:
                    draws[trans.name] = torch.stack(
                        [values[trans.name] for values in per_draw]
                    ).numpy()
        return draws

