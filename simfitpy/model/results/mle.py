# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Results of posterior-mode search, and the interface shared by all fit results.

Both fitting modes produce a :py:class:`FitResult`. Regardless of mode, a fit
result provides point estimates, posterior draws (when available), equal-tailed
credible intervals, the dimension names of every parameter, and the set of
exchangeable dimensions of the model. The diagnostic reporter only uses this
shared interface, so it treats sampled and optimized fits alike.

:py:class:`OptimizationResult` records the posterior mode found by
:py:meth:`simfitpy.model.Model.optimize`, the loss trajectory of the search,
and, if the search did not converge, the :py:class:`~simfitpy.exceptions.ConvergenceError`
describing why. Posterior uncertainty is approximated with a Laplace
approximation (a multivariate normal in unconstrained space centered at the
mode with the inverse Hessian of the negative log density as covariance). The
approximation is computed lazily the first time draws or intervals are
requested, and only for models with at most ``max_laplace_dim`` unconstrained
coordinates.
"""

from __future__ import annotations

import warnings

from abc import ABC, abstractmethod
from typing import ClassVar, Optional, TYPE_CHECKING

import arviz as az
import numpy as np
import numpy.typing as npt
import pandas as pd
import torch
import xarray as xr

from simfitpy.data import ParameterSet
from simfitpy.exceptions import ConvergenceError, ConvergenceWarning

if TYPE_CHECKING:
    from simfitpy import custom_types
    from simfitpy.config import OptimizeConfig
    from simfitpy.model.model import Model
    from simfitpy.model.nn_module import FitTrace, PyTorchModel


def axis_names(
    name: str, dims: tuple[Optional[str], ...], ndim: int
) -> list[str]:
    """Name every axis of a parameter for use as xarray dimensions.

    Named model dimensions keep their names so that parameters sharing a
    dimension share it in xarray too. Anonymous axes get unique names.
    """
    dims = tuple(dims) + (None,) * (ndim - len(dims))
    return [
        f"{name}_dim_{i}" if dimname is None else dimname
        for i, dimname in enumerate(dims[:ndim])
    ]


class FitResult(ABC):
    """Interface shared by the results of both fitting modes.

    :param model_name: Name of the fitted model
    :type model_name: str
    :param parameter_dims: Dimension names of every parameter and transformed
        parameter (None for anonymous axes)
    :type parameter_dims: dict[str, tuple[Optional[str], ...]]
    :param exchangeable_dims: Dimensions whose labels are arbitrary
    :type exchangeable_dims: tuple[str, ...]
    """

    MODE: ClassVar[str]

    def __init__(
        self,
        model_name: str,
        parameter_dims: dict[str, tuple],
        exchangeable_dims: tuple[str, ...],
    ):
        self.model_name = model_name
        self.parameter_dims = dict(parameter_dims)
        self.exchangeable_dims = tuple(exchangeable_dims)

        # Messages describing non-fatal problems met while fitting
        self.notes: list[str] = []

    @property
    def mode(self) -> str:
        return self.MODE

    @property
    def is_complete(self) -> bool:
        """Whether the fit ran to completion."""
        return True

    @abstractmethod
    def point_estimates(self) -> ParameterSet:
        """Posterior medians (sample mode) or the posterior mode (optimize mode)."""

    @abstractmethod
    def posterior_means(self) -> ParameterSet:
        """Posterior means, or the best available stand-in for them."""

    @abstractmethod
    def draws(self) -> Optional[dict[str, npt.NDArray[np.float64]]]:
        """Pooled posterior draws with shape (n_draws, *shape), if available."""

    def convergence(self) -> Optional[dict[str, xr.Dataset]]:
        """Per-scalar convergence statistics, if the fitting mode provides them."""
        return None

    def chain_point_estimates(self) -> Optional[list[ParameterSet]]:
        """Point estimates of every chain, for fits pooled from several chains."""
        return None

    def relabel_chains(
        self, permutations: dict[str, list[npt.NDArray[np.int64]]]
    ) -> "FitResult":
        """Permute exchangeable dimensions chain by chain.

        :param permutations: For each exchangeable dimension, one permutation per
            chain
        :type permutations: dict[str, list[npt.NDArray[np.int64]]]

        :raises NotImplementedError: If the fit is not made of chains
        """
        raise NotImplementedError(f"{type(self).__name__} has no chains to relabel.")

    def credible_intervals(
        self, level: "custom_types.Float"
    ) -> Optional[dict[str, tuple[npt.NDArray, npt.NDArray]]]:
        """Equal-tailed credible intervals at the given probability.

        :param level: Probability mass inside the interval (e.g. 0.5 for the
            25th to 75th percentiles)
        :type level: custom_types.Float

        :returns: Lower and upper bounds keyed by parameter name, or None if the
            fit has no draws
        :rtype: Optional[dict[str, tuple[npt.NDArray, npt.NDArray]]]
        """
        if not 0.0 < level < 1.0:
            raise ValueError("level must lie strictly between 0 and 1.")
        if (draws := self.draws()) is None:
            return None
        tail = (1.0 - level) / 2
        return {
            name: (
                np.asarray(np.quantile(values, tail, axis=0)),
                np.asarray(np.quantile(values, 1.0 - tail, axis=0)),
            )
            for name, values in draws.items()
        }


class OptimizationResult(FitResult):
    """Posterior mode of a model with an optional Laplace approximation.

    :param model: The bound model that was fit
    :type model: Model
    :param module: The PyTorch module after optimization
    :type module: PyTorchModel
    :param trace: Outcome of the search
    :type trace: FitTrace
    :param config: Settings used for the search
    :type config: OptimizeConfig

    :ivar estimate: Parameters and transformed parameters at the mode
    :ivar objective: Log posterior density (without Jacobian) at the mode
    :ivar converged: Whether the search met its convergence criterion
    :ivar n_iter: Number of iterations run
    :ivar losses: Loss trajectory with columns "-log density" and "iteration"
    :ivar error: The :py:class:`ConvergenceError` if the search did not
        converge, else None
    """

    MODE = "optimize"

    def __init__(
        self,
        model: "Model",
        module: "PyTorchModel",
        trace: "FitTrace",
        config: "OptimizeConfig",
    ):
        super().__init__(
            model.spec.name, model.spec.parameter_dims(), model.spec.exchangeable_dims
        )

        # Record inputs
        self.model = model
        self.config = config
        self.estimate = ParameterSet(module.export_params())
        self.converged = trace.converged
        self.n_iter = trace.n_iter
        self.objective = -float(trace.losses[-1])

        # Record the loss trajectory as a pandas dataframe
        losses = trace.losses.numpy()
        self.losses = pd.DataFrame(
            {"-log density": losses, "iteration": np.arange(len(losses))}
        )

        # Record the failure, if any. It is reported, not raised.
        self.error: Optional[ConvergenceError] = None
        if not trace.converged:
            self.error = ConvergenceError(
                f"Optimization of '{model.spec.name}' did not converge after "
                f"{trace.n_iter} iterations: {trace.message}",
                n_iter=trace.n_iter,
                objective=self.objective,
            )
            self.notes.append(str(self.error))

        # Built on demand
        self._laplace: Optional[tuple["PyTorchModel", torch.Tensor, torch.Tensor]] = None
        self._laplace_done = False
        self._draws: Optional[dict[str, npt.NDArray[np.float64]]] = None

    def __repr__(self) -> str:
        status = "converged" if self.converged else "not converged"
        return (
            f"OptimizationResult({self.model_name!r}, objective={self.objective:.4f}, "
            f"{status} after {self.n_iter} iterations)"
        )

    def point_estimates(self) -> ParameterSet:
        return self.estimate

    def posterior_means(self) -> ParameterSet:
        if (draws := self.draws()) is None:
            return self.estimate
        return ParameterSet({name: values.mean(axis=0) for name, values in draws.items()})

    def laplace(self) -> Optional[tuple["PyTorchModel", torch.Tensor, torch.Tensor]]:
        """Laplace approximation in unconstrained space.

        :returns: The bijective module used for the approximation, the mode as
            an unconstrained vector, and the lower Cholesky factor of the
            approximate posterior covariance. None if the model has too many
            coordinates or the Hessian at the mode is not positive-definite.
        :rtype: Optional[tuple[PyTorchModel, torch.Tensor, torch.Tensor]]
        """
        if self._laplace_done:
            return self._laplace
        self._laplace_done = True
        if not np.isfinite(self.objective):
            self.notes.append(
                "Laplace approximation skipped: the objective is not finite."
            )
            return None

        # Re-express the mode with bijective transforms
        module = self.model.to_pytorch(
            bijective=True,
            init=ParameterSet(
                {name: self.estimate[name] for name in self.model.spec.parameter_names}
            ),
        )
        if module.dim > self.config.max_laplace_dim:
            self.notes.append(
                f"Laplace approximation skipped: {module.dim} unconstrained "
                f"coordinates exceed the limit of {self.config.max_laplace_dim}."
            )
            return None
        mode = module.flatten()

        # Hessian of the negative log density at the mode. Covariance is its
        # inverse.
        try:
            hessian = torch.autograd.functional.hessian(
                lambda z: -module.log_density(z), mode
            )
            hessian = (hessian + hessian.T) / 2
            precision_tril = torch.linalg.cholesky(hessian)
            covariance = torch.cholesky_inverse(precision_tril)
            scale_tril = torch.linalg.cholesky(covariance)
        except torch.linalg.LinAlgError:
            message = (
                "Laplace approximation unavailable: the Hessian at the mode is not "
                "positive-definite."
            )
            self.notes.append(message)
            warnings.warn(message, ConvergenceWarning)
            return None

        self._laplace = (module, mode, scale_tril)
        return self._laplace

    def draw(
        self,
        n: "custom_types.Integer",
        *,
        seed: Optional["custom_types.Integer"] = None,
    ) -> Optional[dict[str, npt.NDArray[np.float64]]]:
        """Draw from the Laplace approximation.

        :param n: Number of draws
        :type n: custom_types.Integer
        :param seed: Random seed for reproducible draws. Defaults to None.
        :type seed: Optional[custom_types.Integer]

        :returns: Draws with shape (n, *shape) for every parameter and
            transformed parameter, or None if there is no approximation
        :rtype: Optional[dict[str, npt.NDArray[np.float64]]]
        """
        if (approx := self.laplace()) is None:
            return None
        module, mode, scale_tril = approx
        gen = torch.Generator()
        if seed is None:
            gen.seed()
        else:
            gen.manual_seed(int(seed))
        std_normal = torch.randn(int(n), mode.shape[0], generator=gen, dtype=torch.float64)
        return module.constrain_draws(mode + std_normal @ scale_tril.T)

    def draws(self) -> Optional[dict[str, npt.NDArray[np.float64]]]:
        if self._draws is None:
            self._draws = self.draw(self.config.laplace_draws, seed=self.config.seed)
        return self._draws

    def get_inference_obj(self) -> az.InferenceData:
        """Package the result as ArviZ InferenceData.

        The posterior group holds one chain with the Laplace draws, or a single
        draw at the mode if there is no approximation. The loss trajectory and
        the observed data are attached as well.
        """
        draws = self.draws()
        if draws is None:
            draws = {name: value[None] for name, value in self.estimate.items()}
        inference_obj = az.from_dict(
            posterior={name: values[None] for name, values in draws.items()},
            dims={
                name: axis_names(name, self.parameter_dims.get(name, ()), values.ndim - 1)
                for name, values in draws.items()
            },
            attrs={
                "model_name": self.model_name,
                "mode": self.MODE,
                "converged": int(self.converged),
                "exchangeable_dims": ",".join(self.exchangeable_dims),
            },
        )
        inference_obj.add_groups(
            observed_data=self.model.dataset.to_xarray(),
            optimization_stats=xr.Dataset(
                {"loss": ("iteration", self.losses["-log density"].to_numpy())}
            ),
        )
        return inference_obj

    def save_netcdf(self, filename: str) -> None:
        """Save the result (as ArviZ InferenceData) to NetCDF format."""
        self.get_inference_obj().to_netcdf(filename, engine="h5netcdf")
