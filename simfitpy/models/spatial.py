# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Spatially correlated observations.

:py:class:`GaussianProcessSimulator` draws one realization of a Gaussian process
over points in the unit square,

    y ~ MultivariateNormal(mean, K(coords) + noise^2 I),

with an exponential or squared-exponential kernel

    K(a, b) = amplitude^2 exp(-d(a, b) / length_scale)            (exponential)
    K(a, b) = amplitude^2 exp(-d(a, b)^2 / (2 length_scale^2))    (squared exponential)

:py:class:`MultivariateNormalSimulator` draws ``n`` independent vectors from a
multivariate normal with the given mean and covariance.
"""

from __future__ import annotations

from typing import Literal, Optional

import numpy as np
import torch

from scipy.spatial.distance import cdist

from simfitpy import utils
from simfitpy.data import Dataset, ParameterSet
from simfitpy.exceptions import InvalidParameterError
from simfitpy.model import (
    Field,
    HalfNormal,
    Likelihood,
    LogNormal,
    ModelSpec,
    MultivariateNormal,
    Normal,
    Parameter,
)
from simfitpy.simulation import Simulator

Kernel = Literal["exponential", "squared_exponential"]

# Added to the diagonal of fitted covariances to keep them numerically definite
JITTER = 1e-8


def kernel_matrix(
    coords: np.ndarray,
    amplitude: float,
    length_scale: float,
    kernel: Kernel = "exponential",
) -> np.ndarray:
    """Kernel matrix between all pairs of `coords` (shape (n, 2))."""
    distances = cdist(coords, coords)
    if kernel == "exponential":
        return amplitude**2 * np.exp(-distances / length_scale)
    if kernel == "squared_exponential":
        return amplitude**2 * np.exp(-(distances**2) / (2 * length_scale**2))
    raise ValueError(f"Unknown kernel: {kernel!r}")


def torch_kernel_matrix(
    coords: torch.Tensor,
    amplitude: torch.Tensor,
    length_scale: torch.Tensor,
    kernel: Kernel = "exponential",
) -> torch.Tensor:
    """Differentiable version of :py:func:`kernel_matrix`."""
    if kernel == "exponential":
        # cdist has an undefined gradient at zero distance, so the diagonal is
        # built from squared distances
        sq_dist = (coords[:, None, :] - coords[None, :, :]).pow(2).sum(-1)
        off_diag = ~torch.eye(coords.shape[0], dtype=torch.bool)
        distances = torch.where(
            off_diag, sq_dist.clamp_min(1e-300).sqrt(), torch.zeros_like(sq_dist)
        )
        return amplitude**2 * torch.exp(-distances / length_scale)
    if kernel == "squared_exponential":
        sq_dist = (coords[:, None, :] - coords[None, :, :]).pow(2).sum(-1)
        return amplitude**2 * torch.exp(-sq_dist / (2 * length_scale**2))
    raise ValueError(f"Unknown kernel: {kernel!r}")


class GaussianProcessSimulator(Simulator):
    """Simulator of one Gaussian process realization in the unit square."""

    NAME = "gaussian_process"
    REQUIRED_PARAMS = frozenset({"mean", "amplitude", "length_scale", "noise"})
    POSITIVE_PARAMS = frozenset({"amplitude", "length_scale"})

    def check_parameters(self, parameters: ParameterSet) -> None:
        super().check_parameters(parameters)
        if any(parameters[name].ndim != 0 for name in self.REQUIRED_PARAMS):
            raise InvalidParameterError("Gaussian process parameters must be scalars.")
        if not parameters["noise"] >= 0:
            raise InvalidParameterError("Parameter 'noise' must be non-negative.")

    def _simulate(
        self,
        parameters: ParameterSet,
        n: int,
        rng: np.random.Generator,
        *,
        kernel: Kernel = "exponential",
        coordinates: Optional[np.ndarray] = None,
    ) -> Dataset:
        # Locations
        if coordinates is None:
            coords = rng.uniform(size=(n, 2))
        else:
            coords = np.asarray(coordinates, dtype=np.float64)
            if coords.shape != (n, 2):
                raise ValueError(f"coordinates must have shape ({n}, 2).")

        # Covariance
        covariance = kernel_matrix(
            coords,
            float(parameters["amplitude"]),
            float(parameters["length_scale"]),
            kernel,
        ) + float(parameters["noise"]) ** 2 * np.eye(n)
        utils.check_covariance("covariance", covariance)

        y = rng.multivariate_normal(
            np.full(n, float(parameters["mean"])), covariance, method="cholesky"
        )
        return Dataset({"y": y}, predictors={"coords": coords})


class MultivariateNormalSimulator(Simulator):
    """Simulator of independent multivariate normal vectors."""

    NAME = "multivariate_normal"
    REQUIRED_PARAMS = frozenset({"mean", "covariance"})
    COVARIANCE_PARAMS = frozenset({"covariance"})

    def check_parameters(self, parameters: ParameterSet) -> None:
        super().check_parameters(parameters)
        mean, covariance = parameters["mean"], parameters["covariance"]
        if mean.ndim != 1 or covariance.shape != (mean.size, mean.size):
            raise InvalidParameterError(
                f"'mean' must be a vector and 'covariance' a matching square matrix; "
                f"got shapes {mean.shape} and {covariance.shape}."
            )

    def _simulate(
        self, parameters: ParameterSet, n: int, rng: np.random.Generator
    ) -> Dataset:
        y = rng.multivariate_normal(
            parameters["mean"], parameters["covariance"], size=n, method="cholesky"
        )
        return Dataset({"y": y})


def gaussian_process_model(kernel: Kernel = "exponential") -> ModelSpec:
    """Specification of a Gaussian process with a constant mean.

    The covariance matrix is built from the amplitude, length scale, and noise
    parameters inside the likelihood, and missing observations are marginalized.

    :param kernel: Covariance kernel. Defaults to "exponential".
    :type kernel: Literal["exponential", "squared_exponential"]

    :returns: The model specification
    :rtype: ModelSpec
    """
    if kernel not in ("exponential", "squared_exponential"):
        raise ValueError(f"Unknown kernel: {kernel!r}")

    def mean(params, data):
        return params["mean"].expand(data["y"].shape[0])

    def covariance(params, data):
        coords = data["coords"]
        return torch_kernel_matrix(
            coords, params["amplitude"], params["length_scale"], kernel
        ) + (params["noise"] ** 2 + JITTER) * torch.eye(
            coords.shape[0], dtype=coords.dtype
        )

    return ModelSpec(
        f"gaussian_process_{kernel}",
        parameters=[
            Parameter("mean", prior=Normal(0.0, 10.0)),
            Parameter(
                "amplitude", constraint="positive", role="scale", prior=HalfNormal(2.0)
            ),
            Parameter(
                "length_scale", constraint="positive", role="scale", prior=LogNormal(-1.0, 1.0)
            ),
            Parameter("noise", constraint="positive", role="scale", prior=HalfNormal(1.0)),
        ],
        likelihood=[
            Likelihood("y", MultivariateNormal(loc=mean, covariance_matrix=covariance))
        ],
        data=[Field("y", ("n",)), Field("coords", ("n", 2))],
    )


def example_truth(seed: Optional[int] = None) -> ParameterSet:
    """Ground truth used by the command-line pipelines."""
    del seed
    return ParameterSet(mean=1.0, amplitude=1.0, length_scale=0.3, noise=0.2)
