# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Autoregressive time series.

An AR(p) series follows

    y[t] = intercept + slope[0] * y[t-1] + ... + slope[p-1] * y[t-p] + e[t],
    e[t] ~ Normal(0, sigma)

The first p observations are the initial state. It is either given (parameter
``initial``) or drawn at random: from the stationary distribution when the
process is stationary, and from Normal(intercept, sigma) otherwise.

The fitted model conditions on the initial state, so the recursion only scores
observations p onward.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import torch

from simfitpy.data import Dataset, ParameterSet
from simfitpy.exceptions import InvalidParameterError
from simfitpy.model import Field, HalfNormal, Likelihood, ModelSpec, Normal, Parameter
from simfitpy.simulation import Simulator

# Burn-in used to approximate the stationary law of AR(p) processes with p > 1
BURN_IN = 200


def is_stationary(slope: np.ndarray) -> bool:
    """Whether the AR process with these coefficients is stationary.

    The process is stationary when every root of the characteristic polynomial
    lies inside the unit circle.
    """
    if slope.size == 0:
        return True
    roots = np.roots(np.concatenate([[1.0], -slope]))
    return bool(np.all(np.abs(roots) < 1))


class AutoregressiveSimulator(Simulator):
    """Simulator of AR(p) series. The order is the length of ``slope``."""

    NAME = "autoregressive"
    REQUIRED_PARAMS = frozenset({"intercept", "slope", "sigma"})
    POSITIVE_PARAMS = frozenset({"sigma"})

    def check_parameters(self, parameters: ParameterSet) -> None:
        super().check_parameters(parameters)
        if parameters["intercept"].ndim != 0 or parameters["sigma"].ndim != 0:
            raise InvalidParameterError("'intercept' and 'sigma' must be scalars.")
        if parameters["slope"].ndim > 1:
            raise InvalidParameterError("'slope' must be a scalar or a vector.")
        order = parameters["slope"].size
        if "initial" in parameters and parameters["initial"].size != order:
            raise InvalidParameterError(
                f"'initial' must hold {order} values, one per lag."
            )

    def _simulate(
        self, parameters: ParameterSet, n: int, rng: np.random.Generator
    ) -> Dataset:
        slope = np.atleast_1d(parameters["slope"])
        order = slope.size
        intercept = float(parameters["intercept"])
        sigma = float(parameters["sigma"])
        if n <= order:
            raise ValueError(f"An AR({order}) series needs more than {order} observations.")

        # Initial state
        if "initial" in parameters:
            initial = np.atleast_1d(parameters["initial"]).astype(np.float64)
        elif is_stationary(slope) and order == 1:
            mean = intercept / (1 - slope[0])
            initial = rng.normal(mean, sigma / np.sqrt(1 - slope[0] ** 2), size=1)
        elif is_stationary(slope):
            initial = self._burn_in(intercept, slope, sigma, rng)
        else:
            initial = rng.normal(intercept, sigma, size=order)

        # Recursion
        noise = rng.normal(0.0, sigma, size=n - order)
        y = np.empty(n)
        y[:order] = initial
        for t in range(order, n):
            y[t] = intercept + slope @ y[t - order : t][::-1] + noise[t - order]

        return Dataset(
            {"y": y},
            index=np.arange(n),
            ordered=True,
            latent=ParameterSet(initial=initial),
        )

    @staticmethod
    def _burn_in(
        intercept: float, slope: np.ndarray, sigma: float, rng: np.random.Generator
    ) -> np.ndarray:
        """Approximate a stationary draw by running the process from its mean."""
        order = slope.size
        state = np.full(order, intercept / (1 - slope.sum()))
        for shock in rng.normal(0.0, sigma, size=BURN_IN):
            state = np.concatenate([state[1:], [intercept + slope @ state[::-1] + shock]])
        return state


def ar_model(
    order: int = 1,
    *,
    intercept_prior: Optional[Normal] = None,
    slope_prior: Optional[Normal] = None,
    sigma_prior: Optional[HalfNormal] = None,
) -> ModelSpec:
    """Specification of an AR(p) model conditioned on the first p observations.

    :param order: Number of lags. Defaults to 1.
    :type order: int
    :param intercept_prior: Defaults to Normal(0, 10).
    :type intercept_prior: Optional[Normal]
    :param slope_prior: Prior on every lag coefficient. Defaults to Normal(0, 1).
    :type slope_prior: Optional[Normal]
    :param sigma_prior: Defaults to HalfNormal(2.5).
    :type sigma_prior: Optional[HalfNormal]

    :returns: The model specification
    :rtype: ModelSpec

    Example:
        >>> spec = ar_model(1)
        >>> data = AutoregressiveSimulator().simulate(
        ...     {"intercept": 5.0, "slope": [0.2], "sigma": 0.5}, 100, seed=1
        ... )
        >>> fit(data, spec, "sample")
    """
    if order < 1:
        raise ValueError("order must be a positive integer.")

    def mean(params, data):
        y = data["y"]
        n = y.shape[0]
        lags = torch.stack([y[order - 1 - i : n - 1 - i] for i in range(order)], dim=-1)
        return params["intercept"] + lags @ params["slope"]

    return ModelSpec(
        f"ar{order}",
        parameters=[
            Parameter("intercept", prior=intercept_prior or Normal(0.0, 10.0)),
            Parameter(
                "slope",
                (order,),
                role="coefficient",
                prior=slope_prior or Normal(0.0, 1.0),
            ),
            Parameter(
                "sigma",
                constraint="positive",
                role="scale",
                prior=sigma_prior or HalfNormal(2.5),
            ),
        ],
        likelihood=[Likelihood("y", Normal(loc=mean, scale="sigma"), start=order)],
        data=[Field("y", ("n",), allow_missing=False)],
    )


def example_truth(seed: Optional[int] = None) -> ParameterSet:
    """Ground truth used by the command-line pipelines."""
    del seed
    return ParameterSet(intercept=5.0, slope=[0.2], sigma=0.5)
