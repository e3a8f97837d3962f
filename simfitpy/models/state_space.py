# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Latent AR(1) state observed through several noisy series.

The latent state follows

    state[t] = intercept + slope * state[t-1] + Normal(0, process_sigma)

and each of ``n_series`` observation series records it with independent noise,

    y[t, j] = state[t] + Normal(0, obs_sigma).

Observations can be hidden completely at random (``missing_fraction``). The
latent states are inferred as parameters of the fitted model, so they are part
of the ground truth a simulation returns.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from simfitpy.data import Dataset, ParameterSet
from simfitpy.exceptions import InvalidParameterError
from simfitpy.model import Field, HalfNormal, Likelihood, ModelSpec, Normal, Parameter
from simfitpy.simulation import Simulator


class StateSpaceSimulator(Simulator):
    """Simulator of a latent AR(1) state with noisy observation series."""

    NAME = "state_space"
    REQUIRED_PARAMS = frozenset({"intercept", "slope", "process_sigma", "obs_sigma"})
    POSITIVE_PARAMS = frozenset({"process_sigma", "obs_sigma"})

    def check_parameters(self, parameters: ParameterSet) -> None:
        super().check_parameters(parameters)
        if any(parameters[name].ndim != 0 for name in self.REQUIRED_PARAMS):
            raise InvalidParameterError(
                f"Parameters {', '.join(sorted(self.REQUIRED_PARAMS))} must be scalars."
            )

    def _simulate(
        self,
        parameters: ParameterSet,
        n: int,
        rng: np.random.Generator,
        *,
        n_series: int = 1,
        missing_fraction: float = 0.0,
    ) -> Dataset:
        if n_series < 1:
            raise ValueError("n_series must be a positive integer.")
        if not 0.0 <= missing_fraction < 1.0:
            raise ValueError("missing_fraction must lie in [0, 1).")
        intercept = float(parameters["intercept"])
        slope = float(parameters["slope"])
        process_sigma = float(parameters["process_sigma"])
        obs_sigma = float(parameters["obs_sigma"])

        # Initial state
        if "initial" in parameters:
            initial = float(parameters["initial"])
        elif abs(slope) < 1:
            initial = rng.normal(
                intercept / (1 - slope), process_sigma / np.sqrt(1 - slope**2)
            )
        else:
            initial = rng.normal(intercept, process_sigma)

        # Latent state
        shocks = rng.normal(0.0, process_sigma, size=n - 1)
        state = np.empty(n)
        state[0] = initial
        for t in range(1, n):
            state[t] = intercept + slope * state[t - 1] + shocks[t - 1]

        # Observations, some hidden
        y = state[:, None] + rng.normal(0.0, obs_sigma, size=(n, n_series))
        mask = None
        if missing_fraction > 0:
            mask = {"y": rng.random((n, n_series)) >= missing_fraction}

        return Dataset(
            {"y": y},
            index=np.arange(n),
            mask=mask,
            ordered=True,
            latent=ParameterSet(state=state),
        )


def state_space_model(n_series: int = 1) -> ModelSpec:
    """Specification of the latent AR(1) state-space model.

    :param n_series: Number of observation series. Defaults to 1.
    :type n_series: int

    :returns: The model specification
    :rtype: ModelSpec
    """

    def transition_mean(params, data):
        return params["intercept"] + params["slope"] * params["state"][:-1]

    def observation_mean(params, data):
        return params["state"][:, None]

    return ModelSpec(
        "state_space",
        parameters=[
            Parameter("intercept", prior=Normal(0.0, 10.0)),
            Parameter("slope", role="coefficient", prior=Normal(0.0, 1.0)),
            Parameter(
                "process_sigma", constraint="positive", role="scale", prior=HalfNormal(1.0)
            ),
            Parameter(
                "obs_sigma", constraint="positive", role="scale", prior=HalfNormal(1.0)
            ),
            Parameter("state", ("n",), role="latent"),
        ],
        likelihood=[
            Likelihood("state", Normal(0.0, 10.0), stop=1),
            Likelihood(
                "state", Normal(loc=transition_mean, scale="process_sigma"), start=1
            ),
            Likelihood("y", Normal(loc=observation_mean, scale="obs_sigma")),
        ],
        data=[Field("y", ("n", n_series))],
    )


def example_truth(seed: Optional[int] = None) -> ParameterSet:
    """Ground truth used by the command-line pipelines."""
    del seed
    return ParameterSet(intercept=1.0, slope=0.7, process_sigma=0.5, obs_sigma=0.3)
