# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Normal hierarchical model with partially pooled group means.

Groups have means drawn from a common population,

    theta[j] ~ Normal(mu, tau),    y[i] ~ Normal(theta[group[i]], sigma),

and observations are assigned to groups in turn (observation i belongs to
group ``i % n_groups``).

The fitted model uses the non-centered parametrization
``theta = mu + tau * theta_raw`` with ``theta_raw ~ Normal(0, 1)``, which
avoids the funnel-shaped posterior of the centered form when groups hold
little data.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from simfitpy.data import Dataset, ParameterSet
from simfitpy.exceptions import InvalidParameterError
from simfitpy.model import (
    Field,
    HalfNormal,
    Likelihood,
    ModelSpec,
    Normal,
    Parameter,
    TransformedParameter,
)
from simfitpy.simulation import Simulator


class HierarchicalSimulator(Simulator):
    """Simulator of grouped normal observations."""

    NAME = "hierarchical"
    REQUIRED_PARAMS = frozenset({"mu", "tau", "sigma"})
    POSITIVE_PARAMS = frozenset({"tau", "sigma"})

    def check_parameters(self, parameters: ParameterSet) -> None:
        super().check_parameters(parameters)
        if "theta" in parameters and parameters["theta"].ndim != 1:
            raise InvalidParameterError("'theta' must be a vector of group means.")

    def _simulate(
        self,
        parameters: ParameterSet,
        n: int,
        rng: np.random.Generator,
        *,
        n_groups: int = 8,
    ) -> Dataset:
        # Group means are given or drawn
        if "theta" in parameters:
            theta = np.array(parameters["theta"])
        else:
            if n_groups < 1:
                raise ValueError("n_groups must be a positive integer.")
            theta = rng.normal(
                float(parameters["mu"]), float(parameters["tau"]), size=n_groups
            )

        group = np.arange(n) % theta.size
        y = theta[group] + rng.normal(0.0, float(parameters["sigma"]), size=n)
        return Dataset(
            {"y": y},
            predictors={"group": group},
            latent=ParameterSet(theta=theta),
        )


def hierarchical_model(n_groups: int = 8) -> ModelSpec:
    """Specification of the non-centered hierarchical model.

    :param n_groups: Number of groups. Defaults to 8.
    :type n_groups: int

    :returns: The model specification
    :rtype: ModelSpec
    """

    def theta(params, data):
        return params["mu"] + params["tau"] * params["theta_raw"]

    def group_mean(params, data):
        return params["theta"][data["group"].long()]

    return ModelSpec(
        "hierarchical",
        parameters=[
            Parameter("mu", prior=Normal(0.0, 10.0)),
            Parameter("tau", constraint="positive", role="scale", prior=HalfNormal(5.0)),
            Parameter(
                "sigma", constraint="positive", role="scale", prior=HalfNormal(5.0)
            ),
            Parameter("theta_raw", ("J",), role="latent", prior=Normal(0.0, 1.0)),
        ],
        transformed=[TransformedParameter("theta", theta, dims=("J",))],
        likelihood=[Likelihood("y", Normal(loc=group_mean, scale="sigma"))],
        data=[Field("y", ("n",)), Field("group", ("n",))],
        dims={"J": n_groups},
    )


def example_truth(seed: Optional[int] = None) -> ParameterSet:
    """Ground truth used by the command-line pipelines."""
    del seed
    return ParameterSet(mu=2.0, tau=1.0, sigma=0.5)
