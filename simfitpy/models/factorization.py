# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Non-negative factorization of count data.

Each unit (row) mixes ``K`` templates, each a distribution over ``F`` features:

    proportions[i] ~ Dirichlet(concentration)          (simplex over K)
    rate[i, f] = depth[i] * sum_k proportions[i, k] * templates[k, f]
    counts[i, f] ~ Poisson(rate[i, f])

Counts may instead be overdispersed (negative binomial with shape
``dispersion``), drawn as a gamma-Poisson mixture.

The labels of the templates are arbitrary: permuting them together with the
columns of the proportions leaves the likelihood unchanged. The fitted model
therefore declares ``K`` as exchangeable.
"""

from __future__ import annotations

from typing import Literal, Optional, TYPE_CHECKING

import numpy as np

from simfitpy import utils
from simfitpy.data import Dataset, ParameterSet
from simfitpy.exceptions import InvalidParameterError, MissingParameterError
from simfitpy.model import Field, Likelihood, ModelSpec, Parameter, Poisson
from simfitpy.simulation import Simulator

if TYPE_CHECKING:
    from simfitpy import custom_types

DEFAULT_DEPTH = 1000.0


def random_templates(
    n_groups: "custom_types.Integer",
    n_features: "custom_types.Integer",
    *,
    concentration: "custom_types.Float" = 0.1,
    seed: Optional["custom_types.Integer"] = None,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Draw sparse-ish templates, one Dirichlet draw per group.

    :param n_groups: Number of templates (K)
    :type n_groups: custom_types.Integer
    :param n_features: Number of features (F)
    :type n_features: custom_types.Integer
    :param concentration: Symmetric Dirichlet concentration. Values below one
        concentrate each template on few features. Defaults to 0.1.
    :type concentration: custom_types.Float
    :param seed: Seed for a fresh generator. Defaults to None.
    :type seed: Optional[custom_types.Integer]
    :param rng: Generator to draw from. Defaults to None.
    :type rng: Optional[np.random.Generator]

    :returns: Array of shape (K, F) whose rows lie on the simplex
    :rtype: np.ndarray
    """
    rng = utils.get_rng(seed, rng)
    return rng.dirichlet(np.full(int(n_features), float(concentration)), size=int(n_groups))


class FactorizationSimulator(Simulator):
    """Simulator of counts from mixtures of templates."""

    NAME = "factorization"
    REQUIRED_PARAMS = frozenset({"templates"})
    POSITIVE_PARAMS = frozenset({"concentration", "depth", "dispersion"})
    SIMPLEX_PARAMS = frozenset({"templates", "proportions"})

    def check_parameters(self, parameters: ParameterSet) -> None:
        super().check_parameters(parameters)
        templates = parameters["templates"]
        if templates.ndim != 2:
            raise InvalidParameterError("'templates' must have shape (K, F).")
        n_groups = templates.shape[0]
        if "concentration" in parameters and parameters["concentration"].shape not in (
            (),
            (n_groups,),
        ):
            raise InvalidParameterError(
                f"'concentration' must be a scalar or hold {n_groups} values."
            )
        if "proportions" in parameters and (
            parameters["proportions"].ndim != 2
            or parameters["proportions"].shape[1] != n_groups
        ):
            raise InvalidParameterError(f"'proportions' must have shape (n, {n_groups}).")

    def _simulate(
        self,
        parameters: ParameterSet,
        n: int,
        rng: np.random.Generator,
        *,
        noise: Literal["poisson", "negative_binomial"] = "poisson",
    ) -> Dataset:
        if noise not in ("poisson", "negative_binomial"):
            raise ValueError(f"Unknown noise model: {noise!r}")
        if noise == "negative_binomial" and "dispersion" not in parameters:
            raise MissingParameterError(
                "Negative binomial noise requires the 'dispersion' parameter."
            )
        templates = parameters["templates"]
        n_groups = templates.shape[0]

        # Mixing proportions
        if "proportions" in parameters:
            proportions = np.array(parameters["proportions"])
            if proportions.shape[0] != n:
                raise InvalidParameterError(
                    f"'proportions' holds {proportions.shape[0]} rows, expected {n}."
                )
        else:
            concentration = np.broadcast_to(
                parameters.get("concentration", np.ones(n_groups)), (n_groups,)
            )
            proportions = rng.dirichlet(concentration, size=n)

        # Sequencing depth
        depth = np.broadcast_to(
            parameters.get("depth", np.array(DEFAULT_DEPTH)), (n,)
        ).astype(np.float64)

        # Counts
        rate = depth[:, None] * (proportions @ templates)
        if noise == "negative_binomial":
            dispersion = float(parameters["dispersion"])
            rate = rng.gamma(dispersion, rate / dispersion)
        counts = rng.poisson(rate)

        return Dataset(
            {"counts": counts},
            predictors={"depth": depth},
            latent=ParameterSet(proportions=proportions),
        )


def factorization_model(n_groups: int) -> ModelSpec:
    """Specification of the Poisson factorization model.

    Both proportions and templates have flat priors on their simplices (the
    same as symmetric Dirichlet(1) priors).

    :param n_groups: Number of templates (K)
    :type n_groups: int

    :returns: The model specification
    :rtype: ModelSpec
    """

    def rate(params, data):
        return data["depth"][:, None] * (params["proportions"] @ params["templates"])

    return ModelSpec(
        "factorization",
        parameters=[
            Parameter("proportions", ("n", "K"), constraint="simplex", role="proportion"),
            Parameter("templates", ("K", "F"), constraint="simplex", role="proportion"),
        ],
        likelihood=[Likelihood("counts", Poisson(rate=rate))],
        data=[Field("counts", ("n", "F")), Field("depth", ("n",))],
        dims={"K": n_groups},
        exchangeable_dims=("K",),
    )


def example_truth(seed: Optional[int] = None) -> ParameterSet:
    """Ground truth used by the command-line pipelines (3 templates, 200 features)."""
    return ParameterSet(templates=random_templates(3, 200, seed=seed), depth=1000.0)
