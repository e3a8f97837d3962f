# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Simulation of synthetic datasets from known parameters.

A :py:class:`Simulator` generates a :py:class:`~simfitpy.data.Dataset` from a
:py:class:`~simfitpy.data.ParameterSet` of true values. Simulators declare the
parameters they need and the constraints those parameters must satisfy as class
variables, and all of this is checked before any random number is drawn.

Simulators never touch global random state. Every draw comes from a
:py:class:`numpy.random.Generator` that the caller either passes in or seeds,
so the same seed and parameters always give bit-for-bit identical datasets.

Subclasses are registered by their ``NAME`` so that they can be selected from
configuration (see :py:func:`simulate`).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Mapping, Optional, TYPE_CHECKING

import numpy as np

from simfitpy import utils
from simfitpy.config import SimulationConfig
from simfitpy.data import Dataset, ParameterSet

if TYPE_CHECKING:
    from simfitpy import custom_types

SIMULATORS: dict[str, type["Simulator"]] = {}
"""Registered simulators keyed by name."""


class Simulator(ABC):
    """Abstract base class for simulators.

    :cvar NAME: Registry name. Subclasses with a name are registered on
        definition.
    :cvar REQUIRED_PARAMS: Parameters that must be provided
    :cvar POSITIVE_PARAMS: Parameters that, if provided, must be strictly
        positive
    :cvar SIMPLEX_PARAMS: Parameters that, if provided, must lie on the simplex
        along their last dimension
    :cvar COVARIANCE_PARAMS: Parameters that, if provided, must be symmetric
        positive-definite matrices
    """

    NAME: ClassVar[str] = ""
    REQUIRED_PARAMS: ClassVar[frozenset[str]] = frozenset()
    POSITIVE_PARAMS: ClassVar[frozenset[str]] = frozenset()
    SIMPLEX_PARAMS: ClassVar[frozenset[str]] = frozenset()
    COVARIANCE_PARAMS: ClassVar[frozenset[str]] = frozenset()

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if cls.NAME:
            SIMULATORS[cls.NAME] = cls

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"

    def check_parameters(self, parameters: ParameterSet) -> None:
        """Check required names and constraints.

        :raises MissingParameterError: If a required parameter is missing
        :raises InvalidParameterError: If a parameter violates its constraint
        """
        parameters.require(sorted(self.REQUIRED_PARAMS))
        parameters.validate(
            positive=[name for name in self.POSITIVE_PARAMS if name in parameters],
            simplex=[name for name in self.SIMPLEX_PARAMS if name in parameters],
            covariance=[name for name in self.COVARIANCE_PARAMS if name in parameters],
        )

    def simulate(
        self,
        parameters: Mapping,
        n: "custom_types.Integer",
        *,
        seed: Optional["custom_types.Integer"] = None,
        rng: Optional[np.random.Generator] = None,
        **options: Any,
    ) -> Dataset:
        """Simulate a dataset of `n` observations.

        :param parameters: True parameter values
        :type parameters: Mapping[str, custom_types.ArrayLike]
        :param n: Number of observations. Must be a positive integer.
        :type n: custom_types.Integer
        :param seed: Seed for a fresh generator. Defaults to None.
        :type seed: Optional[custom_types.Integer]
        :param rng: Generator to draw from. Mutually exclusive with `seed`.
            Defaults to None.
        :type rng: Optional[np.random.Generator]
        :param options: Simulator-specific options

        :returns: The simulated dataset, with any latent quantities drawn along
            the way recorded in ``latent``
        :rtype: Dataset

        :raises ValueError: If `n` is not a positive integer
        :raises MissingParameterError: If a required parameter is missing
        :raises InvalidParameterError: If a parameter violates its constraint
        """
        if isinstance(n, bool) or not isinstance(n, (int, np.integer)) or n < 1:
            raise ValueError(f"n must be a positive integer, got {n!r}.")
        if not isinstance(parameters, ParameterSet):
            parameters = ParameterSet(parameters)
        self.check_parameters(parameters)
        return self._simulate(parameters, int(n), utils.get_rng(seed, rng), **options)

    @abstractmethod
    def _simulate(
        self,
        parameters: ParameterSet,
        n: int,
        rng: np.random.Generator,
        **options: Any,
    ) -> Dataset:
        """Draw the dataset. Parameters have already been checked."""


def get_simulator(name: str) -> Simulator:
    """Instantiate a registered simulator by name.

    :raises ValueError: If no simulator is registered under `name`
    """
    # Importing the library registers the built-in simulators
    import simfitpy.models  # pylint: disable=import-outside-toplevel, unused-import

    if name not in SIMULATORS:
        raise ValueError(
            f"Unknown simulator {name!r}. Registered: {', '.join(sorted(SIMULATORS))}"
        )
    return SIMULATORS[name]()


def simulate(
    parameters: Mapping,
    n: "custom_types.Integer",
    config: SimulationConfig,
) -> Dataset:
    """Simulate a dataset with the simulator named in `config`.

    Example:
        >>> simulate(
        ...     {"intercept": 5.0, "slope": [0.2], "sigma": 0.5},
        ...     100,
        ...     SimulationConfig(model="autoregressive", seed=1),
        ... )
    """
    return get_simulator(config.model).simulate(
        parameters, n, seed=config.seed, **config.options
    )
