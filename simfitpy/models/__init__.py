# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Library of built-in simulators and matching model specifications.

Importing this package registers every built-in simulator (see
:py:data:`simfitpy.simulation.SIMULATORS`). :py:data:`LIBRARY` pairs each
simulator with the factory of the model that fits its data, the options of the
simulator that also configure the model, and an example ground truth; the
command-line pipelines are driven from it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from simfitpy.data import ParameterSet
from simfitpy.model import ModelSpec
from simfitpy.models import (
    autoregressive,
    factorization,
    hierarchical,
    spatial,
    state_space,
)
from simfitpy.models.autoregressive import AutoregressiveSimulator, ar_model
from simfitpy.models.factorization import (
    FactorizationSimulator,
    factorization_model,
    random_templates,
)
from simfitpy.models.hierarchical import HierarchicalSimulator, hierarchical_model
from simfitpy.models.spatial import (
    GaussianProcessSimulator,
    MultivariateNormalSimulator,
    gaussian_process_model,
)
from simfitpy.models.state_space import StateSpaceSimulator, state_space_model
from simfitpy.simulation import Simulator


@dataclass(frozen=True)
class LibraryEntry:
    """A simulator together with the model that fits its data.

    :param simulator: The simulator class
    :param build_spec: Factory of the fitted model
    :param example_truth: Function of an optional seed returning a ground truth
    :param spec_options: Maps simulation options onto keyword arguments of
        `build_spec` (e.g. the number of series of a state-space model)
    :param defaults: Default simulation options
    """

    simulator: type[Simulator]
    build_spec: Callable[..., ModelSpec]
    example_truth: Callable[[Optional[int]], ParameterSet]
    spec_options: dict[str, str]
    defaults: dict[str, Any]

    def spec(self, options: dict[str, Any], truth: ParameterSet) -> ModelSpec:
        """Build the model matching a simulation with these options and truth."""
        options = {**self.defaults, **options}
        kwargs = {
            spec_name: options[option_name]
            for option_name, spec_name in self.spec_options.items()
            if option_name in options
        }

        # Some model sizes follow from the truth rather than the options
        if self.simulator is AutoregressiveSimulator:
            kwargs["order"] = truth["slope"].size
        elif self.simulator is FactorizationSimulator:
            kwargs["n_groups"] = truth["templates"].shape[0]
        elif self.simulator is HierarchicalSimulator and "theta" in truth:
            kwargs["n_groups"] = truth["theta"].size
        return self.build_spec(**kwargs)


LIBRARY: dict[str, LibraryEntry] = {
    "autoregressive": LibraryEntry(
        AutoregressiveSimulator, ar_model, autoregressive.example_truth, {}, {}
    ),
    "state_space": LibraryEntry(
        StateSpaceSimulator,
        state_space_model,
        state_space.example_truth,
        {"n_series": "n_series"},
        {"n_series": 3},
    ),
    "hierarchical": LibraryEntry(
        HierarchicalSimulator,
        hierarchical_model,
        hierarchical.example_truth,
        {"n_groups": "n_groups"},
        {"n_groups": 8},
    ),
    "factorization": LibraryEntry(
        FactorizationSimulator,
        factorization_model,
        factorization.example_truth,
        {},
        {},
    ),
    "gaussian_process": LibraryEntry(
        GaussianProcessSimulator,
        gaussian_process_model,
        spatial.example_truth,
        {"kernel": "kernel"},
        {"kernel": "exponential"},
    ),
}
