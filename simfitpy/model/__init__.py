# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Model specification, binding, and fitting."""

from simfitpy.model.components import (
    Beta,
    Binomial,
    Dirichlet,
    Exponential,
    Field,
    Gamma,
    HalfCauchy,
    HalfNormal,
    Likelihood,
    LogNormal,
    MultivariateNormal,
    Normal,
    Parameter,
    Poisson,
    StudentT,
    TransformedParameter,
)
from simfitpy.model.model import Model
from simfitpy.model.results import (
    ChainResult,
    FitResult,
    OptimizationResult,
    SampleResults,
)
from simfitpy.model.spec import ModelSpec
