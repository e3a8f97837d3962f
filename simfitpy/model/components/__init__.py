# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Building blocks of SimFitPy model specifications."""

from simfitpy.model.components.distributions import (
    Beta,
    Binomial,
    Dirichlet,
    Distribution,
    Exponential,
    Gamma,
    HalfCauchy,
    HalfNormal,
    LogNormal,
    MultivariateNormal,
    Normal,
    Poisson,
    StudentT,
)
from simfitpy.model.components.likelihood import Field, Likelihood
from simfitpy.model.components.parameters import Parameter, TransformedParameter
