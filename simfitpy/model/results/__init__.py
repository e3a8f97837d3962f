# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Fit results for both fitting modes."""

from simfitpy.model.results.hmc import ChainResult, SampleResults
from simfitpy.model.results.mle import FitResult, OptimizationResult
