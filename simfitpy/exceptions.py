# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Custom exception and warning classes for the SimFitPy package.

Errors fall into two groups. Structural and configuration problems (a malformed
ground truth, an incomplete model specification, data that do not match the
declared model dimensions) are raised as exceptions before any computation
starts. Numerical and statistical quality problems (an optimizer that did not
meet its tolerance, chains that disagree, chains that were stopped early) are
legitimate, inspectable outcomes of a fit. These are attached to the result and
reported through :py:mod:`warnings` instead of being raised.

All exceptions inherit from :py:class:`SimFitPyError` and all warnings from
:py:class:`SimFitPyWarning` so that either family can be caught or filtered
with a single clause.
"""


class SimFitPyError(Exception):
    """Base class for all exceptions in the SimFitPy package.

    Example:
        >>> try:
        ...     # SimFitPy operations
        ...     pass
        ... except SimFitPyError as e:
        ...     print(f"SimFitPy error occurred: {e}")
    """


class InvalidParameterError(SimFitPyError, ValueError):
    """Raised when a ground-truth parameter value violates its constraint.

    Examples are a covariance matrix that is not symmetric positive-definite,
    a non-positive scale, or a proportion vector that does not lie on the
    simplex. Raised before simulation begins.
    """


class MissingParameterError(SimFitPyError, KeyError):
    """Raised when a parameter set or model specification is incomplete.

    This covers parameter sets lacking a required entry as well as model
    specifications that reference undeclared names or fail to declare the
    constraint a parameter needs (e.g., a scale parameter that is not declared
    positive). Raised before simulation or fitting begins.
    """

    def __str__(self) -> str:
        # KeyError quotes its message; we want it printed as written
        return str(self.args[0]) if self.args else ""


class DimensionMismatchError(SimFitPyError, ValueError):
    """Raised at the fitting boundary when data shapes do not match the model."""


class InvalidDatasetError(SimFitPyError, ValueError):
    """Raised when a dataset breaks its own invariants.

    For instance, a time-series dataset whose index is not strictly increasing,
    or a mask whose shape differs from its values.
    """


class ConvergenceError(SimFitPyError):
    """Describes a fit that failed to meet its convergence tolerance.

    This error is *not* raised by the fitters. Instead, an instance is attached
    to the fit result (see
    :py:attr:`simfitpy.model.results.mle.OptimizationResult.error`) and its
    message is emitted as a :py:class:`ConvergenceWarning`. Callers decide
    whether to retry with a different initialization.

    :param message: Description of the failure
    :type message: str
    :param n_iter: Number of iterations performed before giving up
    :type n_iter: int
    :param objective: Objective value reached when the search stopped
    :type objective: float
    """

    def __init__(self, message: str, n_iter: int = 0, objective: float = float("nan")):
        super().__init__(message)
        self.n_iter = n_iter
        self.objective = objective


class FitCancelledError(SimFitPyError):
    """Raised when a sampling run was cancelled before any chain kept a draw."""


class SimFitPyWarning(UserWarning):
    """Base class for all warnings emitted by SimFitPy."""


class ConvergenceWarning(SimFitPyWarning):
    """Emitted when an optimizer or the sampling chains did not converge."""


class IncompleteChainWarning(SimFitPyWarning):
    """Emitted when one or more chains stopped before finishing their draws."""
