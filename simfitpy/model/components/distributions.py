# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Distribution declarations used for priors and likelihood terms.

A declaration names a distribution family and binds each of its arguments to
one of:

    - a constant (a number or array),
    - the name of a model parameter, transformed parameter, or data field, or
    - a callable ``fn(params, data) -> torch.Tensor``.

Declarations are inert until :py:meth:`Distribution.build` is called with the
current parameter and data tensors, at which point the matching
:py:mod:`torch.distributions` object is constructed.

Every family declares the constraints its arguments need (e.g., a Normal scale
must be positive) and the support of the values it scores. The model
specification uses this metadata to reject models whose parameters are not
declared with matching constraints before any fitting happens.
"""

from __future__ import annotations

from abc import ABC
from typing import Any, ClassVar, Literal, TYPE_CHECKING

import numpy as np
import torch
import torch.distributions as dist

from simfitpy import utils
from simfitpy.exceptions import InvalidParameterError, MissingParameterError

if TYPE_CHECKING:
    from simfitpy import custom_types

Support = Literal["real", "positive", "unit_interval", "simplex", "count"]


class Distribution(ABC):
    """Abstract base class for distribution declarations.

    Subclasses set the class variables below; most need nothing else.

    :param args: Distribution arguments keyed by name. Every name in ``ARGS`` must
        be provided.
    :type args: custom_types.DistributionArg

    :raises MissingParameterError: If a required argument is not provided
    :raises TypeError: If an unknown argument is provided
    :raises InvalidParameterError: If a constant argument violates its constraint

    :cvar TORCH_DIST: The :py:mod:`torch.distributions` class to build
    :cvar ARGS: Names of the arguments, in the order they are displayed
    :cvar POSITIVE_ARGS: Arguments that must be strictly positive
    :cvar SIMPLEX_ARGS: Arguments whose last dimension must lie on the simplex
    :cvar UNIT_INTERVAL_ARGS: Arguments that must lie in (0, 1)
    :cvar COVARIANCE_ARGS: Arguments that must be covariance matrices
    :cvar SUPPORT: Support of the values the distribution scores
    :cvar EVENT_DIM: Number of trailing dimensions forming one event
    :cvar FILL_VALUE: A value inside the support, substituted for missing data
    """

    TORCH_DIST: ClassVar[type[dist.Distribution]]
    ARGS: ClassVar[tuple[str, ...]] = ()
    POSITIVE_ARGS: ClassVar[frozenset[str]] = frozenset()
    SIMPLEX_ARGS: ClassVar[frozenset[str]] = frozenset()
    UNIT_INTERVAL_ARGS: ClassVar[frozenset[str]] = frozenset()
    COVARIANCE_ARGS: ClassVar[frozenset[str]] = frozenset()
    SUPPORT: ClassVar[Support] = "real"
    EVENT_DIM: ClassVar[int] = 0
    FILL_VALUE: ClassVar[float] = 0.0

    def __init__(self, **args: Any):
        # All arguments must be provided, and no others
        if missing := [name for name in self.ARGS if name not in args]:
            raise MissingParameterError(
                f"{self.__class__.__name__} is missing arguments: {', '.join(missing)}"
            )
        if extra := set(args) - set(self.ARGS):
            raise TypeError(
                f"{self.__class__.__name__} got unexpected arguments: "
                f"{', '.join(sorted(extra))}"
            )

        # Constants are converted to tensors once and checked against their
        # constraints here. References and callables are resolved at build time.
        self._args: dict[str, Any] = {}
        for name in self.ARGS:
            value = args[name]
            if isinstance(value, str) or callable(value):
                self._args[name] = value
                continue
            array = np.asarray(value, dtype=np.float64)
            if name in self.POSITIVE_ARGS:
                utils.check_positive(f"{self.__class__.__name__}.{name}", array)
            if name in self.SIMPLEX_ARGS:
                utils.check_simplex(f"{self.__class__.__name__}.{name}", array)
            if name in self.UNIT_INTERVAL_ARGS and np.any((array <= 0) | (array >= 1)):
                raise InvalidParameterError(
                    f"{self.__class__.__name__}.{name} must lie in (0, 1)."
                )
            if name in self.COVARIANCE_ARGS:
                utils.check_covariance(f"{self.__class__.__name__}.{name}", array)
            self._args[name] = utils.to_tensor(array)

    def __str__(self) -> str:
        def describe(value):
            if isinstance(value, str):
                return value
            if callable(value):
                return getattr(value, "__name__", "<fn>")
            if value.ndim == 0:
                return f"{value.item():g}"
            return f"<array {tuple(value.shape)}>"

        args = ", ".join(f"{name}={describe(self._args[name])}" for name in self.ARGS)
        return f"{self.__class__.__name__}({args})"

    __repr__ = __str__

    @property
    def references(self) -> dict[str, str]:
        """Arguments bound by name, mapped to the name they reference."""
        return {
            argname: value
            for argname, value in self._args.items()
            if isinstance(value, str)
        }

    def _resolve(
        self,
        value: Any,
        params: dict[str, torch.Tensor],
        data: dict[str, torch.Tensor],
    ) -> torch.Tensor:
        """Resolve one argument against the current parameters and data."""
        if isinstance(value, str):
            if value in params:
                return params[value]
            if value in data:
                return data[value]
            raise MissingParameterError(
                f"{self} references '{value}', which is neither a parameter nor data."
            )
        if callable(value):
            return value(params, data)
        return value

    def build(
        self,
        params: dict[str, torch.Tensor],
        data: dict[str, torch.Tensor],
    ) -> dist.Distribution:
        """Construct the PyTorch distribution for the current values.

        :param params: Current constrained parameters (and transformed parameters)
        :type params: dict[str, torch.Tensor]
        :param data: Observed data and predictors as tensors
        :type data: dict[str, torch.Tensor]

        :returns: The PyTorch distribution
        :rtype: torch.distributions.Distribution
        """
        return self._make(
            **{
                name: self._resolve(value, params, data)
                for name, value in self._args.items()
            }
        )

    def _make(self, **kwargs: torch.Tensor) -> dist.Distribution:
        return self.TORCH_DIST(**kwargs, validate_args=False)

    def fill(self, value: torch.Tensor) -> torch.Tensor:
        """Return a tensor shaped like `value` holding a point of the support."""
        return torch.full_like(value, self.FILL_VALUE)


class Normal(Distribution):
    """Normal distribution with location `loc` and standard deviation `scale`."""

    TORCH_DIST = dist.Normal
    ARGS = ("loc", "scale")
    POSITIVE_ARGS = frozenset({"scale"})

    def __init__(self, loc: Any, scale: Any):
        super().__init__(loc=loc, scale=scale)


class HalfNormal(Distribution):
    """Half-normal distribution on the positive reals."""

    TORCH_DIST = dist.HalfNormal
    ARGS = ("scale",)
    POSITIVE_ARGS = frozenset({"scale"})
    SUPPORT = "positive"
    FILL_VALUE = 1.0

    def __init__(self, scale: Any):
        super().__init__(scale=scale)


class HalfCauchy(Distribution):
    """Half-Cauchy distribution on the positive reals."""

    TORCH_DIST = dist.HalfCauchy
    ARGS = ("scale",)
    POSITIVE_ARGS = frozenset({"scale"})
    SUPPORT = "positive"
    FILL_VALUE = 1.0

    def __init__(self, scale: Any):
        super().__init__(scale=scale)


class StudentT(Distribution):
    """Student's t distribution with `df` degrees of freedom."""

    TORCH_DIST = dist.StudentT
    ARGS = ("df", "loc", "scale")
    POSITIVE_ARGS = frozenset({"df", "scale"})

    def __init__(self, df: Any, loc: Any, scale: Any):
        super().__init__(df=df, loc=loc, scale=scale)


class LogNormal(Distribution):
    """Log-normal distribution; `loc` and `scale` refer to the log scale."""

    TORCH_DIST = dist.LogNormal
    ARGS = ("loc", "scale")
    POSITIVE_ARGS = frozenset({"scale"})
    SUPPORT = "positive"
    FILL_VALUE = 1.0

    def __init__(self, loc: Any, scale: Any):
        super().__init__(loc=loc, scale=scale)


class Gamma(Distribution):
    """Gamma distribution parametrized by shape `concentration` and `rate`."""

    TORCH_DIST = dist.Gamma
    ARGS = ("concentration", "rate")
    POSITIVE_ARGS = frozenset({"concentration", "rate"})
    SUPPORT = "positive"
    FILL_VALUE = 1.0

    def __init__(self, concentration: Any, rate: Any):
        super().__init__(concentration=concentration, rate=rate)


class Exponential(Distribution):
    """Exponential distribution with the given `rate`."""

    TORCH_DIST = dist.Exponential
    ARGS = ("rate",)
    POSITIVE_ARGS = frozenset({"rate"})
    SUPPORT = "positive"
    FILL_VALUE = 1.0

    def __init__(self, rate: Any):
        super().__init__(rate=rate)


class Beta(Distribution):
    """Beta distribution on (0, 1) with shape parameters `alpha` and `beta`."""

    TORCH_DIST = dist.Beta
    ARGS = ("alpha", "beta")
    POSITIVE_ARGS = frozenset({"alpha", "beta"})
    SUPPORT = "unit_interval"
    FILL_VALUE = 0.5

    def __init__(self, alpha: Any, beta: Any):
        super().__init__(alpha=alpha, beta=beta)

    def _make(self, **kwargs: torch.Tensor) -> dist.Distribution:
        return dist.Beta(
            concentration1=kwargs["alpha"],
            concentration0=kwargs["beta"],
            validate_args=False,
        )


class Dirichlet(Distribution):
    """Dirichlet distribution over proportion vectors (last dimension)."""

    TORCH_DIST = dist.Dirichlet
    ARGS = ("concentration",)
    POSITIVE_ARGS = frozenset({"concentration"})
    SUPPORT = "simplex"
    EVENT_DIM = 1

    def __init__(self, concentration: Any):
        super().__init__(concentration=concentration)

    def fill(self, value: torch.Tensor) -> torch.Tensor:
        return torch.full_like(value, 1.0 / value.shape[-1])


class Poisson(Distribution):
    """Poisson distribution over counts with the given `rate`."""

    TORCH_DIST = dist.Poisson
    ARGS = ("rate",)
    POSITIVE_ARGS = frozenset({"rate"})
    SUPPORT = "count"

    def __init__(self, rate: Any):
        super().__init__(rate=rate)


class Binomial(Distribution):
    """Binomial distribution of successes out of `total_count` trials."""

    TORCH_DIST = dist.Binomial
    ARGS = ("total_count", "probs")
    UNIT_INTERVAL_ARGS = frozenset({"probs"})
    SUPPORT = "count"

    def __init__(self, total_count: Any, probs: Any):
        super().__init__(total_count=total_count, probs=probs)


class MultivariateNormal(Distribution):
    """Multivariate normal distribution over the last dimension.

    Missing coordinates are marginalized: the distribution of the observed
    coordinates of a multivariate normal is itself multivariate normal, with the
    matching sub-vector of `loc` and sub-matrix of `covariance_matrix`.
    """

    TORCH_DIST = dist.MultivariateNormal
    ARGS = ("loc", "covariance_matrix")
    COVARIANCE_ARGS = frozenset({"covariance_matrix"})
    EVENT_DIM = 1

    def __init__(self, loc: Any, covariance_matrix: Any):
        super().__init__(loc=loc, covariance_matrix=covariance_matrix)

    def marginal_log_prob(
        self,
        distribution: dist.MultivariateNormal,
        value: torch.Tensor,
        mask: torch.Tensor,
    ) -> torch.Tensor:
        """Log density of the observed coordinates only.

        :param distribution: The full (unmarginalized) distribution
        :type distribution: torch.distributions.MultivariateNormal
        :param value: Events, either one vector or a matrix with one event per row
        :type value: torch.Tensor
        :param mask: Boolean mask shaped like `value` (``True`` means observed)
        :type mask: torch.Tensor

        :returns: Summed log density of the observed coordinates
        :rtype: torch.Tensor
        """
        # Bring everything to (n_events, dim)
        loc = distribution.loc.expand(value.shape).reshape(-1, value.shape[-1])
        cov = distribution.covariance_matrix.expand(
            *value.shape, value.shape[-1]
        ).reshape(-1, value.shape[-1], value.shape[-1])
        flat_value = value.reshape(-1, value.shape[-1])
        flat_mask = mask.reshape(-1, value.shape[-1])

        # Score each event on its observed coordinates
        log_prob = value.new_zeros(())
        for event, observed in enumerate(flat_mask):
            if not observed.any():
                continue
            idx = observed.nonzero().squeeze(-1)
            log_prob = log_prob + dist.MultivariateNormal(
                loc[event, idx],
                covariance_matrix=cov[event][idx][:, idx],
                validate_args=False,
            ).log_prob(flat_value[event, idx])
        return log_prob


# Which parameter constraint each support is compatible with
SUPPORT_TO_CONSTRAINT: dict[str, str] = {
    "real": "real",
    "positive": "positive",
    "unit_interval": "unit_interval",
    "simplex": "simplex",
}
