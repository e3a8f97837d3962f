# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Parameter declarations for SimFitPy models.

Parameters are the unknowns a model infers. Each is declared with a shape, a
constraint on its values, a role describing what it means in the model, and
an optional prior. Transformed parameters are deterministic functions of the
parameters and data; they are tracked in the draws and estimates but are never
sampled directly.

Constraints map onto :py:mod:`torch.distributions.constraints`. When sampling,
parameters are moved to an unconstrained space with
:py:func:`torch.distributions.biject_to` so that the log-determinant of the
Jacobian is well defined. When optimizing, the (possibly non-bijective)
:py:func:`torch.distributions.transform_to` is used instead.
"""

from __future__ import annotations

from typing import Any, Literal, Optional, TYPE_CHECKING, Union

import torch.distributions as dist

from torch.distributions import constraints

from simfitpy.exceptions import DimensionMismatchError, MissingParameterError
from simfitpy.model.components.distributions import (
    Distribution,
    SUPPORT_TO_CONSTRAINT,
)

if TYPE_CHECKING:
    from simfitpy import custom_types

Constraint = Literal["real", "positive", "unit_interval", "simplex"]
Role = Literal["location", "scale", "proportion", "coefficient", "latent"]

CONSTRAINTS: dict[str, constraints.Constraint] = {
    "real": constraints.real,
    "positive": constraints.positive,
    "unit_interval": constraints.unit_interval,
    "simplex": constraints.simplex,
}

# Roles that only make sense with a particular constraint
ROLE_CONSTRAINTS: dict[str, str] = {"scale": "positive", "proportion": "simplex"}


def _normalize_shape(shape: Any) -> tuple["custom_types.ShapeEntry", ...]:
    """Convert a shape (int, str, or sequence thereof) to a tuple."""
    if isinstance(shape, (int, str)):
        return (shape,)
    return tuple(shape)


def resolve_shape(
    shape: tuple["custom_types.ShapeEntry", ...], dims: dict[str, int]
) -> tuple[int, ...]:
    """Replace dimension names in `shape` with their bound sizes.

    :raises DimensionMismatchError: If a dimension name is not bound
    """
    resolved = []
    for entry in shape:
        if isinstance(entry, str):
            if entry not in dims:
                raise DimensionMismatchError(f"Dimension '{entry}' is not bound.")
            resolved.append(dims[entry])
        else:
            resolved.append(int(entry))
    return tuple(resolved)


class Parameter:
    """A parameter to be inferred.

    :param name: Name of the parameter
    :type name: str
    :param shape: Shape of the parameter. Entries are either fixed sizes or
        dimension names resolved from the data (e.g. ``("n",)`` for one value
        per observation). Defaults to () (a scalar).
    :type shape: Union[custom_types.ShapeEntry, tuple[custom_types.ShapeEntry, ...]]
    :param constraint: Support of the parameter. Defaults to "real".
    :type constraint: Literal["real", "positive", "unit_interval", "simplex"]
    :param role: What the parameter represents. Scales must be positive and
        proportions must be simplex-valued. Defaults to "location".
    :type role: Literal["location", "scale", "proportion", "coefficient", "latent"]
    :param prior: Prior distribution. None gives a flat prior over the
        constrained space, leaving the parameter to be scored by likelihood
        terms. Defaults to None.
    :type prior: Optional[Distribution]

    :raises ValueError: If the constraint or role is unknown
    """

    def __init__(
        self,
        name: str,
        shape: Union[int, str, tuple] = (),
        *,
        constraint: Constraint = "real",
        role: Role = "location",
        prior: Optional[Distribution] = None,
    ):
        if constraint not in CONSTRAINTS:
            raise ValueError(f"Unknown constraint: {constraint!r}")
        if role not in ("location", "scale", "proportion", "coefficient", "latent"):
            raise ValueError(f"Unknown role: {role!r}")

        self.name = name
        self.shape = _normalize_shape(shape)
        self.constraint = constraint
        self.role = role
        self.prior = prior

    def __repr__(self) -> str:
        prior = "flat" if self.prior is None else str(self.prior)
        return (
            f"Parameter({self.name!r}, shape={self.shape}, "
            f"constraint={self.constraint!r}, role={self.role!r}, prior={prior})"
        )

    def check_declaration(self) -> None:
        """Check that the role, constraint, shape, and prior agree.

        :raises MissingParameterError: If they do not
        """
        # Roles imply constraints
        if (required := ROLE_CONSTRAINTS.get(self.role)) and required != self.constraint:
            raise MissingParameterError(
                f"Parameter '{self.name}' has role '{self.role}' and must be "
                f"constrained '{required}', not '{self.constraint}'."
            )

        # A simplex needs a last dimension to live on
        if self.constraint == "simplex" and len(self.shape) == 0:
            raise MissingParameterError(
                f"Simplex parameter '{self.name}' needs at least one dimension."
            )

        # The prior must be defined on the constrained space
        if self.prior is not None:
            expected = SUPPORT_TO_CONSTRAINT.get(self.prior.SUPPORT)
            if expected != self.constraint:
                raise MissingParameterError(
                    f"Prior {self.prior} of parameter '{self.name}' has support "
                    f"'{self.prior.SUPPORT}', which does not match the parameter's "
                    f"constraint '{self.constraint}'."
                )

    @property
    def dims(self) -> tuple[Optional[str], ...]:
        """Dimension name of each axis (None for fixed-size axes)."""
        return tuple(entry if isinstance(entry, str) else None for entry in self.shape)

    def bijection(self) -> dist.transforms.Transform:
        """Bijective map from unconstrained space (used when sampling)."""
        return dist.biject_to(CONSTRAINTS[self.constraint])

    def transform(self) -> dist.transforms.Transform:
        """Map from unconstrained space suited to optimization."""
        return dist.transform_to(CONSTRAINTS[self.constraint])


class TransformedParameter:
    """A deterministic function of parameters and data.

    Transformed parameters are computed in declaration order, so later ones may
    use earlier ones. They may be referenced by name in priors and likelihood
    terms, and they are recorded alongside the parameters in all fit results.

    :param name: Name of the transformed parameter
    :type name: str
    :param fn: Function of ``(params, data)`` returning a tensor
    :type fn: custom_types.TensorFn
    :param dims: Dimension names of the result, used to align exchangeable
        components. Defaults to () (no named dimensions).
    :type dims: tuple[Optional[str], ...]
    """

    def __init__(self, name: str, fn: "custom_types.TensorFn", dims: tuple = ()):
        self.name = name
        self.fn = fn
        self.dims = _normalize_shape(dims)

    def __repr__(self) -> str:
        return f"TransformedParameter({self.name!r}, dims={self.dims})"
