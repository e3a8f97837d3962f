# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Structured, validated model specifications.

A :py:class:`ModelSpec` collects the parameters, transformed parameters,
likelihood terms, and data requirements of a model. It is checked as a whole
when constructed: every name a distribution or likelihood term references must
be declared, and every parameter feeding a constrained distribution argument
must carry the matching constraint. A specification that passes these checks
can be bound to any dataset that provides its fields
(see :py:class:`simfitpy.model.Model`).
"""

from __future__ import annotations

from typing import Optional, Sequence

from simfitpy.exceptions import MissingParameterError
from simfitpy.model.components.distributions import Distribution
from simfitpy.model.components.likelihood import Field, Likelihood
from simfitpy.model.components.parameters import Parameter, TransformedParameter


class ModelSpec:
    """Complete description of a model.

    :param name: Name of the model
    :type name: str
    :param parameters: Parameters to infer
    :type parameters: Sequence[Parameter]
    :param likelihood: Likelihood terms
    :type likelihood: Sequence[Likelihood]
    :param data: Data fields the model requires
    :type data: Sequence[Field]
    :param transformed: Transformed parameters, computed in order. Defaults to ().
    :type transformed: Sequence[TransformedParameter]
    :param dims: Dimension sizes fixed by the model rather than the data (e.g.
        the number of groups). Defaults to None.
    :type dims: Optional[dict[str, int]]
    :param exchangeable_dims: Dimensions whose labels are arbitrary, such that
        any permutation of them leaves the likelihood unchanged. Estimates are
        aligned to the ground truth along these before they are compared.
        Defaults to ().
    :type exchangeable_dims: Sequence[str]

    :raises ValueError: If a name is declared twice or a fixed dimension is not
        a positive integer
    :raises MissingParameterError: If the specification references anything
        undeclared or pairs a parameter with an incompatible constraint
    """

    def __init__(
        self,
        name: str,
        *,
        parameters: Sequence[Parameter],
        likelihood: Sequence[Likelihood],
        data: Sequence[Field],
        transformed: Sequence[TransformedParameter] = (),
        dims: Optional[dict[str, int]] = None,
        exchangeable_dims: Sequence[str] = (),
    ):
        self.name = name
        self.parameters = tuple(parameters)
        self.likelihood = tuple(likelihood)
        self.data = tuple(data)
        self.transformed = tuple(transformed)
        self.dims = dict(dims or {})
        self.exchangeable_dims = tuple(exchangeable_dims)

        self._validate()

    def __repr__(self) -> str:
        lines = [f"ModelSpec({self.name!r})"]
        lines.extend(f"  {param}" for param in self.parameters)
        lines.extend(f"  {trans}" for trans in self.transformed)
        lines.extend(f"  {term}" for term in self.likelihood)
        return "\n".join(lines)

    @property
    def parameter_names(self) -> tuple[str, ...]:
        return tuple(param.name for param in self.parameters)

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(field.name for field in self.data)

    def get_parameter(self, name: str) -> Parameter:
        for param in self.parameters:
            if param.name == name:
                return param
        raise MissingParameterError(f"Model '{self.name}' has no parameter '{name}'.")

    def parameter_dims(self) -> dict[str, tuple[Optional[str], ...]]:
        """Dimension names of every parameter and transformed parameter."""
        dims = {param.name: param.dims for param in self.parameters}
        dims.update(
            {
                trans.name: tuple(d if isinstance(d, str) else None for d in trans.dims)
                for trans in self.transformed
            }
        )
        return dims

    def _validate(self) -> None:
        # Names are unique across parameters, transformed parameters, and data
        names = [*self.parameter_names, *(t.name for t in self.transformed)]
        names.extend(self.field_names)
        if duplicates := sorted({name for name in names if names.count(name) > 1}):
            raise ValueError(f"Names declared more than once: {', '.join(duplicates)}")

        for dimname, size in self.dims.items():
            if not isinstance(size, int) or size < 1:
                raise ValueError(f"Dimension '{dimname}' must be a positive integer.")

        # Parameters must be self-consistent
        for param in self.parameters:
            param.check_declaration()

        # Dimension names must be bound by the model or by some data field
        known_dims = {"n", *self.dims}
        for field in self.data:
            known_dims.update(e for e in field.shape if isinstance(e, str))
        for param in self.parameters:
            if unbound := [d for d in param.dims if d is not None and d not in known_dims]:
                raise MissingParameterError(
                    f"Parameter '{param.name}' uses undeclared dimensions: "
                    f"{', '.join(unbound)}"
                )
        for dimname in self.exchangeable_dims:
            if not any(dimname in param.dims for param in self.parameters):
                raise MissingParameterError(
                    f"Exchangeable dimension '{dimname}' is not used by any parameter."
                )

        # Likelihood responses must exist, and at least one term must score data
        if not self.likelihood:
            raise MissingParameterError(f"Model '{self.name}' has no likelihood terms.")
        for term in self.likelihood:
            if term.response not in self.field_names + self.parameter_names:
                raise MissingParameterError(
                    f"Likelihood response '{term.response}' is neither a data field "
                    "nor a parameter."
                )
        if not any(term.response in self.field_names for term in self.likelihood):
            raise MissingParameterError(
                f"Model '{self.name}' has no likelihood term scoring observed data."
            )

        # References must resolve and respect the argument constraints
        for param in self.parameters:
            if param.prior is not None:
                self._check_references(param.prior, f"prior of '{param.name}'")
        for term in self.likelihood:
            self._check_references(term.distribution, f"likelihood of '{term.response}'")

    def _check_references(self, distribution: Distribution, context: str) -> None:
        declared = {
            *self.parameter_names,
            *(t.name for t in self.transformed),
            *self.field_names,
        }
        constraints = {param.name: param.constraint for param in self.parameters}
        for argname, ref in distribution.references.items():
            if ref not in declared:
                raise MissingParameterError(
                    f"The {context} references undeclared name '{ref}'."
                )

            # Only declared parameters carry constraints that can be checked
            if ref not in constraints:
                continue
            if argname in distribution.COVARIANCE_ARGS:
                raise MissingParameterError(
                    f"The {context} uses parameter '{ref}' as a covariance matrix; "
                    "covariance matrices must be built by a transformation."
                )
            for required, argset in (
                ("positive", distribution.POSITIVE_ARGS),
                ("simplex", distribution.SIMPLEX_ARGS),
                ("unit_interval", distribution.UNIT_INTERVAL_ARGS),
            ):
                if argname in argset and constraints[ref] != required:
                    raise MissingParameterError(
                        f"The {context} uses parameter '{ref}' as argument "
                        f"'{argname}', which requires constraint '{required}', but "
                        f"'{ref}' is constrained '{constraints[ref]}'."
                    )
