# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Utility functions for the SimFitPy package.

This module provides small helpers that support the core functionality of
SimFitPy, including:

    - Construction of explicitly owned random streams for simulation and chains
    - Validation of positive, simplex, and covariance-valued arrays
    - Naming of the scalar elements of array-valued parameters
    - Tensor conversion at the NumPy/PyTorch boundary

Users will not typically need to interact with this module directly--it is designed
to be used internally by SimFitPy.
"""

from __future__ import annotations

import itertools

from typing import Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt
import torch

from simfitpy.defaults import DEFAULT_SIMPLEX_ATOL
from simfitpy.exceptions import InvalidParameterError

if TYPE_CHECKING:
    from simfitpy import custom_types


def get_rng(
    seed: Optional["custom_types.Integer"] = None,
    rng: Optional[np.random.Generator] = None,
) -> np.random.Generator:
    """Resolve the random generator a simulation should own.

    :param seed: Seed for a fresh generator. Ignored if `rng` is given.
    :type seed: Optional[custom_types.Integer]
    :param rng: An existing generator to use as-is. Defaults to None.
    :type rng: Optional[np.random.Generator]

    :returns: The generator to draw from
    :rtype: np.random.Generator

    :raises ValueError: If both `seed` and `rng` are provided
    """
    if rng is not None:
        if seed is not None:
            raise ValueError("Provide either `seed` or `rng`, not both.")
        return rng
    return np.random.default_rng(seed)


def spawn_streams(
    seed: Optional["custom_types.Integer"], n: "custom_types.Integer"
) -> list[tuple[np.random.Generator, torch.Generator]]:
    """Spawn `n` independent (NumPy, PyTorch) random stream pairs from one seed.

    Each pair is owned by exactly one chain or trial. The NumPy generator and the
    PyTorch generator of a pair are seeded from the same child
    :py:class:`numpy.random.SeedSequence`, so the whole set is reproducible from
    `seed` alone.

    :param seed: Root seed. If None, fresh OS entropy is used.
    :type seed: Optional[custom_types.Integer]
    :param n: Number of stream pairs to spawn
    :type n: custom_types.Integer

    :returns: List of (numpy generator, torch generator) pairs
    :rtype: list[tuple[np.random.Generator, torch.Generator]]
    """
    streams = []
    for child in np.random.SeedSequence(seed).spawn(int(n)):
        torch_gen = torch.Generator()
        torch_gen.manual_seed(int(child.generate_state(1, dtype=np.uint64)[0] >> 1))
        streams.append((np.random.default_rng(child), torch_gen))
    return streams


def spawn_seeds(
    seed: Optional["custom_types.Integer"], n: "custom_types.Integer"
) -> list[int]:
    """Derive `n` independent integer seeds from a root seed."""
    return [
        int(child.generate_state(1)[0])
        for child in np.random.SeedSequence(seed).spawn(int(n))
    ]


def check_positive(name: str, value: npt.NDArray) -> None:
    """Raise InvalidParameterError unless every element is strictly positive."""
    if not np.all(np.isfinite(value)) or np.any(value <= 0):
        raise InvalidParameterError(
            f"Parameter '{name}' must be finite and strictly positive."
        )


def check_simplex(
    name: str, value: npt.NDArray, atol: "custom_types.Float" = DEFAULT_SIMPLEX_ATOL
) -> None:
    """Raise InvalidParameterError unless the last axis lies on the simplex.

    :param name: Name of the parameter, used in the error message
    :type name: str
    :param value: Array whose last dimension holds proportion vectors
    :type value: npt.NDArray
    :param atol: Absolute tolerance on the sum. Defaults to 1e-8.
    :type atol: custom_types.Float

    :raises InvalidParameterError: If the array is 0-d, has negative entries,
        or any vector does not sum to one
    """
    if value.ndim == 0:
        raise InvalidParameterError(f"Simplex parameter '{name}' cannot be a scalar.")
    if np.any(value < 0):
        raise InvalidParameterError(
            f"Simplex parameter '{name}' has negative entries."
        )
    if not np.allclose(value.sum(axis=-1), 1.0, rtol=0.0, atol=atol):
        raise InvalidParameterError(
            f"Simplex parameter '{name}' does not sum to 1 over its last dimension."
        )


def check_covariance(name: str, value: npt.NDArray) -> None:
    """Raise InvalidParameterError unless `value` is a symmetric positive-definite matrix.

    Positive-definiteness is checked with a Cholesky factorization, which fails
    for semi-definite and indefinite matrices alike.

    :param name: Name of the parameter, used in the error message
    :type name: str
    :param value: Candidate covariance matrix
    :type value: npt.NDArray

    :raises InvalidParameterError: If the matrix is not square, not symmetric,
        or not positive-definite
    """
    if value.ndim != 2 or value.shape[0] != value.shape[1]:
        raise InvalidParameterError(
            f"Covariance parameter '{name}' must be a square matrix, got shape "
            f"{value.shape}."
        )
    if not np.allclose(value, value.T, rtol=1e-10, atol=1e-12):
        raise InvalidParameterError(f"Covariance parameter '{name}' is not symmetric.")
    try:
        np.linalg.cholesky(value)
    except np.linalg.LinAlgError as err:
        raise InvalidParameterError(
            f"Covariance parameter '{name}' is not positive-definite."
        ) from err


def scalar_names(name: str, shape: tuple[int, ...]) -> list[str]:
    """Name every scalar element of an array-valued parameter.

    Example:
        >>> scalar_names("beta", (2, 2))
        ['beta[0,0]', 'beta[0,1]', 'beta[1,0]', 'beta[1,1]']
        >>> scalar_names("sigma", ())
        ['sigma']
    """
    if len(shape) == 0:
        return [name]
    return [
        f"{name}[{','.join(str(i) for i in index)}]"
        for index in itertools.product(*(range(s) for s in shape))
    ]


def to_tensor(value) -> torch.Tensor:
    """Convert an array-like to a float64 tensor (tensors are cast, not copied)."""
    if isinstance(value, torch.Tensor):
        return value.to(torch.float64)

    # Copy so that read-only arrays (e.g., from a ParameterSet) stay untouched
    return torch.from_numpy(np.array(value, dtype=np.float64))


def fmt_elapsed(seconds: "custom_types.Float") -> str:
    """Format elapsed time for progress messages and reports."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m {secs}s"
