# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Parameter sets and datasets exchanged between simulator, fitter, and reporter.

Two containers are defined here:

    - :py:class:`ParameterSet`, an immutable mapping from parameter name to a
      float array. It serves both as ground truth (simulator input) and as an
      estimate (fitter output).
    - :py:class:`Dataset`, an ordered collection of observations. Each row pairs
      an index value (a time point or sample identifier) with one or more
      observed responses and optional predictors. Unobserved entries are
      tracked with a boolean mask per response.

Both containers store read-only NumPy arrays. Components that receive them
(the fitter and the reporter) can therefore rely on them never changing
underneath.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Iterator, Optional, Sequence, TYPE_CHECKING

import numpy as np
import numpy.typing as npt
import pandas as pd
import xarray as xr

from simfitpy import utils
from simfitpy.exceptions import InvalidDatasetError, MissingParameterError

if TYPE_CHECKING:
    from simfitpy import custom_types


def _frozen(value: Any) -> npt.NDArray[np.float64]:
    """Copy `value` to a read-only float64 array."""
    array = np.array(value, dtype=np.float64)
    array.setflags(write=False)
    return array


class ParameterSet(Mapping):
    """Immutable mapping from parameter names to numeric values or arrays.

    Values are copied to read-only float64 arrays on construction; scalars become
    0-d arrays. The class behaves like a read-only dictionary and adds helpers to
    check constraints and to flatten entries into named scalars.

    :param values: Mapping of parameter names to values. Defaults to None.
    :type values: Optional[Mapping[str, custom_types.ArrayLike]]
    :param kwargs: Additional parameters given as keyword arguments. These take
        precedence over entries of `values` with the same name.

    Example:
        >>> truth = ParameterSet(intercept=5.0, slope=[0.2], sigma=0.5)
        >>> truth.validate(positive=("sigma",))
        >>> truth.scalars()
        {'intercept': 5.0, 'slope[0]': 0.2, 'sigma': 0.5}
    """

    def __init__(self, values: Optional[Mapping] = None, /, **kwargs):
        merged = dict(values or {})
        merged.update(kwargs)
        self._values: dict[str, npt.NDArray[np.float64]] = {
            name: _frozen(value) for name, value in merged.items()
        }

    def __getitem__(self, name: str) -> npt.NDArray[np.float64]:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        entries = ", ".join(
            f"{name}={value.tolist() if value.size <= 6 else f'<array {value.shape}>'}"
            for name, value in self._values.items()
        )
        return f"ParameterSet({entries})"

    def require(self, names: Sequence[str]) -> None:
        """Raise MissingParameterError listing every name absent from the set.

        :param names: Names that must be present
        :type names: Sequence[str]

        :raises MissingParameterError: If any name is missing
        """
        if missing := [name for name in names if name not in self._values]:
            raise MissingParameterError(
                f"Missing required parameters: {', '.join(sorted(missing))}"
            )

    def validate(
        self,
        positive: Sequence[str] = (),
        simplex: Sequence[str] = (),
        covariance: Sequence[str] = (),
    ) -> None:
        """Check value constraints for the named entries.

        :param positive: Names of entries that must be strictly positive
        :type positive: Sequence[str]
        :param simplex: Names of entries whose last axis must lie on the simplex
        :type simplex: Sequence[str]
        :param covariance: Names of entries that must be symmetric positive-definite
            matrices
        :type covariance: Sequence[str]

        :raises MissingParameterError: If a named entry is absent
        :raises InvalidParameterError: If a constraint is violated
        """
        self.require([*positive, *simplex, *covariance])
        for name in positive:
            utils.check_positive(name, self._values[name])
        for name in simplex:
            utils.check_simplex(name, self._values[name])
        for name in covariance:
            utils.check_covariance(name, self._values[name])

    def merge(self, other: Mapping) -> "ParameterSet":
        """Return a new set holding the entries of both (`other` wins on conflicts)."""
        return ParameterSet({**self._values, **dict(other)})

    def scalars(self) -> dict[str, float]:
        """Flatten every entry into scalar elements keyed as ``name[i,j]``."""
        return {
            scalar_name: float(scalar)
            for name, value in self._values.items()
            for scalar_name, scalar in zip(
                utils.scalar_names(name, value.shape), value.ravel()
            )
        }

    @property
    def shapes(self) -> dict[str, tuple[int, ...]]:
        """Shape of every entry."""
        return {name: value.shape for name, value in self._values.items()}


class Dataset:
    """Ordered collection of observations with optional predictors.

    Every array stored in a dataset shares a leading dimension of length
    ``n_obs``. Row ``i`` associates ``index[i]`` with the observed values
    ``values[name][i]`` and predictors ``predictors[name][i]``.

    Unobserved entries are tracked per response in ``mask`` (``True`` means
    observed). NaN values in the provided responses are treated as missing, and
    missing entries are stored as NaN. Predictors must be fully observed.

    :param values: Observed responses keyed by name
    :type values: Mapping[str, custom_types.ArrayLike]
    :param index: Index value of each row (e.g. time points or sample IDs).
        Defaults to ``0..n-1``.
    :type index: Optional[custom_types.ArrayLike]
    :param mask: Boolean observation masks keyed by response name. Responses
        without a mask are considered fully observed (except for NaNs).
    :type mask: Optional[Mapping[str, custom_types.ArrayLike]]
    :param predictors: Fully observed predictors keyed by name
    :type predictors: Optional[Mapping[str, custom_types.ArrayLike]]
    :param ordered: Whether the rows form a time series. If True, ``index``
        must be strictly increasing. Defaults to False (exchangeable rows).
    :type ordered: bool
    :param latent: Latent quantities drawn while simulating the data (part of
        the ground truth). Defaults to an empty set.
    :type latent: Optional[ParameterSet]

    :raises InvalidDatasetError: If arrays disagree on the number of rows, a mask
        does not match its values, a predictor contains NaN, a name is used
        twice, or an ordered index is not strictly increasing
    """

    def __init__(
        self,
        values: Mapping,
        index: Optional[Any] = None,
        *,
        mask: Optional[Mapping] = None,
        predictors: Optional[Mapping] = None,
        ordered: bool = False,
        latent: Optional[ParameterSet] = None,
    ):
        mask = dict(mask or {})
        predictors = dict(predictors or {})

        # There must be at least one response
        if len(values) == 0:
            raise InvalidDatasetError("A dataset needs at least one response.")

        # Responses and predictors share a namespace
        if overlap := set(values) & set(predictors):
            raise InvalidDatasetError(
                f"Names used for both responses and predictors: {', '.join(overlap)}"
            )
        if extra := set(mask) - set(values):
            raise InvalidDatasetError(
                f"Masks provided for unknown responses: {', '.join(extra)}"
            )

        # Record responses, combining explicit masks with NaN positions
        self._values: dict[str, npt.NDArray[np.float64]] = {}
        self._mask: dict[str, npt.NDArray[np.bool_]] = {}
        for name, value in values.items():
            value = np.array(value, dtype=np.float64)
            if value.ndim == 0:
                raise InvalidDatasetError(f"Response '{name}' must have a row dimension.")
            observed = ~np.isnan(value)
            if name in mask:
                given = np.asarray(mask[name], dtype=bool)
                if given.shape != value.shape:
                    raise InvalidDatasetError(
                        f"Mask for '{name}' has shape {given.shape}, but its values "
                        f"have shape {value.shape}."
                    )
                observed &= given
            value[~observed] = np.nan
            value.setflags(write=False)
            observed.setflags(write=False)
            self._values[name] = value
            self._mask[name] = observed

        # Record predictors
        self._predictors: dict[str, npt.NDArray[np.float64]] = {}
        for name, value in predictors.items():
            value = _frozen(value)
            if value.ndim == 0:
                raise InvalidDatasetError(
                    f"Predictor '{name}' must have a row dimension."
                )
            if np.isnan(value).any():
                raise InvalidDatasetError(f"Predictor '{name}' contains missing values.")
            self._predictors[name] = value

        # All arrays must agree on the number of rows
        n_rows = {
            arr.shape[0] for arr in (*self._values.values(), *self._predictors.values())
        }
        if len(n_rows) != 1:
            raise InvalidDatasetError(
                f"All responses and predictors must share their first dimension; got "
                f"lengths {sorted(n_rows)}."
            )
        self._n_obs: int = int(n_rows.pop())

        # Build and check the index
        index = np.arange(self._n_obs) if index is None else np.array(index)
        if index.shape != (self._n_obs,):
            raise InvalidDatasetError(
                f"Index must be one-dimensional of length {self._n_obs}, got shape "
                f"{index.shape}."
            )
        if ordered and self._n_obs > 1 and not np.all(np.diff(index) > 0):
            raise InvalidDatasetError(
                "Index of an ordered (time-series) dataset must be strictly increasing."
            )
        index.setflags(write=False)
        self._index = index
        self._ordered = bool(ordered)
        self._latent = ParameterSet() if latent is None else latent

    def __repr__(self) -> str:
        fields = ", ".join(
            f"{name}{arr.shape}"
            for name, arr in (*self._values.items(), *self._predictors.items())
        )
        return f"Dataset(n_obs={self._n_obs}, ordered={self.ordered}, {fields})"

    def __contains__(self, name: str) -> bool:
        return name in self._values or name in self._predictors

    def __getitem__(self, name: str) -> npt.NDArray[np.float64]:
        """Return a response or predictor by name."""
        if name in self._values:
            return self._values[name]
        if name in self._predictors:
            return self._predictors[name]
        raise KeyError(name)

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        *,
        responses: Sequence[str],
        index: Optional[str] = None,
        predictors: Sequence[str] = (),
        ordered: bool = False,
    ) -> "Dataset":
        """Build a dataset from an already-parsed table.

        Each named column becomes a one-dimensional response or predictor. Empty
        cells in response columns are treated as missing.

        :param df: Table with one observation per row
        :type df: pd.DataFrame
        :param responses: Columns holding observed responses
        :type responses: Sequence[str]
        :param index: Column holding the row index (e.g., time). Defaults to None
            (rows numbered from zero).
        :type index: Optional[str]
        :param predictors: Columns holding predictors. Defaults to none.
        :type predictors: Sequence[str]
        :param ordered: Whether rows form a time series. Defaults to False.
        :type ordered: bool

        :returns: The dataset
        :rtype: Dataset

        Example:
            >>> df = pd.DataFrame({"t": [0, 1, 2], "y": [1.0, None, 2.5]})
            >>> data = Dataset.from_dataframe(df, responses=["y"], index="t", ordered=True)
            >>> data.mask["y"]
            array([ True, False,  True])
        """
        if missing := {*responses, *predictors, *([index] if index else [])} - set(
            df.columns
        ):
            raise InvalidDatasetError(f"Columns not found: {', '.join(sorted(missing))}")
        return cls(
            values={name: df[name].to_numpy(dtype=np.float64) for name in responses},
            index=None if index is None else df[index].to_numpy(),
            predictors={
                name: df[name].to_numpy(dtype=np.float64) for name in predictors
            },
            ordered=ordered,
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Flatten the dataset into a table with one row per observation.

        Multi-dimensional entries are spread over several columns named
        ``name[j]``. Missing response entries appear as NaN.
        """
        columns = {}
        for name, arr in (*self._values.items(), *self._predictors.items()):
            if arr.ndim == 1:
                columns[name] = arr
                continue
            flat = arr.reshape(self._n_obs, -1)
            for col, colname in enumerate(utils.scalar_names(name, arr.shape[1:])):
                columns[colname] = flat[:, col]
        return pd.DataFrame(columns, index=pd.Index(self._index, name="index"))

    def to_xarray(self) -> xr.Dataset:
        """Convert to an xarray Dataset with an ``index`` coordinate.

        Masks are stored alongside their responses as ``<name>_observed``.
        """
        data_vars = {}
        for kind, arrays in (("response", self._values), ("predictor", self._predictors)):
            for name, arr in arrays.items():
                dims = ("index", *(f"{name}_dim_{i}" for i in range(arr.ndim - 1)))
                data_vars[name] = xr.DataArray(arr, dims=dims, attrs={"kind": kind})
                if kind == "response":
                    data_vars[f"{name}_observed"] = xr.DataArray(
                        self._mask[name], dims=dims
                    )
        return xr.Dataset(
            data_vars, coords={"index": self._index}, attrs={"ordered": int(self.ordered)}
        )

    def with_missing(self, name: str, mask: Any) -> "Dataset":
        """Return a copy in which additional entries of `name` are unobserved.

        :param name: Response to mask
        :type name: str
        :param mask: Boolean array shaped like the response; ``True`` keeps an
            entry observed, ``False`` hides it. Entries that are already missing
            stay missing.
        :type mask: custom_types.ArrayLike

        :returns: New dataset with the combined mask
        :rtype: Dataset
        """
        if name not in self._values:
            raise KeyError(f"Unknown response: {name}")
        masks = dict(self._mask)
        masks[name] = self._mask[name] & np.asarray(mask, dtype=bool)
        return Dataset(
            self._values,
            self._index,
            mask=masks,
            predictors=self._predictors,
            ordered=self.ordered,
            latent=self.latent,
        )

    def subset(self, rows: Any) -> "Dataset":
        """Return the dataset restricted to `rows` (integer positions or a boolean mask).

        Latent ground-truth values are carried over unchanged.
        """
        rows = np.asarray(rows)
        return Dataset(
            {name: arr[rows] for name, arr in self._values.items()},
            self._index[rows],
            mask={name: arr[rows] for name, arr in self._mask.items()},
            predictors={name: arr[rows] for name, arr in self._predictors.items()},
            ordered=self.ordered,
            latent=self.latent,
        )

    @property
    def n_obs(self) -> int:
        """Number of observations (rows)."""
        return self._n_obs

    @property
    def ordered(self) -> bool:
        """Whether the rows form a time series."""
        return self._ordered

    @property
    def latent(self) -> ParameterSet:
        """Latent quantities drawn while simulating the data."""
        return self._latent

    @property
    def index(self) -> npt.NDArray:
        """Index value of every row."""
        return self._index

    @property
    def values(self) -> dict[str, npt.NDArray[np.float64]]:
        """Observed responses; missing entries are NaN."""
        return dict(self._values)

    @property
    def mask(self) -> dict[str, npt.NDArray[np.bool_]]:
        """Observation mask of every response (``True`` means observed)."""
        return dict(self._mask)

    @property
    def predictors(self) -> dict[str, npt.NDArray[np.float64]]:
        """Fully observed predictors."""
        return dict(self._predictors)

    @property
    def fields(self) -> tuple[str, ...]:
        """Names of all responses followed by all predictors."""
        return (*self._values, *self._predictors)

    @property
    def n_missing(self) -> int:
        """Total number of unobserved response entries."""
        return int(sum((~m).sum() for m in self._mask.values()))
