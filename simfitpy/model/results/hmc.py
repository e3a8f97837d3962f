# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Hamiltonian Monte Carlo (HMC) sampling results.

This module holds the output of :py:meth:`simfitpy.model.Model.sample`. Each
chain's run is summarized by a :py:class:`ChainResult`, and the draws of all
chains are gathered in a :py:class:`SampleResults`, which wraps an ArviZ
InferenceData object with:

    - a ``posterior`` group with dims ``(chain, draw, ...)``
    - a ``sample_stats`` group with the log density, acceptance statistic,
      step size, number of leapfrog steps, divergences, and energy of every
      retained transition
    - a ``chain_info`` group with the status, step size, divergence count, and
      wall-clock time of every chain that was run

Chains stopped early (cancelled or timed out) are kept in ``chain_info`` but
are explicitly marked incomplete. Only complete chains enter the posterior,
unless no chain completed, in which case the incomplete chains are truncated to
a common length and the result as a whole is marked incomplete.

The InferenceData object is saved to and loaded from NetCDF with the
``h5netcdf`` engine, and everything needed to rebuild a :py:class:`SampleResults`
(including per-chain metadata) travels with it.
"""

from __future__ import annotations

import os

from dataclasses import dataclass, field
from typing import Literal, Optional, Sequence, TYPE_CHECKING, Union

import arviz as az
import numpy as np
import numpy.typing as npt
import xarray as xr

from simfitpy.data import ParameterSet
from simfitpy.exceptions import FitCancelledError
from simfitpy.model.results.mle import FitResult, axis_names

if TYPE_CHECKING:
    from simfitpy import custom_types

ChainStatus = Literal["complete", "cancelled", "timeout"]


@dataclass(frozen=True)
class ChainResult:
    """Metadata (and, before packaging, the draws) of a single chain.

    :param chain: Index of the chain
    :param status: Whether the chain ran to completion or was stopped early
    :param step_size: Final adapted step size
    :param n_divergent: Number of divergent post-warmup transitions
    :param elapsed: Wall-clock time of the chain in seconds
    :param n_draws: Number of retained (post-warmup) draws
    :param n_warmup: Number of warmup iterations completed
    :param draws: Retained draws keyed by parameter name, each with shape
        (n_draws, *shape). Not kept once packaged into a SampleResults.
    :param stats: Per-transition sampler statistics keyed by name
    """

    chain: int
    status: ChainStatus
    step_size: float
    n_divergent: int
    elapsed: float
    n_draws: int
    n_warmup: int
    draws: Optional[dict[str, npt.NDArray]] = field(default=None, repr=False)
    stats: Optional[dict[str, npt.NDArray]] = field(default=None, repr=False)

    @property
    def complete(self) -> bool:
        return self.status == "complete"


class SampleResults(FitResult):
    """Draws from all chains of an HMC run.

    :param inference_obj: InferenceData built by :py:meth:`from_chains`, or the
        path to a NetCDF file written by :py:meth:`save_netcdf`
    :type inference_obj: Union[az.InferenceData, str, os.PathLike]

    :raises ValueError: If `inference_obj` is neither an InferenceData object
        nor a path, or lacks the required groups

    Example:
        >>> results = model.sample(SampleConfig(n_chains=4, seed=1))
        >>> results.point_estimates()["sigma"]
        >>> results.save_netcdf("ar1.nc")
        >>> reloaded = SampleResults("ar1.nc")
    """

    MODE = "sample"

    def __init__(self, inference_obj: Union[az.InferenceData, str, os.PathLike]):
        # If the ArviZ object is a string, we assume it is a path to a netcdf file
        # and load it from there
        if isinstance(inference_obj, (str, os.PathLike)):
            inference_obj = az.from_netcdf(inference_obj, engine="h5netcdf")
        elif not isinstance(inference_obj, az.InferenceData):
            raise ValueError(
                "inference_obj must be either a path or an InferenceData object"
            )
        if missing_groups := (
            {"posterior", "sample_stats", "chain_info"} - set(inference_obj.groups())
        ):
            raise ValueError(
                f"ArviZ object is missing the following groups: {', '.join(missing_groups)}"
            )
        self.inference_obj = inference_obj

        # Recover the model metadata from the posterior
        posterior = inference_obj.posterior
        exchangeable = posterior.attrs.get("exchangeable_dims", "")
        super().__init__(
            model_name=str(posterior.attrs.get("model_name", "")),
            parameter_dims={
                name: tuple(
                    None if dimname.startswith(f"{name}_dim_") else dimname
                    for dimname in posterior[name].dims[2:]
                )
                for name in posterior.data_vars
            },
            exchangeable_dims=tuple(d for d in str(exchangeable).split(",") if d),
        )

        # Rebuild the chain metadata
        info = inference_obj.chain_info
        self.chains: tuple[ChainResult, ...] = tuple(
            ChainResult(
                chain=int(info["chain_id"].values[i]),
                status=str(info["status"].values[i]),
                step_size=float(info["step_size"].values[i]),
                n_divergent=int(info["n_divergent"].values[i]),
                elapsed=float(info["elapsed"].values[i]),
                n_draws=int(info["n_draws"].values[i]),
                n_warmup=int(info["n_warmup"].values[i]),
            )
            for i in range(info.sizes["chain_id"])
        )

        # Record incomplete chains
        for chain in self.chains:
            if not chain.complete:
                self.notes.append(
                    f"Chain {chain.chain} stopped early ({chain.status}) after "
                    f"{chain.n_warmup} warmup iterations and {chain.n_draws} draws."
                )

        self._draws: Optional[dict[str, npt.NDArray[np.float64]]] = None

    def __repr__(self) -> str:
        n_complete = sum(chain.complete for chain in self.chains)
        return (
            f"SampleResults({self.model_name!r}, {n_complete}/{len(self.chains)} "
            f"chains complete, {self.inference_obj.posterior.sizes['draw']} draws "
            "per chain)"
        )

    @classmethod
    def from_chains(
        cls,
        chains: Sequence[ChainResult],
        *,
        model_name: str,
        parameter_dims: dict[str, tuple],
        exchangeable_dims: tuple[str, ...] = (),
        observed_data: Optional[xr.Dataset] = None,
    ) -> "SampleResults":
        """Package the draws of finished chains.

        :param chains: One result per chain, holding draws and statistics
        :type chains: Sequence[ChainResult]
        :param model_name: Name of the fitted model
        :type model_name: str
        :param parameter_dims: Dimension names of every parameter
        :type parameter_dims: dict[str, tuple]
        :param exchangeable_dims: Dimensions whose labels are arbitrary.
            Defaults to ().
        :type exchangeable_dims: tuple[str, ...]
        :param observed_data: Observed data to attach. Defaults to None.
        :type observed_data: Optional[xr.Dataset]

        :returns: The packaged results
        :rtype: SampleResults

        :raises FitCancelledError: If no chain retained a single draw
        """
        # Complete chains form the posterior. Without any, fall back on the
        # incomplete chains truncated to a common length.
        used = [chain for chain in chains if chain.complete]
        if not used:
            used = [chain for chain in chains if chain.n_draws > 0]
        if not used:
            raise FitCancelledError(
                f"Sampling of '{model_name}' stopped before any chain retained a draw."
            )
        n_draws = min(chain.n_draws for chain in used)
        chain_ids = [chain.chain for chain in used]

        # Stack the draws
        posterior = {
            name: np.stack([chain.draws[name][:n_draws] for chain in used])
            for name in used[0].draws
        }
        sample_stats = {
            name: np.stack([chain.stats[name][:n_draws] for chain in used])
            for name in used[0].stats
        }
        inference_obj = az.from_dict(
            posterior=posterior,
            sample_stats=sample_stats,
            coords={"chain": chain_ids},
            dims={
                name: axis_names(name, parameter_dims.get(name, ()), values.ndim - 2)
                for name, values in posterior.items()
            },
            attrs={
                "model_name": model_name,
                "mode": cls.MODE,
                "exchangeable_dims": ",".join(exchangeable_dims),
            },
        )

        # Per-chain metadata for all chains run
        chain_info = xr.Dataset(
            {
                "status": ("chain_id", np.array([c.status for c in chains], dtype=str)),
                "step_size": ("chain_id", np.array([c.step_size for c in chains])),
                "n_divergent": ("chain_id", np.array([c.n_divergent for c in chains])),
                "elapsed": ("chain_id", np.array([c.elapsed for c in chains])),
                "n_draws": ("chain_id", np.array([c.n_draws for c in chains])),
                "n_warmup": ("chain_id", np.array([c.n_warmup for c in chains])),
            },
            coords={"chain_id": [c.chain for c in chains]},
        )
        groups = {"chain_info": chain_info}
        if observed_data is not None:
            groups["observed_data"] = observed_data
        inference_obj.add_groups(groups)

        return cls(inference_obj)

    @property
    def is_complete(self) -> bool:
        """Whether every chain ran to completion."""
        return all(chain.complete for chain in self.chains)

    @property
    def n_divergent(self) -> int:
        """Total number of divergent post-warmup transitions."""
        return sum(chain.n_divergent for chain in self.chains)

    def draws(self) -> dict[str, npt.NDArray[np.float64]]:
        """Pooled draws of all chains in the posterior, shape (n_draws, *shape)."""
        if self._draws is None:
            posterior = self.inference_obj.posterior
            self._draws = {
                name: posterior[name]
                .stack(sample=("chain", "draw"))
                .transpose("sample", ...)
                .values
                for name in posterior.data_vars
            }
        return self._draws

    def point_estimates(self) -> ParameterSet:
        return ParameterSet(
            {name: np.median(values, axis=0) for name, values in self.draws().items()}
        )

    def posterior_means(self) -> ParameterSet:
        return ParameterSet(
            {name: values.mean(axis=0) for name, values in self.draws().items()}
        )

    def convergence(self) -> dict[str, xr.Dataset]:
        """Rank-normalized split R-hat and bulk effective sample size.

        :returns: Datasets keyed by "r_hat" and "ess_bulk", each holding one
            variable per parameter
        :rtype: dict[str, xr.Dataset]
        """
        return {
            "r_hat": az.rhat(self.inference_obj.posterior),
            "ess_bulk": az.ess(self.inference_obj.posterior, method="bulk"),
        }

    def chain_point_estimates(self) -> list[ParameterSet]:
        """Posterior medians of every chain in the posterior."""
        posterior = self.inference_obj.posterior
        return [
            ParameterSet(
                {
                    name: posterior[name].isel(chain=i).median("draw").values
                    for name in posterior.data_vars
                }
            )
            for i in range(posterior.sizes["chain"])
        ]

    def relabel_chains(
        self, permutations: dict[str, list[npt.NDArray[np.int64]]]
    ) -> "SampleResults":
        """Permute exchangeable dimensions chain by chain.

        Chain ``i`` is reordered as ``values[..., permutations[dim][i], ...]``
        along `dim` in every parameter carrying it. Coordinates are unchanged.

        :param permutations: For each dimension, one permutation per chain in the
            posterior
        :type permutations: dict[str, list[npt.NDArray[np.int64]]]

        :returns: New results with the relabelled posterior
        :rtype: SampleResults
        """
        posterior = self.inference_obj.posterior.copy()
        for name in posterior.data_vars:
            values = posterior[name].values.copy()
            for dimname, perms in permutations.items():
                if dimname not in posterior[name].dims:
                    continue
                if len(perms) != values.shape[0]:
                    raise ValueError(
                        f"Expected {values.shape[0]} permutations for '{dimname}', "
                        f"got {len(perms)}."
                    )
                axis = posterior[name].dims.index(dimname) - 1
                for i, perm in enumerate(perms):
                    values[i] = np.take(values[i], perm, axis=axis)
            posterior[name] = (posterior[name].dims, values)

        # Rebuild with every other group untouched
        groups = {
            group: getattr(self.inference_obj, group)
            for group in self.inference_obj.groups()
        }
        groups["posterior"] = posterior
        relabelled = type(self)(az.InferenceData(**groups))
        relabelled.notes = list(self.notes)
        return relabelled

    def _update_group(
        self, attrname: str, new_group: xr.Dataset, force_del: bool = False
    ) -> None:
        """Update or add a group to the ArviZ InferenceData object."""
        # If the group already exists and we are not forcing a delete, we just update
        # the group.
        if hasattr(self.inference_obj, attrname) and not force_del:
            getattr(self.inference_obj, attrname).update(new_group)
            return

        # Otherwise, if we are forcing a delete, we delete the group before adding
        # the new one
        if force_del and hasattr(self.inference_obj, attrname):
            delattr(self.inference_obj, attrname)
        self.inference_obj.add_groups({attrname: new_group})

    def calculate_diagnostics(self) -> xr.Dataset:
        """Compute R-hat and bulk ESS and store them in the InferenceData object.

        The statistics are stacked along a "metric" dimension and recorded in
        the ``variable_diagnostic_stats`` group, so they are saved alongside the
        draws.
        """
        stats = self.convergence()
        diagnostics = xr.concat(
            [stats["r_hat"], stats["ess_bulk"]],
            dim=xr.DataArray(["r_hat", "ess_bulk"], dims="metric", name="metric"),
        )
        self._update_group("variable_diagnostic_stats", diagnostics, force_del=True)
        return diagnostics

    def save_netcdf(self, filename: Union[str, os.PathLike]) -> None:
        """Save the ArviZ InferenceData object to NetCDF format.

        Example:
            >>> results.save_netcdf('my_results.nc')
            >>> # Later: reload with SampleResults('my_results.nc')
        """
        self.inference_obj.to_netcdf(str(filename), engine="h5netcdf")

    @classmethod
    def from_netcdf(cls, path: Union[str, os.PathLike]) -> "SampleResults":
        """Load results previously written by :py:meth:`save_netcdf`.

        :raises FileNotFoundError: If the specified NetCDF file doesn't exist
        """
        # The path to the netcdf file must exist
        if not os.path.exists(path):
            raise FileNotFoundError(
                f"The file {path} does not exist. Please provide a valid path."
            )
        return cls(str(path))

    def divergence_rate(self) -> "custom_types.Float":
        """Fraction of retained transitions that diverged."""
        return float(self.inference_obj.sample_stats["diverging"].mean())
