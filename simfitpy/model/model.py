# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Binding of model specifications to data, and the two fitting modes.

A :py:class:`Model` pairs a :py:class:`~simfitpy.model.spec.ModelSpec` with a
:py:class:`~simfitpy.data.Dataset`. Binding checks that the dataset provides
every field the specification declares, with the declared rank and sizes, and
resolves every named dimension to a size. All of these checks happen before
any computation, so a mismatched model fails fast with a
:py:class:`~simfitpy.exceptions.DimensionMismatchError`.

Once bound, the model can be compiled into a
:py:class:`~simfitpy.model.nn_module.PyTorchModel` and fit either by
Hamiltonian Monte Carlo (:py:meth:`Model.sample`) or by posterior-mode search
(:py:meth:`Model.optimize`).
"""

from __future__ import annotations

import threading
import warnings

from typing import Optional, TYPE_CHECKING

import dask
import numpy as np
import torch

from simfitpy import utils
from simfitpy.config import OptimizeConfig, SampleConfig
from simfitpy.exceptions import (
    ConvergenceWarning,
    DimensionMismatchError,
    IncompleteChainWarning,
)
from simfitpy.model.components.parameters import resolve_shape
from simfitpy.model.hmc import HMCChain
from simfitpy.model.nn_module import PyTorchModel
from simfitpy.model.results.hmc import SampleResults
from simfitpy.model.results.mle import OptimizationResult

if TYPE_CHECKING:
    from simfitpy import custom_types
    from simfitpy.data import Dataset, ParameterSet
    from simfitpy.model.spec import ModelSpec


class Model:
    """A model specification bound to a dataset.

    :param spec: The model specification
    :type spec: ModelSpec
    :param dataset: The data to condition on
    :type dataset: Dataset

    :ivar dims: Size of every named dimension
    :ivar parameter_shapes: Resolved shape of every parameter
    :ivar data_tensors: Responses and predictors as float64 tensors. Missing
        response entries hold zero; they are never scored.
    :ivar masks: Observation masks of the partially observed responses

    :raises DimensionMismatchError: If the dataset lacks a declared field, a
        field has the wrong rank or size, a dimension name binds to two
        different sizes, or a field declared ``allow_missing=False`` has
        missing entries
    """

    def __init__(self, spec: "ModelSpec", dataset: "Dataset"):
        self.spec = spec
        self.dataset = dataset

        # Resolve dimensions and shapes
        self.dims = self._bind_dims()
        self.parameter_shapes: dict[str, tuple[int, ...]] = {
            param.name: resolve_shape(param.shape, self.dims)
            for param in spec.parameters
        }

        # Convert the data the model needs to tensors
        self.data_tensors: dict[str, torch.Tensor] = {}
        self.masks: dict[str, torch.Tensor] = {}
        for field in spec.data:
            value = dataset[field.name]
            if field.name in dataset.mask:
                observed = dataset.mask[field.name]
                if not observed.all():
                    if not field.allow_missing:
                        raise DimensionMismatchError(
                            f"Field '{field.name}' of model '{spec.name}' must be "
                            f"fully observed, but {(~observed).sum()} entries are "
                            "missing."
                        )
                    self.masks[field.name] = torch.from_numpy(observed.copy())
                value = np.where(observed, value, 0.0)
            self.data_tensors[field.name] = utils.to_tensor(value)

    def __repr__(self) -> str:
        return f"Model({self.spec.name!r}, n_obs={self.dataset.n_obs}, dims={self.dims})"

    def _bind_dims(self) -> dict[str, int]:
        """Resolve named dimensions against the dataset."""
        dims = {"n": self.dataset.n_obs, **self.spec.dims}
        for field in self.spec.data:
            if field.name not in self.dataset:
                raise DimensionMismatchError(
                    f"Model '{self.spec.name}' requires field '{field.name}', which "
                    "the dataset does not provide."
                )
            shape = self.dataset[field.name].shape
            if len(shape) != len(field.shape):
                raise DimensionMismatchError(
                    f"Field '{field.name}' should have {len(field.shape)} dimensions "
                    f"{field.shape}, but has shape {shape}."
                )
            for axis, (entry, size) in enumerate(zip(field.shape, shape)):
                if isinstance(entry, str):
                    if dims.setdefault(entry, size) != size:
                        raise DimensionMismatchError(
                            f"Dimension '{entry}' is {dims[entry]}, but axis {axis} of "
                            f"field '{field.name}' has size {size}."
                        )
                elif entry != size:
                    raise DimensionMismatchError(
                        f"Axis {axis} of field '{field.name}' should have size {entry}, "
                        f"but has size {size}."
                    )
        return dims

    def to_pytorch(
        self,
        *,
        bijective: bool = True,
        seed: Optional["custom_types.Integer"] = None,
        init: Optional["ParameterSet"] = None,
        init_radius: "custom_types.Float" = 2.0,
    ) -> PyTorchModel:
        """Compile the model into a PyTorch module.

        See :py:class:`~simfitpy.model.nn_module.PyTorchModel` for the arguments.
        """
        return PyTorchModel(
            self, bijective=bijective, seed=seed, init=init, init_radius=init_radius
        )

    def sample(
        self,
        config: Optional[SampleConfig] = None,
        *,
        cancel: Optional[threading.Event] = None,
        init: Optional["ParameterSet"] = None,
    ) -> SampleResults:
        """Draw from the posterior with Hamiltonian Monte Carlo.

        Chains run in parallel threads through :py:func:`dask.compute` unless
        ``config.parallel`` is False. Each chain owns random streams spawned from
        ``config.seed``, so results do not depend on thread scheduling.

        :param config: Sampler settings. Defaults to None (all defaults).
        :type config: Optional[SampleConfig]
        :param cancel: Event which, once set, stops all chains at their next
            iteration. Defaults to None.
        :type cancel: Optional[threading.Event]
        :param init: Initial values for some or all parameters. Defaults to None.
        :type init: Optional[ParameterSet]

        :returns: Draws of all chains
        :rtype: SampleResults

        :raises FitCancelledError: If no chain retained a single draw
        """
        config = config or SampleConfig()

        # One compiled module is shared; chains only evaluate its log density
        module = self.to_pytorch(
            bijective=True, seed=config.seed, init=init, init_radius=config.init_radius
        )
        chains = [
            HMCChain(
                module,
                config,
                chain=chain_ind,
                rng=rng,
                generator=generator,
                cancel=cancel,
                init=init,
            )
            for chain_ind, (rng, generator) in enumerate(
                utils.spawn_streams(config.seed, config.n_chains)
            )
        ]

        # Run the chains
        if config.parallel and len(chains) > 1:
            chain_results = dask.compute(
                *[dask.delayed(chain.run, pure=False)() for chain in chains],
                scheduler="threads",
            )
        else:
            chain_results = [chain.run() for chain in chains]

        results = SampleResults.from_chains(
            chain_results,
            model_name=self.spec.name,
            parameter_dims=self.spec.parameter_dims(),
            exchangeable_dims=self.spec.exchangeable_dims,
            observed_data=self.dataset.to_xarray(),
        )

        # Report problems
        if not results.is_complete:
            warnings.warn(
                f"{sum(not c.complete for c in results.chains)} of "
                f"{len(results.chains)} chains stopped early; they are excluded from "
                "convergence diagnostics.",
                IncompleteChainWarning,
            )
        if (n_divergent := results.n_divergent) > 0:
            message = f"{n_divergent} divergent transitions after warmup."
            results.notes.append(message)
            warnings.warn(message, ConvergenceWarning)

        return results

    def optimize(
        self,
        config: Optional[OptimizeConfig] = None,
        *,
        init: Optional["ParameterSet"] = None,
    ) -> OptimizationResult:
        """Find the posterior mode.

        The mode is that of the posterior density over the constrained
        parameters (no Jacobian adjustment). A search that does not converge is
        not an error: the result carries a
        :py:class:`~simfitpy.exceptions.ConvergenceError` in ``error`` and a
        :py:class:`~simfitpy.exceptions.ConvergenceWarning` is emitted.

        :param config: Optimizer settings. Defaults to None (all defaults).
        :type config: Optional[OptimizeConfig]
        :param init: Initial values for some or all parameters. Defaults to None.
        :type init: Optional[ParameterSet]

        :returns: The mode and the details of the search
        :rtype: OptimizationResult
        """
        config = config or OptimizeConfig()
        module = self.to_pytorch(
            bijective=False, seed=config.seed, init=init, init_radius=config.init_radius
        )
        trace = module.fit(
            optimizer=config.optimizer,
            max_iter=config.max_iter,
            tolerance=config.tolerance,
            grad_tolerance=config.grad_tolerance,
            lr=config.lr,
            early_stop=config.early_stop,
            progress_bar=config.progress_bar,
        )
        result = OptimizationResult(self, module, trace, config)
        if result.error is not None:
            warnings.warn(str(result.error), ConvergenceWarning)
        return result
