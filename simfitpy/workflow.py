# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""The simulate, fit, and summarize harness.

:py:func:`fit` is the single entry point to both fitting modes.
:py:func:`run_trial` runs one round trip (simulate data from a known truth, fit
the model, compare the fit with the truth) and :py:func:`calibrate` repeats
independent round trips to measure how often credible intervals cover the truth.
"""

from __future__ import annotations

import dataclasses
import threading

from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional, Union, TYPE_CHECKING

import numpy as np
import pandas as pd

from tqdm import tqdm

from simfitpy import utils
from simfitpy.config import OptimizeConfig, ReportConfig, SampleConfig
from simfitpy.data import Dataset, ParameterSet
from simfitpy.diagnostics import Diagnostic, summarize
from simfitpy.model.model import Model
from simfitpy.model.results.mle import FitResult
from simfitpy.simulation import Simulator, get_simulator

if TYPE_CHECKING:
    from simfitpy import custom_types
    from simfitpy.model.spec import ModelSpec

FitMode = Literal["sample", "optimize"]
FitConfig = Union[SampleConfig, OptimizeConfig]

CONFIG_TYPES = {"sample": SampleConfig, "optimize": OptimizeConfig}


def fit(
    data: Dataset,
    model_spec: "ModelSpec",
    mode: str = "sample",
    config: Optional[FitConfig] = None,
    *,
    init: Optional[ParameterSet] = None,
    cancel: Optional[threading.Event] = None,
) -> FitResult:
    """Fit a model specification to a dataset.

    :param data: The observations
    :type data: Dataset
    :param model_spec: The model to fit
    :type model_spec: ModelSpec
    :param mode: "sample" for Hamiltonian Monte Carlo or "optimize" for a
        posterior-mode search. Defaults to "sample".
    :type mode: str
    :param config: Settings of the chosen mode. Must be a
        :py:class:`~simfitpy.config.SampleConfig` in sample mode and an
        :py:class:`~simfitpy.config.OptimizeConfig` in optimize mode. Defaults
        to None (all defaults).
    :type config: Optional[Union[SampleConfig, OptimizeConfig]]
    :param init: Initial values for some or all parameters. Defaults to None.
    :type init: Optional[ParameterSet]
    :param cancel: Event which, once set, stops sampling. Ignored in optimize
        mode. Defaults to None.
    :type cancel: Optional[threading.Event]

    :returns: A :py:class:`~simfitpy.model.results.hmc.SampleResults` or an
        :py:class:`~simfitpy.model.results.mle.OptimizationResult`
    :rtype: FitResult

    :raises ValueError: If the mode is unknown
    :raises TypeError: If the config does not belong to the mode
    :raises DimensionMismatchError: If the data do not fit the specification
    :raises FitCancelledError: If sampling was cancelled before any draw was kept
    """
    if mode not in CONFIG_TYPES:
        raise ValueError(f"Unknown fitting mode {mode!r}; use 'sample' or 'optimize'.")
    if config is not None and not isinstance(config, CONFIG_TYPES[mode]):
        raise TypeError(
            f"Mode {mode!r} requires a {CONFIG_TYPES[mode].__name__}, got "
            f"{type(config).__name__}."
        )

    # Binding checks the data against the specification before any computation
    model = Model(model_spec, data)
    if mode == "sample":
        return model.sample(config, cancel=cancel, init=init)
    return model.optimize(config, init=init)


@dataclass(frozen=True)
class Trial:
    """One simulate, fit, and summarize round trip.

    :param dataset: The simulated data
    :param fit: The fit to the simulated data
    :param diagnostic: The fit compared with the truth
    :param truth: The truth the fit was compared with, including latent values
        drawn by the simulator
    """

    dataset: Dataset
    fit: FitResult
    diagnostic: Diagnostic
    truth: ParameterSet


def _with_seed(config: Optional[FitConfig], mode: str, seed: int) -> FitConfig:
    """Copy of the fit configuration with its seed replaced."""
    config = config if config is not None else CONFIG_TYPES[mode]()
    return dataclasses.replace(config, seed=seed)


def run_trial(
    simulator: Union[Simulator, str],
    spec: "ModelSpec",
    truth: Mapping,
    n: "custom_types.Integer",
    *,
    mode: str = "sample",
    seed: Optional["custom_types.Integer"] = None,
    fit_config: Optional[FitConfig] = None,
    report_config: Optional[ReportConfig] = None,
    simulate_options: Optional[dict[str, Any]] = None,
) -> Trial:
    """Simulate a dataset, fit a model to it, and compare the fit with the truth.

    The simulation and the fit draw from independent streams derived from
    `seed`, so a trial is reproducible from its seed alone (the seed of
    `fit_config` is overridden). Latent values drawn by the simulator (e.g.
    group means) are added to the truth before comparison.

    :param simulator: A simulator or the name of a registered one
    :type simulator: Union[Simulator, str]
    :param spec: The model to fit
    :type spec: ModelSpec
    :param truth: Ground-truth parameters passed to the simulator
    :type truth: Mapping[str, custom_types.ArrayLike]
    :param n: Number of observations to simulate
    :type n: custom_types.Integer
    :param mode: Fitting mode. Defaults to "sample".
    :type mode: str
    :param seed: Root seed of the trial. Defaults to None.
    :type seed: Optional[custom_types.Integer]
    :param fit_config: Settings of the fitting mode. Defaults to None.
    :type fit_config: Optional[Union[SampleConfig, OptimizeConfig]]
    :param report_config: Settings of the reporter. Defaults to None.
    :type report_config: Optional[ReportConfig]
    :param simulate_options: Simulator-specific options. Defaults to None.
    :type simulate_options: Optional[dict[str, Any]]

    :returns: The trial
    :rtype: Trial
    """
    if isinstance(simulator, str):
        simulator = get_simulator(simulator)
    if mode not in CONFIG_TYPES:
        raise ValueError(f"Unknown fitting mode {mode!r}; use 'sample' or 'optimize'.")
    sim_seed, fit_seed = utils.spawn_seeds(seed, 2)

    # Simulate
    truth = truth if isinstance(truth, ParameterSet) else ParameterSet(truth)
    dataset = simulator.simulate(truth, n, seed=sim_seed, **(simulate_options or {}))
    full_truth = truth.merge(dataset.latent)

    # Fit and compare
    result = fit(dataset, spec, mode, _with_seed(fit_config, mode, fit_seed))
    diagnostic = summarize(result, full_truth, report_config)
    return Trial(dataset=dataset, fit=result, diagnostic=diagnostic, truth=full_truth)


@dataclass(frozen=True)
class CalibrationResult:
    """Repeated trials and the coverage of their credible intervals.

    :param trials: Every trial, in order
    :param coverage: Per-scalar table indexed by scalar name with columns
        "coverage" (fraction of trials whose interval covered the truth),
        "n_trials" (trials in which the scalar had an interval and a truth), and
        "mean_abs_error"
    :param coverage_rate: Fraction of all (trial, scalar) pairs covered
    :param interval: Nominal probability of the intervals
    """

    trials: tuple[Trial, ...]
    coverage: pd.DataFrame
    coverage_rate: float
    interval: float

    @property
    def diagnostics(self) -> tuple[Diagnostic, ...]:
        return tuple(trial.diagnostic for trial in self.trials)


def _coverage_table(diagnostics: tuple[Diagnostic, ...]) -> pd.DataFrame:
    """Aggregate coverage and error per scalar over many reports."""
    rows = pd.concat(
        [
            diag.summary[["covered", "abs_error"]].rename_axis("scalar").reset_index()
            for diag in diagnostics
        ],
        ignore_index=True,
    )
    rows = rows.dropna(subset=["covered"])
    rows["covered"] = rows["covered"].astype(float)
    table = rows.groupby("scalar", sort=False).agg(
        coverage=("covered", "mean"),
        n_trials=("covered", "size"),
        mean_abs_error=("abs_error", "mean"),
    )
    table.index.name = None
    return table


def calibrate(
    simulator: Union[Simulator, str],
    spec: "ModelSpec",
    truth: Mapping,
    n: "custom_types.Integer",
    *,
    n_trials: "custom_types.Integer" = 100,
    mode: str = "sample",
    seed: Optional["custom_types.Integer"] = None,
    fit_config: Optional[FitConfig] = None,
    report_config: Optional[ReportConfig] = None,
    simulate_options: Optional[dict[str, Any]] = None,
    progress_bar: bool = True,
) -> CalibrationResult:
    """Measure the coverage of credible intervals over repeated trials.

    Every trial simulates fresh data from the same truth with its own seed,
    spawned from `seed`. For a calibrated procedure the coverage of each
    scalar approaches the nominal ``report_config.interval``.

    Arguments are as in :py:func:`run_trial`, plus:

    :param n_trials: Number of trials. Defaults to 100.
    :type n_trials: custom_types.Integer
    :param progress_bar: Whether to display a progress bar. Defaults to True.
    :type progress_bar: bool

    :returns: Trials with aggregated coverage
    :rtype: CalibrationResult
    """
    if n_trials < 1:
        raise ValueError("n_trials must be a positive integer.")
    report_config = report_config or ReportConfig()
    if isinstance(simulator, str):
        simulator = get_simulator(simulator)

    trials = tuple(
        run_trial(
            simulator,
            spec,
            truth,
            n,
            mode=mode,
            seed=trial_seed,
            fit_config=fit_config,
            report_config=report_config,
            simulate_options=simulate_options,
        )
        for trial_seed in tqdm(
            utils.spawn_seeds(seed, n_trials),
            desc="Calibrating",
            disable=not progress_bar,
        )
    )

    # Aggregate
    coverage = _coverage_table(tuple(trial.diagnostic for trial in trials))
    covered = pd.concat([trial.diagnostic.summary["covered"] for trial in trials]).dropna()
    coverage_rate = (
        float(np.mean(covered.astype(float))) if len(covered) else float("nan")
    )
    return CalibrationResult(
        trials=trials,
        coverage=coverage,
        coverage_rate=coverage_rate,
        interval=report_config.interval,
    )
