# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Diagnostic reports comparing fits against the truth.

:py:func:`summarize` turns a :py:class:`~simfitpy.model.results.mle.FitResult`
into a :py:class:`Diagnostic`. For every scalar element of every parameter the
report holds:

    - The posterior mean and median (or the optimum, in optimize mode)
    - The bounds of the equal-tailed credible interval at the requested level
    - R-hat and bulk effective sample size (sample mode only)
    - Given a ground truth, the absolute error of the median and whether the
      interval covers the truth

Exchangeable components (e.g. the templates of a factorization) carry arbitrary
labels. Before anything is compared with the truth, the inferred components are
aligned to the true ones with :py:func:`match_components`, and the same
permutation is applied to every parameter sharing the exchangeable dimension.
If the chains of a sampled fit settled on different labels, each chain is
aligned on its own before the draws are pooled.

Convergence problems are never raised. They are listed in the report and
emitted as :py:class:`~simfitpy.exceptions.ConvergenceWarning`.
"""

from __future__ import annotations

import warnings

from dataclasses import dataclass, field
from typing import Mapping, Optional

import numpy as np
import numpy.typing as npt
import pandas as pd

from scipy.optimize import linear_sum_assignment

from simfitpy import utils
from simfitpy.config import ReportConfig
from simfitpy.data import ParameterSet
from simfitpy.exceptions import ConvergenceWarning
from simfitpy.model.results.mle import FitResult

SUMMARY_COLUMNS = (
    "parameter",
    "mean",
    "median",
    "lower",
    "upper",
    "r_hat",
    "ess_bulk",
    "truth",
    "abs_error",
    "covered",
)


def match_components(inferred: npt.ArrayLike, truth: npt.ArrayLike) -> npt.NDArray[np.int64]:
    """Align inferred components with true components.

    The Pearson correlation between every inferred and every true component is
    computed, and the assignment maximizing the total correlation is found with
    :py:func:`scipy.optimize.linear_sum_assignment`. Components whose
    correlation is undefined (constant vectors) are treated as maximally
    anti-correlated.

    :param inferred: Inferred components, one per row, shape (K, m)
    :type inferred: npt.ArrayLike
    :param truth: True components, shape (K, m)
    :type truth: npt.ArrayLike

    :returns: Permutation `perm` such that ``inferred[perm[k]]`` matches
        ``truth[k]``
    :rtype: npt.NDArray[np.int64]

    :raises ValueError: If the arrays are not 2-d with equal shapes

    Example:
        >>> truth = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 2.0]])
        >>> match_components(truth[::-1], truth)
        array([1, 0])
    """
    inferred = np.asarray(inferred, dtype=np.float64)
    truth = np.asarray(truth, dtype=np.float64)
    if inferred.ndim != 2 or inferred.shape != truth.shape:
        raise ValueError(
            "inferred and truth must be 2-d arrays of equal shape, got "
            f"{inferred.shape} and {truth.shape}."
        )
    n_components = truth.shape[0]

    # correlation[i, j] is the correlation of true component i and inferred j
    with np.errstate(invalid="ignore", divide="ignore"):
        correlation = np.corrcoef(truth, inferred)[:n_components, n_components:]
    correlation = np.nan_to_num(correlation, nan=-1.0)

    rows, cols = linear_sum_assignment(correlation, maximize=True)
    perm = np.empty(n_components, dtype=np.int64)
    perm[rows] = cols
    return perm


def invert_permutation(perm: npt.ArrayLike) -> npt.NDArray[np.int64]:
    """Inverse of a permutation, such that ``perm[inverse] == arange(K)``."""
    return np.argsort(np.asarray(perm)).astype(np.int64)


def matched_correlations(
    inferred: npt.ArrayLike, truth: npt.ArrayLike, axis: int = -1
) -> npt.NDArray[np.float64]:
    """Correlation of each inferred component with its matched true component.

    :param inferred: Inferred values, with components along `axis`
    :type inferred: npt.ArrayLike
    :param truth: True values of the same shape
    :type truth: npt.ArrayLike
    :param axis: Axis indexing the components. Defaults to -1 (e.g. the columns
        of a proportions matrix).
    :type axis: int

    :returns: One correlation per true component
    :rtype: npt.NDArray[np.float64]
    """
    inferred = np.moveaxis(np.asarray(inferred, dtype=np.float64), axis, 0)
    truth = np.moveaxis(np.asarray(truth, dtype=np.float64), axis, 0)
    inferred = inferred.reshape(inferred.shape[0], -1)
    truth = truth.reshape(truth.shape[0], -1)
    perm = match_components(inferred, truth)
    return np.array(
        [np.corrcoef(inferred[perm[k]], truth[k])[0, 1] for k in range(truth.shape[0])]
    )


@dataclass(frozen=True)
class Diagnostic:
    """Report on one fit.

    :param mode: Fitting mode of the fit ("sample" or "optimize")
    :param interval: Probability of the credible intervals in the summary
    :param summary: One row per scalar element, indexed by names such as
        ``beta[0,1]``, with columns parameter, mean, median, lower, upper,
        r_hat, ess_bulk, truth, abs_error, and covered. Columns that do not
        apply hold NaN.
    :param unconverged: Scalars whose R-hat exceeds the threshold
    :param permutations: Permutation applied along each exchangeable dimension
    :param warnings: Messages describing problems with the fit
    :param complete: Whether the fit ran to completion
    """

    mode: str
    interval: float
    summary: pd.DataFrame
    unconverged: tuple[str, ...] = ()
    permutations: dict[str, np.ndarray] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()
    complete: bool = True

    @property
    def converged(self) -> bool:
        """Whether the fit is complete and no scalar failed the R-hat check."""
        return self.complete and not self.unconverged

    @property
    def mean_absolute_error(self) -> float:
        """Mean absolute error over scalars with a known truth (NaN if none)."""
        errors = self.summary["abs_error"].dropna()
        return float(errors.mean()) if len(errors) else float("nan")

    @property
    def coverage_rate(self) -> float:
        """Fraction of scalars with a known truth whose interval covers it."""
        covered = self.summary["covered"].dropna()
        return float(covered.astype(float).mean()) if len(covered) else float("nan")

    def parameter(self, name: str) -> pd.DataFrame:
        """Rows of the summary belonging to one parameter."""
        return self.summary[self.summary["parameter"] == name]


def _reference(
    fit: FitResult,
    truth: ParameterSet,
    point: Mapping[str, np.ndarray],
    dimname: str,
) -> Optional[tuple[str, int]]:
    """Parameter (and its axis) deciding the labels of an exchangeable dimension.

    The first parameter carrying the dimension whose truth is known and matches
    the shape of the estimate decides.
    """
    for name, dims in fit.parameter_dims.items():
        if (
            dimname in dims
            and name in truth
            and name in point
            and truth[name].shape == np.shape(point[name])
        ):
            return name, dims.index(dimname)
    return None


def _match_along(
    estimate: npt.ArrayLike, truth: npt.ArrayLike, axis: int
) -> npt.NDArray[np.int64]:
    """Match the slices of `estimate` along `axis` to those of `truth`."""
    estimate = np.moveaxis(np.asarray(estimate), axis, 0)
    truth = np.moveaxis(np.asarray(truth), axis, 0)
    size = truth.shape[0]
    return match_components(estimate.reshape(size, -1), truth.reshape(size, -1))


def _chain_permutations(
    fit: FitResult, truth: Optional[ParameterSet]
) -> dict[str, list[npt.NDArray[np.int64]]]:
    """Per-chain permutations for exchangeable dimensions on which chains disagree."""
    permutations = {}
    if truth is None or not fit.exchangeable_dims:
        return permutations
    if (estimates := fit.chain_point_estimates()) is None or len(estimates) < 2:
        return permutations

    for dimname in fit.exchangeable_dims:
        if (reference := _reference(fit, truth, estimates[0], dimname)) is None:
            continue
        name, axis = reference
        perms = [_match_along(chain[name], truth[name], axis) for chain in estimates]
        if any(not np.array_equal(perm, perms[0]) for perm in perms[1:]):
            permutations[dimname] = perms
    return permutations


def _align(
    fit: FitResult,
    truth: Optional[ParameterSet],
    arrays: dict[str, dict[str, np.ndarray]],
) -> dict[str, np.ndarray]:
    """Permute exchangeable dimensions in place of every array in `arrays`.

    `arrays` maps a statistic (median, lower, ...) to per-parameter arrays.
    Returns the permutation found for each exchangeable dimension.
    """
    permutations = {}
    if truth is None:
        return permutations
    point = arrays["median"]

    for dimname in fit.exchangeable_dims:
        if (reference := _reference(fit, truth, point, dimname)) is None:
            continue
        name, axis = reference
        perm = _match_along(point[name], truth[name], axis)
        permutations[dimname] = perm

        # Apply to every parameter carrying the dimension
        for name, dims in fit.parameter_dims.items():
            if dimname not in dims:
                continue
            axis = dims.index(dimname)
            for stat in arrays.values():
                if name in stat:
                    stat[name] = np.take(stat[name], perm, axis=axis)
    return permutations


def summarize(
    fit: FitResult,
    ground_truth: Optional[Mapping] = None,
    config: Optional[ReportConfig] = None,
) -> Diagnostic:
    """Build the diagnostic report of a fit.

    :param fit: The fit to report on
    :type fit: FitResult
    :param ground_truth: True values of some or all parameters. Entries that are
        not parameters of the fit, or whose shape does not match, are ignored.
        Defaults to None (no accuracy or coverage).
    :type ground_truth: Optional[Mapping[str, custom_types.ArrayLike]]
    :param config: Reporting settings. Defaults to None (all defaults).
    :type config: Optional[ReportConfig]

    :returns: The report
    :rtype: Diagnostic
    """
    config = config or ReportConfig()
    truth = None
    if ground_truth is not None:
        truth = (
            ground_truth
            if isinstance(ground_truth, ParameterSet)
            else ParameterSet(ground_truth)
        )
    messages = list(fit.notes)

    # Chains that settled on different labels are aligned before pooling
    if chain_permutations := _chain_permutations(fit, truth):
        fit = fit.relabel_chains(chain_permutations)
        for dimname, perms in chain_permutations.items():
            messages.append(
                f"Chains disagree on the labels of '{dimname}'; each chain was "
                "aligned to the truth before pooling (permutations: "
                f"{', '.join(str(perm.tolist()) for perm in perms)})."
            )

    # Point estimates and intervals
    median = dict(fit.point_estimates())
    arrays: dict[str, dict[str, np.ndarray]] = {
        "median": {name: np.array(value) for name, value in median.items()},
        "mean": {name: np.array(value) for name, value in fit.posterior_means().items()},
    }
    if (intervals := fit.credible_intervals(config.interval)) is not None:
        arrays["lower"] = {name: bounds[0] for name, bounds in intervals.items()}
        arrays["upper"] = {name: bounds[1] for name, bounds in intervals.items()}

    # Convergence statistics
    if (convergence := fit.convergence()) is not None:
        for stat, dataset in convergence.items():
            arrays[stat] = {
                name: np.asarray(dataset[name].values, dtype=np.float64)
                for name in dataset.data_vars
            }

    # Align exchangeable components
    permutations = _align(fit, truth, arrays)

    # One row per scalar
    rows = {}
    for name, value in arrays["median"].items():
        scalar_names = utils.scalar_names(name, value.shape)
        known = truth is not None and name in truth and truth[name].shape == value.shape
        if truth is not None and name in truth and not known:
            messages.append(
                f"Truth for '{name}' has shape {truth[name].shape}, but the estimate "
                f"has shape {value.shape}; it is not compared."
            )
        columns = {"parameter": [name] * len(scalar_names)}
        for stat in ("mean", "median", "lower", "upper", "r_hat", "ess_bulk"):
            if stat in arrays and name in arrays[stat]:
                columns[stat] = np.ravel(arrays[stat][name])
            else:
                columns[stat] = np.full(len(scalar_names), np.nan)
        if known:
            true_value = np.ravel(truth[name])
            columns["truth"] = true_value
            columns["abs_error"] = np.abs(columns["median"] - true_value)
            if "lower" in arrays:
                columns["covered"] = pd.array(
                    (columns["lower"] <= true_value) & (true_value <= columns["upper"]),
                    dtype="boolean",
                )
            else:
                columns["covered"] = pd.array([pd.NA] * len(scalar_names), dtype="boolean")
        else:
            columns["truth"] = np.full(len(scalar_names), np.nan)
            columns["abs_error"] = np.full(len(scalar_names), np.nan)
            columns["covered"] = pd.array([pd.NA] * len(scalar_names), dtype="boolean")
        rows[name] = pd.DataFrame(columns, index=scalar_names)
    summary = (
        pd.concat(rows.values())
        if rows
        else pd.DataFrame(columns=list(SUMMARY_COLUMNS))
    )
    summary = summary[list(SUMMARY_COLUMNS)]

    # Convergence checks
    unconverged = ()
    if convergence is not None:
        unconverged = tuple(summary.index[summary["r_hat"] > config.rhat_threshold])
        if unconverged:
            messages.append(
                f"R-hat above {config.rhat_threshold} for: {', '.join(unconverged)}"
            )
        if low_ess := tuple(summary.index[summary["ess_bulk"] < config.ess_threshold]):
            messages.append(
                f"Bulk ESS below {config.ess_threshold} for: {', '.join(low_ess)}"
            )
        if config.warn:
            for message in messages[len(fit.notes):]:
                warnings.warn(message, ConvergenceWarning)

    return Diagnostic(
        mode=fit.mode,
        interval=config.interval,
        summary=summary,
        unconverged=unconverged,
        permutations=permutations,
        warnings=tuple(messages),
        complete=fit.is_complete,
    )
