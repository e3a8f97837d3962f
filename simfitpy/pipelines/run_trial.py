# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Runs one simulate, fit, and summarize round trip for a library model."""

from __future__ import annotations

import argparse
import os.path
import time

from typing import Any

from simfitpy import utils
from simfitpy.config import OptimizeConfig, ReportConfig, SampleConfig
from simfitpy.defaults import (
    DEFAULT_INTERVAL,
    DEFAULT_MAX_ITER,
    DEFAULT_N_CHAINS,
    DEFAULT_N_DRAWS,
    DEFAULT_N_WARMUP,
)
from simfitpy.models import LIBRARY
from simfitpy.workflow import run_trial

# Simulation options understood by each library model
MODEL_OPTIONS = {
    "autoregressive": (),
    "state_space": ("n_series", "missing_fraction"),
    "hierarchical": ("n_groups",),
    "factorization": (),
    "gaussian_process": ("kernel",),
}


def define_base_parser() -> argparse.ArgumentParser:
    """Defines the base parser shared by all pipelines."""
    # Build the base parser
    parser = argparse.ArgumentParser(add_help=False)

    # A few required arguments
    required_group = parser.add_argument_group("required arguments")
    required_group.add_argument(
        "--model",
        type=str,
        choices=sorted(LIBRARY),
        required=True,
        help="Library model to simulate from and fit.",
    )
    required_group.add_argument(
        "--output_dir",
        type=str,
        required=True,
        help="Path to the folder where the output will be saved.",
    )

    # Now some optionals
    optional_group = parser.add_argument_group("optional arguments")
    optional_group.add_argument(
        "--n",
        type=int,
        default=100,
        help="Number of observations to simulate. Default = 100.",
    )
    optional_group.add_argument(
        "--mode",
        type=str,
        choices=["sample", "optimize"],
        default="sample",
        help="Fitting mode. Default = sample.",
    )
    optional_group.add_argument(
        "--seed",
        type=int,
        default=1025,
        help="Random seed for reproducibility.",
    )
    optional_group.add_argument(
        "--n_chains",
        type=int,
        default=DEFAULT_N_CHAINS,
        help=f"Number of chains to run (sample mode). Default = {DEFAULT_N_CHAINS}.",
    )
    optional_group.add_argument(
        "--n_warmup",
        type=int,
        default=DEFAULT_N_WARMUP,
        help=f"Number of warmup iterations (sample mode). Default = {DEFAULT_N_WARMUP}.",
    )
    optional_group.add_argument(
        "--n_draws",
        type=int,
        default=DEFAULT_N_DRAWS,
        help=(
            "Number of draws to keep after warmup (sample mode). "
            f"Default = {DEFAULT_N_DRAWS}."
        ),
    )
    optional_group.add_argument(
        "--max_iter",
        type=int,
        default=DEFAULT_MAX_ITER,
        help=f"Maximum optimizer iterations (optimize mode). Default = {DEFAULT_MAX_ITER}.",
    )
    optional_group.add_argument(
        "--interval",
        type=float,
        default=DEFAULT_INTERVAL,
        help=f"Probability of the credible intervals. Default = {DEFAULT_INTERVAL}.",
    )

    # Options of the simulators
    model_group = parser.add_argument_group(
        "model options",
        description="Simulation options. Individual args ignored when not relevant.",
    )
    model_group.add_argument(
        "--n_series", type=int, default=None, help="Series of a state-space model."
    )
    model_group.add_argument(
        "--missing_fraction",
        type=float,
        default=None,
        help="Fraction of state-space observations masked completely at random.",
    )
    model_group.add_argument(
        "--n_groups", type=int, default=None, help="Groups of a hierarchical model."
    )
    model_group.add_argument(
        "--kernel",
        type=str,
        choices=["exponential", "squared_exponential"],
        default=None,
        help="Kernel of a Gaussian process.",
    )

    return parser


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Simulate data from a library model, fit it, and compare with the truth.",
        parents=[define_base_parser()],
    )
    return parser.parse_args()


def check_args(args: argparse.Namespace) -> None:
    """Checks command line arguments for validity."""
    # Output dir must exist
    if not os.path.exists(args.output_dir):
        raise ValueError(f"Output directory does not exist: {args.output_dir}.")

    # Seed must be a positive integer
    if args.seed <= 0:
        raise ValueError("Seed must be a positive integer.")

    # Counts must be positive integers
    for arg in ("n", "n_chains", "n_draws", "max_iter"):
        if getattr(args, arg) <= 0:
            raise ValueError(f"{arg} must be a positive integer.")
    if args.n_warmup < 0:
        raise ValueError("n_warmup must be a non-negative integer.")

    # The interval must be a probability
    if not 0.0 < args.interval < 1.0:
        raise ValueError("interval must lie strictly between 0 and 1.")

    # Missing fraction must be a probability
    if args.missing_fraction is not None and not 0.0 <= args.missing_fraction < 1.0:
        raise ValueError("missing_fraction must lie in [0, 1).")


def build_fit_config(args: argparse.Namespace) -> SampleConfig | OptimizeConfig:
    """Build the configuration of the fitting mode from the arguments."""
    if args.mode == "sample":
        return SampleConfig(
            n_chains=args.n_chains,
            n_warmup=args.n_warmup,
            n_draws=args.n_draws,
            progress_bar=True,
        )
    return OptimizeConfig(max_iter=args.max_iter)


def simulate_options(args: argparse.Namespace) -> dict[str, Any]:
    """Simulation options of the chosen model, with library defaults filled in."""
    options = dict(LIBRARY[args.model].defaults)
    options.update(
        {
            name: getattr(args, name)
            for name in MODEL_OPTIONS[args.model]
            if getattr(args, name) is not None
        }
    )
    return options


def main():
    """Run one trial and write its summary."""
    # Parse and check command line arguments
    args = parse_args()
    check_args(args)

    # Build the truth and the model
    entry = LIBRARY[args.model]
    truth = entry.example_truth(args.seed)
    options = simulate_options(args)
    spec = entry.spec(options, truth)

    # Run the trial
    print(f"Running {args.mode} trial of '{spec.name}' with {args.n} observations...")
    start = time.perf_counter()
    trial = run_trial(
        entry.simulator(),
        spec,
        truth,
        args.n,
        mode=args.mode,
        seed=args.seed,
        fit_config=build_fit_config(args),
        report_config=ReportConfig(interval=args.interval),
        simulate_options=options,
    )
    print(f"Finished in {utils.fmt_elapsed(time.perf_counter() - start)}.")

    # Report
    diagnostic = trial.diagnostic
    print(diagnostic.summary.to_string())
    print(f"Mean absolute error: {diagnostic.mean_absolute_error:.4f}")
    print(f"Coverage at {diagnostic.interval:.0%}: {diagnostic.coverage_rate:.2%}")
    for message in diagnostic.warnings:
        print(f"Warning: {message}")

    # Save
    print("Saving results...")
    output_dir = os.path.join(args.output_dir, spec.name, args.mode)
    os.makedirs(output_dir, exist_ok=True)
    diagnostic.summary.to_csv(os.path.join(output_dir, "summary.csv"))
    if args.mode == "sample":
        _ = trial.fit.calculate_diagnostics()
    trial.fit.save_netcdf(os.path.join(output_dir, f"{spec.name}.nc"))


if __name__ == "__main__":
    main()
