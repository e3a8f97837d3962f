# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Same layout as `run_trial.py` but repeats trials to measure interval coverage."""

import argparse
import dataclasses
import os.path

from simfitpy.config import ReportConfig
from simfitpy.models import LIBRARY
from simfitpy.pipelines.run_trial import (
    build_fit_config,
    check_args as check_trial_args,
    define_base_parser,
    simulate_options,
)
from simfitpy.workflow import calibrate


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    # Build the parser specifically for this pipeline
    parser = argparse.ArgumentParser(
        description="Measure the coverage of credible intervals over repeated trials.",
        parents=[define_base_parser()],
    )

    # Add arguments specific to this pipeline
    parser.add_argument(
        "--n_trials",
        type=int,
        default=100,
        help="Number of independent trials. Default = 100.",
    )

    return parser.parse_args()


def check_args(args: argparse.Namespace) -> None:
    """Check the arguments for the pipeline."""
    # Check the arguments shared with single trials
    check_trial_args(args)

    # Trials must be a positive integer
    if args.n_trials <= 0:
        raise ValueError("n_trials must be a positive integer.")


def main():
    """Run the calibration study and write per-scalar coverage."""
    # Parse and check command line arguments
    args = parse_args()
    check_args(args)

    # Build the truth and the model
    entry = LIBRARY[args.model]
    truth = entry.example_truth(args.seed)
    options = simulate_options(args)
    spec = entry.spec(options, truth)

    # Per-chain progress bars would drown the trial bar
    fit_config = dataclasses.replace(build_fit_config(args), progress_bar=False)

    # Run the trials
    print(f"Calibrating '{spec.name}' ({args.mode}) over {args.n_trials} trials...")
    result = calibrate(
        entry.simulator(),
        spec,
        truth,
        args.n,
        n_trials=args.n_trials,
        mode=args.mode,
        seed=args.seed,
        fit_config=fit_config,
        report_config=ReportConfig(interval=args.interval, warn=False),
        simulate_options=options,
    )

    # Report
    print(result.coverage.to_string())
    print(
        f"Overall coverage at {result.interval:.0%} nominal: {result.coverage_rate:.2%}"
    )

    # Save
    output_dir = os.path.join(args.output_dir, spec.name, args.mode)
    os.makedirs(output_dir, exist_ok=True)
    result.coverage.to_csv(os.path.join(output_dir, "coverage.csv"))


if __name__ == "__main__":
    main()
