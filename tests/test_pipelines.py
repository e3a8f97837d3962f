"""Tests for the command-line pipelines and the model library they drive.

Run: pytest tests/test_pipelines.py -v
"""

import argparse
import sys

import pandas as pd
import pytest

from simfitpy.config import OptimizeConfig, SampleConfig
from simfitpy.models import LIBRARY
from simfitpy.pipelines import run_calibration, run_trial


def parse(*argv: str) -> argparse.Namespace:
    parser = argparse.ArgumentParser(parents=[run_trial.define_base_parser()])
    return parser.parse_args(list(argv))


@pytest.fixture
def base_args(tmp_path):
    return ["--model", "autoregressive", "--output_dir", str(tmp_path)]


# ── Argument parsing ─────────────────────────────────────────────────────────


class TestArguments:
    """Parsing and validation of pipeline arguments."""

    def test_defaults(self, base_args):
        args = parse(*base_args)
        assert args.n == 100
        assert args.mode == "sample"
        assert args.seed == 1025
        assert args.interval == 0.5
        assert args.n_series is None
        run_trial.check_args(args)

    def test_model_is_required(self, tmp_path):
        with pytest.raises(SystemExit):
            parse("--output_dir", str(tmp_path))

    def test_unknown_model(self, tmp_path):
        with pytest.raises(SystemExit):
            parse("--model", "lstm", "--output_dir", str(tmp_path))

    def test_missing_output_dir(self, tmp_path):
        args = parse("--model", "autoregressive", "--output_dir", str(tmp_path / "nope"))
        with pytest.raises(ValueError, match="does not exist"):
            run_trial.check_args(args)

    @pytest.mark.parametrize(
        "extra, message",
        [
            (["--seed", "0"], "Seed"),
            (["--n", "0"], "n must be"),
            (["--n_chains", "-1"], "n_chains"),
            (["--n_draws", "0"], "n_draws"),
            (["--max_iter", "0"], "max_iter"),
            (["--n_warmup", "-1"], "n_warmup"),
            (["--interval", "1.5"], "interval"),
            (["--missing_fraction", "1.0"], "missing_fraction"),
        ],
    )
    def test_invalid_values(self, base_args, extra, message):
        with pytest.raises(ValueError, match=message):
            run_trial.check_args(parse(*base_args, *extra))

    def test_zero_warmup_allowed(self, base_args):
        run_trial.check_args(parse(*base_args, "--n_warmup", "0"))


# ── Configuration from arguments ─────────────────────────────────────────────


class TestConfiguration:
    """Fit configurations and simulation options built from arguments."""

    def test_sample_config(self, base_args):
        config = run_trial.build_fit_config(parse(*base_args, "--n_chains", "2"))
        assert isinstance(config, SampleConfig)
        assert config.n_chains == 2

    def test_optimize_config(self, base_args):
        config = run_trial.build_fit_config(
            parse(*base_args, "--mode", "optimize", "--max_iter", "50")
        )
        assert isinstance(config, OptimizeConfig)
        assert config.max_iter == 50

    def test_options_of_other_models_ignored(self, base_args):
        args = parse(*base_args, "--n_series", "4", "--n_groups", "3")
        assert run_trial.simulate_options(args) == {}

    def test_library_defaults_filled_in(self, tmp_path):
        args = parse("--model", "state_space", "--output_dir", str(tmp_path))
        assert run_trial.simulate_options(args) == {"n_series": 3}

    def test_options_override_defaults(self, tmp_path):
        args = parse(
            "--model",
            "state_space",
            "--output_dir",
            str(tmp_path),
            "--n_series",
            "2",
            "--missing_fraction",
            "0.1",
        )
        assert run_trial.simulate_options(args) == {"n_series": 2, "missing_fraction": 0.1}


# ── Model library ────────────────────────────────────────────────────────────


class TestLibrary:
    """Each library entry builds a model that fits its simulator's data."""

    @pytest.mark.parametrize("name", sorted(LIBRARY))
    def test_example_truth_simulates(self, name):
        entry = LIBRARY[name]
        truth = entry.example_truth(1)
        data = entry.simulator().simulate(truth, 20, seed=0, **entry.defaults)
        spec = entry.spec(dict(entry.defaults), truth)
        assert set(field.name for field in spec.data) <= set(data.fields)

    def test_spec_follows_options(self):
        entry = LIBRARY["state_space"]
        spec = entry.spec({"n_series": 2}, entry.example_truth(None))
        assert spec.data[0].shape == ("n", 2)

    def test_spec_follows_truth(self):
        entry = LIBRARY["factorization"]
        spec = entry.spec({}, entry.example_truth(0))
        assert spec.dims["K"] == 3


# ── End to end ───────────────────────────────────────────────────────────────


class TestMain:
    """The pipelines write their tables to the output directory."""

    def test_run_trial(self, base_args, tmp_path, monkeypatch):
        argv = ["simfitpy-trial", *base_args, "--mode", "optimize", "--n", "60"]
        monkeypatch.setattr(sys, "argv", argv)
        run_trial.main()
        output_dir = tmp_path / "ar1" / "optimize"
        summary = pd.read_csv(output_dir / "summary.csv", index_col=0)
        assert list(summary.index) == ["intercept", "slope[0]", "sigma"]
        assert (output_dir / "ar1.nc").exists()

    def test_run_calibration(self, base_args, tmp_path, monkeypatch):
        argv = [
            "simfitpy-calibrate",
            *base_args,
            "--mode",
            "optimize",
            "--n",
            "60",
            "--n_trials",
            "2",
        ]
        monkeypatch.setattr(sys, "argv", argv)
        run_calibration.main()
        coverage = pd.read_csv(tmp_path / "ar1" / "optimize" / "coverage.csv", index_col=0)
        assert (coverage["n_trials"] == 2).all()

    def test_calibration_needs_trials(self, base_args, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["simfitpy-calibrate", *base_args, "--n_trials", "0"])
        with pytest.raises(ValueError, match="n_trials"):
            run_calibration.main()
