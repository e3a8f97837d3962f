"""Tests for random stream ownership and small helpers.

Run: pytest tests/test_utils.py -v
"""

import numpy as np
import pytest
import torch

from simfitpy import utils
from simfitpy.model.hmc import adaptation_windows, estimate_metric

# ── Random streams ───────────────────────────────────────────────────────────


class TestRandomStreams:
    """Streams are reproducible from one seed and independent of each other."""

    def test_get_rng_seed_and_rng_exclusive(self):
        with pytest.raises(ValueError):
            utils.get_rng(1, np.random.default_rng(1))

    def test_get_rng_passes_generator_through(self):
        rng = np.random.default_rng(0)
        assert utils.get_rng(rng=rng) is rng

    def test_spawn_streams_reproducible(self):
        first = utils.spawn_streams(42, 3)
        second = utils.spawn_streams(42, 3)
        for (rng_a, gen_a), (rng_b, gen_b) in zip(first, second):
            assert rng_a.random() == rng_b.random()
            assert torch.equal(
                torch.rand(3, generator=gen_a), torch.rand(3, generator=gen_b)
            )

    def test_spawn_streams_distinct(self):
        (rng_a, gen_a), (rng_b, gen_b) = utils.spawn_streams(42, 2)
        assert rng_a.random() != rng_b.random()
        assert not torch.equal(torch.rand(3, generator=gen_a), torch.rand(3, generator=gen_b))

    def test_spawn_seeds(self):
        seeds = utils.spawn_seeds(7, 5)
        assert seeds == utils.spawn_seeds(7, 5)
        assert len(set(seeds)) == 5


# ── Naming and conversion ────────────────────────────────────────────────────


class TestHelpers:
    def test_scalar_names(self):
        assert utils.scalar_names("sigma", ()) == ["sigma"]
        assert utils.scalar_names("beta", (2, 2)) == [
            "beta[0,0]",
            "beta[0,1]",
            "beta[1,0]",
            "beta[1,1]",
        ]

    def test_to_tensor_copies_read_only(self):
        array = np.array([1.0, 2.0])
        array.setflags(write=False)
        tensor = utils.to_tensor(array)
        assert tensor.dtype == torch.float64
        tensor[0] = 5.0
        assert array[0] == 1.0

    def test_fmt_elapsed(self):
        assert utils.fmt_elapsed(12.34) == "12.3s"
        assert utils.fmt_elapsed(125) == "2m 5s"
        assert utils.fmt_elapsed(3725) == "1h 2m 5s"


# ── Warmup layout ────────────────────────────────────────────────────────────


class TestWarmupLayout:
    """Metric adaptation windows and metric estimates."""

    def test_windows_500(self):
        assert adaptation_windows(500) == [(75, 100), (100, 150), (150, 250), (250, 450)]

    def test_windows_are_contiguous(self):
        windows = adaptation_windows(1000)
        assert windows[0][0] == 150
        assert windows[-1][1] == 900
        for (_, end), (start, _) in zip(windows, windows[1:]):
            assert end == start

    def test_short_warmup_has_no_windows(self):
        assert adaptation_windows(10) == []

    def test_metric_is_regularized(self):
        positions = np.random.default_rng(0).normal(size=(2000, 3)) * [1.0, 2.0, 3.0]
        diag = estimate_metric(positions, dense=False)
        dense = estimate_metric(positions, dense=True)
        assert diag.shape == (3,)
        assert dense.shape == (3, 3)
        np.testing.assert_allclose(diag, np.diag(dense), rtol=1e-10)
        np.testing.assert_allclose(diag, [1.0, 4.0, 9.0], rtol=0.25)
