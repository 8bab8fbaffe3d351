"""Tests for eems.distributions — densities and draws in model parameterization."""

import numpy as np
import pytest
from scipy import integrate, special, stats

from eems.distributions import (
    dinvgamln,
    dnegbinln,
    dtrnormln,
    rinvgam,
    rnegbin,
    rtrnorm,
    rtrnorm_vector,
)
from eems.rng import create_rng


class TestTruncatedNormal:
    def test_outside_interval(self):
        assert dtrnormln(np.array([0.0, 1.5]), 0.0, 1.0, 1.0) == -np.inf

    def test_empty(self):
        assert dtrnormln(np.array([]), 0.0, 1.0, 1.0) == 0.0

    def test_normalized(self):
        x = np.linspace(-0.5, 0.5, 2001)
        dens = np.exp([dtrnormln(v, 0.2, 0.04, 0.5) for v in x])
        assert integrate.trapezoid(dens, x) == pytest.approx(1.0, abs=1e-4)

    def test_sum_over_vector(self):
        x = np.array([0.1, -0.3, 0.05])
        assert dtrnormln(x, 0.0, 0.5, 1.0) == pytest.approx(
            sum(dtrnormln(v, 0.0, 0.5, 1.0) for v in x)
        )

    def test_draws_inside(self):
        rng = create_rng(1)
        draws = np.array([rtrnorm(rng, 0.09, 1.0, 0.1) for _ in range(200)])
        assert np.all(np.abs(draws) <= 0.1)
        v = rtrnorm_vector(rng, 500, 4.0, 2.0)
        assert v.shape == (500,)
        assert np.all(np.abs(v) <= 2.0)

    def test_vector_mean_near_zero(self):
        v = rtrnorm_vector(create_rng(2), 5000, 0.25, 2.0)
        assert abs(v.mean()) < 0.03


class TestNegativeBinomial:
    def test_mean_number_of_tiles(self):
        rng = create_rng(3)
        draws = [rnegbin(rng, 10, 0.67) for _ in range(4000)]
        assert np.mean(draws) == pytest.approx(10 * 0.67 / 0.33, rel=0.05)

    def test_log_pmf(self):
        assert dnegbinln(4, 10, 0.67) == pytest.approx(stats.nbinom.logpmf(4, 10, 0.33))

    def test_zero_possible(self):
        assert np.isfinite(dnegbinln(0, 10, 0.67))


class TestInverseGamma:
    def test_nonpositive(self):
        assert dinvgamln(0.0, 1.0, 1.0) == -np.inf
        assert dinvgamln(-1.0, 1.0, 1.0) == -np.inf

    def test_matches_closed_form(self):
        x, a, b = 0.7, 3.0, 2.0
        expected = a * np.log(b) - special.gammaln(a) - (a + 1) * np.log(x) - b / x
        assert dinvgamln(x, a, b) == pytest.approx(expected)

    def test_draw_mean(self):
        rng = create_rng(4)
        draws = [rinvgam(rng, 5.0, 8.0) for _ in range(4000)]
        assert np.mean(draws) == pytest.approx(8.0 / 4.0, rel=0.05)
