"""
Unit tests for dynamics, noise models and modes.
"""

import numpy as np
import pytest
import sys
import os
from scipy.stats import norm

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from imdp_control.dynamics import (FunctionDynamics, LinearDynamics, GaussianNoise, DensityNoise,
                                   DensityParams, Mode, NoiseType, validate_modes)


class TestDynamics:
    """Tests for successor mean boxes."""

    def test_linear_post_is_exact(self):
        dyn = LinearDynamics(A=[[1.0, 0.5], [-0.2, 0.9]], B=np.eye(2), c=[0.1, 0.0])
        x_lo, x_hi = np.array([0.0, 1.0]), np.array([1.0, 2.0])
        u = np.array([0.5, -0.5])

        lo, hi = dyn.post(x_lo, x_hi, u)
        corners = np.array([dyn.mean(np.array([a, b]), u) for a in (0.0, 1.0) for b in (1.0, 2.0)])

        np.testing.assert_array_almost_equal(lo, corners.min(axis=0))
        np.testing.assert_array_almost_equal(hi, corners.max(axis=0))

    def test_linear_post_with_disturbance(self):
        dyn = LinearDynamics(A=[[1.0]], B=[[1.0]], E=[[1.0]])

        lo, hi = dyn.post(np.array([0.0]), np.array([1.0]), np.array([0.0]),
                          disturbances=np.array([[-0.1], [0.2]]))

        np.testing.assert_array_almost_equal(lo, [-0.1])
        np.testing.assert_array_almost_equal(hi, [1.2])

    def test_sampled_post_with_margin(self):
        dyn = FunctionDynamics(lambda x, u: x ** 2 + u, state_dim=1, margin=0.05)

        lo, hi = dyn.post(np.array([-1.0]), np.array([1.0]), np.array([0.0]))

        np.testing.assert_array_almost_equal(lo, [-0.05])
        np.testing.assert_array_almost_equal(hi, [1.05])

    def test_post_finds_interior_maximum(self):
        dyn = FunctionDynamics(lambda x, u: np.sin(4.0 * x), state_dim=1)

        lo, hi = dyn.post(np.array([0.0]), np.array([1.0]), np.array([0.0]))

        np.testing.assert_array_almost_equal(hi, [1.0], decimal=6)
        np.testing.assert_array_almost_equal(lo, [np.sin(4.0)], decimal=6)

    def test_lattice_only_post_misses_interior_maximum(self):
        dyn = FunctionDynamics(lambda x, u: np.sin(4.0 * x), state_dim=1, optimize=False)

        lo, hi = dyn.post(np.array([0.0]), np.array([1.0]), np.array([0.0]))

        np.testing.assert_array_almost_equal(hi, [np.sin(2.0)])

    def test_post_finds_interior_peak_2d(self):
        """Peak at (0.3, 0.6) sits off the 3 x 3 lattice of the unit square."""
        dyn = FunctionDynamics(lambda x, u: np.array([-(x[0] - 0.3) ** 2 - (x[1] - 0.6) ** 2, x[0]]),
                               state_dim=2)

        lo, hi = dyn.post(np.zeros(2), np.ones(2), np.zeros(1))

        assert hi[0] == pytest.approx(0.0, abs=1e-6)
        assert lo[0] == pytest.approx(-(0.7 ** 2 + 0.6 ** 2), abs=1e-6)
        np.testing.assert_array_almost_equal([lo[1], hi[1]], [0.0, 1.0])

    def test_critical_points_stay_in_cell(self):
        dyn = FunctionDynamics(lambda x, u: np.sin(4.0 * x), state_dim=1)

        points = dyn.critical_points(np.array([0.0]), np.array([1.0]), np.array([0.0]))

        assert np.all(points >= 0.0) and np.all(points <= 1.0)
        assert np.min(np.abs(points[:, 0] - np.pi / 8)) < 1e-4
        assert LinearDynamics(A=[[2.0]], B=[[1.0]]).critical_points(
            np.array([0.0]), np.array([1.0]), np.array([0.0])).shape == (3, 1)

    def test_disturbance_argument(self):
        dyn = FunctionDynamics(lambda x, u, w: x + u + w, state_dim=1, with_disturbance=True)

        means = dyn.means(np.array([[0.0], [1.0]]), np.array([0.0]), np.array([[0.5], [-0.5]]))

        np.testing.assert_array_almost_equal(means.ravel(), [0.5, -0.5, 1.5, 0.5])
        with pytest.raises(ValueError):
            dyn.evaluate(np.array([0.0]), np.array([0.0]), None)

    def test_wrong_output_size(self):
        dyn = FunctionDynamics(lambda x, u: np.zeros(3), state_dim=2)

        with pytest.raises(ValueError):
            dyn.evaluate(np.zeros(2), np.zeros(1), None)

    def test_negative_margin(self):
        with pytest.raises(ValueError):
            FunctionDynamics(lambda x, u: x, state_dim=1, margin=-1.0)


class TestNoise:
    """Tests for noise models."""

    def test_gaussian_axis_bounds(self):
        noise = GaussianNoise(1.0)
        a, b = np.array([0.0, 2.0]), np.array([1.0, 3.0])

        lo, hi = noise.axis_bounds(a, b, -0.5, 0.5, 0)

        # [0, 1]: peak 0.5 inside the mean range, worst at -0.5
        assert hi[0] == pytest.approx(norm.cdf(0.5) - norm.cdf(-0.5))
        assert lo[0] == pytest.approx(norm.cdf(1.5) - norm.cdf(0.5))
        # [2, 3]: increasing over the range
        assert hi[1] == pytest.approx(norm.cdf(2.5) - norm.cdf(1.5))
        assert lo[1] == pytest.approx(norm.cdf(3.5) - norm.cdf(2.5))

    def test_gaussian_per_dimension_sigma(self):
        noise = GaussianNoise([1.0, 2.0])

        p0 = noise.interval_probability(-1.0, 1.0, 0.0, 0)
        p1 = noise.interval_probability(-1.0, 1.0, 0.0, 1)

        assert p0 == pytest.approx(norm.cdf(1.0) - norm.cdf(-1.0))
        assert p1 == pytest.approx(norm.cdf(0.5) - norm.cdf(-0.5))
        assert noise.noise_type == NoiseType.NORMAL

    def test_gaussian_density(self):
        noise = GaussianNoise([1.0, 2.0])
        params = DensityParams(mean=np.zeros(2), state_start=np.zeros(2), input=np.zeros(1),
                               lb=-np.ones(2), ub=np.ones(2), eta=np.ones(2))

        dens = noise.density(np.array([[0.0, 0.0], [1.0, 2.0]]), params)

        np.testing.assert_array_almost_equal(
            dens, [norm.pdf(0.0) * norm.pdf(0.0, scale=2.0), norm.pdf(1.0) * norm.pdf(2.0, scale=2.0)])

    def test_invalid_sigma(self):
        with pytest.raises(ValueError):
            GaussianNoise(0.0)
        with pytest.raises(ValueError):
            GaussianNoise([1.0, -1.0])

    def test_gaussian_sample(self):
        noise = GaussianNoise([1e-9, 1e-9])
        x = noise.sample(np.array([1.0, 2.0]), np.random.default_rng(0))

        np.testing.assert_array_almost_equal(x, [1.0, 2.0])

    def test_density_noise_passes_params(self):
        seen = []

        def pdf(point, dim, params):
            seen.append((dim, params.extra))
            return 1.0

        noise = DensityNoise(pdf, params={'scale': 2.0})
        params = DensityParams(mean=np.zeros(1), state_start=np.zeros(1), input=np.zeros(1),
                               lb=np.zeros(1), ub=np.ones(1), eta=np.ones(1))

        dens = noise.density(np.array([[0.1], [0.2]]), params)

        np.testing.assert_array_equal(dens, [1.0, 1.0])
        assert seen == [(1, {'scale': 2.0})] * 2
        assert noise.noise_type == NoiseType.CUSTOM

    def test_density_noise_sampling(self):
        noise = DensityNoise(lambda p, d, params: 1.0)
        with pytest.raises(NotImplementedError):
            noise.sample(np.zeros(1), np.random.default_rng(0))

        shifted = DensityNoise(lambda p, d, params: 1.0, sampler=lambda mean, rng: mean + 1.0)
        np.testing.assert_array_equal(shifted.sample(np.zeros(1), np.random.default_rng(0)), [1.0])


class TestModes:
    """Tests for mode validation."""

    def test_empty(self):
        with pytest.raises(ValueError):
            validate_modes([])

    def test_negative_weight(self):
        dyn = FunctionDynamics(lambda x, u: x, state_dim=1)
        with pytest.raises(ValueError):
            validate_modes([Mode(dyn, GaussianNoise(1.0), 1.5), Mode(dyn, GaussianNoise(1.0), -0.5)])

    def test_mixed_dimensions(self):
        modes = [Mode(FunctionDynamics(lambda x, u: x, state_dim=1), GaussianNoise(1.0), 0.5),
                 Mode(FunctionDynamics(lambda x, u: x, state_dim=2), GaussianNoise(1.0), 0.5)]
        with pytest.raises(ValueError):
            validate_modes(modes)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
