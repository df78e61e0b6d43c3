"""
Unit tests for interval transition bounds.

Tests verify:
1. Closed-form Gaussian bounds against hand-computed CDF values
2. Realizability of every row
3. Mode mixing
4. Monte Carlo agreement and failure handling
5. Interior extremes of the mean and disturbance grids
"""

import numpy as np
import pytest
import sys
import os
from scipy.stats import norm

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from imdp_control.config import AbstractionConfig
from imdp_control.dynamics import (FunctionDynamics, LinearDynamics, GaussianNoise,
                                   DensityNoise, Mode)
from imdp_control.errors import IntegrationError
from imdp_control.grid import Grid
from imdp_control.regions import BoxRegion, RegionLabeler
from imdp_control.transitions import TransitionBoundComputer


def zero_dynamics():
    return FunctionDynamics(lambda x, u: np.zeros(1), state_dim=1)


def gaussian_pdf(points, dim, params):
    return np.prod(norm.pdf(points, loc=params.mean, scale=1.0), axis=1)


def line_setup():
    """Cells [-1, 0] (normal) and [0, 1] (target), single input."""
    state_grid = Grid(-1.0, 1.0, 1.0)
    input_grid = Grid(0.0, 1.0, 1.0)
    labeler = RegionLabeler(state_grid)
    labeler.set_target(BoxRegion([[0.0, 1.0]]))
    return state_grid, input_grid, labeler


EXPECTED_LINE_ROW = np.array([
    norm.cdf(0.0) - norm.cdf(-1.0),       # stay in [-1, 0]
    norm.cdf(1.0) - norm.cdf(0.0),        # target [0, 1]
    1.0 - (norm.cdf(1.0) - norm.cdf(-1.0)),  # leave the box
])


class TestClosedForm:
    """Tests for Gaussian closed-form bounds."""

    def test_constant_mean_row(self):
        state_grid, input_grid, labeler = line_setup()
        modes = [Mode(zero_dynamics(), GaussianNoise(1.0))]

        table = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                        AbstractionConfig(n_workers=1)).compute()

        assert table.lower.shape == (1, 1, 1, 3)
        np.testing.assert_array_almost_equal(table.state_cells, [0])
        np.testing.assert_allclose(table.lower[0, 0, 0], EXPECTED_LINE_ROW, atol=1e-9)
        np.testing.assert_allclose(table.upper[0, 0, 0], EXPECTED_LINE_ROW, atol=1e-9)

    def test_target_probability_decreases_with_sigma(self):
        state_grid, input_grid, labeler = line_setup()
        previous = 1.0
        for sigma in [0.5, 1.0, 2.0, 4.0]:
            modes = [Mode(zero_dynamics(), GaussianNoise(sigma))]
            computer = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                               AbstractionConfig(n_workers=1))
            lo, hi = computer.compute_unit(0, 0, 0)

            assert hi[computer.num_destinations - 2] < previous
            previous = hi[computer.num_destinations - 2]

    def test_moving_mean_widens_interval(self):
        """Means spread over [x, x + 0.5] give lower < upper."""
        state_grid, input_grid, labeler = line_setup()
        dyn = LinearDynamics(A=[[1.0]], B=[[0.5]])
        modes = [Mode(dyn, GaussianNoise(0.5))]

        lo, hi = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                         AbstractionConfig(n_workers=1)).compute_unit(0, 0, 0)

        assert np.all(lo <= hi)
        assert np.any(lo < hi - 1e-3)

    def test_rows_are_realizable(self):
        state_grid = Grid([-2.0, -2.0], [2.0, 2.0], 1.0)
        input_grid = Grid([-1.0, -1.0], [1.0, 1.0], 1.0)
        labeler = RegionLabeler(state_grid)
        labeler.set_target(BoxRegion([[1.0, 2.0], [1.0, 2.0]]))
        labeler.set_avoid(BoxRegion([[-2.0, -1.0], [1.0, 2.0]]))
        modes = [Mode(LinearDynamics(A=0.9 * np.eye(2), B=np.eye(2)), GaussianNoise([0.3, 0.6]))]

        table = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                        AbstractionConfig(n_workers=2)).compute()

        assert table.num_states == 14
        assert table.num_inputs == 4
        assert np.all(table.lower >= 0.0) and np.all(table.upper <= 1.0)
        assert np.all(table.lower <= table.upper + 1e-12)
        assert np.all(table.lower.sum(axis=-1) <= 1.0 + 1e-6)
        assert np.all(table.upper.sum(axis=-1) >= 1.0 - 1e-6)

    def test_interior_extremum_of_mean(self):
        """sin(4x) peaks at x = pi/8, between the lattice points of [0, 1]."""
        state_grid = Grid(0.0, 2.0, 1.0)
        input_grid = Grid(0.0, 1.0, 1.0)
        labeler = RegionLabeler(state_grid)
        labeler.set_target(BoxRegion([[1.0, 2.0]]))
        dyn = FunctionDynamics(lambda x, u: np.sin(4.0 * x), state_dim=1)
        modes = [Mode(dyn, GaussianNoise(0.1))]

        lo, hi = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                         AbstractionConfig(n_workers=1)).compute_unit(0, 0, 0)

        mu = np.sin(4.0 * np.linspace(0.0, 1.0, 2001))
        to_target = norm.cdf((2.0 - mu) / 0.1) - norm.cdf((1.0 - mu) / 0.1)
        assert hi[1] >= to_target.max() - 1e-6
        assert hi[1] == pytest.approx(0.5, abs=1e-3)
        assert lo[1] <= to_target.min() + 1e-6

    def test_lattice_only_needs_margin(self):
        state_grid = Grid(0.0, 2.0, 1.0)
        input_grid = Grid(0.0, 1.0, 1.0)
        labeler = RegionLabeler(state_grid)
        labeler.set_target(BoxRegion([[1.0, 2.0]]))

        def hi_target(dyn):
            computer = TransitionBoundComputer(state_grid, input_grid, labeler,
                                               [Mode(dyn, GaussianNoise(0.1))],
                                               AbstractionConfig(n_workers=1))
            return computer.compute_unit(0, 0, 0)[1][1]

        f = lambda x, u: np.sin(4.0 * x)
        lattice_only = hi_target(FunctionDynamics(f, state_dim=1, optimize=False))
        # Lipschitz constant 4 times the half-width 0.5
        with_margin = hi_target(FunctionDynamics(f, state_dim=1, margin=2.0, optimize=False))

        assert lattice_only < 0.2
        assert with_margin >= 0.5 - 1e-9

    def test_parallel_matches_sequential(self):
        state_grid = Grid([-2.0, -2.0], [2.0, 2.0], 1.0)
        input_grid = Grid([-1.0, -1.0], [1.0, 1.0], 1.0)
        labeler = RegionLabeler(state_grid)
        labeler.set_target(BoxRegion([[1.0, 2.0], [1.0, 2.0]]))
        modes = [Mode(LinearDynamics(A=np.eye(2), B=np.eye(2)), GaussianNoise(0.4))]

        seq = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                      AbstractionConfig(n_workers=1)).compute()
        par = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                      AbstractionConfig(n_workers=4)).compute()

        np.testing.assert_array_equal(seq.lower, par.lower)
        np.testing.assert_array_equal(seq.upper, par.upper)

    def test_probability_floor(self):
        state_grid, input_grid, labeler = line_setup()
        far = FunctionDynamics(lambda x, u: np.array([50.0]), state_dim=1)
        modes = [Mode(far, GaussianNoise(1.0))]

        lo, hi = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                         AbstractionConfig(n_workers=1)).compute_unit(0, 0, 0)

        np.testing.assert_array_equal(hi[:2], [0.0, 0.0])
        assert lo[2] == pytest.approx(1.0)

    def test_closed_form_requires_gaussian(self):
        state_grid, input_grid, labeler = line_setup()
        modes = [Mode(zero_dynamics(), DensityNoise(gaussian_pdf, vectorized=True))]

        with pytest.raises(ValueError):
            TransitionBoundComputer(state_grid, input_grid, labeler, modes, AbstractionConfig())

    def test_dimension_mismatch(self):
        state_grid, input_grid, labeler = line_setup()
        modes = [Mode(LinearDynamics(A=np.eye(2), B=np.eye(2)), GaussianNoise(1.0))]

        with pytest.raises(ValueError):
            TransitionBoundComputer(state_grid, input_grid, labeler, modes)

    def test_labeler_must_use_state_grid(self):
        state_grid, input_grid, _ = line_setup()
        other = RegionLabeler(Grid(-1.0, 1.0, 1.0))

        with pytest.raises(ValueError):
            TransitionBoundComputer(state_grid, input_grid, other,
                                    [Mode(zero_dynamics(), GaussianNoise(1.0))])


class TestModes:
    """Tests for multi-mode tables."""

    def test_mixing_uses_weights(self):
        state_grid, input_grid, labeler = line_setup()
        left = FunctionDynamics(lambda x, u: np.array([-0.5]), state_dim=1)
        right = FunctionDynamics(lambda x, u: np.array([0.5]), state_dim=1)
        modes = [Mode(left, GaussianNoise(0.5), weight=0.3),
                 Mode(right, GaussianNoise(0.5), weight=0.7)]

        table = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                        AbstractionConfig(n_workers=1)).compute()
        lower, upper = table.mixed()

        assert table.num_modes == 2
        np.testing.assert_allclose(lower, 0.3 * table.lower[0] + 0.7 * table.lower[1])
        np.testing.assert_allclose(upper, 0.3 * table.upper[0] + 0.7 * table.upper[1])
        assert table.lower[1, 0, 0, 1] > table.lower[0, 0, 0, 1]

    def test_weights_must_sum_to_one(self):
        state_grid, input_grid, labeler = line_setup()
        modes = [Mode(zero_dynamics(), GaussianNoise(1.0), weight=0.5),
                 Mode(zero_dynamics(), GaussianNoise(1.0), weight=0.4)]

        with pytest.raises(ValueError):
            TransitionBoundComputer(state_grid, input_grid, labeler, modes)

    def test_export_is_sparse(self):
        state_grid, input_grid, labeler = line_setup()
        modes = [Mode(zero_dynamics(), GaussianNoise(1.0))]

        data = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                       AbstractionConfig(n_workers=1)).compute().export()

        assert len(data['destination']) == 3
        assert int(data['target_column']) == 1
        assert int(data['avoid_column']) == 2
        np.testing.assert_array_equal(data['source'], [0, 0, 0])


class TestMonteCarlo:
    """Tests for sampled bounds with arbitrary densities."""

    def test_agrees_with_closed_form(self):
        state_grid, input_grid, labeler = line_setup()
        modes = [Mode(zero_dynamics(), DensityNoise(gaussian_pdf, vectorized=True))]
        config = AbstractionConfig(noise_method='monte_carlo', mc_samples=20000,
                                   integration_tol=5e-3, n_workers=1, seed=7)

        lo, hi = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                         config).compute_unit(0, 0, 0)

        assert np.all(lo <= EXPECTED_LINE_ROW + 0.01)
        assert np.all(hi >= EXPECTED_LINE_ROW - 0.01)
        np.testing.assert_allclose((lo + hi) / 2, EXPECTED_LINE_ROW, atol=0.02)

    def test_pointwise_density(self):
        state_grid, input_grid, labeler = line_setup()

        def pdf(point, dim, params):
            return float(np.prod(norm.pdf(point, loc=params.mean, scale=params.extra)))

        modes = [Mode(zero_dynamics(), DensityNoise(pdf, params=1.0))]
        config = AbstractionConfig(noise_method='monte_carlo', mc_samples=5000,
                                   integration_tol=1e-2, n_workers=1)

        lo, hi = TransitionBoundComputer(state_grid, input_grid, labeler, modes,
                                         config).compute_unit(0, 0, 0)

        np.testing.assert_allclose((lo + hi) / 2, EXPECTED_LINE_ROW, atol=0.05)

    def test_same_seed_same_table(self):
        state_grid, input_grid, labeler = line_setup()
        modes = [Mode(zero_dynamics(), DensityNoise(gaussian_pdf, vectorized=True))]
        config = AbstractionConfig(noise_method='monte_carlo', mc_samples=2000,
                                   integration_tol=2e-2, n_workers=1, seed=11)

        a = TransitionBoundComputer(state_grid, input_grid, labeler, modes, config).compute()
        b = TransitionBoundComputer(state_grid, input_grid, labeler, modes, config).compute()

        np.testing.assert_array_equal(a.lower, b.lower)
        np.testing.assert_array_equal(a.upper, b.upper)

    def test_non_convergence_raises(self):
        state_grid, input_grid, labeler = line_setup()
        modes = [Mode(zero_dynamics(), DensityNoise(gaussian_pdf, vectorized=True))]
        config = AbstractionConfig(noise_method='monte_carlo', mc_samples=100,
                                   integration_tol=1e-9, max_integration_batches=2, n_workers=1)

        with pytest.raises(IntegrationError) as excinfo:
            TransitionBoundComputer(state_grid, input_grid, labeler, modes, config).compute()

        assert (0, 0, 0) in excinfo.value.failed_units

    def test_negative_density_raises(self):
        state_grid, input_grid, labeler = line_setup()
        bad = DensityNoise(lambda points, dim, params: -np.ones(len(points)), vectorized=True)
        config = AbstractionConfig(noise_method='monte_carlo', n_workers=1)

        with pytest.raises(IntegrationError):
            TransitionBoundComputer(state_grid, input_grid, labeler,
                                    [Mode(zero_dynamics(), bad)], config).compute()

    def test_best_effort_gives_vacuous_rows(self):
        state_grid, input_grid, labeler = line_setup()
        modes = [Mode(zero_dynamics(), DensityNoise(gaussian_pdf, vectorized=True))]
        config = AbstractionConfig(noise_method='monte_carlo', mc_samples=100,
                                   integration_tol=1e-9, max_integration_batches=2,
                                   n_workers=1, best_effort=True)

        table = TransitionBoundComputer(state_grid, input_grid, labeler, modes, config).compute()

        assert list(table.failed_units) == [(0, 0, 0)]
        np.testing.assert_array_equal(table.lower[0, 0, 0], [0.0, 0.0, 0.0])
        np.testing.assert_array_equal(table.upper[0, 0, 0], [1.0, 1.0, 1.0])


def shift_setup(disturbance_grid, noise=None, config=None):
    """x(t+1) = w on the line setup."""
    state_grid, input_grid, labeler = line_setup()
    dyn = FunctionDynamics(lambda x, u, w: np.asarray(w, dtype=float), state_dim=1,
                           with_disturbance=True)
    modes = [Mode(dyn, noise if noise is not None else GaussianNoise(1.0))]
    config = config if config is not None else AbstractionConfig(n_workers=1)
    return TransitionBoundComputer(state_grid, input_grid, labeler, modes, config,
                                   disturbance_grid=disturbance_grid)


def constant_row(c):
    """Exact row of the line setup when the next-state mean is c."""
    return np.array([
        norm.cdf(0.0 - c) - norm.cdf(-1.0 - c),
        norm.cdf(1.0 - c) - norm.cdf(0.0 - c),
        1.0 - (norm.cdf(1.0 - c) - norm.cdf(-1.0 - c)),
    ])


class TestDisturbance:
    """Tests for bounds that range over a disturbance grid."""

    def test_row_contains_every_disturbance(self):
        lo, hi = shift_setup(Grid(-0.5, 0.5, 0.5)).compute_unit(0, 0, 0)

        for c in [-0.25, 0.25]:
            row = constant_row(c)
            assert np.all(lo <= row + 1e-9)
            assert np.all(hi >= row - 1e-9)

        # Stay and target columns are monotone in the mean over [-0.25, 0.25]
        np.testing.assert_allclose(lo[:2], np.minimum(constant_row(-0.25), constant_row(0.25))[:2],
                                   atol=1e-9)
        np.testing.assert_allclose(hi[:2], np.maximum(constant_row(-0.25), constant_row(0.25))[:2],
                                   atol=1e-9)

    def test_single_disturbance_matches_constant_mean(self):
        lo, hi = shift_setup(Grid(0.0, 0.5, 0.5)).compute_unit(0, 0, 0)

        np.testing.assert_allclose(lo, constant_row(0.25), atol=1e-9)
        np.testing.assert_allclose(hi, constant_row(0.25), atol=1e-9)

    def test_wider_disturbance_widens_interval(self):
        narrow_lo, narrow_hi = shift_setup(Grid(-0.5, 0.5, 0.5)).compute_unit(0, 0, 0)
        wide_lo, wide_hi = shift_setup(Grid(-1.0, 1.0, 0.5)).compute_unit(0, 0, 0)

        assert np.all(wide_lo <= narrow_lo + 1e-12)
        assert np.all(wide_hi >= narrow_hi - 1e-12)
        assert wide_lo[1] < narrow_lo[1] - 1e-3
        assert wide_hi[1] > narrow_hi[1] + 1e-3

    def test_table_shape_unchanged(self):
        computer = shift_setup(Grid(-1.0, 1.0, 0.5))

        table = computer.compute()

        assert table.lower.shape == (1, 1, 1, 3)
        assert np.all(table.lower <= table.upper + 1e-12)

    def test_monte_carlo_contains_every_disturbance(self):
        config = AbstractionConfig(noise_method='monte_carlo', mc_samples=20000,
                                   integration_tol=5e-3, n_workers=1, seed=7)
        computer = shift_setup(Grid(-0.5, 0.5, 0.5),
                               DensityNoise(gaussian_pdf, vectorized=True), config)

        lo, hi = computer.compute_unit(0, 0, 0)

        for c in [-0.25, 0.25]:
            row = constant_row(c)
            assert np.all(lo <= row + 0.01)
            assert np.all(hi >= row - 0.01)
        assert hi[1] - lo[1] > 0.05


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
