"""
Unit tests for the elliptical Gaussian model and its residual function.
"""

import numpy as np
import pytest

from starsolve.psf_model import (FWHM_FACTOR, GaussianResidual, fwhm_from_spread, gaussian,
                                 gaussian_jacobian, rotated_gaussian, rotated_gaussian_jacobian,
                                 spread_from_width)


def numeric_jacobian(func, params, x, y, step=1e-6):
    params = np.asarray(params, dtype=np.float64)
    columns = []
    for k in range(len(params)):
        dp = np.zeros_like(params)
        dp[k] = step * max(1.0, abs(params[k]))
        columns.append((func(params + dp, x, y) - func(params - dp, x, y)) / (2 * dp[k]))
    return np.column_stack(columns)


@pytest.fixture
def grid():
    yy, xx = np.mgrid[1:16, 1:18]
    return xx.ravel().astype(float), yy.ravel().astype(float)


class TestModel:
    """Test model evaluation."""

    def test_peak_value(self):
        """At the centre the model equals B + A."""
        assert gaussian([10.0, 200.0, 5.0, 6.0, 4.0, 2.0], 5.0, 6.0) == pytest.approx(210.0)

    def test_rotation_by_zero_matches_axis_aligned(self, grid):
        """With a zero angle both forms agree."""
        x, y = grid
        params = [3.0, 100.0, 8.2, 7.4, 9.0, 4.0]
        np.testing.assert_allclose(rotated_gaussian(params + [0.0], x, y),
                                   gaussian(params, x, y))

    def test_quarter_turn_swaps_axes(self, grid):
        """Rotating by 90 degrees exchanges the roles of Sx and Sy."""
        x, y = grid
        rotated = rotated_gaussian([0.0, 1.0, 9.0, 8.0, 9.0, 4.0, np.pi / 2], x, y)
        swapped = gaussian([0.0, 1.0, 9.0, 8.0, 4.0, 9.0], x, y)
        np.testing.assert_allclose(rotated, swapped, atol=1e-12)

    def test_fwhm_conversions(self):
        """Spread and FWHM conversions are consistent."""
        assert fwhm_from_spread(2.0) == pytest.approx(FWHM_FACTOR)
        # Half maximum is reached at width / 2 from the centre
        spread = spread_from_width(6.0)
        assert np.exp(-(3.0 ** 2) / spread) == pytest.approx(0.5)


class TestJacobian:
    """Analytic derivatives against central differences."""

    def test_axis_aligned(self, grid):
        x, y = grid
        params = [12.0, 350.0, 8.7, 7.1, 6.5, 3.2]
        np.testing.assert_allclose(gaussian_jacobian(params, x, y),
                                   numeric_jacobian(gaussian, params, x, y),
                                   rtol=1e-5, atol=1e-6)

    def test_rotated(self, grid):
        x, y = grid
        params = [12.0, 350.0, 8.7, 7.1, 6.5, 3.2, 0.6]
        np.testing.assert_allclose(rotated_gaussian_jacobian(params, x, y),
                                   numeric_jacobian(rotated_gaussian, params, x, y),
                                   rtol=1e-5, atol=1e-6)


class TestGaussianResidual:
    """Test the residual object handed to the solver."""

    def test_zero_residual_at_truth(self):
        """Data generated from the model has zero residual and RMSE."""
        params = np.array([5.0, 80.0, 4.4, 3.6, 3.0, 2.0])
        yy, xx = np.mgrid[1:9, 1:10]
        data = gaussian(params, xx, yy)

        residual = GaussianResidual(data)

        assert residual.n_params == 6
        assert residual.n_samples == 72
        np.testing.assert_allclose(residual(params), 0.0, atol=1e-12)
        assert residual.rmse(params) == pytest.approx(0.0, abs=1e-12)

    def test_coordinates_are_one_based(self):
        """The first sample sits at (1, 1) and rows run along y."""
        residual = GaussianResidual(np.zeros((3, 4)), with_angle=True)
        assert residual.n_params == 7
        assert (residual.x[0], residual.y[0]) == (1.0, 1.0)
        assert (residual.x[3], residual.y[3]) == (4.0, 1.0)
        assert (residual.x[4], residual.y[4]) == (1.0, 2.0)

    def test_jacobian_shape(self):
        residual = GaussianResidual(np.ones((5, 5)), with_angle=True)
        jac = residual.jacobian([0.0, 1.0, 3.0, 3.0, 2.0, 2.0, 0.1])
        assert jac.shape == (25, 7)
