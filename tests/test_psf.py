"""
Unit tests for the PSF fitting module.
"""

from unittest.mock import Mock

import numpy as np
import pytest

from starsolve.config_manager import PSFConfig
from starsolve.photometry import NO_PHOTOMETRY_MAG_ERROR, PhotometryResult
from starsolve.psf import (FWHM_UNAVAILABLE, MAG_ERROR_FROM_FIT, MAG_ERROR_FROM_PHOTOMETRY,
                           MAG_ERROR_UNAVAILABLE, ROUND_STAR_THRESHOLD, CalibrationData,
                           PSFFitter, _fold_angle, fit_star, fwhm_to_arcsec, psf_init_data)
from starsolve.psf_model import gaussian, rotated_gaussian
from starsolve.sampler import PixelWindow


def star_window(params, shape=(25, 25), x=100, y=200, noise=0.0, seed=0):
    """Window of samples drawn from the model with ``params``."""
    rows, cols = shape
    yy, xx = np.mgrid[1:rows + 1, 1:cols + 1]
    if len(params) == 7:
        data = rotated_gaussian(params, xx, yy)
    else:
        data = gaussian(params, xx, yy)
    if noise:
        data = data + np.random.default_rng(seed).normal(0.0, noise, data.shape)
    return PixelWindow.from_array(data, x=x, y=y)


@pytest.fixture
def round_star():
    return star_window([100.0, 5000.0, 12.3, 11.7, 8.0, 8.0])


class TestInitialGuess:
    """Test the initial guess read off the window."""

    def test_guess_near_truth(self, round_star):
        p0 = psf_init_data(round_star.data, 100.0)
        assert p0[0] == 100.0
        assert abs(p0[2] - 12.3) <= 1.0
        assert abs(p0[3] - 11.7) <= 1.0
        assert p0[4] > 0 and p0[5] > 0

    def test_flat_window_falls_back_to_unit_spread(self):
        """A window without a half-maximum run still gives positive spreads."""
        p0 = psf_init_data(np.full((7, 7), 10.0), 10.0)
        assert p0[4] == 1.0
        assert p0[5] == 1.0


class TestFitStar:
    """Test the full fitting entry point."""

    def test_synthetic_round_star_recovery(self, round_star):
        """Noise-free round star: centre and spread recovered, no angle fitted."""
        star = fit_star(round_star, 100.0, fit_angle=True, do_photometry=False)

        assert star is not None
        assert star.x0 == pytest.approx(12.3, abs=0.05)
        assert star.y0 == pytest.approx(11.7, abs=0.05)
        assert star.sigma_x == pytest.approx(8.0, rel=0.01)
        assert star.sigma_y == pytest.approx(8.0, rel=0.01)
        assert not star.angle_fitted
        assert star.angle == 0.0

    def test_image_position(self, round_star):
        """Image coordinates are the window origin plus the 1-based centre minus one."""
        star = fit_star(round_star, 100.0)
        assert star.xpos == pytest.approx(100 + star.x0 - 1.0)
        assert star.ypos == pytest.approx(200 + star.y0 - 1.0)
        assert star.rmse < 1.0
        assert star.amplitude == pytest.approx(5000.0, rel=0.01)
        assert star.background == pytest.approx(100.0, abs=1.0)

    def test_sigma_ordering_and_angle_range(self):
        """Every fit has sigma_x >= sigma_y and an angle in [-90, 90]."""
        rng = np.random.default_rng(3)
        for _ in range(8):
            sx, sy = rng.uniform(4.0, 20.0, 2)
            angle = rng.uniform(-np.pi, np.pi)
            window = star_window([50.0, 3000.0, 16.0 + rng.uniform(-1, 1),
                                  15.0 + rng.uniform(-1, 1), sx, sy, angle],
                                 shape=(31, 31), noise=5.0, seed=int(rng.integers(1000)))
            star = fit_star(window, 50.0, fit_angle=True)

            assert star is not None
            assert star.sigma_x >= star.sigma_y
            assert -90.0 <= star.angle <= 90.0
            assert star.fwhm_x >= star.fwhm_y > 0

    def test_elongated_star_fits_angle(self):
        """An elongated, rotated star goes through the rotated fit."""
        window = star_window([50.0, 4000.0, 16.2, 15.8, 24.0, 6.0, 0.5], shape=(31, 31))
        star = fit_star(window, 50.0, fit_angle=True)

        assert star is not None
        assert star.angle_fitted
        assert star.sigma_x > star.sigma_y
        assert star.x0 == pytest.approx(16.2, abs=0.1)
        assert star.y0 == pytest.approx(15.8, abs=0.1)

    def test_no_angle_requested(self):
        """With fit_angle off the angle stays zero even for elongated stars."""
        window = star_window([50.0, 4000.0, 16.0, 16.0, 20.0, 6.0, 0.7], shape=(31, 31))
        star = fit_star(window, 50.0, fit_angle=False)
        assert star is not None
        assert not star.angle_fitted
        assert star.angle == 0.0

    @pytest.mark.parametrize("shape", [(2, 2), (1, 6), (3, 2)])
    def test_too_few_samples(self, shape):
        """Windows with no more samples than parameters are rejected."""
        window = PixelWindow.from_array(np.arange(np.prod(shape), dtype=float).reshape(shape))
        assert fit_star(window, 0.0) is None

    def test_custom_round_star_threshold(self):
        """A large threshold forces the axis-aligned path."""
        window = star_window([50.0, 4000.0, 16.0, 16.0, 12.0, 9.0, 0.4], shape=(31, 31))
        fitter = PSFFitter(PSFConfig(round_star_threshold=100.0))
        star = fitter.fit_star(window, 50.0, fit_angle=True)
        assert star is not None
        assert not star.angle_fitted
        assert ROUND_STAR_THRESHOLD == 0.001


class TestMagnitudeErrors:
    """Test the two magnitude-uncertainty paths."""

    def test_fit_covariance_path(self, round_star):
        """Without photometry the error comes from the fit covariance."""
        star = fit_star(round_star, 100.0, do_photometry=False)
        assert star.mag_error_source == MAG_ERROR_FROM_FIT
        assert np.isfinite(star.mag_error)
        assert star.mag_error >= 0.0
        assert star.mag_error != NO_PHOTOMETRY_MAG_ERROR
        assert np.isfinite(star.mag)
        assert star.photometry is None

    def test_unavailable_photometry_sentinel(self, round_star):
        """Photometry that cannot be measured gives the sentinel error."""
        photometer = Mock(return_value=None)
        star = fit_star(round_star, 100.0, do_photometry=True, photometer=photometer)

        photometer.assert_called_once()
        assert star.mag_error == NO_PHOTOMETRY_MAG_ERROR
        assert star.mag_error_source == MAG_ERROR_UNAVAILABLE
        assert not star.has_photometry

    def test_default_photometer_in_small_window(self, round_star):
        """The sky annulus lies outside a 25x25 window, so photometry is unavailable."""
        star = fit_star(round_star, 100.0, do_photometry=True)
        assert star.mag_error == NO_PHOTOMETRY_MAG_ERROR
        assert star.mag_error_source == MAG_ERROR_UNAVAILABLE

    def test_photometry_values_used(self, round_star):
        """A photometry result replaces the basic magnitude."""
        result = PhotometryResult(mag=-11.5, mag_error=0.01, snr=22.0, flux=40000.0,
                                  sky=100.0, aperture_radius=5.2, n_sky=500, valid=True)
        photometer = Mock(return_value=result)
        star = fit_star(round_star, 100.0, do_photometry=True, photometer=photometer)

        window, params, fwhm_x = photometer.call_args[0]
        assert window is round_star
        assert params.x0 == pytest.approx(12.3, abs=0.05)
        assert fwhm_x == pytest.approx(star.fwhm_x, rel=1e-3)
        assert star.mag == -11.5
        assert star.mag_error == 0.01
        assert star.snr == 22.0
        assert star.mag_error_source == MAG_ERROR_FROM_PHOTOMETRY
        assert star.has_photometry


class TestFwhmToArcsec:
    """Test the arcsecond conversion gating."""

    @pytest.mark.parametrize("focal, px, py", [
        (0.0, 3.76, 3.76), (-100.0, 3.76, 3.76), (500.0, 0.0, 3.76),
        (500.0, 3.76, -1.0), (np.nan, 3.76, 3.76), (500.0, np.inf, 3.76),
    ])
    def test_unavailable_sentinel(self, round_star, focal, px, py):
        star = fit_star(round_star, 100.0)
        converted = fwhm_to_arcsec(star, CalibrationData(focal, px, py))
        assert converted.fwhm_x_arcsec == FWHM_UNAVAILABLE
        assert converted.fwhm_y_arcsec == FWHM_UNAVAILABLE
        assert converted.units == 'px'

    def test_missing_calibration(self, round_star):
        star = fit_star(round_star, 100.0)
        assert fwhm_to_arcsec(star, None).fwhm_x_arcsec == FWHM_UNAVAILABLE

    def test_conversion(self, round_star):
        """Each axis is scaled by 206.265 * its pixel size / focal * its binning."""
        star = fit_star(round_star, 100.0)
        converted = fwhm_to_arcsec(star, CalibrationData(1000.0, 5.0, 4.0, 2, 1))
        assert converted.fwhm_x_arcsec == pytest.approx(star.fwhm_x * 206.264806 * 5.0 / 1000.0 * 2,
                                                        rel=1e-6)
        assert converted.fwhm_y_arcsec == pytest.approx(star.fwhm_y * 206.264806 * 4.0 / 1000.0,
                                                        rel=1e-6)
        assert converted.units == '"'
        # The input record is left as it was
        assert star.fwhm_x_arcsec == FWHM_UNAVAILABLE

    def test_non_square_pixels(self, round_star):
        """Rectangular pixels and unequal binning give different scales per axis."""
        star = fit_star(round_star, 100.0)
        calibration = CalibrationData(1000.0, 5.0, 2.5, 1, 3)

        assert calibration.arcsec_per_pixel == pytest.approx((1.031324, 1.546986), rel=1e-5)
        converted = fwhm_to_arcsec(star, calibration)
        assert converted.fwhm_x_arcsec == pytest.approx(star.fwhm_x * 1.031324, rel=1e-5)
        assert converted.fwhm_y_arcsec == pytest.approx(star.fwhm_y * 1.546986, rel=1e-5)


class TestFoldAngle:
    """Test folding of fitted angles into [-90, 90]."""

    def test_in_range_unchanged(self):
        assert _fold_angle(30.0, 4.0, 2.0, 0.1, 0.2) == (30.0, 4.0, 2.0, 0.1, 0.2)

    @pytest.mark.parametrize("angle, folded", [(135.0, 45.0), (-100.0, -10.0)])
    def test_single_step_swaps_axes(self, angle, folded):
        """One 90 degree step swaps the spreads and their errors."""
        assert _fold_angle(angle, 4.0, 2.0, 0.1, 0.2) == (folded, 2.0, 4.0, 0.2, 0.1)

    def test_two_steps_restore_axes(self):
        assert _fold_angle(200.0, 4.0, 2.0, 0.1, 0.2) == (20.0, 4.0, 2.0, 0.1, 0.2)

