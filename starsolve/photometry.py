"""
Aperture photometry of fitted stars

Default implementation of the photometry step the PSF fitter delegates to
when photometry is requested: a circular aperture of radius FWHM + 0.5 px on
the fitted centre, and a sky annulus whose level is estimated with sigma
clipping. A ``None`` result is a legal outcome (annulus off the window, too
few sky pixels, no positive signal) and tells the fitter that photometry is
unavailable for that star.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from astropy.stats import sigma_clipped_stats
from photutils.aperture import CircularAnnulus, CircularAperture, aperture_photometry

from .config_manager import PhotometryConfig

logger = logging.getLogger(__name__)

# Magnitude uncertainty reported when no usable measurement exists
NO_PHOTOMETRY_MAG_ERROR = 9.999

# 2.5 / ln(10)
MAG_ERROR_FACTOR = 1.0857


@dataclass(frozen=True)
class PhotometryResult:
    """Outcome of aperture photometry on one star."""
    mag: float
    mag_error: float
    snr: float  # dB
    flux: float  # sky-subtracted aperture sum
    sky: float
    aperture_radius: float
    n_sky: int
    valid: bool


class AperturePhotometer:
    """
    Circular-aperture photometry on a pixel window.

    Instances are callables with the photometer signature used by
    :class:`starsolve.psf.PSFFitter`: ``(window, params, fwhm_x)``.
    """

    def __init__(self, config: Optional[PhotometryConfig] = None):
        """
        Initialize the photometer.

        Parameters:
        -----------
        config : PhotometryConfig, optional
            Aperture and sky settings. If None, uses defaults.
        """
        self.config = config or PhotometryConfig()
        self.logger = logging.getLogger(__name__)

    def __call__(self, window, params, fwhm_x: float) -> Optional[PhotometryResult]:
        return self.measure(window.data, params.x0, params.y0, fwhm_x)

    def measure(self, data: np.ndarray, x0: float, y0: float,
                fwhm_x: float) -> Optional[PhotometryResult]:
        """
        Measure one star.

        Parameters:
        -----------
        data : numpy.ndarray
            Window samples
        x0, y0 : float
            Fitted centre in 1-based window coordinates
        fwhm_x : float
            Fitted FWHM along the major axis, in pixels

        Returns:
        --------
        PhotometryResult or None
            None when the measurement cannot be made
        """
        cfg = self.config
        radius = fwhm_x + cfg.aperture_padding
        if not np.isfinite(radius) or radius <= 0:
            return None
        if radius >= cfg.inner_radius:
            self.logger.debug(f"Aperture radius {radius:.2f} reaches the sky annulus")
            return None

        # photutils works on 0-based pixel centres
        position = (x0 - 1.0, y0 - 1.0)
        aperture = CircularAperture(position, r=radius)
        annulus = CircularAnnulus(position, r_in=cfg.inner_radius, r_out=cfg.outer_radius)

        sky_values = annulus.to_mask(method='center').get_values(data)
        sky_values = sky_values[np.isfinite(sky_values)]
        n_sky = int(sky_values.size)
        if n_sky < cfg.min_sky_pixels:
            self.logger.debug(f"Only {n_sky} sky pixels available")
            return None

        sky_mean, _, sky_std = sigma_clipped_stats(
            sky_values, sigma=cfg.sigma_clip_threshold, maxiters=cfg.max_iterations
        )
        sky_var = float(sky_std) ** 2

        table = aperture_photometry(data, aperture, method='exact')
        aperture_sum = float(table['aperture_sum'][0])
        area = float(np.squeeze(aperture.area_overlap(data, method='exact')))

        signal = aperture_sum - area * float(sky_mean)
        if not np.isfinite(signal) or signal <= 0:
            self.logger.debug("No positive signal in aperture")
            return None

        aperture_values = aperture.to_mask(method='center').get_values(data)
        valid = bool(np.all((aperture_values > cfg.min_data) & (aperture_values < cfg.max_data)))

        noise = np.sqrt(area * sky_var + signal / cfg.gain + sky_var / n_sky * area ** 2)
        mag = -2.5 * np.log10(signal)
        mag_error = min(NO_PHOTOMETRY_MAG_ERROR, MAG_ERROR_FACTOR * noise / signal)
        snr = 10.0 * np.log10(signal / noise) if noise > 0 else np.inf

        return PhotometryResult(
            mag=float(mag),
            mag_error=float(mag_error),
            snr=float(snr),
            flux=signal,
            sky=float(sky_mean),
            aperture_radius=float(radius),
            n_sky=n_sky,
            valid=valid,
        )
