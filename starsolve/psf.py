"""
PSF Fitting Module

This module fits an elliptical 2D Gaussian, optionally rotated, to a window
of pixel intensities and turns the solution into a fitted-star record:

- initial guess from the window itself (no seed needed from the caller)
- Levenberg-Marquardt fit without rotation, then with rotation when the star
  is not round
- relative parameter uncertainties from the covariance at the solution
- FWHM, RMS residual, magnitude estimate, optional aperture photometry
- optional conversion of the FWHM to arcseconds from optics metadata

Fitting failures are returned as ``None`` so that batch callers can skip a
star without aborting the batch.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

import numpy as np
from scipy import ndimage, optimize

from .config_manager import PSFConfig, PhotometryConfig
from .photometry import MAG_ERROR_FACTOR, NO_PHOTOMETRY_MAG_ERROR, AperturePhotometer, PhotometryResult
from .psf_model import N_PARAMS, GaussianResidual, fwhm_from_spread, spread_from_width
from .sampler import PixelWindow

logger = logging.getLogger(__name__)

# Arcseconds per radian divided by 1000: focal length in mm, pixels in um
RADIAN_CONVERSION = ((3600.0 * 180.0) / np.pi) / 1.0e3

# |Sx - Sy| below which the rotation angle is not fitted
ROUND_STAR_THRESHOLD = 0.001

# Arcsecond FWHM of a star whose optics metadata is missing
FWHM_UNAVAILABLE = -1.0

MAG_ERROR_FROM_PHOTOMETRY = 'photometry'
MAG_ERROR_FROM_FIT = 'fit_covariance'
MAG_ERROR_UNAVAILABLE = 'unavailable'


@dataclass(frozen=True)
class CalibrationData:
    """Optics metadata needed to express FWHM in arcseconds."""
    focal_length: float = 0.0  # mm
    pixel_size_x: float = 0.0  # um
    pixel_size_y: float = 0.0  # um
    binning_x: int = 1
    binning_y: int = 1

    @property
    def available(self) -> bool:
        values = (self.focal_length, self.pixel_size_x, self.pixel_size_y,
                  self.binning_x, self.binning_y)
        return all(np.isfinite(v) and v > 0 for v in values)

    @property
    def arcsec_per_pixel(self) -> Tuple[float, float]:
        """Plate scale (arcsec/px) along x and y, each from its own pixel pitch and binning."""
        return (RADIAN_CONVERSION * self.pixel_size_x / self.focal_length * self.binning_x,
                RADIAN_CONVERSION * self.pixel_size_y / self.focal_length * self.binning_y)


@dataclass(frozen=True)
class PSFParameters:
    """Model parameters; ``x0, y0`` are 1-based window coordinates, ``angle`` in degrees."""
    background: float
    amplitude: float
    x0: float
    y0: float
    sigma_x: float
    sigma_y: float
    angle: float = 0.0


@dataclass(frozen=True)
class PSFErrors:
    """Relative uncertainties (uncertainty / value) of the fitted parameters."""
    background: float
    amplitude: float
    x0: float
    y0: float
    sigma_x: float
    sigma_y: float
    angle: float = np.nan


@dataclass(frozen=True)
class FittedStar:
    """
    Result of fitting one star.

    ``xpos``/``ypos`` are 0-based positions in the full image. Arcsecond FWHM
    fields hold ``FWHM_UNAVAILABLE`` until :func:`fwhm_to_arcsec` computes them.
    """

    # Model parameters
    background: float
    amplitude: float
    x0: float
    y0: float
    sigma_x: float
    sigma_y: float
    angle: float

    # Derived values
    fwhm_x: float
    fwhm_y: float
    rmse: float
    mag: float
    mag_error: float
    errors: PSFErrors

    # Image placement
    xpos: float
    ypos: float
    layer: int = 0

    angle_fitted: bool = False
    mag_error_source: str = MAG_ERROR_FROM_FIT
    snr: Optional[float] = None
    photometry: Optional[PhotometryResult] = None
    fwhm_x_arcsec: float = FWHM_UNAVAILABLE
    fwhm_y_arcsec: float = FWHM_UNAVAILABLE
    units: str = 'px'

    @property
    def params(self) -> PSFParameters:
        return PSFParameters(self.background, self.amplitude, self.x0, self.y0,
                             self.sigma_x, self.sigma_y, self.angle)

    @property
    def roundness(self) -> float:
        return self.fwhm_y / self.fwhm_x

    @property
    def has_photometry(self) -> bool:
        return self.photometry is not None


Photometer = Callable[[PixelWindow, PSFParameters, float], Optional[PhotometryResult]]


def psf_init_data(data: np.ndarray, background: float, filter_size: int = 3) -> np.ndarray:
    """
    Initial guess ``[B, A, x0, y0, Sx, Sy]`` read off the window.

    The peak is located on a median-filtered copy so that a hot pixel does
    not win. From the peak, each axis is walked while the sample stays above
    half of the peak height over the background, and the width of that run
    gives the spread parameter.

    Parameters:
    -----------
    data : numpy.ndarray
        Window samples
    background : float
        Background level
    filter_size : int, default=3
        Median filter size

    Returns:
    --------
    numpy.ndarray
        Parameter vector
    """
    smoothed = ndimage.median_filter(data, size=filter_size)
    rows, cols = smoothed.shape
    ii, jj = np.unravel_index(np.argmax(smoothed), smoothed.shape)
    peak = smoothed[ii, jj]
    half = peak - background

    def _above_half(value):
        return 2.0 * (value - background) > half

    i1 = ii
    while i1 < rows and _above_half(smoothed[i1, jj]):
        i1 += 1
    i2 = ii
    while i2 >= 0 and _above_half(smoothed[i2, jj]):
        i2 -= 1
    j1 = jj
    while j1 < cols and _above_half(smoothed[ii, j1]):
        j1 += 1
    j2 = jj
    while j2 >= 0 and _above_half(smoothed[ii, j2]):
        j2 -= 1

    sx = spread_from_width(j1 - j2) or 1.0
    sy = spread_from_width(i1 - i2) or 1.0

    return np.array([
        background,
        peak,
        (j1 + j2 + 2) / 2.0,
        (i1 + i2 + 2) / 2.0,
        sx,
        sy,
    ], dtype=np.float64)


def _fold_angle(angle: float, sx: float, sy: float, ex: float, ey: float):
    """
    Bring an angle into [-90, 90] in 90 degree steps.

    Unlike a plain fold of the angle, every step also swaps the two spreads
    and their errors, so the returned values describe the same ellipse as
    the inputs.
    """
    while angle > 90.0:
        angle -= 90.0
        sx, sy, ex, ey = sy, sx, ey, ex
    while angle < -90.0:
        angle += 90.0
        sx, sy, ex, ey = sy, sx, ey, ex
    return angle, sx, sy, ex, ey


def _relative(errors: np.ndarray, values: np.ndarray) -> np.ndarray:
    out = np.full(values.shape, np.nan)
    nonzero = values != 0
    out[nonzero] = errors[nonzero] / np.abs(values[nonzero])
    return out


class PSFFitter:
    """
    Gaussian PSF fitter.

    The fitter holds configuration only; every call works on its own buffers,
    so one instance can serve several threads.
    """

    def __init__(self, config: Optional[PSFConfig] = None,
                 photometer: Optional[Photometer] = None,
                 photometry_config: Optional[PhotometryConfig] = None):
        """
        Initialize the fitter.

        Parameters:
        -----------
        config : PSFConfig, optional
            Solver settings. If None, uses defaults.
        photometer : callable, optional
            Aperture photometry routine ``(window, params, fwhm_x)``. If None,
            an :class:`AperturePhotometer` is used when photometry is requested.
        photometry_config : PhotometryConfig, optional
            Settings of the default photometer
        """
        self.config = config or PSFConfig()
        self.photometer = photometer or AperturePhotometer(photometry_config)
        self.logger = logging.getLogger(__name__)

    def _solve(self, residual: GaussianResidual, p0: np.ndarray):
        """Run Levenberg-Marquardt; returns (solution, jacobian) or None."""
        cfg = self.config
        try:
            with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
                result = optimize.least_squares(
                    residual,
                    p0,
                    jac=residual.jacobian,
                    method='lm',
                    xtol=cfg.xtol,
                    ftol=cfg.ftol,
                    max_nfev=cfg.max_iterations + 1,
                )
        except (ValueError, np.linalg.LinAlgError) as e:
            self.logger.debug(f"Least-squares solver failed: {e}")
            return None

        if result.status < 0 or not np.all(np.isfinite(result.x)):
            self.logger.debug(f"Least-squares solver diverged: {result.message}")
            return None

        self.logger.debug(f"Solver stopped after {result.nfev} evaluations: {result.message}")
        return result.x, result.jac

    def _covariance_errors(self, jac: np.ndarray, params: np.ndarray) -> np.ndarray:
        with np.errstate(invalid='ignore'):
            covariance = np.linalg.pinv(jac.T @ jac)
            return _relative(np.sqrt(np.abs(np.diag(covariance))), params)

    def _fit(self, window: PixelWindow, p0: np.ndarray,
             with_angle: bool) -> Optional[FittedStar]:
        residual = GaussianResidual(window.data, with_angle=with_angle)
        if residual.n_samples <= residual.n_params:
            self.logger.debug(f"Window of {residual.n_samples} pixels is too small "
                              f"for {residual.n_params} parameters")
            return None

        solved = self._solve(residual, p0)
        if solved is None:
            return None
        params, jac = solved

        B, A, x0, y0, sx, sy = params[:6]
        if not (np.isfinite(sx) and np.isfinite(sy) and sx > 0 and sy > 0):
            self.logger.debug(f"Fit diverged to non-positive spread (Sx={sx}, Sy={sy})")
            return None

        rel = self._covariance_errors(jac, params)
        ex, ey = rel[4], rel[5]
        angle = 0.0
        angle_error = np.nan
        if with_angle:
            angle_error = rel[6]
            angle, sx, sy, ex, ey = _fold_angle(-np.degrees(params[6]), sx, sy, ex, ey)

        errors = PSFErrors(rel[0], rel[1], rel[2], rel[3], ex, ey, angle_error)
        mag, mag_error = self._basic_magnitude(window.data, B, errors)

        return FittedStar(
            background=float(B),
            amplitude=float(A),
            x0=float(x0),
            y0=float(y0),
            sigma_x=float(sx),
            sigma_y=float(sy),
            angle=float(angle),
            fwhm_x=float(fwhm_from_spread(sx)),
            fwhm_y=float(fwhm_from_spread(sy)),
            rmse=residual.rmse(params),
            mag=mag,
            mag_error=mag_error,
            errors=errors,
            xpos=window.rect.x + float(x0) - 1.0,
            ypos=window.rect.y + float(y0) - 1.0,
            layer=window.layer,
            angle_fitted=with_angle,
        )

    @staticmethod
    def _basic_magnitude(data: np.ndarray, background: float, errors: PSFErrors):
        """Magnitude from the background-subtracted window sum, error from the fit."""
        intensity = float(np.sum(data - background))
        mag = -2.5 * np.log10(intensity) if intensity > 0 else np.nan

        # Integral of the profile is pi * A * sqrt(Sx * Sy)
        rel_flux = np.sqrt(errors.amplitude ** 2
                           + (errors.sigma_x / 2.0) ** 2
                           + (errors.sigma_y / 2.0) ** 2)
        mag_error = MAG_ERROR_FACTOR * rel_flux
        return float(mag), float(mag_error)

    def fit_no_angle(self, window: PixelWindow, background: float) -> Optional[FittedStar]:
        """
        Fit the axis-aligned model.

        Parameters:
        -----------
        window : PixelWindow
            Samples to fit
        background : float
            Background estimate used as the initial ``B``

        Returns:
        --------
        FittedStar or None
            Raw fit; axis ordering is left to :meth:`fit_star`
        """
        if window.size <= N_PARAMS:
            self.logger.debug(f"Window of {window.size} pixels is too small to fit")
            return None
        p0 = psf_init_data(window.data, background, self.config.median_filter_size)
        return self._fit(window, p0, with_angle=False)

    def fit_with_angle(self, window: PixelWindow, seed: FittedStar,
                       do_photometry: bool = False) -> Optional[FittedStar]:
        """
        Fit the rotated model, starting from an axis-aligned solution.

        Parameters:
        -----------
        window : PixelWindow
            Samples to fit
        seed : FittedStar
            Result of :meth:`fit_no_angle` on the same window
        do_photometry : bool, default=False
            Run aperture photometry on the result

        Returns:
        --------
        FittedStar or None
        """
        p0 = np.array([seed.background, seed.amplitude, seed.x0, seed.y0,
                       seed.sigma_x, seed.sigma_y, 0.0], dtype=np.float64)
        star = self._fit(window, p0, with_angle=True)
        if star is not None and do_photometry:
            star = self._attach_photometry(window, star)
        return star

    def _attach_photometry(self, window: PixelWindow, star: FittedStar) -> FittedStar:
        phot = self.photometer(window, star.params, star.fwhm_x)
        if phot is None:
            return replace(star, mag_error=NO_PHOTOMETRY_MAG_ERROR,
                           mag_error_source=MAG_ERROR_UNAVAILABLE)
        return replace(star, mag=phot.mag, mag_error=phot.mag_error, snr=phot.snr,
                       mag_error_source=MAG_ERROR_FROM_PHOTOMETRY, photometry=phot)

    def fit_star(self, window: PixelWindow, background: float, fit_angle: bool = True,
                 do_photometry: bool = False) -> Optional[FittedStar]:
        """
        Fit one star; the entry point all callers should use.

        Parameters:
        -----------
        window : PixelWindow
            Samples around the star
        background : float
            Background estimate
        fit_angle : bool, default=True
            Fit the rotation angle unless the star is round
        do_photometry : bool, default=False
            Replace the basic magnitude with aperture photometry

        Returns:
        --------
        FittedStar or None
            None when the window is too small, the solver fails or the
            result is not a usable star
        """
        star = self.fit_no_angle(window, background)
        if star is None:
            return None

        if not fit_angle or abs(star.sigma_x - star.sigma_y) < self.config.round_star_threshold:
            if do_photometry:
                star = self._attach_photometry(window, star)
        else:
            star = self.fit_with_angle(window, star, do_photometry)
            if star is None:
                return None

        if star.sigma_y > star.sigma_x:
            star = _swap_axes(star)

        if not (np.isfinite(star.fwhm_x) and np.isfinite(star.fwhm_y)
                and star.fwhm_x > 0 and star.fwhm_y > 0):
            self.logger.debug("Rejecting fit with unusable FWHM")
            return None

        return star


def _swap_axes(star: FittedStar) -> FittedStar:
    angle = star.angle
    if star.angle_fitted:
        angle = angle - 90.0 if angle > 0 else angle + 90.0
    errors = replace(star.errors, sigma_x=star.errors.sigma_y, sigma_y=star.errors.sigma_x)
    return replace(star, sigma_x=star.sigma_y, sigma_y=star.sigma_x,
                   fwhm_x=star.fwhm_y, fwhm_y=star.fwhm_x, angle=angle, errors=errors)


def fwhm_to_arcsec(star: FittedStar, calibration: Optional[CalibrationData]) -> FittedStar:
    """
    Express the FWHM of a fitted star in arcseconds.

    Parameters:
    -----------
    star : FittedStar
        Fitted star
    calibration : CalibrationData or None
        Focal length, pixel pitch and binning

    Returns:
    --------
    FittedStar
        Copy with ``fwhm_x_arcsec``/``fwhm_y_arcsec`` set, or holding
        ``FWHM_UNAVAILABLE`` when the metadata is missing or not positive
    """
    if calibration is None or not calibration.available:
        return replace(star, fwhm_x_arcsec=FWHM_UNAVAILABLE,
                       fwhm_y_arcsec=FWHM_UNAVAILABLE, units='px')

    scale_x, scale_y = calibration.arcsec_per_pixel
    return replace(star, fwhm_x_arcsec=star.fwhm_x * scale_x,
                   fwhm_y_arcsec=star.fwhm_y * scale_y, units='"')


def fit_star(window: PixelWindow, background: float, fit_angle: bool = True,
             do_photometry: bool = False, config: Optional[PSFConfig] = None,
             photometer: Optional[Photometer] = None) -> Optional[FittedStar]:
    """Fit one star with a fitter built from ``config`` and ``photometer``."""
    return PSFFitter(config, photometer).fit_star(window, background, fit_angle, do_photometry)
