"""
Star Detection Module

Finds point sources in an image and fits each of them with the Gaussian PSF
model. Detection works on a smoothed copy of the image: local maxima above
``median + k * sigma`` of the sigma-clipped background become candidates, a
square window around each candidate is fitted, and fits that do not look
like stars are rejected.
"""

import logging
from typing import Dict, List, Optional

import numpy as np
from astropy.stats import sigma_clipped_stats
from scipy.ndimage import gaussian_filter
from skimage.feature import peak_local_max

from .config_manager import PSFConfig, StarFinderConfig
from .parallel_processing import ParallelFitter
from .psf import FittedStar, PSFFitter
from .sampler import PixelWindow, Rectangle, extract_window, image_layer
from .utils import DataValidationError, timing_context

logger = logging.getLogger(__name__)


class StarFinder:
    """
    Detection and fitting of the stars of an image.

    Results are sorted brightest first, which is the order the matcher
    expects.
    """

    def __init__(self, config: Optional[StarFinderConfig] = None,
                 psf_config: Optional[PSFConfig] = None,
                 fitter: Optional[PSFFitter] = None):
        """
        Initialize the star finder.

        Parameters:
        -----------
        config : StarFinderConfig, optional
            Detection settings. If None, uses defaults.
        psf_config : PSFConfig, optional
            Settings of the default fitter
        fitter : PSFFitter, optional
            Fitter to use instead of a default one
        """
        self.config = config or StarFinderConfig()
        self.fitter = fitter or PSFFitter(psf_config)
        self.logger = logging.getLogger(__name__)

    def _candidates(self, plane: np.ndarray) -> np.ndarray:
        """(row, col) of the local maxima above the detection threshold."""
        cfg = self.config
        data = np.asarray(plane, dtype=np.float64)
        _, median, std = sigma_clipped_stats(data, sigma=3.0, maxiters=5)
        smoothed = gaussian_filter(data, sigma=cfg.smoothing_sigma)
        threshold = median + cfg.sigma * std

        peaks = peak_local_max(smoothed, min_distance=max(1, cfg.radius // 2),
                               threshold_abs=threshold, exclude_border=False)
        self.logger.debug(f"{len(peaks)} candidates above {threshold:.3f} "
                          f"(median {median:.3f}, sigma {std:.3f})")
        return peaks

    def is_star(self, star: Optional[FittedStar], window: PixelWindow) -> bool:
        """
        Acceptance test of a fit.

        Parameters:
        -----------
        star : FittedStar or None
            Fit of ``window``
        window : PixelWindow
            Fitted samples

        Returns:
        --------
        bool
            True when the fit is finite, bright and compact enough, round
            enough, and centred inside the window
        """
        if star is None:
            return False

        cfg = self.config
        values = (star.amplitude, star.x0, star.y0, star.sigma_x, star.sigma_y, star.fwhm_x,
                  star.fwhm_y)
        if not all(np.isfinite(v) for v in values):
            return False
        if star.amplitude < cfg.min_amplitude:
            return False
        if star.sigma_x > cfg.max_sigma or star.sigma_y > cfg.max_sigma:
            return False
        if star.roundness < cfg.min_roundness:
            return False
        return 1.0 <= star.x0 <= window.cols and 1.0 <= star.y0 <= window.rows

    def _deduplicate(self, stars: List[FittedStar]) -> List[FittedStar]:
        """Drop stars closer than ``min_separation`` to a brighter one already kept."""
        kept = []
        for star in stars:
            if all(np.hypot(star.xpos - other.xpos, star.ypos - other.ypos)
                   >= self.config.min_separation for other in kept):
                kept.append(star)
        return kept

    def find_stars(self, image: np.ndarray, layer: int = 0,
                   do_photometry: bool = False) -> List[FittedStar]:
        """
        Detect and fit the stars of an image.

        Parameters:
        -----------
        image : numpy.ndarray
            Image buffer, ``(rows, cols)`` or ``(layers, rows, cols)``
        layer : int, default=0
            Channel to search
        do_photometry : bool, default=False
            Run aperture photometry on each star

        Returns:
        --------
        list of FittedStar
            Accepted stars, brightest first
        """
        cfg = self.config
        plane = image_layer(image, layer)

        with timing_context("star detection", self.logger):
            peaks = self._candidates(plane)
            _, background, _ = sigma_clipped_stats(np.asarray(plane, dtype=np.float64),
                                                   sigma=3.0, maxiters=5)

            windows = []
            for row, col in peaks:
                try:
                    windows.append(extract_window(image, Rectangle.around(col, row, cfg.radius),
                                                  layer))
                except DataValidationError as e:
                    self.logger.debug(f"Skipping candidate at ({col}, {row}): {e}")

            batch = ParallelFitter(self.fitter, cfg.max_workers)
            fits = batch.fit_windows(windows, float(background), cfg.fit_angle, do_photometry)

        stars = [star for star, window in zip(fits, windows) if self.is_star(star, window)]
        stars.sort(key=lambda s: (not np.isfinite(s.mag), s.mag))
        stars = self._deduplicate(stars)
        if cfg.max_stars > 0:
            stars = stars[:cfg.max_stars]

        self.logger.info(f"Found {len(stars)} stars from {len(peaks)} candidates")
        return stars


def fwhm_statistics(stars: List[FittedStar]) -> Dict[str, float]:
    """
    Median FWHM and roundness of a star list.

    Parameters:
    -----------
    stars : list of FittedStar
        Fitted stars

    Returns:
    --------
    dict
        ``n_stars``, ``fwhm_x``, ``fwhm_y``, ``fwhm`` (mean of both axes)
        and ``roundness``; NaN medians for an empty list
    """
    if not stars:
        return {'n_stars': 0, 'fwhm_x': np.nan, 'fwhm_y': np.nan,
                'fwhm': np.nan, 'roundness': np.nan}

    fwhm_x = np.array([s.fwhm_x for s in stars])
    fwhm_y = np.array([s.fwhm_y for s in stars])
    return {
        'n_stars': len(stars),
        'fwhm_x': float(np.median(fwhm_x)),
        'fwhm_y': float(np.median(fwhm_y)),
        'fwhm': float(np.median((fwhm_x + fwhm_y) / 2.0)),
        'roundness': float(np.median(fwhm_y / fwhm_x)),
    }


def find_stars(image: np.ndarray, layer: int = 0,
               config: Optional[StarFinderConfig] = None,
               psf_config: Optional[PSFConfig] = None) -> List[FittedStar]:
    """Convenience function to detect and fit the stars of an image."""
    return StarFinder(config, psf_config).find_stars(image, layer)
