"""
starsolve: star PSF fitting and plate solving.

Fits elliptical Gaussian profiles to stars, matches detected stars against a
reference catalog and derives the world coordinate system of the image.
"""

__version__ = '0.1.0'

from .astrometry import PlateSolution, PlateSolver, PlateSolveResult, SolveParameters, solve_plate
from .catalog import CatalogStar
from .config_manager import ConfigManager, load_config
from .matching import Homography, MatchResult, StarMatcher
from .projection import TangentProjector
from .psf import CalibrationData, FittedStar, PSFFitter, fit_star, fwhm_to_arcsec
from .sampler import PixelWindow, Rectangle, extract_window
from .star_finder import StarFinder, find_stars
from .utils import FailureReason, setup_logging

__all__ = [
    'CalibrationData', 'CatalogStar', 'ConfigManager', 'FailureReason', 'FittedStar',
    'Homography', 'MatchResult', 'PSFFitter', 'PixelWindow', 'PlateSolution',
    'PlateSolveResult', 'PlateSolver', 'Rectangle', 'SolveParameters', 'StarFinder',
    'StarMatcher', 'TangentProjector', 'extract_window', 'find_stars', 'fit_star',
    'fwhm_to_arcsec', 'load_config', 'setup_logging', 'solve_plate',
]
