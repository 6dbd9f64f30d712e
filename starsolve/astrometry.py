#!/usr/bin/env python3
"""
Plate Solving Module

This module matches the stars detected in an image against a reference
catalog and derives the world coordinate system of the image:

- validation of the detected list, catalog centre and optics
- projection of the catalog on the tangent plane about the expected centre
- matching with a bounded list of attempts (scale constrained, then
  unconstrained, then with a growing candidate pool)
- optional refinement of the projection centre until it converges
- plate scale, rotation, focal length, field of view and the CD / PC+CDELT
  matrices of the final solution
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from astropy import units as u
from astropy.coordinates import Angle
from astropy.wcs import WCS

from .catalog import CatalogStar
from .config_manager import MatchConfig, PlateSolverConfig, validate_plate_solver_config
from .matching import (NO_SCALE, Homography, StarMatcher, apply_transform, as_points,
                       build_homography, fit_transform)
from .projection import TangentProjector, deproject, project
from .psf import RADIAN_CONVERSION
from .utils import ConfigurationError, FailureReason, relative_change, timing_context, wrap_angle

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]


@dataclass(frozen=True)
class SolveParameters:
    """What the caller knows about the image before solving it."""
    ra: float  # expected centre, degrees
    dec: float
    focal_length: float  # mm
    pixel_size: float  # um
    image_width: int
    image_height: int
    uncentered: bool = False  # the expected centre is not the image centre
    flip_if_mirrored: bool = False
    transform_kind: Optional[str] = None  # falls back to the solver config

    @property
    def expected_resolution(self) -> float:
        """Plate scale in arcsec/px implied by the optics."""
        return RADIAN_CONVERSION * self.pixel_size / self.focal_length

    @property
    def field_of_view(self) -> float:
        """Largest image dimension in arcminutes."""
        return self.expected_resolution * max(self.image_width, self.image_height) / 60.0


@dataclass(frozen=True)
class MatchAttempt:
    """Parameters of one call to the matcher."""
    n_candidates: int
    scale_min: float = NO_SCALE
    scale_max: float = NO_SCALE

    @property
    def scale_constrained(self) -> bool:
        return self.scale_min != NO_SCALE or self.scale_max != NO_SCALE


@dataclass(frozen=True)
class PlateSolution:
    """
    World coordinate solution of an image.

    Pixel coordinates are 0-based; ``crpix`` is the reference pixel and
    ``crval`` its (RA, Dec) in degrees. ``cd`` and ``pc`` are 2x2 arrays,
    ``cd`` and ``cdelt`` in degrees per pixel.
    """
    image_width: int
    image_height: int
    crpix: Tuple[float, float]
    crval: Tuple[float, float]
    resolution: float  # arcsec/px
    focal_length: float  # mm
    pixel_size: float  # um
    rotation: float  # degrees
    crota: float  # degrees
    cd: np.ndarray
    pc: np.ndarray
    cdelt: Tuple[float, float]
    fov_x: float  # arcmin
    fov_y: float  # arcmin
    tangent_point: Tuple[float, float]
    homography: Homography
    flipped: bool
    converged: bool

    @property
    def image_center(self) -> Tuple[float, float]:
        return self.crval

    @property
    def pairs_matched(self) -> int:
        return self.homography.pair_matched

    @property
    def inliers(self) -> int:
        return self.homography.inliers

    def pixel_to_world(self, x, y):
        """Sky position (degrees) of 0-based pixel coordinates through the fitted transform."""
        xi, eta = apply_transform(self.homography.matrix, np.column_stack([np.atleast_1d(x),
                                                                            np.atleast_1d(y)])).T
        return deproject(xi, eta, *self.tangent_point, arcsec=True)

    def to_wcs(self) -> WCS:
        """The solution as a FITS TAN world coordinate system."""
        wcs = WCS(naxis=2)
        wcs.wcs.ctype = ['RA---TAN', 'DEC--TAN']
        wcs.wcs.cunit = ['deg', 'deg']
        # FITS reference pixels are 1-based
        wcs.wcs.crpix = [self.crpix[0] + 1.0, self.crpix[1] + 1.0]
        wcs.wcs.crval = list(self.crval)
        wcs.wcs.cd = np.array(self.cd)
        wcs.wcs.radesys = 'ICRS'
        wcs.wcs.equinox = 2000.0
        wcs.pixel_shape = (self.image_width, self.image_height)
        return wcs


@dataclass(frozen=True)
class PlateSolveResult:
    """Solution, or the reason the solve failed."""
    solution: Optional[PlateSolution] = None
    reason: Optional[FailureReason] = None
    message: str = ''
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.solution is not None


def check_affine_sanity(homography: Homography, tolerance: float = 0.3) -> bool:
    """
    Reject transforms real optics cannot produce.

    The linear part of a plate transform is a scaled rotation, possibly
    mirrored, so ``|b| ~ |f|`` and ``|c| ~ |e|``.
    """
    return (abs(abs(homography.b) - abs(homography.f)) < tolerance
            and abs(abs(homography.c) - abs(homography.e)) < tolerance)


def match_attempts(n_candidates: int, expected_scale: float,
                   config: PlateSolverConfig) -> List[MatchAttempt]:
    """
    The ordered attempts of one solve.

    Scale constrained around the expected value first, unconstrained next,
    then unconstrained with ``candidate_increment`` more candidates per
    further attempt, ``config.max_attempts`` in total.
    """
    attempts = [
        MatchAttempt(n_candidates,
                     expected_scale - config.scale_tolerance,
                     expected_scale + config.scale_tolerance),
        MatchAttempt(n_candidates),
    ]
    while len(attempts) < config.max_attempts:
        widen = len(attempts) - 1
        attempts.append(MatchAttempt(n_candidates + widen * config.candidate_increment))
    return attempts[:config.max_attempts]


def _cd_matrix(matrix: np.ndarray, crpix: np.ndarray, tangent: Tuple[float, float],
               crval: Tuple[float, float]) -> np.ndarray:
    """CD matrix from the sky offsets of unit pixel steps along each axis."""
    ra0, dec0 = crval
    cd = np.zeros((2, 2))
    for axis, step in enumerate(((1.0, 0.0), (0.0, 1.0))):
        xi, eta = apply_transform(matrix, crpix + np.array(step))[0]
        ra, dec = deproject(xi, eta, *tangent, arcsec=True)
        delta_ra = ra - ra0
        if delta_ra > 180.0:
            delta_ra -= 360.0
        elif delta_ra < -180.0:
            delta_ra += 360.0
        cd[0, axis] = delta_ra * np.cos(np.radians(dec0))
        cd[1, axis] = dec - dec0
    return cd


def flip_solution(solution: PlateSolution) -> PlateSolution:
    """
    Solution of the same image flipped top to bottom.

    The pixel y axis is reversed, so the y column of the CD and PC matrices
    changes sign and the reference row is reflected.
    """
    cd = np.array(solution.cd)
    pc = np.array(solution.pc)
    cd[:, 1] = -cd[:, 1]
    pc[:, 1] = -pc[:, 1]
    crota = wrap_angle(-solution.crota - 180.0)
    crpix = (solution.crpix[0], solution.image_height - 1.0 - solution.crpix[1])
    return replace(solution, cd=cd, pc=pc, crpix=crpix, crota=crota,
                   rotation=wrap_angle(crota + 180.0), flipped=not solution.flipped)


class PlateSolver:
    """
    Plate solver for one image.

    The solver is stateless between calls; all inputs are passed to
    :meth:`solve` and the result is returned.
    """

    def __init__(self, config: Optional[PlateSolverConfig] = None,
                 match_config: Optional[MatchConfig] = None):
        """
        Initialize the plate solver.

        Parameters:
        -----------
        config : PlateSolverConfig, optional
            Solver settings. If None, uses defaults.
        match_config : MatchConfig, optional
            Matcher tolerances. If None, uses defaults.
        """
        self.config = config or PlateSolverConfig()
        self.matcher = StarMatcher(match_config)
        self.logger = logging.getLogger(__name__)
        self._validate_config()

    def _validate_config(self) -> None:
        errors = validate_plate_solver_config(self.config)
        if errors:
            raise ConfigurationError("; ".join(errors))

    def _fail(self, reason: FailureReason, message: str, attempts: int = 0) -> PlateSolveResult:
        self.logger.warning(f"Plate solving failed: {message}")
        return PlateSolveResult(reason=reason, message=message, attempts=attempts)

    def _check_inputs(self, n_detected: int, catalog: Sequence[CatalogStar],
                      params: SolveParameters) -> Optional[PlateSolveResult]:
        cfg = self.config
        if n_detected < cfg.min_pairs:
            return self._fail(FailureReason.INSUFFICIENT_DATA,
                              f"There are not enough stars picked in the image. "
                              f"At least {cfg.min_pairs} stars are needed.")
        if not catalog:
            return self._fail(FailureReason.CATALOG_UNAVAILABLE, "The catalog holds no stars")
        if not (np.isfinite(params.ra) and np.isfinite(params.dec)) \
                or (params.ra == 0.0 and params.dec == 0.0) or abs(params.dec) > 90.0:
            return self._fail(FailureReason.INVALID_INPUT,
                              f"Invalid catalog centre ({params.ra}, {params.dec})")
        if not (params.focal_length > 0 and params.pixel_size > 0
                and params.image_width > 0 and params.image_height > 0):
            return self._fail(FailureReason.INVALID_INPUT,
                              "Focal length, pixel size and image size must be positive")
        if not params.field_of_view > 0:
            return self._fail(FailureReason.INVALID_INPUT, "The field of view must be positive")
        return None

    def _find_match(self, image_points: np.ndarray, catalog_points: np.ndarray,
                    params: SolveParameters, kind: str,
                    cancel_check: Optional[CancelCheck]):
        """Run the attempts in order; returns (match, attempts used, failure)."""
        cfg = self.config
        attempts = match_attempts(cfg.n_candidates, params.expected_resolution, cfg)
        reason, message = FailureReason.MATCH_NOT_FOUND, "No match attempted"

        for number, attempt in enumerate(attempts, start=1):
            if cancel_check is not None and cancel_check():
                return None, number - 1, (FailureReason.CANCELLED, "Plate solving cancelled")

            self.logger.debug(f"Match attempt {number}/{len(attempts)}: {attempt}")
            result = self.matcher.match(image_points, catalog_points, attempt.n_candidates,
                                        cfg.min_pairs, attempt.scale_min, attempt.scale_max, kind)
            if not result.success:
                reason, message = result.reason, result.message
                continue

            if not check_affine_sanity(result.homography, cfg.sanity_tolerance):
                reason = FailureReason.GEOMETRIC_IMPLAUSIBILITY
                message = "The transform found does not describe a real optical system"
                self.logger.debug(f"Attempt {number} rejected by the affine sanity check")
                continue

            return result, number, None

        return None, len(attempts), (reason, message)

    @staticmethod
    def _image_center(matrix: np.ndarray, crpix: np.ndarray,
                      tangent: Tuple[float, float]) -> Tuple[float, float]:
        xi, eta = apply_transform(matrix, crpix)[0]
        return deproject(xi, eta, *tangent, arcsec=True)

    def solve(self, detected, catalog: Sequence[CatalogStar], params: SolveParameters,
              cancel_check: Optional[CancelCheck] = None) -> PlateSolveResult:
        """
        Solve an image.

        Parameters:
        -----------
        detected : list of FittedStar or array-like
            Stars found in the image (0-based pixels), brightest first
        catalog : list of CatalogStar
            Reference stars around the expected centre, brightest first
        params : SolveParameters
            Expected centre, optics and image size
        cancel_check : callable, optional
            Polled between matching attempts and refinement trials; a true
            return value abandons the solve

        Returns:
        --------
        PlateSolveResult
        """
        with timing_context("plate solve", self.logger):
            return self._solve(detected, catalog, params, cancel_check)

    def _solve(self, detected, catalog, params, cancel_check) -> PlateSolveResult:
        cfg = self.config
        kind = params.transform_kind or cfg.transform_kind
        image_points = as_points(detected)

        failure = self._check_inputs(len(image_points), catalog, params)
        if failure is not None:
            return failure

        n = min(len(image_points), len(catalog), cfg.max_catalog_stars)
        projector = TangentProjector(params.ra, params.dec, arcsec=True)
        projected = projector.project_catalog(catalog[:n])
        catalog_points = as_points(projected)
        image_points = image_points[:n]

        result, n_attempts, failure = self._find_match(image_points, catalog_points,
                                                       params, kind, cancel_check)
        if failure is not None:
            return self._fail(*failure, attempts=n_attempts)

        pixels = image_points[result.pairs[:, 0]]
        standard = catalog_points[result.pairs[:, 1]]
        homography = result.homography
        tangent = (params.ra, params.dec)
        crpix = np.array([(params.image_width - 1) / 2.0, (params.image_height - 1) / 2.0])
        center = self._image_center(homography.matrix, crpix, tangent)

        max_trials = cfg.max_trials if params.uncentered else 0
        converged = max_trials == 0
        for trial in range(max_trials):
            if cancel_check is not None and cancel_check():
                return self._fail(FailureReason.CANCELLED, "Plate solving cancelled", n_attempts)

            ra, dec = deproject(standard[:, 0], standard[:, 1], *tangent, arcsec=True)
            tangent = center
            standard = np.column_stack(project(ra, dec, *tangent, arcsec=True))

            matrix = fit_transform(pixels, standard, kind)
            if matrix is None:
                return self._fail(FailureReason.DEGENERATE_TRANSFORM,
                                  "Refined transform is singular", n_attempts)
            homography = build_homography(matrix, pixels, standard, kind,
                                          self.matcher.config.inlier_radius,
                                          homography.n_candidates)

            new_center = self._image_center(matrix, crpix, tangent)
            change = relative_change(new_center[0], center[0]) + relative_change(new_center[1], center[1])
            center = new_center
            self.logger.debug(f"Refinement trial {trial + 1}: relative change {change:.3e}")
            if change < cfg.convergence_tolerance:
                converged = True
                break

        if not converged:
            self.logger.warning(f"No guaranteed convergence after {max_trials} trials")

        solution = self._build_solution(homography, crpix, tangent, center, params, converged)
        if params.flip_if_mirrored and solution.flipped:
            solution = flip_solution(solution)

        self._log_solution(solution)
        return PlateSolveResult(solution=solution, attempts=n_attempts)

    def _build_solution(self, homography: Homography, crpix: np.ndarray,
                        tangent: Tuple[float, float], center: Tuple[float, float],
                        params: SolveParameters, converged: bool) -> PlateSolution:
        h = homography.matrix
        scale_x = np.hypot(h[0, 0], h[0, 1])
        scale_y = np.hypot(h[1, 0], h[1, 1])
        resolution = (scale_x + scale_y) * 0.5

        det = homography.determinant
        rotation = np.degrees(np.arctan2(h[0, 0] + h[0, 1], h[1, 0] + h[1, 1])) + 135.0
        if det < 0:
            rotation = -90.0 - rotation
        rotation = wrap_angle(rotation)
        crota = wrap_angle(rotation - 180.0)

        cd = _cd_matrix(h, crpix, tangent, center)
        cdelt = np.hypot(cd[0], cd[1])
        if det < 0:
            cdelt[0] = -cdelt[0]
        pc = cd / cdelt

        return PlateSolution(
            image_width=params.image_width,
            image_height=params.image_height,
            crpix=(float(crpix[0]), float(crpix[1])),
            crval=(float(center[0]), float(center[1])),
            resolution=float(resolution),
            focal_length=float(RADIAN_CONVERSION * params.pixel_size / resolution),
            pixel_size=params.pixel_size,
            rotation=float(rotation),
            crota=float(crota),
            cd=cd,
            pc=pc,
            cdelt=(float(cdelt[0]), float(cdelt[1])),
            fov_x=float(resolution * params.image_width / 60.0),
            fov_y=float(resolution * params.image_height / 60.0),
            tangent_point=(float(tangent[0]), float(tangent[1])),
            homography=homography,
            flipped=bool(det < 0),
            converged=converged,
        )

    def _log_solution(self, solution: PlateSolution) -> None:
        h = solution.homography
        ra = Angle(solution.crval[0], u.deg).to_string(unit=u.hourangle, sep='hms', precision=0)
        dec = Angle(solution.crval[1], u.deg).to_string(unit=u.deg, sep='dms', precision=0,
                                                       alwayssign=True)
        self.logger.info(f"{h.pair_matched} pair matches")
        self.logger.info(f"Inliers: {h.inliers / h.pair_matched:.3f}")
        self.logger.info(f"Resolution: {solution.resolution:.3f} arcsec/px")
        self.logger.info(f"Rotation: {solution.rotation:+.2f} deg"
                         f"{' (flipped)' if solution.flipped else ''}")
        self.logger.info(f"Focal: {solution.focal_length:.2f} mm")
        self.logger.info(f"Pixel size: {solution.pixel_size:.2f} um")
        self.logger.info(f"Field of view: {solution.fov_x:.2f}' x {solution.fov_y:.2f}'")
        self.logger.info(f"Image center: alpha: {ra}, delta: {dec}")


def solve_plate(detected_stars, catalog_stars: Sequence[CatalogStar],
                initial_params: SolveParameters,
                config: Optional[PlateSolverConfig] = None,
                match_config: Optional[MatchConfig] = None,
                cancel_check: Optional[CancelCheck] = None) -> PlateSolveResult:
    """
    Convenience function to solve one image.

    Parameters:
    -----------
    detected_stars : list of FittedStar or array-like
        Stars found in the image, brightest first
    catalog_stars : list of CatalogStar
        Reference stars, brightest first
    initial_params : SolveParameters
        Expected centre, optics and image size
    config : PlateSolverConfig, optional
        Solver settings
    match_config : MatchConfig, optional
        Matcher tolerances
    cancel_check : callable, optional
        Cooperative cancellation hook

    Returns:
    --------
    PlateSolveResult
    """
    solver = PlateSolver(config, match_config)
    return solver.solve(detected_stars, catalog_stars, initial_params, cancel_check)
