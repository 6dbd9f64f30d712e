"""
Tangent-plane (gnomonic) projection

Converts equatorial coordinates (degrees) to standard coordinates
(xi, eta) on the plane tangent to the sky at (ra0, dec0), and back. The
results are in radians, or in arcseconds in arcsec mode. Inputs may be
scalars or numpy arrays.
"""

import logging
from dataclasses import replace
from typing import List, Sequence

import numpy as np

from .catalog import CatalogStar

logger = logging.getLogger(__name__)

RAD_TO_ARCSEC = 3600.0 * 180.0 / np.pi


def _unwrap_ra(ra, ra0):
    """Move RA across 0/360 when the tangent point sits on the other side."""
    ra = np.asarray(ra, dtype=np.float64)
    ra = np.where((ra < 10.0) & (ra0 > 350.0), ra + 360.0, ra)
    ra = np.where((ra > 350.0) & (ra0 < 10.0), ra - 360.0, ra)
    return ra


def _as_output(value):
    return float(value) if np.ndim(value) == 0 else value


def project(ra, dec, ra0: float, dec0: float, arcsec: bool = False):
    """
    Project equatorial coordinates onto the tangent plane.

    Parameters:
    -----------
    ra, dec : float or numpy.ndarray
        Coordinates in degrees
    ra0, dec0 : float
        Tangent point in degrees
    arcsec : bool, default=False
        Return arcseconds instead of radians

    Returns:
    --------
    tuple
        (xi, eta)
    """
    ra = np.radians(_unwrap_ra(ra, ra0))
    dec = np.radians(np.asarray(dec, dtype=np.float64))
    alpha0, delta0 = np.radians(ra0), np.radians(dec0)

    delta_ra = ra - alpha0
    cos_dec = np.cos(dec)
    denom = (np.sin(delta0) * np.sin(dec)
             + np.cos(delta0) * cos_dec * np.cos(delta_ra))

    xi = cos_dec * np.sin(delta_ra) / denom
    eta = (np.cos(delta0) * np.sin(dec)
           - np.sin(delta0) * cos_dec * np.cos(delta_ra)) / denom

    if arcsec:
        xi = xi * RAD_TO_ARCSEC
        eta = eta * RAD_TO_ARCSEC
    return _as_output(xi), _as_output(eta)


def deproject(xi, eta, ra0: float, dec0: float, arcsec: bool = False):
    """
    Inverse of :func:`project`.

    Parameters:
    -----------
    xi, eta : float or numpy.ndarray
        Standard coordinates, radians or arcseconds
    ra0, dec0 : float
        Tangent point in degrees
    arcsec : bool, default=False
        Inputs are in arcseconds

    Returns:
    --------
    tuple
        (ra, dec) in degrees, RA in [0, 360)
    """
    xi = np.asarray(xi, dtype=np.float64)
    eta = np.asarray(eta, dtype=np.float64)
    if arcsec:
        xi = xi / RAD_TO_ARCSEC
        eta = eta / RAD_TO_ARCSEC

    alpha0, delta0 = np.radians(ra0), np.radians(dec0)
    z = np.cos(delta0) - eta * np.sin(delta0)
    alpha = np.arctan2(xi, z) + alpha0
    delta = np.arctan2(np.cos(alpha - alpha0) * (np.sin(delta0) + eta * np.cos(delta0)), z)

    ra = np.mod(np.degrees(alpha), 360.0)
    return _as_output(ra), _as_output(np.degrees(delta))


class TangentProjector:
    """Projection about a fixed tangent point."""

    def __init__(self, ra0: float, dec0: float, arcsec: bool = True):
        self.ra0 = ra0
        self.dec0 = dec0
        self.arcsec = arcsec

    def project(self, ra, dec):
        return project(ra, dec, self.ra0, self.dec0, self.arcsec)

    def deproject(self, xi, eta):
        return deproject(xi, eta, self.ra0, self.dec0, self.arcsec)

    def project_catalog(self, stars: Sequence[CatalogStar]) -> List[CatalogStar]:
        """
        Projected copies of catalog stars.

        The input list is left untouched so that several projections of the
        same catalog can run side by side.
        """
        if not stars:
            return []
        ra = np.array([s.ra for s in stars])
        dec = np.array([s.dec for s in stars])
        xi, eta = project(ra, dec, self.ra0, self.dec0, self.arcsec)
        xi, eta = np.atleast_1d(xi), np.atleast_1d(eta)
        logger.debug(f"Projected {len(stars)} catalog stars about "
                     f"({self.ra0:.6f}, {self.dec0:.6f})")
        return [replace(s, x=float(x), y=float(y)) for s, x, y in zip(stars, xi, eta)]
