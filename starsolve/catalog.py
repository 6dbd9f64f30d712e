"""
Reference catalog records

The plate solver consumes an already parsed catalog: a list of stars with
equatorial coordinates, magnitude and colour index, brightest first. This
module defines that record and builds lists of them from astropy tables.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
from astropy.table import Table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogStar:
    """Catalog entry; ``x``/``y`` hold tangent-plane coordinates once projected."""
    name: str
    ra: float  # degrees
    dec: float  # degrees
    mag: float
    bv: float = np.nan
    x: Optional[float] = None
    y: Optional[float] = None

    @property
    def is_projected(self) -> bool:
        return self.x is not None and self.y is not None


def sort_by_brightness(stars: Sequence[CatalogStar]) -> List[CatalogStar]:
    """Brightest (smallest magnitude) first; stars without magnitude go last."""
    return sorted(stars, key=lambda s: (not np.isfinite(s.mag), s.mag))


def catalog_from_table(table: Table, name_col: Optional[str] = None, ra_col: str = 'ra',
                       dec_col: str = 'dec', mag_col: str = 'mag',
                       bv_col: Optional[str] = None, limit_mag: Optional[float] = None,
                       sort: bool = True) -> List[CatalogStar]:
    """
    Build catalog stars from an astropy Table.

    Parameters:
    -----------
    table : astropy.table.Table
        Parsed catalog
    name_col : str, optional
        Column with star identifiers; row numbers are used when None
    ra_col, dec_col : str
        Columns with coordinates in degrees
    mag_col : str
        Column with magnitudes
    bv_col : str, optional
        Column with B-V colour indices
    limit_mag : float, optional
        Drop stars fainter than this magnitude
    sort : bool, default=True
        Sort the result brightest first

    Returns:
    --------
    list of CatalogStar
    """
    missing = [col for col in (ra_col, dec_col, mag_col, name_col, bv_col)
               if col is not None and col not in table.colnames]
    if missing:
        raise KeyError(f"Catalog table lacks columns {missing}")

    stars = []
    for i, row in enumerate(table):
        mag = float(row[mag_col])
        if limit_mag is not None and not mag <= limit_mag:
            continue
        stars.append(CatalogStar(
            name=str(row[name_col]) if name_col else str(i),
            ra=float(row[ra_col]),
            dec=float(row[dec_col]),
            mag=mag,
            bv=float(row[bv_col]) if bv_col else np.nan,
        ))

    logger.debug(f"Read {len(stars)} of {len(table)} catalog rows")
    return sort_by_brightness(stars) if sort else stars
