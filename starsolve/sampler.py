"""
Pixel window extraction

Cuts rectangular windows of pixel intensities out of an image buffer for
PSF fitting, and estimates the background level the fitter is seeded with.
Images are numpy arrays indexed ``[row, col]`` or ``[layer, row, col]``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from astropy.stats import sigma_clipped_stats

from .utils import DataValidationError, validate_array

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rectangle:
    """Window origin (0-based column ``x``, row ``y``) and size in image pixels."""
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def around(cls, x: float, y: float, radius: int) -> 'Rectangle':
        """Square of side ``2 * radius`` centred on pixel (x, y)."""
        return cls(int(round(x)) - radius, int(round(y)) - radius, 2 * radius, 2 * radius)


@dataclass(frozen=True)
class PixelWindow:
    """Read-only block of samples cut from an image, with its origin."""
    data: np.ndarray
    rect: Rectangle
    layer: int = 0

    @property
    def rows(self) -> int:
        return self.data.shape[0]

    @property
    def cols(self) -> int:
        return self.data.shape[1]

    @property
    def size(self) -> int:
        return self.data.size

    @classmethod
    def from_array(cls, data, x: int = 0, y: int = 0, layer: int = 0) -> 'PixelWindow':
        """
        Wrap an existing 2D array as a window whose origin is (x, y).

        The samples are copied into a read-only float64 array.
        """
        samples = np.array(data, dtype=np.float64)
        if samples.ndim != 2:
            raise DataValidationError(f"Window data must be 2D, got shape {samples.shape}")
        samples.setflags(write=False)
        return cls(samples, Rectangle(x, y, samples.shape[1], samples.shape[0]), layer)


def image_layer(image: np.ndarray, layer: int = 0) -> np.ndarray:
    """Two-dimensional plane of ``layer``, validating the image shape."""
    validate_array(image, "Image", ndim=(2, 3))
    if image.ndim == 2:
        if layer != 0:
            raise DataValidationError(f"Layer {layer} requested from a single-layer image")
        return image
    if not 0 <= layer < image.shape[0]:
        raise DataValidationError(f"Layer {layer} out of range for {image.shape[0]} layers")
    return image[layer]


def extract_window(image: np.ndarray, rect: Rectangle, layer: int = 0,
                   clip: bool = True) -> PixelWindow:
    """
    Extract a window of samples from an image.

    Parameters:
    -----------
    image : numpy.ndarray
        Image buffer, ``(rows, cols)`` or ``(layers, rows, cols)``, any
        integer or floating point dtype
    rect : Rectangle
        Requested area in image coordinates
    layer : int, default=0
        Channel to read from a multi-layer image
    clip : bool, default=True
        Clip the rectangle to the image bounds instead of raising

    Returns:
    --------
    PixelWindow
        Read-only float64 copy of the samples and the effective rectangle

    Raises:
    -------
    DataValidationError
        If the rectangle does not overlap the image, or falls outside it
        while ``clip`` is False
    """
    plane = image_layer(image, layer)
    n_rows, n_cols = plane.shape

    x0, y0 = rect.x, rect.y
    x1, y1 = rect.x + rect.width, rect.y + rect.height
    if clip:
        x0, y0 = max(x0, 0), max(y0, 0)
        x1, y1 = min(x1, n_cols), min(y1, n_rows)
    elif x0 < 0 or y0 < 0 or x1 > n_cols or y1 > n_rows:
        raise DataValidationError(f"{rect} lies outside the {n_cols}x{n_rows} image")

    if x1 <= x0 or y1 <= y0:
        raise DataValidationError(f"{rect} does not overlap the {n_cols}x{n_rows} image")

    samples = np.array(plane[y0:y1, x0:x1], dtype=np.float64)
    samples.setflags(write=False)
    return PixelWindow(samples, Rectangle(x0, y0, x1 - x0, y1 - y0), layer)


def estimate_background(image: np.ndarray, rect: Optional[Rectangle] = None,
                        layer: int = 0, sigma: float = 3.0) -> float:
    """
    Robust background level of an image or of one of its regions.

    Parameters:
    -----------
    image : numpy.ndarray
        Image buffer
    rect : Rectangle, optional
        Region to measure; the whole layer when None
    layer : int, default=0
        Channel to measure
    sigma : float, default=3.0
        Clipping threshold

    Returns:
    --------
    float
        Sigma-clipped median
    """
    if rect is None:
        samples = image_layer(image, layer)
    else:
        samples = extract_window(image, rect, layer).data

    _, median, _ = sigma_clipped_stats(samples, sigma=sigma, maxiters=5)
    logger.debug(f"Background estimate {median:.3f} over {samples.size} pixels")
    return float(median)
