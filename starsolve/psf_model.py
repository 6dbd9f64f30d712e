"""
Elliptical Gaussian PSF model

Parameter vectors are ``[B, A, x0, y0, Sx, Sy]`` for the axis-aligned form and
``[B, A, x0, y0, Sx, Sy, a]`` for the rotated form, with ``a`` in radians.
``Sx`` and ``Sy`` are spread parameters, not standard deviations:

    f(x, y) = B + A * exp(-((x - x0)^2 / Sx + (y - y0)^2 / Sy))

Coordinates are 1-based pixel positions inside the fitted window.
"""

import numpy as np

FWHM_FACTOR = 2.0 * np.sqrt(2.0 * np.log(2.0))

N_PARAMS = 6
N_PARAMS_ANGLE = 7


def fwhm_from_spread(spread):
    """FWHM in pixels of the profile with spread parameter ``spread``."""
    return np.sqrt(spread / 2.0) * FWHM_FACTOR


def spread_from_width(width):
    """Spread parameter of a profile whose half-maximum width is ``width``."""
    return width * width / (4.0 * np.log(2.0))


def _rotated_offsets(x, y, x0, y0, angle):
    c, s = np.cos(angle), np.sin(angle)
    dx, dy = x - x0, y - y0
    return c * dx - s * dy, s * dx + c * dy


def gaussian(params, x, y):
    """Axis-aligned model evaluated on coordinate grids ``x`` and ``y``."""
    B, A, x0, y0, sx, sy = params
    return B + A * np.exp(-((x - x0) ** 2 / sx + (y - y0) ** 2 / sy))


def gaussian_jacobian(params, x, y):
    """Partial derivatives of :func:`gaussian`, one column per parameter."""
    B, A, x0, y0, sx, sy = params
    dx, dy = x - x0, y - y0
    e = np.exp(-(dx ** 2 / sx + dy ** 2 / sy))
    ae = A * e
    return np.column_stack([
        np.ones_like(e),
        e,
        ae * 2.0 * dx / sx,
        ae * 2.0 * dy / sy,
        ae * dx ** 2 / sx ** 2,
        ae * dy ** 2 / sy ** 2,
    ])


def rotated_gaussian(params, x, y):
    """Model whose axes are rotated by ``a`` about the centre."""
    B, A, x0, y0, sx, sy, angle = params
    u, v = _rotated_offsets(x, y, x0, y0, angle)
    return B + A * np.exp(-(u ** 2 / sx + v ** 2 / sy))


def rotated_gaussian_jacobian(params, x, y):
    """Partial derivatives of :func:`rotated_gaussian`."""
    B, A, x0, y0, sx, sy, angle = params
    c, s = np.cos(angle), np.sin(angle)
    u, v = _rotated_offsets(x, y, x0, y0, angle)
    e = np.exp(-(u ** 2 / sx + v ** 2 / sy))
    ae = A * e
    return np.column_stack([
        np.ones_like(e),
        e,
        ae * (2.0 * u * c / sx + 2.0 * v * s / sy),
        ae * (-2.0 * u * s / sx + 2.0 * v * c / sy),
        ae * u ** 2 / sx ** 2,
        ae * v ** 2 / sy ** 2,
        ae * 2.0 * u * v * (1.0 / sx - 1.0 / sy),
    ])


class GaussianResidual:
    """
    Residual function of one window for the least-squares solver.

    Owns the window samples, their 1-based coordinates and the per-pixel
    sigma (unity), and evaluates ``(model - observed) / sigma`` together with
    its Jacobian. Instances are independent, so several windows can be
    fitted concurrently.
    """

    def __init__(self, data: np.ndarray, with_angle: bool = False):
        rows, cols = data.shape
        yy, xx = np.mgrid[1:rows + 1, 1:cols + 1]
        self.x = xx.ravel().astype(np.float64)
        self.y = yy.ravel().astype(np.float64)
        self.observed = np.asarray(data, dtype=np.float64).ravel()
        self.sigma = np.ones_like(self.observed)
        self.with_angle = with_angle
        if with_angle:
            self._model, self._jacobian = rotated_gaussian, rotated_gaussian_jacobian
        else:
            self._model, self._jacobian = gaussian, gaussian_jacobian

    @property
    def n_params(self) -> int:
        return N_PARAMS_ANGLE if self.with_angle else N_PARAMS

    @property
    def n_samples(self) -> int:
        return self.observed.size

    def model(self, params) -> np.ndarray:
        return self._model(params, self.x, self.y)

    def __call__(self, params) -> np.ndarray:
        return (self.model(params) - self.observed) / self.sigma

    def jacobian(self, params) -> np.ndarray:
        return self._jacobian(params, self.x, self.y) / self.sigma[:, np.newaxis]

    def rmse(self, params) -> float:
        residual = self.model(params) - self.observed
        return float(np.sqrt(np.sum(residual ** 2) / self.n_samples))
