"""
Star List Matching

Finds the transform relating two lists of star positions, typically stars
detected in an image (list A, pixels) and catalog stars projected on the
tangent plane (list B, arcseconds). Both lists are expected brightest first.

The search follows the triangle-voting scheme of Valdes et al. (1995) as
refined by Tabur and Richmond:

1. form every triangle of the brightest candidates of each list and
   describe it by the scale-free ratios of its sides
2. pair triangles of A and B whose ratios agree, optionally only when
   their relative size fits the requested scale bounds
3. every vertex of a paired triangle votes for a star correspondence
4. fit an affine transform to the best-voted correspondences, rejecting
   outliers iteratively
5. re-pair all stars through that transform and refit, twice
6. fit the requested final transform (affine or projective) to the pairs
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.spatial import cKDTree

from .config_manager import MatchConfig
from .utils import FailureReason

logger = logging.getLogger(__name__)

AFFINE = 'affine'
HOMOGRAPHY = 'homography'

# Minimum number of pairs that determine each kind of transform
REQUIRED_POINTS = {AFFINE: 3, HOMOGRAPHY: 4}

# Scale bound meaning "no constraint"
NO_SCALE = -1.0


@dataclass(frozen=True)
class Homography:
    """
    Transform from list A to list B as a 3x3 matrix.

    For the affine case the last row is ``(0, 0, 1)`` and

        xi  = a + b * x + c * y
        eta = d + e * x + f * y

    with ``a = h02, b = h00, c = h01, d = h12, e = h10, f = h11``.
    """
    matrix: np.ndarray
    pair_matched: int
    inliers: int
    rms_x: float = 0.0
    rms_y: float = 0.0
    kind: str = AFFINE
    n_candidates: int = 0

    @property
    def a(self) -> float:
        return float(self.matrix[0, 2])

    @property
    def b(self) -> float:
        return float(self.matrix[0, 0])

    @property
    def c(self) -> float:
        return float(self.matrix[0, 1])

    @property
    def d(self) -> float:
        return float(self.matrix[1, 2])

    @property
    def e(self) -> float:
        return float(self.matrix[1, 0])

    @property
    def f(self) -> float:
        return float(self.matrix[1, 1])

    @property
    def linear(self) -> np.ndarray:
        return self.matrix[:2, :2]

    @property
    def determinant(self) -> float:
        return float(np.linalg.det(self.linear))

    def apply(self, points) -> np.ndarray:
        """Transform an ``(N, 2)`` array (or one point) of list-A coordinates."""
        return apply_transform(self.matrix, points)


@dataclass(frozen=True)
class MatchResult:
    """Outcome of one matching attempt."""
    homography: Optional[Homography] = None
    pairs: Optional[np.ndarray] = None  # (K, 2) indices into (detected, catalog)
    reason: Optional[FailureReason] = None
    message: str = ''

    @property
    def success(self) -> bool:
        return self.homography is not None


def _failure(reason: FailureReason, message: str) -> MatchResult:
    logger.debug(f"Match failed ({reason.value}): {message}")
    return MatchResult(reason=reason, message=message)


def as_points(stars) -> np.ndarray:
    """
    Positions of a star list as an ``(N, 2)`` float array.

    Accepts arrays, records with ``xpos``/``ypos`` (fitted stars) or with
    ``x``/``y`` (projected catalog stars), or sequences of coordinate pairs.
    """
    if isinstance(stars, np.ndarray):
        points = np.asarray(stars, dtype=np.float64)
    elif len(stars) == 0:
        return np.empty((0, 2))
    elif hasattr(stars[0], 'xpos'):
        points = np.array([(s.xpos, s.ypos) for s in stars], dtype=np.float64)
    elif hasattr(stars[0], 'x'):
        points = np.array([(s.x, s.y) for s in stars], dtype=np.float64)
    else:
        points = np.asarray(stars, dtype=np.float64)

    if points.size == 0:
        return np.empty((0, 2))
    if points.ndim != 2 or points.shape[1] != 2:
        raise ValueError(f"Star positions must have shape (N, 2), got {points.shape}")
    return points


def apply_transform(matrix: np.ndarray, points) -> np.ndarray:
    """Apply a 3x3 transform to points, dividing by the projective term."""
    pts = np.atleast_2d(np.asarray(points, dtype=np.float64))
    homogeneous = np.column_stack([pts, np.ones(len(pts))]) @ matrix.T
    return homogeneous[:, :2] / homogeneous[:, 2:3]


def _normalising_transform(points: np.ndarray) -> np.ndarray:
    centroid = points.mean(axis=0)
    spread = np.sqrt(((points - centroid) ** 2).sum(axis=1)).mean()
    scale = np.sqrt(2.0) / spread if spread > 0 else 1.0
    return np.array([[scale, 0.0, -scale * centroid[0]],
                     [0.0, scale, -scale * centroid[1]],
                     [0.0, 0.0, 1.0]])


def fit_transform(src, dst, kind: str = AFFINE) -> Optional[np.ndarray]:
    """
    Least-squares transform mapping ``src`` onto ``dst``.

    Parameters:
    -----------
    src, dst : array-like
        Paired ``(N, 2)`` coordinates
    kind : str, default='affine'
        'affine' (6 coefficients) or 'homography' (8, normalised DLT)

    Returns:
    --------
    numpy.ndarray or None
        3x3 matrix, or None when the pairs do not determine the transform
    """
    src = np.asarray(src, dtype=np.float64)
    dst = np.asarray(dst, dtype=np.float64)
    n = len(src)
    if n < REQUIRED_POINTS[kind]:
        return None

    if kind == AFFINE:
        design = np.column_stack([src, np.ones(n)])
        coeffs, _, rank, _ = np.linalg.lstsq(design, dst, rcond=None)
        if rank < 3:
            return None
        matrix = np.eye(3)
        matrix[:2, :] = coeffs.T
        return matrix

    t_src = _normalising_transform(src)
    t_dst = _normalising_transform(dst)
    ps = apply_transform(t_src, src)
    pd = apply_transform(t_dst, dst)

    rows = []
    for (x, y), (u, v) in zip(ps, pd):
        rows.append([-x, -y, -1.0, 0.0, 0.0, 0.0, u * x, u * y, u])
        rows.append([0.0, 0.0, 0.0, -x, -y, -1.0, v * x, v * y, v])
    _, singular, vt = np.linalg.svd(np.array(rows))
    if singular[-2] < 1e-12 * singular[0]:
        return None

    matrix = np.linalg.inv(t_dst) @ vt[-1].reshape(3, 3) @ t_src
    if abs(matrix[2, 2]) < 1e-12:
        return None
    return matrix / matrix[2, 2]


def build_homography(matrix: np.ndarray, src: np.ndarray, dst: np.ndarray, kind: str,
                     inlier_radius: float, n_candidates: int = 0) -> Homography:
    """Wrap a fitted matrix with the residual statistics of its pairs."""
    diff = apply_transform(matrix, src) - dst
    inliers = int((np.hypot(diff[:, 0], diff[:, 1]) <= inlier_radius).sum())
    return Homography(
        matrix=matrix,
        pair_matched=len(src),
        inliers=inliers,
        rms_x=float(np.sqrt(np.mean(diff[:, 0] ** 2))),
        rms_y=float(np.sqrt(np.mean(diff[:, 1] ** 2))),
        kind=kind,
        n_candidates=n_candidates,
    )


def _triangles(points: np.ndarray, max_ratio: float):
    """
    Vertex indices, longest side and shape of every usable triangle.

    Vertices are ordered opposite the longest, middle and shortest side so
    that similar triangles list corresponding stars in the same order.
    """
    n = len(points)
    if n < 3:
        return np.empty((0, 3), dtype=np.intp), np.empty(0), np.empty((0, 2))

    n_tri = n * (n - 1) * (n - 2) // 6
    idx = np.fromiter(itertools.chain.from_iterable(itertools.combinations(range(n), 3)),
                      dtype=np.intp, count=3 * n_tri).reshape(n_tri, 3)

    p = points[idx]
    sides = np.column_stack([
        np.hypot(*(p[:, 1] - p[:, 2]).T),
        np.hypot(*(p[:, 0] - p[:, 2]).T),
        np.hypot(*(p[:, 0] - p[:, 1]).T),
    ])
    order = np.argsort(-sides, axis=1, kind='stable')
    sides = np.take_along_axis(sides, order, axis=1)
    verts = np.take_along_axis(idx, order, axis=1)

    a, b, c = sides.T
    valid = c > 0
    ba = np.zeros_like(a)
    ca = np.zeros_like(a)
    ba[valid] = b[valid] / a[valid]
    ca[valid] = c[valid] / a[valid]
    # Nearly isosceles triangles do not fix the vertex order
    valid &= ba <= max_ratio

    return verts[valid], a[valid], np.column_stack([ba[valid], ca[valid]])


class StarMatcher:
    """
    Triangle-voting matcher of two star lists.

    Each call to :meth:`match` produces at most one transform; retrying with
    relaxed parameters is up to the caller.
    """

    def __init__(self, config: Optional[MatchConfig] = None):
        """
        Initialize the matcher.

        Parameters:
        -----------
        config : MatchConfig, optional
            Matching tolerances. If None, uses defaults.
        """
        self.config = config or MatchConfig()
        self.logger = logging.getLogger(__name__)

    def _vote(self, a: np.ndarray, b: np.ndarray, scale_min: float,
              scale_max: float) -> np.ndarray:
        """Correspondences ``(i_a, i_b)`` ranked by votes, one-to-one."""
        cfg = self.config
        verts_a, size_a, shape_a = _triangles(a, cfg.max_ratio)
        verts_b, size_b, shape_b = _triangles(b, cfg.max_ratio)
        self.logger.debug(f"{len(verts_a)} triangles in list A, {len(verts_b)} in list B")
        if len(verts_a) == 0 or len(verts_b) == 0:
            return np.empty((0, 2), dtype=np.intp)

        neighbours = cKDTree(shape_b).query_ball_point(shape_a, r=cfg.triangle_radius)
        counts = np.fromiter((len(nb) for nb in neighbours), dtype=np.intp, count=len(neighbours))
        total = int(counts.sum())
        if total == 0:
            return np.empty((0, 2), dtype=np.intp)

        tri_a = np.repeat(np.arange(len(verts_a)), counts)
        tri_b = np.fromiter(itertools.chain.from_iterable(neighbours), dtype=np.intp, count=total)

        ratio = size_b[tri_b] / size_a[tri_a]
        keep = np.ones(total, dtype=bool)
        if scale_min > 0:
            keep &= ratio >= scale_min
        if scale_max > 0:
            keep &= ratio <= scale_max
        tri_a, tri_b = tri_a[keep], tri_b[keep]
        self.logger.debug(f"{len(tri_a)} matched triangle pairs within scale bounds")

        votes = np.zeros((len(a), len(b)), dtype=np.int64)
        for k in range(3):
            np.add.at(votes, (verts_a[tri_a, k], verts_b[tri_b, k]), 1)

        winners = []
        used_a, used_b = set(), set()
        limit = min(len(a), len(b))
        for flat in np.argsort(votes, axis=None, kind='stable')[::-1]:
            i, j = divmod(int(flat), len(b))
            if votes[i, j] < cfg.min_votes:
                break
            if i in used_a or j in used_b:
                continue
            winners.append((i, j))
            used_a.add(i)
            used_b.add(j)
            if len(winners) == limit:
                break

        return np.array(winners, dtype=np.intp).reshape(-1, 2)

    def _iter_trans(self, a: np.ndarray, b: np.ndarray, pairs: np.ndarray,
                    recalc: bool) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """
        Affine fit with iterative rejection of discrepant pairs.

        ``pairs`` is ranked best first; unless ``recalc`` is set, only the
        leading pairs seed the first fit.
        """
        cfg = self.config
        required = cfg.required_pairs
        if len(pairs) < required:
            return None

        seed = pairs if recalc else pairs[:cfg.start_pairs]
        trans = fit_transform(a[seed[:, 0]], b[seed[:, 1]], AFFINE)
        if trans is None:
            return None

        current = pairs
        for iteration in range(cfg.max_iterations):
            moved = apply_transform(trans, a[current[:, 0]])
            dist2 = ((moved - b[current[:, 1]]) ** 2).sum(axis=1)

            keep = dist2 <= cfg.max_dist ** 2
            n_bad = int((~keep).sum())
            current, dist2 = current[keep], dist2[keep]

            if len(current) < 2:
                sigma = 0.0
            else:
                sigma = np.sort(dist2)[int(len(dist2) * cfg.percentile)]

            if sigma <= cfg.halt_sigma:
                break

            keep = dist2 <= cfg.nsigma * sigma
            n_bad += int((~keep).sum())
            current = current[keep]

            self.logger.debug(f"iter_trans {iteration}: sigma={sigma:.4g}, "
                              f"{len(current)} pairs kept, {n_bad} discarded")
            if n_bad == 0:
                break
            if len(current) < required:
                return None

            trans = fit_transform(a[current[:, 0]], b[current[:, 1]], AFFINE)
            if trans is None:
                return None

        if len(current) < required:
            return None
        return trans, current

    def _match_lists(self, a: np.ndarray, b: np.ndarray, trans: np.ndarray) -> np.ndarray:
        """Pair every A star with its nearest B star within the match radius."""
        moved = apply_transform(trans, a)
        dist, idx = cKDTree(b).query(moved, k=1, distance_upper_bound=self.config.match_radius)
        found = np.nonzero(np.isfinite(dist))[0]
        if len(found) == 0:
            return np.empty((0, 2), dtype=np.intp)

        candidates = np.column_stack([found, idx[found]])
        order = np.argsort(dist[found], kind='stable')
        # Keep the closest A star for each B star
        _, first = np.unique(candidates[order, 1], return_index=True)
        chosen = np.sort(order[first])
        return candidates[chosen]

    def match(self, detected, catalog, n_candidates: int = 60, min_pairs: int = 6,
              scale_min: float = NO_SCALE, scale_max: float = NO_SCALE,
              transform_kind: str = AFFINE) -> MatchResult:
        """
        Find the transform from the detected list onto the catalog list.

        Parameters:
        -----------
        detected : array-like or list of stars
            List A positions, brightest first
        catalog : array-like or list of stars
            List B positions, brightest first
        n_candidates : int, default=60
            Number of brightest stars of each list used to form triangles
        min_pairs : int, default=6
            Minimum number of stars in each list, and of final pairs
        scale_min, scale_max : float, default=-1
            Bounds on the B/A size ratio of paired triangles; -1 disables
        transform_kind : str, default='affine'
            'affine' or 'homography'

        Returns:
        --------
        MatchResult
            Holds the Homography and the index pairs on success, a failure
            reason otherwise
        """
        cfg = self.config
        if transform_kind not in REQUIRED_POINTS:
            return _failure(FailureReason.INVALID_INPUT, f"Unknown transform kind {transform_kind}")

        a = as_points(detected)
        b = as_points(catalog)
        if len(a) < min_pairs or len(b) < min_pairs:
            return _failure(FailureReason.INSUFFICIENT_DATA,
                            f"{len(a)} detected and {len(b)} catalog stars, "
                            f"at least {min_pairs} of each required")

        if scale_min > 0 and scale_max > 0 and scale_min > scale_max:
            return _failure(FailureReason.INVALID_INPUT,
                            f"scale_min {scale_min} exceeds scale_max {scale_max}")

        n_a = min(n_candidates, cfg.max_candidates, len(a))
        n_b = min(n_candidates, cfg.max_candidates, len(b))
        winners = self._vote(a[:n_a], b[:n_b], scale_min, scale_max)
        self.logger.debug(f"{len(winners)} candidate correspondences from triangle votes")

        fitted = self._iter_trans(a, b, winners, recalc=False)
        if fitted is None:
            return _failure(FailureReason.MATCH_NOT_FOUND,
                            "No consistent set of triangle correspondences")
        trans, pairs = fitted

        for _ in range(cfg.recalc_rounds):
            pairs = self._match_lists(a, b, trans)
            fitted = self._iter_trans(a, b, pairs, recalc=True)
            if fitted is None:
                return _failure(FailureReason.MATCH_NOT_FOUND,
                                f"Only {len(pairs)} stars pair up under the trial transform")
            trans, _ = fitted

        pairs = self._match_lists(a, b, trans)
        if len(pairs) < max(min_pairs, REQUIRED_POINTS[transform_kind]):
            return _failure(FailureReason.MATCH_NOT_FOUND,
                            f"{len(pairs)} matched pairs, at least {min_pairs} required")

        matrix = fit_transform(a[pairs[:, 0]], b[pairs[:, 1]], transform_kind)
        if matrix is None or not np.all(np.isfinite(matrix)) \
                or abs(np.linalg.det(matrix[:2, :2])) < 1e-12:
            return _failure(FailureReason.DEGENERATE_TRANSFORM,
                            "Matched pairs give a singular transform")

        homography = build_homography(matrix, a[pairs[:, 0]], b[pairs[:, 1]], transform_kind,
                                      cfg.inlier_radius, min(n_a, n_b))
        self.logger.debug(f"Matched {homography.pair_matched} pairs, "
                          f"{homography.inliers} inliers")
        return MatchResult(homography=homography, pairs=pairs)


def match(detected, catalog, n_candidates: int = 60, min_pairs: int = 6,
          scale_min: float = NO_SCALE, scale_max: float = NO_SCALE,
          transform_kind: str = AFFINE, config: Optional[MatchConfig] = None) -> MatchResult:
    """Match two star lists with a :class:`StarMatcher` built from ``config``."""
    return StarMatcher(config).match(detected, catalog, n_candidates, min_pairs,
                                     scale_min, scale_max, transform_kind)
