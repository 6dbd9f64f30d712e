"""
Unit tests for triangle matching of star lists.
"""

import numpy as np
import pytest

from starsolve.catalog import CatalogStar
from starsolve.config_manager import MatchConfig
from starsolve.matching import (AFFINE, HOMOGRAPHY, Homography, StarMatcher, apply_transform,
                                as_points, fit_transform, match)
from starsolve.utils import FailureReason


def random_stars(n=25, seed=42, size=1000.0):
    return np.random.default_rng(seed).uniform(0.0, size, (n, 2))


def similarity(scale, angle_deg, shift):
    c, s = np.cos(np.radians(angle_deg)), np.sin(np.radians(angle_deg))
    return np.array([[scale * c, -scale * s, shift[0]],
                     [scale * s, scale * c, shift[1]],
                     [0.0, 0.0, 1.0]])


class TestFitTransform:
    """Test the least-squares transform fit."""

    def test_affine_exact(self):
        src = random_stars(10)
        matrix = np.array([[1.1, 0.2, 5.0], [-0.3, 0.9, -7.0], [0.0, 0.0, 1.0]])
        fitted = fit_transform(src, apply_transform(matrix, src), AFFINE)
        np.testing.assert_allclose(fitted, matrix, atol=1e-9)

    def test_homography_exact(self):
        src = random_stars(12)
        matrix = np.array([[1.02, 0.05, 30.0], [-0.04, 0.98, -12.0], [2e-5, -1e-5, 1.0]])
        fitted = fit_transform(src, apply_transform(matrix, src), HOMOGRAPHY)
        np.testing.assert_allclose(fitted, matrix, rtol=1e-6, atol=1e-9)

    def test_too_few_points(self):
        src = random_stars(3)
        assert fit_transform(src, src, HOMOGRAPHY) is None
        assert fit_transform(src[:2], src[:2], AFFINE) is None

    def test_collinear_points(self):
        src = np.column_stack([np.arange(6.0), 2.0 * np.arange(6.0)])
        assert fit_transform(src, src, AFFINE) is None


class TestAsPoints:
    """Test conversion of star lists to coordinate arrays."""

    def test_catalog_stars(self):
        stars = [CatalogStar('a', 1.0, 2.0, 5.0, x=10.0, y=20.0),
                 CatalogStar('b', 1.0, 2.0, 6.0, x=-4.0, y=3.5)]
        np.testing.assert_array_equal(as_points(stars), [[10.0, 20.0], [-4.0, 3.5]])

    def test_pairs_and_empty(self):
        assert as_points([(1, 2), (3, 4)]).shape == (2, 2)
        assert as_points([]).shape == (0, 2)

    def test_bad_shape(self):
        with pytest.raises(ValueError):
            as_points(np.zeros((4, 3)))


class TestStarMatcher:
    """Test matching of two star lists."""

    def test_too_few_detected(self):
        """Fewer detected stars than min_pairs fails before any search."""
        matcher = StarMatcher()
        result = matcher.match(random_stars(3), random_stars(30), min_pairs=6)
        assert not result.success
        assert result.reason == FailureReason.INSUFFICIENT_DATA
        assert result.homography is None

    def test_too_few_catalog(self):
        result = match(random_stars(30), random_stars(5), min_pairs=6)
        assert result.reason == FailureReason.INSUFFICIENT_DATA

    def test_identical_lists(self):
        """Aligned identical lists give the identity transform."""
        points = random_stars(25)
        result = match(points, points.copy())

        assert result.success
        h = result.homography
        assert h.b == pytest.approx(1.0, abs=1e-9)
        assert h.f == pytest.approx(1.0, abs=1e-9)
        assert h.c == pytest.approx(0.0, abs=1e-9)
        assert h.e == pytest.approx(0.0, abs=1e-9)
        assert h.a == pytest.approx(0.0, abs=1e-6)
        assert h.d == pytest.approx(0.0, abs=1e-6)
        assert h.pair_matched == 25
        assert h.inliers == h.pair_matched
        np.testing.assert_array_equal(result.pairs[:, 0], result.pairs[:, 1])

    def test_rotated_scaled_shifted(self):
        """A similarity transform is recovered from shuffled lists."""
        detected = random_stars(30, seed=1)
        truth = similarity(1.5, 37.0, (120.0, -80.0))
        catalog = apply_transform(truth, detected)
        order = np.random.default_rng(2).permutation(30)

        result = StarMatcher().match(detected, catalog[order], n_candidates=30,
                                     scale_min=1.3, scale_max=1.7)

        assert result.success
        np.testing.assert_allclose(result.homography.matrix, truth, atol=1e-6)
        for i, j in result.pairs:
            assert order[j] == i

    def test_missing_and_extra_stars(self):
        """Stars absent from one list do not prevent the match."""
        base = random_stars(40, seed=9)
        truth = similarity(0.8, -12.0, (15.0, 40.0))
        detected = base[:32]
        catalog = np.vstack([apply_transform(truth, base[6:]), random_stars(8, seed=10)])

        result = match(detected, catalog, n_candidates=40)

        assert result.success
        assert result.homography.pair_matched >= 20
        np.testing.assert_allclose(result.homography.linear, truth[:2, :2], atol=1e-3)
        np.testing.assert_allclose(result.homography.matrix[:2, 2], truth[:2, 2], atol=0.5)

    def test_scale_bounds_exclude_solution(self):
        """Scale bounds that exclude the true scale find no match."""
        detected = random_stars(25, seed=4)
        catalog = apply_transform(similarity(2.0, 10.0, (0.0, 0.0)), detected)
        result = match(detected, catalog, scale_min=3.0, scale_max=4.0)
        assert result.reason == FailureReason.MATCH_NOT_FOUND

    def test_inverted_scale_bounds(self):
        points = random_stars(25)
        result = match(points, points, scale_min=2.0, scale_max=1.0)
        assert result.reason == FailureReason.INVALID_INPUT

    def test_unknown_kind(self):
        points = random_stars(25)
        result = match(points, points, transform_kind='spline')
        assert result.reason == FailureReason.INVALID_INPUT

    def test_homography_kind(self):
        """The projective fit reduces to the affine one for affine data."""
        detected = random_stars(25, seed=6)
        truth = similarity(1.2, 5.0, (3.0, 4.0))
        result = match(detected, apply_transform(truth, detected), transform_kind=HOMOGRAPHY)

        assert result.success
        assert result.homography.kind == HOMOGRAPHY
        np.testing.assert_allclose(result.homography.matrix, truth, atol=1e-6)

    def test_unrelated_lists(self):
        """Lists with no common geometry do not match."""
        config = MatchConfig(min_votes=3)
        result = match(random_stars(20, seed=21), random_stars(20, seed=22), config=config)
        assert not result.success
        assert result.reason in (FailureReason.MATCH_NOT_FOUND,
                                 FailureReason.DEGENERATE_TRANSFORM)


class TestHomography:
    """Test the transform record."""

    def test_coefficients(self):
        matrix = np.array([[2.0, 3.0, 1.0], [5.0, 6.0, 4.0], [0.0, 0.0, 1.0]])
        h = Homography(matrix, pair_matched=10, inliers=9)
        assert (h.a, h.b, h.c, h.d, h.e, h.f) == (1.0, 2.0, 3.0, 4.0, 5.0, 6.0)
        assert h.determinant == pytest.approx(-3.0)
        np.testing.assert_allclose(h.apply([1.0, 1.0]), [[6.0, 15.0]])
