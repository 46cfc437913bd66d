"""
Tests for bounding_box module.

Run with: pytest tests/test_bounding_box.py -v
"""

import math
import random

import pytest
from shapely.geometry import MultiPoint, Point as ShapelyPoint, Polygon

from bounding_box import (
    HALF_PI, CaliperState, OrientedRect, convex_hull, minimum_bounding_box,
)
from map_utils import rotate_point


def _random_points(seed, count=40, spread=100.0):
    rng = random.Random(seed)
    return [(rng.uniform(-spread, spread), rng.uniform(-spread / 3, spread / 3)) for _ in range(count)]


def _signed_area(polygon):
    return 0.5 * sum(
        x0 * y1 - x1 * y0
        for (x0, y0), (x1, y1) in zip(polygon, polygon[1:] + polygon[:1])
    )


class TestConvexHull:
    """Tests for the Graham scan convex hull."""

    def test_square_with_interior_point(self):
        """Test interior points are dropped."""
        hull = convex_hull([(0, 0), (4, 0), (4, 3), (0, 3), (2, 1)])
        assert hull == [(0, 0), (4, 0), (4, 3), (0, 3)]

    def test_starts_at_lowest_point(self):
        """Test the seed is the lowest point, leftmost on ties."""
        hull = convex_hull([(5, 0), (1, 0), (3, 4)])
        assert hull[0] == (1, 0)

    def test_single_point(self):
        """Test a single point is its own hull."""
        assert convex_hull([(3, 7)]) == [(3, 7)]

    def test_duplicates_collapse(self):
        """Test repeated points count once."""
        assert convex_hull([(1, 1), (1, 1), (1, 1)]) == [(1, 1)]

    def test_two_points(self):
        """Test two points give a segment."""
        assert convex_hull([(2, 2), (0, 0)]) == [(0, 0), (2, 2)]

    def test_collinear_points(self):
        """Test collinear points reduce to the two extremes."""
        hull = convex_hull([(0, 0), (1, 1), (2, 2), (3, 3)])
        assert hull == [(0, 0), (3, 3)]

    def test_empty_input(self):
        """Test an empty point set is rejected."""
        with pytest.raises(ValueError):
            convex_hull([])

    @pytest.mark.parametrize("seed", range(5))
    def test_hull_properties(self, seed):
        """Test the hull is convex, counter-clockwise, from the input and covers it."""
        points = _random_points(seed)
        hull = convex_hull(points)

        assert set(hull) <= set(points)
        assert _signed_area(hull) > 0
        n = len(hull)
        for i in range(n):
            (ax, ay), (bx, by), (cx, cy) = hull[i], hull[(i + 1) % n], hull[(i + 2) % n]
            assert (bx - ax) * (cy - ay) - (by - ay) * (cx - ax) > 0

        polygon = Polygon(hull)
        for point in points:
            assert polygon.buffer(1e-9).covers(ShapelyPoint(point))

    @pytest.mark.parametrize("seed", range(3))
    def test_matches_shapely_hull(self, seed):
        """Test the hull has the same area as shapely's."""
        points = _random_points(seed)
        assert Polygon(convex_hull(points)).area == pytest.approx(MultiPoint(points).convex_hull.area)


class TestOrientedRect:
    """Tests for the OrientedRect value type."""

    def test_area(self):
        """Test area is width times height."""
        assert OrientedRect(centre=(0, 0), dimensions=(4, 3), rotation=0.0).area == 12

    def test_corners_axis_aligned(self):
        """Test corners of an unrotated rectangle."""
        rect = OrientedRect(centre=(2, 1.5), dimensions=(4, 3), rotation=0.0)
        assert rect.corners() == [(0, 0), (4, 0), (4, 3), (0, 3)]

    def test_contains(self):
        """Test containment in the rotated frame."""
        rect = OrientedRect(centre=(0, 0), dimensions=(10, 2), rotation=math.pi / 4)
        assert rect.contains((3, 3))
        assert not rect.contains((3, -3))

    def test_frame_orientation_small_rotation(self):
        """Test rotations below 45 degrees are kept."""
        rect = OrientedRect(centre=(0, 0), dimensions=(4, 3), rotation=0.3)
        assert rect.frame_orientation() == ((4, 3), 0.3)

    def test_frame_orientation_large_rotation(self):
        """Test rotations of 45 degrees or more swap dimensions."""
        rect = OrientedRect(centre=(0, 0), dimensions=(4, 3), rotation=1.2)
        dimensions, rotation = rect.frame_orientation()
        assert dimensions == (3, 4)
        assert rotation == pytest.approx(1.2 - HALF_PI)

    def test_frame_orientation_same_rectangle(self):
        """Test the folded orientation describes the same corners."""
        rect = OrientedRect(centre=(1, 2), dimensions=(4, 3), rotation=1.2)
        dimensions, rotation = rect.frame_orientation()
        folded = OrientedRect(centre=rect.centre, dimensions=dimensions, rotation=rotation)
        for corner in folded.corners():
            assert min(math.dist(corner, other) for other in rect.corners()) < 1e-9


class TestCaliperState:
    """Tests for the rotating calipers state."""

    def test_initial_state(self):
        """Test initial support points are the axis extremes."""
        hull = convex_hull([(0, 0), (4, 0), (4, 3), (0, 3)])
        state = CaliperState.initial(hull)
        assert state.rotation == 0.0
        min_x, min_y, max_x, max_y = (hull[i] for i in state.indices)
        assert min_x[0] == 0 and max_x[0] == 4
        assert min_y[1] == 0 and max_y[1] == 3

    def test_advance_returns_new_state(self):
        """Test advancing does not modify the previous state."""
        hull = convex_hull([(0, 0), (4, 1), (3, 4), (-1, 2)])
        state = CaliperState.initial(hull)
        advanced = state.advance(hull)
        assert state.rotation == 0.0
        assert advanced.rotation >= 0.0
        assert advanced is not state


class TestMinimumBoundingBox:
    """Tests for the rotating calipers minimum bounding box."""

    def test_axis_aligned_rectangle(self):
        """Test the four corners of a 4x3 rectangle."""
        rect = minimum_bounding_box([(0, 0), (4, 0), (4, 3), (0, 3)])
        assert rect.centre == pytest.approx((2, 1.5))
        assert rect.dimensions == pytest.approx((4, 3))
        assert rect.rotation == pytest.approx(0, abs=1e-12)

    def test_rotated_rectangle(self):
        """Test a rectangle rotated by 30 degrees is found exactly."""
        angle = math.radians(30)
        corners = [rotate_point(p, angle) for p in [(0, 0), (6, 0), (6, 2), (0, 2)]]
        rect = minimum_bounding_box(corners)
        assert rect.area == pytest.approx(12)
        assert rect.rotation == pytest.approx(angle)
        assert rect.dimensions == pytest.approx((6, 2))

    def test_single_point_is_degenerate(self):
        """Test one distinct point gives a zero-size rectangle."""
        rect = minimum_bounding_box([(5, 5), (5, 5)])
        assert rect.is_degenerate
        assert rect.centre == (5, 5)

    def test_collinear_points_have_zero_area(self):
        """Test a line of points gives a zero-area rectangle along it."""
        rect = minimum_bounding_box([(0, 0), (1, 1), (3, 3)])
        assert rect.area == pytest.approx(0, abs=1e-9)
        assert max(rect.dimensions) == pytest.approx(3 * math.sqrt(2))

    @pytest.mark.parametrize("seed", range(5))
    def test_contains_points_and_beats_envelope(self, seed):
        """Test the rectangle contains every point and is no larger than the envelope."""
        points = _random_points(seed)
        rect = minimum_bounding_box(points)

        assert 0 <= rect.rotation < HALF_PI
        for point in points:
            assert rect.contains(point, tolerance=1e-6)

        xs, ys = zip(*points)
        assert rect.area <= (max(xs) - min(xs)) * (max(ys) - min(ys)) + 1e-9

    @pytest.mark.parametrize("seed", range(5))
    def test_no_smaller_rectangle_on_hull_edges(self, seed):
        """Test no rectangle aligned with a hull edge has smaller area."""
        points = _random_points(seed)
        hull = convex_hull(points)
        rect = minimum_bounding_box(points)

        for (ax, ay), (bx, by) in zip(hull, hull[1:] + hull[:1]):
            angle = math.atan2(by - ay, bx - ax)
            rotated = [rotate_point(p, -angle) for p in hull]
            xs, ys = zip(*rotated)
            assert rect.area <= (max(xs) - min(xs)) * (max(ys) - min(ys)) + 1e-6

    @pytest.mark.parametrize("phi", [0.1, 0.4, 1.0])
    def test_rotation_invariance(self, phi):
        """Test rotating the input rotates the rectangle by the same angle."""
        points = _random_points(11)
        rect = minimum_bounding_box(points)
        turned = minimum_bounding_box([rotate_point(p, phi) for p in points])

        assert turned.area == pytest.approx(rect.area, rel=1e-9)
        assert sorted(turned.dimensions) == pytest.approx(sorted(rect.dimensions), rel=1e-9)
        expected = (rect.rotation + phi) % HALF_PI
        difference = abs(turned.rotation - expected)
        assert min(difference, HALF_PI - difference) == pytest.approx(0, abs=1e-7)
        assert turned.centre == pytest.approx(rotate_point(rect.centre, phi), abs=1e-6)
