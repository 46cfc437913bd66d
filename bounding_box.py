"""
bounding_box.py - Convex hull and minimum-area bounding rectangle

Used to fit a map frame around a cloud of track/waypoint positions. The
minimum-area rectangle is found with rotating calipers over the convex hull.
"""

import math
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Iterable, List, Tuple

from map_utils import Point, rotate_point

HALF_PI = math.pi / 2
QUARTER_PI = math.pi / 4

# Sweep rotations and areas closer than this are treated as equal
ANGLE_TOLERANCE = 1e-12
AREA_TOLERANCE = 1e-12

# Initial support directions at the min-x, min-y, max-x and max-y hull
# vertices of a counter-clockwise polygon.
INITIAL_CALIPERS = ((0.0, -1.0), (1.0, 0.0), (0.0, 1.0), (-1.0, 0.0))


def _cross(origin: Point, a: Point, b: Point) -> float:
    """Z component of (a - origin) x (b - origin); positive for a left turn."""
    return (a[0] - origin[0]) * (b[1] - origin[1]) - (a[1] - origin[1]) * (b[0] - origin[0])


def _sub(a: Point, b: Point) -> Point:
    return (a[0] - b[0], a[1] - b[1])


def _dot(a: Point, b: Point) -> float:
    return a[0] * b[0] + a[1] * b[1]


def _norm(a: Point) -> float:
    return math.hypot(a[0], a[1])


def convex_hull(points: Iterable[Point]) -> List[Point]:
    """Convex hull of a point set by Graham scan.

    Args:
        points: Non-empty collection of (x, y) points

    Returns:
        Hull vertices in counter-clockwise order starting from the lowest
        point (lowest y, then lowest x). Every vertex is one of the input
        points. Collinear input reduces to its two extreme points.
    """
    unique = list(dict.fromkeys((float(x), float(y)) for x, y in points))
    if not unique:
        raise ValueError("convex hull needs at least one point")

    seed = min(unique, key=lambda point: (point[1], point[0]))
    if len(unique) == 1:
        return [seed]

    def by_angle(a: Point, b: Point) -> int:
        turn = _cross(seed, a, b)
        if turn > 0:
            return -1
        if turn < 0:
            return 1
        # Same direction from the seed: nearer point first
        da = _norm(_sub(a, seed))
        db = _norm(_sub(b, seed))
        return (da > db) - (da < db)

    candidates = sorted((point for point in unique if point != seed), key=cmp_to_key(by_angle))

    hull = [seed]
    for candidate in candidates:
        while len(hull) >= 2 and _cross(hull[-2], hull[-1], candidate) <= 0:
            hull.pop()
        hull.append(candidate)
    return hull


@dataclass(frozen=True)
class OrientedRect:
    """A rectangle that need not be axis-aligned.

    Attributes:
        centre: Centre of the rectangle
        dimensions: (width, height) measured along the rotated x and y axes
        rotation: Counter-clockwise rotation of the x axis, in [0, π/2)
    """
    centre: Point
    dimensions: Tuple[float, float]
    rotation: float

    @property
    def area(self) -> float:
        return self.dimensions[0] * self.dimensions[1]

    @property
    def is_degenerate(self) -> bool:
        return self.area <= 0

    def corners(self) -> List[Point]:
        """Corners counter-clockwise, starting bottom-left in the rotated frame."""
        half_w, half_h = 0.5 * self.dimensions[0], 0.5 * self.dimensions[1]
        offsets = [(-half_w, -half_h), (half_w, -half_h), (half_w, half_h), (-half_w, half_h)]
        cx, cy = self.centre
        return [
            (cx + dx, cy + dy)
            for dx, dy in (rotate_point(offset, self.rotation) for offset in offsets)
        ]

    def contains(self, point: Point, tolerance: float = 1e-9) -> bool:
        """Check whether a point lies inside the rectangle (within tolerance)."""
        dx, dy = rotate_point(_sub(point, self.centre), -self.rotation)
        return (abs(dx) <= 0.5 * self.dimensions[0] + tolerance and
                abs(dy) <= 0.5 * self.dimensions[1] + tolerance)

    def frame_orientation(self) -> Tuple[Tuple[float, float], float]:
        """Dimensions and rotation with the rotation folded into [-π/4, π/4).

        A rectangle looks the same after a quarter turn with its sides
        swapped, so a rotation of π/4 or more is reported as the rotation
        minus π/2 with the dimension pair reversed.
        """
        if self.rotation < QUARTER_PI:
            return self.dimensions, self.rotation
        width, height = self.dimensions
        return (height, width), self.rotation - HALF_PI


@dataclass(frozen=True)
class CaliperState:
    """One step of the rotating-calipers sweep.

    Attributes:
        indices: Hull indices of the min-x, min-y, max-x and max-y support
            points (in the rotated frame)
        calipers: Unit direction of each support line
        rotation: Cumulative rotation of the calipers in radians
    """
    indices: Tuple[int, int, int, int]
    calipers: Tuple[Point, Point, Point, Point]
    rotation: float

    @classmethod
    def initial(cls, hull: List[Point]) -> 'CaliperState':
        def extreme(pick, axis):
            return pick(range(len(hull)), key=lambda index: hull[index][axis])

        indices = (extreme(min, 0), extreme(min, 1), extreme(max, 0), extreme(max, 1))
        return cls(indices=indices, calipers=INITIAL_CALIPERS, rotation=0.0)

    def turn_angles(self, hull: List[Point]) -> List[float]:
        """Angle each caliper must turn to lie along its next hull edge."""
        angles = []
        for index, caliper in zip(self.indices, self.calipers):
            edge = _sub(hull[(index + 1) % len(hull)], hull[index])
            cosine = _dot(edge, caliper) / _norm(edge)
            angles.append(math.acos(max(-1.0, min(1.0, cosine))))
        return angles

    def advance(self, hull: List[Point]) -> 'CaliperState':
        """Rotate all calipers by the smallest turn angle and step that support point."""
        angles = self.turn_angles(hull)
        which = min(range(4), key=lambda i: angles[i])
        angle = angles[which]

        indices = list(self.indices)
        indices[which] = (indices[which] + 1) % len(hull)
        return CaliperState(
            indices=tuple(indices),
            calipers=tuple(rotate_point(caliper, angle) for caliper in self.calipers),
            rotation=self.rotation + angle,
        )

    def rectangle(self, hull: List[Point]) -> OrientedRect:
        """Rectangle framed by the four support lines at this step."""
        min_x, min_y, max_x, max_y = (hull[index] for index in self.indices)
        width = _dot(_sub(max_x, min_x), self.calipers[1])
        height = _dot(_sub(max_y, min_y), self.calipers[2])

        # Midpoint of the extreme coordinates in the rotated frame, rotated back
        left, right = (rotate_point(p, -self.rotation)[0] for p in (min_x, max_x))
        bottom, top = (rotate_point(p, -self.rotation)[1] for p in (min_y, max_y))
        centre = rotate_point((0.5 * (left + right), 0.5 * (bottom + top)), self.rotation)

        return OrientedRect(centre=centre, dimensions=(width, height), rotation=self.rotation)


def minimum_bounding_box(points: Iterable[Point]) -> OrientedRect:
    """Minimum-area bounding rectangle of a point set by rotating calipers.

    The calipers start axis-aligned and sweep through a quarter turn; the
    rectangle at each step is a candidate and the first one with the
    smallest area is returned.

    Args:
        points: Non-empty collection of (x, y) points

    Returns:
        OrientedRect with rotation in [0, π/2). Fewer than two distinct
        points give a zero-size rectangle at the point, collinear points a
        zero-height one; callers decide how to handle those.
    """
    hull = convex_hull(points)
    if len(hull) < 2:
        return OrientedRect(centre=hull[0], dimensions=(0.0, 0.0), rotation=0.0)

    state = CaliperState.initial(hull)
    best = None
    # Each step moves one support point along the hull
    for _ in range(4 * len(hull) + 4):
        state = state.advance(hull)
        if state.rotation >= HALF_PI - ANGLE_TOLERANCE:
            break
        candidate = state.rectangle(hull)
        if best is None or candidate.area < best.area - AREA_TOLERANCE * max(best.area, 1.0):
            best = candidate

    if best is None:
        best = CaliperState.initial(hull).rectangle(hull)
    return best
