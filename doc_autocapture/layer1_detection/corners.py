"""
Layer 1 — Corner Ordering
Canonical corner order (top-left, top-right, bottom-right, bottom-left) and
the geometric sanity checks applied to every quadrilateral candidate.
"""
import math
from typing import Sequence

from ..error_handlers import InvalidGeometryError
from ..models import Corners, Point


def _require_four(points: Sequence[Point]) -> None:
    if len(points) != 4:
        raise InvalidGeometryError("exactly 4 corners are required", corner_count=len(points))


def order_corners(points: Sequence[Point]) -> Corners:
    """
    Order 4 points as top-left, top-right, bottom-right, bottom-left.

    Points are sorted by y (then x) to split a top pair from a bottom pair;
    inside each pair the smaller x is the left corner.

    Raises:
        InvalidGeometryError: If not given exactly 4 points
    """
    _require_four(points)
    p0, p1, p2, p3 = sorted(points, key=lambda p: (p.y, p.x))

    top_left, top_right = (p0, p1) if p0.x < p1.x else (p1, p0)
    bottom_left, bottom_right = (p2, p3) if p2.x < p3.x else (p3, p2)

    return (top_left, top_right, bottom_right, bottom_left)


def order_corners_by_angle(points: Sequence[Point]) -> Corners:
    """
    Order 4 points by sweeping around their centroid.

    Points are sorted clockwise (in image coordinates) by ``atan2`` and then
    rotated so the point with the smallest ``x + y`` comes first. Always yields
    a simple polygon for convex input.
    """
    _require_four(points)
    cx = sum(p.x for p in points) / 4.0
    cy = sum(p.y for p in points) / 4.0

    swept = sorted(points, key=lambda p: (math.atan2(p.y - cy, p.x - cx), p.x, p.y))
    anchor = min(range(4), key=lambda i: (swept[i].x + swept[i].y, swept[i].x))
    rotated = swept[anchor:] + swept[:anchor]
    return tuple(rotated)


def polygon_area(points: Sequence[Point]) -> float:
    """Absolute shoelace area."""
    area = 0.0
    n = len(points)
    for i in range(n):
        j = (i + 1) % n
        area += points[i].x * points[j].y - points[j].x * points[i].y
    return abs(area) / 2.0


def interior_angle(a: Point, b: Point, c: Point) -> float:
    """Angle at vertex ``b`` in degrees, formed by edges b->a and b->c."""
    abx, aby = a.x - b.x, a.y - b.y
    cbx, cby = c.x - b.x, c.y - b.y
    dot = abx * cbx + aby * cby
    magnitude = math.hypot(abx, aby) * math.hypot(cbx, cby)
    cosine = dot / (magnitude + 1e-6)
    return math.degrees(math.acos(min(max(cosine, -1.0), 1.0)))


def is_valid_quadrilateral(
    points: Sequence[Point],
    min_area_px: float = 1000.0,
    min_angle_degrees: float = 20.0
) -> bool:
    """
    Reject slivers and tiny polygons.

    Args:
        points: Corners in traversal order
        min_area_px: Minimum absolute polygon area in pixels
        min_angle_degrees: Every interior angle must lie within
            [min_angle_degrees, 180 - min_angle_degrees]

    Returns:
        bool: True if the quadrilateral is usable as a document boundary
    """
    if len(points) != 4:
        return False

    if polygon_area(points) < min_area_px:
        return False

    max_angle = 180.0 - min_angle_degrees
    for i in range(4):
        angle = interior_angle(points[i], points[(i + 1) % 4], points[(i + 2) % 4])
        if angle < min_angle_degrees or angle > max_angle:
            return False

    return True
