"""
Geometry primitives for waypoint manipulation and intersection tests.

- Segment/segment intersection (orientation test, shared endpoints excluded)
- Segment/rectangle intersection (Liang-Barsky clipping)
- Waypoint clean-up: de-duplication, collinear removal, Z/L route builders
- A uniform spatial grid index for nearby-candidate queries
"""

from __future__ import annotations

import math
from collections import defaultdict
from typing import Generic, Iterable, Sequence, TypeVar

from bpmn_layout_mcp.constants import SPATIAL_CELL_SIZE
from bpmn_layout_mcp.models import Bounds, DiagramElement, Point


# ---------------------------------------------------------------------------
# Intersection tests
# ---------------------------------------------------------------------------

def _cross(o: Point, a: Point, b: Point) -> float:
    return (a.x - o.x) * (b.y - o.y) - (a.y - o.y) * (b.x - o.x)


def segments_intersect(a1: Point, a2: Point, b1: Point, b2: Point) -> bool:
    """Test whether two segments cross strictly in their interiors.

    Uses the cross-product orientation test.  Segments that only touch at
    an endpoint, or that are collinear, do not count as crossing.
    """
    d1 = _cross(b1, b2, a1)
    d2 = _cross(b1, b2, a2)
    d3 = _cross(a1, a2, b1)
    d4 = _cross(a1, a2, b2)
    return (
        ((d1 > 0 and d2 < 0) or (d1 < 0 and d2 > 0))
        and ((d3 > 0 and d4 < 0) or (d3 < 0 and d4 > 0))
    )


def segment_intersects_rect(p1: Point, p2: Point, rect: Bounds) -> bool:
    """Liang-Barsky parametric clipping test: does segment p1-p2 cross rect?"""
    dx = p2.x - p1.x
    dy = p2.y - p1.y

    t0, t1 = 0.0, 1.0
    for edge_p, edge_q in [
        (-dx, p1.x - rect.x),
        (dx, rect.right - p1.x),
        (-dy, p1.y - rect.y),
        (dy, rect.bottom - p1.y),
    ]:
        if abs(edge_p) < 1e-9:
            if edge_q < 0:
                return False
        else:
            t = edge_q / edge_p
            if edge_p < 0:
                t0 = max(t0, t)
            else:
                t1 = min(t1, t)
    return t0 <= t1


def path_intersects_rect(points: Sequence[Point], rect: Bounds) -> bool:
    return any(
        segment_intersects_rect(points[i], points[i + 1], rect)
        for i in range(len(points) - 1)
    )


def segment_bbox(p1: Point, p2: Point, margin: float = 0) -> Bounds:
    x = min(p1.x, p2.x) - margin
    y = min(p1.y, p2.y) - margin
    return Bounds(x, y, abs(p2.x - p1.x) + 2 * margin, abs(p2.y - p1.y) + 2 * margin)


def is_orthogonal(points: Sequence[Point], tolerance: float = 1) -> bool:
    """True if every consecutive pair of points is axis-aligned."""
    for i in range(len(points) - 1):
        a, b = points[i], points[i + 1]
        if abs(a.x - b.x) > tolerance and abs(a.y - b.y) > tolerance:
            return False
    return True


# ---------------------------------------------------------------------------
# Waypoint clean-up
# ---------------------------------------------------------------------------

def deduplicate_waypoints(points: Sequence[Point], tolerance: float = 1) -> list[Point]:
    """Remove consecutive points within *tolerance* on both axes."""
    if not points:
        return []
    result = [points[0]]
    for p in points[1:]:
        prev = result[-1]
        if abs(prev.x - p.x) > tolerance or abs(prev.y - p.y) > tolerance:
            result.append(p)
    return result


def remove_collinear_points(points: Sequence[Point], tolerance: float = 1) -> list[Point]:
    """Drop middle points of horizontal or vertical collinear triples."""
    if len(points) < 3:
        return list(points)
    result = [points[0]]
    for i in range(1, len(points) - 1):
        prev = result[-1]
        curr = points[i]
        nxt = points[i + 1]
        same_y = abs(prev.y - curr.y) <= tolerance and abs(curr.y - nxt.y) <= tolerance
        same_x = abs(prev.x - curr.x) <= tolerance and abs(curr.x - nxt.x) <= tolerance
        if not same_y and not same_x:
            result.append(curr)
    result.append(points[-1])
    return result


def build_z_route(src_right: float, src_cy: float, tgt_left: float, tgt_cy: float) -> list[Point]:
    """Four-point Z route: out of the source, down/up at mid-gap, into the target."""
    mid_x = round((src_right + tgt_left) / 2)
    return [
        Point(round(src_right), round(src_cy)),
        Point(mid_x, round(src_cy)),
        Point(mid_x, round(tgt_cy)),
        Point(round(tgt_left), round(tgt_cy)),
    ]


def build_orthogonal_route(src: Point, tgt: Point) -> list[Point]:
    """Straight segment when aligned, otherwise an L (horizontal-first when wider)."""
    dx = abs(tgt.x - src.x)
    dy = abs(tgt.y - src.y)
    if dx < 2:
        return [Point(src.x, src.y), Point(src.x, tgt.y)]
    if dy < 2:
        return [Point(src.x, src.y), Point(tgt.x, src.y)]
    if dx >= dy:
        return [Point(src.x, src.y), Point(tgt.x, src.y), Point(tgt.x, tgt.y)]
    return [Point(src.x, src.y), Point(src.x, tgt.y), Point(tgt.x, tgt.y)]


def nearest_border_point(element: DiagramElement, point: Point) -> Point:
    """Nearest point on an element's rectangle for an external point.

    Points inside the element are projected to the border along the
    dominant axis relative to the centre.
    """
    w = element.width or 0
    h = element.height or 0
    if element.x <= point.x <= element.x + w and element.y <= point.y <= element.y + h:
        dx = point.x - element.cx
        dy = point.y - element.cy
        hw = w / 2 or 1
        hh = h / 2 or 1
        if abs(dx / hw) >= abs(dy / hh):
            return Point(element.x + w if dx > 0 else element.x, point.y)
        return Point(point.x, element.y + h if dy > 0 else element.y)
    return Point(
        max(element.x, min(element.x + w, point.x)),
        max(element.y, min(element.y + h, point.y)),
    )


def distance(a: Point, b: Point) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)


# ---------------------------------------------------------------------------
# Spatial grid index
# ---------------------------------------------------------------------------

T = TypeVar("T")


class SpatialGrid(Generic[T]):
    """Uniform bucket grid keyed by bounding box.

    Each item is registered in every cell its box touches, so a query only
    returns items whose cells overlap the query box.  Callers still run
    their exact geometric test on the candidates.
    """

    def __init__(self, cell_size: float = SPATIAL_CELL_SIZE) -> None:
        self.cell_size = cell_size
        self._cells: dict[tuple[int, int], list[int]] = defaultdict(list)
        self._items: list[tuple[T, Bounds]] = []

    def _cell_range(self, box: Bounds) -> tuple[range, range]:
        cs = self.cell_size
        x0 = math.floor(box.x / cs)
        x1 = math.floor(box.right / cs)
        y0 = math.floor(box.y / cs)
        y1 = math.floor(box.bottom / cs)
        return range(x0, x1 + 1), range(y0, y1 + 1)

    def insert(self, item: T, box: Bounds) -> None:
        idx = len(self._items)
        self._items.append((item, box))
        xs, ys = self._cell_range(box)
        for cx in xs:
            for cy in ys:
                self._cells[(cx, cy)].append(idx)

    def query(self, box: Bounds) -> list[T]:
        """Items whose cells overlap *box*, each returned once, in insertion order."""
        xs, ys = self._cell_range(box)
        hits: set[int] = set()
        for cx in xs:
            for cy in ys:
                hits.update(self._cells.get((cx, cy), ()))
        return [self._items[i][0] for i in sorted(hits)]

    def __len__(self) -> int:
        return len(self._items)


def build_shape_grid(shapes: Iterable[DiagramElement], margin: float = 0) -> SpatialGrid[DiagramElement]:
    grid: SpatialGrid[DiagramElement] = SpatialGrid()
    for shape in shapes:
        grid.insert(shape, shape.bounds.expanded(margin) if margin else shape.bounds)
    return grid
