"""
Crossing detection and reduction between connection routes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from bpmn_layout_mcp.constants import CROSSING_MAX_PASSES, CROSSING_NUDGE_OFFSET
from bpmn_layout_mcp.geometry import path_intersects_rect, segments_intersect
from bpmn_layout_mcp.helpers import is_connection_type, is_layoutable_shape
from bpmn_layout_mcp.models import Bounds, DiagramElement, DiagramModel, Point

logger = logging.getLogger(__name__)


@dataclass
class CrossingFlows:
    """Connections whose routes cross, as id pairs in registry order."""
    count: int = 0
    pairs: list[tuple[str, str]] = field(default_factory=list)


def _route_box(points: Sequence[Point]) -> Bounds:
    min_x = min(p.x for p in points)
    min_y = min(p.y for p in points)
    return Bounds(min_x, min_y, max(p.x for p in points) - min_x, max(p.y for p in points) - min_y)


def _boxes_touch(a: Bounds, b: Bounds) -> bool:
    return a.x <= b.right and b.x <= a.right and a.y <= b.bottom and b.y <= a.bottom


def routes_cross(a: Sequence[Point], b: Sequence[Point]) -> bool:
    """True when any segment of *a* crosses any segment of *b* in its interior."""
    for i in range(len(a) - 1):
        for j in range(len(b) - 1):
            if segments_intersect(a[i], a[i + 1], b[j], b[j + 1]):
                return True
    return False


def _routed(model: DiagramModel) -> list[DiagramElement]:
    return model.filter(lambda el: is_connection_type(el.type) and len(el.waypoints) >= 2)


def detect_crossing_flows(model: DiagramModel) -> CrossingFlows:
    """Check every pair of routed connections for crossing segments.

    Segments meeting only at a shared endpoint do not count.
    """
    connections = _routed(model)
    boxes = [_route_box(c.waypoints) for c in connections]
    result = CrossingFlows()
    for i in range(len(connections)):
        for j in range(i + 1, len(connections)):
            if not _boxes_touch(boxes[i], boxes[j]):
                continue
            if routes_cross(connections[i].waypoints, connections[j].waypoints):
                result.pairs.append((connections[i].id, connections[j].id))
    result.count = len(result.pairs)
    return result


def _crossing_count(points: Sequence[Point], others: list[DiagramElement]) -> int:
    box = _route_box(points)
    return sum(
        1 for other in others
        if _boxes_touch(box, _route_box(other.waypoints)) and routes_cross(points, other.waypoints)
    )


def _hits_shape(model: DiagramModel, conn: DiagramElement, points: Sequence[Point]) -> bool:
    """True when the route passes through a shape other than its own ends."""
    for shape in model.filter(is_layoutable_shape):
        if shape.id in (conn.source_id, conn.target_id):
            continue
        if path_intersects_rect(points, shape.bounds):
            return True
    return False


def _nudge_candidates(points: list[Point]) -> list[list[Point]]:
    """Routes with one interior segment shifted sideways.

    Only segments whose both ends are interior waypoints are shifted, so
    the route stays attached and the neighbouring segments stay straight.
    """
    candidates = []
    for i in range(1, len(points) - 2):
        a, b = points[i], points[i + 1]
        vertical = abs(a.x - b.x) <= 1
        horizontal = abs(a.y - b.y) <= 1
        if vertical == horizontal:
            continue
        for offset in (CROSSING_NUDGE_OFFSET, -CROSSING_NUDGE_OFFSET, 2 * CROSSING_NUDGE_OFFSET, -2 * CROSSING_NUDGE_OFFSET):
            moved = [p.copy() for p in points]
            if vertical:
                moved[i].x += offset
                moved[i + 1].x += offset
            else:
                moved[i].y += offset
                moved[i + 1].y += offset
            candidates.append(moved)
    return candidates


def reduce_crossings(model: DiagramModel) -> int:
    """Nudge interior route segments to remove crossings.

    For each crossing pair, both connections are tried.  A nudge is kept
    only when it lowers that connection's crossing count and does not
    run the route through a shape.  Repeats while something improves,
    at most ``CROSSING_MAX_PASSES`` times.

    Returns:
        Number of nudges applied.
    """
    applied = 0
    for _ in range(CROSSING_MAX_PASSES):
        crossings = detect_crossing_flows(model)
        if not crossings.count:
            break
        improved = False
        for a_id, b_id in crossings.pairs:
            for conn_id in (a_id, b_id):
                conn = model.get(conn_id)
                if conn is None or len(conn.waypoints) < 4:
                    continue
                others = [c for c in _routed(model) if c.id != conn.id]
                current = _crossing_count(conn.waypoints, others)
                best = None
                best_count = current
                for candidate in _nudge_candidates(conn.waypoints):
                    count = _crossing_count(candidate, others)
                    if count < best_count and not _hits_shape(model, conn, candidate):
                        best, best_count = candidate, count
                if best is not None:
                    model.update_waypoints(conn, best)
                    applied += 1
                    improved = True
                    break
        if not improved:
            break
    if applied:
        logger.debug("Crossing reduction applied %d nudges", applied)
    return applied
