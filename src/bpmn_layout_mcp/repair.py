"""
Edge-route repair passes.

Run after every node has reached its final position.  The passes are
order-dependent:

1. ``fix_disconnected_edges``       reconnect endpoints left behind by moves
2. ``dock_endpoints``               put endpoints on the shape outline
3. ``rebuild_off_row_gateway_routes``  flat routes between rows become L/Z bends
4. ``separate_overlapping_gateway_flows``  detour collinear split branches
5. ``simplify_collinear_waypoints`` drop redundant points
6. ``remove_micro_bends``           collapse tiny jogs and staircase steps
7. ``route_loopbacks``              backward flows go around the scope
8. ``bundle_parallel_flows``        fan out flows sharing source and target
9. ``snap_all_connections_orthogonal`` plus ``insert_elbows`` for leftovers

Each pass leaves a connection unchanged when it has no valid repair.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from bpmn_layout_mcp.constants import (
    BUNDLE_OFFSET_PX,
    CENTRE_SNAP_TOLERANCE,
    COLLINEAR_DETOUR_OFFSET,
    DIFFERENT_ROW_MIN_Y,
    DISCONNECT_THRESHOLD,
    LOOPBACK_ABOVE_MARGIN,
    LOOPBACK_BELOW_MARGIN,
    LOOPBACK_HORIZONTAL_MARGIN,
    LOOPBACK_MIN_BACKWARD_GAP,
    MAX_GATEWAY_EXIT_Y_DIFF,
    MICRO_BEND_TOLERANCE,
    MIN_GATEWAY_PARALLEL_GAP,
    SAME_ROW_Y_TOLERANCE,
    SHORT_SEGMENT_THRESHOLD,
)
from bpmn_layout_mcp.geometry import (
    build_z_route,
    deduplicate_waypoints,
    distance,
    nearest_border_point,
    remove_collinear_points,
)
from bpmn_layout_mcp.helpers import (
    is_boundary_event,
    is_connection_type,
    is_event,
    is_gateway,
    is_infrastructure,
    participant_of,
    routed_connections,
    sequence_flows,
)
from bpmn_layout_mcp.models import (
    BOUNDARY_EVENT,
    LABEL,
    LANE,
    PARTICIPANT,
    DiagramElement,
    DiagramModel,
    Point,
)

logger = logging.getLogger(__name__)

# Segments this close to level count as horizontal when comparing exits
LEVEL_TOLERANCE = 3
MIN_SHARED_RUN = 10


def _forward_flows(model: DiagramModel) -> list[DiagramElement]:
    """Sequence flows not leaving an attached event."""
    return [c for c in sequence_flows(model) if not is_boundary_event(model.source_of(c))]


def _set_route(model: DiagramModel, conn: DiagramElement, points: list[Point]) -> bool:
    cleaned = deduplicate_waypoints(points)
    if len(cleaned) < 2:
        return False
    model.update_waypoints(conn, cleaned)
    return True


# ---------------------------------------------------------------------------
# Endpoint repair
# ---------------------------------------------------------------------------

def _reattach_endpoint(points: list[Point], index: int, element: DiagramElement, towards: Point) -> None:
    """Move the endpoint at *index* onto *element* and keep its segment axis-aligned."""
    border = nearest_border_point(element, towards)
    points[index] = Point(round(border.x), round(border.y))
    neighbour = 1 if index == 0 else len(points) - 2
    if len(points) < 2 or neighbour == index:
        return
    end, other = points[index], points[neighbour]
    if abs(end.x - other.x) < abs(end.y - other.y):
        points[neighbour] = Point(end.x, other.y)
    else:
        points[neighbour] = Point(other.x, end.y)


def fix_disconnected_edges(model: DiagramModel) -> int:
    """Reconnect route endpoints that drifted away from their shapes.

    Same-row pairs are rebuilt as a straight line and different-row
    forward pairs as a Z.  Anything else only gets its drifted endpoint
    pulled back onto the shape border.
    """
    fixed = 0
    for conn in routed_connections(model):
        src = model.source_of(conn)
        tgt = model.target_of(conn)
        points = [p.copy() for p in conn.waypoints]
        first, last = points[0], points[-1]
        src_gap = distance(first, nearest_border_point(src, first))
        tgt_gap = distance(last, nearest_border_point(tgt, last))
        if src_gap <= DISCONNECT_THRESHOLD and tgt_gap <= DISCONNECT_THRESHOLD:
            continue

        forward = tgt.x > src.right
        if abs(src.cy - tgt.cy) < SAME_ROW_Y_TOLERANCE and forward:
            y = round(src.cy)
            model.update_waypoints(conn, [Point(round(src.right), y), Point(round(tgt.x), y)])
            fixed += 1
            continue
        if abs(src.cy - tgt.cy) >= DIFFERENT_ROW_MIN_Y and forward:
            model.update_waypoints(conn, build_z_route(src.right, src.cy, tgt.x, tgt.cy))
            fixed += 1
            continue

        if src_gap > DISCONNECT_THRESHOLD:
            towards = points[1] if len(points) > 1 else Point(tgt.cx, tgt.cy)
            _reattach_endpoint(points, 0, src, towards)
        if tgt_gap > DISCONNECT_THRESHOLD:
            towards = points[-2] if len(points) > 1 else Point(src.cx, src.cy)
            _reattach_endpoint(points, len(points) - 1, tgt, towards)
        if _set_route(model, conn, points):
            fixed += 1
    return fixed


def snap_endpoints_to_element_centres(model: DiagramModel) -> int:
    """Pull endpoints onto the source/target centre line.

    Mostly-horizontal routes get their end y values snapped to the shape
    centres, mostly-vertical ones their x values, when within
    ``CENTRE_SNAP_TOLERANCE``.  The adjacent point follows so the end
    segments stay straight.
    """
    changed = 0
    for conn in _forward_flows(model):
        src = model.source_of(conn)
        tgt = model.target_of(conn)
        points = [p.copy() for p in conn.waypoints]
        first, last = points[0], points[-1]
        horizontal = abs(last.x - first.x) >= abs(last.y - first.y)
        axis = "y" if horizontal else "x"
        src_c = round(src.cy if horizontal else src.cx)
        tgt_c = round(tgt.cy if horizontal else tgt.cx)

        dirty = False
        for end, neighbour, centre in ((first, points[1], src_c), (last, points[-2], tgt_c)):
            diff = abs(getattr(end, axis) - centre)
            if 0.5 < diff <= CENTRE_SNAP_TOLERANCE:
                setattr(end, axis, centre)
                if abs(getattr(neighbour, axis) - centre) < CENTRE_SNAP_TOLERANCE:
                    setattr(neighbour, axis, centre)
                dirty = True
        if dirty:
            model.update_waypoints(conn, points)
            changed += 1
    return changed


class ShapeDocking:
    """Slides route endpoints along their end segment onto the shape outline.

    Events are treated as circles, gateways as diamonds and everything
    else as rectangles, so endpoints that meet an event or gateway off its
    centre line touch the drawn shape instead of its bounding box.
    """

    def _half_extent(self, element: DiagramElement, offset: float, horizontal: bool) -> Optional[float]:
        """Distance from the centre to the outline along a line *offset* off-centre."""
        half_along = element.width / 2 if horizontal else element.height / 2
        half_across = element.height / 2 if horizontal else element.width / 2
        if abs(offset) > half_across:
            return None
        if is_event(element):
            r = min(element.width, element.height) / 2
            if abs(offset) > r:
                return None
            return math.sqrt(r * r - offset * offset)
        if is_gateway(element):
            if half_across == 0:
                return None
            return half_along * (1 - abs(offset) / half_across)
        return half_along

    def _dock(self, element: DiagramElement, end: Point, towards: Point) -> Point:
        if abs(end.y - towards.y) <= 1 and abs(end.x - towards.x) > 1:
            extent = self._half_extent(element, end.y - element.cy, horizontal=True)
            if extent is None:
                return end
            side = 1 if towards.x >= element.cx else -1
            return Point(round(element.cx + side * extent), end.y)
        if abs(end.x - towards.x) <= 1 and abs(end.y - towards.y) > 1:
            extent = self._half_extent(element, end.x - element.cx, horizontal=False)
            if extent is None:
                return end
            side = 1 if towards.y >= element.cy else -1
            return Point(end.x, round(element.cy + side * extent))
        return end

    def cropped_waypoints(self, model: DiagramModel, conn: DiagramElement) -> list[Point]:
        points = [p.copy() for p in conn.waypoints]
        src = model.source_of(conn)
        tgt = model.target_of(conn)
        if src is None or tgt is None or len(points) < 2:
            return points
        points[0] = self._dock(src, points[0], points[1])
        points[-1] = self._dock(tgt, points[-1], points[-2])
        return points


def dock_endpoints(model: DiagramModel, docking: Optional[ShapeDocking] = None) -> int:
    """Place endpoints on the shape outline, or on centre lines without *docking*."""
    if docking is None:
        return snap_endpoints_to_element_centres(model)
    changed = 0
    for conn in _forward_flows(model):
        points = docking.cropped_waypoints(model, conn)
        if any(abs(a.x - b.x) > 0.5 or abs(a.y - b.y) > 0.5 for a, b in zip(points, conn.waypoints)):
            if _set_route(model, conn, points):
                changed += 1
    return changed


# ---------------------------------------------------------------------------
# Route rebuilding
# ---------------------------------------------------------------------------

def rebuild_off_row_gateway_routes(model: DiagramModel) -> int:
    """Give flows between different rows a proper bend.

    A split gateway leaves through its top or bottom corner and turns
    into the target (L).  A flow into a join gateway enters through the
    gateway's top or bottom corner.  Other flows are only rebuilt (as a
    Z) when their current route is still flat.
    """
    rebuilt = 0
    for conn in _forward_flows(model):
        src = model.source_of(conn)
        tgt = model.target_of(conn)
        src_cx, src_cy = round(src.cx), round(src.cy)
        tgt_cx, tgt_cy = round(tgt.cx), round(tgt.cy)
        if abs(src_cy - tgt_cy) < DIFFERENT_ROW_MIN_Y or tgt.x <= src.right:
            continue

        if is_gateway(src):
            exit_y = src.bottom if tgt_cy > src_cy else src.y
            points = [
                Point(src_cx, round(exit_y)),
                Point(src_cx, tgt_cy),
                Point(round(tgt.x), tgt_cy),
            ]
        elif is_gateway(tgt):
            entry_y = tgt.bottom if src_cy > tgt_cy else tgt.y
            points = [
                Point(round(src.right), src_cy),
                Point(tgt_cx, src_cy),
                Point(tgt_cx, round(entry_y)),
            ]
        else:
            ys = [p.y for p in conn.waypoints]
            if max(ys) - min(ys) > DIFFERENT_ROW_MIN_Y:
                continue
            points = build_z_route(src.right, src_cy, tgt.x, tgt_cy)

        model.update_waypoints(conn, points)
        rebuilt += 1
    return rebuilt


def _shared_run(a: list[Point], b: list[Point]) -> float:
    """Length of the x-overlap between the first segments of two routes."""
    lo = max(min(a[0].x, a[1].x), min(b[0].x, b[1].x))
    hi = min(max(a[0].x, a[1].x), max(b[0].x, b[1].x))
    return max(0.0, hi - lo)


def _detour_route(model: DiagramModel, conn: DiagramElement, detour_y: float) -> Optional[list[Point]]:
    """Up-over-down route for a same-row flow, or None for off-row targets."""
    src = model.source_of(conn)
    tgt = model.target_of(conn)
    if abs(src.cy - tgt.cy) > SAME_ROW_Y_TOLERANCE:
        return None
    return [
        Point(round(src.right), round(src.cy)),
        Point(round(src.right), round(detour_y)),
        Point(round(tgt.x), round(detour_y)),
        Point(round(tgt.x), round(tgt.cy)),
    ]


def separate_overlapping_gateway_flows(model: DiagramModel) -> int:
    """Detour one of two split branches that leave along the same line.

    When two flows from one gateway start with level segments sharing
    more than ``MIN_SHARED_RUN`` of their length, the longer one (a skip
    past the shorter branch's target) is routed above the line.  Exits
    a few pixels apart get pushed to ``MIN_GATEWAY_PARALLEL_GAP``.
    """
    by_gateway: dict[str, list[DiagramElement]] = {}
    for conn in sequence_flows(model):
        if is_gateway(model.source_of(conn)):
            by_gateway.setdefault(conn.source_id, []).append(conn)

    separated = 0
    for flows in by_gateway.values():
        for i in range(len(flows)):
            for j in range(i + 1, len(flows)):
                a, b = flows[i].waypoints, flows[j].waypoints
                if abs(a[0].y - a[1].y) > LEVEL_TOLERANCE or abs(b[0].y - b[1].y) > LEVEL_TOLERANCE:
                    continue
                if _shared_run(a, b) <= MIN_SHARED_RUN:
                    continue
                gap = abs(a[0].y - b[0].y)

                if gap <= LEVEL_TOLERANCE:
                    len_a = abs(a[1].x - a[0].x)
                    len_b = abs(b[1].x - b[0].x)
                    moved = flows[i] if len_a >= len_b else flows[j]
                    detour_y = moved.waypoints[0].y - COLLINEAR_DETOUR_OFFSET
                elif gap <= MAX_GATEWAY_EXIT_Y_DIFF and gap < MIN_GATEWAY_PARALLEL_GAP:
                    moved = flows[i] if a[0].y <= b[0].y else flows[j]
                    detour_y = max(a[0].y, b[0].y) - MIN_GATEWAY_PARALLEL_GAP
                else:
                    continue

                route = _detour_route(model, moved, detour_y)
                if route is not None and _set_route(model, moved, route):
                    separated += 1
    return separated


def simplify_collinear_waypoints(model: DiagramModel) -> int:
    changed = 0
    for conn in model.connections():
        if len(conn.waypoints) < 3:
            continue
        simplified = remove_collinear_points(conn.waypoints)
        if len(simplified) < len(conn.waypoints) and len(simplified) >= 2:
            model.update_waypoints(conn, [p.copy() for p in simplified])
            changed += 1
    return changed


# ---------------------------------------------------------------------------
# Micro-bends
# ---------------------------------------------------------------------------

def _run_indices(points: list[Point], start: int, axis: str, step: int) -> list[int]:
    """Indices of the run of points sharing *axis* with ``points[start]``."""
    value = getattr(points[start], axis)
    indices = []
    i = start
    while 0 <= i < len(points) and abs(getattr(points[i], axis) - value) <= 1:
        indices.append(i)
        i += step
    return indices


def _collapse_jogs(points: list[Point]) -> bool:
    """Collapse one short jog; returns False when none can be collapsed.

    A jog is a segment shorter than the tolerance that shifts a level
    (or plumb) run sideways.  The run on the side without a route
    endpoint is shifted back so the jog disappears.
    """
    last = len(points) - 1
    for i in range(last):
        a, b = points[i], points[i + 1]
        dx, dy = abs(b.x - a.x), abs(b.y - a.y)
        if dx <= 1 and 0 < dy <= MICRO_BEND_TOLERANCE:
            axis = "y"
        elif dy <= 1 and 0 < dx <= SHORT_SEGMENT_THRESHOLD:
            axis = "x"
        else:
            continue

        after = _run_indices(points, i + 1, axis, 1)
        if last not in after:
            for k in after:
                setattr(points[k], axis, getattr(a, axis))
            return True
        before = _run_indices(points, i, axis, -1)
        if 0 not in before:
            for k in before:
                setattr(points[k], axis, getattr(b, axis))
            return True
    return False


def remove_micro_bends(model: DiagramModel) -> int:
    """Straighten tiny vertical jogs and short staircase steps.

    Endpoints never move, so a jog between two endpoint runs is kept.
    """
    changed = 0
    for conn in routed_connections(model):
        if len(conn.waypoints) < 3:
            continue
        points = [p.copy() for p in conn.waypoints]
        dirty = False
        for _ in range(len(points)):
            if not _collapse_jogs(points):
                break
            points = remove_collinear_points(deduplicate_waypoints(points))
            dirty = True
        if dirty and _set_route(model, conn, points):
            changed += 1
    return changed


# ---------------------------------------------------------------------------
# Loopbacks
# ---------------------------------------------------------------------------

def _is_obstacle(el: DiagramElement) -> bool:
    return not (
        is_connection_type(el.type)
        or is_infrastructure(el.type)
        or el.type in (BOUNDARY_EVENT, PARTICIPANT, LANE, LABEL)
    )


def _scope_extents(model: DiagramModel) -> dict[Optional[str], tuple[float, float]]:
    """(top, bottom) of the shapes in each participant; None for the rest."""
    extents: dict[Optional[str], tuple[float, float]] = {}
    for el in model.filter(_is_obstacle):
        pool = participant_of(model, el)
        key = pool.id if pool is not None else None
        top, bottom = extents.get(key, (math.inf, -math.inf))
        extents[key] = (min(top, el.y), max(bottom, el.bottom))
    return extents


def route_loopbacks(model: DiagramModel) -> int:
    """Route backward flows around their scope as a U.

    A target higher up than the source loops over the top of the scope,
    anything else under the bottom.  Gateways leave and enter through
    their top or bottom corner; other shapes leave right and enter left
    with a ``LOOPBACK_HORIZONTAL_MARGIN`` stub.  Routes that already run
    outside the scope are left alone.
    """
    extents = _scope_extents(model)
    if not extents:
        return 0
    routed = 0
    for conn in _forward_flows(model):
        src = model.source_of(conn)
        tgt = model.target_of(conn)
        if src is tgt or tgt.x >= src.right - LOOPBACK_MIN_BACKWARD_GAP:
            continue
        pool = participant_of(model, src)
        top, bottom = extents.get(pool.id if pool is not None else None, (src.y, src.bottom))
        ys = [p.y for p in conn.waypoints]
        src_cx, src_cy = round(src.cx), round(src.cy)
        tgt_cx, tgt_cy = round(tgt.cx), round(tgt.cy)

        above = tgt.cy < src.cy - DIFFERENT_ROW_MIN_Y
        if above:
            if min(ys) < top:
                continue
            lane_y = round(top - LOOPBACK_ABOVE_MARGIN)
        else:
            if max(ys) > bottom:
                continue
            lane_y = round(bottom + LOOPBACK_BELOW_MARGIN)

        if is_gateway(src):
            points = [
                Point(src_cx, round(src.y if above else src.bottom)),
                Point(src_cx, lane_y),
                Point(tgt_cx, lane_y),
                Point(tgt_cx, round(tgt.y if above else tgt.bottom)),
            ]
        else:
            exit_x = round(src.right + LOOPBACK_HORIZONTAL_MARGIN)
            entry_x = round(tgt.x - LOOPBACK_HORIZONTAL_MARGIN)
            points = [
                Point(round(src.right), src_cy),
                Point(exit_x, src_cy),
                Point(exit_x, lane_y),
                Point(entry_x, lane_y),
                Point(entry_x, tgt_cy),
                Point(round(tgt.x), tgt_cy),
            ]
        if _set_route(model, conn, points):
            routed += 1
    return routed


# ---------------------------------------------------------------------------
# Parallel flows and final clean-up
# ---------------------------------------------------------------------------

def bundle_parallel_flows(model: DiagramModel) -> int:
    """Offset the level runs of flows that share both source and target.

    Flows of a group get symmetric offsets of ``BUNDLE_OFFSET_PX`` around
    the middle one.  Straight two-point flows have nothing to shift.
    """
    groups: dict[tuple[str, str], list[DiagramElement]] = {}
    for conn in sequence_flows(model):
        groups.setdefault((conn.source_id, conn.target_id), []).append(conn)

    changed = 0
    for flows in groups.values():
        n = len(flows)
        if n < 2:
            continue
        for idx, conn in enumerate(flows):
            if len(conn.waypoints) < 3:
                continue
            offset = round((idx - (n - 1) / 2) * BUNDLE_OFFSET_PX)
            if offset == 0:
                continue
            points = [p.copy() for p in conn.waypoints]
            dirty = False
            for i in range(1, len(points) - 1):
                y = conn.waypoints[i].y
                if (abs(y - conn.waypoints[i - 1].y) <= LEVEL_TOLERANCE
                        or abs(y - conn.waypoints[i + 1].y) <= LEVEL_TOLERANCE):
                    points[i].y = round(y + offset)
                    dirty = True
            if dirty and _set_route(model, conn, points):
                changed += 1
    return changed


def insert_elbows(model: DiagramModel) -> int:
    """Split any remaining diagonal segment into two axis-aligned ones.

    The elbow goes horizontal-first when the segment is wider than tall.
    """
    changed = 0
    for conn in model.connections():
        points = conn.waypoints
        if len(points) < 2:
            continue
        result = [points[0].copy()]
        dirty = False
        for p in points[1:]:
            prev = result[-1]
            if abs(p.x - prev.x) > 1 and abs(p.y - prev.y) > 1:
                if abs(p.x - prev.x) >= abs(p.y - prev.y):
                    result.append(Point(p.x, prev.y))
                else:
                    result.append(Point(prev.x, p.y))
                dirty = True
            result.append(p.copy())
        if dirty:
            model.update_waypoints(conn, result)
            changed += 1
    return changed
