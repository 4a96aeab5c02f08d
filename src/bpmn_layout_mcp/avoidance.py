"""
Element avoidance: detour route segments that pass through unrelated shapes.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from bpmn_layout_mcp.constants import AVOIDANCE_MARGIN, AVOIDANCE_MAX_ITERATIONS
from bpmn_layout_mcp.geometry import (
    build_shape_grid,
    deduplicate_waypoints,
    segment_bbox,
    segment_intersects_rect,
)
from bpmn_layout_mcp.helpers import (
    is_artifact,
    is_connection_type,
    is_gateway,
    is_infrastructure,
    is_lane,
)
from bpmn_layout_mcp.models import (
    BOUNDARY_EVENT,
    LABEL,
    PARTICIPANT,
    SUBPROCESS,
    DiagramElement,
    DiagramModel,
    Point,
)

logger = logging.getLogger(__name__)


def _is_obstacle(el: DiagramElement) -> bool:
    return not (
        is_connection_type(el.type)
        or is_infrastructure(el.type)
        or is_lane(el.type)
        or is_artifact(el.type)
        or el.type in (LABEL, BOUNDARY_EVENT, PARTICIPANT)
    ) and el.width > 0 and el.height > 0


def _blocked(p1: Point, p2: Point, obstacle: DiagramElement, margin: float) -> bool:
    # One pixel inside the margin so a detour running exactly on it is clear
    return segment_intersects_rect(p1, p2, obstacle.bounds.expanded(margin - 1))


def _count_hits(path: Sequence[Point], obstacles: Sequence[DiagramElement], exclude_id: str) -> int:
    count = 0
    for obs in obstacles:
        if obs.id == exclude_id:
            continue
        if any(segment_intersects_rect(path[i], path[i + 1], obs.bounds) for i in range(len(path) - 1)):
            count += 1
    return count


def compute_detour(
    p1: Point,
    p2: Point,
    obstacle: DiagramElement,
    obstacles: Sequence[DiagramElement],
    margin: float = AVOIDANCE_MARGIN,
) -> Optional[list[Point]]:
    """Points to insert between *p1* and *p2* to pass around *obstacle*.

    Mostly-horizontal segments go over or under the obstacle, others
    left or right of it.  The side that hits fewer other obstacles wins,
    ties going above (or left).  The detour stays within the segment's
    own span.
    """
    if abs(p1.y - p2.y) < abs(p1.x - p2.x):
        forward = p2.x >= p1.x
        if forward:
            entry = max(p1.x, obstacle.x - margin)
            exit_ = min(p2.x, obstacle.right + margin)
        else:
            entry = min(p1.x, obstacle.right + margin)
            exit_ = max(p2.x, obstacle.x - margin)
        options = [
            [Point(entry, p1.y), Point(entry, y), Point(exit_, y), Point(exit_, p2.y)]
            for y in (obstacle.y - margin, obstacle.bottom + margin)
        ]
    else:
        forward = p2.y >= p1.y
        if forward:
            entry = max(p1.y, obstacle.y - margin)
            exit_ = min(p2.y, obstacle.bottom + margin)
        else:
            entry = min(p1.y, obstacle.bottom + margin)
            exit_ = max(p2.y, obstacle.y - margin)
        options = [
            [Point(p1.x, entry), Point(x, entry), Point(x, exit_), Point(p2.x, exit_)]
            for x in (obstacle.x - margin, obstacle.right + margin)
        ]

    first, second = options
    hits_first = _count_hits([p1, *first, p2], obstacles, obstacle.id)
    hits_second = _count_hits([p1, *second, p2], obstacles, obstacle.id)
    return first if hits_first <= hits_second else second


def _valid_obstacles(
    model: DiagramModel,
    conn: DiagramElement,
    shapes: list[DiagramElement],
) -> set[str]:
    source = model.source_of(conn)
    target = model.target_of(conn)
    attached = {
        el.id for el in model.filter(lambda e: e.type == BOUNDARY_EVENT)
        if el.host_id in (source.id, target.id)
    }
    inside = None
    if source.parent_id == target.parent_id:
        parent = model.get(source.parent_id)
        if parent is not None and parent.type == SUBPROCESS:
            inside = parent.id
    return {
        s.id for s in shapes
        if s.id not in (source.id, target.id)
        and s.id not in attached
        and (inside is None or s.parent_id == inside)
    }


def avoid_element_intersections(model: DiagramModel, margin: float = AVOIDANCE_MARGIN) -> int:
    """Insert detours where a route passes through a shape.

    Flows touching a gateway are skipped: fan-outs pass close to their
    branch targets by nature and detours there add crossings.  Flows
    inside a subprocess only avoid that subprocess's own children.

    Returns:
        Number of connections rerouted.
    """
    shapes = model.filter(_is_obstacle)
    if not shapes:
        return 0
    grid = build_shape_grid(shapes, margin)
    changed = 0

    for conn in model.connections():
        source = model.source_of(conn)
        target = model.target_of(conn)
        if source is None or target is None or len(conn.waypoints) < 2:
            continue
        if is_gateway(source) or is_gateway(target):
            continue
        valid = _valid_obstacles(model, conn, shapes)
        if not valid:
            continue
        obstacles = [s for s in shapes if s.id in valid]

        points = [p.copy() for p in conn.waypoints]
        modified = False
        for _ in range(AVOIDANCE_MAX_ITERATIONS):
            fixed = False
            for i in range(len(points) - 1):
                p1, p2 = points[i], points[i + 1]
                for obstacle in grid.query(segment_bbox(p1, p2, margin)):
                    if obstacle.id not in valid or not _blocked(p1, p2, obstacle, margin):
                        continue
                    detour = compute_detour(p1, p2, obstacle, obstacles, margin)
                    if detour:
                        points[i + 1:i + 1] = detour
                        fixed = modified = True
                        break
                if fixed:
                    break
            if not fixed:
                break

        if modified:
            cleaned = deduplicate_waypoints(points, tolerance=0.5)
            if len(cleaned) >= 2:
                model.update_waypoints(conn, cleaned)
                changed += 1
    return changed
