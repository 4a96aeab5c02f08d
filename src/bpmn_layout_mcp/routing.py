"""
Engine edge sections to diagram waypoints.

Applies the engine's orthogonal edge routes as connection waypoints, with
fallback routes for connections the engine did not handle (attached-event
flows, message flows, associations, flows into excluded chains).  Also
holds the route passes that run right after route application: self-loop
routing and gateway branch simplification.
"""

from __future__ import annotations

import logging
from typing import Any

from bpmn_layout_mcp.constants import (
    ENDPOINT_SNAP_TOLERANCE,
    SEGMENT_ORTHO_SNAP,
    SELF_LOOP_MARGIN_H,
    SELF_LOOP_MARGIN_V,
)
from bpmn_layout_mcp.geometry import (
    build_orthogonal_route,
    build_z_route,
    deduplicate_waypoints,
    nearest_border_point,
)
from bpmn_layout_mcp.helpers import is_boundary_event, is_connection_type, is_gateway
from bpmn_layout_mcp.models import MESSAGE_FLOW, SEQUENCE_FLOW, DiagramElement, DiagramModel, Point

logger = logging.getLogger(__name__)


def collect_engine_edges(
    node: dict[str, Any],
    abs_x: float,
    abs_y: float,
    out: dict[str, tuple[list[dict[str, Any]], float, float]] | None = None,
) -> dict[str, tuple[list[dict[str, Any]], float, float]]:
    """Flat map ``edge id -> (sections, offset_x, offset_y)`` through nested compounds."""
    result = {} if out is None else out
    for edge in node.get("edges", []) or []:
        sections = edge.get("sections") or []
        if sections:
            result[edge["id"]] = (sections, abs_x, abs_y)
    for child in node.get("children", []) or []:
        if child.get("children"):
            collect_engine_edges(child, abs_x + child.get("x", 0), abs_y + child.get("y", 0), result)
    return result


def _section_points(section: dict[str, Any], ox: float, oy: float) -> list[Point]:
    points = [Point(round(ox + section["startPoint"]["x"]), round(oy + section["startPoint"]["y"]))]
    for bp in section.get("bendPoints") or []:
        points.append(Point(round(ox + bp["x"]), round(oy + bp["y"])))
    points.append(Point(round(ox + section["endPoint"]["x"]), round(oy + section["endPoint"]["y"])))

    # Collapse near-orthogonal jitter
    for i in range(1, len(points)):
        prev, curr = points[i - 1], points[i]
        if abs(curr.y - prev.y) < SEGMENT_ORTHO_SNAP:
            curr.y = prev.y
        if abs(curr.x - prev.x) < SEGMENT_ORTHO_SNAP:
            curr.x = prev.x
    return deduplicate_waypoints(points, 0)


def boundary_event_route(event: DiagramElement, target: DiagramElement) -> list[Point]:
    """L route leaving an attached event vertically, entering the target from the side."""
    ecx = event.cx
    tgt_cy = target.cy
    tgt_x = target.x if ecx <= target.cx else target.right
    go_down = tgt_cy >= event.y
    start_y = event.bottom if go_down else event.y
    return deduplicate_waypoints([
        Point(round(ecx), round(start_y)),
        Point(round(ecx), round(tgt_cy)),
        Point(round(tgt_x), round(tgt_cy)),
    ])


def message_flow_route(source: DiagramElement, target: DiagramElement) -> list[Point]:
    """Vertical-first route between pools: bottom/top of source to top/bottom of target."""
    if target.cy >= source.cy:
        start = Point(round(source.cx), round(source.bottom))
        end = Point(round(target.cx), round(target.y))
    else:
        start = Point(round(source.cx), round(source.y))
        end = Point(round(target.cx), round(target.bottom))
    if abs(start.x - end.x) < 2:
        return [start, Point(start.x, end.y)]
    mid_y = round((start.y + end.y) / 2)
    return [start, Point(start.x, mid_y), Point(end.x, mid_y), end]


def fallback_route(model: DiagramModel, conn: DiagramElement) -> list[Point]:
    src = model.source_of(conn)
    tgt = model.target_of(conn)
    if is_boundary_event(src):
        return boundary_event_route(src, tgt)
    if conn.type == MESSAGE_FLOW:
        return message_flow_route(src, tgt)
    if conn.type != SEQUENCE_FLOW:
        # Associations: border to border
        start = nearest_border_point(src, Point(tgt.cx, tgt.cy))
        end = nearest_border_point(tgt, Point(src.cx, src.cy))
        route = build_orthogonal_route(Point(round(start.x), round(start.y)), Point(round(end.x), round(end.y)))
        return deduplicate_waypoints(route, 0)
    route = build_orthogonal_route(Point(src.cx, src.cy), Point(tgt.cx, tgt.cy))
    return deduplicate_waypoints([Point(round(p.x), round(p.y)) for p in route], 0)


def apply_engine_edge_routes(
    model: DiagramModel,
    result: dict[str, Any],
    offset_x: float,
    offset_y: float,
    connection_ids: set[str] | None = None,
) -> int:
    """Write engine edge sections as waypoints; fall back where none exist.

    Two-point horizontal routes that sit within tolerance of both centre
    lines are re-anchored exactly on the source's right edge and the
    target's left edge.

    Args:
        connection_ids: Restrict to these connections (all when None).

    Returns:
        Number of connections updated.
    """
    lookup = collect_engine_edges(result, offset_x, offset_y)
    updated = 0
    for conn in model.connections():
        if not is_connection_type(conn.type):
            continue
        if connection_ids is not None and conn.id not in connection_ids:
            continue
        src = model.source_of(conn)
        tgt = model.target_of(conn)
        if src is None or tgt is None or src is tgt:
            continue

        entry = lookup.get(conn.id)
        if entry is not None:
            sections, ox, oy = entry
            points = _section_points(sections[0], ox, oy)
            if len(points) == 2:
                src_cy = round(src.cy)
                tgt_cy = round(tgt.cy)
                if (
                    abs(points[0].y - points[1].y) <= ENDPOINT_SNAP_TOLERANCE
                    and abs(points[0].y - src_cy) <= ENDPOINT_SNAP_TOLERANCE
                    and abs(points[1].y - tgt_cy) <= ENDPOINT_SNAP_TOLERANCE
                ):
                    points = [Point(round(src.right), src_cy), Point(round(tgt.x), tgt_cy)]
        else:
            points = fallback_route(model, conn)

        if len(points) >= 2:
            model.update_waypoints(conn, points)
            updated += 1
    return updated


def route_self_loops(model: DiagramModel) -> int:
    """Route connections whose source is their target around the top-right corner."""
    count = 0
    for conn in model.connections():
        if conn.source_id != conn.target_id:
            continue
        node = model.source_of(conn)
        if node is None:
            continue
        right = round(node.right)
        top = round(node.y)
        cx = round(node.cx)
        cy = round(node.cy)
        model.update_waypoints(conn, [
            Point(right, cy),
            Point(right + SELF_LOOP_MARGIN_H, cy),
            Point(right + SELF_LOOP_MARGIN_H, top - SELF_LOOP_MARGIN_V),
            Point(cx, top - SELF_LOOP_MARGIN_V),
            Point(cx, top),
        ])
        count += 1
    return count


def simplify_gateway_branch_routes(model: DiagramModel) -> int:
    """Replace over-bent binary split/join routes with a clean Z.

    Applies to sequence flows with five or more waypoints leaving a gateway
    with at most two outgoing flows (or entering one with at most two
    incoming), where the target is on another row and to the right.
    Wider fan-outs are left to channel routing.
    """
    flows = [c for c in model.connections() if c.type == SEQUENCE_FLOW]
    out_count: dict[str, int] = {}
    in_count: dict[str, int] = {}
    for conn in flows:
        if is_gateway(model.source_of(conn)):
            out_count[conn.source_id] = out_count.get(conn.source_id, 0) + 1
        if is_gateway(model.target_of(conn)):
            in_count[conn.target_id] = in_count.get(conn.target_id, 0) + 1

    count = 0
    for conn in flows:
        if len(conn.waypoints) < 5:
            continue
        src = model.source_of(conn)
        tgt = model.target_of(conn)
        if src is None or tgt is None:
            continue
        split = is_gateway(src) and out_count.get(src.id, 0) <= 2
        join = is_gateway(tgt) and in_count.get(tgt.id, 0) <= 2
        if not (split or join):
            continue
        if abs(src.cy - tgt.cy) < 10 or tgt.x <= src.right:
            continue
        model.update_waypoints(conn, build_z_route(src.right, src.cy, tgt.x, tgt.cy))
        count += 1
    return count