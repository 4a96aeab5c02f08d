"""
Partial layout: re-lay out a chosen set of shapes and leave the rest alone.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from bpmn_layout_mcp.constants import (
    START_OFFSET_X,
    START_OFFSET_Y,
    SUBSET_NEIGHBOR_SAME_ROW_THRESHOLD,
    TASK_HEIGHT,
    TASK_WIDTH,
)
from bpmn_layout_mcp.crossings import detect_crossing_flows, reduce_crossings
from bpmn_layout_mcp.engines import LayoutEngine, default_engine
from bpmn_layout_mcp.geometry import build_z_route
from bpmn_layout_mcp.helpers import is_artifact, is_connection_type, is_infrastructure
from bpmn_layout_mcp.layout_logger import LayoutLogger
from bpmn_layout_mcp.models import (
    ASSOCIATION,
    DATA_INPUT_ASSOCIATION,
    DATA_OUTPUT_ASSOCIATION,
    PARTICIPANT,
    SUBPROCESS,
    DiagramElement,
    DiagramModel,
    Point,
)
from bpmn_layout_mcp.options import LayoutOptions, resolve_layout_options
from bpmn_layout_mcp.position import apply_node_positions
from bpmn_layout_mcp.repair import (
    fix_disconnected_edges,
    rebuild_off_row_gateway_routes,
    remove_micro_bends,
    route_loopbacks,
    separate_overlapping_gateway_flows,
    simplify_collinear_waypoints,
    snap_endpoints_to_element_centres,
)
from bpmn_layout_mcp.routing import apply_engine_edge_routes
from bpmn_layout_mcp.snapping import snap_all_connections_orthogonal

logger = logging.getLogger(__name__)

_ARTIFACT_LINKS = (ASSOCIATION, DATA_INPUT_ASSOCIATION, DATA_OUTPUT_ASSOCIATION)

# Repair passes run after a partial layout, in order
SUBSET_REPAIR_PASSES = (
    ("fix_disconnected_edges", fix_disconnected_edges),
    ("snap_endpoints_to_element_centres", snap_endpoints_to_element_centres),
    ("rebuild_off_row_gateway_routes", rebuild_off_row_gateway_routes),
    ("separate_overlapping_gateway_flows", separate_overlapping_gateway_flows),
    ("simplify_collinear_waypoints", simplify_collinear_waypoints),
    ("remove_micro_bends", remove_micro_bends),
    ("route_loopbacks", route_loopbacks),
    ("snap_all_connections_orthogonal", snap_all_connections_orthogonal),
)


def _subset_shapes(model: DiagramModel, element_ids: Iterable[str]) -> list[DiagramElement]:
    shapes = []
    for el_id in element_ids:
        el = model.get(el_id)
        if el is not None and not is_connection_type(el.type) and not is_infrastructure(el.type):
            shapes.append(el)
    return shapes


def shared_container(model: DiagramModel, shapes: list[DiagramElement]) -> Optional[DiagramElement]:
    """The participant or subprocess every shape sits in, if there is one."""
    if len(shapes) < 2:
        return None
    parents = [model.get(s.parent_id) if s.parent_id else None for s in shapes]
    if any(p is None or p.type not in (PARTICIPANT, SUBPROCESS) for p in parents):
        return None
    first = parents[0]
    return first if all(p.id == first.id for p in parents) else None


def linked_artifacts(model: DiagramModel, id_set: set[str]) -> list[DiagramElement]:
    """Artifacts attached by association to a subset shape and not in the subset."""
    found: dict[str, DiagramElement] = {}
    for assoc in model.filter(lambda el: el.type in _ARTIFACT_LINKS):
        source = model.source_of(assoc)
        target = model.target_of(assoc)
        if source is None or target is None:
            continue
        if source.id in id_set and is_artifact(target.type):
            found[target.id] = target
        if target.id in id_set and is_artifact(source.type):
            found[source.id] = source
    return [el for el_id, el in found.items() if el_id not in id_set]


def build_subset_graph(
    model: DiagramModel,
    shapes: list[DiagramElement],
    options: Optional[LayoutOptions] = None,
) -> dict[str, Any]:
    """Engine graph for the subset, with linked artifacts as pinned nodes."""
    id_set = {s.id for s in shapes}
    children: list[dict[str, Any]] = [
        {"id": s.id, "width": s.width or TASK_WIDTH, "height": s.height or TASK_HEIGHT}
        for s in shapes
    ]
    for art in linked_artifacts(model, id_set):
        children.append({
            "id": art.id,
            "width": art.width or TASK_WIDTH,
            "height": art.height or TASK_HEIGHT,
            "layoutOptions": {
                "elk.position": f"({art.x}, {art.y})",
                "org.eclipse.elk.noLayout": "true",
            },
        })

    edges = [
        {"id": conn.id, "sources": [conn.source_id], "targets": [conn.target_id]}
        for conn in model.connections()
        if conn.source_id in id_set and conn.target_id in id_set
    ]

    layout_options = resolve_layout_options(options)
    layout_options["elk.layered.crossingMinimization.semiInteractive"] = "true"
    return {"id": "root", "layoutOptions": layout_options, "children": children, "edges": edges}


def rebuild_neighbor_edges(model: DiagramModel, id_set: set[str]) -> int:
    """Re-route forward connections with exactly one end in the subset.

    Ends on roughly the same row get a straight line, others a Z route.
    Backward connections keep their custom routes.

    Returns:
        Number of connections rebuilt.
    """
    rebuilt = 0
    for conn in model.connections():
        src = model.source_of(conn)
        tgt = model.target_of(conn)
        if src is None or tgt is None or len(conn.waypoints) < 2:
            continue
        if (src.id in id_set) == (tgt.id in id_set):
            continue
        if tgt.x <= src.right:
            continue
        src_cy = round(src.cy)
        tgt_cy = round(tgt.cy)
        if abs(src_cy - tgt_cy) <= SUBSET_NEIGHBOR_SAME_ROW_THRESHOLD:
            points = [Point(round(src.right), src_cy), Point(round(tgt.x), src_cy)]
        else:
            points = build_z_route(src.right, src_cy, tgt.x, tgt_cy)
        model.update_waypoints(conn, points)
        rebuilt += 1
    return rebuilt


async def layout_subset(
    model: DiagramModel,
    element_ids: list[str],
    options: Optional[LayoutOptions] = None,
    engine: Optional[LayoutEngine] = None,
) -> dict[str, Any]:
    """Lay out only *element_ids*, leaving every other shape in place.

    Shapes sharing one participant or subprocess are placed inside it,
    otherwise at the subset's current top-left corner.  Route repair is
    confined to connections that touch the subset.

    Returns:
        ``{"crossing_flows": int, "crossing_pairs": [[id, id], ...]}``,
        or an empty dict when no shape was selected.
    """
    shapes = _subset_shapes(model, element_ids)
    if not shapes:
        return {}

    log = LayoutLogger("layout_subset")
    engine = engine or await default_engine()
    id_set = {s.id for s in shapes}
    log.note("init", f"{len(shapes)} shapes, engine={engine.name}")

    with log.step("engine.layout"):
        result = await engine.layout(build_subset_graph(model, shapes, options))

    container = shared_container(model, shapes)
    if container is not None:
        offset_x = container.x + START_OFFSET_X
        offset_y = container.y + START_OFFSET_Y
    else:
        offset_x = min(s.x for s in shapes)
        offset_y = min(s.y for s in shapes)

    # Untouched routes are restored after the repair passes
    untouched = {
        conn.id: [p.copy() for p in conn.waypoints]
        for conn in model.connections()
        if conn.source_id not in id_set and conn.target_id not in id_set
    }

    with log.step("apply_positions", model):
        placed = {"children": [c for c in result.get("children", []) if c["id"] in id_set]}
        apply_node_positions(model, placed, offset_x, offset_y)

    with log.step("apply_edge_routes"):
        subset_edges = {e["id"] for e in result.get("edges", [])}
        apply_engine_edge_routes(model, result, offset_x, offset_y, subset_edges)
        rebuild_neighbor_edges(model, id_set)

    for name, run in SUBSET_REPAIR_PASSES:
        with log.step(name):
            run(model)
    with log.step("reduce_crossings"):
        reduce_crossings(model)

    for conn_id, points in untouched.items():
        conn = model.get(conn_id)
        if conn is not None and len(points) >= 2:
            model.update_waypoints(conn, points)

    crossings = detect_crossing_flows(model)
    log.note("result", f"crossing_flows={crossings.count}")
    log.finish()
    return {
        "crossing_flows": crossings.count,
        "crossing_pairs": [list(pair) for pair in crossings.pairs],
    }
