"""
Row snapping and grid quantization after engine placement.

The engine leaves nodes of one layer a few pixels apart vertically and
its columns follow node sizes rather than a regular rhythm.  These passes
work on one container scope at a time (direct children only, so nesting
levels never mix) and recurse into expanded subprocesses separately.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from bpmn_layout_mcp.alignment import (
    align_boundary_sub_flow_end_events,
    centre_gateways_on_branches,
    symmetrise_gateway_branches,
)
from bpmn_layout_mcp.constants import (
    BOUNDARY_HOST_GAP_EXTRA,
    BOUNDARY_NODE_SPACING,
    BRANCH_NODE_SPACING,
    ELK_LAYER_SPACING,
    ELK_NODE_SPACING,
    EVENT_TASK_GAP_EXTRA,
    GATEWAY_EVENT_GAP_REDUCE,
    GATEWAY_GATEWAY_GAP_EXTRA,
    GATEWAY_TASK_GAP_EXTRA,
    INTERMEDIATE_EVENT_TASK_GAP_REDUCE,
    MOVEMENT_THRESHOLD,
    ORTHO_SNAP_TOLERANCE,
    SAME_ROW_THRESHOLD,
    SUBPROCESS_ROW_THRESHOLD,
)
from bpmn_layout_mcp.happy_path import happy_path_node_ids
from bpmn_layout_mcp.helpers import (
    expanded_subprocesses,
    is_boundary_event,
    is_connection_type,
    is_layoutable_shape,
    median,
    scope_shapes,
)
from bpmn_layout_mcp.models import (
    BOUNDARY_EVENT,
    INTERMEDIATE_CATCH_EVENT,
    INTERMEDIATE_THROW_EVENT,
    DiagramElement,
    DiagramModel,
    Point,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Same-layer row snapping
# ---------------------------------------------------------------------------

def _cluster_by_cx(shapes: list[DiagramElement], threshold: float) -> list[list[DiagramElement]]:
    ordered = sorted(shapes, key=lambda el: el.cx)
    layers: list[list[DiagramElement]] = [[ordered[0]]]
    for el in ordered[1:]:
        if abs(el.cx - layers[-1][0].cx) <= threshold:
            layers[-1].append(el)
        else:
            layers.append([el])
    return layers


def snap_same_layer_elements(
    model: DiagramModel,
    scope_id: Optional[str],
    threshold: float = SAME_ROW_THRESHOLD,
) -> int:
    """Snap nodes that share a column and nearly share a row to one centre line.

    Columns are clustered by centre x (within half the layer spacing);
    inside a column, nodes whose centres chain within *threshold* form a
    row and move to the row's upper-median centre.

    Returns:
        Number of shapes moved.
    """
    shapes = scope_shapes(model, scope_id)
    if len(shapes) < 2:
        return 0

    moved = 0
    for layer in _cluster_by_cx(shapes, ELK_LAYER_SPACING / 2):
        if len(layer) < 2:
            continue
        by_y = sorted(layer, key=lambda el: el.cy)
        groups: list[list[DiagramElement]] = [[by_y[0]]]
        for el in by_y[1:]:
            if abs(el.cy - groups[-1][-1].cy) <= threshold:
                groups[-1].append(el)
            else:
                groups.append([el])

        for group in groups:
            if len(group) < 2:
                continue
            target = median([el.cy for el in group])
            for el in group:
                dy = target - el.cy
                if abs(dy) > MOVEMENT_THRESHOLD:
                    model.move_elements([el], 0, dy)
                    moved += 1
    return moved


def snap_expanded_subprocesses(model: DiagramModel, scope_id: Optional[str]) -> int:
    """Row-snap inside each expanded subprocess, with a looser threshold."""
    moved = 0
    for sub in expanded_subprocesses(model, scope_id):
        moved += snap_same_layer_elements(model, sub.id, SUBPROCESS_ROW_THRESHOLD)
        moved += snap_expanded_subprocesses(model, sub.id)
    return moved


# ---------------------------------------------------------------------------
# Grid snap
# ---------------------------------------------------------------------------

@dataclass
class GridLayer:
    """Nodes sharing an inferred column."""
    elements: list[DiagramElement]
    min_x: float
    max_right: float
    max_width: float


def _build_layer(elements: list[DiagramElement]) -> GridLayer:
    return GridLayer(
        elements=elements,
        min_x=min(el.x for el in elements),
        max_right=max(el.right for el in elements),
        max_width=max(el.width for el in elements),
    )


def _neighbour_map(model: DiagramModel) -> dict[str, set[str]]:
    neighbours: dict[str, set[str]] = {}
    for conn in model.connections():
        if not is_connection_type(conn.type):
            continue
        neighbours.setdefault(conn.source_id, set()).add(conn.target_id)
        neighbours.setdefault(conn.target_id, set()).add(conn.source_id)
    return neighbours


def detect_layers(model: DiagramModel, scope_id: Optional[str]) -> list[GridLayer]:
    """Cluster a scope's direct children into columns by centre x.

    A node directly connected to a member of the current column starts a
    new column when their centres differ by more than 5px, even inside
    the merge threshold.
    """
    shapes = scope_shapes(model, scope_id)
    if not shapes:
        return []
    neighbours = _neighbour_map(model)
    threshold = ELK_LAYER_SPACING / 2

    ordered = sorted(shapes, key=lambda el: el.cx)
    layers: list[GridLayer] = []
    current = [ordered[0]]
    for el in ordered[1:]:
        x_diff = abs(el.cx - current[0].cx)
        connected = x_diff > 5 and any(el.id in neighbours.get(m.id, ()) for m in current)
        if not connected and x_diff <= threshold:
            current.append(el)
        else:
            layers.append(_build_layer(current))
            current = [el]
    layers.append(_build_layer(current))
    return layers


def _dominant_category(layer: GridLayer) -> str:
    intermediate = events = gateways = 0
    for el in layer.elements:
        if el.type in (INTERMEDIATE_CATCH_EVENT, INTERMEDIATE_THROW_EVENT):
            intermediate += 1
        elif "Event" in el.type:
            events += 1
        elif "Gateway" in el.type:
            gateways += 1
    total = len(layer.elements)
    if intermediate and intermediate >= total / 2:
        return "intermediate"
    if events and events >= total / 2:
        return "event"
    if gateways and gateways >= total / 2:
        return "gateway"
    return "task"


def inter_layer_gap(prev: GridLayer, nxt: GridLayer, base: float = ELK_LAYER_SPACING) -> float:
    """Gap between two columns, adjusted for the kinds of node they hold."""
    pair = {_dominant_category(prev), _dominant_category(nxt)}
    if pair == {"intermediate", "task"}:
        return base - INTERMEDIATE_EVENT_TASK_GAP_REDUCE
    if pair == {"intermediate", "gateway"}:
        return base - GATEWAY_EVENT_GAP_REDUCE
    if pair == {"event", "task"}:
        return base + EVENT_TASK_GAP_EXTRA
    if pair == {"gateway", "task"}:
        return base + GATEWAY_TASK_GAP_EXTRA
    if pair == {"gateway"}:
        return base + GATEWAY_GATEWAY_GAP_EXTRA
    if pair == {"gateway", "event"}:
        return base - GATEWAY_EVENT_GAP_REDUCE
    return base


def _is_gateway_branch_layer(model: DiagramModel, elements: list[DiagramElement]) -> bool:
    """All members share a source gateway (fork) or a target gateway (join)."""
    if len(elements) < 2:
        return False
    sources: dict[str, int] = {}
    targets: dict[str, int] = {}
    for el in elements:
        src_gws = {
            c.source_id for c in model.incoming(el.id)
            if "Gateway" in (model.source_of(c).type if model.source_of(c) else "")
        }
        tgt_gws = {
            c.target_id for c in model.outgoing(el.id)
            if "Gateway" in (model.target_of(c).type if model.target_of(c) else "")
        }
        for gw in src_gws:
            sources[gw] = sources.get(gw, 0) + 1
        for gw in tgt_gws:
            targets[gw] = targets.get(gw, 0) + 1
    n = len(elements)
    return n in sources.values() or n in targets.values()


def _has_boundary_target(model: DiagramModel, elements: list[DiagramElement]) -> bool:
    if len(elements) < 2:
        return False
    return any(
        is_boundary_event(model.source_of(c))
        for el in elements
        for c in model.incoming(el.id)
    )


def _hosts_boundary_event(model: DiagramModel, elements: list[DiagramElement]) -> bool:
    ids = {el.id for el in elements}
    return any(el.type == BOUNDARY_EVENT and el.host_id in ids for el in model.all())


def grid_snap_pass(
    model: DiagramModel,
    happy_edges: Optional[set[str]],
    scope_id: Optional[str],
    layer_spacing: float = ELK_LAYER_SPACING,
    node_spacing: float = ELK_NODE_SPACING,
) -> None:
    """Quantize a scope's nodes into regular columns and rows.

    1. Columns: each column starts at the previous column's right edge
       plus a type-aware gap (wider after attached-event hosts); nodes are
       centred in their column.
    2. Rows: inside a column, nodes are spaced uniformly; a happy-path
       node stays pinned and the others are distributed above and below.
    3. Gateways are centred on their branches, happy-path splits get
       symmetric branches and attached-event sub-flow ends line up.
    """
    layers = detect_layers(model, scope_id)
    if len(layers) < 2:
        return
    happy_nodes = happy_path_node_ids(model, happy_edges) if happy_edges else set()

    column_x = layers[0].min_x
    for i, layer in enumerate(layers):
        if i > 0:
            gap = inter_layer_gap(layers[i - 1], layer, layer_spacing)
            if _hosts_boundary_event(model, layers[i - 1].elements):
                gap += BOUNDARY_HOST_GAP_EXTRA
            column_x = layers[i - 1].max_right + gap
        for el in layer.elements:
            desired_x = column_x + (layer.max_width - el.width) / 2
            dx = round(desired_x) - el.x
            if abs(dx) > MOVEMENT_THRESHOLD:
                model.move_elements([el], dx, 0)
        layers[i] = _build_layer(layer.elements)

    for layer in layers:
        if len(layer.elements) < 2:
            continue
        spacing = node_spacing
        if _is_gateway_branch_layer(model, layer.elements):
            spacing = BRANCH_NODE_SPACING
        elif _has_boundary_target(model, layer.elements):
            spacing = BOUNDARY_NODE_SPACING

        ordered = sorted(layer.elements, key=lambda el: el.y)
        happy = [el for el in ordered if el.id in happy_nodes]
        others = [el for el in ordered if el.id not in happy_nodes]

        if happy and others:
            pin = happy[0]
            pinned_cy = pin.cy
            above = [el for el in others if el.cy < pinned_cy]
            below = [el for el in others if el.cy >= pinned_cy]

            next_y = pinned_cy - pin.height / 2 - spacing
            for el in reversed(above):
                desired_y = next_y - el.height
                dy = round(desired_y) - el.y
                if abs(dy) > MOVEMENT_THRESHOLD:
                    model.move_elements([el], 0, dy)
                next_y = desired_y - spacing

            next_y = pinned_cy + pin.height / 2 + spacing
            for el in below:
                dy = round(next_y) - el.y
                if abs(dy) > MOVEMENT_THRESHOLD:
                    model.move_elements([el], 0, dy)
                next_y += el.height + spacing
        else:
            group_height = sum(el.height for el in ordered) + (len(ordered) - 1) * spacing
            centre = (ordered[0].y + ordered[-1].bottom) / 2
            start_y = centre - group_height / 2
            for el in ordered:
                dy = round(start_y) - el.y
                if abs(dy) > MOVEMENT_THRESHOLD:
                    model.move_elements([el], 0, dy)
                start_y += el.height + spacing

    centre_gateways_on_branches(model, happy_nodes, scope_id)
    symmetrise_gateway_branches(model, happy_nodes, scope_id, node_spacing)
    align_boundary_sub_flow_end_events(model)


def grid_snap_expanded_subprocesses(
    model: DiagramModel,
    happy_edges: Optional[set[str]],
    scope_id: Optional[str],
    layer_spacing: float = ELK_LAYER_SPACING,
) -> None:
    for sub in expanded_subprocesses(model, scope_id):
        grid_snap_pass(model, happy_edges, sub.id, layer_spacing)
        grid_snap_expanded_subprocesses(model, happy_edges, sub.id, layer_spacing)


# ---------------------------------------------------------------------------
# Pixel grid
# ---------------------------------------------------------------------------

def snap_shapes_to_pixel_grid(model: DiagramModel, quantum: float) -> int:
    """Round every flow node's origin to a multiple of *quantum*."""
    moved = 0
    for el in model.filter(is_layoutable_shape):
        sx = round(el.x / quantum) * quantum
        sy = round(el.y / quantum) * quantum
        if sx != el.x or sy != el.y:
            model.move_elements([el], sx - el.x, sy - el.y)
            moved += 1
    return moved


def snap_waypoints_to_pixel_grid(model: DiagramModel, quantum: float) -> int:
    """Round interior waypoints to *quantum*; endpoints stay on shape borders."""
    changed = 0
    for conn in model.connections():
        wps = conn.waypoints
        if len(wps) < 3:
            continue
        snapped = [wps[0].copy()]
        for p in wps[1:-1]:
            snapped.append(Point(round(p.x / quantum) * quantum, round(p.y / quantum) * quantum))
        snapped.append(wps[-1].copy())
        if any(a.x != b.x or a.y != b.y for a, b in zip(snapped, wps)):
            model.update_waypoints(conn, snapped)
            changed += 1
    return changed


# ---------------------------------------------------------------------------
# Orthogonal snap
# ---------------------------------------------------------------------------

def snap_all_connections_orthogonal(model: DiagramModel) -> int:
    """Straighten nearly axis-aligned segments.

    A segment whose smaller delta is under ``ORTHO_SNAP_TOLERANCE`` gets
    that delta zeroed by moving its end point.  Segments that are clearly
    diagonal in both axes are left alone.
    """
    changed = 0
    for conn in model.connections():
        if len(conn.waypoints) < 2:
            continue
        points = [p.copy() for p in conn.waypoints]
        dirty = False
        for i in range(1, len(points)):
            prev, curr = points[i - 1], points[i]
            dx = abs(curr.x - prev.x)
            dy = abs(curr.y - prev.y)
            if dx < 1 or dy < 1:
                continue
            if dx >= ORTHO_SNAP_TOLERANCE and dy >= ORTHO_SNAP_TOLERANCE:
                continue
            if dx <= dy:
                curr.x = prev.x
            else:
                curr.y = prev.y
            dirty = True
        if dirty:
            model.update_waypoints(conn, points)
            changed += 1
    return changed
