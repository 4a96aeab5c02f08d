"""
Applying engine results back to the diagram.

Engine coordinates are relative to the parent compound node; the
applicator accumulates absolute offsets while recursing, moves shapes only
when the delta exceeds a sub-pixel threshold, and resizes compound
containers afterwards (resizing uses the already-corrected origin).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from bpmn_layout_mcp.constants import (
    ELK_LAYOUT_OPTIONS,
    EVENT_SUBPROCESS_PADDING,
    EVENT_SUBPROCESS_STACK_GAP,
    EVENT_SUBPROCESS_VERTICAL_GAP,
    MOVEMENT_THRESHOLD,
    RESIZE_SIGNIFICANCE_THRESHOLD,
)
from bpmn_layout_mcp.engines.base import LayoutEngine
from bpmn_layout_mcp.graph_builder import build_container_graph
from bpmn_layout_mcp.helpers import is_connection_type
from bpmn_layout_mcp.models import (
    BOUNDARY_EVENT,
    LABEL,
    LANE,
    PARTICIPANT,
    PROCESS,
    SUBPROCESS,
    Bounds,
    DiagramModel,
)
from bpmn_layout_mcp.routing import apply_engine_edge_routes

logger = logging.getLogger(__name__)


def apply_node_positions(
    model: DiagramModel,
    engine_node: dict[str, Any],
    parent_abs_x: float,
    parent_abs_y: float,
) -> int:
    """Move shapes to the engine's positions, recursing into compounds.

    Returns:
        Number of shapes moved.
    """
    moved = 0
    for child in engine_node.get("children", []) or []:
        if child.get("x") is None or child.get("y") is None:
            continue
        element = model.get(child["id"])
        if element is None:
            continue
        desired_x = round(parent_abs_x + child["x"])
        desired_y = round(parent_abs_y + child["y"])
        dx = desired_x - element.x
        dy = desired_y - element.y
        if abs(dx) > MOVEMENT_THRESHOLD or abs(dy) > MOVEMENT_THRESHOLD:
            model.move_elements([element], dx, dy)
            moved += 1
        if child.get("children"):
            moved += apply_node_positions(model, child, element.x, element.y)
    return moved


def resize_compound_nodes(model: DiagramModel, engine_node: dict[str, Any]) -> int:
    """Resize compound containers to the engine's box, keeping their origin."""
    resized = 0
    for child in engine_node.get("children", []) or []:
        if not child.get("children"):
            continue
        if child.get("width") is None or child.get("height") is None:
            continue
        element = model.get(child["id"])
        if element is None:
            continue
        desired_w = round(child["width"])
        desired_h = round(child["height"])
        if (
            abs(element.width - desired_w) > RESIZE_SIGNIFICANCE_THRESHOLD
            or abs(element.height - desired_h) > RESIZE_SIGNIFICANCE_THRESHOLD
        ):
            model.resize_shape(element, Bounds(element.x, element.y, desired_w, desired_h))
            resized += 1
        resized += resize_compound_nodes(model, child)
    return resized


async def position_event_subprocesses(model: DiagramModel, engine: LayoutEngine) -> int:
    """Lay out event subprocesses on their own and stack them below the main flow.

    Each process or participant is handled separately.  Event subprocesses
    with more than one child get their own engine run and are resized to
    the result; then each is placed at the main flow's left edge, the
    first one ``EVENT_SUBPROCESS_VERTICAL_GAP`` below the main flow's
    bottom and the rest stacked beneath it.
    """
    placed = 0
    containers = model.filter(lambda el: el.type in (PROCESS, PARTICIPANT))
    container_ids: list[Optional[str]] = [c.id for c in containers]
    if not containers:
        container_ids = [None]

    for container_id in container_ids:
        event_subs = [
            el for el in model.children_of(container_id)
            if el.type == SUBPROCESS and el.triggered_by_event
        ]
        if not event_subs:
            continue
        main_flow = [
            el for el in model.children_of(container_id)
            if not el.triggered_by_event
            and el.type not in (LANE, BOUNDARY_EVENT, LABEL)
            and not is_connection_type(el.type)
        ]
        if not main_flow:
            continue

        main_bottom = max(el.bottom for el in main_flow)
        main_left = min(el.x for el in main_flow)
        current_y = main_bottom + EVENT_SUBPROCESS_VERTICAL_GAP

        for esp in event_subs:
            children, edges, _ = build_container_graph(model, esp.id, set())
            if len(children) > 1:
                graph = {
                    "id": esp.id,
                    "layoutOptions": {**ELK_LAYOUT_OPTIONS, "elk.padding": EVENT_SUBPROCESS_PADDING},
                    "children": children,
                    "edges": edges,
                }
                result = await engine.layout(graph)
                for node in result.get("children", []):
                    child = model.get(node["id"])
                    if child is None or node.get("x") is None:
                        continue
                    model.move_elements(
                        [child],
                        esp.x + node["x"] - child.x,
                        esp.y + node["y"] - child.y,
                    )
                ids = {e["id"] for e in result.get("edges", [])}
                apply_engine_edge_routes(model, result, esp.x, esp.y, ids)
                if result.get("width") is not None and result.get("height") is not None:
                    model.resize_shape(esp, Bounds(esp.x, esp.y, round(result["width"]), round(result["height"])))

            model.move_elements([esp], main_left - esp.x, current_y - esp.y)
            current_y += esp.height + EVENT_SUBPROCESS_STACK_GAP
            placed += 1
            logger.debug("Placed event subprocess %s at y=%s", esp.id, esp.y)
    return placed
