"""
Happy-path and off-path alignment.

Grid snapping regularizes columns; these passes decide which row things
sit on: the main flow on one straight centre line, gateways centred on
their branches, off-path end events beside their predecessor.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Optional

from bpmn_layout_mcp.constants import (
    COLUMN_PROXIMITY,
    ELK_NODE_SPACING,
    MAX_EXTENDED_CORRECTION,
    MAX_WOBBLE_CORRECTION,
    MIN_MOVE_THRESHOLD,
    SAME_LAYER_X_THRESHOLD,
    SAME_ROW_THRESHOLD,
)
from bpmn_layout_mcp.happy_path import happy_path_node_ids
from bpmn_layout_mcp.helpers import (
    is_boundary_event,
    is_connection_type,
    is_end_event,
    is_gateway,
    median,
    scope_shapes,
)
from bpmn_layout_mcp.models import (
    BOUNDARY_EVENT,
    EXCLUSIVE_GATEWAY,
    INCLUSIVE_GATEWAY,
    SEQUENCE_FLOW,
    DiagramElement,
    DiagramModel,
)

logger = logging.getLogger(__name__)


def _flows_out(model: DiagramModel, element_id: str) -> list[DiagramElement]:
    return [
        c for c in model.outgoing(element_id)
        if is_connection_type(c.type) and model.target_of(c) is not None
    ]


def _flows_in(model: DiagramModel, element_id: str) -> list[DiagramElement]:
    return [
        c for c in model.incoming(element_id)
        if is_connection_type(c.type) and model.source_of(c) is not None
    ]


def _move_y(model: DiagramModel, el: DiagramElement, dy: float) -> bool:
    if abs(dy) > MIN_MOVE_THRESHOLD:
        model.move_elements([el], 0, dy)
        return True
    return False


# ---------------------------------------------------------------------------
# Gateway centring
# ---------------------------------------------------------------------------

def centre_gateways_on_branches(
    model: DiagramModel,
    happy_nodes: set[str],
    scope_id: Optional[str],
) -> int:
    """Move off-path gateways to the vertical middle of their neighbours."""
    moved = 0
    for gw in scope_shapes(model, scope_id):
        if not is_gateway(gw) or gw.id in happy_nodes:
            continue
        ys = [model.target_of(c).cy for c in _flows_out(model, gw.id)]
        ys += [model.source_of(c).cy for c in _flows_in(model, gw.id)]
        if len(ys) < 2:
            continue
        mid = (min(ys) + max(ys)) / 2
        if _move_y(model, gw, round(mid - gw.cy)):
            moved += 1
    return moved


def symmetrise_gateway_branches(
    model: DiagramModel,
    happy_nodes: set[str],
    scope_id: Optional[str],
    node_spacing: float = ELK_NODE_SPACING,
) -> None:
    """Arrange the two branches of happy-path splits around the gateway row.

    With one branch on the happy path, that branch is pinned to the
    gateway row and the other goes one row below.  Otherwise the two are
    placed symmetrically above and below.  Off-path end events directly
    after the split are lined up with their predecessor.
    """
    for gw in scope_shapes(model, scope_id):
        if not is_gateway(gw) or gw.id not in happy_nodes:
            continue
        outgoing = _flows_out(model, gw.id)
        if len(outgoing) < 2:
            continue
        gw_cy = gw.cy
        branches = [
            model.target_of(c) for c in outgoing
            if not is_end_event(model.target_of(c)) and not is_gateway(model.target_of(c))
        ]

        if len(branches) == 2:
            t1, t2 = branches
            if abs(t1.cx - t2.cx) <= SAME_LAYER_X_THRESHOLD:
                on1 = t1.id in happy_nodes
                on2 = t2.id in happy_nodes
                if on1 != on2:
                    on_path, off_path = (t1, t2) if on1 else (t2, t1)
                    _move_y(model, on_path, round(gw_cy - on_path.cy))
                    desired = gw_cy + max(on_path.height, off_path.height) / 2 + node_spacing
                    _move_y(model, off_path, round(desired - off_path.cy))
                else:
                    span = max(abs(t1.cy - t2.cy), node_spacing + max(t1.height, t2.height))
                    upper, lower = (t1, t2) if t1.cy < t2.cy else (t2, t1)
                    _move_y(model, upper, round(gw_cy - span / 2 - upper.cy))
                    _move_y(model, lower, round(gw_cy + span / 2 - lower.cy))

        for conn in outgoing:
            target = model.target_of(conn)
            if target.id in happy_nodes or not is_end_event(target):
                continue
            feeders = _flows_in(model, target.id)
            if feeders:
                _move_y(model, target, round(model.source_of(feeders[0]).cy - target.cy))


def align_boundary_sub_flow_end_events(model: DiagramModel) -> int:
    """Line up end events on attached-event sub-flows with their predecessor."""
    moved = 0
    for event in model.filter(lambda el: el.type == BOUNDARY_EVENT):
        visited: set[str] = set()
        queue = deque([event])
        while queue:
            current = queue.popleft()
            if current.id in visited:
                continue
            visited.add(current.id)
            for conn in _flows_out(model, current.id):
                target = model.target_of(conn)
                if is_end_event(target):
                    if _move_y(model, target, round(current.cy - target.cy)):
                        moved += 1
                elif target.id not in visited:
                    queue.append(target)
    return moved


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

def align_happy_path(
    model: DiagramModel,
    happy_edges: Optional[set[str]],
    scope_id: Optional[str],
    has_diverse_y: bool = False,
) -> int:
    """Pull the scope's happy-path nodes onto one centre line.

    The target line is the median centre.  Only small wobbles (up to
    ``MAX_WOBBLE_CORRECTION``) are corrected, unless the diagram came in
    with diverse coordinates: then the threshold widens to
    ``MAX_EXTENDED_CORRECTION`` and, when no majority sits at the median,
    the target becomes the centre line with the most nodes near it
    (ties go to the topmost).  Non-happy nodes in the same column move
    along by the same delta, except end events.

    Returns:
        Number of happy-path nodes moved.
    """
    if not happy_edges:
        return 0
    happy_nodes = happy_path_node_ids(model, happy_edges)
    if len(happy_nodes) < 2:
        return 0

    shapes = scope_shapes(model, scope_id)
    happy_shapes = [el for el in shapes if el.id in happy_nodes]
    if len(happy_shapes) < 2:
        return 0

    centres = sorted(el.cy for el in happy_shapes)
    target = median(centres)
    near = sum(1 for y in centres if abs(y - target) <= MAX_WOBBLE_CORRECTION)
    majority = near > len(centres) / 2

    if majority and has_diverse_y:
        threshold = MAX_EXTENDED_CORRECTION
    elif has_diverse_y:
        best_count, best_y = near, target
        for candidate in centres:
            count = sum(1 for y in centres if abs(y - candidate) <= MAX_WOBBLE_CORRECTION)
            if count > best_count or (count == best_count and candidate < best_y):
                best_count, best_y = count, candidate
        target = best_y
        threshold = MAX_EXTENDED_CORRECTION
    else:
        threshold = MAX_WOBBLE_CORRECTION

    others = [el for el in shapes if el.id not in happy_nodes]
    moved = 0
    for el in happy_shapes:
        dy = round(target - el.cy)
        if not (0.5 < abs(dy) <= threshold):
            continue
        model.move_elements([el], 0, dy)
        moved += 1
        mates = [
            m for m in others
            if abs(m.cx - el.cx) < COLUMN_PROXIMITY and not is_end_event(m)
        ]
        for mate in mates:
            model.move_elements([mate], 0, dy)
    return moved


def align_off_path_end_events(
    model: DiagramModel,
    happy_edges: Optional[set[str]],
    scope_id: Optional[str],
) -> int:
    """Put off-path end events on their predecessor's row.

    End events fed by an attached event or a split gateway keep their
    row: they sit on a downward branch on purpose.
    """
    happy_nodes = happy_path_node_ids(model, happy_edges) if happy_edges else set()
    moved = 0
    for el in scope_shapes(model, scope_id):
        if not is_end_event(el) or el.id in happy_nodes:
            continue
        feeders = _flows_in(model, el.id)
        if not feeders:
            continue
        source = model.source_of(feeders[0])
        if is_boundary_event(source):
            continue
        if is_gateway(source) and len(model.outgoing(source.id)) >= 2:
            continue
        if _move_y(model, el, round(source.cy - el.cy)):
            moved += 1
    return moved


def pin_happy_path_branches(
    model: DiagramModel,
    happy_edges: Optional[set[str]],
    scope_id: Optional[str],
) -> int:
    """Keep the happy branch of exclusive/inclusive splits on top.

    An off-path branch target in the same column as the happy branch
    target that sits above it (or on its row) is moved one row below,
    together with the rest of its branch on the same row.
    """
    if not happy_edges:
        return 0
    happy_nodes = happy_path_node_ids(model, happy_edges)
    moved = 0
    for gw in scope_shapes(model, scope_id):
        if gw.type not in (EXCLUSIVE_GATEWAY, INCLUSIVE_GATEWAY) or gw.id not in happy_nodes:
            continue
        outgoing = [c for c in _flows_out(model, gw.id) if c.type == SEQUENCE_FLOW]
        if len(outgoing) < 2:
            continue
        happy_flow = next((c for c in outgoing if c.id in happy_edges), None)
        if happy_flow is None:
            continue
        main = model.target_of(happy_flow)

        for conn in outgoing:
            if conn is happy_flow:
                continue
            branch = model.target_of(conn)
            if branch.id in happy_nodes or branch.parent_id != gw.parent_id:
                continue
            if abs(branch.cx - main.cx) > SAME_LAYER_X_THRESHOLD:
                continue
            if branch.cy >= main.cy + SAME_ROW_THRESHOLD:
                continue
            dy = round(main.bottom + ELK_NODE_SPACING - branch.y)
            if dy <= MIN_MOVE_THRESHOLD:
                continue
            row_cy = branch.cy
            chain = _same_row_successors(model, branch, happy_nodes, row_cy)
            for el in chain:
                model.move_elements([el], 0, dy)
            moved += len(chain)
    return moved


def _same_row_successors(
    model: DiagramModel,
    start: DiagramElement,
    happy_nodes: set[str],
    row_cy: float,
) -> list[DiagramElement]:
    result: list[DiagramElement] = []
    seen: set[str] = set()
    queue = deque([start])
    while queue:
        node = queue.popleft()
        if node.id in seen:
            continue
        seen.add(node.id)
        result.append(node)
        for conn in _flows_out(model, node.id):
            nxt = model.target_of(conn)
            if (
                nxt.id not in happy_nodes
                and nxt.id not in seen
                and nxt.parent_id == start.parent_id
                and abs(nxt.cy - row_cy) <= SAME_ROW_THRESHOLD
            ):
                queue.append(nxt)
    return result
