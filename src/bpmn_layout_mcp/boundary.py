"""
Attached (boundary) event handling.

Attached events are not part of the engine graph; they are expected to
follow their host through ``move_elements``.  Bulk moves can leave them
stranded or strip their type and host link, so the pipeline snapshots
``(event, host)`` pairs before any move and runs restore + reposition at
every point where hosts may have moved.

Also places the exception chains that were kept out of the engine graph
below their host, and keeps other exception targets off the main row.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional

from bpmn_layout_mcp.constants import (
    BOUNDARY_CHAIN_GAP,
    BOUNDARY_PROXIMITY_TOLERANCE,
    BOUNDARY_SPREAD_MARGIN_FACTOR,
    BOUNDARY_TARGET_ROW_BUFFER,
    BOUNDARY_TARGET_X_OFFSET,
    BOUNDARY_TARGET_Y_OFFSET,
    GATEWAY_UPPER_SPLIT_FACTOR,
)
from bpmn_layout_mcp.happy_path import happy_path_node_ids
from bpmn_layout_mcp.helpers import median
from bpmn_layout_mcp.models import (
    BOUNDARY_EVENT,
    END_EVENT,
    MESSAGE_FLOW,
    SEQUENCE_FLOW,
    DiagramElement,
    DiagramModel,
)

logger = logging.getLogger(__name__)

TOP = "top"
BOTTOM = "bottom"
LEFT = "left"
RIGHT = "right"

# Vertical distance between stacked exception chains of one host
BOUNDARY_CHAIN_STACK_OFFSET = 120


@dataclass(frozen=True)
class BoundarySnapshot:
    """Identity of an attached event, captured before any bulk move."""
    event_id: str
    host_id: str


# ---------------------------------------------------------------------------
# Snapshot / restore
# ---------------------------------------------------------------------------

def save_boundary_events(model: DiagramModel) -> list[BoundarySnapshot]:
    """Record every attached event and its host."""
    return [
        BoundarySnapshot(el.id, el.host_id)
        for el in model.filter(lambda el: el.type == BOUNDARY_EVENT and el.host_id is not None)
        if model.get(el.host_id) is not None
    ]


def restore_boundary_events(model: DiagramModel, snapshots: Iterable[BoundarySnapshot]) -> int:
    """Repair type and host of attached events from their snapshots.

    Idempotent: running it on an intact diagram changes nothing.

    Returns:
        Number of events that needed repair.
    """
    repaired = 0
    for snap in snapshots:
        el = model.get(snap.event_id)
        if el is None or model.get(snap.host_id) is None:
            continue
        changed = False
        if el.type != BOUNDARY_EVENT:
            model.set_property(el, "type", BOUNDARY_EVENT)
            changed = True
        if el.host_id != snap.host_id:
            model.set_property(el, "host", snap.host_id)
            changed = True
        if changed:
            repaired += 1
            logger.debug("Restored attached event %s on host %s", snap.event_id, snap.host_id)
    return repaired


# ---------------------------------------------------------------------------
# Border choice and placement
# ---------------------------------------------------------------------------

def detect_current_border(event: DiagramElement, host: DiagramElement) -> str:
    """Border of *host* closest to the event's centre."""
    d_top = abs(event.cy - host.y)
    d_bottom = abs(event.cy - host.bottom)
    d_left = abs(event.cx - host.x)
    d_right = abs(event.cx - host.right)
    closest = min(d_top, d_bottom, d_left, d_right)
    if closest == d_bottom:
        return BOTTOM
    if closest == d_top:
        return TOP
    if closest == d_right:
        return RIGHT
    return LEFT


def choose_boundary_border(model: DiagramModel, event: DiagramElement, host: DiagramElement) -> str:
    """Border an attached event should sit on.

    Bottom unless the first outgoing target is clearly above the host
    (top) or clearly behind it (left).  The right border is never chosen:
    proxy edges put attached-event targets on the host's row, which would
    otherwise trigger it spuriously.
    """
    for flow in model.outgoing(event.id):
        target = model.target_of(flow)
        if target is None:
            continue
        dx = target.cx - host.cx
        dy = target.cy - host.cy
        if dy < -host.height / 2 and abs(dy) > abs(dx):
            return TOP
        if dx < 0 and abs(dx) > abs(dy):
            return LEFT
        return BOTTOM
    return BOTTOM


def border_anchor(host: DiagramElement, border: str) -> tuple[float, float]:
    """Centre point for an event placed on *border* of *host*."""
    if border == TOP:
        return host.x + host.width * GATEWAY_UPPER_SPLIT_FACTOR, host.y
    if border == LEFT:
        return host.x, host.y + host.height * GATEWAY_UPPER_SPLIT_FACTOR
    if border == RIGHT:
        return host.right, host.y + host.height * GATEWAY_UPPER_SPLIT_FACTOR
    return host.cx, host.bottom


def _move_event(model: DiagramModel, event: DiagramElement, dx: float, dy: float) -> None:
    # Attached events have no children; the model moves the label along.
    model.move_elements([event], dx, dy)


def _collect_events(model: DiagramModel, snapshots: Optional[list[BoundarySnapshot]]) -> list[DiagramElement]:
    events = model.filter(lambda el: el.type == BOUNDARY_EVENT)
    found = {el.id for el in events}
    for snap in snapshots or []:
        if snap.event_id not in found:
            el = model.get(snap.event_id)
            if el is not None:
                events.append(el)
                found.add(el.id)
    return events


def reposition_boundary_events(
    model: DiagramModel,
    snapshots: Optional[list[BoundarySnapshot]] = None,
) -> int:
    """Put each attached event back on the right border of its host.

    With snapshots (after a full layout) every event is repositioned;
    without, only events that drifted more than
    ``BOUNDARY_PROXIMITY_TOLERANCE`` away from their host are.  Events
    sharing a host border are then spread out.

    Returns:
        Number of events moved onto a border.
    """
    force = bool(snapshots)
    events = _collect_events(model, snapshots)
    moved = 0
    for event in events:
        if event.type != BOUNDARY_EVENT:
            model.set_property(event, "type", BOUNDARY_EVENT)
        host = model.host_of(event)
        if host is None:
            continue

        needs_move = force
        if not needs_move:
            tol = BOUNDARY_PROXIMITY_TOLERANCE
            needs_move = not (
                host.x - tol <= event.cx <= host.right + tol
                and host.y - tol <= event.cy <= host.bottom + tol
            )
        if not needs_move:
            continue

        border = choose_boundary_border(model, event, host)
        tx, ty = border_anchor(host, border)
        dx = tx - event.cx
        dy = ty - event.cy
        if abs(dx) > 1 or abs(dy) > 1:
            _move_event(model, event, dx, dy)
            moved += 1

    spread_boundary_events(model, events)
    return moved


def spread_boundary_events(model: DiagramModel, events: list[DiagramElement]) -> None:
    """Spread events that share a host border over its middle 80%.

    Current order along the border is preserved.
    """
    groups: dict[tuple[str, str], list[DiagramElement]] = {}
    for event in events:
        host = model.host_of(event)
        if host is None:
            continue
        groups.setdefault((host.id, detect_current_border(event, host)), []).append(event)

    for (host_id, border), group in groups.items():
        if len(group) < 2:
            continue
        host = model.get(host_id)
        horizontal = border in (TOP, BOTTOM)
        span = host.width if horizontal else host.height
        margin = span * BOUNDARY_SPREAD_MARGIN_FACTOR
        step = (span - 2 * margin) / (len(group) - 1)

        group.sort(key=lambda e: e.x if horizontal else e.y)
        for i, event in enumerate(group):
            if horizontal:
                delta = host.x + margin + i * step - event.cx
                if abs(delta) > 1:
                    _move_event(model, event, delta, 0)
            else:
                delta = host.y + margin + i * step - event.cy
                if abs(delta) > 1:
                    _move_event(model, event, 0, delta)


def restore_and_reposition(model: DiagramModel, snapshots: list[BoundarySnapshot]) -> None:
    """The restore + reposition cycle run after every pass that moves hosts."""
    restore_boundary_events(model, snapshots)
    reposition_boundary_events(model, snapshots)


# ---------------------------------------------------------------------------
# Exception chains
# ---------------------------------------------------------------------------

def _outgoing_map(model: DiagramModel, types: tuple[str, ...]) -> dict[str, list[DiagramElement]]:
    adj: dict[str, list[DiagramElement]] = {}
    for conn in model.connections():
        if conn.type in types and model.target_of(conn) is not None:
            adj.setdefault(conn.source_id, []).append(conn)
    return adj


def _walk_exception_chain(
    model: DiagramModel,
    start: DiagramElement,
    excluded_ids: set[str],
    outgoing: dict[str, list[DiagramElement]],
) -> list[DiagramElement]:
    chain: list[DiagramElement] = []
    visited: set[str] = set()
    current: Optional[DiagramElement] = start
    while current is not None and current.id in excluded_ids and current.id not in visited:
        visited.add(current.id)
        chain.append(current)
        nxt = None
        for flow in outgoing.get(current.id, []):
            if flow.target_id in excluded_ids and flow.target_id not in visited:
                nxt = model.target_of(flow)
                break
        current = nxt
    return chain


def reposition_boundary_event_targets(model: DiagramModel, excluded_ids: set[str]) -> int:
    """Lay out excluded exception chains as rows below their host.

    The first chain element is centred ``BOUNDARY_TARGET_X_OFFSET`` right
    of the event and ``BOUNDARY_TARGET_Y_OFFSET`` below the host; the rest
    follow to the right with ``BOUNDARY_CHAIN_GAP`` between them.  Further
    chains of the same host stack ``BOUNDARY_CHAIN_STACK_OFFSET`` lower.
    """
    if not excluded_ids:
        return 0
    outgoing = _outgoing_map(model, (SEQUENCE_FLOW, MESSAGE_FLOW))
    chains_per_host: dict[str, int] = {}
    moved = 0

    for event in model.filter(lambda el: el.type == BOUNDARY_EVENT and el.host_id is not None):
        host = model.host_of(event)
        if host is None:
            continue
        for flow in outgoing.get(event.id, []):
            target = model.target_of(flow)
            if target is None or target.id not in excluded_ids:
                continue
            index = chains_per_host.get(host.id, 0)
            chains_per_host[host.id] = index + 1
            row_cy = host.bottom + BOUNDARY_TARGET_Y_OFFSET + index * BOUNDARY_CHAIN_STACK_OFFSET

            prev_right = 0.0
            for i, el in enumerate(_walk_exception_chain(model, target, excluded_ids, outgoing)):
                if i == 0:
                    desired_cx = event.cx + BOUNDARY_TARGET_X_OFFSET
                else:
                    desired_cx = prev_right + BOUNDARY_CHAIN_GAP + el.width / 2
                dx = round(desired_cx - el.cx)
                dy = round(row_cy - el.cy)
                if abs(dx) > 1 or abs(dy) > 1:
                    model.move_elements([el], dx, dy)
                    moved += 1
                prev_right = el.right
    return moved


def settle_boundary_chains(
    model: DiagramModel,
    snapshots: list[BoundarySnapshot],
    excluded_ids: set[str],
) -> int:
    """Place exception chains and make event borders agree with them.

    A border picked before the chains were placed reflects stale target
    positions.  The chains are placed, every border is picked again from
    the placed targets, and the chains are re-anchored on the final event
    positions.  Running it on a settled diagram moves nothing.

    Returns:
        Number of chain elements moved.
    """
    moved = reposition_boundary_event_targets(model, excluded_ids)
    reposition_boundary_events(model, snapshots)
    return moved + reposition_boundary_event_targets(model, excluded_ids)


def _happy_median_cy(model: DiagramModel, happy_nodes: set[str]) -> Optional[float]:
    shapes = [model.get(i) for i in happy_nodes]
    centres = [el.cy for el in shapes if el is not None and not el.is_connection]
    if not centres:
        return None
    return median(centres)


def push_boundary_targets_below_happy_path(
    model: DiagramModel,
    excluded_ids: set[str],
    happy_edges: set[str],
) -> int:
    """Move exception targets the engine put above the main row below it.

    Only targets of bottom-border events that were laid out by the engine
    (not excluded chains) are handled.  The target and every non-happy
    successor move by the same delta.
    """
    if not happy_edges:
        return 0
    happy_nodes = happy_path_node_ids(model, happy_edges)
    median_cy = _happy_median_cy(model, happy_nodes)
    if median_cy is None:
        return 0
    outgoing = _outgoing_map(model, (SEQUENCE_FLOW,))
    moved = 0

    for event in model.filter(lambda el: el.type == BOUNDARY_EVENT and el.host_id is not None):
        host = model.host_of(event)
        if host is None or detect_current_border(event, host) != BOTTOM:
            continue
        for flow in model.outgoing(event.id):
            target = model.target_of(flow)
            if target is None or target.id in excluded_ids or target.id in happy_nodes:
                continue
            if target.cy >= median_cy + BOUNDARY_TARGET_ROW_BUFFER:
                continue
            dist_above = median_cy - target.cy
            dy = round(median_cy + dist_above + BOUNDARY_TARGET_Y_OFFSET - target.cy)
            if dy <= 2:
                continue

            chain: list[DiagramElement] = []
            visited: set[str] = set()
            queue = deque([target])
            while queue:
                node = queue.popleft()
                if node.id in visited:
                    continue
                visited.add(node.id)
                chain.append(node)
                for out in outgoing.get(node.id, []):
                    nxt = model.target_of(out)
                    if nxt is not None and nxt.id not in happy_nodes and nxt.id not in visited:
                        queue.append(nxt)
            for el in chain:
                model.move_elements([el], 0, dy)
            moved += len(chain)
    return moved


def align_off_path_end_events_to_second_row(
    model: DiagramModel,
    excluded_ids: set[str],
    happy_edges: set[str],
) -> int:
    """Drop off-path end events between the main row and the exception row onto the latter."""
    if not excluded_ids:
        return 0
    below_row_cy = 0.0
    for el_id in excluded_ids:
        el = model.get(el_id)
        if el is not None and el.cy > below_row_cy:
            below_row_cy = el.cy
    if below_row_cy == 0:
        return 0

    happy_nodes = happy_path_node_ids(model, happy_edges) if happy_edges else set()
    median_cy = _happy_median_cy(model, happy_nodes)
    if median_cy is None:
        return 0

    moved = 0
    for el in model.filter(lambda e: e.type == END_EVENT):
        if el.id in happy_nodes or el.id in excluded_ids:
            continue
        if median_cy + BOUNDARY_TARGET_ROW_BUFFER < el.cy < below_row_cy - BOUNDARY_TARGET_ROW_BUFFER:
            dy = round(below_row_cy - el.cy)
            if abs(dy) > 2:
                model.move_elements([el], 0, dy)
                moved += 1
    return moved
