"""
Happy-path detection.

The happy path is the designed main flow: starting at each start event,
walk forward choosing one outgoing sequence flow per node.  Layout passes
use the resulting edge set to keep the main flow on a single straight row
and push branches and exception paths to secondary rows.
"""

from __future__ import annotations

import re
from typing import Optional

from bpmn_layout_mcp.helpers import is_end_event, is_gateway, is_start_event
from bpmn_layout_mcp.models import SEQUENCE_FLOW, DiagramElement, DiagramModel

POSITIVE_LABEL_PATTERN = re.compile(
    r"^(yes|approved|ok|true|success|valid|accept|accepted|completed|done|correct|passed)$",
    re.IGNORECASE,
)


def detect_happy_path(model: DiagramModel) -> set[str]:
    """Return the ids of the sequence flows on the happy path.

    Branch choice at a node with more than one outgoing flow:

    1. With a default flow: follow the first non-default flow, unless
       every outgoing flow leads straight to an end event, in which case
       follow the default flow.
    2. At a gateway without a default flow: prefer a flow whose label is a
       positive outcome ("yes", "approved", ...).
    3. Otherwise take the first outgoing flow in declared order.

    A single visited set is shared across all walks, so a node reached by
    an earlier walk (or a cycle) ends the current one.

    Args:
        model: Diagram to analyse.

    Returns:
        Set of sequence-flow ids.
    """
    outgoing: dict[str, list[DiagramElement]] = {}
    incoming_count: dict[str, int] = {}
    for conn in model.filter(lambda el: el.type == SEQUENCE_FLOW):
        if conn.source_id is None or conn.target_id is None:
            continue
        outgoing.setdefault(conn.source_id, []).append(conn)
        incoming_count[conn.target_id] = incoming_count.get(conn.target_id, 0) + 1

    entries = model.filter(is_start_event)
    if not entries:
        # No explicit start: treat source-only nodes as entries
        entries = [
            model.get(sid) for sid in outgoing
            if incoming_count.get(sid, 0) == 0 and model.get(sid) is not None
        ]

    happy: set[str] = set()
    visited: set[str] = set()

    for entry in entries:
        current: Optional[DiagramElement] = entry
        while current is not None and current.id not in visited:
            visited.add(current.id)
            flows = outgoing.get(current.id, [])
            if not flows:
                break
            chosen = _choose_flow(model, current, flows)
            happy.add(chosen.id)
            current = model.get(chosen.target_id)

    return happy


def _choose_flow(
    model: DiagramModel,
    node: DiagramElement,
    flows: list[DiagramElement],
) -> DiagramElement:
    """Pick the outgoing flow that continues the happy path."""
    if len(flows) == 1:
        return flows[0]

    default = next((f for f in flows if f.is_default), None)
    if default is not None:
        all_terminal = all(is_end_event(model.get(f.target_id)) for f in flows)
        if all_terminal:
            return default
        return next((f for f in flows if not f.is_default), default)

    if is_gateway(node):
        labelled = next(
            (f for f in flows if f.name and POSITIVE_LABEL_PATTERN.match(f.name.strip())),
            None,
        )
        if labelled is not None:
            return labelled

    return flows[0]


def happy_path_node_ids(model: DiagramModel, happy_edges: set[str]) -> set[str]:
    """Endpoints of every happy-path flow."""
    result: set[str] = set()
    for edge_id in happy_edges:
        conn = model.get(edge_id)
        if conn is None:
            continue
        if conn.source_id:
            result.add(conn.source_id)
        if conn.target_id:
            result.add(conn.target_id)
    return result
