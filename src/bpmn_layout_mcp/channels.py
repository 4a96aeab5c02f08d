"""
Channel routing for split-gateway branches.

A channel is the empty band between two adjacent columns.  Branch routes
whose vertical segment hugs the gateway are moved into the middle of
the channel that follows the gateway's column.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from bpmn_layout_mcp.constants import (
    CHANNEL_GW_PROXIMITY,
    CHANNEL_MARGIN_FACTOR,
    MIN_CHANNEL_WIDTH,
)
from bpmn_layout_mcp.helpers import is_gateway
from bpmn_layout_mcp.models import SEQUENCE_FLOW, DiagramElement, DiagramModel
from bpmn_layout_mcp.snapping import detect_layers

logger = logging.getLogger(__name__)

# Moves shorter than this are not worth a route update
MIN_CHANNEL_SHIFT = 5
MAX_CHANNEL_BRANCHES = 2


@dataclass
class _Branch:
    conn: DiagramElement
    channel: int
    segment: int


def _first_vertical_near(conn: DiagramElement, gateway: DiagramElement) -> int:
    """Index of the first vertical segment close to the gateway, or -1."""
    points = conn.waypoints
    for i in range(len(points) - 1):
        a, b = points[i], points[i + 1]
        if abs(a.x - b.x) < 2 and abs(a.y - b.y) > 5 and abs(a.x - gateway.cx) < CHANNEL_GW_PROXIMITY:
            return i
    return -1


def route_branches_through_channels(model: DiagramModel, scope_id: Optional[str]) -> int:
    """Centre split-branch vertical segments in the next channel.

    Only gateways with at most two off-column branches are handled.  Two
    branches through the same channel are spread over its middle part,
    the upper target getting the left slot so the verticals do not cross.

    Returns:
        Number of routes changed.
    """
    layers = detect_layers(model, scope_id)
    if len(layers) < 2:
        return 0
    layer_of = {el.id: i for i, layer in enumerate(layers) for el in layer.elements}

    flows = [
        c for c in model.filter(lambda el: el.type == SEQUENCE_FLOW)
        if len(c.waypoints) >= 3 and c.source_id in layer_of and c.target_id in layer_of
    ]
    out_count: dict[str, int] = {}
    for conn in flows:
        if is_gateway(model.source_of(conn)):
            out_count[conn.source_id] = out_count.get(conn.source_id, 0) + 1

    off_column: dict[str, int] = {}
    for conn in flows:
        if out_count.get(conn.source_id, 0) >= 2 and layer_of[conn.source_id] != layer_of[conn.target_id]:
            off_column[conn.source_id] = off_column.get(conn.source_id, 0) + 1

    groups: dict[tuple[str, int], list[_Branch]] = {}
    for conn in flows:
        gw = model.source_of(conn)
        if out_count.get(gw.id, 0) < 2 or off_column.get(gw.id, 0) > MAX_CHANNEL_BRANCHES:
            continue
        src_layer = layer_of[gw.id]
        tgt_layer = layer_of[conn.target_id]
        if src_layer == tgt_layer:
            continue
        channel = src_layer if src_layer < tgt_layer else tgt_layer
        if channel < 0 or channel >= len(layers) - 1:
            continue
        segment = _first_vertical_near(conn, gw)
        if segment < 0:
            continue
        groups.setdefault((gw.id, channel), []).append(_Branch(conn, channel, segment))

    changed = 0
    for group in groups.values():
        if len(group) > MAX_CHANNEL_BRANCHES:
            continue
        channel = group[0].channel
        left = layers[channel].max_right
        right = layers[channel + 1].min_x
        width = right - left
        if width < MIN_CHANNEL_WIDTH:
            continue
        margin = width * CHANNEL_MARGIN_FACTOR
        usable_left = left + margin
        usable_width = width - 2 * margin

        group.sort(key=lambda b: model.target_of(b.conn).cy)
        for idx, branch in enumerate(group):
            if len(group) == 1:
                channel_x = (left + right) / 2
            else:
                channel_x = usable_left + usable_width * idx / (len(group) - 1)
            channel_x = round(channel_x)

            conn = branch.conn
            points = [p.copy() for p in conn.waypoints]
            if abs(points[branch.segment].x - channel_x) <= MIN_CHANNEL_SHIFT:
                continue
            if channel_x <= model.source_of(conn).right or channel_x >= model.target_of(conn).x:
                continue
            points[branch.segment].x = channel_x
            points[branch.segment + 1].x = channel_x
            model.update_waypoints(conn, points)
            changed += 1
    return changed
