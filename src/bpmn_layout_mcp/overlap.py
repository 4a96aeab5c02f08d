"""
Overlap resolution between flow nodes of one container scope.
"""

from __future__ import annotations

import logging
from typing import Optional

from bpmn_layout_mcp.constants import (
    COLUMN_PROXIMITY,
    MIN_OVERLAP_GAP,
    OVERLAP_MAX_ITERATIONS,
)
from bpmn_layout_mcp.geometry import build_shape_grid
from bpmn_layout_mcp.helpers import scope_shapes
from bpmn_layout_mcp.models import SEQUENCE_FLOW, DiagramElement, DiagramModel

logger = logging.getLogger(__name__)


def _horizontally_overlap(a: DiagramElement, b: DiagramElement) -> bool:
    return a.x < b.right and a.right > b.x


def _too_close(a: DiagramElement, b: DiagramElement, gap: float) -> bool:
    """Overlapping, or vertically separated by less than *gap*."""
    if not _horizontally_overlap(a, b):
        return False
    if a.bounds.intersects(b.bounds):
        return True
    upper, lower = (a, b) if a.y <= b.y else (b, a)
    distance = lower.y - upper.bottom
    return 0 <= distance < gap


def _flow_direction(model: DiagramModel, a: DiagramElement, b: DiagramElement) -> Optional[tuple[DiagramElement, DiagramElement]]:
    """(upstream, downstream) when a sequence flow joins the two, else None."""
    for conn in model.outgoing(a.id):
        if conn.type == SEQUENCE_FLOW and conn.target_id == b.id:
            return a, b
    for conn in model.outgoing(b.id):
        if conn.type == SEQUENCE_FLOW and conn.target_id == a.id:
            return b, a
    return None


def resolve_overlaps(
    model: DiagramModel,
    scope_id: Optional[str],
    min_gap: float = MIN_OVERLAP_GAP,
) -> int:
    """Push apart nodes that overlap or sit closer than *min_gap* vertically.

    Candidates come from a spatial grid so only nearby pairs are tested.
    A pair joined by a sequence flow whose centres share a column has its
    downstream node pushed right; any other pair has the lower node pushed
    down by the overlap plus *min_gap*.  Repeats until a pass moves
    nothing, at most ``OVERLAP_MAX_ITERATIONS`` times.

    Returns:
        Total number of moves.
    """
    total = 0
    for _ in range(OVERLAP_MAX_ITERATIONS):
        shapes = scope_shapes(model, scope_id)
        if len(shapes) < 2:
            return total
        grid = build_shape_grid(shapes, min_gap)
        order = {el.id: i for i, el in enumerate(shapes)}
        moved = 0

        for a in shapes:
            for b in grid.query(a.bounds.expanded(min_gap)):
                if order[b.id] <= order[a.id]:
                    continue
                if not _too_close(a, b, min_gap):
                    continue

                link = _flow_direction(model, a, b)
                if link is not None and abs(a.cx - b.cx) < COLUMN_PROXIMITY:
                    upstream, downstream = link
                    dx = round(upstream.right + min_gap - downstream.x)
                    if dx > 0:
                        model.move_elements([downstream], dx, 0)
                        moved += 1
                    continue

                upper, lower = (a, b) if a.cy <= b.cy else (b, a)
                dy = upper.bottom - lower.y + min_gap
                if dy > 0:
                    model.move_elements([lower], 0, round(dy))
                    moved += 1

        total += moved
        if not moved:
            break
    if total:
        logger.debug("Resolved overlaps in scope %s with %d moves", scope_id, total)
    return total


def find_overlaps(model: DiagramModel, scope_id: Optional[str]) -> list[tuple[str, str]]:
    """Id pairs of shapes in a scope whose boxes intersect."""
    shapes = scope_shapes(model, scope_id)
    grid = build_shape_grid(shapes)
    order = {el.id: i for i, el in enumerate(shapes)}
    pairs: list[tuple[str, str]] = []
    for a in shapes:
        for b in grid.query(a.bounds):
            if order[b.id] > order[a.id] and a.bounds.intersects(b.bounds):
                pairs.append((a.id, b.id))
    return pairs
