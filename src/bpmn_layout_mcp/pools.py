"""
Pool finishing passes: centring content, inter-pool gaps, width
compaction, collapsed-pool placement and origin normalisation.
"""

from __future__ import annotations

import logging

from bpmn_layout_mcp.constants import (
    COLLAPSED_POOL_DEFAULT_HEIGHT,
    COLLAPSED_POOL_GAP,
    INTER_POOL_GAP_EXTRA,
    NORMALISE_ORIGIN_Y,
    ORIGIN_OFFSET_Y,
    POOL_COMPACT_RIGHT_PADDING,
    POOL_LABEL_BAND,
    RESIZE_SIGNIFICANCE_THRESHOLD,
)
from bpmn_layout_mcp.helpers import is_layoutable_shape, root_container_id, scope_shapes
from bpmn_layout_mcp.models import LANE, PARTICIPANT, Bounds, DiagramElement, DiagramModel

logger = logging.getLogger(__name__)


def _participants(model: DiagramModel) -> list[DiagramElement]:
    return model.filter(lambda el: el.type == PARTICIPANT)


def _is_expanded_pool(model: DiagramModel, pool: DiagramElement) -> bool:
    return bool(scope_shapes(model, pool.id))


def centre_elements_in_pools(model: DiagramModel) -> None:
    """Shift each pool's flow content to its vertical centre."""
    for pool in _participants(model):
        children = scope_shapes(model, pool.id)
        if not children:
            continue
        content_top = min(c.y for c in children)
        content_bottom = max(c.bottom for c in children)
        desired_top = pool.y + (pool.height - (content_bottom - content_top)) / 2
        dy = round(desired_top - content_top)
        if abs(dy) > RESIZE_SIGNIFICANCE_THRESHOLD:
            model.move_elements(children, 0, dy)


def enforce_expanded_pool_gap(model: DiagramModel) -> None:
    """Keep at least ``INTER_POOL_GAP_EXTRA`` between stacked expanded pools."""
    expanded = [p for p in _participants(model) if _is_expanded_pool(model, p)]
    if len(expanded) < 2:
        return
    expanded.sort(key=lambda p: p.y)
    for i in range(1, len(expanded)):
        gap = expanded[i].y - expanded[i - 1].bottom
        if gap < INTER_POOL_GAP_EXTRA:
            dy = round(INTER_POOL_GAP_EXTRA - gap)
            model.move_elements(expanded[i:], 0, dy)


def compact_pools(model: DiagramModel) -> None:
    """Shrink pools whose right edge runs far past their content.

    Pools whose lanes are laid out as columns keep their width.
    """
    for pool in _participants(model):
        if pool.properties.get("lane_columns"):
            continue
        children = scope_shapes(model, pool.id)
        if not children:
            continue
        desired_right = max(c.right for c in children) + POOL_COMPACT_RIGHT_PADDING
        if desired_right >= pool.right - RESIZE_SIGNIFICANCE_THRESHOLD:
            continue
        new_width = round(desired_right - pool.x)
        if new_width <= 0:
            continue
        model.resize_shape(pool, Bounds(pool.x, pool.y, new_width, pool.height))

        lane_width = pool.width - POOL_LABEL_BAND
        for lane in model.children_of(pool.id):
            if lane.type == LANE and abs(lane.width - lane_width) > RESIZE_SIGNIFICANCE_THRESHOLD:
                model.resize_shape(lane, Bounds(lane.x, lane.y, lane_width, lane.height))


def reorder_collapsed_pools_below(model: DiagramModel) -> None:
    """Stack collapsed (empty) pools below the expanded ones.

    Expanded pools are first raised so the topmost sits just below the
    layout origin; collapsed pools then take the expanded pools' x and
    width, one under the other.
    """
    participants = _participants(model)
    if len(participants) < 2:
        return
    expanded = [p for p in participants if _is_expanded_pool(model, p)]
    collapsed = [p for p in participants if not _is_expanded_pool(model, p)]
    if not expanded or not collapsed:
        return

    expanded.sort(key=lambda p: p.y)
    top = expanded[0].y
    if top > ORIGIN_OFFSET_Y + RESIZE_SIGNIFICANCE_THRESHOLD:
        dy = round(ORIGIN_OFFSET_Y + 2 - top)
        for pool in expanded:
            model.move_elements([pool], 0, dy)

    min_x = min(p.x for p in expanded)
    max_right = max(p.right for p in expanded)
    width = max_right - min_x
    next_y = max(p.bottom for p in expanded) + COLLAPSED_POOL_GAP

    collapsed.sort(key=lambda p: p.y)
    for pool in collapsed:
        dx = round(min_x - pool.x)
        dy = round(next_y - pool.y)
        if abs(dx) > 2 or abs(dy) > 2:
            model.move_elements([pool], dx if abs(dx) > 2 else 0, dy if abs(dy) > 2 else 0)
        if abs((pool.width or 0) - width) > RESIZE_SIGNIFICANCE_THRESHOLD:
            model.resize_shape(pool, Bounds(pool.x, pool.y, width, pool.height or COLLAPSED_POOL_DEFAULT_HEIGHT))
        next_y = pool.bottom + COLLAPSED_POOL_GAP


def normalise_origin(model: DiagramModel) -> None:
    """Push a plain process down so its topmost shape sits at the canonical origin.

    Collaborations are left alone.  Content already below the origin line
    is not pulled up.
    """
    if _participants(model):
        return
    root_id = root_container_id(model)
    shapes = [
        el for el in model.all()
        if is_layoutable_shape(el) and el.parent_id == root_id
    ]
    if not shapes:
        return
    top = min(el.y for el in shapes)
    delta = NORMALISE_ORIGIN_Y - top
    if delta > 2:
        model.move_elements(shapes, 0, delta)
