"""
Lane tiling and lane-aware flow routing.

Lanes are not part of the engine graph: the engine lays out a pool's
flow nodes as one flat graph.  Afterwards each lane gets its own band
(a row, or a column for vertical layouts), its members move into the
band and the lane shapes are tiled inside the pool.

Lane membership comes from a snapshot taken before layout, because every
``move_elements`` call re-derives live membership from node centres and
nodes pass through other lanes while being moved.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from bpmn_layout_mcp.constants import (
    CROSS_LANE_BACKWARD_MARGIN,
    DIFFERENT_ROW_MIN_Y,
    LANE_CLAMP_MARGIN,
    LANE_HORIZONTAL_PADDING,
    LANE_VERTICAL_PADDING,
    LOOPBACK_HORIZONTAL_MARGIN,
    MIN_LANE_HEIGHT,
    MIN_LANE_WIDTH,
    POOL_LABEL_BAND,
)
from bpmn_layout_mcp.geometry import deduplicate_waypoints
from bpmn_layout_mcp.helpers import is_layoutable_shape, median
from bpmn_layout_mcp.models import (
    LANE,
    PARTICIPANT,
    SEQUENCE_FLOW,
    Bounds,
    DiagramElement,
    DiagramModel,
    Point,
)

logger = logging.getLogger(__name__)

# Lanes beyond this count are ordered greedily instead of exhaustively
BRUTE_FORCE_LANE_LIMIT = 6
HORIZONTAL_TOLERANCE = 2


@dataclass(frozen=True)
class LaneSnapshot:
    """A lane's members and original position, captured before layout."""
    lane_id: str
    original_x: float
    original_y: float
    node_ids: frozenset[str]


def save_lane_assignments(model: DiagramModel) -> list[LaneSnapshot]:
    snapshots = []
    for lane in model.filter(lambda el: el.type == LANE):
        ids = frozenset(ref for ref in lane.flow_node_refs if ref in model)
        snapshots.append(LaneSnapshot(lane.id, lane.x, lane.y, ids))
    return snapshots


def _live_assignments(lanes: Iterable[DiagramElement], model: DiagramModel) -> dict[str, set[str]]:
    return {lane.id: {ref for ref in lane.flow_node_refs if ref in model} for lane in lanes}


def _node_to_lane(model: DiagramModel) -> dict[str, DiagramElement]:
    result: dict[str, DiagramElement] = {}
    for lane in model.filter(lambda el: el.type == LANE):
        for ref in lane.flow_node_refs:
            if ref in model:
                result[ref] = lane
    return result


# ---------------------------------------------------------------------------
# Lane order
# ---------------------------------------------------------------------------

def lane_order_cost(order: list[str], pairs: list[tuple[str, str]]) -> int:
    """Sum of lane-index distances over cross-lane flows."""
    index = {lane_id: i for i, lane_id in enumerate(order)}
    return sum(abs(index[a] - index[b]) for a, b in pairs if a in index and b in index)


def optimize_lane_order(
    model: DiagramModel,
    lanes: list[DiagramElement],
    assignments: dict[str, set[str]],
) -> list[DiagramElement]:
    """Reorder lanes so connected lanes end up next to each other.

    Exhaustive up to ``BRUTE_FORCE_LANE_LIMIT`` lanes, adjacent swaps
    beyond that.  Ties keep the current order.
    """
    node_lane = {node: lane_id for lane_id, nodes in assignments.items() for node in nodes}
    pairs = []
    for flow in model.filter(lambda el: el.type == SEQUENCE_FLOW):
        a = node_lane.get(flow.source_id)
        b = node_lane.get(flow.target_id)
        if a and b and a != b:
            pairs.append((a, b))
    if not pairs:
        return lanes

    by_id = {lane.id: lane for lane in lanes}
    ids = [lane.id for lane in lanes]
    best = ids
    best_cost = lane_order_cost(ids, pairs)

    if len(ids) <= BRUTE_FORCE_LANE_LIMIT:
        for perm in itertools.permutations(ids):
            cost = lane_order_cost(list(perm), pairs)
            if cost < best_cost:
                best, best_cost = list(perm), cost
    else:
        order = list(ids)
        improved = True
        while improved:
            improved = False
            for i in range(len(order) - 1):
                order[i], order[i + 1] = order[i + 1], order[i]
                cost = lane_order_cost(order, pairs)
                if cost < best_cost:
                    best_cost = cost
                    improved = True
                else:
                    order[i], order[i + 1] = order[i + 1], order[i]
        best = order
    return [by_id[i] for i in best]


# ---------------------------------------------------------------------------
# Repositioning
# ---------------------------------------------------------------------------

def _pool_assignments(
    model: DiagramModel,
    pool: DiagramElement,
    lanes: list[DiagramElement],
    snapshots: Optional[list[LaneSnapshot]],
    vertical: bool,
) -> tuple[list[DiagramElement], dict[str, set[str]]]:
    """Members per lane plus the initial lane order."""
    if snapshots:
        lane_ids = {lane.id for lane in lanes}
        pool_snaps = {s.lane_id: s for s in snapshots if s.lane_id in lane_ids}
        assignments = {lane.id: set(pool_snaps[lane.id].node_ids) if lane.id in pool_snaps else set()
                       for lane in lanes}

        def sort_key(lane: DiagramElement) -> tuple[float, float]:
            snap = pool_snaps.get(lane.id)
            ox = snap.original_x if snap else lane.x
            oy = snap.original_y if snap else lane.y
            return (round(ox / 10), oy) if vertical else (oy, 0)

        ordered = sorted(lanes, key=sort_key)
    else:
        assignments = _live_assignments(lanes, model)
        ordered = sorted(lanes, key=lambda ln: ln.x if vertical else ln.y)

    # Orphans go to the nearest lane
    assigned = set().union(*assignments.values()) if assignments else set()
    for orphan in model.children_of(pool.id):
        if not is_layoutable_shape(orphan) or orphan.id in assigned:
            continue
        if vertical:
            nearest = min(ordered, key=lambda ln: abs(ln.cx - orphan.cx))
        else:
            nearest = min(ordered, key=lambda ln: abs(ln.cy - orphan.cy))
        assignments[nearest.id].add(orphan.id)
    return ordered, assignments


def _members(model: DiagramModel, ids: set[str]) -> list[DiagramElement]:
    return [el for el in (model.get(i) for i in ids) if el is not None]


def reposition_lanes(
    model: DiagramModel,
    snapshots: Optional[list[LaneSnapshot]] = None,
    lane_strategy: str = "preserve",
    direction: str = "RIGHT",
) -> int:
    """Tile every pool's lanes and move lane members into their band.

    Band size is the members' span plus padding, at least
    ``MIN_LANE_HEIGHT`` (``MIN_LANE_WIDTH`` for columns).  When the pool
    is already larger than the summed bands, bands grow proportionally
    to fill it.  Members keep their relative offsets: the lane's median
    centre moves to the band centre.  Lane membership is rewritten from
    the snapshot afterwards.

    Returns:
        Number of pools processed.
    """
    vertical = direction in ("DOWN", "UP")
    handled = 0
    for pool in model.filter(lambda el: el.type == PARTICIPANT):
        lanes = [el for el in model.children_of(pool.id) if el.type == LANE]
        if not lanes:
            continue
        ordered, assignments = _pool_assignments(model, pool, lanes, snapshots, vertical)
        if not any(assignments.values()):
            continue
        if lane_strategy == "optimize" and len(ordered) > 1:
            ordered = optimize_lane_order(model, ordered, assignments)

        if vertical:
            _tile_columns(model, pool, ordered, assignments)
        else:
            _tile_rows(model, pool, ordered, assignments)

        for lane in ordered:
            model.set_property(lane, "flow_node_refs", sorted(assignments[lane.id]))
        handled += 1
    return handled


def _tile_rows(
    model: DiagramModel,
    pool: DiagramElement,
    lanes: list[DiagramElement],
    assignments: dict[str, set[str]],
) -> None:
    bands: dict[str, float] = {}
    for lane in lanes:
        members = _members(model, assignments[lane.id])
        span = max(m.bottom for m in members) - min(m.y for m in members) if members else 0
        bands[lane.id] = max(span + 2 * LANE_VERTICAL_PADDING, MIN_LANE_HEIGHT)

    total = sum(bands.values())
    if pool.height > total:
        scale = pool.height / total
        bands = {k: v * scale for k, v in bands.items()}
        total = pool.height

    band_y = pool.y
    for lane in lanes:
        height = round(bands[lane.id])
        members = _members(model, assignments[lane.id])
        if members:
            dy = round(band_y + height / 2 - median([m.cy for m in members]))
            if abs(dy) > 1:
                model.move_elements(members, 0, dy)
        model.resize_shape(lane, Bounds(pool.x + POOL_LABEL_BAND, band_y, pool.width - POOL_LABEL_BAND, height))
        band_y += height

    new_height = band_y - pool.y
    if abs(pool.height - new_height) > 1:
        model.resize_shape(pool, Bounds(pool.x, pool.y, pool.width, new_height))


def _tile_columns(
    model: DiagramModel,
    pool: DiagramElement,
    lanes: list[DiagramElement],
    assignments: dict[str, set[str]],
) -> None:
    widths: dict[str, float] = {}
    for lane in lanes:
        members = _members(model, assignments[lane.id])
        span = max(m.right for m in members) - min(m.x for m in members) if members else 0
        widths[lane.id] = max(span + 2 * LANE_HORIZONTAL_PADDING, MIN_LANE_WIDTH)

    lane_height = max(pool.height, MIN_LANE_HEIGHT)
    band_x = pool.x + POOL_LABEL_BAND
    for lane in lanes:
        width = round(widths[lane.id])
        members = _members(model, assignments[lane.id])
        if members:
            dx = round(band_x + width / 2 - median([m.cx for m in members]))
            if abs(dx) > 1:
                model.move_elements(members, dx, 0)
        model.resize_shape(lane, Bounds(band_x, pool.y, width, lane_height))
        band_x += width

    model.resize_shape(pool, Bounds(pool.x, pool.y, band_x - pool.x, lane_height))
    model.set_property(pool, "lane_columns", True)


# ---------------------------------------------------------------------------
# Flow routing across lanes
# ---------------------------------------------------------------------------

def _clamp_rows(points: list[Point], min_y: float, max_y: float) -> None:
    """Clamp y while keeping runs of level points level."""
    i = 0
    while i < len(points):
        j = i + 1
        while j < len(points) and abs(points[j].y - points[i].y) <= HORIZONTAL_TOLERANCE:
            j += 1
        avg = sum(p.y for p in points[i:j]) / (j - i)
        clamped = max(min_y, min(max_y, avg))
        for k in range(i, j):
            points[k].y = clamped
        i = j


def clamp_flows_to_lane_bounds(model: DiagramModel) -> int:
    """Keep routes of flows inside one lane within that lane's band."""
    node_lane = _node_to_lane(model)
    if not node_lane:
        return 0
    changed = 0
    for conn in model.filter(lambda el: el.type == SEQUENCE_FLOW):
        if len(conn.waypoints) < 2:
            continue
        lane = node_lane.get(conn.source_id)
        if lane is None or node_lane.get(conn.target_id) is not lane:
            continue
        min_y = lane.y + LANE_CLAMP_MARGIN
        max_y = lane.bottom - LANE_CLAMP_MARGIN
        if all(min_y <= p.y <= max_y for p in conn.waypoints):
            continue
        points = [p.copy() for p in conn.waypoints]
        _clamp_rows(points, min_y, max_y)
        model.update_waypoints(conn, points)
        changed += 1
    return changed


def route_cross_lane_staircase(model: DiagramModel) -> int:
    """Rebuild flows between row lanes as orthogonal staircases.

    One lane apart: a Z through the gap midpoint.  Further apart: one
    step per lane crossed, evenly spaced between source and target,
    passing along each intermediate lane's centre line.  Backward flows
    go around the lanes above or below, like loopbacks.
    """
    lanes = model.filter(lambda el: el.type == LANE)
    if len(lanes) < 2:
        return 0
    node_lane = _node_to_lane(model)
    changed = 0

    for conn in model.filter(lambda el: el.type == SEQUENCE_FLOW):
        src = model.source_of(conn)
        tgt = model.target_of(conn)
        if src is None or tgt is None or len(conn.waypoints) < 2:
            continue
        src_lane = node_lane.get(src.id)
        tgt_lane = node_lane.get(tgt.id)
        if src_lane is None or tgt_lane is None or src_lane is tgt_lane:
            continue
        if src_lane.parent_id != tgt_lane.parent_id:
            continue
        pool = model.get(src_lane.parent_id)
        if pool is not None and pool.properties.get("lane_columns"):
            continue

        siblings = sorted((ln for ln in lanes if ln.parent_id == src_lane.parent_id), key=lambda ln: ln.y)
        src_cy = round(src.cy)
        tgt_cy = round(tgt.cy)
        src_right = round(src.right)
        tgt_left = round(tgt.x)

        if tgt_left <= src_right:
            exit_x = src_right + LOOPBACK_HORIZONTAL_MARGIN
            entry_x = tgt_left - LOOPBACK_HORIZONTAL_MARGIN
            if tgt.cy < src.cy - DIFFERENT_ROW_MIN_Y:
                detour_y = round(min(ln.y for ln in siblings) - CROSS_LANE_BACKWARD_MARGIN)
            else:
                detour_y = round(max(ln.bottom for ln in siblings) + CROSS_LANE_BACKWARD_MARGIN)
            points = [
                Point(src_right, src_cy), Point(exit_x, src_cy), Point(exit_x, detour_y),
                Point(entry_x, detour_y), Point(entry_x, tgt_cy), Point(tgt_left, tgt_cy),
            ]
        else:
            si = siblings.index(src_lane)
            ti = siblings.index(tgt_lane)
            step = 1 if ti > si else -1
            rows = [round(siblings[i].cy) for i in range(si + step, ti, step)] + [tgt_cy]
            points = [Point(src_right, src_cy)]
            current_y = src_cy
            for n, row_y in enumerate(rows):
                x = round(src_right + (n + 1) / (len(rows) + 1) * (tgt_left - src_right))
                points.append(Point(x, current_y))
                points.append(Point(x, row_y))
                current_y = row_y
            points.append(Point(tgt_left, tgt_cy))

        cleaned = deduplicate_waypoints(points)
        if len(cleaned) >= 2:
            model.update_waypoints(conn, cleaned)
            changed += 1
    return changed
