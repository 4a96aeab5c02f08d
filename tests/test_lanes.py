"""Tests for lane tiling and cross-lane routing."""

from bpmn_layout_mcp.geometry import is_orthogonal
from bpmn_layout_mcp.lanes import (
    clamp_flows_to_lane_bounds,
    lane_order_cost,
    optimize_lane_order,
    reposition_lanes,
    route_cross_lane_staircase,
    save_lane_assignments,
)
from bpmn_layout_mcp.models import (
    COLLABORATION,
    LANE,
    PARTICIPANT,
    TASK,
    DiagramModel,
    Point,
)


def _pool_with_lanes(*lanes: tuple[str, list[str]], lane_height: float = 150) -> DiagramModel:
    """A collaboration with one pool whose row lanes get the given members."""
    model = DiagramModel(name="lanes")
    model.add_shape(COLLABORATION, element_id="Collab", width=0, height=0)
    model.add_shape(PARTICIPANT, element_id="Pool", x=0, y=0, width=800,
                    height=lane_height * len(lanes), parent_id="Collab")
    for i, (lane_id, refs) in enumerate(lanes):
        model.add_shape(LANE, element_id=lane_id, x=30, y=i * lane_height, width=770,
                        height=lane_height, parent_id="Pool", flow_node_refs=list(refs))
    return model


def _task(model: DiagramModel, element_id: str, x: float, y: float) -> None:
    model.add_shape(TASK, element_id=element_id, x=x, y=y, parent_id="Pool")


# ===================================================================
# Lane order
# ===================================================================


def test_lane_order_cost() -> None:
    pairs = [("L1", "L3"), ("L1", "L2")]
    assert lane_order_cost(["L1", "L2", "L3"], pairs) == 3
    assert lane_order_cost(["L2", "L1", "L3"], pairs) == 2


def test_optimize_lane_order_brings_connected_lanes_together() -> None:
    model = _pool_with_lanes(("L1", ["A"]), ("L2", ["B"]), ("L3", ["C"]))
    _task(model, "A", 100, 35)
    _task(model, "B", 300, 185)
    _task(model, "C", 500, 335)
    model.connect("A", "C")

    lanes = [model.get(i) for i in ("L1", "L2", "L3")]
    assignments = {"L1": {"A"}, "L2": {"B"}, "L3": {"C"}}
    ordered = optimize_lane_order(model, lanes, assignments)

    assert [ln.id for ln in ordered] == ["L1", "L3", "L2"]


def test_optimize_lane_order_without_cross_lane_flows_keeps_order() -> None:
    model = _pool_with_lanes(("L1", ["A"]), ("L2", ["B"]))
    _task(model, "A", 100, 35)
    _task(model, "B", 300, 185)
    lanes = [model.get("L1"), model.get("L2")]
    assert optimize_lane_order(model, lanes, {"L1": {"A"}, "L2": {"B"}}) == lanes


# ===================================================================
# Repositioning
# ===================================================================


def test_members_moved_into_their_band() -> None:
    model = _pool_with_lanes(("Top", ["A"]), ("Bottom", ["B"]))
    _task(model, "A", 100, 200)
    _task(model, "B", 300, 10)
    snapshots = save_lane_assignments(model)

    assert reposition_lanes(model, snapshots) == 1

    top, bottom = model.get("Top"), model.get("Bottom")
    a, b = model.get("A"), model.get("B")
    assert top.y <= a.cy <= top.bottom
    assert bottom.y <= b.cy <= bottom.bottom
    assert top.flow_node_refs == ["A"]
    assert bottom.flow_node_refs == ["B"]
    assert top.bottom == bottom.y


def test_lanes_tile_the_pool() -> None:
    model = _pool_with_lanes(("Top", ["A"]), ("Bottom", ["B"]))
    _task(model, "A", 100, 35)
    _task(model, "B", 300, 185)

    reposition_lanes(model, save_lane_assignments(model))

    pool = model.get("Pool")
    top, bottom = model.get("Top"), model.get("Bottom")
    assert top.y == pool.y
    assert bottom.bottom == pool.bottom
    assert top.x == bottom.x


def test_orphan_goes_to_nearest_lane() -> None:
    model = _pool_with_lanes(("Top", ["A"]), ("Bottom", []))
    _task(model, "A", 100, 35)
    _task(model, "Orphan", 300, 190)

    reposition_lanes(model, save_lane_assignments(model))

    assert model.get("Bottom").flow_node_refs == ["Orphan"]


# ===================================================================
# Flow routing
# ===================================================================


def test_same_lane_flow_clamped_to_band() -> None:
    model = _pool_with_lanes(("Top", ["A", "B"]), ("Bottom", []))
    _task(model, "A", 100, 35)
    _task(model, "B", 400, 35)
    conn = model.connect("A", "B")
    model.update_waypoints(conn, [Point(200, 75), Point(250, 75), Point(250, 200),
                                  Point(350, 200), Point(350, 75), Point(400, 75)])

    assert clamp_flows_to_lane_bounds(model) == 1

    ys = [p.y for p in conn.waypoints]
    assert max(ys) == 145
    assert ys[0] == 75 and ys[-1] == 75


def test_flow_across_two_lanes_becomes_staircase() -> None:
    model = _pool_with_lanes(("Top", ["A"]), ("Middle", []), ("Bottom", ["B"]))
    _task(model, "A", 100, 35)
    _task(model, "B", 400, 335)
    conn = model.connect("A", "B")

    assert route_cross_lane_staircase(model) == 1

    assert is_orthogonal(conn.waypoints)
    assert (conn.waypoints[0].x, conn.waypoints[0].y) == (200, 75)
    assert (conn.waypoints[-1].x, conn.waypoints[-1].y) == (400, 375)
    assert any(p.y == 225 for p in conn.waypoints)


def test_adjacent_lanes_get_single_step() -> None:
    model = _pool_with_lanes(("Top", ["A"]), ("Bottom", ["B"]))
    _task(model, "A", 100, 35)
    _task(model, "B", 400, 185)
    conn = model.connect("A", "B")

    route_cross_lane_staircase(model)

    assert [(p.x, p.y) for p in conn.waypoints] == [(200, 75), (300, 75), (300, 225), (400, 225)]


def test_backward_cross_lane_flow_goes_around() -> None:
    model = _pool_with_lanes(("Top", ["A"]), ("Bottom", ["B"]))
    _task(model, "A", 400, 35)
    _task(model, "B", 100, 185)
    conn = model.connect("A", "B")

    route_cross_lane_staircase(model)

    assert max(p.y for p in conn.waypoints) == 320
    assert is_orthogonal(conn.waypoints)


def test_single_lane_pool_untouched() -> None:
    model = _pool_with_lanes(("Only", ["A", "B"]))
    _task(model, "A", 100, 35)
    _task(model, "B", 400, 35)
    model.connect("A", "B")
    assert route_cross_lane_staircase(model) == 0
