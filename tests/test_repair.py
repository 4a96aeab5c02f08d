"""Tests for the route repair passes."""

from bpmn_layout_mcp.geometry import is_orthogonal
from bpmn_layout_mcp.models import (
    EXCLUSIVE_GATEWAY,
    PROCESS,
    START_EVENT,
    TASK,
    DiagramElement,
    DiagramModel,
    Point,
)
from bpmn_layout_mcp.repair import (
    ShapeDocking,
    bundle_parallel_flows,
    dock_endpoints,
    fix_disconnected_edges,
    insert_elbows,
    rebuild_off_row_gateway_routes,
    remove_micro_bends,
    route_loopbacks,
    separate_overlapping_gateway_flows,
    simplify_collinear_waypoints,
    snap_endpoints_to_element_centres,
)


def _fresh_diagram() -> DiagramModel:
    model = DiagramModel(name="test")
    model.add_shape(PROCESS, element_id="Process_1", width=0, height=0)
    return model


def _shape(model: DiagramModel, element_id: str, x: float, y: float, element_type: str = TASK) -> DiagramElement:
    return model.add_shape(element_type, element_id=element_id, x=x, y=y, parent_id="Process_1")


def _route(model: DiagramModel, source: str, target: str, *coords: tuple[float, float],
           element_id: str = None) -> DiagramElement:
    conn = model.connect(source, target, element_id=element_id)
    model.update_waypoints(conn, [Point(x, y) for x, y in coords])
    return conn


def _coords(conn: DiagramElement) -> list[tuple[float, float]]:
    return [(p.x, p.y) for p in conn.waypoints]


# ===================================================================
# Endpoint repair
# ===================================================================


class TestFixDisconnectedEdges:
    def test_same_row_rebuilt_straight(self) -> None:
        model = _fresh_diagram()
        _shape(model, "A", 0, 0)
        _shape(model, "B", 300, 0)
        conn = _route(model, "A", "B", (500, 500), (600, 600))

        assert fix_disconnected_edges(model) == 1
        assert _coords(conn) == [(100, 40), (300, 40)]

    def test_different_rows_rebuilt_as_z(self) -> None:
        model = _fresh_diagram()
        _shape(model, "A", 0, 0)
        _shape(model, "B", 300, 200)
        conn = _route(model, "A", "B", (500, 500), (600, 600))

        fix_disconnected_edges(model)
        assert _coords(conn) == [(100, 40), (200, 40), (200, 240), (300, 240)]

    def test_attached_routes_untouched(self) -> None:
        model = _fresh_diagram()
        _shape(model, "A", 0, 0)
        _shape(model, "B", 300, 0)
        _route(model, "A", "B", (100, 40), (300, 40))
        assert fix_disconnected_edges(model) == 0


def test_snap_endpoints_to_element_centres() -> None:
    model = _fresh_diagram()
    _shape(model, "A", 0, 0)
    _shape(model, "B", 300, 0)
    conn = _route(model, "A", "B", (100, 45), (300, 45))

    assert snap_endpoints_to_element_centres(model) == 1
    assert _coords(conn) == [(100, 40), (300, 40)]


# ===================================================================
# Docking
# ===================================================================


class TestShapeDocking:
    def test_event_endpoint_docks_on_circle(self) -> None:
        model = _fresh_diagram()
        _shape(model, "S", 0, 0, START_EVENT)
        _shape(model, "T", 200, 0)
        conn = _route(model, "S", "T", (36, 28), (200, 28))

        points = ShapeDocking().cropped_waypoints(model, conn)

        assert (points[0].x, points[0].y) == (33, 28)
        assert (points[-1].x, points[-1].y) == (200, 28)

    def test_gateway_endpoint_docks_on_diamond(self) -> None:
        model = _fresh_diagram()
        _shape(model, "G", 0, 0, EXCLUSIVE_GATEWAY)
        _shape(model, "T", 200, -5)
        conn = _route(model, "G", "T", (50, 35), (200, 35))

        points = ShapeDocking().cropped_waypoints(model, conn)
        assert points[0].x == 40

    def test_dock_endpoints_counts_changes(self) -> None:
        model = _fresh_diagram()
        _shape(model, "S", 0, 0, START_EVENT)
        _shape(model, "T", 200, 0)
        _route(model, "S", "T", (36, 28), (200, 28))
        assert dock_endpoints(model, ShapeDocking()) == 1
        assert dock_endpoints(model, ShapeDocking()) == 0

    def test_without_docking_snaps_to_centres(self) -> None:
        model = _fresh_diagram()
        _shape(model, "A", 0, 0)
        _shape(model, "B", 300, 0)
        conn = _route(model, "A", "B", (100, 45), (300, 45))
        dock_endpoints(model, None)
        assert _coords(conn) == [(100, 40), (300, 40)]


# ===================================================================
# Route rebuilding
# ===================================================================


def test_split_gateway_leaves_through_corner() -> None:
    model = _fresh_diagram()
    _shape(model, "G", 0, 15, EXCLUSIVE_GATEWAY)
    _shape(model, "T", 200, 200)
    conn = _route(model, "G", "T", (50, 40), (200, 240))

    assert rebuild_off_row_gateway_routes(model) == 1
    assert _coords(conn) == [(25, 65), (25, 240), (200, 240)]


def test_join_gateway_entered_through_corner() -> None:
    model = _fresh_diagram()
    _shape(model, "A", 0, 200)
    _shape(model, "J", 300, 15, EXCLUSIVE_GATEWAY)
    conn = _route(model, "A", "J", (100, 240), (300, 40))

    rebuild_off_row_gateway_routes(model)
    assert _coords(conn) == [(100, 240), (325, 240), (325, 65)]


def test_collinear_gateway_branches_separated() -> None:
    model = _fresh_diagram()
    _shape(model, "G", 0, 15, EXCLUSIVE_GATEWAY)
    _shape(model, "Near", 150, 0)
    _shape(model, "Far", 350, 0)
    near = _route(model, "G", "Near", (50, 40), (150, 40))
    far = _route(model, "G", "Far", (50, 40), (350, 40))

    assert separate_overlapping_gateway_flows(model) == 1
    assert _coords(near) == [(50, 40), (150, 40)]
    assert _coords(far) == [(50, 40), (50, 20), (350, 20), (350, 40)]


def test_simplify_collinear_waypoints() -> None:
    model = _fresh_diagram()
    _shape(model, "A", 0, 0)
    _shape(model, "B", 300, 0)
    conn = _route(model, "A", "B", (100, 40), (150, 40), (200, 40), (300, 40))
    assert simplify_collinear_waypoints(model) == 1
    assert _coords(conn) == [(100, 40), (300, 40)]


class TestMicroBends:
    def test_inner_jog_collapsed(self) -> None:
        model = _fresh_diagram()
        _shape(model, "A", 0, 0)
        _shape(model, "B", 300, 100)
        conn = _route(model, "A", "B", (100, 40), (150, 40), (150, 43), (200, 43), (200, 140), (300, 140))

        assert remove_micro_bends(model) == 1
        assert _coords(conn) == [(100, 40), (200, 40), (200, 140), (300, 140)]

    def test_jog_between_endpoint_runs_kept(self) -> None:
        model = _fresh_diagram()
        _shape(model, "A", 0, 0)
        _shape(model, "B", 300, 3)
        _route(model, "A", "B", (100, 40), (150, 40), (150, 43), (300, 43))
        assert remove_micro_bends(model) == 0


class TestLoopbacks:
    def test_backward_flow_goes_under(self) -> None:
        model = _fresh_diagram()
        _shape(model, "A", 0, 0)
        _shape(model, "B", 300, 0)
        conn = _route(model, "B", "A", (300, 40), (100, 40))

        assert route_loopbacks(model) == 1
        assert _coords(conn) == [
            (400, 40), (415, 40), (415, 110), (-15, 110), (-15, 40), (0, 40),
        ]
        assert is_orthogonal(conn.waypoints)

    def test_backward_flow_to_higher_target_goes_over(self) -> None:
        model = _fresh_diagram()
        _shape(model, "A", 0, 0)
        _shape(model, "B", 300, 200)
        conn = _route(model, "B", "A", (300, 240), (100, 40))

        route_loopbacks(model)
        assert min(p.y for p in conn.waypoints) == -30

    def test_forward_flow_untouched(self) -> None:
        model = _fresh_diagram()
        _shape(model, "A", 0, 0)
        _shape(model, "B", 300, 0)
        _route(model, "A", "B", (100, 40), (300, 40))
        assert route_loopbacks(model) == 0


def test_bundle_parallel_flows() -> None:
    model = _fresh_diagram()
    _shape(model, "A", 0, 0)
    _shape(model, "B", 300, 200)
    first = _route(model, "A", "B", (100, 40), (200, 40), (200, 240), (300, 240))
    second = _route(model, "A", "B", (100, 40), (200, 40), (200, 240), (300, 240))

    assert bundle_parallel_flows(model) == 2
    assert second.waypoints[1].y - first.waypoints[1].y == 10
    assert first.waypoints[0].y == 40


def test_insert_elbows() -> None:
    model = _fresh_diagram()
    _shape(model, "A", 0, 0)
    _shape(model, "B", 300, 200)
    conn = _route(model, "A", "B", (0, 0), (100, 50))
    assert insert_elbows(model) == 1
    assert _coords(conn) == [(0, 0), (100, 0), (100, 50)]
    assert insert_elbows(model) == 0
