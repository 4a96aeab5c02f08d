"""Tests for routing around shapes."""

from bpmn_layout_mcp.avoidance import avoid_element_intersections, compute_detour
from bpmn_layout_mcp.geometry import is_orthogonal, path_intersects_rect
from bpmn_layout_mcp.models import (
    EXCLUSIVE_GATEWAY,
    PROCESS,
    TASK,
    DiagramElement,
    DiagramModel,
    Point,
)


def _fresh_diagram() -> DiagramModel:
    model = DiagramModel(name="test")
    model.add_shape(PROCESS, element_id="Process_1", width=0, height=0)
    return model


def _blocked_diagram(source_type: str = TASK) -> tuple[DiagramModel, DiagramElement]:
    model = _fresh_diagram()
    model.add_shape(source_type, element_id="A", x=0, y=0, width=100, height=80, parent_id="Process_1")
    model.add_shape(TASK, element_id="B", x=400, y=0, parent_id="Process_1")
    model.add_shape(TASK, element_id="Obstacle", x=200, y=10, width=100, height=60, parent_id="Process_1")
    conn = model.connect("A", "B")
    model.update_waypoints(conn, [Point(100, 40), Point(400, 40)])
    return model, conn


def test_detour_goes_over_obstacle() -> None:
    model, conn = _blocked_diagram()

    assert avoid_element_intersections(model) == 1

    obstacle = model.get("Obstacle")
    assert not path_intersects_rect(conn.waypoints, obstacle.bounds)
    assert is_orthogonal(conn.waypoints)
    assert [(p.x, p.y) for p in conn.waypoints] == [
        (100, 40), (185, 40), (185, -5), (315, -5), (315, 40), (400, 40),
    ]


def test_clear_route_untouched() -> None:
    model, conn = _blocked_diagram()
    model.update_waypoints(conn, [Point(100, 40), Point(150, 40), Point(150, 200),
                                  Point(350, 200), Point(350, 40), Point(400, 40)])
    assert avoid_element_intersections(model) == 0


def test_gateway_flows_skipped() -> None:
    model, _ = _blocked_diagram(source_type=EXCLUSIVE_GATEWAY)
    assert avoid_element_intersections(model) == 0


def test_compute_detour_prefers_free_side() -> None:
    obstacle = DiagramElement(id="O", type=TASK, x=200, y=10, width=100, height=60)
    above = DiagramElement(id="Above", type=TASK, x=220, y=-100, width=60, height=100)
    detour = compute_detour(Point(100, 40), Point(400, 40), obstacle, [obstacle, above])
    assert detour is not None
    assert detour[1].y == 85


def test_compute_detour_vertical_segment() -> None:
    obstacle = DiagramElement(id="O", type=TASK, x=0, y=100, width=100, height=80)
    detour = compute_detour(Point(50, 0), Point(50, 300), obstacle, [obstacle])
    assert detour[0].y == 85
    assert detour[1].x == -15
    assert detour[-1].y == 195
