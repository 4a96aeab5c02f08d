"""Tests for the diagram model and its JSON form."""

import pytest

from bpmn_layout_mcp.models import (
    BOUNDARY_EVENT,
    EXCLUSIVE_GATEWAY,
    LANE,
    MESSAGE_FLOW,
    PARTICIPANT,
    PROCESS,
    START_EVENT,
    SUBPROCESS,
    TASK,
    Bounds,
    DiagramError,
    DiagramModel,
    Point,
    default_size,
    diagram_from_dict,
    diagram_to_dict,
)


def _fresh_diagram() -> DiagramModel:
    model = DiagramModel(name="test")
    model.add_shape(PROCESS, element_id="Process_1", width=0, height=0)
    return model


# ===================================================================
# Creation
# ===================================================================


def test_default_sizes() -> None:
    assert default_size(TASK) == (100, 80)
    assert default_size(START_EVENT) == (36, 36)
    assert default_size(EXCLUSIVE_GATEWAY) == (50, 50)


def test_add_shape_defaults() -> None:
    model = _fresh_diagram()
    task = model.add_shape(TASK, x=10, y=20, parent_id="Process_1")
    assert task.id == "Task_1"
    assert (task.width, task.height) == (100, 80)
    assert task.parent_id == "Process_1"
    assert model.root().id == "Process_1"


def test_add_shape_unknown_parent() -> None:
    model = _fresh_diagram()
    with pytest.raises(DiagramError, match="Parent element not found"):
        model.add_shape(TASK, parent_id="Nope")


def test_duplicate_id() -> None:
    model = _fresh_diagram()
    model.add_shape(TASK, element_id="A")
    with pytest.raises(DiagramError, match="Duplicate"):
        model.add_shape(TASK, element_id="A")


def test_connect_centre_to_centre() -> None:
    model = _fresh_diagram()
    a = model.add_shape(TASK, x=0, y=0, element_id="A", parent_id="Process_1")
    b = model.add_shape(TASK, x=200, y=0, element_id="B", parent_id="Process_1")
    flow = model.connect("A", "B", element_id="F")
    assert [(p.x, p.y) for p in flow.waypoints] == [(a.cx, a.cy), (b.cx, b.cy)]
    assert flow.parent_id == "Process_1"
    assert model.outgoing("A") == [flow]
    assert model.incoming("B") == [flow]


def test_message_flow_parented_to_root() -> None:
    model = DiagramModel()
    model.add_shape("bpmn:Collaboration", element_id="Collab", width=0, height=0)
    model.add_shape(PARTICIPANT, element_id="P1", parent_id="Collab")
    model.add_shape(PARTICIPANT, element_id="P2", y=300, parent_id="Collab")
    model.add_shape(TASK, element_id="A", x=200, y=50, parent_id="P1")
    model.add_shape(TASK, element_id="B", x=200, y=350, parent_id="P2")
    msg = model.connect("A", "B", MESSAGE_FLOW)
    assert msg.parent_id == "Collab"


def test_connect_unknown_source() -> None:
    model = _fresh_diagram()
    model.add_shape(TASK, element_id="B")
    with pytest.raises(DiagramError, match="Source element not found"):
        model.connect("A", "B")


def test_update_waypoints_needs_two_points() -> None:
    model = _fresh_diagram()
    model.add_shape(TASK, element_id="A")
    model.add_shape(TASK, element_id="B", x=200)
    flow = model.connect("A", "B")
    with pytest.raises(DiagramError, match="at least 2"):
        model.update_waypoints(flow, [Point(0, 0)])


# ===================================================================
# move_elements
# ===================================================================


def test_move_drags_children_and_attached_events() -> None:
    model = _fresh_diagram()
    sub = model.add_shape(SUBPROCESS, element_id="Sub", x=0, y=0, parent_id="Process_1")
    inner = model.add_shape(TASK, element_id="Inner", x=20, y=30, parent_id="Sub")
    be = model.add_shape(BOUNDARY_EVENT, element_id="BE", x=100, y=182, parent_id="Process_1", host_id="Sub")

    model.move_elements([sub], 50, 10)

    assert (sub.x, sub.y) == (50, 10)
    assert (inner.x, inner.y) == (70, 40)
    assert (be.x, be.y) == (150, 192)


def test_move_translates_touching_endpoints_only() -> None:
    model = _fresh_diagram()
    model.add_shape(TASK, element_id="A", x=0, y=0)
    model.add_shape(TASK, element_id="B", x=300, y=0)
    flow = model.connect("A", "B")
    model.update_waypoints(flow, [Point(100, 40), Point(200, 40), Point(200, 40), Point(300, 40)])

    model.move_elements(["B"], 0, 100)

    assert (flow.waypoints[0].x, flow.waypoints[0].y) == (100, 40)
    assert (flow.waypoints[1].x, flow.waypoints[1].y) == (200, 40)
    assert (flow.waypoints[-1].x, flow.waypoints[-1].y) == (300, 140)


def test_move_both_ends_moves_whole_route() -> None:
    model = _fresh_diagram()
    model.add_shape(TASK, element_id="A", x=0, y=0)
    model.add_shape(TASK, element_id="B", x=300, y=0)
    flow = model.connect("A", "B")
    model.update_waypoints(flow, [Point(100, 40), Point(200, 40), Point(300, 40)])

    model.move_elements(["A", "B"], 10, 10)

    assert [(p.x, p.y) for p in flow.waypoints] == [(110, 50), (210, 50), (310, 50)]


def test_move_updates_lane_membership() -> None:
    model = _fresh_diagram()
    model.add_shape(PARTICIPANT, element_id="Pool", x=0, y=0, width=600, height=300)
    top = model.add_shape(LANE, element_id="Top", x=30, y=0, width=570, height=150, parent_id="Pool")
    bottom = model.add_shape(LANE, element_id="Bottom", x=30, y=150, width=570, height=150, parent_id="Pool")
    model.add_shape(TASK, element_id="T", x=100, y=35, parent_id="Pool")
    model.set_property(top, "flow_node_refs", ["T"])

    model.move_elements(["T"], 0, 150)

    assert "T" not in top.flow_node_refs
    assert bottom.flow_node_refs == ["T"]


def test_resize_shape() -> None:
    model = _fresh_diagram()
    model.add_shape(TASK, element_id="A")
    model.resize_shape("A", Bounds(5, 6, 70, 80))
    el = model.get("A")
    assert (el.x, el.y, el.width, el.height) == (5, 6, 70, 80)


def test_bounds_helpers() -> None:
    b = Bounds(0, 0, 100, 50)
    assert (b.right, b.bottom, b.cx, b.cy) == (100, 50, 50, 25)
    assert b.intersects(Bounds(90, 40, 20, 20))
    assert not b.intersects(Bounds(101, 0, 10, 10))
    assert b.contains_point(100, 50)


# ===================================================================
# Serialization
# ===================================================================


def test_round_trip_keeps_structure() -> None:
    model = _fresh_diagram()
    model.add_shape(START_EVENT, element_id="S", x=0, y=22, parent_id="Process_1", name="Go")
    model.add_shape(TASK, element_id="A", x=100, y=0, parent_id="Process_1")
    model.add_shape(BOUNDARY_EVENT, element_id="BE", x=132, y=62, parent_id="Process_1", host_id="A")
    flow = model.connect("S", "A", element_id="F1", is_default=True)
    model.update_waypoints(flow, [Point(36, 40), Point(100, 40)])

    data = diagram_to_dict(model)
    restored = diagram_from_dict(data)

    assert [el.id for el in restored.all()] == [el.id for el in model.all()]
    assert restored.get("S").name == "Go"
    assert restored.get("BE").host_id == "A"
    f1 = restored.get("F1")
    assert f1.is_default
    assert [(p.x, p.y) for p in f1.waypoints] == [(36, 40), (100, 40)]


def test_from_dict_defaults_sizes_and_routes() -> None:
    model = diagram_from_dict({"elements": [
        {"id": "G", "type": EXCLUSIVE_GATEWAY, "x": 0, "y": 0},
        {"id": "T", "type": TASK, "x": 200, "y": 0},
        {"id": "F", "type": "bpmn:SequenceFlow", "source": "G", "target": "T"},
    ]})
    assert (model.get("G").width, model.get("G").height) == (50, 50)
    assert len(model.get("F").waypoints) == 2


def test_from_dict_dangling_reference() -> None:
    with pytest.raises(DiagramError, match="unknown target"):
        diagram_from_dict({"elements": [
            {"id": "A", "type": TASK},
            {"id": "F", "type": "bpmn:SequenceFlow", "source": "A", "target": "Z"},
        ]})


def test_from_dict_unknown_parent() -> None:
    with pytest.raises(DiagramError, match="unknown parent"):
        diagram_from_dict({"elements": [{"id": "A", "type": TASK, "parent": "Nowhere"}]})
