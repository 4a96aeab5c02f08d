"""Tests for attached (boundary) event handling."""

from bpmn_layout_mcp.boundary import (
    BOTTOM,
    LEFT,
    TOP,
    choose_boundary_border,
    detect_current_border,
    reposition_boundary_events,
    restore_and_reposition,
    restore_boundary_events,
    save_boundary_events,
    settle_boundary_chains,
)
from bpmn_layout_mcp.models import BOUNDARY_EVENT, PROCESS, TASK, DiagramModel


def _host_diagram() -> DiagramModel:
    model = DiagramModel(name="test")
    model.add_shape(PROCESS, element_id="Process_1", width=0, height=0)
    model.add_shape(TASK, element_id="Host", x=200, y=100, parent_id="Process_1")
    model.add_shape(BOUNDARY_EVENT, element_id="BE", x=232, y=162, parent_id="Process_1", host_id="Host")
    return model


# ===================================================================
# Border choice
# ===================================================================


def test_target_below_and_slightly_right_picks_bottom() -> None:
    model = _host_diagram()
    model.add_shape(TASK, element_id="T", x=260, y=300, parent_id="Process_1")
    model.connect("BE", "T")
    assert choose_boundary_border(model, model.get("BE"), model.get("Host")) == BOTTOM


def test_target_above_picks_top() -> None:
    model = _host_diagram()
    model.add_shape(TASK, element_id="T", x=200, y=-200, parent_id="Process_1")
    model.connect("BE", "T")
    assert choose_boundary_border(model, model.get("BE"), model.get("Host")) == TOP


def test_target_behind_picks_left() -> None:
    model = _host_diagram()
    model.add_shape(TASK, element_id="T", x=-300, y=120, parent_id="Process_1")
    model.connect("BE", "T")
    assert choose_boundary_border(model, model.get("BE"), model.get("Host")) == LEFT


def test_target_ahead_never_picks_right() -> None:
    model = _host_diagram()
    model.add_shape(TASK, element_id="T", x=600, y=100, parent_id="Process_1")
    model.connect("BE", "T")
    assert choose_boundary_border(model, model.get("BE"), model.get("Host")) == BOTTOM


def test_no_outgoing_defaults_to_bottom() -> None:
    model = _host_diagram()
    assert choose_boundary_border(model, model.get("BE"), model.get("Host")) == BOTTOM


def test_detect_current_border() -> None:
    model = _host_diagram()
    assert detect_current_border(model.get("BE"), model.get("Host")) == BOTTOM


# ===================================================================
# Snapshot and repositioning
# ===================================================================


def test_restore_repairs_type_and_host() -> None:
    model = _host_diagram()
    snapshots = save_boundary_events(model)
    event = model.get("BE")
    model.set_property(event, "type", TASK)
    model.set_property(event, "host", None)

    assert restore_boundary_events(model, snapshots) == 1
    assert event.type == BOUNDARY_EVENT
    assert event.host_id == "Host"
    assert restore_boundary_events(model, snapshots) == 0


def test_drifted_event_snaps_back_to_bottom_centre() -> None:
    model = _host_diagram()
    event = model.get("BE")
    model.move_elements([event], 500, 500)

    moved = reposition_boundary_events(model)

    host = model.get("Host")
    assert moved == 1
    assert (event.cx, event.cy) == (host.cx, host.bottom)


def test_event_near_host_left_alone_without_snapshots() -> None:
    model = _host_diagram()
    assert reposition_boundary_events(model) == 0


def test_events_sharing_a_border_are_spread() -> None:
    model = _host_diagram()
    model.add_shape(BOUNDARY_EVENT, element_id="BE2", x=232, y=162, parent_id="Process_1", host_id="Host")

    restore_and_reposition(model, save_boundary_events(model))

    first, second = model.get("BE"), model.get("BE2")
    host = model.get("Host")
    assert abs(first.cx - second.cx) > 20
    assert first.cy == host.bottom
    assert second.cy == host.bottom
    assert host.x <= min(first.cx, second.cx) and max(first.cx, second.cx) <= host.right


def test_event_follows_host_move() -> None:
    model = _host_diagram()
    model.move_elements(["Host"], 100, 0)
    event = model.get("BE")
    assert event.x == 332


# ===================================================================
# Exception chains
# ===================================================================


def _chain_behind_host() -> DiagramModel:
    # Event on the left border, its target still at a stale spot behind the host
    model = _host_diagram()
    model.move_elements(["BE"], -50, -40)
    model.add_shape(TASK, element_id="X", x=-300, y=120, parent_id="Process_1")
    model.connect("BE", "X")
    return model


def test_settled_chain_moves_event_to_the_border_it_leaves_from() -> None:
    model = _chain_behind_host()
    snapshots = save_boundary_events(model)

    assert settle_boundary_chains(model, snapshots, {"X"}) > 0

    event, host, target = model.get("BE"), model.get("Host"), model.get("X")
    assert detect_current_border(event, host) == BOTTOM
    assert (event.cx, event.cy) == (250, 180)
    assert (target.cx, target.cy) == (340, 265)


def test_settling_twice_moves_nothing() -> None:
    model = _chain_behind_host()
    snapshots = save_boundary_events(model)
    settle_boundary_chains(model, snapshots, {"X"})
    before = {el_id: (model.get(el_id).x, model.get(el_id).y) for el_id in ("BE", "X")}

    assert settle_boundary_chains(model, snapshots, {"X"}) == 0
    assert {el_id: (model.get(el_id).x, model.get(el_id).y) for el_id in ("BE", "X")} == before
