"""End-to-end tests for the full layout pipeline (pure-Python engine)."""

import asyncio

import pytest

from bpmn_layout_mcp.boundary import BOTTOM, detect_current_border
from bpmn_layout_mcp.engines import LayeredLayoutEngine
from bpmn_layout_mcp.errors import ScopeError
from bpmn_layout_mcp.geometry import is_orthogonal
from bpmn_layout_mcp.layout_logger import LayoutLogger
from bpmn_layout_mcp.models import (
    BOUNDARY_EVENT,
    END_EVENT,
    EXCLUSIVE_GATEWAY,
    PROCESS,
    START_EVENT,
    TASK,
    DiagramModel,
)
from bpmn_layout_mcp.options import LayoutOptions
from bpmn_layout_mcp.overlap import find_overlaps
from bpmn_layout_mcp.pipeline import MAIN_PIPELINE_STEPS, layout_diagram


def _fresh_diagram() -> DiagramModel:
    model = DiagramModel(name="test")
    model.add_shape(PROCESS, element_id="Process_1", width=0, height=0)
    return model


def _linear_diagram() -> DiagramModel:
    """Start -> Review -> Approve -> End, scattered over the page."""
    model = _fresh_diagram()
    model.add_shape(START_EVENT, element_id="Start", x=500, y=300, parent_id="Process_1")
    model.add_shape(TASK, element_id="Review", x=10, y=20, parent_id="Process_1")
    model.add_shape(TASK, element_id="Approve", x=250, y=400, parent_id="Process_1")
    model.add_shape(END_EVENT, element_id="End", x=40, y=200, parent_id="Process_1")
    model.connect("Start", "Review", element_id="f1")
    model.connect("Review", "Approve", element_id="f2")
    model.connect("Approve", "End", element_id="f3")
    return model


def _gateway_diagram() -> DiagramModel:
    model = _fresh_diagram()
    for el_id, etype in (("Start", START_EVENT), ("Check", TASK), ("Split", EXCLUSIVE_GATEWAY),
                         ("Ship", TASK), ("Reject", TASK), ("Join", EXCLUSIVE_GATEWAY),
                         ("End", END_EVENT)):
        model.add_shape(etype, element_id=el_id, parent_id="Process_1")
    model.connect("Start", "Check")
    model.connect("Check", "Split")
    model.connect("Split", "Ship", element_id="yes", name="Approved")
    model.connect("Split", "Reject", element_id="no", name="Rejected")
    model.connect("Ship", "Join")
    model.connect("Reject", "Join")
    model.connect("Join", "End")
    return model


def _run(model: DiagramModel, options: LayoutOptions = None, log: LayoutLogger = None) -> dict:
    return asyncio.run(layout_diagram(model, options, LayeredLayoutEngine(), log=log))


def _positions(model: DiagramModel) -> dict[str, tuple[float, float]]:
    return {el.id: (el.x, el.y) for el in model.all() if not el.is_connection}


# ===================================================================
# Linear chains
# ===================================================================


def test_linear_chain_single_row() -> None:
    model = _linear_diagram()

    result = _run(model)

    assert result == {"crossing_flows": 0, "crossing_pairs": []}
    centres = [model.get(i).cy for i in ("Start", "Review", "Approve", "End")]
    assert max(centres) - min(centres) <= 1
    xs = [model.get(i).x for i in ("Start", "Review", "Approve", "End")]
    assert xs == sorted(xs)


def test_linear_chain_routes_orthogonal() -> None:
    model = _linear_diagram()
    _run(model)
    for conn in model.connections():
        assert len(conn.waypoints) >= 2
        assert is_orthogonal(conn.waypoints)


def test_no_overlaps_after_layout() -> None:
    model = _gateway_diagram()
    _run(model)
    assert find_overlaps(model, "Process_1") == []


def test_layout_is_idempotent() -> None:
    model = _linear_diagram()
    _run(model)
    first = _positions(model)

    _run(model)

    for el_id, (x, y) in _positions(model).items():
        assert abs(x - first[el_id][0]) <= 1
        assert abs(y - first[el_id][1]) <= 1


def test_gateway_branches_routed() -> None:
    model = _gateway_diagram()
    _run(model)

    assert model.get("Ship").x > model.get("Split").right
    assert model.get("Reject").x > model.get("Split").right
    for conn in model.connections():
        assert len(conn.waypoints) >= 2


def test_empty_diagram() -> None:
    assert _run(_fresh_diagram()) == {"crossing_flows": 0, "crossing_pairs": []}


# ===================================================================
# Scope
# ===================================================================


def test_unknown_scope_fails_before_changes() -> None:
    model = _linear_diagram()
    before = _positions(model)

    with pytest.raises(ScopeError, match="Scope element not found: Missing"):
        _run(model, LayoutOptions(scope_element_id="Missing"))

    assert _positions(model) == before


def test_scope_must_be_container() -> None:
    model = _linear_diagram()
    with pytest.raises(ScopeError, match="Participant or SubProcess"):
        _run(model, LayoutOptions(scope_element_id="Review"))


# ===================================================================
# Step order
# ===================================================================


def test_steps_logged_in_declared_order() -> None:
    model = _linear_diagram()
    log = LayoutLogger("test")

    _run(model, log=log)

    main_names = [s.name for s in MAIN_PIPELINE_STEPS]
    logged = [name for name in log.step_names() if name in main_names]
    expected = [name for name in main_names if name != "snap_to_pixel_grid"]
    assert logged == expected
    assert log.step_names()[0] == "engine.layout"


def test_pixel_grid_snap_runs_when_requested() -> None:
    model = _linear_diagram()
    log = LayoutLogger("test")

    _run(model, LayoutOptions(grid_quantum=10), log=log)

    assert "snap_to_pixel_grid" in log.step_names()


# ===================================================================
# Stability across shapes
# ===================================================================


def _attached_event_diagram() -> DiagramModel:
    """Start -> A -> B -> End with an exception path A~BE -> X -> Failed."""
    model = _fresh_diagram()
    for el_id, etype in (("Start", START_EVENT), ("A", TASK), ("B", TASK), ("End", END_EVENT),
                         ("X", TASK), ("Failed", END_EVENT)):
        model.add_shape(etype, element_id=el_id, parent_id="Process_1")
    model.add_shape(BOUNDARY_EVENT, element_id="BE", parent_id="Process_1", host_id="A")
    model.connect("Start", "A")
    model.connect("A", "B")
    model.connect("B", "End")
    model.connect("BE", "X")
    model.connect("X", "Failed")
    return model


def _loopback_diagram() -> DiagramModel:
    model = _fresh_diagram()
    for el_id, etype in (("Start", START_EVENT), ("Work", TASK), ("Check", EXCLUSIVE_GATEWAY),
                         ("End", END_EVENT)):
        model.add_shape(etype, element_id=el_id, parent_id="Process_1")
    model.connect("Start", "Work")
    model.connect("Work", "Check")
    model.connect("Check", "End", name="Approved")
    model.connect("Check", "Work", name="Rework")
    return model


def _empty_branch_diagram() -> DiagramModel:
    """Split -> T -> Merge with a second branch going straight to Merge."""
    model = _fresh_diagram()
    for el_id, etype in (("Start", START_EVENT), ("Split", EXCLUSIVE_GATEWAY), ("T", TASK),
                         ("Merge", EXCLUSIVE_GATEWAY), ("End", END_EVENT)):
        model.add_shape(etype, element_id=el_id, parent_id="Process_1")
    model.connect("Start", "Split")
    model.connect("Split", "T", name="Yes")
    model.connect("T", "Merge")
    model.connect("Split", "Merge", name="No")
    model.connect("Merge", "End")
    return model


SHAPED_DIAGRAMS = [
    pytest.param(_attached_event_diagram, id="attached-event"),
    pytest.param(_loopback_diagram, id="loopback"),
    pytest.param(_empty_branch_diagram, id="empty-branch"),
]


@pytest.mark.parametrize("build", SHAPED_DIAGRAMS)
def test_second_run_moves_nothing(build) -> None:
    model = build()
    _run(model)
    first = _positions(model)

    _run(model)

    for el_id, (x, y) in _positions(model).items():
        assert abs(x - first[el_id][0]) <= 1, el_id
        assert abs(y - first[el_id][1]) <= 1, el_id


@pytest.mark.parametrize("build", SHAPED_DIAGRAMS)
def test_all_routes_orthogonal(build) -> None:
    model = build()
    _run(model)
    for conn in model.connections():
        assert is_orthogonal(conn.waypoints), conn.id


@pytest.mark.parametrize("build", SHAPED_DIAGRAMS)
def test_shapes_do_not_overlap(build) -> None:
    model = build()
    _run(model)
    assert find_overlaps(model, "Process_1") == []


def test_attached_event_before_a_split_is_stable() -> None:
    model = _fresh_diagram()
    for el_id, etype in (("Start", START_EVENT), ("A", TASK), ("X", TASK), ("E2", END_EVENT),
                         ("G", EXCLUSIVE_GATEWAY), ("B", TASK), ("C", TASK),
                         ("J", EXCLUSIVE_GATEWAY), ("End", END_EVENT)):
        model.add_shape(etype, element_id=el_id, parent_id="Process_1")
    model.add_shape(BOUNDARY_EVENT, element_id="BE", parent_id="Process_1", host_id="A")
    model.connect("Start", "A")
    model.connect("A", "G")
    model.connect("G", "B")
    model.connect("G", "C")
    model.connect("B", "J")
    model.connect("C", "J")
    model.connect("J", "End")
    model.connect("BE", "X")
    model.connect("X", "E2")

    _run(model)
    first = _positions(model)
    _run(model)

    for el_id, (x, y) in _positions(model).items():
        assert abs(x - first[el_id][0]) <= 1, el_id
        assert abs(y - first[el_id][1]) <= 1, el_id
    assert detect_current_border(model.get("BE"), model.get("A")) == BOTTOM
