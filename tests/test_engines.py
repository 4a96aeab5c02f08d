"""Tests for the layout engines and engine selection."""

import asyncio
import threading

import pytest

from bpmn_layout_mcp.engines import LayeredLayoutEngine, default_engine, elk
from bpmn_layout_mcp.engines.layered import parse_padding
from bpmn_layout_mcp.errors import LayoutEngineError


def _chain_graph(direction: str = "RIGHT") -> dict:
    return {
        "id": "root",
        "layoutOptions": {"elk.direction": direction},
        "children": [
            {"id": "a", "width": 100, "height": 80},
            {"id": "b", "width": 100, "height": 80},
        ],
        "edges": [{"id": "e1", "sources": ["a"], "targets": ["b"]}],
    }


def _child(result: dict, node_id: str) -> dict:
    return next(c for c in result["children"] if c["id"] == node_id)


# ===================================================================
# Layered engine
# ===================================================================


def test_layered_right_places_layers_left_to_right() -> None:
    result = asyncio.run(LayeredLayoutEngine().layout(_chain_graph()))

    a, b = _child(result, "a"), _child(result, "b")
    assert a["x"] + a["width"] < b["x"]
    assert a["y"] == b["y"]
    section = result["edges"][0]["sections"][0]
    assert section["startPoint"]["x"] == a["x"] + a["width"]
    assert section["endPoint"]["x"] == b["x"]


def test_layered_down_places_layers_top_to_bottom() -> None:
    result = asyncio.run(LayeredLayoutEngine().layout(_chain_graph("DOWN")))
    assert _child(result, "a")["y"] < _child(result, "b")["y"]


def test_layered_does_not_mutate_input() -> None:
    graph = _chain_graph()
    asyncio.run(LayeredLayoutEngine().layout(graph))
    assert "x" not in graph["children"][0]


def test_pinned_node_keeps_position() -> None:
    graph = _chain_graph()
    graph["children"].append({
        "id": "pinned", "x": 500, "y": 300, "width": 50, "height": 50,
        "layoutOptions": {"org.eclipse.elk.noLayout": "true"},
    })

    result = asyncio.run(LayeredLayoutEngine().layout(graph))

    pinned = _child(result, "pinned")
    assert (pinned["x"], pinned["y"]) == (500, 300)
    assert result["width"] >= 550


def test_cycle_is_laid_out() -> None:
    graph = _chain_graph()
    graph["edges"].append({
        "id": "back", "sources": ["b"], "targets": ["a"],
        "layoutOptions": {"elk.priority": "0"},
    })

    result = asyncio.run(LayeredLayoutEngine().layout(graph))

    assert _child(result, "a")["x"] < _child(result, "b")["x"]
    assert all(e.get("sections") for e in result["edges"])


def test_compound_node_sized_around_children() -> None:
    graph = {
        "id": "root",
        "children": [{
            "id": "pool",
            "layoutOptions": {"elk.padding": "[top=20,left=40,bottom=20,right=20]"},
            "children": [{"id": "t", "width": 100, "height": 80}],
            "edges": [],
        }],
        "edges": [],
    }

    result = asyncio.run(LayeredLayoutEngine().layout(graph))

    pool = _child(result, "pool")
    assert pool["width"] == 160
    assert pool["height"] == 120
    assert (pool["children"][0]["x"], pool["children"][0]["y"]) == (40, 20)


def test_malformed_edge_raises_engine_error() -> None:
    graph = _chain_graph()
    del graph["edges"][0]["sources"]
    with pytest.raises(LayoutEngineError, match="Layered layout failed"):
        asyncio.run(LayeredLayoutEngine().layout(graph))


def test_parse_padding() -> None:
    assert parse_padding("[top=60,left=40,bottom=60,right=50]") == {
        "top": 60, "left": 40, "bottom": 60, "right": 50,
    }
    assert parse_padding(None, 12) == {"top": 12, "left": 12, "bottom": 12, "right": 12}
    assert parse_padding("[left=5]", 0)["left"] == 5


# ===================================================================
# Engine selection
# ===================================================================


def test_default_engine_by_name() -> None:
    engine = asyncio.run(default_engine("layered"))
    assert isinstance(engine, LayeredLayoutEngine)
    assert engine.name == "layered"


def test_default_engine_unknown_name() -> None:
    with pytest.raises(LayoutEngineError, match="Unknown layout engine"):
        asyncio.run(default_engine("bogus"))


def test_default_engine_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BPMN_LAYOUT_ENGINE", "layered")
    assert isinstance(asyncio.run(default_engine()), LayeredLayoutEngine)


# ============================================================================
# ELK availability
# ============================================================================

def test_elk_unavailable_without_node(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(elk, "find_node", lambda explicit=None: None)
    assert asyncio.run(elk.ElkLayoutEngine().is_available()) is False


def test_elk_availability_check_runs_off_the_event_loop(monkeypatch: pytest.MonkeyPatch) -> None:
    threads: list[int] = []

    def fake_find_node(explicit=None):
        threads.append(threading.get_ident())
        return None

    monkeypatch.setattr(elk, "find_node", fake_find_node)

    async def check() -> tuple[bool, int]:
        return await elk.ElkLayoutEngine().is_available(), threading.get_ident()

    available, loop_thread = asyncio.run(check())
    assert available is False
    assert threads and threads[0] != loop_thread
