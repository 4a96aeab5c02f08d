"""Tests for per-step layout logging."""

import logging

import pytest

from bpmn_layout_mcp.layout_logger import LayoutLogger, count_moved, snapshot_positions
from bpmn_layout_mcp.models import PROCESS, TASK, DiagramModel


def _fresh_diagram() -> DiagramModel:
    model = DiagramModel(name="test")
    model.add_shape(PROCESS, element_id="Process_1", width=0, height=0)
    model.add_shape(TASK, element_id="A", x=0, y=0, parent_id="Process_1")
    model.add_shape(TASK, element_id="B", x=200, y=0, parent_id="Process_1")
    return model


def test_steps_recorded_in_order() -> None:
    log = LayoutLogger("test")
    with log.step("first"):
        pass
    with log.step("second"):
        pass

    assert log.step_names() == ["first", "second"]
    assert all(e.duration_ms >= 0 for e in log.entries)
    assert log.entries[0].moved_count is None


def test_moved_count_with_model() -> None:
    model = _fresh_diagram()
    log = LayoutLogger("test")

    with log.step("move", model):
        model.move_elements(["A"], 50, 0)

    entry = log.entries[0]
    assert entry.moved_count == 1
    assert entry.notes == ["delta: 1 elements moved"]


def test_sub_pixel_moves_not_counted() -> None:
    model = _fresh_diagram()
    before = snapshot_positions(model)
    model.move_elements(["A"], 0.5, 0)
    assert count_moved(model, before) == 0


def test_note_attached_to_current_step() -> None:
    log = LayoutLogger("test")
    with log.step("step"):
        log.note("step", "3 edges fixed")
    log.note("outside", "ignored without debug")

    assert log.entries[0].notes == ["3 edges fixed"]


def test_entry_recorded_when_step_raises() -> None:
    log = LayoutLogger("test")
    with pytest.raises(RuntimeError):
        with log.step("broken"):
            raise RuntimeError("boom")
    assert log.step_names() == ["broken"]


def test_debug_output(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    monkeypatch.setenv("BPMN_LAYOUT_DEBUG", "1")
    log = LayoutLogger("debug-run")

    with caplog.at_level(logging.DEBUG, logger="bpmn_layout_mcp.layout"):
        with log.step("snap"):
            pass
        log.finish()

    assert "[debug-run] snap" in caplog.text
    assert "debug-run complete" in caplog.text


def test_no_output_without_debug(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    monkeypatch.delenv("BPMN_LAYOUT_DEBUG", raising=False)
    log = LayoutLogger("quiet")

    with caplog.at_level(logging.DEBUG, logger="bpmn_layout_mcp.layout"):
        with log.step("snap"):
            pass

    assert caplog.text == ""
