"""Tests for layout option resolution and environment settings."""

import pytest

from bpmn_layout_mcp.constants import (
    COMPACT_LAYER_SPACING,
    COMPACT_NODE_SPACING,
    ELK_LAYER_SPACING,
    ELK_NODE_SPACING,
    SPACIOUS_NODE_SPACING,
)
from bpmn_layout_mcp.options import (
    LayoutOptions,
    debug_enabled,
    effective_layer_spacing,
    effective_node_spacing,
    requested_engine,
    resolve_layout_options,
)


def test_defaults() -> None:
    resolved = resolve_layout_options()
    assert resolved["elk.direction"] == "RIGHT"
    assert effective_node_spacing(resolved) == ELK_NODE_SPACING
    assert effective_layer_spacing(resolved) == ELK_LAYER_SPACING


def test_compact_preset() -> None:
    resolved = resolve_layout_options(LayoutOptions(compactness="compact"))
    assert effective_node_spacing(resolved) == COMPACT_NODE_SPACING
    assert effective_layer_spacing(resolved) == COMPACT_LAYER_SPACING


def test_explicit_spacing_beats_preset() -> None:
    resolved = resolve_layout_options(LayoutOptions(compactness="spacious", node_spacing=25))
    assert resolved["elk.spacing.nodeNode"] == "25"
    assert effective_node_spacing(resolved) != SPACIOUS_NODE_SPACING


def test_fractional_spacing_kept() -> None:
    resolved = resolve_layout_options(LayoutOptions(layer_spacing=72.5))
    assert resolved["elk.layered.spacing.nodeNodeBetweenLayers"] == "72.5"


def test_direction() -> None:
    options = LayoutOptions(direction="DOWN")
    assert resolve_layout_options(options)["elk.direction"] == "DOWN"
    assert not options.is_horizontal
    assert LayoutOptions(direction="LEFT").is_horizontal


# ===================================================================
# Environment
# ===================================================================


@pytest.mark.parametrize("value, expected", [("1", True), ("true", True), ("TRUE", True), ("0", False), ("", False)])
def test_debug_enabled(monkeypatch: pytest.MonkeyPatch, value: str, expected: bool) -> None:
    monkeypatch.setenv("BPMN_LAYOUT_DEBUG", value)
    assert debug_enabled() is expected


def test_requested_engine(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BPMN_LAYOUT_ENGINE", raising=False)
    assert requested_engine() is None
    monkeypatch.setenv("BPMN_LAYOUT_ENGINE", " ELK ")
    assert requested_engine() == "elk"
