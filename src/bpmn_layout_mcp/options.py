"""
Layout options and their translation into layout-engine option bags.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from bpmn_layout_mcp.constants import (
    COMPACT_LAYER_SPACING,
    COMPACT_NODE_SPACING,
    ELK_CROSSING_THOROUGHNESS,
    ELK_LAYOUT_OPTIONS,
    SPACIOUS_LAYER_SPACING,
    SPACIOUS_NODE_SPACING,
)

DIRECTIONS = ("RIGHT", "DOWN", "LEFT", "UP")
COMPACTNESS_PRESETS = ("compact", "spacious")
LANE_STRATEGIES = ("preserve", "optimize")


@dataclass
class LayoutOptions:
    """Per-call layout options."""
    direction: str = "RIGHT"              # Main flow direction
    node_spacing: Optional[float] = None  # Gap between nodes in one layer
    layer_spacing: Optional[float] = None  # Gap between layers
    scope_element_id: Optional[str] = None  # Restrict to one pool/subprocess
    preserve_happy_path: bool = True      # Keep the main path on one row
    grid_snap: bool = True                # Run column/row quantization
    grid_quantum: Optional[float] = None  # Extra pixel-grid snap (e.g. 10)
    simplify_routes: bool = True          # Straighten gateway branch routes
    compactness: Optional[str] = None     # 'compact' | 'spacious'
    lane_strategy: str = "preserve"       # 'preserve' | 'optimize'

    @property
    def is_horizontal(self) -> bool:
        return self.direction in ("RIGHT", "LEFT")


def resolve_layout_options(options: Optional[LayoutOptions] = None) -> dict[str, str]:
    """Merge user options into the default engine option bag.

    Compactness presets set both spacings; explicit spacing values win
    over the preset.
    """
    opts = options or LayoutOptions()
    result = dict(ELK_LAYOUT_OPTIONS)
    result["elk.layered.thoroughness"] = ELK_CROSSING_THOROUGHNESS

    if opts.direction:
        result["elk.direction"] = opts.direction

    if opts.compactness == "compact":
        result["elk.spacing.nodeNode"] = str(COMPACT_NODE_SPACING)
        result["elk.layered.spacing.nodeNodeBetweenLayers"] = str(COMPACT_LAYER_SPACING)
    elif opts.compactness == "spacious":
        result["elk.spacing.nodeNode"] = str(SPACIOUS_NODE_SPACING)
        result["elk.layered.spacing.nodeNodeBetweenLayers"] = str(SPACIOUS_LAYER_SPACING)

    if opts.node_spacing is not None:
        result["elk.spacing.nodeNode"] = _fmt(opts.node_spacing)
    if opts.layer_spacing is not None:
        result["elk.layered.spacing.nodeNodeBetweenLayers"] = _fmt(opts.layer_spacing)
    return result


def effective_node_spacing(layout_options: dict[str, str]) -> float:
    return float(layout_options.get("elk.spacing.nodeNode", ELK_LAYOUT_OPTIONS["elk.spacing.nodeNode"]))


def effective_layer_spacing(layout_options: dict[str, str]) -> float:
    return float(layout_options.get(
        "elk.layered.spacing.nodeNodeBetweenLayers",
        ELK_LAYOUT_OPTIONS["elk.layered.spacing.nodeNodeBetweenLayers"],
    ))


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

def debug_enabled() -> bool:
    """Whether pipeline debug logging was requested via BPMN_LAYOUT_DEBUG."""
    return os.environ.get("BPMN_LAYOUT_DEBUG", "").lower() in ("1", "true")


def requested_engine() -> Optional[str]:
    """Engine forced via BPMN_LAYOUT_ENGINE ('elk' or 'layered'), if any."""
    value = os.environ.get("BPMN_LAYOUT_ENGINE", "").strip().lower()
    return value or None
