"""
Tunable constants for the BPMN auto-layout pipeline.

All distances are in diagram pixels.  Values were calibrated against the
output of common BPMN modelers so that a freshly laid-out diagram looks
like one drawn by hand.
"""

from __future__ import annotations


# ---------------------------------------------------------------------------
# Layout engine spacing
# ---------------------------------------------------------------------------

ELK_LAYER_SPACING = 60
ELK_NODE_SPACING = 50
ELK_EDGE_NODE_SPACING = 15
ELK_EDGE_EDGE_BETWEEN_LAYERS_SPACING = 15
ELK_EDGE_NODE_BETWEEN_LAYERS_SPACING = 15
ELK_HIGH_PRIORITY = "10"
ELK_CROSSING_THOROUGHNESS = "30"

COMPACT_NODE_SPACING = 40
COMPACT_LAYER_SPACING = 50
SPACIOUS_NODE_SPACING = 80
SPACIOUS_LAYER_SPACING = 100

ELK_LAYOUT_OPTIONS: dict[str, str] = {
    "elk.algorithm": "layered",
    "elk.direction": "RIGHT",
    "elk.spacing.nodeNode": str(ELK_NODE_SPACING),
    "elk.layered.spacing.nodeNodeBetweenLayers": str(ELK_LAYER_SPACING),
    "elk.spacing.edgeNode": str(ELK_EDGE_NODE_SPACING),
    "elk.layered.spacing.edgeEdgeBetweenLayers": str(ELK_EDGE_EDGE_BETWEEN_LAYERS_SPACING),
    "elk.layered.spacing.edgeNodeBetweenLayers": str(ELK_EDGE_NODE_BETWEEN_LAYERS_SPACING),
    "elk.edgeRouting": "ORTHOGONAL",
    "elk.layered.nodePlacement.strategy": "NETWORK_SIMPLEX",
    "elk.layered.nodePlacement.favorStraightEdges": "true",
    "elk.layered.crossingMinimization.strategy": "LAYER_SWEEP",
    "elk.layered.cycleBreaking.strategy": "DEPTH_FIRST",
    "elk.layered.highDegreeNodes.treatment": "true",
    "elk.layered.highDegreeNodes.threshold": "5",
    "elk.layered.compaction.postCompaction.strategy": "EDGE_LENGTH",
}

# Compound node paddings (ELK padding syntax)
CONTAINER_PADDING = "[top=60,left=40,bottom=60,right=50]"
EVENT_SUBPROCESS_PADDING = "[top=40,left=32,bottom=40,right=32]"
PARTICIPANT_PADDING = "[top=80,left=50,bottom=80,right=40]"
PARTICIPANT_WITH_LANES_PADDING = "[top=80,left=80,bottom=80,right=40]"

# ---------------------------------------------------------------------------
# Element sizes
# ---------------------------------------------------------------------------

TASK_WIDTH = 100
TASK_HEIGHT = 80
EVENT_SIZE = 36
GATEWAY_SIZE = 50
SUBPROCESS_WIDTH = 350
SUBPROCESS_HEIGHT = 200
PARTICIPANT_WIDTH = 600
PARTICIPANT_HEIGHT = 250
CONTAINER_DEFAULT_WIDTH = 300
CONTAINER_DEFAULT_HEIGHT = 200
DUMMY_HEIGHT = 30

# ---------------------------------------------------------------------------
# Placement origin
# ---------------------------------------------------------------------------

ORIGIN_OFFSET_X = 180
ORIGIN_OFFSET_Y = 80
NORMALISE_ORIGIN_Y = 94
START_OFFSET_X = 20
START_OFFSET_Y = 50

# ---------------------------------------------------------------------------
# Snapping and alignment
# ---------------------------------------------------------------------------

SAME_ROW_THRESHOLD = 20
SUBPROCESS_ROW_THRESHOLD = 40
MOVEMENT_THRESHOLD = 0.5
MIN_MOVE_THRESHOLD = 2
MAX_WOBBLE_CORRECTION = 20
MAX_EXTENDED_CORRECTION = 200
COLUMN_PROXIMITY = 30
DIVERSE_Y_THRESHOLD = 100
ORTHO_SNAP_TOLERANCE = 15
SEGMENT_ORTHO_SNAP = 8

# Inter-layer gap adjustments (added to the base layer spacing)
EVENT_TASK_GAP_EXTRA = 0
BOUNDARY_HOST_GAP_EXTRA = 10
GATEWAY_TASK_GAP_EXTRA = 5
GATEWAY_EVENT_GAP_REDUCE = 5
GATEWAY_GATEWAY_GAP_EXTRA = 10
INTERMEDIATE_EVENT_TASK_GAP_REDUCE = 5

# Vertical gaps inside a column whose members are branches of one gateway
# or include an attached-event target
BRANCH_NODE_SPACING = 40
BOUNDARY_NODE_SPACING = 45
SAME_LAYER_X_THRESHOLD = 50

# ---------------------------------------------------------------------------
# Attached (boundary) events
# ---------------------------------------------------------------------------

GATEWAY_UPPER_SPLIT_FACTOR = 0.67
BOUNDARY_SPREAD_MARGIN_FACTOR = 0.1
BOUNDARY_PROXIMITY_TOLERANCE = 60
BOUNDARY_TARGET_Y_OFFSET = 85
BOUNDARY_TARGET_X_OFFSET = 90
BOUNDARY_TARGET_ROW_BUFFER = 10
BOUNDARY_CHAIN_GAP = 50

# ---------------------------------------------------------------------------
# Edge routing
# ---------------------------------------------------------------------------

ENDPOINT_SNAP_TOLERANCE = 15
CENTRE_SNAP_TOLERANCE = 15
DISCONNECT_THRESHOLD = 20
DIFFERENT_ROW_THRESHOLD = 10
DIFFERENT_ROW_MIN_Y = 15
SAME_ROW_Y_TOLERANCE = 5
CHANNEL_GW_PROXIMITY = 40
MIN_CHANNEL_WIDTH = 30
CHANNEL_MARGIN_FACTOR = 0.2
MICRO_BEND_TOLERANCE = 5
SHORT_SEGMENT_THRESHOLD = 6
COLLINEAR_DETOUR_OFFSET = 20
MIN_GATEWAY_PARALLEL_GAP = 12
MAX_GATEWAY_EXIT_Y_DIFF = 12
LOOPBACK_MIN_BACKWARD_GAP = 30
LOOPBACK_BELOW_MARGIN = 30
LOOPBACK_ABOVE_MARGIN = 30
LOOPBACK_HORIZONTAL_MARGIN = 15
BUNDLE_OFFSET_PX = 10
SELF_LOOP_MARGIN_H = 35
SELF_LOOP_MARGIN_V = 35
AVOIDANCE_MARGIN = 15
AVOIDANCE_MAX_ITERATIONS = 3
CROSSING_NUDGE_OFFSET = 15
CROSSING_MAX_PASSES = 3
SUBSET_NEIGHBOR_SAME_ROW_THRESHOLD = 15

# ---------------------------------------------------------------------------
# Pools and lanes
# ---------------------------------------------------------------------------

MIN_LANE_HEIGHT = 250
MIN_LANE_WIDTH = 250
POOL_LABEL_BAND = 30
LANE_VERTICAL_PADDING = 30
LANE_HORIZONTAL_PADDING = 30
LANE_CLAMP_MARGIN = 5
CROSS_LANE_BACKWARD_MARGIN = 20
COLLAPSED_POOL_GAP = 50
COLLAPSED_POOL_DEFAULT_HEIGHT = 60
INTER_POOL_GAP_EXTRA = 68
POOL_COMPACT_RIGHT_PADDING = 50
RESIZE_SIGNIFICANCE_THRESHOLD = 5
EVENT_SUBPROCESS_VERTICAL_GAP = 80
EVENT_SUBPROCESS_STACK_GAP = 30

# ---------------------------------------------------------------------------
# Overlaps and artifacts
# ---------------------------------------------------------------------------

MIN_OVERLAP_GAP = 30
OVERLAP_MAX_ITERATIONS = 5
SPATIAL_CELL_SIZE = 200
ARTIFACT_BELOW_OFFSET = 80
ARTIFACT_ABOVE_OFFSET = 80
ARTIFACT_PADDING = 20
GROUP_PADDING = 20

# ---------------------------------------------------------------------------
# Graph construction heuristics
# ---------------------------------------------------------------------------

SHORT_BRANCH_MAX_HOPS = 2
MAX_TRACE_DEPTH = 15
