"""
Full-diagram layout pipeline.

The layout engine places nodes once; everything after that is a chain of
corrective passes over the diagram model.  The passes are declared as
ordered lists of named steps and run by ``PipelineRunner``:

    NODE_POSITION_STEPS      engine positions, snapping, grid, happy path
    POOL_BOUNDARY_EDGE_STEPS pools and lanes, attached-event targets, routes
    POST_ROUTING_STEPS       route repair, lane clamping, crossings, avoidance

Order is load-bearing.  Attached-event identity is saved before any host
moves and restored at every point a host move could have disturbed it.
Edge routes are written only once every node has its final position,
and origin normalisation runs after them so the shift carries shapes and
waypoints together.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from bpmn_layout_mcp.alignment import (
    align_happy_path,
    align_off_path_end_events,
    pin_happy_path_branches,
)
from bpmn_layout_mcp.artifacts import reposition_artifacts
from bpmn_layout_mcp.avoidance import avoid_element_intersections
from bpmn_layout_mcp.boundary import (
    BoundarySnapshot,
    align_off_path_end_events_to_second_row,
    push_boundary_targets_below_happy_path,
    restore_and_reposition,
    save_boundary_events,
    settle_boundary_chains,
)
from bpmn_layout_mcp.channels import route_branches_through_channels
from bpmn_layout_mcp.constants import DIVERSE_Y_THRESHOLD, ORIGIN_OFFSET_X, ORIGIN_OFFSET_Y
from bpmn_layout_mcp.crossings import CrossingFlows, detect_crossing_flows, reduce_crossings
from bpmn_layout_mcp.engines import LayoutEngine, default_engine
from bpmn_layout_mcp.errors import ScopeError
from bpmn_layout_mcp.graph_builder import build_layout_graph
from bpmn_layout_mcp.happy_path import detect_happy_path
from bpmn_layout_mcp.helpers import layout_scopes, root_container_id, scope_shapes
from bpmn_layout_mcp.lanes import (
    LaneSnapshot,
    clamp_flows_to_lane_bounds,
    reposition_lanes,
    route_cross_lane_staircase,
    save_lane_assignments,
)
from bpmn_layout_mcp.layout_logger import LayoutLogger
from bpmn_layout_mcp.models import PARTICIPANT, SUBPROCESS, DiagramModel
from bpmn_layout_mcp.options import (
    LayoutOptions,
    effective_layer_spacing,
    effective_node_spacing,
    resolve_layout_options,
)
from bpmn_layout_mcp.overlap import resolve_overlaps
from bpmn_layout_mcp.pools import (
    centre_elements_in_pools,
    compact_pools,
    enforce_expanded_pool_gap,
    normalise_origin,
    reorder_collapsed_pools_below,
)
from bpmn_layout_mcp.position import (
    apply_node_positions,
    position_event_subprocesses,
    resize_compound_nodes,
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
)
from bpmn_layout_mcp.routing import (
    apply_engine_edge_routes,
    route_self_loops,
    simplify_gateway_branch_routes,
)
from bpmn_layout_mcp.snapping import (
    grid_snap_expanded_subprocesses,
    grid_snap_pass,
    snap_all_connections_orthogonal,
    snap_expanded_subprocesses,
    snap_same_layer_elements,
    snap_shapes_to_pixel_grid,
    snap_waypoints_to_pixel_grid,
)

logger = logging.getLogger(__name__)

DEFAULT_DOCKING = ShapeDocking()


@dataclass
class LayoutContext:
    """Per-call state shared by every pipeline step."""
    model: DiagramModel
    options: LayoutOptions
    engine: LayoutEngine
    log: LayoutLogger
    result: dict[str, Any] = field(default_factory=dict)
    layout_options: dict[str, str] = field(default_factory=dict)
    offset_x: float = ORIGIN_OFFSET_X
    offset_y: float = ORIGIN_OFFSET_Y
    happy_edges: set[str] = field(default_factory=set)
    diverse_scopes: set[Optional[str]] = field(default_factory=set)
    excluded_ids: set[str] = field(default_factory=set)
    boundary_snapshots: list[BoundarySnapshot] = field(default_factory=list)
    lane_snapshots: list[LaneSnapshot] = field(default_factory=list)
    docking: Optional[ShapeDocking] = None
    crossings: CrossingFlows = field(default_factory=CrossingFlows)


StepResult = Union[Any, Awaitable[Any]]


@dataclass(frozen=True)
class PipelineStep:
    """A named pass over the layout context.

    ``track_delta`` records how many shapes the step moved; ``skip``
    returns True when the step does not apply to this call.
    """
    name: str
    run: Callable[[LayoutContext], StepResult]
    track_delta: bool = False
    skip: Optional[Callable[[LayoutContext], bool]] = None


class PipelineRunner:
    """Runs steps in declaration order, logging each one."""

    def __init__(self, steps: list[PipelineStep], log: LayoutLogger) -> None:
        self.steps = steps
        self.log = log

    async def run(self, ctx: LayoutContext) -> None:
        for step in self.steps:
            if step.skip is not None and step.skip(ctx):
                self.log.note(step.name, "skipped")
                continue
            with self.log.step(step.name, ctx.model if step.track_delta else None):
                outcome = step.run(ctx)
                if inspect.isawaitable(outcome):
                    await outcome


# ---------------------------------------------------------------------------
# Node positioning
# ---------------------------------------------------------------------------

def _apply_positions(ctx: LayoutContext) -> None:
    apply_node_positions(ctx.model, ctx.result, ctx.offset_x, ctx.offset_y)
    resize_compound_nodes(ctx.model, ctx.result)


def _fix_boundary_events(ctx: LayoutContext) -> None:
    restore_and_reposition(ctx.model, ctx.boundary_snapshots)
    settle_boundary_chains(ctx.model, ctx.boundary_snapshots, ctx.excluded_ids)


def _snap_layers(ctx: LayoutContext) -> None:
    for scope in layout_scopes(ctx.model):
        snap_same_layer_elements(ctx.model, scope)
        snap_expanded_subprocesses(ctx.model, scope)


def _grid_snap(ctx: LayoutContext) -> None:
    layer_spacing = effective_layer_spacing(ctx.layout_options)
    node_spacing = effective_node_spacing(ctx.layout_options)
    for scope in layout_scopes(ctx.model):
        grid_snap_pass(ctx.model, ctx.happy_edges, scope, layer_spacing, node_spacing)
        grid_snap_expanded_subprocesses(ctx.model, ctx.happy_edges, scope, layer_spacing)
        resolve_overlaps(ctx.model, scope)


def _skip_grid_snap(ctx: LayoutContext) -> bool:
    return not ctx.options.grid_snap or not ctx.options.is_horizontal


def _align_happy_path(ctx: LayoutContext) -> None:
    for scope in layout_scopes(ctx.model):
        align_happy_path(ctx.model, ctx.happy_edges, scope, scope in ctx.diverse_scopes)
        align_off_path_end_events(ctx.model, ctx.happy_edges, scope)
        pin_happy_path_branches(ctx.model, ctx.happy_edges, scope)


def _skip_happy_path(ctx: LayoutContext) -> bool:
    return (
        not ctx.options.preserve_happy_path
        or not ctx.happy_edges
        or not ctx.options.is_horizontal
    )


def _resolve_overlaps(ctx: LayoutContext) -> None:
    for scope in layout_scopes(ctx.model):
        resolve_overlaps(ctx.model, scope)


NODE_POSITION_STEPS: list[PipelineStep] = [
    PipelineStep("apply_node_positions", _apply_positions, track_delta=True),
    PipelineStep("fix_boundary_events", _fix_boundary_events, track_delta=True),
    PipelineStep("snap_layers", _snap_layers, track_delta=True),
    PipelineStep("grid_snap", _grid_snap, track_delta=True, skip=_skip_grid_snap),
    PipelineStep("reposition_artifacts", lambda ctx: reposition_artifacts(ctx.model)),
    PipelineStep("align_happy_path", _align_happy_path, track_delta=True, skip=_skip_happy_path),
    PipelineStep("resolve_overlaps_2nd", _resolve_overlaps),
    PipelineStep(
        "position_event_subprocesses",
        lambda ctx: position_event_subprocesses(ctx.model, ctx.engine),
    ),
]


# ---------------------------------------------------------------------------
# Pools, attached-event targets, edge routes
# ---------------------------------------------------------------------------

def _finalise_pools(ctx: LayoutContext) -> None:
    centre_elements_in_pools(ctx.model)
    enforce_expanded_pool_gap(ctx.model)
    reposition_lanes(ctx.model, ctx.lane_snapshots, ctx.options.lane_strategy, ctx.options.direction)
    compact_pools(ctx.model)
    reorder_collapsed_pools_below(ctx.model)


def _finalise_boundary_targets(ctx: LayoutContext) -> None:
    # Hosts moved again since the first restore
    restore_and_reposition(ctx.model, ctx.boundary_snapshots)
    settle_boundary_chains(ctx.model, ctx.boundary_snapshots, ctx.excluded_ids)
    push_boundary_targets_below_happy_path(ctx.model, ctx.excluded_ids, ctx.happy_edges)
    align_off_path_end_events_to_second_row(ctx.model, ctx.excluded_ids, ctx.happy_edges)
    # Pushed targets can change the border an event belongs on
    settle_boundary_chains(ctx.model, ctx.boundary_snapshots, ctx.excluded_ids)


def _apply_edge_routes(ctx: LayoutContext) -> None:
    apply_engine_edge_routes(ctx.model, ctx.result, ctx.offset_x, ctx.offset_y)
    route_self_loops(ctx.model)
    if not ctx.options.grid_snap:
        return
    if ctx.options.simplify_routes:
        simplify_gateway_branch_routes(ctx.model)
    for scope in layout_scopes(ctx.model):
        route_branches_through_channels(ctx.model, scope)


def _snap_to_pixel_grid(ctx: LayoutContext) -> None:
    snap_shapes_to_pixel_grid(ctx.model, ctx.options.grid_quantum)
    snap_waypoints_to_pixel_grid(ctx.model, ctx.options.grid_quantum)


POOL_BOUNDARY_EDGE_STEPS: list[PipelineStep] = [
    PipelineStep("finalise_pools_and_lanes", _finalise_pools),
    PipelineStep("finalise_boundary_targets", _finalise_boundary_targets, track_delta=True),
    PipelineStep("resolve_overlaps_3rd", _resolve_overlaps),
    PipelineStep("apply_edge_routes", _apply_edge_routes),
    PipelineStep("normalise_origin", lambda ctx: normalise_origin(ctx.model)),
    PipelineStep(
        "snap_to_pixel_grid",
        _snap_to_pixel_grid,
        track_delta=True,
        skip=lambda ctx: not ctx.options.grid_quantum,
    ),
]


# ---------------------------------------------------------------------------
# Route repair and crossings
# ---------------------------------------------------------------------------

REPAIR_SUBSTEPS: list[PipelineStep] = [
    PipelineStep("fix_disconnected_edges", lambda ctx: fix_disconnected_edges(ctx.model)),
    PipelineStep("dock_endpoints", lambda ctx: dock_endpoints(ctx.model, ctx.docking)),
    PipelineStep("rebuild_off_row_gateway_routes", lambda ctx: rebuild_off_row_gateway_routes(ctx.model)),
    PipelineStep("separate_overlapping_gateway_flows", lambda ctx: separate_overlapping_gateway_flows(ctx.model)),
    PipelineStep("simplify_collinear_waypoints", lambda ctx: simplify_collinear_waypoints(ctx.model)),
    PipelineStep("remove_micro_bends", lambda ctx: remove_micro_bends(ctx.model)),
    PipelineStep("route_loopbacks", lambda ctx: route_loopbacks(ctx.model)),
    PipelineStep("bundle_parallel_flows", lambda ctx: bundle_parallel_flows(ctx.model)),
    PipelineStep("snap_all_connections_orthogonal", lambda ctx: snap_all_connections_orthogonal(ctx.model)),
    PipelineStep("insert_elbows", lambda ctx: insert_elbows(ctx.model)),
]


def _repair_edges(ctx: LayoutContext) -> Awaitable[None]:
    return PipelineRunner(REPAIR_SUBSTEPS, ctx.log).run(ctx)


def _detect_crossings(ctx: LayoutContext) -> None:
    ctx.crossings = detect_crossing_flows(ctx.model)


POST_ROUTING_STEPS: list[PipelineStep] = [
    PipelineStep("repair_and_simplify_edges", _repair_edges),
    PipelineStep("clamp_flows_to_lane_bounds", lambda ctx: clamp_flows_to_lane_bounds(ctx.model)),
    PipelineStep("route_cross_lane_staircase", lambda ctx: route_cross_lane_staircase(ctx.model)),
    PipelineStep("reduce_crossings_1st", lambda ctx: reduce_crossings(ctx.model)),
    PipelineStep("avoid_element_intersections", lambda ctx: avoid_element_intersections(ctx.model)),
    PipelineStep("reduce_crossings_2nd", lambda ctx: reduce_crossings(ctx.model)),
    PipelineStep("avoid_element_intersections_2nd", lambda ctx: avoid_element_intersections(ctx.model)),
    PipelineStep("detect_crossing_flows", _detect_crossings),
]

MAIN_PIPELINE_STEPS: list[PipelineStep] = [
    *NODE_POSITION_STEPS,
    *POOL_BOUNDARY_EDGE_STEPS,
    *POST_ROUTING_STEPS,
]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def resolve_scope(model: DiagramModel, options: LayoutOptions) -> Optional[str]:
    """Id of the container the layout is restricted to, or the diagram root.

    Raises:
        ScopeError: if the scope element is missing or not a participant
            or subprocess.
    """
    if not options.scope_element_id:
        return root_container_id(model)
    scope = model.get(options.scope_element_id)
    if scope is None:
        raise ScopeError(f"Scope element not found: {options.scope_element_id}")
    if scope.type not in (PARTICIPANT, SUBPROCESS):
        raise ScopeError(f"Scope element must be a Participant or SubProcess, got: {scope.type}")
    return scope.id


def _diverse_scopes(model: DiagramModel, excluded_ids: set[str]) -> set[Optional[str]]:
    """Scopes whose incoming engine-placed shapes already spread over several rows."""
    diverse: set[Optional[str]] = set()
    for scope in layout_scopes(model):
        centres = [el.cy for el in scope_shapes(model, scope) if el.id not in excluded_ids]
        if centres and max(centres) - min(centres) > DIVERSE_Y_THRESHOLD:
            diverse.add(scope)
    return diverse


async def layout_diagram(
    model: DiagramModel,
    options: Optional[LayoutOptions] = None,
    engine: Optional[LayoutEngine] = None,
    docking: Optional[ShapeDocking] = DEFAULT_DOCKING,
    log: Optional[LayoutLogger] = None,
) -> dict[str, Any]:
    """Lay out the whole diagram, or one participant/subprocess.

    Args:
        model: Diagram to lay out in place.
        options: Per-call options (defaults when None).
        engine: Layout engine; picked by ``default_engine`` when None.
        docking: Endpoint docking; None snaps endpoints to centre lines.
        log: Step logger to record into (a fresh one when None).

    Returns:
        ``{"crossing_flows": int, "crossing_pairs": [[id, id], ...]}``

    Raises:
        ScopeError: before any change, when the scope is invalid.
        LayoutEngineError: when the layout engine fails.
    """
    opts = options or LayoutOptions()
    root_id = resolve_scope(model, opts)
    log = log or LayoutLogger("layout_diagram")
    engine = engine or await default_engine()

    happy_edges = detect_happy_path(model) if opts.preserve_happy_path else set()
    layout_options = resolve_layout_options(opts)
    built = build_layout_graph(model, root_id, layout_options, happy_edges)
    log.note(
        "init",
        f"{len(model.all())} elements, scope={opts.scope_element_id or 'root'}, "
        f"engine={engine.name}, happy_path={len(happy_edges)} edges",
    )
    if built.node_count == 0:
        log.finish()
        return {"crossing_flows": 0, "crossing_pairs": []}

    ctx = LayoutContext(
        model=model,
        options=opts,
        engine=engine,
        log=log,
        layout_options=layout_options,
        happy_edges=happy_edges,
        diverse_scopes=_diverse_scopes(model, built.excluded_ids),
        excluded_ids=built.excluded_ids,
        boundary_snapshots=save_boundary_events(model),
        lane_snapshots=save_lane_assignments(model),
        docking=docking,
    )
    if opts.scope_element_id:
        scope = model.get(root_id)
        ctx.offset_x, ctx.offset_y = scope.x, scope.y

    with log.step("engine.layout"):
        ctx.result = await engine.layout(built.graph)

    await PipelineRunner(MAIN_PIPELINE_STEPS, log).run(ctx)

    log.note("result", f"crossing_flows={ctx.crossings.count}")
    log.finish()
    return {
        "crossing_flows": ctx.crossings.count,
        "crossing_pairs": [list(pair) for pair in ctx.crossings.pairs],
    }
