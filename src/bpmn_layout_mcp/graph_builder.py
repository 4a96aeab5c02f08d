"""
Translation of the diagram containment graph into the layered engine's
hierarchical JSON input.

One engine node is built per visible flow shape; expanded containers
become compound nodes with their own children and edges.  Sequence flows
are annotated with layering hints:

- back edges (found by DFS from entry nodes) get the lowest priority so
  the engine's cycle breaker reverses them rather than forward flows
- happy-path edges get high straightness/direction priority
- non-first branches of split gateways leave through a fixed side port so
  branch order is deterministic (skipped for balanced diamonds)
- short rejection branches get a synthetic ordering edge
- flows leaving attached events are represented by a proxy edge from the
  host, since attached events themselves are not graph nodes
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from bpmn_layout_mcp.constants import (
    CONTAINER_DEFAULT_HEIGHT,
    CONTAINER_DEFAULT_WIDTH,
    CONTAINER_PADDING,
    DIVERSE_Y_THRESHOLD,
    ELK_HIGH_PRIORITY,
    ELK_LAYOUT_OPTIONS,
    PARTICIPANT_PADDING,
    PARTICIPANT_WITH_LANES_PADDING,
    SHORT_BRANCH_MAX_HOPS,
    TASK_HEIGHT,
    TASK_WIDTH,
)
from bpmn_layout_mcp.helpers import (
    is_artifact,
    is_boundary_event,
    is_connection_type,
    is_end_event,
    is_gateway,
    is_infrastructure,
    is_lane,
)
from bpmn_layout_mcp.models import (
    BOUNDARY_EVENT,
    LANE,
    MESSAGE_FLOW,
    PARTICIPANT,
    SEQUENCE_FLOW,
    SUBPROCESS,
    DiagramElement,
    DiagramModel,
)

logger = logging.getLogger(__name__)

BOUNDARY_PROXY_PREFIX = "__boundary_proxy__"
ORDER_EDGE_PREFIX = "__order__"
BRANCH_PORT_MARKER = "__branch_"

# Side used by non-first gateway branches, per layout direction
BRANCH_PORT_SIDE = {"RIGHT": "SOUTH", "LEFT": "SOUTH", "DOWN": "EAST", "UP": "EAST"}


@dataclass
class LayoutGraph:
    """Engine input plus the bookkeeping the pipeline needs afterwards."""
    graph: dict[str, Any]
    excluded_ids: set[str] = field(default_factory=set)
    back_edge_ids: set[str] = field(default_factory=set)
    has_diverse_y: bool = False
    has_event_subprocesses: bool = False

    @property
    def node_count(self) -> int:
        return len(self.graph.get("children", []))

    @property
    def edge_count(self) -> int:
        return len(self.graph.get("edges", []))


def is_synthetic_edge(edge_id: str) -> bool:
    """Edges that exist only in the engine graph, not in the diagram."""
    return edge_id.startswith(BOUNDARY_PROXY_PREFIX) or edge_id.startswith(ORDER_EDGE_PREFIX)


def port_owner(port_or_node_id: str) -> str:
    """Strip a branch-port suffix, returning the owning node id."""
    idx = port_or_node_id.find(BRANCH_PORT_MARKER)
    return port_or_node_id if idx < 0 else port_or_node_id[:idx]


def _is_graph_shape(el: DiagramElement) -> bool:
    return (
        not is_infrastructure(el.type)
        and not is_connection_type(el.type)
        and not is_artifact(el.type)
        and not is_lane(el.type)
        and el.type != BOUNDARY_EVENT
    )


def _is_event_subprocess(el: DiagramElement) -> bool:
    return el.type == SUBPROCESS and el.triggered_by_event


def _is_compound(model: DiagramModel, el: DiagramElement) -> bool:
    if el.type == SUBPROCESS and not el.is_expanded:
        return False
    if el.type not in (SUBPROCESS, PARTICIPANT):
        return False
    return any(_is_graph_shape(c) for c in model.children_of(el.id))


# ---------------------------------------------------------------------------
# Boundary-exception chains
# ---------------------------------------------------------------------------

def identify_boundary_exception_chains(
    model: DiagramModel,
    container_id: Optional[str],
) -> set[str]:
    """Nodes reachable only through attached events.

    A node belongs to a chain if every one of its incoming flows comes
    from an attached event or from another chain node.  Such nodes are
    kept out of the engine graph and placed below their host afterwards.
    Recurses into expanded participants and subprocesses.
    """
    result: set[str] = set()
    boundary_ids = {
        el.id for el in model.children_of(container_id) if el.type == BOUNDARY_EVENT
    }

    if boundary_ids:
        incoming: dict[str, set[str]] = {}
        outgoing: dict[str, set[str]] = {}
        for conn in model.connections():
            if conn.type not in (SEQUENCE_FLOW, MESSAGE_FLOW):
                continue
            src = model.get(conn.source_id)
            if src is None or src.parent_id != container_id:
                continue
            incoming.setdefault(conn.target_id, set()).add(conn.source_id)
            outgoing.setdefault(conn.source_id, set()).add(conn.target_id)

        # Every incoming source counts, including ones outside this container
        for conn in model.connections():
            if conn.type in (SEQUENCE_FLOW, MESSAGE_FLOW) and conn.target_id in incoming:
                incoming[conn.target_id].add(conn.source_id)

        changed = True
        while changed:
            changed = False
            for src_id in list(boundary_ids) + sorted(result):
                for target_id in sorted(outgoing.get(src_id, ())):
                    if target_id in result:
                        continue
                    sources = incoming.get(target_id)
                    if not sources:
                        continue
                    if all(s in boundary_ids or s in result for s in sources):
                        result.add(target_id)
                        changed = True

    for el in model.children_of(container_id):
        if el.type in (PARTICIPANT, SUBPROCESS) and el.is_expanded:
            result |= identify_boundary_exception_chains(model, el.id)
    return result


# ---------------------------------------------------------------------------
# Back edges
# ---------------------------------------------------------------------------

def detect_back_edges(connections: list[DiagramElement], node_ids: list[str]) -> set[str]:
    """Ids of the connections that close a cycle.

    Depth-first search seeded first from nodes without incoming edges, so
    the DFS tree follows the natural forward flow; an edge to a node that
    is still on the DFS stack is a back edge.
    """
    back: set[str] = set()
    if not connections:
        return back

    adjacency: dict[str, list[tuple[str, str]]] = {}
    has_incoming: set[str] = set()
    for conn in connections:
        adjacency.setdefault(conn.source_id, []).append((conn.target_id, conn.id))
        has_incoming.add(conn.target_id)

    WHITE, GRAY, BLACK = 0, 1, 2
    color = {nid: WHITE for nid in node_ids}

    def visit(start: str) -> None:
        color[start] = GRAY
        stack = [(start, iter(adjacency.get(start, [])))]
        while stack:
            node, neighbours = stack[-1]
            advanced = False
            for target, conn_id in neighbours:
                state = color.get(target, BLACK)
                if state == GRAY:
                    back.add(conn_id)
                elif state == WHITE:
                    color[target] = GRAY
                    stack.append((target, iter(adjacency.get(target, []))))
                    advanced = True
                    break
            if not advanced:
                color[node] = BLACK
                stack.pop()

    seeds = [nid for nid in node_ids if nid not in has_incoming]
    for nid in seeds + list(node_ids):
        if color.get(nid) == WHITE:
            visit(nid)
    return back


# ---------------------------------------------------------------------------
# Gateway analysis
# ---------------------------------------------------------------------------

def _single_successor(model: DiagramModel, node_id: str, node_ids: set[str]) -> Optional[str]:
    flows = [
        f for f in model.outgoing(node_id)
        if f.type == SEQUENCE_FLOW and f.target_id in node_ids
    ]
    return flows[0].target_id if len(flows) == 1 else None


def _is_merge_gateway(model: DiagramModel, node_id: str, node_ids: set[str]) -> bool:
    incoming = [
        f for f in model.incoming(node_id)
        if f.type == SEQUENCE_FLOW and f.source_id in node_ids
    ]
    return len(incoming) >= 2 and is_gateway(model.get(node_id))


def is_balanced_diamond(
    model: DiagramModel,
    branches: list[DiagramElement],
    node_ids: set[str],
) -> bool:
    """True if every branch reconverges at one merge node within one hop.

    A branch that goes straight into a merge gateway counts that gateway
    as its merge node.
    """
    merges: set[str] = set()
    direct: set[str] = set()
    for flow in branches:
        if _is_merge_gateway(model, flow.target_id, node_ids):
            merges.add(flow.target_id)
            continue
        nxt = _single_successor(model, flow.target_id, node_ids)
        if nxt is None:
            direct.add(flow.target_id)
        else:
            merges.add(nxt)
    if len(merges) != 1:
        return False
    merge = next(iter(merges))
    return direct <= {merge} and is_gateway(model.get(merge))


def _short_branch_terminal(
    model: DiagramModel,
    flow: DiagramElement,
    node_ids: set[str],
) -> Optional[str]:
    """Terminal node reached from *flow* within the short-branch hop limit."""
    current = flow.target_id
    for _ in range(SHORT_BRANCH_MAX_HOPS):
        if is_end_event(model.get(current)):
            return current
        nxt = _single_successor(model, current, node_ids)
        if nxt is None:
            return None
        current = nxt
    return current if is_end_event(model.get(current)) else None


# ---------------------------------------------------------------------------
# Container graphs
# ---------------------------------------------------------------------------

def build_container_graph(
    model: DiagramModel,
    container_id: Optional[str],
    excluded_ids: set[str],
    happy_edges: Optional[set[str]] = None,
    direction: str = "RIGHT",
    back_edges_out: Optional[set[str]] = None,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]], bool]:
    """Build engine children and edges for one container.

    Returns:
        ``(children, edges, has_diverse_y)`` where *has_diverse_y* is True
        when the container's shapes already spread over more than
        ``DIVERSE_Y_THRESHOLD`` pixels vertically (an imported layout).
    """
    happy = happy_edges or set()
    shapes = [
        el for el in model.children_of(container_id)
        if _is_graph_shape(el) and not _is_event_subprocess(el) and el.id not in excluded_ids
    ]

    centres = [el.cy for el in shapes]
    has_diverse_y = bool(centres) and max(centres) - min(centres) > DIVERSE_Y_THRESHOLD
    if has_diverse_y:
        # Model order follows the existing picture
        shapes.sort(key=lambda el: (el.y, el.x))

    children: list[dict[str, Any]] = []
    node_ids: set[str] = set()
    nodes_by_id: dict[str, dict[str, Any]] = {}
    for shape in shapes:
        node_ids.add(shape.id)
        if _is_compound(model, shape):
            nested_children, nested_edges, _ = build_container_graph(
                model, shape.id, excluded_ids, happy, direction, back_edges_out,
            )
            if shape.type == PARTICIPANT:
                has_lanes = any(c.type == LANE for c in model.children_of(shape.id))
                padding = PARTICIPANT_WITH_LANES_PADDING if has_lanes else PARTICIPANT_PADDING
            else:
                padding = CONTAINER_PADDING
            node = {
                "id": shape.id,
                "width": shape.width or CONTAINER_DEFAULT_WIDTH,
                "height": shape.height or CONTAINER_DEFAULT_HEIGHT,
                "children": nested_children,
                "edges": nested_edges,
                "layoutOptions": {**ELK_LAYOUT_OPTIONS, "elk.direction": direction, "elk.padding": padding},
            }
        else:
            node = {
                "id": shape.id,
                "width": shape.width or TASK_WIDTH,
                "height": shape.height or TASK_HEIGHT,
            }
        children.append(node)
        nodes_by_id[shape.id] = node

    internal = [
        conn for conn in model.connections()
        if conn.type == SEQUENCE_FLOW
        and conn.source_id in node_ids
        and conn.target_id in node_ids
    ]
    back_edges = detect_back_edges(internal, [el.id for el in shapes])
    if back_edges_out is not None:
        back_edges_out |= back_edges

    edges: list[dict[str, Any]] = []
    edge_by_id: dict[str, dict[str, Any]] = {}
    for conn in internal:
        edge: dict[str, Any] = {"id": conn.id, "sources": [conn.source_id], "targets": [conn.target_id]}
        if conn.id in back_edges:
            edge["layoutOptions"] = {"elk.priority": "0"}
        elif conn.id in happy:
            edge["layoutOptions"] = {
                "elk.priority.straightness": ELK_HIGH_PRIORITY,
                "elk.priority.direction": ELK_HIGH_PRIORITY,
            }
        edges.append(edge)
        edge_by_id[conn.id] = edge

    _constrain_gateway_ports(model, shapes, internal, back_edges, happy, node_ids,
                             nodes_by_id, edge_by_id, direction)
    edges.extend(_ordering_edges(model, shapes, internal, back_edges, happy, node_ids))
    edges.extend(_boundary_proxy_edges(model, container_id, node_ids))
    return children, edges, has_diverse_y


def _split_branches(
    gateway: DiagramElement,
    internal: list[DiagramElement],
    back_edges: set[str],
) -> list[DiagramElement]:
    return [c for c in internal if c.source_id == gateway.id and c.id not in back_edges]


def _constrain_gateway_ports(
    model: DiagramModel,
    shapes: list[DiagramElement],
    internal: list[DiagramElement],
    back_edges: set[str],
    happy: set[str],
    node_ids: set[str],
    nodes_by_id: dict[str, dict[str, Any]],
    edge_by_id: dict[str, dict[str, Any]],
    direction: str,
) -> None:
    side = BRANCH_PORT_SIDE.get(direction, "SOUTH")
    for gw in shapes:
        if not is_gateway(gw):
            continue
        branches = _split_branches(gw, internal, back_edges)
        if len(branches) < 2:
            continue
        if is_balanced_diamond(model, branches, node_ids):
            logger.debug("Balanced diamond at %s: no port constraints", gw.id)
            continue

        first = next((b for b in branches if b.id in happy), branches[0])
        ports = []
        for idx, branch in enumerate(b for b in branches if b is not first):
            port_id = f"{gw.id}{BRANCH_PORT_MARKER}{idx}"
            ports.append({
                "id": port_id,
                "width": 1,
                "height": 1,
                "layoutOptions": {"elk.port.side": side, "elk.port.index": str(idx)},
            })
            edge_by_id[branch.id]["sources"] = [port_id]

        node = nodes_by_id[gw.id]
        node["ports"] = ports
        node.setdefault("layoutOptions", {})["elk.portConstraints"] = "FIXED_SIDE"


def _ordering_edges(
    model: DiagramModel,
    shapes: list[DiagramElement],
    internal: list[DiagramElement],
    back_edges: set[str],
    happy: set[str],
    node_ids: set[str],
) -> list[dict[str, Any]]:
    """Zero-priority edges tying short rejection branches behind the main branch.

    For a split gateway, each non-main branch that ends at a terminal node
    within the hop limit gets an edge from the main branch's first node to
    that terminal, so the terminal lands one column after the main
    continuation instead of being pulled into some other fork's layer.
    """
    result: list[dict[str, Any]] = []
    for gw in shapes:
        if not is_gateway(gw):
            continue
        branches = _split_branches(gw, internal, back_edges)
        if len(branches) < 2:
            continue
        main = next((b for b in branches if b.id in happy), branches[0])
        anchor = main.target_id
        if is_end_event(model.get(anchor)):
            continue
        for branch in branches:
            if branch is main:
                continue
            terminal = _short_branch_terminal(model, branch, node_ids)
            if terminal is None or terminal == anchor:
                continue
            result.append({
                "id": f"{ORDER_EDGE_PREFIX}{gw.id}__{terminal}",
                "sources": [anchor],
                "targets": [terminal],
                "layoutOptions": {"elk.priority": "0"},
            })
    return result


def _boundary_proxy_edges(
    model: DiagramModel,
    container_id: Optional[str],
    node_ids: set[str],
) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    for be in model.children_of(container_id):
        if not is_boundary_event(be) or be.host_id not in node_ids:
            continue
        for conn in model.outgoing(be.id):
            if conn.type != SEQUENCE_FLOW or conn.target_id not in node_ids:
                continue
            result.append({
                "id": f"{BOUNDARY_PROXY_PREFIX}{conn.id}",
                "sources": [be.host_id],
                "targets": [conn.target_id],
            })
    return result


# ---------------------------------------------------------------------------
# Root graph
# ---------------------------------------------------------------------------

def build_layout_graph(
    model: DiagramModel,
    root_id: Optional[str],
    layout_options: dict[str, str],
    happy_edges: Optional[set[str]] = None,
) -> LayoutGraph:
    """Build the complete engine graph for the layout root.

    Args:
        model: Diagram to lay out.
        root_id: Container whose children form the top level (the process,
            collaboration, a scoped participant/subprocess, or None when
            shapes have no parent).
        layout_options: Resolved engine option bag (copied, then extended).
        happy_edges: Happy-path edge ids to prioritise.
    """
    excluded = identify_boundary_exception_chains(model, root_id)
    direction = layout_options.get("elk.direction", "RIGHT")
    back_edges: set[str] = set()
    children, edges, has_diverse_y = build_container_graph(
        model, root_id, excluded, happy_edges, direction, back_edges,
    )
    has_event_subprocesses = any(_is_event_subprocess(el) for el in model.children_of(root_id))

    options = dict(layout_options)
    if has_diverse_y and not has_event_subprocesses:
        options["elk.layered.crossingMinimization.forceNodeModelOrder"] = "true"
        options["elk.layered.considerModelOrder.strategy"] = "NODES_AND_EDGES"

    logger.debug(
        "Built layout graph: %d nodes, %d edges, %d excluded, diverse_y=%s",
        len(children), len(edges), len(excluded), has_diverse_y,
    )
    return LayoutGraph(
        graph={"id": "root", "layoutOptions": options, "children": children, "edges": edges},
        excluded_ids=excluded,
        back_edge_ids=back_edges,
        has_diverse_y=has_diverse_y,
        has_event_subprocesses=has_event_subprocesses,
    )


def index_result(result: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Map every node id in an engine result to its node dict."""
    index: dict[str, dict[str, Any]] = {}
    stack = list(result.get("children", []))
    while stack:
        node = stack.pop()
        index[node["id"]] = node
        stack.extend(node.get("children", []))
    return index
