"""
Pure-Python layered (Sugiyama-style) layout engine.

Accepts the same ELK JSON graph as the elkjs worker and returns an
ELK-shaped result, so the pipeline runs without Node.js.  It honours the
subset of ELK options the graph builder emits:

- ``elk.direction`` (RIGHT, LEFT, DOWN, UP)
- ``elk.spacing.nodeNode`` / ``elk.layered.spacing.nodeNodeBetweenLayers``
- ``elk.padding`` on compound nodes
- ``elk.priority`` on edges (priority 0 edges are reversed or ignored
  first when breaking cycles)
- ``elk.priority.straightness`` (happy-path edges keep one straight row)
- side ports on gateways (branches leaving through a port are ordered
  after the unconstrained branch and exit from the node's lower side)
- ``org.eclipse.elk.noLayout`` (pinned nodes keep their coordinates)

Steps per container, bottom-up through compound nodes:

1. Cycle removal (reverse back-edges)
2. Layer assignment (longest path)
3. Virtual nodes for long edges
4. Crossing minimisation (barycenter heuristic, multi-pass)
5. Coordinate assignment with straight happy-path rows
6. Orthogonal edge sections
"""

from __future__ import annotations

import copy
import logging
import re
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Optional

from bpmn_layout_mcp.constants import ELK_LAYER_SPACING, ELK_NODE_SPACING
from bpmn_layout_mcp.engines.base import LayoutEngine
from bpmn_layout_mcp.errors import LayoutEngineError

logger = logging.getLogger(__name__)

ROOT_PADDING = 12
BARYCENTER_ITERATIONS = 4
EDGE_CLEARANCE = 15

_PADDING_RE = re.compile(r"(top|left|bottom|right)\s*=\s*(-?\d+(?:\.\d+)?)")


@dataclass
class _Node:
    """Internal node in the layout frame (u = main axis, v = cross axis)."""
    id: str
    main: float          # size along the flow direction
    cross: float         # size across the flow direction
    rank: int = 0
    order: float = 0
    u: float = 0
    v: float = 0
    is_virtual: bool = False

    @property
    def v_centre(self) -> float:
        return self.v + self.cross / 2


@dataclass
class _Edge:
    id: str
    source: str
    target: str
    priority: int = 1
    straight: bool = False
    branch_port: Optional[int] = None
    reversed: bool = False
    chain: list[str] = field(default_factory=list)


def parse_padding(value: Optional[str], default: float = ROOT_PADDING) -> dict[str, float]:
    """Parse ELK padding syntax ``[top=60,left=40,bottom=60,right=50]``."""
    result = {"top": default, "left": default, "bottom": default, "right": default}
    if value:
        for key, num in _PADDING_RE.findall(str(value)):
            result[key] = float(num)
    return result


def _opt(options: dict[str, Any], inherited: dict[str, Any], key: str, default: Any) -> Any:
    if key in options:
        return options[key]
    return inherited.get(key, default)


def _is_true(value: Any) -> bool:
    return str(value).lower() == "true"


class LayeredLayoutEngine(LayoutEngine):
    """In-process fallback implementation of ELK's layered algorithm."""

    @property
    def name(self) -> str:
        return "layered"

    async def is_available(self) -> bool:
        return True

    async def layout(self, graph: dict[str, Any]) -> dict[str, Any]:
        try:
            result = copy.deepcopy(graph)
            self._layout_container(result, {}, is_root=True)
        except (KeyError, TypeError, ValueError) as exc:
            raise LayoutEngineError(f"Layered layout failed: {exc}") from exc
        return result

    # ----- containers -----

    def _layout_container(self, container: dict[str, Any], inherited: dict[str, Any], is_root: bool = False) -> None:
        options = {**inherited, **container.get("layoutOptions", {})}
        children: list[dict[str, Any]] = container.get("children", [])

        # Compound children first so their sizes are final
        for child in children:
            if child.get("children"):
                self._layout_container(child, options)

        padding = parse_padding(
            container.get("layoutOptions", {}).get("elk.padding"),
            ROOT_PADDING,
        )
        direction = str(_opt(container.get("layoutOptions", {}), inherited, "elk.direction", "RIGHT")).upper()
        horizontal = direction in ("RIGHT", "LEFT")
        node_spacing = float(options.get("elk.spacing.nodeNode", ELK_NODE_SPACING))
        layer_spacing = float(options.get("elk.layered.spacing.nodeNodeBetweenLayers", ELK_LAYER_SPACING))

        pinned = [c for c in children if _is_true(c.get("layoutOptions", {}).get("org.eclipse.elk.noLayout"))]
        free = [c for c in children if c not in pinned]

        port_owner: dict[str, str] = {}
        port_index: dict[str, int] = {}
        for child in children:
            for idx, port in enumerate(child.get("ports", [])):
                port_owner[port["id"]] = child["id"]
                port_index[port["id"]] = idx

        nodes: dict[str, _Node] = {}
        for child in free:
            w = float(child.get("width") or 0)
            h = float(child.get("height") or 0)
            nodes[child["id"]] = _Node(child["id"], w if horizontal else h, h if horizontal else w)

        edges: list[_Edge] = []
        for raw in container.get("edges", []):
            src_ref = raw["sources"][0]
            tgt_ref = raw["targets"][0]
            src = port_owner.get(src_ref, src_ref)
            tgt = port_owner.get(tgt_ref, tgt_ref)
            if src not in nodes or tgt not in nodes or src == tgt:
                continue
            opts = raw.get("layoutOptions", {})
            edges.append(_Edge(
                id=raw["id"],
                source=src,
                target=tgt,
                priority=int(opts.get("elk.priority", 1)),
                straight="elk.priority.straightness" in opts,
                branch_port=port_index.get(src_ref),
            ))

        if nodes:
            _break_cycles(list(nodes), edges)
            ranks = _assign_ranks_longest_path(list(nodes), edges)
            for nid, rank in ranks.items():
                nodes[nid].rank = rank
            by_rank = _order_layers(nodes, edges)
            _assign_coordinates(by_rank, nodes, edges, node_spacing, layer_spacing)

        # Frame extent
        extent_u = max((n.u + n.main for n in nodes.values() if not n.is_virtual), default=0)
        extent_v = max((n.v + n.cross for n in nodes.values() if not n.is_virtual), default=0)

        sections = _route_edges(nodes, edges)

        def to_xy(u: float, v: float, main: float = 0) -> tuple[float, float]:
            if direction == "LEFT":
                u = extent_u - u - main
            elif direction == "UP":
                u = extent_u - u - main
            if horizontal:
                return u + padding["left"], v + padding["top"]
            return v + padding["left"], u + padding["top"]

        for child in free:
            node = nodes[child["id"]]
            child["x"], child["y"] = to_xy(node.u, node.v, node.main)

        for raw in container.get("edges", []):
            points = sections.get(raw["id"])
            if not points:
                continue
            xy = [to_xy(u, v) for u, v in points]
            raw["sections"] = [{
                "id": f"{raw['id']}_s0",
                "startPoint": {"x": xy[0][0], "y": xy[0][1]},
                "endPoint": {"x": xy[-1][0], "y": xy[-1][1]},
                "bendPoints": [{"x": x, "y": y} for x, y in xy[1:-1]],
            }]

        if horizontal:
            content_w, content_h = extent_u, extent_v
        else:
            content_w, content_h = extent_v, extent_u
        for child in pinned:
            content_w = max(content_w, float(child.get("x", 0)) + float(child.get("width", 0)) - padding["left"])
            content_h = max(content_h, float(child.get("y", 0)) + float(child.get("height", 0)) - padding["top"])

        if children or not is_root:
            container["width"] = content_w + padding["left"] + padding["right"]
            container["height"] = content_h + padding["top"] + padding["bottom"]
        container.setdefault("x", 0)
        container.setdefault("y", 0)


# ---------------------------------------------------------------------------
# Step 1: cycle removal
# ---------------------------------------------------------------------------

def _find_back_edges(node_ids: list[str], edges: list[_Edge]) -> set[str]:
    """Back edges of an iterative DFS seeded from nodes without incoming edges."""
    adj: dict[str, list[_Edge]] = defaultdict(list)
    has_incoming: set[str] = set()
    for e in edges:
        adj[e.source].append(e)
        has_incoming.add(e.target)

    WHITE, GRAY, BLACK = 0, 1, 2
    color = {n: WHITE for n in node_ids}
    back: set[str] = set()
    seeds = [n for n in node_ids if n not in has_incoming] + node_ids
    for start in seeds:
        if color[start] != WHITE:
            continue
        color[start] = GRAY
        stack: list[tuple[str, int]] = [(start, 0)]
        while stack:
            u, idx = stack[-1]
            neighbors = adj.get(u, [])
            if idx < len(neighbors):
                stack[-1] = (u, idx + 1)
                e = neighbors[idx]
                if color[e.target] == GRAY:
                    back.add(e.id)
                elif color[e.target] == WHITE:
                    color[e.target] = GRAY
                    stack.append((e.target, 0))
            else:
                color[u] = BLACK
                stack.pop()
    return back


def _break_cycles(node_ids: list[str], edges: list[_Edge]) -> None:
    """Mark edges to reverse so the remaining graph is acyclic.

    Normal-priority edges are processed first; low-priority edges are then
    added only in whichever orientation keeps the graph acyclic.
    """
    normal = [e for e in edges if e.priority > 0]
    low = [e for e in edges if e.priority <= 0]
    back = _find_back_edges(node_ids, normal)
    for e in normal:
        e.reversed = e.id in back

    forward: dict[str, set[str]] = defaultdict(set)
    for e in normal:
        s, t = (e.target, e.source) if e.reversed else (e.source, e.target)
        forward[s].add(t)
    for e in low:
        if _reachable(forward, e.target, e.source):
            e.reversed = True
            forward[e.target].add(e.source)
        else:
            forward[e.source].add(e.target)


def _reachable(adj: dict[str, set[str]], start: str, goal: str) -> bool:
    seen = {start}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        if node == goal:
            return True
        for nxt in adj.get(node, ()):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return False


# ---------------------------------------------------------------------------
# Step 2: layering
# ---------------------------------------------------------------------------

def _assign_ranks_longest_path(node_ids: list[str], edges: list[_Edge]) -> dict[str, int]:
    """Longest path from sources over the acyclic orientation."""
    adj: dict[str, list[str]] = defaultdict(list)
    indeg = {n: 0 for n in node_ids}
    for e in edges:
        s, t = (e.target, e.source) if e.reversed else (e.source, e.target)
        adj[s].append(t)
        indeg[t] += 1

    ranks = {n: 0 for n in node_ids}
    queue = deque(n for n in node_ids if indeg[n] == 0)
    while queue:
        node = queue.popleft()
        for child in adj[node]:
            ranks[child] = max(ranks[child], ranks[node] + 1)
            indeg[child] -= 1
            if indeg[child] == 0:
                queue.append(child)
    return ranks


# ---------------------------------------------------------------------------
# Steps 3-4: virtual nodes and ordering
# ---------------------------------------------------------------------------

def _order_layers(nodes: dict[str, _Node], edges: list[_Edge]) -> dict[int, list[str]]:
    virtual_count = 0
    layer_pairs: list[tuple[str, str, float]] = []
    for e in edges:
        s, t = (e.target, e.source) if e.reversed else (e.source, e.target)
        bias = 0.0
        if e.branch_port is not None and not e.reversed:
            bias = 0.5 + 0.01 * e.branch_port
        prev = s
        for r in range(nodes[s].rank + 1, nodes[t].rank):
            vname = f"__virtual_{virtual_count}"
            virtual_count += 1
            nodes[vname] = _Node(vname, 0, 0, rank=r, is_virtual=True)
            e.chain.append(vname)
            layer_pairs.append((prev, vname, bias))
            prev = vname
            bias = 0.0
        if nodes[t].rank > nodes[s].rank:
            layer_pairs.append((prev, t, bias))

    by_rank: dict[int, list[str]] = defaultdict(list)
    for nid, node in nodes.items():
        by_rank[node.rank].append(nid)
    for rank_nodes in by_rank.values():
        for i, nid in enumerate(rank_nodes):
            nodes[nid].order = float(i)

    succ: dict[str, list[tuple[str, float]]] = defaultdict(list)
    pred: dict[str, list[tuple[str, float]]] = defaultdict(list)
    for s, t, bias in layer_pairs:
        succ[s].append((t, -bias))
        pred[t].append((s, bias))

    max_rank = max(by_rank) if by_rank else 0
    for _ in range(BARYCENTER_ITERATIONS):
        for r in range(1, max_rank + 1):
            _barycenter_sort(by_rank[r], nodes, pred)
        for r in range(max_rank - 1, -1, -1):
            _barycenter_sort(by_rank[r], nodes, succ)
    # Final forward sweep so port biases hold
    for r in range(1, max_rank + 1):
        _barycenter_sort(by_rank[r], nodes, pred)
    return dict(by_rank)


def _barycenter_sort(
    rank_nodes: list[str],
    nodes: dict[str, _Node],
    neighbor_adj: dict[str, list[tuple[str, float]]],
) -> None:
    """Sort nodes in a rank by barycenter of their neighbors."""
    barycenters: dict[str, float] = {}
    for nid in rank_nodes:
        neighbors = neighbor_adj.get(nid, [])
        if neighbors:
            barycenters[nid] = sum(nodes[n].order + b for n, b in neighbors) / len(neighbors)
        else:
            barycenters[nid] = nodes[nid].order
    rank_nodes.sort(key=lambda n: (barycenters[n], nodes[n].order))
    for i, nid in enumerate(rank_nodes):
        nodes[nid].order = float(i)


# ---------------------------------------------------------------------------
# Step 5: coordinates
# ---------------------------------------------------------------------------

def _assign_coordinates(
    by_rank: dict[int, list[str]],
    nodes: dict[str, _Node],
    edges: list[_Edge],
    node_spacing: float,
    layer_spacing: float,
) -> None:
    """Place layers along the main axis and nodes across it.

    Nodes are pulled towards the centre of their predecessors; the node
    reached by a straightness-priority edge is anchored on its
    predecessor's centre line and the rest of the layer packs around it.
    """
    ranks = sorted(by_rank)
    cursor = 0.0
    for r in ranks:
        real = [nodes[n] for n in by_rank[r] if not nodes[n].is_virtual]
        width = max((n.main for n in real), default=0)
        for nid in by_rank[r]:
            node = nodes[nid]
            node.u = cursor + (width - node.main) / 2
        cursor += width + (layer_spacing if real else layer_spacing / 2)

    preds: dict[str, list[_Edge]] = defaultdict(list)
    for e in edges:
        if not e.reversed:
            preds[e.target].append(e)

    placed: set[str] = set()
    for r in ranks:
        layer = [nid for nid in by_rank[r] if not nodes[nid].is_virtual]
        desired: dict[str, float] = {}
        anchor: Optional[str] = None
        for nid in layer:
            incoming = [e for e in preds[nid] if e.source in placed]
            if incoming:
                centres = [nodes[e.source].v_centre for e in incoming]
                desired[nid] = sum(centres) / len(centres)
                straight = next((e for e in incoming if e.straight), None)
                if straight is not None:
                    desired[nid] = nodes[straight.source].v_centre
                    if anchor is None:
                        anchor = nid
                elif all(e.branch_port is not None for e in incoming):
                    src = nodes[incoming[0].source]
                    desired[nid] = src.v + src.cross + node_spacing + nodes[nid].cross / 2
            else:
                desired[nid] = nodes[nid].cross / 2
        if anchor is None and layer:
            anchor = next((n for n in layer if any(e.source in placed for e in preds[n])), layer[0])

        if layer:
            idx = layer.index(anchor)
            a = nodes[anchor]
            a.v = desired[anchor] - a.cross / 2
            # Downward from the anchor
            bottom = a.v + a.cross
            for nid in layer[idx + 1:]:
                node = nodes[nid]
                node.v = max(desired[nid] - node.cross / 2, bottom + node_spacing)
                bottom = node.v + node.cross
            # Upward from the anchor
            top = a.v
            for nid in reversed(layer[:idx]):
                node = nodes[nid]
                node.v = min(desired[nid] - node.cross / 2, top - node_spacing - node.cross)
                top = node.v
        placed.update(layer)

    # Virtual nodes follow the straight line between chain ends
    for e in edges:
        if not e.chain:
            continue
        s, t = (e.target, e.source) if e.reversed else (e.source, e.target)
        for vid in e.chain:
            nodes[vid].v = nodes[s].v_centre

    real = [n for n in nodes.values() if not n.is_virtual]
    min_v = min((n.v for n in real), default=0)
    for node in nodes.values():
        node.v -= min_v


# ---------------------------------------------------------------------------
# Step 6: edge sections
# ---------------------------------------------------------------------------

def _route_edges(nodes: dict[str, _Node], edges: list[_Edge]) -> dict[str, list[tuple[float, float]]]:
    """Orthogonal polylines in the (u, v) frame, keyed by edge id."""
    sections: dict[str, list[tuple[float, float]]] = {}
    real = [n for n in nodes.values() if not n.is_virtual]
    far_v = max((n.v + n.cross for n in real), default=0)

    for e in edges:
        s = nodes[e.source]
        t = nodes[e.target]
        s_end = s.u + s.main
        if e.reversed or t.u + t.main <= s.u:
            # Loop back underneath the content
            below = far_v + EDGE_CLEARANCE
            sections[e.id] = [
                (s.u + s.main / 2, s.v + s.cross),
                (s.u + s.main / 2, below),
                (t.u + t.main / 2, below),
                (t.u + t.main / 2, t.v + t.cross),
            ]
        elif t.u >= s_end:
            if e.branch_port is not None and t.v_centre > s.v + s.cross:
                sections[e.id] = [
                    (s.u + s.main / 2, s.v + s.cross),
                    (s.u + s.main / 2, t.v_centre),
                    (t.u, t.v_centre),
                ]
            elif abs(s.v_centre - t.v_centre) < 1:
                sections[e.id] = [(s_end, s.v_centre), (t.u, s.v_centre)]
            else:
                mid = (s_end + t.u) / 2
                if e.chain:
                    mid = t.u - EDGE_CLEARANCE * 2
                sections[e.id] = [
                    (s_end, s.v_centre),
                    (mid, s.v_centre),
                    (mid, t.v_centre),
                    (t.u, t.v_centre),
                ]
        else:
            # Same layer: vertical connection
            if t.v >= s.v + s.cross:
                start, end = (s.u + s.main / 2, s.v + s.cross), (t.u + t.main / 2, t.v)
            else:
                start, end = (s.u + s.main / 2, s.v), (t.u + t.main / 2, t.v + t.cross)
            if abs(start[0] - end[0]) < 1:
                sections[e.id] = [start, end]
            else:
                mid_v = (start[1] + end[1]) / 2
                sections[e.id] = [start, (start[0], mid_v), (end[0], mid_v), end]
    return sections
