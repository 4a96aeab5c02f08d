"""
BPMN Layout MCP Server — auto-layout BPMN diagrams via Model Context Protocol.

Exposes 4 tools that let an LLM agent build a BPMN process diagram in
memory, lay it out, and read back the result as JSON.

Tools:
  1. diagram  — lifecycle: create, import_json, export_json, list, delete
  2. element  — content:   add_shape, connect, move, list
  3. layout   — positioning: full (whole diagram or one pool/subprocess),
                             subset (selected elements only)
  4. inspect  — read-only: crossings, overlaps, happy_path, info
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from bpmn_layout_mcp.crossings import detect_crossing_flows
from bpmn_layout_mcp.engines import default_engine
from bpmn_layout_mcp.errors import LayoutError
from bpmn_layout_mcp.happy_path import detect_happy_path
from bpmn_layout_mcp.helpers import is_connection_type, layout_scopes
from bpmn_layout_mcp.models import (
    COLLABORATION,
    PROCESS,
    DiagramError,
    DiagramModel,
    diagram_from_dict,
    diagram_to_dict,
)
from bpmn_layout_mcp.options import LayoutOptions
from bpmn_layout_mcp.overlap import find_overlaps
from bpmn_layout_mcp.pipeline import layout_diagram
from bpmn_layout_mcp.subset import layout_subset
from bpmn_layout_mcp.validation import (
    ValidationError,
    validate_action,
    validate_bool,
    validate_compactness,
    validate_connection_type,
    validate_diagram_data,
    validate_direction,
    validate_element_type,
    validate_engine,
    validate_id_list,
    validate_lane_strategy,
    validate_non_empty_string,
    validate_number,
    validate_spacing,
    _DIAGRAM_ACTIONS,
    _ELEMENT_ACTIONS,
    _INSPECT_ACTIONS,
    _LAYOUT_ACTIONS,
)

# ---------------------------------------------------------------------------
# Logging: suppress routine FastMCP INFO messages that clients show
# as warnings (they go to stderr).
# ---------------------------------------------------------------------------
logging.getLogger("mcp.server").setLevel(logging.WARNING)
logger = logging.getLogger("bpmn-layout-mcp")

# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------
mcp = FastMCP(
    "bpmn-layout-mcp",
    instructions=(
        "MCP server for automatic layout of BPMN 2.0 process diagrams.\n\n"
        "=== ONLY 4 TOOLS — use the 'action' parameter to pick the operation ===\n\n"
        "1. diagram(action, ...) — lifecycle: create, import_json, export_json,\n"
        "   list, delete.\n"
        "2. element(action, ...) — content: add_shape, connect, move, list.\n"
        "3. layout(action, ...) — positioning: full, subset.\n"
        "4. inspect(action, ...) — read-only: crossings, overlaps, happy_path, info.\n\n"
        "=== RULES ===\n"
        "- ALL coordinates (x, y) are ABSOLUTE page positions.\n"
        "- Element types accept short names (task, exclusivegateway, startevent).\n"
        "- Attached events: add_shape(element_type='boundaryevent', host_id=...).\n"
        "- Mark a gateway's default branch with connect(..., is_default=True).\n"
        "- Run layout(action='full') after structural edits; use\n"
        "  layout(action='subset') to tidy a few new elements without\n"
        "  disturbing the rest.\n"
        "- Layout returns the remaining crossing count and crossing pairs.\n"
    ),
)

# In-memory diagram registry: name -> DiagramModel
# Guarded by _diagrams_lock for thread-safety.
_diagrams: dict[str, DiagramModel] = {}
_diagrams_lock = threading.Lock()


def _get_diagram(name: str) -> Optional[DiagramModel]:
    with _diagrams_lock:
        return _diagrams.get(name)


# ===================================================================
# TOOL 1: diagram (lifecycle)
# ===================================================================

@mcp.tool()
def diagram(
    action: str,
    name: str = "",
    collaboration: bool = False,
    json_content: str = "",
) -> str:
    """Diagram lifecycle management.

    Actions:
      create      — Create an empty diagram with a process (or collaboration)
                    root. Params: name, collaboration.
      import_json — Import a diagram from its JSON form. Params: name, json_content.
      export_json — Get the JSON form of a diagram. Params: name.
      list        — List all in-memory diagrams. No params needed.
      delete      — Remove a diagram from memory. Params: name.

    The JSON form is ``{"name": ..., "elements": [...]}`` where shapes carry
    id/type/x/y/width/height/parent and connections carry
    id/type/source/target/waypoints.

    Args:
        action: One of: create, import_json, export_json, list, delete.
        name: Diagram name (used as key in memory).
        collaboration: Create a collaboration root instead of a process.
        json_content: JSON string for import_json.

    Returns:
        Result string or JSON depending on action.
    """
    try:
        action = validate_action(action, "diagram", _DIAGRAM_ACTIONS)
    except ValidationError as exc:
        return f"Error: {exc.message}"

    if action == "list":
        with _diagrams_lock:
            items = list(_diagrams.items())
        result: list[dict[str, Any]] = []
        for n, model in items:
            connections = sum(1 for el in model.all() if el.is_connection)
            result.append({"name": n, "shapes": len(model) - connections, "connections": connections})
        return json.dumps(result, indent=2)

    try:
        name = validate_non_empty_string(name, "name")
    except ValidationError as exc:
        return f"Error: {exc.message}"

    if action == "create":
        model = DiagramModel(name=name)
        if collaboration:
            model.add_shape(COLLABORATION, element_id="Collaboration_1", width=0, height=0)
        else:
            model.add_shape(PROCESS, element_id="Process_1", width=0, height=0)
        with _diagrams_lock:
            _diagrams[name] = model
        root = model.root()
        return f"Diagram '{name}' created (root '{root.id}')."

    elif action == "import_json":
        try:
            validate_non_empty_string(json_content, "json_content")
            data = validate_diagram_data(json.loads(json_content))
            model = diagram_from_dict(data)
        except json.JSONDecodeError as exc:
            return f"Error: invalid JSON: {exc.msg} (line {exc.lineno})."
        except ValidationError as exc:
            return f"Error: {exc.message}"
        except DiagramError as exc:
            return f"Error: {exc}"
        model.name = name
        with _diagrams_lock:
            _diagrams[name] = model
        return f"Diagram '{name}' imported ({len(model)} elements)."

    elif action == "export_json":
        model = _get_diagram(name)
        if model is None:
            return f"Error: diagram '{name}' not found."
        return json.dumps(diagram_to_dict(model), indent=2)

    elif action == "delete":
        with _diagrams_lock:
            removed = _diagrams.pop(name, None)
        if removed is None:
            return f"Error: diagram '{name}' not found."
        return f"Diagram '{name}' deleted."

    else:
        return f"Error: unknown diagram action '{action}'. Use: create, import_json, export_json, list, delete."


# ===================================================================
# TOOL 2: element (content)
# ===================================================================

@mcp.tool()
def element(
    action: str,
    diagram_name: str = "",
    element_type: str = "task",
    element_id: str = "",
    name: str = "",
    x: float = 0,
    y: float = 0,
    width: float = 0,
    height: float = 0,
    parent_id: str = "",
    host_id: str = "",
    source_id: str = "",
    target_id: str = "",
    connection_type: str = "sequenceflow",
    is_default: bool = False,
    element_ids: Optional[list[str]] = None,
    dx: float = 0,
    dy: float = 0,
) -> str:
    """Add, connect, move and list diagram elements.

    Actions:
      add_shape — Add a task, event, gateway, subprocess, pool, lane or
                  artifact. Params: element_type, element_id, name, x, y,
                  width, height (0 = conventional size), parent_id, host_id
                  (attached events).
      connect   — Connect two shapes. Params: source_id, target_id,
                  connection_type, element_id, name, is_default.
      move      — Move shapes by a delta. Params: element_ids, dx, dy.
      list      — List all elements with positions.

    Args:
        action: One of: add_shape, connect, move, list.
        diagram_name: Target diagram name.

    Returns:
        JSON for add_shape/connect/list, a message for move.
    """
    try:
        action = validate_action(action, "element", _ELEMENT_ACTIONS)
        diagram_name = validate_non_empty_string(diagram_name, "diagram_name")
    except ValidationError as exc:
        return f"Error: {exc.message}"
    model = _get_diagram(diagram_name)
    if model is None:
        return f"Error: diagram '{diagram_name}' not found."

    if action == "add_shape":
        try:
            etype = validate_element_type(element_type)
            validate_number(x, "x")
            validate_number(y, "y")
            validate_number(width, "width", min_val=0)
            validate_number(height, "height", min_val=0)
        except ValidationError as exc:
            return f"Error: {exc.message}"
        if element_id and element_id in model:
            return f"Error: element '{element_id}' already exists."
        parent = parent_id or None
        if host_id:
            host = model.get(host_id)
            if host is None:
                return f"Error: host element '{host_id}' not found."
            parent = host.parent_id
        elif parent is None:
            root = model.root()
            parent = root.id if root is not None else None
        try:
            el = model.add_shape(
                etype,
                x=x,
                y=y,
                width=width or None,
                height=height or None,
                parent_id=parent,
                element_id=element_id or None,
                name=name,
                host_id=host_id or None,
            )
        except DiagramError as exc:
            return f"Error: {exc}"
        return json.dumps({"id": el.id, "type": el.type, "x": el.x, "y": el.y,
                           "width": el.width, "height": el.height})

    elif action == "connect":
        try:
            source_id = validate_non_empty_string(source_id, "source_id")
            target_id = validate_non_empty_string(target_id, "target_id")
            ctype = validate_connection_type(connection_type)
            validate_bool(is_default, "is_default")
        except ValidationError as exc:
            return f"Error: {exc.message}"
        if element_id and element_id in model:
            return f"Error: element '{element_id}' already exists."
        try:
            conn = model.connect(
                source_id, target_id, ctype,
                element_id=element_id or None, name=name, is_default=is_default,
            )
        except DiagramError as exc:
            return f"Error: {exc}"
        return json.dumps({"id": conn.id, "type": conn.type,
                           "source": conn.source_id, "target": conn.target_id})

    elif action == "move":
        try:
            ids = validate_id_list(element_ids, "element_ids")
            validate_number(dx, "dx")
            validate_number(dy, "dy")
        except ValidationError as exc:
            return f"Error: {exc.message}"
        missing = [i for i in ids if i not in model]
        if missing:
            return f"Error: elements not found: {', '.join(missing)}."
        model.move_elements(ids, dx, dy)
        return f"Moved {len(ids)} element(s) by ({dx}, {dy})."

    elif action == "list":
        rows: list[dict[str, Any]] = []
        for el in model.all():
            if is_connection_type(el.type):
                rows.append({"id": el.id, "type": el.type, "source": el.source_id,
                             "target": el.target_id,
                             "waypoints": [[p.x, p.y] for p in el.waypoints]})
            else:
                rows.append({"id": el.id, "type": el.type, "name": el.name,
                             "x": el.x, "y": el.y, "width": el.width, "height": el.height,
                             "parent": el.parent_id})
        return json.dumps(rows, indent=2)

    else:
        return f"Error: unknown element action '{action}'. Use: add_shape, connect, move, list."


# ===================================================================
# TOOL 3: layout (positioning)
# ===================================================================

@mcp.tool()
async def layout(
    action: str,
    diagram_name: str = "",
    direction: str = "RIGHT",
    compactness: str = "",
    node_spacing: Optional[float] = None,
    layer_spacing: Optional[float] = None,
    preserve_happy_path: bool = True,
    grid_snap: bool = True,
    grid_quantum: Optional[float] = None,
    simplify_routes: bool = True,
    lane_strategy: str = "preserve",
    scope_element_id: str = "",
    element_ids: Optional[list[str]] = None,
    engine: str = "",
) -> str:
    """Automatic layout of BPMN diagrams.

    Actions:
      full   — Lay out the whole diagram, or only the participant/subprocess
               given as scope_element_id.
      subset — Lay out only element_ids; everything else stays in place.

    Args:
        action: One of: full, subset.
        diagram_name: Target diagram name.
        direction: Main flow direction: RIGHT, DOWN, LEFT, UP.
        compactness: "compact" or "spacious" spacing preset (optional).
        node_spacing: Gap between nodes in one layer (overrides the preset).
        layer_spacing: Gap between layers (overrides the preset).
        preserve_happy_path: Keep the main path on one straight row.
        grid_snap: Quantize nodes into regular columns and rows.
        grid_quantum: Also snap coordinates to this pixel grid (e.g. 10).
        simplify_routes: Straighten gateway branch routes.
        lane_strategy: "preserve" lane order or "optimize" it to cut
                       cross-lane flows.
        scope_element_id: Restrict full layout to this pool or subprocess.
        element_ids: Elements for subset layout.
        engine: "elk" or "layered" (default: elk when Node.js is available).

    Returns:
        JSON with crossing_flows and crossing_pairs.
    """
    try:
        action = validate_action(action, "layout", _LAYOUT_ACTIONS)
        diagram_name = validate_non_empty_string(diagram_name, "diagram_name")
        opts = LayoutOptions(
            direction=validate_direction(direction),
            compactness=validate_compactness(compactness),
            node_spacing=validate_spacing(node_spacing, "node_spacing") if node_spacing is not None else None,
            layer_spacing=validate_spacing(layer_spacing, "layer_spacing") if layer_spacing is not None else None,
            preserve_happy_path=validate_bool(preserve_happy_path, "preserve_happy_path"),
            grid_snap=validate_bool(grid_snap, "grid_snap"),
            grid_quantum=validate_spacing(grid_quantum, "grid_quantum") if grid_quantum else None,
            simplify_routes=validate_bool(simplify_routes, "simplify_routes"),
            lane_strategy=validate_lane_strategy(lane_strategy),
            scope_element_id=scope_element_id or None,
        )
        engine_name = validate_engine(engine)
        ids = validate_id_list(element_ids, "element_ids") if action == "subset" else []
    except ValidationError as exc:
        return f"Error: {exc.message}"

    model = _get_diagram(diagram_name)
    if model is None:
        return f"Error: diagram '{diagram_name}' not found."

    try:
        chosen = await default_engine(engine_name)
        if action == "full":
            result = await layout_diagram(model, opts, chosen)
        elif action == "subset":
            missing = [i for i in ids if i not in model]
            if missing:
                return f"Error: elements not found: {', '.join(missing)}."
            opts.scope_element_id = None
            result = await layout_subset(model, ids, opts, chosen)
        else:
            return f"Error: unknown layout action '{action}'. Use: full, subset."
    except LayoutError as exc:
        logger.warning("Layout of '%s' failed: %s", diagram_name, exc.message)
        return f"Error: {exc.message}"

    result.setdefault("crossing_flows", 0)
    result.setdefault("crossing_pairs", [])
    result["engine"] = chosen.name
    return json.dumps(result, indent=2)


# ===================================================================
# TOOL 4: inspect (read-only)
# ===================================================================

@mcp.tool()
def inspect(
    action: str,
    diagram_name: str = "",
) -> str:
    """Read-only inspection of diagrams.

    Actions:
      crossings  — Connection pairs whose routes cross.
      overlaps   — Shape pairs whose boxes intersect, per pool/process.
      happy_path — Sequence flows on the detected main path.
      info       — Element counts by type and overall bounds.

    Args:
        action: One of: crossings, overlaps, happy_path, info.
        diagram_name: Target diagram name.

    Returns:
        JSON data.
    """
    try:
        action = validate_action(action, "inspect", _INSPECT_ACTIONS)
        diagram_name = validate_non_empty_string(diagram_name, "diagram_name")
    except ValidationError as exc:
        return f"Error: {exc.message}"
    model = _get_diagram(diagram_name)
    if model is None:
        return f"Error: diagram '{diagram_name}' not found."

    if action == "crossings":
        crossings = detect_crossing_flows(model)
        return json.dumps({"count": crossings.count,
                           "pairs": [list(p) for p in crossings.pairs]}, indent=2)

    elif action == "overlaps":
        pairs: list[list[str]] = []
        for scope in layout_scopes(model):
            pairs.extend(list(p) for p in find_overlaps(model, scope))
        return json.dumps({"count": len(pairs), "pairs": pairs}, indent=2)

    elif action == "happy_path":
        edges = detect_happy_path(model)
        ordered = [el.id for el in model.connections() if el.id in edges]
        return json.dumps({"edges": ordered}, indent=2)

    elif action == "info":
        counts: dict[str, int] = {}
        for el in model.all():
            counts[el.type] = counts.get(el.type, 0) + 1
        shapes = [el for el in model.all() if not el.is_connection and el.width > 0]
        info: dict[str, Any] = {"name": diagram_name, "elements": len(model), "types": counts}
        if shapes:
            info["bounds"] = {
                "x": min(el.x for el in shapes),
                "y": min(el.y for el in shapes),
                "right": max(el.right for el in shapes),
                "bottom": max(el.bottom for el in shapes),
            }
        return json.dumps(info, indent=2)

    else:
        return f"Error: unknown inspect action '{action}'. Use: crossings, overlaps, happy_path, info."


# ===================================================================
# Entry point
# ===================================================================

def main() -> None:
    """Run the MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
