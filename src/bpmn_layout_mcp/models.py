"""
In-memory diagram model for BPMN process diagrams.

Provides the element registry and mutation primitives the layout pipeline
works against: lookup and filtering, bulk moves by delta, container
resizing, waypoint replacement and connection creation.  Coordinates are
absolute page positions (top-left origin), the same convention BPMN DI uses.

The mutation primitives mimic those of an interactive BPMN modeler, side
effects included: moving a shape drags its children, attached events and
label along, and re-derives lane membership from the new position.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from bpmn_layout_mcp.constants import (
    CONTAINER_DEFAULT_HEIGHT,
    CONTAINER_DEFAULT_WIDTH,
    EVENT_SIZE,
    GATEWAY_SIZE,
    PARTICIPANT_HEIGHT,
    PARTICIPANT_WIDTH,
    SUBPROCESS_HEIGHT,
    SUBPROCESS_WIDTH,
    TASK_HEIGHT,
    TASK_WIDTH,
)


# ---------------------------------------------------------------------------
# Element types
# ---------------------------------------------------------------------------

PROCESS = "bpmn:Process"
COLLABORATION = "bpmn:Collaboration"
PARTICIPANT = "bpmn:Participant"
LANE = "bpmn:Lane"
SUBPROCESS = "bpmn:SubProcess"
TASK = "bpmn:Task"
START_EVENT = "bpmn:StartEvent"
END_EVENT = "bpmn:EndEvent"
INTERMEDIATE_CATCH_EVENT = "bpmn:IntermediateCatchEvent"
INTERMEDIATE_THROW_EVENT = "bpmn:IntermediateThrowEvent"
BOUNDARY_EVENT = "bpmn:BoundaryEvent"
EXCLUSIVE_GATEWAY = "bpmn:ExclusiveGateway"
PARALLEL_GATEWAY = "bpmn:ParallelGateway"
INCLUSIVE_GATEWAY = "bpmn:InclusiveGateway"
EVENT_BASED_GATEWAY = "bpmn:EventBasedGateway"
SEQUENCE_FLOW = "bpmn:SequenceFlow"
MESSAGE_FLOW = "bpmn:MessageFlow"
ASSOCIATION = "bpmn:Association"
DATA_INPUT_ASSOCIATION = "bpmn:DataInputAssociation"
DATA_OUTPUT_ASSOCIATION = "bpmn:DataOutputAssociation"
TEXT_ANNOTATION = "bpmn:TextAnnotation"
DATA_OBJECT_REFERENCE = "bpmn:DataObjectReference"
DATA_STORE_REFERENCE = "bpmn:DataStoreReference"
GROUP = "bpmn:Group"
LABEL = "label"


# ---------------------------------------------------------------------------
# Geometry primitives
# ---------------------------------------------------------------------------

@dataclass
class Point:
    """A 2-D coordinate."""
    x: float
    y: float

    def copy(self) -> 'Point':
        return Point(self.x, self.y)

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}


@dataclass
class Bounds:
    """Axis-aligned bounding box."""
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def cx(self) -> float:
        return self.x + self.width / 2

    @property
    def cy(self) -> float:
        return self.y + self.height / 2

    def intersects(self, other: 'Bounds', margin: float = 0) -> bool:
        """Check if two bounding boxes overlap (with optional margin)."""
        return not (
            self.right + margin <= other.x
            or other.right + margin <= self.x
            or self.bottom + margin <= other.y
            or other.bottom + margin <= self.y
        )

    def contains_point(self, px: float, py: float, margin: float = 0) -> bool:
        """Check if a point is inside this bounding box (with margin)."""
        return (
            self.x - margin <= px <= self.right + margin
            and self.y - margin <= py <= self.bottom + margin
        )

    def expanded(self, margin: float) -> 'Bounds':
        return Bounds(
            self.x - margin, self.y - margin,
            self.width + 2 * margin, self.height + 2 * margin,
        )


# ---------------------------------------------------------------------------
# Diagram elements
# ---------------------------------------------------------------------------

@dataclass
class DiagramElement:
    """A shape or connection in a BPMN diagram.

    Shapes use x/y/width/height; connections use source_id/target_id and
    waypoints.  Attached (boundary) events reference their host through
    ``host_id`` rather than through containment.
    """
    id: str
    type: str
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0
    parent_id: Optional[str] = None
    name: str = ""
    # Attached events
    host_id: Optional[str] = None
    # Connections
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    waypoints: list[Point] = field(default_factory=list)
    is_default: bool = False
    # Containers
    is_expanded: bool = True
    triggered_by_event: bool = False
    # Lanes
    flow_node_refs: list[str] = field(default_factory=list)
    # External label (events, gateways, flows)
    label: Optional[Bounds] = None
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def is_connection(self) -> bool:
        return self.source_id is not None and self.target_id is not None

    @property
    def bounds(self) -> Bounds:
        return Bounds(self.x, self.y, self.width, self.height)

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def cx(self) -> float:
        return self.x + self.width / 2

    @property
    def cy(self) -> float:
        return self.y + self.height / 2


def default_size(element_type: str) -> tuple[float, float]:
    """Return the conventional (width, height) for a BPMN element type."""
    if element_type == PARTICIPANT:
        return PARTICIPANT_WIDTH, PARTICIPANT_HEIGHT
    if element_type == SUBPROCESS:
        return SUBPROCESS_WIDTH, SUBPROCESS_HEIGHT
    if "Gateway" in element_type:
        return GATEWAY_SIZE, GATEWAY_SIZE
    if "Event" in element_type:
        return EVENT_SIZE, EVENT_SIZE
    if element_type == LANE:
        return CONTAINER_DEFAULT_WIDTH, CONTAINER_DEFAULT_HEIGHT
    return TASK_WIDTH, TASK_HEIGHT


class DiagramError(Exception):
    """Raised when a model operation references an invalid element."""


# ---------------------------------------------------------------------------
# Diagram model
# ---------------------------------------------------------------------------

class DiagramModel:
    """Element registry plus modeling commands for one diagram.

    Elements are kept in insertion order, which doubles as the declared
    order of outgoing flows.
    """

    def __init__(self, name: str = "diagram") -> None:
        self.name = name
        self._elements: dict[str, DiagramElement] = {}
        self._next_id = 1

    # ----- registry -----

    def __len__(self) -> int:
        return len(self._elements)

    def __contains__(self, element_id: object) -> bool:
        return element_id in self._elements

    def get(self, element_id: Optional[str]) -> Optional[DiagramElement]:
        if element_id is None:
            return None
        return self._elements.get(element_id)

    def all(self) -> list[DiagramElement]:
        return list(self._elements.values())

    def filter(self, predicate: Callable[[DiagramElement], bool]) -> list[DiagramElement]:
        return [el for el in self._elements.values() if predicate(el)]

    def children_of(self, parent_id: Optional[str]) -> list[DiagramElement]:
        return [el for el in self._elements.values() if el.parent_id == parent_id]

    def connections(self) -> list[DiagramElement]:
        return [el for el in self._elements.values() if el.is_connection]

    def outgoing(self, element_id: str) -> list[DiagramElement]:
        return [el for el in self._elements.values() if el.source_id == element_id]

    def incoming(self, element_id: str) -> list[DiagramElement]:
        return [el for el in self._elements.values() if el.target_id == element_id]

    def source_of(self, connection: DiagramElement) -> Optional[DiagramElement]:
        return self._elements.get(connection.source_id or "")

    def target_of(self, connection: DiagramElement) -> Optional[DiagramElement]:
        return self._elements.get(connection.target_id or "")

    def host_of(self, element: DiagramElement) -> Optional[DiagramElement]:
        return self._elements.get(element.host_id or "")

    def root(self) -> Optional[DiagramElement]:
        """Return the process or collaboration root element, if any."""
        for el in self._elements.values():
            if el.type in (PROCESS, COLLABORATION) and el.parent_id is None:
                return el
        return None

    def descendants(self, element_id: str) -> list[DiagramElement]:
        result: list[DiagramElement] = []
        stack = [element_id]
        while stack:
            pid = stack.pop()
            for el in self._elements.values():
                if el.parent_id == pid and not el.is_connection:
                    result.append(el)
                    stack.append(el.id)
        return result

    def next_id(self, prefix: str = "Element") -> str:
        while True:
            cid = f"{prefix}_{self._next_id}"
            self._next_id += 1
            if cid not in self._elements:
                return cid

    # ----- creation -----

    def add(self, element: DiagramElement) -> DiagramElement:
        if element.id in self._elements:
            raise DiagramError(f"Duplicate element id: {element.id}")
        self._elements[element.id] = element
        return element

    def add_shape(
        self,
        element_type: str,
        x: float = 0,
        y: float = 0,
        width: Optional[float] = None,
        height: Optional[float] = None,
        parent_id: Optional[str] = None,
        element_id: Optional[str] = None,
        name: str = "",
        host_id: Optional[str] = None,
        **extra: Any,
    ) -> DiagramElement:
        """Create a shape with conventional default size."""
        dw, dh = default_size(element_type)
        if parent_id is not None and parent_id not in self._elements:
            raise DiagramError(f"Parent element not found: {parent_id}")
        if host_id is not None and host_id not in self._elements:
            raise DiagramError(f"Host element not found: {host_id}")
        el = DiagramElement(
            id=element_id or self.next_id(element_type.split(":")[-1]),
            type=element_type,
            x=x,
            y=y,
            width=dw if width is None else width,
            height=dh if height is None else height,
            parent_id=parent_id,
            name=name,
            host_id=host_id,
            **extra,
        )
        return self.add(el)

    def connect(
        self,
        source_id: str,
        target_id: str,
        connection_type: str = SEQUENCE_FLOW,
        element_id: Optional[str] = None,
        name: str = "",
        is_default: bool = False,
    ) -> DiagramElement:
        """Create a connection between two existing shapes.

        The connection is parented to the source's container (for message
        flows, to the diagram root) and gets a straight centre-to-centre
        route until layout replaces it.
        """
        src = self._elements.get(source_id)
        tgt = self._elements.get(target_id)
        if src is None:
            raise DiagramError(f"Source element not found: {source_id}")
        if tgt is None:
            raise DiagramError(f"Target element not found: {target_id}")

        parent_id = src.parent_id
        if src.type == BOUNDARY_EVENT and src.parent_id is None:
            host = self.host_of(src)
            parent_id = host.parent_id if host else None
        if connection_type == MESSAGE_FLOW:
            root = self.root()
            parent_id = root.id if root else None

        conn = DiagramElement(
            id=element_id or self.next_id(connection_type.split(":")[-1]),
            type=connection_type,
            parent_id=parent_id,
            source_id=source_id,
            target_id=target_id,
            name=name,
            is_default=is_default,
            waypoints=[Point(src.cx, src.cy), Point(tgt.cx, tgt.cy)],
        )
        return self.add(conn)

    def remove(self, element_id: str) -> None:
        self._elements.pop(element_id, None)

    # ----- modeling commands -----

    def move_elements(
        self,
        elements: Iterable[DiagramElement | str],
        dx: float,
        dy: float,
    ) -> None:
        """Move shapes by a delta, dragging dependants along.

        Children of moved containers, attached events of moved hosts and
        external labels move by the same delta.  Connection endpoints that
        touch a moved shape are translated; interior waypoints move only
        when both ends moved.  Lane membership of moved flow nodes is then
        re-derived from their new centres.
        """
        if dx == 0 and dy == 0:
            return

        moved: dict[str, DiagramElement] = {}
        for item in elements:
            el = self._elements.get(item) if isinstance(item, str) else self._elements.get(item.id)
            if el is None or el.is_connection:
                continue
            moved[el.id] = el
            for child in self.descendants(el.id):
                moved.setdefault(child.id, child)

        # Attached events follow their host
        for el in list(self._elements.values()):
            if el.type == BOUNDARY_EVENT and el.host_id in moved:
                moved.setdefault(el.id, el)

        for el in moved.values():
            el.x += dx
            el.y += dy
            if el.label is not None:
                el.label.x += dx
                el.label.y += dy

        for conn in self.connections():
            src_moved = conn.source_id in moved
            tgt_moved = conn.target_id in moved
            if not conn.waypoints or not (src_moved or tgt_moved):
                continue
            if src_moved and tgt_moved:
                conn.waypoints = [Point(p.x + dx, p.y + dy) for p in conn.waypoints]
            elif src_moved:
                conn.waypoints[0] = Point(conn.waypoints[0].x + dx, conn.waypoints[0].y + dy)
            else:
                last = conn.waypoints[-1]
                conn.waypoints[-1] = Point(last.x + dx, last.y + dy)
            if conn.label is not None and src_moved and tgt_moved:
                conn.label.x += dx
                conn.label.y += dy

        self._refresh_lane_membership(moved.values())

    def resize_shape(self, element: DiagramElement | str, bounds: Bounds) -> None:
        """Set a shape's absolute box."""
        el = self._elements.get(element) if isinstance(element, str) else self._elements.get(element.id)
        if el is None:
            raise DiagramError(f"Element not found: {element}")
        el.x = bounds.x
        el.y = bounds.y
        el.width = bounds.width
        el.height = bounds.height

    def update_waypoints(self, connection: DiagramElement | str, points: list[Point]) -> None:
        """Replace a connection's waypoint list."""
        conn = self._elements.get(connection) if isinstance(connection, str) else self._elements.get(connection.id)
        if conn is None or not conn.is_connection:
            raise DiagramError(f"Connection not found: {connection}")
        if len(points) < 2:
            raise DiagramError(f"Connection {conn.id} needs at least 2 waypoints")
        conn.waypoints = [Point(float(p.x), float(p.y)) for p in points]

    def set_property(self, element: DiagramElement | str, key: str, value: Any) -> None:
        """Write a simple element property (type, host, name, label...)."""
        el = self._elements.get(element) if isinstance(element, str) else self._elements.get(element.id)
        if el is None:
            raise DiagramError(f"Element not found: {element}")
        if key == "type":
            el.type = value
        elif key in ("host", "host_id"):
            el.host_id = value
        elif key == "name":
            el.name = value
        elif key == "label":
            el.label = value
        elif key == "is_default":
            el.is_default = bool(value)
        elif key == "flow_node_refs":
            el.flow_node_refs = list(value)
        else:
            el.properties[key] = value

    # ----- internal -----

    def _refresh_lane_membership(self, moved: Iterable[DiagramElement]) -> None:
        """Reassign moved flow nodes to the lane containing their centre."""
        lanes = [el for el in self._elements.values() if el.type == LANE]
        if not lanes:
            return
        for el in moved:
            if el.type in (LANE, PARTICIPANT) or el.is_connection:
                continue
            owner = next((ln for ln in lanes if el.id in ln.flow_node_refs), None)
            if owner is None:
                continue
            siblings = [ln for ln in lanes if ln.parent_id == owner.parent_id]
            hit = next((ln for ln in siblings if ln.bounds.contains_point(el.cx, el.cy)), None)
            if hit is not None and hit.id != owner.id:
                owner.flow_node_refs.remove(el.id)
                hit.flow_node_refs.append(el.id)

    def copy(self) -> 'DiagramModel':
        return copy.deepcopy(self)


# ---------------------------------------------------------------------------
# Serialization (plain dicts, JSON-compatible)
# ---------------------------------------------------------------------------

def _bounds_to_dict(b: Optional[Bounds]) -> Optional[dict[str, float]]:
    if b is None:
        return None
    return {"x": b.x, "y": b.y, "width": b.width, "height": b.height}


def diagram_to_dict(model: DiagramModel) -> dict[str, Any]:
    """Serialize a diagram to a JSON-compatible dict."""
    elements: list[dict[str, Any]] = []
    for el in model.all():
        data: dict[str, Any] = {"id": el.id, "type": el.type}
        if el.name:
            data["name"] = el.name
        if el.parent_id is not None:
            data["parent"] = el.parent_id
        if el.is_connection:
            data["source"] = el.source_id
            data["target"] = el.target_id
            data["waypoints"] = [p.to_dict() for p in el.waypoints]
            if el.is_default:
                data["is_default"] = True
        else:
            data.update({"x": el.x, "y": el.y, "width": el.width, "height": el.height})
        if el.host_id is not None:
            data["host"] = el.host_id
        if not el.is_expanded:
            data["is_expanded"] = False
        if el.triggered_by_event:
            data["triggered_by_event"] = True
        if el.flow_node_refs:
            data["flow_node_refs"] = list(el.flow_node_refs)
        if el.label is not None:
            data["label"] = _bounds_to_dict(el.label)
        if el.properties:
            data["properties"] = dict(el.properties)
        elements.append(data)
    return {"name": model.name, "elements": elements}


def diagram_from_dict(data: dict[str, Any]) -> DiagramModel:
    """Build a diagram from the dict form produced by :func:`diagram_to_dict`.

    Shapes without explicit width/height get the conventional size for
    their type.  Connections without waypoints get a straight
    centre-to-centre route.

    Raises:
        DiagramError: on duplicate ids or dangling references.
    """
    model = DiagramModel(name=str(data.get("name", "diagram")))
    raw = data.get("elements", [])
    shapes = [e for e in raw if "source" not in e]
    conns = [e for e in raw if "source" in e]

    for item in shapes:
        etype = item["type"]
        dw, dh = default_size(etype)
        label = item.get("label")
        model.add(DiagramElement(
            id=item["id"],
            type=etype,
            x=float(item.get("x", 0)),
            y=float(item.get("y", 0)),
            width=float(item.get("width", dw)),
            height=float(item.get("height", dh)),
            parent_id=item.get("parent"),
            name=item.get("name", ""),
            host_id=item.get("host"),
            is_expanded=bool(item.get("is_expanded", True)),
            triggered_by_event=bool(item.get("triggered_by_event", False)),
            flow_node_refs=list(item.get("flow_node_refs", [])),
            label=Bounds(**label) if label else None,
            properties=dict(item.get("properties", {})),
        ))

    for item in conns:
        for key in ("source", "target"):
            if item[key] not in model:
                raise DiagramError(f"Connection {item['id']} references unknown {key} '{item[key]}'")
        src = model.get(item["source"])
        tgt = model.get(item["target"])
        wps = [Point(float(p["x"]), float(p["y"])) for p in item.get("waypoints", [])]
        if len(wps) < 2:
            wps = [Point(src.cx, src.cy), Point(tgt.cx, tgt.cy)]
        model.add(DiagramElement(
            id=item["id"],
            type=item.get("type", SEQUENCE_FLOW),
            parent_id=item.get("parent", src.parent_id),
            name=item.get("name", ""),
            source_id=item["source"],
            target_id=item["target"],
            waypoints=wps,
            is_default=bool(item.get("is_default", False)),
            label=Bounds(**item["label"]) if item.get("label") else None,
        ))

    for el in model.all():
        if el.parent_id is not None and el.parent_id not in model:
            raise DiagramError(f"Element {el.id} references unknown parent '{el.parent_id}'")
        if el.host_id is not None and el.host_id not in model:
            raise DiagramError(f"Element {el.id} references unknown host '{el.host_id}'")
    return model
