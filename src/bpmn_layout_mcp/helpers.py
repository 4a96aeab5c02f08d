"""
Element classification helpers shared by the layout passes.
"""

from __future__ import annotations

from typing import Optional

from bpmn_layout_mcp.models import (
    BOUNDARY_EVENT,
    COLLABORATION,
    DATA_OBJECT_REFERENCE,
    DATA_STORE_REFERENCE,
    END_EVENT,
    GROUP,
    LABEL,
    LANE,
    PARTICIPANT,
    PROCESS,
    SEQUENCE_FLOW,
    START_EVENT,
    SUBPROCESS,
    TEXT_ANNOTATION,
    DiagramElement,
    DiagramModel,
)


def is_connection_type(element_type: str) -> bool:
    return (
        "SequenceFlow" in element_type
        or "MessageFlow" in element_type
        or "Association" in element_type
    )


def is_infrastructure(element_type: str) -> bool:
    return (
        not element_type
        or element_type in (PROCESS, COLLABORATION, LABEL)
        or "BPMNDiagram" in element_type
        or "BPMNPlane" in element_type
    )


def is_artifact(element_type: str) -> bool:
    """Data objects, data stores, text annotations and groups."""
    return element_type in (TEXT_ANNOTATION, DATA_OBJECT_REFERENCE, DATA_STORE_REFERENCE, GROUP)


def is_lane(element_type: str) -> bool:
    return element_type in (LANE, "bpmn:LaneSet")


def is_gateway(element: Optional[DiagramElement]) -> bool:
    return element is not None and "Gateway" in element.type


def is_event(element: Optional[DiagramElement]) -> bool:
    return element is not None and "Event" in element.type


def is_end_event(element: Optional[DiagramElement]) -> bool:
    return element is not None and element.type == END_EVENT


def is_start_event(element: Optional[DiagramElement]) -> bool:
    return element is not None and element.type == START_EVENT


def is_boundary_event(element: Optional[DiagramElement]) -> bool:
    return element is not None and element.type == BOUNDARY_EVENT


def is_layoutable_shape(element: DiagramElement) -> bool:
    """Flow nodes that take part in layout (tasks, events, gateways, subprocesses).

    Excludes infrastructure, connections, artifacts, lanes, labels,
    participants and attached events.
    """
    return (
        not is_infrastructure(element.type)
        and not is_connection_type(element.type)
        and not is_artifact(element.type)
        and not is_lane(element.type)
        and element.type not in (PARTICIPANT, BOUNDARY_EVENT)
    )


def participant_of(model: DiagramModel, element: DiagramElement) -> Optional[DiagramElement]:
    """Walk up the containment chain to the enclosing participant."""
    parent = model.get(element.parent_id)
    seen: set[str] = set()
    while parent is not None and parent.id not in seen:
        if parent.type == PARTICIPANT:
            return parent
        seen.add(parent.id)
        parent = model.get(parent.parent_id)
    return None


def sequence_flows(model: DiagramModel) -> list[DiagramElement]:
    """All sequence flows with resolvable endpoints and at least two waypoints."""
    return model.filter(
        lambda el: el.type == SEQUENCE_FLOW
        and model.get(el.source_id) is not None
        and model.get(el.target_id) is not None
        and len(el.waypoints) >= 2
    )


def routed_connections(model: DiagramModel) -> list[DiagramElement]:
    """All connections (any kind) with resolvable endpoints and a route."""
    return model.filter(
        lambda el: is_connection_type(el.type)
        and model.get(el.source_id) is not None
        and model.get(el.target_id) is not None
        and len(el.waypoints) >= 2
    )


def median(values: list[float]) -> float:
    """Upper median (the element at index n // 2 of the sorted list)."""
    ordered = sorted(values)
    return ordered[len(ordered) // 2]


# ---------------------------------------------------------------------------
# Layout scopes
# ---------------------------------------------------------------------------

def root_container_id(model: DiagramModel) -> Optional[str]:
    """Id of the process/collaboration root, or None for parentless shapes."""
    root = model.root()
    return root.id if root is not None else None


def layout_scopes(model: DiagramModel) -> list[Optional[str]]:
    """Containers that alignment passes treat independently.

    Each participant is its own scope; a plain process has one scope,
    the root.
    """
    participants = model.filter(lambda el: el.type == PARTICIPANT)
    if participants:
        return [p.id for p in participants]
    return [root_container_id(model)]


def scope_shapes(model: DiagramModel, scope_id: Optional[str]) -> list[DiagramElement]:
    """Layoutable shapes that are direct children of a scope."""
    return [el for el in model.children_of(scope_id) if is_layoutable_shape(el)]


def expanded_subprocesses(model: DiagramModel, container_id: Optional[str]) -> list[DiagramElement]:
    """Direct-child subprocesses that contain flow shapes of their own."""
    return [
        el for el in model.children_of(container_id)
        if el.type == SUBPROCESS
        and el.is_expanded
        and any(
            not is_connection_type(c.type) and c.type != BOUNDARY_EVENT and not is_infrastructure(c.type)
            for c in model.children_of(el.id)
        )
    ]
