"""
Artifact placement after layout.

Text annotations, data objects and data stores are not in the engine
graph.  Annotations go above the flow node they are associated with,
data objects and stores below it; unlinked artifacts line up along the
flow's bounding box.  Groups are resized to surround their members.
"""

from __future__ import annotations

import logging
from typing import Optional

from bpmn_layout_mcp.constants import (
    ARTIFACT_ABOVE_OFFSET,
    ARTIFACT_BELOW_OFFSET,
    ARTIFACT_PADDING,
    GROUP_PADDING,
    MOVEMENT_THRESHOLD,
)
from bpmn_layout_mcp.helpers import is_artifact, is_layoutable_shape
from bpmn_layout_mcp.models import (
    ASSOCIATION,
    DATA_INPUT_ASSOCIATION,
    DATA_OUTPUT_ASSOCIATION,
    GROUP,
    TEXT_ANNOTATION,
    Bounds,
    DiagramElement,
    DiagramModel,
)

logger = logging.getLogger(__name__)

# Fallbacks for an empty flow
ARTIFACT_BELOW_MIN = 80
ARTIFACT_ABOVE_MIN = 150
# Artifacts may run this far past the flow's right edge before wrapping
ARTIFACT_SEARCH_EXTENT = 200

ASSOCIATION_TYPES = (ASSOCIATION, DATA_INPUT_ASSOCIATION, DATA_OUTPUT_ASSOCIATION)


def _linked_flow_element(
    model: DiagramModel,
    artifact: DiagramElement,
    associations: list[DiagramElement],
) -> Optional[DiagramElement]:
    for assoc in associations:
        if assoc.source_id == artifact.id:
            other = model.target_of(assoc)
        elif assoc.target_id == artifact.id:
            other = model.source_of(assoc)
        else:
            continue
        if other is not None and not is_artifact(other.type):
            return other
    return None


def reposition_group(model: DiagramModel, group: DiagramElement) -> bool:
    """Resize a group around its flow-node children; leave empty groups alone."""
    children = [el for el in model.children_of(group.id) if is_layoutable_shape(el)]
    if not children:
        return False
    min_x = min(c.x for c in children)
    min_y = min(c.y for c in children)
    max_x = max(c.right for c in children)
    max_y = max(c.bottom for c in children)
    model.resize_shape(group, Bounds(
        min_x - GROUP_PADDING,
        min_y - GROUP_PADDING,
        max_x - min_x + 2 * GROUP_PADDING,
        max_y - min_y + 2 * GROUP_PADDING,
    ))
    return True


def _overlaps(x: float, y: float, w: float, h: float, rect: Bounds) -> bool:
    return x < rect.right and x + w > rect.x and y < rect.bottom and y + h > rect.y


def _move_to(model: DiagramModel, artifact: DiagramElement, x: float, y: float) -> None:
    dx = x - artifact.x
    dy = y - artifact.y
    if abs(dx) > MOVEMENT_THRESHOLD or abs(dy) > MOVEMENT_THRESHOLD:
        model.move_elements([artifact], dx, dy)


def reposition_artifacts(model: DiagramModel) -> int:
    """Place every artifact relative to the flow.

    Returns:
        Number of artifacts (groups included) handled.
    """
    all_artifacts = model.filter(lambda el: is_artifact(el.type))
    if not all_artifacts:
        return 0

    handled = 0
    artifacts: list[DiagramElement] = []
    for el in all_artifacts:
        if el.type == GROUP:
            if reposition_group(model, el):
                handled += 1
        else:
            artifacts.append(el)
    if not artifacts:
        return handled

    associations = model.filter(lambda el: el.type in ASSOCIATION_TYPES)
    flow = model.filter(is_layoutable_shape)
    if flow:
        min_x = min(el.x for el in flow)
        min_y = min(el.y for el in flow)
        max_x = max(el.right for el in flow)
        max_y = max(el.bottom for el in flow)
    else:
        min_x, min_y, max_x, max_y = ARTIFACT_ABOVE_MIN, ARTIFACT_BELOW_MIN, 0.0, 0.0

    linked: dict[str, list[DiagramElement]] = {}
    unlinked: list[DiagramElement] = []
    for artifact in artifacts:
        target = _linked_flow_element(model, artifact, associations)
        if target is None:
            unlinked.append(artifact)
        else:
            linked.setdefault(target.id, []).append(artifact)

    occupied: list[Bounds] = []

    for target_id, group in linked.items():
        target = model.get(target_id)
        total_width = sum(a.width + ARTIFACT_PADDING for a in group) - ARTIFACT_PADDING
        start_x = target.cx - total_width / 2
        for artifact in group:
            w, h = artifact.width, artifact.height
            above = artifact.type == TEXT_ANNOTATION
            x = start_x
            y = target.y - h - ARTIFACT_ABOVE_OFFSET if above else target.bottom + ARTIFACT_BELOW_OFFSET
            start_x += w + ARTIFACT_PADDING

            for rect in occupied:
                if _overlaps(x, y, w, h, rect):
                    shifted = rect.right + ARTIFACT_PADDING
                    if shifted + w <= max_x + ARTIFACT_SEARCH_EXTENT:
                        x = shifted
                    else:
                        y = rect.y - h - ARTIFACT_PADDING if above else rect.bottom + ARTIFACT_PADDING
            _move_to(model, artifact, x, y)
            occupied.append(Bounds(x, y, w, h))
            handled += 1

    next_x = min_x
    for artifact in unlinked:
        w, h = artifact.width, artifact.height
        above = artifact.type == TEXT_ANNOTATION
        y = min_y - h - ARTIFACT_ABOVE_OFFSET if above else max_y + ARTIFACT_BELOW_OFFSET
        for rect in occupied:
            if _overlaps(next_x, y, w, h, rect):
                y = rect.y - h - ARTIFACT_PADDING if above else rect.bottom + ARTIFACT_PADDING
        _move_to(model, artifact, next_x, y)
        occupied.append(Bounds(next_x, y, w, h))
        next_x += w + ARTIFACT_PADDING
        handled += 1

    return handled
