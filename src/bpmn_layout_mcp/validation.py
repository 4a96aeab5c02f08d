"""
Input validation for BPMN layout MCP server tool parameters.

Provides reusable validators that produce clear error messages for all
parameters received from LLM callers.
"""

from __future__ import annotations

from typing import Any

from bpmn_layout_mcp.models import (
    ASSOCIATION,
    BOUNDARY_EVENT,
    DATA_INPUT_ASSOCIATION,
    DATA_OBJECT_REFERENCE,
    DATA_OUTPUT_ASSOCIATION,
    DATA_STORE_REFERENCE,
    END_EVENT,
    EVENT_BASED_GATEWAY,
    EXCLUSIVE_GATEWAY,
    GROUP,
    INCLUSIVE_GATEWAY,
    INTERMEDIATE_CATCH_EVENT,
    INTERMEDIATE_THROW_EVENT,
    LANE,
    MESSAGE_FLOW,
    PARALLEL_GATEWAY,
    PARTICIPANT,
    SEQUENCE_FLOW,
    START_EVENT,
    SUBPROCESS,
    TASK,
    TEXT_ANNOTATION,
)
from bpmn_layout_mcp.options import COMPACTNESS_PRESETS, DIRECTIONS, LANE_STRATEGIES


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationError(Exception):
    """Raised when input validation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Primitive validators
# ---------------------------------------------------------------------------

def validate_non_empty_string(value: Any, field_name: str) -> str:
    """Ensure *value* is a non-empty string after stripping whitespace."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field_name}' must be a non-empty string.")
    return value.strip()


def validate_number(
    value: Any,
    field_name: str,
    *,
    min_val: float | None = None,
    max_val: float | None = None,
) -> float:
    """Validate a numeric value and optional range."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValidationError(
            f"'{field_name}' must be a number, got {type(value).__name__}."
        )
    val = float(value)
    if min_val is not None and val < min_val:
        raise ValidationError(
            f"'{field_name}' must be >= {min_val}, got {val}."
        )
    if max_val is not None and val > max_val:
        raise ValidationError(
            f"'{field_name}' must be <= {max_val}, got {val}."
        )
    return val


def validate_bool(value: Any, field_name: str) -> bool:
    """Ensure *value* is a boolean."""
    if not isinstance(value, bool):
        raise ValidationError(
            f"'{field_name}' must be a boolean, got {type(value).__name__}."
        )
    return value


def validate_enum(value: Any, field_name: str, allowed: set[str]) -> str:
    """Validate that a string value is one of the allowed choices (case-insensitive)."""
    if not isinstance(value, str):
        raise ValidationError(
            f"'{field_name}' must be a string, got {type(value).__name__}."
        )
    normalized = value.strip().upper()
    if normalized not in {a.upper() for a in allowed}:
        choices = ", ".join(sorted(allowed))
        raise ValidationError(
            f"'{field_name}' must be one of [{choices}], got '{value}'."
        )
    return normalized


def validate_list(value: Any, field_name: str, *, min_length: int = 0) -> list:
    """Ensure *value* is a list with at least *min_length* items."""
    if not isinstance(value, list):
        raise ValidationError(
            f"'{field_name}' must be a list, got {type(value).__name__}."
        )
    if len(value) < min_length:
        raise ValidationError(
            f"'{field_name}' must have at least {min_length} item(s), got {len(value)}."
        )
    return value


def validate_id_list(value: Any, field_name: str, *, min_length: int = 1) -> list[str]:
    """A list of non-empty id strings."""
    items = validate_list(value, field_name, min_length=min_length)
    for i, item in enumerate(items):
        if not isinstance(item, str) or not item.strip():
            raise ValidationError(f"'{field_name}[{i}]' must be a non-empty string.")
    return [item.strip() for item in items]


def validate_spacing(value: Any, field_name: str) -> float:
    """Validate spacing parameters (must be > 0)."""
    return validate_number(value, field_name, min_val=1)


# ---------------------------------------------------------------------------
# Composite / domain validators
# ---------------------------------------------------------------------------

_DIAGRAM_ACTIONS = {"CREATE", "IMPORT_JSON", "EXPORT_JSON", "LIST", "DELETE"}
_ELEMENT_ACTIONS = {"ADD_SHAPE", "CONNECT", "MOVE", "LIST"}
_LAYOUT_ACTIONS = {"FULL", "SUBSET"}
_INSPECT_ACTIONS = {"CROSSINGS", "OVERLAPS", "HAPPY_PATH", "INFO"}

_ENGINES = {"ELK", "LAYERED"}

SHAPE_TYPES = {
    TASK, SUBPROCESS, PARTICIPANT, LANE,
    START_EVENT, END_EVENT, INTERMEDIATE_CATCH_EVENT, INTERMEDIATE_THROW_EVENT, BOUNDARY_EVENT,
    EXCLUSIVE_GATEWAY, PARALLEL_GATEWAY, INCLUSIVE_GATEWAY, EVENT_BASED_GATEWAY,
    TEXT_ANNOTATION, DATA_OBJECT_REFERENCE, DATA_STORE_REFERENCE, GROUP,
    "bpmn:UserTask", "bpmn:ServiceTask", "bpmn:ScriptTask", "bpmn:ManualTask",
    "bpmn:BusinessRuleTask", "bpmn:SendTask", "bpmn:ReceiveTask", "bpmn:CallActivity",
}
CONNECTION_TYPES = {
    SEQUENCE_FLOW, MESSAGE_FLOW, ASSOCIATION, DATA_INPUT_ASSOCIATION, DATA_OUTPUT_ASSOCIATION,
}


def validate_action(value: Any, tool_name: str, allowed: set[str]) -> str:
    """Validate the action parameter for a tool."""
    if not isinstance(value, str) or not value.strip():
        choices = ", ".join(sorted(a.lower() for a in allowed))
        raise ValidationError(
            f"'{tool_name}' requires an 'action' parameter. Valid actions: {choices}."
        )
    normalized = value.strip().upper()
    if normalized not in allowed:
        choices = ", ".join(sorted(a.lower() for a in allowed))
        raise ValidationError(
            f"Unknown {tool_name} action '{value}'. Valid actions: {choices}."
        )
    return value.strip().lower()


def _qualified_type(value: Any, field_name: str, allowed: set[str]) -> str:
    """Accept 'bpmn:Task', 'Task' or 'task' and return the qualified tag."""
    name = validate_non_empty_string(value, field_name)
    bare = name.split(":")[-1].lower()
    for tag in allowed:
        if tag.split(":")[-1].lower() == bare:
            return tag
    choices = ", ".join(sorted(t.split(":")[-1] for t in allowed))
    raise ValidationError(f"'{field_name}' must be one of [{choices}], got '{value}'.")


def validate_element_type(value: Any) -> str:
    """Validate a BPMN shape type."""
    return _qualified_type(value, "element_type", SHAPE_TYPES)


def validate_connection_type(value: Any) -> str:
    """Validate a BPMN connection type."""
    return _qualified_type(value, "connection_type", CONNECTION_TYPES)


def validate_direction(value: Any) -> str:
    """Validate a layout direction (RIGHT, DOWN, LEFT, UP)."""
    return validate_enum(value, "direction", set(DIRECTIONS))


def validate_compactness(value: Any) -> str | None:
    """Validate a compactness preset; empty means none."""
    if value in (None, ""):
        return None
    return validate_enum(value, "compactness", set(COMPACTNESS_PRESETS)).lower()


def validate_lane_strategy(value: Any) -> str:
    """Validate the lane strategy (preserve, optimize)."""
    return validate_enum(value, "lane_strategy", set(LANE_STRATEGIES)).lower()


def validate_engine(value: Any) -> str | None:
    """Validate an engine name; empty means automatic choice."""
    if value in (None, ""):
        return None
    return validate_enum(value, "engine", _ENGINES).lower()


def validate_diagram_data(value: Any) -> dict:
    """Validate the dict form of a diagram (``{"elements": [...]}``)."""
    if not isinstance(value, dict):
        raise ValidationError(
            f"Diagram data must be a JSON object, got {type(value).__name__}."
        )
    elements = value.get("elements")
    if not isinstance(elements, list):
        raise ValidationError("Diagram data must have an 'elements' list.")
    for i, item in enumerate(elements):
        if not isinstance(item, dict):
            raise ValidationError(f"Element at index {i} must be a dict/object.")
        for key in ("id", "type"):
            if not isinstance(item.get(key), str) or not item[key].strip():
                raise ValidationError(f"Element at index {i}: '{key}' must be a non-empty string.")
        if ("source" in item) != ("target" in item):
            raise ValidationError(f"Element at index {i}: connections need both 'source' and 'target'.")
        for key in ("x", "y", "width", "height"):
            if key in item and (not isinstance(item[key], (int, float)) or isinstance(item[key], bool)):
                raise ValidationError(f"Element at index {i}: '{key}' must be a number.")
    return value
