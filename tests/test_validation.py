"""Tests for input validation in the MCP server tools."""

import asyncio

import pytest

from bpmn_layout_mcp.models import MESSAGE_FLOW, SEQUENCE_FLOW, TASK
from bpmn_layout_mcp.server import _diagrams, diagram, element, inspect, layout
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
    validate_enum,
    validate_id_list,
    validate_lane_strategy,
    validate_list,
    validate_non_empty_string,
    validate_number,
    validate_spacing,
    _DIAGRAM_ACTIONS,
    _LAYOUT_ACTIONS,
)


def setup_function() -> None:
    """Clear diagrams between tests."""
    _diagrams.clear()


# ===================================================================
# Unit tests for primitive validators
# ===================================================================


class TestValidateNonEmptyString:
    def test_valid(self) -> None:
        assert validate_non_empty_string("hello", "f") == "hello"

    def test_strips_whitespace(self) -> None:
        assert validate_non_empty_string("  hi  ", "f") == "hi"

    def test_empty_string(self) -> None:
        with pytest.raises(ValidationError, match="non-empty"):
            validate_non_empty_string("", "field")

    def test_not_a_string(self) -> None:
        with pytest.raises(ValidationError, match="non-empty"):
            validate_non_empty_string(123, "field")


class TestValidateNumber:
    def test_int_and_float(self) -> None:
        assert validate_number(5, "n") == 5.0
        assert validate_number(2.5, "n") == 2.5

    def test_bool_rejected(self) -> None:
        with pytest.raises(ValidationError, match="must be a number"):
            validate_number(True, "n")

    def test_string_rejected(self) -> None:
        with pytest.raises(ValidationError, match="got str"):
            validate_number("5", "n")

    def test_range(self) -> None:
        with pytest.raises(ValidationError, match=">= 0"):
            validate_number(-1, "n", min_val=0)
        with pytest.raises(ValidationError, match="<= 10"):
            validate_number(11, "n", max_val=10)


class TestValidateSpacing:
    def test_positive(self) -> None:
        assert validate_spacing(50, "node_spacing") == 50.0

    def test_zero_rejected(self) -> None:
        with pytest.raises(ValidationError, match="node_spacing"):
            validate_spacing(0, "node_spacing")


def test_validate_bool() -> None:
    assert validate_bool(False, "b") is False
    with pytest.raises(ValidationError, match="boolean"):
        validate_bool(1, "b")


def test_validate_enum_case_insensitive() -> None:
    assert validate_enum("down", "direction", {"RIGHT", "DOWN"}) == "DOWN"
    with pytest.raises(ValidationError, match="must be one of"):
        validate_enum("sideways", "direction", {"RIGHT", "DOWN"})


def test_validate_list_min_length() -> None:
    assert validate_list([1], "items", min_length=1) == [1]
    with pytest.raises(ValidationError, match="at least 1"):
        validate_list([], "items", min_length=1)
    with pytest.raises(ValidationError, match="must be a list"):
        validate_list("abc", "items")


def test_validate_id_list() -> None:
    assert validate_id_list([" A ", "B"], "element_ids") == ["A", "B"]
    with pytest.raises(ValidationError, match=r"element_ids\[1\]"):
        validate_id_list(["A", ""], "element_ids")


# ===================================================================
# Domain validators
# ===================================================================


class TestValidateAction:
    def test_normalises_case(self) -> None:
        assert validate_action("Create", "diagram", _DIAGRAM_ACTIONS) == "create"

    def test_missing(self) -> None:
        with pytest.raises(ValidationError, match="requires an 'action'"):
            validate_action("", "layout", _LAYOUT_ACTIONS)

    def test_unknown_lists_choices(self) -> None:
        with pytest.raises(ValidationError, match="full, subset"):
            validate_action("partial", "layout", _LAYOUT_ACTIONS)


class TestElementTypes:
    def test_bare_lowercase(self) -> None:
        assert validate_element_type("task") == TASK

    def test_qualified(self) -> None:
        assert validate_element_type("bpmn:ExclusiveGateway") == "bpmn:ExclusiveGateway"

    def test_specialised_task(self) -> None:
        assert validate_element_type("UserTask") == "bpmn:UserTask"

    def test_unknown(self) -> None:
        with pytest.raises(ValidationError, match="element_type"):
            validate_element_type("widget")

    def test_connection_types(self) -> None:
        assert validate_connection_type("sequenceflow") == SEQUENCE_FLOW
        assert validate_connection_type("bpmn:MessageFlow") == MESSAGE_FLOW
        with pytest.raises(ValidationError, match="connection_type"):
            validate_connection_type("pipe")


class TestLayoutOptionValidators:
    def test_direction(self) -> None:
        assert validate_direction("left") == "LEFT"
        with pytest.raises(ValidationError, match="direction"):
            validate_direction("NORTH")

    def test_compactness(self) -> None:
        assert validate_compactness("") is None
        assert validate_compactness("COMPACT") == "compact"
        with pytest.raises(ValidationError, match="compactness"):
            validate_compactness("tight")

    def test_lane_strategy(self) -> None:
        assert validate_lane_strategy("Optimize") == "optimize"
        with pytest.raises(ValidationError, match="lane_strategy"):
            validate_lane_strategy("shuffle")

    def test_engine(self) -> None:
        assert validate_engine("") is None
        assert validate_engine("ELK") == "elk"
        assert validate_engine("layered") == "layered"
        with pytest.raises(ValidationError, match="engine"):
            validate_engine("dot")


class TestValidateDiagramData:
    def test_valid(self) -> None:
        data = {"elements": [
            {"id": "A", "type": "bpmn:Task", "x": 0, "y": 0},
            {"id": "B", "type": "bpmn:Task"},
            {"id": "F", "type": "bpmn:SequenceFlow", "source": "A", "target": "B"},
        ]}
        assert validate_diagram_data(data) is data

    def test_not_a_dict(self) -> None:
        with pytest.raises(ValidationError, match="JSON object"):
            validate_diagram_data([])

    def test_missing_elements(self) -> None:
        with pytest.raises(ValidationError, match="'elements' list"):
            validate_diagram_data({"name": "x"})

    def test_missing_id(self) -> None:
        with pytest.raises(ValidationError, match="'id'"):
            validate_diagram_data({"elements": [{"type": "bpmn:Task"}]})

    def test_half_connection(self) -> None:
        with pytest.raises(ValidationError, match="both 'source' and 'target'"):
            validate_diagram_data({"elements": [{"id": "F", "type": "bpmn:SequenceFlow", "source": "A"}]})

    def test_non_numeric_coordinate(self) -> None:
        with pytest.raises(ValidationError, match="'x' must be a number"):
            validate_diagram_data({"elements": [{"id": "A", "type": "bpmn:Task", "x": "10"}]})


# ===================================================================
# Tool-level validation
# ===================================================================


class TestToolValidation:
    def test_diagram_unknown_action(self) -> None:
        result = diagram(action="rename", name="x")
        assert "Error" in result
        assert "create" in result

    def test_diagram_create_without_name(self) -> None:
        result = diagram(action="create", name="")
        assert "Error" in result
        assert "name" in result

    def test_import_invalid_json(self) -> None:
        result = diagram(action="import_json", name="bad", json_content="{not json")
        assert result.startswith("Error: invalid JSON")

    def test_element_unknown_diagram(self) -> None:
        result = element(action="list", diagram_name="missing")
        assert result == "Error: diagram 'missing' not found."

    def test_add_shape_bad_type(self) -> None:
        diagram(action="create", name="v1")
        result = element(action="add_shape", diagram_name="v1", element_type="widget")
        assert "Error" in result
        assert "element_type" in result

    def test_add_shape_negative_width(self) -> None:
        diagram(action="create", name="v2")
        result = element(action="add_shape", diagram_name="v2", width=-5)
        assert "Error" in result
        assert "width" in result

    def test_connect_missing_target(self) -> None:
        diagram(action="create", name="v3")
        element(action="add_shape", diagram_name="v3", element_id="A")
        result = element(action="connect", diagram_name="v3", source_id="A")
        assert "Error" in result
        assert "target_id" in result

    def test_move_empty_ids(self) -> None:
        diagram(action="create", name="v4")
        result = element(action="move", diagram_name="v4", element_ids=[], dx=10)
        assert "Error" in result
        assert "at least 1" in result

    def test_layout_bad_direction(self) -> None:
        diagram(action="create", name="v5")
        result = asyncio.run(layout(action="full", diagram_name="v5", direction="DIAGONAL"))
        assert "Error" in result
        assert "direction" in result

    def test_layout_bad_spacing(self) -> None:
        diagram(action="create", name="v6")
        result = asyncio.run(layout(action="full", diagram_name="v6", node_spacing=0))
        assert "Error" in result
        assert "node_spacing" in result

    def test_layout_subset_requires_ids(self) -> None:
        diagram(action="create", name="v7")
        result = asyncio.run(layout(action="subset", diagram_name="v7"))
        assert "Error" in result
        assert "element_ids" in result

    def test_inspect_unknown_action(self) -> None:
        diagram(action="create", name="v8")
        result = inspect(action="render", diagram_name="v8")
        assert "Error" in result
        assert "crossings" in result
