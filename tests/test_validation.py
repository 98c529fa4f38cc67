import pytest

from relay.engine.errors import ToolValidationError
from relay.engine.models import ParamType, ToolParameter
from relay.engine.validation import validate_input

PARAMS = (
    ToolParameter("path", ParamType.STRING, "file"),
    ToolParameter("limit", ParamType.NUMBER, "max lines", required=False),
    ToolParameter("recursive", ParamType.BOOLEAN, "walk dirs", required=False, default=False),
)


def test_valid_input_applies_defaults_and_drops_unknown_keys():
    out = validate_input("t", PARAMS, {"path": "a.txt", "extra": 1})
    assert out == {"path": "a.txt", "recursive": False}


def test_json_string_input_is_parsed():
    out = validate_input("t", PARAMS, '{"path": "a.txt", "limit": 5}')
    assert out == {"path": "a.txt", "limit": 5, "recursive": False}


def test_missing_required_parameter():
    with pytest.raises(ToolValidationError) as excinfo:
        validate_input("t", PARAMS, {})
    assert excinfo.value.errors == ["'path' is required"]
    assert excinfo.value.tool_name == "t"


def test_all_errors_are_reported_together():
    with pytest.raises(ToolValidationError) as excinfo:
        validate_input("t", PARAMS, {"path": 3, "limit": "ten", "recursive": "yes"})
    assert len(excinfo.value.errors) == 3


def test_bool_is_not_a_number():
    with pytest.raises(ToolValidationError):
        validate_input("t", PARAMS, {"path": "a", "limit": True})


def test_literal_null_for_optional_number_means_absent():
    out = validate_input("t", PARAMS, {"path": "a", "limit": "null", "recursive": "null"})
    assert "limit" not in out
    assert out["recursive"] is False


def test_literal_null_string_parameter_is_kept():
    params = (ToolParameter("label", ParamType.STRING, required=False),)
    assert validate_input("t", params, {"label": "null"}) == {"label": "null"}


def test_non_object_input_rejected():
    with pytest.raises(ToolValidationError):
        validate_input("t", PARAMS, "[1, 2]")
    with pytest.raises(ToolValidationError):
        validate_input("t", PARAMS, '{"path": "a"')


def test_array_item_bounds():
    params = (ToolParameter("calls", ParamType.ARRAY, min_items=1, max_items=2),)
    assert validate_input("b", params, {"calls": [1]}) == {"calls": [1]}
    with pytest.raises(ToolValidationError):
        validate_input("b", params, {"calls": []})
    with pytest.raises(ToolValidationError):
        validate_input("b", params, {"calls": [1, 2, 3]})
