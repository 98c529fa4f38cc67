"""Tests for relay.shared.formatters: one-line tool call summaries."""

import json

from relay.shared.formatters import (
    FormattedToolCall,
    format_tool_call,
    parse_args,
    tool_formatter,
)


# ── parse_args tests ──


class TestParseArgs:
    def test_valid_json_dict(self):
        args = json.dumps({"path": "/foo/bar.py", "command": "ls"})
        assert parse_args(args) == {"path": "/foo/bar.py", "command": "ls"}

    def test_dict_passes_through(self):
        args = {"path": "a.txt"}
        assert parse_args(args) is args

    def test_malformed_json_is_repaired(self):
        assert parse_args('{"path": "a.txt",') == {"path": "a.txt"}

    def test_garbage_input(self):
        assert parse_args("no json here") == {"_raw": "no json here"}

    def test_empty_string(self):
        assert parse_args("") == {}
        assert parse_args(None) == {}

    def test_json_array_falls_back(self):
        assert parse_args("[1, 2, 3]") == {"_raw": "[1, 2, 3]"}


# ── individual formatters ──


class TestBuiltinFormatters:
    def test_read(self):
        result = format_tool_call("read_file", {"path": "src/app.py"})
        assert result.label == "Read"
        assert result.summary == "src/app.py"

    def test_write_and_edit(self):
        assert format_tool_call("write_file", {"path": "a", "content": "x"}).label == "Write"
        assert format_tool_call("edit_file", {"path": "a"}).summary == "a"

    def test_bash_collapses_whitespace_and_truncates(self):
        result = format_tool_call("bash", {"command": "echo   one\n  two"})
        assert result.summary == "echo one two"
        long = format_tool_call("bash", {"command": "x" * 200})
        assert len(long.summary) == 80
        assert long.summary.endswith("...")

    def test_grep(self):
        result = format_tool_call("grep", json.dumps({"pattern": "TODO", "path": "src"}))
        assert result.summary == "/TODO/ in src"

    def test_batch_lists_tools(self):
        result = format_tool_call("batch", {"calls": [
            {"tool": "read_file", "arguments": {}},
            {"tool": "grep", "arguments": {}},
        ]})
        assert result.label == "Batch"
        assert result.summary == "2 call(s): read_file, grep"


class TestDefaultFormatter:
    def test_unknown_tool_lists_arguments(self):
        result = format_tool_call("think", {"thought": "plan it"})
        assert result.label == "think"
        assert result.summary == "thought=plan it"
        assert result.icon == "*"

    def test_dynamic_tools_get_their_own_icon(self):
        assert format_tool_call("dynamic-deploy", {}).icon == "+"


class TestRegistry:
    def test_decorator_registers_formatter(self):
        @tool_formatter("custom_tool_for_test")
        def _fmt(name, args):
            return FormattedToolCall(icon="!", label="Custom", summary=args.get("x", ""))

        result = format_tool_call("custom_tool_for_test", {"x": "value"})
        assert result == FormattedToolCall(icon="!", label="Custom", summary="value")
