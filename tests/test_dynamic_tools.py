import json
import textwrap
from pathlib import Path

import pytest

from relay.engine.errors import (
    DynamicToolDescribeError,
    DynamicToolTimeoutError,
    ToolExecutionError,
    ToolValidationError,
)
from relay.engine.models import ProgressEvent, ToolCallRequest, ToolSource, ToolStatus
from relay.engine.tools.dynamic import (
    DynamicToolBridge,
    list_candidates,
    merge_descriptors,
    parse_descriptor,
)


def write_tool(directory: Path, filename: str, describe: dict | str, execute_body: str = "print('ok')") -> Path:
    """Write a Python dynamic tool script answering both protocol actions."""
    directory.mkdir(parents=True, exist_ok=True)
    describe_src = describe if isinstance(describe, str) else json.dumps(describe)
    script = directory / filename
    script.write_text(textwrap.dedent(f"""\
        import json
        import os
        import sys

        if os.environ.get("TOOL_ACTION") == "describe":
            sys.stdout.write({describe_src!r})
            sys.exit(0)

        pairs = json.loads(sys.stdin.read() or "[]")
        args = {{p["name"]: p["value"] for p in pairs}}
    """) + textwrap.dedent(execute_body) + "\n")
    return script


GREET = {
    "name": "greet",
    "description": "Say hello",
    "parameters": [
        {"name": "who", "type": "string", "description": "name"},
        {"name": "times", "type": "number", "required": False},
    ],
}


async def _collect(agen):
    items = []
    async for item in agen:
        items.append(item)
    return items


@pytest.fixture
def dirs(tmp_path):
    return tmp_path / "user", tmp_path / "project"


def _bridge(dirs, **kwargs):
    user, project = dirs
    return DynamicToolBridge(user_dir=user, project_dir=project, **kwargs)


@pytest.mark.asyncio
async def test_discover_and_register_with_prefix(dirs, registry):
    write_tool(dirs[0], "greet.py", GREET)
    names = await _bridge(dirs).load_into(registry)
    assert names == ["dynamic-greet"]
    tool = registry.get("dynamic-greet")
    assert tool.definition.source == ToolSource.USER
    assert tool.definition.needs_approval is False
    assert [p.name for p in tool.definition.parameters] == ["who", "times"]
    assert tool.definition.parameter("who").required is True


@pytest.mark.asyncio
async def test_invalid_describe_output_is_skipped(dirs, registry):
    write_tool(dirs[0], "broken.py", "this is not json")
    write_tool(dirs[0], "greet.py", GREET)
    names = await _bridge(dirs).load_into(registry)
    assert names == ["dynamic-greet"]
    assert "dynamic-broken" not in registry


@pytest.mark.asyncio
async def test_describe_errors_are_reported(dirs):
    script = write_tool(dirs[0], "bad.py", {"name": "bad name!", "description": "x"})
    with pytest.raises(DynamicToolDescribeError):
        await _bridge(dirs).describe(script, ToolSource.USER)


@pytest.mark.asyncio
async def test_describe_timeout_kills_script(dirs):
    dirs[0].mkdir(parents=True)
    script = dirs[0] / "sleepy.py"
    script.write_text("import time\ntime.sleep(30)\n")
    with pytest.raises(DynamicToolDescribeError) as excinfo:
        await _bridge(dirs, describe_timeout=0.5).describe(script, ToolSource.USER)
    assert "timed out" in str(excinfo.value)


@pytest.mark.asyncio
async def test_project_tool_overrides_user_tool(dirs, registry):
    write_tool(dirs[0], "greet.py", GREET, "print('from user')")
    write_tool(dirs[1], "greet.py", GREET, "print('from project')")
    await _bridge(dirs).load_into(registry)
    tool = registry.get("dynamic-greet")
    assert tool.definition.source == ToolSource.PROJECT


@pytest.mark.asyncio
async def test_reload_drops_removed_tools(dirs, registry):
    script = write_tool(dirs[0], "greet.py", GREET)
    bridge = _bridge(dirs)
    await bridge.load_into(registry)
    script.unlink()
    assert await bridge.load_into(registry) == []
    assert "dynamic-greet" not in registry


def test_hidden_and_non_executable_files_are_not_candidates(tmp_path):
    (tmp_path / ".hidden.py").write_text("")
    (tmp_path / "notes.txt").write_text("")
    (tmp_path / "tool.py").write_text("")
    assert [p.name for p in list_candidates(tmp_path)] == ["tool.py"]


def test_merge_keeps_last_entries_when_over_cap(tmp_path):
    def _desc(name, source):
        return parse_descriptor({"name": name, "description": "d"}, tmp_path / name, source)

    user = [_desc(f"u{i}", ToolSource.USER) for i in range(3)]
    project = [_desc("u0", ToolSource.PROJECT), _desc("p1", ToolSource.PROJECT)]
    merged = merge_descriptors(user, project, max_tools=3)
    assert [d.name for d in merged] == ["u2", "u0", "p1"]
    assert merged[1].source == ToolSource.PROJECT


def test_parse_descriptor_rejects_unsupported_types(tmp_path):
    data = {"name": "t", "description": "d", "parameters": [{"name": "xs", "type": "array"}]}
    with pytest.raises(DynamicToolDescribeError):
        parse_descriptor(data, tmp_path / "t.py", ToolSource.USER)


def test_parse_descriptor_defaults(tmp_path):
    data = {"name": "t", "description": " d ", "parameters": [{"name": "a", "type": "boolean"}]}
    descriptor = parse_descriptor(data, tmp_path / "t.py", ToolSource.PROJECT)
    assert descriptor.description == "d"
    assert descriptor.needs_approval is False
    assert descriptor.parameters[0].required is True


@pytest.mark.asyncio
async def test_execute_receives_name_value_pairs(dirs):
    script = write_tool(dirs[0], "greet.py", GREET, """\
        print("hello " + args["who"] + " x" + str(args.get("times", 1)))
    """)
    bridge = _bridge(dirs)
    descriptor = await bridge.describe(script, ToolSource.USER)
    items = await _collect(bridge.execute(descriptor, {"who": "ada", "times": 2}))
    assert items[0] == ProgressEvent("Executing dynamic tool: greet")
    assert isinstance(items[1], ProgressEvent)
    assert items[-1] == "hello ada x2"


@pytest.mark.asyncio
async def test_json_output_is_parsed(dirs):
    script = write_tool(dirs[0], "info.py", {"name": "info", "description": "d"}, """\
        print('{"b": 1,   "a": [1, 2]}')
    """)
    bridge = _bridge(dirs)
    descriptor = await bridge.describe(script, ToolSource.USER)
    items = await _collect(bridge.execute(descriptor, {}))
    assert items[-1] == {"b": 1, "a": [1, 2]}


@pytest.mark.asyncio
async def test_nonzero_exit_reports_stderr(dirs):
    script = write_tool(dirs[0], "fail.py", {"name": "fail", "description": "d"}, """\
        sys.stderr.write("disk full")
        sys.exit(3)
    """)
    bridge = _bridge(dirs)
    descriptor = await bridge.describe(script, ToolSource.USER)
    with pytest.raises(ToolExecutionError) as excinfo:
        await _collect(bridge.execute(descriptor, {}))
    assert str(excinfo.value) == "Dynamic tool fail failed: disk full"


@pytest.mark.asyncio
async def test_nonzero_exit_without_stderr_reports_code(dirs):
    script = write_tool(dirs[0], "fail.py", {"name": "fail", "description": "d"}, "sys.exit(4)")
    bridge = _bridge(dirs)
    descriptor = await bridge.describe(script, ToolSource.USER)
    with pytest.raises(ToolExecutionError) as excinfo:
        await _collect(bridge.execute(descriptor, {}))
    assert "Exited with code 4" in str(excinfo.value)


@pytest.mark.asyncio
async def test_empty_stdout_falls_back_to_stderr_then_placeholder(dirs):
    noisy = write_tool(dirs[0], "noisy.py", {"name": "noisy", "description": "d"}, """\
        sys.stderr.write("only stderr")
    """)
    quiet = write_tool(dirs[0], "quiet.py", {"name": "quiet", "description": "d"}, "pass")
    bridge = _bridge(dirs)
    noisy_items = await _collect(bridge.execute(await bridge.describe(noisy, ToolSource.USER), {}))
    quiet_items = await _collect(bridge.execute(await bridge.describe(quiet, ToolSource.USER), {}))
    assert noisy_items[-1] == "only stderr"
    assert quiet_items[-1] == "[No output from dynamic tool quiet]"


@pytest.mark.asyncio
async def test_output_is_capped(dirs):
    script = write_tool(dirs[0], "big.py", {"name": "big", "description": "d"}, """\
        sys.stdout.write("z" * 5000)
    """)
    bridge = _bridge(dirs, max_output_bytes=100)
    descriptor = await bridge.describe(script, ToolSource.USER)
    items = await _collect(bridge.execute(descriptor, {}))
    assert items[-1] == "z" * 100 + "\n[Output truncated]"


@pytest.mark.asyncio
async def test_stderr_fallback_is_capped(dirs):
    script = write_tool(dirs[0], "noisy.py", {"name": "noisy", "description": "d"}, """\
        sys.stderr.write("e" * 5000)
    """)
    bridge = _bridge(dirs, max_output_bytes=100)
    descriptor = await bridge.describe(script, ToolSource.USER)
    items = await _collect(bridge.execute(descriptor, {}))
    assert items[-1] == "e" * 100 + "\n[Output truncated]"


@pytest.mark.asyncio
async def test_execute_timeout(dirs):
    script = write_tool(dirs[0], "slow.py", {"name": "slow", "description": "d"}, """\
        import time
        time.sleep(30)
    """)
    bridge = _bridge(dirs, execute_timeout=0.5)
    descriptor = await bridge.describe(script, ToolSource.USER)
    with pytest.raises(DynamicToolTimeoutError) as excinfo:
        await _collect(bridge.execute(descriptor, {}))
    assert str(excinfo.value) == "Execution timed out after 0.5 seconds"


@pytest.mark.asyncio
async def test_invalid_input_never_spawns(dirs, tmp_path):
    marker = tmp_path / "ran"
    script = write_tool(dirs[0], "greet.py", GREET, f"""\
        open({str(marker)!r}, "w").close()
    """)
    bridge = _bridge(dirs)
    descriptor = await bridge.describe(script, ToolSource.USER)
    with pytest.raises(ToolValidationError):
        await _collect(bridge.execute(descriptor, {"times": 1}))
    assert not marker.exists()


@pytest.mark.asyncio
async def test_dynamic_tool_through_dispatcher(dirs, registry, make_dispatcher):
    write_tool(dirs[0], "greet.py", GREET, """\
        print("hi " + args["who"])
    """)
    await _bridge(dirs).load_into(registry)
    result = await make_dispatcher(registry).dispatch(
        ToolCallRequest("dynamic-greet", {"who": "bob"}, "c1")
    )
    assert result.status == ToolStatus.SUCCESS
    assert result.content == "hi bob"
