import asyncio

import pytest

from relay.engine.cancellation import CancellationToken
from relay.engine.errors import OperationCancelledError, ToolExecutionError
from relay.engine.models import ToolCallRequest, ToolStatus
from relay.engine.registry import ToolContext, ToolRegistry
from relay.engine.token_budget import TruncationPolicy
from relay.engine.tools.builtin import BuiltinTools, PathPolicy, register_builtin_tools


@pytest.fixture
def project(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("import os\n\ndef main():\n    return 1\n")
    (tmp_path / "README.md").write_text("line 1\nline 2\nline 3\nline 4\n")
    return tmp_path


@pytest.fixture
def tools(project):
    return BuiltinTools(PathPolicy(project), bash_timeout=5)


def ctx(name="t", token=None):
    return ToolContext(call_id="c1", tool_name=name, cancel_token=token)


def test_path_policy_blocks_escape(project):
    policy = PathPolicy(project)
    assert policy.resolve("src/app.py") == (project / "src" / "app.py").resolve()
    with pytest.raises(ToolExecutionError):
        policy.resolve("../outside.txt")
    with pytest.raises(ToolExecutionError):
        policy.resolve("/etc/passwd")


def test_allowed_dirs_extend_policy(project, tmp_path_factory):
    extra = tmp_path_factory.mktemp("extra")
    policy = PathPolicy(project, [str(extra)])
    assert policy.resolve(str(extra / "notes.txt")) == (extra / "notes.txt").resolve()


def test_read_file_with_offset_and_limit(tools):
    assert tools.read_file({"path": "README.md"}, ctx()).startswith("line 1")
    assert tools.read_file({"path": "README.md", "offset": 2, "limit": 2}, ctx()) == "line 2\nline 3\n"


def test_read_missing_file(tools):
    with pytest.raises(ToolExecutionError) as excinfo:
        tools.read_file({"path": "nope.txt"}, ctx())
    assert "File not found" in str(excinfo.value)


def test_list_directory_puts_dirs_first(tools):
    assert tools.list_directory({"path": "."}, ctx()).splitlines() == ["src/", "README.md"]


@pytest.mark.asyncio
async def test_grep_finds_matches_with_locations(tools):
    out = await tools.grep({"pattern": r"def \w+", "path": "."}, ctx())
    assert out == "src/app.py:3:def main():"
    assert await tools.grep({"pattern": "zzz"}, ctx()) == "No matches found."
    assert "line" not in await tools.grep({"pattern": "line", "include": "*.py"}, ctx())


@pytest.mark.asyncio
async def test_grep_rejects_bad_regex(tools):
    with pytest.raises(ToolExecutionError):
        await tools.grep({"pattern": "("}, ctx())


def test_think_has_no_side_effects(tools, project):
    before = sorted(p.name for p in project.rglob("*"))
    assert tools.think({"thought": "plan"}, ctx()) == "Your thought has been logged."
    assert sorted(p.name for p in project.rglob("*")) == before


def test_write_file_and_preview(tools, project):
    preview = tools.preview_write({"path": "new/file.txt", "content": "hello\n"})
    assert "+hello" in preview
    assert not (project / "new").exists()
    tools.write_file({"path": "new/file.txt", "content": "hello\n"}, ctx())
    assert (project / "new" / "file.txt").read_text() == "hello\n"


def test_edit_file_requires_unique_match(tools, project):
    target = project / "dup.txt"
    target.write_text("a\na\n")
    with pytest.raises(ToolExecutionError):
        tools.edit_file({"path": "dup.txt", "old_text": "a", "new_text": "b"}, ctx())
    tools.edit_file({"path": "dup.txt", "old_text": "a", "new_text": "b", "replace_all": True}, ctx())
    assert target.read_text() == "b\nb\n"


def test_edit_preview_does_not_write(tools, project):
    preview = tools.preview_edit({"path": "src/app.py", "old_text": "return 1", "new_text": "return 2"})
    assert "-    return 1" in preview
    assert "+    return 2" in preview
    assert "return 1" in (project / "src" / "app.py").read_text()


def test_edit_missing_text(tools):
    with pytest.raises(ToolExecutionError) as excinfo:
        tools.edit_file({"path": "README.md", "old_text": "absent", "new_text": "x"}, ctx())
    assert "not found" in str(excinfo.value)


@pytest.mark.asyncio
async def test_bash_runs_in_project_root(tools, project):
    out = await tools.bash({"command": "pwd"}, ctx())
    assert out == str(project.resolve())


@pytest.mark.asyncio
async def test_bash_reports_exit_code(tools):
    out = await tools.bash({"command": "echo oops; exit 3"}, ctx())
    assert out == "oops\n[exit code 3]"


@pytest.mark.asyncio
async def test_bash_timeout(tools):
    with pytest.raises(ToolExecutionError) as excinfo:
        await tools.bash({"command": "sleep 10", "timeout": 0.3}, ctx())
    assert "timed out" in str(excinfo.value)


@pytest.mark.asyncio
async def test_bash_cancellation_kills_process(tools):
    token = CancellationToken()
    task = asyncio.create_task(tools.bash({"command": "sleep 10"}, ctx(token=token)))
    await asyncio.sleep(0.2)
    token.cancel()
    with pytest.raises(OperationCancelledError):
        await asyncio.wait_for(task, timeout=3)


def test_registration_flags(tools):
    registry = ToolRegistry()
    register_builtin_tools(registry, tools)
    assert set(registry.names()) == {
        "read_file", "list_directory", "grep", "think", "write_file", "edit_file", "bash",
    }
    gated = {t.name for t in registry.tools() if t.definition.needs_approval}
    assert gated == {"write_file", "edit_file", "bash"}
    assert registry.get("bash").truncation == TruncationPolicy.TRUNCATE
    assert registry.get("read_file").truncation == TruncationPolicy.REPLACE
    assert registry.get("write_file").preview is not None


@pytest.mark.asyncio
async def test_read_file_through_dispatcher(tools, make_dispatcher):
    registry = ToolRegistry()
    register_builtin_tools(registry, tools)
    result = await make_dispatcher(registry).dispatch(
        ToolCallRequest("read_file", {"path": "README.md", "limit": 1}, "c1")
    )
    assert result.status == ToolStatus.SUCCESS
    assert result.content == "line 1\n"
