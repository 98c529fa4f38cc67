"""Built-in tools.

Read-only tools (read_file, list_directory, grep, think) run without
approval and may run concurrently. Mutating tools (write_file,
edit_file, bash) need approval and show a preview first. File access
is limited to the project directory plus configured allowed dirs.
"""
from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import re
import signal
from pathlib import Path
from typing import Any

from ..errors import OperationCancelledError, ToolExecutionError
from ..models import ParamType, ToolDefinition, ToolParameter
from ..permissions import unified_diff
from ..registry import RegisteredTool, ToolContext, ToolRegistry
from ..token_budget import TruncationPolicy

logger = logging.getLogger(__name__)

MAX_GREP_MATCHES = 200
MAX_LIST_ENTRIES = 1000
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", ".mypy_cache"}


class PathPolicy:
    """Resolves tool paths and keeps them inside the allowed roots."""

    def __init__(self, project_root: Path, allowed_dirs: list[str] | None = None):
        self.project_root = project_root.resolve()
        self.roots = [self.project_root] + [
            Path(d).expanduser().resolve() for d in (allowed_dirs or [])
        ]

    def resolve(self, raw: str) -> Path:
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = self.project_root / path
        path = path.resolve()
        for root in self.roots:
            if path == root or root in path.parents:
                return path
        raise ToolExecutionError(
            "path", f"Path {raw} is outside the allowed directories"
        )

    def display(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.project_root))
        except ValueError:
            return str(path)


def _param(name: str, type_: ParamType, description: str, **kw: Any) -> ToolParameter:
    return ToolParameter(name=name, type=type_, description=description, **kw)


class BuiltinTools:
    """Executors for the built-in tools, bound to one project."""

    def __init__(self, policy: PathPolicy, bash_timeout: float = 120.0):
        self.policy = policy
        self.bash_timeout = bash_timeout

    # ── read-only ─────────────────────────────────────────────

    def read_file(self, args: dict[str, Any], ctx: ToolContext) -> str:
        path = self.policy.resolve(args["path"])
        if not path.is_file():
            raise ToolExecutionError("read_file", f"File not found: {args['path']}")
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            raise ToolExecutionError("read_file", f"{args['path']} is not a UTF-8 text file")
        if "offset" not in args and "limit" not in args:
            return text
        lines = text.splitlines(keepends=True)
        start = max(int(args.get("offset", 1)) - 1, 0)
        end = start + int(args["limit"]) if "limit" in args else len(lines)
        return "".join(lines[start:end])

    def list_directory(self, args: dict[str, Any], ctx: ToolContext) -> str:
        path = self.policy.resolve(args.get("path", "."))
        if not path.is_dir():
            raise ToolExecutionError("list_directory", f"Not a directory: {args.get('path', '.')}")
        entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        lines = [e.name + ("/" if e.is_dir() else "") for e in entries[:MAX_LIST_ENTRIES]]
        if len(entries) > MAX_LIST_ENTRIES:
            lines.append(f"... {len(entries) - MAX_LIST_ENTRIES} more entries")
        return "\n".join(lines) if lines else "(empty directory)"

    def _grep_sync(self, regex: re.Pattern, root: Path, include: str | None) -> list[str]:
        matches: list[str] = []
        files = [root] if root.is_file() else []
        if root.is_dir():
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
                for name in sorted(filenames):
                    if include is None or fnmatch.fnmatch(name, include):
                        files.append(Path(dirpath) / name)
        for file in files:
            try:
                with open(file, encoding="utf-8") as f:
                    for lineno, line in enumerate(f, 1):
                        if regex.search(line):
                            matches.append(
                                f"{self.policy.display(file)}:{lineno}:{line.rstrip()}"
                            )
                            if len(matches) >= MAX_GREP_MATCHES:
                                return matches
            except (UnicodeDecodeError, OSError):
                continue
        return matches

    async def grep(self, args: dict[str, Any], ctx: ToolContext) -> str:
        try:
            regex = re.compile(args["pattern"])
        except re.error as exc:
            raise ToolExecutionError("grep", f"Invalid regular expression: {exc}")
        root = self.policy.resolve(args.get("path", "."))
        matches = await asyncio.to_thread(self._grep_sync, regex, root, args.get("include"))
        if not matches:
            return "No matches found."
        if len(matches) >= MAX_GREP_MATCHES:
            matches.append(f"[Stopped after {MAX_GREP_MATCHES} matches]")
        return "\n".join(matches)

    def think(self, args: dict[str, Any], ctx: ToolContext) -> str:
        logger.debug("think call=%s: %s", ctx.call_id, args["thought"][:200])
        return "Your thought has been logged."

    # ── mutating ──────────────────────────────────────────────

    def write_file(self, args: dict[str, Any], ctx: ToolContext) -> str:
        path = self.policy.resolve(args["path"])
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(args["content"], encoding="utf-8")
        return f"Wrote {len(args['content'])} characters to {self.policy.display(path)}"

    def preview_write(self, args: dict[str, Any]) -> str:
        path = self.policy.resolve(args["path"])
        before = path.read_text(encoding="utf-8") if path.is_file() else ""
        return unified_diff(self.policy.display(path), before, args["content"])

    def _apply_edit(self, args: dict[str, Any]) -> tuple[Path, str, str]:
        path = self.policy.resolve(args["path"])
        if not path.is_file():
            raise ToolExecutionError("edit_file", f"File not found: {args['path']}")
        before = path.read_text(encoding="utf-8")
        count = before.count(args["old_text"])
        if count == 0:
            raise ToolExecutionError("edit_file", "old_text was not found in the file")
        if count > 1 and not args.get("replace_all", False):
            raise ToolExecutionError(
                "edit_file",
                f"old_text occurs {count} times; make it unique or set replace_all",
            )
        after = before.replace(
            args["old_text"], args["new_text"], -1 if args.get("replace_all") else 1
        )
        return path, before, after

    def edit_file(self, args: dict[str, Any], ctx: ToolContext) -> str:
        path, _, after = self._apply_edit(args)
        path.write_text(after, encoding="utf-8")
        return f"Edited {self.policy.display(path)}"

    def preview_edit(self, args: dict[str, Any]) -> str:
        path, before, after = self._apply_edit(args)
        return unified_diff(self.policy.display(path), before, after)

    @staticmethod
    def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> bool:
        if proc.returncode is not None:
            return False
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
            return True
        except ProcessLookupError:
            return False

    async def _stop(self, proc: asyncio.subprocess.Process, grace: float = 1.0) -> None:
        """SIGTERM the process group, then SIGKILL if it lingers."""
        if not self._signal_group(proc, signal.SIGTERM):
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("bash pid=%s ignored SIGTERM; sending SIGKILL", proc.pid)
            self._signal_group(proc, signal.SIGKILL)
            await proc.wait()

    async def bash(self, args: dict[str, Any], ctx: ToolContext) -> str:
        timeout = float(args.get("timeout") or self.bash_timeout)
        proc = await asyncio.create_subprocess_shell(
            args["command"],
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=str(self.policy.project_root),
            start_new_session=True,
        )
        logger.info("bash call=%s pid=%s timeout=%ss", ctx.call_id, proc.pid, timeout)
        unregister = (
            ctx.cancel_token.add_callback(lambda: self._signal_group(proc, signal.SIGKILL))
            if ctx.cancel_token is not None else (lambda: None)
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._stop(proc)
            raise ToolExecutionError("bash", f"Command timed out after {timeout:g} seconds")
        except asyncio.CancelledError:
            self._signal_group(proc, signal.SIGKILL)
            raise
        finally:
            unregister()
        if ctx.cancel_token is not None and ctx.cancel_token.cancelled:
            raise OperationCancelledError("bash")
        output = stdout.decode("utf-8", errors="replace").rstrip()
        if proc.returncode != 0:
            return f"{output}\n[exit code {proc.returncode}]".lstrip()
        return output or "(no output)"


def register_builtin_tools(registry: ToolRegistry, tools: BuiltinTools) -> None:
    S, N, B = ParamType.STRING, ParamType.NUMBER, ParamType.BOOLEAN
    specs = [
        (
            ToolDefinition("read_file", "Read a UTF-8 text file.", (
                _param("path", S, "File path, relative to the project root"),
                _param("offset", N, "1-based line to start from", required=False),
                _param("limit", N, "Maximum number of lines to read", required=False),
            )),
            tools.read_file, None,
            "Use offset and limit to read a smaller section of the file",
            TruncationPolicy.REPLACE,
        ),
        (
            ToolDefinition("list_directory", "List the entries of a directory.", (
                _param("path", S, "Directory path", required=False, default="."),
            )),
            tools.list_directory, None, None, None,
        ),
        (
            ToolDefinition("grep", "Search files for a regular expression.", (
                _param("pattern", S, "Python regular expression"),
                _param("path", S, "File or directory to search", required=False, default="."),
                _param("include", S, "Glob filter on file names, e.g. *.py", required=False),
            )),
            tools.grep, None,
            "Use a more specific pattern, path or include filter",
            TruncationPolicy.REPLACE,
        ),
        (
            ToolDefinition("think", "Record a thought without taking any action.", (
                _param("thought", S, "The thought to record"),
            )),
            tools.think, None, None, None,
        ),
        (
            ToolDefinition("write_file", "Create or overwrite a file.", (
                _param("path", S, "File path"),
                _param("content", S, "Full new file content"),
            ), needs_approval=True),
            tools.write_file, tools.preview_write, None, None,
        ),
        (
            ToolDefinition("edit_file", "Replace text in an existing file.", (
                _param("path", S, "File path"),
                _param("old_text", S, "Exact text to replace"),
                _param("new_text", S, "Replacement text"),
                _param("replace_all", B, "Replace every occurrence", required=False, default=False),
            ), needs_approval=True),
            tools.edit_file, tools.preview_edit, None, None,
        ),
        (
            ToolDefinition("bash", "Run a shell command in the project directory.", (
                _param("command", S, "Command line to run"),
                _param("timeout", N, "Timeout in seconds", required=False),
            ), needs_approval=True),
            tools.bash, lambda args: f"$ {args['command']}", None,
            TruncationPolicy.TRUNCATE,
        ),
    ]
    for definition, executor, preview, guidance, truncation in specs:
        registry.register(RegisteredTool(
            definition=definition,
            executor=executor,
            preview=preview,
            guidance=guidance,
            truncation=truncation,
        ))
