"""Dynamic tools: user and project scripts exposed as tools.

Protocol, selected by the TOOL_ACTION environment variable:

- ``describe``: no stdin; the script prints one JSON object
  ``{name, description, parameters: [...], needsApproval}`` and exits 0.
- ``execute``: stdin carries a JSON array of ``{name, value}`` pairs;
  the script prints its result and exits 0. Any other exit code is a
  failure, with stderr as the detail.

Scripts live in ``~/.relay/tools`` (user) and ``<project>/.relay/tools``
(project). A project tool replaces a user tool with the same name.
Every dynamic tool is registered under the ``dynamic-`` prefix.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator

from ..errors import (
    DynamicToolDescribeError,
    DynamicToolTimeoutError,
    ToolExecutionError,
)
from ..models import (
    DYNAMIC_PARAM_TYPES,
    DynamicToolDescriptor,
    ParamType,
    ProgressEvent,
    ToolDefinition,
    ToolParameter,
    ToolSource,
)
from ..registry import RegisteredTool, ToolContext, ToolRegistry
from ..validation import validate_input

logger = logging.getLogger(__name__)

TOOL_PREFIX = "dynamic-"
ACTION_ENV = "TOOL_ACTION"
_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_SCRIPT_RUNNERS = {
    ".py": [sys.executable],
    ".js": ["node"],
    ".mjs": ["node"],
    ".cjs": ["node"],
}


def tool_name_for(descriptor: DynamicToolDescriptor) -> str:
    return f"{TOOL_PREFIX}{descriptor.name}"


def command_for(path: Path) -> list[str] | None:
    """Command line that runs ``path``, or None if it is not runnable."""
    runner = _SCRIPT_RUNNERS.get(path.suffix.lower())
    if runner is not None:
        return [*runner, str(path)]
    if os.access(path, os.X_OK):
        return [str(path)]
    return None


def list_candidates(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        entry for entry in directory.iterdir()
        if entry.is_file()
        and not entry.name.startswith(".")
        and command_for(entry) is not None
    )


def parse_descriptor(
    data: Any, script_path: Path, source: ToolSource
) -> DynamicToolDescriptor:
    """Check a describe-phase object and build a descriptor from it."""
    where = str(script_path)
    if not isinstance(data, dict):
        raise DynamicToolDescribeError(where, "description must be a JSON object")
    name = data.get("name")
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise DynamicToolDescribeError(where, f"invalid tool name {name!r}")
    description = data.get("description")
    if not isinstance(description, str) or not description.strip():
        raise DynamicToolDescribeError(where, "description must be a non-empty string")
    raw_params = data.get("parameters", [])
    if not isinstance(raw_params, list):
        raise DynamicToolDescribeError(where, "parameters must be a list")

    params: list[ToolParameter] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_params):
        if not isinstance(raw, dict):
            raise DynamicToolDescribeError(where, f"parameter {index} is not an object")
        pname = raw.get("name")
        if not isinstance(pname, str) or not _NAME_RE.match(pname) or pname in seen:
            raise DynamicToolDescribeError(where, f"parameter {index} has an invalid name")
        seen.add(pname)
        try:
            ptype = ParamType(raw.get("type"))
        except ValueError:
            ptype = None
        if ptype not in DYNAMIC_PARAM_TYPES:
            raise DynamicToolDescribeError(
                where, f"parameter '{pname}' has unsupported type {raw.get('type')!r}"
            )
        pdesc = raw.get("description", "")
        if not isinstance(pdesc, str):
            raise DynamicToolDescribeError(where, f"parameter '{pname}' description must be a string")
        required = raw.get("required", True)
        if not isinstance(required, bool):
            raise DynamicToolDescribeError(where, f"parameter '{pname}' required must be a boolean")
        params.append(ToolParameter(
            name=pname,
            type=ptype,
            description=pdesc,
            required=required,
            default=raw.get("default"),
        ))

    needs_approval = data.get("needsApproval", False)
    if not isinstance(needs_approval, bool):
        raise DynamicToolDescribeError(where, "needsApproval must be a boolean")
    return DynamicToolDescriptor(
        name=name,
        description=description.strip(),
        parameters=tuple(params),
        needs_approval=needs_approval,
        script_path=script_path,
        source=source,
    )


def merge_descriptors(
    user: list[DynamicToolDescriptor],
    project: list[DynamicToolDescriptor],
    max_tools: int,
) -> list[DynamicToolDescriptor]:
    """Project entries replace same-named user entries; keep the last ``max_tools``."""
    merged: dict[str, DynamicToolDescriptor] = {}
    for descriptor in [*user, *project]:
        # Re-inserting moves the replacement to the end.
        merged.pop(descriptor.name, None)
        merged[descriptor.name] = descriptor
    entries = list(merged.values())
    if len(entries) > max_tools:
        logger.warning(
            "%d dynamic tools found, limiting to %d", len(entries), max_tools
        )
        entries = entries[-max_tools:] if max_tools > 0 else []
    return entries


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


@dataclass
class DynamicToolBridge:
    """Discovers dynamic tools and runs them out of process."""

    user_dir: Path
    project_dir: Path | None = None
    max_tools: int = 50
    describe_timeout: float = 10.0
    execute_timeout: float = 30.0
    max_output_bytes: int = 2_000_000

    @classmethod
    def from_config(cls, config: Any, project_root: Path) -> DynamicToolBridge:
        return cls(
            user_dir=Path(config.user_tools_dir),
            project_dir=config.project_tools_dir(project_root),
            max_tools=config.max_dynamic_tools,
            describe_timeout=config.dynamic_describe_timeout_seconds,
            execute_timeout=config.dynamic_execute_timeout_seconds,
            max_output_bytes=config.dynamic_max_output_bytes,
        )

    async def _spawn(self, command: list[str], action: str, stdin: int | None):
        return await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, ACTION_ENV: action},
            start_new_session=True,
        )

    async def describe(self, script_path: Path, source: ToolSource) -> DynamicToolDescriptor:
        command = command_for(script_path)
        if command is None:
            raise DynamicToolDescribeError(str(script_path), "not executable")
        try:
            proc = await self._spawn(command, "describe", asyncio.subprocess.DEVNULL)
        except OSError as exc:
            raise DynamicToolDescribeError(str(script_path), f"spawn failed: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.describe_timeout
            )
        except asyncio.TimeoutError:
            _kill_group(proc)
            await proc.wait()
            raise DynamicToolDescribeError(
                str(script_path), f"describe timed out after {self.describe_timeout:g}s"
            )
        except asyncio.CancelledError:
            _kill_group(proc)
            raise
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise DynamicToolDescribeError(
                str(script_path), f"exit code {proc.returncode}: {detail[:300]}"
            )
        try:
            data = json.loads(stdout.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as exc:
            raise DynamicToolDescribeError(str(script_path), f"invalid JSON: {exc}") from exc
        return parse_descriptor(data, script_path, source)

    async def _scan(self, directory: Path | None, source: ToolSource) -> list[DynamicToolDescriptor]:
        if directory is None:
            return []
        candidates = list_candidates(directory)
        if not candidates:
            return []
        logger.debug("Scanning %d %s dynamic tool candidate(s) in %s", len(candidates), source.value, directory)
        outcomes = await asyncio.gather(
            *(self.describe(path, source) for path in candidates),
            return_exceptions=True,
        )
        found: list[DynamicToolDescriptor] = []
        for path, outcome in zip(candidates, outcomes):
            if isinstance(outcome, DynamicToolDescriptor):
                logger.info("Loaded dynamic tool %s from %s", outcome.name, path)
                found.append(outcome)
            elif isinstance(outcome, DynamicToolDescribeError):
                logger.warning("Skipping dynamic tool candidate: %s", outcome)
            elif isinstance(outcome, BaseException):
                logger.warning(
                    "Skipping dynamic tool candidate %s: %s", path, outcome,
                    exc_info=outcome,
                )
        return found

    async def discover(self) -> list[DynamicToolDescriptor]:
        user = await self._scan(self.user_dir, ToolSource.USER)
        project = await self._scan(self.project_dir, ToolSource.PROJECT)
        return merge_descriptors(user, project, self.max_tools)

    def register_into(
        self, registry: ToolRegistry, descriptors: list[DynamicToolDescriptor]
    ) -> list[str]:
        """Replace every dynamic tool in ``registry`` with ``descriptors``."""
        registry.remove_source(ToolSource.USER, ToolSource.PROJECT)
        names = []
        for descriptor in descriptors:
            definition = ToolDefinition(
                name=tool_name_for(descriptor),
                description=descriptor.description,
                parameters=descriptor.parameters,
                needs_approval=descriptor.needs_approval,
                source=descriptor.source,
            )
            registry.register(RegisteredTool(
                definition=definition,
                executor=self._executor_for(descriptor),
            ), replace=True)
            names.append(definition.name)
        return names

    async def load_into(self, registry: ToolRegistry) -> list[str]:
        """Rescan both directories and refresh the registry."""
        return self.register_into(registry, await self.discover())

    def _executor_for(self, descriptor: DynamicToolDescriptor):
        def _execute(validated: dict[str, Any], ctx: ToolContext) -> AsyncIterator[Any]:
            return self.execute(descriptor, validated, ctx)
        return _execute

    async def execute(
        self,
        descriptor: DynamicToolDescriptor,
        arguments: dict[str, Any],
        ctx: ToolContext | None = None,
    ) -> AsyncIterator[Any]:
        """Run the script once; yields progress, then the final value."""
        # Invalid input never reaches a process.
        validated = validate_input(tool_name_for(descriptor), descriptor.parameters, arguments)
        command = command_for(descriptor.script_path)
        if command is None:
            raise ToolExecutionError(descriptor.name, f"{descriptor.script_path} is no longer executable")

        payload = json.dumps([{"name": k, "value": v} for k, v in validated.items()]) + "\n"
        yield ProgressEvent(f"Executing dynamic tool: {descriptor.name}")

        try:
            proc = await self._spawn(command, "execute", asyncio.subprocess.PIPE)
        except OSError as exc:
            raise ToolExecutionError(descriptor.name, f"spawn failed: {exc}") from exc
        unregister = (
            ctx.cancel_token.add_callback(lambda: _kill_group(proc))
            if ctx is not None and ctx.cancel_token is not None
            else (lambda: None)
        )
        try:
            # The hard timeout applies whether or not anyone cancels.
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(payload.encode("utf-8")), timeout=self.execute_timeout
            )
        except asyncio.TimeoutError:
            _kill_group(proc)
            await proc.wait()
            logger.warning("Dynamic tool %s timed out after %ss", descriptor.name, self.execute_timeout)
            raise DynamicToolTimeoutError(descriptor.name, self.execute_timeout)
        except asyncio.CancelledError:
            _kill_group(proc)
            raise
        finally:
            unregister()

        err_text = stderr.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            raise ToolExecutionError(
                descriptor.name,
                f"Dynamic tool {descriptor.name} failed: "
                f"{err_text or f'Exited with code {proc.returncode}'}",
            )

        # stderr stands in for an empty stdout; the byte cap applies to either.
        output = stdout.strip() or stderr.strip()
        if len(output) > self.max_output_bytes:
            output = output[:self.max_output_bytes]
            text = output.decode("utf-8", errors="ignore") + "\n[Output truncated]"
        else:
            text = output.decode("utf-8", errors="replace")
        if not text:
            text = f"[No output from dynamic tool {descriptor.name}]"

        tail = "\n".join(text.splitlines()[-20:])
        yield ProgressEvent(
            f"Last 20 lines of output from {descriptor.name}:", {"lines": tail}
        )
        if text.startswith(("{", "[")):
            try:
                yield json.loads(text)
                return
            except json.JSONDecodeError:
                pass
        yield text
