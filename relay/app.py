"""relay command-line entry point: one-shot prompt or interactive REPL."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console

from relay.engine.cancellation import CancellationToken
from relay.engine.models import TerminationReason
from relay.engine.providers.openai_provider import OpenAICompatibleProvider
from relay.engine.session import AgentSession
from relay.engine.yaml_config import load_config
from relay.shared.display import ConsolePrompter, ConsoleRenderer

logger = logging.getLogger(__name__)

REPL_HELP = (
    "/exit          quit\n"
    "/reset         start a new conversation\n"
    "/tools         list available tools\n"
    "/reload-tools  rescan dynamic tool directories\n"
    "/usage         show token usage for this conversation"
)


def _configure_logging(level_name: str, verbose: bool) -> Path:
    log_dir = Path.home() / ".relay" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "relay.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


async def _run_turn(session: AgentSession, prompt: str, renderer: ConsoleRenderer) -> int:
    """Run one turn; Ctrl-C cancels it instead of killing the process."""
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False
    try:
        result = await session.send(prompt, token)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
    renderer.console.print()
    if result.reason == TerminationReason.PROVIDER_ERROR:
        return 1
    return 0


def _print_tools(session: AgentSession, console: Console) -> None:
    for tool in sorted(session.registry.tools(), key=lambda t: t.name):
        gate = " [yellow](approval)[/yellow]" if tool.definition.needs_approval else ""
        console.print(f"[cyan]{tool.name}[/cyan]{gate} [dim]{tool.definition.source.value}[/dim]")


async def _repl(session: AgentSession, renderer: ConsoleRenderer) -> int:
    console = renderer.console
    console.print("[bold]relay[/bold] interactive mode. Type /help for commands.")
    while True:
        try:
            line = console.input("[bold green]> [/bold green]").strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            return 0
        if not line:
            continue
        if line in ("/exit", "/quit"):
            return 0
        if line == "/help":
            console.print(REPL_HELP)
        elif line == "/reset":
            session.reset()
            console.print("[dim]New conversation started.[/dim]")
        elif line == "/tools":
            _print_tools(session, console)
        elif line == "/reload-tools":
            names = await session.reload_tools()
            console.print(f"[dim]Loaded {len(names)} dynamic tool(s): {', '.join(names) or 'none'}[/dim]")
        elif line == "/usage":
            renderer.print_usage(session.usage.snapshot())
        elif line.startswith("/"):
            console.print(f"[red]Unknown command {line}[/red]")
        else:
            await _run_turn(session, line, renderer)
            renderer.print_usage(session.usage.snapshot())


async def _run(args) -> int:
    project_root = Path(args.cwd).resolve()
    config = load_config(project_root)
    if args.model:
        config.model = args.model
    if args.max_iterations is not None:
        config.max_iterations = args.max_iterations
    if args.yes:
        config.auto_accept_all = True
    if args.no_dynamic_tools:
        config.dynamic_tools_enabled = False

    console = Console()
    renderer = ConsoleRenderer(console, show_reasoning=args.verbose)
    provider = OpenAICompatibleProvider(
        base_url=config.base_url,
        model=config.model,
        api_key_env=config.api_key_env,
        timeout_seconds=config.request_timeout_seconds,
    )
    session = AgentSession(
        config,
        provider,
        project_root=project_root,
        prompter=ConsolePrompter(console),
        event_callback=renderer,
    )
    try:
        await session.reload_tools()
        if args.prompt:
            return await _run_turn(session, " ".join(args.prompt), renderer)
        return await _repl(session, renderer)
    finally:
        await session.shutdown()


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="relay",
        description="relay: a terminal coding assistant with pluggable tools",
    )
    parser.add_argument("prompt", nargs="*", help="Run one turn with this prompt and exit")
    parser.add_argument("--model", help="Model id (overrides RELAY_MODEL and config files)")
    parser.add_argument(
        "--max-iterations", type=int, metavar="N",
        help="Maximum model/tool iterations per turn (default: 90)",
    )
    parser.add_argument(
        "--yes", "-y", action="store_true",
        help="Approve every tool call without asking",
    )
    parser.add_argument(
        "--no-dynamic-tools", action="store_true",
        help="Do not load scripts from the dynamic tool directories",
    )
    parser.add_argument("--cwd", default=os.getcwd(), help="Project directory (default: current)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log to stderr at DEBUG")
    args = parser.parse_args(argv)

    log_file = _configure_logging(os.getenv("RELAY_LOG_LEVEL", "INFO"), args.verbose)
    logger.info("Starting relay cwd=%s log=%s", args.cwd, log_file)
    try:
        sys.exit(asyncio.run(_run(args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
