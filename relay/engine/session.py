"""Wires config, provider, tools, gate and loop into one conversation."""
from __future__ import annotations

import logging
from pathlib import Path

from .cancellation import CancellationToken
from .config import EngineConfig, EventCallback
from .dispatch import ToolDispatcher
from .history import ConversationHistory
from .models import LoopResult, ToolSource
from .orchestrator import Orchestrator
from .permissions import PermissionGate, Prompter, build_approval_predicates
from .providers.base import Provider
from .registry import ToolRegistry
from .repair import ToolCallRepairer
from .token_budget import TokenBudgetGuard, TruncationPolicy, make_counter
from .tools.batch import BatchTool
from .tools.builtin import BuiltinTools, PathPolicy, register_builtin_tools
from .tools.dynamic import DynamicToolBridge
from .usage import ModelPricing, UsageTracker

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding assistant working in the user's project directory "
    "({cwd}). Use the available tools to inspect and change the project. "
    "Prefer reading before editing, keep changes minimal, and explain what "
    "you did when you are finished."
)


class AgentSession:
    """One conversation: history, usage and the tool registry."""

    def __init__(
        self,
        config: EngineConfig,
        provider: Provider,
        *,
        project_root: Path,
        prompter: Prompter | None = None,
        event_callback: EventCallback | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.project_root = project_root.resolve()
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT.format(cwd=self.project_root)
        callback = event_callback or config.event_callback

        self.history = ConversationHistory()
        self.usage = UsageTracker(pricing=ModelPricing(
            config.input_price_per_mtok,
            config.output_price_per_mtok,
            config.cached_input_price_per_mtok,
        ))
        self.registry = ToolRegistry()
        self.gate = PermissionGate(
            prompter, auto_accept_all=config.auto_accept_all, event_callback=callback
        )
        self.dispatcher = ToolDispatcher(
            self.registry,
            TokenBudgetGuard(
                config.max_tool_output_tokens, TruncationPolicy(config.truncation_policy)
            ),
            make_counter(config.token_encoding),
            repairer=ToolCallRepairer(provider, config.repair_model or config.model),
            event_callback=callback,
        )
        register_builtin_tools(
            self.registry,
            BuiltinTools(
                PathPolicy(self.project_root, config.allowed_dirs),
                bash_timeout=config.bash_timeout_seconds,
            ),
        )
        self.batch = BatchTool(self.dispatcher)
        self.registry.register(self.batch.registered())
        self.bridge = DynamicToolBridge.from_config(config, self.project_root)
        self.orchestrator = Orchestrator(
            provider,
            self.registry,
            self.dispatcher,
            usage=self.usage,
            model=config.model,
            max_iterations=config.max_iterations,
            event_callback=callback,
        )
        self._refresh_predicates()

    def _refresh_predicates(self) -> None:
        predicates = build_approval_predicates(self.registry, self.gate)
        self.orchestrator.approval_predicates = predicates
        self.batch.approval_predicates = predicates

    async def reload_tools(self) -> list[str]:
        """Rescan dynamic tool directories and rebuild approval predicates."""
        if not self.config.dynamic_tools_enabled:
            self.registry.remove_source(ToolSource.USER, ToolSource.PROJECT)
            self._refresh_predicates()
            return []
        names = await self.bridge.load_into(self.registry)
        self._refresh_predicates()
        logger.info("Dynamic tools loaded: %s", ", ".join(names) or "none")
        return names

    async def send(
        self,
        prompt: str,
        cancel_token: CancellationToken | None = None,
        max_iterations: int | None = None,
    ) -> LoopResult:
        self.history.append_user(prompt)
        return await self.orchestrator.run(
            self.history,
            self.system_prompt,
            cancel_token or CancellationToken(),
            max_iterations,
        )

    def reset(self) -> None:
        """Start a new conversation. The approve-all choice is kept."""
        self.history.clear()
        self.usage.reset()

    async def shutdown(self) -> None:
        await self.provider.shutdown()
