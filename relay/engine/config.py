"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars,
or through the YAML files handled by yaml_config.py.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set. Callback errors never reach the engine."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [part for part in raw.split(os.pathsep) if part]


@dataclass
class EngineConfig:
    """Agent engine configuration."""

    # Model provider
    model: str = "gpt-4.1"
    base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    # Smaller model used for remote tool-call repair. Falls back to model.
    repair_model: str | None = None
    request_timeout_seconds: float = 600.0

    # Orchestrator loop
    max_iterations: int = 90

    # Token budget guard
    max_tool_output_tokens: int = 8000
    # "replace", "truncate" or "raise"
    truncation_policy: str = "replace"
    # tiktoken encoding name; empty string selects the 4-chars heuristic.
    token_encoding: str = "cl100k_base"

    # Dynamic tools
    dynamic_tools_enabled: bool = True
    max_dynamic_tools: int = 50
    dynamic_describe_timeout_seconds: float = 10.0
    dynamic_execute_timeout_seconds: float = 30.0
    dynamic_max_output_bytes: int = 2_000_000
    user_tools_dir: Path = field(
        default_factory=lambda: Path.home() / ".relay" / "tools"
    )
    project_tools_subdir: str = ".relay/tools"

    # Built-in tools
    bash_timeout_seconds: float = 120.0
    # Extra directories the file tools may touch besides the project dir.
    allowed_dirs: list[str] = field(default_factory=list)

    # Permissions
    auto_accept_all: bool = False

    # Cost estimate, USD per million tokens. Zero disables the estimate.
    input_price_per_mtok: float = 0.0
    output_price_per_mtok: float = 0.0
    cached_input_price_per_mtok: float = 0.0

    # Logging
    log_level: str = "INFO"

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "text_delta", "text": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    def project_tools_dir(self, project_dir: Path) -> Path:
        return project_dir / self.project_tools_subdir

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from RELAY_* environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("RELAY_")
        }
        if relay_vars:
            logger.info(
                "EngineConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(sorted(relay_vars)),
            )
        else:
            logger.debug("EngineConfig.from_env: no RELAY_* env vars set, using defaults")

        user_tools = os.getenv("RELAY_USER_TOOLS_DIR")
        config = cls(
            model=os.getenv("RELAY_MODEL", cls.model),
            base_url=os.getenv("RELAY_BASE_URL", cls.base_url),
            api_key_env=os.getenv("RELAY_API_KEY_ENV", cls.api_key_env),
            repair_model=os.getenv("RELAY_REPAIR_MODEL") or None,
            request_timeout_seconds=float(os.getenv(
                "RELAY_REQUEST_TIMEOUT", str(cls.request_timeout_seconds)
            )),
            max_iterations=int(os.getenv(
                "RELAY_MAX_ITERATIONS", str(cls.max_iterations)
            )),
            max_tool_output_tokens=int(os.getenv(
                "RELAY_MAX_TOOL_OUTPUT_TOKENS", str(cls.max_tool_output_tokens)
            )),
            truncation_policy=os.getenv(
                "RELAY_TRUNCATION_POLICY", cls.truncation_policy
            ),
            token_encoding=os.getenv("RELAY_TOKEN_ENCODING", cls.token_encoding),
            dynamic_tools_enabled=_env_bool(
                "RELAY_DYNAMIC_TOOLS", cls.dynamic_tools_enabled
            ),
            max_dynamic_tools=int(os.getenv(
                "RELAY_MAX_DYNAMIC_TOOLS", str(cls.max_dynamic_tools)
            )),
            dynamic_describe_timeout_seconds=float(os.getenv(
                "RELAY_DYNAMIC_DESCRIBE_TIMEOUT",
                str(cls.dynamic_describe_timeout_seconds),
            )),
            dynamic_execute_timeout_seconds=float(os.getenv(
                "RELAY_DYNAMIC_EXECUTE_TIMEOUT",
                str(cls.dynamic_execute_timeout_seconds),
            )),
            dynamic_max_output_bytes=int(os.getenv(
                "RELAY_DYNAMIC_MAX_OUTPUT_BYTES",
                str(cls.dynamic_max_output_bytes),
            )),
            bash_timeout_seconds=float(os.getenv(
                "RELAY_BASH_TIMEOUT", str(cls.bash_timeout_seconds)
            )),
            allowed_dirs=_env_list("RELAY_ALLOWED_DIRS"),
            auto_accept_all=_env_bool("RELAY_AUTO_ACCEPT", cls.auto_accept_all),
            log_level=os.getenv("RELAY_LOG_LEVEL", cls.log_level),
        )
        if user_tools:
            config.user_tools_dir = Path(user_tools).expanduser()
        logger.info(
            "EngineConfig.from_env: model=%s max_iterations=%d dynamic_tools=%s log_level=%s",
            config.model, config.max_iterations,
            config.dynamic_tools_enabled, config.log_level,
        )
        return config
