"""Per-iteration and cumulative token usage, plus a cost estimate."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cached_input_tokens: int = 0
    reasoning_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cached_input_tokens=self.cached_input_tokens + other.cached_input_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
        )

    @classmethod
    def from_openai(cls, usage: dict[str, Any] | None) -> TokenUsage:
        """Map an OpenAI-style ``usage`` object."""
        if not usage:
            return cls()
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        prompt_details = usage.get("prompt_tokens_details") or {}
        completion_details = usage.get("completion_tokens_details") or {}
        return cls(
            input_tokens=prompt,
            output_tokens=completion,
            total_tokens=int(usage.get("total_tokens") or prompt + completion),
            cached_input_tokens=int(prompt_details.get("cached_tokens") or 0),
            reasoning_tokens=int(completion_details.get("reasoning_tokens") or 0),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "cachedInputTokens": self.cached_input_tokens,
            "reasoningTokens": self.reasoning_tokens,
        }


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""
    input_per_mtok: float = 0.0
    output_per_mtok: float = 0.0
    cached_input_per_mtok: float = 0.0

    def estimate(self, usage: TokenUsage) -> float:
        cached = min(usage.cached_input_tokens, usage.input_tokens)
        # Cached input falls back to the full input price when not configured.
        cached_price = self.cached_input_per_mtok or self.input_per_mtok
        return (
            (usage.input_tokens - cached) * self.input_per_mtok
            + cached * cached_price
            + usage.output_tokens * self.output_per_mtok
        ) / 1_000_000


@dataclass
class UsageTracker:
    """Accumulates usage across iterations of one conversation.

    Read by display and reporting code only.
    """
    pricing: ModelPricing = field(default_factory=ModelPricing)
    step: TokenUsage = field(default_factory=TokenUsage)
    cumulative: TokenUsage = field(default_factory=TokenUsage)
    steps: int = 0

    def record(self, usage: TokenUsage) -> None:
        self.step = usage
        self.cumulative = self.cumulative + usage
        self.steps += 1
        logger.debug(
            "Usage step=%d in=%d out=%d cached=%d reasoning=%d cumulative_total=%d",
            self.steps, usage.input_tokens, usage.output_tokens,
            usage.cached_input_tokens, usage.reasoning_tokens,
            self.cumulative.total_tokens,
        )

    @property
    def step_cost(self) -> float:
        return self.pricing.estimate(self.step)

    @property
    def total_cost(self) -> float:
        return self.pricing.estimate(self.cumulative)

    def snapshot(self) -> dict[str, Any]:
        return {
            "step": self.step.to_dict(),
            "cumulative": self.cumulative.to_dict(),
            "stepCost": self.step_cost,
            "totalCost": self.total_cost,
            "steps": self.steps,
        }

    def reset(self) -> None:
        """Called only when a new conversation begins."""
        self.step = TokenUsage()
        self.cumulative = TokenUsage()
        self.steps = 0
