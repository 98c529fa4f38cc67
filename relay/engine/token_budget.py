"""Per-call ceiling on how much tool output re-enters the conversation.

Three named policies are supported and chosen per call site:

- ``replace``: discard the output and return a short diagnostic.
- ``truncate``: keep a prefix sized to the ceiling, append a marker.
- ``raise``: raise TokenBudgetExceededError for callers that handle
  the limit themselves (they must turn it back into a soft message).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

import tiktoken

from .errors import TokenBudgetExceededError

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
DEFAULT_MAX_TOKENS = 8000
DEFAULT_GUIDANCE = "Please adjust your parameters to reduce content size"
SHORT_MARKER = "[Output truncated]"


@runtime_checkable
class TokenCounter(Protocol):
    def count(self, text: str) -> int: ...


class TiktokenCounter:
    """Exact counts using a tiktoken encoding."""

    def __init__(self, encoding: str = "cl100k_base") -> None:
        self.encoding_name = encoding
        self._encoder = tiktoken.get_encoding(encoding)

    def count(self, text: str) -> int:
        return len(self._encoder.encode(text, disallowed_special=()))


class ApproxTokenCounter:
    """Fixed characters-per-token heuristic; never fails."""

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN) -> None:
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        return -(-len(text) // self.chars_per_token)


def make_counter(encoding: str | None) -> TokenCounter:
    """Build the configured counter; an empty encoding selects the heuristic."""
    if not encoding:
        return ApproxTokenCounter()
    try:
        return TiktokenCounter(encoding)
    except (KeyError, ValueError, OSError) as exc:
        logger.warning(
            "Cannot load tiktoken encoding %r (%s); using character heuristic",
            encoding, exc,
        )
        return ApproxTokenCounter()


class TruncationPolicy(str, Enum):
    REPLACE = "replace"
    TRUNCATE = "truncate"
    RAISE = "raise"


@dataclass(frozen=True)
class GuardedOutput:
    content: str
    token_count: int
    truncated: bool


def limit_message(
    tool_name: str, token_count: int, max_tokens: int, guidance: str | None = None
) -> str:
    return (
        f"{tool_name}: Content ({token_count} tokens) exceeds maximum allowed "
        f"tokens ({max_tokens}). {guidance or DEFAULT_GUIDANCE}"
    )


def truncation_marker(max_tokens: int, omitted: int) -> str:
    return (
        f"\n\n[Output truncated at ~{max_tokens} tokens "
        f"({omitted} tokens omitted)]"
    )


def _safe_count(counter: TokenCounter, text: str) -> int | None:
    try:
        return counter.count(text)
    except Exception:
        logger.info("Token counting failed", exc_info=True)
        return None


class TokenBudgetGuard:
    """Applies the per-call token ceiling to tool output."""

    def __init__(
        self,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        policy: TruncationPolicy = TruncationPolicy.REPLACE,
    ) -> None:
        self.max_tokens = max_tokens
        self.policy = TruncationPolicy(policy)

    def guard(
        self,
        text: str,
        counter: TokenCounter,
        tool_name: str,
        guidance: str | None = None,
        *,
        policy: TruncationPolicy | str | None = None,
    ) -> GuardedOutput:
        token_count = _safe_count(counter, text)
        if token_count is None:
            # Counting failures never block tool output.
            return GuardedOutput(text, 0, False)
        if token_count <= self.max_tokens:
            return GuardedOutput(text, token_count, False)

        effective = TruncationPolicy(policy) if policy is not None else self.policy
        logger.info(
            "Tool %s output is %d tokens (limit %d), applying %s policy",
            tool_name, token_count, self.max_tokens, effective.value,
        )
        if effective == TruncationPolicy.RAISE:
            raise TokenBudgetExceededError(tool_name, token_count, self.max_tokens)
        if effective == TruncationPolicy.TRUNCATE:
            return GuardedOutput(
                self._truncate(text, token_count, counter), token_count, True
            )
        return GuardedOutput(
            limit_message(tool_name, token_count, self.max_tokens, guidance),
            token_count,
            True,
        )

    def _truncate(self, text: str, token_count: int, counter: TokenCounter) -> str:
        """Keep a prefix so that prefix plus marker fits the ceiling.

        When the ceiling is too small for any prefix plus the marker, fall
        back to the bare marker, then ``SHORT_MARKER``, then a bare prefix.
        The result is always shorter than ``text`` and within the ceiling.
        """
        keep = min(len(text) - 1, self.max_tokens * CHARS_PER_TOKEN)
        while keep > 0:
            prefix = text[:keep]
            prefix_tokens = _safe_count(counter, prefix)
            if prefix_tokens is None:
                prefix_tokens = ApproxTokenCounter().count(prefix)
            omitted = max(token_count - prefix_tokens, 1)
            candidate = prefix + truncation_marker(self.max_tokens, omitted)
            if self._fits(candidate, text, counter):
                return candidate
            # Shrink by a tenth of the prefix, at least one marker's worth.
            keep -= max(keep // 10, len(candidate) - len(prefix))

        for candidate in (truncation_marker(self.max_tokens, token_count).lstrip(), SHORT_MARKER):
            if self._fits(candidate, text, counter):
                return candidate
        keep = min(len(text) - 1, self.max_tokens * CHARS_PER_TOKEN)
        while keep > 0 and not self._fits(text[:keep], text, counter):
            keep -= max(keep // 10, 1)
        return text[:max(keep, 0)]

    def _fits(self, candidate: str, text: str, counter: TokenCounter) -> bool:
        if len(candidate) >= len(text):
            return False
        tokens = _safe_count(counter, candidate)
        return tokens is None or tokens <= self.max_tokens
