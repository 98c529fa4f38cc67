import pytest

from relay.engine.errors import TokenBudgetExceededError
from relay.engine.token_budget import (
    ApproxTokenCounter,
    DEFAULT_GUIDANCE,
    SHORT_MARKER,
    TiktokenCounter,
    TokenBudgetGuard,
    TruncationPolicy,
    make_counter,
)


class _ExplodingCounter:
    def count(self, text):
        raise RuntimeError("tokenizer unavailable")


def test_under_limit_returns_text_unchanged():
    guard = TokenBudgetGuard(max_tokens=100)
    text = "short output\nwith two lines"
    out = guard.guard(text, ApproxTokenCounter(), "read_file")
    assert out.content == text
    assert out.content is text
    assert out.truncated is False
    assert out.token_count == ApproxTokenCounter().count(text)


def test_exactly_at_limit_is_not_truncated():
    guard = TokenBudgetGuard(max_tokens=10)
    text = "x" * 40
    out = guard.guard(text, ApproxTokenCounter(), "t")
    assert out.truncated is False
    assert out.content == text


def test_counter_failure_degrades_to_passthrough():
    guard = TokenBudgetGuard(max_tokens=1, policy=TruncationPolicy.RAISE)
    text = "anything at all " * 100
    out = guard.guard(text, _ExplodingCounter(), "bash")
    assert out.content == text
    assert out.token_count == 0
    assert out.truncated is False


def test_replace_policy_discards_output():
    guard = TokenBudgetGuard(max_tokens=10)
    text = "y" * 400
    out = guard.guard(text, ApproxTokenCounter(), "read_file", "Read fewer lines")
    assert out.truncated is True
    assert out.token_count == 100
    assert "yyyy" not in out.content
    assert out.content.startswith("read_file: Content (100 tokens)")
    assert "(10)" in out.content
    assert out.content.endswith("Read fewer lines")


def test_replace_policy_default_guidance():
    guard = TokenBudgetGuard(max_tokens=1)
    out = guard.guard("z" * 50, ApproxTokenCounter(), "grep")
    assert out.content.endswith(DEFAULT_GUIDANCE)


def test_truncate_policy_keeps_prefix_with_marker():
    guard = TokenBudgetGuard(max_tokens=50)
    text = "".join(f"line {i}\n" for i in range(500))
    out = guard.guard(text, ApproxTokenCounter(), "bash", policy=TruncationPolicy.TRUNCATE)
    assert out.truncated is True
    assert len(out.content) < len(text)
    assert out.content.startswith("line 0\nline 1\n")
    assert "tokens omitted)]" in out.content
    assert "[Output truncated at ~50 tokens" in out.content


def test_truncate_then_guard_again_is_noop():
    guard = TokenBudgetGuard(max_tokens=30, policy=TruncationPolicy.TRUNCATE)
    counter = ApproxTokenCounter()
    first = guard.guard("abcdefgh" * 200, counter, "bash")
    second = guard.guard(first.content, counter, "bash")
    assert second.truncated is False
    assert second.content == first.content


def test_truncate_with_ceiling_smaller_than_marker():
    guard = TokenBudgetGuard(max_tokens=10, policy=TruncationPolicy.TRUNCATE)
    counter = ApproxTokenCounter()
    text = "x" * 44
    out = guard.guard(text, counter, "t")
    assert out.truncated is True
    assert out.content == SHORT_MARKER
    assert len(out.content) < len(text)
    assert counter.count(out.content) <= 10
    again = guard.guard(out.content, counter, "t")
    assert again.truncated is False
    assert again.content == out.content


def test_truncate_with_zero_ceiling_returns_empty():
    guard = TokenBudgetGuard(max_tokens=0, policy=TruncationPolicy.TRUNCATE)
    out = guard.guard("abc", ApproxTokenCounter(), "t")
    assert out.content == ""
    assert out.truncated is True


@pytest.fixture
def tiktoken_counter():
    try:
        return TiktokenCounter("cl100k_base")
    except Exception as exc:  # encoding files are fetched on first use
        pytest.skip(f"tiktoken encoding unavailable: {exc}")


def test_truncate_with_tiktoken_fits_ceiling(tiktoken_counter):
    guard = TokenBudgetGuard(max_tokens=40, policy=TruncationPolicy.TRUNCATE)
    counter = tiktoken_counter
    text = " ".join(f"word{i}" for i in range(2000))
    out = guard.guard(text, counter, "bash")
    assert out.truncated is True
    assert counter.count(out.content) <= 40
    assert guard.guard(out.content, counter, "bash").content == out.content


def test_raise_policy_raises():
    guard = TokenBudgetGuard(max_tokens=5)
    with pytest.raises(TokenBudgetExceededError) as excinfo:
        guard.guard("q" * 100, ApproxTokenCounter(), "bash", policy="raise")
    assert excinfo.value.token_count == 25
    assert excinfo.value.max_tokens == 5


def test_make_counter_falls_back_for_unknown_encoding():
    assert isinstance(make_counter(""), ApproxTokenCounter)
    assert isinstance(make_counter("no-such-encoding"), ApproxTokenCounter)
