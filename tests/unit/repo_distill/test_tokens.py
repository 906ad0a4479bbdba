from __future__ import annotations

import pytest
from pytest_mock import MockerFixture

from repo_distill import tokens
from repo_distill.config import CountingScheme, ProviderTag
from repo_distill.exceptions import ConfigError
from repo_distill.tokens import (
    HeuristicCounter,
    TiktokenCounter,
    TokenCount,
    TokenCounter,
    count_tokens,
    counter_for,
    scheme_for,
)


class FakeEncoding:
    def encode(self, text: str, allowed_special: str = "none") -> list[int]:
        assert allowed_special == "all"
        return [0] * len(text.split())


@pytest.fixture
def fake_encoding(mocker: MockerFixture) -> FakeEncoding:
    encoding = FakeEncoding()
    mocker.patch.object(tokens, "_load_encoding", return_value=encoding)
    return encoding


@pytest.mark.unit
@pytest.mark.parametrize(("text", "expected"), [("", 0), ("abcd", 1), ("abcde", 2), ("a" * 40, 10)])
def test_heuristic_counter(text: str, expected: int) -> None:
    counter = HeuristicCounter()

    assert counter.count(text) == expected
    assert counter.measure(text) == TokenCount(expected, True)
    assert counter.is_approximate is True


@pytest.mark.unit
@pytest.mark.parametrize(
    ("provider", "model", "scheme", "approximate"),
    [
        (ProviderTag.OPENAI, "gpt-4o", CountingScheme.O200K, False),
        (ProviderTag.OPENAI, "gpt-4o-mini", CountingScheme.O200K, False),
        (ProviderTag.OPENAI, "o1-preview", CountingScheme.O200K, False),
        (ProviderTag.OPENAI, "gpt-4-turbo", CountingScheme.CL100K, False),
        (ProviderTag.ANTHROPIC, "claude-sonnet-4-5-20250929", CountingScheme.CL100K, True),
        (ProviderTag.OLLAMA, "llama3.1:70b", CountingScheme.CL100K, True),
        (ProviderTag.OPENROUTER, "openai/gpt-4o", CountingScheme.O200K, False),
        (ProviderTag.OPENROUTER, "anthropic/claude-3.5-sonnet", CountingScheme.CL100K, True),
    ],
)
def test_scheme_for_provider_family(
    provider: ProviderTag,
    model: str,
    scheme: CountingScheme,
    approximate: bool,
) -> None:
    assert scheme_for(provider, model) == (scheme, approximate)


@pytest.mark.unit
def test_tiktoken_counter_counts_with_special_tokens_allowed(fake_encoding: FakeEncoding) -> None:
    counter = TiktokenCounter(CountingScheme.CL100K)

    assert counter.count("one two <|endoftext|>") == 3
    assert counter.count("") == 0
    assert counter.name == "cl100k_base"
    assert counter.is_approximate is False
    assert isinstance(counter, TokenCounter)


@pytest.mark.unit
def test_approximate_counter_name_differs(fake_encoding: FakeEncoding) -> None:
    exact = TiktokenCounter(CountingScheme.CL100K)
    approx = TiktokenCounter(CountingScheme.CL100K, approximate=True)

    assert exact.name != approx.name
    assert approx.measure("a b") == TokenCount(2, True)


@pytest.mark.unit
def test_tiktoken_counter_rejects_heuristic_scheme() -> None:
    with pytest.raises(ValueError, match="heuristic"):
        TiktokenCounter(CountingScheme.HEURISTIC)


@pytest.mark.unit
def test_counter_for_defaults(fake_encoding: FakeEncoding) -> None:
    openai = counter_for(ProviderTag.OPENAI, "gpt-4o")
    anthropic = counter_for(ProviderTag.ANTHROPIC, "claude-sonnet-4-5-20250929")

    assert openai.name == "o200k_base"
    assert openai.is_approximate is False
    assert anthropic.is_approximate is True


@pytest.mark.unit
def test_counter_for_override_marks_mismatched_scheme_approximate(fake_encoding: FakeEncoding) -> None:
    counter = counter_for(ProviderTag.OPENAI, "gpt-4o", CountingScheme.CL100K)

    assert counter.is_approximate is True


@pytest.mark.unit
def test_counter_for_heuristic_override() -> None:
    counter = counter_for(ProviderTag.OPENAI, "gpt-4o", CountingScheme.HEURISTIC)

    assert isinstance(counter, HeuristicCounter)


@pytest.mark.unit
def test_unloadable_table_raises_config_error(mocker: MockerFixture) -> None:
    mocker.patch.object(tokens.tiktoken, "get_encoding", side_effect=OSError("offline"))

    with pytest.raises(ConfigError) as info:
        tokens._load_encoding.__wrapped__("cl100k_base")

    assert "heuristic" in info.value.suggestion


@pytest.mark.unit
def test_count_tokens(fake_encoding: FakeEncoding) -> None:
    assert count_tokens("", CountingScheme.O200K) == TokenCount(0, False)
    assert count_tokens("a b c", CountingScheme.O200K) == TokenCount(3, False)
    assert count_tokens("abcdefgh", CountingScheme.HEURISTIC) == TokenCount(2, True)
