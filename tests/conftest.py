from __future__ import annotations

from collections.abc import Sequence

import pytest

from repo_distill.config import ProviderTag
from repo_distill.cost import Pricing
from repo_distill.models import CompressedUnit
from repo_distill.providers import CompletionOptions, CompletionResponse, Message
from repo_distill.tokens import TokenCount


class WordCounter:
    """Counts whitespace-separated words; a block header `--- a.py ---` is 3 words."""

    name = "words"
    is_approximate = False

    def count(self, text: str) -> int:
        return len(text.split())

    def measure(self, text: str) -> TokenCount:
        return TokenCount(self.count(text), False)


class ScriptedProvider:
    """Provider answering from a script of responses and exceptions."""

    def __init__(
        self,
        script: Sequence[CompletionResponse | BaseException] = (),
        *,
        name: ProviderTag = ProviderTag.ANTHROPIC,
        pricing: Pricing | None = None,
    ) -> None:
        self.name = name
        self.model = "scripted-model"
        self.pricing = pricing or Pricing(input_per_million=3.0, output_per_million=15.0)
        self.script = list(script)
        self.calls: list[tuple[list[Message], CompletionOptions]] = []
        self.closed = False

    @property
    def prompts(self) -> list[str]:
        return [messages[-1].content for messages, _ in self.calls]

    async def complete(self, messages: Sequence[Message], options: CompletionOptions) -> CompletionResponse:
        self.calls.append((list(messages), options))
        if self.script:
            item = self.script.pop(0)
        else:
            item = CompletionResponse(content=f"analysis {len(self.calls)}", input_tokens=100, output_tokens=20)
        if isinstance(item, BaseException):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_unit(path: str, words: int) -> CompressedUnit:
    """A unit whose block counts `words + 3` with WordCounter."""
    content = " ".join(f"w{i}" for i in range(words))
    return CompressedUnit(path=path, content=content, original_size=len(content))


@pytest.fixture
def word_counter() -> WordCounter:
    return WordCounter()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
