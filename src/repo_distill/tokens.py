"""Provider-matched token counting.

Budgeting is expressed in tokens, and each provider family tokenizes
differently. Families without an open tokenizer borrow the closest tiktoken
table and say so through `is_approximate`.
"""

from __future__ import annotations

import math
from functools import lru_cache
from typing import TYPE_CHECKING, NamedTuple, Protocol, runtime_checkable

import tiktoken

from repo_distill.config import CountingScheme, ProviderTag
from repo_distill.exceptions import ConfigError
from repo_distill.logging import logger

if TYPE_CHECKING:
    from tiktoken import Encoding

CHARS_PER_TOKEN = 4


class TokenCount(NamedTuple):
    tokens: int
    is_approximate: bool


@runtime_checkable
class TokenCounter(Protocol):
    """Capability interface shared by every counting scheme."""

    @property
    def name(self) -> str: ...

    @property
    def is_approximate(self) -> bool: ...

    def count(self, text: str) -> int: ...

    def measure(self, text: str) -> TokenCount: ...


@lru_cache(maxsize=None)
def _load_encoding(encoding_name: str) -> Encoding:
    try:
        return tiktoken.get_encoding(encoding_name)
    except Exception as e:
        raise ConfigError(
            message=f"Cannot load tokenizer table {encoding_name!r}: {e}",
            hint="Use counting_scheme='heuristic' when the tokenizer tables cannot be downloaded.",
        ) from e


class TiktokenCounter:
    """Counts with a tiktoken BPE table."""

    def __init__(self, scheme: CountingScheme, *, approximate: bool = False) -> None:
        if scheme is CountingScheme.HEURISTIC:
            msg = "the heuristic scheme has no tiktoken table"
            raise ValueError(msg)
        self.scheme = scheme
        self._approximate = approximate
        self._encoding = _load_encoding(scheme.value)

    @property
    def name(self) -> str:
        return f"{self.scheme.value}~approx" if self._approximate else self.scheme.value

    @property
    def is_approximate(self) -> bool:
        return self._approximate

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, allowed_special="all"))

    def measure(self, text: str) -> TokenCount:
        return TokenCount(self.count(text), self._approximate)


class HeuristicCounter:
    """Character-length estimate; no table, never exact."""

    scheme = CountingScheme.HEURISTIC

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN) -> None:
        self.chars_per_token = chars_per_token

    @property
    def name(self) -> str:
        return f"heuristic/{self.chars_per_token}"

    @property
    def is_approximate(self) -> bool:
        return True

    def count(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token) if text else 0

    def measure(self, text: str) -> TokenCount:
        return TokenCount(self.count(text), True)


def _openai_scheme(model: str) -> CountingScheme:
    name = model.lower().removeprefix("openai/")
    if "gpt-4o" in name or name.startswith(("o1", "o3", "o4", "gpt-4.1", "gpt-5")):
        return CountingScheme.O200K
    return CountingScheme.CL100K


def scheme_for(provider: ProviderTag, model: str) -> tuple[CountingScheme, bool]:
    """Pick the tokenization table matching a provider family.

    Args:
        provider (ProviderTag): the provider family
        model (str): the model name as sent to the provider

    Returns:
        tuple[CountingScheme, bool]: the scheme and whether its counts are approximate
    """
    if provider is ProviderTag.OPENAI:
        return _openai_scheme(model), False
    if provider is ProviderTag.OPENROUTER and model.lower().startswith("openai/"):
        return _openai_scheme(model), False
    return CountingScheme.CL100K, True


def counter_for(
    provider: ProviderTag,
    model: str,
    scheme: CountingScheme | None = None,
) -> TokenCounter:
    """Build the counter used for budgeting requests to `provider`.

    Args:
        provider (ProviderTag): the provider family
        model (str): the model name
        scheme (CountingScheme | None, optional): explicit override. Defaults to None.

    Returns:
        TokenCounter: the counter
    """
    default_scheme, approximate = scheme_for(provider, model)
    if scheme is CountingScheme.HEURISTIC:
        counter: TokenCounter = HeuristicCounter()
    elif scheme is not None:
        counter = TiktokenCounter(scheme, approximate=approximate or scheme is not default_scheme)
    else:
        counter = TiktokenCounter(default_scheme, approximate=approximate)
    logger.debug("token_counter_selected", provider=str(provider), model=model, counter=counter.name)
    return counter


def count_tokens(text: str, scheme: CountingScheme) -> TokenCount:
    """Count `text` with a given scheme.

    Args:
        text (str): the text to count; empty text yields zero
        scheme (CountingScheme): the tokenization table

    Returns:
        TokenCount: the count and its exactness
    """
    if scheme is CountingScheme.HEURISTIC:
        return HeuristicCounter().measure(text)
    return TiktokenCounter(scheme).measure(text)
