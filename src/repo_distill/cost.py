"""Token pricing and the caller-owned cost accumulator.

Prices are in US dollars per million tokens.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, computed_field

from repo_distill.config import ProviderTag
from repo_distill.events import CostEvent, emit
from repo_distill.logging import logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from repo_distill.events import EventSink
    from repo_distill.models import Segment

TOKENS_PER_UNIT = 1_000_000


class Pricing(BaseModel):
    """Price of one model, per million tokens."""

    model_config = ConfigDict(frozen=True)

    input_per_million: float = Field(default=0.0, ge=0.0, description="USD per 1M input tokens")
    output_per_million: float = Field(default=0.0, ge=0.0, description="USD per 1M output tokens")

    @property
    def is_free(self) -> bool:
        return self.input_per_million == 0.0 and self.output_per_million == 0.0


FREE = Pricing()

# Keys are model-name prefixes; the longest matching prefix wins.
PRICE_TABLE: dict[ProviderTag, dict[str, Pricing]] = {
    ProviderTag.ANTHROPIC: {
        "claude-opus-4": Pricing(input_per_million=15.0, output_per_million=75.0),
        "claude-3-opus": Pricing(input_per_million=15.0, output_per_million=75.0),
        "claude-sonnet-4": Pricing(input_per_million=3.0, output_per_million=15.0),
        "claude-3-7-sonnet": Pricing(input_per_million=3.0, output_per_million=15.0),
        "claude-3-5-sonnet": Pricing(input_per_million=3.0, output_per_million=15.0),
        "claude-haiku-4": Pricing(input_per_million=1.0, output_per_million=5.0),
        "claude-3-5-haiku": Pricing(input_per_million=0.8, output_per_million=4.0),
        "claude-3-haiku": Pricing(input_per_million=0.25, output_per_million=1.25),
    },
    ProviderTag.OPENAI: {
        "gpt-4o-mini": Pricing(input_per_million=0.15, output_per_million=0.6),
        "gpt-4o": Pricing(input_per_million=2.5, output_per_million=10.0),
        "gpt-4.1-mini": Pricing(input_per_million=0.4, output_per_million=1.6),
        "gpt-4.1": Pricing(input_per_million=2.0, output_per_million=8.0),
        "gpt-4-turbo": Pricing(input_per_million=10.0, output_per_million=30.0),
        "o3-mini": Pricing(input_per_million=1.1, output_per_million=4.4),
        "o1": Pricing(input_per_million=15.0, output_per_million=60.0),
    },
    ProviderTag.OPENROUTER: {
        "anthropic/claude-3.5-sonnet": Pricing(input_per_million=3.0, output_per_million=15.0),
        "anthropic/claude-sonnet-4": Pricing(input_per_million=3.0, output_per_million=15.0),
        "openai/gpt-4o-mini": Pricing(input_per_million=0.15, output_per_million=0.6),
        "openai/gpt-4o": Pricing(input_per_million=2.5, output_per_million=10.0),
    },
    ProviderTag.OLLAMA: {},
}

DEFAULT_PRICING: dict[ProviderTag, Pricing] = {
    ProviderTag.ANTHROPIC: Pricing(input_per_million=3.0, output_per_million=15.0),
    ProviderTag.OPENAI: Pricing(input_per_million=2.5, output_per_million=10.0),
    ProviderTag.OPENROUTER: Pricing(input_per_million=3.0, output_per_million=15.0),
    ProviderTag.OLLAMA: FREE,
}


def pricing_for(provider: ProviderTag, model: str) -> Pricing:
    """Look up the price of `model` on `provider`.

    Args:
        provider (ProviderTag): the provider family
        model (str): the model name as sent to the provider

    Returns:
        Pricing: the longest-prefix match in the price table, or the provider default
    """
    table = PRICE_TABLE.get(provider, {})
    name = model.lower()
    matches = [prefix for prefix in table if name.startswith(prefix)]
    if not matches:
        return DEFAULT_PRICING[provider]
    return table[max(matches, key=len)]


class CostEstimate(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_tokens: int = 0
    output_tokens: int = 0
    input_cost: float = 0.0
    output_cost: float = 0.0

    @computed_field
    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost

    @computed_field
    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CostBreakdown(BaseModel):
    """Tokens and cost of one completed request."""

    model_config = ConfigDict(frozen=True)

    operation: str
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0.0)


class CostSummary(BaseModel):
    """Immutable snapshot of a CostTracker."""

    model_config = ConfigDict(frozen=True)

    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    operations: tuple[CostBreakdown, ...] = ()

    @computed_field
    @property
    def operation_count(self) -> int:
        return len(self.operations)

    @computed_field
    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    @property
    def average_cost_per_operation(self) -> float:
        return self.total_cost / len(self.operations) if self.operations else 0.0


class CostCalculator:
    """Turns token counts into dollars for one pricing."""

    def __init__(self, pricing: Pricing) -> None:
        self.pricing = pricing

    def input_cost(self, input_tokens: int) -> float:
        return input_tokens / TOKENS_PER_UNIT * self.pricing.input_per_million

    def output_cost(self, output_tokens: int) -> float:
        return output_tokens / TOKENS_PER_UNIT * self.pricing.output_per_million

    def calculate(self, input_tokens: int, output_tokens: int) -> float:
        return self.input_cost(input_tokens) + self.output_cost(output_tokens)

    def estimate(self, input_tokens: int, expected_output_tokens: int) -> CostEstimate:
        return CostEstimate(
            input_tokens=input_tokens,
            output_tokens=expected_output_tokens,
            input_cost=self.input_cost(input_tokens),
            output_cost=self.output_cost(expected_output_tokens),
        )


class CostTracker:
    """Running cost of a pipeline run.

    Owned by the caller and passed explicitly into the run; only the model
    client records into it, once per completed request.

    Example:
        >>> tracker = CostTracker(Pricing(input_per_million=3.0, output_per_million=15.0))
        >>> _ = tracker.record("analyze segment 1/1", 1_000_000, 0)
        >>> tracker.summary().total_cost
        3.0
    """

    def __init__(self, pricing: Pricing | CostCalculator) -> None:
        self.calculator = pricing if isinstance(pricing, CostCalculator) else CostCalculator(pricing)
        self._operations: tuple[CostBreakdown, ...] = ()

    @property
    def total_cost(self) -> float:
        return sum(op.cost for op in self._operations)

    @property
    def operation_count(self) -> int:
        return len(self._operations)

    def record(
        self,
        operation: str,
        input_tokens: int,
        output_tokens: int,
        *,
        sink: EventSink | None = None,
    ) -> CostBreakdown:
        """Absorb one completed request.

        The tracker state is replaced in a single assignment, so a reader never
        sees a half-applied update.

        Args:
            operation (str): label of the request, e.g. "analyze segment 2/5"
            input_tokens (int): prompt tokens reported by the provider
            output_tokens (int): completion tokens reported by the provider
            sink (EventSink | None, optional): progress callback. Defaults to None.

        Returns:
            CostBreakdown: the recorded entry
        """
        entry = CostBreakdown(
            operation=operation,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=self.calculator.calculate(input_tokens, output_tokens),
        )
        self._operations = (*self._operations, entry)
        emit(
            CostEvent(
                operation=operation,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=entry.cost,
                running_total=self.total_cost,
            ),
            sink,
        )
        return entry

    def summary(self) -> CostSummary:
        operations = self._operations
        return CostSummary(
            total_cost=sum(op.cost for op in operations),
            total_input_tokens=sum(op.input_tokens for op in operations),
            total_output_tokens=sum(op.output_tokens for op in operations),
            operations=operations,
        )

    def reset(self) -> None:
        self._operations = ()


def estimate_run_cost(
    segments: Sequence[Segment],
    pricing: Pricing,
    expected_output_tokens: int,
) -> CostEstimate:
    """Price a run before any request is sent.

    Every segment is priced as one request producing `expected_output_tokens`.
    With more than one segment, a merge request is added whose input is the
    concatenated segment outputs and whose output is twice the per-segment
    expectation.

    Args:
        segments (Sequence[Segment]): the chunker output
        pricing (Pricing): the model's pricing
        expected_output_tokens (int): expected completion size per request

    Returns:
        CostEstimate: the aggregated estimate
    """
    input_tokens = sum(s.token_count for s in segments)
    output_tokens = expected_output_tokens * len(segments)
    if len(segments) > 1:
        input_tokens += expected_output_tokens * len(segments)
        output_tokens += expected_output_tokens * 2
    estimate = CostCalculator(pricing).estimate(input_tokens, output_tokens)
    logger.debug("run_cost_estimated", segments=len(segments), total_cost=estimate.total_cost)
    return estimate
