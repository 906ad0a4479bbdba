"""Observability events handed to an external progress reporter.

Every event is logged through structlog; a caller that renders progress passes
an `EventSink` and receives the same objects.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field

from repo_distill.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class CompressionEvent(_Event):
    """One unit went through the compressor."""

    kind: Literal["unit_compressed"] = "unit_compressed"
    path: str
    language: str | None = None
    method: str
    ratio: float | None = Field(default=None, description="compressed/original bytes; None when untouched")


class ChunkBoundaryEvent(_Event):
    """The chunker closed a segment."""

    kind: Literal["segment_closed"] = "segment_closed"
    sequence_index: int
    token_count: int
    overlap_token_count: int
    unit_count: int
    oversized: bool = False


class AttemptEvent(_Event):
    """One outbound request resolved, successfully or not."""

    kind: Literal["invoke_attempt"] = "invoke_attempt"
    sequence_index: int
    attempt: int
    outcome: str = Field(..., description="succeeded, retrying, exhausted or fatal")
    classification: str | None = None
    delay_seconds: float | None = None
    status_code: int | None = None


class CostEvent(_Event):
    """The cost accumulator absorbed one completed request."""

    kind: Literal["cost_recorded"] = "cost_recorded"
    operation: str
    input_tokens: int
    output_tokens: int
    cost: float
    running_total: float


PipelineEvent = CompressionEvent | ChunkBoundaryEvent | AttemptEvent | CostEvent

if TYPE_CHECKING:
    EventSink = Callable[[PipelineEvent], None]


def emit(event: PipelineEvent, sink: EventSink | None = None) -> None:
    """Log an event and forward it to the caller's sink, if any.

    Args:
        event (PipelineEvent): the event to publish
        sink (EventSink | None, optional): progress callback. Defaults to None.
    """
    payload = event.model_dump(exclude={"kind"})
    logger.info(event.kind, **payload)
    if sink is not None:
        sink(event)
