"""End-to-end run: compress, chunk, analyze every segment, merge."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from repo_distill.chunking import chunk
from repo_distill.client import ResilientClient, RetryPolicy
from repo_distill.compression import compress, compress_async
from repo_distill.cost import CostTracker, estimate_run_cost, pricing_for
from repo_distill.exceptions import ClientError, ConfigError
from repo_distill.logging import bind_stage, logger, run_context
from repo_distill.models import Corpus, RunMetadata, Segment, SegmentResult
from repo_distill.providers import CompletionOptions, create_provider
from repo_distill.settings import ProviderCredentials
from repo_distill.synthesis import MERGE_OPERATION, MergeSynthesizer, build_segment_prompt, build_single_prompt
from repo_distill.tokens import counter_for

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from repo_distill.cost import CostEstimate
    from repo_distill.events import EventSink
    from repo_distill.models import CompressedUnit, SourceUnit
    from repo_distill.providers import LLMProvider
    from repo_distill.settings import PipelineConfig
    from repo_distill.tokens import TokenCounter


@dataclass(frozen=True)
class PreparedRun:
    """Everything known before the first request is sent."""

    corpus: Corpus
    segments: list[Segment]
    counter: TokenCounter


class PipelineResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    metadata: RunMetadata
    results: tuple[SegmentResult, ...] = ()


def _no_content_error() -> ConfigError:
    return ConfigError(
        message="No source units to analyze",
        hint="Check the include/exclude filters; the scan produced no files.",
        stage="preparing corpus",
    )


async def _compress_one(unit: SourceUnit, config: PipelineConfig, sink: EventSink | None) -> CompressedUnit:
    if unit.size > config.offload_threshold_bytes:
        logger.debug("compression_offloaded", path=unit.path, size=unit.size)
        return await compress_async(unit, sink=sink)
    return compress(unit, sink=sink)


async def prepare(
    sources: Sequence[SourceUnit],
    config: PipelineConfig,
    counter: TokenCounter | None = None,
    *,
    sink: EventSink | None = None,
) -> PreparedRun:
    """Compress and chunk the sources. No network access.

    Args:
        sources (Sequence[SourceUnit]): files from the scanner, in output order
        config (PipelineConfig): the run configuration
        counter (TokenCounter | None, optional): counter override. Defaults to the provider's.
        sink (EventSink | None, optional): progress callback. Defaults to None.

    Raises:
        ConfigError: for an invalid budget or overlap

    Returns:
        PreparedRun: the corpus and its segments
    """
    counter = counter or counter_for(config.provider, config.model, config.counting_scheme)
    units = []
    for source in sources:
        compressed = await _compress_one(source, config, sink)
        units.append(
            compressed.model_copy(
                update={"original_tokens": counter.count(source.content), "tokens": counter.count(compressed.content)},
            ),
        )
    corpus = Corpus(units)
    segments = chunk(corpus, config.token_budget, config.overlap_fraction, counter, sink=sink)
    logger.info(
        "run_prepared",
        files=len(corpus),
        segments=len(segments),
        compression_ratio=corpus.compression_ratio,
        languages=corpus.language_counts,
    )
    return PreparedRun(corpus=corpus, segments=segments, counter=counter)


async def estimate_run(
    sources: Sequence[SourceUnit],
    config: PipelineConfig,
    counter: TokenCounter | None = None,
) -> CostEstimate:
    """Dry run: price the whole pipeline without contacting the provider."""
    prepared = await prepare(sources, config, counter)
    if not prepared.segments:
        raise _no_content_error()
    return estimate_run_cost(prepared.segments, pricing_for(config.provider, config.model), config.max_output_tokens)


async def run_pipeline(
    sources: Sequence[SourceUnit],
    config: PipelineConfig,
    *,
    prompt: str,
    provider: LLMProvider | None = None,
    credentials: ProviderCredentials | None = None,
    cost: CostTracker | None = None,
    sink: EventSink | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PipelineResult:
    """Distill `sources` into one analysis.

    Segments are analyzed one after another in `sequence_index` order and the
    answers merged. A failure of any request aborts the run; the raised
    `ClientError` carries the failing stage and what was spent until then.

    Args:
        sources (Sequence[SourceUnit]): files from the scanner
        config (PipelineConfig): the run configuration
        prompt (str): analysis instructions prepended to every segment
        provider (LLMProvider | None, optional): provider to use; left open. Defaults to one built from `config`.
        credentials (ProviderCredentials | None, optional): used when building the provider.
            Defaults to the environment.
        cost (CostTracker | None, optional): caller-owned accumulator. Defaults to a private one.
        sink (EventSink | None, optional): progress callback. Defaults to None.
        sleep (Callable[[float], Awaitable[None]], optional): backoff sleep. Defaults to asyncio.sleep.

    Raises:
        ConfigError: for invalid configuration or an empty corpus, before any request
        ClientError: when a segment or the merge request fails

    Returns:
        PipelineResult: the final text and run metadata
    """
    with run_context("preparing corpus", provider=str(config.provider), model=config.model):
        prepared = await prepare(sources, config, sink=sink)
        segments = prepared.segments
        if not segments:
            raise _no_content_error()

        owns_provider = provider is None
        if provider is None:
            provider = create_provider(config, credentials or ProviderCredentials.from_env())
        tracker = cost if cost is not None else CostTracker(provider.pricing)
        already_recorded = tracker.operation_count
        client = ResilientClient(provider, RetryPolicy.from_config(config), sleep=sleep, sink=sink)
        options = CompletionOptions(max_tokens=config.max_output_tokens, temperature=config.temperature)

        total = len(segments)
        buffer: dict[int, SegmentResult] = {}
        stage = ""
        try:
            for number, segment in enumerate(segments, start=1):
                stage = f"analyze segment {number}/{total}"
                bind_stage(stage)
                if total == 1:
                    text = build_single_prompt(prompt, segment.content)
                else:
                    text = build_segment_prompt(prompt, segment.content, number, total)
                logger.info("segment_analysis_started", segment=number, total=total, tokens=segment.token_count)
                buffer[segment.sequence_index] = await client.invoke(
                    text,
                    options,
                    sequence_index=segment.sequence_index,
                    operation=stage,
                    cost=tracker,
                )
            stage = MERGE_OPERATION
            bind_stage(stage)
            ordered = tuple(buffer[i] for i in sorted(buffer))
            final = await MergeSynthesizer(client, options).merge(ordered, cost=tracker)
        except ClientError as e:
            e.stage = stage
            e.spent = tracker.summary()
            logger.error("pipeline_failed", stage=stage, error=str(e), spent=e.spent.total_cost)
            raise
        finally:
            if owns_provider:
                await provider.aclose()

        spent = tracker.summary().operations[already_recorded:]
        metadata = RunMetadata(
            total_input_tokens=sum(op.input_tokens for op in spent),
            total_output_tokens=sum(op.output_tokens for op in spent),
            total_cost=sum(op.cost for op in spent),
            chunk_count=total,
            compression_ratio=prepared.corpus.compression_ratio,
        )
        logger.info("pipeline_finished", **metadata.model_dump())
        return PipelineResult(text=final, metadata=metadata, results=ordered)
