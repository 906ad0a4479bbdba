"""Greedy, unit-level partitioning of a corpus into token-bounded segments.

Compressed units are never split: a segment is a run of whole unit blocks,
optionally seeded with the trailing whole units of the previous segment.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from repo_distill.events import ChunkBoundaryEvent, emit
from repo_distill.exceptions import ConfigError
from repo_distill.logging import logger
from repo_distill.models import Segment

if TYPE_CHECKING:
    from collections.abc import Sequence

    from repo_distill.events import EventSink
    from repo_distill.models import Corpus
    from repo_distill.tokens import TokenCounter

MAX_OVERLAP_FRACTION = 0.5


@dataclass(frozen=True)
class _Block:
    path: str
    text: str
    tokens: int


def overlap_budget(budget: int, overlap_fraction: float) -> int:
    """Validate the chunking parameters and return the overlap allowance in tokens.

    Args:
        budget (int): maximum tokens per segment
        overlap_fraction (float): fraction of `budget` that may be repeated, in [0, 0.5)

    Raises:
        ConfigError: if the budget is not positive, the fraction is out of range,
            or the overlap would consume the whole segment

    Returns:
        int: the overlap allowance, rounded down
    """
    if budget <= 0:
        raise ConfigError(
            message=f"Token budget must be positive, got {budget}",
            hint="Set token_budget to the model's usable context size.",
        )
    if not 0.0 <= overlap_fraction < MAX_OVERLAP_FRACTION:
        raise ConfigError(
            message=f"Overlap fraction must be in [0, {MAX_OVERLAP_FRACTION}), got {overlap_fraction}",
            hint="A value around 0.1 keeps continuity without wasting budget.",
        )
    if overlap_fraction * budget >= budget:
        raise ConfigError(
            message="Overlap would consume the entire segment",
            hint="Reduce overlap_fraction or increase token_budget.",
        )
    return int(overlap_fraction * budget)


def _join(blocks: Sequence[_Block]) -> str:
    return "".join(b.text for b in blocks)


def _tail(blocks: Sequence[_Block], allowance: int) -> list[_Block]:
    """Trailing whole blocks whose summed tokens fit in `allowance`."""
    tail: list[_Block] = []
    total = 0
    for block in reversed(blocks):
        if total + block.tokens > allowance:
            break
        tail.append(block)
        total += block.tokens
    tail.reverse()
    return tail


def _fit_seed(seed: list[_Block], incoming: int, budget: int) -> list[_Block]:
    """Drop leading overlap blocks until the next unit fits beside them."""
    seed = list(seed)
    while seed and sum(b.tokens for b in seed) + incoming > budget:
        seed.pop(0)
    return seed


def chunk(
    corpus: Corpus,
    budget: int,
    overlap_fraction: float,
    counter: TokenCounter,
    *,
    sink: EventSink | None = None,
) -> list[Segment]:
    """Partition `corpus` into ordered segments of at most `budget` tokens.

    Units are packed greedily in corpus order. When the next unit would push the
    running segment past the budget, the segment is closed and the next one is
    seeded with the previous segment's trailing whole units worth at most
    `overlap_fraction * budget` tokens. A unit that alone exceeds the budget
    becomes its own segment, flagged `oversized`, with no overlap on either side.

    Args:
        corpus (Corpus): the compressed corpus
        budget (int): maximum tokens per non-oversized segment
        overlap_fraction (float): share of `budget` repeated between neighbours
        counter (TokenCounter): the token counter used for every measurement
        sink (EventSink | None, optional): progress callback. Defaults to None.

    Raises:
        ConfigError: for an invalid budget or overlap, before any segment is built

    Returns:
        list[Segment]: the segments, `sequence_index` following emission order
    """
    allowance = overlap_budget(budget, overlap_fraction)
    blocks = [
        _Block(path=unit.path, text=unit.as_block(), tokens=tokens)
        for unit, tokens in zip(corpus.units, corpus.block_tokens(counter), strict=True)
    ]

    segments: list[Segment] = []

    def close(members: Sequence[_Block], seed: Sequence[_Block], token_count: int, *, oversized: bool) -> None:
        segment = Segment(
            sequence_index=len(segments),
            content=_join([*seed, *members]),
            token_count=token_count,
            overlap_token_count=counter.count(_join(seed)) if seed else 0,
            unit_paths=tuple(b.path for b in [*seed, *members]),
            oversized=oversized,
            is_approximate=counter.is_approximate,
        )
        segments.append(segment)
        emit(
            ChunkBoundaryEvent(
                sequence_index=segment.sequence_index,
                token_count=segment.token_count,
                overlap_token_count=segment.overlap_token_count,
                unit_count=len(segment.unit_paths),
                oversized=oversized,
            ),
            sink,
        )

    seed: list[_Block] = []
    i = 0
    while i < len(blocks):
        head = blocks[i]
        if head.tokens > budget:
            logger.warning("oversized_unit", path=head.path, tokens=head.tokens, budget=budget)
            close([head], [], head.tokens, oversized=True)
            seed = []
            i += 1
            continue

        seed = _fit_seed(seed, head.tokens, budget)
        members = [head]
        running = sum(b.tokens for b in seed) + head.tokens
        i += 1
        while i < len(blocks) and running + blocks[i].tokens <= budget:
            members.append(blocks[i])
            running += blocks[i].tokens
            i += 1

        # Block counts are not strictly additive under BPE; re-measure the joined text.
        token_count = counter.count(_join([*seed, *members]))
        while token_count > budget and len(members) > 1:
            members.pop()
            i -= 1
            token_count = counter.count(_join([*seed, *members]))
        if token_count > budget and seed:
            seed = []
            token_count = counter.count(_join(members))

        close(members, seed, token_count, oversized=False)
        seed = _tail([*seed, *members], allowance)

    logger.info(
        "corpus_chunked",
        segments=len(segments),
        units=len(blocks),
        budget=budget,
        overlap_budget=allowance,
        approximate=counter.is_approximate,
    )
    return segments
