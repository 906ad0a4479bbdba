"""Segment prompts and the merge of per-segment analyses."""

from __future__ import annotations

from typing import TYPE_CHECKING

from repo_distill.exceptions import ConfigError
from repo_distill.logging import logger
from repo_distill.providers import CompletionOptions

if TYPE_CHECKING:
    from collections.abc import Sequence

    from repo_distill.client import ResilientClient
    from repo_distill.cost import CostTracker
    from repo_distill.models import SegmentResult

MERGE_OPERATION = "merge"


def build_single_prompt(template: str, content: str) -> str:
    """Prompt for a codebase that fits in one segment."""
    return f"{template}\n\n<codebase>\n{content}\n</codebase>"


def build_segment_prompt(template: str, content: str, number: int, total: int) -> str:
    """Prompt for segment `number` (1-based) out of `total`.

    The model is told that it sees only part of the codebase and that its
    answer will be merged with the others.
    """
    return (
        f"{template}\n\n"
        f"NOTE: This is chunk {number} of {total} from a large codebase.\n"
        "Focus on extracting insights from this portion. The results will be merged later.\n"
        "If you see partial code or references to code not in this chunk, note it but focus on what's present.\n\n"
        f'<codebase_chunk id="{number}" total="{total}">\n'
        f"{content}\n"
        "</codebase_chunk>"
    )


def build_merge_prompt(results: Sequence[SegmentResult]) -> str:
    """Prompt asking the model to reconcile per-segment analyses.

    Args:
        results (Sequence[SegmentResult]): analyses already in `sequence_index` order

    Returns:
        str: the merge prompt
    """
    analyses = "".join(
        f'<chunk_analysis id="{r.sequence_index + 1}">\n{r.text}\n</chunk_analysis>\n\n' for r in results
    )
    return (
        f"You are merging the analysis results from {len(results)} chunks of a large codebase.\n"
        "Each chunk was analyzed separately. Your task is to:\n\n"
        "1. **Synthesize** all insights into a coherent, unified analysis\n"
        "2. **Deduplicate** any repeated observations or rules\n"
        "3. **Combine** similar conventions or patterns into single, comprehensive rules\n"
        "4. **Resolve conflicts** by choosing the most specific or accurate insight; "
        "when equally specific, prefer the later chunk\n"
        "5. **Preserve** important details that appear in only one chunk\n\n"
        "Output a single, well-organized analysis that reads as if the entire codebase was analyzed at once.\n"
        "Do not mention chunks or the merge process in your output.\n\n"
        "<chunk_analyses>\n"
        f"{analyses}"
        "</chunk_analyses>"
    )


class MergeSynthesizer:
    """Reduces ordered segment analyses to one narrative."""

    def __init__(self, client: ResilientClient, options: CompletionOptions | None = None) -> None:
        self.client = client
        self.options = options or CompletionOptions()

    def merge_options(self) -> CompletionOptions:
        """The merge combines several answers, so it gets twice the completion budget."""
        if self.options.max_tokens is None:
            return self.options
        return self.options.model_copy(update={"max_tokens": self.options.max_tokens * 2})

    async def merge(self, results: Sequence[SegmentResult], cost: CostTracker | None = None) -> str:
        """Combine segment results into the final analysis.

        A single result is returned unchanged without any request. Failures of
        the merge request propagate; there is no concatenation fallback.

        Args:
            results (Sequence[SegmentResult]): one result per segment, any order
            cost (CostTracker | None, optional): accumulator for the merge request. Defaults to None.

        Raises:
            ConfigError: when there is nothing to merge
            ClientError: when the merge request fails

        Returns:
            str: the merged text
        """
        if not results:
            raise ConfigError(
                message="No segment results to merge",
                hint="Ensure the codebase has content before analysis.",
                stage="merge",
            )
        if len(results) == 1:
            logger.info("merge_skipped", reason="single segment")
            return results[0].text

        ordered = sorted(results, key=lambda r: r.sequence_index)
        logger.info("merge_started", segments=len(ordered))
        merged = await self.client.invoke(
            build_merge_prompt(ordered),
            self.merge_options(),
            sequence_index=len(ordered),
            operation=MERGE_OPERATION,
            cost=cost,
        )
        logger.info("merge_finished", input_tokens=merged.input_tokens, output_tokens=merged.output_tokens)
        return merged.text
