from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from repo_distill.config import CompressionKind, LanguageTag

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from repo_distill.tokens import TokenCounter

# Scanners decoding invalid UTF-8 with `surrogateescape` hand over lone surrogates.
UTF8_ERRORS = "surrogatepass"


def utf8_size(text: str) -> int:
    return len(text.encode("utf-8", errors=UTF8_ERRORS))


class SourceUnit(BaseModel):
    """One input file as handed over by the file-scanning collaborator.

    Attributes:
        path: Repository-relative path, POSIX separators.
        content: Raw file text.
        language: Detected language, if any.
    """

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Repository-relative path")
    content: str = Field(..., description="Raw text")
    language: LanguageTag | None = Field(default=None, description="Detected language tag")

    @computed_field
    @property
    def size(self) -> int:
        """Size of the content in UTF-8 bytes."""
        return utf8_size(self.content)


class CompressedUnit(BaseModel):
    """A SourceUnit after compression.

    Attributes:
        path: Same path as the originating SourceUnit.
        language: Same language tag as the originating SourceUnit.
        content: Reduced text body.
        method: Which compression strategy produced `content`.
        ratio: compressed/original size in bytes, in (0.0, 1.0]; None when `method` is NONE.
        original_size: Size of the original content in UTF-8 bytes.
        original_tokens: Token count of the original content, when measured.
        tokens: Token count of the compressed content, when measured.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    language: LanguageTag | None = None
    content: str
    method: CompressionKind = CompressionKind.NONE
    ratio: float | None = None
    original_size: int = Field(..., ge=0)
    original_tokens: int | None = Field(default=None, ge=0)
    tokens: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_ratio(self) -> CompressedUnit:
        if self.method is CompressionKind.NONE:
            if self.ratio is not None:
                msg = "an uncompressed unit carries no ratio"
                raise ValueError(msg)
        elif self.ratio is None or not 0.0 < self.ratio <= 1.0:
            msg = f"compression ratio must be in (0.0, 1.0], got {self.ratio!r}"
            raise ValueError(msg)
        return self

    @computed_field
    @property
    def size(self) -> int:
        """Size of the compressed content in UTF-8 bytes."""
        return utf8_size(self.content)

    def as_block(self) -> str:
        """Render the unit the way it appears inside a segment."""
        return f"--- {self.path} ---\n{self.content}\n\n"


class Corpus:
    """Ordered, read-only collection of compressed units plus aggregate metadata."""

    def __init__(self, units: Iterable[CompressedUnit]) -> None:
        self._units: tuple[CompressedUnit, ...] = tuple(units)
        self._block_tokens: dict[str, tuple[int, ...]] = {}

    def __len__(self) -> int:
        return len(self._units)

    def __iter__(self) -> Iterator[CompressedUnit]:
        return iter(self._units)

    @property
    def units(self) -> tuple[CompressedUnit, ...]:
        return self._units

    def block_tokens(self, counter: TokenCounter) -> tuple[int, ...]:
        """Token count of every unit block, computed once per counting scheme.

        Args:
            counter (TokenCounter): the counter to measure with

        Returns:
            tuple[int, ...]: one count per unit, in corpus order
        """
        key = counter.name
        if key not in self._block_tokens:
            self._block_tokens[key] = tuple(counter.count(unit.as_block()) for unit in self._units)
        return self._block_tokens[key]

    def total_tokens(self, counter: TokenCounter) -> int:
        return sum(self.block_tokens(counter))

    @property
    def language_counts(self) -> dict[str, int]:
        """Number of files per language tag; untagged files are not counted."""
        counts = Counter(str(u.language) for u in self._units if u.language is not None)
        return dict(sorted(counts.items()))

    @property
    def compression_ratio(self) -> float | None:
        """Overall compressed/original ratio.

        Token based when every unit carries both token counts, byte based otherwise.
        None for an empty corpus.
        """
        if not self._units:
            return None
        if all(u.original_tokens is not None and u.tokens is not None for u in self._units):
            original = sum(u.original_tokens or 0 for u in self._units)
            compressed = sum(u.tokens or 0 for u in self._units)
        else:
            original = sum(u.original_size for u in self._units)
            compressed = sum(u.size for u in self._units)
        if original == 0:
            return None
        return compressed / original


class Segment(BaseModel):
    """One token-bounded chunk of the corpus.

    Attributes:
        sequence_index: 0-based emission order; preserved through the merge.
        content: Concatenated unit blocks.
        token_count: Tokens in `content`.
        overlap_token_count: Leading tokens duplicated from the previous segment's tail.
        unit_paths: Paths of the units in this segment, overlap units included.
        oversized: True when a single unit larger than the budget makes up the segment.
        is_approximate: Whether the counts come from an approximate tokenizer.
    """

    model_config = ConfigDict(frozen=True)

    sequence_index: int = Field(..., ge=0)
    content: str
    token_count: int = Field(..., ge=0)
    overlap_token_count: int = Field(default=0, ge=0)
    unit_paths: tuple[str, ...] = ()
    oversized: bool = False
    is_approximate: bool = False

    @model_validator(mode="after")
    def _check_overlap(self) -> Segment:
        if self.overlap_token_count > self.token_count:
            msg = "overlap cannot be larger than the segment"
            raise ValueError(msg)
        if self.sequence_index == 0 and self.overlap_token_count:
            msg = "the first segment has no overlap"
            raise ValueError(msg)
        return self


class SegmentResult(BaseModel):
    """The model's answer for one segment."""

    model_config = ConfigDict(frozen=True)

    sequence_index: int = Field(..., ge=0)
    text: str
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    latency_seconds: float = Field(default=0.0, ge=0.0)
    attempts: int = Field(default=1, ge=1)


class RunMetadata(BaseModel):
    """Totals reported to the downstream rule-generation collaborator."""

    model_config = ConfigDict(frozen=True)

    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    chunk_count: int = 0
    compression_ratio: float | None = None
