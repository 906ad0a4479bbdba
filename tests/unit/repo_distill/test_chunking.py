from __future__ import annotations

import pytest
from conftest import WordCounter, make_unit

from repo_distill.chunking import chunk, overlap_budget
from repo_distill.events import ChunkBoundaryEvent
from repo_distill.exceptions import ConfigError
from repo_distill.models import Corpus
from repo_distill.tokens import TokenCount


class JoinPenaltyCounter(WordCounter):
    """Joined blocks cost one extra token per block boundary."""

    name = "words+join"

    def count(self, text: str) -> int:
        return len(text.split()) + max(text.count("--- ") - 1, 0)

    def measure(self, text: str) -> TokenCount:
        return TokenCount(self.count(text), False)


def _unique_paths(segments: list) -> list[str]:
    seen: list[str] = []
    for segment in segments:
        for path in segment.unit_paths:
            if path not in seen:
                seen.append(path)
    return seen


@pytest.mark.unit
def test_three_units_of_forty_tokens_make_two_segments(word_counter: WordCounter) -> None:
    corpus = Corpus([make_unit(f"u{i}.py", 37) for i in range(3)])

    segments = chunk(corpus, 100, 0.1, word_counter)

    assert len(segments) == 2
    assert segments[0].unit_paths == ("u0.py", "u1.py")
    assert segments[0].token_count == 80
    assert segments[0].overlap_token_count == 0
    assert segments[1].unit_paths[-1] == "u2.py"
    assert segments[1].overlap_token_count <= 10
    assert segments[1].token_count <= 50


@pytest.mark.unit
def test_single_oversized_unit_becomes_flagged_segment(word_counter: WordCounter) -> None:
    corpus = Corpus([make_unit("big.py", 147)])

    segments = chunk(corpus, 100, 0.1, word_counter)

    assert len(segments) == 1
    assert segments[0].oversized is True
    assert segments[0].token_count == 150
    assert segments[0].overlap_token_count == 0


@pytest.mark.unit
def test_oversized_unit_is_isolated_without_overlap(word_counter: WordCounter) -> None:
    corpus = Corpus([make_unit("a.py", 7), make_unit("big.py", 200), make_unit("b.py", 7)])

    segments = chunk(corpus, 50, 0.4, word_counter)

    assert [s.unit_paths for s in segments] == [("a.py",), ("big.py",), ("b.py",)]
    assert [s.oversized for s in segments] == [False, True, False]
    assert all(s.overlap_token_count == 0 for s in segments)


@pytest.mark.unit
def test_budget_and_order_hold_for_mixed_sizes(word_counter: WordCounter) -> None:
    sizes = [4, 27, 9, 12, 30, 2, 2, 18, 25, 7, 41, 3, 11]
    units = [make_unit(f"f{i:02d}.py", n) for i, n in enumerate(sizes)]
    corpus = Corpus(units)

    segments = chunk(corpus, 50, 0.2, word_counter)

    assert [s.sequence_index for s in segments] == list(range(len(segments)))
    assert all(s.token_count <= 50 for s in segments if not s.oversized)
    assert all(s.token_count == word_counter.count(s.content) for s in segments)
    assert _unique_paths(segments) == [u.path for u in units]


@pytest.mark.unit
def test_overlap_repeats_previous_tail_verbatim(word_counter: WordCounter) -> None:
    corpus = Corpus([make_unit(f"s{i}.py", 2) for i in range(10)])

    segments = chunk(corpus, 20, 0.25, word_counter)

    assert len(segments) > 1
    assert segments[0].overlap_token_count == 0
    for previous, current in zip(segments, segments[1:], strict=False):
        k = current.overlap_token_count
        assert k > 0
        assert current.content.split()[:k] == previous.content.split()[-k:]
        assert k <= int(0.25 * 20)


@pytest.mark.unit
def test_overlap_never_splits_a_unit(word_counter: WordCounter) -> None:
    corpus = Corpus([make_unit(f"m{i}.py", 12) for i in range(4)])

    segments = chunk(corpus, 40, 0.2, word_counter)

    # each block is 15 tokens, larger than the 8-token overlap allowance
    assert all(s.overlap_token_count == 0 for s in segments)


@pytest.mark.unit
def test_zero_overlap_fraction(word_counter: WordCounter) -> None:
    corpus = Corpus([make_unit(f"z{i}.py", 2) for i in range(6)])

    segments = chunk(corpus, 10, 0.0, word_counter)

    assert [len(s.unit_paths) for s in segments] == [2, 2, 2]
    assert all(s.overlap_token_count == 0 for s in segments)


@pytest.mark.unit
def test_joined_count_is_rechecked_against_budget() -> None:
    counter = JoinPenaltyCounter()
    corpus = Corpus([make_unit(f"j{i}.py", 7) for i in range(3)])

    segments = chunk(corpus, 30, 0.0, counter)

    assert [s.unit_paths for s in segments] == [("j0.py", "j1.py"), ("j2.py",)]
    assert all(s.token_count <= 30 for s in segments)


@pytest.mark.unit
def test_empty_corpus_yields_no_segments(word_counter: WordCounter) -> None:
    assert chunk(Corpus([]), 100, 0.1, word_counter) == []


@pytest.mark.unit
@pytest.mark.parametrize(
    ("budget", "overlap"),
    [(0, 0.1), (-5, 0.1), (100, 0.5), (100, 0.9), (100, -0.1)],
)
def test_invalid_parameters_raise_config_error(word_counter: WordCounter, budget: int, overlap: float) -> None:
    with pytest.raises(ConfigError):
        chunk(Corpus([make_unit("a.py", 1)]), budget, overlap, word_counter)


@pytest.mark.unit
def test_overlap_budget_rounds_down() -> None:
    assert overlap_budget(100, 0.1) == 10
    assert overlap_budget(15, 0.1) == 1
    assert overlap_budget(5, 0.1) == 0


@pytest.mark.unit
def test_boundary_events_reach_sink(word_counter: WordCounter) -> None:
    events: list = []
    corpus = Corpus([make_unit(f"u{i}.py", 37) for i in range(3)])

    segments = chunk(corpus, 100, 0.1, word_counter, sink=events.append)

    assert [type(e) for e in events] == [ChunkBoundaryEvent, ChunkBoundaryEvent]
    assert [e.token_count for e in events] == [s.token_count for s in segments]
    assert events[0].unit_count == 2


@pytest.mark.unit
def test_segments_are_marked_approximate_for_approximate_counter() -> None:
    class Approx(WordCounter):
        name = "approx-words"
        is_approximate = True

    segments = chunk(Corpus([make_unit("a.py", 3)]), 100, 0.1, Approx())

    assert segments[0].is_approximate is True
