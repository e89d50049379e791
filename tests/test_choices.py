from __future__ import annotations

import random

import pytest

from quran_quiz.choices import (
    NONE_OF_THE_ABOVE,
    adjacent_window,
    build_choice_set,
    build_none_of_the_above_set,
    clean_html,
    collect_distinct,
    first_matching,
    normalize_lengths,
)
from quran_quiz.errors import ContentSourceError, InsufficientCandidatesError
from tests.helpers import FixedRandom


@pytest.mark.parametrize("seed", range(25))
def test_choice_set_has_unique_options_and_correct_once(seed: int) -> None:
    pool = ["A", "B", "C", "D", "E", "A", "C", "F"]
    choice_set = build_choice_set("B", pool, 5, random.Random(seed))

    assert len(choice_set) == 5
    assert len(set(choice_set.options)) == 5
    assert choice_set.options.count("B") == 1
    assert choice_set.correct == "B"


def test_choice_set_is_deterministic_for_a_seed() -> None:
    pool = [f"chapter-{i}" for i in range(30)]
    first = build_choice_set("chapter-3", pool, 5, random.Random(99))
    second = build_choice_set("chapter-3", pool, 5, random.Random(99))
    assert first == second


def test_choice_set_correct_position_covers_every_slot() -> None:
    pool = [str(i) for i in range(20)]
    rng = random.Random(5)
    positions = {build_choice_set("x", pool, 5, rng).correct_index for _ in range(200)}
    assert positions == {0, 1, 2, 3, 4}


def test_choice_set_raises_when_pool_too_small() -> None:
    with pytest.raises(InsufficientCandidatesError):
        build_choice_set("B", ["A", "B", "A", "C"], 5, random.Random(1))


def test_choice_set_rejects_non_positive_size() -> None:
    with pytest.raises(ValueError):
        build_choice_set("B", ["A"], 0, random.Random(1))


def test_none_of_the_above_when_correct_is_left_out() -> None:
    distractors = ["wrong one", "wrong two", "wrong three", "wrong four", "wrong five"]
    choice_set = build_none_of_the_above_set("the right one", distractors, FixedRandom(0.95))

    assert len(choice_set) == 5
    assert choice_set.options.count(NONE_OF_THE_ABOVE) == 1
    assert "the right one" not in choice_set.options
    assert choice_set.correct == NONE_OF_THE_ABOVE
    assert len(set(choice_set.options)) == 5


def test_none_of_the_above_when_correct_is_included() -> None:
    distractors = ["wrong one", "wrong two", "wrong three", "wrong four"]
    choice_set = build_none_of_the_above_set("the right one", distractors, FixedRandom(0.1))

    assert len(choice_set) == 5
    assert choice_set.options.count(NONE_OF_THE_ABOVE) == 1
    assert choice_set.options.count("the right one") == 1
    assert choice_set.correct == "the right one"


def test_none_of_the_above_needs_enough_distractors() -> None:
    with pytest.raises(InsufficientCandidatesError):
        build_none_of_the_above_set("right", ["a", "b", "right"], FixedRandom(0.95))


def test_none_of_the_above_shortens_options_but_tracks_correct() -> None:
    correct = "c" * 200
    distractors = ["a" * 40, "b" * 120, "d" * 90, "e" * 60]
    choice_set = build_none_of_the_above_set(correct, distractors, FixedRandom(0.1), attempts_today=50)

    assert choice_set.correct.startswith("...")
    assert choice_set.correct.endswith("...")
    assert set(choice_set.correct.strip(".")) == {"c"}


def test_normalize_lengths_cuts_around_shortest() -> None:
    texts = ["a" * 40, "".join(chr(65 + i % 26) for i in range(120)), "z" * 200]
    result = normalize_lengths(texts, attempts_today=50)

    # factor 0.5 -> target max(20, 20 + 20) = 40
    assert result[0] == texts[0]
    for original, cut in zip(texts[1:], result[1:]):
        assert cut.startswith("...") and cut.endswith("...")
        middle = cut[3:-3]
        assert len(middle) == 40
        assert len(middle) < 40 + 20
        start = (len(original) - 40) // 2
        assert middle == original[start:start + 40]


def test_normalize_lengths_keeps_near_equal_strings() -> None:
    texts = ["x" * 30, "y" * 70]
    # no attempts: target = 30 + 20 = 50, keep up to 70
    assert normalize_lengths(texts, attempts_today=0) == texts


def test_normalize_lengths_factor_has_a_floor() -> None:
    texts = ["a" * 100, "b" * 300]
    result = normalize_lengths(texts, attempts_today=500)
    # factor floors at 0.1 -> target = 10 + 20 = 30
    assert len(result[0]) == 36
    assert len(result[1]) == 36


def test_adjacent_window_contains_answer_and_stays_in_range() -> None:
    rng = random.Random(3)
    for position in (1, 2, 7, 57, 100, 113, 114):
        window = adjacent_window(position, 114, 15, rng)
        assert len(window) == 15
        assert position in window
        assert window == list(range(window[0], window[0] + 15))
        assert window[0] >= 1 and window[-1] <= 114


def test_adjacent_window_smaller_total_returns_everything() -> None:
    assert adjacent_window(3, 5, 15, random.Random(1)) == [1, 2, 3, 4, 5]


def test_adjacent_window_rejects_out_of_range_position() -> None:
    with pytest.raises(ValueError):
        adjacent_window(115, 114, 15, random.Random(1))


def test_clean_html_strips_markup_and_footnotes() -> None:
    raw = "Allah - there is no deity<sup foot_note=195933>1</sup>   except Him, foot_note=12 the Ever-Living"
    assert clean_html(raw) == "Allah - there is no deity1 except Him, the Ever-Living"


@pytest.mark.asyncio
async def test_first_matching_returns_first_hit_lazily() -> None:
    values = iter([1, 3, 8, 10, 12])
    pulls = []

    async def produce():
        value = next(values)
        pulls.append(value)
        return value

    assert await first_matching(produce, lambda v: v % 2 == 0) == 8
    assert pulls == [1, 3, 8]


@pytest.mark.asyncio
async def test_first_matching_gives_up_after_cap_and_counts_failures() -> None:
    calls = 0

    async def produce():
        nonlocal calls
        calls += 1
        if calls % 2:
            raise ContentSourceError("boom")
        return "short"

    with pytest.raises(InsufficientCandidatesError):
        await first_matching(produce, lambda v: len(v) > 10, max_pulls=10)
    assert calls == 10


@pytest.mark.asyncio
async def test_collect_distinct_skips_duplicates_and_excluded() -> None:
    values = iter(["a", "a", None, "correct", "b", "c", "d"])

    async def produce():
        return next(values)

    found = await collect_distinct(produce, count=3, max_pulls=7, exclude=["correct"])
    assert found == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_collect_distinct_returns_partial_result() -> None:
    async def produce():
        return "same"

    assert await collect_distinct(produce, count=4, max_pulls=5) == ["same"]
