from __future__ import annotations

import random
from datetime import date, datetime, timezone
from typing import Optional

import pytest

from quran_quiz.chapters import CHAPTER_NAMES, chapter_name
from quran_quiz.choices import NONE_OF_THE_ABOVE
from quran_quiz.errors import InsufficientCandidatesError
from quran_quiz.quizzes import (
    CHAPTER_ADVANCED,
    CHAPTER_BASIC,
    MISSING_PLACEHOLDER,
    QUIZ_KINDS,
    QuizContext,
    build_chapter_question,
    build_missing_words_question,
    build_order_question,
    build_translation_question,
    gather_translation_distractors,
    quiz_kind,
    remove_words,
)
from quran_quiz.quran_api import Verse
from quran_quiz.session import UserStats
from tests.helpers import FakeApi, FakeCanvas, make_verse

TODAY = date(2025, 3, 14)


def make_context(api: FakeApi, tier=CHAPTER_BASIC, stats: Optional[UserStats] = None,
                 seed: int = 1) -> QuizContext:
    return QuizContext(
        api=api,
        canvas=FakeCanvas(),
        rng=random.Random(seed),
        stats=stats or UserStats(),
        tier=tier,
        today=TODAY,
    )


@pytest.mark.parametrize("seed", range(10))
def test_remove_words_blanks_up_to_four_in_order(seed: int) -> None:
    glyph = " ".join(f"w{i}" for i in range(15))
    modified, missing = remove_words(glyph, random.Random(seed))

    assert 0 <= len(missing) <= 4
    assert modified.split().count(MISSING_PLACEHOLDER) == len(missing)
    assert len(modified.split()) == 15
    assert missing == sorted(missing, key=lambda w: int(w[1:]))
    for word in missing:
        assert word not in modified.split()


def test_remove_words_never_removes_more_than_available() -> None:
    modified, missing = remove_words("only", random.Random(3), max_missing=4)
    assert len(missing) <= 1


@pytest.mark.asyncio
async def test_chapter_question_basic() -> None:
    api = FakeApi([make_verse("2:255", words=12)])
    question = await build_chapter_question(make_context(api))

    choice_set = question.choice_set
    assert len(choice_set) == 5
    assert choice_set.correct == "Al-Baqarah"
    assert question.correct_value == choice_set.correct_index
    assert all(name in CHAPTER_NAMES for name in choice_set.options)
    assert [value for _, value in question.options] == [0, 1, 2, 3, 4]
    assert question.options[choice_set.correct_index][0].endswith("Al-Baqarah")
    assert "2:255" in question.reveal
    assert question.images[0][0] == "quiz-verse.png"


@pytest.mark.asyncio
async def test_chapter_question_skips_verses_without_glyphs() -> None:
    blank = Verse("1:1", 1, 1, 1, 1, code_v2="")
    api = FakeApi([blank, make_verse("114:1")])

    question = await build_chapter_question(make_context(api))

    assert question.choice_set.correct == "An-Nas"
    assert api.random_calls == 2


@pytest.mark.asyncio
async def test_chapter_question_advanced_uses_adjacent_window() -> None:
    api = FakeApi([make_verse("57:4")])
    question = await build_chapter_question(make_context(api, tier=CHAPTER_ADVANCED))

    choice_set = question.choice_set
    assert len(choice_set) == 15
    assert choice_set.correct == chapter_name(57)
    numbers = [int(label.split(".")[0]) for label, _ in question.options]
    assert numbers == list(range(numbers[0], numbers[0] + 15))
    assert 57 in numbers


@pytest.mark.asyncio
async def test_order_question_answer_matches_verse_numbers() -> None:
    api = FakeApi([])
    question = await build_order_question(make_context(api, seed=8))

    first_key, second_key = api.fetched_keys
    first_number = int(first_key.split(":")[1])
    second_number = int(second_key.split(":")[1])
    assert first_key.split(":")[0] == second_key.split(":")[0]
    assert first_number != second_number
    assert question.correct_answer is (first_number < second_number)
    assert question.correct_value is question.correct_answer
    assert [value for _, value in question.options] == [True, False]
    assert question.label_for(True).startswith("✅")


@pytest.mark.asyncio
async def test_content_failure_becomes_insufficient_candidates() -> None:
    kind = quiz_kind("ayah-order-quiz")
    api = FakeApi([], chapter_error=True)

    with pytest.raises(InsufficientCandidatesError):
        await kind.build(make_context(api, tier=kind.tier()))


@pytest.mark.asyncio
async def test_missing_words_question() -> None:
    api = FakeApi([make_verse("3:7", words=10), make_verse("3:8", words=20)])
    ctx = make_context(api, seed=4)

    question = await build_missing_words_question(ctx)

    assert api.random_calls == 2
    shown = ctx.canvas.rendered[0]
    assert shown.split().count(MISSING_PLACEHOLDER) == question.correct_answer
    assert [value for _, value in question.options] == [0, 1, 2, 3, 4]
    assert len(question.reveal_images) == (1 if question.correct_answer else 0)


@pytest.mark.asyncio
async def test_missing_words_gives_up_without_long_verses() -> None:
    api = FakeApi([make_verse(f"1:{i}", words=5) for i in range(1, 8)])
    with pytest.raises(InsufficientCandidatesError):
        await build_missing_words_question(make_context(api))


def _translation_api(neighbours: int) -> FakeApi:
    verse = make_verse("20:14", words=30)
    chapter = [make_verse(f"20:{n}") for n in range(1, neighbours + 2)]
    translations = {v.verse_key: f"Translation text of verse number {v.verse_key}" for v in chapter}
    translations["20:14"] = "Indeed, I am Allah. There is no deity except Me"
    randoms = [make_verse(f"30:{n}", words=30) for n in range(1, 11)]
    translations.update({v.verse_key: f"Random translation for verse {v.verse_key}" for v in randoms})
    return FakeApi([verse] + randoms, translations=translations, chapter_verses=chapter)


@pytest.mark.asyncio
async def test_distractors_come_from_the_same_chapter_first() -> None:
    api = _translation_api(neighbours=8)
    verse = make_verse("20:14", words=30)

    found = await gather_translation_distractors(api, verse, "correct", random.Random(2))

    assert len(found) == 4
    assert all("Translation text" in text for text in found)
    assert api.random_calls == 0


@pytest.mark.asyncio
async def test_distractors_fall_back_to_random_verses() -> None:
    api = _translation_api(neighbours=2)
    api.random_verses = api.random_verses[1:]
    verse = make_verse("20:14", words=30)

    found = await gather_translation_distractors(api, verse, "correct", random.Random(2))

    assert len(found) == 4
    assert len(set(found)) == 4
    assert api.random_calls >= 1


@pytest.mark.parametrize("seed", range(6))
@pytest.mark.asyncio
async def test_translation_question(seed: int) -> None:
    api = _translation_api(neighbours=8)
    question = await build_translation_question(make_context(api, seed=seed))

    choice_set = question.choice_set
    assert len(choice_set) == 5
    assert choice_set.options.count(NONE_OF_THE_ABOVE) == 1
    assert len(set(choice_set.options)) == 5
    assert choice_set.correct in ("Indeed, I am Allah. There is no deity except Me", NONE_OF_THE_ABOVE)
    assert [label for label, _ in question.options] == list("ABCDE")


@pytest.mark.asyncio
async def test_translation_question_needs_a_translation() -> None:
    api = _translation_api(neighbours=8)
    del api.translations["20:14"]

    with pytest.raises(InsufficientCandidatesError):
        await build_translation_question(make_context(api))


def test_translation_time_limit_grows_with_content() -> None:
    tier = quiz_kind("quiz-ayah-translation").tier()
    assert tier.time_limit(0) == 45
    assert tier.time_limit(40) == 65


def test_advanced_tier_unlocks_after_five_attempts_today() -> None:
    played_today = datetime(2025, 3, 14, 8, 0, tzinfo=timezone.utc)
    played_before = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)

    assert CHAPTER_BASIC.is_unlocked(UserStats(), TODAY)
    assert not CHAPTER_ADVANCED.is_unlocked(UserStats(attempts_today=4, updated_at=played_today), TODAY)
    assert CHAPTER_ADVANCED.is_unlocked(UserStats(attempts_today=5, updated_at=played_today), TODAY)
    assert not CHAPTER_ADVANCED.is_unlocked(UserStats(attempts_today=9, updated_at=played_before), TODAY)


def test_quiz_kinds_are_registered() -> None:
    assert [k.quiz_type for k in QUIZ_KINDS] == ["chapter", "order", "missing_words", "translation"]
    assert [k.queue_gated for k in QUIZ_KINDS] == [False, False, False, True]
    assert quiz_kind("quran-quiz").tier("advanced") is CHAPTER_ADVANCED

    with pytest.raises(ValueError):
        quiz_kind("quran-quiz").tier("expert")
    with pytest.raises(KeyError):
        quiz_kind("no-such-quiz")
