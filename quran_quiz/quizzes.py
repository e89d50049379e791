"""
The four quiz kinds and the builders that turn API content into a question.

A quiz kind is one slash command: a name, its difficulty tiers and a builder.
Builders only gather material and assemble the question; the round itself is
run by `lifecycle.SessionController`.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .canvas import VerseCanvas, default_height
from .chapters import CHAPTER_COUNT, CHAPTER_NAMES, chapter_name, random_chapter_for_order_quiz, verse_count
from .choices import (
    ChoiceSet, adjacent_window, build_choice_set, build_none_of_the_above_set, clean_html,
    collect_distinct, first_matching,
)
from .config import ADVANCED_UNLOCK_ATTEMPTS, ADVANCED_WINDOW_SIZE, DEFAULT_TRANSLATION_ID, MAX_CONTENT_PULLS
from .errors import ContentSourceError, InsufficientCandidatesError
from .quran_api import QuranApiClient, Verse
from .scoring import attempts_today
from .session import ScoringTable, UserStats

logger = logging.getLogger(__name__)

LETTERS = "ABCDE"

MISSING_PLACEHOLDER = "___"
MAX_MISSING_WORDS = 4
MIN_MISSING_QUIZ_WORDS = 13
MIN_TRANSLATION_GLYPH_LENGTH = 20
SAME_CHAPTER_DISTRACTOR_PULLS = 6
TRANSLATION_DISTRACTORS = 4
# daily counter used for shortening when the user has not played today
FALLBACK_ATTEMPTS_TODAY = 10


class Controls(Enum):
    BUTTONS = "buttons"
    LETTERS = "letters"
    TRUE_FALSE = "true_false"
    SELECT = "select"


@dataclass(frozen=True)
class DifficultyTier:
    name: str
    label: str
    scoring: ScoringTable
    base_seconds: float
    seconds_per_char: float = 0
    unlock_attempts_today: int = 0
    controls: Controls = Controls.BUTTONS

    def time_limit(self, content_length: int = 0) -> float:
        return self.base_seconds + self.seconds_per_char * content_length

    def is_unlocked(self, stats: UserStats, today: date) -> bool:
        return attempts_today(stats, today) >= self.unlock_attempts_today


@dataclass
class Question:
    title: str
    prompt: str
    # (label, value) per control; the value is what the controller receives
    options: List[Tuple[str, Any]]
    correct_answer: Any
    choice_set: Optional[ChoiceSet] = None
    fields: List[Tuple[str, str]] = field(default_factory=list)
    images: List[Tuple[str, bytes]] = field(default_factory=list)
    reveal: str = ""
    reveal_images: List[Tuple[str, bytes]] = field(default_factory=list)
    content_length: int = 0

    @property
    def correct_value(self) -> Any:
        if self.choice_set is not None:
            return self.choice_set.correct_index
        return self.correct_answer

    def label_for(self, value: Any) -> str:
        for label, option_value in self.options:
            if option_value == value:
                return label
        return str(value)


@dataclass
class QuizContext:
    api: QuranApiClient
    canvas: VerseCanvas
    rng: random.Random
    stats: UserStats
    tier: DifficultyTier
    today: date


Builder = Callable[[QuizContext], Awaitable[Question]]


@dataclass(frozen=True)
class QuizKind:
    command_name: str
    description: str
    quiz_type: str
    tiers: Tuple[DifficultyTier, ...]
    builder: Builder
    queue_gated: bool = False

    def tier(self, name: Optional[str] = None) -> DifficultyTier:
        if name is None:
            return self.tiers[0]
        for tier in self.tiers:
            if tier.name == name:
                return tier
        raise ValueError(f"{self.command_name} has no difficulty {name!r}")

    async def build(self, ctx: QuizContext) -> Question:
        try:
            return await self.builder(ctx)
        except ContentSourceError as e:
            raise InsufficientCandidatesError(f"content source failed: {e}") from e


# ------------------ helpers ------------------

async def _render(canvas: VerseCanvas, glyph: str, page: int, height: Optional[int] = None) -> bytes:
    return await asyncio.to_thread(canvas.render_verse, glyph, page, height=height)


def _location_fields(verse: Verse) -> List[Tuple[str, str]]:
    return [("📍 Location", f"Page {verse.page_number} • Juz {verse.juz_number}")]


def remove_words(glyph: str, rng: random.Random, max_missing: int = MAX_MISSING_WORDS) -> Tuple[str, List[str]]:
    """
    Blank out between 0 and max_missing random words.
    Returns the modified text and the removed words in reading order.
    """
    words = glyph.split()
    count = min(rng.randrange(max_missing + 1), len(words))
    if count == 0:
        return glyph, []

    indices = sorted(rng.sample(range(len(words)), count))
    missing = [words[i] for i in indices]
    for i in indices:
        words[i] = MISSING_PLACEHOLDER
    return " ".join(words), missing


# ------------------ chapter of a verse ------------------

async def build_chapter_question(ctx: QuizContext) -> Question:
    verse = await first_matching(ctx.api.fetch_random_verse, lambda v: bool(v.code_v2))
    correct_chapter = verse.chapter_id
    image = await _render(ctx.canvas, verse.glyph, verse.page_number, default_height(verse.code_v2))

    if ctx.tier.controls is Controls.SELECT:
        window = adjacent_window(correct_chapter, CHAPTER_COUNT, ADVANCED_WINDOW_SIZE, ctx.rng)
        choice_set = ChoiceSet(
            options=tuple(chapter_name(c) for c in window),
            correct_index=window.index(correct_chapter),
        )
        options = [(f"{c}. {chapter_name(c)}", i) for i, c in enumerate(window)]
        prompt = "**Which chapter is this verse from?**\n*Pick the chapter from the menu below.*"
    else:
        choice_set = build_choice_set(chapter_name(correct_chapter), CHAPTER_NAMES, 5, ctx.rng)
        options = [(f"{LETTERS[i]}. {name}", i) for i, name in enumerate(choice_set.options)]
        prompt = "**Which chapter is this verse from?**"

    return Question(
        title="📖 Quran Quiz",
        prompt=prompt,
        options=options,
        correct_answer=choice_set.correct,
        choice_set=choice_set,
        fields=_location_fields(verse),
        images=[("quiz-verse.png", image)],
        reveal=f"This verse is **{verse.verse_key}**, from **{chapter_name(correct_chapter)}**.",
        content_length=len(verse.code_v2),
    )


# ------------------ order of two verses ------------------

async def build_order_question(ctx: QuizContext) -> Question:
    chapter_id = random_chapter_for_order_quiz(ctx.rng)
    first_number, second_number = ctx.rng.sample(range(1, verse_count(chapter_id) + 1), 2)

    chapter, first, second = await asyncio.gather(
        ctx.api.fetch_chapter(chapter_id),
        ctx.api.fetch_verse(f"{chapter_id}:{first_number}"),
        ctx.api.fetch_verse(f"{chapter_id}:{second_number}"),
    )
    image = await asyncio.to_thread(
        ctx.canvas.render_verse_pair,
        (first.glyph, first.page_number),
        (second.glyph, second.page_number),
        chapter.name_arabic or None,
    )

    first_before = first_number < second_number
    relation = "comes before" if first_before else "comes after"
    return Question(
        title="🔢 Ayah Order Quiz",
        prompt=(f"Both verses are from **{chapter.name_simple or chapter_name(chapter_id)}**.\n"
                "**Does the FIRST verse (top) come BEFORE the SECOND verse (bottom)?**"),
        options=[("✅ TRUE - First comes BEFORE second", True), ("❌ FALSE - First comes AFTER second", False)],
        correct_answer=first_before,
        fields=[("📖 Chapter", f"{chapter.name_arabic} • {chapter.verses_count} verses")],
        images=[("quiz-verses.png", image)],
        reveal=(f"The first verse is **{first.verse_key}** and the second is **{second.verse_key}**, "
                f"so the first {relation} the second."),
        content_length=len(first.code_v2) + len(second.code_v2),
    )


# ------------------ missing words ------------------

async def build_missing_words_question(ctx: QuizContext) -> Question:
    verse = await first_matching(
        ctx.api.fetch_random_verse,
        lambda v: v.word_count > MIN_MISSING_QUIZ_WORDS,
    )
    modified, missing = remove_words(verse.glyph, ctx.rng)
    image = await _render(ctx.canvas, modified, verse.page_number, default_height(modified))

    reveal_images = []
    if missing:
        missing_text = " ".join(missing)
        reveal_images.append(
            ("missing-words-answer.png",
             await _render(ctx.canvas, missing_text, verse.page_number, default_height(missing_text)))
        )
        reveal = f"**{len(missing)}** word(s) were missing (shown below). The verse is **{verse.verse_key}**."
    else:
        reveal = f"Nothing was missing, the verse **{verse.verse_key}** was complete."

    return Question(
        title="🔍 Missing Words Count Quiz",
        prompt="**How many words are missing from this verse?**\n*Look at the verse and count the gaps.*",
        options=[(f"{n} missing words", n) for n in range(MAX_MISSING_WORDS + 1)],
        correct_answer=len(missing),
        fields=[("📖 Chapter Info", f"{chapter_name(verse.chapter_id)} • Verse {verse.verse_number}")]
        + _location_fields(verse),
        images=[("missing-words-quiz.png", image)],
        reveal=reveal,
        reveal_images=reveal_images,
        content_length=len(modified),
    )


# ------------------ translation ------------------

async def _translation_text(api: QuranApiClient, verse_key: str) -> Optional[str]:
    text = await api.fetch_translation(verse_key, DEFAULT_TRANSLATION_ID)
    return clean_html(text) if text else None


async def gather_translation_distractors(api: QuranApiClient, verse: Verse, correct: str,
                                         rng: random.Random) -> List[str]:
    """Wrong translations, from the same chapter first and random verses after that."""
    try:
        chapter_verses = await api.fetch_chapter_verses(verse.chapter_id)
    except ContentSourceError as e:
        logger.warning("could not list chapter %s for distractors: %s", verse.chapter_id, e)
        chapter_verses = []

    neighbours = [v.verse_key for v in chapter_verses if v.verse_key != verse.verse_key]
    rng.shuffle(neighbours)
    pending = iter(neighbours[:SAME_CHAPTER_DISTRACTOR_PULLS])

    async def from_chapter():
        key = next(pending, None)
        return await _translation_text(api, key) if key else None

    found = await collect_distinct(from_chapter, TRANSLATION_DISTRACTORS, SAME_CHAPTER_DISTRACTOR_PULLS,
                                   exclude=[correct])
    if len(found) >= TRANSLATION_DISTRACTORS:
        return found

    async def from_anywhere():
        other = await api.fetch_random_verse()
        if other.verse_key == verse.verse_key:
            return None
        return await _translation_text(api, other.verse_key)

    found += await collect_distinct(from_anywhere, TRANSLATION_DISTRACTORS - len(found), MAX_CONTENT_PULLS,
                                    exclude=[correct, *found])
    return found


async def build_translation_question(ctx: QuizContext) -> Question:
    verse = await first_matching(
        ctx.api.fetch_random_verse,
        lambda v: len(v.code_v2) > MIN_TRANSLATION_GLYPH_LENGTH,
    )
    correct = await _translation_text(ctx.api, verse.verse_key)
    if not correct:
        raise InsufficientCandidatesError(f"no translation for {verse.verse_key}")

    distractors = await gather_translation_distractors(ctx.api, verse, correct, ctx.rng)
    choice_set = build_none_of_the_above_set(
        correct,
        distractors,
        ctx.rng,
        attempts_today=attempts_today(ctx.stats, ctx.today) or FALLBACK_ATTEMPTS_TODAY,
    )
    image = await _render(ctx.canvas, verse.glyph, verse.page_number, default_height(verse.code_v2))

    listed = "\n\n".join(f"> **{LETTERS[i]}.** {text}" for i, text in enumerate(choice_set.options))
    return Question(
        title="🌐 Translation Quiz",
        prompt=f"**Which translation matches this verse?**\n\n{listed}",
        options=[(LETTERS[i], i) for i in range(len(choice_set))],
        correct_answer=choice_set.correct,
        choice_set=choice_set,
        fields=_location_fields(verse),
        images=[("translation-quiz-verse.png", image)],
        reveal=f"**{verse.verse_key}** (Sahih International):\n> {correct}",
        content_length=len(verse.code_v2),
    )


# ------------------ registry of kinds ------------------

CHAPTER_BASIC = DifficultyTier(
    name="basic",
    label="Basic",
    scoring=ScoringTable(correct=10, wrong=2, timeout=1),
    base_seconds=30,
    controls=Controls.LETTERS,
)
CHAPTER_ADVANCED = DifficultyTier(
    name="advanced",
    label="Advanced",
    scoring=ScoringTable(correct=15, wrong=7, timeout=3),
    base_seconds=45,
    unlock_attempts_today=ADVANCED_UNLOCK_ATTEMPTS,
    controls=Controls.SELECT,
)

QUIZ_KINDS: Tuple[QuizKind, ...] = (
    QuizKind(
        command_name="quran-quiz",
        description="Guess which chapter a verse is from",
        quiz_type="chapter",
        tiers=(CHAPTER_BASIC, CHAPTER_ADVANCED),
        builder=build_chapter_question,
    ),
    QuizKind(
        command_name="ayah-order-quiz",
        description="Does the first verse come before the second?",
        quiz_type="order",
        tiers=(DifficultyTier("standard", "Standard", ScoringTable(correct=10, wrong=10, timeout=1),
                              base_seconds=45, controls=Controls.TRUE_FALSE),),
        builder=build_order_question,
    ),
    QuizKind(
        command_name="missing-ayah-words-quiz",
        description="Count the words missing from a verse",
        quiz_type="missing_words",
        tiers=(DifficultyTier("standard", "Standard", ScoringTable(correct=10, wrong=2, timeout=1),
                              base_seconds=60, controls=Controls.BUTTONS),),
        builder=build_missing_words_question,
    ),
    QuizKind(
        command_name="quiz-ayah-translation",
        description="Pick the English translation of a verse",
        quiz_type="translation",
        tiers=(DifficultyTier("standard", "Standard", ScoringTable(correct=6, wrong=3, timeout=1),
                              base_seconds=45, seconds_per_char=0.5, controls=Controls.LETTERS),),
        builder=build_translation_question,
        queue_gated=True,
    ),
)


def quiz_kind(command_name: str) -> QuizKind:
    for kind in QUIZ_KINDS:
        if kind.command_name == command_name:
            return kind
    raise KeyError(command_name)
