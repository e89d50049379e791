from __future__ import annotations

import asyncio
import random
from types import SimpleNamespace

import pytest

from quran_quiz.commands import QuizRunner, VerseReader
from quran_quiz.quizzes import quiz_kind
from quran_quiz.registry import QueueGuard
from tests.helpers import FakeApi, FakeCanvas, make_verse

USER_ID = 77


class FakeResponse:
    def __init__(self) -> None:
        self.deferred = False

    def is_done(self) -> bool:
        return self.deferred

    async def defer(self) -> None:
        self.deferred = True


class FakeInteraction:
    def __init__(self, user_id: int = USER_ID) -> None:
        self.user = SimpleNamespace(id=user_id, mention=f"<@{user_id}>")
        self.response = FakeResponse()
        self.edits = []

    async def edit_original_response(self, **kwargs) -> None:
        self.edits.append(kwargs)


def make_runner(store, api=None) -> QuizRunner:
    return QuizRunner(store, api or FakeApi([]), FakeCanvas(), QueueGuard(store), rng=random.Random(5))


@pytest.mark.asyncio
async def test_unregistered_user_is_asked_to_register(store) -> None:
    interaction = FakeInteraction()

    await make_runner(store).run(interaction, quiz_kind("quran-quiz"))

    assert interaction.response.deferred
    assert interaction.edits[-1]["embed"].title == "🚫 Registration Required"


@pytest.mark.asyncio
async def test_advanced_tier_is_locked_for_new_players(store) -> None:
    await store.register_user(USER_ID)
    interaction = FakeInteraction()

    await make_runner(store).run(interaction, quiz_kind("quran-quiz"), "advanced")

    assert interaction.edits[-1]["embed"].title == "🔒 Locked"


@pytest.mark.asyncio
async def test_second_translation_quiz_is_refused_with_penalty(store) -> None:
    await store.register_user(USER_ID)
    await store.db.execute("UPDATE users SET experience = 20 WHERE discord_id = ?", (USER_ID,))
    await store.db.commit()
    await store.acquire_queue_slot(USER_ID)
    interaction = FakeInteraction()

    await make_runner(store).run(interaction, quiz_kind("quiz-ayah-translation"))

    assert interaction.edits[-1]["embed"].title == "⏳ Quiz Already Active"
    assert await store.get_xp(USER_ID) == 17
    assert await store.has_queue_slot(USER_ID)


@pytest.mark.asyncio
async def test_refusal_in_practice_costs_nothing(store) -> None:
    await store.register_user(USER_ID)
    await store.acquire_queue_slot(USER_ID)
    interaction = FakeInteraction()

    await make_runner(store).run(interaction, quiz_kind("quiz-ayah-translation"), practice=True)

    assert "already have a quiz running" in interaction.edits[-1]["embed"].description
    assert await store.get_xp(USER_ID) == 0


@pytest.mark.asyncio
async def test_failed_question_build_releases_the_slot(store) -> None:
    await store.register_user(USER_ID)
    interaction = FakeInteraction()

    await make_runner(store).run(interaction, quiz_kind("quiz-ayah-translation"))

    assert "Failed to get a suitable quiz question" in interaction.edits[-1]["embed"].description
    assert not await store.has_queue_slot(USER_ID)


@pytest.mark.asyncio
async def test_full_round_saves_progress(store) -> None:
    await store.register_user(USER_ID)
    runner = make_runner(store, FakeApi([make_verse("2:255", words=12)]))
    interaction = FakeInteraction()

    task = asyncio.create_task(runner.run(interaction, quiz_kind("quran-quiz")))
    for _ in range(100):
        if interaction.edits:
            break
        await asyncio.sleep(0.01)

    view = interaction.edits[0]["view"]
    assert runner.active_sessions == 1
    assert await view.controller.on_response(USER_ID, view.question.correct_value)
    await asyncio.wait_for(task, timeout=2)

    assert runner.active_sessions == 0
    assert interaction.edits[-1]["embed"].title == "🎉 Correct!"
    assert await store.get_xp(USER_ID) == 10
    stats = await store.get_user_stats(USER_ID, "chapter")
    assert stats.streak == 1
    assert stats.attempts_today == 1


@pytest.mark.asyncio
async def test_shutdown_expires_open_rounds_without_scoring(store) -> None:
    await store.register_user(USER_ID)
    runner = make_runner(store, FakeApi([make_verse("2:255", words=12)]))
    interaction = FakeInteraction()

    task = asyncio.create_task(runner.run(interaction, quiz_kind("quran-quiz")))
    for _ in range(100):
        if interaction.edits:
            break
        await asyncio.sleep(0.01)

    await runner.shutdown()
    await asyncio.wait_for(task, timeout=2)

    assert runner.active_sessions == 0
    assert interaction.edits[-1]["embed"].title == "⌛ Quiz Expired"
    assert await store.get_xp(USER_ID) == 0


@pytest.mark.asyncio
async def test_random_ayah_passes_filters_and_shows_the_verse() -> None:
    api = FakeApi([make_verse("2:255")], translations={"2:255": "Allah<sup foot_note=1>1</sup> - there is no deity"})
    canvas = FakeCanvas()
    interaction = FakeInteraction()

    await VerseReader(api, canvas).random_ayah(interaction, True, chapter_number=2, juz_number=None)

    assert api.random_filters == [{"chapter_number": 2, "juz_number": None}]
    assert canvas.rendered == [make_verse("2:255").code_v2]
    edit = interaction.edits[-1]
    embed = edit["embed"]
    assert embed.title == "📖 Quran 2:255"
    assert embed.fields[0].value == "Al-Baqarah (2)"
    translation = next(f.value for f in embed.fields if f.name == "🌍 Translation")
    assert "<sup" not in translation
    assert translation.startswith("Allah")
    assert [f.filename for f in edit["attachments"]] == ["quran.png"]


@pytest.mark.asyncio
async def test_random_ayah_reports_content_failures() -> None:
    interaction = FakeInteraction()

    await VerseReader(FakeApi([]), FakeCanvas()).random_ayah(interaction, page_number=7)

    assert "Failed to fetch a random ayah" in interaction.edits[-1]["embed"].description


@pytest.mark.asyncio
async def test_chapter_verses_pages_through_a_chapter() -> None:
    verses = [make_verse(f"18:{n}") for n in range(1, 13)]
    api = FakeApi([], translations={v.verse_key: f"meaning of {v.verse_key}" for v in verses},
                  chapter_verses=verses)
    reader = VerseReader(api, FakeCanvas())
    interaction = FakeInteraction()

    await reader.chapter_verses(interaction, 18, page=2, per_page=5, include_translation=True)

    edit = interaction.edits[-1]
    embed = edit["embed"]
    assert embed.title == "📖 Al-Kahf"
    assert embed.footer.text == "Page 2 of 3 • 12 total verses"
    assert "**18:6**" in embed.description
    assert "*meaning of 18:10*" in embed.description
    assert "18:11" not in embed.description
    assert [b.label for b in edit["view"].children] == ["Previous", "Next"]

    next_press = FakeInteraction()
    await edit["view"].children[1].callback(next_press)

    last = next_press.edits[-1]
    assert last["embed"].footer.text == "Page 3 of 3 • 12 total verses"
    assert [b.label for b in last["view"].children] == ["Previous"]


@pytest.mark.asyncio
async def test_chapter_verses_past_the_end() -> None:
    api = FakeApi([], chapter_verses=[make_verse("112:1"), make_verse("112:2")])
    interaction = FakeInteraction()

    await VerseReader(api, FakeCanvas()).chapter_verses(interaction, 112, page=4)

    assert "No verses found for chapter 112, page 4." in interaction.edits[-1]["embed"].description
    assert interaction.edits[-1]["view"] is None
