import asyncio
import logging
import random
from typing import Optional, Set

import discord
from discord import app_commands
from discord.ext import commands

from .canvas import VerseCanvas, default_height
from .choices import clean_html
from .errors import (
    ContentSourceError, GlyphRenderError, InsufficientCandidatesError, PersistenceError, QueueSlotConflictError,
)
from .lifecycle import SessionController, SessionHandle
from .quizzes import QUIZ_KINDS, DifficultyTier, QuizContext, QuizKind
from .quran_api import QuranApiClient
from .registry import QueueGuard
from .scoring import attempts_today
from .session import UserStats, create_session, utcnow
from .storage import QuizStore
from .views import (
    COLOR_CORRECT_EMBED, COLOR_INFO_EMBED, COLOR_TIMEOUT_EMBED, ChapterPageView, DiscordSessionRenderer, QuizView,
    as_files, chapter_page_embed, error_embed, handshake_error, leaderboard_embed, make_embed, question_embed,
    registration_embed, stats_embed, verse_embed,
)

logger = logging.getLogger(__name__)

QUIZ_LABELS = {
    "chapter": "📖 Quran Quiz",
    "order": "🔢 Ayah Order Quiz",
    "missing_words": "🔍 Missing Words Quiz",
    "translation": "🌐 Translation Quiz",
}


class QuizRunner:
    """Runs one quiz command from the slash command to the final result."""

    def __init__(self, store: QuizStore, api: QuranApiClient, canvas: VerseCanvas, guard: QueueGuard,
                 rng: Optional[random.Random] = None):
        self.store = store
        self.api = api
        self.canvas = canvas
        self.guard = guard
        self.rng = rng or random.Random()
        self._handles: Set[SessionHandle] = set()

    @property
    def active_sessions(self) -> int:
        return len(self._handles)

    async def shutdown(self):
        """End every open round as expired before the gateway goes away."""
        for handle in list(self._handles):
            handle.cancel()
            await handle.expire()
        self._handles.clear()

    async def _reply(self, interaction: discord.Interaction, embed: discord.Embed):
        try:
            await interaction.edit_original_response(content=None, embed=embed, view=None, attachments=[])
        except discord.HTTPException as e:
            logger.warning("could not reply to %s: %s", interaction.user.id, e)

    async def _defer(self, interaction: discord.Interaction) -> bool:
        """False when the interaction is already dead and nothing more can be sent."""
        if interaction.response.is_done():
            logger.debug("interaction already acknowledged, skipping defer")
            return True
        try:
            await interaction.response.defer()
        except discord.InteractionResponded:
            logger.debug("interaction already acknowledged, skipping defer")
        except discord.HTTPException as e:
            mapped = handshake_error(e)
            if mapped is None:
                raise
            if mapped.expired:
                logger.warning("interaction of %s expired before the quiz started", interaction.user.id)
                return False
        return True

    async def run(self, interaction: discord.Interaction, kind: QuizKind, difficulty: Optional[str] = None,
                  practice: bool = False):
        if not await self._defer(interaction):
            return

        subject_id = interaction.user.id
        try:
            stats = await self.store.get_user_stats(subject_id, kind.quiz_type)
            if stats is None:
                await self._reply(interaction, registration_embed(kind.command_name))
                return

            tier = kind.tier(difficulty)
            today = utcnow().date()
            if not tier.is_unlocked(stats, today):
                await self._reply(interaction, make_embed(
                    f"**{tier.label}** mode unlocks after {tier.unlock_attempts_today} `/{kind.command_name}` "
                    f"attempts today. You have played {attempts_today(stats, today)} so far.",
                    COLOR_TIMEOUT_EMBED, title="🔒 Locked",
                ))
                return

            if not kind.queue_gated:
                await self._play(interaction, kind, tier, stats, practice)
                return

            try:
                async with self.guard.hold(subject_id):
                    await self._play(interaction, kind, tier, stats, practice)
            except QueueSlotConflictError:
                await self._refuse_second_session(interaction, kind, practice)
        except PersistenceError:
            logger.exception("database failure in /%s for %s", kind.command_name, subject_id)
            await self._reply(interaction, error_embed("Could not reach the quiz database. Please try again later."))
        except Exception:
            logger.exception("unexpected failure in /%s for %s", kind.command_name, subject_id)
            await self._reply(interaction, error_embed(
                f"An error occurred while loading the quiz. Please try again with `/{kind.command_name}`."
            ))

    async def _refuse_second_session(self, interaction: discord.Interaction, kind: QuizKind, practice: bool):
        if practice:
            await self._reply(interaction, error_embed("You already have a quiz running. Finish it first!"))
            return
        new_xp = await self.guard.penalize(interaction.user.id)
        await self._reply(interaction, make_embed(
            f"You already have a quiz running. Finish it before starting another `/{kind.command_name}`.\n\n"
            f"**-{self.guard.penalty_xp} XP** • Total: {new_xp} XP",
            COLOR_TIMEOUT_EMBED, title="⏳ Quiz Already Active", footer=None,
        ))

    async def _play(self, interaction: discord.Interaction, kind: QuizKind, tier: DifficultyTier,
                    stats: UserStats, practice: bool):
        today = utcnow().date()
        ctx = QuizContext(api=self.api, canvas=self.canvas, rng=self.rng, stats=stats, tier=tier, today=today)
        try:
            question = await kind.build(ctx)
        except InsufficientCandidatesError as e:
            logger.warning("/%s could not build a question: %s", kind.command_name, e)
            await self._reply(interaction, error_embed(
                f"Failed to get a suitable quiz question. Please try again with `/{kind.command_name}`."
            ))
            return
        except GlyphRenderError:
            logger.exception("/%s could not draw the verse", kind.command_name)
            await self._reply(interaction, error_embed("Could not draw the verse for this question. Please try again."))
            return

        time_limit = tier.time_limit(question.content_length)
        session = create_session(
            interaction.user.id,
            question.prompt,
            question.correct_answer,
            tier.scoring,
            time_limit,
            question.choice_set,
            quiz_type=kind.quiz_type,
            stats=stats,
            practice=practice,
        )
        view = QuizView(question, tier.controls, kind.command_name)
        renderer = DiscordSessionRenderer(interaction, kind, question, view)
        controller = SessionController(session, store=self.store, renderer=renderer)
        view.controller = controller

        embed = question_embed(kind, tier, question, stats, time_limit, practice, attempts_today(stats, today))
        try:
            await interaction.edit_original_response(embed=embed, view=view, attachments=as_files(question.images))
        except discord.HTTPException as e:
            mapped = handshake_error(e)
            if mapped is not None and mapped.expired:
                logger.warning("interaction of %s expired before the question was shown", interaction.user.id)
                return
            raise

        handle = controller.start()
        self._handles.add(handle)
        try:
            result = await controller.wait()
        finally:
            self._handles.discard(handle)
        logger.info("/%s for %s ended %s", kind.command_name, interaction.user.id, result.status.value)


class VerseReader:
    """/random-ayah and /chapter-verses: read-only content, no XP involved."""

    def __init__(self, api: QuranApiClient, canvas: VerseCanvas):
        self.api = api
        self.canvas = canvas

    async def _translation(self, verse_key: str) -> Optional[str]:
        text = await self.api.fetch_translation(verse_key)
        return clean_html(text) if text else None

    async def random_ayah(self, interaction: discord.Interaction, include_translation: bool = True, **filters):
        await interaction.response.defer()
        try:
            verse = await self.api.fetch_random_verse(**filters)
            translation = await self._translation(verse.verse_key) if include_translation else None
        except ContentSourceError:
            logger.exception("could not fetch a random verse (%s)", filters)
            await interaction.edit_original_response(
                embed=error_embed("Failed to fetch a random ayah. Please try again later.")
            )
            return

        files = []
        try:
            image = await asyncio.to_thread(
                self.canvas.render_verse, verse.code_v2, verse.page_number, height=default_height(verse.code_v2)
            )
            files = [("quran.png", image)]
        except GlyphRenderError:
            logger.exception("could not draw %s", verse.verse_key)

        embed = verse_embed(verse, translation, image_name=files[0][0] if files else None)
        await interaction.edit_original_response(embed=embed, attachments=as_files(files))

    async def chapter_verses(self, interaction: discord.Interaction, chapter: int, page: int = 1,
                             per_page: int = 5, include_translation: bool = False):
        await interaction.response.defer()
        try:
            verse_page = await self.api.fetch_chapter_page(chapter, page, per_page)
            translations = {}
            if include_translation:
                texts = await asyncio.gather(*(self._translation(v.verse_key) for v in verse_page.verses))
                translations = {v.verse_key: t for v, t in zip(verse_page.verses, texts) if t}
        except ContentSourceError:
            logger.exception("could not fetch chapter %s page %s", chapter, page)
            await interaction.edit_original_response(embed=error_embed(
                f"Sorry, I couldn't fetch verses from chapter {chapter}. Please try again later."
            ), view=None)
            return

        if not verse_page.verses:
            await interaction.edit_original_response(
                embed=error_embed(f"No verses found for chapter {chapter}, page {page}."), view=None
            )
            return

        async def goto(button_interaction: discord.Interaction, target: int):
            await self.chapter_verses(button_interaction, chapter, target, per_page, include_translation)

        view = ChapterPageView(verse_page, goto) if verse_page.total_pages > 1 else None
        await interaction.edit_original_response(
            embed=chapter_page_embed(chapter, verse_page, translations), view=view
        )


# ------------------ slash commands ------------------

def make_quiz_command(runner: QuizRunner, kind: QuizKind) -> app_commands.Command:
    """One slash command per quiz kind; a difficulty option only where the kind has more than one tier."""
    if len(kind.tiers) > 1:
        @app_commands.command(name=kind.command_name, description=kind.description)
        @app_commands.describe(difficulty="Which difficulty to play", practice="Play without changing XP or stats")
        @app_commands.choices(difficulty=[app_commands.Choice(name=t.label, value=t.name) for t in kind.tiers])
        async def quiz_command(interaction: discord.Interaction,
                               difficulty: Optional[app_commands.Choice[str]] = None,
                               practice: bool = False):
            await runner.run(interaction, kind, difficulty.value if difficulty else None, practice)
    else:
        @app_commands.command(name=kind.command_name, description=kind.description)
        @app_commands.describe(practice="Play without changing XP or stats")
        async def quiz_command(interaction: discord.Interaction, practice: bool = False):
            await runner.run(interaction, kind, None, practice)

    return quiz_command


def setup_commands(bot: commands.Bot, runner: QuizRunner):
    store = runner.store

    for kind in QUIZ_KINDS:
        bot.tree.add_command(make_quiz_command(runner, kind))

    @bot.tree.command(name="register", description="Create your quiz account and start earning XP")
    async def register_cmd(interaction: discord.Interaction):
        try:
            created = await store.register_user(interaction.user.id)
        except PersistenceError:
            logger.exception("could not register %s", interaction.user.id)
            await interaction.response.send_message(
                embed=error_embed("Registration failed. Please try again later."), ephemeral=True
            )
            return

        if created:
            logger.info("registered user %s", interaction.user.id)
            embed = make_embed(
                f"Welcome {interaction.user.mention}! You can now play every quiz and earn XP.",
                COLOR_CORRECT_EMBED, title="✅ Registered",
                fields=[("🎮 Quizzes", "\n".join(f"`/{k.command_name}`: {k.description}" for k in QUIZ_KINDS))],
            )
        else:
            embed = make_embed("You are already registered.", COLOR_INFO_EMBED, footer=None)
        await interaction.response.send_message(embed=embed, ephemeral=not created)

    @bot.tree.command(name="quiz-stats", description="Show quiz statistics")
    @app_commands.describe(member="Whose stats to show (default: you)")
    async def quiz_stats_cmd(interaction: discord.Interaction, member: Optional[discord.Member] = None):
        target = member or interaction.user
        try:
            xp = await store.get_xp(target.id)
            stats_by_type = await store.get_all_stats(target.id) if xp is not None else {}
        except PersistenceError:
            logger.exception("could not read stats of %s", target.id)
            await interaction.response.send_message(
                embed=error_embed("Could not load stats right now."), ephemeral=True
            )
            return

        if xp is None:
            await interaction.response.send_message(embed=registration_embed("quiz-stats"), ephemeral=True)
            return
        await interaction.response.send_message(embed=stats_embed(target, xp, stats_by_type, QUIZ_LABELS))

    @bot.tree.command(name="leaderboard", description="Top players by XP")
    @app_commands.describe(limit="How many players to show (1-25)")
    async def leaderboard_cmd(interaction: discord.Interaction, limit: app_commands.Range[int, 1, 25] = 10):
        try:
            rows = await store.top_users(limit)
        except PersistenceError:
            logger.exception("could not read leaderboard")
            await interaction.response.send_message(
                embed=error_embed("Could not load the leaderboard right now."), ephemeral=True
            )
            return
        await interaction.response.send_message(embed=leaderboard_embed(interaction.guild, rows))

    reader = VerseReader(runner.api, runner.canvas)

    @bot.tree.command(name="random-ayah", description="Get a random verse (ayah) from the Quran")
    @app_commands.describe(
        chapter="Only from this chapter (1-114)",
        page="Only from this mushaf page (1-604)",
        juz="Only from this juz (1-30)",
        hizb="Only from this hizb (1-60)",
        manzil="Only from this manzil (1-7)",
        translation="Include the English translation",
    )
    async def random_ayah_cmd(interaction: discord.Interaction,
                              chapter: Optional[app_commands.Range[int, 1, 114]] = None,
                              page: Optional[app_commands.Range[int, 1, 604]] = None,
                              juz: Optional[app_commands.Range[int, 1, 30]] = None,
                              hizb: Optional[app_commands.Range[int, 1, 60]] = None,
                              manzil: Optional[app_commands.Range[int, 1, 7]] = None,
                              translation: bool = True):
        await reader.random_ayah(
            interaction, translation,
            chapter_number=chapter, page_number=page, juz_number=juz, hizb_number=hizb, manzil_number=manzil,
        )

    @bot.tree.command(name="chapter-verses", description="Read the verses of a chapter, a page at a time")
    @app_commands.describe(
        chapter="Chapter number (1-114)",
        page="Page of verses to show",
        per_page="Verses per page (1-10)",
        translation="Include the English translation",
    )
    async def chapter_verses_cmd(interaction: discord.Interaction,
                                 chapter: app_commands.Range[int, 1, 114],
                                 page: app_commands.Range[int, 1, 286] = 1,
                                 per_page: app_commands.Range[int, 1, 10] = 5,
                                 translation: bool = False):
        await reader.chapter_verses(interaction, chapter, page, per_page, translation)
