import io
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import discord

from .chapters import chapter_name
from .errors import HandshakeFailure, PlatformHandshakeError
from .lifecycle import SessionController, SessionResult
from .quizzes import Controls, DifficultyTier, Question, QuizKind
from .quran_api import Verse, VersePage
from .scoring import level_for_xp
from .session import Outcome, SessionStatus, UserStats

logger = logging.getLogger(__name__)

# ------------------ colours ------------------
COLOR_QUESTION_EMBED = "#4DABF7"
COLOR_CORRECT_EMBED = "#51CF66"
COLOR_WRONG_EMBED = "#FF6B6B"
COLOR_TIMEOUT_EMBED = "#FFA500"
COLOR_INFO_EMBED = "#9C88FF"
COLOR_LEADERBOARD_EMBED = "#FFD700"
COLOR_VERSE_EMBED = "#00AE86"
COLOR_CHAPTER_EMBED = "#2E8B57"

EMBED_FOOTER = "Play again to earn more XP!"

# Discord JSON error codes
UNKNOWN_INTERACTION = 10062
INVALID_WEBHOOK_TOKEN = 50027
INTERACTION_ALREADY_ACKNOWLEDGED = 40060

MAX_BUTTON_LABEL = 80
MAX_FIELD_VALUE = 1024
# the description limit is 4096; leave room for the truncation note
MAX_PAGE_TEXT = 3500


def color_from_hex(hex_str: str) -> discord.Color:
    return discord.Color.from_str(hex_str)


def make_embed(body: str, color_hex: str, title: Optional[str] = None,
               fields: Sequence[Tuple[str, str]] = (), footer: Optional[str] = EMBED_FOOTER) -> discord.Embed:
    embed = discord.Embed(title=title, description=body, color=color_from_hex(color_hex))
    for name, value in fields:
        embed.add_field(name=name, value=value[:MAX_FIELD_VALUE], inline=len(value) < 60)
    if footer:
        embed.set_footer(text=footer)
    return embed


def as_files(images: Sequence[Tuple[str, bytes]]) -> List[discord.File]:
    return [discord.File(io.BytesIO(data), filename=name) for name, data in images]


# ------------------ platform errors ------------------

def handshake_error(error: discord.HTTPException) -> Optional[PlatformHandshakeError]:
    """Map the Discord errors the round can survive to PlatformHandshakeError, None otherwise."""
    if error.code in (UNKNOWN_INTERACTION, INVALID_WEBHOOK_TOKEN):
        return PlatformHandshakeError(HandshakeFailure.TOKEN_EXPIRED, error.text or str(error))
    if error.code == INTERACTION_ALREADY_ACKNOWLEDGED:
        return PlatformHandshakeError(HandshakeFailure.ALREADY_ACKNOWLEDGED, error.text or str(error))
    return None


async def acknowledge(interaction: discord.Interaction):
    try:
        await interaction.response.defer()
    except discord.InteractionResponded as e:
        raise PlatformHandshakeError(HandshakeFailure.DOUBLE_ACK, str(e)) from e
    except discord.HTTPException as e:
        mapped = handshake_error(e)
        if mapped is None:
            raise
        raise mapped from e


# ------------------ question view ------------------

class QuizView(discord.ui.View):
    """
    The answer controls under a question. Every press is forwarded to the
    session controller; only the owner's first press counts.
    """

    def __init__(self, question: Question, controls: Controls, command_name: str = ""):
        super().__init__(timeout=None)
        self.question = question
        self.controls = controls
        self.command_name = command_name
        self.controller: Optional[SessionController] = None
        self._values: Dict[discord.ui.Item, Any] = {}

        if controls is Controls.SELECT:
            select = discord.ui.Select(
                placeholder="Choose the chapter…",
                options=[
                    discord.SelectOption(label=label[:100], value=str(i))
                    for i, (label, _) in enumerate(question.options)
                ],
                custom_id="answer_select",
            )
            select.callback = self.select_callback
            self.add_item(select)
            return

        for i, (label, value) in enumerate(question.options):
            if controls is Controls.TRUE_FALSE:
                style = discord.ButtonStyle.success if value else discord.ButtonStyle.danger
            else:
                style = discord.ButtonStyle.primary
            button = discord.ui.Button(label=label[:MAX_BUTTON_LABEL], style=style, custom_id=f"answer_{i}")
            button.callback = self.make_callback(value)
            self._values[button] = value
            self.add_item(button)

    def make_callback(self, value: Any):
        async def callback(interaction: discord.Interaction):
            await self.forward(interaction, value)

        return callback

    async def select_callback(self, interaction: discord.Interaction):
        select = self.children[0]
        picked = int(select.values[0])
        await self.forward(interaction, self.question.options[picked][1])

    async def forward(self, interaction: discord.Interaction, value: Any):
        controller = self.controller
        if controller is None or controller.claimed:
            await self._notice(interaction, "This question is already finished.")
            return
        if not controller.accepts(interaction.user.id):
            await self._notice(interaction, f"⛔ This quiz belongs to someone else. Start your own with `/{self.command_name}`.")
            return
        await controller.on_response(interaction.user.id, value, acknowledge=lambda: acknowledge(interaction))

    @staticmethod
    async def _notice(interaction: discord.Interaction, text: str):
        try:
            await interaction.response.send_message(text, ephemeral=True)
        except discord.HTTPException as e:
            logger.warning("could not send notice to %s: %s", interaction.user.id, e)

    def finalize(self, result: SessionResult):
        """Disable every control; colour the correct answer green and a wrong pick red."""
        correct_value = self.question.correct_value
        for item in self.children:
            item.disabled = True
            if isinstance(item, discord.ui.Select):
                item.placeholder = f"Answer: {self.question.label_for(correct_value)}"[:150]
                continue
            value = self._values.get(item)
            if value == correct_value:
                item.style = discord.ButtonStyle.success
            elif result.chosen is not None and value == result.chosen and not result.correct:
                item.style = discord.ButtonStyle.danger
            else:
                item.style = discord.ButtonStyle.secondary
        self.stop()


class ChapterPageView(discord.ui.View):
    """Previous / Next buttons under a /chapter-verses page."""

    def __init__(self, page: VersePage, goto: Callable[[discord.Interaction, int], Awaitable[None]]):
        super().__init__(timeout=300)
        self.goto = goto
        if page.current_page > 1:
            self._add_button("Previous", page.current_page - 1)
        if page.current_page < page.total_pages:
            self._add_button("Next", page.current_page + 1)

    def _add_button(self, label: str, target: int):
        button = discord.ui.Button(label=label, style=discord.ButtonStyle.secondary)
        button.callback = self.make_callback(target)
        self.add_item(button)

    def make_callback(self, target: int):
        async def callback(interaction: discord.Interaction):
            await self.goto(interaction, target)

        return callback


# ------------------ embeds ------------------

def rewards_text(tier: DifficultyTier) -> str:
    table = tier.scoring
    return f"✅ Correct: +{table.correct} XP\n❌ Wrong: -{table.wrong} XP\n⏰ Timeout: -{table.timeout} XP"


def question_embed(kind: QuizKind, tier: DifficultyTier, question: Question, stats: UserStats,
                   time_limit: float, practice: bool, attempts_today: int) -> discord.Embed:
    fields = [("🎯 Instructions", f"You have **{int(time_limit)}** seconds to answer!")]
    if practice:
        fields.append(("🧪 Practice", "No XP or stats change in this round."))
    else:
        fields.append(("🏆 Rewards", rewards_text(tier)))
    fields.append(("📊 Today's Progress", f"{attempts_today} attempts\n{stats.streak} streak"))
    fields.extend(question.fields)

    title = question.title if len(kind.tiers) == 1 else f"{question.title} ({tier.label})"
    embed = make_embed(question.prompt, COLOR_QUESTION_EMBED, title=title, fields=fields,
                       footer=f"Level {level_for_xp(stats.xp)} • {stats.xp} XP")
    if question.images:
        embed.set_image(url=f"attachment://{question.images[0][0]}")
    return embed


def _progress_text(result: SessionResult) -> str:
    delta = result.delta
    sign = "+" if delta.xp_delta > 0 else ""
    total = result.total_xp
    text = (f"{sign}{delta.xp_delta} XP\nTotal: {total} XP (Level {level_for_xp(total)})\n"
            f"🔥 Streak: {delta.streak}")
    if not result.saved:
        text += "\n⚠️ This result could not be saved."
    return text


def result_embed(kind: QuizKind, question: Question, result: SessionResult) -> discord.Embed:
    correct_label = question.label_for(question.correct_value)

    if result.status is SessionStatus.EXPIRED:
        return make_embed(
            f"This quiz expired on Discord's side before it could finish. No XP was changed.\n"
            f"The answer was **{correct_label}**.",
            COLOR_TIMEOUT_EMBED, title="⌛ Quiz Expired", fields=[("🔍 Answer", question.reveal)],
            footer=f"Start a new one with /{kind.command_name}",
        )
    if result.status is SessionStatus.ERRORED:
        return make_embed(
            f"Something went wrong while finishing this quiz. Please try again with `/{kind.command_name}`.",
            COLOR_WRONG_EMBED, title="⚠️ Quiz Error", footer=None,
        )

    fields = [("🔍 Answer", question.reveal)] if question.reveal else []
    if result.outcome is Outcome.PRACTICE:
        if result.status is SessionStatus.TIMED_OUT:
            body = f"Time ran out! The correct answer was **{correct_label}**."
        elif result.correct:
            body = f"Correct! The answer was **{correct_label}**."
        else:
            body = (f"Not quite. You chose **{question.label_for(result.chosen)}**, "
                    f"the correct answer was **{correct_label}**.")
        return make_embed(body, COLOR_INFO_EMBED, title="🧪 Practice Round", fields=fields)

    if result.delta is not None:
        fields.append(("💫 Stats Update", _progress_text(result)))
        fields.append(("📊 Today's Progress", f"{result.delta.attempts_today} attempts"))

    if result.status is SessionStatus.TIMED_OUT:
        return make_embed(f"Time ran out! The correct answer was **{correct_label}**.",
                          COLOR_TIMEOUT_EMBED, title="⏰ Time's Up!", fields=fields)
    if result.correct:
        return make_embed(f"Great job! The answer was **{correct_label}**.",
                          COLOR_CORRECT_EMBED, title="🎉 Correct!", fields=fields)
    return make_embed(
        f"You chose **{question.label_for(result.chosen)}**, but the correct answer was **{correct_label}**.",
        COLOR_WRONG_EMBED, title="❌ Incorrect!", fields=fields,
    )


def registration_embed(command_name: str) -> discord.Embed:
    return make_embed(
        f"You need to register before playing `/{command_name}`!",
        COLOR_WRONG_EMBED,
        title="🚫 Registration Required",
        fields=[
            ("🎮 Why register?", "• Earn XP for correct answers\n• Track your quiz statistics\n• Compete on the leaderboard"),
            ("✨ How to register?", "Use `/register` to create your account and start earning XP!"),
        ],
        footer="Registration is quick and free!",
    )


def error_embed(body: str) -> discord.Embed:
    return make_embed(f"❌ {body}", COLOR_WRONG_EMBED, footer=None)


def stats_embed(member: discord.abc.User, xp: int, stats_by_type: Dict[str, UserStats],
                labels: Dict[str, str]) -> discord.Embed:
    fields = []
    for quiz_type, stats in stats_by_type.items():
        accuracy = stats.corrects / stats.attempts * 100 if stats.attempts else 0
        fields.append((
            labels.get(quiz_type, quiz_type),
            f"Attempts: {stats.attempts} ({stats.attempts_today} today)\n"
            f"Correct: {stats.corrects} • Accuracy: {accuracy:.0f}%\n"
            f"Timeouts: {stats.timeouts} • 🔥 Streak: {stats.streak}",
        ))
    body = f"{member.mention}\n**Level {level_for_xp(xp)}** • {xp} XP"
    if not fields:
        body += "\n\nNo quizzes played yet."
    return make_embed(body, COLOR_INFO_EMBED, title="📊 Quiz Stats", fields=fields)


def leaderboard_embed(guild: Optional[discord.Guild], rows: Sequence[Tuple[int, int]]) -> discord.Embed:
    lines = []
    for idx, (user_id, xp) in enumerate(rows, start=1):
        member = guild.get_member(user_id) if guild else None
        mention = member.mention if member else f"<@{user_id}>"
        if idx == 1:
            header = f"🥇 {mention}"
        elif idx == 2:
            header = f"🥈 {mention}"
        elif idx == 3:
            header = f"🥉 {mention}"
        else:
            header = f"{idx} - {mention}"
        lines.append(f"{header}\nLevel {level_for_xp(xp)} • {xp} XP")

    body = "\n\n".join(lines) if lines else "No XP recorded yet."
    return make_embed(body, COLOR_LEADERBOARD_EMBED, title="🏆 Leaderboard")


def verse_embed(verse: Verse, translation: Optional[str] = None, image_name: Optional[str] = None) -> discord.Embed:
    fields = [
        ("📚 Chapter", f"{chapter_name(verse.chapter_id)} ({verse.chapter_id})"),
        ("📍 Location", f"Juz {verse.juz_number} • Page {verse.page_number}"),
    ]
    if translation:
        fields.append(("🌍 Translation", translation))
    fields.append(("🔊 Audio Recitation", f"[Listen on Quran.com](https://quran.com/{verse.verse_key})"))

    embed = make_embed("", COLOR_VERSE_EMBED, title=f"📖 Quran {verse.verse_key}", fields=fields,
                       footer=f"Verse {verse.verse_number}")
    if image_name:
        embed.set_image(url=f"attachment://{image_name}")
    return embed


def chapter_page_embed(chapter_id: int, page: VersePage, translations: Dict[str, str]) -> discord.Embed:
    parts = []
    for verse in page.verses:
        block = f"**{verse.verse_key}**\n{verse.text_uthmani or 'No Arabic text'}\n"
        if verse.verse_key in translations:
            block += f"*{translations[verse.verse_key]}*\n"
        if sum(len(p) for p in parts) + len(block) > MAX_PAGE_TEXT:
            parts.append("… (truncated to fit Discord limit)")
            break
        parts.append(block)

    return make_embed(
        "\n".join(parts), COLOR_CHAPTER_EMBED, title=f"📖 {chapter_name(chapter_id)}",
        footer=f"Page {page.current_page} of {page.total_pages} • {page.total_records} total verses",
    )


# ------------------ terminal render ------------------

class DiscordSessionRenderer:
    """Edits the command's original response into the final result."""

    def __init__(self, interaction: discord.Interaction, kind: QuizKind, question: Question,
                 view: Optional[QuizView] = None):
        self.interaction = interaction
        self.kind = kind
        self.question = question
        self.view = view

    async def render_result(self, result: SessionResult):
        if self.view is not None:
            self.view.finalize(result)

        embed = result_embed(self.kind, self.question, result)
        images = list(self.question.images)
        if self.question.images:
            embed.set_image(url=f"attachment://{self.question.images[0][0]}")
        if result.status in (SessionStatus.ANSWERED, SessionStatus.TIMED_OUT):
            images.extend(self.question.reveal_images)

        try:
            await self.interaction.edit_original_response(embed=embed, view=self.view, attachments=as_files(images))
        except discord.HTTPException as e:
            mapped = handshake_error(e)
            if mapped is None:
                raise
            raise mapped from e
