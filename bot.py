#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
Quran Quiz bot

Slash commands:
- /quran-quiz [difficulty] [practice]   : which chapter is this verse from (basic / advanced)
- /ayah-order-quiz [practice]           : does the first verse come before the second
- /missing-ayah-words-quiz [practice]   : how many words are missing from the verse
- /quiz-ayah-translation [practice]     : pick the right English translation (one at a time)
- /register                             : create an account
- /quiz-stats [member]                  : per-quiz statistics and level
- /leaderboard [limit]                  : top players by XP
- /random-ayah [chapter|page|juz|hizb|manzil] [translation] : a random verse, optionally filtered
- /chapter-verses <chapter> [page] [per_page] [translation]  : read a chapter page by page
"""

import logging
from datetime import timedelta
from typing import Optional

import discord
from discord.ext import commands, tasks

from quran_quiz.canvas import VerseCanvas
from quran_quiz.commands import QuizRunner, setup_commands
from quran_quiz.config import QUEUE_SLOT_TTL_SECONDS, SWEEP_INTERVAL_MINUTES, Settings, load_settings
from quran_quiz.errors import PersistenceError
from quran_quiz.quran_api import QuranApiClient
from quran_quiz.registry import QueueGuard
from quran_quiz.storage import QuizStore

logger = logging.getLogger("quran_quiz.bot")


class QuranQuizBot(commands.Bot):
    def __init__(self, settings: Settings):
        intents = discord.Intents.default()
        super().__init__(command_prefix="!", intents=intents, help_command=None)
        self.settings = settings
        self.store: Optional[QuizStore] = None
        self.runner: Optional[QuizRunner] = None

    async def setup_hook(self):
        self.store = await QuizStore.open(self.settings.database_path)
        guard = QueueGuard(self.store, max_age=timedelta(seconds=QUEUE_SLOT_TTL_SECONDS))
        await guard.reset()

        self.runner = QuizRunner(
            store=self.store,
            api=QuranApiClient(self.settings.quran_client_id, self.settings.quran_client_secret),
            canvas=VerseCanvas(self.settings.fonts_dir, self.settings.caption_font_path),
            guard=guard,
        )
        setup_commands(self, self.runner)
        self.sweep_queue.start()

        if self.settings.dev_guild_id:
            guild = discord.Object(id=self.settings.dev_guild_id)
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("synced %d slash commands to guild %s", len(synced), self.settings.dev_guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("synced %d slash commands globally", len(synced))

    @tasks.loop(minutes=SWEEP_INTERVAL_MINUTES)
    async def sweep_queue(self):
        try:
            await self.runner.guard.sweep()
        except PersistenceError:
            logger.exception("queue sweep failed")

    async def on_ready(self):
        logger.info("logged in as %s (ID: %s)", self.user, self.user.id)

    async def close(self):
        if self.sweep_queue.is_running():
            self.sweep_queue.cancel()
        if self.runner is not None:
            await self.runner.shutdown()
        await super().close()
        if self.store is not None:
            await self.store.close()
            self.store = None


def main():
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("discord.http").setLevel(logging.WARNING)

    bot = QuranQuizBot(settings)
    bot.run(settings.token, log_handler=None)


if __name__ == "__main__":
    main()
