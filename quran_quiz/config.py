import os
from dataclasses import dataclass

from dotenv import load_dotenv

# ------------------ tuning constants ------------------
# chance that the real translation is among the options (otherwise "None of the above" is correct)
CORRECT_INCLUSION_PROBABILITY = 0.7

# penalty for opening a translation quiz while one is still running
QUEUE_PENALTY_XP = 3
# queue slots older than this are considered orphaned
QUEUE_SLOT_TTL_SECONDS = 120
SWEEP_INTERVAL_MINUTES = 2

# upper bound on content fetches when searching for a verse with a given shape
MAX_CONTENT_PULLS = 10

# advanced chapter quiz
ADVANCED_UNLOCK_ATTEMPTS = 5
ADVANCED_WINDOW_SIZE = 15

XP_PER_LEVEL = 100

# Sahih International
DEFAULT_TRANSLATION_ID = 20

DEFAULT_DATABASE_PATH = "quran_quiz.db"
DEFAULT_FONTS_DIR = os.path.join("assets", "fonts", "quran", "hafs")

PLACEHOLDER_TOKEN = "YOUR_DISCORD_BOT_TOKEN_HERE"


@dataclass(frozen=True)
class Settings:
    token: str
    quran_client_id: str
    quran_client_secret: str
    database_path: str = DEFAULT_DATABASE_PATH
    fonts_dir: str = DEFAULT_FONTS_DIR
    caption_font_path: str = ""
    dev_guild_id: int = 0
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Read the bot settings from the environment (and a .env file, if present)."""
    load_dotenv()

    token = os.getenv("DISCORD_BOT_TOKEN", "")
    if not token or token == PLACEHOLDER_TOKEN:
        raise RuntimeError("DISCORD_BOT_TOKEN is not set. Put the real bot token in .env")

    return Settings(
        token=token,
        quran_client_id=os.getenv("QURAN_CLIENT_ID", ""),
        quran_client_secret=os.getenv("QURAN_CLIENT_SECRET", ""),
        database_path=os.getenv("DATABASE_PATH", DEFAULT_DATABASE_PATH),
        fonts_dir=os.getenv("QURAN_FONTS_DIR", DEFAULT_FONTS_DIR),
        caption_font_path=os.getenv("CAPTION_FONT_PATH", ""),
        dev_guild_id=int(os.getenv("DEV_GUILD_ID", "0")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
