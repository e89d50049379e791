"""
SQLite storage for users, per-quiz-type stats and the quiz queue.

One `QuizStore` (one aiosqlite connection) is opened at startup and handed to
everything that needs it. Counter updates are single UPDATE/UPSERT statements
so concurrent sessions never overwrite each other's increments.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import aiosqlite

from .errors import PersistenceError
from .scoring import UserProgressDelta
from .session import UserStats

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        discord_id INTEGER PRIMARY KEY,
        experience INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quiz_stats (
        user_id INTEGER NOT NULL,
        quiz_type TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        attempts_today INTEGER NOT NULL DEFAULT 0,
        corrects INTEGER NOT NULL DEFAULT 0,
        timeouts INTEGER NOT NULL DEFAULT 0,
        streaks INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT,
        PRIMARY KEY (user_id, quiz_type),
        FOREIGN KEY (user_id) REFERENCES users (discord_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quiz_queue (
        user_id INTEGER PRIMARY KEY,
        created_at REAL NOT NULL
    )
    """,
)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class QuizStore:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    @classmethod
    async def open(cls, path: str) -> "QuizStore":
        try:
            db = await aiosqlite.connect(path)
            db.row_factory = aiosqlite.Row
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not open database {path}: {e}") from e
        logger.info("database ready at %s", path)
        return cls(db)

    async def close(self):
        await self.db.close()

    # ------------------ users ------------------

    async def register_user(self, subject_id: int) -> bool:
        """Returns False if the user was already registered."""
        try:
            cursor = await self.db.execute(
                "INSERT OR IGNORE INTO users (discord_id, experience, created_at) VALUES (?, 0, ?)",
                (subject_id, datetime.now(timezone.utc).isoformat()),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not register user {subject_id}: {e}") from e
        return cursor.rowcount == 1

    async def is_registered(self, subject_id: int) -> bool:
        try:
            async with self.db.execute("SELECT 1 FROM users WHERE discord_id = ?", (subject_id,)) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not look up user {subject_id}: {e}") from e
        return row is not None

    async def get_xp(self, subject_id: int) -> Optional[int]:
        try:
            async with self.db.execute(
                "SELECT experience FROM users WHERE discord_id = ?", (subject_id,)
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not read xp of {subject_id}: {e}") from e
        return row["experience"] if row else None

    async def top_users(self, limit: int = 10) -> List[Tuple[int, int]]:
        """(discord_id, experience) pairs, highest XP first; earlier registration wins ties."""
        try:
            async with self.db.execute(
                "SELECT discord_id, experience FROM users ORDER BY experience DESC, created_at ASC LIMIT ?",
                (limit,),
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not read leaderboard: {e}") from e
        return [(row["discord_id"], row["experience"]) for row in rows]

    # ------------------ stats ------------------

    async def get_user_stats(self, subject_id: int, quiz_type: str) -> Optional[UserStats]:
        """None for unregistered users; zeroed stats for a quiz type never played."""
        try:
            async with self.db.execute(
                """
                SELECT u.experience, s.attempts, s.attempts_today, s.corrects,
                       s.timeouts, s.streaks, s.updated_at
                FROM users u
                LEFT JOIN quiz_stats s ON s.user_id = u.discord_id AND s.quiz_type = ?
                WHERE u.discord_id = ?
                """,
                (quiz_type, subject_id),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not read stats of {subject_id}: {e}") from e

        if row is None:
            return None
        return UserStats(
            xp=row["experience"],
            streak=row["streaks"] or 0,
            attempts=row["attempts"] or 0,
            attempts_today=row["attempts_today"] or 0,
            corrects=row["corrects"] or 0,
            timeouts=row["timeouts"] or 0,
            updated_at=_parse_timestamp(row["updated_at"]),
        )

    async def get_all_stats(self, subject_id: int) -> Dict[str, UserStats]:
        try:
            async with self.db.execute(
                """
                SELECT u.experience, s.quiz_type, s.attempts, s.attempts_today, s.corrects,
                       s.timeouts, s.streaks, s.updated_at
                FROM quiz_stats s JOIN users u ON u.discord_id = s.user_id
                WHERE s.user_id = ?
                ORDER BY s.quiz_type
                """,
                (subject_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not read stats of {subject_id}: {e}") from e

        return {
            row["quiz_type"]: UserStats(
                xp=row["experience"],
                streak=row["streaks"],
                attempts=row["attempts"],
                attempts_today=row["attempts_today"],
                corrects=row["corrects"],
                timeouts=row["timeouts"],
                updated_at=_parse_timestamp(row["updated_at"]),
            )
            for row in rows
        }

    async def _rollback(self):
        """Drop a half-applied write from the shared connection."""
        try:
            await self.db.rollback()
        except aiosqlite.Error:
            logger.exception("rollback failed")

    async def apply_progress_delta(self, subject_id: int, quiz_type: str, delta: UserProgressDelta,
                                   now: Optional[datetime] = None) -> int:
        """Write one finished session and return the user's XP afterwards."""
        if delta.is_empty:
            xp = await self.get_xp(subject_id)
            return xp or 0

        now = now or datetime.now(timezone.utc)
        try:
            await self.db.execute(
                "UPDATE users SET experience = MAX(0, experience + ?) WHERE discord_id = ?",
                (delta.xp_delta, subject_id),
            )
            await self.db.execute(
                """
                INSERT INTO quiz_stats
                    (user_id, quiz_type, attempts, attempts_today, corrects, timeouts, streaks, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, quiz_type) DO UPDATE SET
                    attempts = attempts + excluded.attempts,
                    attempts_today = CASE WHEN ? THEN excluded.attempts_today
                                          ELSE attempts_today + excluded.attempts END,
                    corrects = corrects + excluded.corrects,
                    timeouts = timeouts + excluded.timeouts,
                    streaks = excluded.streaks,
                    updated_at = excluded.updated_at
                """,
                (
                    subject_id, quiz_type, delta.attempts, delta.attempts_today,
                    delta.corrects, delta.timeouts, delta.streak, now.isoformat(),
                    1 if delta.reset_attempts_today else 0,
                ),
            )
            await self.db.commit()
            async with self.db.execute(
                "SELECT experience FROM users WHERE discord_id = ?", (subject_id,)
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            await self._rollback()
            raise PersistenceError(f"could not save progress of {subject_id}: {e}") from e

        return row["experience"] if row else 0

    async def apply_xp_penalty(self, subject_id: int, amount: int) -> int:
        try:
            await self.db.execute(
                "UPDATE users SET experience = MAX(0, experience - ?) WHERE discord_id = ?",
                (amount, subject_id),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            await self._rollback()
            raise PersistenceError(f"could not penalize {subject_id}: {e}") from e
        xp = await self.get_xp(subject_id)
        return xp or 0

    # ------------------ quiz queue ------------------

    async def acquire_queue_slot(self, subject_id: int) -> bool:
        try:
            cursor = await self.db.execute(
                "INSERT OR IGNORE INTO quiz_queue (user_id, created_at) VALUES (?, ?)",
                (subject_id, time.time()),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not reserve queue slot for {subject_id}: {e}") from e
        return cursor.rowcount == 1

    async def release_queue_slot(self, subject_id: int):
        try:
            await self.db.execute("DELETE FROM quiz_queue WHERE user_id = ?", (subject_id,))
            await self.db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not release queue slot of {subject_id}: {e}") from e

    async def has_queue_slot(self, subject_id: int) -> bool:
        try:
            async with self.db.execute("SELECT 1 FROM quiz_queue WHERE user_id = ?", (subject_id,)) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not read queue slot of {subject_id}: {e}") from e
        return row is not None

    async def sweep_stale_slots(self, max_age: timedelta) -> int:
        cutoff = time.time() - max_age.total_seconds()
        try:
            cursor = await self.db.execute("DELETE FROM quiz_queue WHERE created_at < ?", (cutoff,))
            await self.db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not sweep queue: {e}") from e
        return cursor.rowcount

    async def clear_queue_slots(self) -> int:
        try:
            cursor = await self.db.execute("DELETE FROM quiz_queue")
            await self.db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"could not clear queue: {e}") from e
        return cursor.rowcount
