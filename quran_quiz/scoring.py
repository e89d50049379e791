from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from .config import XP_PER_LEVEL
from .session import Outcome, QuizSession, UserStats


@dataclass(frozen=True)
class UserProgressDelta:
    """
    What one finished session does to a user's record.

    `xp_delta` is already floored so the stored XP never drops below zero.
    `streak` and `attempts_today` are absolute values; when
    `reset_attempts_today` is set the daily counter is replaced instead of
    incremented. The other counters are increments.
    """
    xp_delta: int
    new_xp: int
    streak: int
    attempts: int
    attempts_today: int
    reset_attempts_today: bool
    corrects: int
    timeouts: int
    practice: bool = False

    @property
    def is_empty(self) -> bool:
        return self.practice


def level_for_xp(xp: int) -> int:
    return xp // XP_PER_LEVEL + 1


def is_new_day(updated_at: Optional[datetime], today: date) -> bool:
    """True when the stored timestamp falls on an earlier UTC day than `today`."""
    if updated_at is None:
        return False
    if updated_at.tzinfo is not None:
        updated_at = updated_at.astimezone(timezone.utc)
    return updated_at.date() != today


def attempts_today(stats: UserStats, today: date) -> int:
    """The stored daily counter, or 0 if it belongs to an earlier day."""
    if is_new_day(stats.updated_at, today):
        return 0
    return stats.attempts_today


def score(session: QuizSession, outcome: Outcome, *, today: date) -> UserProgressDelta:
    stats = session.stats

    if outcome is Outcome.PRACTICE:
        return UserProgressDelta(
            xp_delta=0,
            new_xp=stats.xp,
            streak=stats.streak,
            attempts=0,
            attempts_today=stats.attempts_today,
            reset_attempts_today=False,
            corrects=0,
            timeouts=0,
            practice=True,
        )

    table = session.scoring
    if outcome is Outcome.CORRECT:
        xp_delta = table.correct
        streak = stats.streak + 1
    elif outcome is Outcome.WRONG:
        xp_delta = -min(table.wrong, stats.xp)
        streak = 0 if table.resets_streak else stats.streak
    elif outcome is Outcome.TIMEOUT:
        xp_delta = -min(table.timeout, stats.xp)
        streak = 0 if table.resets_streak else stats.streak
    else:
        raise ValueError(f"unknown outcome {outcome!r}")

    reset_today = is_new_day(stats.updated_at, today)
    return UserProgressDelta(
        xp_delta=xp_delta,
        new_xp=stats.xp + xp_delta,
        streak=streak,
        attempts=1,
        attempts_today=1 if reset_today else stats.attempts_today + 1,
        reset_attempts_today=reset_today,
        corrects=1 if outcome is Outcome.CORRECT else 0,
        timeouts=1 if outcome is Outcome.TIMEOUT else 0,
    )
