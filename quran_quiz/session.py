from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from .choices import ChoiceSet


class SessionStatus(Enum):
    OPEN = "open"
    ANSWERED = "answered"
    TIMED_OUT = "timed_out"
    EXPIRED = "expired"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.OPEN


class Outcome(Enum):
    CORRECT = "correct"
    WRONG = "wrong"
    TIMEOUT = "timeout"
    PRACTICE = "practice"


@dataclass(frozen=True)
class ScoringTable:
    """XP for each outcome. `wrong` and `timeout` are penalties (positive numbers)."""
    correct: int
    wrong: int
    timeout: int
    resets_streak: bool = True


@dataclass(frozen=True)
class UserStats:
    """Snapshot of a user's XP and the per-quiz-type counters, taken when the session opens."""
    xp: int = 0
    streak: int = 0
    attempts: int = 0
    attempts_today: int = 0
    corrects: int = 0
    timeouts: int = 0
    updated_at: Optional[datetime] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QuizSession:
    subject_id: int
    quiz_type: str
    question: Any
    correct_answer: Any
    scoring: ScoringTable
    created_at: datetime
    deadline: datetime
    choice_set: Optional[ChoiceSet] = None
    stats: UserStats = field(default_factory=UserStats)
    practice: bool = False

    @property
    def time_limit(self) -> float:
        return (self.deadline - self.created_at).total_seconds()

    def is_correct(self, chosen: Any) -> bool:
        # with a choice set the responder picks a position, not a value
        if self.choice_set is not None:
            return chosen == self.choice_set.correct_index
        return chosen == self.correct_answer


def create_session(
    subject_id: int,
    question: Any,
    correct_answer: Any,
    scoring: ScoringTable,
    time_limit: float,
    choice_set: Optional[ChoiceSet] = None,
    *,
    quiz_type: str,
    stats: Optional[UserStats] = None,
    practice: bool = False,
    now: Optional[datetime] = None,
) -> QuizSession:
    if time_limit <= 0:
        raise ValueError(f"time limit must be positive, got {time_limit}")

    created_at = now or utcnow()
    return QuizSession(
        subject_id=subject_id,
        quiz_type=quiz_type,
        question=question,
        correct_answer=correct_answer,
        scoring=scoring,
        created_at=created_at,
        deadline=created_at + timedelta(seconds=time_limit),
        choice_set=choice_set,
        stats=stats or UserStats(),
        practice=practice,
    )
