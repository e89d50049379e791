"""
Per-session state machine for one quiz round.

A round ends exactly once: the first accepted response, the deadline or a
platform-side expiry, whichever claims the session first. The claim happens
before any await, so a deadline that fires while a response is still being
acknowledged finds the session already taken and does nothing.

After the claim the controller scores, persists, renders and then marks the
round complete, in that order.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from .errors import PersistenceError, PlatformHandshakeError
from .scoring import UserProgressDelta, score
from .session import Outcome, QuizSession, SessionStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionResult:
    session: QuizSession
    status: SessionStatus
    outcome: Optional[Outcome] = None
    chosen: Any = None
    correct: bool = False
    delta: Optional[UserProgressDelta] = None
    saved: bool = False
    error: Optional[BaseException] = None
    # XP read back from the store after the write; None when nothing was written
    stored_xp: Optional[int] = None

    @property
    def total_xp(self) -> Optional[int]:
        if self.saved and self.stored_xp is not None:
            return self.stored_xp
        return self.delta.new_xp if self.delta is not None else None


class SessionHandle:
    """What the caller keeps for a running round: enough to cancel it on shutdown."""

    def __init__(self, controller: "SessionController"):
        self._controller = controller

    @property
    def done(self) -> bool:
        return self._controller.status.is_terminal

    def cancel(self):
        self._controller.cancel_timer()

    async def expire(self) -> bool:
        return await self._controller.on_platform_expired()


class SessionController:
    def __init__(self, session: QuizSession, *, store, renderer,
                 clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.store = store
        self.renderer = renderer
        self.clock = clock

        self.status = SessionStatus.OPEN
        self.result: Optional[SessionResult] = None

        self._claimed = False
        self._done = asyncio.Event()
        self._timer: Optional[asyncio.Task] = None

    # ------------------ lifecycle ------------------

    def start(self) -> SessionHandle:
        delay = max(0.0, (self.session.deadline - self.clock()).total_seconds())
        self._timer = asyncio.create_task(self._countdown(delay))
        return SessionHandle(self)

    async def _countdown(self, delay: float):
        await asyncio.sleep(delay)
        await self.on_deadline()

    def cancel_timer(self):
        timer = self._timer
        if timer is None or timer.done():
            return
        # the deadline path finishes from inside the timer task itself
        if timer is asyncio.current_task():
            return
        timer.cancel()

    async def wait(self) -> SessionResult:
        await self._done.wait()
        return self.result

    @property
    def claimed(self) -> bool:
        return self._claimed

    def accepts(self, responder_id: int) -> bool:
        return responder_id == self.session.subject_id

    # ------------------ events ------------------

    async def on_response(self, responder_id: int, chosen: Any,
                          acknowledge: Optional[Callable[[], Awaitable[Any]]] = None) -> bool:
        """
        Feed one button/select press into the round.

        Returns False when the press is ignored (someone else's round, or the
        round was already claimed). `acknowledge` is awaited after the claim;
        a token-expired failure ends the round as EXPIRED, other handshake
        failures are logged and the answer is still scored.
        """
        if not self.accepts(responder_id):
            return False
        if self._claimed:
            return False
        self._claimed = True

        if acknowledge is not None:
            try:
                await acknowledge()
            except PlatformHandshakeError as e:
                if e.expired:
                    logger.warning("interaction for %s expired before acknowledge", self._describe())
                    await self._finish(SessionStatus.EXPIRED, chosen=chosen, error=e)
                    return True
                logger.warning("acknowledge failed for %s (%s), scoring anyway", self._describe(), e.kind.value)
            except Exception as e:
                logger.exception("unexpected acknowledge failure for %s", self._describe())
                await self._finish(SessionStatus.ERRORED, chosen=chosen, error=e)
                return True

        if self.session.practice:
            outcome = Outcome.PRACTICE
        elif self.session.is_correct(chosen):
            outcome = Outcome.CORRECT
        else:
            outcome = Outcome.WRONG

        await self._settle(SessionStatus.ANSWERED, outcome, chosen)
        return True

    async def on_platform_expired(self) -> bool:
        """
        Tear the round down from the platform side: the gateway is going away
        or the interaction can no longer be answered. Ends as EXPIRED with no
        scoring; False if the round was already claimed.
        """
        if self._claimed:
            return False
        self._claimed = True
        logger.info("platform expired %s", self._describe())
        await self._finish(SessionStatus.EXPIRED)
        return True

    async def on_deadline(self) -> bool:
        if self._claimed:
            return False
        self._claimed = True

        outcome = Outcome.PRACTICE if self.session.practice else Outcome.TIMEOUT
        await self._settle(SessionStatus.TIMED_OUT, outcome, None)
        return True

    # ------------------ terminal path ------------------

    async def _settle(self, status: SessionStatus, outcome: Outcome, chosen: Any):
        try:
            delta = score(self.session, outcome, today=self.clock().date())
        except Exception as e:
            logger.exception("scoring failed for %s", self._describe())
            await self._finish(SessionStatus.ERRORED, outcome=outcome, chosen=chosen, error=e)
            return

        saved = True
        stored_xp = None
        if not delta.is_empty:
            try:
                stored_xp = await self.store.apply_progress_delta(
                    self.session.subject_id, self.session.quiz_type, delta
                )
            except PersistenceError:
                logger.exception("could not save progress for %s", self._describe())
                saved = False
            except Exception as e:
                logger.exception("unexpected failure saving progress for %s", self._describe())
                await self._finish(SessionStatus.ERRORED, outcome=outcome, chosen=chosen,
                                   delta=delta, saved=False, error=e)
                return

        await self._finish(status, outcome=outcome, chosen=chosen, delta=delta, saved=saved, stored_xp=stored_xp)

    async def _finish(self, status: SessionStatus, *, outcome: Optional[Outcome] = None, chosen: Any = None,
                      delta: Optional[UserProgressDelta] = None, saved: bool = False,
                      error: Optional[BaseException] = None, stored_xp: Optional[int] = None):
        answered = chosen is not None and status is SessionStatus.ANSWERED
        result = SessionResult(
            session=self.session,
            status=status,
            outcome=outcome,
            chosen=chosen,
            correct=answered and self.session.is_correct(chosen),
            delta=delta,
            saved=saved,
            error=error,
            stored_xp=stored_xp,
        )

        try:
            await self.renderer.render_result(result)
        except PlatformHandshakeError as e:
            logger.warning("could not render result for %s (%s)", self._describe(), e.kind.value)
        except Exception:
            logger.exception("rendering result failed for %s", self._describe())

        self.result = result
        self.status = status
        self.cancel_timer()
        self._done.set()
        logger.debug("%s finished as %s", self._describe(), status.value)

    def _describe(self) -> str:
        return f"{self.session.quiz_type} session of {self.session.subject_id}"
