import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from .config import QUEUE_PENALTY_XP, QUEUE_SLOT_TTL_SECONDS
from .errors import PersistenceError, QueueSlotConflictError

logger = logging.getLogger(__name__)


class QueueGuard:
    """
    At most one open session per user for the queue-gated quiz type.

    Slots live in the store so a crash leaves them behind; `sweep` drops the
    ones older than `max_age` and `reset` wipes them all at startup.
    """

    def __init__(self, store, *, penalty_xp: int = QUEUE_PENALTY_XP,
                 max_age: timedelta = timedelta(seconds=QUEUE_SLOT_TTL_SECONDS)):
        self.store = store
        self.penalty_xp = penalty_xp
        self.max_age = max_age

    async def try_acquire(self, subject_id: int) -> bool:
        return await self.store.acquire_queue_slot(subject_id)

    async def release(self, subject_id: int):
        try:
            await self.store.release_queue_slot(subject_id)
        except PersistenceError:
            # the sweep will pick it up
            logger.exception("could not release queue slot of %s", subject_id)

    async def sweep(self, max_age: Optional[timedelta] = None) -> int:
        removed = await self.store.sweep_stale_slots(max_age or self.max_age)
        if removed:
            logger.info("swept %d stale queue slot(s)", removed)
        return removed

    async def reset(self) -> int:
        removed = await self.store.clear_queue_slots()
        logger.info("cleared %d queue slot(s) left from a previous run", removed)
        return removed

    async def penalize(self, subject_id: int) -> int:
        """Charge the double-booking penalty and return the user's new XP."""
        new_xp = await self.store.apply_xp_penalty(subject_id, self.penalty_xp)
        logger.info("user %s tried to open a second queued quiz, -%d xp", subject_id, self.penalty_xp)
        return new_xp

    @asynccontextmanager
    async def hold(self, subject_id: int):
        if not await self.try_acquire(subject_id):
            raise QueueSlotConflictError(subject_id)
        try:
            yield
        finally:
            await self.release(subject_id)
