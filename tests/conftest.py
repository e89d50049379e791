from __future__ import annotations

import pytest_asyncio

from quran_quiz.storage import QuizStore


@pytest_asyncio.fixture
async def store():
    store = await QuizStore.open(":memory:")
    try:
        yield store
    finally:
        await store.close()
