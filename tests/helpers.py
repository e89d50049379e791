from __future__ import annotations

import random
from typing import Dict, List, Optional

from quran_quiz.chapters import chapter_name
from quran_quiz.errors import ContentSourceError
from quran_quiz.quran_api import Chapter, Verse, VersePage


class FixedRandom(random.Random):
    """Random whose random() is pinned; shuffles and randrange still use the seeded generator."""

    def __init__(self, value: float, seed: int = 7) -> None:
        super().__init__(seed)
        self.value = value

    def random(self) -> float:
        return self.value


def make_verse(key: str, words: int = 8, page: int = 3) -> Verse:
    chapter, number = (int(part) for part in key.split(":"))
    glyphs = " ".join(f"w{i}" for i in range(words))
    return Verse(
        verse_key=key,
        chapter_id=chapter,
        verse_number=number,
        page_number=page,
        juz_number=1,
        code_v2=f"{glyphs} #",
    )


class FakeApi:
    def __init__(self, random_verses: List[Verse], translations: Optional[Dict[str, str]] = None,
                 chapter_verses: Optional[List[Verse]] = None, chapter_error: bool = False) -> None:
        self.random_verses = list(random_verses)
        self.translations = translations or {}
        self.chapter_verses = chapter_verses or []
        self.chapter_error = chapter_error
        self.random_calls = 0
        self.random_filters: List[dict] = []
        self.fetched_keys: List[str] = []

    async def fetch_random_verse(self, **filters) -> Verse:
        self.random_calls += 1
        self.random_filters.append(filters)
        if not self.random_verses:
            raise ContentSourceError("out of verses")
        return self.random_verses.pop(0)

    async def fetch_verse(self, verse_key: str) -> Verse:
        self.fetched_keys.append(verse_key)
        return make_verse(verse_key)

    async def fetch_chapter(self, chapter_id: int) -> Chapter:
        if self.chapter_error:
            raise ContentSourceError("chapters endpoint down")
        return Chapter(id=chapter_id, name_simple=chapter_name(chapter_id), name_arabic="",
                       verses_count=50)

    async def fetch_chapter_verses(self, chapter_id: int) -> List[Verse]:
        return list(self.chapter_verses)

    async def fetch_chapter_page(self, chapter_id: int, page: int = 1, per_page: int = 5) -> VersePage:
        if self.chapter_error:
            raise ContentSourceError("chapters endpoint down")
        start = (page - 1) * per_page
        total_pages = max(1, -(-len(self.chapter_verses) // per_page))
        return VersePage(self.chapter_verses[start:start + per_page], page, total_pages, len(self.chapter_verses))

    async def fetch_translation(self, verse_key: str, resource_id: int = 20) -> Optional[str]:
        return self.translations.get(verse_key)


class FakeCanvas:
    def __init__(self) -> None:
        self.rendered: List[str] = []

    def render_verse(self, glyph: str, page: int, *, height: Optional[int] = None) -> bytes:
        self.rendered.append(glyph)
        return b"png:" + glyph.encode()

    def render_verse_pair(self, first, second, caption=None) -> bytes:
        self.rendered.extend([first[0], second[0]])
        return b"png-pair"
