"""
Client for the Quran Foundation content API (v4).

Requests are plain blocking `requests` calls; the async `fetch_*` helpers run
them in a worker thread so the bot's event loop keeps going.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from .config import DEFAULT_TRANSLATION_ID
from .errors import ContentSourceError

logger = logging.getLogger(__name__)

BASE_URL = "https://apis.quran.foundation/content/api/v4"
PRELIVE_BASE_URL = "https://apis-prelive.quran.foundation/content/api/v4"
AUTH_URL = "https://oauth2.quran.foundation/oauth2/token"

# a cached token must stay valid at least this long to be reused
TOKEN_MIN_VALIDITY = 5 * 60
DEFAULT_TOKEN_LIFETIME = 3600

VERSE_FIELDS = "v2_page,code_v2,text_uthmani,chapter_id,verse_number,verse_key,juz_number,page_number"
VERSES_PER_PAGE = 50


@dataclass(frozen=True)
class Verse:
    verse_key: str
    chapter_id: int
    verse_number: int
    page_number: int
    juz_number: int
    code_v2: str
    text_uthmani: str = ""

    @property
    def glyph(self) -> str:
        """code_v2 without the trailing end-of-verse marker."""
        return self.code_v2[:-1].rstrip() if self.code_v2 else ""

    @property
    def word_count(self) -> int:
        return len(self.code_v2.split())

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Verse":
        verse_key = data.get("verse_key", "")
        chapter_id = data.get("chapter_id")
        verse_number = data.get("verse_number")
        if verse_key and (chapter_id is None or verse_number is None):
            chapter_part, _, verse_part = verse_key.partition(":")
            chapter_id = chapter_id or int(chapter_part)
            verse_number = verse_number or int(verse_part or 0)

        code_v2 = data.get("code_v2") or ""
        if not code_v2 and data.get("words"):
            # the verse-level field is missing on some endpoints; rebuild it from the words
            code_v2 = " ".join(w.get("code_v2", "") for w in data["words"] if w.get("code_v2"))

        return cls(
            verse_key=verse_key,
            chapter_id=int(chapter_id or 0),
            verse_number=int(verse_number or 0),
            page_number=int(data.get("v2_page") or data.get("page_number") or 0),
            juz_number=int(data.get("juz_number") or 0),
            code_v2=code_v2,
            text_uthmani=data.get("text_uthmani") or "",
        )


@dataclass(frozen=True)
class Chapter:
    id: int
    name_simple: str
    name_arabic: str
    verses_count: int
    revelation_place: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Chapter":
        return cls(
            id=int(data["id"]),
            name_simple=data.get("name_simple", ""),
            name_arabic=data.get("name_arabic", ""),
            verses_count=int(data.get("verses_count", 0)),
            revelation_place=data.get("revelation_place", ""),
        )


@dataclass(frozen=True)
class VersePage:
    """One page of a chapter as the by_chapter endpoint paginates it."""
    verses: List[Verse]
    current_page: int
    total_pages: int
    total_records: int


class QuranApiClient:
    def __init__(self, client_id: str, client_secret: str,
                 session: Optional[requests.Session] = None, timeout: float = 10):
        self.client_id = client_id
        self.client_secret = client_secret
        self.http = session or requests.Session()
        self.timeout = timeout

        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # ------------------ auth ------------------

    def access_token(self) -> str:
        with self._token_lock:
            if self._token and self._token_expires_at - time.time() > TOKEN_MIN_VALIDITY:
                return self._token
            return self._request_token()

    def _request_token(self) -> str:
        if not self.client_id or not self.client_secret:
            raise ContentSourceError("QURAN_CLIENT_ID / QURAN_CLIENT_SECRET are not set")

        logger.info("requesting a new content API token")
        try:
            resp = self.http.post(
                AUTH_URL,
                data={"grant_type": "client_credentials", "scope": "content"},
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise ContentSourceError(f"token request failed: {e}") from e

        token = data.get("access_token")
        if not token:
            raise ContentSourceError("token response has no access_token")

        self._token = token
        self._token_expires_at = time.time() + int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        return token

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "x-auth-token": self.access_token(),
            "x-client-id": self.client_id,
        }

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = self._headers()
        last_error: Optional[Exception] = None
        for base in (BASE_URL, PRELIVE_BASE_URL):
            try:
                resp = self.http.get(base + path, params=params, headers=headers, timeout=self.timeout)
                resp.raise_for_status()
                return resp.json()
            except (requests.RequestException, ValueError) as e:
                logger.warning("GET %s on %s failed: %s", path, base, e)
                last_error = e
        raise ContentSourceError(f"GET {path} failed: {last_error}")

    # ------------------ content ------------------

    def random_verse(self, **filters) -> Verse:
        """filters: chapter_number, page_number, juz_number, hizb_number, manzil_number"""
        params = {k: v for k, v in filters.items() if v is not None}
        params.update({"fields": VERSE_FIELDS, "words": "true", "word_fields": "code_v2"})
        data = self._get("/verses/random", params)
        verse = data.get("verse")
        if not verse:
            raise ContentSourceError("random verse response has no verse")
        return Verse.from_api(verse)

    def verse_by_key(self, verse_key: str) -> Verse:
        params = {"fields": VERSE_FIELDS, "words": "true", "word_fields": "code_v2"}
        data = self._get(f"/verses/by_key/{verse_key}", params)
        verse = data.get("verse")
        if not verse:
            raise ContentSourceError(f"no verse {verse_key}")
        return Verse.from_api(verse)

    def chapter(self, chapter_id: int) -> Chapter:
        data = self._get(f"/chapters/{chapter_id}", {"language": "en"})
        chapter = data.get("chapter")
        if not chapter:
            raise ContentSourceError(f"no chapter {chapter_id}")
        return Chapter.from_api(chapter)

    def chapter_verses(self, chapter_id: int) -> List[Verse]:
        verses: List[Verse] = []
        page = 1
        while True:
            data = self._get(f"/verses/by_chapter/{chapter_id}", {
                "fields": VERSE_FIELDS,
                "words": "true",
                "word_fields": "code_v2",
                "page": page,
                "per_page": VERSES_PER_PAGE,
            })
            verses.extend(Verse.from_api(v) for v in data.get("verses", []))
            next_page = (data.get("pagination") or {}).get("next_page")
            if not next_page:
                return verses
            page = next_page

    def chapter_page(self, chapter_id: int, page: int = 1, per_page: int = 5) -> VersePage:
        data = self._get(f"/verses/by_chapter/{chapter_id}", {
            "fields": VERSE_FIELDS,
            "page": page,
            "per_page": per_page,
        })
        pagination = data.get("pagination") or {}
        return VersePage(
            verses=[Verse.from_api(v) for v in data.get("verses", [])],
            current_page=int(pagination.get("current_page") or page),
            total_pages=int(pagination.get("total_pages") or 1),
            total_records=int(pagination.get("total_records") or 0),
        )

    def translation(self, verse_key: str, resource_id: int = DEFAULT_TRANSLATION_ID) -> Optional[str]:
        """Raw translation text (may contain markup) or None if the API has none for this verse."""
        data = self._get(f"/translations/{resource_id}/by_ayah/{verse_key}")
        translations = data.get("translations") or []
        if not translations:
            return None
        return translations[0].get("text")

    # ------------------ async wrappers ------------------

    async def fetch_random_verse(self, **filters) -> Verse:
        return await asyncio.to_thread(self.random_verse, **filters)

    async def fetch_verse(self, verse_key: str) -> Verse:
        return await asyncio.to_thread(self.verse_by_key, verse_key)

    async def fetch_chapter(self, chapter_id: int) -> Chapter:
        return await asyncio.to_thread(self.chapter, chapter_id)

    async def fetch_chapter_verses(self, chapter_id: int) -> List[Verse]:
        return await asyncio.to_thread(self.chapter_verses, chapter_id)

    async def fetch_translation(self, verse_key: str, resource_id: int = DEFAULT_TRANSLATION_ID) -> Optional[str]:
        return await asyncio.to_thread(self.translation, verse_key, resource_id)

    async def fetch_chapter_page(self, chapter_id: int, page: int = 1, per_page: int = 5) -> VersePage:
        return await asyncio.to_thread(self.chapter_page, chapter_id, page, per_page)
