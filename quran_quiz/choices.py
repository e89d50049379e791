import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable, Iterable, List, Optional, Sequence, Tuple

from .config import CORRECT_INCLUSION_PROBABILITY, MAX_CONTENT_PULLS
from .errors import ContentSourceError, InsufficientCandidatesError

logger = logging.getLogger(__name__)

NONE_OF_THE_ABOVE = "None of the above"

ELLIPSIS = "..."


@dataclass(frozen=True)
class ChoiceSet:
    options: Tuple[Any, ...]
    correct_index: int

    @property
    def correct(self) -> Any:
        return self.options[self.correct_index]

    def __len__(self) -> int:
        return len(self.options)


def _distinct(values: Iterable[Hashable]) -> List[Any]:
    seen = set()
    result = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def build_choice_set(correct: Hashable, candidate_pool: Iterable[Hashable], size: int,
                     rng: random.Random) -> ChoiceSet:
    """
    Pick size-1 distinct distractors from the pool and put the correct answer
    at a uniformly random position among the size slots.
    """
    if size < 1:
        raise ValueError("choice set size must be at least 1")

    distractors = _distinct(c for c in candidate_pool if c != correct)
    if len(distractors) < size - 1:
        raise InsufficientCandidatesError(
            f"need {size - 1} distractors, only {len(distractors)} distinct candidates available"
        )

    rng.shuffle(distractors)
    options = distractors[:size - 1]
    correct_index = rng.randrange(size)
    options.insert(correct_index, correct)
    return ChoiceSet(options=tuple(options), correct_index=correct_index)


def normalize_lengths(texts: Sequence[str], attempts_today: int) -> List[str]:
    """
    Cut long options down around the shortest one so the answer cannot be guessed
    from length alone. The more a user plays today, the shorter the excerpts get.
    Long strings are cut from the middle and marked with an ellipsis on both ends.
    """
    if not texts:
        return list(texts)

    shortest = min(len(t) for t in texts)
    factor = 1.0
    if attempts_today > 0:
        factor = max(0.1, 1 - attempts_today * 0.01)
    target = max(20, int(shortest * factor) + 20)

    result = []
    for text in texts:
        # a little slack so almost-equal strings stay intact
        if len(text) <= target + 20:
            result.append(text)
            continue
        start = (len(text) - target) // 2
        result.append(ELLIPSIS + text[start:start + target] + ELLIPSIS)
    return result


def build_none_of_the_above_set(
    correct: str,
    distractors: Iterable[str],
    rng: random.Random,
    *,
    size: int = 5,
    inclusion_probability: float = CORRECT_INCLUSION_PROBABILITY,
    attempts_today: Optional[int] = None,
) -> ChoiceSet:
    """
    Choice set whose last resort answer is NONE_OF_THE_ABOVE.

    With probability `inclusion_probability` the correct text is one of the
    options; otherwise it is left out and the sentinel becomes the correct pick.
    The sentinel is always present exactly once.
    """
    pool = _distinct(d for d in distractors if d != correct)
    include_correct = rng.random() < inclusion_probability
    needed = size - 2 if include_correct else size - 1
    if len(pool) < needed:
        raise InsufficientCandidatesError(
            f"need {needed} distinct distractors, only {len(pool)} available"
        )

    rng.shuffle(pool)
    texts = pool[:needed]
    if include_correct:
        texts = [correct] + texts
    if attempts_today is not None:
        texts = normalize_lengths(texts, attempts_today)

    correct_value = texts[0] if include_correct else NONE_OF_THE_ABOVE
    options = texts + [NONE_OF_THE_ABOVE]
    if len(set(options)) != len(options):
        raise InsufficientCandidatesError("options collapsed into duplicates after shortening")

    rng.shuffle(options)
    return ChoiceSet(options=tuple(options), correct_index=options.index(correct_value))


def adjacent_window(correct_position: int, total: int, size: int, rng: random.Random) -> List[int]:
    """
    Contiguous 1-based positions [start, start + size) containing correct_position.

    The correct position sits at a random offset inside the window, then the
    window is shifted to stay within 1..total.
    """
    if not 1 <= correct_position <= total:
        raise ValueError(f"position {correct_position} outside 1..{total}")
    if total <= size:
        return list(range(1, total + 1))

    start = correct_position - rng.randrange(size)
    start = max(1, min(start, total - size + 1))
    return list(range(start, start + size))


_TAG_RE = re.compile(r"<[^>]*>")
_FOOTNOTE_RE = re.compile(r"foot_note=\d+")
_SPACE_RE = re.compile(r"\s+")


def clean_html(text: str) -> str:
    """Strip markup and footnote references from an API translation."""
    if not text:
        return text
    text = _TAG_RE.sub("", text)
    text = _FOOTNOTE_RE.sub("", text)
    return _SPACE_RE.sub(" ", text).strip()


# ------------------ bounded content search ------------------

async def first_matching(
    produce: Callable[[], Awaitable[Any]],
    predicate: Callable[[Any], bool],
    max_pulls: int = MAX_CONTENT_PULLS,
) -> Any:
    """Pull candidates lazily until one satisfies predicate; give up after max_pulls."""
    for pull in range(1, max_pulls + 1):
        try:
            candidate = await produce()
        except ContentSourceError as e:
            logger.warning("content pull %d/%d failed: %s", pull, max_pulls, e)
            continue
        if candidate is not None and predicate(candidate):
            return candidate
    raise InsufficientCandidatesError(f"no suitable content after {max_pulls} pulls")


async def collect_distinct(
    produce: Callable[[], Awaitable[Any]],
    count: int,
    max_pulls: int,
    exclude: Iterable[Hashable] = (),
) -> List[Any]:
    """
    Gather up to `count` distinct values from produce, pulling at most max_pulls
    times. Returns whatever was found; the caller decides whether it is enough.
    """
    seen = set(exclude)
    found: List[Any] = []
    for pull in range(1, max_pulls + 1):
        if len(found) >= count:
            break
        try:
            value = await produce()
        except ContentSourceError as e:
            logger.warning("distractor pull %d/%d failed: %s", pull, max_pulls, e)
            continue
        if value is None or value in seen:
            continue
        seen.add(value)
        found.append(value)
    return found
