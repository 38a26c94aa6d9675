"""Caller-owned memory of recent stories used to steer new ones away from them."""

from collections import deque
from typing import Iterable

from ..models.story import StoryRecord
from ..utils.text import normalize_whitespace

SNIPPET_LINES = 3
SNIPPET_MAX_CHARS = 240
INTRO_LINES = 12


def extract_snippet(text: str, signature: str = "") -> str:
    """Pick a few lines just past the intro as a recognisable excerpt."""
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line and line != signature]
    if not lines:
        return ""
    if len(lines) > INTRO_LINES:
        start = INTRO_LINES
    else:
        start = max(0, len(lines) - SNIPPET_LINES)
    snippet = normalize_whitespace(" ".join(lines[start:start + SNIPPET_LINES]))
    if len(snippet) > SNIPPET_MAX_CHARS:
        return snippet[:SNIPPET_MAX_CHARS] + "..."
    return snippet


def fingerprint(text: str, topic: str = "", signature: str = "") -> str:
    parts = []
    topic = topic.strip()
    if topic:
        parts.append(f'Topic: "{topic}"')
    snippet = extract_snippet(text, signature)
    if snippet:
        parts.append(f'Snippet: "{snippet}"')
    return " | ".join(parts)


class AnchorHistory:
    """Bounded ring buffer of story fingerprints, newest last.

    One instance per caller (CLI session, UI). Nothing here is global, so two
    generators never see each other's history.
    """

    def __init__(self, capacity: int = 16, signature: str = ""):
        self._items: deque[str] = deque(maxlen=max(1, capacity))
        self.signature = signature

    def __len__(self) -> int:
        return len(self._items)

    def add(self, text: str, topic: str = "") -> str:
        anchor = fingerprint(text, topic, self.signature)
        if anchor:
            self._items.append(anchor)
        return anchor

    def add_records(self, records: Iterable[StoryRecord], language: str | None = None) -> None:
        """Seed from stored stories, oldest first so the newest end up on top."""
        ordered = sorted(records, key=lambda record: record.created_at)
        for record in ordered:
            if language and record.language != language:
                continue
            if record.text.strip():
                self.add(record.text, record.topic)

    def anchors(self, limit: int = 4) -> tuple[str, ...]:
        return normalize_anchors(reversed(self._items), limit)

    def clear(self) -> None:
        self._items.clear()


def normalize_anchors(anchors: Iterable[str], limit: int) -> tuple[str, ...]:
    """Collapse whitespace, drop blanks and duplicates, keep at most ``limit``."""
    if limit <= 0:
        return ()
    seen = set()
    result = []
    for anchor in anchors:
        anchor = normalize_whitespace(anchor)
        if not anchor or anchor in seen:
            continue
        seen.add(anchor)
        result.append(anchor)
        if len(result) >= limit:
            break
    return tuple(result)
