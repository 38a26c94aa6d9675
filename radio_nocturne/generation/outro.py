"""Closing-signature detection.

Exact matching of the configured signature is authoritative. Models sometimes
paraphrase the closing line, so an optional fuzzy strategy also accepts a
tail window that names the host and contains a closing phrase. The fuzzy
strategy trades precision for recall: ordinary narrative that mentions the
host near a farewell-sounding phrase will also match.
"""

from dataclasses import dataclass
from typing import Protocol, Sequence

from ..config import OutroConfig


class OutroMatcher(Protocol):
    def matches(self, text: str) -> bool: ...


@dataclass(frozen=True)
class ExactOutroMatcher:
    signature: str

    def matches(self, text: str) -> bool:
        return bool(self.signature) and self.signature in text


@dataclass(frozen=True)
class FuzzyOutroMatcher:
    host_phrases: Sequence[str]
    closing_phrases: Sequence[str]
    tail_chars: int = 1000

    def matches(self, text: str) -> bool:
        trimmed = text.strip()
        if not trimmed:
            return False
        tail = trimmed[-self.tail_chars:].lower()
        if not any(phrase.lower() in tail for phrase in self.host_phrases):
            return False
        return any(phrase.lower() in tail for phrase in self.closing_phrases)


@dataclass(frozen=True)
class TruncateResult:
    text: str
    truncated: bool


class OutroDetector:
    def __init__(
        self,
        signature: str,
        fuzzy: FuzzyOutroMatcher | None = None,
        approach_phrases: Sequence[str] = (),
        approach_tail_chars: int = 800,
        approach_min_chars: int = 1000,
    ):
        if not signature:
            raise ValueError("signature must be a non-empty string")
        self.signature = signature
        self.exact = ExactOutroMatcher(signature)
        self.fuzzy = fuzzy
        self.approach_phrases = tuple(p.lower() for p in approach_phrases)
        self.approach_tail_chars = approach_tail_chars
        self.approach_min_chars = approach_min_chars

    @classmethod
    def from_config(cls, config: OutroConfig) -> "OutroDetector":
        fuzzy = None
        if config.fuzzy:
            fuzzy = FuzzyOutroMatcher(
                host_phrases=tuple(config.host_phrases),
                closing_phrases=tuple(config.closing_phrases),
                tail_chars=config.tail_chars,
            )
        return cls(
            config.signature,
            fuzzy=fuzzy,
            approach_phrases=config.approach_phrases,
            approach_tail_chars=config.approach_tail_chars,
            approach_min_chars=config.approach_min_chars,
        )

    def has_exact_signature(self, text: str) -> bool:
        return self.exact.matches(text)

    def has_terminal_signature(self, text: str) -> bool:
        if self.exact.matches(text):
            return True
        return self.fuzzy is not None and self.fuzzy.matches(text)

    def truncate_at_signature(self, text: str) -> TruncateResult:
        """Drop everything after the last exact occurrence of the signature."""
        idx = text.rfind(self.signature)
        if idx == -1:
            return TruncateResult(text, False)
        end = idx + len(self.signature)
        if end >= len(text):
            return TruncateResult(text, False)
        return TruncateResult(text[:end], True)

    def approaching_ending(self, text: str) -> bool:
        """Host voice showing up in the tail means the story is wrapping up."""
        if len(text) < self.approach_min_chars or not self.approach_phrases:
            return False
        tail = text[-self.approach_tail_chars:].lower()
        return any(phrase in tail for phrase in self.approach_phrases)
