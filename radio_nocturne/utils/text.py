"""Text helpers shared by the budget, prompt and orchestration code."""

import re

_WS = re.compile(r"\s+")
_TOKEN = re.compile(r"\S+")


def count_words(text: str) -> int:
    """Count whitespace-delimited tokens after collapsing whitespace runs."""
    return len(text.split())


def join_word_count(left: str, left_count: int, right: str) -> int:
    """Word count of ``left + right`` given the count of ``left``.

    Only the seam can merge two tokens into one, so the right side is counted
    on its own and one word is subtracted when both sides touch without
    whitespace between them.
    """
    right_count = count_words(right)
    if (
        left_count
        and right_count
        and left
        and not left[-1].isspace()
        and not right[0].isspace()
    ):
        return left_count + right_count - 1
    return left_count + right_count


def clip_to_words(left: str, left_count: int, right: str, limit: int) -> str:
    """Longest prefix of ``right`` keeping ``left + prefix`` within ``limit`` words.

    The prefix ends on a word boundary. A token that merges with ``left``
    across the seam does not add a word.
    """
    merges = bool(
        left_count and left and right and not left[-1].isspace() and not right[0].isspace()
    )
    allowed = limit - left_count + (1 if merges else 0)
    end = 0
    for match in _TOKEN.finditer(right):
        if allowed <= 0:
            break
        allowed -= 1
        end = match.end()
    return right[:end]


def normalize_whitespace(text: str) -> str:
    return _WS.sub(" ", text).strip()


def context_snippet(text: str, max_words: int) -> str:
    """Return the last ``max_words`` words of text, whitespace-collapsed."""
    words = text.split()
    if not words or max_words <= 0:
        return ""
    return " ".join(words[-max_words:])

