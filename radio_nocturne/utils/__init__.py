from .logger import setup_logger
from .text import clip_to_words, context_snippet, count_words, join_word_count, normalize_whitespace

__all__ = [
    "setup_logger",
    "clip_to_words",
    "context_snippet",
    "count_words",
    "join_word_count",
    "normalize_whitespace",
]
