from .generation import (
    CompletionState,
    GenerationOutcome,
    GenerationRequest,
    Language,
    LengthBudget,
    PassKind,
    PassLog,
    PassReason,
    PassResult,
)
from .story import StoryRecord

__all__ = [
    "CompletionState",
    "GenerationOutcome",
    "GenerationRequest",
    "Language",
    "LengthBudget",
    "PassKind",
    "PassLog",
    "PassReason",
    "PassResult",
    "StoryRecord",
]
