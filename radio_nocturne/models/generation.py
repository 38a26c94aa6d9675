"""Data models for a single generation attempt."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from ..config import StoryPersonalization
from ..cancel import CancellationToken

Language = Literal["vi", "en"]


class CompletionState(str, Enum):
    NOT_STARTED = "not_started"
    STREAMING = "streaming"
    PAUSED = "paused"
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self not in (CompletionState.NOT_STARTED, CompletionState.STREAMING)


class PassReason(str, Enum):
    SIGNATURE = "signature"
    HARD_STOP = "hardStop"
    ABORTED = "aborted"
    STREAM_END = "streamEnd"


class PassKind(str, Enum):
    FIRST = "first"
    CONTINUE = "continue"
    FINALIZE = "finalize"
    EMERGENCY = "emergency"
    REPAIR = "repair"


@dataclass(frozen=True)
class LengthBudget:
    target_words: int
    min_words: int
    hard_max_words: int


@dataclass(frozen=True)
class GenerationRequest:
    topic: str = ""
    language: Language = "vi"
    personalization: StoryPersonalization = field(default_factory=StoryPersonalization)
    existing_text: str = ""
    cache_anchors: tuple[str, ...] = ()
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    seed: str = ""

    @property
    def is_resume(self) -> bool:
        return bool(self.existing_text.strip())


@dataclass
class PassResult:
    delta_text: str = ""
    stopped_early: bool = False
    reason: PassReason = PassReason.STREAM_END
    repaired: bool = False


@dataclass
class PassLog:
    pass_index: int = 0
    kind: PassKind = PassKind.FIRST
    reason: PassReason = PassReason.STREAM_END
    words_before: int = 0
    words_after: int = 0
    elapsed_seconds: float = 0.0


@dataclass
class GenerationOutcome:
    state: CompletionState = CompletionState.NOT_STARTED
    text: str = ""
    new_text: str = ""
    words: int = 0
    passes: list[PassLog] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.state is CompletionState.COMPLETE
