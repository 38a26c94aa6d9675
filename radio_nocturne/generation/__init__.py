from .background import (
    BackgroundJob,
    BackgroundState,
    BackgroundStoryService,
    ListenerHandle,
    LocalBackgroundService,
    run_background,
)
from .budget import PacingState, StopPredicate, build_budget, pacing_state, usage_ratio
from .history import AnchorHistory, fingerprint, normalize_anchors
from .orchestrator import MultiPassOrchestrator
from .outro import ExactOutroMatcher, FuzzyOutroMatcher, OutroDetector, TruncateResult
from .pass_runner import PassRunner, StoryBuffer
from .prompts import PromptContext, PromptStrategy
from .selector import StoryGenerator
from .transport import ChatCompletionClient, ChunkDelta, CompletionOptions, CompletionTransport, SSEDecoder
from .utility import complete_with_outro, generate_title, generate_topics

__all__ = [
    "BackgroundJob",
    "BackgroundState",
    "BackgroundStoryService",
    "ListenerHandle",
    "LocalBackgroundService",
    "run_background",
    "PacingState",
    "StopPredicate",
    "build_budget",
    "pacing_state",
    "usage_ratio",
    "AnchorHistory",
    "fingerprint",
    "normalize_anchors",
    "MultiPassOrchestrator",
    "ExactOutroMatcher",
    "FuzzyOutroMatcher",
    "OutroDetector",
    "TruncateResult",
    "PassRunner",
    "StoryBuffer",
    "PromptContext",
    "PromptStrategy",
    "StoryGenerator",
    "ChatCompletionClient",
    "ChunkDelta",
    "CompletionOptions",
    "CompletionTransport",
    "SSEDecoder",
    "complete_with_outro",
    "generate_title",
    "generate_topics",
]
