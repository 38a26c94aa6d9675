"""Word budget derivation and pacing signals."""

from enum import Enum

from ..config import BudgetConfig
from ..models.generation import LengthBudget


class PacingState(str, Enum):
    EARLY = "early"
    ESCALATE = "escalate"
    CONVERGE = "converge"
    OVERTIME = "overtime"


ESCALATE_RATIO = 0.6
CONVERGE_RATIO = 0.9
OVERTIME_RATIO = 1.1


def _clamp(value: int, low: int, high: int) -> int:
    return min(high, max(low, value))


def build_budget(target_words_raw: float, config: BudgetConfig | None = None) -> LengthBudget:
    """Clamp a user target into the global range and derive min/hard-max bounds."""
    config = config or BudgetConfig()
    low, high = config.target_min_words, max(config.target_min_words, config.target_max_words)

    target = _clamp(int(round(target_words_raw)), low, high)
    min_words = _clamp(target - config.min_offset, low, high)
    hard_max = _clamp(target + config.max_offset, low, high)
    return LengthBudget(
        target_words=target,
        min_words=min_words,
        hard_max_words=max(hard_max, min_words),
    )


def usage_ratio(words_so_far: int, budget: LengthBudget) -> float:
    if budget.target_words <= 0:
        return 0.0
    return words_so_far / budget.target_words


def pacing_state(words_so_far: int, budget: LengthBudget) -> PacingState:
    ratio = usage_ratio(words_so_far, budget)
    if ratio > OVERTIME_RATIO:
        return PacingState.OVERTIME
    if ratio >= CONVERGE_RATIO:
        return PacingState.CONVERGE
    if ratio >= ESCALATE_RATIO:
        return PacingState.ESCALATE
    return PacingState.EARLY


class StopPredicate:
    """Per-attempt word ceiling check, ``predicate(words, emergency) -> stop?``.

    Emergency passes get ``overage`` extra words so the model has room to
    finish the closing line instead of being cut off mid-sentence.
    """

    def __init__(self, budget: LengthBudget, overage: int = 0):
        self.budget = budget
        self.overage = overage

    def ceiling(self, emergency: bool) -> int:
        if emergency:
            return self.budget.hard_max_words + self.overage
        return self.budget.hard_max_words

    def __call__(self, words: int, emergency: bool) -> bool:
        return words >= self.ceiling(emergency)
