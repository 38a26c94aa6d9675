"""Multi-pass generation loop.

Drives sequential passes (first, continuation, emergency finalize) until the
closing signature appears or the pass/length budgets are exhausted::

    NOT_STARTED -> STREAMING -> COMPLETE | INCOMPLETE | PAUSED | FAILED

Word counts are recomputed from the full accumulated text after every pass.
All nondeterminism lives in the prompt/model layer: replaying the same model
outputs produces the same text and the same terminal state.
"""

import time
from typing import Callable

from loguru import logger

from ..errors import GenerationAborted, GenerationError, StallError
from ..models.generation import (
    CompletionState,
    GenerationOutcome,
    GenerationRequest,
    LengthBudget,
    PassKind,
    PassLog,
    PassReason,
)
from ..utils.text import count_words
from .budget import PacingState, StopPredicate, pacing_state
from .outro import OutroDetector
from .pass_runner import PassRunner, StoryBuffer
from .prompts import PromptContext, PromptStrategy

TextCallback = Callable[[str], None]


def _noop(text: str) -> None:
    pass


class MultiPassOrchestrator:
    def __init__(
        self,
        runner: PassRunner,
        detector: OutroDetector,
        prompts: PromptStrategy | None = None,
        *,
        max_passes: int = 12,
        context_words: int = 320,
        emergency_overage: int = 500,
    ):
        self.runner = runner
        self.detector = detector
        self.prompts = prompts or PromptStrategy.default()
        self.max_passes = max(1, int(max_passes))
        self.context_words = context_words
        self.emergency_overage = emergency_overage
        self.state = CompletionState.NOT_STARTED

    def _context(
        self, request: GenerationRequest, budget: LengthBudget, text: str, finalize: bool = False
    ) -> PromptContext:
        return PromptContext(
            request=request,
            budget=budget,
            signature=self.detector.signature,
            text=text,
            finalize=finalize,
            context_words=self.context_words,
        )

    async def run(
        self,
        request: GenerationRequest,
        budget: LengthBudget,
        *,
        on_chunk: TextCallback = _noop,
        on_reasoning: TextCallback | None = None,
    ) -> GenerationOutcome:
        """Run one attempt.

        Raises a ``GenerationError`` carrying the accumulated text when the
        attempt is aborted (state PAUSED) or fails (state FAILED).
        """
        buffer = StoryBuffer(request.existing_text if request.is_resume else "")
        stop = StopPredicate(budget, self.emergency_overage)
        passes: list[PassLog] = []
        token = request.cancel_token
        self.state = CompletionState.STREAMING

        def repair(text: str):
            return self.prompts.repair.build(self._context(request, budget, text))

        async def run_pass(index: int, kind: PassKind, messages, emergency: bool) -> PassLog:
            words_before = count_words(buffer.text)
            logger.info(f"Pass {index + 1}/{self.max_passes} ({kind.value}) starting at {words_before} words")
            start = time.monotonic()
            log = PassLog(pass_index=index, kind=kind, words_before=words_before)
            try:
                result = await self.runner.run(
                    messages,
                    stop,
                    buffer,
                    emergency=emergency,
                    on_delta=on_chunk,
                    on_reasoning=on_reasoning,
                    cancel_token=token,
                    repair=repair if emergency else None,
                )
                log.reason = result.reason
                if result.repaired:
                    log.kind = PassKind.REPAIR
            except GenerationAborted:
                log.reason = PassReason.ABORTED
                raise
            finally:
                log.words_after = count_words(buffer.text)
                log.elapsed_seconds = round(time.monotonic() - start, 2)
                passes.append(log)
            logger.info(
                f"Pass {index + 1} ended ({log.reason.value}): "
                f"{log.words_before} -> {log.words_after} words in {log.elapsed_seconds}s"
            )
            return log

        async def emergency_pass(index: int, cause: str) -> None:
            logger.warning(f"Story incomplete ({cause}), forcing emergency outro")
            messages = self.prompts.emergency.build(self._context(request, budget, buffer.text))
            await run_pass(index, PassKind.EMERGENCY, messages, emergency=True)

        try:
            for index in range(self.max_passes):
                if token.cancelled:
                    raise GenerationAborted(partial_text=buffer.text)
                if self.detector.has_terminal_signature(buffer.text):
                    break

                words = count_words(buffer.text)
                is_last = index == self.max_passes - 1
                if words >= budget.hard_max_words:
                    await emergency_pass(index, "hard max reached before pass")
                    break

                finalize = (
                    words >= budget.min_words
                    or is_last
                    or self.detector.approaching_ending(buffer.text)
                )
                if words == 0:
                    kind = PassKind.FIRST
                    messages = self.prompts.first.build(self._context(request, budget, buffer.text))
                else:
                    kind = PassKind.FINALIZE if finalize else PassKind.CONTINUE
                    messages = self.prompts.continuation.build(
                        self._context(request, budget, buffer.text, finalize=finalize)
                    )

                log = await run_pass(index, kind, messages, emergency=False)

                if self.detector.has_terminal_signature(buffer.text):
                    break
                if log.words_after <= log.words_before:
                    logger.warning(f"Pass {index + 1} generated no new words, stopping")
                    raise StallError(
                        f"Pass {index + 1} produced no new text", partial_text=buffer.text
                    )

                hit_hard_max = log.words_after >= budget.hard_max_words
                overtime = pacing_state(log.words_after, budget) is PacingState.OVERTIME
                if is_last or hit_hard_max or overtime:
                    cause = "last pass" if is_last else "hard max" if hit_hard_max else "overtime"
                    await emergency_pass(index + 1, cause)
                    break
        except GenerationAborted as exc:
            self.state = CompletionState.PAUSED
            exc.partial_text = buffer.text
            raise
        except GenerationError as exc:
            self.state = CompletionState.FAILED
            exc.partial_text = buffer.text
            raise
        except Exception:
            self.state = CompletionState.FAILED
            raise

        words = count_words(buffer.text)
        if self.detector.has_terminal_signature(buffer.text):
            self.state = CompletionState.COMPLETE
            if words < budget.min_words:
                logger.info(f"Story completed at {words} words (below minimum {budget.min_words})")
            logger.success(f"Story complete: {words} words in {len(passes)} passes")
        else:
            self.state = CompletionState.INCOMPLETE
            logger.warning(f"Story ended at {words} words without the closing signature")
        if words > budget.hard_max_words:
            logger.warning(f"Story ended with {words} words, above hard max {budget.hard_max_words}")

        return GenerationOutcome(
            state=self.state,
            text=buffer.text,
            new_text=buffer.new_text,
            words=words,
            passes=passes,
        )
