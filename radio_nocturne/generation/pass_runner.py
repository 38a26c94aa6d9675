"""One bounded streaming request against the completion endpoint."""

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import Callable

from loguru import logger

from ..cancel import CancellationToken
from ..errors import GenerationAborted, GenerationTimeout
from ..models.generation import PassReason, PassResult
from ..utils.text import clip_to_words, count_words, join_word_count
from .budget import StopPredicate
from .outro import OutroDetector
from .transport import CompletionOptions, CompletionTransport, Message

TextCallback = Callable[[str], None]
RepairBuilder = Callable[[str], list[Message]]


class StoryBuffer:
    """Accumulated text of one attempt.

    Append-only, apart from the signature truncation which happens before a
    chunk is appended. The running word count is maintained across appends.
    """

    def __init__(self, initial: str = ""):
        self._text = initial
        self._words = count_words(initial)
        self.new_text = ""

    @property
    def text(self) -> str:
        return self._text

    @property
    def words(self) -> int:
        return self._words

    def words_with(self, chunk: str) -> int:
        return join_word_count(self._text, self._words, chunk)

    def append(self, chunk: str) -> None:
        self._words = self.words_with(chunk)
        self._text += chunk
        self.new_text += chunk


@dataclass
class _PassProgress:
    delta: str = ""
    reason: PassReason = PassReason.STREAM_END
    signature_reached: bool = False


class PassRunner:
    def __init__(
        self,
        transport: CompletionTransport,
        detector: OutroDetector,
        options: CompletionOptions,
        timeout_s: float = 12 * 60,
    ):
        self.transport = transport
        self.detector = detector
        self.options = options
        self.timeout_s = timeout_s

    async def run(
        self,
        messages: list[Message],
        stop: StopPredicate,
        buffer: StoryBuffer,
        *,
        emergency: bool = False,
        on_delta: TextCallback,
        on_reasoning: TextCallback | None = None,
        cancel_token: CancellationToken | None = None,
        repair: RepairBuilder | None = None,
    ) -> PassResult:
        """Stream one pass into ``buffer``.

        Raises:
            GenerationAborted: ``cancel_token`` fired during the pass.
            GenerationTimeout: the pass exceeded ``timeout_s``.
            TransportError: the endpoint failed.
        """
        if self.detector.has_terminal_signature(buffer.text):
            logger.debug("Signature already present, skipping pass")
            return PassResult(reason=PassReason.SIGNATURE, stopped_early=True)

        result = await self._stream_once(
            messages, stop, buffer, emergency, on_delta, on_reasoning, cancel_token
        )
        if (
            emergency
            and repair is not None
            and result.reason is PassReason.STREAM_END
            and not self.detector.has_terminal_signature(buffer.text)
        ):
            logger.warning("Emergency outro ended without signature, forcing one repair continuation")
            repaired = await self._stream_once(
                repair(buffer.text), stop, buffer, True, on_delta, on_reasoning, cancel_token
            )
            return PassResult(
                delta_text=result.delta_text + repaired.delta_text,
                stopped_early=repaired.stopped_early,
                reason=repaired.reason,
                repaired=True,
            )
        return result

    async def _stream_once(
        self,
        messages: list[Message],
        stop: StopPredicate,
        buffer: StoryBuffer,
        emergency: bool,
        on_delta: TextCallback,
        on_reasoning: TextCallback | None,
        cancel_token: CancellationToken | None,
    ) -> PassResult:
        loop = asyncio.get_running_loop()
        progress = _PassProgress()
        task = asyncio.create_task(
            self._consume(messages, stop, buffer, emergency, on_delta, on_reasoning, progress)
        )

        timed_out = False

        def on_timeout() -> None:
            nonlocal timed_out
            timed_out = True
            task.cancel()

        timer = loop.call_later(self.timeout_s, on_timeout) if self.timeout_s > 0 else None
        unlink = (
            cancel_token.add_callback(lambda: loop.call_soon_threadsafe(task.cancel))
            if cancel_token is not None
            else None
        )
        start = time.monotonic()
        try:
            await task
        except asyncio.CancelledError:
            if timed_out:
                logger.error(f"Pass timed out after {self.timeout_s:.0f}s")
                raise GenerationTimeout(partial_text=buffer.text) from None
            if cancel_token is not None and cancel_token.cancelled:
                logger.info(f"Pass aborted at {buffer.words} words")
                raise GenerationAborted(partial_text=buffer.text) from None
            raise
        finally:
            if timer is not None:
                timer.cancel()
            if unlink is not None:
                unlink()

        logger.debug(
            f"Pass stream ended: reason={progress.reason.value} "
            f"words={buffer.words} elapsed={time.monotonic() - start:.1f}s"
        )
        return PassResult(
            delta_text=progress.delta,
            stopped_early=progress.reason is not PassReason.STREAM_END,
            reason=progress.reason,
        )

    async def _consume(
        self,
        messages: list[Message],
        stop: StopPredicate,
        buffer: StoryBuffer,
        emergency: bool,
        on_delta: TextCallback,
        on_reasoning: TextCallback | None,
        progress: _PassProgress,
    ) -> None:
        async with aclosing(self.transport.stream(messages, self.options)) as deltas:
            async for delta in deltas:
                if delta.reasoning and on_reasoning is not None:
                    on_reasoning(delta.reasoning)
                if not delta.text:
                    continue
                # Late chunks after logical completion are dropped
                if progress.signature_reached:
                    continue
                if self._accept(delta.text, stop, buffer, emergency, on_delta, progress):
                    break

    def _accept(
        self,
        chunk: str,
        stop: StopPredicate,
        buffer: StoryBuffer,
        emergency: bool,
        on_delta: TextCallback,
        progress: _PassProgress,
    ) -> bool:
        """Apply one chunk; return True when the read should stop."""
        truncation = self.detector.truncate_at_signature(buffer.text + chunk)
        if truncation.truncated:
            piece = truncation.text[len(buffer.text):]
            if piece:
                buffer.append(piece)
                progress.delta += piece
                on_delta(piece)
            progress.signature_reached = True
            progress.reason = PassReason.SIGNATURE
            logger.info("Outro signature reached mid-stream, stopping pass")
            return True

        ceiling = stop.ceiling(emergency)
        if buffer.words_with(chunk) > ceiling:
            # Keep the words that still fit; the rest of the chunk is dropped
            chunk = clip_to_words(buffer.text, buffer.words, chunk, ceiling)
            if chunk:
                buffer.append(chunk)
                progress.delta += chunk
                on_delta(chunk)
            progress.reason = PassReason.HARD_STOP
            logger.info(f"Word ceiling {ceiling} reached mid-chunk, stopping pass")
            return True

        buffer.append(chunk)
        progress.delta += chunk
        on_delta(chunk)

        if self.detector.has_terminal_signature(buffer.text):
            progress.signature_reached = True
            progress.reason = PassReason.SIGNATURE
            logger.info("Outro signature detected, stopping pass")
            return True
        if stop(buffer.words, emergency):
            progress.reason = PassReason.HARD_STOP
            logger.info(f"Word ceiling {stop.ceiling(emergency)} reached, stopping pass")
            return True
        return False
