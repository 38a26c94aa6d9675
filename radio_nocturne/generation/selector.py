"""Entry point for story generation.

:class:`StoryGenerator` picks the background service when one is available
and allowed, otherwise streams in the foreground. Either way the caller gets
the same contract: ``on_chunk`` deltas plus the newly generated text, and
only :class:`~radio_nocturne.errors.GenerationError` subclasses on failure.
"""

import asyncio
from dataclasses import replace
from typing import AsyncIterator, Callable

from loguru import logger

from ..cancel import CancellationToken
from ..config import ApiConfig, Config, GenerationConfig, StorySettings
from ..errors import GenerationAborted, GenerationError, normalize_error
from ..models.generation import (
    CompletionState,
    GenerationOutcome,
    GenerationRequest,
    Language,
    LengthBudget,
)
from ..models.story import StoryRecord
from ..store import StoryStore
from ..utils.text import count_words
from .background import BackgroundJob, BackgroundStoryService, LocalBackgroundService, run_background
from .budget import build_budget
from .history import AnchorHistory, normalize_anchors
from .orchestrator import MultiPassOrchestrator, TextCallback, _noop
from .outro import OutroDetector
from .pass_runner import PassRunner
from .prompts import PromptStrategy
from .transport import ChatCompletionClient, CompletionOptions, CompletionTransport
from .utility import complete_with_outro, generate_title

TransportFactory = Callable[[ApiConfig], CompletionTransport]


def story_options(api: ApiConfig, settings: StorySettings) -> CompletionOptions:
    return CompletionOptions(
        model=settings.model or api.model,
        temperature=settings.temperature if settings.temperature is not None else api.temperature,
        top_p=api.top_p,
        max_tokens=max(api.max_tokens, 4096),
    )


class StoryGenerator:
    def __init__(
        self,
        config: Config | None = None,
        *,
        transport: CompletionTransport | None = None,
        transport_factory: TransportFactory | None = None,
        background: BackgroundStoryService | None = None,
        settings: StorySettings | None = None,
        store: StoryStore | None = None,
        prompts: PromptStrategy | None = None,
        history: AnchorHistory | None = None,
    ):
        self.config = config or Config()
        self.transport_factory = transport_factory or ChatCompletionClient
        self._transport = transport
        self.background = background
        self.settings = settings or self.config.settings
        self.store = store
        self.prompts = prompts or PromptStrategy.default()
        self.history = history
        self.detector = OutroDetector.from_config(self.config.outro)

    @property
    def transport(self) -> CompletionTransport:
        if self._transport is None:
            self._transport = self.transport_factory(self.config.api)
        return self._transport

    def use_local_background(self) -> LocalBackgroundService:
        """Attach an in-process background service running this generator's protocol."""
        self.background = LocalBackgroundService(self._run_job)
        return self.background

    async def aclose(self) -> None:
        aclose = getattr(self._transport, "aclose", None)
        if aclose is not None:
            await aclose()

    def _orchestrator(
        self,
        transport: CompletionTransport,
        api: ApiConfig,
        settings: StorySettings,
        generation: GenerationConfig | None = None,
    ) -> MultiPassOrchestrator:
        gen = generation or self.config.generation
        runner = PassRunner(
            transport, self.detector, story_options(api, settings), timeout_s=gen.pass_timeout_s
        )
        return MultiPassOrchestrator(
            runner,
            self.detector,
            self.prompts,
            max_passes=gen.max_passes,
            context_words=gen.context_words,
            emergency_overage=gen.emergency_overage_words,
        )

    def prepare(self, request: GenerationRequest) -> tuple[GenerationRequest, LengthBudget]:
        """Resolve anchors and the word budget for one attempt."""
        limit = self.config.generation.max_cache_anchors
        anchors = request.cache_anchors
        if not anchors and self.history is not None:
            anchors = self.history.anchors(limit)
        request = replace(request, cache_anchors=normalize_anchors(anchors, limit))
        budget = build_budget(request.personalization.target_words, self.config.budget)
        return request, budget

    async def _run_job(self, job: BackgroundJob, on_chunk: TextCallback) -> GenerationOutcome:
        transport = self.transport_factory(job.api)
        try:
            orchestrator = self._orchestrator(transport, job.api, StorySettings(), job.generation)
            return await orchestrator.run(job.request, job.budget, on_chunk=on_chunk)
        finally:
            aclose = getattr(transport, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _background_available(self, settings: StorySettings) -> bool:
        if self.background is None or not settings.allow_background_generation:
            return False
        try:
            return bool(await self.background.is_supported())
        except Exception as exc:
            logger.warning(f"Background support check failed: {exc}")
            return False

    async def _run_background(
        self,
        request: GenerationRequest,
        budget: LengthBudget,
        settings: StorySettings,
        on_chunk: TextCallback,
    ) -> GenerationOutcome | None:
        api = self.config.api.model_copy(
            update={
                "model": settings.model or self.config.api.model,
                "temperature": (
                    settings.temperature
                    if settings.temperature is not None
                    else self.config.api.temperature
                ),
            }
        )
        job = BackgroundJob(
            request=replace(request, cancel_token=CancellationToken()),
            budget=budget,
            api=api,
            generation=self.config.generation,
            outro=self.config.outro,
        )
        logger.info("Generating story with background service")
        try:
            new_text = await run_background(
                self.background,
                job,
                on_chunk=on_chunk,
                cancel_token=request.cancel_token,
                config=self.config.background,
            )
        except GenerationAborted:
            raise
        except GenerationError as exc:
            logger.warning(f"Background generation failed ({exc.kind.value}): {exc}; falling back to foreground")
            return None
        if not new_text:
            logger.warning("Background generation returned no text; falling back to foreground")
            return None

        full_text = request.existing_text + new_text
        complete = self.detector.has_terminal_signature(full_text)
        return GenerationOutcome(
            state=CompletionState.COMPLETE if complete else CompletionState.INCOMPLETE,
            text=full_text,
            new_text=new_text,
            words=count_words(full_text),
        )

    async def run(
        self,
        request: GenerationRequest,
        *,
        on_chunk: TextCallback = _noop,
        on_reasoning: TextCallback | None = None,
    ) -> GenerationOutcome:
        """Run one attempt and return its full outcome."""
        settings = self.settings.snapshot()
        request, budget = self.prepare(request)
        logger.info(
            f"Story attempt: target {budget.target_words} words "
            f"(min {budget.min_words}, hard max {budget.hard_max_words}), "
            f"{'resume' if request.is_resume else 'new story'}"
        )
        partial = request.existing_text
        received = []

        def forward(text: str) -> None:
            received.append(text)
            on_chunk(text)

        try:
            if request.cancel_token.cancelled:
                raise GenerationAborted(partial_text=partial)

            outcome = None
            if await self._background_available(settings):
                outcome = await self._run_background(request, budget, settings, forward)
                if outcome is None and received:
                    # Resume from the chunks the background attempt already delivered.
                    request = replace(request, existing_text=partial + "".join(received))

            if outcome is None:
                orchestrator = self._orchestrator(self.transport, self.config.api, settings)
                outcome = await orchestrator.run(
                    request, budget, on_chunk=forward, on_reasoning=on_reasoning
                )
                if request.existing_text != partial:
                    outcome.new_text = outcome.text[len(partial):]

            if (
                outcome.state is CompletionState.INCOMPLETE
                and self.config.generation.auto_complete_outro
                and outcome.words >= budget.min_words
            ):
                outcome = await self._append_outro(outcome, request.language, forward)
        except Exception as exc:
            error = normalize_error(exc, partial + "".join(received))
            if error is exc:
                raise
            raise error from exc

        await self._settle(request, outcome)
        return outcome

    async def _append_outro(
        self, outcome: GenerationOutcome, language: Language, on_chunk: TextCallback
    ) -> GenerationOutcome:
        completed = await self.complete_with_outro(outcome.text, language)
        extra = completed[len(outcome.text):]
        if extra:
            on_chunk(extra)
        complete = self.detector.has_terminal_signature(completed)
        return replace(
            outcome,
            state=CompletionState.COMPLETE if complete else CompletionState.INCOMPLETE,
            text=completed,
            new_text=outcome.new_text + extra,
            words=count_words(completed),
        )

    async def _settle(self, request: GenerationRequest, outcome: GenerationOutcome) -> None:
        if self.history is not None and outcome.complete:
            self.history.add(outcome.text, request.topic)
        if self.store is None:
            return
        record = StoryRecord(
            topic=request.topic,
            title=await generate_title(
                request.language,
                request.topic,
                outcome.text,
                transport=self.transport,
                api=self.config.api,
            ),
            language=request.language,
            text=outcome.text,
            complete=outcome.complete,
        )
        try:
            self.store.save(record)
        except OSError as exc:
            logger.error(f"Failed to save story: {exc}")

    async def generate(
        self,
        request: GenerationRequest,
        *,
        on_chunk: TextCallback = _noop,
        on_reasoning: TextCallback | None = None,
    ) -> str:
        """Generate (or resume) a story and return only the new text."""
        outcome = await self.run(request, on_chunk=on_chunk, on_reasoning=on_reasoning)
        return outcome.new_text

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        """Yield story chunks as they arrive.

        Closing the iterator early cancels the request's token.
        """
        queue: asyncio.Queue = asyncio.Queue()
        done = object()
        task = asyncio.ensure_future(self.generate(request, on_chunk=queue.put_nowait))
        task.add_done_callback(lambda _: queue.put_nowait(done))
        try:
            while True:
                item = await queue.get()
                if item is done:
                    break
                yield item
            await task
        finally:
            if not task.done():
                request.cancel_token.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def complete_with_outro(self, text: str, language: Language = "vi") -> str:
        return await complete_with_outro(
            text,
            language,
            transport=self.transport,
            api=self.config.api,
            detector=self.detector,
            prompt=self.prompts.outro,
        )
