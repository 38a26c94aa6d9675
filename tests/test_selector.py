import asyncio

import httpx
import pytest

from radio_nocturne.cancel import CancellationToken
from radio_nocturne.config import (
    BackgroundConfig,
    BudgetConfig,
    Config,
    GenerationConfig,
    StoryPersonalization,
    StorySettings,
)
from radio_nocturne.errors import GenerationAborted, StallError, TransportError
from radio_nocturne.generation.background import BackgroundState, ListenerHandle
from radio_nocturne.generation.history import AnchorHistory
from radio_nocturne.generation.selector import StoryGenerator
from radio_nocturne.generation.utility import FALLBACK_OUTRO
from radio_nocturne.models.generation import CompletionState, GenerationRequest
from radio_nocturne.store import JsonlStoryStore

from conftest import SIG, ScriptedTransport, words


def make_config(**generation) -> Config:
    return Config(
        budget=BudgetConfig(target_min_words=10, target_max_words=500, min_offset=20, max_offset=20),
        generation=GenerationConfig(**generation),
        background=BackgroundConfig(poll_interval_s=0.01, idle_timeout_s=1.0),
    )


def make_request(**kwargs) -> GenerationRequest:
    kwargs.setdefault("personalization", StoryPersonalization(target_words=100))
    return GenerationRequest(**kwargs)


def generate(generator, request):
    chunks = []
    result = asyncio.run(generator.generate(request, on_chunk=chunks.append))
    return result, chunks


class EventService:
    """Background double that replays a list of (event, payload) on start."""

    def __init__(self, events, supported=True):
        self.events = events
        self.supported = supported
        self.listeners = {"chunk": [], "done": [], "error": []}
        self.started = []
        self.stop_calls = 0

    async def is_supported(self):
        return self.supported

    async def start(self, job):
        self.started.append(job)
        for event, payload in self.events:
            for callback in list(self.listeners[event]):
                callback(payload)

    async def stop(self):
        self.stop_calls += 1

    async def get_state(self):
        return BackgroundState(running=True)

    def add_listener(self, event, callback):
        self.listeners[event].append(callback)
        return ListenerHandle(lambda: self.listeners[event].remove(callback))


def background_settings(**kwargs) -> StorySettings:
    return StorySettings(allow_background_generation=True, **kwargs)


def test_foreground_generation_returns_new_text():
    transport = ScriptedTransport(["Hello world. ", SIG])
    generator = StoryGenerator(make_config(), transport=transport)

    result, chunks = generate(generator, make_request())

    assert result == "Hello world. " + SIG
    assert "".join(chunks) == result


def test_budget_follows_personalization():
    transport = ScriptedTransport(["x. " + SIG])
    generator = StoryGenerator(make_config(), transport=transport)

    asyncio.run(generator.run(make_request(personalization=StoryPersonalization(target_words=300))))

    prompt = transport.prompt(0)
    assert "about 300 words" in prompt
    assert "below 280 or above 320" in prompt


def test_settings_snapshot_used_for_whole_attempt():
    transport = ScriptedTransport([words(50)], [words(20)], [" end. " + SIG])
    settings = StorySettings(model="model-a", temperature=0.7)
    generator = StoryGenerator(make_config(), transport=transport, settings=settings)

    def on_chunk(text):
        generator.settings.model = "model-b"

    asyncio.run(generator.generate(make_request(), on_chunk=on_chunk))

    assert len(transport.calls) == 3
    assert {options.model for _, options in transport.calls} == {"model-a"}
    assert {options.temperature for _, options in transport.calls} == {0.7}


def test_background_empty_result_falls_back_to_foreground():
    service = EventService([("done", {"text": "", "is_final": False})])
    transport = ScriptedTransport(["Fallback story. " + SIG])
    generator = StoryGenerator(
        make_config(), transport=transport, background=service, settings=background_settings()
    )

    result, chunks = generate(generator, make_request())

    assert len(service.started) == 1
    assert result == "Fallback story. " + SIG
    assert "".join(chunks) == result
    assert len(transport.calls) == 1


def test_background_failure_falls_back_and_keeps_received_text():
    service = EventService([
        ("chunk", {"text": words(10)}),
        ("error", {"message": "service crashed", "aborted": False}),
    ])
    transport = ScriptedTransport([" Rest. " + SIG])
    generator = StoryGenerator(
        make_config(), transport=transport, background=service, settings=background_settings()
    )

    outcome = asyncio.run(generator.run(make_request()))

    assert outcome.complete
    assert outcome.text == words(10) + " Rest. " + SIG
    assert outcome.new_text == outcome.text
    assert "CONTINUATION MODE" in transport.prompt(0)


def test_background_success_skips_foreground():
    service = EventService([
        ("chunk", {"text": "Night. "}),
        ("chunk", {"text": SIG}),
        ("done", {"text": "Night. " + SIG, "is_final": True}),
    ])
    transport = ScriptedTransport(["never"])
    generator = StoryGenerator(
        make_config(), transport=transport, background=service, settings=background_settings()
    )

    outcome = asyncio.run(generator.run(make_request()))

    assert outcome.state is CompletionState.COMPLETE
    assert outcome.new_text == "Night. " + SIG
    assert transport.calls == []
    assert service.started[0].request.cancel_token is not None


def test_background_not_used_when_disallowed():
    service = EventService([("done", {"text": "bg", "is_final": True})])
    transport = ScriptedTransport(["fg. " + SIG])
    generator = StoryGenerator(make_config(), transport=transport, background=service)

    result, _ = generate(generator, make_request())

    assert service.started == []
    assert result == "fg. " + SIG


def test_background_not_used_when_unsupported():
    service = EventService([], supported=False)
    transport = ScriptedTransport(["fg. " + SIG])
    generator = StoryGenerator(
        make_config(), transport=transport, background=service, settings=background_settings()
    )

    generate(generator, make_request())
    assert service.started == []


def test_background_abort_does_not_fall_back():
    service = EventService([("error", {"message": "Aborted", "aborted": True})])
    transport = ScriptedTransport(["never"])
    generator = StoryGenerator(
        make_config(), transport=transport, background=service, settings=background_settings()
    )

    with pytest.raises(GenerationAborted):
        generate(generator, make_request())
    assert transport.calls == []


def test_local_background_service_end_to_end():
    transport = ScriptedTransport(["Worker story. ", SIG])
    generator = StoryGenerator(
        make_config(),
        transport_factory=lambda api: transport,
        settings=background_settings(model="bg-model"),
    )
    service = generator.use_local_background()

    result, chunks = generate(generator, make_request(existing_text="Once. "))
    service.join(1)

    assert result == "Worker story. " + SIG
    assert "".join(chunks) == result
    assert transport.calls[0][1].model == "bg-model"
    assert transport.closed


def test_transport_errors_are_normalized():
    transport = ScriptedTransport([" partial", httpx.ReadError("socket closed")])
    generator = StoryGenerator(make_config(), transport=transport)

    with pytest.raises(TransportError) as exc_info:
        generate(generator, make_request())
    assert exc_info.value.partial_text == " partial"


def test_unexpected_errors_are_normalized():
    transport = ScriptedTransport([RuntimeError("surprise")])
    generator = StoryGenerator(make_config(), transport=transport)

    with pytest.raises(TransportError):
        generate(generator, make_request())


def test_cancelled_request_is_aborted_without_calls():
    token = CancellationToken()
    token.cancel()
    transport = ScriptedTransport(["never"])
    generator = StoryGenerator(make_config(), transport=transport)

    with pytest.raises(GenerationAborted):
        generate(generator, make_request(cancel_token=token, existing_text="kept"))
    assert transport.calls == []


def test_stream_yields_chunks():
    transport = ScriptedTransport(["a ", "b. ", SIG])
    generator = StoryGenerator(make_config(), transport=transport)

    async def consume():
        return [chunk async for chunk in generator.stream(make_request())]

    assert asyncio.run(consume()) == ["a ", "b. ", SIG]


def test_stream_propagates_errors():
    transport = ScriptedTransport([])
    generator = StoryGenerator(make_config(), transport=transport)

    async def consume():
        return [chunk async for chunk in generator.stream(make_request())]

    with pytest.raises(StallError):
        asyncio.run(consume())


def test_auto_complete_outro_for_incomplete_story():
    transport = ScriptedTransport(
        [words(90)], [" more"], [" still"], ["Morgan closes the tape. " + SIG]
    )
    config = make_config(max_passes=1, auto_complete_outro=True)
    generator = StoryGenerator(config, transport=transport)

    outcome = asyncio.run(generator.run(make_request()))

    assert outcome.state is CompletionState.COMPLETE
    assert outcome.text.endswith("\n\nMorgan closes the tape. " + SIG)
    assert transport.calls[3][1].model == config.api.utility_model
    assert transport.calls[3][1].max_tokens == 500


def test_incomplete_story_returned_without_auto_outro():
    transport = ScriptedTransport([words(90)], [" more"], [" still"])
    generator = StoryGenerator(make_config(max_passes=1), transport=transport)

    outcome = asyncio.run(generator.run(make_request()))

    assert outcome.state is CompletionState.INCOMPLETE
    assert outcome.text == words(90) + " more still"


def test_complete_with_outro_unchanged_when_signed():
    transport = ScriptedTransport(["never"])
    generator = StoryGenerator(make_config(), transport=transport)

    text = "Story. " + SIG
    assert asyncio.run(generator.complete_with_outro(text, "vi")) == text
    assert transport.calls == []


def test_complete_with_outro_fallback_on_failure():
    transport = ScriptedTransport([TransportError("down")])
    generator = StoryGenerator(make_config(), transport=transport)

    completed = asyncio.run(generator.complete_with_outro("Story.", "vi"))

    assert completed == f"Story.\n\n{FALLBACK_OUTRO}\n\n{SIG}"


def test_completed_story_is_saved_and_remembered(tmp_path):
    store = JsonlStoryStore(tmp_path / "stories.jsonl")
    history = AnchorHistory(signature=SIG)
    transport = ScriptedTransport(["Line one.\nLine two.\n" + SIG])
    generator = StoryGenerator(make_config(), transport=transport, store=store, history=history)

    asyncio.run(generator.run(make_request(topic="The lighthouse", language="en")))

    records = store.load()
    assert len(records) == 1
    assert records[0].title == "The lighthouse"
    assert records[0].complete
    assert records[0].language == "en"
    assert history.anchors(4) == ('Topic: "The lighthouse" | Snippet: "Line one. Line two."',)


def test_history_supplies_anchors_when_request_has_none():
    history = AnchorHistory()
    for i in range(6):
        history.add(f"Story number {i}.", topic=f"topic {i}")
    transport = ScriptedTransport(["x. " + SIG])
    generator = StoryGenerator(make_config(max_cache_anchors=2), transport=transport, history=history)

    asyncio.run(generator.run(make_request()))

    prompt = transport.prompt(0)
    assert 'Topic: "topic 5"' in prompt
    assert 'Topic: "topic 4"' in prompt
    assert 'Topic: "topic 3"' not in prompt
