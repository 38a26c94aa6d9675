"""Background generation service protocol and its foreground adapter.

A background service runs the same multi-pass protocol in a separate
execution context and reports progress through ``chunk``/``done``/``error``
events. :func:`run_background` turns those events back into the
``on_chunk`` + final string contract, with an idle watchdog and abort wiring
that stops the service itself, not just the local listeners.
"""

import asyncio
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger

from ..cancel import CancellationToken
from ..config import ApiConfig, BackgroundConfig, GenerationConfig, OutroConfig
from ..errors import GenerationAborted, GenerationError, StallError, TransportError
from ..models.generation import GenerationOutcome, GenerationRequest, LengthBudget

EVENT_CHUNK = "chunk"
EVENT_DONE = "done"
EVENT_ERROR = "error"
EVENTS = (EVENT_CHUNK, EVENT_DONE, EVENT_ERROR)

EventCallback = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class BackgroundJob:
    request: GenerationRequest
    budget: LengthBudget
    api: ApiConfig = field(default_factory=ApiConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    outro: OutroConfig = field(default_factory=OutroConfig)


@dataclass(frozen=True)
class BackgroundState:
    running: bool = False
    text: str = ""


class ListenerHandle:
    def __init__(self, remove: Callable[[], None]):
        self._remove = remove

    def remove(self) -> None:
        self._remove()


class BackgroundStoryService(Protocol):
    async def is_supported(self) -> bool: ...

    async def start(self, job: BackgroundJob) -> None: ...

    async def stop(self) -> None: ...

    async def get_state(self) -> BackgroundState: ...

    def add_listener(self, event: str, callback: EventCallback) -> ListenerHandle: ...


JobRunner = Callable[[BackgroundJob, Callable[[str], None]], Awaitable[GenerationOutcome]]


class LocalBackgroundService:
    """In-process background service: one worker thread with its own event loop.

    Events are emitted from the worker thread. Starting a new job stops the
    previous one; events from a superseded job are discarded.
    """

    def __init__(self, run_job: JobRunner):
        self._run_job = run_job
        self._lock = threading.Lock()
        self._listeners: dict[str, list[EventCallback]] = {name: [] for name in EVENTS}
        self._token: CancellationToken | None = None
        self._thread: threading.Thread | None = None
        self._job_id = 0
        self._running = False
        self._text = ""

    async def is_supported(self) -> bool:
        return True

    async def start(self, job: BackgroundJob) -> None:
        await self.stop()
        token = CancellationToken()
        request = replace(job.request, cancel_token=token)
        with self._lock:
            self._job_id += 1
            job_id = self._job_id
            self._token = token
            self._running = True
            self._text = request.existing_text
        self._thread = threading.Thread(
            target=self._work,
            args=(job_id, replace(job, request=request)),
            name=f"background-story-{job_id}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Background story job {job_id} started")

    async def stop(self) -> None:
        with self._lock:
            token, self._token = self._token, None
            self._running = False
        if token is not None and not token.cancelled:
            logger.info("Stopping background story job")
            token.cancel()

    async def get_state(self) -> BackgroundState:
        with self._lock:
            return BackgroundState(running=self._running, text=self._text)

    def add_listener(self, event: str, callback: EventCallback) -> ListenerHandle:
        if event not in self._listeners:
            raise ValueError(f"Unknown background event: {event}")
        with self._lock:
            self._listeners[event].append(callback)

        def remove() -> None:
            with self._lock:
                if callback in self._listeners[event]:
                    self._listeners[event].remove(callback)

        return ListenerHandle(remove)

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _emit(self, job_id: int, event: str, payload: dict[str, Any]) -> None:
        with self._lock:
            if job_id != self._job_id:
                return
            if event == EVENT_CHUNK:
                self._text += payload.get("text", "")
            listeners = list(self._listeners[event])
        for callback in listeners:
            callback(payload)

    def _work(self, job_id: int, job: BackgroundJob) -> None:
        def on_chunk(text: str) -> None:
            self._emit(job_id, EVENT_CHUNK, {"text": text})

        try:
            outcome = asyncio.run(self._run_job(job, on_chunk))
            with self._lock:
                if job_id == self._job_id:
                    self._text = outcome.text
            self._emit(job_id, EVENT_DONE, {"text": outcome.text, "is_final": outcome.complete})
        except GenerationAborted:
            self._emit(job_id, EVENT_ERROR, {"message": "Aborted", "aborted": True})
        except Exception as exc:
            logger.error(f"Background story job {job_id} failed: {exc}")
            self._emit(job_id, EVENT_ERROR, {"message": str(exc) or "Generation failed", "aborted": False})
        finally:
            with self._lock:
                if job_id == self._job_id:
                    self._running = False


@dataclass
class _Watch:
    received: str
    full_text: str
    last_activity: float
    done: bool = False
    aborted: bool = False
    error: GenerationError | None = None


async def run_background(
    service: BackgroundStoryService,
    job: BackgroundJob,
    *,
    on_chunk: Callable[[str], None],
    cancel_token: CancellationToken,
    config: BackgroundConfig | None = None,
) -> str:
    """Run ``job`` on ``service`` and return the newly generated text.

    Raises:
        GenerationAborted: the token fired; the service has been told to stop.
        StallError: no event arrived within ``idle_timeout_s``.
        TransportError: the service reported a failure.
    """
    config = config or BackgroundConfig()
    existing = job.request.existing_text
    if cancel_token.cancelled:
        raise GenerationAborted(partial_text=existing)

    loop = asyncio.get_running_loop()
    watch = _Watch(received=existing, full_text=existing, last_activity=loop.time())
    stop_tasks: list[asyncio.Future] = []

    def on_chunk_event(payload: dict[str, Any]) -> None:
        text = payload.get("text")
        if not isinstance(text, str) or not text or watch.done:
            return
        watch.received += text
        watch.full_text += text
        watch.last_activity = loop.time()
        on_chunk(text)

    def on_done_event(payload: dict[str, Any]) -> None:
        text = payload.get("text")
        if isinstance(text, str) and text:
            watch.full_text = text
        watch.last_activity = loop.time()
        watch.done = True

    def on_error_event(payload: dict[str, Any]) -> None:
        if payload.get("aborted"):
            watch.error = GenerationAborted(partial_text=watch.received)
        else:
            message = payload.get("message")
            watch.error = TransportError(
                message if isinstance(message, str) and message else "Generation failed",
                partial_text=watch.received,
            )
        watch.last_activity = loop.time()
        watch.done = True

    def on_abort() -> None:
        watch.aborted = True
        watch.done = True
        if watch.error is None:
            watch.error = GenerationAborted(partial_text=watch.received)
        stop_tasks.append(asyncio.ensure_future(service.stop()))

    def threadsafe(handler: Callable[..., None]) -> Callable[..., None]:
        return lambda *args: loop.call_soon_threadsafe(handler, *args)

    handles = [
        service.add_listener(EVENT_CHUNK, threadsafe(on_chunk_event)),
        service.add_listener(EVENT_DONE, threadsafe(on_done_event)),
        service.add_listener(EVENT_ERROR, threadsafe(on_error_event)),
    ]
    unlink = cancel_token.add_callback(threadsafe(on_abort))
    try:
        await service.start(job)

        cycles = 0
        while not watch.done:
            await asyncio.sleep(config.poll_interval_s)
            cycles += 1
            if watch.aborted:
                break

            idle = loop.time() - watch.last_activity
            if idle > config.idle_timeout_s:
                logger.warning(f"Background generation idle for {idle:.1f}s, stopping it")
                watch.error = StallError(
                    "Background generation stalled (no activity).", partial_text=watch.received
                )
                await service.stop()
                break

            if cycles % config.state_check_every == 0:
                try:
                    state = await service.get_state()
                except Exception as exc:
                    logger.debug(f"Background state check failed: {exc}")
                    continue
                if not state.running and not watch.done:
                    if state.text:
                        watch.full_text = state.text
                    watch.done = True

        if stop_tasks:
            await asyncio.gather(*stop_tasks, return_exceptions=True)
        if watch.error is not None:
            raise watch.error

        if watch.full_text.startswith(watch.received):
            tail = watch.full_text[len(watch.received):]
            if tail:
                on_chunk(tail)
        return watch.full_text[len(existing):]
    except asyncio.CancelledError:
        if not stop_tasks:
            logger.info("Background wait cancelled, stopping the service")
            await service.stop()
        raise
    finally:
        unlink()
        for handle in handles:
            handle.remove()
