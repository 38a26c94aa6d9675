"""Streaming chat-completions transport.

Parses a server-sent-events body (``data: <json>`` lines ending with
``data: [DONE]``) into text and reasoning deltas. Network reads and SSE
frames are not aligned, so partial lines are buffered across reads.
"""

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

import httpx
from loguru import logger

from ..config import ApiConfig
from ..errors import TransportError

DONE_SENTINEL = "[DONE]"

Message = dict[str, str]


@dataclass(frozen=True)
class ChunkDelta:
    text: str = ""
    reasoning: str = ""


@dataclass(frozen=True)
class CompletionOptions:
    model: str
    temperature: float
    top_p: float
    max_tokens: int


class CompletionTransport(Protocol):
    def stream(
        self, messages: list[Message], options: CompletionOptions
    ) -> AsyncIterator[ChunkDelta]: ...


class SSEDecoder:
    """Incremental decoder: feed raw text, get complete ``data:`` payloads."""

    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [p for p in (self._payload(line) for line in lines) if p is not None]

    def flush(self) -> list[str]:
        rest, self._buffer = self._buffer, ""
        payload = self._payload(rest)
        return [payload] if payload is not None else []

    @staticmethod
    def _payload(raw: str) -> str | None:
        line = raw.strip()
        if not line.startswith("data:"):
            return None
        return line[5:].strip()


def _dig(data: Any, *path) -> Any:
    node = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(node, list) or len(node) <= key:
                return None
        elif not isinstance(node, dict):
            return None
        node = node[key] if isinstance(key, int) else node.get(key)
    return node


_TEXT_PATHS = (
    ("choices", 0, "delta", "content"),
    ("choices", 0, "message", "content"),
    ("choices", 0, "text"),
    ("output", 0, "content", 0, "text"),
)

_REASONING_PATHS = (
    ("choices", 0, "delta", "reasoning_content"),
    ("choices", 0, "message", "reasoning_content"),
    ("output", 0, "content", 0, "reasoning_content"),
)


def _first_text(data: Any, paths) -> str:
    for path in paths:
        value = _dig(data, *path)
        if isinstance(value, str) and value:
            return value
    return ""


def extract_text(data: Any) -> str:
    """Model text from delta, message, or legacy ``text`` shapes; first non-empty wins."""
    return _first_text(data, _TEXT_PATHS)


def extract_reasoning(data: Any) -> str:
    return _first_text(data, _REASONING_PATHS)


def parse_frame(payload: str) -> ChunkDelta | None:
    """Decode one ``data:`` payload. Malformed JSON yields ``None``."""
    try:
        data = json.loads(payload)
    except ValueError:
        return None
    text = extract_text(data)
    reasoning = extract_reasoning(data)
    if not text and not reasoning:
        return None
    return ChunkDelta(text=text, reasoning=reasoning)


class ChatCompletionClient:
    """HTTP transport against an OpenAI-compatible ``/chat/completions`` path."""

    def __init__(self, config: ApiConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    def _headers(self, streaming: bool) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        if streaming:
            headers["Accept"] = "text/event-stream"
            headers["Cache-Control"] = "no-cache"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(None, connect=self.config.connect_timeout_s)
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _payload(self, messages: list[Message], options: CompletionOptions, stream: bool) -> dict:
        return {
            "model": options.model,
            "messages": messages,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "max_tokens": options.max_tokens,
            "stream": stream,
        }

    async def stream(
        self, messages: list[Message], options: CompletionOptions
    ) -> AsyncIterator[ChunkDelta]:
        url = f"{self.base_url}/chat/completions"
        payload = self._payload(messages, options, stream=True)
        try:
            async with self._get_client().stream(
                "POST", url, json=payload, headers=self._headers(streaming=True)
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"Completion API error {response.status_code}: {body}",
                        status_code=response.status_code,
                        body=body,
                    )

                content_type = response.headers.get("content-type", "")
                if "text/event-stream" not in content_type:
                    raw = await response.aread()
                    delta = self._whole_response(raw)
                    yield delta
                    return

                decoder = SSEDecoder()
                async for chunk in response.aiter_text():
                    for frame in decoder.feed(chunk):
                        if frame == DONE_SENTINEL:
                            return
                        delta = parse_frame(frame)
                        if delta is not None:
                            yield delta
                for frame in decoder.flush():
                    if frame == DONE_SENTINEL:
                        return
                    delta = parse_frame(frame)
                    if delta is not None:
                        yield delta
        except httpx.TimeoutException as exc:
            raise TransportError(f"Completion request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Completion request failed: {exc}") from exc

    @staticmethod
    def _whole_response(raw: bytes) -> ChunkDelta:
        """Adapt a non-SSE JSON body into one synthetic delta."""
        try:
            data = json.loads(raw)
        except ValueError:
            data = None
        text = extract_text(data)
        if not text:
            snippet = raw[:200].decode("utf-8", errors="replace")
            raise TransportError(f"Completion response had no usable text: {snippet}")
        logger.debug("Non-streaming completion response adapted into one chunk")
        return ChunkDelta(text=text, reasoning=extract_reasoning(data))
