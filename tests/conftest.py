"""Shared fixtures: scripted transports and small budgets."""

import asyncio

import pytest

from radio_nocturne.config import DEFAULT_OUTRO_SIGNATURE
from radio_nocturne.generation.outro import OutroDetector
from radio_nocturne.generation.transport import ChunkDelta, CompletionOptions
from radio_nocturne.models.generation import LengthBudget

SIG = DEFAULT_OUTRO_SIGNATURE


def words(n: int, token: str = "word") -> str:
    """``n`` words, each preceded by a space so chunks never merge at the seam."""
    return "".join(f" {token}" for _ in range(n))


class Sleep:
    def __init__(self, seconds: float):
        self.seconds = seconds


class ScriptedTransport:
    """Fake completion transport; call ``i`` replays ``passes[i]``.

    Script items: ``str`` (text delta), ``ChunkDelta``, ``Sleep`` or an
    exception instance to raise mid-stream. Calls past the script stream nothing.
    """

    def __init__(self, *passes):
        self.passes = list(passes)
        self.calls = []
        self.closed = False

    async def stream(self, messages, options):
        self.calls.append((messages, options))
        index = len(self.calls) - 1
        script = self.passes[index] if index < len(self.passes) else []
        for item in script:
            await asyncio.sleep(0)
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, Sleep):
                await asyncio.sleep(item.seconds)
                continue
            yield item if isinstance(item, ChunkDelta) else ChunkDelta(text=item)

    def prompt(self, index: int) -> str:
        messages, _ = self.calls[index]
        return messages[-1]["content"]

    async def aclose(self):
        self.closed = True


@pytest.fixture
def detector():
    return OutroDetector(SIG)


@pytest.fixture
def options():
    return CompletionOptions(model="test-model", temperature=1.0, top_p=0.95, max_tokens=4096)


@pytest.fixture
def small_budget():
    return LengthBudget(target_words=100, min_words=80, hard_max_words=120)
