"""Error taxonomy for story generation.

Every failure that leaves the generator is one of four kinds so callers never
have to look at HTTP or background-service error shapes:

* ``ABORT``: user or system cancellation. The attempt is paused and
  ``partial_text`` can be used to resume.
* ``TIMEOUT``: a pass exceeded its wall-clock budget. Retryable.
* ``TRANSPORT``: non-2xx response, unusable response body, network failure.
* ``STALL``: a pass produced no new words and no closing signature.
"""

import asyncio
from enum import Enum

import httpx


class ErrorKind(str, Enum):
    ABORT = "abort"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    STALL = "stall"


class GenerationError(Exception):
    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str = "", *, partial_text: str = ""):
        super().__init__(message or self.kind.value)
        self.partial_text = partial_text


class GenerationAborted(GenerationError):
    kind = ErrorKind.ABORT

    def __init__(self, message: str = "Aborted", *, partial_text: str = ""):
        super().__init__(message, partial_text=partial_text)


class GenerationTimeout(GenerationError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str = "Story generation timed out.", *, partial_text: str = ""):
        super().__init__(message, partial_text=partial_text)


class TransportError(GenerationError):
    kind = ErrorKind.TRANSPORT

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str = "",
        partial_text: str = "",
    ):
        super().__init__(message, partial_text=partial_text)
        self.status_code = status_code
        self.body = body


class StallError(GenerationError):
    kind = ErrorKind.STALL


def normalize_error(exc: BaseException, partial_text: str = "") -> GenerationError:
    """Map any exception raised during an attempt onto the four error kinds."""
    if isinstance(exc, GenerationError):
        if partial_text and not exc.partial_text:
            exc.partial_text = partial_text
        return exc
    if isinstance(exc, asyncio.CancelledError):
        return GenerationAborted(partial_text=partial_text)
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return GenerationTimeout(partial_text=partial_text)
    if isinstance(exc, httpx.HTTPStatusError):
        return TransportError(
            str(exc),
            status_code=exc.response.status_code,
            partial_text=partial_text,
        )
    message = str(exc) or exc.__class__.__name__
    return TransportError(message, partial_text=partial_text)


def user_message(error: GenerationError) -> str:
    if error.kind is ErrorKind.ABORT:
        return "Paused. You can resume this story."
    return "Connection lost. Please try again."
