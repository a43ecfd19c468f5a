from __future__ import annotations

import asyncio
import codecs
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

import httpx

from pseudollama.errors import TranslationError
from pseudollama.translator import BackendCodec, StreamPipeline
from pseudollama.types import StreamChunk

logger = logging.getLogger("uvicorn.error")

FALLBACK_STREAM_MESSAGE = (
    "I'm sorry, but I wasn't able to generate a response. Please try again."
)


class RelayState(str, Enum):
    OPEN = "open"
    RELAYING = "relaying"
    COMPLETED = "completed"
    ABORTED = "aborted"


class LineBuffer:
    """Splits an incoming byte stream into complete text lines.

    A trailing partial line (and any partial UTF-8 sequence) is held back
    until the next :meth:`feed` completes it.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    def feed(self, data: bytes) -> list[str]:
        text = self._partial + self._decoder.decode(data)
        lines = text.split("\n")
        self._partial = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        text = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        text = text.rstrip("\r")
        return [text] if text else []


def sse_data(line: str) -> str | None:
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    return payload or None


class StreamingRelay:
    """Forwards one backend event stream to the caller, re-framed.

    ``open -> relaying -> completed | aborted``. The relay owns the backend
    stream: it is released exactly once, whichever way the relay ends.
    """

    def __init__(
        self,
        *,
        codec: BackendCodec,
        pipeline: StreamPipeline,
        source: AsyncIterator[bytes],
        release: Callable[[], Awaitable[None]],
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        on_delta: Callable[[str], None] | None = None,
        request_id: str = "-",
    ) -> None:
        self.codec = codec
        self.pipeline = pipeline
        self.state = RelayState.OPEN
        self.deltas_emitted = 0
        self.synthetic_emitted = False
        self.error: str | None = None
        self._source = source
        self._release_backend = release
        self._is_disconnected = is_disconnected
        self._on_delta = on_delta
        self._request_id = request_id
        self._buffer = LineBuffer()
        self._released = False

    @property
    def media_type(self) -> str:
        return self.pipeline.media_type

    async def frames(self) -> AsyncIterator[bytes]:
        self.state = RelayState.RELAYING
        try:
            async for frame in self._relay_deltas():
                yield frame
        except (asyncio.CancelledError, GeneratorExit):
            self.state = RelayState.ABORTED
            raise
        finally:
            await self._release()

        if self.state is RelayState.ABORTED or await self._caller_disconnected():
            self.state = RelayState.ABORTED
            self._log_end()
            return

        if self.error is not None:
            yield self.pipeline.render_error(self.error)
        elif self.deltas_emitted == 0:
            synthetic = self.pipeline.render(StreamChunk(delta_text=FALLBACK_STREAM_MESSAGE))
            if synthetic is not None:
                self.synthetic_emitted = True
                yield synthetic
        terminal = self.pipeline.render(StreamChunk(delta_text="", is_final=True))
        self.state = RelayState.COMPLETED
        self._log_end()
        if terminal is not None:
            yield terminal

    async def _lines(self) -> AsyncIterator[str]:
        async for data in self._source:
            for line in self._buffer.feed(data):
                yield line
        for line in self._buffer.flush():
            yield line

    async def _relay_deltas(self) -> AsyncIterator[bytes]:
        try:
            async for line in self._lines():
                outcome = self._parse_line(line)
                if outcome is _END_OF_STREAM:
                    return
                if not isinstance(outcome, tuple):
                    continue
                if await self._caller_disconnected():
                    self.state = RelayState.ABORTED
                    return
                chunk, frame = outcome
                self.deltas_emitted += 1
                if self._on_delta is not None:
                    self._on_delta(chunk.delta_text)
                yield frame
        except (httpx.RequestError, httpx.StreamError) as exc:
            self.error = f"backend stream interrupted ({exc.__class__.__name__})"
            logger.warning(
                "stream_backend_error request_id=%s error_type=%s error=%s",
                self._request_id,
                exc.__class__.__name__,
                exc,
            )
        except TranslationError as exc:
            self.error = exc.message
            logger.warning(
                "stream_backend_error request_id=%s error=%s",
                self._request_id,
                exc.message,
            )

    def _parse_line(self, line: str) -> tuple[StreamChunk, bytes] | object | None:
        data = sse_data(line)
        if data is None:
            return None
        if self.codec.is_end_of_stream(data):
            return _END_OF_STREAM
        chunk = self.codec.parse_stream_data(data)
        if chunk is None:
            return None
        frame = self.pipeline.render(chunk)
        if frame is None:
            return None
        return chunk, frame

    async def _caller_disconnected(self) -> bool:
        if self._is_disconnected is None:
            return False
        return await self._is_disconnected()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._release_backend()

    def _log_end(self) -> None:
        logger.info(
            "stream_end request_id=%s state=%s deltas=%d synthetic=%s error=%s",
            self._request_id,
            self.state.value,
            self.deltas_emitted,
            self.synthetic_emitted,
            self.error,
        )


_END_OF_STREAM = object()
