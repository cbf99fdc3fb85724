"""Server-sent-events transport around the streaming transformer.

``SSEReader`` turns a byte source into ``data:`` payloads, ``SSEWriter`` turns
payloads back into frames, and ``SSEStreamAdapter`` connects the two through a
``ChunkTransformer``. Payloads the transformer leaves alone are written out
byte-for-byte; payloads that are not JSON chunks are relayed untouched.
"""

from __future__ import annotations

import asyncio
import codecs
from dataclasses import dataclass, field
import json
import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from tooladapter.config import Config
from tooladapter.constants import SSE_DONE
from tooladapter.errors import StreamCancelledError, ToolAdapterError, TransportError
from tooladapter.models import ChatCompletionChunk, ToolCall
from tooladapter.providers._errors import wrap_backend_error
from tooladapter.streaming import ChunkTransformer, aclose_quietly

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable

    import httpx

logger = logging.getLogger(__name__)


class SSEReader:
    """Pull ``data:`` payloads out of an SSE byte stream.

    Every ``data:`` line is one payload. Blank lines and ``:`` comments are
    skipped, other fields (``event:``, ``id:``, ``retry:``) are ignored, and
    iteration ends at ``data: [DONE]`` or when the source is exhausted.
    """

    def __init__(
        self,
        source: AsyncIterable[bytes | str],
        *,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._source = source
        self._iterator: AsyncIterator[bytes | str] | None = None
        self._on_close = on_close
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._lines: list[str] = []
        self._eof = False
        self.done = False
        self.closed = False

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> SSEReader:
        """Read an ``httpx`` streaming response; closing the reader closes it."""
        return cls(response.aiter_bytes(), on_close=response.aclose)

    @classmethod
    def from_payloads(cls, payloads: Iterable[str]) -> SSEReader:
        """Build a reader over already-split payloads (tests, replays)."""
        frames = [f"data: {p}\n\n" for p in payloads]

        async def _gen() -> AsyncIterator[str]:
            for frame in frames:
                yield frame

        return cls(_gen())

    def __aiter__(self) -> SSEReader:
        return self

    async def __anext__(self) -> str:
        payload = await self.next_payload()
        if payload is None:
            raise StopAsyncIteration
        return payload

    async def next_payload(self) -> str | None:
        """Return the next payload, or None at ``[DONE]``/end of source."""
        while not self.done and not self.closed:
            while self._lines:
                line = self._lines.pop(0)
                payload = _parse_line(line)
                if payload is None:
                    continue
                if payload == SSE_DONE:
                    self.done = True
                    return None
                return payload
            if self._eof:
                self.done = True
                return None
            await self._fill()
        return None

    async def _fill(self) -> None:
        if self._iterator is None:
            self._iterator = self._source.__aiter__()
        try:
            piece = await self._iterator.__anext__()
        except StopAsyncIteration:
            self._buffer += self._decoder.decode(b"", final=True)
            self._eof = True
            if self._buffer:
                self._lines.append(self._buffer)
                self._buffer = ""
            return
        except (asyncio.CancelledError, ToolAdapterError):
            raise
        except Exception as e:
            raise wrap_backend_error(e, backend="sse", phase="read") from e
        text = piece if isinstance(piece, str) else self._decoder.decode(piece)
        self._buffer += text
        if "\n" in self._buffer:
            *lines, self._buffer = self._buffer.split("\n")
            self._lines.extend(lines)

    async def aclose(self) -> None:
        """Release the source without draining it. Idempotent."""
        if self.closed:
            return
        self.closed = True
        if self._iterator is not None:
            await aclose_quietly(self._iterator)
        if self._on_close is not None:
            try:
                await self._on_close()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.debug("Ignoring error while closing SSE source", exc_info=True)


def _parse_line(line: str) -> str | None:
    line = line.rstrip("\r")
    if not line or line.startswith(":"):
        return None
    name, _, value = line.partition(":")
    if name != "data":
        return None
    return value[1:] if value.startswith(" ") else value


class SSEWriter:
    """Write payloads as SSE frames to an async sink, or collect them."""

    def __init__(
        self,
        sink: Callable[[bytes], Awaitable[Any]] | None = None,
        *,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._sink = sink
        self._on_close = on_close
        self.frames: list[bytes] = []
        self.closed = False

    async def write(self, payload: str) -> None:
        await self._emit(f"data: {payload}\n\n".encode())

    async def write_done(self) -> None:
        await self.write(SSE_DONE)

    async def _emit(self, frame: bytes) -> None:
        if self.closed:
            raise TransportError("SSE writer is closed", phase="write")
        if self._sink is None:
            self.frames.append(frame)
            return
        try:
            await self._sink(frame)
        except (asyncio.CancelledError, ToolAdapterError):
            raise
        except Exception as e:
            raise wrap_backend_error(e, backend="sse", phase="write") from e

    def payloads(self) -> list[str]:
        """Decode collected frames back into payload strings."""
        return [f.decode()[len("data: ") : -2] for f in self.frames]

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            try:
                await self._on_close()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.debug("Ignoring error while closing SSE sink", exc_info=True)


@dataclass
class SSETransformResult:
    """Everything a stream produced, for callers that want the outcome."""

    #: Emitted text of every choice, joined in choice-index order.
    content: str = ""
    #: Emitted text per choice index.
    choice_contents: dict[int, str] = field(default_factory=dict)
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    #: True when the stream was relayed without ever being buffered.
    passthrough: bool = True
    #: Output payloads in order (JSON chunks, or raw non-JSON payloads).
    chunks: list[str] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class SSEStreamAdapter:
    """Run an SSE stream through tool-call detection.

    One adapter per stream. ``detect=False`` (the request carried no tools)
    relays every payload untouched. Pass the request's ``n`` as *choices* to
    let a policy-satisfied stream stop reading upstream early.
    """

    def __init__(
        self,
        reader: SSEReader,
        writer: SSEWriter | None = None,
        *,
        config: Config | None = None,
        detect: bool = True,
        choices: int | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._config = config or Config()
        self._detect = detect
        self._choices = choices
        self._collect = False
        self._transformer: ChunkTransformer | None = None
        self._started = False
        self._closed = False

    @property
    def transformer(self) -> ChunkTransformer | None:
        return self._transformer

    async def events(
        self,
        cancel: asyncio.Event | None = None,
        *,
        lookahead_chars: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield transformed payloads one at a time (``[DONE]`` excluded)."""
        if self._started:
            raise ToolAdapterError(
                "SSEStreamAdapter can only be consumed once",
                hint="Create a new adapter per stream.",
            )
        self._started = True
        transformer = ChunkTransformer(
            self._config,
            detect=self._detect,
            lookahead_chars=lookahead_chars,
            cancel_event=cancel,
            choices=self._choices,
            collect=self._collect,
        )
        self._transformer = transformer
        stopped = False
        try:
            while True:
                _check_cancel(cancel, transformer)
                payload = await self._reader.next_payload()
                if payload is None:
                    break
                _check_cancel(cancel, transformer)
                chunk = _parse_chunk(payload)
                if chunk is None:
                    if not stopped:
                        yield payload
                    continue
                if stopped:
                    if not chunk.choices:
                        yield payload
                    continue
                for out in transformer.transform(chunk):
                    yield payload if out is chunk else out.model_dump_json(exclude_unset=True)
                if transformer.done:
                    stopped = True
                    for out in transformer.finish_all():
                        yield out.model_dump_json(exclude_unset=True)
                    if self._config.cancel_upstream_on_stop:
                        logger.debug("All choices complete; closing upstream early")
                        await self._reader.aclose()
                        break
            if not stopped:
                for out in transformer.finish_all():
                    yield out.model_dump_json(exclude_unset=True)
        except StreamCancelledError:
            await self._reader.aclose()
            raise

    async def process(self, cancel: asyncio.Event | None = None) -> None:
        """Relay the whole stream to the writer, ending with ``[DONE]``."""
        await self.process_with_passthrough(None, cancel)

    async def process_with_passthrough(
        self,
        lookahead_chars: int | None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Like ``process`` with a per-call lookahead budget override."""
        if self._writer is None:
            raise ToolAdapterError(
                "process() needs an SSEWriter",
                hint="Pass writer=SSEWriter(...) or use process_to_result().",
            )
        async for payload in self.events(cancel, lookahead_chars=lookahead_chars):
            await self._writer.write(payload)
        await self._writer.write_done()

    async def process_to_result(
        self,
        cancel: asyncio.Event | None = None,
        *,
        lookahead_chars: int | None = None,
    ) -> SSETransformResult:
        """Consume the stream and return the collected outcome.

        On a transport failure the error's ``partial_result`` holds what was
        assembled up to that point.
        """
        self._collect = True
        result = SSETransformResult()
        try:
            async for payload in self.events(cancel, lookahead_chars=lookahead_chars):
                result.chunks.append(payload)
        except TransportError as e:
            e.partial_result = self._fill_result(result)
            raise
        return self._fill_result(result)

    def _fill_result(self, result: SSETransformResult) -> SSETransformResult:
        transformer = self._transformer
        if transformer is None:
            return result
        result.choice_contents = transformer.contents
        result.content = "".join(result.choice_contents.values())
        result.finish_reason = transformer.finish_reason
        result.tool_calls = transformer.tool_calls
        result.passthrough = transformer.passthrough
        return result

    async def aclose(self) -> None:
        """Close source and sink without draining. Idempotent and safe mid-stream."""
        if self._closed:
            return
        self._closed = True
        await self._reader.aclose()
        if self._writer is not None:
            await self._writer.aclose()

    async def __aenter__(self) -> SSEStreamAdapter:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def _check_cancel(cancel: asyncio.Event | None, transformer: ChunkTransformer) -> None:
    if cancel is not None and cancel.is_set():
        transformer.cancel()
        raise StreamCancelledError(
            "stream cancelled by caller",
            hint="Cancellation is final; start a new request to retry.",
        )


def _parse_chunk(payload: str) -> ChatCompletionChunk | None:
    try:
        data = json.loads(payload)
    except ValueError:
        logger.debug("Relaying non-JSON SSE payload unchanged")
        return None
    if not isinstance(data, dict) or "choices" not in data:
        return None
    try:
        return ChatCompletionChunk.model_validate(data)
    except ValidationError:
        logger.debug("Relaying SSE payload that is not a chat completion chunk")
        return None

