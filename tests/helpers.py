"""Test helpers (small, reusable builders and doubles).

Keep this file tiny and purpose-built: chunk and SSE builders shared by the
streaming suites, plus a byte source that records how far it was read.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any

from tooladapter.assembler import ToolCallAssembler, collect
from tooladapter.config import Config
from tooladapter.models import ToolCall

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "description": "Get the current weather for a city",
        "parameters": {
            "type": "object",
            "properties": {"location": {"type": "string"}},
            "required": ["location"],
        },
    },
}

CALC_TOOL = {
    "type": "function",
    "function": {
        "name": "calc",
        "description": "Evaluate arithmetic",
        "parameters": {"type": "object", "properties": {"expr": {"type": "string"}}},
    },
}


def chunk(
    content: str | None = None,
    *,
    index: int = 0,
    finish_reason: str | None = None,
    role: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build one ``chat.completion.chunk`` dict."""
    delta: dict[str, Any] = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "test-model",
        "choices": [{"index": index, "delta": delta, "finish_reason": finish_reason}],
        **extra,
    }


def content_chunks(*pieces: str, finish_reason: str = "stop") -> list[dict[str, Any]]:
    """Role chunk, one chunk per piece, then a finish chunk."""
    return [
        chunk("", role="assistant"),
        *(chunk(p) for p in pieces),
        chunk(finish_reason=finish_reason),
    ]


def sse_payloads(chunks: list[dict[str, Any]]) -> list[str]:
    return [json.dumps(c) for c in chunks]


def sse_bytes(payloads: list[str], *, done: bool = True) -> bytes:
    body = "".join(f"data: {p}\n\n" for p in payloads)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode()


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


@dataclass
class ByteSource:
    """Async byte iterator over fixed pieces; records reads and closing.

    ``fail_after`` raises a read error once that many pieces were served.
    """

    pieces: list[bytes]
    fail_after: int | None = None
    served: int = 0
    closed: bool = False

    def __aiter__(self) -> ByteSource:
        return self

    async def __anext__(self) -> bytes:
        if self.closed:
            raise StopAsyncIteration
        if self.fail_after is not None and self.served >= self.fail_after:
            raise ConnectionResetError("connection reset by peer")
        if self.served >= len(self.pieces):
            raise StopAsyncIteration
        piece = self.pieces[self.served]
        self.served += 1
        return piece

    async def aclose(self) -> None:
        self.closed = True


def run_assembler(
    pieces: list[str],
    config: Config | None = None,
    *,
    lookahead_chars: int | None = None,
    finish_reason: str | None = "stop",
) -> tuple[str, list[ToolCall], str | None]:
    """Feed *pieces* through one assembler and fold the output."""
    assembler = ToolCallAssembler(config, lookahead_chars=lookahead_chars)
    events = []
    for piece in pieces:
        events.extend(assembler.feed(piece))
    events.extend(assembler.finish(finish_reason))
    return collect(events)
