"""Mock backend for testing and demos without API calls."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import TYPE_CHECKING, Any

from tooladapter.providers.base import BackendCapabilities

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@dataclass
class MockBackend:
    """Reply with scripted assistant texts, one per request.

    Streams split the reply into ``chunk_size`` character deltas. Once the
    script runs out, the reply echoes the last user message. Every outbound
    request is recorded in ``requests`` for assertions.
    """

    replies: list[str | BaseException] = field(default_factory=list)
    chunk_size: int = 8
    model: str = "mock-model"
    requests: list[dict[str, Any]] = field(default_factory=list)
    closed: bool = False
    name: str = "mock"

    @property
    def capabilities(self) -> BackendCapabilities:
        """Return supported feature flags."""
        return BackendCapabilities(native_tools=False, streaming=True)

    def _next_reply(self, request: dict[str, Any]) -> str:
        self.requests.append(request)
        if self.replies:
            item = self.replies.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        for message in reversed(request.get("messages") or []):
            if isinstance(message, dict) and message.get("role") == "user":
                content = message.get("content")
                text = content if isinstance(content, str) else ""
                return f"echo: {text[-100:]}"
        return "echo: "

    async def complete(self, request: dict[str, Any]) -> dict[str, Any]:
        """Return a deterministic chat completion."""
        text = self._next_reply(request)
        return {
            "id": f"chatcmpl-mock-{len(self.requests)}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": request.get("model", self.model),
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": text},
                    "finish_reason": "stop",
                }
            ],
            "usage": {
                "prompt_tokens": 10,
                "completion_tokens": len(text),
                "total_tokens": 10 + len(text),
            },
        }

    async def stream(self, request: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        """Yield chunk dicts: role, content deltas, then the finish chunk."""
        text = self._next_reply(request)
        base = {
            "id": f"chatcmpl-mock-{len(self.requests)}",
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": request.get("model", self.model),
        }
        yield _chunk(base, {"role": "assistant", "content": ""})
        size = max(1, self.chunk_size)
        for i in range(0, len(text), size):
            yield _chunk(base, {"content": text[i : i + size]})
        yield _chunk(base, {}, "stop")

    async def aclose(self) -> None:
        """Mark the backend closed."""
        self.closed = True


def _chunk(
    base: dict[str, Any], delta: dict[str, Any], finish_reason: str | None = None
) -> dict[str, Any]:
    return {
        **base,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
