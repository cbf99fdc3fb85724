"""ToolAdapter: one shareable object bundling a Config and every transformation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

from tooladapter.assembler import ToolCallAssembler
from tooladapter.config import Config
from tooladapter.extract import ExtractionResult, extract_tool_calls, transform_response
from tooladapter.prompt import inject_tools
from tooladapter.sse import SSEReader, SSEStreamAdapter, SSEWriter
from tooladapter.streaming import transform_chunks

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncIterable, AsyncIterator, Mapping

ResponseT = TypeVar("ResponseT")


class ToolAdapter:
    """Prompt-based tool calling for backends without native support.

    Immutable and safe to share across concurrent requests and streams: every
    stream gets its own assembler.

    Example:
        adapter = ToolAdapter(policy="allow_mixed", lookahead_chars=64)
        outbound = adapter.transform_request(request)
        response = adapter.transform_response(await backend.complete(outbound))
    """

    __slots__ = ("_config",)

    def __init__(self, config: Config | None = None, **overrides: Any) -> None:
        base = config or Config()
        self._config = base.with_overrides(**overrides) if overrides else base

    @property
    def config(self) -> Config:
        return self._config

    @staticmethod
    def detection_enabled(request: Mapping[str, Any]) -> bool:
        """True when a response to *request* may contain tool calls."""
        return bool(request.get("tools")) and request.get("tool_choice") != "none"

    @staticmethod
    def choice_count(request: Mapping[str, Any]) -> int:
        """Number of choices *request* asks for (its ``n``, default 1)."""
        n = request.get("n")
        return n if isinstance(n, int) and n > 0 else 1

    def transform_request(self, request: Mapping[str, Any]) -> dict[str, Any]:
        """Move tools into the prompt; see ``tooladapter.prompt.inject_tools``."""
        return inject_tools(request, self._config)

    def transform_response(self, response: ResponseT) -> ResponseT:
        """Turn tool-call arrays in a completed response into ``tool_calls``."""
        return transform_response(response, self._config)

    def extract(self, content: str) -> ExtractionResult:
        """Scan one assistant message for tool calls."""
        return extract_tool_calls(content, self._config)

    def assembler(
        self,
        *,
        detect: bool = True,
        choice_index: int = 0,
        lookahead_chars: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ToolCallAssembler:
        """Return a fresh assembler for one choice of one stream."""
        return ToolCallAssembler(
            self._config,
            detect=detect,
            choice_index=choice_index,
            lookahead_chars=lookahead_chars,
            cancel_event=cancel_event,
        )

    def transform_stream(
        self,
        chunks: AsyncIterable[Any],
        *,
        detect: bool = True,
        lookahead_chars: int | None = None,
        cancel_event: asyncio.Event | None = None,
        choices: int | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Run an async stream of chunk objects through detection."""
        return transform_chunks(
            chunks,
            self._config,
            detect=detect,
            lookahead_chars=lookahead_chars,
            cancel_event=cancel_event,
            choices=choices,
        )

    def sse_adapter(
        self,
        reader: SSEReader,
        writer: SSEWriter | None = None,
        *,
        detect: bool = True,
        choices: int | None = None,
    ) -> SSEStreamAdapter:
        """Wrap an SSE reader (and optional writer) for one stream."""
        return SSEStreamAdapter(
            reader, writer, config=self._config, detect=detect, choices=choices
        )

    def __repr__(self) -> str:
        return f"ToolAdapter({self._config})"
