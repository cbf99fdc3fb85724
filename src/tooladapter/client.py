"""ToolCallingClient: request -> prompt injection -> backend -> extraction."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from tooladapter.adapter import ToolAdapter

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from tooladapter.providers.base import Backend

logger = logging.getLogger(__name__)


class ToolCallingClient:
    """Give any chat-completion backend an OpenAI-style tools interface.

    Backends that report ``native_tools`` get requests and responses untouched.

    Example:
        async with ToolCallingClient(OpenAIBackend(base_url=url)) as client:
            response = await client.complete({"model": "gemma", "messages": msgs, "tools": tools})
    """

    def __init__(self, backend: Backend, adapter: ToolAdapter | None = None) -> None:
        self.backend = backend
        self.adapter = adapter or ToolAdapter()

    @property
    def _native(self) -> bool:
        return self.backend.capabilities.native_tools

    async def complete(self, request: Mapping[str, Any]) -> dict[str, Any]:
        """Send one request and return the completion with ``tool_calls`` filled in."""
        if self._native:
            return await self.backend.complete(dict(request))
        outbound = self.adapter.transform_request(request)
        response = await self.backend.complete(dict(outbound))
        if not ToolAdapter.detection_enabled(request):
            return response
        return self.adapter.transform_response(response)

    async def stream(
        self,
        request: Mapping[str, Any],
        *,
        cancel: asyncio.Event | None = None,
        lookahead_chars: int | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream chunk dicts with tool calls surfaced as ``delta.tool_calls``."""
        if self._native:
            async for chunk in self.backend.stream(dict(request)):
                yield chunk
            return
        outbound = self.adapter.transform_request(request)
        detect = ToolAdapter.detection_enabled(request)
        logger.debug("Streaming with tool-call detection %s", "on" if detect else "off")
        chunks = self.adapter.transform_stream(
            self.backend.stream(dict(outbound)),
            detect=detect,
            lookahead_chars=lookahead_chars,
            cancel_event=cancel,
            choices=ToolAdapter.choice_count(request),
        )
        async for chunk in chunks:
            yield chunk

    async def aclose(self) -> None:
        """Close the backend; cleanup failures are logged, not raised."""
        try:
            await self.backend.aclose()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Backend cleanup failed: %s", exc)

    async def __aenter__(self) -> ToolCallingClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
