"""Backend protocol: the boundary to the HTTP transport."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@dataclass(frozen=True)
class BackendCapabilities:
    """Feature flags exposed by backends."""

    #: The backend understands ``tools`` itself; requests are not rewritten.
    native_tools: bool = False
    streaming: bool = True
    system_messages: bool = False


@runtime_checkable
class Backend(Protocol):
    """Minimal chat-completion backend: complete, stream, aclose."""

    name: str

    @property
    def capabilities(self) -> BackendCapabilities:
        """Feature capabilities of this backend."""
        ...

    async def complete(self, request: dict[str, Any]) -> dict[str, Any]:
        """Return one chat completion for *request*."""
        ...

    def stream(self, request: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        """Yield ``chat.completion.chunk`` dicts for *request*."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...
