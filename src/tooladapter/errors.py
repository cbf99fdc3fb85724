"""Exception hierarchy for tooladapter."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


class ToolAdapterError(Exception):
    """Base exception for all tooladapter errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(ToolAdapterError):
    """Configuration validation or resolution failed."""


class InvalidToolDefinitionError(ToolAdapterError):
    """A tool definition on the request could not be turned into prompt text.

    Raised before anything is sent to the backend.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        tool_name: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.tool_name = tool_name


class InternalError(ToolAdapterError):
    """A tooladapter internal error (bug) or invariant violation."""


class StreamCancelledError(ToolAdapterError):
    """The caller cancelled a stream before it completed.

    Distinct from ``TransportError``: nothing failed, the consumer asked to
    stop. No partially parsed tool call is ever emitted after cancellation.
    """


class TransportError(ToolAdapterError):
    """Reading from or writing to the backend failed.

    Backends attach retry metadata so callers can decide on retries without
    brittle substring matching. When raised from a collecting stream mode,
    ``partial_result`` carries whatever was assembled before the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        backend: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.backend = backend
        self.phase = phase
        self.partial_result: Any = None


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
