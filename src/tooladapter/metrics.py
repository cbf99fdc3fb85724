"""Optional metrics hook.

A user callback receives one typed event per transformation. The hook is
auxiliary: a callback that raises is logged and otherwise ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolTransformationEvent:
    """Tools were rendered into a request's prompt."""

    tool_count: int
    tool_names: tuple[str, ...]
    tool_result_count: int
    prompt_length: int
    duration_s: float

    event_type = "tool_transformation"


@dataclass(frozen=True)
class ToolCallDetectionEvent:
    """A response (or one stream choice) yielded tool calls."""

    call_count: int
    call_names: tuple[str, ...]
    content_length: int
    streaming: bool
    duration_s: float

    event_type = "tool_call_detection"


MetricsEvent = ToolTransformationEvent | ToolCallDetectionEvent


def emit(callback: Callable[[MetricsEvent], None] | None, event: MetricsEvent) -> None:
    """Deliver *event* to *callback*, never letting it break processing."""
    if callback is None:
        return
    try:
        callback(event)
    except Exception:
        logger.warning(
            "Metrics callback failed for %s; continuing", event.event_type, exc_info=True
        )


class Stopwatch:
    """Monotonic elapsed-time helper for event durations."""

    __slots__ = ("_start",)

    def __init__(self) -> None:
        self._start = time.perf_counter()

    def elapsed(self) -> float:
        return time.perf_counter() - self._start
