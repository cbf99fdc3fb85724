"""Per-stream tool-call detection and assembly.

``ToolCallAssembler`` consumes the text deltas of one choice of one stream and
turns them into output events: content deltas, complete tool calls, and a
single finish event. It is synchronous and does no background work; callers
drive it with ``feed()`` per delta and ``finish()`` at end of stream.

The one-shot extractor runs the same assembler over a whole message, so
streaming with early detection disabled and non-streaming extraction agree on
every input.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import re
from typing import TYPE_CHECKING, Any

from tooladapter.config import Config
from tooladapter.constants import MAX_FENCE_HEADER_CHARS
from tooladapter.errors import StreamCancelledError
from tooladapter.metrics import Stopwatch, ToolCallDetectionEvent, emit
from tooladapter.models import ToolCall
from tooladapter.policy import StopCondition, effective_call_limit, rules_for
from tooladapter.scanner import ArrayScanner, SegmentKind

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

_NON_SPACE = re.compile(r"\S")
_FENCE_HEADER = re.compile(r"[\w+.\-]*[ \t]*\r?")
# An opening fence (possibly still growing) at the very end of pending text.
_FENCE_OPEN_TAIL = re.compile(r"```[\w+.\-]*[ \t]*(?:\r?\n\s*)?\Z")
_BACKTICK_TAIL = re.compile(r"`{1,2}\Z")
_CLOSING_FENCE = re.compile(r"\s*```")
_CLOSING_FENCE_PARTIAL = re.compile(r"\s*`{0,2}")
# Fence openers are short; never look further back than this.
_TAIL_WINDOW = 64


class DetectorState(str, Enum):
    IDLE = "idle"
    EARLY_LOOKAHEAD = "early_lookahead"
    PASSTHROUGH = "passthrough"
    BUFFERING = "buffering"
    ARRAY_OPEN = "array_open"
    COMPLETE = "complete"
    MALFORMED = "malformed"


class EventKind(str, Enum):
    CONTENT = "content"
    TOOL_CALL = "tool_call"
    FINISH = "finish"


@dataclass(frozen=True)
class StreamEvent:
    """One output event for one choice of a stream."""

    kind: EventKind
    choice_index: int = 0
    content: str = ""
    tool_call: ToolCall | None = None
    #: Position of ``tool_call`` among the calls of this choice.
    call_index: int | None = None
    finish_reason: str | None = None


@dataclass(frozen=True)
class LookaheadDecision:
    buffer: bool
    #: Where buffering starts; text before it is plain text.
    start: int = 0


PASS = LookaheadDecision(buffer=False)


def _first_non_space(text: str, start: int) -> int | None:
    m = _NON_SPACE.search(text, start)
    return m.start() if m else None


def decide_lookahead(
    text: str, budget: int, *, final: bool = False
) -> LookaheadDecision | None:
    """Decide passthrough vs. buffer from a stream's leading text.

    Returns None while undecided. The answer depends only on *text*, never on
    how it was split into deltas; once a non-None answer is possible for a
    prefix, every extension of that prefix gets the same answer. With
    ``final`` the stream has ended and an undecided prefix passes through.
    """
    i = _first_non_space(text, 0)
    if i is None:
        return PASS if final or len(text) >= budget else None
    if i >= budget:
        return PASS
    if text[i] == "[":
        return LookaheadDecision(buffer=True, start=i)
    if text[i] != "`":
        return PASS

    # ```json\n[ ... : a fenced array still counts.
    if len(text) - i < 3:
        if "```".startswith(text[i:]) and not final:
            return None
        return PASS
    if not text.startswith("```", i):
        return PASS
    newline = text.find("\n", i + 3)
    header = text[i + 3 : newline if newline >= 0 else len(text)]
    if len(header) > MAX_FENCE_HEADER_CHARS or not _FENCE_HEADER.fullmatch(header):
        return PASS
    if newline < 0:
        return PASS if final else None
    j = _first_non_space(text, newline + 1)
    if j is None:
        return PASS if final else None
    if text[j] == "[":
        return LookaheadDecision(buffer=True, start=j)
    return PASS


class ToolCallAssembler:
    """State machine for one choice of one stream.

    Not shared: create one per choice per stream. The ``Config`` it reads is
    immutable and may be shared freely.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        detect: bool = True,
        choice_index: int = 0,
        lookahead_chars: int | None = None,
        cancel_event: Any = None,
        streaming: bool = True,
    ) -> None:
        self._config = config or Config()
        self._rules = rules_for(self._config.policy)
        self._limit = effective_call_limit(self._config.policy, self._config.max_calls)
        self._lookahead = (
            self._config.lookahead_chars if lookahead_chars is None else lookahead_chars
        )
        self._max_buffer = self._config.max_buffer_chars if streaming else None
        self._detect = detect
        self._streaming = streaming
        self._cancel_event = cancel_event
        self.choice_index = choice_index

        self._state = DetectorState.IDLE
        self._scanner = ArrayScanner()
        self._head = ""
        # Suppressing policies: plain text held until a call shows up.
        self._held: list[str] = []
        self._held_chars = 0
        # ALLOW_MIXED: plain text not yet known to be safe to emit.
        self._pending = ""
        self._calls: list[ToolCall] = []
        self._array_calls = 0
        self._trigger_pending = False
        self._strip_closing_fence = False
        self._relayed = False
        self._cancelled = False
        self._finished = False
        self._seen_chars = 0
        self._stopwatch = Stopwatch()

    # --- Introspection ---

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        return tuple(self._calls)

    @property
    def done(self) -> bool:
        """True once no further input will change the output."""
        return self._state is DetectorState.COMPLETE

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def passthrough(self) -> bool:
        """True when the stream was relayed without ever being buffered."""
        return self._relayed

    # --- Driving ---

    def cancel(self) -> None:
        """Stop this stream; the next feed()/finish() raises StreamCancelledError."""
        self._cancelled = True

    def feed(self, text: str) -> list[StreamEvent]:
        """Consume one delta and return the events it completes."""
        self._check_cancelled()
        if self._finished or self._state is DetectorState.COMPLETE or not text:
            return []
        self._seen_chars += len(text)
        if self._state is DetectorState.IDLE:
            self._start()

        if self._state in (DetectorState.PASSTHROUGH, DetectorState.MALFORMED):
            return [self._content(text)]

        out: list[StreamEvent] = []
        if self._state is DetectorState.EARLY_LOOKAHEAD:
            self._head += text
            decision = decide_lookahead(self._head, self._lookahead)
            if decision is None:
                return out
            self._apply_decision(decision, out)
        else:
            self._scan(text, out)
        self._enforce_buffer_limit(out)
        return out

    def finish(self, finish_reason: str | None = None) -> list[StreamEvent]:
        """Flush whatever is held and emit the single finish event.

        The finish reason becomes ``"tool_calls"`` when any call was found;
        otherwise the upstream *finish_reason* is kept. Idempotent.
        """
        self._check_cancelled()
        if self._finished:
            return []
        self._finished = True
        out: list[StreamEvent] = []

        if self._state is DetectorState.EARLY_LOOKAHEAD:
            decision = decide_lookahead(self._head, self._lookahead, final=True) or PASS
            self._apply_decision(decision, out)
        if self._state in (DetectorState.BUFFERING, DetectorState.ARRAY_OPEN):
            for segment in self._scanner.close():
                self._array_closed(segment.text, out, failed=True, reason=segment.reason)
        if self._held and not self._calls:
            out.append(self._content("".join(self._held)))
        self._held.clear()
        self._held_chars = 0
        if self._pending:
            out.append(self._content(self._pending))
            self._pending = ""

        self._state = DetectorState.COMPLETE
        reason = "tool_calls" if self._calls else finish_reason
        out.append(
            StreamEvent(EventKind.FINISH, self.choice_index, finish_reason=reason)
        )
        if self._calls:
            logger.info(
                "Detected %d tool call(s): %s",
                len(self._calls),
                ", ".join(c.name for c in self._calls),
            )
            emit(
                self._config.metrics_callback,
                ToolCallDetectionEvent(
                    call_count=len(self._calls),
                    call_names=tuple(c.name for c in self._calls),
                    content_length=self._seen_chars,
                    streaming=self._streaming,
                    duration_s=self._stopwatch.elapsed(),
                ),
            )
        return out

    # --- Internals ---

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            self._cancelled = True
        if self._cancelled:
            raise StreamCancelledError(
                "stream cancelled by caller",
                hint="Cancellation is final; start a new request to retry.",
            )

    def _start(self) -> None:
        if not self._detect:
            self._state = DetectorState.PASSTHROUGH
            self._relayed = True
        elif self._lookahead > 0:
            self._state = DetectorState.EARLY_LOOKAHEAD
        else:
            self._state = DetectorState.BUFFERING

    def _apply_decision(self, decision: LookaheadDecision, out: list[StreamEvent]) -> None:
        head, self._head = self._head, ""
        if not decision.buffer:
            logger.debug("Lookahead decided passthrough after %d chars", len(head))
            self._state = DetectorState.PASSTHROUGH
            self._relayed = True
            if head:
                out.append(self._content(head))
            return
        logger.debug("Lookahead decided to buffer at offset %d", decision.start)
        self._state = DetectorState.BUFFERING
        self._trigger_pending = True
        self._plain(head[: decision.start], out)
        self._scan(head[decision.start :], out)

    def _scan(self, text: str, out: list[StreamEvent]) -> None:
        for segment in self._scanner.feed(text):
            kind = segment.kind
            if kind is SegmentKind.TEXT:
                self._plain(segment.text, out)
            elif kind is SegmentKind.ARRAY_START:
                self._state = DetectorState.ARRAY_OPEN
                self._array_calls = 0
            elif kind is SegmentKind.ELEMENT:
                self._element(segment.value, out)
            else:
                self._array_closed(
                    segment.text,
                    out,
                    failed=kind is SegmentKind.ARRAY_FAILED,
                    reason=segment.reason,
                )

            if self._state is DetectorState.COMPLETE:
                return
            if self._state in (DetectorState.PASSTHROUGH, DetectorState.MALFORMED):
                rest = text[segment.end :]
                if rest:
                    out.append(self._content(rest))
                return

    def _element(self, value: Any, out: list[StreamEvent]) -> None:
        call = ToolCall.from_element(value, self._config.id_factory)
        if call is None:
            logger.debug("Ignoring array element that is not a tool call")
            return
        if self._array_calls == 0:
            self._commit_call_array(out)
        self._trigger_pending = False
        self._calls.append(call)
        self._array_calls += 1
        out.append(
            StreamEvent(
                EventKind.TOOL_CALL,
                self.choice_index,
                tool_call=call,
                call_index=len(self._calls) - 1,
            )
        )
        if self._rules.stop is StopCondition.FIRST_CALL or (
            self._limit is not None and len(self._calls) >= self._limit
        ):
            self._stop(out)

    def _commit_call_array(self, out: list[StreamEvent]) -> None:
        """The open array is a call array: settle the text that preceded it."""
        if self._rules.suppress_text:
            self._held.clear()
            self._held_chars = 0
            return
        window = max(0, len(self._pending) - _TAIL_WINDOW)
        m = _FENCE_OPEN_TAIL.search(self._pending, window)
        if m:
            self._pending = self._pending[: m.start()]
            self._strip_closing_fence = True
        if self._pending:
            out.append(self._content(self._pending))
            self._pending = ""

    def _array_closed(
        self, raw: str, out: list[StreamEvent], *, failed: bool, reason: str = ""
    ) -> None:
        self._state = DetectorState.BUFFERING
        if self._array_calls:
            if failed:
                logger.debug(
                    "Tool call array broke off after %d call(s): %s",
                    self._array_calls,
                    reason,
                )
            self._array_calls = 0
            if self._rules.stop is StopCondition.FIRST_ARRAY:
                self._stop(out)
            return
        if failed:
            logger.debug("Treating malformed array as text: %s", reason)
        if self._trigger_pending:
            self._fall_back(raw, out, malformed=failed)
            return
        self._plain(raw, out)

    def _plain(self, text: str, out: list[StreamEvent]) -> None:
        if not text:
            return
        if self._rules.suppress_text:
            if not self._calls:
                self._held.append(text)
                self._held_chars += len(text)
            return

        self._pending += text
        if self._strip_closing_fence:
            m = _CLOSING_FENCE.match(self._pending)
            if m:
                self._pending = self._pending[m.end() :]
                self._strip_closing_fence = False
            elif _CLOSING_FENCE_PARTIAL.fullmatch(self._pending):
                return
            else:
                self._strip_closing_fence = False
        self._release(out)

    def _release(self, out: list[StreamEvent]) -> None:
        """Emit pending text, keeping back a tail that may open a fence."""
        pending = self._pending
        window = max(0, len(pending) - _TAIL_WINDOW)
        m = _FENCE_OPEN_TAIL.search(pending, window) or _BACKTICK_TAIL.search(
            pending, window
        )
        cut = m.start() if m else len(pending)
        if cut:
            out.append(self._content(pending[:cut]))
            self._pending = pending[cut:]

    def _fall_back(self, extra: str, out: list[StreamEvent], *, malformed: bool) -> None:
        text = "".join(self._held) + self._pending + extra
        self._held.clear()
        self._held_chars = 0
        self._pending = ""
        self._state = DetectorState.MALFORMED if malformed else DetectorState.PASSTHROUGH
        logger.debug("No tool call found; relaying %d held chars as content", len(text))
        if text:
            out.append(self._content(text))

    def _stop(self, out: list[StreamEvent]) -> None:
        if self._pending and not self._rules.suppress_text:
            out.append(self._content(self._pending))
            self._pending = ""
        self._state = DetectorState.COMPLETE
        logger.debug(
            "Policy %s satisfied; ignoring the rest of the stream",
            self._config.policy.value,
        )

    def _enforce_buffer_limit(self, out: list[StreamEvent]) -> None:
        if self._max_buffer is None or self._calls:
            return
        if self._state not in (DetectorState.BUFFERING, DetectorState.ARRAY_OPEN):
            return
        held = self._held_chars + len(self._pending) + self._scanner.buffered_chars
        if held <= self._max_buffer:
            return
        logger.warning(
            "Held %d chars without finding a tool call; relaying as content", held
        )
        self._fall_back(self._scanner.abandon(), out, malformed=False)

    def _content(self, text: str) -> StreamEvent:
        return StreamEvent(EventKind.CONTENT, self.choice_index, content=text)


def collect(events: Iterable[StreamEvent]) -> tuple[str, list[ToolCall], str | None]:
    """Fold events into ``(content, tool_calls, finish_reason)``."""
    content: list[str] = []
    calls: list[ToolCall] = []
    reason: str | None = None
    for event in events:
        if event.kind is EventKind.CONTENT:
            content.append(event.content)
        elif event.kind is EventKind.TOOL_CALL and event.tool_call is not None:
            calls.append(event.tool_call)
        else:
            reason = event.finish_reason
    return "".join(content), calls, reason
