"""Incremental scanner for top-level JSON arrays embedded in text.

The scanner looks at every character once. Outside an array it only searches
for ``[``; inside one it tracks the bracket stack plus string and escape
state, and each time a top-level element closes that element alone is handed
to ``json.loads``. Nothing is ever re-parsed from the start of the buffer.

Results are reported as ``Segment`` values. Every segment carries ``end``, the
offset in the current chunk just past the character that produced it, so a
consumer that stops iterating knows exactly which part of the chunk it has not
looked at yet.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

_ESCAPES = frozenset('"\\/bfnrtu')
_CLOSER = {"[": "]", "{": "}"}
# First characters a JSON value can start with.
_VALUE_START = frozenset('{["-0123456789tfn')


class SegmentKind(str, Enum):
    TEXT = "text"
    ARRAY_START = "array_start"
    ELEMENT = "element"
    ARRAY_END = "array_end"
    ARRAY_FAILED = "array_failed"


@dataclass(frozen=True)
class Segment:
    """One scanner observation.

    ``text`` is the plain text for TEXT, the element source for ELEMENT, and
    the whole raw array (as consumed so far) for ARRAY_END and ARRAY_FAILED.
    """

    kind: SegmentKind
    end: int
    text: str = ""
    value: Any = None
    reason: str = ""


class ArrayScanner:
    """Find and split top-level JSON arrays in text that arrives in pieces."""

    def __init__(self) -> None:
        self._open_array()
        # Start outside any array.
        self._stack.clear()

    def _open_array(self) -> None:
        self._stack: list[str] = ["]"]
        self._in_string = False
        self._escape = False
        # A complete value sits at depth 1; only ',' or ']' may follow.
        self._after_value = False
        # Awaiting the first character of the next element.
        self._expect_value = True
        self._raw = "["
        self._element_start = 1
        self._elements = 0

    @property
    def in_array(self) -> bool:
        return bool(self._stack)

    @property
    def buffered_chars(self) -> int:
        """Characters of the currently open array held by the scanner."""
        return len(self._raw) if self._stack else 0

    def feed(self, text: str) -> Iterator[Segment]:
        """Scan *text*, yielding segments in order."""
        pos = 0
        n = len(text)
        while pos < n:
            if not self._stack:
                idx = text.find("[", pos)
                if idx < 0:
                    yield Segment(SegmentKind.TEXT, end=n, text=text[pos:])
                    return
                if idx > pos:
                    yield Segment(SegmentKind.TEXT, end=idx, text=text[pos:idx])
                self._open_array()
                pos = idx + 1
                yield Segment(SegmentKind.ARRAY_START, end=pos)
                continue

            start = pos
            while pos < n:
                ch = text[pos]
                pos += 1
                separator = (
                    ch in ",]" and len(self._stack) == 1 and not self._in_string
                )
                failure = self._step(ch)
                if failure is None and not separator:
                    continue
                # ',' or ']' at depth 1, or a failure: materialize the raw text.
                self._raw += text[start:pos]
                start = pos
                if failure is not None:
                    yield self._fail(failure, pos)
                    break
                if ch == ",":
                    segment = self._close_element(closing=False, end=pos)
                    if segment is not None:
                        yield segment
                        if segment.kind is SegmentKind.ARRAY_FAILED:
                            break
                    continue
                # ']' closes the array
                segment = self._close_element(closing=True, end=pos)
                if segment is not None:
                    yield segment
                    if segment.kind is SegmentKind.ARRAY_FAILED:
                        break
                raw = self._raw
                self._stack.clear()
                yield Segment(SegmentKind.ARRAY_END, end=pos, text=raw)
                break
            else:
                self._raw += text[start:pos]

    def close(self) -> Iterator[Segment]:
        """Flush at end of input: an array still open is unterminated."""
        if self._stack:
            yield self._fail("unterminated array", 0)

    def abandon(self) -> str:
        """Give up on the open array (if any) and return its raw text."""
        if not self._stack:
            return ""
        return self._fail("abandoned", 0).text

    def _step(self, ch: str) -> str | None:
        """Advance structural state by one character; return a failure reason."""
        if self._in_string:
            if self._escape:
                self._escape = False
                if ch not in _ESCAPES:
                    return f"invalid escape sequence \\{ch}"
            elif ch == "\\":
                self._escape = True
            elif ch == '"':
                self._in_string = False
                if len(self._stack) == 1:
                    self._after_value = True
            return None

        top_level = len(self._stack) == 1
        if ch.isspace():
            return None
        if top_level:
            if ch in ",]":
                return None
            if self._after_value:
                return f"missing ',' before {ch!r}"
            if self._expect_value:
                if ch not in _VALUE_START and ch != '"':
                    return f"unexpected {ch!r} at start of element"
                self._expect_value = False

        if ch == '"':
            self._in_string = True
        elif ch in _CLOSER:
            self._stack.append(_CLOSER[ch])
        elif ch in "]}":
            if self._stack[-1] != ch:
                return f"mismatched {ch!r}"
            self._stack.pop()
            if len(self._stack) == 1:
                self._after_value = True
        return None

    def _close_element(self, *, closing: bool, end: int) -> Segment | None:
        source = self._raw[self._element_start : len(self._raw) - 1].strip()
        self._element_start = len(self._raw)
        self._after_value = False
        self._expect_value = True
        if not source:
            # "[]" and a trailing comma before "]" are tolerated.
            if closing:
                return None
            return self._fail("empty element", end)
        try:
            value = json.loads(source)
        except ValueError as e:
            return self._fail(f"invalid element: {e}", end)
        self._elements += 1
        return Segment(SegmentKind.ELEMENT, end=end, text=source, value=value)

    def _fail(self, reason: str, end: int) -> Segment:
        raw = self._raw
        self._stack.clear()
        self._in_string = False
        self._escape = False
        return Segment(SegmentKind.ARRAY_FAILED, end=end, text=raw, reason=reason)
