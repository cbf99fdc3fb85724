"""Chunk-level streaming transformation.

``ChunkTransformer`` runs one ``ToolCallAssembler`` per choice index over a
sequence of ``chat.completion.chunk`` objects and re-emits correctly shaped
chunks: content deltas, ``delta.tool_calls`` entries, and a separate finish
chunk. Chunks it has no reason to touch are returned as the very same object
so byte-level relays can forward the original payload.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from tooladapter.assembler import EventKind, StreamEvent, ToolCallAssembler
from tooladapter.config import Config
from tooladapter.errors import StreamCancelledError
from tooladapter.models import ChatCompletionChunk, ChunkChoice, ToolCall

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator

logger = logging.getLogger(__name__)


class ChunkTransformer:
    """Per-stream driver holding one assembler per choice index.

    A choice whose policy is satisfied gets its finish chunk right away and
    anything upstream still sends for it is dropped; the other choices keep
    streaming. ``choices`` is the number of choices the request asked for
    (its ``n``). Only when it is known can the whole stream be ``done``
    before upstream ends, since an index that has not shown up yet may still
    arrive.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        detect: bool = True,
        lookahead_chars: int | None = None,
        cancel_event: Any = None,
        choices: int | None = None,
        collect: bool = False,
    ) -> None:
        self._config = config or Config()
        self._detect = detect
        self._lookahead = lookahead_chars
        self._cancel_event = cancel_event
        self._choices = choices
        self._collect = collect
        self._assemblers: dict[int, ToolCallAssembler] = {}
        self._template: ChatCompletionChunk | None = None
        # Running totals, kept only when collecting a result.
        self._contents: dict[int, list[str]] = {}
        self.finish_reason: str | None = None

    @property
    def config(self) -> Config:
        return self._config

    @property
    def done(self) -> bool:
        """True when every expected choice has satisfied its policy."""
        if self._choices is None or len(self._assemblers) < self._choices:
            return False
        return all(a.done for a in self._assemblers.values())

    @property
    def passthrough(self) -> bool:
        return not self._detect or all(a.passthrough for a in self._assemblers.values())

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [
            call
            for index in sorted(self._assemblers)
            for call in self._assemblers[index].tool_calls
        ]

    @property
    def contents(self) -> dict[int, str]:
        """Emitted text per choice index (collecting transformers only)."""
        return {index: "".join(parts) for index, parts in sorted(self._contents.items())}

    def cancel(self) -> None:
        for assembler in self._assemblers.values():
            assembler.cancel()

    def assembler(self, index: int) -> ToolCallAssembler:
        assembler = self._assemblers.get(index)
        if assembler is None:
            assembler = ToolCallAssembler(
                self._config,
                detect=self._detect,
                choice_index=index,
                lookahead_chars=self._lookahead,
                cancel_event=self._cancel_event,
            )
            self._assemblers[index] = assembler
        return assembler

    def transform(self, chunk: ChatCompletionChunk) -> list[ChatCompletionChunk]:
        """Run *chunk* through the assemblers; return the chunks to emit."""
        if self._template is None:
            self._template = chunk
        if not chunk.choices:
            return [chunk]

        rendered: list[tuple[ChunkChoice, list[ChunkChoice] | None]] = []
        for choice in chunk.choices:
            assembler = self.assembler(choice.index)
            content = choice.delta.content
            events = assembler.feed(content) if content else []
            if choice.finish_reason is not None:
                events += assembler.finish(choice.finish_reason)
            elif assembler.done and not assembler.finished:
                # Satisfied early: close this choice now, not when upstream ends.
                events += assembler.finish()
            self._record(choice.index, events)
            if _unchanged(choice, events):
                rendered.append((choice, None))
            else:
                rendered.append((choice, _render(choice, events)))

        if all(out is None for _, out in rendered):
            return [chunk]

        outputs: list[ChatCompletionChunk] = []
        for choice, out in rendered:
            for c in [choice] if out is None else out:
                outputs.append(chunk.with_choice(c))
        usage = (chunk.model_extra or {}).get("usage")
        if usage is not None:
            if outputs:
                outputs[-1] = outputs[-1].with_usage(usage)
            else:
                data = {**chunk.to_dict(), "choices": [], "usage": usage}
                outputs.append(ChatCompletionChunk.model_validate(data))
        return outputs

    def finish_all(self) -> list[ChatCompletionChunk]:
        """Finish every open choice (end of source or policy-driven stop)."""
        if self._template is None:
            return []
        outputs: list[ChatCompletionChunk] = []
        for index in sorted(self._assemblers):
            assembler = self._assemblers[index]
            if assembler.finished:
                continue
            events = assembler.finish()
            self._record(index, events)
            for c in _render(ChunkChoice(index=index), events):
                outputs.append(self._template.with_choice(c))
        return outputs

    def _record(self, index: int, events: list[StreamEvent]) -> None:
        if not self._collect:
            return
        for event in events:
            if event.kind is EventKind.CONTENT:
                self._contents.setdefault(index, []).append(event.content)
            elif event.kind is EventKind.FINISH and event.finish_reason is not None:
                self.finish_reason = event.finish_reason


def _unchanged(choice: ChunkChoice, events: list[StreamEvent]) -> bool:
    """True when *events* say exactly what *choice* already says."""
    content = choice.delta.content or ""
    expected: list[tuple[EventKind, str | None]] = []
    if content:
        expected.append((EventKind.CONTENT, content))
    if choice.finish_reason is not None:
        expected.append((EventKind.FINISH, choice.finish_reason))
    actual = [
        (e.kind, e.content if e.kind is EventKind.CONTENT else e.finish_reason)
        for e in events
        if e.kind is not EventKind.TOOL_CALL
    ]
    has_calls = any(e.kind is EventKind.TOOL_CALL for e in events)
    return not has_calls and actual == expected


def _render(choice: ChunkChoice, events: list[StreamEvent]) -> list[ChunkChoice]:
    """Turn assembler events into at most two choices: delta, then finish."""
    text = "".join(e.content for e in events if e.kind is EventKind.CONTENT)
    calls = [
        e.tool_call.to_delta(e.call_index or 0)
        for e in events
        if e.kind is EventKind.TOOL_CALL and e.tool_call is not None
    ]
    finish = next((e.finish_reason for e in events if e.kind is EventKind.FINISH), None)

    choice_data = choice.to_dict()
    delta = dict(choice_data.pop("delta", {}))
    choice_data.pop("finish_reason", None)
    delta.pop("content", None)
    if text:
        delta["content"] = text
    if calls:
        delta["tool_calls"] = calls
        if any(c["index"] == 0 for c in calls):
            delta.setdefault("role", "assistant")

    out: list[ChunkChoice] = []
    if delta:
        choice_data.update(index=choice.index, delta=delta)
        out.append(ChunkChoice.model_validate(choice_data))
    if finish is not None:
        finish_choice = {"index": choice.index, "delta": {}, "finish_reason": finish}
        out.append(ChunkChoice.model_validate(finish_choice))
    return out


def coerce_chunk(raw: Any) -> ChatCompletionChunk:
    """Accept a dict, our model, or an SDK chunk object."""
    if isinstance(raw, ChatCompletionChunk):
        return raw
    if hasattr(raw, "model_dump"):
        raw = raw.model_dump(exclude_unset=True)
    return ChatCompletionChunk.model_validate(raw)


async def transform_chunks(
    chunks: AsyncIterable[Any],
    config: Config | None = None,
    *,
    detect: bool = True,
    lookahead_chars: int | None = None,
    cancel_event: asyncio.Event | None = None,
    choices: int | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Transform an async stream of chunk objects into chunk dicts.

    Works with the ``openai`` SDK's ``AsyncStream`` as well as plain dicts.
    With *choices* (the request's ``n``) known, a stream whose choices are
    all satisfied early has its source closed (or drained, with
    ``cancel_upstream_on_stop=False``). Without it the source is read to the
    end so a choice that has not appeared yet is never lost.
    """
    cfg = config or Config()
    transformer = ChunkTransformer(
        cfg,
        detect=detect,
        lookahead_chars=lookahead_chars,
        cancel_event=cancel_event,
        choices=choices,
    )
    iterator = chunks.__aiter__()
    stopped = False
    try:
        async for raw in iterator:
            if cancel_event is not None and cancel_event.is_set():
                transformer.cancel()
                raise StreamCancelledError("stream cancelled by caller")
            chunk = coerce_chunk(raw)
            if stopped:
                # Draining after an early stop: only usage-style chunks survive.
                if not chunk.choices:
                    yield chunk.to_dict()
                continue
            for out in transformer.transform(chunk):
                yield out.to_dict()
            if transformer.done:
                stopped = True
                for out in transformer.finish_all():
                    yield out.to_dict()
                if cfg.cancel_upstream_on_stop:
                    logger.debug("All choices complete; closing upstream early")
                    break
        if not stopped:
            for out in transformer.finish_all():
                yield out.to_dict()
    finally:
        await aclose_quietly(iterator)


async def aclose_quietly(obj: Any) -> None:
    """Close an async resource, logging (not raising) cleanup failures."""
    for name in ("aclose", "close"):
        closer = getattr(obj, name, None)
        if closer is None:
            continue
        try:
            result = closer()
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.debug("Ignoring error while closing %r", obj, exc_info=True)
        return
