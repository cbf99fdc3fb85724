"""Chunk-level streaming transformation."""

from __future__ import annotations

import asyncio
import json

import pytest

from tests.conftest import FakeBackend, sequential_ids
from tests.helpers import chunk, content_chunks
from tooladapter.config import Config
from tooladapter.errors import StreamCancelledError
from tooladapter.models import ChatCompletionChunk
from tooladapter.streaming import ChunkTransformer, coerce_chunk, transform_chunks

pytestmark = pytest.mark.unit

WEATHER = '[{"name": "get_weather", "parameters": {"location": "Paris"}}]'


async def collect_stream(
    chunks: list[dict], config: Config | None = None, **kwargs
) -> list[dict]:
    backend = FakeBackend(streams=[chunks])
    return [c async for c in transform_chunks(backend.stream({}), config, **kwargs)]


def contents(chunks: list[dict]) -> str:
    return "".join(
        choice["delta"].get("content") or ""
        for c in chunks
        for choice in c.get("choices", [])
    )


def tool_call_deltas(chunks: list[dict]) -> list[dict]:
    return [
        call
        for c in chunks
        for choice in c.get("choices", [])
        for call in choice["delta"].get("tool_calls") or []
    ]


def finish_reasons(chunks: list[dict]) -> list[str]:
    return [
        choice["finish_reason"]
        for c in chunks
        for choice in c.get("choices", [])
        if choice.get("finish_reason")
    ]


# =============================================================================
# ChunkTransformer
# =============================================================================


def test_untouched_chunks_are_the_same_object() -> None:
    transformer = ChunkTransformer(Config(lookahead_chars=8))
    role = coerce_chunk(chunk("", role="assistant"))
    text = coerce_chunk(chunk("Hello"))

    assert transformer.transform(role) == [role]
    assert transformer.transform(role)[0] is role
    assert transformer.transform(text)[0] is text


def test_detection_disabled_returns_every_chunk_unchanged() -> None:
    transformer = ChunkTransformer(detect=False)
    items = [coerce_chunk(c) for c in content_chunks(WEATHER)]

    for item in items:
        assert transformer.transform(item) == [item]
    assert transformer.passthrough


def test_tool_call_chunk_shape() -> None:
    transformer = ChunkTransformer(Config(id_factory=sequential_ids()))

    out = transformer.transform(coerce_chunk(chunk(WEATHER, system_fingerprint="fp_9")))

    assert len(out) == 2
    data = out[0].to_dict()
    assert data["id"] == "chatcmpl-test"
    assert data["system_fingerprint"] == "fp_9"
    delta = data["choices"][0]["delta"]
    assert delta["role"] == "assistant"
    assert "content" not in delta
    assert delta["tool_calls"] == [
        {
            "index": 0,
            "id": "call_1",
            "type": "function",
            "function": {"name": "get_weather", "arguments": '{"location": "Paris"}'},
        }
    ]
    assert out[1].to_dict()["choices"] == [
        {"index": 0, "delta": {}, "finish_reason": "tool_calls"}
    ]
    assert transformer.assembler(0).finished


def test_finish_all_emits_tool_calls_finish() -> None:
    transformer = ChunkTransformer(Config(policy="drain_all"))
    transformer.transform(coerce_chunk(chunk(WEATHER)))

    out = transformer.finish_all()

    assert [c.to_dict()["choices"] for c in out] == [
        [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]
    ]
    assert transformer.finish_all() == []


def test_content_and_finish_are_split() -> None:
    transformer = ChunkTransformer()
    transformer.transform(coerce_chunk(chunk("Hel")))

    out = transformer.transform(coerce_chunk(chunk("lo", finish_reason="stop")))

    choices = [c.to_dict()["choices"][0] for c in out]
    assert choices == [
        {"index": 0, "delta": {"content": "Hello"}},
        {"index": 0, "delta": {}, "finish_reason": "stop"},
    ]


def test_usage_rides_on_the_last_output_chunk() -> None:
    transformer = ChunkTransformer()
    usage = {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3}
    transformer.transform(coerce_chunk(chunk("H")))

    out = transformer.transform(coerce_chunk(chunk("i", finish_reason="stop", usage=usage)))

    assert len(out) == 2
    assert "usage" not in out[0].to_dict()
    assert out[-1].to_dict()["usage"] == usage


def test_choices_are_tracked_independently() -> None:
    transformer = ChunkTransformer(Config(id_factory=sequential_ids()))
    both = coerce_chunk(
        {
            "id": "c",
            "choices": [
                {"index": 0, "delta": {"content": WEATHER}},
                {"index": 1, "delta": {"content": "Just text"}},
            ],
        }
    )

    transformer.transform(both)
    transformer.finish_all()

    assert [c.name for c in transformer.tool_calls] == ["get_weather"]
    assert transformer.assembler(0).done
    assert transformer.assembler(1).finished
    assert not transformer.passthrough


def test_coerce_chunk_accepts_models() -> None:
    model = ChatCompletionChunk.model_validate(chunk("x"))

    assert coerce_chunk(model) is model
    assert coerce_chunk(chunk("x")).choices[0].delta.content == "x"


# =============================================================================
# transform_chunks
# =============================================================================


@pytest.mark.asyncio
async def test_plain_stream_is_relayed() -> None:
    source = content_chunks("It's ", "sunny ", "today.")

    out = await collect_stream(source, Config(lookahead_chars=16))

    assert out == source
    assert contents(out) == "It's sunny today."


@pytest.mark.asyncio
async def test_tool_call_stream_stops_early_and_closes_source() -> None:
    pieces = ['[{"name": "get_weather", ', '"parameters": {"location": "Paris"}}]', " ignored"]
    backend = FakeBackend(streams=[content_chunks(*pieces)])

    out = [c async for c in transform_chunks(backend.stream({}), Config(), choices=1)]

    assert [c["function"]["name"] for c in tool_call_deltas(out)] == ["get_weather"]
    assert finish_reasons(out) == ["tool_calls"]
    assert contents(out) == ""
    assert backend.stream_closed
    assert backend.pulled == 3


@pytest.mark.asyncio
async def test_drain_after_stop_keeps_usage_chunks() -> None:
    usage = {"id": "chatcmpl-test", "choices": [], "usage": {"total_tokens": 9}}
    source = [*content_chunks(WEATHER, " trailing"), usage]

    out = await collect_stream(source, Config(cancel_upstream_on_stop=False), choices=1)

    assert out[-1] == usage
    assert finish_reasons(out) == ["tool_calls"]
    assert contents(out) == ""


@pytest.mark.asyncio
async def test_drain_all_emits_each_call_with_increasing_index() -> None:
    source = content_chunks('[{"name": "a"},', ' {"name": "b"}]', ' [{"name": "c"}]')

    out = await collect_stream(source, Config(policy="drain_all"))

    assert [c["index"] for c in tool_call_deltas(out)] == [0, 1, 2]
    assert [c["function"]["name"] for c in tool_call_deltas(out)] == ["a", "b", "c"]
    assert finish_reasons(out) == ["tool_calls"]


@pytest.mark.asyncio
async def test_stream_without_finish_chunk_still_finishes() -> None:
    source = [chunk("", role="assistant"), chunk("no finish here")]

    out = await collect_stream(source)

    assert contents(out) == "no finish here"
    assert finish_reasons(out) == []
    assert json.dumps(out)


@pytest.mark.asyncio
async def test_cancellation_raises_and_closes_source() -> None:
    cancel = asyncio.Event()
    backend = FakeBackend(streams=[content_chunks('[{"name": "calc", ', '"parameters": {}}]')])
    stream = transform_chunks(backend.stream({}), Config(), cancel_event=cancel)

    first = await stream.__anext__()
    cancel.set()

    with pytest.raises(StreamCancelledError):
        await stream.__anext__()
    assert first["choices"][0]["delta"].get("role") == "assistant"
    assert backend.stream_closed


@pytest.mark.asyncio
@pytest.mark.parametrize("policy", ["stop_on_first", "collect_then_stop"])
async def test_interleaved_choices_survive_a_satisfied_choice(policy: str) -> None:
    source = [
        chunk("", index=0, role="assistant"),
        chunk(WEATHER, index=0),
        chunk("It's sunny", index=1),
        chunk(" today.", index=1),
        chunk(finish_reason="stop", index=0),
        chunk(finish_reason="stop", index=1),
    ]
    backend = FakeBackend(streams=[source])

    out = [
        c
        async for c in transform_chunks(
            backend.stream({}), Config(policy=policy, lookahead_chars=0)
        )
    ]

    texts = [
        choice["delta"].get("content")
        for c in out
        for choice in c["choices"]
        if choice["index"] == 1 and choice["delta"].get("content")
    ]
    assert "".join(texts) == "It's sunny today."
    assert [c["function"]["name"] for c in tool_call_deltas(out)] == ["get_weather"]
    assert backend.pulled == len(source)
    by_choice = {
        choice["index"]: choice["finish_reason"]
        for c in out
        for choice in c["choices"]
        if choice.get("finish_reason")
    }
    assert by_choice == {0: "tool_calls", 1: "stop"}


@pytest.mark.asyncio
async def test_usage_on_a_suppressed_chunk_is_kept() -> None:
    usage = {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3}
    source = [
        chunk(WEATHER),
        chunk(" trailing", finish_reason="stop", usage=usage),
    ]

    out = await collect_stream(source)

    assert out[-1]["choices"] == []
    assert out[-1]["usage"] == usage
    assert finish_reasons(out) == ["tool_calls"]


def test_collecting_transformer_keeps_text_per_choice() -> None:
    transformer = ChunkTransformer(Config(lookahead_chars=4), collect=True)
    transformer.transform(coerce_chunk(chunk("one ", index=0)))
    transformer.transform(coerce_chunk(chunk("two", index=1)))
    transformer.transform(coerce_chunk(chunk("more", index=0, finish_reason="stop")))

    assert transformer.contents == {0: "one more", 1: "two"}
    assert transformer.finish_reason == "stop"
    assert not ChunkTransformer().contents
