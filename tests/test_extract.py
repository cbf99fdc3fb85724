"""Non-streaming extraction and response rewriting."""

from __future__ import annotations

import copy
import json

from openai.types.chat import ChatCompletion
from pydantic import BaseModel, ConfigDict
import pytest

from tests.conftest import sequential_ids
from tooladapter.config import Config
from tooladapter.errors import InternalError
from tooladapter.extract import extract_tool_calls, transform_response
from tooladapter.policy import ToolPolicy

pytestmark = pytest.mark.unit

WEATHER = '[{"name": "get_weather", "parameters": {"location": "Paris"}}]'


def completion(*contents: str | None, **extra) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gemma-3",
        "choices": [
            {
                "index": i,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
                "logprobs": None,
            }
            for i, content in enumerate(contents)
        ],
        "usage": {"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12},
        **extra,
    }


# =============================================================================
# extract_tool_calls
# =============================================================================


@pytest.mark.parametrize(
    "content",
    [
        "It's sunny today.",
        "",
        "Lists like [1, 2, 3] are fine.",
        '[{"title": "not a call"}]',
        "[broken json",
        '{"name": "get_weather"}',
    ],
)
def test_content_without_calls_is_unchanged(content: str) -> None:
    result = extract_tool_calls(content)

    assert result.content == content
    assert result.tool_calls == []
    assert not result.has_tool_calls


def test_single_call_suppresses_content() -> None:
    result = extract_tool_calls(WEATHER, Config(id_factory=sequential_ids()))

    assert result.content == ""
    assert [c.to_dict() for c in result.tool_calls] == [
        {
            "id": "call_1",
            "type": "function",
            "function": {"name": "get_weather", "arguments": '{"location": "Paris"}'},
        }
    ]


def test_array_found_anywhere_in_the_text() -> None:
    result = extract_tool_calls(
        'Sure, calling it now: [{"name": "calc", "parameters": {"expr": "2*3"}}] ok?'
    )

    assert [c.name for c in result.tool_calls] == ["calc"]
    assert result.content == ""


def test_extraction_ignores_streaming_lookahead() -> None:
    text = 'Sure: [{"name": "calc"}]'

    result = extract_tool_calls(text, Config(lookahead_chars=4))

    assert [c.name for c in result.tool_calls] == ["calc"]


@pytest.mark.parametrize(
    ("policy", "count", "content"),
    [
        (ToolPolicy.STOP_ON_FIRST, 1, ""),
        (ToolPolicy.COLLECT_THEN_STOP, 3, ""),
        (ToolPolicy.DRAIN_ALL, 4, ""),
        (ToolPolicy.ALLOW_MIXED, 4, "Here: \nand "),
    ],
)
def test_policies_retain_calls(policy: ToolPolicy, count: int, content: str) -> None:
    text = (
        'Here: [{"name": "a"}, {"name": "b"}, {"name": "c"}]\n'
        'and [{"name": "d"}]'
    )

    result = extract_tool_calls(text, Config(policy=policy))

    assert len(result.tool_calls) == count
    assert result.content == content


def test_invalid_elements_are_dropped() -> None:
    result = extract_tool_calls(
        '[{"name": "ok"}, 42, {"parameters": {}}, {"name": "bad name"}, {"name": "ok2"}]',
        Config(policy="drain_all"),
    )

    assert [c.name for c in result.tool_calls] == ["ok", "ok2"]


def test_parameters_round_trip_as_json() -> None:
    params = {"query": "naïve café", "limit": 3, "nested": {"tags": ["a", "b"]}}
    text = json.dumps([{"name": "search", "parameters": params}])

    result = extract_tool_calls(text)

    assert json.loads(result.tool_calls[0].arguments) == params


# =============================================================================
# transform_response
# =============================================================================


def test_plain_response_is_returned_as_is() -> None:
    response = completion("It's sunny today.")

    assert transform_response(response) is response


def test_response_with_call_is_rewritten_without_mutating_input() -> None:
    response = completion(WEATHER, system_fingerprint="fp_1")
    snapshot = copy.deepcopy(response)

    out = transform_response(response, Config(id_factory=sequential_ids()))

    assert response == snapshot
    choice = out["choices"][0]
    assert choice["finish_reason"] == "tool_calls"
    assert choice["message"]["content"] == ""
    assert choice["message"]["tool_calls"][0]["function"]["name"] == "get_weather"
    assert choice["logprobs"] is None
    assert out["usage"] == response["usage"]
    assert out["system_fingerprint"] == "fp_1"


def test_each_choice_is_processed_independently() -> None:
    response = completion("plain answer", WEATHER, None)

    out = transform_response(response)

    assert out["choices"][0] == response["choices"][0]
    assert out["choices"][1]["finish_reason"] == "tool_calls"
    assert out["choices"][2]["message"]["content"] is None


def test_existing_tool_calls_are_left_alone() -> None:
    response = completion(WEATHER)
    response["choices"][0]["message"]["tool_calls"] = [
        {"id": "native", "type": "function", "function": {"name": "x", "arguments": "{}"}}
    ]

    assert transform_response(response) is response


@pytest.mark.parametrize("response", [{}, {"choices": []}, {"choices": "nope"}])
def test_responses_without_choices_pass_through(response: dict) -> None:
    assert transform_response(response) is response


def test_pydantic_response_keeps_its_type() -> None:
    response = ChatCompletion.model_validate(completion(WEATHER))

    out = transform_response(response)

    assert isinstance(out, ChatCompletion)
    assert out.choices[0].finish_reason == "tool_calls"
    assert out.choices[0].message.tool_calls is not None
    assert out.choices[0].message.tool_calls[0].function.name == "get_weather"


def test_unsupported_response_type() -> None:
    with pytest.raises(TypeError):
        transform_response("not a response")  # type: ignore[arg-type]


class _StrictMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: str
    content: str | None


class _StrictChoice(BaseModel):
    model_config = ConfigDict(extra="forbid")

    index: int
    message: _StrictMessage
    finish_reason: str
    logprobs: None = None


class _StrictCompletion(BaseModel):
    id: str
    object: str
    created: int
    model: str
    choices: list[_StrictChoice]
    usage: dict


def test_model_that_rejects_tool_calls_is_an_internal_error() -> None:
    response = _StrictCompletion.model_validate(completion(WEATHER))

    with pytest.raises(InternalError) as exc:
        transform_response(response)
    assert exc.value.hint
