"""Tool-call extraction from complete (non-streaming) responses."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
import logging
from typing import Any, TypeVar

from pydantic import ValidationError

from tooladapter.assembler import ToolCallAssembler, collect
from tooladapter.config import Config
from tooladapter.errors import InternalError
from tooladapter.models import ToolCall

logger = logging.getLogger(__name__)

ResponseT = TypeVar("ResponseT")


@dataclass(frozen=True)
class ExtractionResult:
    """Outcome of scanning one assistant message."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def extract_tool_calls(content: str, config: Config | None = None) -> ExtractionResult:
    """Find tool-call arrays in *content* and apply the configured policy.

    Content without a call array comes back unchanged with no calls. Under
    suppressing policies the returned content is ``""`` whenever a call was
    found; under ALLOW_MIXED it is the text around the call arrays.
    """
    assembler = ToolCallAssembler(config, lookahead_chars=0, streaming=False)
    events = assembler.feed(content)
    events += assembler.finish()
    text, calls, _ = collect(events)
    if not calls:
        return ExtractionResult(content=content)
    return ExtractionResult(content=text, tool_calls=calls)


def transform_response(response: ResponseT, config: Config | None = None) -> ResponseT:
    """Rewrite every choice of a chat completion whose text holds tool calls.

    Accepts a plain dict or a pydantic model (such as the ``openai`` SDK's
    ``ChatCompletion``) and returns the same kind of object. The input is never
    mutated; when nothing changes the very same object is returned.
    """
    if isinstance(response, dict):
        return _transform_dict(response, config)  # type: ignore[return-value]
    if hasattr(response, "model_dump") and hasattr(type(response), "model_validate"):
        data = response.model_dump()
        out = _transform_dict(data, config)
        if out is data:
            return response
        try:
            return type(response).model_validate(out)  # type: ignore[attr-defined]
        except ValidationError as e:
            raise InternalError(
                f"Rewritten response no longer validates as {type(response).__name__}: {e}",
                hint="This is a tooladapter internal error. Please report it.",
            ) from e
    raise TypeError(
        f"transform_response expects a dict or pydantic model, got {type(response).__name__}"
    )


def _transform_dict(response: dict[str, Any], config: Config | None) -> dict[str, Any]:
    choices = response.get("choices")
    if not isinstance(choices, list) or not choices:
        return response

    result: dict[str, Any] | None = None
    for i, choice in enumerate(choices):
        if not isinstance(choice, dict):
            continue
        message = choice.get("message")
        if not isinstance(message, dict) or message.get("tool_calls"):
            continue
        content = message.get("content")
        if not isinstance(content, str) or not content:
            continue

        extracted = extract_tool_calls(content, config)
        if not extracted.has_tool_calls:
            continue

        if result is None:
            result = copy.deepcopy(response)
        target = result["choices"][i]
        target["message"]["content"] = extracted.content
        target["message"]["tool_calls"] = [c.to_dict() for c in extracted.tool_calls]
        target["finish_reason"] = "tool_calls"
        logger.debug(
            "Choice %s: extracted %d tool call(s)",
            choice.get("index", i),
            len(extracted.tool_calls),
        )

    return response if result is None else result
