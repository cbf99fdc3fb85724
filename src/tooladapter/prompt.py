"""Request transformation: tool definitions become prompt text.

The backend never sees ``tools``, ``tool_choice`` or ``tool``-role messages.
Instead the tool list is rendered into an instruction block, earlier tool
results are summarized into the same block, and earlier assistant tool calls
are rewritten as the JSON array the model is told to produce.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
import json
import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from tooladapter.config import Config
from tooladapter.constants import PROMPT_PLACEHOLDER, TOOL_RESULTS_HEADER
from tooladapter.errors import InvalidToolDefinitionError
from tooladapter.metrics import Stopwatch, ToolTransformationEvent, emit
from tooladapter.models import ToolDefinition

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)

# Request keys the backend cannot honor once tools live in the prompt.
_TOOL_KEYS = ("tools", "tool_choice", "parallel_tool_calls")


@dataclass(frozen=True)
class ToolResult:
    """The output of an earlier tool call, taken from a ``tool`` message."""

    call_id: str | None
    content: str


def parse_tool_definitions(tools: Sequence[Any]) -> list[ToolDefinition]:
    """Validate wire-format tools, rejecting empty, invalid or duplicate names."""
    if not isinstance(tools, (list, tuple)):
        raise InvalidToolDefinitionError(
            f"tools must be a list, got {type(tools).__name__}",
            hint='Pass tools as [{"type": "function", "function": {...}}, ...].',
        )
    parsed: list[ToolDefinition] = []
    seen: set[str] = set()
    for i, raw in enumerate(tools):
        try:
            tool = ToolDefinition.from_wire(raw)
        except (ValidationError, ValueError) as e:
            name = _raw_name(raw)
            raise InvalidToolDefinitionError(
                f"Invalid tool definition at index {i}"
                + (f" ({name!r})" if name else "")
                + f": {e}",
                hint="Each tool needs a name of letters, digits, '_' or '-' "
                "and an object 'parameters' schema.",
                tool_name=name,
            ) from e
        if tool.name in seen:
            raise InvalidToolDefinitionError(
                f"Duplicate tool name {tool.name!r}",
                hint="Tool names must be unique within a request.",
                tool_name=tool.name,
            )
        seen.add(tool.name)
        parsed.append(tool)
    return parsed


def render_tool_descriptions(tools: Sequence[ToolDefinition]) -> str:
    """Render tools one per entry, in request order.

    ``- name: description`` followed by the compact parameter schema; keys
    keep their original order so the output is deterministic.
    """
    entries: list[str] = []
    for tool in tools:
        entry = f"- {tool.name}: {tool.description}"
        if tool.parameters is not None:
            schema = json.dumps(tool.parameters, separators=(",", ":"), ensure_ascii=False)
            entry += f"\n  Parameters: {schema}"
        if tool.strict:
            entry += "\n  Strict: true"
        entries.append(entry)
    return "\n".join(entries)


def build_instructions(tools: Sequence[ToolDefinition], template: str) -> str:
    """Substitute the rendered tool list into *template*."""
    return template.replace(PROMPT_PLACEHOLDER, render_tool_descriptions(tools), 1)


def render_tool_results(results: Sequence[ToolResult]) -> str:
    """Summarize earlier tool results for a backend without a tool role."""
    if not results:
        return ""
    parts = [TOOL_RESULTS_HEADER]
    for i, result in enumerate(results, start=1):
        label = f"Tool call {result.call_id} result:" if result.call_id else f"Tool result {i}:"
        parts.append(f"{label}\n{result.content}\n\n")
    return "".join(parts)


def inject_tools(request: Mapping[str, Any], config: Config | None = None) -> dict[str, Any]:
    """Return a copy of *request* with tools moved into the prompt.

    Requests with no tools and no tool-role history come back as the very
    same object. ``tool_choice="none"`` drops the tool list from the prompt
    but still strips the tool fields.
    """
    cfg = config or Config()
    tools_raw = request.get("tools") or []
    messages = request.get("messages") or []
    has_tool_history = any(_role(m) == "tool" or _assistant_calls(m) for m in messages)
    if not tools_raw and not has_tool_history:
        return request  # type: ignore[return-value]

    timer = Stopwatch()
    tools = parse_tool_definitions(tools_raw)
    out: dict[str, Any] = {k: v for k, v in request.items() if k not in _TOOL_KEYS}

    results, kept = _split_tool_results(messages)
    kept = [_flatten_assistant_calls(m) for m in kept]

    sections: list[str] = []
    if tools and request.get("tool_choice") != "none":
        sections.append(build_instructions(tools, cfg.prompt_template))
    results_text = render_tool_results(results)
    if results_text:
        sections.append(results_text.rstrip("\n"))
    prompt = "\n\n".join(sections)

    out["messages"] = _place_prompt(kept, prompt, cfg) if prompt else kept

    logger.info(
        "Injected %d tool(s) and %d tool result(s) into the prompt (%d chars)",
        len(tools),
        len(results),
        len(prompt),
    )
    emit(
        cfg.metrics_callback,
        ToolTransformationEvent(
            tool_count=len(tools),
            tool_names=tuple(t.name for t in tools),
            tool_result_count=len(results),
            prompt_length=len(prompt),
            duration_s=timer.elapsed(),
        ),
    )
    return out


# --- Message helpers ---


def _raw_name(raw: Any) -> str | None:
    if isinstance(raw, dict):
        body = raw.get("function", raw)
        if isinstance(body, dict) and isinstance(body.get("name"), str):
            return body["name"]
    return None


def _role(message: Any) -> str | None:
    return message.get("role") if isinstance(message, dict) else None


def _assistant_calls(message: Any) -> list[Any]:
    if _role(message) != "assistant":
        return []
    calls = message.get("tool_calls")
    return calls if isinstance(calls, list) else []


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            p.get("text", "")
            for p in content
            if isinstance(p, dict) and p.get("type") == "text"
        )
    return ""


def _split_tool_results(
    messages: Sequence[Any],
) -> tuple[list[ToolResult], list[Any]]:
    results: list[ToolResult] = []
    kept: list[Any] = []
    for message in messages:
        if _role(message) == "tool":
            call_id = message.get("tool_call_id") or None
            results.append(ToolResult(call_id=call_id, content=_text_of(message.get("content"))))
            logger.debug("Folding tool result %s into the prompt", call_id)
        else:
            kept.append(message)
    return results, kept


def _flatten_assistant_calls(message: Any) -> Any:
    """Rewrite structured assistant tool calls as the JSON text we ask for."""
    calls = _assistant_calls(message)
    if not calls:
        return message
    rendered: list[dict[str, Any]] = []
    for call in calls:
        function = call.get("function", {}) if isinstance(call, dict) else {}
        arguments = function.get("arguments")
        try:
            parameters = json.loads(arguments) if isinstance(arguments, str) else arguments
        except ValueError:
            parameters = arguments
        rendered.append({"name": function.get("name"), "parameters": parameters})
    array = json.dumps(rendered, ensure_ascii=False)
    text = _text_of(message.get("content"))
    out = {k: v for k, v in message.items() if k != "tool_calls"}
    out["content"] = f"{text}\n{array}" if text else array
    return out


def _place_prompt(messages: list[Any], prompt: str, config: Config) -> list[Any]:
    """Attach *prompt* to the conversation.

    Last system message if there is one; otherwise the first user message
    (or a new leading system message when the backend has a system role);
    otherwise a new leading message.
    """
    out = list(messages)
    for i in range(len(out) - 1, -1, -1):
        if _role(out[i]) == "system":
            out[i] = _append_text(out[i], prompt)
            return out

    if not config.system_messages_supported:
        for i, message in enumerate(out):
            if _role(message) == "user":
                out[i] = _prepend_text(message, prompt)
                return out
        return [{"role": "user", "content": prompt}, *out]
    return [{"role": "system", "content": prompt}, *out]


def _append_text(message: dict[str, Any], text: str) -> dict[str, Any]:
    out = dict(message)
    current = _text_of(message.get("content"))
    out["content"] = f"{current}\n\n{text}" if current else text
    return out


def _prepend_text(message: dict[str, Any], text: str) -> dict[str, Any]:
    out = dict(message)
    content = message.get("content")
    if isinstance(content, list):
        # Keep images and other parts; merge all text into one leading part.
        existing = _text_of(content)
        merged = f"{text}\n\n{existing}" if existing else text
        others = [
            copy.deepcopy(p)
            for p in content
            if not (isinstance(p, dict) and p.get("type") == "text")
        ]
        out["content"] = [{"type": "text", "text": merged}, *others]
        return out
    current = content if isinstance(content, str) else ""
    out["content"] = f"{text}\n\n{current}" if current else text
    return out
