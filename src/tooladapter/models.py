"""Domain and wire models.

Tool calls are plain frozen dataclasses; everything parsed from or written to
the wire goes through pydantic so provider-specific fields survive a round
trip untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import TYPE_CHECKING, Any
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tooladapter.constants import CHUNK_OBJECT, MAX_FUNCTION_NAME_CHARS

if TYPE_CHECKING:
    from collections.abc import Callable

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_PREFIX_RE = re.compile(r"^[A-Za-z0-9]+$")


def is_valid_function_name(name: Any) -> bool:
    """Return True for ``get_weather`` style names and ``server.tool`` MCP names."""
    if not isinstance(name, str) or not name:
        return False
    if len(name) > MAX_FUNCTION_NAME_CHARS:
        return False
    prefix, dot, rest = name.partition(".")
    if not dot:
        return bool(_NAME_RE.match(name))
    return bool(_PREFIX_RE.match(prefix)) and bool(_NAME_RE.match(rest))


def new_tool_call_id() -> str:
    """Return a fresh ``call_…`` identifier."""
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True)
class ToolCall:
    """A tool call recovered from model text.

    ``arguments`` is raw JSON text, exactly what an OpenAI client expects in
    ``function.arguments``.
    """

    id: str
    name: str
    arguments: str

    def to_dict(self) -> dict[str, Any]:
        """Return the chat-completion ``tool_calls`` entry for this call."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    def to_delta(self, index: int) -> dict[str, Any]:
        """Return the streaming ``delta.tool_calls`` entry for this call."""
        return {"index": index, **self.to_dict()}

    @classmethod
    def from_element(
        cls,
        value: Any,
        id_factory: Callable[[], str] = new_tool_call_id,
    ) -> ToolCall | None:
        """Build a call from one parsed array element.

        Returns None for anything that is not ``{"name": ..., "parameters": ...}``
        (``arguments`` is accepted as an alias). Missing or null parameters
        become ``"{}"``.
        """
        if not isinstance(value, dict):
            return None
        name = value.get("name")
        if not is_valid_function_name(name):
            return None
        params = value.get("parameters", value.get("arguments"))
        return cls(id=id_factory(), name=name, arguments=_arguments_text(params))


def _arguments_text(params: Any) -> str:
    if params is None:
        return "{}"
    if isinstance(params, str):
        # Already-encoded arguments (OpenAI style) are kept verbatim.
        try:
            json.loads(params)
        except ValueError:
            return json.dumps(params, ensure_ascii=False)
        return params
    return json.dumps(params, ensure_ascii=False)


class ToolDefinition(BaseModel):
    """A tool the caller offers to the model."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    description: str = ""
    parameters: dict[str, Any] | None = None
    strict: bool | None = None

    @field_validator("name", mode="before")
    @classmethod
    def check_name(cls, v: Any) -> Any:
        """Reject names a model could not echo back as a call."""
        if isinstance(v, str):
            v = v.strip()
        if not is_valid_function_name(v):
            raise ValueError(
                "name must be 1-64 characters of letters, digits, '_' or '-', "
                "optionally with a single 'prefix.' namespace"
            )
        return v

    @field_validator("description", mode="before")
    @classmethod
    def normalize_description(cls, v: Any) -> Any:
        """Map a missing description to the empty string."""
        return "" if v is None else v

    @classmethod
    def from_wire(cls, raw: Any) -> ToolDefinition:
        """Parse ``{"type": "function", "function": {...}}`` or the flat form."""
        if isinstance(raw, ToolDefinition):
            return raw
        if hasattr(raw, "model_dump"):
            raw = raw.model_dump(exclude_none=True)
        if not isinstance(raw, dict):
            raise ValueError(f"tool definition must be an object, got {type(raw).__name__}")
        kind = raw.get("type", "function")
        if kind != "function":
            raise ValueError(f"unsupported tool type {kind!r}")
        body = raw.get("function", raw)
        if not isinstance(body, dict):
            raise ValueError("'function' must be an object")
        return cls.model_validate(body)


# --- Streaming chunks ---


class _WireModel(BaseModel):
    # Unknown provider fields (system_fingerprint, logprobs, reasoning_content,
    # ...) ride along and are written back out unchanged.
    model_config = ConfigDict(extra="allow")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class ChunkDelta(_WireModel):
    role: str | None = None
    content: str | None = None
    tool_calls: list[dict[str, Any]] | None = None


class ChunkChoice(_WireModel):
    index: int = 0
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: str | None = None


class ChatCompletionChunk(_WireModel):
    """One ``chat.completion.chunk`` event."""

    id: str | None = None
    object: str = CHUNK_OBJECT
    created: int | None = None
    model: str | None = None
    choices: list[ChunkChoice] = Field(default_factory=list)

    def with_choice(self, choice: ChunkChoice) -> ChatCompletionChunk:
        """Copy this chunk's metadata onto a single-choice chunk.

        ``usage`` is not copied: it belongs to the chunk that reported it.
        """
        data = self.to_dict()
        data.pop("usage", None)
        data.setdefault("object", CHUNK_OBJECT)
        data["choices"] = [choice.to_dict()]
        return ChatCompletionChunk.model_validate(data)

    def with_usage(self, usage: Any) -> ChatCompletionChunk:
        return ChatCompletionChunk.model_validate({**self.to_dict(), "usage": usage})
