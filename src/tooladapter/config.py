"""Configuration: one frozen Config shared by every request and stream."""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import os
from typing import TYPE_CHECKING, Any

from dotenv import load_dotenv

from tooladapter.constants import (
    DEFAULT_MAX_BUFFER_CHARS,
    DEFAULT_MAX_CALLS,
    DEFAULT_PROMPT_TEMPLATE,
    PROMPT_PLACEHOLDER,
)
from tooladapter.errors import ConfigurationError
from tooladapter.models import new_tool_call_id
from tooladapter.policy import ToolPolicy

if TYPE_CHECKING:
    from collections.abc import Callable

    from tooladapter.metrics import MetricsEvent

logger = logging.getLogger(__name__)

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off", ""})


def validate_prompt_template(template: str) -> None:
    """Raise ConfigurationError unless *template* has exactly one ``%s``."""
    if not isinstance(template, str) or not template.strip():
        raise ConfigurationError(
            "prompt_template must be a non-empty string",
            hint="Pass a template containing one %s where tool descriptions go.",
        )
    count = template.count(PROMPT_PLACEHOLDER)
    if count != 1:
        raise ConfigurationError(
            f"prompt_template must contain exactly one {PROMPT_PLACEHOLDER!r} "
            f"placeholder, found {count}",
            hint="The placeholder is replaced with the rendered tool list.",
        )


@dataclass(frozen=True)
class Config:
    """Immutable adapter configuration.

    Safe to share across any number of concurrent requests and streams; all
    per-stream state lives in the assembler.

    Example:
        config = Config(policy="drain_all", lookahead_chars=64)
    """

    policy: ToolPolicy = ToolPolicy.STOP_ON_FIRST
    #: Safety bound on calls per response. 0 disables the bound.
    max_calls: int = DEFAULT_MAX_CALLS
    #: Streaming lookahead budget in characters. 0 buffers the whole stream.
    lookahead_chars: int = 0
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE
    #: False for models without a system role (Gemma and friends); the
    #: instructions are then merged into the first user message.
    system_messages_supported: bool = False
    #: Held text bound before any call is found. ``None`` disables it.
    max_buffer_chars: int | None = DEFAULT_MAX_BUFFER_CHARS
    cancel_upstream_on_stop: bool = True
    metrics_callback: Callable[[MetricsEvent], None] | None = None
    id_factory: Callable[[], str] = new_tool_call_id

    def __post_init__(self) -> None:
        """Normalize the policy and validate numeric bounds."""
        object.__setattr__(self, "policy", ToolPolicy.parse(self.policy))

        if not isinstance(self.max_calls, int) or self.max_calls < 0:
            raise ConfigurationError(
                f"max_calls must be ≥ 0, got {self.max_calls!r}",
                hint="0 disables the bound; the default is 8.",
            )
        if not isinstance(self.lookahead_chars, int) or self.lookahead_chars < 0:
            raise ConfigurationError(
                f"lookahead_chars must be ≥ 0, got {self.lookahead_chars!r}",
                hint="0 buffers the whole stream; small values (32-128) let "
                "plain answers start streaming immediately.",
            )
        limit = self.max_buffer_chars
        if limit is not None and (
            not isinstance(limit, int) or isinstance(limit, bool) or limit < 1
        ):
            raise ConfigurationError(
                f"max_buffer_chars must be ≥ 1 or None, got {self.max_buffer_chars!r}",
                hint="This bounds memory held while looking for a tool call.",
            )
        if self.metrics_callback is not None and not callable(self.metrics_callback):
            raise ConfigurationError(
                "metrics_callback must be callable",
                hint="Pass a function taking one metrics event.",
            )
        if not callable(self.id_factory):
            raise ConfigurationError(
                "id_factory must be callable",
                hint="Pass a zero-argument function returning a unique string.",
            )
        validate_prompt_template(self.prompt_template)

    def with_overrides(self, **changes: Any) -> Config:
        """Return a validated copy with *changes* applied."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Build a Config from ``TOOLADAPTER_*`` variables (and ``.env``).

        Explicit keyword overrides win over the environment.
        """
        load_dotenv()
        env: dict[str, Any] = {}

        policy = os.environ.get("TOOLADAPTER_POLICY")
        if policy:
            env["policy"] = policy
        for key, field_name in (
            ("TOOLADAPTER_MAX_CALLS", "max_calls"),
            ("TOOLADAPTER_LOOKAHEAD_CHARS", "lookahead_chars"),
        ):
            raw = os.environ.get(key)
            if raw is None or not raw.strip():
                continue
            try:
                env[field_name] = int(raw)
            except ValueError as e:
                raise ConfigurationError(
                    f"{key} must be an integer, got {raw!r}",
                    hint=f"Unset {key} or give it a whole number.",
                ) from e
        system = os.environ.get("TOOLADAPTER_SYSTEM_MESSAGES")
        if system is not None:
            env["system_messages_supported"] = _parse_bool(
                "TOOLADAPTER_SYSTEM_MESSAGES", system
            )

        level = os.environ.get("TOOLADAPTER_LOG_LEVEL")
        if level:
            numeric = logging.getLevelName(level.strip().upper())
            if isinstance(numeric, int):
                logging.getLogger("tooladapter").setLevel(numeric)
            else:
                logger.warning("Ignoring unknown TOOLADAPTER_LOG_LEVEL=%r", level)

        env.update(overrides)
        return cls(**env)

    def __str__(self) -> str:
        """Return a compact, developer-friendly representation."""
        custom = self.prompt_template != DEFAULT_PROMPT_TEMPLATE
        return (
            f"Config(policy={self.policy.value!r}, max_calls={self.max_calls}, "
            f"lookahead_chars={self.lookahead_chars}, "
            f"system_messages_supported={self.system_messages_supported}, "
            f"prompt_template={'[custom]' if custom else '[default]'})"
        )

    __repr__ = __str__


def _parse_bool(key: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ConfigurationError(
        f"{key} must be a boolean, got {raw!r}",
        hint="Use one of: 1/0, true/false, yes/no, on/off.",
    )
