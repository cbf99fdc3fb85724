"""Tool-call policies as a small decision table.

Two axes stay separate: how many calls are retained and when
input stops being consumed, and whether plain text survives next to calls.
Both the one-shot extractor and the streaming assembler read the same table.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tooladapter.errors import ConfigurationError


class ToolPolicy(str, Enum):
    """How detected tool calls and surrounding text are handled."""

    STOP_ON_FIRST = "stop_on_first"
    COLLECT_THEN_STOP = "collect_then_stop"
    DRAIN_ALL = "drain_all"
    ALLOW_MIXED = "allow_mixed"

    @classmethod
    def parse(cls, value: Any) -> ToolPolicy:
        """Accept enum members, values, names, or ``ToolStopOnFirst``-style names."""
        if isinstance(value, ToolPolicy):
            return value
        if isinstance(value, str):
            raw = value.strip()
            with suppress(ValueError):
                return cls(raw.lower())
            with suppress(KeyError):
                return cls[raw.upper()]
            if raw.startswith("Tool"):
                # ToolCollectThenStop -> collect_then_stop
                snake = "".join(
                    f"_{ch.lower()}" if ch.isupper() else ch for ch in raw[4:]
                ).lstrip("_")
                with suppress(ValueError):
                    return cls(snake)
        raise ConfigurationError(
            f"Unknown tool policy: {value!r}",
            hint="Use one of: " + ", ".join(p.value for p in cls),
        )


class StopCondition(str, Enum):
    """When a policy is satisfied and no more input is needed."""

    FIRST_CALL = "first_call"
    FIRST_ARRAY = "first_array"
    NEVER = "never"


@dataclass(frozen=True)
class PolicyRules:
    """The decision table row for one policy."""

    #: ``None`` means unbounded (the configured max_calls still applies).
    calls_limit: int | None
    suppress_text: bool
    stop: StopCondition


_RULES: dict[ToolPolicy, PolicyRules] = {
    ToolPolicy.STOP_ON_FIRST: PolicyRules(
        calls_limit=1, suppress_text=True, stop=StopCondition.FIRST_CALL
    ),
    ToolPolicy.COLLECT_THEN_STOP: PolicyRules(
        calls_limit=None, suppress_text=True, stop=StopCondition.FIRST_ARRAY
    ),
    ToolPolicy.DRAIN_ALL: PolicyRules(
        calls_limit=None, suppress_text=True, stop=StopCondition.NEVER
    ),
    ToolPolicy.ALLOW_MIXED: PolicyRules(
        calls_limit=None, suppress_text=False, stop=StopCondition.NEVER
    ),
}


def rules_for(policy: ToolPolicy | str) -> PolicyRules:
    """Return the decision table row for *policy*."""
    return _RULES[ToolPolicy.parse(policy)]


def effective_call_limit(policy: ToolPolicy | str, max_calls: int) -> int | None:
    """Combine the policy's own limit with the max-calls safety bound.

    ``max_calls == 0`` disables the safety bound. Returns ``None`` when
    neither side limits the number of calls.
    """
    limits = [n for n in (rules_for(policy).calls_limit, max_calls or None) if n]
    return min(limits) if limits else None
