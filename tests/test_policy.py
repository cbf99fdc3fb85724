from __future__ import annotations

import pytest

from tooladapter.errors import ConfigurationError
from tooladapter.policy import (
    PolicyRules,
    StopCondition,
    ToolPolicy,
    effective_call_limit,
    rules_for,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("policy", "expected"),
    [
        (ToolPolicy.STOP_ON_FIRST, PolicyRules(1, True, StopCondition.FIRST_CALL)),
        (ToolPolicy.COLLECT_THEN_STOP, PolicyRules(None, True, StopCondition.FIRST_ARRAY)),
        (ToolPolicy.DRAIN_ALL, PolicyRules(None, True, StopCondition.NEVER)),
        (ToolPolicy.ALLOW_MIXED, PolicyRules(None, False, StopCondition.NEVER)),
    ],
)
def test_decision_table(policy: ToolPolicy, expected: PolicyRules) -> None:
    assert rules_for(policy) == expected


@pytest.mark.parametrize(
    "raw",
    ["drain_all", "DRAIN_ALL", " drain_all ", "ToolDrainAll", ToolPolicy.DRAIN_ALL],
)
def test_parse_accepts_every_spelling(raw: object) -> None:
    assert ToolPolicy.parse(raw) is ToolPolicy.DRAIN_ALL


@pytest.mark.parametrize("raw", ["", "drain", "ToolSomething", 3, None])
def test_parse_rejects_unknown(raw: object) -> None:
    with pytest.raises(ConfigurationError):
        ToolPolicy.parse(raw)


@pytest.mark.parametrize(
    ("policy", "max_calls", "expected"),
    [
        (ToolPolicy.STOP_ON_FIRST, 8, 1),
        (ToolPolicy.STOP_ON_FIRST, 0, 1),
        (ToolPolicy.DRAIN_ALL, 8, 8),
        (ToolPolicy.DRAIN_ALL, 0, None),
        (ToolPolicy.COLLECT_THEN_STOP, 2, 2),
        (ToolPolicy.ALLOW_MIXED, 0, None),
    ],
)
def test_effective_call_limit(
    policy: ToolPolicy, max_calls: int, expected: int | None
) -> None:
    assert effective_call_limit(policy, max_calls) == expected
