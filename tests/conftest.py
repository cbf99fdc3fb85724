"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, shared test doubles,
and automatic API test skipping. All fixtures here are autouse unless noted.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass, field
import itertools
import logging
import os
from typing import Any

import pytest

from tooladapter.providers.base import BackendCapabilities

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeBackend:
    """Backend test double that records requests and replays scripted output.

    ``responses`` feed ``complete()``; ``streams`` feed ``stream()`` as lists
    of chunk dicts. Exceptions in either script are raised when reached.
    """

    responses: list[dict[str, Any] | BaseException] = field(default_factory=list)
    streams: list[list[dict[str, Any]] | BaseException] = field(default_factory=list)
    requests: list[dict[str, Any]] = field(default_factory=list)
    closed: bool = False
    stream_closed: bool = False
    pulled: int = 0
    name: str = "fake"
    _capabilities: BackendCapabilities = field(default_factory=BackendCapabilities)

    @property
    def capabilities(self) -> BackendCapabilities:
        return self._capabilities

    async def complete(self, request: dict[str, Any]) -> dict[str, Any]:
        self.requests.append(request)
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def stream(self, request: dict[str, Any]):
        self.requests.append(request)
        item = self.streams.pop(0)
        if isinstance(item, BaseException):
            raise item
        try:
            for chunk in item:
                self.pulled += 1
                yield chunk
        finally:
            self.stream_closed = True

    async def aclose(self) -> None:
        self.closed = True


def sequential_ids(prefix: str = "call_") -> Any:
    """Return a deterministic id factory: call_1, call_2, ..."""
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter)}"


@pytest.fixture
def ids() -> Any:
    """Deterministic tool-call id factory (not autouse)."""
    return sequential_ids()


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "tooladapter.config.load_dotenv", lambda *_args, **_kwargs: False
        )


@pytest.fixture(autouse=True)
def isolate_env(request, monkeypatch):
    """Ensure a clean environment for each test.

    Clears TOOLADAPTER_* and OPENAI_* env vars to prevent test pollution.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith(("TOOLADAPTER_", "OPENAI_")):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def restore_package_log_level():
    """``Config.from_env`` may change the package logger level; undo it."""
    package_logger = logging.getLogger("tooladapter")
    level = package_logger.level
    yield
    package_logger.setLevel(level)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# API Test Configuration
# =============================================================================

_OPENAI_TEST_MODEL = "gpt-4o-mini"


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    key = os.getenv("OPENAI_API_KEY")
    if not key:
        pytest.skip("OPENAI_API_KEY not set")
    return key


@pytest.fixture
def openai_test_model():
    """Return the model to use for API tests."""
    return os.getenv("TOOLADAPTER_TEST_MODEL", _OPENAI_TEST_MODEL)
