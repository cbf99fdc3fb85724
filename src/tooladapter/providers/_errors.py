"""Shared backend-side error helpers.

Backends attach retry metadata via TransportError so callers can decide on
retries deterministically without brittle substring matching.
"""

from __future__ import annotations

import asyncio

import httpx

from tooladapter.constants import RETRYABLE_STATUS_CODES
from tooladapter.errors import TransportError, _walk_exception_chain


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def _auth_hint(backend: str, status_code: int | None) -> str | None:
    """Point at credentials for auth failures."""
    if status_code in {401, 403}:
        env_var = "OPENAI_API_KEY" if backend == "openai" else "the backend API key"
        return f"Check credentials/permissions (try setting {env_var} or api_key=...)."
    return None


def wrap_backend_error(
    exc: BaseException,
    *,
    backend: str,
    phase: str,
    message: str | None = None,
    hint: str | None = None,
) -> TransportError:
    """Map SDK/httpx/socket exceptions into TransportError with retry metadata."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped: fill in missing context only.
    if isinstance(exc, TransportError):
        if exc.backend is None:
            exc.backend = backend
        if exc.phase is None:
            exc.phase = phase
        if hint is not None and exc.hint is None:
            exc.hint = hint
        return exc

    status_code = extract_status_code(exc)
    retryable = isinstance(status_code, int) and status_code in RETRYABLE_STATUS_CODES
    if status_code is None:
        for e in _walk_exception_chain(exc):
            if isinstance(e, (httpx.TimeoutException, httpx.TransportError, OSError)):
                retryable = True
                break

    msg = message or f"{backend} {phase} failed"
    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause = str(exc)
    return TransportError(
        f"{msg}{status_note}: {cause}" if cause else f"{msg}{status_note}",
        hint=hint if hint is not None else _auth_hint(backend, status_code),
        retryable=retryable,
        status_code=status_code,
        backend=backend,
        phase=phase,
    )
