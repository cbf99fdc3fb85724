"""OpenAI-compatible backend (OpenAI, vLLM, Ollama, LiteLLM, ...)."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import httpx

from tooladapter.errors import TransportError
from tooladapter.providers._errors import wrap_backend_error
from tooladapter.providers.base import BackendCapabilities

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from tooladapter.sse import SSEReader

# Local servers accept any key; the SDK insists on a non-empty one.
_PLACEHOLDER_KEY = "EMPTY"


class OpenAIBackend:
    """Chat Completions over the ``openai`` SDK, pointed at any base URL."""

    name = "openai"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_s: float = 60.0,
        capabilities: BackendCapabilities | None = None,
    ) -> None:
        """Initialize; key and URL fall back to OPENAI_API_KEY / OPENAI_BASE_URL."""
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY") or _PLACEHOLDER_KEY
        self.base_url = base_url or os.environ.get("OPENAI_BASE_URL")
        self.timeout_s = timeout_s
        self._capabilities = capabilities or BackendCapabilities()
        self._client: Any = None
        self._http: httpx.AsyncClient | None = None

    def _get_client(self) -> Any:
        """Lazily initialize and return the OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise TransportError(
                    "openai package not installed",
                    hint="pip install openai",
                    backend=self.name,
                    phase="init",
                ) from e
            self._client = AsyncOpenAI(
                api_key=self.api_key, base_url=self.base_url, timeout=self.timeout_s
            )
        return self._client

    @property
    def capabilities(self) -> BackendCapabilities:
        """Return supported feature flags."""
        return self._capabilities

    async def complete(self, request: dict[str, Any]) -> dict[str, Any]:
        """Create a chat completion and return it as a dict."""
        client = self._get_client()
        model, messages, extra = _split_request(request)
        try:
            response = await client.chat.completions.create(
                model=model, messages=messages, extra_body=extra or None
            )
        except Exception as e:
            raise wrap_backend_error(e, backend=self.name, phase="complete") from e
        return response.model_dump(exclude_unset=True)

    async def stream(self, request: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        """Yield chunk dicts from a streaming chat completion."""
        client = self._get_client()
        model, messages, extra = _split_request(request)
        extra.pop("stream", None)
        try:
            stream = await client.chat.completions.create(
                model=model, messages=messages, stream=True, extra_body=extra or None
            )
        except Exception as e:
            raise wrap_backend_error(e, backend=self.name, phase="stream") from e
        try:
            async for chunk in stream:
                yield chunk.model_dump(exclude_unset=True)
        except TransportError:
            raise
        except Exception as e:
            raise wrap_backend_error(e, backend=self.name, phase="stream") from e
        finally:
            await stream.close()

    async def stream_sse(self, request: dict[str, Any]) -> SSEReader:
        """POST a streaming request and return a reader over the raw SSE bytes."""
        from tooladapter.sse import SSEReader

        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout_s)
        base = (self.base_url or "https://api.openai.com/v1").rstrip("/")
        http_request = self._http.build_request(
            "POST",
            f"{base}/chat/completions",
            json={**request, "stream": True},
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "text/event-stream",
            },
        )
        try:
            response = await self._http.send(http_request, stream=True)
        except Exception as e:
            raise wrap_backend_error(e, backend=self.name, phase="stream") from e
        if response.status_code >= 400:
            try:
                await response.aread()
                response.raise_for_status()
            except Exception as e:
                raise wrap_backend_error(e, backend=self.name, phase="stream") from e
            finally:
                await response.aclose()
        return SSEReader.from_httpx(response)

    async def aclose(self) -> None:
        """Close SDK and HTTP clients."""
        if self._client is not None:
            await self._client.close()
            self._client = None
        if self._http is not None:
            await self._http.aclose()
            self._http = None


def _split_request(request: dict[str, Any]) -> tuple[str, list[Any], dict[str, Any]]:
    """Separate model/messages from everything else (sent as-is in the body)."""
    extra = {k: v for k, v in request.items() if k not in ("model", "messages")}
    return request.get("model", ""), list(request.get("messages") or []), extra
