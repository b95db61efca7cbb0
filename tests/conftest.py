from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from llmgate.core.config import settings

# Override settings for tests
settings.app_env = "development"
settings.sentry_dsn = ""
settings.retry_base_delay = 0.0

from llmgate.gateway.interfaces import RecordingSink, StaticCredentialSource  # noqa: E402
from llmgate.gateway.providers import ProviderRegistry  # noqa: E402
from llmgate.gateway.request_builder import RequestBuilder  # noqa: E402
from llmgate.gateway.retry import RetryPolicy  # noqa: E402

TEST_KEYS = {
    "openai": "sk-openai",
    "google": "sk-google",
    "open-key-ai": "sk-okai",
    "lite-llm": "sk-lite",
    "vllm": "sk-vllm",
    "vllm2": "sk-vllm2",
    "slm": "sk-slm",
    "huggingface": "hf-token",
}


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in exactly the given chunks."""

    def __init__(self, chunks: list[bytes]):
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk


def sse_lines(*deltas: dict, done: bool = True) -> bytes:
    """Encode delta objects as a ``data:`` event stream."""
    body = b"".join(
        b"data: " + json.dumps({"choices": [{"delta": delta}]}).encode() + b"\n\n" for delta in deltas
    )
    if done:
        body += b"data: [DONE]\n\n"
    return body


def completion(content: str) -> dict:
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]}


def request_json(request: httpx.Request) -> dict:
    return json.loads(request.content)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def credentials() -> StaticCredentialSource:
    return StaticCredentialSource(dict(TEST_KEYS))


@pytest.fixture
def registry() -> ProviderRegistry:
    return ProviderRegistry()


@pytest.fixture
def builder(registry, credentials) -> RequestBuilder:
    return RequestBuilder(registry, credentials)


@pytest.fixture
def no_wait_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.0)


@pytest.fixture
def mock_transport() -> Callable[[Callable], httpx.MockTransport]:
    """Wrap a request handler into a transport and keep every request seen."""

    def _make(handler: Callable) -> httpx.MockTransport:
        seen: list[httpx.Request] = []

        async def _handle(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            result = handler(request)
            if hasattr(result, "__await__"):
                result = await result
            return result

        transport = httpx.MockTransport(_handle)
        transport.requests = seen
        return transport

    return _make
