"""Single-Call Executor — one streamed completion, forwarded as it arrives.

Flow:
  1. Build the request (a build failure is an error result, not an exception)
  2. Open one streaming connection with a minutes-scale read timeout
  3. Feed every received chunk to the StreamDecoder
  4. Forward content deltas to the step's channel (held back for scoring)
     and reasoning deltas to the CHAIN_OF_THOUGHT channel
  5. For scoring steps, extract the score from the full text afterwards

Exactly one attempt is made against the given provider; there is no fallback
on this path.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from llmgate.core.metrics import PROVIDER_CALL_DURATION, PROVIDER_CALLS
from llmgate.core.sentry import capture_failure
from llmgate.gateway.errors import GatewayError, ProviderHTTPError, TransportError
from llmgate.gateway.interfaces import ContentProcessor, EventSink, IdentityProcessor, event_name
from llmgate.gateway.request_builder import RequestBuilder
from llmgate.gateway.stream_decoder import StreamDecoder
from llmgate.gateway.types import (
    CHAIN_OF_THOUGHT_STEP,
    SCORING_STEP,
    CallResult,
    CallStatus,
    ContentDelta,
    Done,
    ReasoningClosed,
    ReasoningDelta,
    RequestSpec,
    StreamEvent,
)

logger = logging.getLogger(__name__)

REASONING_CHANNEL = event_name(CHAIN_OF_THOUGHT_STEP)

# First number in the text, decimals included ("7.5" in "Band score: 7.5")
DEFAULT_SCORE_PATTERN = r"\d+(?:\.\d+)?"
# Historical default, widened so band scores keep their decimal part
_LEGACY_DEFAULTS = {r"\d+", r"/\d+/"}

_DELIMITED_PATTERN = re.compile(r"^/(?P<body>.*)/(?P<flags>[imsxu]*)$", re.DOTALL)
_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE, "u": 0}


def compile_score_pattern(pattern: str | None) -> re.Pattern:
    """Compile a score pattern, accepting ``/body/flags`` delimited syntax.

    Raises:
        re.error: the pattern is not a valid regular expression.
    """
    if not pattern or not pattern.strip() or pattern.strip() in _LEGACY_DEFAULTS:
        return re.compile(DEFAULT_SCORE_PATTERN)

    match = _DELIMITED_PATTERN.match(pattern.strip())
    if not match:
        return re.compile(pattern)

    flags = 0
    for flag in match.group("flags"):
        flags |= _FLAG_MAP[flag]
    return re.compile(match.group("body"), flags)


def extract_score(content: str, pattern: str | None = None) -> str:
    """First match of ``pattern`` in ``content``; the raw text when nothing matches."""
    try:
        regex = compile_score_pattern(pattern)
    except re.error as e:
        logger.warning("Invalid score pattern %r: %s", pattern, e)
        return content

    match = regex.search(content)
    if not match:
        return content
    return match.group(0).strip()


@dataclass
class _StreamState:
    """Accumulators of one streaming call."""

    raw_content: list[str] = field(default_factory=list)
    content: list[str] = field(default_factory=list)  # transformed, as forwarded
    raw_reasoning: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)  # transformed, as forwarded
    reasoning_open: bool = False
    done: bool = False


class StreamExecutor:
    """Runs one streamed chat completion and reports it to the event sink.

    Usage:
        executor = StreamExecutor(builder, sink)
        result = await executor.run(spec, step_type="feedback")
        if not result.ok:
            ...
    """

    def __init__(
        self,
        builder: RequestBuilder,
        sink: EventSink,
        processor: ContentProcessor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.builder = builder
        self.sink = sink
        self.processor = processor or IdentityProcessor()
        self.transport = transport

    async def run(
        self,
        spec: RequestSpec,
        step_type: str,
        score_regex: str | None = None,
        tags: dict[str, Any] | None = None,
    ) -> CallResult:
        """Stream one completion. Errors come back as a result with a status code."""
        channel = event_name(step_type)
        scoring = step_type == SCORING_STEP
        tags = tags or {}
        provider_name = getattr(spec.provider, "value", str(spec.provider))

        if not spec.stream:
            spec = replace(spec, stream=True)

        state = _StreamState()
        start = time.monotonic()
        try:
            provider = self.builder.registry.get(spec.provider)
            request = self.builder.build_chat(spec)
            decoder = StreamDecoder(provider.extract_delta)
            timeout = httpx.Timeout(provider.config.read_timeout, connect=provider.config.connect_timeout)

            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                async with client.stream("POST", request.url, headers=request.headers, json=request.json) as resp:
                    if resp.is_error:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise ProviderHTTPError(
                            f"HTTP {resp.status_code} from {provider_name}: {body[:500]}",
                            status_code=resp.status_code,
                            body=body,
                        )
                    async for chunk in resp.aiter_bytes():
                        for event in decoder.feed(chunk):
                            self._handle(event, state, channel, step_type, scoring, tags)
                    for event in decoder.close():
                        self._handle(event, state, channel, step_type, scoring, tags)

        except httpx.TransportError as e:
            return self._fail(TransportError(str(e) or e.__class__.__name__), channel, provider_name, start)
        except httpx.RequestError as e:
            return self._fail(TransportError(f"{e.__class__.__name__}: {e}"), channel, provider_name, start)
        except GatewayError as e:
            return self._fail(e, channel, provider_name, start)

        PROVIDER_CALLS.labels(provider=provider_name, mode="stream", outcome="success").inc()
        PROVIDER_CALL_DURATION.labels(provider=provider_name, mode="stream").observe(time.monotonic() - start)

        raw_content = "".join(state.raw_content)
        if not scoring:
            return CallResult(
                content="".join(state.content),
                reasoning_content="".join(state.reasoning),
                raw_content=raw_content,
            )

        score = extract_score(raw_content, score_regex)
        result = CallResult(
            content=self.processor.transform(score, step_type, tags),
            reasoning_content=self.processor.transform("".join(state.raw_reasoning), step_type, tags),
            raw_content=raw_content,
        )
        self.sink.send_message(
            channel,
            {"content": result.content, "raw_content": raw_content, "regex_used": score_regex or DEFAULT_SCORE_PATTERN},
        )
        if state.done:
            self.sink.send_done(channel)
        return result

    def _handle(
        self,
        event: StreamEvent,
        state: _StreamState,
        channel: str,
        step_type: str,
        scoring: bool,
        tags: dict[str, Any],
    ) -> None:
        if isinstance(event, ContentDelta):
            state.raw_content.append(event.text)
            if not scoring:
                text = self.processor.transform(event.text, step_type, tags)
                state.content.append(text)
                self.sink.send_message(channel, {"content": text, "step_type": step_type})

        elif isinstance(event, ReasoningDelta):
            text = self.processor.transform(event.text, step_type, tags)
            state.raw_reasoning.append(event.text)
            state.reasoning.append(text)
            state.reasoning_open = True
            self.sink.send_message(REASONING_CHANNEL, {"content": text, "step_type": step_type})

        elif isinstance(event, ReasoningClosed):
            self._close_reasoning(state)

        elif isinstance(event, Done):
            state.done = True
            if not scoring:
                self.sink.send_done(channel)
            # Providers that never mark the end of reasoning
            self._close_reasoning(state)

    def _close_reasoning(self, state: _StreamState) -> None:
        if state.reasoning_open:
            state.reasoning_open = False
            self.sink.send_done(REASONING_CHANNEL)

    def _fail(self, error: GatewayError, channel: str, provider_name: str, start: float) -> CallResult:
        PROVIDER_CALLS.labels(provider=provider_name, mode="stream", outcome="error").inc()
        PROVIDER_CALL_DURATION.labels(provider=provider_name, mode="stream").observe(time.monotonic() - start)
        logger.error(
            "Streaming call to %s failed (%d): %s",
            provider_name,
            error.status_code,
            error.message,
            extra={"provider": provider_name, "step_type": channel},
        )
        capture_failure(error)

        self.sink.send_error(
            f"{channel}_ERROR",
            {
                "title": "API Request Failed",
                "message": error.message,
                "status_code": error.status_code,
                "ctaTitle": "Try Again",
                "ctaLink": "#",
            },
        )
        return CallResult(
            status=CallStatus.ERROR,
            status_code=error.status_code,
            error_message=error.message,
        )
