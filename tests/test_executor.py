"""Tests for the Single-Call Executor (streaming path)."""

from __future__ import annotations

import httpx
import pytest
from conftest import ChunkedStream, request_json, sse_lines

from llmgate.gateway.executor import DEFAULT_SCORE_PATTERN, StreamExecutor, compile_score_pattern, extract_score
from llmgate.gateway.interfaces import StaticCredentialSource, TagReplacementProcessor
from llmgate.gateway.providers import ProviderRegistry
from llmgate.gateway.request_builder import RequestBuilder
from llmgate.gateway.types import CallStatus, ProviderId, RequestSpec

# ==========================================================================
# Test: Score extraction
# ==========================================================================


class TestExtractScore:
    def test_scenario_d(self):
        assert extract_score("Band score: 7.5 out of 9", r"/\d+/") == "7.5"

    def test_empty_pattern_uses_default(self):
        assert extract_score("Band score: 7.5 out of 9", "") == "7.5"
        assert extract_score("Band score: 7.5 out of 9", None) == "7.5"

    def test_delimited_pattern_with_flags(self):
        assert extract_score("Overall BAND: 6", r"/band:\s*(\d)/i") == "BAND: 6"

    def test_plain_pattern(self):
        assert extract_score("Score = 8/9", r"\d/\d") == "8/9"

    def test_no_match_returns_raw(self):
        assert extract_score("no numbers here") == "no numbers here"

    def test_invalid_pattern_returns_raw(self):
        assert extract_score("Band 7", "/([unclosed/") == "Band 7"

    def test_match_trimmed(self):
        assert extract_score("score:  7 ", r"\s7\s") == "7"

    def test_default_pattern(self):
        assert compile_score_pattern(None).pattern == DEFAULT_SCORE_PATTERN


# ==========================================================================
# Test: StreamExecutor
# ==========================================================================


def _stream_response(body: bytes, split: int | None = None) -> httpx.Response:
    chunks = [body] if split is None else [body[:split], body[split:]]
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=ChunkedStream(chunks))


def _spec(**kwargs) -> RequestSpec:
    base = {"provider": ProviderId.VLLM, "model": "qwen3", "prompt": "Give feedback"}
    base.update(kwargs)
    return RequestSpec(**base)


class TestStreamExecutor:
    @pytest.mark.asyncio
    async def test_streams_content_deltas(self, builder, sink, mock_transport):
        body = sse_lines({"content": "Good "}, {"content": "essay."})
        transport = mock_transport(lambda request: _stream_response(body, split=17))
        executor = StreamExecutor(builder, sink, transport=transport)

        result = await executor.run(_spec(), step_type="feedback")

        assert result.ok
        assert result.content == "Good essay."
        assert result.status_code == 200
        assert sink.of_type("FEEDBACK", kind="message") == [
            {"content": "Good ", "step_type": "feedback"},
            {"content": "essay.", "step_type": "feedback"},
        ]
        assert sink.done_events() == ["FEEDBACK"]

    @pytest.mark.asyncio
    async def test_request_is_streaming(self, builder, sink, mock_transport):
        transport = mock_transport(lambda request: _stream_response(sse_lines({"content": "x"})))
        executor = StreamExecutor(builder, sink, transport=transport)

        await executor.run(_spec(stream=False), step_type="feedback")

        request = transport.requests[0]
        assert str(request.url) == "http://localhost:8000/v1/chat/completions"
        assert request.headers["accept"] == "text/event-stream"
        assert request.headers["authorization"] == "Bearer sk-vllm"
        assert request_json(request)["stream"] is True

    @pytest.mark.asyncio
    async def test_reasoning_forwarded_and_closed_once(self, builder, sink, mock_transport):
        body = sse_lines({"reasoning_content": "Hmm. "}, {"reasoning_content": "Ok."}, {"content": "Answer"})
        transport = mock_transport(lambda request: _stream_response(body))
        executor = StreamExecutor(builder, sink, transport=transport)

        result = await executor.run(_spec(enable_thinking=True), step_type="feedback")

        assert result.reasoning_content == "Hmm. Ok."
        assert result.content == "Answer"
        assert [e["content"] for e in sink.of_type("CHAIN_OF_THOUGHT", kind="message")] == ["Hmm. ", "Ok."]
        assert sink.done_events().count("CHAIN_OF_THOUGHT") == 1
        assert sink.done_events() == ["CHAIN_OF_THOUGHT", "FEEDBACK"]

    @pytest.mark.asyncio
    async def test_reasoning_until_done(self, builder, sink, mock_transport):
        body = sse_lines({"reasoning_content": "still thinking"})
        transport = mock_transport(lambda request: _stream_response(body))
        executor = StreamExecutor(builder, sink, transport=transport)

        await executor.run(_spec(), step_type="feedback")

        assert sink.done_events().count("CHAIN_OF_THOUGHT") == 1
        assert "FEEDBACK" in sink.done_events()

    @pytest.mark.asyncio
    async def test_no_reasoning_no_cot_done(self, builder, sink, mock_transport):
        transport = mock_transport(lambda request: _stream_response(sse_lines({"content": "x"})))
        executor = StreamExecutor(builder, sink, transport=transport)

        await executor.run(_spec(), step_type="feedback")

        assert "CHAIN_OF_THOUGHT" not in sink.done_events()

    @pytest.mark.asyncio
    async def test_stream_without_done_sentinel(self, builder, sink, mock_transport):
        body = sse_lines({"content": "cut short"}, done=False)
        transport = mock_transport(lambda request: _stream_response(body))
        executor = StreamExecutor(builder, sink, transport=transport)

        result = await executor.run(_spec(), step_type="feedback")

        assert result.content == "cut short"
        assert sink.done_events() == ["FEEDBACK"]

    @pytest.mark.asyncio
    async def test_content_transformed_with_tags(self, builder, sink, mock_transport):
        transport = mock_transport(lambda request: _stream_response(sse_lines({"content": "Dear {{name}}"})))
        executor = StreamExecutor(builder, sink, TagReplacementProcessor(), transport=transport)

        result = await executor.run(_spec(), step_type="feedback", tags={"name": "Lan"})

        assert result.content == "Dear Lan"
        assert result.raw_content == "Dear {{name}}"
        assert sink.of_type("FEEDBACK")[0]["content"] == "Dear Lan"

    @pytest.mark.asyncio
    async def test_scoring_step(self, builder, sink, mock_transport):
        body = sse_lines({"reasoning_content": "Grammar is fine."}, {"content": "Band score: 7.5"}, {"content": " out of 9"})
        transport = mock_transport(lambda request: _stream_response(body))
        executor = StreamExecutor(builder, sink, transport=transport)

        result = await executor.run(_spec(), step_type="scoring", score_regex=r"/\d+/")

        assert result.ok
        assert result.content == "7.5"
        assert result.raw_content == "Band score: 7.5 out of 9"
        assert result.reasoning_content == "Grammar is fine."
        # Content deltas are held back; only the extracted score is sent
        assert sink.of_type("SCORING", kind="message") == [
            {"content": "7.5", "raw_content": "Band score: 7.5 out of 9", "regex_used": r"/\d+/"},
        ]
        assert sink.done_events()[-1] == "SCORING"

    @pytest.mark.asyncio
    async def test_scoring_default_regex(self, builder, sink, mock_transport):
        transport = mock_transport(lambda request: _stream_response(sse_lines({"content": "Score 6"})))
        executor = StreamExecutor(builder, sink, transport=transport)

        result = await executor.run(_spec(), step_type="scoring")

        assert result.content == "6"
        assert sink.of_type("SCORING")[0]["regex_used"] == DEFAULT_SCORE_PATTERN

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 429, 503])
    async def test_http_error_result(self, builder, sink, mock_transport, status):
        transport = mock_transport(lambda request: httpx.Response(status, json={"error": "nope"}))
        executor = StreamExecutor(builder, sink, transport=transport)

        result = await executor.run(_spec(), step_type="feedback")

        assert result.status == CallStatus.ERROR
        assert result.status_code == status
        assert "nope" in result.error_message
        errors = sink.of_type("FEEDBACK_ERROR", kind="error")
        assert errors[0]["status_code"] == status
        assert errors[0]["title"] == "API Request Failed"

    @pytest.mark.asyncio
    async def test_single_attempt_only(self, builder, sink, mock_transport):
        transport = mock_transport(lambda request: httpx.Response(503, text="busy"))
        executor = StreamExecutor(builder, sink, transport=transport)

        await executor.run(_spec(), step_type="feedback")

        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_500(self, builder, sink, mock_transport):
        def _refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        executor = StreamExecutor(builder, sink, transport=mock_transport(_refuse))

        result = await executor.run(_spec(), step_type="feedback")

        assert result.status == CallStatus.ERROR
        assert result.status_code == 500
        assert "connection refused" in result.error_message
        assert sink.of_type("FEEDBACK_ERROR")[0]["status_code"] == 500

    @pytest.mark.asyncio
    async def test_undecodable_stream_is_500(self, builder, sink, mock_transport):
        def _corrupt(request):
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream", "content-encoding": "gzip"},
                stream=ChunkedStream([b"data: not gzip\n\n"]),
            )

        executor = StreamExecutor(builder, sink, transport=mock_transport(_corrupt))

        result = await executor.run(_spec(), step_type="feedback")

        assert result.status == CallStatus.ERROR
        assert result.status_code == 500
        assert result.error_message.startswith("DecodingError")
        assert sink.of_type("FEEDBACK_ERROR")[0]["status_code"] == 500
        assert sink.done_events() == []

    @pytest.mark.asyncio
    async def test_missing_credential_is_error_result(self, sink, mock_transport):
        builder = RequestBuilder(ProviderRegistry(), StaticCredentialSource({}))
        transport = mock_transport(lambda request: _stream_response(sse_lines({"content": "x"})))
        executor = StreamExecutor(builder, sink, transport=transport)

        result = await executor.run(_spec(provider=ProviderId.OPENAI), step_type="vocabulary-feedback")

        assert result.status == CallStatus.ERROR
        assert result.status_code == 500
        assert result.error_message == "API key not found for provider: openai"
        assert transport.requests == []
        assert sink.of_type("VOCABULARY_FEEDBACK_ERROR")
