"""Tests for the Stream Decoder."""

from __future__ import annotations

import json

import pytest

from llmgate.gateway.stream_decoder import DecoderState, StreamDecoder, openai_delta
from llmgate.gateway.types import ContentDelta, Done, ReasoningClosed, ReasoningDelta


def _line(delta: dict) -> bytes:
    return b"data: " + json.dumps({"choices": [{"delta": delta}]}, ensure_ascii=False).encode() + b"\n\n"


def _decode(chunks: list[bytes]) -> list:
    decoder = StreamDecoder()
    events = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.close())
    return events


SAMPLE = (
    _line({"reasoning_content": "Let me "})
    + _line({"reasoning_content": "think."})
    + b": keep-alive\n\n"
    + _line({"content": "Band "})
    + _line({"content": "7.5 – très bien"})
    + b"data: [DONE]\n\n"
)


class TestStreamDecoder:
    def test_scenario_b_split_mid_line(self):
        """Two content deltas with a chunk boundary inside the second line."""
        stream = _line({"content": "Hel"}) + _line({"content": "lo"}) + b"data: [DONE]\n\n"
        cut = stream.index(b'"lo"') + 2

        events = _decode([stream[:cut], stream[cut:]])

        assert events == [ContentDelta("Hel"), ContentDelta("lo"), Done()]

    def test_partial_line_buffered(self):
        decoder = StreamDecoder()
        line = _line({"content": "abc"})
        assert list(decoder.feed(line[:10])) == []
        assert decoder.buffer == line[:10]
        assert list(decoder.feed(line[10:])) == [ContentDelta("abc")]

    def test_split_invariance_at_every_offset(self):
        expected = _decode([SAMPLE])
        for offset in range(1, len(SAMPLE)):
            assert _decode([SAMPLE[:offset], SAMPLE[offset:]]) == expected, offset

    def test_byte_by_byte(self):
        expected = _decode([SAMPLE])
        assert _decode([SAMPLE[i : i + 1] for i in range(len(SAMPLE))]) == expected

    def test_multibyte_character_split(self):
        stream = _line({"content": "điểm"}) + b"data: [DONE]\n"
        cut = stream.index("đ".encode()) + 1
        assert _decode([stream[:cut], stream[cut:]]) == [ContentDelta("điểm"), Done()]

    def test_reasoning_then_content(self):
        events = _decode([SAMPLE])
        assert events == [
            ReasoningDelta("Let me "),
            ReasoningDelta("think."),
            ReasoningClosed(),
            ContentDelta("Band "),
            ContentDelta("7.5 – très bien"),
            Done(),
        ]

    def test_reasoning_alias_field(self):
        events = _decode([_line({"reasoning": "hmm"}) + b"data: [DONE]\n"])
        assert events == [ReasoningDelta("hmm"), ReasoningClosed(), Done()]

    def test_done_closes_open_reasoning(self):
        decoder = StreamDecoder()
        events = list(decoder.feed(_line({"reasoning_content": "x"}) + b"data: [DONE]\n"))
        assert events == [ReasoningDelta("x"), ReasoningClosed(), Done()]
        assert decoder.reasoning_seen

    def test_lines_after_done_are_discarded(self):
        decoder = StreamDecoder()
        events = list(decoder.feed(b"data: [DONE]\n" + _line({"content": "late"})))
        assert events == [Done()]
        assert decoder.state == DecoderState.TERMINATED
        assert decoder.buffer == b""
        assert list(decoder.feed(_line({"content": "later"}))) == []
        assert list(decoder.close()) == []

    def test_feed_is_eager(self):
        decoder = StreamDecoder()
        first = decoder.feed(b"data: [DONE]\n")
        second = decoder.feed(_line({"content": "late"}))
        assert decoder.terminated
        assert [*first, *second] == [Done()]

    def test_malformed_json_skipped(self):
        stream = b"data: {broken\n" + _line({"content": "ok"}) + b"data: [DONE]\n"
        assert _decode([stream]) == [ContentDelta("ok"), Done()]

    def test_non_data_lines_ignored(self):
        stream = b"event: completion\nid: 4\n: comment\n\n" + _line({"content": "ok"})
        assert _decode([stream]) == [ContentDelta("ok"), Done()]

    def test_empty_delta_emits_nothing(self):
        stream = _line({"role": "assistant"}) + b'data: {"choices": []}\n' + b"data: [DONE]\n"
        assert _decode([stream]) == [Done()]

    def test_close_without_done(self):
        decoder = StreamDecoder()
        events = list(decoder.feed(_line({"content": "a"})))
        events.extend(decoder.feed(b'data: {"choices": [{"delta": {"content": "b"}}]}'))
        events.extend(decoder.close())
        assert events == [ContentDelta("a"), ContentDelta("b"), Done()]
        assert decoder.terminated

    def test_str_chunks_accepted(self):
        decoder = StreamDecoder()
        assert list(decoder.feed(_line({"content": "hi"}).decode())) == [ContentDelta("hi")]

    def test_custom_extractor(self):
        decoder = StreamDecoder(lambda chunk: (chunk.get("text", ""), ""))
        assert list(decoder.feed(b'data: {"text": "plain"}\n')) == [ContentDelta("plain")]


class TestOpenAIDelta:
    @pytest.mark.parametrize(
        "chunk, expected",
        [
            ({"choices": [{"delta": {"content": "a"}}]}, ("a", "")),
            ({"choices": [{"delta": {"content": None, "reasoning_content": "r"}}]}, ("", "r")),
            ({"choices": [{"delta": {}}]}, ("", "")),
            ({"choices": []}, ("", "")),
            ({}, ("", "")),
        ],
    )
    def test_extraction(self, chunk, expected):
        assert openai_delta(chunk) == expected
