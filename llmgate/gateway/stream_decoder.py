"""Stream Decoder — incremental parser for ``data: {json}`` event streams.

Chunk boundaries never line up with line boundaries: a chunk can end in the
middle of a line (or of a multi-byte character), and the next chunk
continues it. The decoder keeps the bytes after the last newline and only
parses complete lines.

States:
  - STREAMING: normal content
  - CHAIN_OF_THOUGHT: at least one reasoning delta since the last close
  - TERMINATED: ``[DONE]`` seen; further input is ignored

Lines that follow ``[DONE]`` inside the same buffer are discarded.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Callable, Iterator

from llmgate.gateway.types import (
    ContentDelta,
    Done,
    ReasoningClosed,
    ReasoningDelta,
    StreamEvent,
)

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

DeltaExtractor = Callable[[dict[str, Any]], tuple[str, str]]


def openai_delta(chunk: dict[str, Any]) -> tuple[str, str]:
    """Default extractor: ``choices[0].delta.{content, reasoning_content}``."""
    choices = chunk.get("choices") or []
    if not choices:
        return "", ""
    delta = choices[0].get("delta") or {}
    return delta.get("content") or "", delta.get("reasoning_content") or delta.get("reasoning") or ""


class DecoderState(str, Enum):
    STREAMING = "streaming"
    CHAIN_OF_THOUGHT = "chain_of_thought"
    TERMINATED = "terminated"


class StreamDecoder:
    """Turns raw byte chunks into StreamEvents.

    Usage:
        decoder = StreamDecoder(provider.extract_delta)
        async for chunk in response.aiter_bytes():
            for event in decoder.feed(chunk):
                ...
        for event in decoder.close():
            ...
    """

    def __init__(self, extract_delta: DeltaExtractor | None = None):
        self.extract_delta = extract_delta or openai_delta
        self.state = DecoderState.STREAMING
        self.buffer = b""
        self.reasoning_seen = False  # any reasoning delta, ever

    @property
    def terminated(self) -> bool:
        return self.state == DecoderState.TERMINATED

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        """Consume one chunk; return the events of every line it completes.

        Events are produced eagerly, so the decoder state after the call
        already reflects this chunk.
        """
        if self.terminated:
            return []

        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self.buffer += chunk

        head, sep, tail = self.buffer.rpartition(b"\n")
        if not sep:
            return []

        self.buffer = tail
        return list(self._events(head.split(b"\n")))

    def close(self) -> list[StreamEvent]:
        """End of stream: parse an unterminated last line, then finish.

        Emits the terminal events when the provider closed the connection
        without sending ``[DONE]``.
        """
        if self.terminated:
            return []

        lines = [self.buffer] if self.buffer.strip() else []
        self.buffer = b""
        return list(self._close_events(lines))

    def _close_events(self, lines: list[bytes]) -> Iterator[StreamEvent]:
        yield from self._events(lines)
        if not self.terminated:
            yield from self._terminate()

    def _terminate(self) -> Iterator[StreamEvent]:
        if self.state == DecoderState.CHAIN_OF_THOUGHT:
            yield ReasoningClosed()
        self.state = DecoderState.TERMINATED
        self.buffer = b""
        yield Done()

    def _events(self, lines: list[bytes]) -> Iterator[StreamEvent]:
        for raw in lines:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line.startswith(DATA_PREFIX):
                # Blank separators, "event:" names, ": keep-alive" comments
                continue

            data = line[len(DATA_PREFIX) :].strip()
            if data == DONE_SENTINEL:
                yield from self._terminate()
                return

            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("Skipping undecodable stream line: %.120s", data)
                continue
            if not isinstance(chunk, dict):
                continue

            content, reasoning = self.extract_delta(chunk)

            if reasoning:
                self.state = DecoderState.CHAIN_OF_THOUGHT
                self.reasoning_seen = True
                yield ReasoningDelta(reasoning)
            elif self.state == DecoderState.CHAIN_OF_THOUGHT:
                self.state = DecoderState.STREAMING
                yield ReasoningClosed()

            if content:
                yield ContentDelta(content)
