"""Transcription Batch Executor — speech-to-text for many audio files.

Same rounds, fallback and progress events as the text batch, but:
  - items are keyed by the caller's media id, not by position
  - bodies are multipart (file + model + format + granularities + language + prompt)
  - concurrency is lower (3 by default) and the read timeout longer
  - the result per media id is the decoded JSON object (``verbose_json``)
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from llmgate.core.config import settings
from llmgate.gateway.batch import RoundBasedExecutor
from llmgate.gateway.errors import ParseError
from llmgate.gateway.types import BatchItem, BatchOutcome, BuiltRequest, ProviderId, TranscriptionSpec
from llmgate.schemas.transcription import TranscriptionResponse

logger = logging.getLogger(__name__)

TRANSCRIPTION_STEP = "transcription"


class TranscriptionBatchExecutor(RoundBasedExecutor):
    """Transcribes audio files keyed by media id.

    Usage:
        executor = TranscriptionBatchExecutor(builder, sink)
        outcome = await executor.run(spec, {"m1": "/tmp/a.mp3", "m2": "/tmp/b.mp3"})
        text = executor.combined_transcript(outcome)
    """

    kind = "transcription"
    key_field = "media_id"

    def default_concurrency(self) -> int:
        return settings.transcription_concurrency

    async def run(
        self,
        spec: TranscriptionSpec,
        files: dict[Any, str | Path],
        step_type: str = TRANSCRIPTION_STEP,
    ) -> BatchOutcome:
        items = [BatchItem(key=media_id, payload=path) for media_id, path in files.items()]
        return await self.run_items(items, spec.provider, step_type, spec)

    def timeout(self, provider: ProviderId) -> httpx.Timeout:
        config = self.builder.registry.get(provider).config
        return httpx.Timeout(settings.transcription_read_timeout, connect=config.connect_timeout)

    def build_request(self, item: BatchItem, provider: ProviderId, template: TranscriptionSpec) -> BuiltRequest:
        return self.builder.build_transcription(replace(template, provider=provider), item.payload)

    def decode(self, item: BatchItem, response: httpx.Response, provider: ProviderId, step_type: str) -> dict:
        try:
            data = response.json()
        except ValueError:
            raise ParseError(f"Transcription response is not JSON: {response.text[:200]}") from None
        if not isinstance(data, dict):
            raise ParseError("Transcription response is not a JSON object")
        try:
            TranscriptionResponse.model_validate(data)
        except ValidationError as e:
            raise ParseError(f"Unexpected transcription response: {e.error_count()} validation error(s)") from None
        return data

    @staticmethod
    def combined_transcript(outcome: BatchOutcome, separator: str = "\n\n") -> str:
        """Transcript texts of every succeeded media id, in key order."""
        texts = []
        for _, result in outcome.as_list():
            text = (result.get("text") or "").strip()
            if text:
                texts.append(text)
        return separator.join(texts)
