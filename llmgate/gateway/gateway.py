"""LLM Gateway — main orchestrator.

Usage:
    gateway = LlmGateway(api_keys={"vllm": "...", "openai": "..."}, sink=sink)

    # One prompt, streamed
    result = await gateway.stream_call(spec, step_type="feedback")

    # Many prompts, with provider fallback
    outcome = await gateway.batch_call(spec, prompts, step_type="feedback")

    # Whatever the prompt resolver produced
    result_or_outcome = await gateway.run(resolved, spec, step_type="feedback")
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import httpx

from llmgate.gateway.batch import BatchExecutor
from llmgate.gateway.executor import StreamExecutor
from llmgate.gateway.fallback import FallbackChain
from llmgate.gateway.interfaces import (
    ContentProcessor,
    CredentialSource,
    EventSink,
    IdentityProcessor,
    RecordingSink,
    StaticCredentialSource,
)
from llmgate.gateway.providers import ProviderRegistry
from llmgate.gateway.request_builder import RequestBuilder
from llmgate.gateway.retry import RetryPolicy
from llmgate.gateway.transcription import TRANSCRIPTION_STEP, TranscriptionBatchExecutor
from llmgate.gateway.types import (
    BatchOutcome,
    CallResult,
    ProviderConfig,
    ProviderId,
    RequestSpec,
    ResolvedPrompt,
    TranscriptionSpec,
)

logger = logging.getLogger(__name__)


class LlmGateway:
    """Facade over the streaming, batch and transcription executors.

    Integrates:
      - ProviderRegistry: per-provider strategies
      - RequestBuilder: headers and bodies, credential lookup
      - StreamExecutor: single streamed call, no fallback
      - BatchExecutor / TranscriptionBatchExecutor: rounds with fallback
    """

    def __init__(
        self,
        api_keys: dict[str, str] | None = None,
        credentials: CredentialSource | None = None,
        sink: EventSink | None = None,
        processor: ContentProcessor | None = None,
        provider_configs: dict[ProviderId, ProviderConfig] | None = None,
        fallback: FallbackChain | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        hosted_model_prefix: str | None = None,
    ):
        """
        Args:
            api_keys: Mapping of provider name → API key (ignored when credentials is given)
            credentials: Credential source consulted per request
            sink: Event sink for streamed deltas and progress (recorded in memory by default)
            processor: Content manipulation applied to every result
            provider_configs: Override default provider configurations
            fallback: Override the default fallback chain
            retry_policy: Override the batch retry policy
            transport: httpx transport shared by all executors (tests inject a MockTransport)
        """
        self.credentials = credentials or StaticCredentialSource(api_keys)
        self.sink = sink or RecordingSink()
        self.processor = processor or IdentityProcessor()
        self.registry = ProviderRegistry(provider_configs)
        self.builder = RequestBuilder(self.registry, self.credentials, hosted_model_prefix=hosted_model_prefix)
        self.fallback = fallback or FallbackChain()

        self.streamer = StreamExecutor(self.builder, self.sink, self.processor, transport=transport)
        self.batcher = BatchExecutor(
            self.builder,
            self.sink,
            fallback=self.fallback,
            processor=self.processor,
            transport=transport,
            policy=retry_policy,
        )
        self.transcriber = TranscriptionBatchExecutor(
            self.builder,
            self.sink,
            fallback=self.fallback,
            processor=self.processor,
            transport=transport,
            policy=retry_policy,
        )

    async def stream_call(
        self,
        spec: RequestSpec,
        step_type: str,
        score_regex: str | None = None,
        tags: dict[str, Any] | None = None,
    ) -> CallResult:
        return await self.streamer.run(spec, step_type, score_regex=score_regex, tags=tags)

    async def batch_call(
        self,
        spec: RequestSpec,
        prompts: list[str],
        step_type: str,
        tags: dict[str, Any] | list[dict[str, Any]] | None = None,
    ) -> BatchOutcome:
        return await self.batcher.run(spec, prompts, step_type, tags=tags)

    async def transcribe(
        self,
        spec: TranscriptionSpec,
        files: dict[Any, str | Path],
        step_type: str = TRANSCRIPTION_STEP,
    ) -> BatchOutcome:
        return await self.transcriber.run(spec, files, step_type=step_type)

    async def run(
        self,
        resolved: ResolvedPrompt,
        spec: RequestSpec,
        step_type: str,
        score_regex: str | None = None,
    ) -> CallResult | BatchOutcome:
        """Dispatch a resolved prompt: a string is streamed, a list is batched."""
        if not resolved.is_batch:
            return await self.stream_call(
                replace(spec, prompt=resolved.prompt),
                step_type,
                score_regex=score_regex,
                tags=resolved.tags_for(0),
            )

        prompts = list(resolved.prompt)
        logger.info("Batching %d prompts for %s on %s", len(prompts), step_type, spec.provider)
        self.sink.send_message(
            "batch_processing",
            {
                "total_prompts": len(prompts),
                "message": "Starting parallel processing of multiple prompts",
            },
        )
        tags = resolved.tags if isinstance(resolved.tags, list) else dict(resolved.tags)
        return await self.batch_call(spec, prompts, step_type, tags=tags)
