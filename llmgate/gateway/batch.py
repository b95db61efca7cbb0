"""Batch Executor — fan-out of many non-streamed requests with provider fallback.

Round by round:
  1. Build one request per pending item (a build failure fails only that item)
  2. Dispatch through a bounded pool (asyncio.Semaphore + gather)
  3. Retry transient failures per request (see retry.py)
  4. Failed items move to the next provider in the fallback chain

Results are write-once per key: an item that succeeded in an earlier round is
never re-sent and never overwritten.

Usage:
    executor = BatchExecutor(builder, sink)
    outcome = await executor.run(spec, prompts, step_type="feedback")
    text = outcome.raise_for_status().content
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any

import httpx

from llmgate.core.config import settings
from llmgate.core.metrics import BATCH_ITEMS, PROVIDER_CALL_DURATION, PROVIDER_CALLS, PROVIDER_FALLBACKS
from llmgate.core.sentry import capture_failure
from llmgate.gateway.errors import (
    GatewayError,
    ParseError,
    PerItemFailure,
    ProviderHTTPError,
    TotalFailure,
    UnknownProviderError,
)
from llmgate.gateway.fallback import FallbackChain
from llmgate.gateway.interfaces import ContentProcessor, EventSink, IdentityProcessor, event_name
from llmgate.gateway.request_builder import RequestBuilder
from llmgate.gateway.retry import RetryPolicy, send_with_retry
from llmgate.gateway.types import (
    BatchItem,
    BatchOutcome,
    BatchStatus,
    BuiltRequest,
    ItemStatus,
    ProviderId,
    RequestSpec,
)

logger = logging.getLogger(__name__)


@dataclass
class _RoundProgress:
    total: int
    processed: int = 0

    def advance(self) -> int:
        """Count one settled item; return the rounded percentage."""
        self.processed += 1
        return round(self.processed / self.total * 100) if self.total else 100


class RoundBasedExecutor(ABC):
    """Round/fallback/progress engine shared by text and transcription batches."""

    kind: str = "text"
    key_field: str = "index"

    def __init__(
        self,
        builder: RequestBuilder,
        sink: EventSink,
        fallback: FallbackChain | None = None,
        processor: ContentProcessor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        concurrency: int | None = None,
        policy: RetryPolicy | None = None,
        divider: str | None = None,
    ):
        self.builder = builder
        self.sink = sink
        self.fallback = fallback or FallbackChain()
        self.processor = processor or IdentityProcessor()
        self.transport = transport
        self.concurrency = concurrency or self.default_concurrency()
        self.policy = policy or RetryPolicy.from_settings()
        self.divider = settings.batch_divider if divider is None else divider

    # --- Hooks ---

    @abstractmethod
    def default_concurrency(self) -> int: ...

    @abstractmethod
    def build_request(self, item: BatchItem, provider: ProviderId, template: Any) -> BuiltRequest:
        """Build the request for one item. GatewayError fails that item only."""
        ...

    @abstractmethod
    def decode(self, item: BatchItem, response: httpx.Response, provider: ProviderId, step_type: str) -> Any:
        """Turn a successful response into the item's result. Raises ParseError."""
        ...

    def timeout(self, provider: ProviderId) -> httpx.Timeout:
        config = self.builder.registry.get(provider).config
        return httpx.Timeout(config.read_timeout, connect=config.connect_timeout)

    def content_payload(self, item: BatchItem) -> dict[str, Any] | None:
        """Message forwarded on the step channel when an item succeeds."""
        return None

    # --- Rounds ---

    async def run_items(
        self,
        items: list[BatchItem],
        provider: ProviderId | str,
        step_type: str,
        template: Any,
    ) -> BatchOutcome:
        """Run every item to a final state, falling back provider by provider."""
        channel = event_name(step_type)
        try:
            current = ProviderId(provider)
        except ValueError:
            raise UnknownProviderError(f"Unknown provider: {provider}") from None
        results: dict[Any, Any] = {}
        errors: dict[Any, str] = {}
        providers_used: list[ProviderId] = []
        active = list(items)
        rounds = 0

        while active:
            rounds += 1
            providers_used.append(current)
            await self._run_round(active, current, channel, step_type, template, rounds)

            failed = []
            for item in active:
                if item.status == ItemStatus.SUCCEEDED:
                    results.setdefault(item.key, item.result)
                else:
                    failed.append(item)
            if not failed:
                break

            nxt = self.fallback.next(current)
            if nxt is None:
                for item in failed:
                    errors[item.key] = item.error
                break

            logger.warning(
                "%d of %d %s item(s) failed on %s, falling back to %s",
                len(failed),
                len(active),
                self.kind,
                current.value,
                nxt.value,
                extra={"provider": current.value, "batch_round": rounds},
            )
            PROVIDER_FALLBACKS.labels(from_provider=current.value, to_provider=nxt.value).inc()
            self.sink.send_message(
                "provider_fallback",
                {
                    "from_provider": current.value,
                    "to_provider": nxt.value,
                    "failed_count": len(failed),
                    "round": rounds,
                },
            )
            for item in failed:
                item.status = ItemStatus.PENDING
                item.error = ""
            active = failed
            current = nxt

        outcome = BatchOutcome(
            status=self._overall_status(len(items), len(results)),
            results=results,
            errors=errors,
            total=len(items),
            rounds=rounds,
            providers_used=providers_used,
            divider=self.divider,
        )

        self.sink.send_message(
            "parallel_complete",
            {
                "total_prompts": outcome.total,
                "successful": outcome.succeeded,
                "failed": outcome.failed,
                "rounds": outcome.rounds,
                "status": outcome.status.value,
            },
        )
        if outcome.status == BatchStatus.ALL_FAILED:
            logger.error("All %d %s item(s) failed after %d round(s)", outcome.total, self.kind, rounds)
            capture_failure(TotalFailure(errors))
        else:
            logger.info(
                "%s batch finished: %d/%d succeeded in %d round(s)",
                self.kind,
                outcome.succeeded,
                outcome.total,
                rounds,
            )
        return outcome

    @staticmethod
    def _overall_status(total: int, succeeded: int) -> BatchStatus:
        if succeeded == total:
            return BatchStatus.SUCCESS
        if succeeded == 0:
            return BatchStatus.ALL_FAILED
        return BatchStatus.PARTIAL_SUCCESS

    async def _run_round(
        self,
        items: list[BatchItem],
        provider: ProviderId,
        channel: str,
        step_type: str,
        template: Any,
        round_no: int,
    ) -> None:
        progress = _RoundProgress(total=len(items))
        pending: list[tuple[BatchItem, BuiltRequest]] = []

        for item in items:
            item.provider = provider
            try:
                pending.append((item, self.build_request(item, provider, template)))
            except GatewayError as e:
                logger.warning("Cannot build %s request for %s=%s: %s", self.kind, self.key_field, item.key, e.message)
                self._fail(item, PerItemFailure(item.key, e.message, e.status_code), progress, round_no)

        if not pending:
            return

        semaphore = asyncio.Semaphore(self.concurrency)
        async with httpx.AsyncClient(timeout=self.timeout(provider), transport=self.transport) as client:
            await asyncio.gather(
                *(
                    self._dispatch(client, semaphore, item, request, provider, channel, step_type, progress, round_no)
                    for item, request in pending
                )
            )

    async def _dispatch(
        self,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
        item: BatchItem,
        request: BuiltRequest,
        provider: ProviderId,
        channel: str,
        step_type: str,
        progress: _RoundProgress,
        round_no: int,
    ) -> None:
        async with semaphore:
            start = time.monotonic()
            try:
                resp = await send_with_retry(
                    client, request, self.policy, label=f"{provider.value} {self.key_field}={item.key}"
                )
                result = self.decode(item, resp, provider, step_type)
            except ProviderHTTPError as e:
                failure = PerItemFailure(item.key, e.body or e.message, e.status_code)
            except GatewayError as e:
                failure = PerItemFailure(item.key, e.message, e.status_code)
            else:
                PROVIDER_CALL_DURATION.labels(provider=provider.value, mode=self.kind).observe(time.monotonic() - start)
                PROVIDER_CALLS.labels(provider=provider.value, mode=self.kind, outcome="success").inc()
                self._succeed(item, result, channel, progress, round_no)
                return

            PROVIDER_CALL_DURATION.labels(provider=provider.value, mode=self.kind).observe(time.monotonic() - start)
            PROVIDER_CALLS.labels(provider=provider.value, mode=self.kind, outcome="error").inc()
            logger.warning(
                "%s %s=%s failed on %s (%d): %.200s",
                self.kind,
                self.key_field,
                item.key,
                provider.value,
                failure.status_code,
                failure.message,
            )
            self._fail(item, failure, progress, round_no)

    def _succeed(self, item: BatchItem, result: Any, channel: str, progress: _RoundProgress, round_no: int) -> None:
        item.status = ItemStatus.SUCCEEDED
        item.result = result
        item.error = ""
        percent = progress.advance()
        BATCH_ITEMS.labels(provider=item.provider.value, kind=self.kind, status="succeeded").inc()

        self.sink.send_message(
            "parallel_progress",
            {
                self.key_field: item.key,
                "total": progress.total,
                "processed": progress.processed,
                "progress": percent,
                "round": round_no,
                "provider": item.provider.value,
            },
        )
        payload = self.content_payload(item)
        if payload is not None:
            self.sink.send_message(channel, payload)

    def _fail(self, item: BatchItem, failure: PerItemFailure, progress: _RoundProgress, round_no: int) -> None:
        item.status = ItemStatus.FAILED
        item.error = failure.message
        percent = progress.advance()
        BATCH_ITEMS.labels(provider=item.provider.value, kind=self.kind, status="failed").inc()

        self.sink.send_error(
            "parallel_error",
            {
                self.key_field: item.key,
                "title": "API Request Failed",
                "message": failure.message,
                "status_code": failure.status_code,
                "total": progress.total,
                "processed": progress.processed,
                "progress": percent,
                "round": round_no,
                "provider": item.provider.value,
            },
        )


class BatchExecutor(RoundBasedExecutor):
    """Chat-completion batches keyed by prompt index."""

    kind = "text"
    key_field = "index"

    def default_concurrency(self) -> int:
        return settings.batch_concurrency

    async def run(
        self,
        spec: RequestSpec,
        prompts: list[str],
        step_type: str,
        tags: dict[str, Any] | list[dict[str, Any]] | None = None,
    ) -> BatchOutcome:
        """Run ``prompts`` with the sampling parameters of ``spec``.

        ``tags`` is one shared context or one context per prompt index.
        """
        items = [
            BatchItem(key=index, payload=prompt, tags=self._tags_for(tags, index))
            for index, prompt in enumerate(prompts)
        ]
        return await self.run_items(items, spec.provider, step_type, replace(spec, stream=False))

    @staticmethod
    def _tags_for(tags: dict[str, Any] | list[dict[str, Any]] | None, index: int) -> dict[str, Any]:
        if isinstance(tags, list):
            return tags[index] if index < len(tags) else {}
        return tags or {}

    def build_request(self, item: BatchItem, provider: ProviderId, template: RequestSpec) -> BuiltRequest:
        return self.builder.build_chat(replace(template, provider=provider, prompt=item.payload))

    def decode(self, item: BatchItem, response: httpx.Response, provider: ProviderId, step_type: str) -> str:
        try:
            data = response.json()
        except ValueError:
            raise ParseError(f"Response is not JSON: {response.text[:200]}") from None
        content = self.builder.registry.get(provider).extract_content(data)
        return self.processor.transform(content, step_type, item.tags)

    def content_payload(self, item: BatchItem) -> dict[str, Any]:
        return {"index": item.key, "content": item.result}
