"""Per-request retry with exponential backoff and jitter.

Only transient failures are retried:
  - connection-level errors (httpx.TransportError, timeouts included)
  - HTTP 5xx and 429

Other 4xx responses are final. So are request errors that would repeat on
every attempt (an undecodable body, too many redirects): they are raised at
once as TransportError. Attempts are capped (3 by default).

Backoff strategy:
  delay = min(base * 2^attempt + jitter, max_delay)
  jitter = random(0, base * 0.5)
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass

import httpx

from llmgate.core.config import settings
from llmgate.gateway.errors import ProviderHTTPError, TransportError
from llmgate.gateway.types import BuiltRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt cap and backoff parameters."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    @staticmethod
    def is_retryable_status(status_code: int) -> bool:
        return status_code == 429 or status_code >= 500

    def calculate_backoff(self, attempt: int) -> float:
        """Delay before the retry that follows ``attempt`` (0-based)."""
        if self.base_delay <= 0:
            return 0.0
        exponential = self.base_delay * (2**attempt)
        jitter = random.uniform(0, self.base_delay * 0.5)
        return min(exponential + jitter, self.max_delay)


async def send_with_retry(
    client: httpx.AsyncClient,
    request: BuiltRequest,
    policy: RetryPolicy,
    label: str = "",
) -> httpx.Response:
    """POST ``request`` until it succeeds, fails for good, or attempts run out.

    Returns the successful (2xx) response.

    Raises:
        ProviderHTTPError: non-retryable status, or retryable status on the last attempt.
        TransportError: connection error on the last attempt, or any other
            request error (decoding, redirects) on the first.
    """
    for attempt in range(policy.max_attempts):
        last_attempt = attempt + 1 >= policy.max_attempts
        try:
            resp = await client.post(
                request.url,
                headers=request.headers,
                json=request.json,
                data=request.data,
                files=request.files,
            )
        except httpx.TransportError as e:
            if last_attempt:
                raise TransportError(str(e) or e.__class__.__name__) from e
            delay = policy.calculate_backoff(attempt)
            logger.info(
                "Retrying %s after transport error (attempt %d/%d) in %.1fs: %s",
                label or request.url,
                attempt + 1,
                policy.max_attempts,
                delay,
                e,
            )
            await asyncio.sleep(delay)
            continue
        except httpx.RequestError as e:
            raise TransportError(f"{e.__class__.__name__}: {e}") from e

        if resp.is_success:
            return resp

        body = resp.text
        if not policy.is_retryable_status(resp.status_code) or last_attempt:
            raise ProviderHTTPError(
                f"HTTP {resp.status_code} from {request.url}",
                status_code=resp.status_code,
                body=body,
            )

        delay = policy.calculate_backoff(attempt)
        logger.info(
            "Retrying %s after HTTP %d (attempt %d/%d) in %.1fs",
            label or request.url,
            resp.status_code,
            attempt + 1,
            policy.max_attempts,
            delay,
        )
        await asyncio.sleep(delay)

    # max_attempts < 1
    raise TransportError(f"No attempt made for {request.url}")
