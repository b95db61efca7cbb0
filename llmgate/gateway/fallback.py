"""Fallback Controller — which provider takes over when one is exhausted.

The chain is a small directed graph (provider → next provider or none).
It is validated once at construction: following it from any provider must
terminate, so a batch can never bounce between providers forever.
"""

from __future__ import annotations

import logging

from llmgate.gateway.errors import FallbackCycleError
from llmgate.gateway.types import ProviderId

logger = logging.getLogger(__name__)

DEFAULT_FALLBACKS: dict[ProviderId, ProviderId | None] = {
    ProviderId.HOME_SERVER: ProviderId.VLLM,
    ProviderId.VLLM: ProviderId.VLLM2,
    ProviderId.VLLM2: ProviderId.SLM,
    ProviderId.SLM: None,
    ProviderId.OPEN_KEY_AI: ProviderId.OPENAI,
    ProviderId.OPENAI: None,
    ProviderId.GOOGLE: None,
    ProviderId.LITE_LLM: None,
}


class FallbackChain:
    """Acyclic provider → provider|None map.

    Usage:
        chain = FallbackChain()
        nxt = chain.next(ProviderId.VLLM)  # ProviderId.VLLM2
    """

    def __init__(self, edges: dict[ProviderId, ProviderId | None] | None = None):
        self._edges: dict[ProviderId, ProviderId | None] = dict(DEFAULT_FALLBACKS if edges is None else edges)
        self.validate()

    def next(self, provider: ProviderId | str) -> ProviderId | None:
        """Next provider to try after ``provider``, or None."""
        try:
            key = ProviderId(provider)
        except ValueError:
            return None
        return self._edges.get(key)

    def path(self, start: ProviderId | str) -> list[ProviderId]:
        """Every provider tried from ``start``, in order, ``start`` included."""
        current: ProviderId | None = ProviderId(start)
        visited: list[ProviderId] = []
        while current is not None:
            visited.append(current)
            current = self._edges.get(current)
        return visited

    def validate(self) -> None:
        """Raise FallbackCycleError if any path revisits a provider."""
        for start in self._edges:
            seen: set[ProviderId] = set()
            current: ProviderId | None = start
            while current is not None:
                if current in seen:
                    raise FallbackCycleError(f"Fallback chain starting at {start.value} loops back to {current.value}")
                seen.add(current)
                current = self._edges.get(current)

    def edges(self) -> dict[ProviderId, ProviderId | None]:
        return dict(self._edges)
