"""Core types and DTOs for the provider gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from llmgate.gateway.errors import TotalFailure


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderId(str, Enum):
    """Supported LLM backends."""

    OPENAI = "openai"
    GOOGLE = "google"
    OPEN_KEY_AI = "open-key-ai"
    LITE_LLM = "lite-llm"
    VLLM = "vllm"
    VLLM2 = "vllm2"
    SLM = "slm"
    HOME_SERVER = "home-server"


class AuthScheme(str, Enum):
    """How a provider expects its credential."""

    BEARER = "bearer"
    NONE = "none"


class CallStatus(str, Enum):
    """Terminal status of a single streaming call."""

    SUCCESS = "success"
    ERROR = "error"


class ItemStatus(str, Enum):
    """Lifecycle of one batch item within a dispatch round."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BatchStatus(str, Enum):
    """Overall outcome of a batch across all fallback rounds."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    ALL_FAILED = "all_failed"


SCORING_STEP = "scoring"
CHAIN_OF_THOUGHT_STEP = "chain-of-thought"


# ---------------------------------------------------------------------------
# Provider config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderConfig:
    """Connection profile of a provider. Loaded once into the registry."""

    id: ProviderId
    base_uri: str
    connect_timeout: float = 5.0
    read_timeout: float = 120.0  # Generation is slow; minutes, not seconds
    auth_scheme: AuthScheme = AuthScheme.BEARER

    def url(self, endpoint: str) -> str:
        return self.base_uri.rstrip("/") + "/" + endpoint.lstrip("/")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


DEFAULT_TOP_P = 0.8
DEFAULT_TOP_K = 20


@dataclass(frozen=True)
class RequestSpec:
    """One chat completion request. Never mutated after construction.

    Batch items are derived from a shared spec with ``dataclasses.replace``.
    """

    provider: ProviderId
    model: str
    prompt: str = ""
    temperature: float = 0.7
    max_tokens: int = 2048
    stream: bool = True
    images: tuple[str, ...] = ()  # data URIs / URLs

    # Guided decoding; at most one is sent (json > regex > choice)
    guided_json: str | None = None
    guided_regex: str | None = None
    guided_choice: str | None = None  # "|"-delimited

    enable_thinking: bool = False
    top_p: float = DEFAULT_TOP_P
    top_k: int = DEFAULT_TOP_K


@dataclass(frozen=True)
class TranscriptionSpec:
    """Shared parameters of an audio transcription batch."""

    provider: ProviderId
    model: str
    prompt: str = ""
    language: str = "en"
    response_format: str = "verbose_json"
    timestamp_granularities: tuple[str, ...] = ("word",)


@dataclass(frozen=True)
class BuiltRequest:
    """Headers and body ready to send."""

    url: str
    headers: dict[str, str]
    json: dict[str, Any] | None = None
    data: dict[str, Any] | None = None  # multipart form fields
    files: dict[str, Any] | None = None  # multipart file parts


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ReasoningClosed:
    """Synthetic signal: the reasoning channel has ended."""


@dataclass(frozen=True)
class Done:
    """Terminal event. Nothing after it is meaningful."""


StreamEvent = Union[ContentDelta, ReasoningDelta, ReasoningClosed, Done]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class CallResult:
    """Accumulated text of one completed call (after content manipulation)."""

    content: str = ""
    reasoning_content: str = ""
    status: CallStatus = CallStatus.SUCCESS
    status_code: int = 200
    error_message: str = ""
    raw_content: str = ""  # Unextracted text for scoring calls

    @property
    def ok(self) -> bool:
        return self.status == CallStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "reasoning_content": self.reasoning_content,
            "status": self.status.value,
            "status_code": self.status_code,
            "error_message": self.error_message,
        }


@dataclass
class BatchItem:
    """One prompt (or audio file) tracked across dispatch rounds."""

    key: Any  # array index for text batches, media id for transcriptions
    payload: Any  # prompt string or file path
    status: ItemStatus = ItemStatus.PENDING
    result: Any = None
    error: str = ""
    provider: ProviderId | None = None
    tags: dict[str, Any] = field(default_factory=dict)  # content-manipulation context


def _key_order(key: Any) -> tuple[int, Any]:
    if isinstance(key, (int, float)):
        return (0, key)
    return (1, str(key))


@dataclass
class BatchOutcome:
    """Per-key results merged over all rounds, sorted by key."""

    status: BatchStatus
    results: dict[Any, Any] = field(default_factory=dict)
    errors: dict[Any, str] = field(default_factory=dict)
    total: int = 0
    rounds: int = 0
    providers_used: list[ProviderId] = field(default_factory=list)
    divider: str = "\n\n---\n\n"

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def content(self) -> str:
        """Successful results concatenated in key order."""
        return self.divider.join(str(self.results[key]) for key in self._ordered_keys())

    def as_list(self) -> list[tuple[Any, Any]]:
        return [(key, self.results[key]) for key in self._ordered_keys()]

    def _ordered_keys(self) -> list[Any]:
        # Numeric keys first in numeric order, then any other key by its text
        return sorted(self.results, key=_key_order)

    def raise_for_status(self) -> "BatchOutcome":
        """Raise TotalFailure when no item succeeded in any round."""
        if self.status == BatchStatus.ALL_FAILED:
            raise TotalFailure(self.errors)
        return self


@dataclass(frozen=True)
class ResolvedPrompt:
    """Output of the external prompt resolver.

    ``prompt`` is a single string (streamed call) or a list (batch call).
    ``tags`` is the content-manipulation context, shared or per index.
    """

    prompt: str | list[str]
    tags: dict[str, Any] | list[dict[str, Any]] = field(default_factory=dict)

    @property
    def is_batch(self) -> bool:
        return isinstance(self.prompt, list)

    def tags_for(self, index: int) -> dict[str, Any]:
        if isinstance(self.tags, list):
            return self.tags[index] if index < len(self.tags) else {}
        return self.tags
