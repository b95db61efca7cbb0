"""Provider Registry — per-backend strategies for headers, payloads and decoding.

Every backend speaks the OpenAI chat-completions protocol, with quirks:
  - OpenAI-compatible (openai, google, open-key-ai, lite-llm): guided JSON is
    sent as a ``response_format.json_schema`` wrapper
  - Self-hosted vLLM (vllm, vllm2, slm): raw ``guided_*`` fields plus
    ``chat_template_kwargs.enable_thinking``
  - home-server: self-hosted, no bearer auth, but needs a Hugging Face token
    in the body (``api_token``)

Adding a provider means adding a strategy and a registry entry; existing
strategies are never touched.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from llmgate.core.config import Settings, settings as default_settings
from llmgate.gateway.errors import MissingCredentialError, ParseError, UnknownProviderError
from llmgate.gateway.interfaces import CredentialSource
from llmgate.gateway.stream_decoder import openai_delta
from llmgate.gateway.types import (
    DEFAULT_TOP_K,
    DEFAULT_TOP_P,
    AuthScheme,
    ProviderConfig,
    ProviderId,
    RequestSpec,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Guided decoding helpers
# ---------------------------------------------------------------------------


def parse_guided_json(raw: str | None) -> Any | None:
    """Decode a guided-JSON schema; malformed input is dropped, not raised."""
    if not raw or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed guided_json constraint (%d chars)", len(raw))
        return None


def parse_guided_choice(raw: str | None) -> list[str] | None:
    """Split a ``|``-delimited choice list; None when nothing remains."""
    if not raw:
        return None
    choices = [choice.strip() for choice in raw.split("|")]
    choices = [choice for choice in choices if choice]
    return choices or None


def apply_self_hosted_options(payload: dict[str, Any], spec: RequestSpec) -> None:
    """Raw vLLM guided decoding (json > regex > choice) and chat template flags."""
    schema = parse_guided_json(spec.guided_json)
    choices = parse_guided_choice(spec.guided_choice)

    if schema is not None:
        payload["guided_json"] = schema
    elif spec.guided_regex:
        payload["guided_regex"] = spec.guided_regex
    elif choices:
        payload["guided_choice"] = choices

    payload["chat_template_kwargs"] = {"enable_thinking": bool(spec.enable_thinking)}


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class BaseProvider(ABC):
    """Base strategy for a chat-completions backend."""

    requires_credential: bool = True

    def __init__(self, config: ProviderConfig):
        self.config = config

    @property
    def id(self) -> ProviderId:
        return self.config.id

    def build_headers(self, credential: str | None, streaming: bool = True) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if streaming else "application/json",
        }
        if credential and self.config.auth_scheme == AuthScheme.BEARER:
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    def base_payload(self, spec: RequestSpec) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": spec.model,
            "messages": [{"role": "user", "content": self._message_content(spec)}],
            "temperature": spec.temperature,
            "max_tokens": spec.max_tokens,
            "stream": spec.stream,
        }
        # Omission, not the default value, is the wire-level default
        if spec.top_p != DEFAULT_TOP_P:
            payload["top_p"] = spec.top_p
        if spec.top_k != DEFAULT_TOP_K:
            payload["top_k"] = spec.top_k
        return payload

    @staticmethod
    def _message_content(spec: RequestSpec) -> str | list[dict[str, Any]]:
        if not spec.images:
            return spec.prompt
        content: list[dict[str, Any]] = [{"type": "text", "text": spec.prompt}]
        for image in spec.images:
            if image:
                content.append({"type": "image_url", "image_url": {"url": image}})
        return content

    def build_payload(self, spec: RequestSpec, credentials: CredentialSource) -> dict[str, Any]:
        payload = self.base_payload(spec)
        self.apply_options(payload, spec, credentials)
        return payload

    @abstractmethod
    def apply_options(self, payload: dict[str, Any], spec: RequestSpec, credentials: CredentialSource) -> None:
        """Add provider-specific fields (guided decoding, reasoning toggles)."""
        ...

    def extract_delta(self, chunk: dict[str, Any]) -> tuple[str, str]:
        """Return ``(content, reasoning)`` from one streamed delta object."""
        return openai_delta(chunk)

    def extract_content(self, data: Any) -> str:
        """Return the text of a non-streamed completion."""
        try:
            choice = data["choices"][0]
        except (KeyError, IndexError, TypeError):
            raise ParseError("Response has no choices") from None

        message = choice.get("message") or {}
        if message.get("content") is not None:
            return message["content"]
        if choice.get("text") is not None:
            return choice["text"]
        raise ParseError("Response choice has neither message.content nor text")


class OpenAICompatibleProvider(BaseProvider):
    """Hosted OpenAI-compatible APIs; guided JSON goes through response_format."""

    def apply_options(self, payload: dict[str, Any], spec: RequestSpec, credentials: CredentialSource) -> None:
        schema = parse_guided_json(spec.guided_json)
        if schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": schema, "strict": True},
            }


class SelfHostedProvider(BaseProvider):
    """vLLM servers: raw guided decoding fields and chat template kwargs."""

    def apply_options(self, payload: dict[str, Any], spec: RequestSpec, credentials: CredentialSource) -> None:
        apply_self_hosted_options(payload, spec)


class OptionalAuthSelfHostedProvider(SelfHostedProvider):
    """Self-hosted backend that may run without an API key."""

    requires_credential = False


class HomeServerProvider(OptionalAuthSelfHostedProvider):
    """Home inference server; authenticates with a Hugging Face token in the body."""

    secondary_namespace = "huggingface"

    def apply_options(self, payload: dict[str, Any], spec: RequestSpec, credentials: CredentialSource) -> None:
        token = credentials.get_credential(self.secondary_namespace, increment_usage=False)
        if not token:
            raise MissingCredentialError(self.id.value, namespace=self.secondary_namespace)
        apply_self_hosted_options(payload, spec)
        payload["api_token"] = token


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_STRATEGIES: dict[ProviderId, type[BaseProvider]] = {
    ProviderId.OPENAI: OpenAICompatibleProvider,
    ProviderId.GOOGLE: OpenAICompatibleProvider,
    ProviderId.OPEN_KEY_AI: OpenAICompatibleProvider,
    ProviderId.LITE_LLM: OpenAICompatibleProvider,
    ProviderId.VLLM: SelfHostedProvider,
    ProviderId.VLLM2: SelfHostedProvider,
    ProviderId.SLM: OptionalAuthSelfHostedProvider,
    ProviderId.HOME_SERVER: HomeServerProvider,
}


def default_provider_configs(cfg: Settings | None = None) -> dict[ProviderId, ProviderConfig]:
    """Connection profiles for every provider, with settings overrides applied."""
    cfg = cfg or default_settings
    timeouts = {"connect_timeout": cfg.connect_timeout, "read_timeout": cfg.read_timeout}
    base_uris = {
        ProviderId.OPENAI: "https://api.openai.com/v1/",
        ProviderId.GOOGLE: "https://generativelanguage.googleapis.com/v1beta/openai/",
        ProviderId.OPEN_KEY_AI: "https://api.hakai.shop/v1/",
        ProviderId.LITE_LLM: cfg.lite_llm_base_uri,
        ProviderId.VLLM: cfg.vllm_base_uri,
        ProviderId.VLLM2: cfg.vllm2_base_uri,
        ProviderId.SLM: cfg.slm_base_uri,
        ProviderId.HOME_SERVER: cfg.home_server_base_uri,
    }
    return {
        provider: ProviderConfig(
            id=provider,
            base_uri=uri,
            auth_scheme=AuthScheme.NONE if provider == ProviderId.HOME_SERVER else AuthScheme.BEARER,
            **timeouts,
        )
        for provider, uri in base_uris.items()
    }


class ProviderRegistry:
    """Maps provider ids to their strategy instances."""

    def __init__(self, configs: dict[ProviderId, ProviderConfig] | None = None):
        configs = configs or default_provider_configs()
        self._providers: dict[ProviderId, BaseProvider] = {
            provider: _STRATEGIES[provider](config) for provider, config in configs.items()
        }

    def get(self, provider: ProviderId | str) -> BaseProvider:
        try:
            key = ProviderId(provider)
        except ValueError:
            raise UnknownProviderError(f"Unknown provider: {provider}") from None
        strategy = self._providers.get(key)
        if strategy is None:
            raise UnknownProviderError(f"No configuration registered for provider: {key.value}")
        return strategy

    def __contains__(self, provider: object) -> bool:
        try:
            return ProviderId(provider) in self._providers
        except ValueError:
            return False

    def providers(self) -> list[ProviderId]:
        return list(self._providers)
