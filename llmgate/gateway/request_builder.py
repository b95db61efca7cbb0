"""Request Builder — turns a RequestSpec into headers and a body ready to send.

Rules:
  - Models named with the hosted prefix are treated as a local vLLM whatever
    the provider: guided decoding + chat_template_kwargs, nothing else
  - Otherwise the provider strategy adds its own fields
  - A missing credential fails only the request being built
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from llmgate.core.config import settings
from llmgate.gateway.errors import ConfigError, MissingCredentialError
from llmgate.gateway.interfaces import CredentialSource
from llmgate.gateway.providers import BaseProvider, ProviderRegistry, apply_self_hosted_options
from llmgate.gateway.types import BuiltRequest, RequestSpec, TranscriptionSpec

logger = logging.getLogger(__name__)

CHAT_ENDPOINT = "chat/completions"
TRANSCRIPTION_ENDPOINT = "audio/transcriptions"


class RequestBuilder:
    """Builds chat-completion and transcription requests for any registered provider."""

    def __init__(
        self,
        registry: ProviderRegistry,
        credentials: CredentialSource,
        hosted_model_prefix: str | None = None,
    ):
        self.registry = registry
        self.credentials = credentials
        self.hosted_model_prefix = (
            settings.hosted_model_prefix if hosted_model_prefix is None else hosted_model_prefix
        )

    def _credential(self, provider: BaseProvider) -> str | None:
        credential = self.credentials.get_credential(provider.id.value, increment_usage=True)
        if not credential and provider.requires_credential:
            raise MissingCredentialError(provider.id.value)
        return credential

    def is_hosted_model(self, model: str) -> bool:
        return bool(self.hosted_model_prefix) and model.startswith(self.hosted_model_prefix)

    def build_chat(self, spec: RequestSpec) -> BuiltRequest:
        """Build a chat-completions request.

        Raises:
            ConfigError: unknown provider or missing credential.
        """
        provider = self.registry.get(spec.provider)
        credential = self._credential(provider)
        headers = provider.build_headers(credential, streaming=spec.stream)

        if self.is_hosted_model(spec.model):
            payload = provider.base_payload(spec)
            apply_self_hosted_options(payload, spec)
        else:
            payload = provider.build_payload(spec, self.credentials)

        return BuiltRequest(url=provider.config.url(CHAT_ENDPOINT), headers=headers, json=payload)

    def build_transcription(self, spec: TranscriptionSpec, file_path: str | Path) -> BuiltRequest:
        """Build a multipart transcription request for one audio file.

        The file is read eagerly so the request can be re-sent on retry.
        """
        provider = self.registry.get(spec.provider)
        credential = self._credential(provider)
        headers = provider.build_headers(credential, streaming=False)
        # httpx sets the multipart boundary itself
        headers.pop("Content-Type", None)

        path = Path(file_path)
        try:
            content = path.read_bytes()
        except OSError as e:
            raise ConfigError(f"Cannot read audio file {path}: {e}") from e

        data: dict[str, Any] = {
            "model": spec.model,
            "response_format": spec.response_format,
            "language": spec.language,
        }
        if spec.timestamp_granularities:
            data["timestamp_granularities[]"] = list(spec.timestamp_granularities)
        if spec.prompt:
            data["prompt"] = spec.prompt

        return BuiltRequest(
            url=provider.config.url(TRANSCRIPTION_ENDPOINT),
            headers=headers,
            data=data,
            files={"file": (path.name, content)},
        )
