"""Gateway error taxonomy.

Every error carries an HTTP-style ``status_code`` so a single-call failure can
be surfaced to the caller as a status (the provider's code when one exists,
500 otherwise).
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for all gateway errors."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class TransportError(GatewayError):
    """Connection-level failure (DNS, connect, read timeout, reset)."""


class ProviderHTTPError(GatewayError):
    """The provider answered with a 4xx/5xx status."""

    def __init__(self, message: str, status_code: int, body: str = ""):
        super().__init__(message, status_code=status_code)
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


class ParseError(GatewayError):
    """Malformed JSON or a response missing the expected fields."""


class ConfigError(GatewayError):
    """Request cannot be built from the given configuration."""


class MissingCredentialError(ConfigError):
    """No credential stored for a provider that requires one."""

    def __init__(self, provider: str, namespace: str | None = None):
        namespace = namespace or provider
        if namespace == provider:
            message = f"API key not found for provider: {provider}"
        else:
            message = f"{namespace} API key not found for provider: {provider}"
        super().__init__(message)
        self.provider = provider
        self.namespace = namespace


class UnknownProviderError(ConfigError):
    """Provider id is not in the registry."""


class FallbackCycleError(ConfigError):
    """The fallback table contains a cycle."""


class PerItemFailure(GatewayError):
    """One batch item failed in a round; recoverable through fallback."""

    def __init__(self, key: Any, message: str, status_code: int | None = None):
        super().__init__(message, status_code=status_code)
        self.key = key


class TotalFailure(GatewayError):
    """No item succeeded after the whole fallback chain was exhausted."""

    def __init__(self, errors: dict[Any, str]):
        count = len(errors)
        super().__init__(f"All {count} batch item(s) failed on every provider")
        self.errors = dict(errors)
