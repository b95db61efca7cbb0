"""Contracts of the gateway's external collaborators.

The gateway borrows, and never owns, three collaborators:
  - EventSink: synchronous progress/delta/error channel to the user
  - CredentialSource: API key lookup (with a usage-counter side effect)
  - ContentProcessor: post-processing applied to every piece of text

Small reference implementations are provided for each.
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from typing import Any, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event sink
# ---------------------------------------------------------------------------


@runtime_checkable
class EventSink(Protocol):
    def send_message(self, event_type: str, payload: Any) -> None: ...

    def send_error(self, event_type: str, payload: Any) -> None: ...

    def send_done(self, event_type: str) -> None: ...


def event_name(step_type: str) -> str:
    """Step type in SNAKE_UPPER form, e.g. ``chain-of-thought`` → ``CHAIN_OF_THOUGHT``."""
    normalized = re.sub(r"[^a-zA-Z0-9]", " ", step_type)
    normalized = re.sub(r"\s+", " ", normalized).strip()
    return normalized.replace(" ", "_").upper()


class MessageHandler:
    """Event sink that forwards everything to one callback.

    The callback receives ``(event_type, data, is_error, is_done)``.
    """

    def __init__(self, callback: Callable[[str, Any, bool, bool], None] | None = None):
        self._callback = callback

    def send_message(self, event_type: str, payload: Any) -> None:
        if self._callback is not None:
            self._callback(event_type, payload, False, False)

    def send_error(self, event_type: str, payload: Any) -> None:
        if self._callback is not None:
            self._callback(event_type, payload, True, False)

    def send_done(self, event_type: str) -> None:
        if self._callback is not None:
            self._callback(event_type, None, False, True)


class SSEMessageHandler(MessageHandler):
    """Event sink that renders Server-Sent Events frames.

    ``write`` receives complete frames, e.g. ``"event: FEEDBACK\\ndata: {...}\\n\\n"``;
    done events are rendered with the ``[DONE]`` sentinel.
    """

    def __init__(self, write: Callable[[str], None]):
        super().__init__(self._emit)
        self._write = write

    def _emit(self, event_type: str, data: Any, is_error: bool, is_done: bool) -> None:
        if is_done:
            body = "[DONE]"
        elif is_error:
            body = json.dumps({"error": data}, ensure_ascii=False)
        else:
            body = json.dumps(data, ensure_ascii=False)
        self._write(f"event: {event_type}\ndata: {body}\n\n")


class RecordingSink(MessageHandler):
    """Event sink that keeps every event in memory, in order."""

    def __init__(self):
        super().__init__(self._record)
        self.events: list[tuple[str, str, Any]] = []

    def _record(self, event_type: str, data: Any, is_error: bool, is_done: bool) -> None:
        kind = "done" if is_done else "error" if is_error else "message"
        self.events.append((kind, event_type, data))

    def of_type(self, event_type: str, kind: str | None = None) -> list[Any]:
        return [data for k, t, data in self.events if t == event_type and (kind is None or k == kind)]

    def done_events(self) -> list[str]:
        return [t for k, t, _ in self.events if k == "done"]


# ---------------------------------------------------------------------------
# Credential source
# ---------------------------------------------------------------------------


@runtime_checkable
class CredentialSource(Protocol):
    def get_credential(self, provider: str, increment_usage: bool = True) -> str | None: ...


class StaticCredentialSource:
    """Credentials from a mapping of provider (or namespace) → API key."""

    def __init__(self, keys: dict[str, str] | None = None):
        self._keys = {k: v for k, v in (keys or {}).items() if v}
        self.usage: Counter[str] = Counter()

    def get_credential(self, provider: str, increment_usage: bool = True) -> str | None:
        key = self._keys.get(provider)
        if key and increment_usage:
            self.usage[provider] += 1
        return key


# ---------------------------------------------------------------------------
# Content processor
# ---------------------------------------------------------------------------


@runtime_checkable
class ContentProcessor(Protocol):
    def transform(self, content: str, rule_name: str, context: dict[str, Any]) -> str: ...


class IdentityProcessor:
    """Returns content unchanged."""

    def transform(self, content: str, rule_name: str, context: dict[str, Any]) -> str:
        return content


_TAG_PATTERN = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")


class TagReplacementProcessor:
    """Replaces ``{{tag}}`` placeholders with values from the item's resolved tags.

    Only rules listed in ``rules`` are processed; ``None`` means every rule.
    Unknown tags are left in place.
    """

    def __init__(self, rules: set[str] | None = None):
        self.rules = rules

    def transform(self, content: str, rule_name: str, context: dict[str, Any]) -> str:
        if not content or not context:
            return content
        if self.rules is not None and rule_name not in self.rules:
            return content

        def _replace(match: re.Match) -> str:
            tag = match.group(1)
            if tag not in context:
                return match.group(0)
            return str(context[tag])

        return _TAG_PATTERN.sub(_replace, content)
