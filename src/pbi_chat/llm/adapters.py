"""Provider adapters: request building and response normalization.

Each provider family is one adapter class.  An adapter is selected once per
call from ``ProviderConfiguration.provider_type`` via :func:`adapter_for`;
nothing downstream looks at the endpoint URL again.

Every adapter implements the same operations:

* ``build_request``     - conversation turns -> :class:`WireRequest`
* ``parse_response``    - buffered JSON body -> ``(text, usage)``
* ``stream_delta``      - one SSE ``data:`` payload -> text delta
* ``raw_delta``         - one unframed JSON line -> text delta
* ``stream_usage``      - usage counters carried by a stream payload, if any
* ``compat_retry_body`` - alternate body after a rejected request, if any
"""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence
from urllib.parse import urlsplit, urlunsplit

from pbi_chat.types import ConversationTurn, ProviderConfiguration, ProviderType, Role, WireRequest

_logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
ANTHROPIC_VERSION = "2023-06-01"
LOOPBACK_ADDRESS = "127.0.0.1"


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def rewrite_localhost(url: str) -> str:
    """Replace a literal ``localhost`` host with the IPv4 loopback address.

    Scheme, port, path and query are preserved.  A URL that cannot be
    parsed is returned unchanged; dispatching it reports the failure.
    """
    try:
        parts = urlsplit(url)
        if parts.hostname != "localhost":
            return url
        port = parts.port
    except ValueError:
        return url
    netloc = LOOPBACK_ADDRESS
    if port is not None:
        netloc = f"{netloc}:{port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def map_role(role: str) -> str:
    """Role mapping for message-array providers."""
    if role == Role.USER.value:
        return "user"
    if role == Role.SYSTEM.value:
        return "system"
    return "assistant"


def format_messages(turns: Sequence[ConversationTurn]) -> list[dict[str, str]]:
    return [{"role": map_role(t.role), "content": t.content} for t in turns]


def _first(items: Any) -> Any:
    if isinstance(items, list) and items:
        return items[0]
    return None


def _get(obj: Any, *path: str | int) -> Any:
    """Walk nested dicts/lists, returning ``None`` on any missing step."""
    for key in path:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
            obj = obj[key]
        else:
            if not isinstance(obj, dict):
                return None
            obj = obj.get(key)
    return obj


def fallback_text(data: Any) -> str:
    """Extract *some* text from a response of unrecognized shape."""
    if isinstance(data, dict):
        text = data.get("text")
        if text:
            return str(text)
        nested = _get(data, "message", "content")
        if nested:
            return str(nested)
        message = data.get("message")
        if isinstance(message, str) and message:
            return message
    return json.dumps(data, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------

class ProviderAdapter:
    """Common behaviour shared by all provider adapters."""

    provider_type: ProviderType = ProviderType.GENERIC_BEARER

    def request_url(self, config: ProviderConfiguration) -> str:
        return config.api_url

    def headers(self, config: ProviderConfiguration) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def body(
        self,
        config: ProviderConfiguration,
        turns: Sequence[ConversationTurn],
        *,
        stream: bool,
        max_tokens: int,
    ) -> dict[str, Any]:
        return {
            "model": config.resolved_model,
            "messages": format_messages(turns),
            "stream": stream,
            "max_tokens": max_tokens,
        }

    def build_request(
        self,
        config: ProviderConfiguration,
        turns: Sequence[ConversationTurn],
        *,
        stream: bool = False,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> WireRequest:
        return WireRequest(
            url=self.request_url(config),
            headers=self.headers(config),
            body=self.body(config, turns, stream=stream, max_tokens=max_tokens),
        )

    # -- responses -----------------------------------------------------

    def parse_response(self, data: Any) -> tuple[str, dict[str, Any] | None]:
        choice = _first(_get(data, "choices"))
        if choice is not None:
            return _get(choice, "message", "content") or "", _get(data, "usage")
        return fallback_text(data), None

    def stream_delta(self, payload: Any) -> str:
        return _get(payload, "choices", 0, "delta", "content") or ""

    def raw_delta(self, payload: Any) -> str:
        if not isinstance(payload, dict):
            return ""
        delta = payload.get("text") or payload.get("content") or ""
        return delta if isinstance(delta, str) else ""

    def stream_usage(self, payload: Any) -> dict[str, Any] | None:
        return None

    def compat_retry_body(self, body: dict[str, Any], error_message: str) -> dict[str, Any] | None:
        return None


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class OllamaAdapter(ProviderAdapter):
    """Ollama ``/api/generate``: one concatenated prompt, no auth."""

    provider_type = ProviderType.OLLAMA

    _PROMPT_ROLES = {
        Role.SYSTEM.value: "System",
        Role.USER.value: "User",
        Role.ASSISTANT.value: "Assistant",
    }

    @classmethod
    def build_prompt(cls, turns: Sequence[ConversationTurn]) -> str:
        parts = []
        for turn in turns:
            label = cls._PROMPT_ROLES.get(turn.role)
            if label is None:
                continue
            parts.append(f"{label}: {turn.content}\n\n")
        parts.append("Assistant:")
        return "".join(parts)

    def request_url(self, config: ProviderConfiguration) -> str:
        return rewrite_localhost(config.api_url)

    def body(self, config, turns, *, stream, max_tokens):
        return {
            "model": config.resolved_model,
            "prompt": self.build_prompt(turns),
            "stream": bool(stream),
        }

    def parse_response(self, data):
        text = _get(data, "response")
        if not isinstance(text, str):
            return fallback_text(data), None
        return text, self._usage(data)

    @staticmethod
    def _usage(data: dict[str, Any]) -> dict[str, int]:
        prompt = data.get("prompt_eval_count") or 0
        completion = data.get("eval_count") or 0
        return {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion,
        }

    def stream_delta(self, payload):
        delta = _get(payload, "response")
        return delta if isinstance(delta, str) else ""

    def raw_delta(self, payload):
        return self.stream_delta(payload) or super().raw_delta(payload)

    def stream_usage(self, payload):
        if isinstance(payload, dict) and payload.get("done"):
            return self._usage(payload)
        return None


class OpenAIAdapter(ProviderAdapter):
    """OpenAI chat completions (``max_completion_tokens`` with fallback)."""

    provider_type = ProviderType.OPENAI_COMPATIBLE

    _TOKEN_FIELDS = ("max_completion_tokens", "max_tokens")

    def headers(self, config):
        headers = super().headers(config)
        headers["Authorization"] = f"Bearer {config.api_key}"
        return headers

    def body(self, config, turns, *, stream, max_tokens):
        body = super().body(config, turns, stream=stream, max_tokens=max_tokens)
        body["max_completion_tokens"] = body.pop("max_tokens")
        return body

    def stream_usage(self, payload):
        usage = _get(payload, "usage")
        return usage if isinstance(usage, dict) and usage else None

    def compat_retry_body(self, body, error_message):
        if "max_completion_tokens" not in body:
            return None
        if not any(name in error_message for name in self._TOKEN_FIELDS):
            return None
        retry = dict(body)
        retry["max_tokens"] = retry.pop("max_completion_tokens")
        return retry


class AnthropicAdapter(ProviderAdapter):
    """Anthropic messages API (system prompt as a top-level field)."""

    provider_type = ProviderType.ANTHROPIC

    def headers(self, config):
        headers = super().headers(config)
        headers["x-api-key"] = config.api_key
        headers["anthropic-version"] = ANTHROPIC_VERSION
        return headers

    def body(self, config, turns, *, stream, max_tokens):
        body = super().body(config, turns, stream=stream, max_tokens=max_tokens)
        system = next((t for t in turns if t.role == Role.SYSTEM.value), None)
        if system is not None:
            body["system"] = system.content
            body["messages"] = format_messages(
                [t for t in turns if t.role != Role.SYSTEM.value]
            )
        return body

    def parse_response(self, data):
        blocks = _get(data, "content")
        if isinstance(blocks, list):
            text = "".join(
                str(block.get("text") or "") if isinstance(block, dict) else ""
                for block in blocks
            )
            return text, _get(data, "usage")
        return fallback_text(data), None

    def stream_delta(self, payload):
        if _get(payload, "type") != "content_block_delta":
            return ""
        delta = _get(payload, "delta", "text")
        return delta if isinstance(delta, str) else ""


class GoogleAdapter(ProviderAdapter):
    """Google generateContent (``contents`` / ``parts``, ``model`` role)."""

    provider_type = ProviderType.GOOGLE

    def headers(self, config):
        headers = super().headers(config)
        headers["Authorization"] = f"Bearer {config.api_key}"
        return headers

    @staticmethod
    def format_contents(turns: Sequence[ConversationTurn]) -> list[dict[str, Any]]:
        contents = []
        for turn in turns:
            if turn.role in (Role.USER.value, Role.SYSTEM.value):
                role = "user"
            else:
                role = "model"
            contents.append({"role": role, "parts": [{"text": turn.content}]})
        return contents

    def body(self, config, turns, *, stream, max_tokens):
        return {
            "model": config.resolved_model,
            "contents": self.format_contents(turns),
            "stream": stream,
            "generationConfig": {"maxOutputTokens": max_tokens},
        }

    def parse_response(self, data):
        candidate = _first(_get(data, "candidates"))
        if candidate is not None:
            text = _get(candidate, "content", "parts", 0, "text") or ""
            return text, _get(data, "usageMetadata")
        return fallback_text(data), None

    def stream_delta(self, payload):
        delta = _get(payload, "candidates", 0, "content", "parts", 0, "text")
        return delta if isinstance(delta, str) else ""


class GenericBearerAdapter(ProviderAdapter):
    """Any other OpenAI-shaped endpoint; Bearer auth only with a key."""

    provider_type = ProviderType.GENERIC_BEARER

    def headers(self, config):
        headers = super().headers(config)
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        return headers


_ADAPTERS: dict[ProviderType, ProviderAdapter] = {
    adapter.provider_type: adapter
    for adapter in (
        OllamaAdapter(),
        OpenAIAdapter(),
        AnthropicAdapter(),
        GoogleAdapter(),
        GenericBearerAdapter(),
    )
}


def adapter_for(provider_type: ProviderType) -> ProviderAdapter:
    """Return the adapter for *provider_type*."""
    return _ADAPTERS[provider_type]
