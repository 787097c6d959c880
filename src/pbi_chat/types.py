"""Shared data types for pbi-chat."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Provider types
# ---------------------------------------------------------------------------

_OPENAI_HOST = "openai.com"
_ANTHROPIC_HOST = "anthropic.com"
_GOOGLE_HOST = "googleapis.com"


class ProviderType(str, enum.Enum):
    """LLM backend families, each with its own wire protocol."""

    OPENAI_COMPATIBLE = "openai-compatible"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OLLAMA = "ollama"
    GENERIC_BEARER = "generic-bearer"

    @classmethod
    def resolve(cls, tag: str | None, url: str) -> ProviderType:
        """Resolve the provider family from a stored type tag and endpoint URL.

        ``ollama`` and the explicit hosted tags win.  Anything else
        (missing, ``standard``, ``generic-bearer``) is inferred from the
        endpoint host, defaulting to ``GENERIC_BEARER``.
        """
        if tag:
            try:
                explicit = cls(str(tag).lower())
            except ValueError:
                explicit = None
            if explicit is not None and explicit is not cls.GENERIC_BEARER:
                return explicit

        url = url or ""
        if _OPENAI_HOST in url:
            return cls.OPENAI_COMPATIBLE
        if _ANTHROPIC_HOST in url:
            return cls.ANTHROPIC
        if _GOOGLE_HOST in url:
            return cls.GOOGLE
        return cls.GENERIC_BEARER


class Role(str, enum.Enum):
    """Conversation roles understood by every adapter."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


# ---------------------------------------------------------------------------
# Configuration types
# ---------------------------------------------------------------------------

@dataclass
class ModelDescriptor:
    """A model name understood by the provider, plus its default flag."""

    name: str
    is_default: bool = False


@dataclass
class ProviderConfiguration:
    """One saved connection profile.

    ``model_name`` is the resolved model for this session (a separately
    selected model, or the default one).  It may be empty, in which case
    ``resolved_model`` falls back to the model list.
    """

    name: str = ""
    provider_type: ProviderType = ProviderType.GENERIC_BEARER
    api_url: str = ""
    api_key: str = ""
    models: list[ModelDescriptor] = field(default_factory=list)
    model_name: str = ""
    id: str = ""

    def default_model(self) -> ModelDescriptor | None:
        """Return the default model (first one when none is flagged)."""
        if not self.models:
            return None
        for model in self.models:
            if model.is_default:
                return model
        return self.models[0]

    @property
    def resolved_model(self) -> str:
        if self.model_name:
            return self.model_name
        default = self.default_model()
        return default.name if default else ""

    @property
    def display_name(self) -> str:
        return self.name or "Unnamed Configuration"


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConversationTurn:
    """A role-tagged conversation turn.

    ``role`` is kept as a plain string so that roles outside
    :class:`Role` reach the adapters, which map them to ``assistant``.
    """

    role: str
    content: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ConversationTurn:
        role = raw.get("role", Role.USER.value)
        if isinstance(role, Role):
            role = role.value
        return cls(role=str(role), content=str(raw.get("content") or ""))

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class WireRequest:
    """A provider-specific HTTP request, ready to dispatch."""

    url: str
    headers: dict[str, str]
    body: dict[str, Any]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class ErrorKind(str, enum.Enum):
    """Reason codes carried by failed results."""

    NOT_CONFIGURED = "not_configured"
    CONNECTION_REFUSED = "connection_refused"
    DNS_FAILURE = "dns_failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    NETWORK = "network"
    PROTOCOL_REJECTED = "protocol_rejected"
    MALFORMED_RESPONSE = "malformed_response"
    INVALID_RESPONSE = "invalid_response"
    STORAGE = "storage"


@dataclass(frozen=True)
class ChatResult:
    """Unified result of a chat call, independent of the provider."""

    success: bool
    text: str = ""
    model: str = ""
    provider: str = ""
    usage: dict[str, Any] | None = None
    error: str = ""
    error_kind: ErrorKind | None = None

    @classmethod
    def ok(
        cls,
        text: str,
        *,
        model: str = "",
        provider: str = "",
        usage: dict[str, Any] | None = None,
    ) -> ChatResult:
        return cls(success=True, text=text, model=model, provider=provider, usage=usage)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> ChatResult:
        return cls(success=False, error=message, error_kind=kind)

    @property
    def content(self) -> list[dict[str, str]]:
        """Content blocks in the ``[{"text": ...}]`` shape used by the UI."""
        if not self.success:
            return []
        return [{"text": self.text}]

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            return {
                "success": False,
                "error": self.error,
                "error_kind": self.error_kind.value if self.error_kind else None,
            }
        return {
            "success": True,
            "data": {
                "content": self.content,
                "metadata": {
                    "model": self.model,
                    "provider": self.provider,
                    "usage": self.usage,
                },
            },
        }


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a connection test or a configuration change."""

    success: bool
    message: str = ""
    error: str = ""
    error_kind: ErrorKind | None = None

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> OperationResult:
        return cls(success=False, error=message, error_kind=kind)
