"""Error classification for chat transport failures.

Maps httpx exceptions and rejected responses onto :class:`ErrorKind` reason
codes plus a human-readable message.  Ollama gets dedicated guidance since
a local server that is down, slow or unresolvable is the common failure.
"""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import urlsplit

import httpx

from pbi_chat.types import ErrorKind, ProviderType

NOT_CONFIGURED_MESSAGE = (
    "API client not configured. Please set up your API configuration in settings."
)
INVALID_URL_MESSAGE = "Invalid API URL"

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
    "name resolution",
    "enotfound",
)

_KIND_LABELS = {
    ErrorKind.CONNECTION_REFUSED: "Connection failed",
    ErrorKind.DNS_FAILURE: "Host could not be resolved",
    ErrorKind.TIMEOUT: "Request timed out",
    ErrorKind.CANCELLED: "Request cancelled",
    ErrorKind.NETWORK: "Network error",
}


class RequestAborted(Exception):
    """A call was stopped by its deadline or its abort event."""

    def __init__(self, kind: ErrorKind, timeout: float | None = None) -> None:
        self.kind = kind
        self.timeout = timeout
        if kind is ErrorKind.CANCELLED or timeout is None:
            super().__init__(f"request {kind.value}")
        else:
            super().__init__(f"request timed out after {timeout:g} seconds")


def error_message_from_body(body: bytes | str, status_code: int, reason: str) -> str:
    """Best available message for a rejected response.

    Prefers ``error.message``, then a string ``error``, then ``message``,
    falling back to ``HTTP <status>: <reason>``.
    """
    fallback = f"HTTP {status_code}: {reason}" if reason else f"HTTP {status_code}"
    try:
        data: Any = json.loads(body)
    except (ValueError, TypeError):
        return fallback
    if not isinstance(data, dict):
        return fallback

    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    if data.get("message"):
        return str(data["message"])
    return fallback


def classify_transport_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, RequestAborted):
        return exc.kind
    if isinstance(exc, httpx.TimeoutException):
        return ErrorKind.TIMEOUT
    if isinstance(exc, httpx.ConnectError):
        text = str(exc).lower()
        if any(marker in text for marker in _DNS_MARKERS):
            return ErrorKind.DNS_FAILURE
        return ErrorKind.CONNECTION_REFUSED
    return ErrorKind.NETWORK


def _ollama_guidance(kind: ErrorKind, url: str, timeout: float | None) -> str | None:
    if kind is ErrorKind.CONNECTION_REFUSED:
        return (
            "Cannot connect to Ollama. Make sure Ollama is running and try: "
            "curl http://localhost:11434/api/generate"
        )
    if kind is ErrorKind.TIMEOUT:
        seconds = f"{timeout:g} seconds" if timeout else "the request deadline"
        return (
            f"Ollama request timed out after {seconds}. Your model might be "
            "too large or slow. Try a smaller/faster model."
        )
    if kind is ErrorKind.DNS_FAILURE:
        host = urlsplit(url).hostname or "localhost"
        return f"Cannot resolve {host}. Make sure Ollama is running on localhost:11434"
    return None


def describe_transport_error(
    exc: BaseException,
    provider_type: ProviderType,
    url: str,
    timeout: float | None = None,
) -> tuple[ErrorKind, str]:
    """Return ``(kind, message)`` for a failed dispatch or read."""
    kind = classify_transport_error(exc)
    if provider_type is ProviderType.OLLAMA:
        guidance = _ollama_guidance(kind, url, timeout)
        if guidance:
            return kind, guidance
    detail = str(exc) or exc.__class__.__name__
    return kind, f"{_KIND_LABELS.get(kind, 'Network error')}: {detail}"


class MalformedResponse(Exception):
    """A successful response whose body is not a JSON object."""
