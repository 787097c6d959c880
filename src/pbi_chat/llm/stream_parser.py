"""Incremental parsing of streamed chat responses.

Handles both Server-Sent-Events framing (``data: {...}`` lines terminated by
``data: [DONE]``) and unframed newline-delimited JSON (Ollama).  Payload
shapes are interpreted by the provider adapter selected for the call.
"""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, AsyncIterable, Awaitable, Callable, Union

from .adapters import ProviderAdapter

_logger = logging.getLogger(__name__)

_SSE_PREFIX = "data: "
_SSE_DONE = "[DONE]"

# Receives the cumulative text so far; may be sync or async.
ProgressCallback = Callable[[str], Union[None, Awaitable[None]]]


class StreamNormalizer:
    """Accumulate text deltas from a streamed response.

    Each non-empty delta is appended to the running text and ``on_update``
    is invoked with the cumulative string, never with the bare fragment.
    Lines that fail to parse are skipped without aborting the stream.
    """

    def __init__(self, adapter: ProviderAdapter, on_update: ProgressCallback | None = None) -> None:
        self._adapter = adapter
        self._on_update = on_update
        self._text = ""
        self._usage: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        return self._text

    def parse_line(self, line: str) -> str:
        """Return the text delta carried by a single line (may be empty)."""
        line = line.strip()
        if not line:
            return ""

        if line.startswith(_SSE_PREFIX.rstrip()):
            data = line[len(_SSE_PREFIX.rstrip()):].strip()
            if not data or data == _SSE_DONE:
                return ""
            payload = self._load(data)
            if payload is None:
                return ""
            self._capture_usage(payload)
            return self._adapter.stream_delta(payload)

        if line.startswith("{"):
            payload = self._load(line)
            if payload is None:
                return ""
            self._capture_usage(payload)
            return self._adapter.raw_delta(payload)

        return ""

    async def feed_line(self, line: str) -> None:
        delta = self.parse_line(line)
        if not delta:
            return
        self._text += delta
        if self._on_update is not None:
            result = self._on_update(self._text)
            if inspect.isawaitable(result):
                await result

    async def consume(self, lines: AsyncIterable[str]) -> tuple[str, dict[str, Any] | None]:
        """Feed every line of *lines* and return ``finish()``."""
        async for line in lines:
            await self.feed_line(line)
        return self.finish()

    def finish(self) -> tuple[str, dict[str, Any] | None]:
        return self._text, self._usage

    # ------------------------------------------------------------------

    def _capture_usage(self, payload: Any) -> None:
        usage = self._adapter.stream_usage(payload)
        if usage:
            self._usage = usage

    @staticmethod
    def _load(data: str) -> Any:
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            _logger.debug("Skipping malformed stream line: %.120s", data)
            return None
