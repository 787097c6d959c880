"""Tests for StreamNormalizer (SSE and NDJSON line parsing)."""

from __future__ import annotations

import json

from pbi_chat.llm.adapters import AnthropicAdapter, OllamaAdapter, OpenAIAdapter
from pbi_chat.llm.stream_parser import StreamNormalizer


def _sse(payload: dict) -> str:
    return "data: " + json.dumps(payload)


def _openai_chunk(text: str) -> str:
    return _sse({"choices": [{"delta": {"content": text}}]})


async def _lines(items):
    for item in items:
        yield item


class TestStreamNormalizer:
    async def test_cumulative_updates(self):
        updates: list[str] = []
        normalizer = StreamNormalizer(OpenAIAdapter(), updates.append)
        text, usage = await normalizer.consume(
            _lines([_openai_chunk("a"), "", _openai_chunk("b"), _openai_chunk("c"), "data: [DONE]"])
        )
        assert updates == ["a", "ab", "abc"]
        assert text == "abc"
        assert usage is None

    async def test_malformed_line_skipped(self):
        updates: list[str] = []
        normalizer = StreamNormalizer(OpenAIAdapter(), updates.append)
        text, _ = await normalizer.consume(
            _lines([_openai_chunk("a"), "data: {not json", _openai_chunk("b")])
        )
        assert updates == ["a", "ab"]
        assert text == "ab"

    async def test_async_callback_awaited(self):
        seen: list[str] = []

        async def on_update(text: str) -> None:
            seen.append(text)

        normalizer = StreamNormalizer(OpenAIAdapter(), on_update)
        await normalizer.consume(_lines([_openai_chunk("x"), _openai_chunk("y")]))
        assert seen == ["x", "xy"]

    async def test_empty_deltas_do_not_notify(self):
        updates: list[str] = []
        normalizer = StreamNormalizer(OpenAIAdapter(), updates.append)
        await normalizer.consume(_lines([_sse({"choices": [{"delta": {"role": "assistant"}}]})]))
        assert updates == []

    async def test_anthropic_events(self):
        updates: list[str] = []
        normalizer = StreamNormalizer(AnthropicAdapter(), updates.append)
        lines = [
            "event: message_start",
            _sse({"type": "message_start", "message": {"id": "m"}}),
            "event: content_block_delta",
            _sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}}),
            _sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": " there"}}),
            _sse({"type": "message_stop"}),
        ]
        text, _ = await normalizer.consume(_lines(lines))
        assert updates == ["Hi", "Hi there"]
        assert text == "Hi there"

    async def test_ollama_ndjson_with_usage(self):
        updates: list[str] = []
        normalizer = StreamNormalizer(OllamaAdapter(), updates.append)
        lines = [
            json.dumps({"response": "Hel", "done": False}),
            json.dumps({"response": "lo", "done": False}),
            json.dumps({"response": "", "done": True, "prompt_eval_count": 5, "eval_count": 2}),
        ]
        text, usage = await normalizer.consume(_lines(lines))
        assert updates == ["Hel", "Hello"]
        assert text == "Hello"
        assert usage == {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}

    async def test_openai_usage_chunk(self):
        normalizer = StreamNormalizer(OpenAIAdapter())
        usage_chunk = _sse({"choices": [], "usage": {"total_tokens": 12}})
        text, usage = await normalizer.consume(_lines([_openai_chunk("ok"), usage_chunk]))
        assert text == "ok"
        assert usage == {"total_tokens": 12}

    def test_parse_line_ignores_other_lines(self):
        normalizer = StreamNormalizer(OpenAIAdapter())
        assert normalizer.parse_line(": keep-alive") == ""
        assert normalizer.parse_line("   ") == ""
        assert normalizer.parse_line("data: [DONE]") == ""
        assert normalizer.parse_line('{"text": "raw"}') == "raw"
