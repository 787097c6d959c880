"""Tests for provider request adapters and response normalization."""

from __future__ import annotations

import pytest

from pbi_chat.llm.adapters import (
    AnthropicAdapter,
    GenericBearerAdapter,
    GoogleAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    adapter_for,
    fallback_text,
    rewrite_localhost,
)
from pbi_chat.types import ConversationTurn, ModelDescriptor, ProviderConfiguration, ProviderType


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def _config(provider_type: ProviderType, url: str, key: str = "secret") -> ProviderConfiguration:
    return ProviderConfiguration(
        id="cfg-1",
        name="Test",
        provider_type=provider_type,
        api_url=url,
        api_key=key,
        models=[ModelDescriptor("model-x", is_default=True)],
    )


def _turns(*pairs: tuple[str, str]) -> list[ConversationTurn]:
    return [ConversationTurn(role, content) for role, content in pairs]


CONVERSATION = _turns(("system", "S"), ("user", "U"), ("assistant", "A"), ("user", "U2"))


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------

class TestOllamaRequest:
    def test_prompt_concatenation(self):
        prompt = OllamaAdapter.build_prompt(_turns(("system", "S"), ("user", "U")))
        assert prompt == "System: S\n\nUser: U\n\nAssistant:"

    def test_unknown_roles_skipped(self):
        prompt = OllamaAdapter.build_prompt(_turns(("tool", "T"), ("user", "U")))
        assert prompt == "User: U\n\nAssistant:"

    def test_request_shape(self):
        cfg = _config(ProviderType.OLLAMA, "http://localhost:11434/api/generate", key="")
        req = adapter_for(ProviderType.OLLAMA).build_request(cfg, CONVERSATION, stream=True)
        assert req.url == "http://127.0.0.1:11434/api/generate"
        assert req.headers == {"Content-Type": "application/json"}
        assert set(req.body) == {"model", "prompt", "stream"}
        assert req.body["model"] == "model-x"
        assert req.body["stream"] is True

    def test_remote_host_unchanged(self):
        cfg = _config(ProviderType.OLLAMA, "http://gpu-box:11434/api/generate")
        req = OllamaAdapter().build_request(cfg, CONVERSATION)
        assert req.url == "http://gpu-box:11434/api/generate"
        assert req.body["stream"] is False


class TestOpenAIRequest:
    def test_request_shape(self):
        cfg = _config(ProviderType.OPENAI_COMPATIBLE, "https://api.openai.com/v1/chat/completions")
        req = OpenAIAdapter().build_request(cfg, CONVERSATION, stream=False)
        assert req.headers["Authorization"] == "Bearer secret"
        assert req.body["max_completion_tokens"] == 4096
        assert "max_tokens" not in req.body
        assert req.body["stream"] is False
        assert req.body["messages"][0] == {"role": "system", "content": "S"}
        assert [m["role"] for m in req.body["messages"]] == ["system", "user", "assistant", "user"]


class TestAnthropicRequest:
    def test_system_extracted(self):
        cfg = _config(ProviderType.ANTHROPIC, "https://api.anthropic.com/v1/messages")
        req = AnthropicAdapter().build_request(cfg, _turns(("system", "S"), ("user", "U")))
        assert req.body["system"] == "S"
        assert req.body["messages"] == [{"role": "user", "content": "U"}]
        assert req.body["max_tokens"] == 4096
        assert req.headers["x-api-key"] == "secret"
        assert req.headers["anthropic-version"] == "2023-06-01"
        assert "Authorization" not in req.headers

    def test_only_first_system_kept_all_removed(self):
        cfg = _config(ProviderType.ANTHROPIC, "https://api.anthropic.com/v1/messages")
        turns = _turns(("system", "S1"), ("user", "U"), ("system", "S2"))
        req = AnthropicAdapter().build_request(cfg, turns)
        assert req.body["system"] == "S1"
        assert req.body["messages"] == [{"role": "user", "content": "U"}]

    def test_no_system(self):
        cfg = _config(ProviderType.ANTHROPIC, "https://api.anthropic.com/v1/messages")
        req = AnthropicAdapter().build_request(cfg, _turns(("user", "U")))
        assert "system" not in req.body


class TestGoogleRequest:
    def test_role_remapping(self):
        cfg = _config(ProviderType.GOOGLE, "https://generativelanguage.googleapis.com/v1beta/models/x")
        req = GoogleAdapter().build_request(cfg, _turns(("system", "S"), ("assistant", "A")))
        assert [c["role"] for c in req.body["contents"]] == ["user", "model"]
        assert req.body["contents"][0]["parts"] == [{"text": "S"}]
        assert req.body["generationConfig"] == {"maxOutputTokens": 4096}
        assert "messages" not in req.body
        assert req.headers["Authorization"] == "Bearer secret"


class TestGenericRequest:
    def test_bearer_only_with_key(self):
        cfg = _config(ProviderType.GENERIC_BEARER, "http://localhost:1234/v1/chat/completions", key="")
        req = GenericBearerAdapter().build_request(cfg, CONVERSATION)
        assert "Authorization" not in req.headers
        assert req.body["max_tokens"] == 4096
        assert req.url == "http://localhost:1234/v1/chat/completions"

    def test_bearer_with_key(self):
        cfg = _config(ProviderType.GENERIC_BEARER, "https://llm.example.com/v1/chat")
        req = GenericBearerAdapter().build_request(cfg, CONVERSATION, max_tokens=5)
        assert req.headers["Authorization"] == "Bearer secret"
        assert req.body["max_tokens"] == 5

    def test_unknown_role_becomes_assistant(self):
        cfg = _config(ProviderType.GENERIC_BEARER, "https://llm.example.com/v1/chat")
        req = GenericBearerAdapter().build_request(cfg, _turns(("tool", "T")))
        assert req.body["messages"] == [{"role": "assistant", "content": "T"}]


@pytest.mark.parametrize("provider_type", list(ProviderType))
def test_build_request_is_pure(provider_type: ProviderType):
    cfg = _config(provider_type, "https://api.example.com/v1")
    adapter = adapter_for(provider_type)
    first = adapter.build_request(cfg, CONVERSATION, stream=True)
    second = adapter.build_request(cfg, CONVERSATION, stream=True)
    assert first == second


class TestRewriteLocalhost:
    def test_rewrites_host_keeps_rest(self):
        assert (
            rewrite_localhost("http://localhost:11434/api/generate?x=1")
            == "http://127.0.0.1:11434/api/generate?x=1"
        )

    def test_without_port(self):
        assert rewrite_localhost("http://localhost/api") == "http://127.0.0.1/api"

    @pytest.mark.parametrize(
        "url", ["http://localhost:abc/api/generate", "http://localhost:99999/api/generate", "http://[::1/x"],
    )
    def test_unparsable_url_returned_unchanged(self, url):
        assert rewrite_localhost(url) == url

    def test_other_hosts_untouched(self):
        assert rewrite_localhost("http://localhost.example:1/x") == "http://localhost.example:1/x"


# ---------------------------------------------------------------------------
# Response normalization
# ---------------------------------------------------------------------------

class TestParseResponse:
    def test_openai(self):
        data = {"choices": [{"message": {"content": "X"}}], "usage": {"total_tokens": 7}}
        assert OpenAIAdapter().parse_response(data) == ("X", {"total_tokens": 7})

    def test_openai_null_content(self):
        data = {"choices": [{"message": {"content": None}}]}
        assert OpenAIAdapter().parse_response(data) == ("", None)

    def test_ollama_usage(self):
        data = {"response": "hi", "prompt_eval_count": 3, "eval_count": 4}
        text, usage = OllamaAdapter().parse_response(data)
        assert text == "hi"
        assert usage == {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}

    def test_ollama_missing_counts(self):
        _, usage = OllamaAdapter().parse_response({"response": "hi"})
        assert usage == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}

    def test_anthropic_blocks(self):
        data = {
            "content": [{"type": "text", "text": "A"}, {"type": "tool_use"}, {"text": "B"}],
            "usage": {"input_tokens": 1, "output_tokens": 2},
        }
        assert AnthropicAdapter().parse_response(data) == (
            "AB",
            {"input_tokens": 1, "output_tokens": 2},
        )

    def test_google(self):
        data = {
            "candidates": [{"content": {"parts": [{"text": "G"}]}}],
            "usageMetadata": {"totalTokenCount": 9},
        }
        assert GoogleAdapter().parse_response(data) == ("G", {"totalTokenCount": 9})

    def test_unknown_shape_fallbacks(self):
        assert GenericBearerAdapter().parse_response({"text": "T"}) == ("T", None)
        assert GenericBearerAdapter().parse_response({"message": {"content": "M"}}) == ("M", None)
        assert GenericBearerAdapter().parse_response({"message": "plain"}) == ("plain", None)
        text, _ = GenericBearerAdapter().parse_response({"weird": 1})
        assert text == '{"weird": 1}'

    def test_fallback_text_non_dict(self):
        assert fallback_text([1, 2]) == "[1, 2]"


# ---------------------------------------------------------------------------
# Stream deltas and compatibility retry
# ---------------------------------------------------------------------------

class TestStreamDeltas:
    def test_openai_delta(self):
        assert OpenAIAdapter().stream_delta({"choices": [{"delta": {"content": "x"}}]}) == "x"
        assert OpenAIAdapter().stream_delta({"choices": [{"delta": {}}]}) == ""

    def test_anthropic_delta(self):
        adapter = AnthropicAdapter()
        assert adapter.stream_delta({"type": "content_block_delta", "delta": {"text": "y"}}) == "y"
        assert adapter.stream_delta({"type": "message_start", "message": {}}) == ""

    def test_google_delta(self):
        payload = {"candidates": [{"content": {"parts": [{"text": "z"}]}}]}
        assert GoogleAdapter().stream_delta(payload) == "z"

    def test_ollama_raw_delta_prefers_response(self):
        assert OllamaAdapter().raw_delta({"response": "r", "done": False}) == "r"

    def test_raw_delta_text_or_content(self):
        assert GenericBearerAdapter().raw_delta({"text": "t"}) == "t"
        assert GenericBearerAdapter().raw_delta({"content": "c"}) == "c"
        assert GenericBearerAdapter().raw_delta({"content": [{"text": "no"}]}) == ""

    def test_ollama_stream_usage_on_done(self):
        adapter = OllamaAdapter()
        assert adapter.stream_usage({"response": "a", "done": False}) is None
        assert adapter.stream_usage({"done": True, "prompt_eval_count": 1, "eval_count": 2}) == {
            "prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3,
        }


class TestCompatRetryBody:
    def test_openai_swaps_token_field(self):
        body = {"model": "m", "messages": [], "stream": False, "max_completion_tokens": 4096}
        retry = OpenAIAdapter().compat_retry_body(body, "Unsupported parameter: 'max_completion_tokens'")
        assert retry == {"model": "m", "messages": [], "stream": False, "max_tokens": 4096}
        assert "max_completion_tokens" in body

    def test_openai_unrelated_error(self):
        body = {"max_completion_tokens": 4096}
        assert OpenAIAdapter().compat_retry_body(body, "Invalid API key") is None

    def test_openai_already_retried(self):
        assert OpenAIAdapter().compat_retry_body({"max_tokens": 4096}, "max_tokens bad") is None

    def test_other_providers_never_retry(self):
        body = {"max_completion_tokens": 4096}
        assert GenericBearerAdapter().compat_retry_body(body, "max_completion_tokens") is None
