"""
Tests for Model Providers
=========================

Tests for the Anthropic and OpenAI-compatible adapters against a mocked
HTTPX transport, and for provider selection.
"""

import json

import httpx
import pytest

from fakes import ScriptedProvider

from agentmafia.errors import ProviderError, ProviderUnavailable, ValidationError
from agentmafia.providers import (
    AnthropicProvider,
    KimiProvider,
    ProviderRegistry,
    ToolSpec,
    detect_provider_from_model,
)
from agentmafia.providers.anthropic import parse_anthropic_response
from agentmafia.providers.openai_compat import convert_messages, parse_chat_response

ECHO_TOOL = ToolSpec("submit_result", "Submit", {"type": "object", "properties": {}})


def mock_transport(status, body, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json=body)
    return httpx.MockTransport(handler)


# =============================================================================
# Anthropic
# =============================================================================

class TestAnthropicProvider:
    """Tests for the Messages API adapter."""

    def test_parse_response(self):
        """Test text and tool_use blocks are split out."""
        response = parse_anthropic_response({
            "content": [
                {"type": "text", "text": "Handing this off."},
                {"type": "tool_use", "id": "tu_1", "name": "delegate_task", "input": {"task": "x"}},
            ],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": 12, "output_tokens": 7},
        })
        assert response.text == "Handing this off."
        assert response.tool_calls[0].name == "delegate_task"
        assert response.stop_reason == "tool_use"
        assert response.usage.output_tokens == 7
        assert response.content_blocks()[1]["type"] == "tool_use"

    @pytest.mark.asyncio
    async def test_complete(self):
        """Test the request payload and headers."""
        seen = []
        provider = AnthropicProvider(
            api_key="sk-test",
            transport=mock_transport(200, {"content": [{"type": "text", "text": "hi"}]}, seen),
        )
        response = await provider.complete("claude-x", "You are Tony", [{"role": "user", "content": "hey"}], [ECHO_TOOL])
        await provider.aclose()

        assert response.text == "hi"
        request = seen[0]
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "sk-test"
        payload = json.loads(request.content)
        assert payload["system"] == "You are Tony"
        assert payload["tools"][0]["name"] == "submit_result"

    @pytest.mark.asyncio
    async def test_error_status(self):
        """Test API errors carry the status and transient flag."""
        provider = AnthropicProvider(
            api_key="sk-test",
            transport=mock_transport(529, {"error": {"message": "Overloaded"}}),
        )
        with pytest.raises(ProviderError) as exc:
            await provider.complete("claude-x", "", [{"role": "user", "content": "hey"}])
        await provider.aclose()
        assert exc.value.status_code == 529
        assert "Overloaded" in str(exc.value)

    @pytest.mark.asyncio
    async def test_missing_key(self, monkeypatch):
        """Test a missing key is reported as unavailable."""
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        provider = AnthropicProvider()
        assert not provider.is_configured()
        with pytest.raises(ProviderUnavailable):
            await provider.complete("claude-x", "", [])
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_unreachable(self):
        """Test a connection failure is ProviderUnavailable."""
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = AnthropicProvider(api_key="sk-test", transport=httpx.MockTransport(refuse))
        with pytest.raises(ProviderUnavailable):
            await provider.complete("claude-x", "", [{"role": "user", "content": "hey"}])
        await provider.aclose()


# =============================================================================
# OpenAI-compatible
# =============================================================================

class TestOpenAICompatible:
    """Tests for the Chat Completions adapters."""

    def test_convert_messages(self):
        """Test content blocks become chat messages."""
        messages = [
            {"role": "user", "content": [
                {"type": "text", "text": "Look at this"},
                {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"}},
            ]},
            {"role": "assistant", "content": [
                {"type": "tool_use", "id": "c1", "name": "ask_agent", "input": {"target": "a"}},
            ]},
            {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "c1", "content": "answer"},
            ]},
        ]
        converted = convert_messages("be brief", messages)
        assert converted[0] == {"role": "system", "content": "be brief"}
        assert converted[1]["content"][1]["image_url"]["url"] == "data:image/png;base64,AAAA"
        assert converted[2]["content"] is None
        assert json.loads(converted[2]["tool_calls"][0]["function"]["arguments"]) == {"target": "a"}
        assert converted[3] == {"role": "tool", "tool_call_id": "c1", "content": "answer"}

    def test_parse_chat_response(self):
        """Test tool calls and finish reasons are mapped."""
        response = parse_chat_response({
            "choices": [{
                "message": {
                    "content": None,
                    "tool_calls": [
                        {"id": "c1", "function": {"name": "submit_result", "arguments": '{"result": "ok"}'}},
                        {"id": "c2", "function": {"name": "broken", "arguments": "{not json"}},
                    ],
                },
                "finish_reason": "tool_calls",
            }],
            "usage": {"prompt_tokens": 3, "completion_tokens": 4},
        })
        assert response.text == ""
        assert response.stop_reason == "tool_use"
        assert response.tool_calls[0].input == {"result": "ok"}
        assert response.tool_calls[1].input == {"raw": "{not json"}
        assert response.usage.input_tokens == 3

    @pytest.mark.asyncio
    async def test_kimi_complete(self):
        """Test the Kimi client hits the chat endpoint with a bearer token."""
        seen = []
        body = {"choices": [{"message": {"content": "looks fine"}, "finish_reason": "stop"}]}
        provider = KimiProvider(api_key="kimi-test", transport=mock_transport(200, body, seen))
        response = await provider.complete("", "", [{"role": "user", "content": "review"}])
        await provider.aclose()
        assert response.text == "looks fine"
        assert seen[0].headers["authorization"] == "Bearer kimi-test"
        assert json.loads(seen[0].content)["model"] == "kimi-2.5-latest"

    @pytest.mark.asyncio
    async def test_kimi_error(self):
        """Test non-200 responses raise ProviderError."""
        provider = KimiProvider(api_key="kimi-test", transport=mock_transport(401, {"error": "bad key"}))
        with pytest.raises(ProviderError) as exc:
            await provider.complete("kimi-x", "", [{"role": "user", "content": "review"}])
        await provider.aclose()
        assert not exc.value.transient


# =============================================================================
# Registry
# =============================================================================

class TestProviderRegistry:
    """Tests for provider selection."""

    @pytest.mark.parametrize("model,expected", [
        ("claude-sonnet-4-5", "anthropic"),
        ("kimi-2.5-latest", "kimi"),
        ("moonshot-v1-8k", "kimi"),
        ("gpt-4o", "openai"),
        ("something-else", "anthropic"),
    ])
    def test_detect_provider(self, model, expected):
        """Test model-name sniffing."""
        assert detect_provider_from_model(model) == expected

    def test_pinned_provider(self):
        """Test injected providers are returned as is."""
        fake = ScriptedProvider()
        registry = ProviderRegistry({"anthropic": fake})
        assert registry.get("anthropic") is fake
        assert registry.get(None, "claude-x") is fake

    @pytest.mark.asyncio
    async def test_lazy_construction(self):
        """Test unpinned providers are built once on first use."""
        registry = ProviderRegistry()
        kimi = registry.get("kimi")
        assert isinstance(kimi, KimiProvider)
        assert registry.get("kimi") is kimi
        await registry.aclose()

    def test_unknown_provider(self):
        """Test unknown ids are refused."""
        with pytest.raises(ValidationError):
            ProviderRegistry().get("mystery")
