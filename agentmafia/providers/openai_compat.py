"""
OpenAI-Compatible Providers
===========================

Chat Completions clients for the analysis-only providers (Kimi/Moonshot and
OpenAI). They can answer and call tools in principle, but the capability
registry keeps them out of tool-executing roles.
"""

from __future__ import annotations

import json
import logging
import os
from typing import List, Optional, Sequence

import httpx

from agentmafia.errors import ProviderError, ProviderUnavailable
from agentmafia.providers.base import ModelProvider, ProviderResponse, ToolCall, ToolSpec, Usage
from agentmafia.retry import TRANSIENT_HTTP_CODES

logger = logging.getLogger(__name__)

KIMI_BASE_URL = "https://api.moonshot.ai/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"

_FINISH_REASONS = {
    "tool_calls": "tool_use",
    "length": "max_tokens",
}


def convert_messages(system: str, messages: List[dict]) -> List[dict]:
    """Translate content-block history into Chat Completions messages."""
    result: List[dict] = []
    if system:
        result.append({"role": "system", "content": system})

    for msg in messages:
        content = msg["content"]
        if isinstance(content, str):
            result.append({"role": msg["role"], "content": content})
            continue

        if msg["role"] == "assistant":
            text = "\n".join(b["text"] for b in content if b.get("type") == "text")
            calls = [
                {
                    "id": b["id"],
                    "type": "function",
                    "function": {"name": b["name"], "arguments": json.dumps(b.get("input") or {})},
                }
                for b in content if b.get("type") == "tool_use"
            ]
            entry = {"role": "assistant", "content": text or None}
            if calls:
                entry["tool_calls"] = calls
            result.append(entry)
            continue

        parts = []
        for block in content:
            kind = block.get("type")
            if kind == "tool_result":
                result.append({
                    "role": "tool",
                    "tool_call_id": block["tool_use_id"],
                    "content": str(block.get("content", "")),
                })
            elif kind == "text":
                parts.append({"type": "text", "text": block["text"]})
            elif kind == "image":
                source = block["source"]
                parts.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{source['media_type']};base64,{source['data']}"},
                })
        if parts:
            result.append({"role": "user", "content": parts})
    return result


def parse_chat_response(data: dict) -> ProviderResponse:
    choice = (data.get("choices") or [{}])[0]
    message = choice.get("message") or {}
    calls = []
    for call in message.get("tool_calls") or []:
        raw_args = call.get("function", {}).get("arguments") or "{}"
        try:
            args = json.loads(raw_args)
        except json.JSONDecodeError:
            args = {"raw": raw_args}
        calls.append(ToolCall(id=call["id"], name=call["function"]["name"], input=args))
    usage = data.get("usage") or {}
    return ProviderResponse(
        text=message.get("content") or "",
        tool_calls=calls,
        stop_reason=_FINISH_REASONS.get(choice.get("finish_reason"), "end_turn"),
        usage=Usage(
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        ),
    )


class OpenAICompatibleProvider(ModelProvider):
    """Shared Chat Completions client."""

    provider_id = "openai"
    default_model = "gpt-4o"
    api_key_envs: Sequence[str] = ("OPENAI_API_KEY",)

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = OPENAI_BASE_URL,
        timeout: float = 180.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or next(
            (os.environ[name] for name in self.api_key_envs if os.environ.get(name)), None
        )
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def complete(
        self,
        model: str,
        system: str,
        messages: List[dict],
        tools: Optional[List[ToolSpec]] = None,
        max_tokens: int = 4096,
    ) -> ProviderResponse:
        if not self.api_key:
            raise ProviderUnavailable(
                f"{' or '.join(self.api_key_envs)} not configured", provider=self.provider_id
            )

        body = {
            "model": model or self.default_model,
            "messages": convert_messages(system, messages),
            "max_tokens": max_tokens,
        }
        if tools:
            body["tools"] = [tool.to_openai() for tool in tools]
            body["tool_choice"] = "auto"

        try:
            resp = await self._client.post(
                "/chat/completions",
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.ConnectError as exc:
            raise ProviderUnavailable(f"Cannot reach {self.provider_id} API: {exc}", provider=self.provider_id, transient=True) from exc
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{self.provider_id} request timed out: {exc}", provider=self.provider_id, transient=True) from exc

        if resp.status_code != 200:
            raise ProviderError(
                f"{self.provider_id} API error: {resp.status_code} - {resp.text[:500]}",
                provider=self.provider_id,
                status_code=resp.status_code,
                transient=resp.status_code in TRANSIENT_HTTP_CODES,
            )
        return parse_chat_response(resp.json())

    async def aclose(self) -> None:
        await self._client.aclose()


class KimiProvider(OpenAICompatibleProvider):
    """Kimi (Moonshot) via its OpenAI-compatible endpoint."""

    provider_id = "kimi"
    default_model = "kimi-2.5-latest"
    api_key_envs = ("KIMI_API_KEY", "MOONSHOT_API_KEY")

    def __init__(self, api_key: Optional[str] = None, base_url: str = KIMI_BASE_URL, **kwargs):
        super().__init__(api_key=api_key, base_url=base_url, **kwargs)


class OpenAIProvider(OpenAICompatibleProvider):
    provider_id = "openai"
