"""
Anthropic Provider
==================

Anthropic Messages API over HTTPX. The only tool-executing provider.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional

import httpx

from agentmafia.errors import ProviderError, ProviderUnavailable
from agentmafia.providers.base import ModelProvider, ProviderResponse, ToolCall, ToolSpec, Usage
from agentmafia.retry import TRANSIENT_HTTP_CODES

logger = logging.getLogger(__name__)

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(ModelProvider):
    """Minimal Anthropic Messages API client using HTTPX."""

    provider_id = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = ANTHROPIC_BASE_URL,
        timeout: float = 180.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
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
            raise ProviderUnavailable("ANTHROPIC_API_KEY not set", provider=self.provider_id)

        payload = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [tool.to_anthropic() for tool in tools]

        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

        try:
            resp = await self._client.post("/messages", json=payload, headers=headers)
        except httpx.ConnectError as exc:
            raise ProviderUnavailable(f"Cannot reach Anthropic API: {exc}", provider=self.provider_id, transient=True) from exc
        except httpx.TimeoutException as exc:
            raise ProviderError(f"Anthropic request timed out: {exc}", provider=self.provider_id, transient=True) from exc

        if resp.status_code != 200:
            try:
                error_msg = resp.json().get("error", {}).get("message", resp.text[:500])
            except ValueError:
                error_msg = resp.text[:500]
            raise ProviderError(
                f"Anthropic API error ({resp.status_code}): {error_msg}",
                provider=self.provider_id,
                status_code=resp.status_code,
                transient=resp.status_code in TRANSIENT_HTTP_CODES,
            )

        return parse_anthropic_response(resp.json())

    async def aclose(self) -> None:
        await self._client.aclose()


def parse_anthropic_response(data: dict) -> ProviderResponse:
    """Convert a Messages API body into a ProviderResponse."""
    texts = []
    calls = []
    for block in data.get("content", []):
        if block.get("type") == "text":
            texts.append(block.get("text", ""))
        elif block.get("type") == "tool_use":
            calls.append(ToolCall(id=block["id"], name=block["name"], input=block.get("input") or {}))
    usage = data.get("usage") or {}
    return ProviderResponse(
        text="\n".join(t for t in texts if t),
        tool_calls=calls,
        stop_reason=data.get("stop_reason") or "end_turn",
        usage=Usage(
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
        ),
    )
