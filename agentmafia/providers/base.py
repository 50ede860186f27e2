"""
Model Provider Interface
========================

Provider-neutral request/response types and the ModelProvider ABC.

Conversation history is kept in content-block form: a message is
``{"role": "user" | "assistant", "content": str | list[block]}`` where a
block is one of ``text``, ``image``, ``tool_use`` or ``tool_result``.
Adapters translate this to their wire format.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ToolSpec:
    """A tool an agent may call."""
    name: str
    description: str
    input_schema: Dict[str, Any]

    def to_anthropic(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass
class ToolCall:
    """One structured tool invocation returned by the model."""
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ImageInput:
    """A base64 image attached to a task."""
    media_type: str
    data: str

    def to_block(self) -> dict:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": self.media_type, "data": self.data},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ImageInput":
        return cls(media_type=data.get("media_type") or data.get("mediaType") or "image/png", data=data["data"])


@dataclass
class ProviderResponse:
    """What one model turn produced."""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    stop_reason: str = "end_turn"  # end_turn, tool_use, max_tokens
    usage: Usage = field(default_factory=Usage)

    def content_blocks(self) -> List[dict]:
        """Assistant content for the next request's history."""
        blocks: List[dict] = []
        if self.text:
            blocks.append({"type": "text", "text": self.text})
        for call in self.tool_calls:
            blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.input})
        return blocks


class ModelProvider(ABC):
    """
    Abstract interface for all model providers.
    """

    provider_id: str = "unknown"

    @abstractmethod
    async def complete(
        self,
        model: str,
        system: str,
        messages: List[dict],
        tools: Optional[List[ToolSpec]] = None,
        max_tokens: int = 4096,
    ) -> ProviderResponse:
        ...

    def is_configured(self) -> bool:
        return True

    async def aclose(self) -> None:
        """Release network resources."""
