"""Pydantic DTOs for chat requests and responses.

These models define the data contract between the proxy core and the
front door that speaks the Anthropic Messages protocol.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class BackendKind(StrEnum):
    CLOUD = "cloud"
    CASCADE = "cascade"


class StopReason(StrEnum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"


class Message(BaseModel):
    """A single chat message. Content is plain text or typed blocks."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant", "system"]
    content: str | list[dict[str, Any]]


class ToolDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    """Client chat request. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    model: str
    messages: tuple[Message, ...]
    tools: tuple[ToolDefinition, ...] = ()
    max_tokens: int | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ChatRequest:
        """Build from an Anthropic Messages request body.

        A top-level ``system`` prompt becomes a leading system message.
        """
        messages: list[dict[str, Any]] = list(payload.get("messages") or [])
        system = payload.get("system")
        if isinstance(system, list):
            system = "\n".join(
                b.get("text", "") for b in system if isinstance(b, dict) and b.get("type") == "text"
            )
        if system:
            messages.insert(0, {"role": "system", "content": system})
        return cls(
            model=payload["model"],
            messages=tuple(Message(**m) for m in messages),
            tools=tuple(ToolDefinition(**t) for t in payload.get("tools") or []),
            max_tokens=payload.get("max_tokens"),
        )


class ContentBlock(BaseModel):
    """Response content: text or a complete tool invocation."""

    type: Literal["text", "tool_use", "tool_result"]
    text: str | None = None
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None

    def to_wire(self) -> dict[str, Any]:
        if self.type == "tool_use":
            return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input or {}}
        return {"type": self.type, "text": self.text or ""}


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ChatResponse(BaseModel):
    """Aggregated (non-streaming) chat result."""

    content_blocks: list[ContentBlock]
    stop_reason: StopReason
    usage: Usage | None = None

    def to_message(self, model: str, message_id: str) -> dict[str, Any]:
        """Render as an Anthropic ``message`` object."""
        usage = self.usage or Usage()
        return {
            "id": message_id,
            "type": "message",
            "role": "assistant",
            "model": model,
            "content": [b.to_wire() for b in self.content_blocks],
            "stop_reason": self.stop_reason.value,
            "stop_sequence": None,
            "usage": usage.model_dump(),
        }
