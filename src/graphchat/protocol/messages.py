"""Message definitions for the chat transcript.

Messages arrive from the run service in two wire shapes:
- LangChain form: {"type": "ai" | "human" | "tool", ...}, including chunk
  variants such as "AIMessageChunk"
- Role form: {"role": "assistant" | "user" | "tool", ...}

Both are normalised into a single Message model with a Role enum.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Author of a transcript message."""

    HUMAN = "human"
    ASSISTANT = "assistant"
    TOOL = "tool"


# Wire "type"/"role" values -> Role
_ROLE_ALIASES: dict[str, Role] = {
    "human": Role.HUMAN,
    "user": Role.HUMAN,
    "humanmessage": Role.HUMAN,
    "humanmessagechunk": Role.HUMAN,
    "ai": Role.ASSISTANT,
    "assistant": Role.ASSISTANT,
    "aimessage": Role.ASSISTANT,
    "aimessagechunk": Role.ASSISTANT,
    "tool": Role.TOOL,
    "toolmessage": Role.TOOL,
    "toolmessagechunk": Role.TOOL,
}

# Role -> LangChain wire "type"
_WIRE_TYPES: dict[Role, str] = {
    Role.HUMAN: "human",
    Role.ASSISTANT: "ai",
    Role.TOOL: "tool",
}


class ToolCall(BaseModel):
    """A tool invocation announced by an assistant message."""

    id: str | None = None
    name: str = ""
    args: dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """A single transcript entry.

    Identity:
    - `id`, when present, is stable across partial and complete deliveries
      of the same logical message
    - tool results without an id are keyed by (tool_call_id, name)
    """

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None
    id: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        """Check if this is an assistant message carrying tool calls."""
        return self.role == Role.ASSISTANT and len(self.tool_calls) > 0

    @property
    def is_final_text(self) -> bool:
        """Check if this is a tool-call-free assistant message."""
        return self.role == Role.ASSISTANT and not self.tool_calls

    @classmethod
    def human(cls, content: str, message_id: str | None = None) -> Message:
        """Create a human message."""
        return cls(role=Role.HUMAN, content=content, id=message_id)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Message | None:
        """Parse a message dict from the run service.

        Args:
            data: Message in LangChain or role form

        Returns:
            The parsed Message, or None if the role is not recognised
        """
        raw_role = data.get("type") or data.get("role") or ""
        role = _ROLE_ALIASES.get(str(raw_role).lower())
        if role is None:
            logger.debug(f"Skipping message with unknown role: {raw_role!r}")
            return None

        tool_calls = [
            ToolCall(
                id=call.get("id"),
                name=call.get("name") or "",
                args=call.get("args") if isinstance(call.get("args"), dict) else {},
            )
            for call in data.get("tool_calls") or []
            if isinstance(call, dict)
        ]

        return cls(
            role=role,
            content=flatten_content(data.get("content")),
            tool_calls=tool_calls if role == Role.ASSISTANT else [],
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            id=data.get("id"),
        )

    def to_wire(self) -> dict[str, Any]:
        """Serialize in LangChain form for the run service."""
        data: dict[str, Any] = {"type": _WIRE_TYPES[self.role], "content": self.content}
        if self.id:
            data["id"] = self.id
        if self.tool_calls:
            data["tool_calls"] = [call.model_dump() for call in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        return data


def flatten_content(content: Any) -> str:
    """Flatten message content into plain text.

    Content may be a string or a list of content blocks
    ({"type": "text", "text": ...}); non-text blocks are dropped.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return str(content)


def tool_result_key(message: Message) -> str:
    """Deduplication key for a tool result message."""
    return f"{message.tool_call_id}:{message.name}"


def tool_results_by_call_id(transcript: list[Message]) -> dict[str, Message]:
    """Map tool_call_id to its tool result, for pairing tool cards with results."""
    return {
        message.tool_call_id: message
        for message in transcript
        if message.role == Role.TOOL and message.tool_call_id
    }
