"""Base interfaces for chat-with-tools transports."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

Message = dict[str, Any]


@dataclass(frozen=True)
class ToolCall:
  """One tool invocation requested by the model."""

  id: str
  name: str
  arguments: str

  def to_message(self) -> dict[str, Any]:
    return {"id": self.id, "type": "function", "function": {"name": self.name, "arguments": self.arguments}}


@dataclass(frozen=True)
class ChatStep:
  """Accumulated response of one streamed model turn."""

  text: str
  tool_calls: list[ToolCall] = field(default_factory=list)
  usage: dict[str, int] | None = None

  def assistant_message(self) -> Message:
    """Build the assistant turn to append to the conversation."""

    message: Message = {"role": "assistant", "content": self.text or None}
    if self.tool_calls:
      message["tool_calls"] = [call.to_message() for call in self.tool_calls]
    return message


class ChatTransport(Protocol):
  """Streamed chat-completion transport with tool calling."""

  model: str

  async def step(self, messages: list[Message], tools: list[dict[str, Any]]) -> ChatStep:
    """Run one model turn and return its text, tool calls and usage."""
