"""OpenAI-compatible streaming transport using the openai SDK."""

from __future__ import annotations

import logging
from typing import Any

from openai import AsyncOpenAI

from app.ai.providers.base import ChatStep, Message, ToolCall
from app.config import Settings

logger = logging.getLogger(__name__)


class OpenAIChatTransport:
  """Chat transport for any OpenAI-compatible endpoint."""

  def __init__(self, model: str, *, api_key: str | None, base_url: str | None = None, client: AsyncOpenAI | None = None) -> None:
    self.model: str = model
    if client is None:
      if not api_key:
        raise ValueError("SUBSCRIBE_LLM_API_KEY environment variable is required")
      client = AsyncOpenAI(api_key=api_key, base_url=base_url)
    self._client = client

  @classmethod
  def from_settings(cls, settings: Settings) -> OpenAIChatTransport:
    return cls(settings.llm_model, api_key=settings.llm_api_key, base_url=settings.llm_base_url)

  async def step(self, messages: list[Message], tools: list[dict[str, Any]]) -> ChatStep:
    """Stream one turn, accumulating text and tool-call deltas by index."""
    request: dict[str, Any] = {"model": self.model, "messages": messages, "stream": True, "stream_options": {"include_usage": True}}
    if tools:
      request["tools"] = tools
      request["tool_choice"] = "auto"

    stream = await self._client.chat.completions.create(**request)

    text_parts: list[str] = []
    pending: dict[int, dict[str, str]] = {}
    usage: dict[str, int] | None = None

    async for chunk in stream:
      # The final usage chunk arrives with an empty choices list.
      if chunk.usage is not None:
        usage = {"prompt_tokens": chunk.usage.prompt_tokens, "completion_tokens": chunk.usage.completion_tokens, "total_tokens": chunk.usage.total_tokens}
      if not chunk.choices:
        continue

      delta = chunk.choices[0].delta
      if delta is None:
        continue
      if delta.content:
        text_parts.append(delta.content)
      for tool_delta in delta.tool_calls or []:
        entry = pending.setdefault(tool_delta.index or 0, {"id": "", "name": "", "arguments": ""})
        if tool_delta.id:
          entry["id"] = tool_delta.id
        if tool_delta.function is not None:
          if tool_delta.function.name:
            entry["name"] += tool_delta.function.name
          if tool_delta.function.arguments:
            entry["arguments"] += tool_delta.function.arguments

    tool_calls = [ToolCall(id=entry["id"] or f"call_{index}", name=entry["name"], arguments=entry["arguments"]) for index, entry in sorted(pending.items())]
    text = "".join(text_parts)
    logger.debug("Model %s returned %d chars and %d tool calls", self.model, len(text), len(tool_calls))
    return ChatStep(text=text, tool_calls=tool_calls, usage=usage)
