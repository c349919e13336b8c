"""Bounded reasoning and tool-use loop shared by every agent."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from app.ai.providers.base import ChatStep, ChatTransport, Message, ToolCall
from app.ai.tools.registry import Toolset
from app.jobs.cancellation import CancellationToken
from app.jobs.errors import BuildCancelledError, ToolExecutionError
from app.telemetry.llm_calls import LlmCallStore

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 120_000

ToolObserver = Callable[[ToolCall], Awaitable[None]]


class StopReason(str, Enum):
  NATURAL = "natural"
  ITERATION_CAP = "iteration_cap"


@dataclass
class AgentLoopResult:
  """Outcome of one loop run."""

  final_text: str
  texts: list[str]
  iterations: int
  stop_reason: StopReason
  messages: list[Message] = field(default_factory=list)

  @property
  def hit_cap(self) -> bool:
    return self.stop_reason is StopReason.ITERATION_CAP


def serialize_tool_result(result: Any) -> str:
  """Render a tool result as the content of a tool message."""

  content = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
  if len(content) > MAX_TOOL_RESULT_CHARS:
    content = content[:MAX_TOOL_RESULT_CHARS] + "\n[tool result truncated]"
  return content


class AgentLoop:
  """Run a model against a toolset until it answers or the iteration cap is hit."""

  def __init__(self, transport: ChatTransport, *, call_store: LlmCallStore | None = None) -> None:
    self._transport = transport
    self._call_store = call_store

  async def run(self, messages: list[Message], toolset: Toolset, *, max_iterations: int, token: CancellationToken, on_tool_call: ToolObserver | None = None) -> AgentLoopResult:
    """Iterate model steps and tool calls.

    Tool failures are fed back as ``{"error": ...}`` messages and never end the
    loop. ``BuildCancelledError`` always propagates.
    """
    conversation = list(messages)
    texts: list[str] = []
    definitions = toolset.definitions()
    tool_names = [tool_id.value for tool_id in toolset.tool_ids]

    for iteration in range(1, max_iterations + 1):
      token.raise_if_cancelled()
      step = await self._step(conversation, definitions, tool_names, token)
      if step.text:
        texts.append(step.text)

      if not step.tool_calls:
        if step.text:
          conversation.append({"role": "assistant", "content": step.text})
        return AgentLoopResult(final_text=step.text, texts=texts, iterations=iteration, stop_reason=StopReason.NATURAL, messages=conversation)

      conversation.append(step.assistant_message())
      for call in step.tool_calls:
        if on_tool_call is not None:
          await on_tool_call(call)
        content = await self._execute(toolset, call, token)
        conversation.append({"role": "tool", "tool_call_id": call.id, "content": content})

    logger.info("Agent loop reached its cap of %d iterations", max_iterations)
    final_text = texts[-1] if texts else ""
    return AgentLoopResult(final_text=final_text, texts=texts, iterations=max_iterations, stop_reason=StopReason.ITERATION_CAP, messages=conversation)

  async def _step(self, conversation: list[Message], definitions: list[dict[str, Any]], tool_names: list[str], token: CancellationToken) -> ChatStep:
    record = self._call_store.start_call(model=self._transport.model, tools=tool_names) if self._call_store else None
    step = await token.guard(self._transport.step(conversation, definitions))
    if self._call_store is not None:
      self._call_store.finish_call(record, response_text=step.text, tool_calls=[{"name": call.name, "args": call.arguments} for call in step.tool_calls], usage=step.usage)
    return step

  async def _execute(self, toolset: Toolset, call: ToolCall, token: CancellationToken) -> str:
    try:
      result = await token.guard(toolset.execute(call))
    except BuildCancelledError:
      raise
    except ToolExecutionError as exc:
      logger.info("Tool %s rejected: %s", call.name, exc)
      return serialize_tool_result({"error": str(exc)})
    except Exception as exc:  # noqa: BLE001
      logger.warning("Tool %s failed", call.name, exc_info=True)
      return serialize_tool_result({"error": f"{type(exc).__name__}: {exc}"})
    return serialize_tool_result(result)
