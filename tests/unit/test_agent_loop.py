"""Agent loop: tool dispatch, error feedback, iteration cap and cancellation."""

from __future__ import annotations

import asyncio
import json

import pytest
from pydantic import BaseModel

from app.ai.agent_loop import AgentLoop, StopReason
from app.ai.providers.base import ChatStep, ToolCall
from app.ai.tools.registry import ToolId, ToolSpec, Toolset
from app.jobs.cancellation import CancellationToken
from app.jobs.errors import BuildCancelledError, ToolExecutionError
from app.telemetry.context import llm_call_context
from app.telemetry.llm_calls import LlmCallStore
from tests.support import ScriptedTransport


class QueryArgs(BaseModel):
  query: str


def _search_toolset(handler) -> Toolset:
  return Toolset([ToolSpec(ToolId.WEB_SEARCH, "search", QueryArgs, handler)])


def _call(name: str = "webSearch", arguments: str = '{"query": "rust"}', call_id: str = "call_1") -> ChatStep:
  return ChatStep(text="", tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)])


@pytest.mark.anyio
async def test_loop_stops_naturally_after_tool_round_trip() -> None:
  seen: list[str] = []

  async def _search(args: QueryArgs) -> list[dict[str, str]]:
    seen.append(args.query)
    return [{"url": "https://example.com"}]

  transport = ScriptedTransport([_call(), ChatStep(text="final answer")])
  result = await AgentLoop(transport).run([{"role": "user", "content": "go"}], _search_toolset(_search), max_iterations=5, token=CancellationToken("job"))

  assert seen == ["rust"]
  assert result.stop_reason is StopReason.NATURAL
  assert result.final_text == "final answer"
  assert result.iterations == 2
  tool_message = transport.requests[1][-1]
  assert tool_message["role"] == "tool"
  assert tool_message["tool_call_id"] == "call_1"
  assert json.loads(tool_message["content"]) == [{"url": "https://example.com"}]


@pytest.mark.anyio
async def test_tool_failures_are_fed_back_and_do_not_end_the_loop() -> None:
  async def _search(args: QueryArgs) -> None:
    raise ToolExecutionError("webSearch", "quota exceeded")

  transport = ScriptedTransport([_call(), _call(name="nope", call_id="call_2"), _call(arguments="{not json", call_id="call_3"), ChatStep(text="giving up")])
  result = await AgentLoop(transport).run([{"role": "user", "content": "go"}], _search_toolset(_search), max_iterations=10, token=CancellationToken("job"))

  assert result.final_text == "giving up"
  errors = [json.loads(message["content"])["error"] for message in result.messages if message["role"] == "tool"]
  assert errors[0] == "quota exceeded"
  assert "Unknown tool" in errors[1]
  assert "not valid JSON" in errors[2]


@pytest.mark.anyio
async def test_unexpected_tool_exceptions_become_error_messages() -> None:
  async def _search(args: QueryArgs) -> None:
    raise KeyError("boom")

  transport = ScriptedTransport([_call(), ChatStep(text="done")])
  result = await AgentLoop(transport).run([], _search_toolset(_search), max_iterations=3, token=CancellationToken("job"))
  tool_message = next(message for message in result.messages if message["role"] == "tool")
  assert json.loads(tool_message["content"])["error"].startswith("KeyError")


@pytest.mark.anyio
async def test_iteration_cap_returns_last_text() -> None:
  async def _search(args: QueryArgs) -> str:
    return "ok"

  steps = [ChatStep(text=f"thinking {index}", tool_calls=[ToolCall(id=f"c{index}", name="webSearch", arguments='{"query": "q"}')]) for index in range(3)]
  result = await AgentLoop(ScriptedTransport(steps)).run([], _search_toolset(_search), max_iterations=3, token=CancellationToken("job"))

  assert result.hit_cap
  assert result.iterations == 3
  assert result.final_text == "thinking 2"
  assert result.texts == ["thinking 0", "thinking 1", "thinking 2"]


@pytest.mark.anyio
async def test_cancellation_interrupts_a_running_tool() -> None:
  token = CancellationToken("job", "https://example.com")
  started = asyncio.Event()

  async def _search(args: QueryArgs) -> str:
    started.set()
    await asyncio.sleep(30)
    return "never"

  async def _cancel_when_started() -> None:
    await started.wait()
    token.cancel()

  canceller = asyncio.create_task(_cancel_when_started())
  with pytest.raises(BuildCancelledError):
    await AgentLoop(ScriptedTransport([_call()])).run([], _search_toolset(_search), max_iterations=3, token=token)
  await canceller


@pytest.mark.anyio
async def test_calls_are_recorded_under_the_active_context() -> None:
  store = LlmCallStore()
  transport = ScriptedTransport([ChatStep(text="hello", usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15})])
  with llm_call_context(agent="generate", job_id="job-9", resource_key="https://example.com"):
    await AgentLoop(transport, call_store=store).run([], Toolset([]), max_iterations=2, token=CancellationToken("job-9"))

  usage = store.usage_by_resource("job-9")
  assert usage == {"https://example.com": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15, "calls": 1}}
