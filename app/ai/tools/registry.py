"""Typed tool dispatch for agent loops."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

from app.ai.providers.base import ToolCall
from app.jobs.errors import ToolExecutionError


class ToolId(str, Enum):
  """Every tool an agent may call."""

  WEB_SEARCH = "webSearch"
  FEED_ROUTES = "feedRoutes"
  CHECK_FEED = "checkFeed"
  WEB_FETCH = "webFetch"
  WEB_FETCH_BROWSER = "webFetchBrowser"
  VALIDATE_SCRIPT = "validateScript"


ToolHandler = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
  """One tool: identifier, argument schema and async handler."""

  tool_id: ToolId
  description: str
  args_model: type[BaseModel]
  handler: ToolHandler

  def definition(self) -> dict[str, Any]:
    """Return the OpenAI function-tool definition."""

    schema = self.args_model.model_json_schema()
    schema.pop("title", None)
    return {"type": "function", "function": {"name": self.tool_id.value, "description": self.description, "parameters": schema}}


class Toolset:
  """Dispatch table keyed by tool identifier."""

  def __init__(self, specs: Iterable[ToolSpec]) -> None:
    self._specs: dict[ToolId, ToolSpec] = {spec.tool_id: spec for spec in specs}

  def __contains__(self, tool_id: object) -> bool:
    return tool_id in self._specs

  @property
  def tool_ids(self) -> list[ToolId]:
    return list(self._specs)

  def definitions(self) -> list[dict[str, Any]]:
    return [spec.definition() for spec in self._specs.values()]

  def resolve(self, name: str) -> ToolSpec:
    try:
      tool_id = ToolId(name)
    except ValueError as exc:
      raise ToolExecutionError(name, f"Unknown tool: {name}") from exc
    spec = self._specs.get(tool_id)
    if spec is None:
      raise ToolExecutionError(name, f"Tool {name} is not available here. Available tools: {', '.join(item.value for item in self._specs)}")
    return spec

  def parse_arguments(self, spec: ToolSpec, raw: str) -> BaseModel:
    try:
      payload = json.loads(raw or "{}")
    except json.JSONDecodeError as exc:
      raise ToolExecutionError(spec.tool_id.value, f"Arguments are not valid JSON: {exc.msg}") from exc
    try:
      return spec.args_model.model_validate(payload)
    except ValidationError as exc:
      problems = "; ".join(f"{'.'.join(str(part) for part in error['loc']) or 'arguments'}: {error['msg']}" for error in exc.errors(include_input=False))
      raise ToolExecutionError(spec.tool_id.value, f"Invalid arguments: {problems}") from exc

  async def execute(self, call: ToolCall) -> Any:
    """Resolve, validate and run one tool call."""

    spec = self.resolve(call.name)
    arguments = self.parse_arguments(spec, call.arguments)
    return await spec.handler(arguments)
