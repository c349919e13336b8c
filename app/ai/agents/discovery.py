"""Discovery agent: find candidate resources for a topic."""

from __future__ import annotations

import json
import logging

from app.ai.agent_loop import AgentLoop, ToolObserver
from app.ai.extraction import parse_sources_from_text
from app.ai.pipeline.contracts import DiscoveredResource
from app.ai.prompts import discovery_messages
from app.ai.tools.toolsets import ToolKit
from app.jobs.cancellation import CancellationToken
from app.jobs.errors import PhaseFailure
from app.telemetry.context import llm_call_context

logger = logging.getLogger(__name__)


def _dedupe(resources: list[DiscoveredResource]) -> list[DiscoveredResource]:
  seen: set[str] = set()
  unique: list[DiscoveredResource] = []
  for resource in resources:
    if resource.url in seen:
      continue
    seen.add(resource.url)
    unique.append(resource)
  return unique


class DiscoveryAgent:
  """Search, feed-route lookup and feed checks until the model lists its sources."""

  def __init__(self, loop: AgentLoop, toolkit: ToolKit, *, max_iterations: int = 32) -> None:
    self._loop = loop
    self._toolkit = toolkit
    self._max_iterations = max_iterations

  async def discover(self, topic: str, criteria: str | None, token: CancellationToken, *, on_tool_call: ToolObserver | None = None) -> list[DiscoveredResource]:
    if not self._toolkit.search_available:
      raise PhaseFailure("discover", "web search is not configured")

    with llm_call_context(agent="discover", job_id=token.job_id, resource_key=None, topic=topic):
      result = await self._loop.run(discovery_messages(topic, criteria), self._toolkit.discovery_tools(), max_iterations=self._max_iterations, token=token, on_tool_call=on_tool_call)

    # Prefer everything the model said; fall back to its last turn alone.
    resources = parse_sources_from_text("\n".join(result.texts)) or parse_sources_from_text(result.final_text)
    resources = _dedupe(resources)
    logger.info("Discovery for %r found %d resources in %d iterations (%s)", topic, len(resources), result.iterations, result.stop_reason.value)
    return resources


def describe_tool_call(name: str, arguments: str) -> str:
  """One-line progress message for a discovery tool call."""

  try:
    args = json.loads(arguments or "{}")
  except json.JSONDecodeError:
    args = {}
  if name == "webSearch":
    return f"Searching the web: {args.get('query', '')}"
  if name == "feedRoutes":
    return f"Looking up feed routes for {', '.join(args.get('queries') or [])}"
  if name == "checkFeed":
    return f"Checking {len(args.get('urls') or [])} feed URLs"
  return f"Calling {name}"
