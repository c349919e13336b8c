"""Quality and authenticity review of collection scripts that already produced records."""

from __future__ import annotations

import logging

from app.ai.agent_loop import AgentLoop
from app.ai.extraction import ReviewVerdict, parse_review_verdict
from app.ai.pipeline.contracts import CollectedItem, DiscoveredResource
from app.ai.prompts import review_messages
from app.ai.tools.registry import Toolset
from app.jobs.cancellation import CancellationToken
from app.telemetry.context import llm_call_context

logger = logging.getLogger(__name__)


def missing_field_advisories(items: list[CollectedItem]) -> list[str]:
  """List recommended fields that the collected records leave empty."""

  advisories: list[str] = []
  if not items:
    return advisories
  missing_dates = sum(1 for item in items if not item.published_at)
  if missing_dates:
    advisories.append(f"{missing_dates} of {len(items)} records have no published_at; collection time will be used instead.")
  return advisories


class QualityReviewer:
  """Agent that reviews script code and spot-checks collected URLs with webFetch."""

  def __init__(self, loop: AgentLoop, toolset: Toolset, *, max_iterations: int = 6) -> None:
    self._loop = loop
    self._toolset = toolset
    self._max_iterations = max_iterations

  async def review(self, resource: DiscoveredResource, criteria: str | None, script: str, items: list[CollectedItem], token: CancellationToken) -> ReviewVerdict:
    messages = review_messages(resource, criteria, script, items)
    with llm_call_context(agent="review", job_id=token.job_id, resource_key=token.resource_key):
      result = await self._loop.run(messages, self._toolset, max_iterations=self._max_iterations, token=token)
    # The verdict lives in the last text the reviewer produced, even at the cap.
    verdict = parse_review_verdict(result.final_text)
    logger.info("Quality review for %s: valid=%s (%s)", resource.url, verdict.valid, verdict.reason[:120])
    return verdict
