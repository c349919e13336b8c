"""Multi-layer validation of generated collection scripts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol

from app.ai.agents.reviewer import QualityReviewer, missing_field_advisories
from app.ai.pipeline.contracts import CollectedItem, DiscoveredResource
from app.jobs.cancellation import CancellationToken
from app.sandbox.contract import SandboxRunResult, SandboxUnavailableError

logger = logging.getLogger(__name__)

ValidationKind = Literal["passed", "execution_error", "zero_results", "rejected", "unavailable"]

ZERO_RESULTS_REASON = "Script ran without errors but collected no records. Check the selectors or the target URL; the page may need JavaScript rendering or block automated requests."


class ScriptRunner(Protocol):
  async def run(self, script: str) -> SandboxRunResult:
    """Execute a collection script."""


@dataclass(frozen=True)
class ValidationOutcome:
  """Result of running a script through every validation layer."""

  valid: bool
  kind: ValidationKind
  reason: str | None = None
  fixed_script: str | None = None
  items: list[CollectedItem] = field(default_factory=list)
  advisories: list[str] = field(default_factory=list)

  def feedback(self) -> dict[str, object]:
    """Compact description returned to the generating agent."""

    payload: dict[str, object] = {"success": self.valid, "itemCount": len(self.items)}
    if self.items:
      payload["items"] = [item.model_dump(exclude_none=True) for item in self.items[:3]]
    if self.reason and not self.valid:
      payload["error"] = self.reason
    if self.kind == "rejected":
      payload["sandboxPassed"] = True
    if self.fixed_script:
      payload["suggestedScript"] = self.fixed_script
      payload["note"] = "A fixed script is provided in suggestedScript; validate it with validateScript."
    if self.advisories:
      payload["advisories"] = self.advisories
    return payload


class MultiLayerValidator:
  """Sandbox execution, then quality review and authenticity spot checks.

  A script only passes when the sandbox run succeeds with at least one record
  and the reviewer accepts it. Review runs only after the sandbox passed.
  """

  def __init__(self, runner: ScriptRunner, reviewer: QualityReviewer) -> None:
    self._runner = runner
    self._reviewer = reviewer

  async def validate(self, script: str, resource: DiscoveredResource, criteria: str | None, token: CancellationToken) -> ValidationOutcome:
    token.raise_if_cancelled()
    try:
      run = await token.guard(self._runner.run(script))
    except SandboxUnavailableError as exc:
      logger.warning("Sandbox unavailable while validating %s: %s", resource.url, exc)
      return ValidationOutcome(valid=False, kind="unavailable", reason=str(exc))

    if not run.ok:
      return ValidationOutcome(valid=False, kind="execution_error", reason=run.error or "Script failed.")
    if run.item_count == 0:
      return ValidationOutcome(valid=False, kind="zero_results", reason=ZERO_RESULTS_REASON)

    advisories = missing_field_advisories(run.items)
    verdict = await self._reviewer.review(resource, criteria, script, run.items, token)
    if not verdict.valid:
      return ValidationOutcome(valid=False, kind="rejected", reason=f"Quality review failed: {verdict.reason}", fixed_script=verdict.fixed_script, items=run.items, advisories=advisories)
    return ValidationOutcome(valid=True, kind="passed", reason=verdict.reason or None, items=run.items, advisories=advisories)
