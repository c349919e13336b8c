"""Shared data contracts for the build pipeline."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_SCHEDULE = "0 */6 * * *"

Outcome = Literal["success", "unverified", "failed"]
Provenance = Literal["validated", "extracted"]
CriteriaResult = Literal["matched", "not_matched", "invalid"]

NOT_GENERATED_REASON = "not generated"
ABORTED_REASON = "manually aborted"


class CollectedItem(BaseModel):
  """One record returned by a collection script."""

  title: str = Field(min_length=1)
  url: str = Field(min_length=1)
  summary: str | None = None
  thumbnail_url: str | None = None
  published_at: str | None = None
  criteria_result: CriteriaResult | None = None
  metric_value: str | None = None
  model_config = ConfigDict(extra="ignore")


class DiscoveredResource(BaseModel):
  """Candidate resource found during discovery."""

  title: str
  url: str
  description: str = ""
  recommended: bool = False
  can_satisfy_criteria: bool | None = None


class GenerationResult(BaseModel):
  """Per-resource outcome of the generate phase."""

  title: str
  url: str
  description: str = ""
  script: str | None = None
  schedule: str = DEFAULT_SCHEDULE
  items: list[CollectedItem] = Field(default_factory=list)
  outcome: Outcome
  reason: str | None = None
  provenance: Provenance = "validated"
  attempted: bool = True

  @property
  def usable(self) -> bool:
    """Return whether the result can be handed to materialization."""

    return self.outcome != "failed" and bool(self.script)

  @classmethod
  def failed_for(cls, resource: DiscoveredResource, reason: str, *, script: str | None = None, attempted: bool = True) -> GenerationResult:
    return cls(title=resource.title, url=resource.url, description=resource.description, script=script, outcome="failed", reason=reason, attempted=attempted)


class JobSnapshot(BaseModel):
  """Rebuildable projection of a job's resumable state."""

  phase: Literal["discover", "generate", "complete"] | None = None
  discovered: list[DiscoveredResource] = Field(default_factory=list)
  selected: list[DiscoveredResource] = Field(default_factory=list)
  results: list[GenerationResult] = Field(default_factory=list)


class RunPayload(BaseModel):
  """Optional handoff state supplied when starting or resuming a job."""

  discovered: list[DiscoveredResource] | None = None
  selected: list[DiscoveredResource] | None = None
  results: list[GenerationResult] = Field(default_factory=list)
  metadata: dict[str, Any] | None = None
