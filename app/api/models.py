from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from app.ai.pipeline.contracts import DiscoveredResource, GenerationResult, JobSnapshot
from app.jobs.models import JobRecord, JobStatus, Phase, ProgressEvent


class BuildCreateRequest(BaseModel):
  """Request payload for starting a managed subscription build."""

  subscription_id: StrictStr = Field(min_length=1, description="Subscription the build creates resources for.")
  topic: StrictStr = Field(min_length=1, max_length=500, description="What the subscription follows.", examples=["Rust compiler releases"])
  criteria: StrictStr | None = Field(default=None, max_length=500, description="Optional monitoring condition evaluated per collected item.", examples=["price below 300"])
  model_config = ConfigDict(extra="forbid")


class BuildRunRequest(BaseModel):
  """Request payload for re-entering the pipeline at a given phase."""

  start_phase: Phase = "discover"
  discovered: list[DiscoveredResource] | None = Field(default=None, description="Optional discovered resources handed over by the caller.")
  selected: list[DiscoveredResource] | None = Field(default=None, description="Optional explicit selection; defaults to auto-selection.")
  results: list[GenerationResult] = Field(default_factory=list, description="Results produced elsewhere that the build must not regenerate.")
  metadata: dict[str, Any] | None = None
  model_config = ConfigDict(extra="forbid")


class AbortRequest(BaseModel):
  resource_key: StrictStr = Field(min_length=1, description="Url of the resource to abort.")
  model_config = ConfigDict(extra="forbid")


class RetryRequest(BaseModel):
  """Request payload for regenerating one resource."""

  resource_url: StrictStr = Field(min_length=1)
  hint: StrictStr | None = Field(default=None, max_length=2000, description="Extra instructions appended to the generation prompt.")
  title: StrictStr | None = Field(default=None, description="Title to use when the resource is not in the build's discovery results.")
  description: StrictStr | None = None
  model_config = ConfigDict(extra="forbid")


class BuildJobResponse(BaseModel):
  """Status payload for a build job."""

  job_id: StrictStr
  subscription_id: StrictStr
  topic: StrictStr
  criteria: StrictStr | None = None
  status: JobStatus
  phase: Phase | None = None
  error: StrictStr | None = None
  adopted_from_job_id: StrictStr | None = None
  created_at: StrictStr
  updated_at: StrictStr
  completed_at: StrictStr | None = None

  @classmethod
  def from_record(cls, record: JobRecord) -> BuildJobResponse:
    return cls(
      job_id=record.job_id,
      subscription_id=record.subscription_id,
      topic=record.topic,
      criteria=record.criteria,
      status=record.status,
      phase=record.phase,
      error=record.error,
      adopted_from_job_id=record.adopted_from_job_id,
      created_at=record.created_at,
      updated_at=record.updated_at,
      completed_at=record.completed_at,
    )


class ProgressEventResponse(BaseModel):
  id: int
  phase: Phase
  level: Literal["info", "progress", "success", "error"]
  message: StrictStr
  resource_key: StrictStr | None = None
  payload: dict[str, Any] | None = None
  created_at: StrictStr

  @classmethod
  def from_event(cls, event: ProgressEvent) -> ProgressEventResponse:
    return cls(id=event.id, phase=event.phase, level=event.level, message=event.message, resource_key=event.resource_key, payload=event.payload, created_at=event.created_at)


class BuildProgressResponse(BaseModel):
  """Polling view: status, events grouped by phase and resource, and the resume snapshot."""

  job: BuildJobResponse
  phases: dict[str, list[ProgressEventResponse]]
  resources: dict[str, list[ProgressEventResponse]]
  running_resources: list[StrictStr] = Field(default_factory=list)
  snapshot: JobSnapshot


class AbortResponse(BaseModel):
  aborted: bool


class AbortAllResponse(BaseModel):
  cancelled: list[StrictStr]


class RetryResponse(BaseModel):
  started: bool = True


class TakeoverResponse(BaseModel):
  job_id: StrictStr
  snapshot: JobSnapshot


class UsageBucket(BaseModel):
  prompt_tokens: int = 0
  completion_tokens: int = 0
  total_tokens: int = 0
  calls: int = 0


class LlmUsageResponse(BaseModel):
  job_id: StrictStr
  resources: dict[str, UsageBucket]
