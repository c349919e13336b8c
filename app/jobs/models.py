"""Domain models for subscription build jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

JobStatus = Literal["idle", "creating", "failed", "complete"]
Phase = Literal["discover", "generate", "complete"]
LogLevel = Literal["info", "progress", "success", "error"]

PHASES: tuple[Phase, ...] = ("discover", "generate", "complete")
TERMINAL_STATUSES: frozenset[str] = frozenset({"failed", "complete"})


@dataclass
class JobRecord:
  """Represents one build attempt for a subscription."""

  job_id: str
  subscription_id: str
  topic: str
  status: JobStatus
  created_at: str
  updated_at: str
  criteria: str | None = None
  phase: Phase | None = None
  snapshot: dict[str, Any] | None = None
  error: str | None = None
  adopted_from_job_id: str | None = None
  completed_at: str | None = None

  @property
  def in_progress(self) -> bool:
    return self.status == "creating"


@dataclass(frozen=True)
class ProgressEvent:
  """Immutable progress log entry."""

  id: int
  job_id: str
  phase: Phase
  level: LogLevel
  message: str
  created_at: str
  resource_key: str | None = None
  payload: dict[str, Any] | None = field(default=None, hash=False)

  def to_wire(self) -> dict[str, Any]:
    """Serialize to the typed event shape used by polling and streaming."""

    return {"id": self.id, "phase": self.phase, "level": self.level, "message": self.message, "resourceKey": self.resource_key, "payload": self.payload, "createdAt": self.created_at}
