"""Storage interfaces for build jobs and their progress events."""

from __future__ import annotations

from typing import Any, Protocol

from app.jobs.models import JobRecord, JobStatus, LogLevel, Phase, ProgressEvent


class JobsRepository(Protocol):
  """Repository contract for job persistence."""

  async def create_job(self, record: JobRecord) -> None:
    """Persist an initial job record."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def update_job(
    self,
    job_id: str,
    *,
    status: JobStatus | None = None,
    phase: Phase | None = None,
    snapshot: dict[str, Any] | None = None,
    error: str | None = None,
    completed_at: str | None = None,
    updated_at: str | None = None,
  ) -> JobRecord | None:
    """Apply partial updates to a job."""

  async def delete_job(self, job_id: str) -> bool:
    """Delete a job and its events."""

  async def find_active_for_subscription(self, subscription_id: str) -> JobRecord | None:
    """Return the non-terminal job of a subscription, if any."""

  async def find_by_status(self, status: JobStatus, limit: int = 100) -> list[JobRecord]:
    """Return jobs with a given status, oldest first."""


class ProgressEventsRepository(Protocol):
  """Repository contract for the append-only progress log."""

  async def append_event(self, *, job_id: str, phase: Phase, level: LogLevel, message: str, payload: dict[str, Any] | None = None, resource_key: str | None = None) -> ProgressEvent:
    """Append one event. Raises PersistenceConflictError when the job row is gone."""

  async def list_events(self, *, job_id: str, phase: Phase | None = None, level: LogLevel | None = None, after_id: int | None = None) -> list[ProgressEvent]:
    """List events for a job in insertion order."""

  async def delete_resource_events(self, *, job_id: str, resource_key: str) -> int:
    """Delete the events of one resource before a retry."""
