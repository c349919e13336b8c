"""Durable progress log and the resume snapshot derived from it."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from app.ai.pipeline.contracts import DiscoveredResource, GenerationResult, JobSnapshot
from app.jobs.errors import PersistenceConflictError
from app.jobs.models import LogLevel, Phase, ProgressEvent
from app.storage.jobs_repo import JobsRepository, ProgressEventsRepository

logger = logging.getLogger(__name__)

DISCOVER_STARTED_MARKER = "discover_started"

_OUTCOME_MESSAGES = {"success": "Script ready", "unverified": "Script generated without sandbox verification", "failed": "Script generation failed"}


@dataclass(frozen=True)
class DiscoverState:
  """What the log says about the discover phase of a job."""

  discovered: list[DiscoveredResource] | None
  selected: list[DiscoveredResource] | None
  in_flight: bool

  @property
  def succeeded(self) -> bool:
    return self.discovered is not None


def _now_iso() -> str:
  return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _parse_resources(raw: Any) -> list[DiscoveredResource]:
  if not isinstance(raw, list):
    return []
  resources: list[DiscoveredResource] = []
  for item in raw:
    try:
      resources.append(DiscoveredResource.model_validate(item))
    except ValidationError:
      logger.warning("Skipping malformed discovered resource in log payload: %r", item)
  return resources


def result_from_event(event: ProgressEvent) -> GenerationResult | None:
  """Return the generation result carried by a terminal event, if any."""

  if event.phase != "generate" or not event.payload or "result" not in event.payload:
    return None
  try:
    return GenerationResult.model_validate(event.payload["result"])
  except ValidationError:
    logger.warning("Ignoring malformed result payload on event %s", event.id)
    return None


def discover_state_from_events(events: Iterable[ProgressEvent]) -> DiscoverState:
  """Derive discover-phase state from discover events in log order."""

  discovered: list[DiscoveredResource] | None = None
  selected: list[DiscoveredResource] | None = None
  started = False
  for event in events:
    if event.phase != "discover":
      continue
    payload = event.payload or {}
    if event.level == "info" and payload.get("marker") == DISCOVER_STARTED_MARKER:
      started = True
    elif event.level == "success" and "discovered" in payload:
      discovered = _parse_resources(payload.get("discovered"))
      selected = _parse_resources(payload.get("selected")) if "selected" in payload else None
      started = False
    elif event.level == "error":
      started = False
  return DiscoverState(discovered=discovered, selected=selected, in_flight=started and discovered is None)


def latest_results_from_events(events: Iterable[ProgressEvent]) -> dict[str, GenerationResult]:
  """Return the latest terminal result per resource url, in first-seen order."""

  results: dict[str, GenerationResult] = {}
  for event in events:
    result = result_from_event(event)
    if result is not None:
      results[result.url] = result
  return results


def project_snapshot(events: Iterable[ProgressEvent]) -> JobSnapshot:
  """Rebuild the resume snapshot from the log alone."""

  ordered = list(events)
  discover = discover_state_from_events(ordered)
  phase: Phase | None = ordered[-1].phase if ordered else None
  return JobSnapshot(phase=phase, discovered=discover.discovered or [], selected=discover.selected or [], results=list(latest_results_from_events(ordered).values()))


class ProgressLog:
  """Append-only event writer shared by every layer of a build."""

  def __init__(self, *, events_repo: ProgressEventsRepository, jobs_repo: JobsRepository) -> None:
    self._events_repo = events_repo
    self._jobs_repo = jobs_repo

  async def write(self, job_id: str, phase: Phase, level: LogLevel, message: str, *, payload: dict[str, Any] | None = None, resource_key: str | None = None) -> ProgressEvent | None:
    """Append one event. Writes against a deleted job are dropped."""
    try:
      return await self._events_repo.append_event(job_id=job_id, phase=phase, level=level, message=message, payload=payload, resource_key=resource_key)
    except PersistenceConflictError:
      logger.debug("Dropped %s/%s event for deleted job %s: %s", phase, level, job_id, message)
      return None

  async def record_result(self, job_id: str, result: GenerationResult, *, message: str | None = None) -> ProgressEvent | None:
    """Write the terminal event for one resource."""

    level: LogLevel = "error" if result.outcome == "failed" else "success"
    text = message or _OUTCOME_MESSAGES[result.outcome]
    if result.reason and message is None:
      text = f"{text}: {result.reason}"
    return await self.write(job_id, "generate", level, text, payload={"result": result.model_dump(mode="json")}, resource_key=result.url)

  async def events(self, job_id: str, *, phase: Phase | None = None, level: LogLevel | None = None, after_id: int | None = None) -> list[ProgressEvent]:
    return await self._events_repo.list_events(job_id=job_id, phase=phase, level=level, after_id=after_id)

  async def discover_state(self, job_id: str) -> DiscoverState:
    return discover_state_from_events(await self.events(job_id, phase="discover"))

  async def latest_results(self, job_id: str) -> dict[str, GenerationResult]:
    return latest_results_from_events(await self.events(job_id, phase="generate"))

  async def clear_resource(self, job_id: str, resource_key: str) -> int:
    """Remove a resource's prior events before it is retried."""

    deleted = await self._events_repo.delete_resource_events(job_id=job_id, resource_key=resource_key)
    logger.info("Cleared %d log events for %s/%s before retry", deleted, job_id, resource_key)
    return deleted

  async def refresh_snapshot(self, job_id: str) -> JobSnapshot | None:
    """Recompute the snapshot cache from the log and store it on the job."""

    snapshot = project_snapshot(await self.events(job_id))
    record = await self._jobs_repo.update_job(job_id, snapshot=snapshot.model_dump(mode="json"), updated_at=_now_iso())
    if record is None:
      return None
    return snapshot
