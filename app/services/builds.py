"""Service facade for subscription builds: the operations exposed over HTTP."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.ai.pipeline.contracts import DiscoveredResource, JobSnapshot, RunPayload
from app.jobs.cancellation import CancellationRegistry
from app.jobs.errors import ActiveJobExistsError, InvalidJobStateError, JobNotFoundError
from app.jobs.models import PHASES, TERMINAL_STATUSES, JobRecord, Phase, ProgressEvent
from app.jobs.orchestrator import PhaseOrchestrator
from app.jobs.progress import ProgressLog, project_snapshot
from app.jobs.scheduler import SourceTaskScheduler
from app.storage.jobs_repo import JobsRepository
from app.telemetry.llm_calls import LlmCallStore
from app.utils.ids import generate_job_id

logger = logging.getLogger(__name__)

_JOB_NOT_FOUND_MSG = "Build job not found."


def _now_iso() -> str:
  return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class BuildProgress:
  """Polling view of one build."""

  job: JobRecord
  events_by_phase: dict[str, list[ProgressEvent]]
  events_by_resource: dict[str, list[ProgressEvent]]
  snapshot: JobSnapshot
  running_resources: list[str] = field(default_factory=list)


def group_events(events: list[ProgressEvent]) -> tuple[dict[str, list[ProgressEvent]], dict[str, list[ProgressEvent]]]:
  """Group events by phase, and generate events additionally by resource."""

  by_phase: dict[str, list[ProgressEvent]] = {phase: [] for phase in PHASES}
  by_resource: dict[str, list[ProgressEvent]] = {}
  for event in events:
    by_phase.setdefault(event.phase, []).append(event)
    if event.phase == "generate" and event.resource_key:
      by_resource.setdefault(event.resource_key, []).append(event)
  return by_phase, by_resource


def resume_phase(snapshot: JobSnapshot) -> Phase:
  """Pick the phase an adopted build continues from."""

  if not snapshot.discovered:
    return "discover"
  finished = {result.url for result in snapshot.results}
  if all(resource.url in finished for resource in snapshot.selected):
    return "complete"
  return "generate"


class BuildService:
  """Start, steer and observe builds. One instance per process."""

  def __init__(
    self,
    *,
    jobs_repo: JobsRepository,
    progress_log: ProgressLog,
    registry: CancellationRegistry,
    orchestrator: PhaseOrchestrator,
    scheduler: SourceTaskScheduler,
    call_store: LlmCallStore,
    stream_poll_seconds: float = 1.0,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._progress = progress_log
    self._registry = registry
    self._orchestrator = orchestrator
    self._scheduler = scheduler
    self._call_store = call_store
    self._stream_poll = stream_poll_seconds
    self._tasks: set[asyncio.Task[Any]] = set()

  async def _require_job(self, job_id: str) -> JobRecord:
    job = await self._jobs_repo.get_job(job_id)
    if job is None:
      raise JobNotFoundError(_JOB_NOT_FOUND_MSG)
    return job

  def _track(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
    task = asyncio.create_task(coro)
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)
    return task

  def _launch(self, job_id: str, start_phase: Phase, payload: RunPayload | None = None) -> asyncio.Task[None]:
    return self._track(self.run(job_id, start_phase, payload))

  async def start_build(self, subscription_id: str, topic: str, criteria: str | None = None) -> JobRecord:
    """Create a job in ``creating`` and run it in the background from discover."""
    now = _now_iso()
    record = JobRecord(job_id=generate_job_id(), subscription_id=subscription_id, topic=topic, criteria=criteria, status="creating", phase="discover", created_at=now, updated_at=now)
    await self._jobs_repo.create_job(record)
    logger.info("Started build %s for subscription %s", record.job_id, subscription_id)
    self._launch(record.job_id, "discover")
    return record

  async def run(self, job_id: str, start_phase: Phase = "discover", payload: RunPayload | None = None) -> None:
    try:
      await self._orchestrator.run(job_id, start_phase, payload)
    finally:
      await self._release_if_finished(job_id)

  async def _release_if_finished(self, job_id: str) -> None:
    """Drop in-memory state of a job once no work for it is left running."""

    if self._registry.has_live_tokens(job_id):
      return
    self._scheduler.forget_job(job_id)
    job = await self._jobs_repo.get_job(job_id)
    if job is None or job.status in TERMINAL_STATUSES:
      self._registry.forget_job(job_id)
      self._call_store.retire(job_id)

  async def _release_after(self, job_id: str, task: asyncio.Task[Any]) -> None:
    try:
      await task
    finally:
      await self._release_if_finished(job_id)

  async def resume(self, job_id: str, start_phase: Phase, payload: RunPayload | None = None) -> JobRecord:
    """Re-enter the pipeline at ``start_phase`` for a job that is creating or idle."""

    job = await self._require_job(job_id)
    if job.status not in ("creating", "idle"):
      raise InvalidJobStateError(f"Build {job_id} is {job.status}; adopt it to continue.")
    if job.status == "idle":
      job = await self._jobs_repo.update_job(job_id, status="creating", updated_at=_now_iso()) or job
    self._launch(job_id, start_phase, payload)
    return job

  async def abort(self, job_id: str, resource_key: str) -> bool:
    await self._require_job(job_id)
    return await self._scheduler.abort(job_id, resource_key)

  async def abort_all(self, job_id: str) -> list[str]:
    await self._require_job(job_id)
    return self._scheduler.abort_all(job_id)

  async def retry(self, job_id: str, resource_url: str, *, hint: str | None = None, title: str | None = None, description: str | None = None) -> None:
    """Regenerate one resource in the background with an optional operator hint."""

    job = await self._require_job(job_id)
    resource = await self._find_resource(job_id, resource_url)
    if resource is None:
      if not title:
        raise InvalidJobStateError(f"Resource {resource_url} is not part of build {job_id}.")
      resource = DiscoveredResource(title=title, url=resource_url, description=description or "")
    retry_task = self._scheduler.start_retry(job_id, resource, job.criteria, hint=hint)
    self._track(self._release_after(job_id, retry_task))
    logger.info("Retrying %s in build %s", resource_url, job_id)

  async def _find_resource(self, job_id: str, url: str) -> DiscoveredResource | None:
    state = await self._progress.discover_state(job_id)
    for resource in state.discovered or []:
      if resource.url == url:
        return resource
    result = (await self._progress.latest_results(job_id)).get(url)
    if result is not None:
      return DiscoveredResource(title=result.title, url=result.url, description=result.description)
    return None

  async def takeover(self, job_id: str) -> JobSnapshot:
    """Stop all automated work and hand the job to a manual path."""

    job = await self._require_job(job_id)
    if job.status not in ("creating", "idle"):
      raise InvalidJobStateError(f"Build {job_id} is {job.status} and cannot be taken over.")
    self._scheduler.abort_all(job_id)
    await self._jobs_repo.update_job(job_id, status="idle", updated_at=_now_iso())
    await self._progress.write(job_id, job.phase or "discover", "info", "Build taken over for manual completion")
    snapshot = await self._progress.refresh_snapshot(job_id)
    return snapshot or JobSnapshot()

  async def adopt(self, job_id: str) -> JobRecord:
    """Continue an orphaned or failed build as a new job seeded with its progress."""

    old = await self._require_job(job_id)
    if old.status == "complete":
      raise InvalidJobStateError(f"Build {job_id} is already complete.")
    if old.status == "creating" and self._registry.has_live_tokens(job_id):
      raise InvalidJobStateError(f"Build {job_id} is still running.")

    self._scheduler.abort_all(job_id)
    snapshot = project_snapshot(await self._progress.events(job_id))
    now = _now_iso()
    record = JobRecord(job_id=generate_job_id(), subscription_id=old.subscription_id, topic=old.topic, criteria=old.criteria, status="creating", phase=resume_phase(snapshot), adopted_from_job_id=job_id, created_at=now, updated_at=now)
    if old.status != "failed":
      await self._jobs_repo.update_job(job_id, status="failed", error=f"adopted by build {record.job_id}", updated_at=now)
    try:
      await self._jobs_repo.create_job(record)
    except ActiveJobExistsError:
      logger.warning("Cannot adopt build %s: subscription %s already has an active build", job_id, old.subscription_id)
      raise

    await self._seed_from_snapshot(record.job_id, job_id, snapshot)
    logger.info("Build %s adopted as %s, resuming from %s", job_id, record.job_id, record.phase)
    self._launch(record.job_id, record.phase or "discover")
    return record

  async def _seed_from_snapshot(self, job_id: str, source_job_id: str, snapshot: JobSnapshot) -> None:
    if snapshot.discovered:
      payload = {"discovered": [item.model_dump(mode="json") for item in snapshot.discovered], "selected": [item.model_dump(mode="json") for item in snapshot.selected]}
      await self._progress.write(job_id, "discover", "success", f"Discovered {len(snapshot.discovered)} resources (adopted from build {source_job_id})", payload=payload)
    for result in snapshot.results:
      await self._progress.record_result(job_id, result, message=f"{result.title}: carried over from build {source_job_id}")
    await self._progress.refresh_snapshot(job_id)

  async def discard(self, job_id: str) -> bool:
    """Stop all work and delete the job with its log."""

    await self._require_job(job_id)
    self._scheduler.abort_all(job_id)
    deleted = await self._jobs_repo.delete_job(job_id)
    self._registry.forget_job(job_id)
    self._scheduler.forget_job(job_id)
    self._call_store.clear(job_id)
    logger.info("Discarded build %s", job_id)
    return deleted

  async def get_progress(self, job_id: str) -> BuildProgress:
    job = await self._require_job(job_id)
    events = await self._progress.events(job_id)
    by_phase, by_resource = group_events(events)
    return BuildProgress(job=job, events_by_phase=by_phase, events_by_resource=by_resource, snapshot=project_snapshot(events), running_resources=self._registry.live_keys(job_id))

  async def llm_usage(self, job_id: str) -> dict[str, dict[str, int]]:
    await self._require_job(job_id)
    return self._call_store.usage_by_resource(job_id)

  async def stream_progress(self, job_id: str) -> AsyncIterator[ProgressEvent]:
    """Yield the full history, then new events, until the build stops running."""

    await self._require_job(job_id)
    after_id: int | None = None
    while True:
      for event in await self._progress.events(job_id, after_id=after_id):
        after_id = event.id
        yield event
      job = await self._jobs_repo.get_job(job_id)
      if job is None or not job.in_progress:
        # Drain anything written between the last read and the status change.
        for event in await self._progress.events(job_id, after_id=after_id):
          after_id = event.id
          yield event
        return
      await asyncio.sleep(self._stream_poll)

  async def shutdown(self) -> None:
    """Cancel background runs when the process stops."""

    for task in list(self._tasks):
      task.cancel()
    if self._tasks:
      await asyncio.gather(*self._tasks, return_exceptions=True)
