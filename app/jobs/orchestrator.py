"""Three-phase build orchestration: discover, generate, complete."""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime

from app.ai.agents.discovery import DiscoveryAgent, describe_tool_call
from app.ai.pipeline.contracts import NOT_GENERATED_REASON, DiscoveredResource, GenerationResult, RunPayload
from app.ai.providers.base import ToolCall
from app.jobs.cancellation import DISCOVER_KEY, CancellationRegistry
from app.jobs.errors import BuildCancelledError, PhaseFailure
from app.jobs.models import JobRecord, Phase
from app.jobs.progress import DISCOVER_STARTED_MARKER, ProgressLog
from app.jobs.scheduler import SourceTaskScheduler
from app.jobs.selection import select_resources
from app.services.materialize import Materializer
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

NO_SCRIPTS_REASON = "no scripts succeeded"
DISCOVER_CANCELLED_REASON = "discovery cancelled"


def _now_iso() -> str:
  return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class PhaseOrchestrator:
  """Drive one job through its phases, resuming from whatever the log already holds."""

  def __init__(
    self,
    *,
    jobs_repo: JobsRepository,
    progress_log: ProgressLog,
    registry: CancellationRegistry,
    discovery: DiscoveryAgent,
    scheduler: SourceTaskScheduler,
    materializer: Materializer,
    selection_limit: int = 5,
    discover_wait_seconds: float = 300.0,
    discover_poll_seconds: float = 5.0,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._progress = progress_log
    self._registry = registry
    self._discovery = discovery
    self._scheduler = scheduler
    self._materializer = materializer
    self._selection_limit = selection_limit
    self._discover_wait = discover_wait_seconds
    self._discover_poll = discover_poll_seconds

  async def run(self, job_id: str, start_phase: Phase = "discover", payload: RunPayload | None = None) -> None:
    """Run the job from ``start_phase``. Never raises for build failures."""
    payload = payload or RunPayload()
    phase: Phase = start_phase
    try:
      await self._persist_handoff_results(job_id, payload)

      discovered: list[DiscoveredResource] = []
      selected: list[DiscoveredResource] = []
      if start_phase == "discover":
        job = await self._active_job(job_id)
        if job is None:
          return
        discovered, selected = await self._discover(job, payload)
        phase = "generate"
      elif start_phase == "generate":
        discovered, selected = await self._resources_for_generate(job_id, payload)

      if phase == "generate":
        job = await self._active_job(job_id)
        if job is None:
          return
        await self._generate(job, discovered, selected)
        phase = "complete"

      job = await self._active_job(job_id)
      if job is None:
        return
      await self._complete(job)
    except BuildCancelledError:
      logger.info("Build %s cancelled during %s", job_id, phase)
    except PhaseFailure as exc:
      await self._fail(job_id, exc.phase, exc.reason)  # type: ignore[arg-type]
    except Exception as exc:  # noqa: BLE001
      logger.error("Build %s crashed during %s", job_id, phase, exc_info=True)
      await self._fail(job_id, phase, f"{type(exc).__name__}: {exc}")

  async def _active_job(self, job_id: str) -> JobRecord | None:
    """Re-read the job; anything but an in-progress job stops the run silently."""

    job = await self._jobs_repo.get_job(job_id)
    if job is None or not job.in_progress:
      logger.info("Build %s is no longer in progress; stopping", job_id)
      return None
    return job

  async def _persist_handoff_results(self, job_id: str, payload: RunPayload) -> None:
    # Handoff results go into the log first so the log stays the single resume source.
    if not payload.results:
      return
    known = await self._progress.latest_results(job_id)
    for result in payload.results:
      if result.url not in known:
        await self._progress.record_result(job_id, result, message=f"{result.title}: carried over from a previous run")

  async def _discover(self, job: JobRecord, payload: RunPayload) -> tuple[list[DiscoveredResource], list[DiscoveredResource]]:
    await self._jobs_repo.update_job(job.job_id, phase="discover", updated_at=_now_iso())
    state = await self._progress.discover_state(job.job_id)
    if state.succeeded:
      logger.info("Reusing logged discovery for build %s", job.job_id)
      discovered = state.discovered or []
      return discovered, state.selected if state.selected is not None else select_resources(discovered, self._selection_limit)

    if payload.discovered:
      return await self._record_discovery(job.job_id, payload.discovered, payload.selected, note="supplied by caller")

    if state.in_flight:
      waited = await self._wait_for_discovery(job.job_id)
      if waited is not None:
        return waited
      if await self._active_job(job.job_id) is None:
        raise BuildCancelledError(job.job_id, DISCOVER_KEY)

    token = self._registry.issue(job.job_id, DISCOVER_KEY)
    try:
      await self._progress.write(job.job_id, "discover", "info", f"Discovering resources for {job.topic}", payload={"marker": DISCOVER_STARTED_MARKER})

      async def _on_tool_call(call: ToolCall) -> None:
        await self._progress.write(job.job_id, "discover", "progress", describe_tool_call(call.name, call.arguments))

      discovered = await self._discovery.discover(job.topic, job.criteria, token, on_tool_call=_on_tool_call)
      token.raise_if_cancelled()
      if not discovered:
        raise PhaseFailure("discover", "no resources discovered")
      return await self._record_discovery(job.job_id, discovered, None)
    except BuildCancelledError:
      # Close the started marker: no process is running this attempt any more.
      await self._progress.write(job.job_id, "discover", "error", DISCOVER_CANCELLED_REASON)
      raise
    finally:
      self._registry.release(job.job_id, DISCOVER_KEY, token)

  async def _record_discovery(self, job_id: str, discovered: list[DiscoveredResource], selected: list[DiscoveredResource] | None, *, note: str | None = None) -> tuple[list[DiscoveredResource], list[DiscoveredResource]]:
    chosen = selected if selected is not None else select_resources(discovered, self._selection_limit)
    message = f"Discovered {len(discovered)} resources, selected {len(chosen)}"
    if note:
      message = f"{message} ({note})"
    payload = {"discovered": [item.model_dump(mode="json") for item in discovered], "selected": [item.model_dump(mode="json") for item in chosen]}
    await self._progress.write(job_id, "discover", "success", message, payload=payload)
    await self._progress.refresh_snapshot(job_id)
    return discovered, chosen

  async def _wait_for_discovery(self, job_id: str) -> tuple[list[DiscoveredResource], list[DiscoveredResource]] | None:
    """Poll the log while another runner discovers. Returns None when that attempt ended without results."""

    # Share the live discover token when this process runs the attempt; otherwise own one.
    existing = self._registry.get(job_id, DISCOVER_KEY)
    owned = existing is None or existing.cancelled
    token = self._registry.issue(job_id, DISCOVER_KEY) if owned else existing
    deadline = time.monotonic() + self._discover_wait
    logger.info("Build %s: discovery already in flight, waiting up to %.0fs", job_id, self._discover_wait)
    try:
      while True:
        await token.sleep(self._discover_poll)
        state = await self._progress.discover_state(job_id)
        if state.succeeded:
          discovered = state.discovered or []
          return discovered, state.selected if state.selected is not None else select_resources(discovered, self._selection_limit)
        if not state.in_flight:
          return None
        if time.monotonic() >= deadline:
          raise PhaseFailure("discover", f"timed out after {self._discover_wait:.0f}s waiting for in-flight discovery")
    finally:
      if owned:
        self._registry.release(job_id, DISCOVER_KEY, token)

  async def _resources_for_generate(self, job_id: str, payload: RunPayload) -> tuple[list[DiscoveredResource], list[DiscoveredResource]]:
    if payload.selected is not None or payload.discovered is not None:
      discovered = payload.discovered or payload.selected or []
      selected = payload.selected if payload.selected is not None else select_resources(discovered, self._selection_limit)
      return discovered, selected
    state = await self._progress.discover_state(job_id)
    if not state.succeeded:
      raise PhaseFailure("generate", "no discovered resources to generate from")
    discovered = state.discovered or []
    return discovered, state.selected if state.selected is not None else select_resources(discovered, self._selection_limit)

  async def _generate(self, job: JobRecord, discovered: list[DiscoveredResource], selected: list[DiscoveredResource]) -> None:
    await self._jobs_repo.update_job(job.job_id, phase="generate", updated_at=_now_iso())
    known = await self._progress.latest_results(job.job_id)

    selected_urls = {resource.url for resource in selected}
    for resource in discovered:
      if resource.url in selected_urls or resource.url in known:
        continue
      skipped = GenerationResult.failed_for(resource, NOT_GENERATED_REASON, attempted=False)
      await self._progress.record_result(job.job_id, skipped, message=f"{resource.title}: {NOT_GENERATED_REASON}")

    pending = [resource for resource in selected if resource.url not in known]
    if len(pending) < len(selected):
      logger.info("Build %s: %d of %d selected resources already have results", job.job_id, len(selected) - len(pending), len(selected))
    if pending:
      await self._progress.write(job.job_id, "generate", "info", f"Generating scripts for {len(pending)} resources")
      await self._scheduler.run_batch(job.job_id, pending, job.criteria)
    await self._progress.refresh_snapshot(job.job_id)

  async def _complete(self, job: JobRecord) -> None:
    await self._jobs_repo.update_job(job.job_id, phase="complete", updated_at=_now_iso())
    results = await self._progress.latest_results(job.job_id)
    usable = [result for result in results.values() if result.usable]
    if not usable:
      raise PhaseFailure("complete", NO_SCRIPTS_REASON)

    await self._progress.write(job.job_id, "complete", "info", f"Materializing {len(usable)} resources")
    await self._materializer.materialize(job, usable)

    # A takeover or discard during materialization wins.
    if await self._active_job(job.job_id) is None:
      return
    now = _now_iso()
    await self._jobs_repo.update_job(job.job_id, status="complete", completed_at=now, updated_at=now)
    await self._progress.write(job.job_id, "complete", "success", f"Build complete with {len(usable)} resources")
    await self._progress.refresh_snapshot(job.job_id)
    logger.info("Build %s complete with %d resources", job.job_id, len(usable))

  async def _fail(self, job_id: str, phase: Phase, reason: str) -> None:
    # Cancellation wins: a job that is no longer in progress is not marked failed.
    if await self._active_job(job_id) is None:
      return
    logger.warning("Build %s failed during %s: %s", job_id, phase, reason)
    await self._progress.write(job_id, phase, "error", reason)
    await self._jobs_repo.update_job(job_id, status="failed", error=reason, updated_at=_now_iso())
    await self._progress.refresh_snapshot(job_id)
