"""Bounded-concurrency execution of per-resource generation tasks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from app.ai.agents.generator import ScriptGenerator
from app.ai.pipeline.contracts import ABORTED_REASON, DiscoveredResource, GenerationResult
from app.jobs.cancellation import CancellationRegistry, CancellationToken
from app.jobs.errors import BuildCancelledError, InvalidJobStateError
from app.jobs.progress import ProgressLog
from app.telemetry.llm_calls import LlmCallStore

logger = logging.getLogger(__name__)


class SourceTaskScheduler:
  """Run one generation task per resource with per-job concurrency limits.

  A failure in one task never affects its siblings. Cancelled tasks return
  ``None`` and write nothing; the abort that cancelled them already logged.
  """

  def __init__(self, *, generator: ScriptGenerator, progress_log: ProgressLog, registry: CancellationRegistry, max_concurrency: int = 5, call_store: LlmCallStore | None = None) -> None:
    self._generator = generator
    self._progress = progress_log
    self._registry = registry
    self._max_concurrency = max_concurrency
    self._call_store = call_store
    self._semaphores: dict[str, asyncio.Semaphore] = {}
    self._resources: dict[tuple[str, str], DiscoveredResource] = {}
    self._background: set[asyncio.Task[GenerationResult | None]] = set()

  def _semaphore(self, job_id: str) -> asyncio.Semaphore:
    semaphore = self._semaphores.get(job_id)
    if semaphore is None:
      semaphore = asyncio.Semaphore(self._max_concurrency)
      self._semaphores[job_id] = semaphore
    return semaphore

  def is_running(self, job_id: str, resource_key: str) -> bool:
    return self._registry.is_live(job_id, resource_key)

  async def run_batch(self, job_id: str, resources: Sequence[DiscoveredResource], criteria: str | None) -> list[GenerationResult]:
    """Generate every resource and return the results that were not cancelled."""
    scheduled: list[tuple[DiscoveredResource, CancellationToken]] = []
    for resource in resources:
      if self._registry.is_live(job_id, resource.url):
        logger.info("Skipping %s for job %s: a task for it is already running", resource.url, job_id)
        continue
      # Issue tokens before any task waits so queued work can be aborted too.
      scheduled.append((resource, self._issue(job_id, resource)))

    outcomes = await asyncio.gather(*(self._run_one(job_id, resource, criteria, token) for resource, token in scheduled))
    return [result for result in outcomes if result is not None]

  def start_retry(self, job_id: str, resource: DiscoveredResource, criteria: str | None, *, hint: str | None = None) -> asyncio.Task[GenerationResult | None]:
    """Start a fresh generation for one resource in the background."""

    if self._registry.is_live(job_id, resource.url):
      raise InvalidJobStateError(f"Resource {resource.url} is already being generated.")
    self._registry.clear_aborted(job_id, resource.url)
    token = self._issue(job_id, resource)
    task = asyncio.create_task(self._retry(job_id, resource, criteria, token, hint))
    self._background.add(task)
    task.add_done_callback(self._background.discard)
    return task

  async def retry(self, job_id: str, resource: DiscoveredResource, criteria: str | None, *, hint: str | None = None) -> GenerationResult | None:
    return await self.start_retry(job_id, resource, criteria, hint=hint)

  async def abort(self, job_id: str, resource_key: str) -> bool:
    """Abort one running resource and log it exactly once."""

    if not self._registry.is_live(job_id, resource_key):
      return False
    if not self._registry.mark_aborted(job_id, resource_key):
      return False
    self._registry.cancel(job_id, resource_key)

    resource = self._resources.get((job_id, resource_key)) or DiscoveredResource(title=resource_key, url=resource_key)
    await self._progress.record_result(job_id, GenerationResult.failed_for(resource, ABORTED_REASON), message=f"{resource.title}: {ABORTED_REASON}")
    await self._progress.refresh_snapshot(job_id)
    logger.info("Aborted %s for job %s", resource_key, job_id)
    return True

  def abort_all(self, job_id: str) -> list[str]:
    """Fire every token of a job without writing any events."""

    keys = self._registry.cancel_all(job_id)
    for key in keys:
      self._registry.mark_aborted(job_id, key)
    if keys:
      logger.info("Cancelled %d running tasks for job %s", len(keys), job_id)
    return keys

  def forget_job(self, job_id: str) -> None:
    self._semaphores.pop(job_id, None)
    for key in [key for key in self._resources if key[0] == job_id]:
      del self._resources[key]

  def _issue(self, job_id: str, resource: DiscoveredResource) -> CancellationToken:
    self._resources[(job_id, resource.url)] = resource
    return self._registry.issue(job_id, resource.url)

  async def _retry(self, job_id: str, resource: DiscoveredResource, criteria: str | None, token: CancellationToken, hint: str | None) -> GenerationResult | None:
    await self._progress.clear_resource(job_id, resource.url)
    if self._call_store is not None:
      self._call_store.clear_resource(job_id, resource.url)
    return await self._run_one(job_id, resource, criteria, token, hint=hint)

  async def _run_one(self, job_id: str, resource: DiscoveredResource, criteria: str | None, token: CancellationToken, *, hint: str | None = None) -> GenerationResult | None:
    key = resource.url

    async def _on_progress(message: str) -> None:
      if not token.cancelled:
        await self._progress.write(job_id, "generate", "progress", f"[{resource.title}] {message}", resource_key=key)

    try:
      async with self._semaphore(job_id):
        token.raise_if_cancelled()
        await self._progress.write(job_id, "generate", "info", f"Generating script for {resource.title}", resource_key=key)
        result = await self._generator.generate(resource, criteria, token, hint=hint, on_progress=_on_progress)
        # An abort that lands after generation finished has already logged the outcome.
        token.raise_if_cancelled()
        await self._record(job_id, result)
        return result
    except BuildCancelledError:
      logger.info("Generation for %s in job %s was cancelled", key, job_id)
      return None
    except Exception as exc:  # noqa: BLE001
      if token.cancelled:
        return None
      logger.error("Generation for %s in job %s crashed", key, job_id, exc_info=True)
      result = GenerationResult.failed_for(resource, f"unexpected error: {exc}")
      await self._record(job_id, result)
      return result
    finally:
      self._registry.release(job_id, key, token)

  async def _record(self, job_id: str, result: GenerationResult) -> None:
    await self._progress.record_result(job_id, result, message=f"{result.title}: {result.reason}" if result.reason else None)
    await self._progress.refresh_snapshot(job_id)
