"""In-memory repositories, a scripted model transport and other test doubles."""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from app.ai.pipeline.contracts import CollectedItem, DiscoveredResource, GenerationResult
from app.ai.providers.base import ChatStep, Message
from app.ai.tools.feeds import FeedChecker, FeedRouteIndex
from app.ai.tools.toolsets import ToolKit
from app.ai.tools.web import BrowserFetcher, WebFetcher
from app.jobs.cancellation import CancellationToken
from app.jobs.errors import ActiveJobExistsError, PersistenceConflictError
from app.jobs.models import TERMINAL_STATUSES, JobRecord, ProgressEvent
from app.sandbox.contract import SandboxRunResult, SandboxUnavailableError

NOW = "2026-01-01T00:00:00Z"


class InMemoryJobsRepository:
  """Dict-backed job store with the one-active-job-per-subscription rule."""

  def __init__(self) -> None:
    self.jobs: dict[str, JobRecord] = {}
    self.events: InMemoryEventsRepository | None = None

  async def create_job(self, record: JobRecord) -> None:
    active = await self.find_active_for_subscription(record.subscription_id)
    if active is not None:
      raise ActiveJobExistsError(record.subscription_id, active.job_id)
    self.jobs[record.job_id] = record

  async def get_job(self, job_id: str) -> JobRecord | None:
    return self.jobs.get(job_id)

  async def update_job(self, job_id: str, **kwargs: Any) -> JobRecord | None:
    record = self.jobs.get(job_id)
    if record is None:
      return None
    record = replace(record, **{key: value for key, value in kwargs.items() if value is not None})
    self.jobs[job_id] = record
    return record

  async def delete_job(self, job_id: str) -> bool:
    if self.events is not None:
      self.events.drop_job(job_id)
    return self.jobs.pop(job_id, None) is not None

  async def find_active_for_subscription(self, subscription_id: str) -> JobRecord | None:
    for record in self.jobs.values():
      if record.subscription_id == subscription_id and record.status not in TERMINAL_STATUSES:
        return record
    return None

  async def find_by_status(self, status: str, limit: int = 100) -> list[JobRecord]:
    return [record for record in self.jobs.values() if record.status == status][:limit]


class InMemoryEventsRepository:
  """Append-only event list that rejects writes for jobs that no longer exist."""

  def __init__(self, jobs: InMemoryJobsRepository) -> None:
    self._jobs = jobs
    self._ids = itertools.count(1)
    self.events: list[ProgressEvent] = []
    jobs.events = self

  async def append_event(self, *, job_id: str, phase: str, level: str, message: str, payload: dict[str, Any] | None = None, resource_key: str | None = None) -> ProgressEvent:
    if job_id not in self._jobs.jobs:
      raise PersistenceConflictError(f"Job {job_id} does not exist.")
    event = ProgressEvent(id=next(self._ids), job_id=job_id, phase=phase, level=level, message=message, created_at=NOW, resource_key=resource_key, payload=payload)  # type: ignore[arg-type]
    self.events.append(event)
    return event

  async def list_events(self, *, job_id: str, phase: str | None = None, level: str | None = None, after_id: int | None = None) -> list[ProgressEvent]:
    return [
      event
      for event in self.events
      if event.job_id == job_id and (phase is None or event.phase == phase) and (level is None or event.level == level) and (after_id is None or event.id > after_id)
    ]

  async def delete_resource_events(self, *, job_id: str, resource_key: str) -> int:
    before = len(self.events)
    self.events = [event for event in self.events if not (event.job_id == job_id and event.resource_key == resource_key)]
    return before - len(self.events)

  def drop_job(self, job_id: str) -> None:
    self.events = [event for event in self.events if event.job_id != job_id]


class ScriptedTransport:
  """Chat transport that replays prepared steps and records every request."""

  model = "scripted-model"

  def __init__(self, steps: list[ChatStep | Callable[[list[Message]], ChatStep]] | None = None) -> None:
    self._steps = list(steps or [])
    self.requests: list[list[Message]] = []

  def add(self, *steps: ChatStep | Callable[[list[Message]], ChatStep]) -> None:
    self._steps.extend(steps)

  async def step(self, messages: list[Message], tools: list[dict[str, Any]]) -> ChatStep:
    self.requests.append(list(messages))
    if not self._steps:
      raise AssertionError("ScriptedTransport ran out of steps")
    step = self._steps.pop(0)
    return step(messages) if callable(step) else step


class FakeSandbox:
  """Script runner replaying queued results; the last one repeats. Exception entries are raised."""

  def __init__(self, *results: SandboxRunResult | Exception) -> None:
    self._results = list(results)
    self.scripts: list[str] = []

  async def run(self, script: str) -> SandboxRunResult:
    self.scripts.append(script)
    result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
    if isinstance(result, Exception):
      raise result
    return result


def unavailable_sandbox() -> FakeSandbox:
  return FakeSandbox(SandboxUnavailableError("no interpreter"))


class FakeSearch:
  async def search(self, query: str, **kwargs: Any) -> list[dict[str, Any]]:
    return [{"title": f"Result for {query}", "url": "https://example.com/feed", "content": "snippet"}]


class RecordingMaterializer:
  def __init__(self, *, error: Exception | None = None) -> None:
    self.calls: list[tuple[str, list[GenerationResult]]] = []
    self._error = error

  async def materialize(self, job: JobRecord, results: list[GenerationResult]) -> None:
    self.calls.append((job.job_id, results))
    if self._error is not None:
      raise self._error


class FakeGenerator:
  """Stands in for ScriptGenerator inside scheduler and orchestrator tests."""

  def __init__(self, *, block: bool = False, delay: float = 0.0, fail_urls: set[str] | None = None) -> None:
    self.block = block
    self.delay = delay
    self.fail_urls = fail_urls or set()
    self.calls: list[tuple[str, str | None]] = []
    self.started = asyncio.Event()
    self.running = 0
    self.max_running = 0

  async def generate(self, resource: DiscoveredResource, criteria: str | None, token: CancellationToken, *, hint: str | None = None, on_progress: Any = None) -> GenerationResult:
    self.calls.append((resource.url, hint))
    self.running += 1
    self.max_running = max(self.max_running, self.running)
    self.started.set()
    try:
      if on_progress is not None:
        await on_progress("writing script")
      if self.block:
        await token.sleep(30)
      elif self.delay:
        await token.sleep(self.delay)
      if resource.url in self.fail_urls:
        raise RuntimeError("generator exploded")
      return GenerationResult(title=resource.title, url=resource.url, description=resource.description, script="def collect():\n    return []", items=[CollectedItem(title="Item", url=f"{resource.url}/1")], outcome="success")
    finally:
      self.running -= 1


def make_job(job_id: str = "job-1", *, subscription_id: str = "sub-1", status: str = "creating", phase: str | None = "discover", criteria: str | None = None) -> JobRecord:
  return JobRecord(job_id=job_id, subscription_id=subscription_id, topic="Rust releases", criteria=criteria, status=status, phase=phase, created_at=NOW, updated_at=NOW)  # type: ignore[arg-type]


def resource(index: int, *, recommended: bool = False) -> DiscoveredResource:
  return DiscoveredResource(title=f"Source {index}", url=f"https://source{index}.example.com/feed", description=f"Feed {index}", recommended=recommended)


def make_toolkit(*, search: Any = None) -> ToolKit:
  return ToolKit(fetcher=WebFetcher(), browser=BrowserFetcher(), search=search, feed_index=FeedRouteIndex("http://rsshub.test"), feed_checker=FeedChecker())


def discovery_answer(*indexes: int, recommended: tuple[int, ...] = ()) -> ChatStep:
  """Final discovery turn listing the given sources as a JSON block."""
  sources = [{"title": f"Source {index}", "url": resource(index).url, "recommended": index in recommended} for index in indexes]
  return ChatStep(text=f"```json\n{json.dumps(sources)}\n```")
