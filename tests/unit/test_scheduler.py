"""Per-resource task scheduling: concurrency cap, abort and retry."""

from __future__ import annotations

import asyncio

import pytest

from app.ai.pipeline.contracts import ABORTED_REASON
from app.jobs.errors import InvalidJobStateError
from app.jobs.scheduler import SourceTaskScheduler
from tests.support import FakeGenerator, make_job, resource


@pytest.fixture
async def job(jobs_repo):
  record = make_job()
  await jobs_repo.create_job(record)
  return record


def _scheduler(generator, progress_log, registry, *, max_concurrency: int = 5) -> SourceTaskScheduler:
  return SourceTaskScheduler(generator=generator, progress_log=progress_log, registry=registry, max_concurrency=max_concurrency)


@pytest.mark.anyio
async def test_concurrency_is_capped_per_job(job, progress_log, registry) -> None:
  generator = FakeGenerator(delay=0.02)
  scheduler = _scheduler(generator, progress_log, registry, max_concurrency=2)

  results = await scheduler.run_batch(job.job_id, [resource(index) for index in range(5)], None)

  assert len(results) == 5
  assert generator.max_running == 2
  assert registry.live_keys(job.job_id) == []
  latest = await progress_log.latest_results(job.job_id)
  assert {result.outcome for result in latest.values()} == {"success"}


@pytest.mark.anyio
async def test_one_crashing_task_does_not_affect_siblings(job, progress_log, registry) -> None:
  generator = FakeGenerator(fail_urls={resource(2).url})
  results = await _scheduler(generator, progress_log, registry).run_batch(job.job_id, [resource(1), resource(2), resource(3)], None)

  by_url = {result.url: result for result in results}
  assert by_url[resource(1).url].outcome == "success"
  assert by_url[resource(3).url].outcome == "success"
  assert by_url[resource(2).url].outcome == "failed"
  assert "generator exploded" in (by_url[resource(2).url].reason or "")


@pytest.mark.anyio
async def test_abort_logs_exactly_once_and_retry_is_allowed(job, progress_log, registry, events_repo) -> None:
  generator = FakeGenerator(block=True)
  scheduler = _scheduler(generator, progress_log, registry)
  target = resource(1)

  batch = asyncio.create_task(scheduler.run_batch(job.job_id, [target], None))
  await generator.started.wait()
  assert scheduler.is_running(job.job_id, target.url)

  assert await scheduler.abort(job.job_id, target.url) is True
  assert await scheduler.abort(job.job_id, target.url) is False
  assert await batch == []

  aborted = [event for event in events_repo.events if event.resource_key == target.url and event.level == "error"]
  assert len(aborted) == 1
  assert ABORTED_REASON in aborted[0].message
  assert (await progress_log.latest_results(job.job_id))[target.url].reason == ABORTED_REASON

  generator.block = False
  result = await scheduler.start_retry(job.job_id, target, None, hint="use the API")
  assert result is not None and result.outcome == "success"
  assert generator.calls[-1] == (target.url, "use the API")
  # The retry starts from a clean slate for this resource.
  assert not [event for event in events_repo.events if event.resource_key == target.url and event.level == "error"]
  assert (await progress_log.latest_results(job.job_id))[target.url].outcome == "success"


@pytest.mark.anyio
async def test_abort_of_idle_resource_is_a_no_op(job, progress_log, registry, events_repo) -> None:
  scheduler = _scheduler(FakeGenerator(), progress_log, registry)
  assert await scheduler.abort(job.job_id, resource(1).url) is False
  assert events_repo.events == []


@pytest.mark.anyio
async def test_retry_refuses_a_resource_that_is_still_running(job, progress_log, registry) -> None:
  generator = FakeGenerator(block=True)
  scheduler = _scheduler(generator, progress_log, registry)
  batch = asyncio.create_task(scheduler.run_batch(job.job_id, [resource(1)], None))
  await generator.started.wait()

  with pytest.raises(InvalidJobStateError):
    scheduler.start_retry(job.job_id, resource(1), None)

  assert scheduler.abort_all(job.job_id) == [resource(1).url]
  assert await batch == []


@pytest.mark.anyio
async def test_abort_all_writes_no_terminal_events(job, progress_log, registry, events_repo) -> None:
  generator = FakeGenerator(block=True)
  scheduler = _scheduler(generator, progress_log, registry)
  batch = asyncio.create_task(scheduler.run_batch(job.job_id, [resource(1), resource(2)], None))
  await generator.started.wait()

  scheduler.abort_all(job.job_id)
  assert await batch == []
  assert [event for event in events_repo.events if event.level in ("error", "success")] == []
  assert not registry.has_live_tokens(job.job_id)
