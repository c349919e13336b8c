"""Progress log writes and the snapshot projected from it."""

from __future__ import annotations

import pytest

from app.ai.pipeline.contracts import GenerationResult
from app.jobs.cancellation import DISCOVER_KEY
from app.jobs.progress import DISCOVER_STARTED_MARKER, project_snapshot
from app.jobs.recovery import INTERRUPTED_REASON, sweep_orphaned_jobs
from tests.support import make_job, resource


def _result(index: int, outcome: str, reason: str | None = None) -> GenerationResult:
  item = resource(index)
  return GenerationResult(title=item.title, url=item.url, script="def collect():\n    return []", outcome=outcome, reason=reason)  # type: ignore[arg-type]


@pytest.mark.anyio
async def test_snapshot_is_rebuilt_from_the_log(jobs_repo, progress_log) -> None:
  await jobs_repo.create_job(make_job())
  discovered = [resource(1).model_dump(mode="json"), resource(2).model_dump(mode="json")]
  await progress_log.write("job-1", "discover", "success", "Discovered 2", payload={"discovered": discovered, "selected": discovered[:1]})
  await progress_log.record_result("job-1", _result(1, "failed", "timeout"))
  await progress_log.record_result("job-1", _result(1, "success"))

  snapshot = await progress_log.refresh_snapshot("job-1")

  assert snapshot is not None
  assert [item.url for item in snapshot.discovered] == [resource(1).url, resource(2).url]
  assert [item.url for item in snapshot.selected] == [resource(1).url]
  # The latest terminal event per resource wins.
  assert [result.outcome for result in snapshot.results] == ["success"]
  assert (await jobs_repo.get_job("job-1")).snapshot == snapshot.model_dump(mode="json")
  assert project_snapshot(await progress_log.events("job-1")) == snapshot


@pytest.mark.anyio
async def test_discover_in_flight_until_success_or_error(jobs_repo, progress_log) -> None:
  await jobs_repo.create_job(make_job())
  await progress_log.write("job-1", "discover", "info", "Discovering", payload={"marker": DISCOVER_STARTED_MARKER})
  assert (await progress_log.discover_state("job-1")).in_flight

  await progress_log.write("job-1", "discover", "error", "search failed")
  state = await progress_log.discover_state("job-1")
  assert not state.in_flight
  assert not state.succeeded


@pytest.mark.anyio
async def test_writes_for_deleted_jobs_are_dropped(jobs_repo, progress_log, events_repo) -> None:
  assert await progress_log.write("missing", "generate", "info", "hello") is None
  assert events_repo.events == []


@pytest.mark.anyio
async def test_orphaned_jobs_are_marked_failed_on_startup(jobs_repo, progress_log, registry) -> None:
  await jobs_repo.create_job(make_job("orphan", subscription_id="sub-a", phase="generate"))
  await jobs_repo.create_job(make_job("live", subscription_id="sub-b"))
  await jobs_repo.create_job(make_job("done", subscription_id="sub-c", status="complete"))
  registry.issue("live", resource(1).url)

  swept = await sweep_orphaned_jobs(jobs_repo, registry, progress_log)

  assert swept == ["orphan"]
  orphan = await jobs_repo.get_job("orphan")
  assert orphan.status == "failed"
  assert orphan.error == INTERRUPTED_REASON
  events = await progress_log.events("orphan", level="error")
  assert [(event.phase, event.message) for event in events] == [("generate", INTERRUPTED_REASON)]
  assert (await jobs_repo.get_job("live")).status == "creating"
  assert (await jobs_repo.get_job("done")).status == "complete"


@pytest.mark.anyio
async def test_sweep_pages_past_the_first_batch(jobs_repo, progress_log, registry) -> None:
  for index in range(150):
    await jobs_repo.create_job(make_job(f"orphan-{index}", subscription_id=f"sub-{index}", status="creating"))

  swept = await sweep_orphaned_jobs(jobs_repo, registry, progress_log)

  assert len(swept) == 150
  assert await jobs_repo.find_by_status("creating", limit=500) == []


@pytest.mark.anyio
async def test_sweep_skips_live_jobs_across_batches(jobs_repo, progress_log, registry) -> None:
  for index in range(4):
    await jobs_repo.create_job(make_job(f"live-{index}", subscription_id=f"live-sub-{index}", status="creating"))
    registry.issue(f"live-{index}", DISCOVER_KEY)
  for index in range(5):
    await jobs_repo.create_job(make_job(f"orphan-{index}", subscription_id=f"sub-{index}", status="creating"))

  swept = await sweep_orphaned_jobs(jobs_repo, registry, progress_log, batch_size=2)

  assert sorted(swept) == [f"orphan-{index}" for index in range(5)]
  assert sorted(job.job_id for job in await jobs_repo.find_by_status("creating")) == [f"live-{index}" for index in range(4)]
