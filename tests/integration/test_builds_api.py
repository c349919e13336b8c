"""HTTP surface of the build engine, served over ASGI with in-memory storage."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from app.config import get_settings
from app.core.lifespan import build_service
from app.main import app
from tests.support import InMemoryEventsRepository, InMemoryJobsRepository, ScriptedTransport, make_job, resource


@pytest.fixture
def repos() -> tuple[InMemoryJobsRepository, InMemoryEventsRepository]:
  jobs = InMemoryJobsRepository()
  return jobs, InMemoryEventsRepository(jobs)


@pytest.fixture
async def client(repos):
  jobs, events = repos
  service, _, _ = build_service(get_settings(), jobs_repo=jobs, events_repo=events, transport=ScriptedTransport())
  app.state.build_service = service
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
    yield http
  await service.shutdown()
  del app.state.build_service


@pytest.mark.anyio
async def test_start_build_returns_accepted_job(client) -> None:
  response = await client.post("/v1/builds", json={"subscription_id": "sub-1", "topic": "Rust releases", "criteria": "stable releases only"})
  assert response.status_code == 202
  body = response.json()
  assert body["status"] == "creating"
  assert body["subscription_id"] == "sub-1"
  assert body["criteria"] == "stable releases only"


@pytest.mark.anyio
async def test_active_build_conflict_returns_409(client, repos) -> None:
  jobs, _ = repos
  await jobs.create_job(make_job("existing", status="idle"))
  response = await client.post("/v1/builds", json={"subscription_id": "sub-1", "topic": "Rust releases"})
  assert response.status_code == 409
  assert response.json()["activeJobId"] == "existing"


@pytest.mark.anyio
async def test_unknown_fields_are_rejected(client) -> None:
  response = await client.post("/v1/builds", json={"subscription_id": "sub-1", "topic": "Rust", "priority": 5})
  assert response.status_code == 422
  assert all("input" not in error for error in response.json()["detail"])


@pytest.mark.anyio
async def test_unknown_build_returns_404(client) -> None:
  assert (await client.get("/v1/builds/missing/progress")).status_code == 404
  assert (await client.post("/v1/builds/missing/abort", json={"resource_key": "https://example.com"})).status_code == 404


@pytest.mark.anyio
async def test_progress_groups_events_by_phase_and_resource(client, repos) -> None:
  jobs, events = repos
  await jobs.create_job(make_job(status="failed", phase="generate"))
  await events.append_event(job_id="job-1", phase="discover", level="success", message="Discovered 1", payload={"discovered": [resource(1).model_dump(mode="json")]})
  await events.append_event(job_id="job-1", phase="generate", level="progress", message="writing", resource_key=resource(1).url)

  response = await client.get("/v1/builds/job-1/progress")

  assert response.status_code == 200
  body = response.json()
  assert body["job"]["status"] == "failed"
  assert [event["message"] for event in body["phases"]["discover"]] == ["Discovered 1"]
  assert body["phases"]["complete"] == []
  assert [event["message"] for event in body["resources"][resource(1).url]] == ["writing"]
  assert [item["url"] for item in body["snapshot"]["discovered"]] == [resource(1).url]
  assert body["running_resources"] == []


@pytest.mark.anyio
async def test_abort_of_idle_resource_reports_false(client, repos) -> None:
  jobs, _ = repos
  await jobs.create_job(make_job(status="failed"))
  response = await client.post("/v1/builds/job-1/abort", json={"resource_key": resource(1).url})
  assert response.status_code == 200
  assert response.json() == {"aborted": False}


@pytest.mark.anyio
async def test_retry_of_unknown_resource_without_title_conflicts(client, repos) -> None:
  jobs, _ = repos
  await jobs.create_job(make_job(status="failed"))
  response = await client.post("/v1/builds/job-1/retry", json={"resource_url": "https://unknown.example.com"})
  assert response.status_code == 409


@pytest.mark.anyio
async def test_llm_usage_is_empty_for_a_new_build(client, repos) -> None:
  jobs, _ = repos
  await jobs.create_job(make_job(status="failed"))
  response = await client.get("/v1/builds/job-1/llm-usage")
  assert response.status_code == 200
  assert response.json() == {"job_id": "job-1", "resources": {}}


@pytest.mark.anyio
async def test_stream_replays_history_for_finished_builds(client, repos) -> None:
  jobs, events = repos
  await jobs.create_job(make_job(status="failed"))
  await events.append_event(job_id="job-1", phase="discover", level="error", message="search failed")

  response = await client.get("/v1/builds/job-1/stream")

  assert response.status_code == 200
  assert response.headers["content-type"].startswith("text/event-stream")
  assert '"message": "search failed"' in response.text
  assert response.text.startswith("id: 1\ndata: ")


@pytest.mark.anyio
async def test_discard_removes_the_build(client, repos) -> None:
  jobs, _ = repos
  await jobs.create_job(make_job(status="failed"))
  assert (await client.delete("/v1/builds/job-1")).status_code == 204
  assert (await client.get("/v1/builds/job-1/progress")).status_code == 404


@pytest.mark.anyio
async def test_takeover_returns_snapshot(client, repos) -> None:
  jobs, _ = repos
  await jobs.create_job(make_job())
  response = await client.post("/v1/builds/job-1/takeover")
  assert response.status_code == 200
  assert response.json()["snapshot"]["discovered"] == []
  assert (await jobs.get_job("job-1")).status == "idle"
