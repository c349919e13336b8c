"""Shared fixtures for the build engine tests."""

from __future__ import annotations

import pytest

from app.jobs.cancellation import CancellationRegistry
from app.jobs.progress import ProgressLog
from tests.support import InMemoryEventsRepository, InMemoryJobsRepository


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
def jobs_repo() -> InMemoryJobsRepository:
  return InMemoryJobsRepository()


@pytest.fixture
def events_repo(jobs_repo: InMemoryJobsRepository) -> InMemoryEventsRepository:
  return InMemoryEventsRepository(jobs_repo)


@pytest.fixture
def progress_log(jobs_repo: InMemoryJobsRepository, events_repo: InMemoryEventsRepository) -> ProgressLog:
  return ProgressLog(events_repo=events_repo, jobs_repo=jobs_repo)


@pytest.fixture
def registry() -> CancellationRegistry:
  return CancellationRegistry()
