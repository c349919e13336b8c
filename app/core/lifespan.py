import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.ai.agent_loop import AgentLoop
from app.ai.agents.discovery import DiscoveryAgent
from app.ai.agents.generator import ScriptGenerator
from app.ai.agents.reviewer import QualityReviewer
from app.ai.providers.openai_chat import OpenAIChatTransport
from app.ai.tools.toolsets import ToolKit
from app.ai.validator import MultiLayerValidator
from app.config import Settings
from app.core.database import create_tables
from app.core.logging import _initialize_logging
from app.jobs.cancellation import CancellationRegistry
from app.jobs.orchestrator import PhaseOrchestrator
from app.jobs.progress import ProgressLog
from app.jobs.recovery import sweep_orphaned_jobs
from app.jobs.scheduler import SourceTaskScheduler
from app.sandbox.runner import ScriptSandbox
from app.services.builds import BuildService
from app.services.materialize import build_materializer
from app.storage.jobs_repo import JobsRepository, ProgressEventsRepository
from app.telemetry.llm_calls import LlmCallStore


def build_service(settings: Settings, *, jobs_repo: JobsRepository, events_repo: ProgressEventsRepository, transport: OpenAIChatTransport | None = None) -> tuple[BuildService, CancellationRegistry, ProgressLog]:
  """Wire every collaborator of the build pipeline for one process."""
  registry = CancellationRegistry()
  progress_log = ProgressLog(events_repo=events_repo, jobs_repo=jobs_repo)
  call_store = LlmCallStore()
  toolkit = ToolKit.from_settings(settings)
  loop = AgentLoop(transport or OpenAIChatTransport.from_settings(settings), call_store=call_store if settings.llm_audit_enabled else None)

  reviewer = QualityReviewer(loop, toolkit.review_tools(), max_iterations=settings.review_max_iterations)
  validator = MultiLayerValidator(ScriptSandbox.from_settings(settings), reviewer)
  generator = ScriptGenerator(loop, toolkit, validator, max_iterations=settings.generation_max_iterations, max_validate_attempts=settings.validate_max_attempts, max_fetches=settings.sandbox_max_fetches)
  discovery = DiscoveryAgent(loop, toolkit, max_iterations=settings.discovery_max_iterations)
  scheduler = SourceTaskScheduler(generator=generator, progress_log=progress_log, registry=registry, max_concurrency=settings.max_concurrent_resources, call_store=call_store)
  orchestrator = PhaseOrchestrator(
    jobs_repo=jobs_repo,
    progress_log=progress_log,
    registry=registry,
    discovery=discovery,
    scheduler=scheduler,
    materializer=build_materializer(settings),
    selection_limit=settings.max_selected_resources,
    discover_wait_seconds=settings.discover_wait_seconds,
    discover_poll_seconds=settings.discover_poll_seconds,
  )
  service = BuildService(jobs_repo=jobs_repo, progress_log=progress_log, registry=registry, orchestrator=orchestrator, scheduler=scheduler, call_store=call_store)
  return service, registry, progress_log


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging and storage, recover orphaned builds, then serve."""
  from app.config import get_settings
  from app.storage.postgres_jobs_repo import PostgresJobsRepository, PostgresProgressEventsRepository

  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")

  try:
    _initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except Exception:  # noqa: BLE001
    logger.warning("Initial logging setup failed; continuing with default handlers.", exc_info=True)

  if settings.auto_create_tables:
    await create_tables()
    logger.info("Build tables ensured.")

  jobs_repo = PostgresJobsRepository()
  service, registry, progress_log = build_service(settings, jobs_repo=jobs_repo, events_repo=PostgresProgressEventsRepository())
  # No work is live yet, so every creating job belongs to a previous process.
  await sweep_orphaned_jobs(jobs_repo, registry, progress_log)
  app.state.build_service = service

  try:
    yield
  finally:
    await service.shutdown()
    logger.info("Build service stopped.")
