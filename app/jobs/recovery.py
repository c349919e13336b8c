"""Startup recovery for builds orphaned by a process restart."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from app.jobs.cancellation import CancellationRegistry
from app.jobs.progress import ProgressLog
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "interrupted by process restart"
_SWEEP_BATCH = 100


async def sweep_orphaned_jobs(jobs_repo: JobsRepository, registry: CancellationRegistry, progress_log: ProgressLog, *, batch_size: int = _SWEEP_BATCH) -> list[str]:
  """Mark every in-progress job without live work as failed.

  Runs once at startup, before any build is launched. Pages through ``creating``
  jobs until a batch yields nothing new. Returns the swept job ids.
  """
  swept: list[str] = []
  seen: set[str] = set()
  while True:
    jobs = [job for job in await jobs_repo.find_by_status("creating", limit=batch_size + len(seen)) if job.job_id not in seen]
    if not jobs:
      break
    for job in jobs:
      seen.add(job.job_id)
      # Live jobs stay creating, so they come back in later batches and are skipped via seen.
      if registry.has_live_tokens(job.job_id):
        continue
      phase = job.phase or "discover"
      await progress_log.write(job.job_id, phase, "error", INTERRUPTED_REASON)
      now = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
      await jobs_repo.update_job(job.job_id, status="failed", error=INTERRUPTED_REASON, updated_at=now)
      await progress_log.refresh_snapshot(job.job_id)
      swept.append(job.job_id)

  if swept:
    logger.warning("Marked %d orphaned builds as failed: %s", len(swept), ", ".join(swept))
  return swept
