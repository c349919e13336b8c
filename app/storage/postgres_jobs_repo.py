"""Postgres-backed repositories for build jobs using SQLAlchemy."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from app.core.database import get_session_factory
from app.jobs.errors import ActiveJobExistsError, PersistenceConflictError
from app.jobs.models import JobRecord, JobStatus, LogLevel, Phase, ProgressEvent
from app.schema.jobs import BuildEvent, BuildJob
from app.storage.jobs_repo import JobsRepository, ProgressEventsRepository


def _now_iso() -> str:
  return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _session_factory():  # type: ignore
  session_factory = get_session_factory()
  if session_factory is None:
    raise RuntimeError("Database not initialized")
  return session_factory


class PostgresJobsRepository(JobsRepository):
  """Persist build jobs to Postgres using SQLAlchemy."""

  def __init__(self) -> None:
    self._session_factory = _session_factory()

  async def create_job(self, record: JobRecord) -> None:
    async with self._session_factory() as session:
      job = BuildJob(
        job_id=record.job_id,
        subscription_id=record.subscription_id,
        topic=record.topic,
        criteria=record.criteria,
        status=record.status,
        phase=record.phase,
        snapshot_json=record.snapshot,
        error=record.error,
        adopted_from_job_id=record.adopted_from_job_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
      )
      session.add(job)
      try:
        await session.commit()
      except IntegrityError as exc:
        # The partial unique index allows one non-terminal job per subscription.
        await session.rollback()
        active = await self.find_active_for_subscription(record.subscription_id)
        if active is None:
          raise
        raise ActiveJobExistsError(record.subscription_id, active.job_id) from exc

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(BuildJob, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def update_job(
    self,
    job_id: str,
    *,
    status: JobStatus | None = None,
    phase: Phase | None = None,
    snapshot: dict[str, Any] | None = None,
    error: str | None = None,
    completed_at: str | None = None,
    updated_at: str | None = None,
  ) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(BuildJob, job_id)
      if row is None:
        return None
      if status is not None:
        row.status = status
      if phase is not None:
        row.phase = phase
      if snapshot is not None:
        row.snapshot_json = snapshot
      if error is not None:
        row.error = error
      if completed_at is not None:
        row.completed_at = completed_at
      row.updated_at = updated_at or _now_iso()
      session.add(row)
      await session.commit()
      await session.refresh(row)
      return self._model_to_record(row)

  async def delete_job(self, job_id: str) -> bool:
    async with self._session_factory() as session:
      await session.execute(delete(BuildEvent).where(BuildEvent.job_id == job_id))
      result = await session.execute(delete(BuildJob).where(BuildJob.job_id == job_id))
      await session.commit()
      return bool(result.rowcount)

  async def find_active_for_subscription(self, subscription_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = select(BuildJob).where(BuildJob.subscription_id == subscription_id, BuildJob.status.in_(("idle", "creating"))).order_by(BuildJob.created_at.desc()).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return self._model_to_record(row)

  async def find_by_status(self, status: JobStatus, limit: int = 100) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(BuildJob).where(BuildJob.status == status).order_by(BuildJob.created_at.asc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  def _model_to_record(self, row: BuildJob) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      subscription_id=row.subscription_id,
      topic=row.topic,
      criteria=row.criteria,
      status=row.status,  # type: ignore[arg-type]
      phase=row.phase,  # type: ignore[arg-type]
      snapshot=row.snapshot_json,
      error=row.error,
      adopted_from_job_id=row.adopted_from_job_id,
      created_at=row.created_at,
      updated_at=row.updated_at,
      completed_at=row.completed_at,
    )


class PostgresProgressEventsRepository(ProgressEventsRepository):
  """Append-only progress events stored in Postgres."""

  def __init__(self) -> None:
    self._session_factory = _session_factory()

  async def append_event(self, *, job_id: str, phase: Phase, level: LogLevel, message: str, payload: dict[str, Any] | None = None, resource_key: str | None = None) -> ProgressEvent:
    async with self._session_factory() as session:
      row = BuildEvent(job_id=job_id, phase=phase, level=level, message=message, payload_json=payload, resource_key=resource_key)
      session.add(row)
      try:
        await session.commit()
      except IntegrityError as exc:
        # The parent job row was deleted concurrently (discard).
        await session.rollback()
        raise PersistenceConflictError(f"Job {job_id} no longer exists.") from exc
      await session.refresh(row)
      return self._row_to_event(row)

  async def list_events(self, *, job_id: str, phase: Phase | None = None, level: LogLevel | None = None, after_id: int | None = None) -> list[ProgressEvent]:
    async with self._session_factory() as session:
      stmt = select(BuildEvent).where(BuildEvent.job_id == job_id)
      if phase is not None:
        stmt = stmt.where(BuildEvent.phase == phase)
      if level is not None:
        stmt = stmt.where(BuildEvent.level == level)
      if after_id is not None:
        stmt = stmt.where(BuildEvent.id > after_id)
      stmt = stmt.order_by(BuildEvent.id.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._row_to_event(row) for row in rows]

  async def delete_resource_events(self, *, job_id: str, resource_key: str) -> int:
    async with self._session_factory() as session:
      result = await session.execute(delete(BuildEvent).where(BuildEvent.job_id == job_id, BuildEvent.resource_key == resource_key))
      await session.commit()
      return int(result.rowcount or 0)

  def _row_to_event(self, row: BuildEvent) -> ProgressEvent:
    created_at = row.created_at.isoformat() if isinstance(row.created_at, datetime) else str(row.created_at)
    return ProgressEvent(
      id=int(row.id),
      job_id=row.job_id,
      phase=row.phase,  # type: ignore[arg-type]
      level=row.level,  # type: ignore[arg-type]
      message=row.message,
      resource_key=row.resource_key,
      payload=row.payload_json,
      created_at=created_at,
    )
