from __future__ import annotations

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class BuildJob(Base):
  __tablename__ = "build_jobs"
  __table_args__ = (Index("ux_build_jobs_active_subscription", "subscription_id", unique=True, postgresql_where=text("status IN ('idle', 'creating')")),)

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  subscription_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  topic: Mapped[str] = mapped_column(Text, nullable=False)
  criteria: Mapped[str | None] = mapped_column(Text, nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  phase: Mapped[str | None] = mapped_column(String, nullable=True)
  snapshot_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  adopted_from_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False, server_default=text("""to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD"T"HH24:MI:SS"Z"')"""))
  updated_at: Mapped[str] = mapped_column(String, nullable=False, server_default=text("""to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD"T"HH24:MI:SS"Z"')"""))
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)


class BuildEvent(Base):
  __tablename__ = "build_events"
  __table_args__ = (Index("ix_build_events_job_phase_level", "job_id", "phase", "level"), Index("ix_build_events_job_resource", "job_id", "resource_key"))

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("build_jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  phase: Mapped[str] = mapped_column(String, nullable=False)
  level: Mapped[str] = mapped_column(String, nullable=False)
  resource_key: Mapped[str | None] = mapped_column(Text, nullable=True)
  message: Mapped[str] = mapped_column(Text, nullable=False)
  payload_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
