from datetime import datetime, timezone
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, Float, DateTime, ForeignKey, Index, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from batch_engine.db.session import Base
from batch_engine.domain.states import JobStatus

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class UTCDateTime(TypeDecorator):
    """Stores naive UTC, always hands back aware UTC (SQLite drops tzinfo)."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(String, index=True, nullable=False)

    # Core orchestration fields
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.QUEUED, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=1)

    # Work description
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    chunk_size: Mapped[int] = mapped_column(Integer, default=100)
    timeout_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Retry logic
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Progress and per-item outcomes of the current (or last) attempt
    progress: Mapped[int] = mapped_column(Integer, default=0)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)

    __table_args__ = (
        # Cleanup scans terminal jobs by age
        Index("ix_jobs_status_finished", "status", "finished_at"),
    )

class QueueEntry(Base):
    """A reference to a job waiting for a worker. Holds no job state."""
    __tablename__ = "queue_entries"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), unique=True)
    priority: Mapped[int] = mapped_column(Integer, default=1)
    available_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, index=True)
    enqueued_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_queue_poll", "available_at", "priority"),
    )

class JobLease(Base):
    __tablename__ = "job_leases"

    job_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True)
    worker_id: Mapped[str] = mapped_column(String, nullable=False)
    lease_token: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), default=uuid4)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    last_heartbeat_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    # Context (e.g. worker_id, error message, attempt number, retry delay)
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

class JobCounter(Base):
    """Live number of jobs per status, adjusted in every transition's transaction."""
    __tablename__ = "job_counters"

    status: Mapped[str] = mapped_column(String, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
