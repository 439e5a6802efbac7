from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.api.v1.metrics import JOB_SUBMITTED_TOTAL, JOB_FINISHED_TOTAL
from batch_engine.db.models import Job, JobEventLog, utcnow
from batch_engine.domain.states import JobStatus, JobEvent
from batch_engine.scheduler import queue
from batch_engine.services import stats


async def submit_job(
    session: AsyncSession,
    job_type: str,
    payload: dict[str, Any],
    chunk_size: int,
    max_attempts: int,
    priority: int,
    available_at: Optional[datetime] = None,
    timeout_seconds: Optional[float] = None,
) -> Job:
    """
    Records a QUEUED job and places a reference to it in the queue.
    """
    now = utcnow()
    job = Job(
        type=job_type,
        status=JobStatus.QUEUED,
        priority=priority,
        payload=payload,
        chunk_size=chunk_size,
        timeout_seconds=timeout_seconds,
        attempts=0,
        max_attempts=max_attempts,
        progress=0,
        result=None,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()

    await queue.enqueue(session, job.id, priority, available_at or now)
    await stats.adjust(session, None, JobStatus.QUEUED)

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CREATED,
        timestamp=now,
        meta={"items": len(payload.get("items", [])), "available_at": (available_at or now).isoformat()},
    ))
    await session.flush()

    JOB_SUBMITTED_TOTAL.labels(type=job_type).inc()
    return job

async def record_rejected_job(
    session: AsyncSession,
    job_type: str,
    payload: dict[str, Any],
    reason: str,
    chunk_size: int,
    max_attempts: int,
    priority: int,
) -> Job:
    """
    Configuration errors (unknown job type) never reach the queue: the job is
    stored straight away as FAILED so its id still resolves, with zero attempts.
    """
    now = utcnow()
    job = Job(
        type=job_type,
        status=JobStatus.FAILED,
        priority=priority,
        payload=payload,
        chunk_size=chunk_size,
        attempts=0,
        max_attempts=max_attempts,
        progress=0,
        result={"success": [], "failed": []},
        failure_reason=reason,
        last_error=reason,
        created_at=now,
        updated_at=now,
        finished_at=now,
    )
    session.add(job)
    await session.flush()

    await stats.adjust(session, None, JobStatus.FAILED)
    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.REJECTED,
        timestamp=now,
        meta={"reason": reason},
    ))
    await session.flush()

    JOB_SUBMITTED_TOTAL.labels(type=job_type).inc()
    JOB_FINISHED_TOTAL.labels(type=job_type, result="rejected").inc()
    return job
