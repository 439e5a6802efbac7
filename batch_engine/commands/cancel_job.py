from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.api.v1.metrics import JOB_FINISHED_TOTAL
from batch_engine.commands.transition import transition_job
from batch_engine.db.models import Job, JobLease, utcnow
from batch_engine.domain.errors import JobNotFoundError, AlreadyTerminalError
from batch_engine.domain.states import JobStatus, JobEvent, TERMINAL_STATES
from batch_engine.scheduler import queue

async def cancel_job(session: AsyncSession, job_id: UUID, now: Optional[datetime] = None) -> Job:
    """
    QUEUED or ACTIVE -> CANCELLED.

    A queued job leaves the queue immediately. An active job keeps running
    until its worker finds its lease gone at the next chunk boundary.
    """
    now = now or utcnow()

    job = await session.get(Job, job_id)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status in TERMINAL_STATES:
        raise AlreadyTerminalError(job_id, job.status)

    was_active = job.status == JobStatus.ACTIVE
    moved = await transition_job(
        session,
        job_id,
        expected=(JobStatus.QUEUED, JobStatus.ACTIVE),
        target=JobStatus.CANCELLED,
        event=JobEvent.CANCELLED,
        meta={"cooperative": was_active},
        now=now,
        finished_at=now,
    )
    await session.refresh(job)
    if moved is None:
        raise AlreadyTerminalError(job_id, job.status)

    await queue.remove(session, job_id)
    # The worker's lease dies with the cancellation
    await session.execute(delete(JobLease).where(JobLease.job_id == job_id))

    JOB_FINISHED_TOTAL.labels(type=job.type, result="cancelled").inc()

    await session.flush()
    return job
