from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.api.v1.metrics import JOB_DURATION, JOB_FINISHED_TOTAL, ITEM_OUTCOMES
from batch_engine.commands.transition import transition_job
from batch_engine.db.models import Job, JobLease, utcnow
from batch_engine.domain.errors import JobNotFoundError, InvalidJobStateError, LeaseNotFoundError
from batch_engine.domain.models import Outcome
from batch_engine.domain.states import JobStatus, JobEvent


async def verify_lease(session: AsyncSession, job_id: UUID, lease_token: Optional[UUID]) -> None:
    if lease_token is None:
        return
    lease = await session.scalar(
        select(JobLease).where(JobLease.job_id == job_id, JobLease.lease_token == lease_token)
    )
    if lease is None:
        # Expired and reaped, or taken over by another worker
        raise LeaseNotFoundError(f"Lease for job {job_id} invalid or lost")

async def keep_cancelled_result(session: AsyncSession, job: Job, outcome: Optional[Outcome]) -> Job:
    """Outcomes of chunks processed before a cancellation are kept for audit."""
    if outcome is not None:
        job.result = outcome.to_dict()
    await session.execute(delete(JobLease).where(JobLease.job_id == job.id))
    await session.flush()
    return job

async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    outcome: Outcome,
    lease_token: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> Job:
    """
    Marks a job as COMPLETED and saves its per-item outcome.
    Partial success is still completion; item failures live in result.failed.
    Releases the lease.
    """
    now = now or utcnow()

    job = await session.get(Job, job_id)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status == JobStatus.CANCELLED:
        return await keep_cancelled_result(session, job, outcome)

    if job.status != JobStatus.ACTIVE:
        raise InvalidJobStateError(job.status, JobStatus.COMPLETED)

    await verify_lease(session, job_id, lease_token)

    moved = await transition_job(
        session,
        job_id,
        expected=JobStatus.ACTIVE,
        target=JobStatus.COMPLETED,
        event=JobEvent.COMPLETED,
        meta={"success": len(outcome.success), "failed": len(outcome.failed)},
        now=now,
        progress=100,
        result=outcome.to_dict(),
        finished_at=now,
    )
    if moved is None:
        await session.refresh(job)
        raise InvalidJobStateError(job.status, JobStatus.COMPLETED)

    await session.execute(delete(JobLease).where(JobLease.job_id == job_id))
    await session.refresh(job)

    if job.started_at:
        duration = (now - job.started_at).total_seconds()
        if duration > 0:
            JOB_DURATION.observe(duration)

    JOB_FINISHED_TOTAL.labels(type=job.type, result="completed").inc()
    ITEM_OUTCOMES.labels(type=job.type, outcome="success").inc(len(outcome.success))
    ITEM_OUTCOMES.labels(type=job.type, outcome="failed").inc(len(outcome.failed))

    await session.flush()
    return job
