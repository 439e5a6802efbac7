from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.api.v1.metrics import JOB_FAILURES, JOB_FINISHED_TOTAL
from batch_engine.commands.complete_job import verify_lease, keep_cancelled_result
from batch_engine.commands.transition import transition_job
from batch_engine.db.models import Job, JobLease, utcnow
from batch_engine.domain.errors import JobNotFoundError, InvalidJobStateError
from batch_engine.domain.models import Outcome
from batch_engine.domain.retry import RetryPolicy, next_delay, should_retry
from batch_engine.domain.states import JobStatus, JobEvent
from batch_engine.scheduler import queue

async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    error: str,
    retryable: bool = True,
    policy: RetryPolicy = RetryPolicy(),
    lease_token: Optional[UUID] = None,
    outcome: Optional[Outcome] = None,
    now: Optional[datetime] = None,
) -> Job:
    """
    Handles an attempt-level failure: back to QUEUED after a backoff delay
    while attempts remain and the error is retryable, FAILED otherwise.

    `attempts` was already incremented when the job was claimed.
    """
    now = now or utcnow()

    job = await session.get(Job, job_id)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status == JobStatus.CANCELLED:
        return await keep_cancelled_result(session, job, outcome)

    if job.status != JobStatus.ACTIVE:
        raise InvalidJobStateError(job.status, JobStatus.FAILED)

    await verify_lease(session, job_id, lease_token)

    result_values = {"result": outcome.to_dict()} if outcome is not None else {}

    if should_retry(job.attempts, job.max_attempts, retryable):
        # Retry
        delay = next_delay(job.attempts, policy)
        available_at = now + timedelta(seconds=delay)
        moved = await transition_job(
            session,
            job_id,
            expected=JobStatus.ACTIVE,
            target=JobStatus.QUEUED,
            event=JobEvent.RETRIED,
            meta={
                "error": error,
                "attempts": job.attempts,
                "max": job.max_attempts,
                "delay": delay,
                "available_at": available_at.isoformat(),
            },
            now=now,
            last_error=error,
            **result_values,
        )
        if moved is not None:
            await queue.enqueue(session, job_id, job.priority, available_at)
            JOB_FAILURES.labels(type=job.type, kind="retryable").inc()
    else:
        # Final
        reason = error
        if retryable:
            reason = f"Attempts exhausted ({job.attempts}/{job.max_attempts}): {error}"
        moved = await transition_job(
            session,
            job_id,
            expected=JobStatus.ACTIVE,
            target=JobStatus.FAILED,
            event=JobEvent.FAILED,
            meta={"error": error, "attempts": job.attempts, "max": job.max_attempts, "retryable": retryable},
            now=now,
            last_error=error,
            failure_reason=reason,
            finished_at=now,
            **result_values,
        )
        if moved is not None:
            JOB_FAILURES.labels(type=job.type, kind="final").inc()
            JOB_FINISHED_TOTAL.labels(type=job.type, result="failed").inc()

    if moved is None:
        await session.refresh(job)
        raise InvalidJobStateError(job.status, JobStatus.FAILED)

    # Delete lease
    await session.execute(
        delete(JobLease).where(JobLease.job_id == job_id)
    )

    await session.flush()
    await session.refresh(job)
    return job
