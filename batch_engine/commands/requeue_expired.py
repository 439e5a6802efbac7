import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.api.v1.metrics import REAPER_RECOVERED_JOBS, JOB_FINISHED_TOTAL
from batch_engine.commands.transition import transition_job
from batch_engine.db.models import Job, JobLease, utcnow
from batch_engine.domain.states import JobStatus, JobEvent
from batch_engine.scheduler import queue

logger = logging.getLogger(__name__)

async def requeue_expired_jobs(session: AsyncSession, limit: int = 100, now: Optional[datetime] = None) -> int:
    """
    Finds expired leases, removes them, and returns their jobs to QUEUED
    (or FAILED once attempts are exhausted).
    Returns number of jobs recovered.
    """
    now = now or utcnow()

    stmt = select(JobLease).where(
        JobLease.expires_at < now
    ).order_by(JobLease.expires_at.asc()).limit(limit)

    expired_leases = (await session.execute(stmt)).scalars().all()

    if not expired_leases:
        return 0

    count = 0
    for lease in expired_leases:
        job = await session.get(Job, lease.job_id)
        await session.delete(lease)

        if job is None or job.status != JobStatus.ACTIVE:
            continue

        error = f"Lease expired (worker {lease.worker_id} crashed or stalled)"
        meta = {"reason": "lease_expired", "worker_id": lease.worker_id, "attempts": job.attempts}

        # Expiry counts as a failed attempt; a poison pill must not loop forever
        if job.attempts >= job.max_attempts:
            moved = await transition_job(
                session, job.id, JobStatus.ACTIVE, JobStatus.FAILED,
                event=JobEvent.REAPED, meta=meta, now=now,
                last_error=error,
                failure_reason=f"Attempts exhausted ({job.attempts}/{job.max_attempts}): {error}",
                finished_at=now,
            )
            if moved is not None:
                JOB_FINISHED_TOTAL.labels(type=job.type, result="failed").inc()
        else:
            moved = await transition_job(
                session, job.id, JobStatus.ACTIVE, JobStatus.QUEUED,
                event=JobEvent.REAPED, meta=meta, now=now,
                last_error=error,
            )
            if moved is not None:
                await queue.enqueue(session, job.id, job.priority, now)

        if moved is not None:
            count += 1
            logger.warning(f"Recovered job {job.id} from expired lease of {lease.worker_id}")

    if count > 0:
        REAPER_RECOVERED_JOBS.inc(count)

    await session.flush()
    return count
