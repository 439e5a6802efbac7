from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.api.v1.metrics import JOB_ATTEMPTS_TOTAL, JOB_START_DELAY
from batch_engine.commands.transition import transition_job
from batch_engine.db.models import Job, JobLease, utcnow
from batch_engine.domain.models import ClaimedJob
from batch_engine.domain.states import JobStatus, JobEvent
from batch_engine.scheduler import queue

logger = logging.getLogger(__name__)

async def lease_job(
    session: AsyncSession,
    worker_id: str,
    lease_duration: float,
    now: Optional[datetime] = None,
    scan_limit: int = 10,
) -> Optional[ClaimedJob]:
    """
    Atomically claims the best eligible queued job for the given worker.

    Walks the eligible queue entries in order and tries a conditional
    QUEUED -> ACTIVE update on each. A lost race is not an error: the
    worker simply moves on to the next candidate.
    """
    now = now or utcnow()

    for entry in await queue.candidates(session, now, limit=scan_limit):
        job_id = entry.job_id
        available_at = entry.available_at

        claimed_from = await transition_job(
            session,
            job_id,
            expected=JobStatus.QUEUED,
            target=JobStatus.ACTIVE,
            event=JobEvent.CLAIMED,
            meta={"worker_id": worker_id},
            now=now,
            attempts=Job.attempts + 1,
            started_at=now,  # Reset execution timer
            progress=0,
            result={"success": [], "failed": []},
        )

        # Claimed (by us) or stale (job left QUEUED elsewhere): the slot is done either way
        await queue.remove(session, job_id)

        if claimed_from is None:
            logger.debug(f"Worker {worker_id} lost claim on job {job_id}")
            continue

        lease = JobLease(
            job_id=job_id,
            worker_id=worker_id,
            lease_token=uuid4(),
            expires_at=now + timedelta(seconds=lease_duration),
            last_heartbeat_at=now,
        )
        session.add(lease)
        await session.flush()

        job = await session.get(Job, job_id, populate_existing=True)

        JOB_ATTEMPTS_TOTAL.labels(type=job.type).inc()
        delay = (now - available_at).total_seconds()
        if delay >= 0:
            JOB_START_DELAY.observe(delay)

        return ClaimedJob(
            id=job.id,
            type=job.type,
            payload=dict(job.payload or {}),
            chunk_size=job.chunk_size,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            lease_token=lease.lease_token,
            timeout_seconds=job.timeout_seconds,
            started_at=now,
            available_at=available_at,
        )

    return None
