from typing import Optional
from uuid import UUID

from sqlalchemy import exists, update
from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.db.models import Job, JobLease, utcnow
from batch_engine.domain.models import Outcome
from batch_engine.domain.states import JobStatus

def percent(processed: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, (processed * 100) // total)

async def record_progress(
    session: AsyncSession,
    job_id: UUID,
    processed: int,
    total: int,
    outcome: Outcome,
    lease_token: Optional[UUID] = None,
) -> bool:
    """
    Persists progress and the outcomes gathered so far in this attempt.
    Returns False when the job is no longer ACTIVE (e.g. cancelled meanwhile)
    or, given a `lease_token`, when that lease no longer owns the job.
    """
    stmt = update(Job).where(Job.id == job_id, Job.status == JobStatus.ACTIVE)
    if lease_token is not None:
        stmt = stmt.where(
            exists().where(JobLease.job_id == job_id, JobLease.lease_token == lease_token)
        )
    stmt = stmt.values(
        progress=percent(processed, total),
        result=outcome.to_dict(),
        updated_at=utcnow(),
    )
    res = await session.execute(stmt)
    return res.rowcount == 1
