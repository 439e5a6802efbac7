from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.db.models import JobLease, utcnow
from batch_engine.domain.errors import LeaseNotFoundError, LeaseExpiredError

async def heartbeat(
    session: AsyncSession,
    job_id: UUID,
    lease_token: UUID,
    extend_seconds: float = 60,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Renews the lease for a job.
    Throws error if lease not found or token mismatch or already expired.
    Returns new expires_at.
    """
    now = now or utcnow()

    stmt = select(JobLease).where(
        JobLease.job_id == job_id,
        JobLease.lease_token == lease_token
    )
    lease = (await session.execute(stmt)).scalar_one_or_none()

    if not lease:
        # Cancelled, reaped or completed
        raise LeaseNotFoundError(f"Lease for job {job_id} not found or token mismatch")

    if lease.expires_at < now:
        # Already eligible for the reaper; renewing would hide a second owner
        raise LeaseExpiredError(f"Lease for job {job_id} expired at {lease.expires_at}")

    new_expires_at = now + timedelta(seconds=extend_seconds)
    lease.last_heartbeat_at = now
    lease.expires_at = new_expires_at

    await session.flush()
    return new_expires_at
