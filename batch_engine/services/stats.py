import logging
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.api.v1.metrics import JOBS_BY_STATUS
from batch_engine.db.models import Job, JobCounter
from batch_engine.domain.models import QueueStats
from batch_engine.domain.states import JobStatus

logger = logging.getLogger(__name__)

async def ensure_counters(session: AsyncSession) -> None:
    existing = set((await session.execute(select(JobCounter.status))).scalars().all())
    for status in JobStatus:
        if status.value not in existing:
            session.add(JobCounter(status=status.value, count=0))
    await session.flush()

async def adjust(session: AsyncSession, old: Optional[JobStatus], new: Optional[JobStatus], amount: int = 1) -> None:
    """Moves `amount` jobs from one status bucket to another (None = outside the store)."""
    if old == new:
        return
    if old is not None:
        await session.execute(
            update(JobCounter)
            .where(JobCounter.status == JobStatus(old).value)
            .values(count=JobCounter.count - amount)
        )
        JOBS_BY_STATUS.labels(status=JobStatus(old).value).dec(amount)
    if new is not None:
        await session.execute(
            update(JobCounter)
            .where(JobCounter.status == JobStatus(new).value)
            .values(count=JobCounter.count + amount)
        )
        JOBS_BY_STATUS.labels(status=JobStatus(new).value).inc(amount)

async def get_stats(session: AsyncSession) -> QueueStats:
    rows = (await session.execute(select(JobCounter.status, JobCounter.count))).all()
    counts = {status: count for status, count in rows}
    stats = QueueStats(**{s.value: counts.get(s.value, 0) for s in JobStatus})
    stats.total = sum(counts.get(s.value, 0) for s in JobStatus)
    return stats

async def recount(session: AsyncSession) -> QueueStats:
    """
    Rebuilds the counters with a full scan.
    Only used at startup or on demand; transitions keep them current otherwise.
    """
    await ensure_counters(session)
    rows = (await session.execute(
        select(Job.status, func.count(Job.id)).group_by(Job.status)
    )).all()
    counts = {status: count for status, count in rows}

    for status in JobStatus:
        value = counts.get(status.value, 0)
        await session.execute(
            update(JobCounter).where(JobCounter.status == status.value).values(count=value)
        )
        JOBS_BY_STATUS.labels(status=status.value).set(value)

    stats = await get_stats(session)
    logger.info(f"Job counters reconciled: {stats.model_dump()}")
    return stats
