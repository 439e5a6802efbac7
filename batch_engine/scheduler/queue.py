from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.db.models import QueueEntry, utcnow

async def enqueue(
    session: AsyncSession,
    job_id: UUID,
    priority: int,
    available_at: Optional[datetime] = None,
) -> QueueEntry:
    now = utcnow()
    # A job holds at most one queue slot
    await remove(session, job_id)
    entry = QueueEntry(
        job_id=job_id,
        priority=priority,
        available_at=available_at or now,
        enqueued_at=now,
    )
    session.add(entry)
    await session.flush()
    return entry

async def candidates(session: AsyncSession, now: datetime, limit: int = 10) -> list[QueueEntry]:
    """
    Eligible entries, highest priority first, then roughly submission order.
    """
    stmt = (
        select(QueueEntry)
        .where(QueueEntry.available_at <= now)
        .order_by(QueueEntry.priority.desc(), QueueEntry.seq.asc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())

async def remove(session: AsyncSession, job_id: UUID) -> int:
    res = await session.execute(delete(QueueEntry).where(QueueEntry.job_id == job_id))
    return res.rowcount or 0

async def depth(session: AsyncSession) -> int:
    return (await session.execute(select(func.count()).select_from(QueueEntry))).scalar() or 0
