import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.api.v1.metrics import CLEANUP_REMOVED_JOBS
from batch_engine.db.models import Job, JobLease, JobEventLog, QueueEntry, utcnow
from batch_engine.domain.models import CleanupReport
from batch_engine.domain.states import JobStatus
from batch_engine.services import stats

logger = logging.getLogger(__name__)

async def cleanup_jobs(
    session: AsyncSession,
    completed_retention: timedelta = timedelta(days=7),
    failed_retention: timedelta = timedelta(days=30),
    now: Optional[datetime] = None,
) -> CleanupReport:
    """
    Prunes terminal jobs whose finished_at is older than their retention window.
    QUEUED and ACTIVE jobs are never touched, whatever their age.
    """
    now = now or utcnow()
    report = CleanupReport()

    windows = {
        JobStatus.COMPLETED: completed_retention,
        JobStatus.FAILED: failed_retention,
        JobStatus.CANCELLED: failed_retention,
    }

    for status, retention in windows.items():
        cutoff = now - retention
        ids = (await session.execute(
            select(Job.id).where(
                Job.status == status,
                Job.finished_at.is_not(None),
                Job.finished_at < cutoff,
            )
        )).scalars().all()

        if not ids:
            continue

        for model in (JobEventLog, JobLease, QueueEntry):
            await session.execute(delete(model).where(model.job_id.in_(ids)))
        res = await session.execute(
            delete(Job).where(Job.id.in_(ids), Job.status == status)
        )
        removed = res.rowcount or 0

        await stats.adjust(session, status, None, amount=removed)
        setattr(report, status.value, removed)
        CLEANUP_REMOVED_JOBS.labels(status=status.value).inc(removed)

    if report.total:
        logger.info(
            f"Cleanup removed {report.total} jobs "
            f"(completed={report.completed}, failed={report.failed}, cancelled={report.cancelled})"
        )

    await session.flush()
    return report
