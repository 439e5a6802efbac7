from datetime import datetime
from typing import Any, Iterable, Optional, Union
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from batch_engine.db.models import Job, JobEventLog, utcnow
from batch_engine.domain.states import JobStatus, JobEvent, can_transition
from batch_engine.services import stats

async def transition_job(
    session: AsyncSession,
    job_id: UUID,
    expected: Union[JobStatus, Iterable[JobStatus]],
    target: JobStatus,
    event: Optional[JobEvent] = None,
    meta: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
    **values: Any,
) -> Optional[JobStatus]:
    """
    Compare-and-swap status change.

    UPDATE jobs SET status=:target, ... WHERE id=:id AND status IN (:expected)

    Returns the status the job was moved away from, or None when the
    precondition did not hold (another writer got there first). Counters
    and the event log are updated in the same transaction.
    """
    now = now or utcnow()
    expected_set = {JobStatus(expected)} if isinstance(expected, str) else {JobStatus(s) for s in expected}

    for current in expected_set:
        if not can_transition(current, target):
            raise ValueError(f"Illegal transition {current} -> {target}")

    # One UPDATE per candidate keeps the previous status known for the counters
    for current in sorted(expected_set):
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status == current)
            .values(status=target, updated_at=now, **values)
        )
        res = await session.execute(stmt)
        if res.rowcount == 1:
            await stats.adjust(session, current, target)
            if event is not None:
                session.add(JobEventLog(
                    job_id=job_id,
                    event_type=event,
                    timestamp=now,
                    meta={"from": current.value, "to": target.value, **(meta or {})},
                ))
            await session.flush()
            return current

    return None
