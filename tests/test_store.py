from datetime import timedelta
from uuid import uuid4

import pytest

from batch_engine.commands.cancel_job import cancel_job
from batch_engine.commands.fail_job import fail_job
from batch_engine.commands.heartbeat import heartbeat
from batch_engine.commands.lease_job import lease_job
from batch_engine.commands.transition import transition_job
from batch_engine.db.models import utcnow
from batch_engine.domain.errors import (
    AlreadyTerminalError,
    JobNotFoundError,
    LeaseExpiredError,
    LeaseNotFoundError,
)
from batch_engine.domain.retry import RetryPolicy
from batch_engine.domain.states import JobEvent, JobStatus, can_transition
from batch_engine.scheduler import queue

CREATE = {"operation": "create", "entity": "cards", "items": [{"name": "a"}]}

async def claim(engine, worker_id="w1", lease_duration=30, now=None):
    async with engine.store.session() as session:
        return await lease_job(session, worker_id, lease_duration, now=now)

def test_terminal_states_have_no_exits():
    for status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
        assert not any(can_transition(status, target) for target in JobStatus)
    assert not can_transition(JobStatus.QUEUED, JobStatus.COMPLETED)

async def test_claim_is_exclusive(engine):
    job_id = await engine.submit("entity.create", CREATE)

    first = await claim(engine, "w1")
    second = await claim(engine, "w2")

    assert first.id == job_id
    assert first.attempts == 1
    assert second is None

    view = await engine.get_status(job_id)
    assert view.status == JobStatus.ACTIVE
    assert view.started_at is not None

async def test_transition_is_compare_and_swap(engine):
    job_id = await engine.submit("entity.create", CREATE)

    async with engine.store.session() as session:
        moved = await transition_job(session, job_id, JobStatus.ACTIVE, JobStatus.COMPLETED)
    assert moved is None
    assert (await engine.get_status(job_id)).status == JobStatus.QUEUED

    async with engine.store.session() as session:
        with pytest.raises(ValueError):
            await transition_job(session, job_id, JobStatus.QUEUED, JobStatus.COMPLETED)

async def test_priority_then_submission_order(engine):
    low = await engine.submit("entity.create", CREATE, {"priority": "low"})
    normal_1 = await engine.submit("entity.create", CREATE)
    critical = await engine.submit("entity.create", CREATE, {"priority": "critical"})
    normal_2 = await engine.submit("entity.create", CREATE)

    order = [(await claim(engine)).id for _ in range(4)]
    assert order == [critical, normal_1, normal_2, low]

async def test_delayed_job_not_eligible_early(engine):
    job_id = await engine.submit("entity.create", CREATE, {"delay_seconds": 60})

    assert await claim(engine) is None
    later = await claim(engine, now=utcnow() + timedelta(seconds=61))
    assert later.id == job_id

async def test_retry_backoff_schedule(engine):
    job_id = await engine.submit("entity.create", CREATE, {"max_attempts": 3})
    policy = RetryPolicy()
    now = utcnow()

    expected_delays = []
    for attempt in (1, 2):
        claimed = await claim(engine, now=now)
        assert claimed.attempts == attempt
        async with engine.store.session() as session:
            job = await fail_job(session, job_id, "store unavailable", policy=policy,
                                 lease_token=claimed.lease_token, now=now)
        assert job.status == JobStatus.QUEUED
        expected_delays.append(2.0 * 2 ** (attempt - 1))

        # Not claimable until the backoff elapses
        assert await claim(engine, now=now + timedelta(seconds=expected_delays[-1] - 0.5)) is None
        now = now + timedelta(seconds=expected_delays[-1])

    claimed = await claim(engine, now=now)
    async with engine.store.session() as session:
        job = await fail_job(session, job_id, "store unavailable", policy=policy,
                             lease_token=claimed.lease_token, now=now)

    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert job.failure_reason.startswith("Attempts exhausted (3/3)")

    retried = [e for e in await engine.get_events(job_id) if e.event_type == JobEvent.RETRIED]
    assert [e.meta["delay"] for e in retried] == expected_delays == [2.0, 4.0]

async def test_non_retryable_failure_is_final(engine):
    job_id = await engine.submit("entity.create", CREATE, {"max_attempts": 5})
    claimed = await claim(engine)

    async with engine.store.session() as session:
        job = await fail_job(session, job_id, "unknown operation", retryable=False,
                             lease_token=claimed.lease_token)

    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.failure_reason == "unknown operation"

async def test_cancel_queued_job(engine):
    job_id = await engine.submit("entity.create", CREATE)

    view = await engine.cancel(job_id)
    assert view.status == JobStatus.CANCELLED
    assert view.finished_at is not None

    async with engine.store.session() as session:
        assert await queue.depth(session) == 0
    assert await claim(engine) is None

    with pytest.raises(AlreadyTerminalError):
        await engine.cancel(job_id)

async def test_cancel_unknown_job(engine):
    with pytest.raises(JobNotFoundError):
        await engine.cancel(uuid4())
    with pytest.raises(JobNotFoundError):
        await engine.get_status(uuid4())

async def test_cancel_releases_lease(engine):
    job_id = await engine.submit("entity.create", CREATE)
    claimed = await claim(engine)

    async with engine.store.session() as session:
        await cancel_job(session, job_id)

    async with engine.store.session() as session:
        with pytest.raises(LeaseNotFoundError):
            await heartbeat(session, job_id, claimed.lease_token)

async def test_heartbeat_extends_and_rejects_expired(engine):
    job_id = await engine.submit("entity.create", CREATE)
    now = utcnow()
    claimed = await claim(engine, lease_duration=10, now=now)

    async with engine.store.session() as session:
        expires = await heartbeat(session, job_id, claimed.lease_token, extend_seconds=20, now=now + timedelta(seconds=5))
    assert expires == now + timedelta(seconds=25)

    async with engine.store.session() as session:
        with pytest.raises(LeaseExpiredError):
            await heartbeat(session, job_id, claimed.lease_token, now=now + timedelta(seconds=30))

    async with engine.store.session() as session:
        with pytest.raises(LeaseNotFoundError):
            await heartbeat(session, job_id, uuid4())

async def test_expired_lease_requeued_then_failed(engine):
    job_id = await engine.submit("entity.create", CREATE, {"max_attempts": 2})
    now = utcnow()

    await claim(engine, lease_duration=10, now=now)
    later = now + timedelta(seconds=11)
    assert await engine.requeue_expired(now=later) == 1

    view = await engine.get_status(job_id)
    assert view.status == JobStatus.QUEUED
    assert view.attempts == 1
    assert "Lease expired" in view.last_error

    await claim(engine, lease_duration=10, now=later)
    assert await engine.requeue_expired(now=later + timedelta(seconds=11)) == 1

    view = await engine.get_status(job_id)
    assert view.status == JobStatus.FAILED
    assert view.failure_reason.startswith("Attempts exhausted (2/2)")

    events = [e.event_type for e in await engine.get_events(job_id)]
    assert events.count(JobEvent.REAPED) == 2

async def test_live_lease_not_reaped(engine):
    await engine.submit("entity.create", CREATE)
    await claim(engine, lease_duration=30)
    assert await engine.requeue_expired() == 0
