import asyncio

import pytest

from batch_engine.domain.retry import RetryPolicy
from batch_engine.domain.states import TERMINAL_STATES
from batch_engine.engine import BatchEngine
from batch_engine.processing.collaborators import InMemoryRecordStore, LoggingNotificationChannel
from batch_engine.processing.handlers import register_builtin_handlers
from batch_engine.settings import Settings

FAST_RETRY = RetryPolicy(base_delay=0.01, multiplier=2.0, max_delay=0.05)

@pytest.fixture
def test_settings():
    return Settings(
        SQLALCHEMY_DATABASE_URI="sqlite+aiosqlite:///:memory:",
        WORKER_CONCURRENCY=2,
        POLL_INTERVAL_SECONDS=0.01,
        HEARTBEAT_INTERVAL_SECONDS=0.05,
        DEFAULT_LEASE_TIMEOUT_SECONDS=30,
        SCHEDULER_INTERVAL_SECONDS=0.05,
    )

@pytest.fixture
def records():
    return InMemoryRecordStore()

@pytest.fixture
def channel():
    return LoggingNotificationChannel()

@pytest.fixture
async def engine(test_settings, records, channel):
    engine = BatchEngine(test_settings, retry_policy=FAST_RETRY)
    register_builtin_handlers(engine.registry, records, notifications=channel)
    await engine.init()
    yield engine
    await engine.close()

@pytest.fixture
def settle(engine):
    """Drives a single worker until the given job reaches a terminal state."""
    dispatcher = engine.create_dispatcher(concurrency=1)

    async def _settle(job_id, timeout: float = 5.0):
        async def loop():
            while True:
                view = await engine.get_status(job_id)
                if view.status in TERMINAL_STATES:
                    return view
                if not await dispatcher.run_once("test-worker"):
                    await asyncio.sleep(0.005)

        return await asyncio.wait_for(loop(), timeout)

    return _settle
