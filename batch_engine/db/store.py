import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from batch_engine.db.models import Job, JobLease
from batch_engine.db.session import create_db_engine, create_session_factory, init_models

class JobStore:
    """
    Single source of truth for job state.

    Every unit of work runs in one committed transaction. Transactions from
    this process are serialised through a lock; status changes are still
    compare-and-swap updates so several processes can share a database.
    """

    def __init__(self, url: str, echo: bool = False):
        self.engine: AsyncEngine = create_db_engine(url, echo=echo)
        self._session_factory = create_session_factory(self.engine)
        self._lock = asyncio.Lock()

    async def create_schema(self) -> None:
        await init_models(self.engine)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self._lock:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session

    async def get(self, job_id: UUID) -> Optional[Job]:
        async with self.session() as session:
            return await session.get(Job, job_id)

    async def holds_lease(self, job_id: UUID, lease_token: UUID) -> bool:
        async with self.session() as session:
            lease_id = await session.scalar(
                select(JobLease.job_id).where(JobLease.job_id == job_id, JobLease.lease_token == lease_token)
            )
            return lease_id is not None

    async def dispose(self) -> None:
        await self.engine.dispose()
