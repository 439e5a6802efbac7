import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import select

from batch_engine.commands.cancel_job import cancel_job
from batch_engine.commands.cleanup_jobs import cleanup_jobs
from batch_engine.commands.requeue_expired import requeue_expired_jobs
from batch_engine.commands.submit_job import submit_job, record_rejected_job
from batch_engine.db.models import Job, JobEventLog, utcnow
from batch_engine.db.store import JobStore
from batch_engine.domain.errors import HandlerNotFoundError, JobNotFoundError, MalformedPayloadError
from batch_engine.domain.models import (
    BatchPayload,
    CleanupReport,
    JobEventView,
    JobOptions,
    JobView,
    QueueStats,
    resolve_chunk_size,
)
from batch_engine.domain.retry import RetryPolicy
from batch_engine.domain.states import JobStatus, TERMINAL_STATES
from batch_engine.processing.registry import HandlerFn, HandlerRegistry, JobHandler
from batch_engine.services import stats
from batch_engine.services.notifier import JobWatcher
from batch_engine.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}" for err in exc.errors()
    )

class BatchEngine:
    """
    Entry point of the batch engine: submission, status, cancellation and
    maintenance over one job store. Workers are created with
    `create_dispatcher()`.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[HandlerRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings or default_settings
        self.store = JobStore(self.settings.SQLALCHEMY_DATABASE_URI)
        self.registry = registry if registry is not None else HandlerRegistry()
        self.retry_policy = retry_policy or self.settings.retry_policy()
        self.watcher = JobWatcher()

    async def init(self) -> None:
        await self.store.create_schema()
        async with self.store.session() as session:
            await stats.recount(session)

    async def close(self) -> None:
        await self.store.dispose()

    def register_handler(self, job_type: str, handler: Union[JobHandler, HandlerFn]) -> JobHandler:
        return self.registry.register(job_type, handler)

    # --- Submission ---

    async def submit(
        self,
        job_type: str,
        payload: dict[str, Any],
        options: Optional[dict[str, Any]] = None,
    ) -> UUID:
        """
        Validates and stores a job, returning its id.

        Options given here override `payload.options`. A job type with no
        registered handler is stored directly as FAILED and never queued.
        """
        try:
            batch = BatchPayload.model_validate(payload)
            overrides = JobOptions.model_validate(options or {})
        except ValidationError as exc:
            raise MalformedPayloadError(f"Invalid payload for '{job_type}': {_describe(exc)}") from exc

        opts = batch.options.model_copy(update=overrides.model_dump(exclude_unset=True))
        chunk_size = resolve_chunk_size(opts.chunk_size, self.settings.DEFAULT_CHUNK_SIZE)
        max_attempts = opts.max_attempts or self.settings.DEFAULT_MAX_ATTEMPTS
        timeout = opts.timeout_seconds or self.settings.ATTEMPT_TIMEOUT_SECONDS

        try:
            handler = self.registry.resolve(job_type)
        except HandlerNotFoundError as exc:
            async with self.store.session() as session:
                job = await record_rejected_job(
                    session,
                    job_type,
                    batch.model_dump(mode="json", exclude={"options"}),
                    reason=str(exc),
                    chunk_size=chunk_size,
                    max_attempts=max_attempts,
                    priority=opts.priority.rank,
                )
            logger.warning(f"Rejected job {job.id}: {exc}")
            return job.id

        prepared = handler.prepare(batch)
        available_at = None
        if opts.delay_seconds:
            available_at = utcnow() + timedelta(seconds=opts.delay_seconds)

        async with self.store.session() as session:
            job = await submit_job(
                session,
                job_type,
                prepared.model_dump(mode="json", exclude={"options"}),
                chunk_size=chunk_size,
                max_attempts=max_attempts,
                priority=opts.priority.rank,
                available_at=available_at,
                timeout_seconds=timeout,
            )

        logger.info(f"Submitted job {job.id} ({job_type}, {len(prepared.items)} items, chunk size {chunk_size})")
        return job.id

    # --- Queries ---

    async def get_status(self, job_id: UUID) -> JobView:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return JobView.model_validate(job)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[JobView]:
        stmt = select(Job)
        if status is not None:
            stmt = stmt.where(Job.status == JobStatus(status).value)
        if job_type is not None:
            stmt = stmt.where(Job.type == job_type)
        stmt = stmt.order_by(Job.created_at.desc()).limit(limit).offset(offset)

        async with self.store.session() as session:
            jobs = (await session.execute(stmt)).scalars().all()
        return [JobView.model_validate(job) for job in jobs]

    async def get_events(self, job_id: UUID) -> list[JobEventView]:
        async with self.store.session() as session:
            if await session.get(Job, job_id) is None:
                raise JobNotFoundError(job_id)
            events = (await session.execute(
                select(JobEventLog)
                .where(JobEventLog.job_id == job_id)
                .order_by(JobEventLog.timestamp.asc(), JobEventLog.id.asc())
            )).scalars().all()
        return [JobEventView.model_validate(event) for event in events]

    async def get_stats(self) -> QueueStats:
        async with self.store.session() as session:
            return await stats.get_stats(session)

    # --- Control ---

    async def cancel(self, job_id: UUID) -> JobView:
        async with self.store.session() as session:
            previous = await session.scalar(select(Job.status).where(Job.id == job_id))
            job = await cancel_job(session, job_id)
            view = JobView.model_validate(job)
        logger.info(f"Cancelled job {job_id}")
        # A running job is published by its worker once the partial result is stored
        if previous != JobStatus.ACTIVE:
            self.watcher.publish(view)
        return view

    async def wait_for(self, job_id: UUID, timeout: Optional[float] = None) -> JobView:
        """Resolves once the job reaches a terminal state. Raises TimeoutError."""
        future = self.watcher.watch(job_id)
        try:
            view = await self.get_status(job_id)
            if view.status in TERMINAL_STATES:
                return view
            return await asyncio.wait_for(future, timeout)
        finally:
            self.watcher.discard(job_id, future)

    # --- Maintenance ---

    async def cleanup(
        self,
        now: Optional[datetime] = None,
        completed_days: Optional[int] = None,
        failed_days: Optional[int] = None,
    ) -> CleanupReport:
        async with self.store.session() as session:
            return await cleanup_jobs(
                session,
                completed_retention=timedelta(days=completed_days or self.settings.COMPLETED_RETENTION_DAYS),
                failed_retention=timedelta(days=failed_days or self.settings.FAILED_RETENTION_DAYS),
                now=now,
            )

    async def requeue_expired(self, now: Optional[datetime] = None) -> int:
        async with self.store.session() as session:
            return await requeue_expired_jobs(session, now=now)

    async def recount(self) -> QueueStats:
        async with self.store.session() as session:
            return await stats.recount(session)

    def create_dispatcher(self, concurrency: Optional[int] = None):
        from batch_engine.scheduler.dispatcher import WorkerDispatcher

        return WorkerDispatcher(
            self,
            concurrency=concurrency or self.settings.WORKER_CONCURRENCY,
            poll_interval=self.settings.POLL_INTERVAL_SECONDS,
        )
