import asyncio
import logging
import os
import socket
from functools import partial
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from pydantic import ValidationError

from batch_engine.commands.complete_job import complete_job
from batch_engine.commands.fail_job import fail_job
from batch_engine.commands.heartbeat import heartbeat
from batch_engine.commands.lease_job import lease_job
from batch_engine.commands.record_progress import record_progress
from batch_engine.domain.errors import (
    AttemptTimeoutError,
    HandlerNotFoundError,
    InvalidJobStateError,
    JobCancelledError,
    JobError,
    LeaseError,
    MalformedPayloadError,
)
from batch_engine.domain.models import BatchPayload, ClaimedJob, JobView, Outcome
from batch_engine.domain.retry import is_retryable
from batch_engine.domain.states import JobStatus
from batch_engine.processing.batch import BatchProcessor

if TYPE_CHECKING:
    from batch_engine.engine import BatchEngine

logger = logging.getLogger(__name__)

class WorkerDispatcher:
    """
    Pool of in-process workers pulling jobs from the queue.

    Each worker claims one job at a time, so `concurrency` bounds the number
    of jobs in flight. Nothing a handler raises escapes a worker loop.
    """

    def __init__(
        self,
        engine: "BatchEngine",
        concurrency: int = 5,
        poll_interval: float = 0.5,
        worker_prefix: Optional[str] = None,
    ):
        self.engine = engine
        self.store = engine.store
        self.settings = engine.settings
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.worker_prefix = worker_prefix or f"{socket.gethostname()}-{os.getpid()}"
        self.running = False
        self._tasks: list[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._shutdown_event.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(f"{self.worker_prefix}-{i}"))
            for i in range(self.concurrency)
        ]
        logger.info(f"Dispatcher started with {self.concurrency} workers")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Lets running jobs finish; after `timeout` seconds they are cancelled and left to the reaper."""
        self.running = False
        self._shutdown_event.set()
        if not self._tasks:
            return

        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Dispatcher stopped")

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _worker_loop(self, worker_id: str) -> None:
        logger.debug(f"Worker {worker_id} started")
        while self.running:
            try:
                if not await self.run_once(worker_id):
                    await self._idle(self.poll_interval)
            except Exception as e:
                logger.exception(f"Error in worker loop {worker_id}: {e}")
                await self._idle(self.poll_interval)
        logger.debug(f"Worker {worker_id} stopped")

    async def run_once(self, worker_id: str = "worker-0") -> bool:
        """Claims and processes at most one job. Returns False when nothing was eligible."""
        async with self.store.session() as session:
            claimed = await lease_job(session, worker_id, self.settings.DEFAULT_LEASE_TIMEOUT_SECONDS)

        if claimed is None:
            return False

        await self.process_job(claimed, worker_id)
        return True

    async def process_job(self, job: ClaimedJob, worker_id: str) -> None:
        logger.info(
            f"Worker {worker_id} claimed job {job.id} ({job.type}, attempt {job.attempts}/{job.max_attempts})"
        )

        try:
            handler = self.engine.registry.resolve(job.type)
        except HandlerNotFoundError as e:
            # Handler unregistered since submission: configuration error, no retry
            await self._fail(job, e)
            return

        batcher = BatchProcessor(
            chunk_size=job.chunk_size,
            should_stop=partial(self._should_stop, job.id, job.lease_token),
            on_chunk=partial(self._record_progress, job.id, job.lease_token),
            item_concurrency=self.settings.ITEM_CONCURRENCY,
        )

        heartbeat_task = asyncio.create_task(self._heartbeat_loop(job.id, job.lease_token))

        try:
            outcome = await self._run_handler(job, handler, batcher)
        except JobCancelledError as e:
            await self._finish_cancelled(job, e.outcome)
        except Exception as e:
            await self._fail(job, e)
        else:
            await self._complete(job, outcome)
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass

    async def _run_handler(self, job: ClaimedJob, handler, batcher: BatchProcessor) -> Outcome:
        try:
            payload = BatchPayload.model_validate(job.payload)
        except ValidationError as e:
            raise MalformedPayloadError(f"Stored payload of job {job.id} is invalid: {e}") from e

        if job.timeout_seconds:
            try:
                res = await asyncio.wait_for(handler.process(payload, batcher), job.timeout_seconds)
            except asyncio.TimeoutError:
                raise AttemptTimeoutError(job.timeout_seconds) from None
        else:
            res = await handler.process(payload, batcher)

        if isinstance(res, dict):
            return Outcome.from_dict(res)
        return res if res is not None else Outcome()

    # --- Worker callbacks ---

    async def _should_stop(self, job_id: UUID, lease_token: UUID) -> bool:
        # Cancel, failure and the reaper all drop the lease; a new claim issues a new token
        return not await self.store.holds_lease(job_id, lease_token)

    async def _record_progress(
        self, job_id: UUID, lease_token: UUID, processed: int, total: int, outcome: Outcome
    ) -> None:
        async with self.store.session() as session:
            recorded = await record_progress(session, job_id, processed, total, outcome, lease_token=lease_token)
        if not recorded:
            logger.debug(f"Job {job_id}: progress not recorded, lease no longer held")
            return
        logger.debug(f"Job {job_id}: {processed}/{total} items processed")

    async def _heartbeat_loop(self, job_id: UUID, lease_token: UUID) -> None:
        try:
            while True:
                await asyncio.sleep(self.settings.HEARTBEAT_INTERVAL_SECONDS)
                try:
                    async with self.store.session() as session:
                        await heartbeat(
                            session, job_id, lease_token,
                            extend_seconds=self.settings.DEFAULT_LEASE_TIMEOUT_SECONDS,
                        )
                except LeaseError as e:
                    logger.warning(f"Heartbeat failed for {job_id}: {e}")
                    break
        except asyncio.CancelledError:
            pass

    # --- Outcomes ---

    def _publish(self, view: JobView) -> None:
        self.engine.watcher.publish(view)

    async def _complete(self, job: ClaimedJob, outcome: Outcome) -> None:
        try:
            async with self.store.session() as session:
                row = await complete_job(session, job.id, outcome, lease_token=job.lease_token)
                view = JobView.model_validate(row)
        except (LeaseError, InvalidJobStateError) as e:
            # Reaped while running; another attempt owns the job now
            logger.error(f"Job {job.id} finished but could not be completed: {e}")
            return

        if view.status == JobStatus.COMPLETED:
            logger.info(
                f"Job {job.id} completed: {len(outcome.success)} succeeded, {len(outcome.failed)} failed"
            )
        else:
            logger.info(f"Job {job.id} was cancelled while finishing; partial result kept")
        self._publish(view)

    async def _finish_cancelled(self, job: ClaimedJob, outcome: Optional[Outcome]) -> None:
        try:
            async with self.store.session() as session:
                row = await complete_job(session, job.id, outcome or Outcome(), lease_token=job.lease_token)
                view = JobView.model_validate(row)
        except (LeaseError, InvalidJobStateError) as e:
            logger.warning(f"Job {job.id} stopped between chunks: {e}")
            return
        logger.info(f"Job {job.id} stopped between chunks ({view.status}); partial result kept")
        self._publish(view)

    async def _fail(self, job: ClaimedJob, error: BaseException) -> None:
        retryable = is_retryable(error)
        message = str(error) or type(error).__name__
        if not isinstance(error, JobError):
            logger.debug(f"Handler for job {job.id} raised", exc_info=error)

        try:
            async with self.store.session() as session:
                row = await fail_job(
                    session,
                    job.id,
                    message,
                    retryable=retryable,
                    policy=self.engine.retry_policy,
                    lease_token=job.lease_token,
                )
                view = JobView.model_validate(row)
        except (LeaseError, InvalidJobStateError) as e:
            logger.error(f"Job {job.id} failed ({message}) but could not be recorded: {e}")
            return

        if view.status == JobStatus.QUEUED:
            logger.info(f"Job {job.id} attempt {job.attempts}/{job.max_attempts} failed, retry scheduled: {message}")
        elif view.status == JobStatus.FAILED:
            logger.warning(f"Job {job.id} failed: {view.failure_reason}")
        self._publish(view)
