import logging
from collections.abc import Awaitable, Callable
from typing import Any, ClassVar, Optional, Union

from batch_engine.domain.errors import HandlerNotFoundError
from batch_engine.domain.models import BatchPayload, Outcome
from batch_engine.processing.batch import BatchProcessor

logger = logging.getLogger(__name__)

HandlerFn = Callable[[BatchPayload, BatchProcessor], Awaitable[Union[Outcome, dict]]]

class JobHandler:
    """
    Strategy for one job type.

    `prepare` runs once at submission and may normalise the payload before it
    is stored; `process` runs on every attempt and must be idempotent per item.
    """

    job_type: ClassVar[Optional[str]] = None

    def prepare(self, payload: BatchPayload) -> BatchPayload:
        return payload

    async def process(self, payload: BatchPayload, batcher: BatchProcessor) -> Outcome:
        raise NotImplementedError

class FunctionHandler(JobHandler):
    """Adapts a plain async callable to the handler interface."""

    def __init__(self, fn: HandlerFn):
        if not callable(fn):
            raise TypeError(f"Handler {fn!r} is not callable")
        self.fn = fn

    async def process(self, payload: BatchPayload, batcher: BatchProcessor) -> Outcome:
        res = await self.fn(payload, batcher)
        if isinstance(res, Outcome):
            return res
        if isinstance(res, dict):
            return Outcome.from_dict(res)
        if res is None:
            return Outcome()
        raise TypeError(f"Handler returned {type(res).__name__}, expected Outcome or dict")

class HandlerRegistry:
    def __init__(self):
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: Union[JobHandler, HandlerFn]) -> JobHandler:
        key = str(job_type)
        if not isinstance(handler, JobHandler):
            handler = FunctionHandler(handler)
        if key in self._handlers:
            logger.warning(f"Replacing handler for job type '{key}'")
        self._handlers[key] = handler
        return handler

    def resolve(self, job_type: str) -> JobHandler:
        try:
            return self._handlers[str(job_type)]
        except KeyError:
            raise HandlerNotFoundError(job_type, self._handlers.keys()) from None

    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: Any) -> bool:
        return str(job_type) in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
