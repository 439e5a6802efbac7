"""Chunked, failure-isolating execution of per-item and per-chunk operations."""
import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable, Iterator, Sequence
from typing import Any, Optional

from batch_engine.domain.errors import FatalJobError, JobCancelledError
from batch_engine.domain.models import DEFAULT_CHUNK_SIZE, Outcome, resolve_chunk_size

logger = logging.getLogger(__name__)

ItemFn = Callable[[Any], Awaitable[Any]]
ChunkFn = Callable[[list[Any]], Awaitable[Outcome]]
KeyFn = Callable[[Any], Any]
StopCheck = Callable[[], Awaitable[bool]]
ChunkCallback = Callable[[int, int, Outcome], Awaitable[None]]

def chunk_items(items: Sequence[Any], size: Any = DEFAULT_CHUNK_SIZE) -> Iterator[list[Any]]:
    """Contiguous slices of at most `size` items, in input order."""
    size = resolve_chunk_size(size)
    for start in range(0, len(items), size):
        yield list(items[start:start + size])

def default_item_key(item: Any, index: int) -> Any:
    if isinstance(item, dict) and item.get("id") is not None:
        return item["id"]
    if isinstance(item, Hashable) and not isinstance(item, (dict, list)):
        return item
    return index

def _reason(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__

class BatchProcessor:
    """
    Splits items into chunks and applies an operation to them.

    Chunks run one after another; items inside a chunk may run concurrently.
    Item errors are settled into the outcome and never stop their siblings
    or later chunks. Errors raised by a chunk-level operation, and
    FatalJobError raised by an item operation, abort the whole call.
    """

    def __init__(
        self,
        chunk_size: Any = DEFAULT_CHUNK_SIZE,
        should_stop: Optional[StopCheck] = None,
        on_chunk: Optional[ChunkCallback] = None,
        item_concurrency: Optional[int] = None,
    ):
        self.chunk_size = resolve_chunk_size(chunk_size)
        self.should_stop = should_stop
        self.on_chunk = on_chunk
        self.item_concurrency = item_concurrency if item_concurrency and item_concurrency > 0 else None

    async def process_in_chunks(
        self,
        items: Sequence[Any],
        item_fn: ItemFn,
        key: Optional[KeyFn] = None,
        chunk_size: Any = None,
    ) -> Outcome:
        """Runs `item_fn` once per item. Returning normally counts as success."""

        async def run_chunk(chunk: list[Any], keys: list[Any]) -> Outcome:
            semaphore = asyncio.Semaphore(self.item_concurrency) if self.item_concurrency else None

            async def run_item(item):
                if semaphore is None:
                    return await item_fn(item)
                async with semaphore:
                    return await item_fn(item)

            settled = await asyncio.gather(*(run_item(item) for item in chunk), return_exceptions=True)

            outcome = Outcome()
            fatal: Optional[BaseException] = None
            for item_key, res in zip(keys, settled):
                if isinstance(res, FatalJobError):
                    fatal = fatal or res
                elif isinstance(res, asyncio.CancelledError):
                    raise res
                elif isinstance(res, BaseException):
                    logger.debug(f"Item {item_key!r} failed: {res!r}")
                    outcome.record_failure(item_key, _reason(res))
                else:
                    outcome.record_success(item_key)
            if fatal is not None:
                raise fatal
            return outcome

        return await self._run(items, run_chunk, key, chunk_size)

    async def process_chunks(
        self,
        items: Sequence[Any],
        chunk_fn: ChunkFn,
        key: Optional[KeyFn] = None,
        chunk_size: Any = None,
    ) -> Outcome:
        """
        Runs `chunk_fn` once per chunk. The function reports per-item outcomes;
        items it leaves unreported are recorded as failed.
        """

        async def run_chunk(chunk: list[Any], keys: list[Any]) -> Outcome:
            reported = await chunk_fn(chunk)
            if reported is None:
                reported = Outcome()

            in_chunk = set(keys)
            outcome = Outcome()
            seen = set()
            for failure in reported.failed:
                if failure.item_id in in_chunk and failure.item_id not in seen:
                    outcome.failed.append(failure)
                    seen.add(failure.item_id)
            for item_id in reported.success:
                if item_id in in_chunk and item_id not in seen:
                    outcome.success.append(item_id)
                    seen.add(item_id)
            for item_key in keys:
                if item_key not in seen:
                    outcome.record_failure(item_key, "no outcome reported")
                    seen.add(item_key)

            stray = reported.reported_ids() - in_chunk
            if stray:
                logger.warning(f"Chunk operation reported {len(stray)} ids outside its chunk; ignored")
            return outcome

        return await self._run(items, run_chunk, key, chunk_size)

    async def _run(self, items, run_chunk, key, chunk_size) -> Outcome:
        size = resolve_chunk_size(chunk_size, self.chunk_size) if chunk_size is not None else self.chunk_size
        total = len(items)
        outcome = Outcome()
        processed = 0

        for index, chunk in enumerate(chunk_items(items, size)):
            if self.should_stop is not None and await self.should_stop():
                logger.info(f"Stopping before chunk {index + 1}: cancellation requested")
                raise JobCancelledError(outcome)

            offset = index * size
            keys = [
                key(item) if key else default_item_key(item, offset + i)
                for i, item in enumerate(chunk)
            ]
            outcome.extend(await run_chunk(chunk, keys))
            processed += len(chunk)

            if self.on_chunk is not None:
                await self.on_chunk(processed, total, outcome)

        return outcome
