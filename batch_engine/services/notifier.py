import asyncio
import logging
from collections import defaultdict
from uuid import UUID

from batch_engine.domain.models import JobView
from batch_engine.domain.states import TERMINAL_STATES

logger = logging.getLogger(__name__)

class JobWatcher:
    """
    In-process fan-out of terminal job states.

    Waiters park on a future per job id; the dispatcher and the cancel path
    publish the final view once the transition is committed.
    """

    def __init__(self):
        self._waiters: dict[UUID, list[asyncio.Future]] = defaultdict(list)

    def watch(self, job_id: UUID) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._waiters[job_id].append(future)
        return future

    def discard(self, job_id: UUID, future: asyncio.Future) -> None:
        waiters = self._waiters.get(job_id)
        if not waiters:
            return
        if future in waiters:
            waiters.remove(future)
        if not waiters:
            self._waiters.pop(job_id, None)

    def publish(self, view: JobView) -> int:
        if view.status not in TERMINAL_STATES:
            return 0
        waiters = self._waiters.pop(view.id, [])
        for future in waiters:
            if not future.done():
                future.set_result(view)
        if waiters:
            logger.debug(f"Notified {len(waiters)} waiters of job {view.id} ({view.status})")
        return len(waiters)

    def pending(self) -> int:
        return sum(len(w) for w in self._waiters.values())
