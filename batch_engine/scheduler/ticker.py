import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from batch_engine.api.v1.metrics import QUEUE_DEPTH
from batch_engine.db.models import utcnow
from batch_engine.scheduler import queue

if TYPE_CHECKING:
    from batch_engine.engine import BatchEngine

logger = logging.getLogger(__name__)

async def run_ticker(engine: "BatchEngine", now: Optional[datetime] = None) -> int:
    """
    Periodic maintenance:
    1. Requeue jobs whose lease expired (reaper)
    2. Refresh the queue depth gauge
    """
    recovered = await engine.requeue_expired(now=now or utcnow())

    async with engine.store.session() as session:
        QUEUE_DEPTH.set(await queue.depth(session))

    return recovered

async def run_cleanup(engine: "BatchEngine", now: Optional[datetime] = None):
    report = await engine.cleanup(now=now)
    if not report.total:
        logger.debug("Cleanup found nothing to remove")
    return report
