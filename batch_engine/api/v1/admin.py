from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from batch_engine.api.deps import EngineDep

router = APIRouter()

class CleanupRequest(BaseModel):
    completed_days: Optional[int] = Field(default=None, ge=1, le=365)
    failed_days: Optional[int] = Field(default=None, ge=1, le=365)

@router.post("/cleanup")
async def trigger_cleanup(engine: EngineDep, body: Optional[CleanupRequest] = None):
    body = body or CleanupRequest()
    report = await engine.cleanup(completed_days=body.completed_days, failed_days=body.failed_days)
    return {
        "removed": report.total,
        "completed": report.completed,
        "failed": report.failed,
        "cancelled": report.cancelled,
    }

@router.post("/requeue_expired")
async def trigger_requeue_expired(engine: EngineDep):
    count = await engine.requeue_expired()
    return {"requeued_count": count}

@router.post("/recount")
async def trigger_recount(engine: EngineDep):
    return await engine.recount()
